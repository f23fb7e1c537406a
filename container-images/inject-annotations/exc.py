class ApplicationError(Exception):
    pass


class ConfigError(ApplicationError):
    pass


class PatchError(ApplicationError):
    pass


class ProviderError(ApplicationError):
    pass
