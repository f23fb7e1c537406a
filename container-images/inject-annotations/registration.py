import base64
import logging
import threading

from kubernetes import config, client
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import (
    ConflictError,
    DynamicApiError,
    ResourceNotFoundError,
)
from urllib3.exceptions import HTTPError
from typing import Any, Callable
from typing_extensions import Protocol, override

from exc import ProviderError

LOG = logging.getLogger(__name__)


class Provider(Protocol):
    def register_webhook(self, configuration: dict[str, Any]) -> None: ...


class KubernetesProvider(Provider):
    def __init__(self):
        """Allocate a Kubernetes dynamic client and webhook configuration API client"""

        super().__init__()

        try:
            config.load_config()
        except config.ConfigException as err:
            LOG.warning("unable to configure Kubernetes client: %s", err)
            raise ProviderError("unable to configure Kubernetes client")

        k8s_client = client.ApiClient()
        dyn_client = DynamicClient(k8s_client)

        self._client = dyn_client
        self._webhook_resource = dyn_client.resources.get(
            api_version="admissionregistration.k8s.io/v1",
            kind="MutatingWebhookConfiguration",
        )

    @override
    def register_webhook(self, configuration):
        name = configuration["metadata"]["name"]

        try:
            self._webhook_resource.create(body=configuration)
            LOG.info("created mutating webhook configuration %s", name)
        except ConflictError:
            existing = self._webhook_resource.get(name=name)
            body = dict(configuration)
            body["metadata"] = dict(
                configuration["metadata"],
                resourceVersion=existing.metadata.resourceVersion,
            )
            self._webhook_resource.replace(body=body)
            LOG.info("replaced mutating webhook configuration %s", name)


def webhook_configuration(
    name: str,
    service_name: str,
    service_namespace: str,
    service_path: str = "/",
    ca_bundle: bytes | None = None,
) -> dict[str, Any]:
    """Build the MutatingWebhookConfiguration that routes pod creation here."""

    client_config: dict[str, Any] = {
        "service": {
            "name": service_name,
            "namespace": service_namespace,
            "path": service_path,
        }
    }
    if ca_bundle:
        client_config["caBundle"] = base64.b64encode(ca_bundle).decode()

    return {
        "apiVersion": "admissionregistration.k8s.io/v1",
        "kind": "MutatingWebhookConfiguration",
        "metadata": {"name": name},
        "webhooks": [
            {
                "name": name,
                "clientConfig": client_config,
                "rules": [
                    {
                        "apiGroups": [""],
                        "apiVersions": ["v1"],
                        "operations": ["CREATE"],
                        "resources": ["pods"],
                    }
                ],
                "admissionReviewVersions": ["v1", "v1beta1"],
                "sideEffects": "None",
                "failurePolicy": "Ignore",
            }
        ],
    }


def register(provider_factory: Callable[[], Provider], configuration) -> bool:
    name = configuration["metadata"]["name"]

    try:
        provider = provider_factory()
        provider.register_webhook(configuration)
    except (ProviderError, DynamicApiError, ResourceNotFoundError, HTTPError) as err:
        LOG.error("failed to register webhook %s: %s", name, err)
        return False

    LOG.info("registered webhook %s", name)
    return True


def start_registration(
    provider_factory: Callable[[], Provider], configuration
) -> threading.Thread:
    """Register in the background; serving does not wait for it."""

    thread = threading.Thread(
        target=register,
        args=(provider_factory, configuration),
        name="webhook-registration",
        daemon=True,
    )
    thread.start()
    return thread
