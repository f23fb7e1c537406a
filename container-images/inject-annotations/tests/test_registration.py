import base64

import pytest
from kubernetes import config
from kubernetes.client.rest import ApiException
from openshift.dynamic.exceptions import (
    ConflictError,
    ForbiddenError,
    ResourceNotFoundError,
)
from unittest import mock
from urllib3.exceptions import MaxRetryError

import registration
from exc import ProviderError


@pytest.fixture()
def configuration():
    return registration.webhook_configuration(
        "conduit-injector.conduit.io", "conduit-injector", "conduit", "/", b"ca data"
    )


@pytest.fixture()
def dynamic_client():
    with mock.patch("registration.config.load_config"), mock.patch(
        "registration.client.ApiClient"
    ), mock.patch("registration.DynamicClient") as mock_dynamic_client:
        yield mock_dynamic_client.return_value


def api_error(cls, status, reason):
    return cls(ApiException(status=status, reason=reason))


def test_webhook_configuration(configuration):
    assert configuration["kind"] == "MutatingWebhookConfiguration"
    assert configuration["metadata"] == {"name": "conduit-injector.conduit.io"}

    (webhook,) = configuration["webhooks"]
    assert webhook["name"] == "conduit-injector.conduit.io"
    assert webhook["rules"] == [
        {
            "apiGroups": [""],
            "apiVersions": ["v1"],
            "operations": ["CREATE"],
            "resources": ["pods"],
        }
    ]
    assert webhook["clientConfig"]["service"] == {
        "name": "conduit-injector",
        "namespace": "conduit",
        "path": "/",
    }
    assert base64.b64decode(webhook["clientConfig"]["caBundle"]) == b"ca data"


def test_webhook_configuration_without_ca():
    configuration = registration.webhook_configuration("name", "svc", "ns")
    assert "caBundle" not in configuration["webhooks"][0]["clientConfig"]


def test_register(fake_provider, registered, configuration):
    assert registration.register(fake_provider, configuration)
    assert registered == [configuration]


def test_register_provider_failure(configuration):
    class ErrorProvider:
        def __init__(self):
            raise ProviderError("unable to configure Kubernetes client")

    assert not registration.register(ErrorProvider, configuration)


def test_register_api_failure(configuration):
    class ForbiddenProvider:
        def register_webhook(self, configuration):
            raise api_error(ForbiddenError, 403, "Forbidden")

    assert not registration.register(ForbiddenProvider, configuration)


@pytest.mark.parametrize(
    "err",
    [
        MaxRetryError(None, "/apis", reason="connection refused"),
        ResourceNotFoundError("No matches found for MutatingWebhookConfiguration"),
    ],
)
def test_register_discovery_failure(configuration, err):
    class UnreachableProvider:
        def register_webhook(self, configuration):
            raise err

    with mock.patch("registration.LOG") as log:
        assert registration.register(UnreachableProvider, configuration) is False

    assert log.error.called


def test_start_registration(fake_provider, registered, configuration):
    thread = registration.start_registration(fake_provider, configuration)
    thread.join(timeout=5)

    assert thread.daemon
    assert not thread.is_alive()
    assert registered == [configuration]


def test_kubernetes_provider_config_failure():
    with mock.patch(
        "registration.config.load_config",
        side_effect=config.ConfigException("no configuration found"),
    ):
        with pytest.raises(ProviderError):
            registration.KubernetesProvider()


def test_kubernetes_provider_create(dynamic_client, configuration):
    provider = registration.KubernetesProvider()
    provider.register_webhook(configuration)

    dynamic_client.resources.get.assert_called_once_with(
        api_version="admissionregistration.k8s.io/v1",
        kind="MutatingWebhookConfiguration",
    )
    resource = dynamic_client.resources.get.return_value
    resource.create.assert_called_once_with(body=configuration)
    assert not resource.replace.called


def test_kubernetes_provider_replace(dynamic_client, configuration):
    resource = dynamic_client.resources.get.return_value
    resource.create.side_effect = api_error(ConflictError, 409, "Conflict")
    resource.get.return_value.metadata.resourceVersion = "42"

    provider = registration.KubernetesProvider()
    provider.register_webhook(configuration)

    resource.get.assert_called_once_with(name="conduit-injector.conduit.io")
    body = resource.replace.call_args.kwargs["body"]
    assert body["metadata"] == {
        "name": "conduit-injector.conduit.io",
        "resourceVersion": "42",
    }
    assert body["webhooks"] == configuration["webhooks"]
    # The generated configuration itself is left alone.
    assert "resourceVersion" not in configuration["metadata"]


def test_register_kind_not_found(dynamic_client, configuration):
    dynamic_client.resources.get.side_effect = ResourceNotFoundError(
        "No matches found for MutatingWebhookConfiguration"
    )
    assert registration.register(registration.KubernetesProvider, configuration) is False
