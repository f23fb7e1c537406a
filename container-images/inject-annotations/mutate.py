import json
import logging
import sys

import pydantic
from flask import Flask, request, current_app
from pydantic_core import PydanticSerializationError

from models import (
    ApiVersion,
    AdmissionRequest,
    AdmissionResponse,
    AdmissionReview,
    AdmissionReviewStatus,
    InjectorConfig,
    PatchType,
    Pod,
)

from exc import ConfigError, PatchError
from patch import build_annotation_patch, serialize_patch
from policy import KUBE_SYSTEM_NAMESPACES, should_inject
from registration import KubernetesProvider, start_registration, webhook_configuration

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


def default_annotations(version: str) -> dict[str, str]:
    return {
        "conduit.io": "hi-im-injected",
        "conduit.io/created-by": f"conduit/webhook/{version}",
        "conduit.io/proxy-version": version,
    }


class DEFAULTS:
    ADDR = ":8080"
    PROXY_VERSION = "rmars/branch"
    # When unset, the conduit annotations for PROXY_VERSION are used.
    ANNOTATIONS = None
    SKIP_NAMESPACES = ",".join(KUBE_SYSTEM_NAMESPACES)
    TLS_CERT_FILE = None
    TLS_KEY_FILE = None
    CA_FILE = None
    REGISTER = False
    WEBHOOK_NAME = "conduit-injector.conduit.io"
    SERVICE_NAME = "conduit-injector"
    SERVICE_NAMESPACE = "conduit"
    SERVICE_PATH = "/"
    PROVIDER = KubernetesProvider


def load_injector_config(config) -> InjectorConfig:
    """Turn flask configuration values into an InjectorConfig.

    Values from the environment arrive either already decoded as JSON or as
    plain strings, so both forms are accepted.
    """

    annotations = config.get("ANNOTATIONS")
    if annotations is None:
        annotations = default_annotations(str(config["PROXY_VERSION"]))
    elif isinstance(annotations, str):
        try:
            annotations = json.loads(annotations)
        except json.JSONDecodeError as err:
            raise ConfigError(f"ANNOTATIONS is not valid JSON: {err}") from err

    skip_namespaces = config["SKIP_NAMESPACES"]
    if isinstance(skip_namespaces, str):
        skip_namespaces = [ns.strip() for ns in skip_namespaces.split(",") if ns.strip()]

    try:
        return InjectorConfig(
            annotations=annotations, skip_namespaces=tuple(skip_namespaces)
        )
    except pydantic.ValidationError as err:
        raise ConfigError(f"invalid injector configuration: {err}") from err


def admission_error(err, uid: str | None = None) -> AdmissionResponse:
    return AdmissionResponse(uid=uid, status=AdmissionReviewStatus(message=str(err)))


def get_admission_decision(
    req: AdmissionRequest, config: InjectorConfig
) -> AdmissionResponse:
    try:
        pod = Pod.model_validate(req.object)
    except pydantic.ValidationError as err:
        LOG.error("could not unmarshal raw object: %s", err)
        return admission_error(err, uid=req.uid)

    # Diverges from using only the object namespace: the API server does not
    # always fill it in for new objects, so fall back to the request.
    namespace = pod.metadata.namespace or req.namespace
    name = pod.metadata.name or req.name

    LOG.info(
        "AdmissionReview for Kind=%s Namespace=%s Name=%s UID=%s Operation=%s UserInfo=%s",
        req.kind.kind if req.kind else "",
        namespace,
        name,
        req.uid,
        req.operation,
        req.userInfo.username,
    )

    if not should_inject(namespace, config.skip_namespaces):
        LOG.info("skipping inject for %s %s", namespace, name)
        return AdmissionResponse(allowed=True, uid=req.uid)

    actions = build_annotation_patch(pod.metadata.annotations, config.annotations)
    if not actions:
        return AdmissionResponse(allowed=True, uid=req.uid)

    try:
        patch = serialize_patch(actions)
    except PatchError as err:
        LOG.error("error creating patch: %s", err)
        return admission_error(err, uid=req.uid)

    return AdmissionResponse(
        allowed=True,
        uid=req.uid,
        patchType=PatchType.JSONPatch,
        patch=patch,
    )


def handle_admission_review(body: bytes | str, config: InjectorConfig) -> bytes:
    """Map a serialized AdmissionReview request to a serialized response.

    Failures are reported inside the response; an empty result means the
    response itself could not be encoded.
    """

    api_version = ApiVersion.V1

    try:
        review = AdmissionReview.model_validate_json(body)
    except pydantic.ValidationError as err:
        LOG.error("could not decode body: %s", err)
        response = admission_error(err)
    else:
        api_version = review.apiVersion
        if review.request is None:
            LOG.error("admission review contains no request")
            response = admission_error("admission review contains no request")
        else:
            response = get_admission_decision(review.request, config)

    try:
        return (
            AdmissionReview(apiVersion=api_version, response=response)
            .model_dump_json(exclude_none=True)
            .encode()
        )
    except (pydantic.ValidationError, PydanticSerializationError) as err:
        LOG.error("error encoding decision: %s", err)
        return b""


def mutate_pod():
    LOG.info("handling a request")

    if request.mimetype != "application/json":
        # The API server always sends JSON; anything else gets an empty reply.
        LOG.warning("wrong content type: %s", request.content_type)
        return "", 200

    res = handle_admission_review(request.get_data(), current_app.injector_config)
    LOG.debug("response: %s", res)
    return res, 200, {"content-type": "application/json"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    All settings are read once here; the resulting InjectorConfig is shared
    read-only by every request.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("INJECTOR")
    if config:
        app.config.update(config)

    app.injector_config = load_injector_config(app.config)

    app.add_url_rule("/", view_func=mutate_pod, methods=["POST"])

    return app


def parse_addr(addr) -> tuple[str, int]:
    """Split a "host:port" listen address. An empty host means all interfaces."""

    host, sep, port = str(addr).rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigError(f"invalid listen address: {addr}")

    return host.strip("[]") or "0.0.0.0", int(port)


def read_ca_bundle(path: str | None) -> bytes | None:
    if not path:
        return None

    with open(path, "rb") as fd:
        return fd.read()


def main():
    try:
        app = create_app()
        host, port = parse_addr(app.config["ADDR"])
    except ConfigError as err:
        LOG.error("%s", err)
        sys.exit(1)

    if app.config["REGISTER"]:
        try:
            ca_bundle = read_ca_bundle(app.config["CA_FILE"])
        except OSError as err:
            LOG.error("unable to read CA bundle: %s", err)
            sys.exit(1)

        start_registration(
            app.config["PROVIDER"],
            webhook_configuration(
                app.config["WEBHOOK_NAME"],
                app.config["SERVICE_NAME"],
                app.config["SERVICE_NAMESPACE"],
                app.config["SERVICE_PATH"],
                ca_bundle,
            ),
        )

    ssl_context = None
    if app.config["TLS_CERT_FILE"] and app.config["TLS_KEY_FILE"]:
        ssl_context = (app.config["TLS_CERT_FILE"], app.config["TLS_KEY_FILE"])
    else:
        LOG.warning("no TLS certificate configured, serving plain HTTP")

    LOG.info("starting webhook server on %s:%d", host, port)
    app.run(host=host, port=port, ssl_context=ssl_context, threaded=True)


if __name__ == "__main__":
    main()
