import base64
from enum import StrEnum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    field_validator,
    model_validator,
)


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"
    V1BETA1 = "admission.k8s.io/v1beta1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    REPLACE = "replace"
    ADD = "add"
    REMOVE = "remove"


class PatchAction(BaseModel):
    op: PatchOp
    path: str
    value: Any


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    # Responses to undecodable requests have no uid to echo.
    uid: str | None = None
    allowed: bool = False
    status: AdmissionReviewStatus | None = None
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.model_dump_json().encode()).decode()
        elif isinstance(val, bytes):
            # Raw patch document, as produced by patch.serialize_patch.
            Patch.model_validate_json(val)
            val = base64.b64encode(val).decode()
        elif isinstance(val, str):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")

        return self


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


class GroupVersionResource(BaseModel):
    group: str = ""
    version: str = ""
    resource: str = ""


class UserInfo(BaseModel):
    username: str = ""
    uid: str = ""
    groups: list[str] = []
    extra: dict[str, list[str]] = {}


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: str
    kind: GroupVersionKind | None = None
    resource: GroupVersionResource | None = None
    namespace: str = ""
    name: str = ""
    operation: Operation = Operation.CREATE
    userInfo: UserInfo = Field(default_factory=UserInfo)
    # Any JSON is accepted here; it is checked when parsed into a Pod.
    object: Any = None
    dryRun: bool | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: ApiVersion = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


class ObjectMeta(BaseModel):
    name: str = ""
    namespace: str = ""
    # None means the object has no annotations at all, which is not the
    # same thing as an empty mapping.
    annotations: dict[str, str] | None = None

    @field_validator("name", "namespace", mode="before")
    @classmethod
    def validate_string(cls, val):
        return "" if val is None else val

    @field_validator("annotations", mode="before")
    @classmethod
    def validate_annotations(cls, val):
        # A null value reads as an empty string, like any other missing one.
        if isinstance(val, dict):
            val = {key: "" if v is None else v for key, v in val.items()}
        return val


class Pod(BaseModel):
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    @field_validator("metadata", mode="before")
    @classmethod
    def validate_metadata(cls, val):
        return {} if val is None else val


class InjectorConfig(BaseModel):
    """Static settings shared by every request."""

    model_config = ConfigDict(frozen=True)

    annotations: dict[str, str]
    skip_namespaces: tuple[str, ...]
