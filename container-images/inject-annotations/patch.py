"""Build JSON Patch documents that add annotations to an object.

The patch only describes the change; the object passed in is never
modified. Paths are JSON Pointers, so annotation keys have to be escaped
(https://tools.ietf.org/html/rfc6901).
"""

import logging
from collections.abc import Iterable, Mapping

import pydantic
from pydantic_core import PydanticSerializationError

from exc import PatchError
from models import Patch, PatchAction, PatchOp

LOG = logging.getLogger(__name__)

ANNOTATIONS_PATH = "/metadata/annotations"


def json_patch_escape(val: str) -> str:
    return val.replace("~", "~0").replace("/", "~1")


def build_annotation_patch(
    existing: Mapping[str, str] | None, desired: Mapping[str, str]
) -> list[PatchAction]:
    """Return the operations that make `desired` present in `existing`.

    When the object has no annotations at all we cannot address individual
    keys, so the whole desired mapping is added in one operation. Otherwise
    each key gets its own add or replace.
    """

    if existing is None:
        return [PatchAction(op=PatchOp.ADD, path=ANNOTATIONS_PATH, value=dict(desired))]

    actions = []
    for key, val in desired.items():
        # An empty existing value is treated as missing.
        op = PatchOp.REPLACE if existing.get(key) else PatchOp.ADD
        actions.append(
            PatchAction(
                op=op, path=f"{ANNOTATIONS_PATH}/{json_patch_escape(key)}", value=val
            )
        )

    return actions


def serialize_patch(actions: Iterable[PatchAction]) -> bytes:
    try:
        return Patch(list(actions)).model_dump_json().encode()
    except (pydantic.ValidationError, PydanticSerializationError) as err:
        LOG.error("failed to serialize patch: %s", err)
        raise PatchError(f"failed to serialize patch: {err}") from err
