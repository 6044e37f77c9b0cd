"""Module for resolving the render arguments of a KclInstance.

Arguments start from the inline `config.arguments` and are then overridden by
each `config.argumentsFrom` reference in declared order. A reference either
contributes the top level keys of a mapping, or a single scalar value stored
under its `targetPath`.
"""

import base64
import binascii
import datetime
import json
import logging
import re
from typing import Any

import yaml

from .cluster import ClusterClient
from .exceptions import (
    ReferenceKeyMissing,
    ReferenceMalformed,
    ReferenceNotFound,
)
from .manifest import (
    CONFIG_MAP_KIND,
    SECRET_KIND,
    ArgumentsReference,
    KclInstance,
    NamedResource,
)

__all__ = ["resolve_arguments"]

_LOGGER = logging.getLogger(__name__)

_SCALAR_TYPES = (str, int, float, bool, datetime.date)


def _decode(ref_id: str, data: dict[str, str]) -> dict[str, str]:
    try:
        return {
            key: base64.b64decode(value, validate=True).decode("utf-8")
            for key, value in data.items()
        }
    except (binascii.Error, UnicodeDecodeError) as err:
        raise ReferenceMalformed(f"Unable to decode data of {ref_id}: {err}") from err


def _object_data(ref_id: str, obj: dict[str, Any]) -> dict[str, str]:
    """Return the decoded key-value data of a ConfigMap or Secret."""
    result: dict[str, str] = {}
    if obj["kind"] == SECRET_KIND:
        result.update(_decode(ref_id, obj.get("data") or {}))
        result.update(obj.get("stringData") or {})
    else:
        result.update(obj.get("data") or {})
        result.update(_decode(ref_id, obj.get("binaryData") or {}))
    return result


def format_value(value: Any) -> str:
    """Render a parsed value as a string argument."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, _SCALAR_TYPES):
        return str(value)
    if value is None:
        return ""
    return json.dumps(value, separators=(",", ":"), default=str)


def target_key(ref_id: str, target_path: str) -> str:
    """Return the flat argument key for a dot-notation target path.

    Dots escaped as `\\.` are part of a path segment.
    """
    parts = re.split(r"(?<!\\)\.", target_path)
    if not all(parts):
        raise ReferenceMalformed(
            f"Invalid targetPath '{target_path}' in reference {ref_id}"
        )
    return ".".join(part.replace("\\.", ".") for part in parts)


async def _lookup(
    ref: ArgumentsReference, instance: KclInstance, cluster: ClusterClient
) -> str | None:
    """Return the raw value of a reference, or None for a missing optional object."""
    ref_id = f"{ref.kind} {instance.namespace}/{ref.name}"
    if ref.kind not in (CONFIG_MAP_KIND, SECRET_KIND):
        raise ReferenceMalformed(f"Unsupported argumentsFrom kind {ref.kind}")
    obj = await cluster.get(NamedResource(ref.kind, instance.namespace, ref.name))
    if obj is None:
        if ref.optional:
            _LOGGER.debug("Optional reference %s not found, skipping", ref_id)
            return None
        raise ReferenceNotFound(f"Unable to find referenced {ref_id}")
    data = _object_data(ref_id, obj)
    if (value := data.get(ref.arguments_key)) is None:
        raise ReferenceKeyMissing(
            f"Unable to find key '{ref.arguments_key}' in {ref_id}"
        )
    return value


def _parse(ref: ArgumentsReference, ref_id: str, raw: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as err:
        raise ReferenceMalformed(
            f"Unable to parse key '{ref.arguments_key}' of {ref_id}: {err}"
        ) from err


async def resolve_arguments(
    instance: KclInstance, cluster: ClusterClient
) -> dict[str, str]:
    """Build the flat argument mapping of an instance."""
    arguments: dict[str, str] = dict(instance.config.arguments)
    for ref in instance.config.arguments_from:
        if (raw := await _lookup(ref, instance, cluster)) is None:
            continue
        ref_id = f"{ref.kind} {instance.namespace}/{ref.name}"
        value = _parse(ref, ref_id, raw)
        if ref.target_path:
            if value is None or not isinstance(value, _SCALAR_TYPES):
                raise ReferenceMalformed(
                    f"Expected a scalar value for targetPath '{ref.target_path}' "
                    f"in key '{ref.arguments_key}' of {ref_id}"
                )
            arguments[target_key(ref_id, ref.target_path)] = format_value(value)
            continue
        if value is None:
            value = {}
        if not isinstance(value, dict):
            raise ReferenceMalformed(
                f"Expected a mapping in key '{ref.arguments_key}' of {ref_id}, "
                f"got {type(value).__name__}"
            )
        _LOGGER.debug("Merging %d arguments from %s", len(value), ref_id)
        for key, item in value.items():
            arguments[str(key)] = format_value(item)
    return arguments
