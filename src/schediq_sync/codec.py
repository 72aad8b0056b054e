"""
Payload encoding and response decoding for the resource API.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from typing import Any

from .models import ResourceKind
from .ownership import normalize_owners

SERVER_OWNED_FIELDS = ("id", "created_at", "updated_at")


def sanitize_for_write(record: Any) -> Any:
    """Deep-copy a record without the fields the server assigns itself."""
    if not isinstance(record, dict):
        return record
    clean = copy.deepcopy(record)
    for key in SERVER_OWNED_FIELDS:
        clean.pop(key, None)
    return clean


def _raw_owners(record: dict[str, Any]) -> Any:
    # an explicit empty owner list is a real value, only absence falls back
    if record.get("owners") is not None:
        return record["owners"]
    return record.get("module_owners") or []


def normalize_ownership_for_write(module: dict[str, Any], teams: Iterable[Any]) -> dict[str, Any]:
    """Build the module write payload with its owners normalized and re-keyed."""
    owners = normalize_owners(_raw_owners(module), teams)
    payload = {
        "name": module.get("name"),
        "description": module.get("description"),
        "module_owners": [entry.to_dict() for entry in owners],
    }
    return sanitize_for_write(payload)


def unwrap_collection(body: Any, kind: ResourceKind | str) -> list[Any]:
    """Extract the record list from any of the envelopes the API answers with.

    Accepted shapes: a bare list, ``{kind: [...]}``, ``{"data": [...]}`` and
    ``{"data": {kind: [...]}}``. Anything else yields an empty list.
    """
    key = ResourceKind(kind).value
    if isinstance(body, list):
        return list(body)
    if not isinstance(body, dict):
        return []

    if isinstance(body.get(key), list):
        return list(body[key])

    data = body.get("data")
    if isinstance(data, list):
        return list(data)
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return list(data[key])
    return []


def _decode_module(record: dict[str, Any]) -> dict[str, Any]:
    return {**record, "owners": _raw_owners(record)}


def decode_collection(kind: ResourceKind | str, body: Any) -> list[dict[str, Any]]:
    """Turn a list response into canonical in-memory records."""
    kind = ResourceKind(kind)
    records = [item for item in unwrap_collection(body, kind) if isinstance(item, dict)]
    if kind is ResourceKind.MODULES:
        return [_decode_module(record) for record in records]
    return records
