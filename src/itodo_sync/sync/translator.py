# src/itodo_sync/sync/translator.py

"""
Local <-> remote row mapping.

Local rows use 0/1 integers and epoch-millisecond timestamps; remote rows use
native booleans, ISO-8601 timestamps and the remote column names
(user_id, estimated_time, order). The tri-state delete flag passes through as-is.

The entity type is always passed explicitly; it is never guessed from the fields.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from ..core.clock import to_iso, to_millis
from ..storage.models import DEFAULT_LAYOUT_MODE, Entity, EntityType, entity_from_dict

# local name -> remote name (only where they differ)
_RENAMES: dict[EntityType, dict[str, str]] = {
    EntityType.TASK: {
        "owner_id": "user_id",
        "estimate": "estimated_time",
        "sort_order": "order",
    },
    EntityType.TASK_LIST: {
        "owner_id": "user_id",
    },
}

_REVERSE: dict[EntityType, dict[str, str]] = {
    et: {remote: local for local, remote in names.items()} for et, names in _RENAMES.items()
}

# local 0/1 columns that are booleans remotely
_BOOL_FIELDS: dict[EntityType, frozenset[str]] = {
    EntityType.TASK: frozenset({"completed"}),
    EntityType.TASK_LIST: frozenset({"is_active", "show_eta"}),
}

_TIMESTAMP_FIELDS = frozenset({"created_at", "updated_at"})


def fields_to_remote(entity_type: EntityType, fields: Mapping[str, Any]) -> dict[str, Any]:
    """Translate a (possibly partial) local field mapping into remote columns."""
    et = EntityType(entity_type)
    renames = _RENAMES[et]
    bools = _BOOL_FIELDS[et]
    out: dict[str, Any] = {}
    for name, value in fields.items():
        if name in bools:
            value = bool(value)
        elif name in _TIMESTAMP_FIELDS and value is not None:
            value = to_iso(value)
        elif name == "deleted":
            value = int(value or 0)
        out[renames.get(name, name)] = value
    return out


def fields_from_remote(entity_type: EntityType, row: Mapping[str, Any]) -> dict[str, Any]:
    """Translate (possibly partial) remote columns into local field names and encodings."""
    et = EntityType(entity_type)
    reverse = _REVERSE[et]
    bools = _BOOL_FIELDS[et]
    out: dict[str, Any] = {}
    for name, value in row.items():
        local = reverse.get(name, name)
        if local in bools:
            value = bool(value) if local == "show_eta" else (1 if value else 0)
        elif local in _TIMESTAMP_FIELDS and value is not None:
            value = to_millis(value)
        elif local == "deleted":
            value = int(value or 0)
        out[local] = value
    return out


def to_remote(entity_type: EntityType, entity: Entity, owner_id: str) -> dict[str, Any]:
    """Full remote row for an insert; owner_id becomes user_id."""
    if not owner_id:
        raise ValueError("owner_id is required")
    data = entity.to_dict()
    data["owner_id"] = owner_id
    row = fields_to_remote(entity_type, data)
    if EntityType(entity_type) == EntityType.TASK:
        row.setdefault("estimated_time", "")
        row["estimated_time"] = row["estimated_time"] or ""
        row["order"] = row.get("order") or 0
    else:
        row["layout_mode"] = row.get("layout_mode") or DEFAULT_LAYOUT_MODE
        row["show_eta"] = data.get("show_eta") is not False
    return row


def from_remote(entity_type: EntityType, row: Mapping[str, Any]) -> Entity:
    """Build a local entity from a remote row, keeping the remote timestamps."""
    data = fields_from_remote(entity_type, row)
    if EntityType(entity_type) == EntityType.TASK:
        data["estimate"] = data.get("estimate") or ""
        data["sort_order"] = data.get("sort_order") or 0
    else:
        data["layout_mode"] = data.get("layout_mode") or DEFAULT_LAYOUT_MODE
        data["show_eta"] = row.get("show_eta") is not False
    return entity_from_dict(entity_type, data)


def batch_to_remote(entity_type: EntityType, entities: Iterable[Entity], owner_id: str) -> list[dict[str, Any]]:
    return [to_remote(entity_type, e, owner_id) for e in entities]


def batch_from_remote(entity_type: EntityType, rows: Iterable[Mapping[str, Any]]) -> list[Entity]:
    return [from_remote(entity_type, r) for r in rows]
