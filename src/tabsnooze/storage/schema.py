"""Schema versioning: classify raw blobs and upgrade them step by step.

Known encodings:
    v1 (legacy)  {"tabCount": n, "<epoch ms>": [tab, ...], ...}
    v2 (current) {"version": 2, "items": {id: item}, "schedule": {"<epoch ms>": [id, ...]}}

Each upgrade is registered in ``MIGRATIONS`` under its source version and
produces data at exactly ``source + 1``.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tabsnooze.errors import MigrationGapError
from tabsnooze.storage.validation import is_restorable_url, sanitize, validate_container

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2

LEGACY_COUNTER_KEY = "tabCount"

Migration = Callable[[dict], dict]


class SchemaKind(Enum):
    UNKNOWN = "unknown"
    EXPLICIT = "explicit"
    LEGACY_V1 = "legacy_v1"
    V2 = "v2"


@dataclass(frozen=True)
class SchemaInfo:
    """Result of classifying a raw blob."""

    kind: SchemaKind
    version: int | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def time_key(pop_time: int | float) -> str:
    return str(int(pop_time))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_int_key(key: str) -> bool:
    try:
        return str(int(key)) == key
    except (TypeError, ValueError):
        return False


def classify(raw: Any) -> SchemaInfo:
    """Classify *raw* into one of the known encodings."""
    if not isinstance(raw, dict):
        return SchemaInfo(SchemaKind.UNKNOWN)

    version = raw.get("version")
    if _is_number(version):
        return SchemaInfo(SchemaKind.EXPLICIT, int(version))

    if LEGACY_COUNTER_KEY in raw or any(_is_int_key(k) for k in raw):
        return SchemaInfo(SchemaKind.LEGACY_V1, 1)

    if "items" in raw and "schedule" in raw:
        return SchemaInfo(SchemaKind.V2, 2)

    return SchemaInfo(SchemaKind.UNKNOWN)


def detect_version(raw: Any) -> int | None:
    """Return the schema version of *raw*, or None if unrecognized."""
    return classify(raw).version


def _new_id() -> str:
    return str(uuid.uuid4())


def migrate_legacy_to_current(legacy: dict) -> dict:
    """v1 -> v2: flatten per-timestamp tab lists into items + schedule."""
    items: dict[str, dict] = {}
    schedule: dict[str, list[str]] = {}
    now = _now_ms()

    for key, tabs in legacy.items():
        if key == LEGACY_COUNTER_KEY:
            continue
        try:
            bucket_time = int(key)
        except (TypeError, ValueError):
            continue
        if not isinstance(tabs, list):
            continue

        for tab in tabs:
            if not isinstance(tab, dict) or not is_restorable_url(tab.get("url")):
                logger.debug("Dropping unrestorable legacy entry under %s", key)
                continue

            item_id = tab.get("id")
            if not isinstance(item_id, str) or not item_id:
                item_id = _new_id()
            while item_id in items:
                item_id = _new_id()

            pop_time = tab.get("popTime")
            pop_time = int(pop_time) if _is_number(pop_time) and pop_time else bucket_time
            items[item_id] = {
                "id": item_id,
                "url": tab["url"],
                "title": tab.get("title"),
                "favicon": tab.get("favicon"),
                "creationTime": tab.get("creationTime") or now,
                "popTime": pop_time,
                "groupId": tab.get("groupId"),
                "index": tab.get("index"),
            }
            schedule.setdefault(time_key(pop_time), []).append(item_id)

    return {"version": 2, "items": items, "schedule": schedule}


MIGRATIONS: dict[int, Migration] = {
    1: migrate_legacy_to_current,
}


def run_migrations(
    data: Any,
    from_version: int,
    to_version: int,
    migrations: dict[int, Migration] | None = None,
) -> Any:
    """Apply registered steps from *from_version* up to *to_version*.

    Raises MigrationGapError when a step is missing; no version is skipped.
    """
    table = MIGRATIONS if migrations is None else migrations
    if from_version == to_version:
        return data

    current = data
    version = from_version
    while version < to_version:
        step = table.get(version)
        if step is None:
            raise MigrationGapError(version)
        logger.info("Migrating store schema v%d -> v%d", version, version + 1)
        current = step(current)
        version += 1
    return current


def empty_container() -> dict:
    return {"version": CURRENT_SCHEMA_VERSION, "items": {}, "schedule": {}}


def ensure_valid(primary: Any, legacy: Any = None) -> dict:
    """Unified read path: detect, migrate, validate and repair.

    *primary* is the current-format blob; *legacy* is consulted only when the
    primary is missing or unrecognized. Always returns a valid container
    stamped with the current version.
    """
    data = primary
    version = detect_version(data)
    if version is None and legacy:
        data = legacy
        version = detect_version(data)

    if version is None:
        return empty_container()

    if version < CURRENT_SCHEMA_VERSION:
        data = run_migrations(data, version, CURRENT_SCHEMA_VERSION)

    data = {**data, "version": CURRENT_SCHEMA_VERSION}

    result = validate_container(data)
    if not result.valid:
        logger.warning("Store failed validation, sanitizing: %s", result.errors)
        return {"version": CURRENT_SCHEMA_VERSION, **sanitize(data)}
    return data
