"""Structural validation and repair of the snooze store.

All functions here are pure: they never touch the backend and never mutate
their input. ``validate_*`` report problems, ``check_*`` raise them, and
``sanitize`` drops whatever cannot be trusted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from tabsnooze.errors import ValidationError

RESTRICTED_SCHEMES = ("chrome", "edge", "brave", "about", "chrome-extension", "file")

# Schemes that must carry a host to be openable.
_HOST_SCHEMES = ("http", "https", "ftp", "ws", "wss")

REQUIRED_ITEM_FIELDS = ("url", "creationTime", "popTime")


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.valid


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_restorable_url(url: Any) -> bool:
    """Return True if *url* can ever be reopened by the restoration surface."""
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    scheme = parts.scheme.lower()
    if not scheme or scheme in RESTRICTED_SCHEMES:
        return False
    if scheme in _HOST_SCHEMES and not parts.netloc:
        return False
    return True


def validate_item(item: Any) -> ValidationResult:
    """Check required fields of a single item.

    Optional fields (title, favicon, groupId, index) are not type-checked.
    URL restorability is not checked here; it is enforced at snooze and
    migration time.
    """
    if not isinstance(item, dict):
        return ValidationResult(False, ["Item is not an object"])

    errors = [f"Missing required field: {name}" for name in REQUIRED_ITEM_FIELDS if name not in item]

    if "url" in item and not isinstance(item["url"], str):
        errors.append("url must be a string")
    if "creationTime" in item and not _is_number(item["creationTime"]):
        errors.append("creationTime must be a number")
    if "popTime" in item and not _is_number(item["popTime"]):
        errors.append("popTime must be a number")

    return ValidationResult(not errors, errors)


def validate_container(container: Any) -> ValidationResult:
    """Check the whole container: item shapes, key/id agreement, schedule references."""
    if not isinstance(container, dict):
        return ValidationResult(False, ["Container is not an object"])

    errors: list[str] = []
    items = container.get("items")
    schedule = container.get("schedule")
    if not isinstance(items, dict):
        errors.append("Missing items object")
    if not isinstance(schedule, dict):
        errors.append("Missing schedule object")
    if errors:
        return ValidationResult(False, errors)

    for key, item in items.items():
        result = validate_item(item)
        if not result.valid:
            errors.append(f"Invalid item {key}: {', '.join(result.errors)}")
            if not isinstance(item, dict):
                continue
        if item.get("id") != key:
            errors.append(f"ID mismatch: key {key} vs item id {item.get('id')}")

    for time_key, ids in schedule.items():
        if not isinstance(ids, list):
            errors.append(f"Schedule at {time_key} is not an array")
            continue
        for item_id in ids:
            if not isinstance(item_id, str) or item_id not in items:
                errors.append(f"Schedule references missing item ID: {item_id} at time {time_key}")

    return ValidationResult(not errors, errors)


def check_item(item: Any) -> None:
    result = validate_item(item)
    if not result.valid:
        raise ValidationError(result.errors)


def check_container(container: Any) -> None:
    result = validate_container(container)
    if not result.valid:
        raise ValidationError(result.errors)


def sanitize(container: Any) -> dict[str, dict]:
    """Return a best-effort valid ``{"items", "schedule"}`` pair. Never raises.

    Keeps items that validate and whose key equals their id; rebuilds the
    schedule from surviving ids and drops empty buckets. The result carries
    no ``version``; callers stamp the current one.
    """
    items: dict[str, dict] = {}
    schedule: dict[str, list[str]] = {}
    if not isinstance(container, dict):
        return {"items": items, "schedule": schedule}

    raw_items = container.get("items")
    if isinstance(raw_items, dict):
        for key, item in raw_items.items():
            if validate_item(item).valid and item.get("id") == key:
                items[key] = dict(item)

    raw_schedule = container.get("schedule")
    if isinstance(raw_schedule, dict):
        for time_key, ids in raw_schedule.items():
            if not isinstance(ids, list):
                continue
            kept = [i for i in ids if isinstance(i, str) and i in items]
            if kept:
                schedule[str(time_key)] = kept

    return {"items": items, "schedule": schedule}
