"""Exception taxonomy for the snooze store and restoration scheduler."""

from __future__ import annotations


class SnoozeError(Exception):
    """Base class for all tabsnooze errors."""


class ValidationError(SnoozeError):
    """Structural violation of an item or container. Recoverable via sanitize()."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


class MigrationGapError(SnoozeError):
    """No upgrade step registered for an intermediate schema version."""

    def __init__(self, from_version: int, message: str | None = None) -> None:
        self.from_version = from_version
        super().__init__(
            message or f"No migration found from version {from_version} to {from_version + 1}"
        )


class FutureSchemaError(MigrationGapError):
    """Payload comes from a newer schema than this build understands."""

    def __init__(self, from_version: int, current_version: int) -> None:
        self.current_version = current_version
        super().__init__(
            from_version,
            f"Cannot import data from future schema version {from_version}. "
            f"Current version is {current_version}.",
        )


class CorruptionError(SnoozeError):
    """Primary store invalid and no backup sanitizes to any items."""


class TransientRestoreError(SnoozeError):
    """A single restoration surface call failed; eligible for retry."""


class PermanentRestoreFailure(SnoozeError):
    """Retry bound exhausted for an item or group."""

    def __init__(self, message: str, last_error: BaseException | None = None) -> None:
        self.last_error = last_error
        super().__init__(message)


class BackendError(SnoozeError):
    """The key-value service itself failed."""
