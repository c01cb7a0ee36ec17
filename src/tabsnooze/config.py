"""Configuration loading from environment variables and tabsnooze.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".tabsnooze"
_CONFIG_FILENAME = "tabsnooze.toml"


@dataclass
class StorageConfig:
    """Where and how the store is persisted."""

    data_file: Path = _DEFAULT_HOME / "store.json"
    backup_count: int = 3
    backup_debounce: float = 2.0


@dataclass
class SchedulerConfig:
    """Restoration scheduler configuration."""

    check_interval: int = 60
    max_attempts: int = 3
    retry_delay: float = 0.2
    reschedule_minutes: int = 5
    connectivity_host: str = "1.1.1.1"
    connectivity_port: int = 53


@dataclass
class SnoozeConfig:
    """Top-level configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    pid_file: Path = _DEFAULT_HOME / "tabsnooze.pid"
    log_level: str = "INFO"


def load_config(config_path: Path | None = None) -> SnoozeConfig:
    """Load configuration from environment variables and optional tabsnooze.toml.

    Priority: environment variables > tabsnooze.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.tabsnooze/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_HOME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    storage_data = file_data.get("storage", {})
    scheduler_data = file_data.get("scheduler", {})
    defaults = StorageConfig()

    config = SnoozeConfig(
        storage=StorageConfig(
            data_file=Path(
                os.getenv("TABSNOOZE_DATA_FILE", storage_data.get("data_file", str(defaults.data_file)))
            ).expanduser(),
            backup_count=int(os.getenv("TABSNOOZE_BACKUP_COUNT", storage_data.get("backup_count", 3))),
            backup_debounce=float(
                os.getenv("TABSNOOZE_BACKUP_DEBOUNCE", storage_data.get("backup_debounce", 2.0))
            ),
        ),
        scheduler=SchedulerConfig(
            check_interval=int(
                os.getenv("TABSNOOZE_CHECK_INTERVAL", scheduler_data.get("check_interval", 60))
            ),
            max_attempts=int(scheduler_data.get("max_attempts", 3)),
            retry_delay=float(scheduler_data.get("retry_delay", 0.2)),
            reschedule_minutes=int(scheduler_data.get("reschedule_minutes", 5)),
            connectivity_host=scheduler_data.get("connectivity_host", "1.1.1.1"),
            connectivity_port=int(scheduler_data.get("connectivity_port", 53)),
        ),
        pid_file=Path(file_data.get("pid_file", str(_DEFAULT_HOME / "tabsnooze.pid"))).expanduser(),
        log_level=os.getenv("TABSNOOZE_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
