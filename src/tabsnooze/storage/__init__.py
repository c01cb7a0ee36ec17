"""Snooze store: versioned, self-healing container of scheduled items.

Backend keys:
    snoooze_v2                     # Current container {version, items, schedule}
    snoozedTabs                    # Pre-versioning legacy blob (migrated at startup)
    snoozedTabs_legacy_backup      # Legacy blob kept after migration
    snoozedTabs_backup_<epoch ms>  # Rolling snapshots (3 kept)
    sizeWarningActive / lastSizeWarningAt

All writes go through ``gateway.StorageGateway``.
"""
