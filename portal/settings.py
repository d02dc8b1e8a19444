"""
portal/settings.py -- Settings Gate: typed key/value access to system_settings.

Values are stored as JSON text. get() returns the decoded value, or the
registered default when the key is absent. set() is an upsert.

The sync job does not read settings ad hoc: load_sync_config() snapshots the
relevant keys into a frozen SyncConfig once per invocation and the job works
from that snapshot.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, Optional

from sqlalchemy.engine import Connection

from core.exceptions import ValidationError
from portal.models import SyncConfig
from portal.store import PortalStore

logger = logging.getLogger("appportal.settings")

SYNC_ENABLED = "catalog_sync_enabled"
SYNC_FREQUENCY_HOURS = "catalog_sync_frequency_hours"
SYNC_LAST_RUN = "catalog_sync_last_run"

# key -> (default, description). Seeded on startup; also the fallback for get().
DEFAULTS: dict[str, tuple[Any, str]] = {
    SYNC_ENABLED: (True, "Enable automatic catalog synchronization"),
    SYNC_FREQUENCY_HOURS: (6, "How often to sync with master catalog (hours)"),
    SYNC_LAST_RUN: (None, "Timestamp of last successful catalog sync"),
}

# Type checks applied by put() to keys the sync job reads.
_VALIDATORS: dict[str, Callable[[Any], bool]] = {
    SYNC_ENABLED: lambda v: isinstance(v, bool),
    SYNC_FREQUENCY_HOURS: lambda v: isinstance(v, int) and not isinstance(v, bool) and v >= 1,
    SYNC_LAST_RUN: lambda v: v is None or isinstance(v, str),
}


class SettingsGate:
    def __init__(self, store: PortalStore, stale_after_hours: int = 24) -> None:
        self.store = store
        self.stale_after_hours = stale_after_hours

    def seed_defaults(self) -> None:
        """Insert every default key that is not already present. Idempotent."""
        with self.store.transaction() as conn:
            for key, (default, description) in DEFAULTS.items():
                self.store.seed_setting(conn, key, json.dumps(default), description)

    def get(self, key: str, conn: Optional[Connection] = None) -> Any:
        raw = self.store.get_setting(key, conn=conn)
        if raw is None:
            return DEFAULTS.get(key, (None, ""))[0]
        return json.loads(raw)

    def set(
        self,
        key: str,
        value: Any,
        updated_by: Optional[int] = None,
        conn: Optional[Connection] = None,
    ) -> None:
        description = DEFAULTS.get(key, (None, None))[1]
        if conn is not None:
            self.store.upsert_setting(conn, key, json.dumps(value), updated_by, description)
            return
        with self.store.transaction() as own:
            self.store.upsert_setting(own, key, json.dumps(value), updated_by, description)

    def all(self) -> dict[str, Any]:
        """Return every stored setting decoded, keyed by name."""
        return {key: json.loads(raw) if raw is not None else None for key, raw in self.store.list_settings().items()}

    def put(
        self,
        key: str,
        value: Any,
        updated_by: Optional[int] = None,
        conn: Optional[Connection] = None,
    ) -> None:
        """Upsert one setting by key. Known keys are type-checked first."""
        if not key or len(key) > 100:
            raise ValidationError("Setting key must be 1-100 characters.", key=key)
        check = _VALIDATORS.get(key)
        if check is not None and not check(value):
            raise ValidationError(f"Invalid value for setting '{key}'.", key=key)
        self.set(key, value, updated_by, conn=conn)
        logger.info("Setting %s updated by user %s", key, updated_by)

    def load_sync_config(self) -> SyncConfig:
        return SyncConfig(
            enabled=bool(self.get(SYNC_ENABLED)),
            frequency_hours=int(self.get(SYNC_FREQUENCY_HOURS)),
            last_run=self.get(SYNC_LAST_RUN),
            stale_after_hours=self.stale_after_hours,
        )

    def update_sync_settings(
        self,
        updated_by: Optional[int],
        enabled: Optional[bool] = None,
        frequency_hours: Optional[int] = None,
    ) -> SyncConfig:
        """Apply a partial update to the sync settings in one transaction."""
        if frequency_hours is not None and frequency_hours < 1:
            raise ValidationError("frequency_hours must be at least 1.")
        with self.store.transaction() as conn:
            if enabled is not None:
                self.set(SYNC_ENABLED, enabled, updated_by, conn=conn)
            if frequency_hours is not None:
                self.set(SYNC_FREQUENCY_HOURS, frequency_hours, updated_by, conn=conn)
        logger.info(
            "Sync settings updated by user %s (enabled=%s, frequency_hours=%s)",
            updated_by,
            enabled,
            frequency_hours,
        )
        return self.load_sync_config()
