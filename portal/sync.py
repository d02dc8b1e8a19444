"""
portal/sync.py -- Catalog sync job: trigger, reconcile, schedule.

trigger() validates the gate, records a 'running' CatalogSyncLog row and
submits reconcile() to a worker pool, returning the sync_id immediately.
Callers poll the log (GET /catalog/sync/logs) for the outcome; reconcile
failures are never surfaced to the triggering request.

reconcile() is one transaction:
  1. Load master-catalog candidates (tiles with an app_identifier) and the
     current store view indexed by identifier.
  2. Per candidate, inside a SAVEPOINT: publish it if the store has no entry
     for its identifier (added), else refresh the store entry's descriptive
     fields COALESCE-style (updated). A failing item rolls back only its
     savepoint and is recorded in ``errors``.
  3. Sweep in-store tiles whose master_catalog_synced_at is older than the
     staleness window (marked unavailable).
  4. Close the log as 'completed' and stamp catalog_sync_last_run.
On any other error the transaction rolls back and the log is closed as
'failed' in a fresh transaction.

Overlapping runs are not serialized. A warning is logged when a trigger
starts while another run is still 'running'.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from core.exceptions import SyncDisabled
from portal.models import AuditEntry, CatalogSyncLog, ReconcileResult, SyncConfig
from portal.settings import SYNC_LAST_RUN, SettingsGate
from portal.store import PortalStore

logger = logging.getLogger("appportal.sync")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


def _parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class CatalogSyncService:
    """Owns the sync worker pool and every operation on catalog_sync_logs.

    Pass ``executor`` to control where reconcile runs (tests inject an
    executor that runs work inline). When omitted, a ThreadPoolExecutor is
    created and shut down by shutdown().
    """

    def __init__(
        self,
        store: PortalStore,
        gate: SettingsGate,
        executor: Optional[Executor] = None,
        max_workers: int = 2,
    ) -> None:
        self.store = store
        self.gate = gate
        self._owns_executor = executor is None
        self._executor: Executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="catalog-sync"
        )

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True, cancel_futures=True)

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    def trigger(
        self,
        actor_id: Optional[int],
        mode: str = "on_demand",
        sync_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        """Start a sync run in the background and return its sync_id.

        A caller-supplied sync_id that already has a log row is returned
        unchanged without starting another run.
        """
        config = self.gate.load_sync_config()
        if not config.enabled:
            raise SyncDisabled("Catalog sync is disabled.")

        if sync_id and self.store.get_sync_log(sync_id) is not None:
            logger.info("Sync %s already exists; not starting a second run", sync_id)
            return sync_id
        sync_id = sync_id or str(uuid.uuid4())

        running = self.store.count_running_syncs()
        if running:
            logger.warning("Starting sync %s while %d other run(s) are still running", sync_id, running)

        start_time = _iso(_now())
        try:
            with self.store.transaction() as conn:
                self.store.insert_sync_log(
                    CatalogSyncLog(sync_id=sync_id, start_time=start_time, triggered_by=actor_id, sync_mode=mode),
                    conn=conn,
                )
                self.store.write_audit(
                    AuditEntry(
                        actor_id=actor_id,
                        action="catalog.sync_triggered",
                        target_id=sync_id,
                        details={"sync_mode": mode},
                        ip_address=ip_address,
                    ),
                    conn=conn,
                )
        except IntegrityError:
            # Same sync_id inserted concurrently by another trigger.
            logger.info("Sync %s already exists; not starting a second run", sync_id)
            return sync_id

        logger.info("Sync %s started (%s) by %s", sync_id, mode, actor_id if actor_id is not None else "scheduler")
        self._executor.submit(self._run, sync_id, actor_id, start_time, config)
        return sync_id

    def _run(self, sync_id: str, triggered_by: Optional[int], start_time: str, config: SyncConfig) -> None:
        try:
            self.reconcile(sync_id, triggered_by, start_time, config)
        except Exception:
            # reconcile() has already closed the log as failed.
            logger.exception("Sync %s failed", sync_id)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def reconcile(
        self,
        sync_id: str,
        triggered_by: Optional[int],
        start_time: str,
        config: Optional[SyncConfig] = None,
    ) -> ReconcileResult:
        config = config or self.gate.load_sync_config()
        now = _now()
        now_iso = _iso(now)
        cutoff = _iso(now - timedelta(hours=config.stale_after_hours))
        result = ReconcileResult()

        try:
            with self.store.transaction() as conn:
                candidates = self.store.list_master_candidates(conn)
                store_view = self.store.list_store_tiles_by_identifier(conn)

                for master in candidates:
                    try:
                        with conn.begin_nested():
                            current = store_view.get(master.app_identifier)
                            if current is None:
                                self.store.mark_tile_synced(conn, master.id, now_iso)
                                result.apps_added += 1
                            else:
                                self.store.refresh_tile_from_master(conn, current.id, master, now_iso)
                                result.apps_updated += 1
                    except Exception as exc:
                        logger.warning("Sync %s: tile %s failed: %s", sync_id, master.app_identifier, exc)
                        result.errors.append({"field": master.app_identifier, "message": str(exc)})

                result.apps_marked_unavailable = self.store.sweep_stale_tiles(conn, cutoff, now_iso)

                self.store.close_sync_log(
                    sync_id,
                    "completed",
                    result.errors,
                    apps_added=result.apps_added,
                    apps_updated=result.apps_updated,
                    apps_marked_unavailable=result.apps_marked_unavailable,
                    conn=conn,
                )
                # last_run is the start of this run, not its completion.
                self.gate.set(SYNC_LAST_RUN, start_time, updated_by=triggered_by, conn=conn)
        except Exception as exc:
            self.store.close_sync_log(sync_id, "failed", [{"field": "sync", "message": str(exc)}])
            raise

        logger.info(
            "Sync %s completed (started %s): added=%d updated=%d marked_unavailable=%d errors=%d",
            sync_id,
            start_time,
            result.apps_added,
            result.apps_updated,
            result.apps_marked_unavailable,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    def is_due(self, config: SyncConfig, now: Optional[datetime] = None) -> bool:
        if not config.enabled:
            return False
        if not config.last_run:
            return True
        now = now or _now()
        return now - _parse_iso(config.last_run) >= timedelta(hours=config.frequency_hours)

    def run_if_due(self) -> Optional[str]:
        """Trigger a scheduled run when enabled and the frequency has elapsed."""
        if not self.is_due(self.gate.load_sync_config()):
            return None
        return self.trigger(actor_id=None, mode="scheduled")

    # ------------------------------------------------------------------
    # Reads / store publishing
    # ------------------------------------------------------------------

    def status(self) -> dict:
        config = self.gate.load_sync_config()
        logs = self.store.list_sync_logs(limit=1)
        return {
            "settings": {
                "enabled": config.enabled,
                "frequency_hours": config.frequency_hours,
                "last_run": config.last_run,
            },
            "last_sync": logs[0] if logs else None,
        }

    def logs(self, limit: int = 20, offset: int = 0) -> list[CatalogSyncLog]:
        return self.store.list_sync_logs(limit=limit, offset=offset)

    def publish_store(self, actor_id: int, ip_address: Optional[str] = None) -> dict:
        """Make every active tile visible in the store. Returns counts."""
        with self.store.transaction() as conn:
            synced = self.store.publish_active_tiles(conn)
            self.store.write_audit(
                AuditEntry(
                    actor_id=actor_id,
                    action="store.sync",
                    details={"apps_synced": synced},
                    ip_address=ip_address,
                ),
                conn=conn,
            )
        counts_after = self.store.tile_counts()
        logger.info("Store sync by user %s published %d tile(s)", actor_id, synced)
        return {"apps_synced": synced, "total_catalog_apps": counts_after["catalog_apps"]}


class InlineExecutor(Executor):
    """Executor that runs work synchronously in the submitting thread.

    Used by the CLI (a one-shot process must not exit before the run ends)
    and by the test suite for deterministic sync runs.
    """

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future
