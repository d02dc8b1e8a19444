"""Unit tests for portal/sync.py -- catalog sync trigger, reconcile, and schedule.

Covers:
- reconcile counters: one added, one updated, one marked unavailable
- a failing tile is recorded in errors without aborting the run
- an uncaught failure rolls back tile changes and closes the log as failed
- trigger(): disabled gate, caller-supplied sync_id idempotency, overlap warning
- a closed log row is never closed a second time
- is_due() / run_if_due() scheduling
- publish_store() counts
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import SyncDisabled
from portal.models import CatalogSyncLog, SyncConfig
from portal.settings import SYNC_ENABLED, SYNC_LAST_RUN

ADMIN = 1


def _hours_ago(hours: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat(timespec="microseconds")


@pytest.fixture
def catalog(make_tile):
    """Three tiles covering each reconcile outcome.

    new     -- master candidate not yet in the store       -> added
    listed  -- master candidate already in the store       -> updated
    stale   -- in the store, no longer in the master list,
               last seen 48h ago                           -> marked unavailable
    """
    return {
        "new": make_tile("New App", app_identifier="new-app"),
        "listed": make_tile(
            "Listed App",
            app_identifier="listed-app",
            is_available_in_store=True,
            sync_status="synced",
            master_catalog_synced_at=_hours_ago(2),
        ),
        "stale": make_tile(
            "Stale App",
            is_available_in_store=True,
            sync_status="synced",
            master_catalog_synced_at=_hours_ago(48),
        ),
    }


class TestReconcile:
    def test_counters_and_tile_state(self, sync_service, portal_store, gate, catalog):
        sync_id = sync_service.trigger(actor_id=ADMIN)
        log = portal_store.get_sync_log(sync_id)

        assert log.status == "completed"
        assert log.end_time is not None
        assert (log.apps_added, log.apps_updated, log.apps_marked_unavailable) == (1, 1, 1)
        assert log.errors == []

        new = portal_store.get_tile(catalog["new"])
        assert new.is_available_in_store is True
        assert new.sync_status == "synced"
        assert new.master_catalog_synced_at is not None

        stale = portal_store.get_tile(catalog["stale"])
        assert stale.is_available_in_store is False
        assert stale.sync_status == "unavailable"

        # last_run is the start of the run, not its completion.
        assert gate.get(SYNC_LAST_RUN) == log.start_time
        assert portal_store.list_audit(action="catalog.sync_triggered", target_id=sync_id)

    def test_unsynced_store_tile_is_not_swept(self, sync_service, portal_store, make_tile):
        manual = make_tile("Manual App", is_available_in_store=True)
        log = portal_store.get_sync_log(sync_service.trigger(actor_id=ADMIN))
        assert log.apps_marked_unavailable == 0
        assert portal_store.get_tile(manual).is_available_in_store is True

    def test_tile_failure_is_isolated(self, sync_service, portal_store, make_tile, monkeypatch):
        bad = make_tile("Bad App", app_identifier="bad-app")
        good = make_tile("Good App", app_identifier="good-app")
        real_mark = portal_store.mark_tile_synced

        def flaky(conn, tile_id, synced_at):
            if tile_id == bad:
                raise ValueError("malformed master record")
            return real_mark(conn, tile_id, synced_at)

        monkeypatch.setattr(portal_store, "mark_tile_synced", flaky)

        log = portal_store.get_sync_log(sync_service.trigger(actor_id=ADMIN))
        assert log.status == "completed"
        assert log.apps_added == 1
        assert log.errors == [{"field": "bad-app", "message": "malformed master record"}]
        assert portal_store.get_tile(good).is_available_in_store is True
        assert portal_store.get_tile(bad).is_available_in_store is False

    def test_uncaught_failure_rolls_back_and_logs_failed(self, sync_service, portal_store, gate, catalog, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("lost connection")

        monkeypatch.setattr(portal_store, "sweep_stale_tiles", boom)

        sync_id = sync_service.trigger(actor_id=ADMIN)
        log = portal_store.get_sync_log(sync_id)
        assert log.status == "failed"
        assert log.end_time is not None
        assert log.errors == [{"field": "sync", "message": "lost connection"}]
        assert log.apps_added == 0
        # Step 2 effects were rolled back.
        assert portal_store.get_tile(catalog["new"]).is_available_in_store is False
        assert gate.get(SYNC_LAST_RUN) is None

    def test_closed_log_is_not_closed_again(self, sync_service, portal_store):
        sync_id = sync_service.trigger(actor_id=ADMIN)
        portal_store.close_sync_log(sync_id, "failed", [{"field": "sync", "message": "late"}])
        log = portal_store.get_sync_log(sync_id)
        assert log.status == "completed"
        assert log.errors == []


class TestTrigger:
    def test_disabled_gate_rejects(self, sync_service, portal_store, gate):
        gate.set(SYNC_ENABLED, False)
        with pytest.raises(SyncDisabled) as exc_info:
            sync_service.trigger(actor_id=ADMIN)
        assert exc_info.value.status_code == 400
        assert portal_store.list_sync_logs() == []

    def test_caller_sync_id_is_idempotent(self, sync_service, portal_store):
        first = sync_service.trigger(actor_id=ADMIN, sync_id="nightly-1")
        second = sync_service.trigger(actor_id=ADMIN, sync_id="nightly-1")
        assert first == second == "nightly-1"
        assert len(portal_store.list_sync_logs()) == 1

    def test_generated_ids_are_unique(self, sync_service):
        assert sync_service.trigger(actor_id=ADMIN) != sync_service.trigger(actor_id=ADMIN)

    def test_overlapping_run_logs_warning(self, sync_service, portal_store, caplog):
        portal_store.insert_sync_log(CatalogSyncLog(sync_id="stuck", start_time=_hours_ago(1)))
        with caplog.at_level(logging.WARNING, logger="appportal.sync"):
            sync_id = sync_service.trigger(actor_id=ADMIN)
        assert "still running" in caplog.text
        assert portal_store.get_sync_log(sync_id).status == "completed"
        assert portal_store.get_sync_log("stuck").status == "running"

    def test_status_reports_latest_run(self, sync_service):
        sync_id = sync_service.trigger(actor_id=ADMIN)
        status = sync_service.status()
        assert status["settings"]["enabled"] is True
        assert status["settings"]["frequency_hours"] == 6
        assert status["settings"]["last_run"] is not None
        assert status["last_sync"].sync_id == sync_id


class TestSchedule:
    @pytest.mark.parametrize(
        "config,due",
        [
            (SyncConfig(enabled=True, frequency_hours=6, last_run=None), True),
            (SyncConfig(enabled=True, frequency_hours=6, last_run=_hours_ago(1)), False),
            (SyncConfig(enabled=True, frequency_hours=6, last_run=_hours_ago(7)), True),
            (SyncConfig(enabled=False, frequency_hours=6, last_run=None), False),
        ],
    )
    def test_is_due(self, sync_service, config, due):
        assert sync_service.is_due(config) is due

    def test_run_if_due_runs_once(self, sync_service, portal_store):
        sync_id = sync_service.run_if_due()
        assert sync_id is not None
        log = portal_store.get_sync_log(sync_id)
        assert log.sync_mode == "scheduled"
        assert log.triggered_by is None
        assert sync_service.run_if_due() is None

    def test_run_if_due_respects_disabled(self, sync_service, gate):
        gate.set(SYNC_ENABLED, False)
        assert sync_service.run_if_due() is None


def test_publish_store(sync_service, portal_store, make_tile):
    make_tile("One")
    make_tile("Two")
    make_tile("Three", is_available_in_store=True)
    make_tile("Retired", status="inactive")

    counts = sync_service.publish_store(actor_id=ADMIN)
    assert counts == {"apps_synced": 2, "total_catalog_apps": 3}
    assert portal_store.tile_counts() == {"catalog_apps": 3, "store_apps": 3, "unsynced": 0}
    assert len(portal_store.list_audit(action="store.sync")) == 1
