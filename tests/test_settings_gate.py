"""Unit tests for portal/settings.py -- typed access to system_settings."""

import dataclasses

import pytest

from auth.permissions import SUPER_ADMIN, PermissionChecker
from core.exceptions import ValidationError
from portal.settings import SYNC_ENABLED, SYNC_FREQUENCY_HOURS, SYNC_LAST_RUN, SettingsGate


def test_defaults_when_absent(portal_store):
    gate = SettingsGate(portal_store)
    assert gate.get(SYNC_ENABLED) is True
    assert gate.get(SYNC_FREQUENCY_HOURS) == 6
    assert gate.get(SYNC_LAST_RUN) is None
    assert gate.get("unknown_key") is None
    assert portal_store.get_setting(SYNC_ENABLED) is None


def test_seed_does_not_overwrite(portal_store):
    gate = SettingsGate(portal_store)
    gate.seed_defaults()
    assert portal_store.get_setting(SYNC_FREQUENCY_HOURS) == "6"
    gate.set(SYNC_FREQUENCY_HOURS, 12, updated_by=1)
    gate.seed_defaults()
    assert gate.get(SYNC_FREQUENCY_HOURS) == 12


def test_set_is_upsert_of_json(gate):
    gate.set("store_banner", {"text": "Maintenance Friday", "level": "info"})
    gate.set("store_banner", {"text": "All clear"})
    assert gate.get("store_banner") == {"text": "All clear"}


def test_sync_config_snapshot(gate):
    config = gate.load_sync_config()
    assert config.enabled is True
    assert config.frequency_hours == 6
    assert config.last_run is None
    assert config.stale_after_hours == 24
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.enabled = False  # type: ignore[misc]
    gate.set(SYNC_ENABLED, False)
    assert config.enabled is True
    assert gate.load_sync_config().enabled is False


def test_stale_window_is_injected(portal_store):
    assert SettingsGate(portal_store, stale_after_hours=6).load_sync_config().stale_after_hours == 6


def test_update_sync_settings_partial(gate):
    config = gate.update_sync_settings(updated_by=1, frequency_hours=12)
    assert (config.enabled, config.frequency_hours) == (True, 12)
    config = gate.update_sync_settings(updated_by=1, enabled=False)
    assert (config.enabled, config.frequency_hours) == (False, 12)


def test_update_sync_settings_rejects_zero_frequency(gate):
    with pytest.raises(ValidationError):
        gate.update_sync_settings(updated_by=1, enabled=False, frequency_hours=0)
    assert gate.load_sync_config().enabled is True


def test_all_decodes_every_key(gate):
    gate.set("store_banner", {"text": "hello"})
    settings = gate.all()
    assert settings["store_banner"] == {"text": "hello"}
    assert settings[SYNC_FREQUENCY_HOURS] == 6
    assert settings[SYNC_LAST_RUN] is None


def test_put_checks_known_keys(gate):
    with pytest.raises(ValidationError):
        gate.put(SYNC_FREQUENCY_HOURS, 0)
    with pytest.raises(ValidationError):
        gate.put(SYNC_ENABLED, "yes")
    with pytest.raises(ValidationError):
        gate.put("", 1)
    gate.put(SYNC_FREQUENCY_HOURS, 3, updated_by=1)
    gate.put("free_form", [1, 2, 3])
    assert gate.load_sync_config().frequency_hours == 3
    assert gate.get("free_form") == [1, 2, 3]


def test_settings_slug_is_super_admin_only():
    checker = PermissionChecker()
    assert not checker.allows("admin", "system.settings")
    assert checker.allows(SUPER_ADMIN, "system.settings")
    assert "system.settings" in checker.slugs_for(SUPER_ADMIN)
    assert "system.settings" not in checker.slugs_for("admin")
