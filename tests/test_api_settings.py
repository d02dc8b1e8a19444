"""
tests/test_api_settings.py -- Integration tests for the super_admin settings routes.

Coverage:
  - admin and user roles get 403 on both routes
  - GET returns the seeded sync keys decoded from JSON
  - PUT inserts a new key, then replaces it (upsert), with an audit entry
  - known sync keys reject values of the wrong type
  - a PUT to a sync key is visible through /catalog/sync/status
"""

from __future__ import annotations


def _h(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_admin_and_user_are_forbidden(api_client, user_auth) -> None:
    client, admin_token, _ = api_client
    user_token, _ = user_auth
    for token in (admin_token, user_token):
        assert client.get("/api/v1/admin/settings", headers=_h(token)).status_code == 403
        resp = client.put("/api/v1/admin/settings/maintenance", json={"value": True}, headers=_h(token))
        assert resp.status_code == 403


def test_list_seeded_settings(api_client, super_admin_auth) -> None:
    client, _, _ = api_client
    token, _ = super_admin_auth
    resp = client.get("/api/v1/admin/settings", headers=_h(token))
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["catalog_sync_enabled"] is True
    assert body["catalog_sync_frequency_hours"] == 6
    assert "catalog_sync_last_run" in body


def test_put_inserts_then_replaces(api_client, super_admin_auth) -> None:
    client, admin_token, _ = api_client
    token, uid = super_admin_auth
    url = "/api/v1/admin/settings/security"

    resp = client.put(url, json={"value": {"max_login_attempts": 5}}, headers=_h(token))
    assert resp.status_code == 200, resp.text
    assert resp.json() == {"key": "security", "value": {"max_login_attempts": 5}}

    resp = client.put(url, json={"value": {"max_login_attempts": 3}}, headers=_h(token))
    assert resp.status_code == 200
    assert client.get("/api/v1/admin/settings", headers=_h(token)).json()["security"] == {"max_login_attempts": 3}

    audit = client.get(
        "/api/v1/admin/audit-logs?action=settings.update&target_id=security", headers=_h(admin_token)
    ).json()
    assert len(audit) == 2
    assert all(e["actor_id"] == uid for e in audit)


def test_sync_keys_are_type_checked(api_client, super_admin_auth) -> None:
    client, _, _ = api_client
    token, _ = super_admin_auth
    resp = client.put(
        "/api/v1/admin/settings/catalog_sync_frequency_hours", json={"value": "often"}, headers=_h(token)
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"
    resp = client.put("/api/v1/admin/settings/catalog_sync_enabled", json={"value": 1}, headers=_h(token))
    assert resp.status_code == 400


def test_sync_key_update_reaches_sync_status(api_client, super_admin_auth) -> None:
    client, _, _ = api_client
    token, _ = super_admin_auth
    resp = client.put(
        "/api/v1/admin/settings/catalog_sync_frequency_hours", json={"value": 12}, headers=_h(token)
    )
    assert resp.status_code == 200
    status = client.get("/api/v1/catalog/sync/status", headers=_h(token)).json()
    assert status["settings"]["frequency_hours"] == 12
