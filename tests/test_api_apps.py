"""
tests/test_api_apps.py -- Integration tests for tiles, the store, assignments, and launch.

Coverage:
  - Admin tile CRUD, including 400 no_changes and 409 on a duplicate identifier
  - Store listing with the caller's per-tile status
  - Store request vs. self-assign (requires_approval=False)
  - Store publish and its status counts
  - Assignments with PIN and encrypted credentials; launch PIN checks
  - Launch auditing and the per-app PIN lockout (429 pin_locked)
  - Unassign and the audit trail
"""

from __future__ import annotations

import pytest


def _h(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="module")
def tile_factory(api_client):
    client, admin_token, _ = api_client

    def _create(name: str, **fields) -> dict:
        payload = {"name": name, "launch_url": f"https://{name.lower().replace(' ', '-')}.example.com", **fields}
        resp = client.post("/api/v1/admin/apps", json=payload, headers=_h(admin_token))
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _create


class TestTileAdmin:
    def test_create_update_delete(self, api_client, tile_factory) -> None:
        client, admin_token, _ = api_client
        tile = tile_factory("Jira", category="Engineering", tags=["tickets"])
        assert tile["status"] == "active"
        assert tile["sync_status"] == "pending"
        assert tile["is_available_in_store"] is False

        resp = client.put(
            f"/api/v1/admin/apps/{tile['id']}",
            json={"short_description": "Issue tracking", "is_available_in_store": True},
            headers=_h(admin_token),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["short_description"] == "Issue tracking"
        assert resp.json()["is_available_in_store"] is True
        assert resp.json()["category"] == "Engineering"

        resp = client.delete(f"/api/v1/admin/apps/{tile['id']}", headers=_h(admin_token))
        assert resp.status_code == 200
        assert client.delete(f"/api/v1/admin/apps/{tile['id']}", headers=_h(admin_token)).status_code == 404

    def test_empty_update_is_no_changes(self, api_client, tile_factory) -> None:
        client, admin_token, _ = api_client
        tile = tile_factory("Confluence")
        resp = client.put(f"/api/v1/admin/apps/{tile['id']}", json={}, headers=_h(admin_token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"

    def test_duplicate_identifier_conflict(self, api_client, tile_factory) -> None:
        client, admin_token, _ = api_client
        tile_factory("Bitbucket", app_identifier="bitbucket")
        resp = client.post(
            "/api/v1/admin/apps",
            json={"name": "Bitbucket Cloud", "launch_url": "https://bb.example.com", "app_identifier": "bitbucket"},
            headers=_h(admin_token),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_user_cannot_manage_tiles(self, api_client, user_auth) -> None:
        client, _, _ = api_client
        user_token, _ = user_auth
        resp = client.post(
            "/api/v1/admin/apps", json={"name": "Sneaky", "launch_url": "https://x.example.com"}, headers=_h(user_token)
        )
        assert resp.status_code == 403


class TestStore:
    def test_store_statuses(self, api_client, user_auth, tile_factory) -> None:
        client, _, _ = api_client
        user_token, _ = user_auth
        gated = tile_factory("Gated App", is_available_in_store=True)
        open_tile = tile_factory("Open App", is_available_in_store=True, requires_approval=False)
        tile_factory("Hidden App")

        resp = client.post(f"/api/v1/store/{gated['id']}/request", json={"reason": "team tool"}, headers=_h(user_token))
        assert resp.status_code == 201, resp.text
        assert resp.json()["auto_approved"] is False
        assert resp.json()["request"]["app_id"] == gated["id"]

        resp = client.post(
            f"/api/v1/store/{open_tile['id']}/request", json={"reason": "daily use"}, headers=_h(user_token)
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["auto_approved"] is True
        assert resp.json()["request"] is None

        rows = {r["name"]: r for r in client.get("/api/v1/store", headers=_h(user_token)).json()}
        assert rows["Gated App"]["user_status"] == "requested"
        assert rows["Open App"]["user_status"] == "assigned"
        assert "Hidden App" not in rows

        my_apps = [t["id"] for t in client.get("/api/v1/me/apps", headers=_h(user_token)).json()]
        assert open_tile["id"] in my_apps
        assert gated["id"] not in my_apps

    def test_request_for_assigned_tile(self, api_client, user_auth, tile_factory) -> None:
        client, _, _ = api_client
        user_token, _ = user_auth
        tile = tile_factory("Self Serve", is_available_in_store=True, requires_approval=False)
        client.post(f"/api/v1/store/{tile['id']}/request", json={"reason": "daily use"}, headers=_h(user_token))
        resp = client.post(f"/api/v1/store/{tile['id']}/request", json={"reason": "daily use"}, headers=_h(user_token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "already_assigned"

    def test_publish_store(self, api_client, tile_factory) -> None:
        client, admin_token, _ = api_client
        tile_factory("Unpublished One")
        resp = client.post("/api/v1/store/sync", headers=_h(admin_token))
        assert resp.status_code == 200
        assert resp.json()["apps_synced"] >= 1

        status = client.get("/api/v1/store/sync/status", headers=_h(admin_token)).json()
        assert status["unsynced"] == 0
        assert status["store_apps"] == status["catalog_apps"]


class TestAssignmentsAndLaunch:
    def test_pin_protected_launch(self, api_client, user_auth, tile_factory) -> None:
        client, admin_token, _ = api_client
        user_token, user_id = user_auth
        tile = tile_factory("Payroll")

        resp = client.post(
            f"/api/v1/admin/assignments/users/{user_id}",
            json={
                "app_tile_id": tile["id"],
                "app_username": "jdoe",
                "pin": "1234",
                "credentials": {"password": "s3cret"},
            },
            headers=_h(admin_token),
        )
        assert resp.status_code == 201, resp.text
        created = resp.json()
        assert created["requires_pin"] is True
        assert created["has_credentials"] is True
        assert "pin" not in created and "credentials" not in created

        url = f"/api/v1/me/apps/{tile['id']}/launch"
        resp = client.post(url, headers=_h(user_token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

        resp = client.post(url, json={"pin": "9999"}, headers=_h(user_token))
        assert resp.status_code == 403

        resp = client.post(url, json={"pin": "1234"}, headers=_h(user_token))
        assert resp.status_code == 200, resp.text
        assert resp.json() == {
            "launch_url": "https://payroll.example.com",
            "app_username": "jdoe",
            "credentials": {"password": "s3cret"},
        }

    def test_requires_pin_without_pin(self, api_client, user_auth, tile_factory) -> None:
        client, admin_token, _ = api_client
        _, user_id = user_auth
        tile = tile_factory("Vault")
        resp = client.post(
            f"/api/v1/admin/assignments/users/{user_id}",
            json={"app_tile_id": tile["id"], "requires_pin": True},
            headers=_h(admin_token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_duplicate_assignment_and_unassign(self, api_client, user_auth, tile_factory) -> None:
        client, admin_token, _ = api_client
        _, user_id = user_auth
        tile = tile_factory("Zoom")
        url = f"/api/v1/admin/assignments/users/{user_id}"

        assert client.post(url, json={"app_tile_id": tile["id"]}, headers=_h(admin_token)).status_code == 201
        resp = client.post(url, json={"app_tile_id": tile["id"]}, headers=_h(admin_token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "already_assigned"

        resp = client.delete(f"{url}/apps/{tile['id']}", headers=_h(admin_token))
        assert resp.status_code == 200
        assert client.delete(f"{url}/apps/{tile['id']}", headers=_h(admin_token)).status_code == 404

        audit = client.get(
            f"/api/v1/admin/audit-logs?target_id={tile['id']}", headers=_h(admin_token)
        ).json()
        assert {"apps.assign", "apps.unassign", "app.create"} <= {e["action"] for e in audit}

    def test_unknown_user_and_tile(self, api_client, tile_factory) -> None:
        client, admin_token, _ = api_client
        tile = tile_factory("Orphan")
        resp = client.post(
            "/api/v1/admin/assignments/users/99999", json={"app_tile_id": tile["id"]}, headers=_h(admin_token)
        )
        assert resp.status_code == 404
        resp = client.get("/api/v1/admin/assignments/users/99999", headers=_h(admin_token))
        assert resp.status_code == 404

    def test_launch_unassigned(self, api_client, user_auth, tile_factory) -> None:
        client, _, _ = api_client
        user_token, _ = user_auth
        tile = tile_factory("Not Mine")
        resp = client.post(f"/api/v1/me/apps/{tile['id']}/launch", headers=_h(user_token))
        assert resp.status_code == 404

    def test_launch_attempts_are_audited(self, api_client, user_auth, tile_factory) -> None:
        client, admin_token, _ = api_client
        user_token, user_id = user_auth
        tile = tile_factory("Expenses")
        client.post(
            f"/api/v1/admin/assignments/users/{user_id}",
            json={"app_tile_id": tile["id"], "pin": "2468"},
            headers=_h(admin_token),
        )
        url = f"/api/v1/me/apps/{tile['id']}/launch"

        resp = client.post(url, json={"pin": "1111"}, headers=_h(user_token))
        assert resp.status_code == 403
        assert resp.json()["error"]["remaining_attempts"] == 4
        assert client.post(url, json={"pin": "2468"}, headers=_h(user_token)).status_code == 200

        audit = client.get(f"/api/v1/admin/audit-logs?target_id={tile['id']}", headers=_h(admin_token)).json()
        by_action = {e["action"]: e for e in audit}
        assert by_action["app.pin_failed"]["actor_id"] == user_id
        assert by_action["app.launch"]["actor_id"] == user_id
        assert by_action["app.launch"]["details"] == {"pin_verified": True}

    def test_repeated_wrong_pins_lock_the_app(self, api_client, user_auth, tile_factory) -> None:
        client, admin_token, _ = api_client
        user_token, user_id = user_auth
        tile = tile_factory("Treasury")
        client.post(
            f"/api/v1/admin/assignments/users/{user_id}",
            json={"app_tile_id": tile["id"], "pin": "8642"},
            headers=_h(admin_token),
        )
        url = f"/api/v1/me/apps/{tile['id']}/launch"

        for _ in range(5):
            assert client.post(url, json={"pin": "0000"}, headers=_h(user_token)).status_code == 403

        # The correct PIN is refused while the lockout window is open.
        resp = client.post(url, json={"pin": "8642"}, headers=_h(user_token))
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "pin_locked"

        audit = client.get(
            f"/api/v1/admin/audit-logs?target_id={tile['id']}&action=app.pin_locked", headers=_h(admin_token)
        ).json()
        assert len(audit) == 1
