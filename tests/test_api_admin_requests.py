"""
tests/test_api_admin_requests.py -- Integration tests for admin request review routes.

Coverage:
  - Permission gate: role=user gets 403 on every admin route
  - List with per-status counts, pagination, and status filter
  - review -> approve path and its history
  - approve of a store-tile request binds the existing tile
  - precondition failures: not_reviewable, blank deny reason, unknown id
  - audit trail for review actions
"""

from __future__ import annotations

import pytest


def _h(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _submit(client, token: str, name: str) -> dict:
    resp = client.post(
        "/api/v1/requests",
        json={"app_identifier_or_name": name, "reason": "needed for work"},
        headers=_h(token),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestPermissions:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/v1/admin/requests"),
            ("get", "/api/v1/admin/requests/some-id"),
            ("post", "/api/v1/admin/requests/some-id/review"),
            ("post", "/api/v1/admin/requests/some-id/approve"),
            ("post", "/api/v1/admin/requests/some-id/deny"),
            ("get", "/api/v1/admin/audit-logs"),
        ],
    )
    def test_user_role_forbidden(self, api_client, user_auth, method, path) -> None:
        client, _, _ = api_client
        user_token, _ = user_auth
        kwargs = {"json": {"reason": "x"}} if path.endswith("/deny") else {}
        resp = getattr(client, method)(path, headers=_h(user_token), **kwargs)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"


class TestAdminList:
    def test_counts_and_pagination(self, api_client, user_auth) -> None:
        client, admin_token, _ = api_client
        user_token, _ = user_auth
        _submit(client, user_token, "Count A")
        denied = _submit(client, user_token, "Count B")
        client.post(
            f"/api/v1/admin/requests/{denied['id']}/deny", json={"reason": "no"}, headers=_h(admin_token)
        )

        resp = client.get("/api/v1/admin/requests?limit=1", headers=_h(admin_token))
        assert resp.status_code == 200
        data = resp.json()
        assert set(data["counts"]) == {"submitted", "in_review", "approved", "rejected", "implemented", "cancelled"}
        assert data["counts"]["submitted"] >= 1
        assert data["counts"]["rejected"] >= 1
        assert len(data["requests"]) == 1
        assert data["pagination"]["limit"] == 1
        assert data["pagination"]["total"] >= 2

        rejected = client.get("/api/v1/admin/requests?status=rejected", headers=_h(admin_token)).json()
        assert rejected["requests"] and all(r["status"] == "rejected" for r in rejected["requests"])

    def test_invalid_status_filter(self, api_client) -> None:
        client, admin_token, _ = api_client
        resp = client.get("/api/v1/admin/requests?status=PENDING", headers=_h(admin_token))
        assert resp.status_code == 422


class TestTransitions:
    def test_review_then_approve(self, api_client, user_auth) -> None:
        client, admin_token, admin_id = api_client
        user_token, _ = user_auth
        created = _submit(client, user_token, "Review Me")
        base = f"/api/v1/admin/requests/{created['id']}"

        resp = client.post(f"{base}/review", json={"note": "checking licences"}, headers=_h(admin_token))
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "in_review"
        assert resp.json()["reviewed_by"] == admin_id

        resp = client.post(f"{base}/review", headers=_h(admin_token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "not_reviewable"

        resp = client.post(f"{base}/approve", json={"note": "licence found"}, headers=_h(admin_token))
        assert resp.status_code == 200, resp.text
        assert resp.json()["request"]["admin_note"] == "licence found"

        detail = client.get(base, headers=_h(admin_token)).json()
        assert [h["status"] for h in detail["history"]] == ["submitted", "in_review", "approved", "implemented"]

        resp = client.post(f"{base}/approve", headers=_h(admin_token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "not_reviewable"

    def test_approve_store_request_uses_existing_tile(self, api_client, user_auth) -> None:
        client, admin_token, _ = api_client
        user_token, user_id = user_auth
        tile = client.post(
            "/api/v1/admin/apps",
            json={"name": "Salesforce", "launch_url": "https://sf.example.com", "is_available_in_store": True},
            headers=_h(admin_token),
        ).json()
        resp = client.post(f"/api/v1/store/{tile['id']}/request", json={"reason": "crm"}, headers=_h(user_token))
        assert resp.status_code == 201, resp.text
        request_id = resp.json()["request"]["id"]

        approved = client.post(f"/api/v1/admin/requests/{request_id}/approve", headers=_h(admin_token)).json()
        assert approved["app_id"] == tile["id"]
        assert approved["status"] == "implemented"

        tiles = client.get("/api/v1/admin/apps", headers=_h(admin_token)).json()
        assert [t["name"] for t in tiles].count("Salesforce") == 1

    @pytest.mark.parametrize("body", [{}, {"reason": ""}, {"reason": "   "}])
    def test_deny_requires_reason(self, api_client, user_auth, body) -> None:
        client, admin_token, _ = api_client
        user_token, _ = user_auth
        created = _submit(client, user_token, f"Deny Me {len(body.get('reason', 'x'))}")
        resp = client.post(f"/api/v1/admin/requests/{created['id']}/deny", json=body, headers=_h(admin_token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
        detail = client.get(f"/api/v1/admin/requests/{created['id']}", headers=_h(admin_token)).json()
        assert detail["status"] == "submitted"
        assert detail["deny_reason"] is None

    def test_unknown_request(self, api_client) -> None:
        client, admin_token, _ = api_client
        resp = client.post("/api/v1/admin/requests/missing/approve", headers=_h(admin_token))
        assert resp.status_code == 404

    def test_audit_trail(self, api_client, user_auth) -> None:
        client, admin_token, admin_id = api_client
        user_token, _ = user_auth
        created = _submit(client, user_token, "Audited App")
        client.post(
            f"/api/v1/admin/requests/{created['id']}/deny", json={"reason": "duplicate tool"}, headers=_h(admin_token)
        )
        resp = client.get(
            f"/api/v1/admin/audit-logs?action=request.rejected&target_id={created['id']}", headers=_h(admin_token)
        )
        assert resp.status_code == 200
        entries = resp.json()
        assert len(entries) == 1
        assert entries[0]["actor_id"] == admin_id
        assert entries[0]["details"] == {"reason": "duplicate tool"}
