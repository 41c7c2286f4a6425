"""Integration tests for workspace and invitation endpoints."""

import pytest
from fastapi.testclient import TestClient

from apiguard import app as app_module
from apiguard.service.runtime import get_runtime

PASSWORD = "Str0ng!Pass"


@pytest.fixture
def client(outbox):
    get_runtime().notifier.sender = outbox
    with TestClient(app_module.app) as test_client:
        yield test_client


def _signup(client, email, full_name):
    data = client.post(
        "/auth/register",
        json={"email": email, "password": PASSWORD, "fullName": full_name},
    ).json()["data"]
    return {
        "id": data["user"]["id"],
        "headers": {"Authorization": f"Bearer {data['tokens']['access_token']}"},
        "workspace_id": data["workspace"]["id"],
    }


def _invite_and_join(client, outbox, workspace_id, inviter, invitee, email, role):
    response = client.post(
        f"/workspaces/{workspace_id}/members/invite",
        headers=inviter["headers"],
        json={"email": email, "role": role},
    )
    assert response.status_code == 201
    client.portal.call(get_runtime().notifier.flush)
    token = outbox.last("invitation", email)["token"]
    accepted = client.post(
        "/invitations/accept", params={"token": token}, headers=invitee["headers"]
    )
    assert accepted.status_code == 200
    return accepted.json()["data"]


@pytest.fixture
def team(client, outbox):
    owner = _signup(client, "owner@example.com", "Olive Owner")
    admin = _signup(client, "admin@example.com", "Adam Admin")
    viewer = _signup(client, "viewer@example.com", "Vera Viewer")
    workspace_id = owner["workspace_id"]
    _invite_and_join(client, outbox, workspace_id, owner, admin, "admin@example.com", "admin")
    _invite_and_join(client, outbox, workspace_id, admin, viewer, "viewer@example.com", "viewer")
    return workspace_id, owner, admin, viewer


def _member_id(client, workspace_id, headers, email):
    members = client.get(f"/workspaces/{workspace_id}/members", headers=headers).json()["data"]
    return next(m["id"] for m in members["items"] if m["email"] == email)


class TestWorkspaceCrud:
    def test_create_and_list(self, client):
        user = _signup(client, "solo@example.com", "Sol Solo")

        created = client.post(
            "/workspaces", headers=user["headers"], json={"name": "Side Project"}
        )
        assert created.status_code == 201
        assert created.json()["data"]["role"] == "owner"

        listed = client.get("/workspaces", headers=user["headers"]).json()["data"]["items"]
        assert [ws["name"] for ws in listed] == ["Sol Solo's Workspace", "Side Project"]

    def test_get_by_slug(self, client):
        user = _signup(client, "solo@example.com", "Sol Solo")
        created = client.post(
            "/workspaces", headers=user["headers"], json={"name": "Lab", "slug": "my-lab"}
        ).json()["data"]

        response = client.get("/workspaces/slug/my-lab", headers=user["headers"])

        assert response.status_code == 200
        assert response.json()["data"]["id"] == created["id"]

    def test_invalid_slug_rejected(self, client):
        user = _signup(client, "solo@example.com", "Sol Solo")

        response = client.post(
            "/workspaces", headers=user["headers"], json={"name": "Lab", "slug": "Bad Slug"}
        )

        assert response.status_code == 400

    def test_non_member_forbidden_and_missing_not_found(self, client):
        owner = _signup(client, "owner@example.com", "Olive Owner")
        stranger = _signup(client, "stranger@example.com", "Stan Stranger")

        forbidden = client.get(f"/workspaces/{owner['workspace_id']}", headers=stranger["headers"])
        missing = client.get("/workspaces/does-not-exist", headers=owner["headers"])

        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["code"] == "forbidden"
        assert missing.status_code == 404


class TestRoles:
    def test_viewer_cannot_update(self, client, team):
        workspace_id, _, _, viewer = team

        response = client.put(
            f"/workspaces/{workspace_id}", headers=viewer["headers"], json={"name": "Hijacked"}
        )

        assert response.status_code == 403
        assert response.json()["error"]["details"] == {
            "required_roles": ["owner", "admin"],
            "actual_role": "viewer",
        }

    def test_admin_updates_but_cannot_delete(self, client, team):
        workspace_id, owner, admin, _ = team

        updated = client.put(
            f"/workspaces/{workspace_id}", headers=admin["headers"], json={"name": "Renamed"}
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["name"] == "Renamed"

        assert client.delete(f"/workspaces/{workspace_id}", headers=admin["headers"]).status_code == 403
        assert client.delete(f"/workspaces/{workspace_id}", headers=owner["headers"]).status_code == 200
        assert client.get(f"/workspaces/{workspace_id}", headers=owner["headers"]).status_code == 404

    def test_role_change_is_owner_only(self, client, team):
        workspace_id, owner, admin, _ = team
        viewer_member = _member_id(client, workspace_id, owner["headers"], "viewer@example.com")
        url = f"/workspaces/{workspace_id}/members/{viewer_member}/role"

        assert client.put(url, headers=admin["headers"], json={"role": "developer"}).status_code == 403
        response = client.put(url, headers=owner["headers"], json={"role": "developer"})
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "developer"

    def test_admin_removes_viewer(self, client, team):
        workspace_id, owner, admin, viewer = team
        viewer_member = _member_id(client, workspace_id, owner["headers"], "viewer@example.com")

        response = client.delete(
            f"/workspaces/{workspace_id}/members/{viewer_member}", headers=admin["headers"]
        )

        assert response.status_code == 200
        assert client.get(f"/workspaces/{workspace_id}", headers=viewer["headers"]).status_code == 403

    def test_leave_and_owner_cannot_leave(self, client, team):
        workspace_id, owner, _, viewer = team

        assert client.post(f"/workspaces/{workspace_id}/leave", headers=viewer["headers"]).status_code == 200
        assert client.post(f"/workspaces/{workspace_id}/leave", headers=owner["headers"]).status_code == 400

    def test_transfer_ownership(self, client, team):
        workspace_id, owner, admin, _ = team

        response = client.post(
            f"/workspaces/{workspace_id}/transfer-ownership",
            headers=owner["headers"],
            json={"newOwnerId": admin["id"]},
        )

        assert response.status_code == 200
        assert response.json()["data"]["owner_id"] == admin["id"]
        members = client.get(f"/workspaces/{workspace_id}/members", headers=admin["headers"])
        roles = {m["email"]: m["role"] for m in members.json()["data"]["items"]}
        assert roles["admin@example.com"] == "owner"
        assert roles["owner@example.com"] == "admin"
        assert list(roles.values()).count("owner") == 1


class TestInvitations:
    def test_invite_response_hides_token(self, client, team, outbox):
        workspace_id, owner, _, _ = team

        response = client.post(
            f"/workspaces/{workspace_id}/members/invite",
            headers=owner["headers"],
            json={"email": "new@example.com", "role": "developer"},
        )

        assert response.status_code == 201
        assert "token" not in response.json()["data"]
        pending = client.get(f"/workspaces/{workspace_id}/invitations", headers=owner["headers"])
        assert [i["email"] for i in pending.json()["data"]["items"]] == ["new@example.com"]

    def test_invite_as_owner_rejected(self, client, team):
        workspace_id, owner, _, _ = team

        response = client.post(
            f"/workspaces/{workspace_id}/members/invite",
            headers=owner["headers"],
            json={"email": "new@example.com", "role": "owner"},
        )

        assert response.status_code == 400

    def test_wrong_account_cannot_accept(self, client, team, outbox):
        workspace_id, owner, _, viewer = team
        client.post(
            f"/workspaces/{workspace_id}/members/invite",
            headers=owner["headers"],
            json={"email": "someone@example.com", "role": "viewer"},
        )
        client.portal.call(get_runtime().notifier.flush)
        token = outbox.last("invitation", "someone@example.com")["token"]

        response = client.post(
            "/invitations/accept", params={"token": token}, headers=viewer["headers"]
        )

        assert response.status_code == 403

    def test_cancel_invitation(self, client, team):
        workspace_id, owner, _, viewer = team
        invitation = client.post(
            f"/workspaces/{workspace_id}/members/invite",
            headers=owner["headers"],
            json={"email": "new@example.com", "role": "viewer"},
        ).json()["data"]
        url = f"/workspaces/{workspace_id}/invitations/{invitation['id']}"

        assert client.delete(url, headers=viewer["headers"]).status_code == 403
        assert client.delete(url, headers=owner["headers"]).status_code == 200
        assert client.delete(url, headers=owner["headers"]).status_code == 404
