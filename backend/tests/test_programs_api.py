"""
Integration Tests for the Program API

Tests the HTTP and WebSocket surface over the in-memory program store:
- POST/GET/PUT/DELETE /api/v1/programs - drafts and the builder
- POST /api/v1/programs/{id}/submit, /publish - author side of the review cycle
- /api/v1/super/programs - review queue, approval, unpublishing
- /api/v1/public/programs/{id} - published-only reads
- WS /api/v1/programs/{id}/changes - realtime change feed

Usage:
    cd backend && pytest tests/test_programs_api.py -v
"""

import os
import sys
import uuid
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

# Add backend to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.auth import create_access_token
from app.deps import get_current_actor
from app.main import create_app
from app.models.actor import Actor
from app.security import limiter
from app.services.memory_program_store import InMemoryProgramStore
from app.services.program_errors import StoreUnavailableError


# ============================================================================
# TEST DATA FACTORIES
# ============================================================================

ORG_ID = "org-1"
OTHER_ORG_ID = "org-2"
COALITION_ID = "coalition-1"

ORG_ADMIN = Actor(user_id="user-org-admin", org_ids=frozenset({ORG_ID}))
OTHER_ADMIN = Actor(user_id="user-other-admin", org_ids=frozenset({OTHER_ORG_ID}))
SUPER = Actor(user_id="user-super", super_admin=True)


def make_field(key: str, label: str, field_type: str = "short_text", **extra) -> Dict[str, Any]:
    return {"key": key, "type": field_type, "label": label, **extra}


def make_schema(name_label: str = "Your name", fields: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Schema document in the shape the builder PUTs."""
    return {
        "fields": fields
        if fields is not None
        else [
            make_field("name", name_label, required=True),
            make_field("instrument", "Instrument", "select", options=["Piano", "Violin"]),
        ],
        "common": {"applyhub": False, "coalition": False},
    }


def draft_body(**overrides) -> Dict[str, Any]:
    body = {"organization_id": ORG_ID, "name": "Spring Audition", "type": "audition"}
    body.update(overrides)
    return body


# ============================================================================
# TEST FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def no_rate_limits():
    """Every TestClient request shares one client key; keep limits out of the way."""
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def store():
    store = InMemoryProgramStore()
    store.add_organization(ORG_ID, "Riverside Arts", "riverside-arts")
    store.add_organization(OTHER_ORG_ID, "Hilltop Music", "hilltop-music")
    store.add_coalition(COALITION_ID, "Metro Arts Coalition", "metro-arts")
    store.grant(ORG_ADMIN.user_id, "org", ORG_ID)
    store.grant(OTHER_ADMIN.user_id, "org", OTHER_ORG_ID)
    store.grant(SUPER.user_id, "super")
    return store


@pytest.fixture
def app(store):
    return create_app(store=store)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def act_as(app):
    """Switch the authenticated actor for subsequent requests."""

    def switch(actor: Actor) -> None:
        app.dependency_overrides[get_current_actor] = lambda: actor

    yield switch
    app.dependency_overrides.clear()


def create_program(client: TestClient, **overrides) -> Dict[str, Any]:
    response = client.post("/api/v1/programs", json=draft_body(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


def save_schema(client: TestClient, program_id: str, schema: Dict[str, Any], **extra):
    return client.put(f"/api/v1/programs/{program_id}/schema", json={"schema": schema, **extra})


def ready_program(client: TestClient, **overrides) -> Dict[str, Any]:
    program = create_program(client, **overrides)
    response = save_schema(client, program["id"], make_schema())
    assert response.status_code == 200, response.text
    return response.json()


# ============================================================================
# HEALTH AND AUTHENTICATION
# ============================================================================

class TestHealthAndAuth:

    def test_health(self, client):
        assert client.get("/").json()["status"] == "ok"
        services = client.get("/api/v1/health").json()["services"]
        assert services["store"] == "InMemoryProgramStore"

    def test_missing_token_is_401(self, client):
        response = client.get("/api/v1/me/programs")
        assert response.status_code == 401

    def test_invalid_token_is_401(self, client):
        response = client.get(
            "/api/v1/me/programs", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    def test_bearer_token_resolves_roles(self, client):
        token = create_access_token(ORG_ADMIN.user_id)
        headers = {"Authorization": f"Bearer {token}"}

        created = client.post("/api/v1/programs", json=draft_body(), headers=headers)
        listed = client.get("/api/v1/me/programs", headers=headers)

        assert created.status_code == 201
        assert listed.json()["total"] == 1
        assert client.get("/api/v1/health").json()["services"]["capability_cache_entries"] == 1

    def test_security_headers(self, client):
        response = client.get("/")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Request-ID" in response.headers


# ============================================================================
# DRAFTS AND BUILDER
# ============================================================================

class TestDrafts:

    def test_create_draft(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)

        assert program["metadata"]["review_status"] == "draft"
        assert program["published"] is False
        assert program["version"] == 1

    def test_blank_name_is_422(self, client, act_as):
        act_as(ORG_ADMIN)
        response = client.post("/api/v1/programs", json=draft_body(name="   "))
        assert response.status_code == 422

    def test_close_before_open_is_400(self, client, act_as):
        act_as(ORG_ADMIN)
        response = client.post(
            "/api/v1/programs",
            json=draft_body(open_at="2026-05-01T00:00:00Z", close_at="2026-04-01T00:00:00Z"),
        )
        assert response.status_code == 400
        assert "close_at" in response.json()["detail"]

    def test_other_org_is_403(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)

        act_as(OTHER_ADMIN)
        assert client.get(f"/api/v1/programs/{program['id']}").status_code == 403
        assert client.get(f"/api/v1/organizations/{ORG_ID}/programs").status_code == 403

    def test_unknown_and_malformed_ids_are_404(self, client, act_as):
        act_as(ORG_ADMIN)
        assert client.get(f"/api/v1/programs/{uuid.uuid4()}").status_code == 404
        assert client.get("/api/v1/programs/not-a-uuid").status_code == 404

    def test_invalid_view_is_422(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)
        response = client.get(f"/api/v1/programs/{program['id']}?view=everyone")
        assert response.status_code == 422

    def test_update_and_list(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)
        response = client.put(
            f"/api/v1/programs/{program['id']}",
            json={"name": "Summer Audition", "type": "audition", "expected_version": 1},
        )
        listed = client.get(f"/api/v1/organizations/{ORG_ID}/programs").json()

        assert response.status_code == 200
        assert response.json()["name"] == "Summer Audition"
        assert [p["name"] for p in listed["programs"]] == ["Summer Audition"]

    def test_builder_state(self, client, act_as):
        act_as(ORG_ADMIN)
        program = ready_program(client)
        state = client.get(f"/api/v1/programs/{program['id']}/builder").json()

        assert state["review_status"] == "draft"
        assert [f["key"] for f in state["schema"]["fields"]] == ["name", "instrument"]
        assert state["editable"] is True
        assert state["staged"] is False

    def test_stale_save_is_409(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)
        first = save_schema(client, program["id"], make_schema(), expected_version=1)
        second = save_schema(client, program["id"], make_schema("Full name"), expected_version=1)

        assert first.status_code == 200
        assert second.status_code == 409

    def test_soft_delete(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)
        assert client.delete(f"/api/v1/programs/{program['id']}").status_code == 200
        assert client.get(f"/api/v1/programs/{program['id']}").status_code == 404
        assert client.get("/api/v1/me/programs").json()["total"] == 0


# ============================================================================
# REVIEW CYCLE
# ============================================================================

class TestReviewCycle:

    def test_submit_approve_and_read_publicly(self, client, act_as):
        act_as(ORG_ADMIN)
        program = ready_program(client)
        program_id = program["id"]

        submitted = client.post(f"/api/v1/programs/{program_id}/submit", json={"note": "Ready"})
        assert submitted.json()["metadata"]["review_status"] == "submitted"
        assert client.get(f"/api/v1/public/programs/{program_id}").status_code == 404

        act_as(SUPER)
        queue = client.get("/api/v1/super/programs?status=submitted").json()
        assert [p["id"] for p in queue["programs"]] == [program_id]

        approved = client.post(
            f"/api/v1/super/programs/{program_id}/review", json={"action": "approve"}
        )
        assert approved.status_code == 200
        assert approved.json()["published"] is True

        public = client.get(f"/api/v1/public/programs/{program_id}").json()
        assert public["organization_name"] == "Riverside Arts"
        assert [f["key"] for f in public["application_schema"]["fields"]] == ["name", "instrument"]
        assert "metadata" not in public

        history = client.get(f"/api/v1/programs/{program_id}/history").json()["history"]
        assert [h["new_status"] for h in history] == ["submitted", "approved", "published"]

    def test_request_changes(self, client, act_as):
        act_as(ORG_ADMIN)
        program = ready_program(client)
        client.post(f"/api/v1/programs/{program['id']}/submit", json={})

        act_as(SUPER)
        response = client.post(
            f"/api/v1/super/programs/{program['id']}/review",
            json={"action": "request_changes", "note": "Add a deadline"},
        )
        assert response.json()["metadata"]["review_status"] == "changes_requested"
        assert response.json()["metadata"]["review_note"] == "Add a deadline"

    def test_org_admin_cannot_review(self, client, act_as):
        act_as(ORG_ADMIN)
        program = ready_program(client)
        client.post(f"/api/v1/programs/{program['id']}/submit", json={})
        response = client.post(
            f"/api/v1/super/programs/{program['id']}/review", json={"action": "approve"}
        )
        assert response.status_code == 403

    def test_review_of_draft_is_409(self, client, act_as):
        act_as(ORG_ADMIN)
        program = ready_program(client)

        act_as(SUPER)
        response = client.post(
            f"/api/v1/super/programs/{program['id']}/review", json={"action": "approve"}
        )
        assert response.status_code == 409

    def test_submit_with_problems_lists_them(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)
        save_schema(
            client,
            program["id"],
            make_schema(fields=[make_field("pick", "Pick one", "select"), make_field("blank", "")]),
        )
        response = client.post(f"/api/v1/programs/{program['id']}/submit", json={})

        assert response.status_code == 400
        body = response.json()
        assert len(body["problems"]) == 2
        assert "request_id" in body

    def test_direct_publish_and_staged_edit(self, client, act_as):
        act_as(ORG_ADMIN)
        program = ready_program(client)
        program_id = program["id"]

        published = client.post(f"/api/v1/programs/{program_id}/publish", json={"scope": "org"})
        assert published.json()["published_scope"] == "org"

        staged = save_schema(client, program_id, make_schema("Legal name"))
        assert staged.json()["metadata"]["review_status"] == "pending_changes"

        public = client.get(f"/api/v1/public/programs/{program_id}/form").json()
        assert public["fields"][0]["label"] == "Your name"

        builder = client.get(f"/api/v1/programs/{program_id}/builder").json()
        assert builder["schema"]["fields"][0]["label"] == "Legal name"
        assert builder["staged"] is True

    def test_unpublish(self, client, act_as):
        act_as(ORG_ADMIN)
        program = ready_program(client)
        client.post(f"/api/v1/programs/{program['id']}/publish", json={"scope": "org"})

        act_as(SUPER)
        response = client.post(f"/api/v1/super/programs/{program['id']}/unpublish", json={})
        assert response.json()["metadata"]["review_status"] == "unpublished"
        assert client.get(f"/api/v1/public/programs/{program['id']}").status_code == 404

    def test_begin_edit_pulls_back_submission(self, client, act_as):
        act_as(ORG_ADMIN)
        program = ready_program(client)
        client.post(f"/api/v1/programs/{program['id']}/submit", json={})

        locked = save_schema(client, program["id"], make_schema("Legal name"))
        edited = client.post(f"/api/v1/programs/{program['id']}/edit")

        assert locked.status_code == 409
        assert edited.json()["metadata"]["review_status"] == "draft"


# ============================================================================
# STORE FAILURES
# ============================================================================

class TestStoreFailures:

    def test_unavailable_store_is_503_without_details(self, client, act_as, store):
        act_as(ORG_ADMIN)
        program = create_program(client)
        with patch.object(store, "get_program", side_effect=StoreUnavailableError("pool exhausted at 10.0.0.5")):
            response = client.get(f"/api/v1/programs/{program['id']}")

        assert response.status_code == 503
        assert "10.0.0.5" not in response.text


# ============================================================================
# REALTIME FEED
# ============================================================================

class TestChangeFeed:

    def test_update_is_pushed_to_socket(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)
        token = create_access_token(ORG_ADMIN.user_id)

        with client.websocket_connect(
            f"/api/v1/programs/{program['id']}/changes?token={token}"
        ) as websocket:
            save_schema(client, program["id"], make_schema())
            pushed = websocket.receive_json()

        assert pushed["id"] == program["id"]
        assert pushed["version"] == 2

    def test_uppercase_program_id_still_receives_updates(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)
        token = create_access_token(ORG_ADMIN.user_id)

        with client.websocket_connect(
            f"/api/v1/programs/{program['id'].upper()}/changes?token={token}"
        ) as websocket:
            save_schema(client, program["id"], make_schema())
            pushed = websocket.receive_json()

        assert pushed["id"] == program["id"]
        assert pushed["version"] == 2

    def test_socket_without_access_is_closed(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)
        token = create_access_token(OTHER_ADMIN.user_id)

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(
                f"/api/v1/programs/{program['id']}/changes?token={token}"
            ):
                pass
        assert exc_info.value.code == 1008

    def test_socket_without_token_is_closed(self, client, act_as):
        act_as(ORG_ADMIN)
        program = create_program(client)

        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/api/v1/programs/{program['id']}/changes"):
                pass
