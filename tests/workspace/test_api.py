"""Integration tests for the workspace FastAPI application."""

from __future__ import annotations

import json
import uuid

import pytest
from fastapi.testclient import TestClient

from journal_vet.workspace.api import create_app
from journal_vet.workspace.security import sign_callback
from journal_vet.workspace.service import bootstrap_account, seed_reference_data

from .conftest import FakeGateway

SECRET = "callback-secret"


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def client(settings, gateway, monkeypatch):
    monkeypatch.delenv("R2_ENDPOINT_URL", raising=False)
    settings.callback_secret = SECRET
    app = create_app(settings, gateway=gateway)
    database = app.state.database
    database.create_all()
    with database.session() as session:
        seed_reference_data(session)
    with TestClient(app) as test_client:
        yield test_client


def _signup(client, email):
    account_id = uuid.uuid4()
    with client.app.state.database.session() as session:
        bootstrap_account(session, account_id, email)
    return {"X-User-ID": str(account_id), "X-User-Email": email}, account_id


def _callback(client, payload, secret=SECRET):
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json"}
    if secret:
        headers["X-Pipeline-Signature"] = sign_callback(body, secret)
    return client.post("/v1/pipeline/callback", content=body, headers=headers)


def test_health_and_request_id(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


def test_requests_require_identity(client):
    assert client.get("/v1/workspaces").status_code == 401
    assert client.get("/v1/workspaces", headers={"X-User-ID": "nope"}).status_code == 401


def test_languages_are_public(client):
    response = client.get("/v1/languages")

    assert response.status_code == 200
    assert {"code": "en", "label": "English"} in response.json()


def test_workspace_context_and_rename(client):
    alice, alice_id = _signup(client, "alice@example.com")

    context = client.get("/v1/workspaces/context", headers=alice).json()
    assert context["status"] == "success"
    assert context["active_workspace_id"] == str(alice_id)
    assert context["workspaces"][0]["is_core"] is True

    renamed = client.patch(f"/v1/workspaces/{alice_id}", json={"name": "Clinic"}, headers=alice)
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Clinic"

    # The corrected selection was persisted, so no further persist is requested.
    again = client.get("/v1/workspaces/context", headers=alice).json()
    assert again["should_persist_selection"] is False


def test_invite_flow_over_http(client):
    alice, alice_id = _signup(client, "alice@example.com")
    bob, bob_id = _signup(client, "bob@example.com")

    created = client.post(
        f"/v1/workspaces/{alice_id}/invites", json={"email": "Bob@example.com"}, headers=alice
    )
    assert created.status_code == 201
    invite = created.json()
    assert invite["status"] == "pending"

    mine = client.get("/v1/invites/mine", headers=bob).json()
    assert [i["id"] for i in mine] == [invite["id"]]
    assert mine[0]["token"] == invite["token"]

    accepted = client.post("/v1/invites/accept", json={"token": invite["token"]}, headers=bob)
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    assert accepted.json()["token"] is None

    replay = client.post("/v1/invites/accept", json={"token": invite["token"]}, headers=bob)
    assert replay.status_code == 410

    members = client.get(f"/v1/workspaces/{alice_id}/members", headers=alice).json()
    assert {m["user_id"] for m in members} == {str(alice_id), str(bob_id)}

    forbidden = client.post(
        f"/v1/workspaces/{alice_id}/invites", json={"email": "carol@example.com"}, headers=bob
    )
    assert forbidden.status_code == 403

    left = client.post(f"/v1/invites/{invite['id']}/revoke", headers=bob)
    assert left.status_code == 200
    assert left.json()["status"] == "revoked"
    assert client.get(f"/v1/workspaces/{alice_id}/journals", headers=bob).status_code == 404


def test_owner_membership_delete_conflicts(client):
    alice, alice_id = _signup(client, "alice@example.com")

    response = client.delete(f"/v1/workspaces/{alice_id}/members/{alice_id}", headers=alice)

    assert response.status_code == 409
    assert response.json()["detail"] == "Cannot remove the workspace owner"


def test_journal_lifecycle_over_http(client, gateway):
    alice, alice_id = _signup(client, "alice@example.com")
    templates = client.get(f"/v1/workspaces/{alice_id}/templates", headers=alice).json()

    created = client.post(
        f"/v1/workspaces/{alice_id}/journals",
        json={
            "audio_path": f"audio/{alice_id}/rec.webm",
            "template_id": templates[0]["id"],
            "language_code": "en",
            "meta": {"duration_sec": 60},
        },
        headers=alice,
    )
    assert created.status_code == 201
    journal = created.json()
    assert journal["status"] == "processing"
    assert journal["progress"]["expected_seconds"] == 20.0
    assert len(gateway.processing) == 1

    unsigned = _callback(client, {"journal_id": journal["id"], "summary": "S"}, secret=None)
    assert unsigned.status_code == 401

    done = _callback(
        client, {"journal_id": journal["id"], "transcript": "T", "summary": "S"}
    )
    assert done.status_code == 200
    assert done.json()["status"] == "processed"
    assert done.json()["progress"] is None

    duplicate = _callback(
        client, {"journal_id": journal["id"], "summary": "other", "outcome": "failure"}
    )
    assert duplicate.json()["summary"] == "S"

    listed = client.get(
        f"/v1/workspaces/{alice_id}/journals",
        params={"status": "processed", "search": "s"},
        headers=alice,
    ).json()
    assert listed["total"] == 1

    again = client.post(f"/v1/journals/{journal['id']}/resummarize", json={}, headers=alice)
    assert again.status_code == 200
    assert again.json()["status"] == "processing"
    assert again.json()["transcript"] == "T"

    deleted = client.delete(f"/v1/journals/{journal['id']}", headers=alice)
    assert deleted.status_code == 204
    assert client.get(f"/v1/journals/{journal['id']}", headers=alice).status_code == 404


def test_dispatch_failure_reports_journal_id(client, gateway):
    alice, alice_id = _signup(client, "alice@example.com")
    gateway.fail = True

    response = client.post(
        f"/v1/workspaces/{alice_id}/journals",
        json={"audio_path": "audio/x/rec.webm"},
        headers=alice,
    )

    assert response.status_code == 502
    journal_id = response.json()["journal_id"]
    fetched = client.get(f"/v1/journals/{journal_id}", headers=alice)
    assert fetched.json()["status"] == "processing"


def test_callback_for_unknown_journal(client):
    response = _callback(client, {"journal_id": str(uuid.uuid4()), "summary": "S"})
    assert response.status_code == 404


def test_callback_rejects_malformed_payload(client):
    response = _callback(client, {"journal_id": "not-a-uuid"})
    assert response.status_code == 422


def test_cross_tenant_reads_are_not_found(client):
    alice, alice_id = _signup(client, "alice@example.com")
    bob, _ = _signup(client, "bob@example.com")

    assert client.get(f"/v1/workspaces/{alice_id}/templates", headers=bob).status_code == 404
    assert client.get(f"/v1/workspaces/{alice_id}/members", headers=bob).status_code == 404


def test_invalid_input_is_bad_request(client):
    alice, alice_id = _signup(client, "alice@example.com")

    response = client.post(
        f"/v1/workspaces/{alice_id}/invites", json={"email": "nobody"}, headers=alice
    )

    assert response.status_code == 400


def test_audio_upload_requires_storage(client):
    alice, alice_id = _signup(client, "alice@example.com")

    response = client.post(
        f"/v1/workspaces/{alice_id}/audio-uploads", json={"file_name": "a.webm"}, headers=alice
    )

    assert response.status_code == 503


def test_template_and_vocabulary_endpoints(client):
    alice, alice_id = _signup(client, "alice@example.com")

    template = client.post(
        f"/v1/workspaces/{alice_id}/templates",
        json={"name": "Dental", "body": "Teeth: {{teeth}}"},
        headers=alice,
    )
    assert template.status_code == 201
    template_id = template.json()["id"]
    assert template.json()["kind"] == "Custom"

    patched = client.patch(f"/v1/templates/{template_id}", json={"body": "New"}, headers=alice)
    assert patched.json()["body"] == "New"
    assert client.delete(f"/v1/templates/{template_id}", headers=alice).status_code == 204

    entry = client.post(
        f"/v1/workspaces/{alice_id}/vocabulary",
        json={"term": "meloxicam", "replacement": "Meloxicam"},
        headers=alice,
    )
    assert entry.status_code == 201
    entry_id = entry.json()["id"]
    assert client.get(f"/v1/workspaces/{alice_id}/vocabulary", headers=alice).json()[0][
        "term"
    ] == "meloxicam"
    assert client.delete(f"/v1/vocabulary/{entry_id}", headers=alice).status_code == 204


def test_polling_hint_ends_after_attempt_cap(client):
    alice, alice_id = _signup(client, "alice@example.com")
    journal_id = client.post(
        f"/v1/workspaces/{alice_id}/journals",
        json={"audio_path": f"audio/{alice_id}/rec.webm"},
        headers=alice,
    ).json()["id"]

    first = client.get(f"/v1/journals/{journal_id}", headers=alice).json()
    assert first["progress"]["refresh_after"] == 20.0

    last = client.get(
        f"/v1/journals/{journal_id}", params={"poll_attempt": 5}, headers=alice
    ).json()
    assert last["progress"]["refresh_after"] is None
    assert client.get(
        f"/v1/journals/{journal_id}", params={"poll_attempt": -1}, headers=alice
    ).status_code == 422


def test_error_responses_are_documented(client):
    openapi = client.get("/openapi.json").json()

    responses = openapi["paths"]["/v1/journals/{journal_id}"]["get"]["responses"]
    assert {"400", "403", "404", "409", "410", "502"} <= set(responses)
    assert responses["404"]["content"]["application/json"]["schema"]["$ref"].endswith(
        "/ErrorResponse"
    )
    assert "journal_id" in openapi["components"]["schemas"]["ErrorResponse"]["properties"]
