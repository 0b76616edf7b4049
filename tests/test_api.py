"""HTTP and WebSocket tests against the full app with in-memory components."""

import time
from collections.abc import Iterator
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from sharpflow.api.app import create_app
from sharpflow.api.auth import create_access_token
from sharpflow.db import TaskType
from sharpflow.errors import ValidationFault
from sharpflow.jobs.broker import InMemoryBroker
from sharpflow.jobs.descriptors import Delivery

OWNER = "owner-a"
HEADERS = {"X-Owner-Id": OWNER}


class ParkedBroker(InMemoryBroker):
    """Accepts work but never hands it to a worker, so jobs stay pending."""

    async def claim(self, task_type: TaskType, visibility_timeout: float) -> Delivery | None:
        return None


@pytest.fixture
def client(settings, capabilities) -> Iterator[TestClient]:
    app = create_app(settings, capabilities=capabilities, broker=ParkedBroker())
    with TestClient(app) as test_client:
        yield test_client


def _submit(client: TestClient, payload: dict, headers: dict | None = None) -> str:
    response = client.post(
        "/jobs",
        json={"task_type": "lead_generation", "input_data": payload},
        headers=headers or HEADERS,
    )
    assert response.status_code == 202, response.text
    return response.json()["job_id"]


class TestJobsApi:
    def test_submit_get_and_list(self, client, lead_payload) -> None:
        job_id = _submit(client, lead_payload)

        job = client.get(f"/jobs/{job_id}", headers=HEADERS).json()
        assert job["status"] == "pending"
        assert job["progress"] == 0
        assert job["input_data"]["locations"] == ["Austin"]

        listing = client.get("/jobs", params={"status": "pending"}, headers=HEADERS).json()
        assert listing["count"] == 1
        assert listing["jobs"][0]["id"] == job_id

    def test_invalid_payload_is_400(self, client) -> None:
        response = client.post(
            "/jobs",
            json={"task_type": "inbox_monitoring", "input_data": {"mailbox": "not-an-email"}},
            headers=HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["fields"] == ["mailbox"]

    def test_unknown_task_type_is_400(self, client) -> None:
        response = client.post("/jobs", json={"task_type": "cold_calling"}, headers=HEADERS)
        assert response.status_code == 400
        assert "Unknown task type" in response.json()["detail"]

    def test_invalid_filter_is_400(self, client) -> None:
        response = client.get("/jobs", params={"status": "sleeping"}, headers=HEADERS)
        assert response.status_code == 400

    def test_jobs_are_owner_scoped(self, client, lead_payload) -> None:
        job_id = _submit(client, lead_payload)

        other = {"X-Owner-Id": "owner-b"}
        assert client.get(f"/jobs/{job_id}", headers=other).status_code == 404
        assert client.get("/jobs", headers=other).json()["count"] == 0
        assert client.get(f"/jobs/{uuid4()}", headers=HEADERS).status_code == 404

    def test_missing_owner_is_401(self, client) -> None:
        response = client.get("/jobs")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_cancel(self, client, lead_payload) -> None:
        job_id = _submit(client, lead_payload)

        response = client.post(f"/jobs/{job_id}/cancel", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        again = client.post(f"/jobs/{job_id}/cancel", headers=HEADERS)
        assert again.status_code == 400
        assert client.post(f"/jobs/{job_id}/cancel", headers={"X-Owner-Id": "b"}).status_code == 404


class TestBearerAuth:
    def test_jwt_owner(self, settings, capabilities, lead_payload) -> None:
        secured = settings.model_copy(update={"disable_auth": False})
        token = create_access_token("owner-jwt", secured)
        app = create_app(secured, capabilities=capabilities, broker=ParkedBroker())

        with TestClient(app) as client:
            bearer = {"Authorization": f"Bearer {token}"}
            job_id = _submit(client, lead_payload, headers=bearer)
            assert client.get(f"/jobs/{job_id}", headers=bearer).status_code == 200
            # The dev header is ignored once auth is on
            assert client.get("/jobs", headers=HEADERS).status_code == 401


class TestIntentsApi:
    def test_classify_has_no_side_effects(self, client) -> None:
        response = client.post(
            "/intents/classify",
            json={"utterance": "Find CEOs of software companies in Austin"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["type"] == "lead_generation"
        assert body["required_worker"] == "discovery"
        assert body["confidence"] == 0.6
        assert body["source"] == "fallback"
        assert body["missing_parameters"] == []
        assert client.get("/jobs", headers=HEADERS).json()["count"] == 0

    def test_dispatch_submits_job_and_records_exchange(self, client) -> None:
        response = client.post(
            "/intents/dispatch",
            json={"utterance": "Find CEOs of software companies in Austin"},
            headers=HEADERS,
        )

        body = response.json()
        assert response.status_code == 200
        assert body["job_id"] is not None
        assert body["reply"].startswith("Started lead_generation job")
        assert client.get(f"/jobs/{body['job_id']}", headers=HEADERS).status_code == 200

        history = client.get("/conversations/router/messages", headers=HEADERS).json()
        user, assistant = history["messages"]
        assert (user["role"], user["message_type"]) == ("user", "command")
        assert (assistant["role"], assistant["message_type"]) == ("assistant", "result")
        assert assistant["parent_message_id"] == user["id"]
        assert user["session_id"] == body["session_id"]

    def test_dispatch_with_missing_parameters_asks_for_them(self, client) -> None:
        response = client.post(
            "/intents/dispatch", json={"utterance": "find CEOs"}, headers=HEADERS
        )

        body = response.json()
        assert body["job_id"] is None
        assert body["intent"]["missing_parameters"] == ["locations", "businesses"]
        assert "locations, businesses" in body["reply"]
        assert client.get("/jobs", headers=HEADERS).json()["count"] == 0

    def test_rejected_submission_records_error_reply(self, client) -> None:
        client.app.state.submission.submit_from_intent = AsyncMock(
            side_effect=ValidationFault("Invalid payload", details={"fields": ["jobTitles"]})
        )

        response = client.post(
            "/intents/dispatch",
            json={"utterance": "Find CEOs of software companies in Austin"},
            headers=HEADERS,
        )

        assert response.status_code == 400
        history = client.get("/conversations/router/messages", headers=HEADERS).json()
        user, reply = history["messages"]
        assert user["message_type"] == "command"
        assert (reply["role"], reply["message_type"]) == ("assistant", "error")
        assert reply["parent_message_id"] == user["id"]
        assert "Invalid payload" in reply["content"]

    def test_empty_utterance(self, client) -> None:
        response = client.post("/intents/classify", json={"utterance": ""}, headers=HEADERS)
        assert response.json()["type"] == "general_query"
        assert response.json()["confidence"] == 0.0


class TestConversationsApi:
    def test_append_and_read_context(self, client) -> None:
        response = client.post(
            "/conversations/discovery/messages",
            json={"role": "user", "content": "find bakeries in Dallas"},
            headers=HEADERS,
        )
        assert response.status_code == 201
        message = response.json()
        assert message["token_count"] == 6

        context = client.get("/conversations/discovery/context", headers=HEADERS).json()
        assert [m["id"] for m in context["messages"]] == [message["id"]]
        assert context["summary"] is None

        sessions = client.get("/conversations/discovery/sessions", headers=HEADERS).json()
        assert [s["id"] for s in sessions] == [message["session_id"]]

    def test_paused_session_rejects_messages(self, client) -> None:
        message = client.post(
            "/conversations/discovery/messages",
            json={"role": "user", "content": "hi"},
            headers=HEADERS,
        ).json()
        session_id = message["session_id"]

        paused = client.post(
            f"/conversations/discovery/sessions/{session_id}/pause", headers=HEADERS
        )
        assert paused.json() == {"session_id": session_id, "paused": True}

        response = client.post(
            "/conversations/discovery/messages",
            json={"role": "user", "content": "again", "session_id": session_id},
            headers=HEADERS,
        )
        assert response.status_code == 400

    def test_pause_is_scoped_to_the_agent(self, client) -> None:
        message = client.post(
            "/conversations/discovery/messages",
            json={"role": "user", "content": "hi"},
            headers=HEADERS,
        ).json()
        session_id = message["session_id"]

        wrong_agent = client.post(
            f"/conversations/research/sessions/{session_id}/pause", headers=HEADERS
        )
        assert wrong_agent.status_code == 404

        sessions = client.get("/conversations/discovery/sessions", headers=HEADERS).json()
        assert sessions[0]["status"] == "active"

    def test_unknown_session_is_404(self, client) -> None:
        response = client.post(
            "/conversations/discovery/messages",
            json={"role": "user", "content": "hi", "session_id": str(uuid4())},
            headers=HEADERS,
        )
        assert response.status_code == 404

    def test_preferences(self, client) -> None:
        defaults = client.get("/conversations/research/preferences", headers=HEADERS).json()
        assert defaults["max_context_messages"] == 20
        assert defaults["is_default"] is True

        updated = client.put(
            "/conversations/research/preferences",
            json={"max_context_messages": 5},
            headers=HEADERS,
        ).json()
        assert updated["max_context_messages"] == 5
        assert updated["max_context_tokens"] == 4000
        assert updated["is_default"] is False

        bad = client.put(
            "/conversations/research/preferences",
            json={"auto_summarize_threshold": 1},
            headers=HEADERS,
        )
        assert bad.status_code == 422

    def test_invalid_agent_id_is_422(self, client) -> None:
        response = client.get("/conversations/Bad Agent!/messages", headers=HEADERS)
        assert response.status_code == 422

    def test_archive(self, client) -> None:
        response = client.post(
            "/conversations/archive", json={"days_threshold": 30}, headers=HEADERS
        )
        assert response.json() == {"archived": 0}


class TestWebSocket:
    def test_snapshot_on_connect(self, client, lead_payload) -> None:
        job_id = _submit(client, lead_payload)

        with client.websocket_connect("/ws", headers=HEADERS) as ws:
            established = ws.receive_json()
            assert established["event"] == "connection_established"
            assert established["data"] == {"owner_id": OWNER}

            snapshot = ws.receive_json()
            assert snapshot["event"] == "jobs_snapshot"
            assert [j["id"] for j in snapshot["data"]["jobs"]] == [job_id]

            ws.send_text("ping")
            assert ws.receive_text() == "pong"

    def test_cancel_event_reaches_owner(self, client, lead_payload) -> None:
        job_id = _submit(client, lead_payload)

        with client.websocket_connect("/ws", headers=HEADERS) as ws:
            ws.receive_json()
            ws.receive_json()
            client.post(f"/jobs/{job_id}/cancel", headers=HEADERS)
            event = ws.receive_json()

        assert event["event"] == "job_cancelled"
        assert event["data"]["job_id"] == job_id

    def test_unauthenticated_connection_is_closed(self, client) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4401


class TestHealth:
    def test_health(self, client) -> None:
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["database"] is True
        assert body["workers"] is True
        assert body["connections"] == 0
        assert set(body["queues"]) == {t.value for t in TaskType}


class TestEndToEnd:
    def test_submitted_job_runs_to_completion(self, settings, capabilities, lead_payload) -> None:
        app = create_app(settings, capabilities=capabilities)

        with TestClient(app) as client:
            job_id = _submit(client, lead_payload)

            deadline = time.monotonic() + 10
            job = client.get(f"/jobs/{job_id}", headers=HEADERS).json()
            while job["status"] not in ("completed", "failed") and time.monotonic() < deadline:
                time.sleep(0.05)
                job = client.get(f"/jobs/{job_id}", headers=HEADERS).json()

        assert job["status"] == "completed", job
        assert job["progress"] == 100
        assert job["result"]["leadsFound"] == 2
