"""HTTP surface: authentication, status mapping, rate limiting and the event stream."""

from __future__ import annotations

from datetime import timedelta
import socket
from threading import Thread
import time

from fastapi.testclient import TestClient
import httpx
import pytest

from live_quiz.core.models import Role
from live_quiz.core.session_engine import SessionEngine
from live_quiz.core.settings import EngineSettings
from live_quiz.server.api_server import build_api_server, create_api_app
from live_quiz.server.auth import JwtTokenGate
from tests.conftest import OTHER_TEACHER_ID, OUTSIDER_ID, STUDENT_IDS, TEACHER_ID

SECRET = "test-secret"


@pytest.fixture
def gate() -> JwtTokenGate:
    return JwtTokenGate(SECRET)


@pytest.fixture
def client(engine, gate) -> TestClient:
    return TestClient(create_api_app(engine, gate))


def auth(gate, user_id, role=Role.STUDENT):
    return {"Authorization": f"Bearer {gate.issue(user_id, role)}"}


@pytest.fixture
def teacher_headers(gate):
    return auth(gate, TEACHER_ID, Role.TEACHER)


@pytest.fixture
def created(client, teacher_headers):
    response = client.post("/sessions", json={"list_id": 1, "class_id": 1}, headers=teacher_headers)
    assert response.status_code == 201
    return response.json()["session_id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.post("/sessions", json={"list_id": 1, "class_id": 1})
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_token_signed_elsewhere(self, client):
        forged = JwtTokenGate("other-secret").issue(TEACHER_ID, Role.TEACHER)
        response = client.post(
            "/sessions", json={"list_id": 1, "class_id": 1}, headers={"Authorization": f"Bearer {forged}"}
        )
        assert response.status_code == 401

    def test_expired_token(self, client, gate):
        expired = gate.issue(TEACHER_ID, Role.TEACHER, lifetime=timedelta(seconds=-5))
        response = client.get("/sessions/1", headers={"Authorization": f"Bearer {expired}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Token has expired."

    def test_gate_round_trip(self, gate):
        principal = gate.verify(gate.issue(42, Role.ADMIN))
        assert principal.user_id == 42
        assert principal.is_admin


class TestSessionFlow:
    def test_teacher_runs_a_question(self, client, gate, teacher_headers, created):
        student = auth(gate, STUDENT_IDS[0])
        joined = client.post(f"/sessions/{created}/join", headers=student)
        assert joined.status_code == 201

        started = client.post(f"/sessions/{created}/start", headers=teacher_headers)
        assert started.json() == {"session_id": created, "status": "question_active", "changed": True}

        state = client.get(f"/sessions/{created}", headers=student).json()
        question = state["question"]
        assert state["participant"]["participant_id"] == joined.json()["participant_id"]
        assert "correct_option_index" not in question

        answer = client.post(
            f"/sessions/{created}/answers",
            json={"question_id": question["id"], "selected_option_index": 1},
            headers=student,
        )
        assert answer.status_code == 201
        assert answer.json()["is_correct"] is True

        duplicate = client.post(
            f"/sessions/{created}/answers",
            json={"question_id": question["id"], "selected_option_index": 0},
            headers=student,
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "Duplicate"

        closed = client.post(f"/sessions/{created}/close", headers=teacher_headers)
        assert closed.json()["status"] == "question_closed"
        again = client.post(f"/sessions/{created}/close", headers=teacher_headers)
        assert again.json()["changed"] is False

        advanced = client.post(f"/sessions/{created}/advance", headers=teacher_headers)
        assert advanced.json()["status"] == "question_active"

        review = client.get(f"/sessions/{created}/answers", headers=teacher_headers).json()
        assert [row["payload"] for row in review] == [1]
        board = client.get(f"/sessions/{created}/leaderboard?limit=1", headers=teacher_headers).json()
        assert board[0]["score"] == 1

        ended = client.post(f"/sessions/{created}/end", headers=teacher_headers)
        assert ended.json()["status"] == "ended"

    def test_transition_replies_do_not_reread_state(self, client, engine, teacher_headers, created, monkeypatch):
        def unavailable(*args, **kwargs):
            raise AssertionError("snapshot should not be read")

        monkeypatch.setattr(engine, "snapshot", unavailable)
        started = client.post(f"/sessions/{created}/start", headers=teacher_headers)
        assert started.json() == {"session_id": created, "status": "question_active", "changed": True}
        closed = client.post(f"/sessions/{created}/close", headers=teacher_headers)
        assert closed.json() == {"session_id": created, "status": "question_closed", "changed": True}
        ended = client.post(f"/sessions/{created}/end", headers=teacher_headers)
        assert ended.json() == {"session_id": created, "status": "ended", "changed": True}

    def test_other_teacher_is_forbidden(self, client, gate, created):
        response = client.post(f"/sessions/{created}/start", headers=auth(gate, OTHER_TEACHER_ID, Role.TEACHER))
        assert response.status_code == 403

    def test_student_outside_class_cannot_join(self, client, gate, created):
        assert client.post(f"/sessions/{created}/join", headers=auth(gate, OUTSIDER_ID)).status_code == 403

    def test_unknown_session(self, client, teacher_headers):
        assert client.post("/sessions/999/start", headers=teacher_headers).status_code == 404

    def test_invalid_transition(self, client, teacher_headers, created):
        response = client.post(f"/sessions/{created}/advance", headers=teacher_headers)
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidState"

    def test_answer_needs_exactly_one_value(self, client, gate, teacher_headers, created):
        student = auth(gate, STUDENT_IDS[0])
        client.post(f"/sessions/{created}/join", headers=student)
        response = client.post(
            f"/sessions/{created}/answers",
            json={"question_id": 1, "selected_option_index": 1, "text": "also this"},
            headers=student,
        )
        assert response.status_code == 422

    def test_answer_before_joining(self, client, gate, teacher_headers, created):
        client.post(f"/sessions/{created}/start", headers=teacher_headers)
        response = client.post(
            f"/sessions/{created}/answers",
            json={"question_id": 1, "selected_option_index": 1},
            headers=auth(gate, STUDENT_IDS[1]),
        )
        assert response.status_code == 404

    def test_violations_remove_student(self, client, gate, teacher_headers, created):
        student = auth(gate, STUDENT_IDS[0])
        client.post(f"/sessions/{created}/join", headers=student)
        results = [
            client.post(f"/sessions/{created}/violations", json={"kind": "tab_hidden"}, headers=student).json()
            for _ in range(3)
        ]
        assert [r["violation_count"] for r in results] == [1, 2, 3]
        assert results[-1]["removed"] is True
        assert client.get(f"/sessions/{created}", headers=student).status_code == 403


class TestEventStream:
    def test_stream_accepts_query_token(self, client, gate, teacher_headers, created):
        client.post(f"/sessions/{created}/end", headers=teacher_headers)
        token = gate.issue(TEACHER_ID, Role.TEACHER)
        response = client.get(f"/sessions/{created}/events", params={"token": token})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert "event: snapshot" in response.text
        assert '"end_reason": "teacher"' in response.text

    def test_stream_requires_membership(self, client, gate, created):
        response = client.get(f"/sessions/{created}/events", headers=auth(gate, STUDENT_IDS[0]))
        assert response.status_code == 403


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _wait_for(condition, timeout=5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.05)
    return condition()


@pytest.fixture
def live_port(engine, gate):
    port = _free_port()
    server = build_api_server(engine, gate, host="127.0.0.1", port=port, log_level="warning")
    thread = Thread(target=server.run, name="LiveQuizTestServer", daemon=True)
    thread.start()
    assert _wait_for(lambda: server.started or not thread.is_alive(), timeout=10)
    assert server.started
    yield port
    # Closing every stream first lets the server finish its open responses.
    engine.shutdown()
    server.should_exit = True
    thread.join(timeout=15)


class TestLiveEventStream:
    def test_disconnect_releases_listener(self, live_port, engine, store, gate, session_id):
        participant_id = engine.join_session(session_id, STUDENT_IDS[0])
        url = f"http://127.0.0.1:{live_port}/sessions/{session_id}/events"
        with httpx.Client(timeout=5) as http:
            with http.stream("GET", url, headers=auth(gate, STUDENT_IDS[0])) as response:
                assert response.status_code == 200
                lines = response.iter_lines()
                assert next(lines).startswith("id: ")
                assert next(lines) == "event: snapshot"
                assert len(engine.channel.listeners(session_id)) == 1
                assert store.get_participant(participant_id).connected
        assert _wait_for(lambda: engine.channel.listeners(session_id) == [])
        assert _wait_for(lambda: not store.get_participant(participant_id).connected)

    def test_open_streams_do_not_block_other_requests(self, live_port, engine, gate, session_id):
        token = gate.issue(TEACHER_ID, Role.TEACHER)
        request = (
            f"GET /sessions/{session_id}/events?token={token} HTTP/1.1\r\n"
            f"Host: 127.0.0.1:{live_port}\r\n\r\n"
        ).encode()
        streams = []
        try:
            for _ in range(60):
                stream = socket.create_connection(("127.0.0.1", live_port), timeout=5)
                stream.sendall(request)
                streams.append(stream)
            for stream in streams:
                assert stream.recv(1024).startswith(b"HTTP/1.1 200")
            assert len(engine.channel.listeners(session_id)) == 60

            began = time.monotonic()
            response = httpx.get(
                f"http://127.0.0.1:{live_port}/sessions/{session_id}",
                headers=auth(gate, TEACHER_ID, Role.TEACHER),
                timeout=10,
            )
            assert response.status_code == 200
            assert time.monotonic() - began < 2
        finally:
            for stream in streams:
                stream.close()
        assert _wait_for(lambda: engine.channel.listeners(session_id) == [], timeout=10)


def test_rate_limit(store, scheduler, clock, gate):
    engine = SessionEngine(store, EngineSettings(rate_limit=2), scheduler=scheduler, clock=clock)
    client = TestClient(create_api_app(engine, gate))
    headers = auth(gate, TEACHER_ID, Role.TEACHER)
    codes = [
        client.post("/sessions", json={"list_id": 1, "class_id": 1}, headers=headers).status_code for _ in range(3)
    ]
    assert codes == [201, 201, 429]
    limited = client.post("/sessions", json={"list_id": 1, "class_id": 1}, headers=headers)
    assert int(limited.headers["Retry-After"]) >= 1
    assert limited.headers["X-RateLimit-Limit"] == "2"
