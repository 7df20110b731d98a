import asyncio
import json
from typing import Optional

import pytest

import app


def _request(method: str, path: str, payload: Optional[dict] = None, token: Optional[str] = "tok-learner"):
    async def _call():
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        headers = [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode()),
        ]
        if token:
            headers.append((b"authorization", f"Bearer {token}".encode()))

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": b"",
            "headers": headers,
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_call())
    status = 500
    body_bytes = b""

    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")

    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


@pytest.fixture
def api(seeded_scenario, monkeypatch):
    monkeypatch.setattr(app, "IDENTITY", app.IdentityResolver({"tok-learner": "learner-1", "tok-other": "learner-2"}))
    return app


def test_health(api):
    status, data = _request("GET", "/health", token=None)
    assert status == 200
    assert data["ok"] is True


def test_missing_token_is_401(api):
    status, data = _request("POST", "/sessions", {"scenario_id": "feedback"}, token=None)
    assert status == 401
    assert data["detail"] == "missing or invalid token"


def test_unknown_scenario_is_404(api):
    status, _ = _request("POST", "/sessions", {"scenario_id": "nope"})
    assert status == 404


def test_foreign_session_is_404(api):
    _, session = _request("POST", "/sessions", {"scenario_id": "feedback"})
    status, _ = _request("GET", f"/sessions/{session['id']}", token="tok-other")
    assert status == 404


def test_invalid_body_is_422(api):
    _, session = _request("POST", "/sessions", {"scenario_id": "feedback"})
    status, _ = _request("POST", f"/sessions/{session['id']}/complete", {"overall_score": 150})
    assert status == 422
    status, _ = _request("POST", f"/sessions/{session['id']}/turns", {"speaker": "narrator", "message": "hi"})
    assert status == 422


def test_full_session_over_http(api):
    status, session = _request("POST", "/sessions", {"scenario_id": "feedback"})
    assert status == 200
    sid = session["id"]
    assert session["status"] == "in-progress"

    trigger = None
    for i in range(5):
        status, turn = _request("POST", f"/sessions/{sid}/turns", {"speaker": "user", "message": f"turn {i}"})
        assert status == 200
        assert turn["turn_number"] == i + 1
        trigger = turn["assessment_trigger"]
    assert trigger["trigger"] is True
    question = trigger["assessment"]
    assert question["id"] == "q-mc"
    assert all("is_correct" not in option for option in question["options"])

    status, answer = _request("POST", f"/sessions/{sid}/answers", {"assessment_id": "q-mc", "answer": "b"})
    assert status == 200
    assert answer["is_correct"] is True
    assert answer["score"] == 100

    status, transcript = _request("GET", f"/sessions/{sid}/turns")
    assert [t["turn_number"] for t in transcript["turns"]] == [1, 2, 3, 4, 5]

    status, immediate = _request("GET", f"/sessions/{sid}/assessment")
    assert immediate["assessment"]["id"] == "q-tf"

    status, summary = _request("GET", f"/sessions/{sid}/summary")
    assert status == 409

    status, completed = _request(
        "POST",
        f"/sessions/{sid}/complete",
        {"overall_score": 82, "xp_earned": 150, "competencies": [{"name": "Empathy", "score": 62}]},
    )
    assert status == 200
    assert completed["session"]["status"] == "completed"
    assert completed["competencies"][0]["name"] == "Empathy"

    status, _ = _request("POST", f"/sessions/{sid}/complete", {"overall_score": 90})
    assert status == 409

    status, comparison = _request("GET", f"/sessions/{sid}/previous-best")
    assert comparison == {"metrics": []}

    status, recs = _request("GET", f"/sessions/{sid}/recommendations")
    assert recs["recommendations"][0]["title"] == "Improve Empathy"
    assert recs["recommendations"][0]["related_scenario_id"] == "feedback"

    status, summary = _request("GET", f"/sessions/{sid}/summary")
    assert status == 200
    assert summary["overall_score"] == 82
    assert summary["assessments_answered"] == 1

    status, overview = _request("GET", "/learner/competencies")
    assert status == 200
    assert overview["competencies"][0]["score"] == 62
    assert overview["streak"] == 1
