import asyncio
import base64
import threading

import pytest
from fastapi.testclient import TestClient

from captcha_service.app import create_app
from captcha_service.config import Settings, get_settings
from captcha_service.modules.state_machine import SessionState
from captcha_service.services.resolution import CaptchaResolutionService

from .fakes import ScriptedSolver, outcome

API_KEY = "route-test-key"
HEADERS = {"X-API-KEY": API_KEY}


@pytest.fixture
def settings():
    return Settings(captcha_api_key=API_KEY, environment="test")


@pytest.fixture
def service():
    return CaptchaResolutionService(solver=ScriptedSolver([outcome("AB12")]))


@pytest.fixture
def client(settings, service):
    app = create_app(settings, service=service)
    app.dependency_overrides[get_settings] = lambda: settings
    return TestClient(app)


@pytest.fixture
def background_loop():
    """An event loop on its own thread, standing in for the automation loop."""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=1)
    loop.close()


def register_session(service, loop, session_id, image=None) -> SessionState:
    async def make():
        session = SessionState(session_id)
        if image is not None:
            session.record_capture(image, "digest")
        return session

    session = asyncio.run_coroutine_threadsafe(make(), loop).result(timeout=1)
    service._sessions[session_id] = session
    return session


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "timestamp" in data
    assert "X-Request-ID" in response.headers


@pytest.mark.parametrize("headers", [{}, {"X-API-KEY": "wrong"}])
def test_captcha_routes_require_api_key(client, headers):
    assert client.get("/captcha/stats", headers=headers).status_code == 403
    assert client.get("/captcha/s1", headers=headers).status_code == 403


def test_stats(client):
    response = client.get("/captcha/stats", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["total_sessions"] == 0


def test_pending_image_unknown_session(client):
    assert client.get("/captcha/nope", headers=HEADERS).status_code == 404


def test_pending_image_is_served_as_base64(client, service, background_loop):
    register_session(service, background_loop, "s1", image=b"\x89PNG-bytes")

    response = client.get("/captcha/s1", headers=HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["session_id"] == "s1"
    assert base64.b64decode(data["image_base64"]) == b"\x89PNG-bytes"
    assert data["captured_at"] > 0


def test_manual_text_reaches_running_session(client, service, background_loop):
    session = register_session(service, background_loop, "s1")

    response = client.post("/captcha/s1", json={"text": " z9k4 "}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"session_id": "s1", "text": "Z9K4", "accepted": True}

    async def manual_text():
        return await session.manual_override

    delivered = asyncio.run_coroutine_threadsafe(manual_text(), background_loop)
    assert delivered.result(timeout=1) == "Z9K4"

    second = client.post("/captcha/s1", json={"text": "AAAA"}, headers=HEADERS)
    assert second.status_code == 409


@pytest.mark.parametrize("text", ["AB1", "AB12C", "AB!2", ""])
def test_manual_text_is_validated(client, text):
    response = client.post("/captcha/s1", json={"text": text}, headers=HEADERS)

    assert response.status_code == 422


def test_manual_text_for_unknown_session(client):
    response = client.post("/captcha/nope", json={"text": "Z9K4"}, headers=HEADERS)

    assert response.status_code == 404


def test_clear_session(client, service, background_loop):
    register_session(service, background_loop, "s1", image=b"img")

    response = client.delete("/captcha/s1", headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"session_id": "s1", "success": True}
    assert client.get("/captcha/s1", headers=HEADERS).status_code == 404
    assert client.delete("/captcha/nope", headers=HEADERS).status_code == 404
