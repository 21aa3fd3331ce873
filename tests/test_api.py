"""HTTP surface tests: full app with the scripted backend behind it.

Runs the real lifespan (startup sweep, reaper task, shutdown) through
TestClient; backend events are pushed from the test thread.
"""

from __future__ import annotations

import asyncio
import gc
import logging

import pytest
from fastapi.testclient import TestClient

from fakes import DEFAULT_CODE, DEFAULT_TOKEN, poll_until
from pairlink.sessions.events import BackendEvent
from pairlink.serve import create_app

IDENTITY = "15551234567"


@pytest.fixture
def app(settings, factory):
    return create_app(settings, backend_factory=factory)


@pytest.fixture
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


def _status(client, identity=IDENTITY):
    return client.get(f"/api/status/{identity}").json()


# ── Linking ───────────────────────────────────────────────────────────────


class TestConnect:

    def test_connect_returns_linking_code(self, client, factory):
        resp = client.post("/api/connect", json={"phoneNumber": "(555) 123-4567"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["linkingCode"] == DEFAULT_CODE
        assert body["phoneNumber"] == IDENTITY
        assert body["method"] == "pairing-code"
        assert len(body["sessionId"]) == 32

        status = _status(client)
        assert status["state"] == "AwaitingCode"
        assert status["linkingCode"] == DEFAULT_CODE
        assert status["linkingCodeExpired"] is False

    def test_code_arriving_after_launch(self, client, factory):
        factory.program(on_start=[BackendEvent.linking_code("ABC-123")], start_delay=0.01)
        resp = client.post("/api/connect", json={"phoneNumber": IDENTITY})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["linkingCode"] == "ABC-123"
        assert body["sessionId"]

    def test_second_connect_conflicts(self, client, factory):
        client.post("/api/connect", json={"phoneNumber": IDENTITY})
        resp = client.post("/api/connect", json={"phoneNumber": "555-123-4567"})
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "IdentityAlreadyActive"
        assert body["details"]["currentState"] == "AwaitingCode"
        assert len(factory.backends) == 1

    def test_qr_method(self, client, factory):
        factory.program(on_start=[BackendEvent.qr("2@payload")])
        resp = client.post("/api/generate-pair-code", json={"phoneNumber": IDENTITY, "method": "qr-code"})
        assert resp.status_code == 200
        assert resp.json()["qrPayload"] == "2@payload"
        assert "linkingCode" not in resp.json()

    def test_timeout_is_408(self, client, factory):
        factory.program(on_start=[])
        resp = client.post("/api/connect", json={"phoneNumber": IDENTITY})
        assert resp.status_code == 408
        assert resp.json()["error"] == "LinkingTimeout"
        poll_until(lambda: factory.last.destroy_calls == 1)
        assert _status(client)["state"] == "Failed"

    def test_backend_failure_is_500(self, client, factory):
        factory.program(start_error=RuntimeError("no browser"))
        resp = client.post("/api/connect", json={"phoneNumber": IDENTITY})
        assert resp.status_code == 500
        assert resp.json()["error"] == "BackendInitError"


class TestValidation:

    @pytest.mark.parametrize("payload", [{"phoneNumber": "123"}, {}, {"phoneNumber": ""}])
    def test_bad_phone_is_400(self, client, factory, payload):
        resp = client.post("/api/connect", json=payload)
        assert resp.status_code == 400
        assert resp.json()["error"] == "ValidationError"
        assert factory.backends == []

    def test_bad_method_is_400(self, client):
        resp = client.post("/api/connect", json={"phoneNumber": IDENTITY, "method": "fax"})
        assert resp.status_code == 400

    def test_malformed_json_is_400(self, client):
        resp = client.post(
            "/api/connect", content=b"{nope", headers={"content-type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "ValidationError"


# ── Full lifecycle ────────────────────────────────────────────────────────


class TestLifecycle:

    def test_connect_disconnect_reconnect(self, client, factory):
        client.post("/api/connect", json={"phoneNumber": IDENTITY})
        first = factory.last
        first.emit(BackendEvent.authenticated())
        first.emit(BackendEvent.ready())
        poll_until(lambda: _status(client).get("connected") is True)
        poll_until(lambda: client.get(f"/api/session-token/{IDENTITY}").status_code == 200)

        token = client.get(f"/api/session-token/{IDENTITY}").json()
        assert token["token"] == DEFAULT_TOKEN

        creds = client.get(f"/api/credentials/{IDENTITY}").json()
        assert creds["identity"] == IDENTITY
        assert creds["connection"]["serverContext"] == {"environment": "test"}

        resp = client.delete(f"/api/disconnect/{IDENTITY}")
        assert resp.status_code == 200
        assert first.destroy_calls == 1

        gone = client.get(f"/api/status/{IDENTITY}")
        assert gone.status_code == 404
        assert gone.json() == {
            "error": "NotFound",
            "message": "No session for this phone number",
            "details": {"phoneNumber": IDENTITY},
            "connected": False,
        }

        factory.program(on_start=[BackendEvent.authenticated(), BackendEvent.ready()])
        resp = client.post("/api/reconnect", json={"phoneNumber": IDENTITY})
        assert resp.status_code == 200
        assert resp.json()["connected"] is True
        assert factory.last.config.resume_token == DEFAULT_TOKEN

    def test_ready_then_token_reported(self, client, factory):
        factory.program(on_start=[BackendEvent.ready()], token="tok-1")
        resp = client.post("/api/connect", json={"phoneNumber": IDENTITY})
        assert resp.json()["connected"] is True

        status = _status(client)
        assert status["connected"] is True
        assert status["state"] == "Connected"
        poll_until(lambda: client.get(f"/api/credentials/{IDENTITY}").status_code == 200)
        assert client.get(f"/api/credentials/{IDENTITY}").json()["token"] == "tok-1"

        resp = client.delete(f"/api/disconnect/{IDENTITY}")
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert client.get(f"/api/status/{IDENTITY}").json()["connected"] is False

    def test_status_reports_token_and_loading(self, client, factory):
        client.post("/api/connect", json={"phoneNumber": IDENTITY})
        status = _status(client)
        assert status["hasSessionToken"] is False
        assert status["loadingPercent"] is None

        factory.last.emit(BackendEvent.authenticated())
        factory.last.emit(BackendEvent.loading(75, "Loading chats"))
        poll_until(lambda: _status(client)["loadingPercent"] == 75)
        assert _status(client)["loadingMessage"] == "Loading chats"

        factory.last.emit(BackendEvent.ready())
        poll_until(lambda: _status(client)["hasSessionToken"] is True)

    def test_reconnect_without_token_is_404(self, client):
        resp = client.post("/api/reconnect", json={"phoneNumber": IDENTITY})
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFound"

    def test_disconnect_with_wipe(self, client, factory):
        client.post("/api/connect", json={"phoneNumber": IDENTITY})
        factory.last.emit(BackendEvent.ready())
        poll_until(lambda: client.get(f"/api/credentials/{IDENTITY}").status_code == 200)
        resp = client.delete(f"/api/disconnect/{IDENTITY}", params={"wipe": "true"})
        assert resp.json()["wiped"] is True
        assert client.get(f"/api/credentials/{IDENTITY}").status_code == 404

    def test_disconnect_by_session_id(self, client, factory):
        session_id = client.post("/api/connect", json={"phoneNumber": IDENTITY}).json()["sessionId"]
        resp = client.post(f"/api/disconnect/{session_id}")
        assert resp.status_code == 200
        assert resp.json()["phoneNumber"] == IDENTITY
        assert client.get(f"/api/status/{IDENTITY}").status_code == 404

    def test_restart_issues_fresh_session(self, client, factory):
        first_id = client.post("/api/connect", json={"phoneNumber": IDENTITY}).json()["sessionId"]
        factory.program(on_start=[BackendEvent.linking_code("NEWCODE1")])
        resp = client.post(f"/api/restart/{IDENTITY}")
        assert resp.status_code == 200
        assert resp.json()["linkingCode"] == "NEWCODE1"
        assert resp.json()["sessionId"] != first_id
        assert factory.backends[0].destroy_calls == 1

    def test_send_message(self, client, factory, settings):
        settings.send_confirmation = False
        client.post("/api/connect", json={"phoneNumber": IDENTITY})
        factory.last.emit(BackendEvent.ready())
        poll_until(lambda: _status(client).get("connected") is True)
        resp = client.post(f"/api/send-message/{IDENTITY}", json={"to": "15559876543", "message": "hi"})
        assert resp.status_code == 200
        assert factory.last.sent == [("15559876543@c.us", "hi")]

    def test_send_message_requires_connection(self, client, factory):
        client.post("/api/connect", json={"phoneNumber": IDENTITY})
        resp = client.post(f"/api/send-message/{IDENTITY}", json={"to": "15559876543", "message": "hi"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "SessionNotConnected"

    def test_shutdown_tears_down_sessions(self, app, factory):
        with TestClient(app) as c:
            c.post("/api/connect", json={"phoneNumber": IDENTITY})
        assert factory.last.destroy_calls == 1


# ── Listing and health ────────────────────────────────────────────────────


class TestListing:

    def test_clients_hide_codes(self, client):
        client.post("/api/connect", json={"phoneNumber": IDENTITY})
        body = client.get("/api/clients").json()
        assert body["count"] == 1
        entry = body["clients"][0]
        assert entry["phoneNumber"] == IDENTITY
        assert "linkingCode" not in entry
        assert "qrPayload" not in entry

    @pytest.mark.parametrize("path", ["/health", "/api/health"])
    def test_health(self, client, path):
        client.post("/api/connect", json={"phoneNumber": IDENTITY})
        body = client.get(path).json()
        assert body["status"] == "ok"
        assert body["activeSessions"] == 1
        assert body["totalSessions"] == 1
        assert "timestamp" in body
        assert "backend" in body


class TestLoopErrors:

    def test_orphaned_task_failure_is_logged(self, client, caplog):
        async def orphan_failure():
            async def fail():
                raise RuntimeError("orphaned task failed")

            task = asyncio.create_task(fail())
            await asyncio.sleep(0.01)
            del task
            gc.collect()

        with caplog.at_level(logging.ERROR, logger="pairlink.serve"):
            client.portal.call(orphan_failure)

        assert "Unhandled event loop error" in caplog.text
        assert any(
            r.exc_info and isinstance(r.exc_info[1], RuntimeError) for r in caplog.records
        )
        client.post("/api/connect", json={"phoneNumber": IDENTITY})
        assert client.get("/health").json()["activeSessions"] == 1


# ── Security ──────────────────────────────────────────────────────────────


class TestApiKey:

    @pytest.fixture
    def secured(self, settings, factory):
        settings.api_key = "s3cret"
        with TestClient(create_app(settings, backend_factory=factory)) as c:
            yield c

    def test_missing_key_rejected(self, secured):
        resp = secured.post("/api/connect", json={"phoneNumber": IDENTITY})
        assert resp.status_code == 401

    def test_wrong_key_rejected(self, secured):
        resp = secured.get("/api/clients", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_valid_key_accepted(self, secured):
        resp = secured.get("/api/clients", headers={"Authorization": "Bearer s3cret"})
        assert resp.status_code == 200

    def test_health_is_public(self, secured):
        assert secured.get("/health").status_code == 200


class TestRateLimit:

    def test_connect_rate_limited(self, settings, factory):
        settings.rate_limit_connect = "2/minute"
        with TestClient(create_app(settings, backend_factory=factory)) as c:
            codes = [
                c.post("/api/connect", json={"phoneNumber": f"1555000000{i}"}).status_code
                for i in range(3)
            ]
        assert codes[:2] == [200, 200]
        assert codes[2] == 429
