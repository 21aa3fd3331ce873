"""Session HTTP handlers — FastAPI routes over the SessionController.

Each linking handler:
1. Validates the request body (phone number, method)
2. Hands off to the controller, which acquires the identity atomically
3. Waits for the first linking outcome and returns it

Security contract:
- Errors are returned as {error, message, details?}; stack traces never leave
  the process (see the PairlinkError handler in pairlink.serve)
- Connect-style routes are rate limited per client IP
- Listing endpoints never include linking codes or QR payloads
- Identities are masked in every log line
"""

import logging
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from pairlink.errors import NotFound
from pairlink.security.middleware import build_limiter
from pairlink.sessions.controller import SessionController
from pairlink.sessions.identity import mask_identity
from pairlink.sessions.models import LinkingMethod, SessionSnapshot, iso
from pairlink.sessions.reply import LinkingOutcome

logger = logging.getLogger(__name__)


# ── Request bodies ────────────────────────────────────────────────────────
# Fields are optional so that missing values reach the controller and come
# back as 400 ValidationError rather than FastAPI's 422.


class ConnectRequest(BaseModel):
    phoneNumber: str | None = None
    method: str = LinkingMethod.PAIRING_CODE.value


class ReconnectRequest(BaseModel):
    phoneNumber: str | None = None


class SendMessageRequest(BaseModel):
    to: str = ""
    message: str = ""


# ── Response shaping ──────────────────────────────────────────────────────


def _linking_response(snapshot: SessionSnapshot, outcome: LinkingOutcome) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": True,
        "sessionId": snapshot.session_id,
        "phoneNumber": snapshot.identity,
        "method": snapshot.method.value,
        "state": snapshot.state.value,
        "message": outcome.message,
    }
    if outcome.kind == "linking_code":
        body["linkingCode"] = outcome.linking_code
    elif outcome.kind == "qr":
        body["qrPayload"] = outcome.qr_payload
    else:
        body["connected"] = True
    return body


def _controller(request: Request) -> SessionController:
    return request.app.state.controller


def register_routes(app: FastAPI) -> None:
    """Register session endpoint routes on the FastAPI app.

    Call this BEFORE install_security_middleware() so routes are available
    for middleware to inspect.
    """
    settings = app.state.settings
    limiter = build_limiter()
    app.state.limiter = limiter
    connect_limit = limiter.limit(settings.rate_limit_connect)

    # ── Linking ───────────────────────────────────────────────────────────

    @app.post("/api/connect")
    @connect_limit
    async def connect(request: Request, body: ConnectRequest):
        """Start a linking attempt and return the first code, QR or connection."""
        snapshot, outcome = await _controller(request).start_linking(body.phoneNumber, body.method)
        logger.info(
            "API_AUDIT route=connect identity=%s session=%s outcome=%s",
            mask_identity(snapshot.identity), snapshot.session_id[:8], outcome.kind,
        )
        return _linking_response(snapshot, outcome)

    @app.post("/api/generate-pair-code")
    @connect_limit
    async def generate_pair_code(request: Request, body: ConnectRequest):
        snapshot, outcome = await _controller(request).start_linking(body.phoneNumber, body.method)
        return _linking_response(snapshot, outcome)

    @app.post("/api/reconnect")
    @connect_limit
    async def reconnect(request: Request, body: ReconnectRequest):
        """Resume a previously linked identity from its stored token."""
        snapshot, outcome = await _controller(request).reconnect(body.phoneNumber)
        logger.info(
            "API_AUDIT route=reconnect identity=%s session=%s outcome=%s",
            mask_identity(snapshot.identity), snapshot.session_id[:8], outcome.kind,
        )
        return _linking_response(snapshot, outcome)

    @app.post("/api/restart/{identity}")
    @connect_limit
    async def restart(request: Request, identity: str):
        snapshot, outcome = await _controller(request).restart(identity)
        return _linking_response(snapshot, outcome)

    # ── Status ────────────────────────────────────────────────────────────

    @app.get("/api/status/{identity}")
    async def status(request: Request, identity: str):
        controller = _controller(request)
        try:
            snapshot = await controller.status(identity)
        except NotFound as e:
            return JSONResponse({**e.to_dict(), "connected": False}, status_code=404)
        return {
            "success": True,
            **snapshot.to_dict(),
            "hasSessionToken": controller.has_credential(snapshot.identity),
        }

    @app.get("/api/clients")
    async def list_clients(request: Request):
        sessions = _controller(request).list_sessions()
        return {
            "success": True,
            "count": len(sessions),
            "clients": [s.to_dict(include_codes=False) for s in sessions],
        }

    # ── Teardown ──────────────────────────────────────────────────────────

    @app.delete("/api/disconnect/{identity}")
    async def disconnect(request: Request, identity: str, wipe: bool = False):
        snapshot = await _controller(request).disconnect(identity, wipe=wipe)
        logger.info(
            "API_AUDIT route=disconnect identity=%s session=%s wipe=%s",
            mask_identity(snapshot.identity), snapshot.session_id[:8], wipe,
        )
        return {
            "success": True,
            "message": "Session disconnected",
            "sessionId": snapshot.session_id,
            "phoneNumber": snapshot.identity,
            "wiped": wipe,
        }

    @app.post("/api/disconnect/{session_id}")
    async def disconnect_session(request: Request, session_id: str):
        snapshot = await _controller(request).disconnect_by_session_id(session_id)
        return {
            "success": True,
            "message": "Session disconnected",
            "sessionId": snapshot.session_id,
            "phoneNumber": snapshot.identity,
        }

    # ── Messaging ─────────────────────────────────────────────────────────

    @app.post("/api/send-message/{identity}")
    async def send_message(request: Request, identity: str, body: SendMessageRequest):
        await _controller(request).send_message(identity, body.to, body.message)
        return {"success": True, "message": "Message sent"}

    # ── Stored records ────────────────────────────────────────────────────

    @app.get("/api/credentials/{identity}")
    async def credentials(request: Request, identity: str):
        controller = _controller(request)
        record = controller.get_credential(identity)
        try:
            connection = controller.get_connection(identity).to_dict()
        except NotFound:
            connection = None
        return {"success": True, **record.to_dict(), "connection": connection}

    @app.get("/api/session-token/{identity}")
    async def session_token(request: Request, identity: str):
        record = _controller(request).get_credential(identity)
        return {"success": True, **record.to_dict()}

    # ── Health ────────────────────────────────────────────────────────────

    async def _health(request: Request):
        return {
            "status": "ok",
            **_controller(request).health(),
            "timestamp": iso(time.time()),
            "backend": settings.backend_factory,
        }

    app.add_api_route("/health", _health, methods=["GET"])
    app.add_api_route("/api/health", _health, methods=["GET"])
