"""Session lifecycle controller — creates, drives and tears down linking sessions.

Flow for one start-linking request:
1. Normalize the phone number into an identity key
2. Atomically acquire the identity in the registry (409 if busy)
3. Allocate isolated profile/cache directories for the new session id
4. Construct the backend adapter and launch it in the background
5. Wait on the session's one-shot reply slot; the first of linking code,
   QR (only while no code exists), ready, auth failure or timeout wins
6. Everything after that is applied to session state only and observed
   through status()

Concurrency contract:
- Backend events go through one asyncio.Queue per session and are applied
  one at a time, in arrival order, by that session's worker task
- Adapters may emit from any thread; delivery hops onto the loop with
  call_soon_threadsafe
- Teardown (backend destroy + directory release) runs at most once per session;
  every caller that closes the session waits for that one teardown to finish
- After the reply settles the deadline is re-armed to the newest code/QR
  expiry, so an unfinished link still ends in Failed
- Registry removal always matches on session_id, so disconnect, the reaper
  and the failed-session expiry can race safely
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Coroutine

from pairlink.backends.protocol import BackendConfig, BackendFactory, EventSink
from pairlink.config import Settings
from pairlink.errors import (
    BackendAuthFailure,
    BackendInitError,
    LinkingTimeout,
    NotFound,
    PairlinkError,
    PersistenceError,
    SessionNotConnected,
    ValidationError,
)
from pairlink.sessions.events import BackendEvent, EventKind
from pairlink.sessions.identity import chat_id_for, mask_identity, normalize_phone
from pairlink.sessions.models import (
    ConnectionRecord,
    CredentialRecord,
    LinkingMethod,
    Session,
    SessionSnapshot,
    SessionState,
    iso,
)
from pairlink.sessions.registry import SessionRegistry
from pairlink.sessions.reply import LinkingOutcome, ReplySlot
from pairlink.storage.allocator import ResourceAllocator
from pairlink.storage.store import JsonFileStore

logger = logging.getLogger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

_TOKEN_FETCH_TIMEOUT_SECONDS = 10.0
_STATUS_PROBE_WAIT_SECONDS = 5.0

CODE_MESSAGE = (
    "Enter this code on your phone: Linked Devices > Link a Device > "
    "Link with phone number instead"
)
QR_MESSAGE = "Scan this QR code on your phone: Linked Devices > Link a Device"
CONNECTED_MESSAGE = "Already connected!"


@dataclass
class _Runtime:
    """Controller-owned bookkeeping for one live Session."""
    session: Session
    reply: ReplySlot
    loop: asyncio.AbstractEventLoop
    inbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    worker: asyncio.Task | None = None
    starter: asyncio.Task | None = None
    deadline: asyncio.TimerHandle | None = None
    removal: asyncio.TimerHandle | None = None
    side_tasks: set[asyncio.Task] = field(default_factory=set)
    closed: bool = False
    # Shared by every caller that tears this session down
    teardown: asyncio.Task | None = None


class SessionController:
    """Orchestrates the per-identity session state machine."""

    def __init__(
        self,
        settings: Settings,
        registry: SessionRegistry,
        store: JsonFileStore,
        allocator: ResourceAllocator,
        backend_factory: BackendFactory,
    ):
        self._settings = settings
        self._registry = registry
        self._store = store
        self._allocator = allocator
        self._backend_factory = backend_factory
        self._runtimes: dict[str, _Runtime] = {}  # session_id -> runtime
        self._background: set[asyncio.Task] = set()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # ── Linking ───────────────────────────────────────────────────────────

    async def start_linking(
        self,
        phone_number: str,
        method: LinkingMethod | str = LinkingMethod.PAIRING_CODE,
        *,
        supersede: bool = False,
        require_credential: bool = False,
    ) -> tuple[SessionSnapshot, LinkingOutcome]:
        """Start a linking attempt and wait for the first qualifying event.

        Raises:
            ValidationError: bad phone number or method
            IdentityAlreadyActive: identity held by a non-terminal session
            NotFound: require_credential and no stored credential
            LinkingTimeout, BackendAuthFailure, BackendInitError: attempt failed
        """
        identity = normalize_phone(phone_number)
        try:
            method = LinkingMethod(method)
        except ValueError:
            raise ValidationError(
                "Unsupported linking method",
                details={"method": str(method), "allowed": [m.value for m in LinkingMethod]},
            ) from None

        resume_token = self._load_resume_token(identity, required=require_credential)

        if supersede:
            await self._supersede(identity)

        acquired = self._registry.try_acquire(identity, method)
        if acquired.replaced is not None:
            await self._retire(acquired.replaced)

        session = acquired.session
        session.resumed = resume_token is not None
        runtime = self._open_runtime(session)

        try:
            paths = self._allocator.allocate(session.session_id)
        except (OSError, PairlinkError) as e:
            logger.error("Resource allocation failed for %s: %s", session.session_id[:8], e)
            self._deliver(runtime, BackendEvent(EventKind.INIT_FAILED, f"resource allocation failed: {e}"))
        else:
            config = BackendConfig(
                identity=identity,
                session_id=session.session_id,
                profile_dir=paths.profile_dir,
                cache_dir=paths.cache_dir,
                resume_token=resume_token,
                method=method,
            )
            runtime.starter = asyncio.create_task(
                self._launch(runtime, config), name=f"launch-{session.session_id[:8]}"
            )
            self._arm_deadline(runtime, self._settings.linking_timeout_seconds)

        try:
            outcome = await runtime.reply.wait()
        except asyncio.CancelledError:
            runtime.reply.cancel()
            raise
        return session.snapshot(), outcome

    async def reconnect(self, phone_number: str) -> tuple[SessionSnapshot, LinkingOutcome]:
        """Start a linking attempt that resumes from the stored credential."""
        return await self.start_linking(phone_number, require_credential=True)

    async def restart(self, phone_number: str) -> tuple[SessionSnapshot, LinkingOutcome]:
        """Replace the identity's current session with a fresh attempt (same method)."""
        identity = normalize_phone(phone_number)
        current = self._registry.get(identity)
        return await self.start_linking(identity, current.method, supersede=True)

    def _load_resume_token(self, identity: str, required: bool) -> Any:
        try:
            return self._store.get_credential(identity).token
        except NotFound:
            if required:
                raise NotFound(
                    "Session token not found. Please create a new connection.",
                    details={"phoneNumber": identity},
                ) from None
            return None
        except PersistenceError:
            if required:
                raise
            logger.warning("Stored credential unreadable for %s, linking from scratch", mask_identity(identity))
            return None

    def _open_runtime(self, session: Session) -> _Runtime:
        loop = asyncio.get_running_loop()
        runtime = _Runtime(session=session, reply=ReplySlot(loop), loop=loop)
        self._runtimes[session.session_id] = runtime
        runtime.worker = asyncio.create_task(
            self._pump(runtime), name=f"session-{session.session_id[:8]}"
        )
        return runtime

    async def _launch(self, runtime: _Runtime, config: BackendConfig) -> None:
        """Construct and start the adapter; failures become INIT_FAILED events."""
        session = runtime.session
        try:
            backend = self._backend_factory(config, self._sink_for(runtime))
            session.backend = backend
            await backend.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Backend launch failed: identity=%s session=%s error=%s",
                mask_identity(session.identity), session.session_id[:8], e,
            )
            self._deliver(runtime, BackendEvent(EventKind.INIT_FAILED, str(e)))
        else:
            logger.info("Backend started for session %s", session.session_id[:8])

    # ── Event delivery ────────────────────────────────────────────────────

    def _arm_deadline(self, runtime: _Runtime, delay: float) -> None:
        if runtime.deadline is not None:
            runtime.deadline.cancel()
        runtime.deadline = runtime.loop.call_later(
            max(delay, 0.0), self._deliver, runtime, BackendEvent(EventKind.TIMEOUT),
        )

    def _sink_for(self, runtime: _Runtime) -> EventSink:
        def sink(event: BackendEvent) -> None:
            runtime.loop.call_soon_threadsafe(self._deliver, runtime, event)
        return sink

    def _deliver(self, runtime: _Runtime, event: BackendEvent) -> None:
        if runtime.closed:
            logger.debug(
                "Dropping %s for closed session %s", event.kind.value, runtime.session.session_id[:8]
            )
            return
        runtime.inbox.put_nowait(event)

    async def _pump(self, runtime: _Runtime) -> None:
        """Apply queued events for one session, strictly in order."""
        while True:
            event = await runtime.inbox.get()
            try:
                if event is None:
                    return
                async with runtime.lock:
                    await self._apply(runtime, event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Event handling failed: session=%s event=%s",
                    runtime.session.session_id[:8], getattr(event, "kind", None),
                )
            finally:
                runtime.inbox.task_done()

    async def _apply(self, runtime: _Runtime, event: BackendEvent) -> None:
        session = runtime.session
        kind = event.kind

        if session.state.is_terminal:
            logger.debug(
                "Ignoring %s for %s session %s", kind.value, session.state.value, session.session_id[:8]
            )
            return

        if kind == EventKind.LINKING_CODE:
            if not session.state.is_linking:
                return
            session.last_event_at = time.time()
            session.linking_code = str(event.value)
            session.linking_code_expires_at = time.time() + self._settings.linking_code_ttl_seconds
            self._transition(session, SessionState.AWAITING_CODE, "linking code issued")
            runtime.reply.resolve(LinkingOutcome(
                kind="linking_code", linking_code=session.linking_code, message=CODE_MESSAGE,
            ))

        elif kind == EventKind.QR:
            if not session.state.is_linking:
                return
            session.last_event_at = time.time()
            session.qr_payload = str(event.value)
            session.qr_expires_at = time.time() + self._settings.qr_ttl_seconds
            session.qr_attempts += 1
            if session.linking_code is None:
                self._transition(session, SessionState.AWAITING_SCAN, "qr issued")
                runtime.reply.resolve(LinkingOutcome(
                    kind="qr", qr_payload=session.qr_payload, message=QR_MESSAGE,
                ))

        elif kind == EventKind.LOADING:
            session.last_event_at = time.time()
            session.loading_percent = event.value.get("percent")
            session.loading_message = event.value.get("message")

        elif kind == EventKind.AUTHENTICATED:
            if session.state.is_linking:
                session.last_event_at = time.time()
                self._transition(session, SessionState.AUTHENTICATED, "authenticated")

        elif kind == EventKind.READY:
            if session.state == SessionState.CONNECTED:
                return
            session.last_event_at = session.connected_at = time.time()
            self._transition(session, SessionState.CONNECTED, "ready")
            if runtime.deadline is not None:
                runtime.deadline.cancel()
            runtime.reply.resolve(LinkingOutcome(kind="connected", message=CONNECTED_MESSAGE))
            await self._on_connected(runtime)

        elif kind == EventKind.AUTH_FAILED:
            session.last_event_at = time.time()
            self._fail(runtime, BackendAuthFailure(
                "Authentication rejected by backend", details={"reason": event.value},
            ))

        elif kind == EventKind.INIT_FAILED:
            session.last_event_at = time.time()
            self._fail(runtime, BackendInitError(
                "Failed to start messaging client", details={"reason": event.value},
            ))

        elif kind == EventKind.TIMEOUT:
            if not runtime.reply.settled:
                self._fail(runtime, LinkingTimeout(
                    "Timeout waiting for linking code",
                    details={"timeoutSeconds": self._settings.linking_timeout_seconds},
                ))
            elif session.state.is_linking or session.state == SessionState.AUTHENTICATED:
                remaining = self._linking_window_end(session) - time.time()
                if remaining > 0:
                    self._arm_deadline(runtime, remaining)
                else:
                    self._fail(runtime, LinkingTimeout(
                        "Device was not linked before the code expired",
                        details={"state": session.state.value},
                    ))

        elif kind == EventKind.DISCONNECTED:
            session.last_event_at = time.time()
            session.last_error = {"error": "Disconnected", "details": event.value or None}
            self._transition(session, SessionState.DISCONNECTED, f"backend disconnected: {event.value}")
            runtime.reply.fail(BackendInitError(
                "Messaging client disconnected before linking completed",
                details={"reason": event.value},
            ))
            self._begin_teardown(runtime)

        elif kind == EventKind.ERROR:
            session.last_event_at = time.time()
            session.last_error = {"error": "BackendError", "details": event.value}
            logger.warning(
                "Backend error: identity=%s session=%s error=%s",
                mask_identity(session.identity), session.session_id[:8], event.value,
            )

    def _fail(self, runtime: _Runtime, error: PairlinkError) -> None:
        """Move to Failed, answer the pending request, schedule cleanup and expiry."""
        session = runtime.session
        session.last_error = error.to_dict()
        self._transition(session, SessionState.FAILED, error.code)
        runtime.reply.fail(error)
        self._begin_teardown(runtime)
        runtime.removal = runtime.loop.call_later(
            self._settings.failed_grace_seconds, self._expire_failed, runtime,
        )

    def _linking_window_end(self, session: Session) -> float:
        """Latest moment a settled linking attempt may still complete.

        Awaiting sessions live as long as their newest code or QR; an
        Authenticated session gets one more linking timeout from its last event.
        """
        candidates = [
            t for t in (session.linking_code_expires_at, session.qr_expires_at) if t is not None
        ]
        if session.state == SessionState.AUTHENTICATED:
            candidates.append(session.last_event_at + self._settings.linking_timeout_seconds)
        return max(candidates, default=0.0)

    def _expire_failed(self, runtime: _Runtime) -> None:
        session = runtime.session
        if self._registry.remove(session.identity, session.session_id):
            self._runtimes.pop(session.session_id, None)

    @staticmethod
    def _transition(session: Session, to: SessionState, reason: str) -> None:
        previous = session.state
        session.state = to
        logger.info(
            "SESSION_AUDIT identity=%s session=%s from=%s to=%s reason=%s",
            mask_identity(session.identity),
            session.session_id[:8],
            previous.value,
            to.value,
            reason,
        )

    # ── Connected ─────────────────────────────────────────────────────────

    async def _on_connected(self, runtime: _Runtime) -> None:
        """Persist reconnection token and connection metadata, then confirm."""
        session = runtime.session
        backend = session.backend

        token = None
        if backend is not None:
            try:
                token = await asyncio.wait_for(
                    backend.get_session_token(), timeout=_TOKEN_FETCH_TIMEOUT_SECONDS,
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "Session token unavailable for %s", session.session_id[:8], exc_info=True,
                )

        if token is not None:
            try:
                self._store.put_credential(session.identity, CredentialRecord(
                    identity=session.identity,
                    session_id=session.session_id,
                    token=token,
                    issued_at=iso(time.time()),
                ))
            except PersistenceError:
                logger.warning(
                    "Credential not saved for %s; reconnection will need a new link",
                    mask_identity(session.identity),
                )

        try:
            self._store.put_metadata(session.identity, ConnectionRecord(
                identity=session.identity,
                session_id=session.session_id,
                connected_at=iso(session.connected_at),
                server_context=dict(self._settings.server_context),
            ))
        except PersistenceError:
            logger.warning("Connection metadata not saved for %s", mask_identity(session.identity))

        if self._settings.send_confirmation and backend is not None:
            task = asyncio.create_task(self._send_confirmation(session, has_token=token is not None))
            runtime.side_tasks.add(task)
            task.add_done_callback(runtime.side_tasks.discard)

    async def _send_confirmation(self, session: Session, has_token: bool) -> None:
        """Best-effort notice to the user's own chat; failures never touch session state."""
        lines = [
            "Connection successful",
            "",
            f"Session ID: {session.session_id}",
            f"Phone: {session.identity}",
            f"Connected: {iso(session.connected_at)}",
            "",
        ]
        if has_token:
            lines.append("Your session token has been saved for automatic reconnection.")
        else:
            lines.append("Session token could not be retrieved. You may need to link again next time.")
        try:
            ok = await session.backend.send_text(chat_id_for(session.identity), "\n".join(lines))
            if not ok:
                logger.warning("Confirmation message not delivered to %s", mask_identity(session.identity))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(
                "Confirmation message failed for %s", mask_identity(session.identity), exc_info=True,
            )

    # ── Queries ───────────────────────────────────────────────────────────

    async def status(self, phone_number: str) -> SessionSnapshot:
        """Snapshot of the identity's session, probing live connections first."""
        identity = normalize_phone(phone_number)
        session = self._registry.get(identity)
        runtime = self._runtimes.get(session.session_id)
        if session.state == SessionState.CONNECTED and session.backend is not None and runtime:
            try:
                alive = await session.backend.is_connected()
            except Exception:
                logger.warning("Connection probe failed for %s", session.session_id[:8], exc_info=True)
                alive = False
            if not alive:
                self._deliver(runtime, BackendEvent.disconnected("connection probe failed"))
                try:
                    await asyncio.wait_for(runtime.inbox.join(), timeout=_STATUS_PROBE_WAIT_SECONDS)
                except asyncio.TimeoutError:
                    logger.warning("Status probe event still queued for %s", session.session_id[:8])
        return session.snapshot()

    def list_sessions(self) -> list[SessionSnapshot]:
        return self._registry.list_all()

    def get_credential(self, phone_number: str) -> CredentialRecord:
        return self._store.get_credential(normalize_phone(phone_number))

    def has_credential(self, phone_number: str) -> bool:
        identity = normalize_phone(phone_number)
        try:
            self._store.get_credential(identity)
        except NotFound:
            return False
        except PersistenceError:
            logger.warning("Stored credential unreadable for %s", mask_identity(identity))
            return False
        return True

    def get_connection(self, phone_number: str) -> ConnectionRecord:
        return self._store.get_metadata(normalize_phone(phone_number))

    def health(self) -> dict[str, Any]:
        return {
            "activeSessions": self._registry.active_count,
            "totalSessions": len(self._registry),
        }

    # ── Commands ──────────────────────────────────────────────────────────

    async def disconnect(self, phone_number: str, *, wipe: bool = False) -> SessionSnapshot:
        """Tear down the identity's session before returning.

        With wipe=True the stored credential and connection records are
        deleted as well; otherwise they are kept for reconnection.
        """
        identity = normalize_phone(phone_number)
        session = self._registry.get(identity)
        snapshot = await self._disconnect_session(session)
        if wipe:
            self._store.delete_credential(identity)
            self._store.delete_metadata(identity)
            logger.info("Stored records wiped for %s", mask_identity(identity))
        return snapshot

    async def disconnect_by_session_id(self, session_id: str) -> SessionSnapshot:
        session = self._registry.find_by_session_id(session_id)
        return await self._disconnect_session(session)

    async def _disconnect_session(self, session: Session) -> SessionSnapshot:
        await self._close(session, "disconnect requested")
        self._registry.remove(session.identity, session.session_id)
        return session.snapshot()

    async def send_message(self, phone_number: str, to: str, body: str) -> None:
        """Relay a text message through a Connected session."""
        identity = normalize_phone(phone_number)
        if not to or not body:
            raise ValidationError("Both 'to' and 'message' are required")
        session = self._registry.get(identity)
        backend = session.backend
        if session.state != SessionState.CONNECTED or backend is None:
            raise SessionNotConnected(
                "Session is not connected", details={"state": session.state.value},
            )
        if not await backend.is_connected():
            raise SessionNotConnected("Session is not connected", details={"state": "probe-failed"})
        if not await backend.send_text(chat_id_for(to), body):
            raise PairlinkError("Failed to send message")
        logger.info("Message relayed via %s", mask_identity(identity))

    async def _supersede(self, identity: str) -> None:
        """Synchronously retire the identity's current session, if any."""
        try:
            current = self._registry.get(identity)
        except NotFound:
            return
        logger.info("Superseding session %s for %s", current.session_id[:8], mask_identity(identity))
        await self._close(current, "superseded")
        self._registry.remove(identity, current.session_id)

    async def _retire(self, session: Session) -> None:
        """Finish teardown of a terminal session evicted by try_acquire."""
        runtime = self._runtimes.get(session.session_id)
        if runtime is not None:
            await self._teardown(runtime)

    async def _close(self, session: Session, reason: str) -> None:
        runtime = self._runtimes.get(session.session_id)
        if runtime is None:
            return
        async with runtime.lock:
            if not session.state.is_terminal:
                self._transition(session, SessionState.DISCONNECTED, reason)
        runtime.reply.fail(BackendInitError(
            "Session was closed before linking completed", details={"reason": reason},
        ))
        await self._teardown(runtime)

    async def _teardown(self, runtime: _Runtime) -> None:
        """Wait for the session's teardown, starting it if nobody has yet.

        Every caller waits on the same task, so none of them returns while
        the backend is still being destroyed. The runtime stays registered
        until that task has finished.
        """
        if runtime.removal is not None:
            runtime.removal.cancel()
        await asyncio.shield(self._begin_teardown(runtime))
        self._runtimes.pop(runtime.session.session_id, None)

    def _begin_teardown(self, runtime: _Runtime) -> asyncio.Task:
        if runtime.teardown is None:
            runtime.closed = True
            runtime.teardown = self._spawn(self._destroy(runtime))
        return runtime.teardown

    async def _destroy(self, runtime: _Runtime) -> None:
        """Destroy the backend handle and release directories."""
        session = runtime.session

        if runtime.deadline is not None:
            runtime.deadline.cancel()
        current = asyncio.current_task()
        if runtime.starter is not None and runtime.starter is not current and not runtime.starter.done():
            runtime.starter.cancel()
        for task in list(runtime.side_tasks):
            if task is not current:
                task.cancel()
        runtime.inbox.put_nowait(None)

        if session.backend is not None:
            try:
                await session.backend.destroy()
            except Exception:
                logger.warning("Backend destroy failed for %s", session.session_id[:8], exc_info=True)
        await self._allocator.release(session.session_id)
        logger.info(
            "Session torn down: identity=%s session=%s state=%s",
            mask_identity(session.identity), session.session_id[:8], session.state.value,
        )

    # ── Housekeeping ──────────────────────────────────────────────────────

    async def reap(self, now: float | None = None) -> int:
        """Remove sessions older than the retention window. Returns count removed.

        Stored credentials are never touched here.
        """
        now = time.time() if now is None else now
        cutoff = now - self._settings.session_retention_seconds
        reaped = 0
        for snap in self._registry.list_all():
            if snap.created_at > cutoff:
                continue
            runtime = self._runtimes.get(snap.session_id)
            if runtime is not None:
                await self._teardown(runtime)
            if self._registry.remove(snap.identity, snap.session_id):
                reaped += 1
                logger.info("Reaped session %s (age %.0fs)", snap.session_id[:8], now - snap.created_at)
        if reaped:
            logger.info("Reaper removed %d sessions", reaped)
        return reaped

    async def run_reaper(self) -> None:
        """Periodic reaper loop; failures are logged and the loop continues."""
        interval = self._settings.reaper_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap()
                self._allocator.release_stale(
                    self._settings.session_retention_seconds, self._registry.session_ids(),
                )
            except Exception:
                logger.exception("Reaper pass failed")

    def startup(self) -> int:
        """Remove directories orphaned by a previous process."""
        return self._allocator.release_stale(0, self._registry.session_ids())

    async def shutdown(self) -> None:
        """Tear down every session (process exit)."""
        runtimes = list(self._runtimes.values())
        for runtime in runtimes:
            runtime.reply.fail(BackendInitError("Server shutting down"))
        results = await asyncio.gather(
            *(self._teardown(r) for r in runtimes), return_exceptions=True,
        )
        self._runtimes.clear()
        for runtime, result in zip(runtimes, results):
            self._registry.remove(runtime.session.identity, runtime.session.session_id)
            if isinstance(result, BaseException):
                logger.error("Shutdown teardown failed for %s: %s", runtime.session.session_id[:8], result)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Controller shut down (%d sessions closed)", len(runtimes))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())
