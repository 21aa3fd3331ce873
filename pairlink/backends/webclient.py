"""Headless web-client backend — drives the messaging web app with Playwright.

One persistent Chromium context per session, rooted in the session's
allocated profile directory with its disk cache redirected to the session's
cache directory.

Security contract:
- Profile and cache live only under directories the controller allocated
- The resume token is applied to the context and never logged
- Navigation is limited to the web client origin
- destroy() closes the context and stops Playwright; later calls are no-ops
- All actions logged for audit trail
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any
from urllib.parse import quote

from pairlink.backends.protocol import BackendConfig, EventSink
from pairlink.config import get_settings
from pairlink.sessions.events import BackendEvent
from pairlink.sessions.identity import mask_identity
from pairlink.sessions.models import LinkingMethod

logger = logging.getLogger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

WEB_CLIENT_URL = "https://web.whatsapp.com"

_PAGE_TIMEOUT_MS = 30000
_POLL_INTERVAL_SECONDS = 1.0
_SEND_SETTLE_SECONDS = 2.0
_MAX_CONSECUTIVE_ERRORS = 5

# Page landmarks
_CHAT_LIST = "#pane-side"
_QR_CONTAINER = "div[data-ref]"
_LINK_WITH_PHONE = "text=Link with phone number"
_PHONE_INPUT = "input[aria-label='Type your phone number.']"
_NEXT_BUTTON = "text=Next"
_LINK_CODE = "div[data-link-code]"
_COMPOSE_BOX = "footer div[contenteditable='true']"
_LOADING_PROGRESS = "progress"

_CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-default-browser-check",
]


def storage_init_script(origin: str | None, items: dict[str, str]) -> str:
    """Page init script that seeds localStorage for one origin."""
    return (
        "(() => {"
        f" if (location.origin !== {json.dumps(origin)}) return;"
        f" const items = {json.dumps(items)};"
        " for (const [k, v] of Object.entries(items)) localStorage.setItem(k, v);"
        "})()"
    )


class WebClientBackend:
    """BackendAdapter over a Playwright persistent browser context."""

    def __init__(
        self,
        config: BackendConfig,
        emit: EventSink,
        headless: bool = True,
        executable_path: str = "",
    ):
        self._config = config
        self._emit = emit
        self._headless = headless
        self._executable_path = executable_path
        self._playwright = None
        self._context = None
        self._page = None
        self._watcher: asyncio.Task | None = None
        self._page_lock = asyncio.Lock()
        self._destroyed = False
        self._last_qr: str | None = None
        self._code_requested = False
        self._ready = False
        self._last_loading: int | None = None

    def _log_action(self, action: str, success: bool = True, error: str = "") -> None:
        logger.info(
            "BROWSER_AUDIT action=%s session=%s identity=%s success=%s error=%s",
            action,
            self._config.session_id[:8],
            mask_identity(self._config.identity),
            success,
            error,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        from playwright.async_api import async_playwright

        try:
            self._playwright = await async_playwright().start()
            launch_kwargs: dict[str, Any] = {
                "headless": self._headless,
                "args": _CHROMIUM_ARGS + [f"--disk-cache-dir={self._config.cache_dir}"],
                "viewport": {"width": 1280, "height": 720},
            }
            if self._executable_path:
                launch_kwargs["executable_path"] = self._executable_path
            self._context = await self._playwright.chromium.launch_persistent_context(
                str(self._config.profile_dir), **launch_kwargs,
            )
            if self._config.resume_token:
                await self._apply_token(self._config.resume_token)

            self._page = self._context.pages[0] if self._context.pages else await self._context.new_page()
            self._page.set_default_timeout(_PAGE_TIMEOUT_MS)
            self._page.on("close", self._on_page_close)
            await self._page.goto(WEB_CLIENT_URL, wait_until="domcontentloaded")
            self._log_action("start")
        except Exception as e:
            self._log_action("start", success=False, error=str(e))
            raise

        self._watcher = asyncio.create_task(self._watch(), name=f"watch-{self._config.session_id[:8]}")

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
        try:
            if self._context:
                await self._context.close()
            if self._playwright:
                await self._playwright.stop()
            self._log_action("destroy")
        except Exception as e:
            self._log_action("destroy", success=False, error=str(e))
        finally:
            self._page = None
            self._context = None
            self._playwright = None

    def _on_page_close(self, _page: Any) -> None:
        if not self._destroyed:
            self._emit(BackendEvent.disconnected("browser page closed"))

    async def _apply_token(self, token: Any) -> None:
        """Restore cookies and local storage captured by storage_state()."""
        if not isinstance(token, dict):
            logger.warning("Ignoring resume token of unexpected type %s", type(token).__name__)
            return
        cookies = token.get("cookies") or []
        if cookies:
            await self._context.add_cookies(cookies)
        for origin in token.get("origins") or []:
            items = {entry["name"]: entry["value"] for entry in origin.get("localStorage", [])}
            if not items:
                continue
            await self._context.add_init_script(script=storage_init_script(origin.get("origin"), items))
        self._log_action("apply_token")

    # ── Page watcher ──────────────────────────────────────────────────────

    async def _watch(self) -> None:
        """Poll the page and translate what it shows into backend events."""
        errors = 0
        while not self._destroyed:
            try:
                async with self._page_lock:
                    await self._inspect()
                errors = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                errors += 1
                self._emit(BackendEvent.error(e))
                if errors >= _MAX_CONSECUTIVE_ERRORS:
                    self._log_action("watch", success=False, error=f"giving up after {errors} errors")
                    self._emit(BackendEvent.disconnected("page watcher failed"))
                    return
            await asyncio.sleep(_POLL_INTERVAL_SECONDS)

    async def _inspect(self) -> None:
        page = self._page
        if page is None or page.is_closed():
            return

        progress = page.locator(_LOADING_PROGRESS)
        if await progress.count() > 0:
            value = await progress.first.get_attribute("value")
            percent = int(float(value)) if value else 0
            if percent != self._last_loading:
                self._last_loading = percent
                self._emit(BackendEvent.loading(percent, "Loading chats"))

        if await page.locator(_CHAT_LIST).count() > 0:
            if not self._ready:
                self._ready = True
                self._log_action("ready")
                self._emit(BackendEvent.authenticated())
                self._emit(BackendEvent.ready())
            return

        if self._ready:
            # Chat list vanished and the linking screen is back: logged out remotely
            if await page.locator(_QR_CONTAINER).count() > 0:
                self._ready = False
                self._emit(BackendEvent.disconnected("logged out"))
            return

        if self._config.method == LinkingMethod.PAIRING_CODE and not self._code_requested:
            if await page.locator(_LINK_WITH_PHONE).count() > 0:
                await self._request_pairing_code(page)
                return

        qr = page.locator(_QR_CONTAINER)
        if await qr.count() > 0:
            payload = await qr.first.get_attribute("data-ref")
            if payload and payload != self._last_qr:
                self._last_qr = payload
                self._log_action("qr")
                self._emit(BackendEvent.qr(payload))

    async def _request_pairing_code(self, page: Any) -> None:
        self._code_requested = True
        await page.click(_LINK_WITH_PHONE)
        await page.fill(_PHONE_INPUT, f"+{self._config.identity}")
        await page.click(_NEXT_BUTTON)
        element = await page.wait_for_selector(_LINK_CODE)
        raw = await element.get_attribute("data-link-code") or ""
        code = raw.replace(",", "")
        if not code:
            raise RuntimeError("pairing code element was empty")
        self._log_action("linking_code")
        self._emit(BackendEvent.linking_code(code))

    # ── Commands ──────────────────────────────────────────────────────────

    async def get_session_token(self) -> Any:
        if self._context is None:
            return None
        return await self._context.storage_state()

    async def is_connected(self) -> bool:
        page = self._page
        if self._destroyed or page is None or page.is_closed():
            return False
        try:
            return await page.locator(_CHAT_LIST).count() > 0
        except Exception as e:
            self._log_action("probe", success=False, error=str(e))
            return False

    async def send_text(self, chat_id: str, body: str) -> bool:
        page = self._page
        if page is None:
            return False
        phone = chat_id.split("@", 1)[0]
        started = time.time()
        async with self._page_lock:
            try:
                await page.goto(
                    f"{WEB_CLIENT_URL}/send?phone={phone}&text={quote(body)}",
                    wait_until="domcontentloaded",
                )
                await page.wait_for_selector(_COMPOSE_BOX)
                await page.press(_COMPOSE_BOX, "Enter")
                await asyncio.sleep(_SEND_SETTLE_SECONDS)
            except Exception as e:
                self._log_action("send_text", success=False, error=str(e))
                return False
        self._log_action("send_text")
        logger.debug("send_text took %.1fs", time.time() - started)
        return True


def create_backend(config: BackendConfig, emit: EventSink) -> WebClientBackend:
    """Default backend factory (see Settings.backend_factory)."""
    settings = get_settings()
    return WebClientBackend(
        config,
        emit,
        headless=settings.headless,
        executable_path=settings.browser_executable_path,
    )
