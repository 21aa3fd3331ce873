"""FastAPI application factory and process entry point.

Startup:
1. Sweep profile directories orphaned by a previous process
2. Install the loop exception handler (log and continue)
3. Start the periodic reaper

Shutdown tears down every live session before the process exits.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pairlink import __version__
from pairlink.api.routes import register_routes
from pairlink.backends.protocol import BackendFactory, load_backend_factory
from pairlink.config import Settings, get_settings
from pairlink.errors import PairlinkError, ValidationError
from pairlink.security.middleware import install_security_middleware
from pairlink.sessions.controller import SessionController
from pairlink.sessions.registry import SessionRegistry
from pairlink.storage.allocator import ResourceAllocator
from pairlink.storage.store import JsonFileStore

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Unhandled errors in callbacks or orphaned tasks are logged; the server keeps running."""
    exc = context.get("exception")
    logger.error("Unhandled event loop error: %s", context.get("message", "unknown"), exc_info=exc)


def build_controller(settings: Settings, backend_factory: BackendFactory | None = None) -> SessionController:
    factory = backend_factory or load_backend_factory(settings.backend_factory)
    return SessionController(
        settings=settings,
        registry=SessionRegistry(),
        store=JsonFileStore(settings.data_dir),
        allocator=ResourceAllocator(settings.profiles_dir, settings.release_grace_seconds),
        backend_factory=factory,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    controller: SessionController = app.state.controller
    settings: Settings = app.state.settings

    swept = controller.startup()
    if swept:
        logger.info("Removed %d orphaned profile directories", swept)

    asyncio.get_running_loop().set_exception_handler(_loop_exception_handler)
    reaper = asyncio.create_task(controller.run_reaper(), name="session-reaper")
    logger.info(
        "pairlink %s ready (data_dir=%s, retention=%ss)",
        __version__, settings.data_dir, settings.session_retention_seconds,
    )
    try:
        yield
    finally:
        reaper.cancel()
        try:
            await reaper
        except asyncio.CancelledError:
            pass
        await controller.shutdown()


async def _pairlink_error_handler(request: Request, exc: PairlinkError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def _request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    error = ValidationError("Invalid request body", details={"errors": errors})
    return JSONResponse(error.to_dict(), status_code=error.status_code)


async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "InternalError", "message": "Internal server error"}, status_code=500)


def create_app(
    settings: Settings | None = None,
    backend_factory: BackendFactory | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="pairlink", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.controller = build_controller(settings, backend_factory)

    app.add_exception_handler(PairlinkError, _pairlink_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    register_routes(app)
    install_security_middleware(app, settings)
    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
