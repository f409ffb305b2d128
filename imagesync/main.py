"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from imagesync import __version__
from imagesync.api.health import router as health_router
from imagesync.api.wechat import router as wechat_router
from imagesync.config import Settings
from imagesync.exceptions import AuthenticationError
from imagesync.services.crypto_service import WeChatCrypto
from imagesync.services.github_service import GitHubClient
from imagesync.services.publish_service import Publisher
from imagesync.services.queue_service import PendingQueue, QueueLock
from imagesync.services.sync_service import SyncService
from imagesync.services.tracker_service import CompletionTracker
from imagesync.services.wechat_service import AccessTokenProvider, WeChatNotifier

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT = 15.0


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries; httpx logs full URLs, which carry the access token.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def init_services(app: FastAPI, settings: Settings, http_client: httpx.AsyncClient) -> None:
    """Build the pipeline and store its parts on ``app.state``."""
    app.state.http_client = http_client
    app.state.crypto = WeChatCrypto(
        settings.wechat_token,
        settings.wechat_encoding_aes_key,
        receive_id=settings.wechat_corp_id,
    )

    github = GitHubClient(
        settings.github_token,
        settings.github_repo,
        api_base=settings.github_api_base,
        client=http_client,
    )
    token_provider = AccessTokenProvider(
        settings.wechat_corp_id,
        settings.wechat_secret,
        client=http_client,
        api_base=settings.wechat_api_base,
    )
    notifier = WeChatNotifier(
        token_provider,
        settings.wechat_agent_id,
        client=http_client,
        api_base=settings.wechat_api_base,
    )

    lock = QueueLock(
        settings.resolved_lock_file,
        retry_count=settings.lock_retry_count,
        retry_interval=settings.lock_retry_interval,
    )
    lock.break_if_stale()
    queue = PendingQueue(settings.queue_file)
    tracker = CompletionTracker(
        github,
        notifier,
        poll_interval=settings.poll_interval,
        poll_timeout=settings.poll_timeout,
        start_delay=settings.poll_start_delay,
        runs_per_page=settings.poll_runs_per_page,
    )

    app.state.github = github
    app.state.notifier = notifier
    app.state.queue = queue
    app.state.tracker = tracker
    app.state.sync_service = SyncService(
        registry=settings.target_registry,
        namespace=settings.target_namespace,
        queue=queue,
        lock=lock,
        publisher=Publisher(
            github, queue, path=settings.github_images_path, branch=settings.github_branch
        ),
        tracker=tracker,
        notifier=notifier,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting image sync service (debug=%s)", settings.debug)
    logger.info("WeChat config: %s", "ok" if settings.has_wechat_config else "missing")
    logger.info("GitHub config: %s", "ok" if settings.has_github_config else "missing")
    logger.info(
        "Default target: %s/%s/<image>", settings.target_registry, settings.target_namespace
    )

    http_client = httpx.AsyncClient(timeout=_HTTP_TIMEOUT)
    try:
        init_services(app, settings, http_client)
    except Exception as exc:
        logger.critical("Failed to initialize services: %s", exc)
        await http_client.aclose()
        raise

    yield

    try:
        await app.state.tracker.shutdown()
    except Exception as exc:
        logger.error("Error cancelling tracking tasks: %s", exc, exc_info=True)

    await http_client.aclose()
    logger.info("Image sync service stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="imagesync",
        description="Chat-driven container image sync service",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings

    app.include_router(health_router)
    app.include_router(wechat_router)

    # Global exception handlers: safety net for unhandled exceptions

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(
        request: Request, exc: AuthenticationError
    ) -> PlainTextResponse:
        logger.warning(
            "AuthenticationError in %s %s: %s", request.method, request.url.path, exc
        )
        return PlainTextResponse("Forbidden", status_code=403)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "imagesync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
