from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import public_router, router
from .assignment_store import AssignmentRepository, create_assignment_repository
from .config import Settings, get_settings, runtime_secret_issues
from .directory import ContactDirectory, InMemoryContactDirectory
from .dispatcher import Dispatcher
from .errors import (
    AssignmentEngineError,
    AssignmentNotFoundError,
    ConcurrentUpdateError,
    DestinationMissingError,
    InvalidTransitionError,
    RateLimitedError,
    ReminderNotAllowedError,
    TransportFailureError,
)
from .rate_limit import FixedWindowRateLimiter
from .service import AssignmentService
from .transports import ChannelTransport, create_transports

logger = logging.getLogger(__name__)

_ERROR_STATUS: tuple[tuple[type[AssignmentEngineError], int], ...] = (
    (AssignmentNotFoundError, 404),
    (InvalidTransitionError, 409),
    (ConcurrentUpdateError, 409),
    (ReminderNotAllowedError, 422),
    (DestinationMissingError, 422),
    (RateLimitedError, 429),
    (TransportFailureError, 502),
)


def _status_for(exc: AssignmentEngineError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _error_body(code: str, message: str, details: object) -> dict[str, object]:
    return {"error": {"code": code, "message": message, "details": details}}


async def _handle_engine_error(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, AssignmentEngineError)
    status_code = _status_for(exc)
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
        headers["RateLimit-Limit"] = str(exc.limit)
        headers["RateLimit-Remaining"] = "0"
        headers["RateLimit-Reset"] = str(exc.retry_after_seconds)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content=_error_body(exc.code, str(exc), exc.details()),
        headers=headers or None,
    )


async def _handle_validation_error(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    return JSONResponse(
        status_code=422,
        content=_error_body(
            "VALIDATION_ERROR",
            "request validation failed",
            [{"loc": list(error.get("loc", ())), "msg": error.get("msg", "")} for error in exc.errors()],
        ),
    )


def _web_origin(web_app_url: str) -> str:
    parsed = urlparse(web_app_url)
    if not parsed.scheme or not parsed.netloc:
        return web_app_url.rstrip("/")
    return f"{parsed.scheme}://{parsed.netloc}"


def _check_runtime_secrets(settings: Settings) -> None:
    secret_issues = runtime_secret_issues(settings)
    if not secret_issues:
        return
    if settings.runtime_secret_guard_mode == "enforce":
        raise RuntimeError(
            "runtime secret guard blocked startup: "
            + "; ".join(secret_issues)
            + ". Remediation: switch NOTIFIER_SENDER_TYPE=stub or set the notifier gateway settings, "
            + "and configure DATABASE_URL and WEB_APP_URL for the target environment."
        )
    if settings.runtime_secret_guard_mode == "warn":
        for issue in secret_issues:
            logger.warning("runtime secret guard warning: %s", issue)


def create_app(
    settings: Settings | None = None,
    *,
    repository: AssignmentRepository | None = None,
    directory: ContactDirectory | None = None,
    transports: dict[str, ChannelTransport] | None = None,
    rate_limiter: FixedWindowRateLimiter | None = None,
    now_fn: Callable[[], datetime] | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    _check_runtime_secrets(settings)

    repository = repository or create_assignment_repository(
        backend=settings.assignment_store_backend,
        database_url=settings.database_url,
    )
    # The empty default directory resolves nobody; deployments pass their ContactDirectory adapter in.
    directory = directory if directory is not None else InMemoryContactDirectory()
    dispatcher = Dispatcher(
        transports=transports
        or create_transports(
            sender_type=settings.notifier_sender_type,
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            timeout_seconds=settings.notifier_timeout_seconds,
        ),
        directory=directory,
        timeout_seconds=settings.notifier_timeout_seconds,
        max_workers=max(settings.notifier_max_workers, 1),
    )
    service = AssignmentService(
        repository=repository,
        directory=directory,
        dispatcher=dispatcher,
        web_app_url=settings.web_app_url,
        now_fn=now_fn or (lambda: datetime.now(timezone.utc)),
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        dispatcher.close()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.directory = directory
    app.state.dispatcher = dispatcher
    app.state.assignment_service = service
    app.state.rate_limiter = rate_limiter or FixedWindowRateLimiter(settings.rate_limit_budgets())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[_web_origin(settings.web_app_url)],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AssignmentEngineError, _handle_engine_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)

    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(public_router)
    return app


app = create_app()
