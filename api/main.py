"""
api/main.py -- FastAPI application entry point for idgate.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan handles startup (RSA key load, account store, code cache probe,
sweep task) and shutdown (cancel sweep task, close stores) symmetrically.

Response envelope: every endpoint answers {code, message, data}. Business
failures (ServiceError) keep HTTP 200 and carry their own code; request
validation failures are HTTP 400; anything unexpected is HTTP 500 with a
generic message.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.models import ApiResult, FieldError, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.email import router as email_router
from api.routes.users import router as users_router
from auth.cipher import TransportCipher
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.store import AccountStore
from cache.codes import VerificationCodeStore
from cache.store import MemoryCodeCache, SqlCodeCache
from core.config import Settings, get_settings
from core.errors import InfrastructureError, ServiceError, ValidationError
from mail.sender import SmtpMailer

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("idgate.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval_seconds: int) -> None:
    """Purge expired verification codes every interval_seconds.

    A failed sweep is logged and the next one runs on schedule.
    CancelledError from task.cancel() during shutdown is not an Exception, so
    it propagates out and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.codes.sweep)
        except Exception:
            logger.exception("Verification code sweep failed")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_auth_service(
    settings: Settings,
    account_store: AccountStore,
    codes: VerificationCodeStore,
    cipher: TransportCipher,
    mailer: SmtpMailer,
) -> AuthService:
    return AuthService(
        account_store,
        cipher,
        PasswordHasher(rounds=settings.bcrypt_rounds),
        codes,
        mailer,
        token_ttl=timedelta(seconds=settings.token_expire_seconds),
        session_days=settings.session_expire_days,
        code_ttl_seconds=settings.verification_code_ttl_seconds,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. RSA keys first -- a missing or mismatched key pair is fatal, so fail
         before opening anything else.
      2. Account store -- creates tables on first run.
      3. Code cache -- probed once; an unreachable primary is not fatal, the
         in-process fallback takes over for the life of the process.
      4. Sweep task last -- references app.state.codes.
    """
    settings = get_settings()
    logger.info("idgate API starting up (debug=%s)", settings.debug)

    cipher = TransportCipher.from_settings(settings)
    cipher.load()

    app.state.account_store = AccountStore(settings.database_url)
    logger.info("Account store initialized")

    app.state.code_cache = SqlCodeCache(settings.code_cache_url)
    app.state.codes = VerificationCodeStore(
        app.state.code_cache,
        MemoryCodeCache(),
        ttl_seconds=settings.verification_code_ttl_seconds,
    )
    app.state.codes.probe()

    mailer = SmtpMailer.from_settings(settings)
    if not mailer.enabled:
        logger.warning("Mail delivery disabled -- verification codes will be logged instead of sent")

    app.state.auth_service = build_auth_service(settings, app.state.account_store, app.state.codes, cipher, mailer)
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.code_sweep_interval_seconds))

    yield

    # Shutdown
    app.state.sweep_task.cancel()
    app.state.code_cache.close()
    app.state.account_store.close()
    logger.info("idgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="idgate API",
    description="Account registration, login and session tokens with RSA-protected password transport.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each registration wraps the stack built so far, so the LAST one registered
# sees the request first: log_requests -> CORS -> TrustedHost. Requests
# rejected by TrustedHost are still logged.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(email_router, tags=["Verification"])
app.include_router(auth_router, tags=["Auth"])
app.include_router(users_router, tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the ApiResult envelope so clients parse one schema.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, code: int, message: str, data=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiResult.error(code, message, data).model_dump(),
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Business failures: HTTP 200, the error's own code and safe message.

    ValidationError is the exception: like a failed request schema it is HTTP 400.
    """
    if isinstance(exc, InfrastructureError):
        logger.error(
            "Infrastructure failure on %s %s",
            request.method,
            request.url.path,
            exc_info=exc,
        )
        return _envelope(500, 500, InfrastructureError.default_message)
    if isinstance(exc, ValidationError):
        logger.warning("%s %s -> 400 %s", request.method, request.url.path, exc.detail)
        return _envelope(400, exc.code, exc.message, exc.detail)
    logger.warning("%s %s -> %d %s", request.method, request.url.path, exc.code, exc.message)
    return _envelope(200, exc.code, exc.message, exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one {field, message} entry per failed field."""
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "header")]
        errors.append(FieldError(field=".".join(loc) or "request", message=err.get("msg", "invalid")).model_dump())
    logger.warning("%s %s -> 400 %s", request.method, request.url.path, errors)
    err = ValidationError(detail=errors)
    return _envelope(400, err.code, err.message, err.detail)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes, wrong methods and any other framework-raised HTTP error."""
    return _envelope(exc.status_code, exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(500, 500, "Internal server error")


# ---------------------------------------------------------------------------
# Index and health
#
# Defined directly in main.py (not in a router) so they are always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/", tags=["Health"])
async def index() -> ApiResult:
    return ApiResult.success(f"idgate API {VERSION}")


@app.get("/health", response_model=ApiResult[HealthResponse], tags=["Health"])
def health(request: Request) -> ApiResult:
    """Return liveness plus the state of each dependency.

    The code cache reports which tier is serving; "fallback" is degraded but
    fully functional, so it does not change the overall status.
    """
    components: dict[str, str] = {}
    try:
        request.app.state.account_store.ping()
        components["database"] = "ok"
    except SQLAlchemyError as e:
        logger.error("Health check: account store unavailable: %s", e)
        components["database"] = "unavailable"
    components["code_cache"] = "primary" if request.app.state.codes.primary_available else "fallback"
    status = "ok" if components["database"] == "ok" else "degraded"
    return ApiResult.success(HealthResponse(status=status, version=VERSION, components=components))
