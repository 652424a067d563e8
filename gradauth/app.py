from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from gradauth.api.error_handling import register_exception_handlers
from gradauth.api.routes import router
from gradauth.config import Settings
from gradauth.logging import get_logger, set_correlation_id
from gradauth.service.context import AuthContext
from gradauth.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the session cache on shutdown."""
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Graduated Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Avoid a wildcard while credentials are allowed.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def resolve_auth_context(request: Request, call_next):
    """Attach the caller's resolved ``AuthContext`` to ``request.state.auth``."""
    runtime = get_runtime()
    state = await runtime.resolver.resolve_request(request)
    request.state.auth = AuthContext(state)
    response = await call_next(request)
    response.headers.setdefault("X-Auth-Level", state.level.value)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Echo or generate ``X-Request-ID`` and bind it to structured logs."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.get("/healthz", tags=["meta"])
async def healthz():
    return {"status": "ok", "version": __version__}


register_exception_handlers(app)
app.include_router(router)
