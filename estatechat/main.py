# Application entrypoint: configures middleware, error mapping, startup routines, and API routers.
import asyncio
import logging
import os
import threading
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import Base, engine
from .errors import ChatError
from .realtime.hub import hub
from .realtime.relay import start_redis_subscriber
from .routes.appointments import router as appointments_router
from .routes.auth import router as auth_router
from .routes.calls import router as calls_router
from .routes.messages import router as messages_router
from .routes.realtime_ws import router as realtime_ws_router
from .sweepers import sweep_stale_calls

logger = logging.getLogger("estatechat.app")


def _truthy(val: str | None) -> bool:
    if val is None:
        return False
    return val.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _start_call_sweeper(interval_seconds: int = 60) -> None:
    """
    Launch a daemon thread that periodically closes call history rows left ringing.

    Behavior:
    - Call sweep_stale_calls()
    - Sleep for `interval_seconds`
    Errors are logged and the worker retries on the next interval.
    """
    def _loop() -> None:
        while True:
            try:
                sweep_stale_calls()
            except Exception:
                logger.exception("sweepers.stale_calls.failed")
            time.sleep(interval_seconds)

    t = threading.Thread(target=_loop, name="stale-call-sweeper", daemon=True)
    t.start()


# Parse CORS origins from a comma-separated env var.
# Note: '*' cannot be used with allow_credentials=True; we fall back to explicit localhost origins for dev.
def _parse_cors_origins(env_value: str | None) -> list[str]:
    default_dev_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    if not env_value:
        return default_dev_origins

    origins = [o.strip() for o in env_value.split(",") if o.strip()]
    # Map '*' to explicit localhost origins so credentialed requests remain allowed
    if "*" in origins:
        return default_dev_origins

    return origins


app = FastAPI(title="EstateChat API", version="0.1.0")
allow_list = _parse_cors_origins(os.getenv("CORS_ORIGINS"))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Domain errors and HTTP errors share the {success: false, message} body
@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "code": exc.code},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    content = {"success": False, "message": exc.detail if isinstance(exc.detail, str) else "Request failed"}
    if not isinstance(exc.detail, str):
        content["detail"] = exc.detail
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.on_event("startup")
async def on_startup() -> None:
    # For local SQLite, auto-create tables; production DBs rely on Alembic migrations.
    if os.getenv("DATABASE_URL", "sqlite:///./data.db").startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    # Close call history rows orphaned by a previous process
    if _truthy(os.getenv("CALL_SWEEPER_ENABLED", "true")):
        _start_call_sweeper(interval_seconds=60)
    # Cross-process room fan-out; fail open when Redis is absent
    try:
        start_redis_subscriber(hub.router, asyncio.get_running_loop())
    except Exception as exc:
        logger.warning("redis.subscriber.failed", extra={"error": str(exc)})


@app.on_event("shutdown")
async def on_shutdown() -> None:
    hub.shutdown()


# Simple liveness endpoint for container orchestrators and uptime checks
@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


# Mount application routers (authentication, domain APIs, and the real-time socket)
app.include_router(auth_router, prefix="", tags=["auth"])
app.include_router(appointments_router, prefix="/api/v1", tags=["appointments"])
app.include_router(messages_router, prefix="/api/v1", tags=["messages"])
app.include_router(calls_router, prefix="/api/v1", tags=["calls"])
app.include_router(realtime_ws_router, prefix="/ws", tags=["realtime"])
