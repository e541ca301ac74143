"""
Mission Control Backend
=======================

Role-gated operations dashboard backend built with FastAPI.

Tech Stack:
- FastAPI
- SQLAlchemy (SQLite or Postgres)
- JSON file or SQL audit log store

Features:
- JWT auth with admin / operator / viewer roles
- Agent status and control through the OpenClaw gateway CLI
- Append-only audit log with filtered queries and retention cleanup
- Real-time audit stream over WebSocket
"""

from functools import partial
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
import asyncio
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from mission_control.config import Settings, get_settings
from mission_control.database import create_session_factory, init_db
from mission_control.middleware.audit_log import AuditRecorder
from mission_control.middleware.auth_middleware import verify_access_token
from mission_control.services.audit_store import create_audit_store
from mission_control.services.audit_stream import AuditStreamManager
from mission_control.services.gateway import GatewayClient
from mission_control.services.retention import RetentionScheduler
from mission_control.utils.errors import ApiError, code_for_status, error_body

from mission_control.routes.auth_routes import router as auth_router
from mission_control.routes.user_routes import router as user_router
from mission_control.routes.admin_routes import router as admin_router
from mission_control.routes.audit_routes import router as audit_router
from mission_control.routes.agent_routes import router as agent_router
from mission_control.routes.stream_routes import router as stream_router

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build every long-lived component once and hang it on app.state:
    session factory, audit store, stream manager, recorder, retention scheduler.
    """
    settings: Settings = app.state.settings

    # Startup
    engine, session_factory = create_session_factory(settings.database_url)
    try:
        init_db(engine)
    except Exception as e:
        logger.error("Database initialisation failed: %s", e, exc_info=True)
        raise RuntimeError("Database initialisation failed") from e

    store = create_audit_store(settings, session_factory)
    stream = AuditStreamManager(
        verify_token=partial(verify_access_token, settings=settings),
        heartbeat_interval=settings.ws_heartbeat_interval_seconds,
        send_timeout=settings.ws_send_timeout_seconds,
    )
    recorder = AuditRecorder(store, stream)
    recorder.bind_loop(asyncio.get_running_loop())
    retention = RetentionScheduler(
        store,
        retention_days=settings.audit_retention_days,
        interval_seconds=settings.audit_cleanup_interval_seconds,
    )

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.audit_store = store
    app.state.stream = stream
    app.state.audit_recorder = recorder
    app.state.retention = retention

    await stream.start()
    retention.start()
    logger.info("Mission Control started audit_backend=%s", store.backend)
    yield

    # Shutdown
    await retention.stop()
    await stream.stop()
    await recorder.drain()
    await store.close()
    engine.dispose()
    logger.info("Mission Control shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title="Mission Control",
        description="""
## Overview

Operations dashboard backend for OpenClaw agents.

### Roles

- **admin**: everything, including users and audit logs
- **operator**: agent control (restart, stop, message)
- **viewer**: read-only agent status

### Real-time stream

Connect to `/ws?token=<jwt>` to receive `audit.new`, `agent:status` and `heartbeat` frames.
""",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    app.state.settings = settings
    app.state.gateway = GatewayClient(
        cli=settings.gateway_cli,
        timeout=settings.gateway_timeout_seconds,
        health_timeout=settings.gateway_health_timeout_seconds,
        message_timeout=settings.gateway_message_timeout_seconds,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(auth_router, prefix="/api")
    app.include_router(user_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
    app.include_router(audit_router, prefix="/api")
    app.include_router(agent_router, prefix="/api")
    app.include_router(stream_router)

    # Health
    @app.get("/api/health")
    async def health_check(request: Request):
        stream = request.app.state.stream
        return {
            "status": "healthy",
            "service": "Mission Control",
            "version": "1.0.0",
            "auditBackend": request.app.state.audit_store.backend,
            "websocket": {
                "connections": stream.total_connections,
                "users": len(stream.connected_users()),
            },
        }

    # Error handlers
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(code_for_status(exc.status_code), str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = ", ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(status_code=400, content=error_body("VALIDATION_ERROR", "Invalid request", details))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content=error_body("INTERNAL_ERROR", "Internal server error"))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "mission_control.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=True,
        ws_ping_interval=settings.ws_ping_interval_seconds,
        ws_ping_timeout=settings.ws_ping_timeout_seconds,
    )
