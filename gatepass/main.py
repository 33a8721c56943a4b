# =======================================================================================
# gatepass/main.py - FastAPI Application Entry Point
# =======================================================================================
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import config
from .api.routes.auth import router as auth_router
from .api.routes.gate import router as gate_router
from .api.routes.notifications import router as notifications_router
from .api.routes.passes import router as passes_router
from .api.routes.realtime import router as realtime_router
from .api.routes.users import router as users_router
from .database import db_manager
from .logging_config import setup_logging
from .models.schemas import HealthResponse
from .utils.exceptions import (
    ExpiredError,
    ForbiddenError,
    GatePassError,
    NotFoundError,
    StateConflictError,
    UnauthorizedError,
    ValidationError,
)
from .workers.expiry_worker import start_expiry_worker, stop_expiry_worker

logger = logging.getLogger(__name__)

# most specific first; InvalidStateError falls under StateConflictError
STATUS_CODES = (
    (ValidationError, 422),
    (StateConflictError, 409),
    (NotFoundError, 404),
    (ExpiredError, 410),
    (UnauthorizedError, 401),
    (ForbiddenError, 403),
)


def status_code_for(exc: GatePassError) -> int:
    for exc_type, code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return 500


def _field_name(loc) -> str:
    # drop the "body" / "query" prefix FastAPI puts on locations
    parts = [str(p) for p in loc[1:]] or [str(p) for p in loc]
    return ".".join(parts)


def create_app() -> FastAPI:
    setup_logging()

    app = FastAPI(
        title="College Gate Pass API",
        version="1.0.0",
        description="Two-stage gate pass approvals with QR verification at the gate",
        debug=config.API_DEBUG,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(auth_router, prefix="/api", tags=["auth"])
    app.include_router(users_router, prefix="/api", tags=["users"])
    app.include_router(gate_router, prefix="/api", tags=["gate"])
    app.include_router(passes_router, prefix="/api", tags=["passes"])
    app.include_router(notifications_router, prefix="/api", tags=["notifications"])
    app.include_router(realtime_router, tags=["live"])

    @app.exception_handler(GatePassError)
    async def gatepass_error_handler(request: Request, exc: GatePassError):
        code = status_code_for(exc)
        if code >= 500:
            logger.error("Unhandled gate pass error on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = {_field_name(err["loc"]): err["msg"] for err in exc.errors()}
        return JSONResponse(status_code=422, content=ValidationError(fields=fields).to_dict())

    @app.get("/api/health", response_model=HealthResponse, tags=["health"])
    def api_health():
        try:
            db_manager.fetch_one("SELECT 1")
            return HealthResponse(status="ok", dataAvailable=True, message=None)
        except Exception as e:
            return HealthResponse(
                status="error", dataAvailable=False, message=str(e)
            )

    @app.on_event("startup")
    async def startup_event():
        db_manager.create_all()
        start_expiry_worker(asyncio.get_running_loop())
        logger.info("Gate pass API started")

    @app.on_event("shutdown")
    async def shutdown_event():
        stop_expiry_worker()

    return app


app = create_app()
