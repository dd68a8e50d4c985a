"""FastAPI diagnostics server for QR polling coordination.

Features:
- Stats snapshot and SSE stats stream
- Emergency stop (circuit breaker of last resort)
- Emergency breaker reset
- Global exception handling
- Health check endpoint
- Structured logging with request IDs
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from qr_guard import __version__, config
from qr_guard.api.dependencies import (
    get_emergency_breaker,
    get_request_manager,
    verify_diagnostics_token
)
from qr_guard.api.models import EmergencyStopResponse, ErrorResponse, StatsResponse
from qr_guard.api.streaming import stream_stats_events
from qr_guard.circuit_breaker import EmergencyCircuitBreaker
from qr_guard.logging_config import RequestIDMiddleware, get_logger, setup_structured_logging
from qr_guard.request_manager import QRRequestManager

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager: the manager lives exactly as long as the app."""
    setup_structured_logging(config.LOG_LEVEL)
    logger.info("QR diagnostics server starting up...")

    yield

    # Shutdown: no poller may outlive the application.
    cleared = app.state.request_manager.emergency_stop()
    logger.info(f"QR diagnostics server shutting down, released {cleared} registrations")


def create_app(
    manager: Optional[QRRequestManager] = None,
    breaker: Optional[EmergencyCircuitBreaker] = None,
    diagnostics_token: Optional[str] = None
) -> FastAPI:
    """
    Build the diagnostics application.

    Args:
        manager: Shared request manager (a new one by default)
        breaker: Shared emergency breaker (a new one by default)
        diagnostics_token: Token guarding state-changing endpoints
                           (default: QR_DIAGNOSTICS_TOKEN)

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="QR Polling Guard API",
        description="Diagnostics and emergency controls for QR-code polling",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.state.request_manager = manager or QRRequestManager()
    app.state.emergency_breaker = breaker or EmergencyCircuitBreaker()
    app.state.diagnostics_token = (
        config.QR_DIAGNOSTICS_TOKEN if diagnostics_token is None else diagnostics_token
    )

    app.add_middleware(RequestIDMiddleware)

    _register_exception_handlers(app)
    _register_routes(app)
    return app


def _register_exception_handlers(app: FastAPI):

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors consistently."""
        logger.warning(f"Validation error: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=ErrorResponse(
                error="Validation Error",
                detail=str(exc.errors()),
                code="VALIDATION_ERROR"
            ).model_dump()
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        codes = {
            status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
            status.HTTP_404_NOT_FOUND: "NOT_FOUND",
        }
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=str(exc.detail),
                detail=str(exc.detail),
                code=codes.get(exc.status_code, "HTTP_ERROR")
            ).model_dump(),
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all handler for unexpected exceptions."""
        logger.error(f"Unexpected error: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail="An unexpected error occurred. Please try again later.",
                code="INTERNAL_ERROR"
            ).model_dump()
        )


def _register_routes(app: FastAPI):

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint for load balancers."""
        return {
            "status": "healthy",
            "service": "qr-polling-guard",
            "version": __version__
        }

    @app.get("/api/v1/qr/stats", tags=["Diagnostics"], response_model=StatsResponse)
    async def get_stats(
        manager: QRRequestManager = Depends(get_request_manager),
        breaker: EmergencyCircuitBreaker = Depends(get_emergency_breaker)
    ):
        """Snapshot of every registration and every tripped instance."""
        return StatsResponse.from_stats(manager.get_stats(), breaker.snapshot())

    @app.get("/api/v1/qr/stats/stream", tags=["Diagnostics"])
    async def stream_stats(
        interval: float = Query(2.0, gt=0, le=60, description="Seconds between snapshots"),
        limit: Optional[int] = Query(None, ge=1, description="Number of snapshots to send"),
        manager: QRRequestManager = Depends(get_request_manager),
        breaker: EmergencyCircuitBreaker = Depends(get_emergency_breaker)
    ):
        """
        Stream stats snapshots with Server-Sent Events.

        Response Format:
            data: {"count": 1, "per_instance": [...], ...}
            data: {"done": true}
        """
        return StreamingResponse(
            stream_stats_events(manager, breaker, interval=interval, limit=limit),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            }
        )

    @app.post(
        "/api/v1/qr/emergency-stop",
        tags=["Emergency"],
        response_model=EmergencyStopResponse,
        dependencies=[Depends(verify_diagnostics_token)]
    )
    async def emergency_stop(
        trip_breaker: bool = Query(True, description="Also block all polls for the cooldown"),
        manager: QRRequestManager = Depends(get_request_manager),
        breaker: EmergencyCircuitBreaker = Depends(get_emergency_breaker)
    ):
        """Cancel every polling timer and clear all registrations."""
        cleared = manager.emergency_stop()
        if trip_breaker:
            breaker.trip_all()
        logger.warning(f"Emergency stop via API: cleared={cleared}, breaker_tripped={trip_breaker}")
        return EmergencyStopResponse(cleared=cleared, breaker_tripped=trip_breaker)

    @app.post(
        "/api/v1/qr/circuit/reset",
        tags=["Emergency"],
        dependencies=[Depends(verify_diagnostics_token)]
    )
    async def reset_circuit(
        instance_id: Optional[str] = Query(None, description="Reset one instance only"),
        breaker: EmergencyCircuitBreaker = Depends(get_emergency_breaker)
    ):
        """Lift emergency breaker trips."""
        breaker.reset(instance_id)
        logger.info(f"Emergency breaker reset via API: instance={instance_id or 'all'}")
        return {"reset": instance_id or "all"}


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "qr_guard.api_server:app",
        host="0.0.0.0",
        port=8000,
        log_level=config.LOG_LEVEL.lower()
    )
