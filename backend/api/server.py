# api/server.py
# ============================================================================
# CHECKOUT SETTLEMENT: FASTAPI SERVER
# ============================================================================
# Payment-provider webhook intake, health check and the outbound webhook
# delivery ledger (logs, stats, replay, job status)
# ============================================================================

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from pipeline.container import PipelineServices
from pipeline.errors import NotFoundError, PipelineError


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


config = ServerConfig()


def configure_logging() -> None:
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if config.DEBUG
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.LOG_LEVEL)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(component="server")


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    status: str
    queue: str
    uptime_seconds: float
    background_tasks: int


class ReplayResponse(BaseModel):
    log_id: str
    success: bool
    status_code: Optional[int] = None


START_TIME = datetime.now(timezone.utc)


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(services: Optional[PipelineServices] = None) -> FastAPI:
    """
    Build the API. When ``services`` is given the caller owns its lifecycle;
    otherwise the lifespan wires production services from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return

        logger.info("server_starting", env=config.ENV)
        app.state.services = await PipelineServices.from_settings()
        await app.state.services.start()
        try:
            yield
        finally:
            logger.info("server_stopping")
            await app.state.services.shutdown()

    app = FastAPI(
        title="Checkout Settlement",
        description="Payment webhook settlement and outbound webhook fan-out",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        log_method = logger.error if exc.status_code >= 500 else logger.warning
        log_method("request_failed",
                   path=request.url.path,
                   error_type=type(exc).__name__,
                   error=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message},
        )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    def get_services(request: Request) -> PipelineServices:
        return request.app.state.services

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        svc = get_services(request)
        return HealthResponse(
            status="healthy",
            queue=svc.queue.name,
            uptime_seconds=(datetime.now(timezone.utc) - START_TIME).total_seconds(),
            background_tasks=svc.background.pending,
        )

    @app.post("/api/payment/webhook")
    async def payment_webhook(request: Request):
        """Provider notification intake. Always JSON; status code drives provider retries."""
        body = await request.body()
        result = await get_services(request).inbound.handle(dict(request.headers), body)
        return JSONResponse(status_code=result.status_code, content=result.body)

    @app.get("/api/webhooks/logs")
    async def list_webhook_logs(
        request: Request,
        webhook_id: Optional[str] = None,
        event: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ) -> Dict[str, Any]:
        logs = await get_services(request).dispatcher.logs(webhook_id, event, success, limit, offset)
        return {
            "count": len(logs),
            "logs": [entry.model_dump(mode="json") for entry in logs],
        }

    @app.get("/api/webhooks/stats")
    async def webhook_stats(request: Request, webhook_id: Optional[str] = None) -> Dict[str, Any]:
        return await get_services(request).dispatcher.stats(webhook_id)

    @app.post("/api/webhooks/logs/{log_id}/replay", response_model=ReplayResponse)
    async def replay_webhook(request: Request, log_id: str):
        try:
            entry = await get_services(request).dispatcher.replay(log_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message)
        return ReplayResponse(log_id=entry.id, success=entry.success, status_code=entry.status_code)

    @app.get("/api/webhooks/jobs/{job_id}")
    async def job_status(request: Request, job_id: str) -> Dict[str, Any]:
        job = await get_services(request).queue.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.model_dump(mode="json", exclude={"data"})

    @app.get("/api/webhooks/dead-letters")
    async def dead_letters(request: Request, limit: int = Query(100, ge=1, le=1000)) -> List[Dict[str, Any]]:
        jobs = await get_services(request).queue.dead_letters(limit)
        return [job.model_dump(mode="json") for job in jobs]

    return app


# =============================================================================
# MAIN
# =============================================================================

configure_logging()
app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
