"""
FastAPI Application — Webhook intake + health reporting.

Provides:
- POST /webhook: accept any JSON object, attach receipt metadata, enqueue
- Health endpoints for the service, the webhook route and the queue
- Job lookup for operators (payload redacted)

The relay service (queue, worker, janitor) is started and stopped by the
application lifespan; requests never wait on destination delivery.
"""
from __future__ import annotations

import json
import math
import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaError
from starlette.middleware.base import BaseHTTPMiddleware

from config.settings import Settings, get_settings
from core.service import RelayService
from models.schemas import JobOptions, WebhookMetadata
from utils.logging_config import configure_logging

logger = structlog.get_logger()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _whole(value: Any) -> Any:
    """Scheduling hints truncate toward zero; other types are left for JobOptions to check."""
    if not value:
        return 0
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return value


# ──────────────────────────────────────────────────────────────
#  Middleware
# ──────────────────────────────────────────────────────────────

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every HTTP request with method, path, status and duration."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        request_logger = logger.bind(method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            request_logger.error("request_failed",
                                 status_code=500,
                                 duration_ms=round(duration_ms, 2),
                                 error=str(e))
            raise

        duration_ms = (time.time() - start_time) * 1000
        request_logger.info("request_completed",
                            status_code=response.status_code,
                            duration_ms=round(duration_ms, 2))
        return response


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(settings: Settings = None, service: RelayService = None) -> FastAPI:
    settings = settings or get_settings()
    service = service or RelayService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        logger.info("webhook_api_started",
                    port=settings.server.port,
                    environment=settings.server.environment)
        yield
        await service.stop(settings.server.shutdown_grace_period)
        logger.info("webhook_api_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Receives webhooks and relays them to conversion-tracking APIs",
        version=settings.version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error("unhandled_error",
                     path=request.url.path,
                     method=request.method,
                     error=str(exc),
                     exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"},
        )

    # ══════════════════════════════════════════════════════════
    #  WEBHOOK INTAKE
    # ══════════════════════════════════════════════════════════

    async def _read_body(request: Request) -> dict[str, Any]:
        limit = settings.server.max_body_bytes
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise HTTPException(413, "Payload too large")

        raw = await request.body()
        if len(raw) > limit:
            raise HTTPException(413, "Payload too large")

        try:
            body = json.loads(raw) if raw else None
        except ValueError:
            body = None
        if not isinstance(body, dict) or not body:
            raise HTTPException(400, "Empty or invalid payload")
        return body

    def _check_secret(request: Request, body: dict[str, Any]):
        expected = settings.webhook.secret
        if not expected:
            return
        provided = request.headers.get("x-webhook-secret") or body.get("secret")
        if not provided or not secrets.compare_digest(str(provided), expected):
            logger.warning("webhook_invalid_secret",
                           source_ip=request.client.host if request.client else None,
                           headers=sorted(request.headers.keys()))
            raise HTTPException(401, "Unauthorized")

    @app.post("/webhook", status_code=202)
    async def receive_webhook(request: Request):
        try:
            body = await _read_body(request)
            _check_secret(request, body)
            options = JobOptions(
                priority=_whole(body.get("priority")),
                delay=_whole(body.get("delay")),
            )
        except HTTPException as e:
            return JSONResponse(status_code=e.status_code, content={"error": e.detail})
        except SchemaError as e:
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid priority or delay", "details": e.errors()},
            )

        metadata = WebhookMetadata(
            source_ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            content_type=request.headers.get("content-type"),
            source=str(request.headers.get("x-webhook-source") or body.get("source") or "unknown"),
        )
        payload = {**body, "metadata": metadata.model_dump()}

        try:
            job_id = await service.submit(payload, options)
        except Exception as e:
            logger.error("webhook_enqueue_failed", error=str(e), exc_info=True)
            content = {"success": False, "error": "Internal server error"}
            if not settings.is_production:
                content["message"] = str(e)
            return JSONResponse(status_code=500, content=content)

        logger.info("webhook_accepted",
                    job_id=job_id,
                    event_name=body.get("event_name") or body.get("event"),
                    source=metadata.source)
        return {
            "success": True,
            "message": "Webhook received and queued for processing",
            "job_id": job_id,
        }

    @app.get("/webhook/health")
    async def webhook_health():
        return {"status": "ok", "service": "webhook", "timestamp": _now_iso()}

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        try:
            report = await service.health()
        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            content = {"status": "error", "message": "Service unavailable"}
            if not settings.is_production:
                content["error"] = str(e)
            return JSONResponse(status_code=503, content=content)
        return {"status": "ok", "timestamp": _now_iso(), **report}

    @app.get("/api/v1/jobs/{job_id}")
    async def get_job(job_id: str):
        job = await service.queue.get_job(job_id)
        if not job:
            raise HTTPException(404, "Job not found")
        envelope = job.envelope()
        envelope["payload"] = service.router.sanitize_for_log(envelope["payload"])
        return envelope

    @app.get("/")
    async def root():
        return {
            "service": settings.app_name,
            "version": settings.version,
            "endpoints": {
                "webhook": "/webhook",
                "webhook_health": "/webhook/health",
                "health": "/health",
                "jobs": "/api/v1/jobs/{job_id}",
            },
        }

    return app


_settings_boot = get_settings()
configure_logging(_settings_boot.log_level, json_output=_settings_boot.is_production)
app = create_app(_settings_boot)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=_settings_boot.server.host,
        port=_settings_boot.server.port,
        reload=not _settings_boot.is_production,
    )
