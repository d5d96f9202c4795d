"""
FastAPI application for the billing engine:
 - structured logging (json) with a request id per HTTP request
 - /metrics endpoint for Prometheus
 - /healthz liveness probe
 - billing router (/v1/billing/run, /v1/billing/webhook)

Run with: uvicorn subbilling.app:app
"""
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from subbilling import __version__
from subbilling.api import router as billing_router
from subbilling.logging_config import configure_logging, request_id_ctx

logger = logging.getLogger("subbilling.http")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Subscription Billing", version=__version__)

    @app.middleware("http")
    async def add_request_id_header(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        token = request_id_ctx.set(request_id)
        start = time.time()
        response = None
        try:
            response = await call_next(request)
        finally:
            elapsed_ms = (time.time() - start) * 1000.0
            logger.info("http.request", extra={
                "method": request.method,
                "path": request.url.path,
                "status": getattr(response, "status_code", None),
                "latency_ms": elapsed_ms,
            })
            request_id_ctx.reset(token)
        response.headers["x-request-id"] = request_id
        return response

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics():
        return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(billing_router)
    return app


app = create_app()
