"""
HTTP entry point exposing the metrics calculation as a JSON endpoint.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from config import Config
from models import ErrorResponse
from orchestrator import MetricsCalculationService

logger = logging.getLogger(__name__)


def create_app(service: Optional[MetricsCalculationService] = None) -> FastAPI:
    """
    Builds the FastAPI application.

    Args:
        service: Calculation service to serve; when omitted one is built from
            the environment at startup and closed at shutdown.

    Returns:
        FastAPI: The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.service is None
        if owned:
            app.state.service = MetricsCalculationService(Config.from_env())
            logger.info("Metrics calculation service started")
        yield
        if owned:
            app.state.service.close()
            app.state.service = None

    app = FastAPI(title="Portfolio Metrics API", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )

    @app.post("/ai-calculate-metrics")
    async def calculate_metrics(request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Invalid JSON body: {e}")
            return JSONResponse(
                status_code=400,
                content=ErrorResponse(error="Request body must be valid JSON", details=str(e)).to_payload(),
            )

        status_code, body = await run_in_threadpool(app.state.service.handle_payload, payload)
        return JSONResponse(status_code=status_code, content=body)

    return app


app = create_app()
