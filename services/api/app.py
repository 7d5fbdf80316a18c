"""
HTTP API - FastAPI Application

Triggers pipeline runs over HTTP (Cloud Run / container style deployments).

Endpoints:
- GET /          Service info and endpoint list
- GET /health    Health check
- POST /members  Run the members pipeline
- POST /channels Run the channels pipeline
- POST /all      Run both pipelines

Run parameters come from the JSON body and the query string (query keys are
lowercased and win over body keys).

Usage:
    uvicorn services.api.app:create_app --factory --port 8080
    python -m services.api
"""

import logging
import traceback
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apps.pipeline.factory import open_runner
from apps.pipeline.params import parse_parameters
from apps.pipeline.runner import PipelineRunner
from utils.config import Settings, get_settings
from utils.dates import iso_utc
from utils.errors import ValidationError
from utils.logging import setup_logging

logger = logging.getLogger(__name__)

RunnerProvider = Callable[[], AbstractAsyncContextManager[PipelineRunner]]

PIPELINE_ROUTES = {
    "members": ["members"],
    "channels": ["channels"],
    "all": ["members", "channels"],
}


def _now() -> str:
    return iso_utc(datetime.now(timezone.utc))


async def _request_params(request: Request) -> dict[str, Any]:
    """Merge JSON body and query string; query keys lowercased, query wins."""
    body: dict[str, Any] = {}
    raw = await request.body()
    if raw:
        try:
            parsed = await request.json()
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            body = parsed

    query = {key.lower(): value for key, value in request.query_params.items()}
    return {**body, **query}


def create_app(runner_provider: Optional[RunnerProvider] = None, app_settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        runner_provider: Factory returning an async context manager that yields
            a PipelineRunner (defaults to open_runner with real clients)
        app_settings: Settings override

    Returns:
        FastAPI app
    """
    config = app_settings or get_settings()
    provider = runner_provider or (lambda: open_runner(config))

    app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION)

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "status": "ok",
            "service": config.APP_NAME,
            "message": "Slack-Mixpanel pipeline service is alive",
            "env": config.ENVIRONMENT,
            "timestamp": _now(),
            "endpoints": {
                "health": "GET /health - Health check",
                "members": "POST /members - Process Slack members pipeline",
                "channels": "POST /channels - Process Slack channels pipeline",
                "all": "POST /all - Process both members and channels pipelines",
            },
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "service": config.APP_NAME, "env": config.ENVIRONMENT, "timestamp": _now()}

    @app.post("/{pipeline}")
    async def run_pipeline(pipeline: str, request: Request) -> JSONResponse:
        if pipeline not in PIPELINE_ROUTES:
            return JSONResponse(
                status_code=404,
                content={"status": "error", "pipeline": pipeline, "error": f"Unknown pipeline: {pipeline}", "timestamp": _now()},
            )

        params = await _request_params(request)
        if pipeline != "all" or not params.get("pipelines"):
            params["pipelines"] = PIPELINE_ROUTES[pipeline]

        logger.info("START JOB: %s", pipeline, extra={"params": params})

        try:
            # Reject bad parameters before any client is built or validated
            parse_parameters(params)
            async with provider() as runner:
                report = await runner.run(params, label=pipeline)

        except ValidationError as e:
            logger.warning("Invalid parameters for %s: %s", pipeline, str(e))
            return JSONResponse(
                status_code=400,
                content={"status": "error", "pipeline": pipeline, "error": str(e), "timestamp": _now()},
            )

        except Exception as e:
            logger.error("Pipeline %s failed", pipeline, extra={"error": str(e)}, exc_info=True)
            content = {"status": "error", "pipeline": pipeline, "error": str(e), "timestamp": _now()}
            if config.is_dev:
                content["traceback"] = traceback.format_exc()
            return JSONResponse(status_code=500, content=content)

        logger.info("FINISH JOB: %s", pipeline, extra={"duration": report.timing.human})
        return JSONResponse(status_code=200, content=report.model_dump(mode="json"))

    return app


def main() -> None:
    """Serve the API with uvicorn."""
    config = get_settings()
    setup_logging(config.LOG_LEVEL, config.LOG_FORMAT)
    uvicorn.run(create_app(), host=config.API_HOST, port=config.API_PORT, log_config=None)


if __name__ == "__main__":
    main()
