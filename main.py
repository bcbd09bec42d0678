"""Run the FastAPI app for the Profile Context service."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.llm_core import ConfigurationError, UpstreamError
from src.profile_context.errors import ProfileContextError, error_response, upstream_error_status
from src.profile_context.logging_config import setup_logging
from src.routers import chat_router, profiles_router
from src.routers.dependencies import shutdown_dependencies

setup_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await shutdown_dependencies()


app = FastAPI(title="Profile Context", version="0.1.0", lifespan=lifespan)
app.include_router(chat_router)
app.include_router(profiles_router)


@app.exception_handler(ProfileContextError)
async def profile_context_error_handler(request: Request, exc: ProfileContextError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    logger.error("Upstream error on %s: %s", request.url.path, exc)
    status, error_type = upstream_error_status(exc.status)
    return JSONResponse(status_code=status, content=error_response(str(exc), error_type))


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("Configuration error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content=error_response(str(exc), "internal_error", code="configuration_error"),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_response("Invalid request", "invalid_request_error", code="validation_error", details=details),
    )


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
