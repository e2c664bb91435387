"""
Careflow API Main Application

FastAPI application exposing the flow state machine.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from careflow import __version__
from careflow.config import get_settings
from careflow.exceptions import (
    ActiveFlowExists,
    CareflowError,
    ConcurrentModification,
    FlowNotFound,
    InvalidTransition,
    MalformedIntakeData,
    NoEligibleProvider,
    PersistenceError,
)
from careflow.flow.machine import FlowStateMachine
from careflow.routing.directory import InMemoryProviderDirectory, ProviderDirectory

logger = structlog.get_logger(__name__)


ERROR_STATUS: dict[type[CareflowError], int] = {
    FlowNotFound: 404,
    InvalidTransition: 409,
    ActiveFlowExists: 409,
    NoEligibleProvider: 409,
    ConcurrentModification: 409,
    MalformedIntakeData: 422,
    PersistenceError: 503,
}


def status_for(exc: CareflowError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the machine from settings unless one was injected."""
    from careflow.db import create_repository
    from careflow.observability.logging import configure_logging

    settings = get_settings()

    if getattr(app.state, "machine", None) is None:
        configure_logging(settings.app.log_level, settings.app.log_json)
        repository = await create_repository(settings)
        directory = app.state.directory
        if directory is None:
            roster_path = settings.routing.provider_roster_path
            directory = (
                InMemoryProviderDirectory.from_file(roster_path)
                if roster_path
                else InMemoryProviderDirectory()
            )
        app.state.machine = FlowStateMachine.from_settings(settings, repository, directory)
        logger.info(
            "Starting Careflow API",
            env=settings.app.env,
            repository=settings.app.repository_backend,
            directory=type(directory).__name__,
        )

    yield

    pool = getattr(app.state.machine.repository, "pool", None)
    if pool is not None:
        await pool.close()
    logger.info("Shutting down Careflow API")


def create_app(
    machine: FlowStateMachine | None = None,
    directory: ProviderDirectory | None = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        machine: Pre-built state machine; when omitted one is assembled
            from settings during startup
        directory: Provider roster for the assembled machine; defaults to
            the roster file named in routing settings
    """
    from careflow.api.routes.flows import router as flows_router

    app = FastAPI(
        title="Careflow API",
        description="Telehealth intake-to-consultation orchestration",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.machine = machine
    app.state.directory = directory

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        machine = request.app.state.machine
        return {
            "status": "healthy" if machine is not None else "starting",
            "version": __version__,
            "repository": type(machine.repository).__name__ if machine else None,
        }

    # =========================================================================
    # Error Handlers
    # =========================================================================

    @app.exception_handler(CareflowError)
    async def careflow_error_handler(request: Request, exc: CareflowError):
        status_code = status_for(exc)
        log = logger.error if status_code >= 500 else logger.info
        log(
            "Request failed",
            path=request.url.path,
            method=request.method,
            error_code=exc.code,
            status_code=status_code,
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "error": "validation_error",
                "message": "Invalid event payload",
                "detail": exc.errors(include_url=False, include_context=False, include_input=False),
            },
        )

    # =========================================================================
    # Include Routers
    # =========================================================================

    app.include_router(flows_router, prefix="/v1")

    return app
