"""FastAPI application entry point for the job lifecycle service.

This module builds the FastAPI application, the audit log, the guard
evaluator and ``TransitionEngine``, and wires the engine into each router
module.  The server is started via ``uvicorn`` using the settings from
``job_lifecycle.config``.
"""

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from job_lifecycle import auth
from job_lifecycle.config import LifecycleSettings
from job_lifecycle.models import TransitionErrorResponse
from job_lifecycle.routers import events, health, jobs
from job_lifecycle.services.audit_log import AuditLog, InMemoryAuditLog
from job_lifecycle.services.collaborators import Collaborators, InMemoryCollaborators
from job_lifecycle.services.guards import GuardEvaluator
from job_lifecycle.services.sql_audit_log import SqlAuditLog
from job_lifecycle.services.transition_engine import TransitionEngine
from job_lifecycle.state_machine import (
    ConcurrentModificationError,
    GuardFailedError,
    InvalidTransitionError,
    TransitionRejectedError,
)

logger = logging.getLogger(__name__)

_REJECTION_STATUS: dict[type[TransitionRejectedError], int] = {
    InvalidTransitionError: 409,
    ConcurrentModificationError: 409,
    GuardFailedError: 422,
}


async def _transition_rejected(request: Request, exc: TransitionRejectedError) -> JSONResponse:
    """Render a rejected transition as a structured error body."""
    body = TransitionErrorResponse(kind=exc.kind, detail=str(exc), blocked_reasons=exc.blocked_reasons)
    return JSONResponse(status_code=_REJECTION_STATUS.get(type(exc), 409), content=body.model_dump(by_alias=True))


def build_audit_log(settings: LifecycleSettings) -> AuditLog:
    """Pick the audit log backend from *settings*.

    Returns:
        ``SqlAuditLog`` when ``database_url`` is set, else ``InMemoryAuditLog``.
    """
    if settings.database_url:
        return SqlAuditLog(settings.database_url)
    logger.warning("No LIFECYCLE_DATABASE_URL set -- audit history is kept in memory only")
    return InMemoryAuditLog()


def create_app(
    settings: LifecycleSettings | None = None,
    collaborators: Collaborators | None = None,
    audit_log: AuditLog | None = None,
) -> FastAPI:
    """Build and configure the FastAPI application.

    Registers all API routers, installs the rejection handler, and
    initialises the shared ``TransitionEngine`` that every router depends on.

    Args:
        settings: Service configuration; read from the environment when omitted.
        collaborators: Crew, forms and billing lookups; in-memory stand-ins
            when omitted.
        audit_log: Store override; chosen from *settings* when omitted.

    Returns:
        A fully configured ``FastAPI`` application ready to serve.
    """
    settings = settings or LifecycleSettings()
    collaborators = collaborators or InMemoryCollaborators().bundle()
    audit_log = audit_log or build_audit_log(settings)

    app = FastAPI(
        title="Job Lifecycle Service",
        description="Guarded, audited state transitions for field-service jobs",
        version="0.1.0",
    )

    # Dispatch UI, crew app and integrations are served from other origins.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(TransitionRejectedError, _transition_rejected)

    guards = GuardEvaluator(collaborators, timeout_seconds=settings.guard_timeout_seconds)
    engine = TransitionEngine(audit_log, guards)
    app.state.engine = engine

    # Wire shared state into each router that needs it
    auth.set_settings(settings)
    jobs.set_engine(engine)
    events.set_engine(engine)
    health.set_store_backend(audit_log.backend)

    # Register routers
    app.include_router(health.router)
    app.include_router(jobs.router)
    app.include_router(events.router)

    logger.info(
        "Job lifecycle service initialised -- store=%s, guard_timeout=%.1fs",
        audit_log.backend,
        settings.guard_timeout_seconds,
    )
    return app


def main() -> None:
    """Start the Uvicorn server with settings from the environment.

    This is the CLI entry point (``python -m job_lifecycle.main``).
    """
    settings = LifecycleSettings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting job lifecycle service on %s:%d", settings.host, settings.port)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
