"""Health-check endpoint.

Reports service status and which audit log backend is active, so operators
can tell at a glance whether history survives a restart.
"""

import logging

from fastapi import APIRouter

from job_lifecycle.models import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_store_backend = "unknown"


def set_store_backend(backend: str) -> None:
    """Record which audit log backend the application was built with."""
    global _store_backend
    _store_backend = backend


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Return service health and the audit log backend in use.

    Returns:
        A ``HealthResponse``; ``status`` is ``degraded`` when the service was
        started without a store.
    """
    status = "ok" if _store_backend in {"memory", "sql"} else "degraded"
    if status != "ok":
        logger.warning("Health check with no audit log wired")
    return HealthResponse(status=status, store=_store_backend)
