"""
API Module
FastAPI routers for the DoseLedger application
"""

from api.medications import router as medications_router
from api.preferences import router as preferences_router
from api.adherence import router as adherence_router
from api.notifications import router as notifications_router
from api.jobs import router as jobs_router

from api.deps import (
    get_db,
    get_services,
    get_current_subject,
    verify_job_token,
    IdentityVerifier,
)


__all__ = [
    # Routers
    "medications_router",
    "preferences_router",
    "adherence_router",
    "notifications_router",
    "jobs_router",
    # Dependencies
    "get_db",
    "get_services",
    "get_current_subject",
    "verify_job_token",
    "IdentityVerifier",
]


def include_routers(app, prefix: str = "/api/v1"):
    """
    Include all API routers in the FastAPI app

    Usage:
        from api import include_routers
        include_routers(app)
    """
    app.include_router(medications_router, prefix=prefix)
    app.include_router(preferences_router, prefix=prefix)
    app.include_router(adherence_router, prefix=prefix)
    app.include_router(notifications_router, prefix=prefix)
    app.include_router(jobs_router, prefix=prefix)
