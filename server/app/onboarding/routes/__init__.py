"""Onboarding routes aggregation."""

from fastapi import APIRouter

from .access import router as access_router
from .job_applications import router as job_applications_router
from .sessions import router as sessions_router
from .walk_in import router as walk_in_router

onboarding_router = APIRouter()

onboarding_router.include_router(access_router, prefix="/onboarding/access", tags=["onboarding-access"])
onboarding_router.include_router(sessions_router, prefix="/onboarding/sessions", tags=["onboarding-review"])
onboarding_router.include_router(walk_in_router, prefix="/onboarding/walk-in", tags=["walk-in"])
onboarding_router.include_router(job_applications_router, prefix="/job-applications", tags=["job-applications"])

__all__ = ["onboarding_router"]
