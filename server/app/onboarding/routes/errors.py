"""Translate onboarding errors into HTTP responses."""

import logging

from fastapi import HTTPException, status

from ...config import get_settings
from ..services.errors import (
    Conflict,
    IllegalTransition,
    MaterializationFailed,
    NotFound,
    OnboardingError,
    ReviewerNotesRequired,
    TokenInvalid,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

TOKEN_ERROR_MESSAGE = "Invalid or expired onboarding token"
GENERIC_TRANSITION_MESSAGE = "This action is not available for the session right now"


def to_http_exception(exc: OnboardingError) -> HTTPException:
    if isinstance(exc, TokenInvalid):
        # Unknown and expired tokens look the same to the caller.
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=TOKEN_ERROR_MESSAGE)
    if isinstance(exc, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ValidationFailed):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "errors": exc.errors},
        )
    if isinstance(exc, (IllegalTransition, ReviewerNotesRequired)):
        logger.warning("[Onboarding] Rejected request: %s", exc)
        detail = GENERIC_TRANSITION_MESSAGE if get_settings().is_production else str(exc)
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    if isinstance(exc, Conflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, MaterializationFailed):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": str(exc), "missing_fields": exc.missing_fields},
        )
    logger.error("[Onboarding] Unhandled onboarding error: %s", exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Onboarding request failed")
