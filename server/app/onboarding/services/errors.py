"""Error kinds raised by the onboarding workflow."""

from __future__ import annotations

from typing import Mapping, Optional, Sequence


class OnboardingError(Exception):
    """Base class for onboarding workflow errors."""


class TokenInvalid(OnboardingError):
    """Token unknown, malformed, or no longer bound to an open session."""


class TokenExpired(TokenInvalid):
    """Token exists but is past its expiry."""


class NotFound(OnboardingError):
    """Record unknown or outside the caller's organization."""


class SessionNotFound(NotFound):
    pass


class ApplicationNotFound(NotFound):
    pass


class ValidationFailed(OnboardingError):
    """Field-keyed validation failure. Recoverable by the same caller."""

    def __init__(self, errors: Mapping[str, str], message: str = "Validation failed"):
        super().__init__(message)
        self.errors = dict(errors)


class StepValidationFailed(ValidationFailed):
    def __init__(self, errors: Mapping[str, str], step: Optional[str] = None):
        message = f"Step '{step}' is incomplete or invalid" if step else "Step validation failed"
        super().__init__(errors, message)
        self.step = step


class IllegalTransition(OnboardingError):
    """Requested state change is not permitted from the current status."""


class ReviewerNotesRequired(OnboardingError):
    """Reject / request-changes attempted without notes or reasons."""


class Conflict(OnboardingError):
    """A concurrent write changed the record first. Reread and retry."""


class MaterializationFailed(OnboardingError):
    def __init__(self, message: str, missing_fields: Sequence[str] = ()):
        super().__init__(message)
        self.missing_fields = list(missing_fields)
