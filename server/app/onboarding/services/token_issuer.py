"""Issue access tokens for onboarding sessions.

Walk-in sessions get a short access code that can be typed on a tablet.
Remote sessions get an opaque bearer token embedded in the emailed link.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from ...config import Settings
from .errors import OnboardingError

logger = logging.getLogger(__name__)

# No I, L, O, 0 or 1 so codes survive being read aloud and retyped.
ACCESS_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
DEFAULT_ACCESS_CODE_LENGTH = 6
MAX_ISSUE_ATTEMPTS = 10

_BEARER_PATTERN = re.compile(r"^[A-Za-z0-9_-]{32,128}$")


class TokenKind(str, Enum):
    ACCESS_CODE = "access_code"
    BEARER = "bearer"


class TokenIssueFailed(OnboardingError):
    """Could not find an unused token within the attempt budget."""


@dataclass(frozen=True)
class ExpiryPolicy:
    kind: TokenKind
    ttl: timedelta
    code_length: int = DEFAULT_ACCESS_CODE_LENGTH

    @classmethod
    def for_offer(cls, settings: Settings) -> "ExpiryPolicy":
        return cls(kind=TokenKind.BEARER, ttl=timedelta(hours=settings.offer_token_expire_hours))

    @classmethod
    def for_walk_in(cls, settings: Settings) -> "ExpiryPolicy":
        return cls(
            kind=TokenKind.ACCESS_CODE,
            ttl=timedelta(hours=settings.walkin_code_expire_hours),
            code_length=settings.access_code_length,
        )


@dataclass(frozen=True)
class IssuedToken:
    token: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime


def generate_access_code(length: int = DEFAULT_ACCESS_CODE_LENGTH) -> str:
    return "".join(secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(length))


def generate_bearer_token() -> str:
    return secrets.token_urlsafe(32)


def normalize_token(raw: Optional[str]) -> str:
    """Trim whitespace; access codes are case-insensitive on entry."""
    token = (raw or "").strip()
    if len(token) <= 12:
        return token.upper()
    return token


def is_well_formed(token: str, code_length: int = DEFAULT_ACCESS_CODE_LENGTH) -> bool:
    if not token:
        return False
    if len(token) == code_length:
        return all(ch in ACCESS_CODE_ALPHABET for ch in token)
    return bool(_BEARER_PATTERN.match(token))


def classify_token(token: str, code_length: int = DEFAULT_ACCESS_CODE_LENGTH) -> Optional[TokenKind]:
    if not is_well_formed(token, code_length):
        return None
    return TokenKind.ACCESS_CODE if len(token) == code_length else TokenKind.BEARER


async def issue_token(
    policy: ExpiryPolicy,
    token_exists: Callable[[str], Awaitable[bool]],
    now: datetime,
) -> IssuedToken:
    """Generate a token not already in use and stamp its expiry.

    ``token_exists`` is the session store's uniqueness check. Collisions are
    regenerated up to MAX_ISSUE_ATTEMPTS times.
    """
    for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
        if policy.kind == TokenKind.ACCESS_CODE:
            token = generate_access_code(policy.code_length)
        else:
            token = generate_bearer_token()

        if not await token_exists(token):
            return IssuedToken(
                token=token,
                kind=policy.kind,
                issued_at=now,
                expires_at=now + policy.ttl,
            )
        logger.info("[TokenIssuer] Collision on %s attempt %d, regenerating", policy.kind.value, attempt)

    raise TokenIssueFailed(
        f"Failed to generate a unique {policy.kind.value} after {MAX_ISSUE_ATTEMPTS} attempts"
    )


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return now > expires_at
