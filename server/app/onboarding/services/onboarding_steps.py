"""Canonical onboarding steps and their validators."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from ..models.session import SECTION_MODELS, OnboardingSession, StepState
from .errors import IllegalTransition, StepValidationFailed, ValidationFailed
from .onboarding_state_machine import SUBMITTED_OR_LATER

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SSN_LAST_FOUR_PATTERN = re.compile(r"^\d{4}$")
ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")
STATE_PATTERN = re.compile(r"^[A-Za-z]{2}$")
DATE_FORMATS = ("%m/%d/%Y", "%Y-%m-%d")

IDENTITY_DOCUMENT_TYPES = frozenset({
    "drivers_license",
    "state_id",
    "passport",
    "passport_card",
    "permanent_resident_card",
    "employment_authorization",
    "social_security_card",
    "birth_certificate",
})

REQUIRED_SIGNATURE = "employee"
REVIEW_STEP = "review"

StepValidator = Callable[[dict[str, Any], OnboardingSession], dict[str, str]]


@dataclass(frozen=True)
class StepDefinition:
    key: str
    title: str
    section: Optional[str]
    validator: StepValidator
    optional: bool = False


# ================================
# Shared field checks
# ================================

def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_PATTERN.match(value.strip()))


def parse_flexible_date(value: Any) -> Optional[date]:
    """Accept MM/DD/YYYY or YYYY-MM-DD; None when neither parses."""
    if not isinstance(value, str):
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).date()
        except ValueError:
            continue
    return None


def validate_pay_rate(value: Any, floor: float) -> Optional[str]:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return "Pay rate must be a number"
    if rate <= 0:
        return "Pay rate must be greater than zero"
    if rate < Decimal(str(floor)):
        return f"Pay rate must be at least {floor:.2f}"
    return None


def _require(data: dict[str, Any], fields: Iterable[str], errors: dict[str, str]) -> None:
    for name in fields:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors[name] = "This field is required"


def _digits(value: Any) -> str:
    return re.sub(r"\D", "", value) if isinstance(value, str) else ""


# ================================
# Step validators
# ================================

def _validate_language(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    errors: dict[str, str] = {}
    _require(data, ("language",), errors)
    return errors


def _validate_identity(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    errors: dict[str, str] = {}
    _require(data, ("email", "last_name"), errors)
    if errors:
        return errors
    if data["email"].strip().lower() != session.subject.email.strip().lower():
        errors["email"] = "Does not match our records"
    if data["last_name"].strip().lower() != session.subject.last_name.strip().lower():
        errors["last_name"] = "Does not match our records"
    return errors


def _validate_personal(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    errors: dict[str, str] = {}
    _require(data, ("first_name", "last_name", "email", "phone", "date_of_birth", "ssn_last_four"), errors)

    if "email" not in errors and not is_valid_email(data.get("email")):
        errors["email"] = "Enter a valid email address"
    if "phone" not in errors and len(_digits(data.get("phone"))) < 10:
        errors["phone"] = "Enter a valid phone number"
    if "date_of_birth" not in errors:
        dob = parse_flexible_date(data.get("date_of_birth"))
        if dob is None:
            errors["date_of_birth"] = "Use MM/DD/YYYY"
        elif dob >= date.today():
            errors["date_of_birth"] = "Date of birth must be in the past"
    if "ssn_last_four" not in errors and not SSN_LAST_FOUR_PATTERN.match(str(data.get("ssn_last_four"))):
        errors["ssn_last_four"] = "Enter the last four digits"
    return errors


def _validate_address(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    errors: dict[str, str] = {}
    _require(data, ("street", "city", "state", "zip_code"), errors)
    if "state" not in errors and not STATE_PATTERN.match(data["state"].strip()):
        errors["state"] = "Use the two-letter state code"
    if "zip_code" not in errors and not ZIP_PATTERN.match(data["zip_code"].strip()):
        errors["zip_code"] = "Enter a valid ZIP code"
    return errors


def _validate_emergency_contact(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    errors: dict[str, str] = {}
    _require(data, ("name", "relationship", "phone"), errors)
    if "phone" not in errors and len(_digits(data.get("phone"))) < 10:
        errors["phone"] = "Enter a valid phone number"
    if data.get("email") and not is_valid_email(data["email"]):
        errors["email"] = "Enter a valid email address"
    return errors


def _validate_documents(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    if not any(doc.document_type in IDENTITY_DOCUMENT_TYPES for doc in session.documents):
        return {"documents": "Upload at least one identity document"}
    return {}


def _validate_i9(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    errors: dict[str, str] = {}
    _require(data, ("citizenship_status",), errors)
    status = data.get("citizenship_status")

    if status == "permanent_resident":
        if not (data.get("uscis_number") or data.get("alien_registration_number")):
            errors["uscis_number"] = "USCIS or A-Number is required for permanent residents"
    elif status == "authorized_alien":
        _require(data, ("work_authorization_expiration",), errors)
        expiration = data.get("work_authorization_expiration")
        if expiration and parse_flexible_date(expiration) is None:
            errors["work_authorization_expiration"] = "Use MM/DD/YYYY"
        if not (
            data.get("alien_registration_number")
            or data.get("i94_number")
            or data.get("foreign_passport_number")
        ):
            errors["alien_registration_number"] = (
                "Provide an A-Number, I-94 number, or foreign passport number"
            )
        if data.get("foreign_passport_number") and not data.get("country_of_issuance"):
            errors["country_of_issuance"] = "This field is required"

    if data.get("attestation") is not True:
        errors["attestation"] = "You must attest that the information is true"
    return errors


def _validate_w4(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    errors: dict[str, str] = {}
    _require(data, ("filing_status",), errors)
    for name in ("dependents_amount", "other_income", "deductions", "extra_withholding"):
        value = data.get(name)
        if value is None:
            continue
        try:
            if Decimal(str(value)) < 0:
                errors[name] = "Amount cannot be negative"
        except InvalidOperation:
            errors[name] = "Enter a dollar amount"
    return errors


def _validate_handbook(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    if data.get("acknowledged") is not True:
        return {"acknowledged": "You must acknowledge the employee handbook"}
    return {}


def _validate_signature(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    value = data.get(REQUIRED_SIGNATURE)
    if not isinstance(value, str) or not value.strip():
        return {REQUIRED_SIGNATURE: "Your signature is required"}
    return {}


def _validate_review(data: dict[str, Any], session: OnboardingSession) -> dict[str, str]:
    missing = [
        step.key for step in ONBOARDING_STEPS
        if step.key != REVIEW_STEP and not is_step_complete(session, step.key)
    ]
    return {key: "Step is not complete" for key in missing}


ONBOARDING_STEPS: tuple[StepDefinition, ...] = (
    StepDefinition("language", "Language", "preferences", _validate_language),
    StepDefinition("identity", "Verify Identity", "identity", _validate_identity),
    StepDefinition("personal", "Personal Information", "personal", _validate_personal),
    StepDefinition("address", "Home Address", "address", _validate_address),
    StepDefinition("emergency_contact", "Emergency Contact", "emergency_contact",
                   _validate_emergency_contact, optional=True),
    StepDefinition("documents", "Identity Documents", "documents", _validate_documents),
    StepDefinition("i9", "Form I-9", "i9", _validate_i9),
    StepDefinition("w4", "Form W-4", "w4", _validate_w4),
    StepDefinition("handbook", "Employee Handbook", "handbook", _validate_handbook),
    StepDefinition("signature", "Signature", "signatures", _validate_signature),
    StepDefinition(REVIEW_STEP, "Review & Submit", None, _validate_review),
)

STEP_KEYS: tuple[str, ...] = tuple(step.key for step in ONBOARDING_STEPS)
FIRST_STEP = STEP_KEYS[0]
_STEPS_BY_KEY = {step.key: step for step in ONBOARDING_STEPS}


# ================================
# Lookup and progress
# ================================

def get_step(key: str) -> StepDefinition:
    step = _STEPS_BY_KEY.get(key)
    if step is None:
        raise ValidationFailed({"step": f"Unknown onboarding step '{key}'"})
    return step


def step_index(key: str) -> int:
    return STEP_KEYS.index(get_step(key).key)


def section_step(section: str) -> Optional[StepDefinition]:
    for step in ONBOARDING_STEPS:
        if step.section == section:
            return step
    return None


def initial_step_status() -> dict[str, str]:
    return {key: "pending" for key in STEP_KEYS}


def is_step_complete(session: OnboardingSession, key: str) -> bool:
    return session.step_status.get(key) == "completed"


def completed_count(session: OnboardingSession) -> int:
    return sum(1 for key in STEP_KEYS if is_step_complete(session, key))


def progress_percentage(session: OnboardingSession) -> int:
    """Percent of steps done. Only submitted-or-later sessions reach 100."""
    if session.status in SUBMITTED_OR_LATER:
        return 100
    percent = int(completed_count(session) * 100 / len(STEP_KEYS))
    return max(0, min(99, percent))


def can_jump_to(session: OnboardingSession, target: str) -> bool:
    index = step_index(target)
    return all(is_step_complete(session, key) for key in STEP_KEYS[:index])


def ensure_reachable(session: OnboardingSession, target: str) -> None:
    if not can_jump_to(session, target):
        blocking = next(key for key in STEP_KEYS[: step_index(target)] if not is_step_complete(session, key))
        raise IllegalTransition(
            f"Cannot open step '{target}' before completing '{blocking}'"
        )


def next_open_step(session: OnboardingSession) -> str:
    for key in STEP_KEYS:
        if not is_step_complete(session, key):
            return key
    return REVIEW_STEP


def missing_steps(session: OnboardingSession) -> dict[str, str]:
    return _validate_review({}, session)


def required_steps_complete(session: OnboardingSession) -> bool:
    return not missing_steps(session)


def steps_for_sections(sections: Iterable[str]) -> list[str]:
    keys = {step.key for step in (section_step(name) for name in sections) if step is not None}
    return [key for key in STEP_KEYS if key in keys]


def step_states(session: OnboardingSession) -> list[StepState]:
    return [
        StepState(
            key=step.key,
            title=step.title,
            optional=step.optional,
            status="completed" if is_step_complete(session, step.key) else "pending",
            skipped=step.key in session.skipped_steps,
        )
        for step in ONBOARDING_STEPS
    ]


# ================================
# Section merging
# ================================

def merge_section(existing: dict[str, Any], incoming: dict[str, Any], replace: bool) -> dict[str, Any]:
    if replace:
        return dict(incoming)
    merged = dict(existing)
    merged.update(incoming)
    return merged


def parse_section(section: str, data: dict[str, Any], step: str) -> dict[str, Any]:
    """Type-check a section payload against its schema; returns the JSON form."""
    model = SECTION_MODELS.get(section)
    if model is None:
        return dict(data)
    try:
        parsed = model.model_validate(data)
    except ValidationError as exc:
        errors: dict[str, str] = {}
        for err in exc.errors():
            # Union members add their own loc parts; report the field once.
            field = str(err["loc"][0]) if err["loc"] else section
            errors.setdefault(field, err["msg"])
        raise StepValidationFailed(errors, step=step) from exc
    return parsed.model_dump(mode="json", exclude_unset=True)


def validate_step(step: StepDefinition, merged: dict[str, Any], session: OnboardingSession) -> None:
    errors = step.validator(merged, session)
    if errors:
        raise StepValidationFailed(errors, step=step.key)
