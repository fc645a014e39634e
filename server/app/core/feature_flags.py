"""Per-property feature flags stored in companies.enabled_features."""
import json
from typing import Any

DEFAULT_COMPANY_FEATURES: dict[str, bool] = {
    "walk_in_onboarding": True,
    "remote_onboarding": True,
    "job_board": False,
}


def merge_company_features(raw_features: Any) -> dict[str, bool]:
    """Overlay a property's stored flags on the defaults. Unknown keys are kept."""
    if isinstance(raw_features, str):
        try:
            raw_features = json.loads(raw_features)
        except json.JSONDecodeError:
            raw_features = {}

    merged = dict(DEFAULT_COMPANY_FEATURES)
    if isinstance(raw_features, dict):
        merged.update({key: bool(value) for key, value in raw_features.items()})
    return merged


def is_feature_enabled(raw_features: Any, feature_name: str) -> bool:
    return merge_company_features(raw_features).get(feature_name, False)
