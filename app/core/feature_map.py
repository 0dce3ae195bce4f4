"""
Feature Map
===========

Feature -> requirement mapping used by the entitlement gate.

The mapping is configuration: the built-in defaults below can be
replaced wholesale by a JSON file referenced from ``FEATURE_MAP_PATH``::

    {
      "unlimited_reviews": {
        "required_statuses": ["ACTIVE", "GRACE"],
        "allow_grace": true,
        "free_daily_limit": 3
      }
    }
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from app.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)


class FeatureRequirement(BaseModel):
    """What a user's subscription must look like to use a feature."""

    required_statuses: frozenset[SubscriptionStatus] = Field(
        default=frozenset({SubscriptionStatus.ACTIVE}),
    )
    required_product: Optional[str] = None
    allow_grace: bool = False
    free_daily_limit: int = Field(default=0, ge=0)

    @field_validator("required_statuses")
    @classmethod
    def validate_statuses(cls, v: frozenset[SubscriptionStatus]) -> frozenset[SubscriptionStatus]:
        """An empty set would make the feature unreachable."""
        if not v:
            raise ValueError("required_statuses must not be empty")
        return v

    def allows(self, status: SubscriptionStatus) -> bool:
        """Whether a record in ``status`` satisfies this requirement."""
        if status not in self.required_statuses:
            return False
        if status is SubscriptionStatus.GRACE and not self.allow_grace:
            return False
        return True


_PAID = [SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE]

DEFAULT_FEATURE_REQUIREMENTS: dict[str, dict] = {
    "unlimited_reviews": {
        "required_statuses": _PAID,
        "allow_grace": True,
        "free_daily_limit": 3,
    },
    "score_visibility": {
        "required_statuses": _PAID,
        "allow_grace": True,
    },
    "advanced_recommendations": {
        "required_statuses": _PAID,
        "allow_grace": True,
    },
    "social_features": {
        "required_statuses": _PAID,
        "allow_grace": True,
        "free_daily_limit": 1,
    },
    "export_data": {
        "required_statuses": [SubscriptionStatus.ACTIVE],
    },
    "priority_support": {
        "required_statuses": [SubscriptionStatus.ACTIVE],
    },
}


class FeatureMap:
    """Immutable lookup of feature requirements."""

    def __init__(self, requirements: dict[str, FeatureRequirement]):
        self._requirements = dict(requirements)

    @classmethod
    def from_dict(cls, raw: dict[str, dict]) -> "FeatureMap":
        """Build from a plain mapping, validating every entry."""
        return cls({
            name: FeatureRequirement.model_validate(entry)
            for name, entry in raw.items()
        })

    @classmethod
    def default(cls) -> "FeatureMap":
        return cls.from_dict(DEFAULT_FEATURE_REQUIREMENTS)

    def get(self, feature_name: str) -> Optional[FeatureRequirement]:
        return self._requirements.get(feature_name)

    def __contains__(self, feature_name: str) -> bool:
        return feature_name in self._requirements

    @property
    def features(self) -> list[str]:
        return sorted(self._requirements)


def load_feature_map(path: Optional[str] = None) -> FeatureMap:
    """
    Load the feature map from ``path`` or fall back to the defaults.

    Raises:
        ValueError: If the file exists but is not a valid mapping.
    """
    if not path:
        return FeatureMap.default()

    file_path = Path(path)
    try:
        raw = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Cannot read feature map {file_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ValueError(f"Feature map {file_path} must be a JSON object")

    try:
        feature_map = FeatureMap.from_dict(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid feature map {file_path}: {e}") from e

    logger.info("Loaded %d feature requirements from %s", len(raw), file_path)
    return feature_map
