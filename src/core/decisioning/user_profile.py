"""Sticky Bucketing.

Provides:
- Conversion between user profiles and their storage map
- Stored profile shape validation
- Pluggable profile stores (in-memory, Redis)
- Bridge that isolates store failures from the decision pipeline
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import redis
from pydantic import BaseModel, ValidationError

from src.core.decisioning.entities import Decision, TargetingRule, UserProfile, Variation
from src.core.errors import DecisionErrorCode
from src.utils.metrics import user_profile_errors_total

logger = logging.getLogger(__name__)


class StoredDecision(BaseModel):
    variation_id: str


class UserProfileMap(BaseModel):
    """Shape a profile store must return."""

    user_id: str
    experiment_bucket_map: Dict[str, StoredDecision]

    def to_profile(self) -> UserProfile:
        return UserProfile(
            user_id=self.user_id,
            experiment_bucket_map={
                experiment_id: Decision(variation_id=stored.variation_id)
                for experiment_id, stored in self.experiment_bucket_map.items()
            },
        )


class UserProfileService(Protocol):
    """Host-supplied persistence for sticky bucketing. Either call may raise."""

    def lookup(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    def save(self, user_profile: Dict[str, Any]) -> None:
        ...


class InMemoryUserProfileService:
    """Process-local profile store, mainly for tests and single-node hosts."""

    def __init__(self):
        self._profiles: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def lookup(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            profile = self._profiles.get(user_id)
            return copy.deepcopy(profile) if profile is not None else None

    def save(self, user_profile: Dict[str, Any]) -> None:
        with self._lock:
            self._profiles[user_profile["user_id"]] = copy.deepcopy(user_profile)

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)


class RedisUserProfileService:
    """Profile store keeping one JSON document per user in Redis."""

    def __init__(
        self,
        redis_client: Any,
        key_prefix: str = "user_profile:",
        ttl_seconds: int = 0,
    ):
        """Initialize Redis profile store.

        Args:
            redis_client: Synchronous redis client (decode_responses=True)
            key_prefix: Prefix prepended to the user id
            ttl_seconds: Expiry for stored profiles, 0 keeps them forever
        """
        self.redis_client = redis_client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisUserProfileService":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, user_id: str) -> str:
        return f"{self.key_prefix}{user_id}"

    def lookup(self, user_id: str) -> Optional[Dict[str, Any]]:
        raw = self.redis_client.get(self._key(user_id))
        if raw is None:
            return None
        return json.loads(raw)

    def save(self, user_profile: Dict[str, Any]) -> None:
        self.redis_client.set(
            self._key(user_profile["user_id"]),
            json.dumps(user_profile),
            ex=self.ttl_seconds or None,
        )


@dataclass(frozen=True)
class ProfileLookup:
    """Outcome of reading a stored profile."""
    profile: Optional[UserProfile] = None
    error_code: Optional[DecisionErrorCode] = None

    @property
    def found(self) -> bool:
        return self.profile is not None


@dataclass(frozen=True)
class ProfileSave:
    """Outcome of persisting a profile."""
    saved: bool
    error_code: Optional[DecisionErrorCode] = None


class StickyBucketingBridge:
    """Translates between UserProfile and a profile store's storage map.

    Store failures are caught here, logged and returned as outcome values;
    nothing raised by the store reaches the decision pipeline.
    """

    def __init__(self, service: Optional[UserProfileService] = None):
        self.service = service

    @property
    def enabled(self) -> bool:
        return self.service is not None

    def retrieve(self, user_id: str) -> ProfileLookup:
        if self.service is None:
            return ProfileLookup()

        try:
            profile_map = self.service.lookup(user_id)
        except Exception as e:
            logger.error(
                f"The User Profile Service lookup method failed: {e}.",
                extra={"user_id": user_id, "error_code": DecisionErrorCode.PROFILE_LOOKUP_FAILED},
            )
            user_profile_errors_total.labels(
                operation="lookup", error_code=DecisionErrorCode.PROFILE_LOOKUP_FAILED.value
            ).inc()
            return ProfileLookup(error_code=DecisionErrorCode.PROFILE_LOOKUP_FAILED)

        if profile_map is None:
            logger.info(f'No user profile found for user with ID "{user_id}".')
            return ProfileLookup()

        try:
            profile = UserProfileMap.model_validate(profile_map).to_profile()
        except ValidationError:
            logger.warning(
                "The User Profile Service returned an invalid user profile map.",
                extra={"user_id": user_id, "error_code": DecisionErrorCode.INVALID_PROFILE},
            )
            user_profile_errors_total.labels(
                operation="lookup", error_code=DecisionErrorCode.INVALID_PROFILE.value
            ).inc()
            return ProfileLookup(error_code=DecisionErrorCode.INVALID_PROFILE)

        return ProfileLookup(profile=profile)

    def extract_variation(
        self, config: Any, experiment: TargetingRule, profile: UserProfile
    ) -> Optional[Variation]:
        """Stored variation for the experiment if it still resolves."""
        user_id = profile.user_id
        variation_id = profile.get_variation_for_experiment(experiment.id)
        if variation_id is None:
            logger.info(
                f'No previously activated variation of experiment "{experiment.key}" '
                f'for user "{user_id}" found in user profile.'
            )
            return None

        variation = config.get_variation_from_id(experiment.key, variation_id)
        if variation is None:
            logger.info(
                f'User "{user_id}" was previously bucketed into variation with ID '
                f'"{variation_id}" for experiment "{experiment.key}", but no matching '
                f"variation was found for that user. We will re-bucket the user."
            )
            return None

        logger.info(
            f'Returning previously activated variation "{variation.key}" of experiment '
            f'"{experiment.key}" for user "{user_id}" from user profile.'
        )
        return variation

    def persist(
        self, experiment: TargetingRule, variation: Variation, profile: UserProfile
    ) -> ProfileSave:
        if self.service is None:
            return ProfileSave(saved=False)

        decision = profile.get_decision_for_experiment(experiment.id)
        if decision is None:
            decision = Decision(variation_id=variation.id)
        else:
            decision.variation_id = variation.id
        profile.save_decision_for_experiment(experiment.id, decision)

        try:
            self.service.save(profile.to_map())
        except Exception as e:
            logger.warning(
                f'Failed to save variation "{variation.key}" of experiment '
                f'"{experiment.key}" for user "{profile.user_id}": {e}',
                extra={"user_id": profile.user_id, "error_code": DecisionErrorCode.PROFILE_SAVE_FAILED},
            )
            user_profile_errors_total.labels(
                operation="save", error_code=DecisionErrorCode.PROFILE_SAVE_FAILED.value
            ).inc()
            return ProfileSave(saved=False, error_code=DecisionErrorCode.PROFILE_SAVE_FAILED)

        logger.info(
            f'Saved variation "{variation.key}" of experiment "{experiment.key}" '
            f'for user "{profile.user_id}".'
        )
        return ProfileSave(saved=True)
