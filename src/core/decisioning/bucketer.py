"""Deterministic traffic bucketing.

Maps (bucketing id, rule) to a variation using 32-bit MurmurHash3 over the
bucketing id concatenated with the rule id.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Protocol

import mmh3

from src.core.decisioning.entities import TargetingRule, Variation

logger = logging.getLogger(__name__)

HASH_SEED = 1
MAX_HASH_VALUE = 2 ** 32
MAX_TRAFFIC_VALUE = 10000


class Bucketer(Protocol):
    """Pure function from bucketing input to a variation or nothing."""

    def bucket(
        self, bucketing_id: str, rule: TargetingRule, user_id: str
    ) -> Optional[Variation]:
        ...


class MurmurBucketer:
    """Reference bucketer over a rule's traffic allocation table."""

    def generate_bucket_value(self, bucketing_key: str) -> int:
        """Bucket value in [0, MAX_TRAFFIC_VALUE) for a hash input."""
        hash_code = mmh3.hash(bucketing_key, HASH_SEED, signed=False)
        ratio = float(hash_code) / MAX_HASH_VALUE
        return math.floor(ratio * MAX_TRAFFIC_VALUE)

    def find_bucket(self, bucketing_id: str, user_id: str, rule: TargetingRule) -> Optional[str]:
        """Entity id whose range holds the user's bucket value, if any."""
        bucketing_key = f"{bucketing_id}{rule.id}"
        bucket_value = self.generate_bucket_value(bucketing_key)
        logger.debug(
            f'Assigned bucket {bucket_value} to user with bucketing ID "{bucketing_id}".',
            extra={"user_id": user_id},
        )

        for allocation in rule.traffic_allocation:
            if bucket_value < allocation.end_of_range:
                return allocation.entity_id

        return None

    def bucket(
        self, bucketing_id: str, rule: TargetingRule, user_id: str
    ) -> Optional[Variation]:
        if not rule.id:
            return None

        variation_id = self.find_bucket(bucketing_id, user_id, rule)
        if not variation_id:
            logger.info(
                f'User "{user_id}" is in no variation of "{rule.key}".',
                extra={"user_id": user_id, "experiment_key": rule.key},
            )
            return None

        variation = rule.get_variation_by_id(variation_id)
        if variation is None:
            logger.warning(
                f'Bucketed into unknown variation ID "{variation_id}" of "{rule.key}".',
                extra={"user_id": user_id, "experiment_key": rule.key},
            )
        return variation
