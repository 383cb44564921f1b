"""Decision Entities.

Read-only entities loaded from a datafile snapshot:
- Variations and traffic allocation ranges
- Targeting rules (experiments and rollout rules share one shape)
- Rollouts, feature flags and audiences
- Feature decision results
- Sticky bucketing user profiles
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# Reserved attribute that overrides the user id as hash input
BUCKETING_ID_ATTRIBUTE = "$opt_bucketing_id"

STATUS_RUNNING = "Running"


class RuleKind(Enum):
    """Where a targeting rule was declared."""
    EXPERIMENT = "experiment"
    ROLLOUT_RULE = "rollout_rule"


class DecisionSource(str, Enum):
    """Origin of a feature decision."""
    FEATURE_TEST = "feature-test"
    ROLLOUT = "rollout"


@dataclass(frozen=True)
class Variation:
    """A variation of an experiment or rollout rule."""
    id: str
    key: str
    feature_enabled: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variation":
        return cls(
            id=str(data.get("id", "")),
            key=str(data.get("key", "")),
            feature_enabled=data.get("featureEnabled"),
        )


@dataclass(frozen=True)
class TrafficAllocation:
    """Upper bound (exclusive) of a hash range mapped to an entity id."""
    entity_id: str
    end_of_range: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrafficAllocation":
        return cls(
            entity_id=str(data.get("entityId", "")),
            end_of_range=int(data.get("endOfRange", 0)),
        )


@dataclass(frozen=True)
class TargetingRule:
    """Audience conditions plus a traffic allocation table.

    Experiments and rollout rules are both built as targeting rules; only
    ``kind`` records which one was declared. Use :meth:`experiment` or
    :meth:`rollout_rule` to construct one from datafile entries.
    """
    id: str
    key: str
    kind: RuleKind = RuleKind.EXPERIMENT
    status: str = ""
    layer_id: str = ""
    variations: Tuple[Variation, ...] = ()
    traffic_allocation: Tuple[TrafficAllocation, ...] = ()
    forced_variations: Dict[str, str] = field(default_factory=dict)
    audience_ids: Tuple[str, ...] = ()
    audience_conditions: Optional[Any] = None

    @property
    def is_running(self) -> bool:
        return self.status == STATUS_RUNNING

    def get_variation_by_id(self, variation_id: str) -> Optional[Variation]:
        for variation in self.variations:
            if variation.id == variation_id:
                return variation
        return None

    def get_variation_by_key(self, variation_key: str) -> Optional[Variation]:
        for variation in self.variations:
            if variation.key == variation_key:
                return variation
        return None

    @classmethod
    def experiment(cls, data: Dict[str, Any]) -> "TargetingRule":
        """Build a rule from a datafile ``experiments`` entry."""
        return cls._from_dict(data, RuleKind.EXPERIMENT)

    @classmethod
    def rollout_rule(cls, data: Dict[str, Any]) -> "TargetingRule":
        """Build a rule from an entry of a rollout's ``experiments`` list."""
        return cls._from_dict(data, RuleKind.ROLLOUT_RULE)

    @classmethod
    def _from_dict(cls, data: Dict[str, Any], kind: RuleKind) -> "TargetingRule":
        audience_conditions = data.get("audienceConditions")
        if isinstance(audience_conditions, str):
            audience_conditions = json.loads(audience_conditions)

        return cls(
            id=str(data.get("id", "")),
            key=str(data.get("key", "")),
            kind=kind,
            status=data.get("status", ""),
            layer_id=str(data.get("layerId", "")),
            variations=tuple(Variation.from_dict(v) for v in data.get("variations", [])),
            traffic_allocation=tuple(
                TrafficAllocation.from_dict(t) for t in data.get("trafficAllocation", [])
            ),
            forced_variations=dict(data.get("forcedVariations") or {}),
            audience_ids=tuple(str(a) for a in data.get("audienceIds", [])),
            audience_conditions=audience_conditions,
        )


@dataclass(frozen=True)
class Rollout:
    """Ordered rollout rules; the last one is the everyone-else rule."""
    id: str
    rules: Tuple[TargetingRule, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rollout":
        return cls(
            id=str(data.get("id", "")),
            rules=tuple(TargetingRule.rollout_rule(r) for r in data.get("experiments", [])),
        )


@dataclass(frozen=True)
class FeatureFlag:
    """A feature flag with its associated experiments and rollout."""
    id: str
    key: str
    experiment_ids: Tuple[str, ...] = ()
    rollout_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureFlag":
        return cls(
            id=str(data.get("id", "")),
            key=str(data.get("key", "")),
            experiment_ids=tuple(str(e) for e in data.get("experimentIds", [])),
            rollout_id=data.get("rolloutId") or None,
        )


@dataclass(frozen=True)
class Audience:
    """Named condition tree referenced by targeting rules."""
    id: str
    name: str = ""
    conditions: Optional[Any] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Audience":
        conditions = data.get("conditions")
        if isinstance(conditions, str):
            conditions = json.loads(conditions)
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            conditions=conditions,
        )


@dataclass(frozen=True)
class FeatureDecision:
    """Result of a feature flag decision.

    ``rule`` is the experiment or rollout rule that produced ``variation``.
    Both are None when the flag was evaluated and nothing matched.
    """
    rule: Optional[TargetingRule]
    variation: Optional[Variation]
    source: DecisionSource

    @property
    def experiment(self) -> Optional[TargetingRule]:
        return self.rule

    @property
    def has_variation(self) -> bool:
        return self.variation is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_key": self.rule.key if self.rule else None,
            "variation_key": self.variation.key if self.variation else None,
            "source": self.source.value,
        }


@dataclass
class Decision:
    """A stored bucketing outcome."""
    variation_id: str


@dataclass
class UserProfile:
    """Sticky record of past bucketing outcomes for one user."""
    user_id: str
    experiment_bucket_map: Dict[str, Decision] = field(default_factory=dict)

    def get_decision_for_experiment(self, experiment_id: str) -> Optional[Decision]:
        return self.experiment_bucket_map.get(experiment_id)

    def get_variation_for_experiment(self, experiment_id: str) -> Optional[str]:
        decision = self.experiment_bucket_map.get(experiment_id)
        return decision.variation_id if decision else None

    def save_decision_for_experiment(self, experiment_id: str, decision: Decision) -> None:
        self.experiment_bucket_map[experiment_id] = decision

    def to_map(self) -> Dict[str, Any]:
        """Storage representation handed to profile stores."""
        return {
            "user_id": self.user_id,
            "experiment_bucket_map": {
                experiment_id: {"variation_id": decision.variation_id}
                for experiment_id, decision in self.experiment_bucket_map.items()
            },
        }
