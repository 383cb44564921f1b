"""Project Configuration.

Read-only snapshot of a datafile with id/key lookups. Lookups return None
on a miss and log the miss here, so callers only have to skip.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from src.core.decisioning.entities import (
    Audience,
    FeatureFlag,
    Rollout,
    TargetingRule,
    Variation,
)
from src.core.errors import DecisionErrorCode

logger = logging.getLogger(__name__)


class ProjectConfig(Protocol):
    """Lookups the decision pipeline needs from a configuration snapshot."""

    def get_experiment_from_id(self, experiment_id: str) -> Optional[TargetingRule]:
        ...

    def get_experiment_from_key(self, experiment_key: str) -> Optional[TargetingRule]:
        ...

    def get_variation_from_id(
        self, experiment_key: str, variation_id: str
    ) -> Optional[Variation]:
        ...

    def get_variation_from_key(
        self, experiment_key: str, variation_key: str
    ) -> Optional[Variation]:
        ...

    def get_rollout_from_id(self, rollout_id: str) -> Optional[Rollout]:
        ...

    def get_audience(self, audience_id: str) -> Optional[Audience]:
        ...


class DatafileProjectConfig:
    """In-memory configuration built from a parsed datafile."""

    def __init__(self, datafile: Dict[str, Any]):
        self.revision = str(datafile.get("revision", ""))

        self._experiments_by_id: Dict[str, TargetingRule] = {}
        self._experiments_by_key: Dict[str, TargetingRule] = {}
        self._rollouts_by_id: Dict[str, Rollout] = {}
        self._features_by_key: Dict[str, FeatureFlag] = {}
        self._audiences_by_id: Dict[str, Audience] = {}
        # Variation lookups are scoped by rule key and cover rollout rules too
        self._rules_by_key: Dict[str, TargetingRule] = {}

        for data in datafile.get("experiments", []):
            experiment = TargetingRule.experiment(data)
            self._experiments_by_id[experiment.id] = experiment
            self._experiments_by_key[experiment.key] = experiment
            self._rules_by_key[experiment.key] = experiment

        for data in datafile.get("rollouts", []):
            rollout = Rollout.from_dict(data)
            self._rollouts_by_id[rollout.id] = rollout
            for rule in rollout.rules:
                self._rules_by_key.setdefault(rule.key, rule)

        for data in datafile.get("featureFlags", []):
            feature = FeatureFlag.from_dict(data)
            self._features_by_key[feature.key] = feature

        for data in datafile.get("audiences", []):
            audience = Audience.from_dict(data)
            self._audiences_by_id[audience.id] = audience

        logger.debug(
            f"Loaded datafile revision '{self.revision}': "
            f"{len(self._experiments_by_id)} experiments, "
            f"{len(self._rollouts_by_id)} rollouts, "
            f"{len(self._features_by_key)} feature flags"
        )

    def _miss(self, message: str) -> None:
        logger.error(message, extra={"error_code": DecisionErrorCode.CONFIG_MISS})

    def get_experiment_from_id(self, experiment_id: str) -> Optional[TargetingRule]:
        experiment = self._experiments_by_id.get(experiment_id)
        if experiment is None:
            self._miss(f'Experiment ID "{experiment_id}" is not in datafile.')
        return experiment

    def get_experiment_from_key(self, experiment_key: str) -> Optional[TargetingRule]:
        experiment = self._experiments_by_key.get(experiment_key)
        if experiment is None:
            self._miss(f'Experiment key "{experiment_key}" is not in datafile.')
        return experiment

    def get_variation_from_id(
        self, experiment_key: str, variation_id: str
    ) -> Optional[Variation]:
        rule = self._rules_by_key.get(experiment_key)
        variation = rule.get_variation_by_id(variation_id) if rule else None
        if variation is None:
            self._miss(
                f'No variation ID "{variation_id}" defined in datafile '
                f'for experiment "{experiment_key}".'
            )
        return variation

    def get_variation_from_key(
        self, experiment_key: str, variation_key: str
    ) -> Optional[Variation]:
        rule = self._rules_by_key.get(experiment_key)
        variation = rule.get_variation_by_key(variation_key) if rule else None
        if variation is None:
            self._miss(
                f'No variation key "{variation_key}" defined in datafile '
                f'for experiment "{experiment_key}".'
            )
        return variation

    def get_rollout_from_id(self, rollout_id: str) -> Optional[Rollout]:
        rollout = self._rollouts_by_id.get(rollout_id)
        if rollout is None:
            self._miss(f'Rollout with ID "{rollout_id}" is not in the datafile.')
        return rollout

    def get_feature_flag_from_key(self, feature_key: str) -> Optional[FeatureFlag]:
        feature = self._features_by_key.get(feature_key)
        if feature is None:
            self._miss(f'FeatureFlag Key "{feature_key}" is not in datafile.')
        return feature

    def get_audience(self, audience_id: str) -> Optional[Audience]:
        audience = self._audiences_by_id.get(audience_id)
        if audience is None:
            self._miss(f'Audience ID "{audience_id}" is not in datafile.')
        return audience
