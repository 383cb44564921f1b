"""Decision Service.

Decides which variation, if any, a user gets for an experiment or a
feature flag. An experiment lookup runs, in order:

1. Experiment status
2. Forced variations set at runtime
3. Whitelisted users declared in the datafile
4. Sticky bucketing from the user profile store
5. Audience targeting
6. Hash bucketing

A feature flag tries its experiments in declared order, then its rollout
rules in priority order.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from src.core.config import get_settings
from src.core.decisioning.audience import AudienceEvaluator, ConditionAudienceEvaluator
from src.core.decisioning.bucketer import Bucketer, MurmurBucketer
from src.core.decisioning.entities import (
    BUCKETING_ID_ATTRIBUTE,
    DecisionSource,
    FeatureDecision,
    FeatureFlag,
    TargetingRule,
    UserProfile,
    Variation,
)
from src.core.decisioning.forced_variations import ForcedVariationStore
from src.core.decisioning.project_config import ProjectConfig
from src.core.decisioning.user_profile import (
    InMemoryUserProfileService,
    RedisUserProfileService,
    StickyBucketingBridge,
    UserProfileService,
)
from src.core.errors import DecisionErrorCode
from src.utils.logging import setup_logging
from src.utils.metrics import decision_evaluations_total

logger = logging.getLogger(__name__)

EVERYONE_ELSE = "Everyone Else"


class DecisionService:
    """Decision pipeline shared by all SDK calls of one client instance."""

    def __init__(
        self,
        user_profile_service: Optional[UserProfileService] = None,
        bucketer: Optional[Bucketer] = None,
        audience_evaluator: Optional[AudienceEvaluator] = None,
    ):
        """Initialize decision service.

        Args:
            user_profile_service: Optional store for sticky bucketing
            bucketer: Traffic bucketer, defaults to MurmurBucketer
            audience_evaluator: Audience evaluator, defaults to ConditionAudienceEvaluator
        """
        self.bucketer = bucketer or MurmurBucketer()
        self.audience_evaluator = audience_evaluator or ConditionAudienceEvaluator()
        self.profiles = StickyBucketingBridge(user_profile_service)
        self.forced_variations = ForcedVariationStore()

    def get_bucketing_id(self, user_id: str, attributes: Optional[Dict[str, Any]]) -> str:
        """Bucketing id attribute when it is a string, else the user id.

        A None attribute value counts as absent.
        """
        attributes = attributes or {}
        bucketing_id = attributes.get(BUCKETING_ID_ATTRIBUTE)
        if bucketing_id is not None:
            if isinstance(bucketing_id, str):
                return bucketing_id
            logger.warning(
                "Bucketing ID attribute is not a string. Defaulted to user ID.",
                extra={"user_id": user_id, "error_code": DecisionErrorCode.INVALID_BUCKETING_ID},
            )
        return user_id

    def _meets_conditions(self, config, rule, attributes, label, user_id) -> bool:
        try:
            return self.audience_evaluator.meets_conditions(config, rule, attributes, label)
        except Exception as e:
            logger.error(
                f"Audience evaluation failed for {label}: {e}",
                extra={"user_id": user_id, "error_code": DecisionErrorCode.AUDIENCE_EVALUATION_FAILED},
            )
            decision_evaluations_total.labels(operation="audience", outcome="error").inc()
            return False

    def _bucket(self, bucketing_id, rule, user_id) -> Optional[Variation]:
        try:
            return self.bucketer.bucket(bucketing_id, rule, user_id)
        except Exception as e:
            logger.error(
                f'Bucketing failed for rule "{rule.key}": {e}',
                extra={"user_id": user_id, "error_code": DecisionErrorCode.BUCKETING_FAILED},
            )
            decision_evaluations_total.labels(operation="bucketing", outcome="error").inc()
            return None

    def get_variation(
        self,
        config: ProjectConfig,
        experiment: TargetingRule,
        user_id: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Optional[Variation]:
        """Variation the user is bucketed into for an experiment, or None."""
        variation, outcome = self._resolve_variation(config, experiment, user_id, attributes)
        decision_evaluations_total.labels(operation="experiment", outcome=outcome).inc()
        return variation

    def _resolve_variation(self, config, experiment, user_id, attributes):
        log_extra = {"user_id": user_id, "experiment_key": experiment.key}

        if not experiment.is_running:
            logger.info(f'Experiment "{experiment.key}" is not running.', extra=log_extra)
            return None, "no_decision"

        variation = self.get_forced_variation(config, experiment.key, user_id)
        if variation is not None:
            return variation, "forced"

        variation = self.get_whitelisted_variation(config, experiment, user_id)
        if variation is not None:
            return variation, "whitelist"

        user_profile = UserProfile(user_id=user_id)
        if self.profiles.enabled:
            lookup = self.profiles.retrieve(user_id)
            if lookup.found:
                user_profile = lookup.profile
                variation = self.profiles.extract_variation(config, experiment, user_profile)
                if variation is not None:
                    return variation, "sticky"

        if not self._meets_conditions(
            config, experiment, attributes, f'experiment "{experiment.key}"', user_id
        ):
            logger.info(
                f'User "{user_id}" does not meet conditions to be in experiment "{experiment.key}".',
                extra=log_extra,
            )
            return None, "no_decision"

        bucketing_id = self.get_bucketing_id(user_id, attributes)
        variation = self._bucket(bucketing_id, experiment, user_id)
        if variation is None:
            logger.info(f'User "{user_id}" is in no variation.', extra=log_extra)
            return None, "no_decision"

        self.profiles.persist(experiment, variation, user_profile)
        logger.info(
            f'User "{user_id}" is in variation {variation.key} of experiment {experiment.key}.',
            extra=log_extra,
        )
        return variation, "bucketed"

    def get_variation_for_feature(
        self,
        config: ProjectConfig,
        feature_flag: FeatureFlag,
        user_id: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> FeatureDecision:
        """Decision for a feature flag; never None.

        An unmatched flag returns a FeatureDecision with no rule and no
        variation, sourced from the rollout.
        """
        log_extra = {"user_id": user_id, "feature_key": feature_flag.key}

        decision = self.get_variation_for_feature_experiment(
            config, feature_flag, user_id, attributes
        )
        if decision is not None:
            decision_evaluations_total.labels(operation="feature", outcome="feature_test").inc()
            return decision

        decision = self.get_variation_for_feature_rollout(config, feature_flag, user_id, attributes)
        if decision is not None:
            logger.info(
                f"User '{user_id}' is bucketed into rollout for feature flag '{feature_flag.key}'.",
                extra={**log_extra, "decision_source": DecisionSource.ROLLOUT},
            )
            decision_evaluations_total.labels(operation="feature", outcome="rollout").inc()
            return decision

        logger.info(
            f"User '{user_id}' is not bucketed into rollout for feature flag '{feature_flag.key}'.",
            extra=log_extra,
        )
        decision_evaluations_total.labels(operation="feature", outcome="no_decision").inc()
        return FeatureDecision(None, None, DecisionSource.ROLLOUT)

    def get_variation_for_feature_experiment(
        self,
        config: ProjectConfig,
        feature_flag: FeatureFlag,
        user_id: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Optional[FeatureDecision]:
        """First experiment of the flag that buckets the user, in declared order."""
        if not feature_flag.experiment_ids:
            logger.debug(f"The feature flag '{feature_flag.key}' is not used in any experiments.")
            return None

        for experiment_id in feature_flag.experiment_ids:
            experiment = config.get_experiment_from_id(experiment_id)
            if experiment is None:
                # Logged by the config
                continue

            variation = self.get_variation(config, experiment, user_id, attributes)
            if variation is not None and variation.key:
                logger.info(
                    f"The user '{user_id}' is bucketed into experiment '{experiment.key}' "
                    f"of feature '{feature_flag.key}'.",
                    extra={
                        "user_id": user_id,
                        "feature_key": feature_flag.key,
                        "decision_source": DecisionSource.FEATURE_TEST,
                    },
                )
                return FeatureDecision(experiment, variation, DecisionSource.FEATURE_TEST)

        logger.info(
            f"The user '{user_id}' is not bucketed into any of the experiments "
            f"using the feature '{feature_flag.key}'."
        )
        return None

    def get_variation_for_feature_rollout(
        self,
        config: ProjectConfig,
        feature_flag: FeatureFlag,
        user_id: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Optional[FeatureDecision]:
        """Evaluate rollout rules in priority order.

        A user who passes a rule's audience but falls outside its traffic
        allocation skips the remaining rules and goes straight to the
        everyone-else rule (the last rule), which still checks its own
        audience.
        """
        if not feature_flag.rollout_id:
            logger.debug(f"Feature flag '{feature_flag.key}' is not used in a rollout.")
            return None

        rollout = config.get_rollout_from_id(feature_flag.rollout_id)
        if rollout is None or not rollout.rules:
            return None

        bucketing_id = self.get_bucketing_id(user_id, attributes)
        rules = rollout.rules

        for index, rule in enumerate(rules[:-1]):
            rule_number = index + 1
            if not self._meets_conditions(
                config, rule, attributes, f"rule {rule_number}", user_id
            ):
                logger.debug(
                    f"User '{user_id}' does not meet conditions for targeting rule {rule_number}.",
                    extra={"user_id": user_id, "rule": rule_number},
                )
                continue

            variation = self._bucket(bucketing_id, rule, user_id)
            if variation is not None and variation.key:
                return FeatureDecision(rule, variation, DecisionSource.ROLLOUT)
            # Excluded by traffic allocation: only the everyone-else rule remains
            break

        everyone_else = rules[-1]
        if not self._meets_conditions(
            config, everyone_else, attributes, f'rule "{EVERYONE_ELSE}"', user_id
        ):
            logger.debug(
                f"User '{user_id}' does not meet conditions for targeting rule '{EVERYONE_ELSE}'.",
                extra={"user_id": user_id, "rule": EVERYONE_ELSE},
            )
            return None

        variation = self._bucket(bucketing_id, everyone_else, user_id)
        if variation is not None and variation.key:
            return FeatureDecision(everyone_else, variation, DecisionSource.ROLLOUT)
        return None

    def get_whitelisted_variation(
        self, config: ProjectConfig, experiment: TargetingRule, user_id: str
    ) -> Optional[Variation]:
        """Variation declared for the user in the experiment's whitelist."""
        variation_key = experiment.forced_variations.get(user_id)
        if not variation_key:
            return None

        variation = config.get_variation_from_key(experiment.key, variation_key)
        if variation is None or not variation.key:
            return None

        logger.info(
            f'User "{user_id}" is forced in variation "{variation_key}" of experiment '
            f'"{experiment.key}".',
            extra={"user_id": user_id, "experiment_key": experiment.key},
        )
        return variation

    def get_forced_variation(
        self, config: ProjectConfig, experiment_key: str, user_id: str
    ) -> Optional[Variation]:
        """Variation forced at runtime for the user, or None."""
        if not self.forced_variations.has_user(user_id):
            logger.debug(f'User "{user_id}" is not in the forced variation map.')
            return None

        experiment = config.get_experiment_from_key(experiment_key)
        if experiment is None or not experiment.id:
            return None

        variation_id = self.forced_variations.get(user_id, experiment.id)
        if variation_id is None:
            logger.debug(
                f'No experiment "{experiment_key}" mapped to user "{user_id}" '
                f"in the forced variation map."
            )
            return None

        variation = config.get_variation_from_id(experiment_key, variation_id)
        if variation is None:
            return None

        logger.debug(
            f'Variation "{variation.key}" is mapped to experiment "{experiment_key}" '
            f'and user "{user_id}" in the forced variation map'
        )
        return variation

    def set_forced_variation(
        self,
        config: ProjectConfig,
        experiment_key: str,
        user_id: str,
        variation_key: Optional[str],
    ) -> bool:
        """Force a variation for the user, or clear it when variation_key is None.

        Returns:
            False if the input is invalid or does not resolve; nothing changes.
        """
        if variation_key is not None and (
            not isinstance(variation_key, str) or not variation_key
        ):
            logger.error(
                'Provided "variation_key" is in an invalid format.',
                extra={"user_id": user_id, "error_code": DecisionErrorCode.INVALID_FORCED_VARIATION},
            )
            return False

        experiment = config.get_experiment_from_key(experiment_key)
        if experiment is None or not experiment.id:
            return False

        if variation_key is None:
            self.forced_variations.clear(user_id, experiment.id)
            logger.debug(
                f'Variation mapped to experiment "{experiment_key}" has been removed '
                f'for user "{user_id}".'
            )
            return True

        variation = config.get_variation_from_key(experiment_key, variation_key)
        if variation is None or not variation.id:
            return False

        self.forced_variations.set(user_id, experiment.id, variation.id)
        logger.debug(
            f'Set variation "{variation.id}" for experiment "{experiment.id}" and '
            f'user "{user_id}" in the forced variation map.'
        )
        return True


def build_user_profile_service(settings=None) -> Optional[UserProfileService]:
    """Profile store selected by USER_PROFILE_BACKEND."""
    settings = settings or get_settings()
    backend = settings.USER_PROFILE_BACKEND.lower()

    if backend == "none":
        return None
    if backend == "memory":
        return InMemoryUserProfileService()
    if backend == "redis":
        return RedisUserProfileService.from_url(
            settings.REDIS_URL,
            key_prefix=settings.USER_PROFILE_KEY_PREFIX,
            ttl_seconds=settings.USER_PROFILE_TTL_SECONDS,
        )
    raise ValueError(f"Unknown user profile backend: {backend}")


# Global service instance
_service: Optional[DecisionService] = None


def get_decision_service() -> DecisionService:
    """Get or create the process-wide decision service."""
    global _service
    if _service is None:
        settings = get_settings()
        setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
        _service = DecisionService(user_profile_service=build_user_profile_service(settings))
        logger.info(
            f"Decision service initialized (profile backend: {settings.USER_PROFILE_BACKEND})"
        )
    return _service


def reset_decision_service() -> None:
    global _service
    _service = None
