"""Experiment and Feature Flag Decisioning.

Decides which variation a user receives:
- Forced variations, whitelists and sticky bucketing
- Audience targeting and deterministic hash bucketing
- Feature flags resolved through experiments, then rollouts
"""

from src.core.decisioning.entities import (
    BUCKETING_ID_ATTRIBUTE,
    Audience,
    Decision,
    DecisionSource,
    FeatureDecision,
    FeatureFlag,
    Rollout,
    RuleKind,
    TargetingRule,
    TrafficAllocation,
    UserProfile,
    Variation,
)
from src.core.decisioning.project_config import (
    DatafileProjectConfig,
    ProjectConfig,
)
from src.core.decisioning.bucketer import (
    Bucketer,
    MurmurBucketer,
)
from src.core.decisioning.audience import (
    AudienceEvaluator,
    ConditionAudienceEvaluator,
)
from src.core.decisioning.forced_variations import ForcedVariationStore
from src.core.decisioning.user_profile import (
    InMemoryUserProfileService,
    ProfileLookup,
    ProfileSave,
    RedisUserProfileService,
    StickyBucketingBridge,
    UserProfileMap,
    UserProfileService,
)
from src.core.decisioning.service import (
    DecisionService,
    build_user_profile_service,
    get_decision_service,
)

__all__ = [
    # Entities
    "BUCKETING_ID_ATTRIBUTE",
    "Audience",
    "DecisionSource",
    "FeatureDecision",
    "FeatureFlag",
    "Rollout",
    "RuleKind",
    "TargetingRule",
    "TrafficAllocation",
    "Variation",
    "Decision",
    "UserProfile",
    # Collaborators
    "ProjectConfig",
    "DatafileProjectConfig",
    "Bucketer",
    "MurmurBucketer",
    "AudienceEvaluator",
    "ConditionAudienceEvaluator",
    # Sticky bucketing
    "UserProfileMap",
    "UserProfileService",
    "InMemoryUserProfileService",
    "RedisUserProfileService",
    "ProfileLookup",
    "ProfileSave",
    "StickyBucketingBridge",
    # Service
    "ForcedVariationStore",
    "DecisionService",
    "build_user_profile_service",
    "get_decision_service",
]
