"""Shared error codes for decision diagnostics.

Centralizes the non-fatal failure taxonomy so the decision service, the
sticky-bucketing bridge and log records agree on the same names.
"""

from __future__ import annotations

from enum import Enum


class DecisionErrorCode(str, Enum):
    CONFIG_MISS = "CONFIG_MISS"  # Experiment/variation/rollout not in datafile
    INVALID_BUCKETING_ID = "INVALID_BUCKETING_ID"  # Non-string bucketing attribute
    PROFILE_LOOKUP_FAILED = "PROFILE_LOOKUP_FAILED"  # Profile store raised on lookup
    PROFILE_SAVE_FAILED = "PROFILE_SAVE_FAILED"  # Profile store raised on save
    INVALID_PROFILE = "INVALID_PROFILE"  # Stored profile has the wrong shape
    INVALID_FORCED_VARIATION = "INVALID_FORCED_VARIATION"  # Bad set_forced_variation input
    AUDIENCE_EVALUATION_FAILED = "AUDIENCE_EVALUATION_FAILED"  # Audience evaluator raised
    BUCKETING_FAILED = "BUCKETING_FAILED"  # Bucketer raised


__all__ = ["DecisionErrorCode"]
