"""Prometheus metrics for the decision pipeline.

All metric objects are defined at import time so call sites can use the
.labels() chain directly.
"""

from __future__ import annotations

from prometheus_client import Counter

decision_evaluations_total = Counter(
    "decision_evaluations_total",
    "Decision evaluations by operation and outcome",
    ["operation", "outcome"],
)
user_profile_errors_total = Counter(
    "user_profile_errors_total",
    "Sticky bucketing profile store failures",
    ["operation", "error_code"],
)

__all__ = [
    "decision_evaluations_total",
    "user_profile_errors_total",
]
