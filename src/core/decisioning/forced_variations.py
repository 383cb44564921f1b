"""Forced Variation Store.

Process-lifetime overrides: user id -> experiment id -> variation id.
Entries only change through explicit set/clear calls.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional


class ForcedVariationStore:
    """Thread-safe nested mapping of forced variations."""

    def __init__(self):
        self._variations: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, experiment_id: str) -> Optional[str]:
        """Forced variation id for the pair, or None."""
        with self._lock:
            experiments = self._variations.get(user_id)
            if experiments is None:
                return None
            return experiments.get(experiment_id)

    def has_user(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._variations.get(user_id))

    def set(self, user_id: str, experiment_id: str, variation_id: str) -> None:
        """Set or overwrite the forced variation for the pair."""
        with self._lock:
            self._variations.setdefault(user_id, {})[experiment_id] = variation_id

    def clear(self, user_id: str, experiment_id: str) -> bool:
        """Remove the pair's entry. Returns whether an entry existed."""
        with self._lock:
            experiments = self._variations.get(user_id)
            if not experiments or experiment_id not in experiments:
                return False
            del experiments[experiment_id]
            if not experiments:
                del self._variations[user_id]
            return True

    def snapshot(self, user_id: str) -> Dict[str, str]:
        """Copy of one user's forced variations."""
        with self._lock:
            return dict(self._variations.get(user_id, {}))

    def __len__(self) -> int:
        with self._lock:
            return sum(len(experiments) for experiments in self._variations.values())
