"""Feature decision service.

Subpackages are namespace packages under ``src.core`` and ``src.utils``;
import them directly, e.g. ``from src.core.decisioning import DecisionService``.
"""
