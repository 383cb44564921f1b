"""Audience Evaluation.

Evaluates a rule's audiences against user attributes:
- and/or/not condition trees over audience ids
- and/or/not condition trees over custom attribute leaves
- three-valued results (True, False, None for unknown)
"""

from __future__ import annotations

import logging
import math
import numbers
from typing import Any, Callable, Dict, List, Optional, Protocol

from src.core.decisioning.entities import TargetingRule

logger = logging.getLogger(__name__)

AND = "and"
OR = "or"
NOT = "not"
OPERATORS = (AND, OR, NOT)

CUSTOM_ATTRIBUTE = "custom_attribute"


class AudienceEvaluator(Protocol):
    """Decides whether attributes satisfy a rule's targeting."""

    def meets_conditions(
        self,
        config: Any,
        rule: TargetingRule,
        attributes: Optional[Dict[str, Any]],
        label: str,
    ) -> bool:
        ...


def evaluate_tree(
    conditions: Any, leaf_evaluator: Callable[[Any], Optional[bool]]
) -> Optional[bool]:
    """Evaluate an and/or/not tree; a list without an operator means "or"."""
    if isinstance(conditions, list):
        if conditions and conditions[0] in OPERATORS:
            operator, operands = conditions[0], conditions[1:]
        else:
            operator, operands = OR, conditions

        if operator == AND:
            return _and(operands, leaf_evaluator)
        if operator == NOT:
            return _not(operands, leaf_evaluator)
        return _or(operands, leaf_evaluator)

    return leaf_evaluator(conditions)


def _and(operands: List[Any], leaf_evaluator) -> Optional[bool]:
    saw_unknown = False
    for operand in operands:
        result = evaluate_tree(operand, leaf_evaluator)
        if result is False:
            return False
        if result is None:
            saw_unknown = True
    return None if saw_unknown else True


def _or(operands: List[Any], leaf_evaluator) -> Optional[bool]:
    saw_unknown = False
    for operand in operands:
        result = evaluate_tree(operand, leaf_evaluator)
        if result is True:
            return True
        if result is None:
            saw_unknown = True
    return None if saw_unknown else False


def _not(operands: List[Any], leaf_evaluator) -> Optional[bool]:
    if not operands:
        return None
    result = evaluate_tree(operands[0], leaf_evaluator)
    return None if result is None else not result


MAX_NUMBER = 2 ** 53


def _is_numeric_type(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    """Finite number no larger than 2**53 in magnitude."""
    if not _is_numeric_type(value):
        return False
    if isinstance(value, numbers.Integral):
        return abs(value) <= MAX_NUMBER
    return math.isfinite(value) and abs(value) <= MAX_NUMBER


class CustomAttributeMatcher:
    """Evaluates a single custom attribute leaf condition."""

    def __init__(self, attributes: Optional[Dict[str, Any]]):
        self.attributes = attributes or {}

    def __call__(self, condition: Any) -> Optional[bool]:
        if not isinstance(condition, dict):
            return None
        if condition.get("type") != CUSTOM_ATTRIBUTE:
            logger.warning(f"Audience condition {condition} uses an unknown condition type.")
            return None

        match = condition.get("match") or "exact"
        handler = getattr(self, f"_match_{match}", None)
        if handler is None:
            logger.warning(f'Audience condition {condition} uses unknown match type "{match}".')
            return None

        name = condition.get("name")
        if match != "exists" and name not in self.attributes:
            logger.debug(f'No attribute "{name}" provided for audience condition.')
            return None

        return handler(self.attributes.get(name), condition.get("value"))

    def _match_exists(self, attr_value: Any, _value: Any) -> Optional[bool]:
        return attr_value is not None

    def _match_exact(self, attr_value: Any, value: Any) -> Optional[bool]:
        if _is_numeric_type(value) or _is_numeric_type(attr_value):
            if not _is_number(value) or not _is_number(attr_value):
                return None
            return float(attr_value) == float(value)
        if type(attr_value) is not type(value) or attr_value is None:
            return None
        return attr_value == value

    def _match_substring(self, attr_value: Any, value: Any) -> Optional[bool]:
        if not isinstance(attr_value, str) or not isinstance(value, str):
            return None
        return value in attr_value

    def _compare(self, attr_value: Any, value: Any) -> Optional[float]:
        if not _is_number(attr_value) or not _is_number(value):
            return None
        return float(attr_value) - float(value)

    def _match_gt(self, attr_value: Any, value: Any) -> Optional[bool]:
        diff = self._compare(attr_value, value)
        return None if diff is None else diff > 0

    def _match_ge(self, attr_value: Any, value: Any) -> Optional[bool]:
        diff = self._compare(attr_value, value)
        return None if diff is None else diff >= 0

    def _match_lt(self, attr_value: Any, value: Any) -> Optional[bool]:
        diff = self._compare(attr_value, value)
        return None if diff is None else diff < 0

    def _match_le(self, attr_value: Any, value: Any) -> Optional[bool]:
        diff = self._compare(attr_value, value)
        return None if diff is None else diff <= 0


class ConditionAudienceEvaluator:
    """Reference evaluator for datafile audience conditions."""

    def meets_conditions(
        self,
        config: Any,
        rule: TargetingRule,
        attributes: Optional[Dict[str, Any]],
        label: str,
    ) -> bool:
        conditions: Any = rule.audience_conditions
        if conditions is None:
            conditions = list(rule.audience_ids)

        # No audiences targets everyone
        if not conditions:
            logger.debug(f'Audiences for {label} collectively evaluated to TRUE (no audiences).')
            return True

        matcher = CustomAttributeMatcher(attributes)

        def evaluate_audience(audience_id: Any) -> Optional[bool]:
            audience = config.get_audience(str(audience_id))
            if audience is None:
                return None
            result = evaluate_tree(audience.conditions, matcher)
            logger.debug(f'Audience "{audience_id}" evaluated to {result}.')
            return result

        result = evaluate_tree(conditions, evaluate_audience)
        logger.debug(f"Audiences for {label} collectively evaluated to {result}.")
        return result is True
