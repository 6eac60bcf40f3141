"""Condition evaluation for automations.

Pure functions: a rule set plus a field lookup in, a bool out. Anything
malformed evaluates to False.
"""

import logging
import re
from typing import Any, Callable

from pydantic import ValidationError

from engine.errors import ConditionEvaluationError
from engine.models import ConditionRule, Conditions

logger = logging.getLogger(__name__)

FieldLookup = Callable[[str], Any]

FORM_KEY_RE = re.compile(r"^form:([^.]+)\.(.+)$")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) > 0
    return _as_text(value).strip() != ""


def evaluate_rule(rule: ConditionRule | dict[str, Any], value: Any) -> bool:
    """Apply one rule's operator to a field value.

    Raises:
        ConditionEvaluationError: If the operator is unknown.
    """
    if isinstance(rule, dict):
        operator = rule.get("operator")
        expected = rule.get("value")
    else:
        operator = rule.operator
        expected = rule.value

    if operator == "equals":
        return _as_text(value) == _as_text(expected)
    if operator == "not_equals":
        return _as_text(value) != _as_text(expected)
    if operator == "contains":
        return _as_text(expected) in _as_text(value)
    if operator == "is_filled":
        return is_filled(value)
    if operator == "is_empty":
        return not is_filled(value)
    if operator in ("greater_than", "less_than"):
        left, right = _as_number(value), _as_number(expected)
        if left is None or right is None:
            # Not both numeric: compare as strings
            left_s, right_s = _as_text(value), _as_text(expected)
            return left_s > right_s if operator == "greater_than" else left_s < right_s
        return left > right if operator == "greater_than" else left < right

    raise ConditionEvaluationError(f"Unknown operator: {operator!r}")


def _rule_key(rule: ConditionRule | dict[str, Any]) -> str:
    key = rule.get("field_key") if isinstance(rule, dict) else rule.field_key
    if not key or not isinstance(key, str):
        raise ConditionEvaluationError(f"Rule is missing 'field_key': {rule!r}")
    return key


def _check(conditions: Conditions | dict[str, Any], lookup: FieldLookup) -> bool:
    if isinstance(conditions, dict):
        logic = conditions.get("logic", "AND")
        rules = conditions.get("rules") or []
    else:
        logic = conditions.logic
        rules = conditions.rules

    if logic not in ("AND", "OR"):
        raise ConditionEvaluationError(f"Unknown logic: {logic!r}")
    if not rules:
        return True

    results = [evaluate_rule(rule, lookup(_rule_key(rule))) for rule in rules]
    return all(results) if logic == "AND" else any(results)


def evaluate_conditions(
    conditions: Conditions | dict[str, Any] | None,
    lookup: FieldLookup,
) -> bool:
    """Evaluate a rule set. No conditions (or no rules) means True.

    Malformed input never raises; it is logged and evaluates to False.
    """
    if conditions is None:
        return True

    if isinstance(conditions, dict):
        try:
            conditions = Conditions.model_validate(conditions)
        except ValidationError as e:
            logger.warning("Malformed conditions, treating as not met: %s", e)
            return False

    try:
        return _check(conditions, lookup)
    except ConditionEvaluationError as e:
        logger.warning("Condition evaluation failed closed: %s", e)
        return False


def build_field_lookup(
    fields: list[dict[str, Any]],
    submissions: list[dict[str, Any]] | None = None,
) -> FieldLookup:
    """Build a key -> value lookup over card fields and form submissions.

    Order: card field by key; ``form:<FormName>.<field>`` against that
    form's submission; then the plain key in any submission's responses,
    newest submission first.
    """
    by_key = {f["key"]: f.get("value") for f in fields}
    ordered = sorted(
        submissions or [],
        key=lambda s: s.get("submitted_at") or "",
        reverse=True,
    )

    def lookup(key: str) -> Any:
        if key in by_key:
            return by_key[key]

        match = FORM_KEY_RE.match(key)
        if match:
            wanted = match.group(1).strip().lower()
            for submission in ordered:
                name = ((submission.get("form") or {}).get("name") or "").lower()
                if name == wanted:
                    return (submission.get("responses") or {}).get(match.group(2))
            return None

        for submission in ordered:
            responses = submission.get("responses") or {}
            if key in responses:
                return responses[key]
        return None

    return lookup
