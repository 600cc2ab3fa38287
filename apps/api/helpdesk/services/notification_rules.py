"""Evaluation of user-authored notification rule trees.

A rule set is stored per user and channel as::

    {"rules": [{"id": "...", "eventTypes": ["NEW_THREAD"], "enabled": true,
                "conditions": {"operator": "and", "rules": [...]}}]}

where each entry of `rules` is either a nested tree or an atomic condition
`{"field": "priority", "operator": "equals|in|isTrue|isFalse|any", "value": ...}`.

Evaluation never raises: malformed nodes, unknown operators, missing fields and trees nested
deeper than the configured limit all evaluate to False.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from helpdesk.core.config import get_settings
from helpdesk.models.enums import NotificationEventType, RuleEventType

_MISSING = object()

_EVENT_RULE_NAMES: dict[NotificationEventType, RuleEventType] = {
    NotificationEventType.TICKET_CREATED: RuleEventType.TICKET_CREATED,
    NotificationEventType.TICKET_THREAD_NEW: RuleEventType.NEW_THREAD,
    NotificationEventType.TICKET_ASSIGNMENT_CHANGED: RuleEventType.ASSIGNMENT_CHANGED,
    NotificationEventType.TICKET_PRIORITY_CHANGED: RuleEventType.PRIORITY_CHANGED,
    NotificationEventType.TICKET_STATUS_CHANGED: RuleEventType.STATUS_CHANGED,
    NotificationEventType.TICKET_CATEGORY_CHANGED: RuleEventType.CATEGORY_CHANGED,
}


def rule_event_type(
    event_type: NotificationEventType, *, first_thread: bool = False
) -> RuleEventType:
    """Name rules are matched against; the first thread of a ticket counts as its creation."""
    if event_type == NotificationEventType.TICKET_THREAD_NEW and first_thread:
        return RuleEventType.TICKET_CREATED
    return _EVENT_RULE_NAMES[event_type]


def resolve_path(context: Mapping[str, Any], path: str, default: Any = _MISSING) -> Any:
    value: Any = context
    for key in path.strip().split("."):
        if isinstance(value, Mapping) and key in value:
            value = value[key]
        else:
            return default
    return value


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, int | float) and isinstance(right, int | float):
        return left == right
    return type(left) is type(right) and left == right


def _evaluate_atomic(node: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
    operator = node.get("operator")
    if operator == "any":
        return True

    field = node.get("field")
    if not isinstance(field, str) or not field:
        return False
    actual = resolve_path(context, field)
    if actual is _MISSING:
        return False

    if operator == "equals":
        return "value" in node and _strict_equals(actual, node["value"])
    if operator == "in":
        candidates = node.get("value")
        return isinstance(candidates, list) and any(
            _strict_equals(actual, candidate) for candidate in candidates
        )
    if operator == "isTrue":
        return bool(actual)
    if operator == "isFalse":
        return not bool(actual)
    return False


def evaluate_condition(
    node: Any,
    context: Mapping[str, Any],
    *,
    max_depth: int | None = None,
    _depth: int = 1,
) -> bool:
    if max_depth is None:
        max_depth = get_settings().RULE_MAX_DEPTH
    if _depth > max_depth or not isinstance(node, Mapping):
        return False

    if "rules" not in node:
        return _evaluate_atomic(node, context)

    children = node.get("rules")
    operator = node.get("operator")
    if not isinstance(children, list) or operator not in {"and", "or"}:
        return False

    results = (
        evaluate_condition(child, context, max_depth=max_depth, _depth=_depth + 1)
        for child in children
    )
    if operator == "and":
        return all(results)
    return any(results)


def matching_rule(
    preferences: Any,
    event_type: RuleEventType | str,
    context: Mapping[str, Any],
    *,
    max_depth: int | None = None,
) -> Mapping[str, Any] | None:
    """First enabled rule listing `event_type` whose condition tree holds, if any."""
    if not isinstance(preferences, Mapping):
        return None
    rules = preferences.get("rules")
    if not isinstance(rules, list):
        return None

    wanted = str(event_type)
    for rule in rules:
        if not isinstance(rule, Mapping) or rule.get("enabled") is not True:
            continue
        event_types = rule.get("eventTypes")
        if not isinstance(event_types, list) or wanted not in event_types:
            continue
        if evaluate_condition(rule.get("conditions"), context, max_depth=max_depth):
            return rule
    return None
