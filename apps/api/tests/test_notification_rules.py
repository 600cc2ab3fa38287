from __future__ import annotations

import pytest
from pydantic import ValidationError

from helpdesk.models.enums import NotificationEventType, RuleEventType
from helpdesk.schemas.notifications import NotificationPreferences
from helpdesk.services.notification_rules import (
    evaluate_condition,
    matching_rule,
    resolve_path,
    rule_event_type,
)

CONTEXT = {
    "priority": 2,
    "status": 1,
    "assignedToMe": True,
    "assignedToMyTeams": False,
    "ticket": {"id": 9, "title": "VPN down", "categoryId": 4},
}


def _atomic(field: str, operator: str, value=None) -> dict:
    node = {"field": field, "operator": operator}
    if value is not None:
        node["value"] = value
    return node


@pytest.mark.parametrize(
    ("node", "expected"),
    [
        (_atomic("priority", "equals", 2), True),
        (_atomic("priority", "equals", "2"), False),
        (_atomic("assignedToMe", "equals", 1), False),
        (_atomic("priority", "in", [1, 2, 3]), True),
        (_atomic("priority", "in", 2), False),
        (_atomic("assignedToMe", "isTrue"), True),
        (_atomic("assignedToMyTeams", "isFalse"), True),
        (_atomic("ticket.categoryId", "equals", 4), True),
        (_atomic("ticket.missing", "isFalse"), False),
        ({"operator": "any"}, True),
        ({"field": "priority", "operator": "greaterThan", "value": 1}, False),
        ("not a node", False),
    ],
)
def test_atomic_conditions(node, expected: bool) -> None:
    assert evaluate_condition(node, CONTEXT, max_depth=8) is expected


def test_empty_groups() -> None:
    assert evaluate_condition({"operator": "and", "rules": []}, CONTEXT, max_depth=8) is True
    assert evaluate_condition({"operator": "or", "rules": []}, CONTEXT, max_depth=8) is False
    assert evaluate_condition({"operator": "xor", "rules": []}, CONTEXT, max_depth=8) is False


def test_nested_groups() -> None:
    tree = {
        "operator": "and",
        "rules": [
            _atomic("assignedToMe", "isTrue"),
            {
                "operator": "or",
                "rules": [_atomic("priority", "equals", 5), _atomic("status", "in", [1])],
            },
        ],
    }
    assert evaluate_condition(tree, CONTEXT, max_depth=8) is True


def test_depth_limit_makes_deep_trees_false() -> None:
    tree: dict = {"operator": "any"}
    for _ in range(5):
        tree = {"operator": "and", "rules": [tree]}
    assert evaluate_condition(tree, CONTEXT, max_depth=6) is True
    assert evaluate_condition(tree, CONTEXT, max_depth=5) is False


def test_resolve_path() -> None:
    assert resolve_path(CONTEXT, "ticket.title") == "VPN down"
    assert resolve_path(CONTEXT, "ticket.title.length", default=None) is None


def test_first_thread_counts_as_ticket_created() -> None:
    assert rule_event_type(NotificationEventType.TICKET_THREAD_NEW) == RuleEventType.NEW_THREAD
    assert (
        rule_event_type(NotificationEventType.TICKET_THREAD_NEW, first_thread=True)
        == RuleEventType.TICKET_CREATED
    )
    assert (
        rule_event_type(NotificationEventType.TICKET_STATUS_CHANGED, first_thread=True)
        == RuleEventType.STATUS_CHANGED
    )


def test_matching_rule_picks_first_enabled_match() -> None:
    preferences = {
        "rules": [
            {
                "id": "off",
                "eventTypes": ["STATUS_CHANGED"],
                "enabled": False,
                "conditions": {"operator": "any"},
            },
            {
                "id": "other-event",
                "eventTypes": ["NEW_THREAD"],
                "enabled": True,
                "conditions": {"operator": "any"},
            },
            {
                "id": "mine",
                "eventTypes": ["STATUS_CHANGED"],
                "enabled": True,
                "conditions": _atomic("assignedToMe", "isTrue"),
            },
        ]
    }
    rule = matching_rule(preferences, RuleEventType.STATUS_CHANGED, CONTEXT, max_depth=8)
    assert rule is not None and rule["id"] == "mine"
    assert matching_rule(preferences, RuleEventType.PRIORITY_CHANGED, CONTEXT) is None
    assert matching_rule(None, RuleEventType.STATUS_CHANGED, CONTEXT) is None
    assert matching_rule({"rules": "nope"}, RuleEventType.STATUS_CHANGED, CONTEXT) is None


def test_preferences_schema_round_trips_stored_shape() -> None:
    stored = {
        "rules": [
            {
                "id": "urgent",
                "eventTypes": ["TICKET_CREATED", "PRIORITY_CHANGED"],
                "enabled": True,
                "conditions": {
                    "operator": "or",
                    "rules": [
                        {"field": "priority", "operator": "in", "value": [3, 4]},
                        {"field": "assignedToMe", "operator": "isTrue"},
                    ],
                },
            }
        ]
    }
    assert NotificationPreferences.model_validate(stored).to_stored() == stored


@pytest.mark.parametrize(
    "conditions",
    [
        {"field": "priority", "operator": "in", "value": 3},
        {"operator": "equals", "value": 3},
        {"field": "priority", "operator": "equals"},
        {"operator": "nand", "rules": []},
    ],
)
def test_preferences_schema_rejects_malformed_conditions(conditions: dict) -> None:
    with pytest.raises(ValidationError):
        NotificationPreferences.model_validate(
            {"rules": [{"id": "r", "eventTypes": ["NEW_THREAD"], "conditions": conditions}]}
        )


def test_rules_without_enabled_flag_never_match() -> None:
    conditions = {"operator": "and", "rules": []}
    rule = {"id": "r", "eventTypes": ["NEW_THREAD"], "conditions": conditions}
    assert matching_rule({"rules": [rule]}, RuleEventType.NEW_THREAD, CONTEXT) is None


def test_stored_preferences_record_enabled_flag() -> None:
    rule = {"id": "r", "eventTypes": ["NEW_THREAD"], "conditions": {"operator": "any"}}
    stored = NotificationPreferences.model_validate({"rules": [rule]}).to_stored()
    assert stored == {"rules": [{**rule, "enabled": True}]}
    assert matching_rule(stored, RuleEventType.NEW_THREAD, CONTEXT) is not None
    assert NotificationPreferences().to_stored() == {"rules": []}
