from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from helpdesk.core.config import get_settings
from helpdesk.models.enums import NotificationChannel, RuleEventType


class AtomicCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str | None = Field(default=None, min_length=1, max_length=200)
    operator: Literal["equals", "in", "isTrue", "isFalse", "any"]
    value: Any = None

    @model_validator(mode="after")
    def _check_operands(self) -> AtomicCondition:
        if self.operator != "any" and self.field is None:
            raise ValueError(f"operator {self.operator!r} needs a field")
        if self.operator == "in" and not isinstance(self.value, list):
            raise ValueError("operator 'in' needs a list value")
        if self.operator == "equals" and "value" not in self.model_fields_set:
            raise ValueError("operator 'equals' needs a value")
        return self


class ConditionTree(BaseModel):
    model_config = ConfigDict(extra="forbid")

    operator: Literal["and", "or"]
    rules: list[ConditionTree | AtomicCondition]

    def depth(self) -> int:
        nested = [child.depth() for child in self.rules if isinstance(child, ConditionTree)]
        return 1 + max(nested, default=1)


class NotificationRule(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str = Field(min_length=1, max_length=100)
    event_types: list[RuleEventType] = Field(alias="eventTypes", min_length=1)
    enabled: bool = True
    conditions: ConditionTree | AtomicCondition


class NotificationPreferences(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rules: list[NotificationRule] = Field(default_factory=list, max_length=100)

    @model_validator(mode="after")
    def _check_depth(self) -> NotificationPreferences:
        limit = get_settings().RULE_MAX_DEPTH
        for rule in self.rules:
            if isinstance(rule.conditions, ConditionTree) and rule.conditions.depth() > limit:
                raise ValueError(f"rule {rule.id!r} nests deeper than {limit} levels")
        return self

    def to_stored(self) -> dict[str, Any]:
        stored = self.model_dump(mode="json", by_alias=True, exclude_unset=True)
        # Stored rules always carry `enabled`; a missing flag reads as disabled.
        stored["rules"] = [
            {**rule, "enabled": model.enabled}
            for rule, model in zip(stored.get("rules", []), self.rules, strict=True)
        ]
        return stored


class NotificationPreferencesUpdateRequest(BaseModel):
    channel: NotificationChannel
    preferences: NotificationPreferences


ConditionTree.model_rebuild()
