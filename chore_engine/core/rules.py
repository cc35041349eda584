"""
Chore Engine — Assignment rules.

Each rule type has one payload shape, validated when it is built so an
invalid combination (a rotation with one child, a repeating chore with no
weekdays) cannot exist. ``evaluate`` turns a template and a calendar date
into the set of assignees for that date. It is pure: no I/O, no state.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from chore_engine.core.errors import ValidationError
from chore_engine.data.models import RotationType, RuleType

if TYPE_CHECKING:
    from chore_engine.data.models import ChildProfile, TaskTemplate


# Stored configs may use either spelling
_CAMEL_TO_SNAKE = {
    "assignedChildren": "assigned_children",
    "repeatDays": "repeat_days",
    "rotationType": "rotation_type",
}


class _RuleBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class _AssignedChildrenRule(_RuleBase):
    assigned_children: tuple[int, ...] = ()

    @field_validator("assigned_children")
    @classmethod
    def no_duplicate_children(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        if len(set(v)) != len(v):
            raise ValueError("assigned_children contains duplicates")
        return v


class DailyRule(_AssignedChildrenRule):
    """Every calendar day."""

    rule_type: Literal["daily"] = "daily"


class RepeatingRule(_AssignedChildrenRule):
    """On the listed weekdays (0 = Sunday … 6 = Saturday)."""

    rule_type: Literal["repeating"] = "repeating"
    repeat_days: tuple[int, ...]

    @field_validator("repeat_days")
    @classmethod
    def check_repeat_days(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        if not v:
            raise ValueError("repeat_days must name at least one weekday")
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("repeat_days values must be between 0 (Sunday) and 6 (Saturday)")
        return tuple(sorted(set(v)))


class WeeklyRotationRule(_AssignedChildrenRule):
    """One child per ISO week, rotating through ``assigned_children``."""

    rule_type: Literal["weekly_rotation"] = "weekly_rotation"
    rotation_type: RotationType

    @model_validator(mode="after")
    def check_children(self) -> WeeklyRotationRule:
        count = len(self.assigned_children)
        if count < 2:
            raise ValueError("weekly_rotation needs at least 2 assigned_children")
        if self.rotation_type == RotationType.ODD_EVEN_WEEK and count != 2:
            raise ValueError("odd_even_week rotation needs exactly 2 assigned_children")
        return self


class SingleRule(_RuleBase):
    """One-time task claimed by at most one of its candidates."""

    rule_type: Literal["single"] = "single"
    candidates: tuple[int, ...]
    deadline: datetime | None = None

    @field_validator("candidates")
    @classmethod
    def check_candidates(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        if not v:
            raise ValueError("at least one candidate child is required")
        if len(set(v)) != len(v):
            raise ValueError("candidates contains duplicates")
        return v

    @field_validator("deadline")
    @classmethod
    def deadline_as_utc(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


Rule = Annotated[
    Union[DailyRule, RepeatingRule, WeeklyRotationRule, SingleRule],
    Field(discriminator="rule_type"),
]

_RULE_ADAPTER: TypeAdapter[Rule] = TypeAdapter(Rule)


def parse_rule(rule_type: RuleType | str, rule_config: dict[str, Any] | None) -> Rule:
    """Build the typed rule for ``rule_type`` from an untyped config dict.

    Raises:
        ValidationError: unknown rule type or a config that does not fit it.
    """
    try:
        rule_type = RuleType(rule_type)
    except ValueError:
        raise ValidationError(f"Unknown rule type: {rule_type!r}", field="rule_type") from None

    payload = {_CAMEL_TO_SNAKE.get(key, key): value for key, value in (rule_config or {}).items()}
    payload.pop("rule_type", None)
    payload.pop("ruleType", None)
    payload["rule_type"] = rule_type.value

    try:
        return _RULE_ADAPTER.validate_python(payload)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"][1:]) or "rule_config", "message": err["msg"]}
            for err in exc.errors()
        ]
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        raise ValidationError(f"Invalid {rule_type.value} rule: {summary}", errors=errors) from exc


def rule_to_config(rule: Rule) -> dict[str, Any]:
    """Serialize a rule to the JSON-able dict stored with the template."""
    return rule.model_dump(mode="json", exclude={"rule_type"})


def sunday_based_weekday(day: date) -> int:
    """Weekday with 0 = Sunday, 6 = Saturday."""
    return day.isoweekday() % 7


def evaluate_rule(rule: Rule, day: date, household_children: Sequence[int]) -> list[int | None]:
    """Return the assignees of ``rule`` on ``day``.

    Args:
        rule: A validated rule variant.
        day: The calendar date being evaluated.
        household_children: Child ids of the household in insertion order.

    Returns:
        Zero or more child ids; ``None`` stands for a household-wide chore.
    """
    if isinstance(rule, DailyRule):
        return _default_assignees(rule.assigned_children, household_children)

    if isinstance(rule, RepeatingRule):
        if sunday_based_weekday(day) not in rule.repeat_days:
            return []
        return _default_assignees(rule.assigned_children, household_children)

    if isinstance(rule, WeeklyRotationRule):
        # ISO-8601 week so year boundaries are unambiguous
        week = day.isocalendar()[1]
        children = rule.assigned_children
        if rule.rotation_type == RotationType.ODD_EVEN_WEEK:
            return [children[0] if week % 2 == 1 else children[1]]
        return [children[week % len(children)]]

    if isinstance(rule, SingleRule):
        # Resolved only through candidate responses
        return []

    raise TypeError(f"Unsupported rule: {type(rule).__name__}")


def evaluate(
    template: TaskTemplate, day: date, ordered_children: Sequence[ChildProfile],
) -> list[int | None]:
    """Return the assignees of ``template`` on ``day``."""
    return evaluate_rule(template.rule, day, [child.id for child in ordered_children])


def _default_assignees(
    assigned: Sequence[int], household_children: Sequence[int],
) -> list[int | None]:
    if assigned:
        return list(assigned)
    if household_children:
        return list(household_children)
    return [None]
