"""
Chore Engine — Template service.

The validation boundary for task templates: a template whose rule does not
fit its rule type, or that names children from another household, is
rejected here so it never reaches the generator in an active state.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from chore_engine.core.errors import NotFoundError, ValidationError
from chore_engine.core.rules import (
    DailyRule,
    RepeatingRule,
    Rule,
    SingleRule,
    WeeklyRotationRule,
    parse_rule,
)
from chore_engine.data.db import to_utc_iso, utcnow
from chore_engine.data.models import RuleType

if TYPE_CHECKING:
    from chore_engine.data.db import ChildDB, TemplateDB
    from chore_engine.data.models import TaskTemplate

logger = logging.getLogger(__name__)


class TemplateService:
    """Creates, edits and retires task templates for a household."""

    def __init__(self, template_db: TemplateDB, child_db: ChildDB) -> None:
        self._templates = template_db
        self._children = child_db

    def create_template(
        self,
        household_id: int,
        name: str,
        rule_type: RuleType | str,
        rule_config: dict[str, Any] | None = None,
        points: int = 0,
        deadline: datetime | str | None = None,
        now: datetime | None = None,
    ) -> TaskTemplate:
        """Validate and persist a new template.

        Args:
            household_id: Owning household.
            name: Display name, e.g. "Water plants".
            rule_type: One of daily / repeating / weekly_rotation / single.
            rule_config: Rule payload (snake_case or camelCase keys). For
                single tasks the candidates go in ``candidates`` (or
                ``assigned_children``, the older spelling).
            points: Points earned on completion.
            deadline: Single tasks only; must lie in the future.
            now: Reference time for the deadline check.

        Raises:
            ValidationError: anything about the template is invalid.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Task name is required", field="name")
        if points < 0:
            raise ValidationError("points must not be negative", field="points")

        config = dict(rule_config or {})
        if rule_type == RuleType.SINGLE:
            if "candidates" not in config:
                legacy = config.pop("assigned_children", config.pop("assignedChildren", None))
                if legacy is not None:
                    config["candidates"] = legacy
            if deadline is not None:
                config["deadline"] = deadline
        elif deadline is not None:
            raise ValidationError("deadline only applies to single tasks", field="deadline")

        rule = parse_rule(rule_type, config)
        self._check_children(household_id, rule)

        if isinstance(rule, SingleRule) and rule.deadline is not None:
            reference = now or utcnow()
            if to_utc_iso(rule.deadline) <= to_utc_iso(reference):
                raise ValidationError("Deadline must be in the future", field="deadline")

        template = self._templates.add_template(household_id, name, rule, points=points)
        logger.info(
            "Household %d: created %s template #%d '%s'",
            household_id, template.rule_type.value, template.id, name,
        )
        return template

    def update_rule(
        self,
        household_id: int,
        task_id: int,
        rule_type: RuleType | str,
        rule_config: dict[str, Any] | None,
    ) -> TaskTemplate:
        """Replace the rule of a recurring template.

        Candidate sets of single tasks are fixed at creation, so single
        templates cannot be edited and recurring ones cannot become single.
        """
        template = self._require_template(household_id, task_id)
        if template.is_single:
            raise ValidationError("Single task candidates cannot be changed", field="rule_type")

        rule = parse_rule(rule_type, rule_config)
        if isinstance(rule, SingleRule):
            raise ValidationError(
                "A recurring template cannot be turned into a single task", field="rule_type",
            )
        self._check_children(household_id, rule)
        self._templates.update_rule(task_id, rule)
        return self._require_template(household_id, task_id)

    def deactivate_template(self, household_id: int, task_id: int) -> bool:
        """Soft-delete a template. Returns False if it was already inactive."""
        self._require_template(household_id, task_id)
        return self._templates.set_active(task_id, False)

    def get_template(self, household_id: int, task_id: int) -> TaskTemplate:
        return self._require_template(household_id, task_id)

    def _require_template(self, household_id: int, task_id: int) -> TaskTemplate:
        template = self._templates.get_template(task_id)
        if template is None or template.household_id != household_id:
            raise NotFoundError(f"Task {task_id} not found", task_id=task_id)
        return template

    def _check_children(self, household_id: int, rule: Rule) -> None:
        """Every child a rule names must belong to the household."""
        if isinstance(rule, SingleRule):
            referenced = rule.candidates
        elif isinstance(rule, (DailyRule, RepeatingRule, WeeklyRotationRule)):
            referenced = rule.assigned_children
        else:
            referenced = ()

        if not referenced:
            return
        known = {child.id for child in self._children.list_children(household_id)}
        unknown = sorted(set(referenced) - known)
        if unknown:
            raise ValidationError(
                "One or more assigned children do not belong to this household",
                field="rule_config", child_ids=unknown,
            )
