"""
Chore Engine — Assignment Generator.

Runs the rule evaluator for every active recurring template of a household
across a date range and stores one assignment per assignee and date.

Idempotence comes from the store's unique indexes, not from checking for
existing rows first: an insert that hits an existing row is counted as
skipped. Manual and scheduled runs may therefore overlap or race freely.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import TYPE_CHECKING

from chore_engine.core.errors import ChoreError, ErrorKind, NotFoundError, ValidationError
from chore_engine.core.rules import SingleRule, evaluate_rule

if TYPE_CHECKING:
    from chore_engine.data.db import AssignmentDB, ChildDB, TemplateDB
    from chore_engine.data.models import TaskTemplate

logger = logging.getLogger(__name__)


@dataclass
class GenerationError:
    """One template (or template-day) that could not be generated."""

    task_id: int
    message: str
    kind: ErrorKind = ErrorKind.VALIDATION
    date: str | None = None


@dataclass
class GenerationResult:
    created: int = 0
    skipped: int = 0
    errors: list[GenerationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class AssignmentGenerator:
    """Turns templates into dated assignments for a household."""

    def __init__(
        self,
        template_db: TemplateDB,
        child_db: ChildDB,
        assignment_db: AssignmentDB,
        max_days: int | None = None,
    ) -> None:
        if max_days is None:
            from chore_engine.config import settings
            max_days = settings.MAX_GENERATION_DAYS

        self._templates = template_db
        self._children = child_db
        self._assignments = assignment_db
        self._max_days = max_days

    def generate(
        self,
        household_id: int,
        start: date,
        end: date,
        task_id: int | None = None,
    ) -> GenerationResult:
        """Generate assignments for every date in ``start..end`` (inclusive).

        Args:
            household_id: Household to generate for.
            start: First date.
            end: Last date.
            task_id: Restrict the run to this template.

        Returns:
            Counts of created and skipped rows plus per-template errors.
            A bad template never aborts the rest of the batch.

        Raises:
            ValidationError: the date range itself is invalid.
            NotFoundError: ``task_id`` is unknown, inactive or belongs to
                another household.
        """
        days = (end - start).days + 1
        if days < 1:
            raise ValidationError("end must not be before start", start=start.isoformat(), end=end.isoformat())
        if days > self._max_days:
            raise ValidationError(
                f"date range must cover at most {self._max_days} days", days=days,
            )

        templates = self._select_templates(household_id, task_id)
        child_ids = [child.id for child in self._children.list_children(household_id)]
        result = GenerationResult()

        for template in templates:
            rows = self._rows_for_template(template, start, end, child_ids, result)
            if not rows:
                continue
            try:
                created, skipped = self._assignments.insert_many_if_absent(household_id, rows)
            except ChoreError as exc:
                self._record_error(result, template, exc.message, exc.kind)
                continue
            except sqlite3.DatabaseError as exc:
                self._record_error(result, template, f"store rejected assignments: {exc}", ErrorKind.CONFLICT)
                continue
            result.created += created
            result.skipped += skipped

        logger.info(
            "Household %d: generated %s..%s → created %d, skipped %d, errors %d",
            household_id, start.isoformat(), end.isoformat(),
            result.created, result.skipped, len(result.errors),
        )
        return result

    def generate_days(
        self, household_id: int, start: date, days: int, task_id: int | None = None,
    ) -> GenerationResult:
        """Generate ``days`` consecutive dates beginning at ``start``."""
        if days < 1:
            raise ValidationError("days must be at least 1", days=days)
        return self.generate(household_id, start, start + timedelta(days=days - 1), task_id=task_id)

    def _select_templates(self, household_id: int, task_id: int | None) -> list[TaskTemplate]:
        if task_id is None:
            return self._templates.list_templates(household_id, active_only=True, include_single=False)

        template = self._templates.get_template(task_id)
        if template is None or template.household_id != household_id or not template.active:
            raise NotFoundError(f"Task {task_id} not found or inactive", task_id=task_id)
        return [template]

    def _rows_for_template(
        self,
        template: TaskTemplate,
        start: date,
        end: date,
        child_ids: list[int],
        result: GenerationResult,
    ) -> list[tuple[int, int | None, str]]:
        """Evaluate one template over the range, recording problems in ``result``."""
        try:
            rule = template.rule
        except ValidationError as exc:
            self._record_error(result, template, exc.message, exc.kind)
            return []
        if isinstance(rule, SingleRule):
            return []

        known = set(child_ids)
        rows: list[tuple[int, int | None, str]] = []
        for day in _each_day(start, end):
            assignees = evaluate_rule(rule, day, child_ids)
            missing = [c for c in assignees if c is not None and c not in known]
            if missing:
                self._record_error(
                    result, template,
                    f"child {missing[0]} is no longer in the household",
                    ErrorKind.NOT_FOUND, day,
                )
                continue
            rows.extend((template.id, child_id, day.isoformat()) for child_id in assignees)
        return rows

    @staticmethod
    def _record_error(
        result: GenerationResult,
        template: TaskTemplate,
        message: str,
        kind: ErrorKind,
        day: date | None = None,
    ) -> None:
        logger.warning("Template #%d '%s': %s", template.id, template.name, message)
        result.errors.append(
            GenerationError(
                task_id=template.id,
                message=f"Task {template.name} ({template.id}): {message}",
                kind=kind,
                date=day.isoformat() if day else None,
            )
        )


def _each_day(start: date, end: date) -> Iterator[date]:
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)
