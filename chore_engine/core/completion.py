"""
Chore Engine — Assignment completion.

Completing an assignment flips it to ``completed`` and appends one entry to
the completion ledger with the template's points. Point balances are
computed elsewhere from the ledger.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from chore_engine.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from chore_engine.data.db import utcnow
from chore_engine.data.models import AssignmentStatus

if TYPE_CHECKING:
    import sqlite3

    from chore_engine.data.db import AssignmentDB, ChildDB, LedgerDB, TemplateDB
    from chore_engine.data.models import CompletionLedgerEntry

logger = logging.getLogger(__name__)


class CompletionService:
    def __init__(
        self,
        assignment_db: AssignmentDB,
        template_db: TemplateDB,
        ledger_db: LedgerDB,
        child_db: ChildDB,
    ) -> None:
        self._assignments = assignment_db
        self._templates = template_db
        self._ledger = ledger_db
        self._children = child_db

    def complete(
        self,
        household_id: int,
        assignment_id: int,
        child_id: int | None = None,
        now: datetime | None = None,
    ) -> CompletionLedgerEntry:
        """Mark an assignment done and record the points earned.

        Completing twice returns the original ledger entry. Household-wide
        assignments need ``child_id`` to know who earned the points.

        Raises:
            NotFoundError: no such assignment in the household.
            ForbiddenError: ``child_id`` is not the assigned child.
            ValidationError: a household-wide assignment without ``child_id``.
            ConflictError: the assignment expired.
        """
        now = now or utcnow()

        with self._assignments.transaction() as conn:
            assignment = self._assignments.get_assignment(assignment_id, conn=conn)
            if assignment is None or assignment.household_id != household_id:
                raise NotFoundError("Assignment not found", assignment_id=assignment_id)

            if assignment.status == AssignmentStatus.COMPLETED:
                existing = self._ledger.get_by_assignment(assignment_id, conn=conn)
                if existing is not None:
                    return existing

            if assignment.status == AssignmentStatus.EXPIRED:
                raise ConflictError(
                    "Expired assignments cannot be completed", assignment_id=assignment_id,
                )

            earner = self._resolve_earner(household_id, assignment.child_id, child_id, conn)
            template = self._templates.get_template(assignment.task_id, conn=conn)
            if template is None:
                raise NotFoundError("Task not found", task_id=assignment.task_id)

            if not self._assignments.mark_completed(assignment_id, now, conn=conn):
                raise ConflictError(
                    "Failed to complete assignment - status may have changed",
                    assignment_id=assignment_id,
                )
            entry = self._ledger.add_entry(
                household_id, assignment_id, earner, template.points, now, conn=conn,
            )
            if template.is_single:
                # A completed one-time task is resolved for good
                self._templates.set_active(template.id, False, conn=conn)

        logger.info(
            "Assignment #%d completed by child %d (+%d points)",
            assignment_id, earner, entry.points_earned,
        )
        return entry

    def _resolve_earner(
        self,
        household_id: int,
        assigned_child: int | None,
        child_id: int | None,
        conn: sqlite3.Connection,
    ) -> int:
        if assigned_child is not None:
            if child_id is not None and child_id != assigned_child:
                raise ForbiddenError(
                    "Assignment belongs to another child", child_id=child_id,
                )
            return assigned_child

        if child_id is None:
            raise ValidationError(
                "child_id is required to complete a household-wide assignment",
                field="child_id",
            )
        child = self._children.get_child(child_id, conn=conn)
        if child is None or child.household_id != household_id:
            raise NotFoundError("Child profile not found", child_id=child_id)
        return child_id
