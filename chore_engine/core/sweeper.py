"""
Chore Engine — Lifecycle Sweeper.

Reclassifies work whose time has passed:
- pending recurring assignments dated before today become ``overdue``;
- single tasks past their deadline with nobody accepted are stamped expired
  (``expired_at`` is only ever set, never cleared);
- accepted single-task assignments still pending after the deadline
  become ``expired``.

Every step is a single conditional UPDATE, so concurrent sweeps from
several instances are safe and re-running a sweep changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from chore_engine.data.db import local_date, utcnow

if TYPE_CHECKING:
    from chore_engine.data.db import AssignmentDB, TemplateDB

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    overdue_assignments: int = 0
    expired_tasks: int = 0
    expired_assignments: int = 0

    @property
    def total(self) -> int:
        return self.overdue_assignments + self.expired_tasks + self.expired_assignments


class LifecycleSweeper:
    def __init__(self, template_db: TemplateDB, assignment_db: AssignmentDB) -> None:
        self._templates = template_db
        self._assignments = assignment_db

    def sweep(self, now: datetime | None = None, household_id: int | None = None) -> SweepReport:
        """Run one sweep, for one household or all of them."""
        now = now or utcnow()
        report = SweepReport(
            overdue_assignments=self._assignments.mark_overdue(local_date(now), household_id),
            expired_tasks=self._templates.mark_expired(now, household_id),
            expired_assignments=self._assignments.expire_single_assignments(now, household_id),
        )
        if report.total:
            logger.info(
                "Sweep: %d overdue, %d tasks expired, %d assignments expired",
                report.overdue_assignments, report.expired_tasks, report.expired_assignments,
            )
        else:
            logger.debug("Sweep: nothing to reclassify")
        return report
