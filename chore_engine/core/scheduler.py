"""
Chore Engine — Periodic maintenance.

One maintenance pass sweeps expired/overdue work, then tops up assignments
for the coming days in every household that has recurring templates.
Passes may overlap with manual generator runs or with passes from other
instances; both steps are idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chore_engine.core.errors import ChoreError
from chore_engine.core.generator import AssignmentGenerator, GenerationResult
from chore_engine.core.sweeper import LifecycleSweeper, SweepReport
from chore_engine.data.db import AssignmentDB, ChildDB, TemplateDB, local_date, utcnow

logger = logging.getLogger(__name__)

MAINTENANCE_JOB_ID = "chore_maintenance"


@dataclass
class MaintenanceReport:
    sweep: SweepReport
    generated: dict[int, GenerationResult] = field(default_factory=dict)
    failed_households: dict[int, str] = field(default_factory=dict)


def run_maintenance(
    db_path: str | None = None,
    now: datetime | None = None,
    days_ahead: int | None = None,
) -> MaintenanceReport:
    """Sweep, then generate ``today .. today + days_ahead - 1`` per household.

    A household that fails is logged and reported; the others still run.
    """
    from chore_engine.config import settings

    if days_ahead is None:
        days_ahead = settings.GENERATION_DAYS_AHEAD
    now = now or utcnow()

    template_db = TemplateDB(db_path=db_path)
    child_db = ChildDB(db_path=db_path)
    assignment_db = AssignmentDB(db_path=db_path)

    report = MaintenanceReport(sweep=LifecycleSweeper(template_db, assignment_db).sweep(now))

    generator = AssignmentGenerator(template_db, child_db, assignment_db)
    start = local_date(now)
    end = start + timedelta(days=days_ahead - 1)
    for household_id in template_db.households_with_recurring_templates():
        try:
            report.generated[household_id] = generator.generate(household_id, start, end)
        except ChoreError as exc:
            logger.error("Maintenance failed for household %d: %s", household_id, exc)
            report.failed_households[household_id] = exc.message

    logger.info(
        "Maintenance pass done: %d households generated, %d failed",
        len(report.generated), len(report.failed_households),
    )
    return report


def build_scheduler(
    interval_minutes: int | None = None,
    db_path: str | None = None,
) -> AsyncIOScheduler:
    """Register the maintenance job: one pass now, then every ``interval_minutes``.

    Passes run on the scheduler's thread pool; a pass still running when the
    next one is due is not started twice.
    """
    from chore_engine.config import settings

    if interval_minutes is None:
        interval_minutes = settings.MAINTENANCE_INTERVAL_MINUTES

    scheduler = AsyncIOScheduler(timezone=settings.TIMEZONE)
    scheduler.add_job(
        run_maintenance,
        "interval",
        minutes=interval_minutes,
        kwargs={"db_path": db_path},
        id=MAINTENANCE_JOB_ID,
        name="maintenance",
        next_run_time=utcnow(),
        max_instances=1,
        coalesce=True,
    )
    logger.info("Maintenance scheduled every %d minutes", interval_minutes)
    return scheduler


async def maintenance_loop(
    interval_minutes: int | None = None,
    db_path: str | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """Run the maintenance scheduler until ``stop`` is set (forever by default)."""
    stop = stop or asyncio.Event()
    scheduler = build_scheduler(interval_minutes, db_path)
    scheduler.start()
    try:
        await stop.wait()
    finally:
        scheduler.shutdown(wait=False)
        logger.info("Maintenance scheduler stopped")
