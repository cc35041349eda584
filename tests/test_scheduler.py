"""Tests for chore_engine.core.scheduler — maintenance pass and loop."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from apscheduler.triggers.interval import IntervalTrigger

from chore_engine.core.errors import ValidationError
from chore_engine.core.generator import AssignmentGenerator
from chore_engine.core.scheduler import (
    MAINTENANCE_JOB_ID,
    build_scheduler,
    maintenance_loop,
    run_maintenance,
)
from chore_engine.data.models import AssignmentStatus

HOUSEHOLD = 1
OTHER_HOUSEHOLD = 2
NOW = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)


class TestRunMaintenance:
    def test_sweeps_then_generates(self, children, template_service, generator, assignment_db, tmp_db_path):
        template_service.create_template(
            HOUSEHOLD, "Feed cat", "daily", {"assigned_children": [children["emma"].id]},
        )
        template_service.create_template(OTHER_HOUSEHOLD, "Walk dog", "daily")
        generator.generate(HOUSEHOLD, date(2024, 1, 1), date(2024, 1, 1))

        report = run_maintenance(db_path=tmp_db_path, now=NOW, days_ahead=3)

        assert report.sweep.overdue_assignments == 1
        assert set(report.generated) == {HOUSEHOLD, OTHER_HOUSEHOLD}
        assert report.generated[HOUSEHOLD].created == 3
        assert report.failed_households == {}
        dates = [a.date for a in assignment_db.list_assignments(HOUSEHOLD, status=AssignmentStatus.PENDING)]
        assert dates == ["2024-01-03", "2024-01-04", "2024-01-05"]

    def test_rerun_is_idempotent(self, children, template_service, tmp_db_path):
        template_service.create_template(HOUSEHOLD, "Make bed", "daily")

        first = run_maintenance(db_path=tmp_db_path, now=NOW, days_ahead=2)
        second = run_maintenance(db_path=tmp_db_path, now=NOW, days_ahead=2)

        assert first.generated[HOUSEHOLD].created == 4
        assert second.generated[HOUSEHOLD].created == 0
        assert second.sweep.total == 0

    def test_failed_household_does_not_stop_others(self, children, template_service, tmp_db_path):
        template_service.create_template(HOUSEHOLD, "Make bed", "daily")
        template_service.create_template(OTHER_HOUSEHOLD, "Walk dog", "daily")
        real_generate = AssignmentGenerator.generate

        def flaky(self, household_id, start, end, task_id=None):
            if household_id == HOUSEHOLD:
                raise ValidationError("boom")
            return real_generate(self, household_id, start, end, task_id=task_id)

        with patch("chore_engine.core.generator.AssignmentGenerator.generate", flaky):
            report = run_maintenance(db_path=tmp_db_path, now=NOW, days_ahead=1)

        assert report.failed_households == {HOUSEHOLD: "boom"}
        assert report.generated[OTHER_HOUSEHOLD].created == 1

    def test_nothing_to_do(self, tmp_db_path):
        report = run_maintenance(db_path=tmp_db_path, now=NOW + timedelta(days=1), days_ahead=1)
        assert report.generated == {}
        assert report.sweep.total == 0


class TestBuildScheduler:
    @pytest.mark.asyncio
    async def test_registers_interval_job(self, tmp_db_path):
        scheduler = build_scheduler(interval_minutes=5, db_path=tmp_db_path)

        job = scheduler.get_job(MAINTENANCE_JOB_ID)

        assert job.func is run_maintenance
        assert job.kwargs == {"db_path": tmp_db_path}
        assert isinstance(job.trigger, IntervalTrigger)
        assert job.trigger.interval == timedelta(minutes=5)
        assert job.max_instances == 1
        assert job.coalesce is True

    @pytest.mark.asyncio
    async def test_interval_defaults_to_settings(self, tmp_db_path):
        from chore_engine.config import settings

        job = build_scheduler(db_path=tmp_db_path).get_job(MAINTENANCE_JOB_ID)

        assert job.trigger.interval == timedelta(minutes=settings.MAINTENANCE_INTERVAL_MINUTES)


class TestMaintenanceLoop:
    @pytest.mark.asyncio
    async def test_first_pass_runs_on_start(self, tmp_db_path):
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        passes = []

        def fake_run_maintenance(db_path=None):
            passes.append(db_path)
            loop.call_soon_threadsafe(stop.set)

        with patch("chore_engine.core.scheduler.run_maintenance", fake_run_maintenance):
            await asyncio.wait_for(
                maintenance_loop(interval_minutes=60, db_path=tmp_db_path, stop=stop), timeout=10,
            )

        assert passes == [tmp_db_path]

    @pytest.mark.asyncio
    async def test_real_pass_generates(self, children, template_service, assignment_db, tmp_db_path):
        template_service.create_template(HOUSEHOLD, "Make bed", "daily")
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        reports = []

        def run_then_stop(db_path=None):
            reports.append(run_maintenance(db_path=db_path, days_ahead=1))
            loop.call_soon_threadsafe(stop.set)

        with patch("chore_engine.core.scheduler.run_maintenance", run_then_stop):
            await asyncio.wait_for(
                maintenance_loop(interval_minutes=60, db_path=tmp_db_path, stop=stop), timeout=10,
            )

        assert reports[0].generated[HOUSEHOLD].created == 2
        assert len(assignment_db.list_assignments(HOUSEHOLD)) == 2
