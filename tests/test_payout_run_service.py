"""Tests for the transactional payout run service."""

import asyncio
import dataclasses
from datetime import date

import pytest
from sqlalchemy import func, select

from commission_engine.calculators.engine import RunLimitExceededError
from commission_engine.calculators.types import RunStatus
from commission_engine.models import PayoutHistoryLine, PayoutRun
from commission_engine.services import (
    PayoutRunService,
    PlanRunLocks,
    RunInProgressError,
    RunTimeoutError,
)

pytestmark = pytest.mark.asyncio


async def count(session, model, plan_id: int) -> int:
    result = await session.execute(
        select(func.count()).select_from(model).where(model.plan_id == plan_id)
    )
    return result.scalar_one()


async def seed_plan(session, seed, template: str = "<%= sum('REVENUE') %>") -> int:
    """Seed a committed plan with two participants and return its id."""
    plan = await seed.plan()
    ann = await seed.participant("Ann", plan=plan)
    await seed.participant("Bo", plan=plan)
    await seed.computation("Commission", template, plan=plan)
    await seed.metric(ann, "REVENUE", date(2024, 4, 1), 120)
    plan_id = plan.id
    await session.commit()
    return plan_id


class TestRunComputations:
    async def test_completed_run_is_recorded(self, session, settings, seed, payout_lines):
        plan_id = await seed_plan(session, seed)

        result = await PayoutRunService(session, settings, locks=PlanRunLocks()).run_computations(
            plan_id
        )

        assert result.status == RunStatus.COMPLETED
        assert result.run_id is not None
        lines = await payout_lines(plan_id)
        assert len(lines) == 2
        assert {line.run_id for line in lines} == {result.run_id}

        run = await session.get(PayoutRun, result.run_id)
        assert run.status == "completed"
        assert run.engine_version == "test"
        assert run.lines_inserted == 2
        assert run.error_count == 0
        assert run.finished_at is not None
        assert run.report_json["status"] == "completed"
        assert run.report_json["planId"] == plan_id
        assert run.report_json["runId"] == result.run_id

    async def test_latest_run(self, session, settings, seed):
        plan_id = await seed_plan(session, seed)
        service = PayoutRunService(session, settings, locks=PlanRunLocks())

        await service.run_computations(plan_id)
        second = await service.run_computations(plan_id)
        latest = await service.latest_run(plan_id)

        assert latest.id == second.run_id
        assert await count(session, PayoutRun, plan_id) == 2

    async def test_unknown_plan_writes_nothing(self, session, settings):
        result = await PayoutRunService(session, settings, locks=PlanRunLocks()).run_computations(
            404
        )

        assert result.status == RunStatus.NOT_FOUND
        assert result.run_id is None
        assert await count(session, PayoutRun, 404) == 0

    async def test_zero_effect_run_rolls_back(self, session, settings, seed):
        plan = await seed.plan()
        await seed.participant("Ann", plan=plan)
        plan_id = plan.id
        await session.commit()

        result = await PayoutRunService(session, settings, locks=PlanRunLocks()).run_computations(
            plan_id
        )

        assert result.status == RunStatus.SKIPPED
        assert await count(session, PayoutRun, plan_id) == 0

    async def test_limit_error_rolls_back(self, session, settings, seed, payout_lines):
        plan_id = await seed_plan(session, seed)
        await PayoutRunService(session, settings, locks=PlanRunLocks()).run_computations(plan_id)

        limited = dataclasses.replace(settings, max_units_per_run=1)
        with pytest.raises(RunLimitExceededError):
            await PayoutRunService(session, limited, locks=PlanRunLocks()).run_computations(
                plan_id
            )

        assert len(await payout_lines(plan_id)) == 2
        assert await count(session, PayoutRun, plan_id) == 1

    async def test_advisory_lock_held_elsewhere(self, session, settings, seed, monkeypatch):
        plan_id = await seed_plan(session, seed)

        async def lock_taken(session, plan_id):
            return False

        monkeypatch.setattr(
            "commission_engine.services.payout_run_service.try_plan_run_lock", lock_taken
        )

        with pytest.raises(RunInProgressError):
            await PayoutRunService(session, settings, locks=PlanRunLocks()).run_computations(
                plan_id
            )
        assert await count(session, PayoutHistoryLine, plan_id) == 0

    async def test_timeout_rolls_back(self, session, settings, seed):
        plan_id = await seed_plan(session, seed)
        service = PayoutRunService(
            session,
            dataclasses.replace(settings, run_timeout_seconds=0.05),
            locks=PlanRunLocks(),
        )

        async def slow_run(plan_id, run_id=None):
            await asyncio.sleep(5)

        service.engine.run_computations = slow_run

        with pytest.raises(RunTimeoutError):
            await service.run_computations(plan_id)
        assert await count(session, PayoutRun, plan_id) == 0


class TestPlanRunLocks:
    async def test_one_lock_per_plan(self):
        locks = PlanRunLocks()

        assert locks.lock_for(1) is locks.lock_for(1)
        assert locks.lock_for(1) is not locks.lock_for(2)

    async def test_is_running(self):
        locks = PlanRunLocks()

        assert locks.is_running(1) is False
        async with locks.lock_for(1):
            assert locks.is_running(1) is True
            assert locks.is_running(2) is False
        assert locks.is_running(1) is False

    async def test_same_plan_runs_are_serialised(self):
        locks = PlanRunLocks()
        order = []

        async def run(name):
            async with locks.hold(7):
                order.append(f"{name} start")
                await asyncio.sleep(0.01)
                order.append(f"{name} end")

        await asyncio.gather(run("a"), run("b"))

        assert order == ["a start", "a end", "b start", "b end"]
        assert len(locks) == 0

    async def test_hold_forgets_lock_after_release(self):
        locks = PlanRunLocks()

        async with locks.hold(3):
            assert locks.is_running(3) is True
            assert len(locks) == 1
        assert len(locks) == 0

        with pytest.raises(RuntimeError):
            async with locks.hold(3):
                raise RuntimeError("boom")
        assert len(locks) == 0

    async def test_lock_kept_while_callers_wait(self):
        locks = PlanRunLocks()
        first_in = asyncio.Event()
        release = asyncio.Event()

        async def first():
            async with locks.hold(5):
                first_in.set()
                await release.wait()

        async def second():
            await first_in.wait()
            async with locks.hold(5):
                return len(locks)

        first_task = asyncio.create_task(first())
        second_task = asyncio.create_task(second())
        await first_in.wait()
        await asyncio.sleep(0)
        lock = locks.lock_for(5)
        release.set()

        assert await second_task == 1
        await first_task
        assert lock.locked() is False
        assert len(locks) == 0

    async def test_service_run_leaves_no_lock_behind(self, session, settings, seed):
        plan_id = await seed_plan(session, seed)
        locks = PlanRunLocks()

        await PayoutRunService(session, settings, locks=locks).run_computations(plan_id)

        assert len(locks) == 0
        assert locks.is_running(plan_id) is False
