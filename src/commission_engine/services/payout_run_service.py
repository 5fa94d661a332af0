"""Payout run service - transactional wrapper around the engine."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.calculators.engine import CommissionEngine
from commission_engine.calculators.types import RunResult, RunStatus
from commission_engine.config import Settings, get_settings
from commission_engine.database import try_plan_run_lock
from commission_engine.errors import CommissionEngineError
from commission_engine.models import PayoutRun, Plan
from commission_engine.schemas import RunReport
from commission_engine.services.locking_service import (
    PlanRunLocks,
    RunInProgressError,
    plan_run_locks,
)

logger = logging.getLogger(__name__)


class RunTimeoutError(CommissionEngineError):
    """Raised when a run exceeds the configured time limit."""

    def __init__(self, plan_id: int, timeout: float):
        self.plan_id = plan_id
        self.timeout = timeout
        super().__init__(f"Payout run for plan {plan_id} timed out after {timeout}s")


class PayoutRunService:
    """Runs computations for a plan as one all-or-nothing transaction.

    Outcomes:
    - completed: a PayoutRun row is recorded and the transaction committed
    - not_found / skipped / blocked: rolled back, nothing written
    - any exception: rolled back, logged and re-raised
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        locks: PlanRunLocks | None = None,
        record_scope: str | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.locks = locks or plan_run_locks
        self.engine = CommissionEngine(session, self.settings, record_scope=record_scope)

    async def run_computations(self, plan_id: int) -> RunResult:
        """Run a plan and commit its new payout lines.

        Raises:
            RunInProgressError: Another process is running the same plan.
            RunTimeoutError: The run took longer than ``run_timeout_seconds``.
            RunLimitExceededError: The run exceeds ``max_units_per_run``.
        """
        async with self.locks.hold(plan_id):
            try:
                if not await try_plan_run_lock(self.session, plan_id):
                    raise RunInProgressError(plan_id)

                result = await self._with_timeout(plan_id, self._execute(plan_id))

                if result.status == RunStatus.COMPLETED:
                    await self.session.commit()
                else:
                    await self.session.rollback()
            except Exception:
                await self.session.rollback()
                logger.exception("Payout run failed for plan %s", plan_id)
                raise

        if result.status == RunStatus.COMPLETED:
            logger.info(
                "Plan %s: run %s committed with %d lines",
                plan_id,
                result.run_id,
                result.inserted,
            )
        else:
            logger.info("Plan %s: %s, nothing written (%s)", plan_id, result.status.value, result.note)
        return result

    async def _execute(self, plan_id: int) -> RunResult:
        run: PayoutRun | None = None
        if await self.session.get(Plan, plan_id) is not None:
            run = PayoutRun(
                plan_id=plan_id,
                status="running",
                engine_version=self.settings.engine_version,
                started_at=datetime.now(timezone.utc),
            )
            self.session.add(run)
            await self.session.flush()

        result = await self.engine.run_computations(
            plan_id, run_id=run.id if run is not None else None
        )
        if run is None or result.status != RunStatus.COMPLETED:
            return result

        run.status = "completed"
        run.finished_at = datetime.now(timezone.utc)
        run.lines_inserted = result.inserted
        run.error_count = len(result.errors)
        run.blocked_count = len(result.blocked)
        run.report_json = RunReport.from_result(result).model_dump(mode="json", by_alias=True)
        await self.session.flush()
        return result

    async def _with_timeout(self, plan_id: int, work: Awaitable[RunResult]) -> RunResult:
        timeout = self.settings.run_timeout_seconds
        if not timeout or timeout <= 0:
            return await work
        try:
            return await asyncio.wait_for(work, timeout=timeout)
        except asyncio.TimeoutError:
            raise RunTimeoutError(plan_id, timeout)

    async def latest_run(self, plan_id: int) -> PayoutRun | None:
        """Most recent committed run for a plan."""
        result = await self.session.execute(
            select(PayoutRun)
            .where(PayoutRun.plan_id == plan_id, PayoutRun.status == "completed")
            .order_by(PayoutRun.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
