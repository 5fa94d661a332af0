"""Read-side summaries of computed payout lines."""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.calculators.line_builder import PayoutLineBuilder
from commission_engine.calculators.period_resolver import period_start_for
from commission_engine.models import Participant, PayoutHistoryLine, PayoutRun, Plan
from commission_engine.schemas import (
    ParticipantPlanPayouts,
    ParticipantRunTotal,
    PeriodTotal,
    PlanRunSummary,
)


def _to_decimal(value: object) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class PayoutSummaryService:
    """Summaries of the payout lines currently stored.

    Amounts are stored at 4 decimals and reported here at 2.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def plan_run_summary(self, plan_id: int) -> PlanRunSummary | None:
        """Per-participant totals for a plan, largest total first.

        Returns None if the plan does not exist.
        """
        plan = await self.session.get(Plan, plan_id)
        if plan is None:
            return None

        total = func.coalesce(func.sum(PayoutHistoryLine.amount), 0)
        result = await self.session.execute(
            select(
                PayoutHistoryLine.participant_id,
                Participant.first_name,
                Participant.last_name,
                func.count(PayoutHistoryLine.id),
                total,
                func.min(PayoutHistoryLine.period_start),
                func.max(PayoutHistoryLine.period_end),
                func.max(PayoutHistoryLine.created_at),
            )
            .join(Participant, Participant.id == PayoutHistoryLine.participant_id)
            .where(PayoutHistoryLine.plan_id == plan_id)
            .group_by(
                PayoutHistoryLine.participant_id,
                Participant.first_name,
                Participant.last_name,
            )
            .order_by(total.desc(), PayoutHistoryLine.participant_id)
        )

        participants = []
        line_count = 0
        grand_total = Decimal("0")
        for pid, first, last, count, amount, first_start, last_end, last_created in result.all():
            amount = _to_decimal(amount)
            line_count += count
            grand_total += amount
            participants.append(
                ParticipantRunTotal(
                    participant_id=pid,
                    name=f"{first} {last}".strip(),
                    line_count=count,
                    total_amount=PayoutLineBuilder.round_to_cents(amount),
                    first_period_start=first_start,
                    last_period_end=last_end,
                    last_created_at=last_created,
                )
            )

        run_result = await self.session.execute(
            select(PayoutRun)
            .where(PayoutRun.plan_id == plan_id, PayoutRun.status == "completed")
            .order_by(PayoutRun.id.desc())
            .limit(1)
        )
        run = run_result.scalar_one_or_none()

        return PlanRunSummary(
            plan_id=plan.id,
            plan_name=plan.name,
            run_id=run.id if run else None,
            finished_at=run.finished_at if run else None,
            line_count=line_count,
            total_amount=PayoutLineBuilder.round_to_cents(grand_total),
            participants=participants,
        )

    async def participant_payouts(self, participant_id: int) -> list[ParticipantPlanPayouts]:
        """A participant's payouts per plan, bucketed by payout period.

        Lines are bucketed by the start of the plan-frequency period that
        contains their period start. Plans are ordered by most recent bucket.
        """
        result = await self.session.execute(
            select(PayoutHistoryLine, Plan)
            .join(Plan, Plan.id == PayoutHistoryLine.plan_id)
            .where(PayoutHistoryLine.participant_id == participant_id)
            .order_by(Plan.id, PayoutHistoryLine.period_start, PayoutHistoryLine.id)
        )

        plans: dict[int, Plan] = {}
        buckets: dict[int, dict[str, list[PayoutHistoryLine]]] = defaultdict(
            lambda: defaultdict(list)
        )
        for line, plan in result.all():
            plans[plan.id] = plan
            period = period_start_for(line.period_start, plan.payout_frequency, plan.effective_start)
            buckets[plan.id][period].append(line)

        summaries = []
        for plan_id, plan in plans.items():
            periods = []
            for period_start in sorted(buckets[plan_id], reverse=True):
                lines = buckets[plan_id][period_start]
                run_ids = [line.run_id for line in lines if line.run_id is not None]
                periods.append(
                    PeriodTotal(
                        period_start=period_start,
                        line_count=len(lines),
                        total_amount=PayoutLineBuilder.round_to_cents(
                            sum((_to_decimal(line.amount) for line in lines), Decimal("0"))
                        ),
                        run_id=max(run_ids) if run_ids else None,
                    )
                )
            summaries.append(
                ParticipantPlanPayouts(
                    plan_id=plan.id,
                    plan_name=plan.name,
                    plan_version=plan.version,
                    payout_frequency=plan.payout_frequency or "monthly",
                    plan_start=plan.effective_start,
                    plan_end=plan.effective_end,
                    periods=periods,
                )
            )

        summaries.sort(
            key=lambda s: s.periods[0].period_start if s.periods else "0000-00-00",
            reverse=True,
        )
        return summaries
