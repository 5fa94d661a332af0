"""Commission computation engine - main orchestrator."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.calculators.formula_ast import FormulaRuntimeError, TemplatePolicyError
from commission_engine.calculators.formula_sandbox import (
    FormulaSandbox,
    TemplateSyntaxError,
    build_context,
    screen_template,
)
from commission_engine.calculators.line_builder import PayoutLineBuilder
from commission_engine.calculators.metric_aggregator import MetricAggregator
from commission_engine.calculators.org_hierarchy import OrgHierarchyIndex
from commission_engine.calculators.period_resolver import PeriodResolver
from commission_engine.calculators.types import (
    BlockedComputation,
    LineCandidate,
    PayoutWindow,
    RollupScope,
    RunResult,
    RunStatus,
    UnitIssue,
)
from commission_engine.config import Settings, get_settings
from commission_engine.errors import CommissionEngineError
from commission_engine.models import (
    ComputationDefinition,
    Participant,
    ParticipantPlan,
    PayoutHistoryLine,
    Plan,
    PlanComputation,
)

logger = logging.getLogger(__name__)


class RunLimitExceededError(CommissionEngineError):
    """Raised when a run would evaluate more units than allowed."""

    def __init__(self, plan_id: int, units: int, limit: int):
        self.plan_id = plan_id
        self.units = units
        self.limit = limit
        super().__init__(
            f"Plan {plan_id} run needs {units} evaluation units; limit is {limit}"
        )


class CommissionEngine:
    """Computes payout lines for every participant of a plan.

    Pipeline (stable order):
    1) Load plan and payout periods
    2) Load attached participants (by id)
    3) Build the global manager hierarchy and display metadata
    4) Load attached computations (by name), screen templates
    5) Check the evaluation unit budget
    6) Delete the plan's previous payout lines
    7) Compile safe templates once for the run
    8) Evaluate participant x computation x period and insert lines
    9) Report counts, blocked computations, errors and warnings

    Runs inside the caller's transaction. Committing or rolling back is the
    caller's job, which is what makes a failed run leave no partial output.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        record_scope: str | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.aggregator = MetricAggregator(session, record_scope=record_scope)

    async def run_computations(self, plan_id: int, run_id: int | None = None) -> RunResult:
        """Run every computation attached to a plan.

        Configuration problems (unknown plan, nothing attached, every
        template blocked) return a zero-effect result. Per-unit failures are
        collected in ``errors`` and never abort the run.
        """
        # 1) plan and periods
        plan = await self.session.get(Plan, plan_id)
        if plan is None:
            return RunResult(plan_id=plan_id, status=RunStatus.NOT_FOUND, note="Plan not found.")
        periods = await PeriodResolver.load(self.session, plan)

        # 2) participants
        participant_ids = await self._load_participant_ids(plan_id)
        if not participant_ids:
            return RunResult(
                plan_id=plan_id,
                status=RunStatus.SKIPPED,
                note="No participants attached to plan.",
            )

        # 3) hierarchy
        hierarchy = await OrgHierarchyIndex.load(self.session)
        people = await self._load_people(hierarchy.referenced_ids() | set(participant_ids))

        # 4) computations
        computations = await self._load_computations(plan_id)
        if not computations:
            return RunResult(
                plan_id=plan_id,
                status=RunStatus.SKIPPED,
                participants=len(participant_ids),
                note="No computations attached to plan.",
            )

        blocked: list[BlockedComputation] = []
        safe: list[ComputationDefinition] = []
        for comp in computations:
            keyword = screen_template(comp.template)
            if keyword:
                blocked.append(BlockedComputation(comp.id, comp.name, keyword))
            else:
                safe.append(comp)

        if not safe:
            logger.warning(
                "Plan %s: all %d computation templates blocked", plan_id, len(computations)
            )
            return RunResult(
                plan_id=plan_id,
                status=RunStatus.BLOCKED,
                participants=len(participant_ids),
                computations=len(computations),
                blocked=blocked,
                note="All computation templates blocked by security policy.",
            )

        # 5) unit budget
        units = len(participant_ids) * sum(len(periods.windows_for(c.scope)) for c in safe)
        limit = self.settings.max_units_per_run
        if limit > 0 and units > limit:
            raise RunLimitExceededError(plan_id, units, limit)

        logger.info(
            "Plan %s: running %d computations for %d participants (%d units)",
            plan_id,
            len(safe),
            len(participant_ids),
            units,
        )

        # 6) idempotent reset
        await self.session.execute(
            delete(PayoutHistoryLine).where(PayoutHistoryLine.plan_id == plan_id)
        )

        # 7) compile
        sandbox = FormulaSandbox(max_steps=self.settings.formula_max_steps)
        compile_errors: dict[int, str] = {}
        for comp in safe:
            try:
                sandbox.compile(comp.id, comp.template)
            except (TemplateSyntaxError, TemplatePolicyError) as e:
                compile_errors[comp.id] = str(e)
                logger.warning("Computation %s failed to compile: %s", comp.name, e)

        result = RunResult(
            plan_id=plan_id,
            status=RunStatus.COMPLETED,
            participants=len(participant_ids),
            computations=len(computations),
            periods=periods.periods_used,
            blocked=blocked,
            run_id=run_id,
        )
        blocked_by_id = {b.computation_id: b for b in blocked}

        # 8) evaluate
        for participant_id in participant_ids:
            scope = hierarchy.rollup_scope(participant_id)
            if scope.has_cycle:
                result.errors.append(
                    UnitIssue(
                        participant_id=participant_id,
                        computation_id=None,
                        message=(
                            "Manager hierarchy loops back to this participant; "
                            "roll-up uses the reachable reports only"
                        ),
                    )
                )
            rollup = self._rollup_meta(scope, people)

            for comp in computations:
                if comp.id in blocked_by_id:
                    result.errors.append(
                        UnitIssue(
                            participant_id=participant_id,
                            computation_id=comp.id,
                            message=(
                                "Template blocked by security policy "
                                f"(keyword: {blocked_by_id[comp.id].keyword})"
                            ),
                        )
                    )
                    continue
                if comp.id in compile_errors:
                    result.errors.append(
                        UnitIssue(participant_id, comp.id, compile_errors[comp.id])
                    )
                    continue

                for window in periods.windows_for(comp.scope):
                    lines = await self._evaluate_unit(
                        result, sandbox, plan_id, participant_id, comp, window, scope, rollup
                    )
                    if not lines:
                        continue
                    await self.session.execute(
                        insert(PayoutHistoryLine),
                        [line.to_row(plan_id, run_id) for line in lines],
                    )
                    result.inserted += len(lines)
                    result.lines.extend(lines)

        # 9) report
        logger.info(
            "Plan %s: inserted %d lines (%d errors, %d warnings, %d blocked)",
            plan_id,
            result.inserted,
            len(result.errors),
            len(result.warnings),
            len(result.blocked),
        )
        return result

    async def _evaluate_unit(
        self,
        result: RunResult,
        sandbox: FormulaSandbox,
        plan_id: int,
        participant_id: int,
        comp: ComputationDefinition,
        window: PayoutWindow,
        scope: RollupScope,
        rollup: dict[str, Any],
    ) -> list[LineCandidate]:
        """Evaluate one participant x computation x period."""
        # Re-screen right before execution
        keyword = screen_template(comp.template)
        if keyword:
            result.errors.append(
                UnitIssue(
                    participant_id,
                    comp.id,
                    f"Template blocked by security policy at render time (keyword: {keyword})",
                    window.label,
                )
            )
            return []

        self_totals = await self.aggregator.fetch_totals([participant_id], window.start, window.end)
        descendant_totals = await self.aggregator.fetch_totals(
            scope.descendant_ids, window.start, window.end
        )
        context = build_context(
            self_totals=self_totals,
            descendant_totals=descendant_totals,
            window=window,
            participant_id=participant_id,
            plan_id=plan_id,
            rollup=rollup,
        )

        try:
            output = sandbox.evaluate(comp.id, comp.name, context)
        except FormulaRuntimeError as e:
            logger.warning(
                "Computation %s failed for participant %s (%s)",
                comp.name,
                participant_id,
                window.label,
                exc_info=True,
            )
            result.errors.append(UnitIssue(participant_id, comp.id, str(e), window.label))
            return []
        except (ValueError, TypeError, OverflowError) as e:
            logger.warning(
                "Output of computation %s could not be read for participant %s (%s)",
                comp.name,
                participant_id,
                window.label,
                exc_info=True,
            )
            result.errors.append(
                UnitIssue(participant_id, comp.id, f"{type(e).__name__}: {e}", window.label)
            )
            return []

        for message in output.dropped:
            result.warnings.append(UnitIssue(participant_id, comp.id, message, window.label))

        return PayoutLineBuilder.build_lines(
            participant_id, comp.id, window, output.results, rollup
        )

    @staticmethod
    def _rollup_meta(scope: RollupScope, people: dict[int, dict[str, Any]]) -> dict[str, Any]:
        """Roll-up metadata stored in every payload."""

        def person(pid: int) -> dict[str, Any]:
            return {"id": pid, **people.get(pid, {})}

        return {
            "scope": scope.scope,
            "managerId": scope.participant_id,
            "directReportIds": list(scope.direct_report_ids),
            "descendantIds": list(scope.descendant_ids),
            "directReports": [person(pid) for pid in scope.direct_report_ids],
            "descendants": [person(pid) for pid in scope.descendant_ids],
        }

    async def _load_participant_ids(self, plan_id: int) -> list[int]:
        result = await self.session.execute(
            select(ParticipantPlan.participant_id)
            .where(ParticipantPlan.plan_id == plan_id)
            .distinct()
            .order_by(ParticipantPlan.participant_id)
        )
        return list(result.scalars().all())

    async def _load_people(self, ids: set[int]) -> dict[int, dict[str, Any]]:
        if not ids:
            return {}
        result = await self.session.execute(
            select(Participant).where(Participant.id.in_(sorted(ids)))
        )
        return {p.id: p.display() for p in result.scalars().all()}

    async def _load_computations(self, plan_id: int) -> list[ComputationDefinition]:
        result = await self.session.execute(
            select(ComputationDefinition)
            .join(PlanComputation, PlanComputation.computation_id == ComputationDefinition.id)
            .where(PlanComputation.plan_id == plan_id)
            .order_by(ComputationDefinition.name, ComputationDefinition.id)
        )
        return list(result.scalars().all())
