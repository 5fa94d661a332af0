"""Computation definitions: validation, persistence and plan attachment."""

from __future__ import annotations

import re
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.calculators.formula_ast import TemplatePolicyError
from commission_engine.calculators.formula_sandbox import (
    TemplateSyntaxError,
    compile_template,
    screen_template,
)
from commission_engine.calculators.types import ComputationScope
from commission_engine.errors import CommissionEngineError
from commission_engine.models import (
    ComputationDefinition,
    Participant,
    ParticipantPlan,
    Plan,
    PlanComputation,
)
from commission_engine.schemas import PlanSourceInputs, RequiredSourceInputs

NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# sum('LABEL'), sum_dr("LABEL"), has('LABEL'), has_dr("LABEL"); quotes may be escaped
_LABEL_REFERENCE = re.compile(
    r"""\b(?:sum_dr|sum|has_dr|has)\s*\(\s*(['"])((?:\\.|(?!\1).)*?)\1""",
    re.DOTALL,
)


class InvalidComputationError(CommissionEngineError):
    """Raised when a computation definition fails validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


def extract_source_labels(template: str | None) -> list[str]:
    """Metric labels a template reads, sorted and de-duplicated."""
    labels = set()
    for match in _LABEL_REFERENCE.finditer(template or ""):
        label = re.sub(r"\\(['\"])", r"\1", match.group(2)).strip()
        if label:
            labels.add(label)
    return sorted(labels, key=lambda s: (s.casefold(), s))


def format_source_inputs(labels: list[str]) -> str:
    return ", ".join(labels)


def validate_definition(name: str | None, scope: str | None, template: str | None) -> list[str]:
    """Check a computation definition.

    Returns a list of errors. Empty list means the definition is valid.
    """
    errors: list[str] = []
    if not name or not NAME_PATTERN.match(name):
        errors.append(
            "Invalid name. Use letters/numbers/underscore; cannot start with a number."
        )
    if scope is not None and scope not in {s.value for s in ComputationScope}:
        errors.append(f"Invalid scope '{scope}'. Use 'payout' or 'plan'.")

    keyword = screen_template(template)
    if keyword:
        errors.append(f"Template blocked by security policy (keyword: {keyword})")
    else:
        try:
            compile_template(template)
        except (TemplateSyntaxError, TemplatePolicyError) as e:
            errors.append(str(e))
    return errors


class ComputationService:
    """Creates, updates and attaches computation definitions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_computation(self, computation_id: int) -> ComputationDefinition | None:
        return await self.session.get(ComputationDefinition, computation_id)

    async def create_computation(
        self,
        name: str,
        template: str,
        scope: str | None = None,
    ) -> ComputationDefinition:
        """Validate and persist a new computation.

        Raises InvalidComputationError if validation fails.
        """
        errors = validate_definition(name, scope, template)
        if errors:
            raise InvalidComputationError(errors)

        computation = ComputationDefinition(
            name=name,
            scope=scope or ComputationScope.PAYOUT.value,
            template=template,
            source_data_inputs=format_source_inputs(extract_source_labels(template)),
        )
        self.session.add(computation)
        await self.session.flush()
        return computation

    async def update_computation(
        self,
        computation_id: int,
        **changes: Any,
    ) -> ComputationDefinition:
        """Apply ``name``, ``scope`` and ``template`` changes.

        Source inputs are re-derived whenever the template changes.
        """
        computation = await self.get_computation(computation_id)
        if computation is None:
            raise InvalidComputationError([f"Computation {computation_id} not found"])

        unknown = set(changes) - {"name", "scope", "template"}
        if unknown:
            raise InvalidComputationError([f"Unknown fields: {', '.join(sorted(unknown))}"])

        name = changes.get("name", computation.name)
        scope = changes.get("scope", computation.scope)
        template = changes.get("template", computation.template)
        errors = validate_definition(name, scope, template)
        if errors:
            raise InvalidComputationError(errors)

        computation.name = name
        computation.scope = scope
        computation.template = template
        computation.source_data_inputs = format_source_inputs(extract_source_labels(template))
        await self.session.flush()
        return computation

    async def attach_to_plan(self, plan_id: int, computation_id: int) -> PlanComputation:
        """Attach a computation to a plan. Attaching twice is a no-op."""
        result = await self.session.execute(
            select(PlanComputation).where(
                PlanComputation.plan_id == plan_id,
                PlanComputation.computation_id == computation_id,
            )
        )
        link = result.scalar_one_or_none()
        if link is not None:
            return link

        link = PlanComputation(plan_id=plan_id, computation_id=computation_id)
        self.session.add(link)
        await self.session.flush()
        return link

    async def required_source_inputs(self, participant_id: int) -> RequiredSourceInputs:
        """Metric labels a participant needs data for, per attached plan."""
        if await self.session.get(Participant, participant_id) is None:
            raise InvalidComputationError([f"Participant {participant_id} not found"])

        result = await self.session.execute(
            select(Plan.id, Plan.name, ComputationDefinition.source_data_inputs)
            .join(ParticipantPlan, ParticipantPlan.plan_id == Plan.id)
            .outerjoin(PlanComputation, PlanComputation.plan_id == Plan.id)
            .outerjoin(
                ComputationDefinition,
                ComputationDefinition.id == PlanComputation.computation_id,
            )
            .where(ParticipantPlan.participant_id == participant_id)
            .order_by(Plan.name, Plan.id)
        )

        plans: dict[int, PlanSourceInputs] = {}
        inputs_by_plan: dict[int, set[str]] = {}
        for plan_id, plan_name, inputs in result.all():
            if plan_id not in plans:
                plans[plan_id] = PlanSourceInputs(plan_id=plan_id, plan_name=plan_name)
                inputs_by_plan[plan_id] = set()
            for label in (inputs or "").split(","):
                label = label.strip().upper()
                if label:
                    inputs_by_plan[plan_id].add(label)

        overall: set[str] = set()
        for plan_id, plan in plans.items():
            plan.inputs = sorted(inputs_by_plan[plan_id])
            overall.update(plan.inputs)

        return RequiredSourceInputs(
            participant_id=participant_id,
            plans=list(plans.values()),
            all_inputs=sorted(overall),
        )
