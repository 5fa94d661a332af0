"""Pydantic schemas for formula output and run reports."""

import json
import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ============================================================================
# Formula output
# ============================================================================

_AMOUNT_KEYS = ("amount", "amt", "value")
_PAYLOAD_KEYS = ("payload", "meta")


def _first_present(data: dict[str, Any], keys: tuple[str, ...], default: Any) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


class EmittedCommission(BaseModel):
    """One commission emitted by a formula.

    ``amount`` accepts numbers, booleans and numeric strings. Anything that
    does not resolve to a finite number fails validation.
    """

    label: str = Field(min_length=1, max_length=255)
    amount: float
    payload: Any = None

    @classmethod
    def from_candidate(cls, candidate: Any, default_label: str) -> "EmittedCommission":
        """Build from a parsed output value.

        Objects may carry ``label``, ``amount`` (or ``amt``/``value``) and
        ``payload`` (or ``meta``). A bare value is the amount itself and is
        labelled with ``default_label``.
        """
        if isinstance(candidate, dict):
            label = candidate.get("label")
            amount = _first_present(candidate, _AMOUNT_KEYS, candidate)
            payload = _first_present(candidate, _PAYLOAD_KEYS, candidate)
        else:
            label, amount, payload = None, candidate, candidate
        return cls(
            label=str(label if label is not None else default_label),
            amount=amount,
            payload=payload,
        )

    @field_validator("label")
    @classmethod
    def strip_label(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("label is blank")
        return value

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, value: Any) -> float:
        if isinstance(value, str):
            value = value.strip() or 0.0
        elif not isinstance(value, (bool, int, float)):
            raise ValueError(f"amount is not numeric: {type(value).__name__}")
        try:
            return float(value)
        except OverflowError:
            raise ValueError("amount is not finite") from None

    @field_validator("payload")
    @classmethod
    def require_json_payload(cls, value: Any) -> Any:
        # JSON columns reject NaN and Infinity
        try:
            json.dumps(value, allow_nan=False, default=str)
        except ValueError:
            raise ValueError("payload contains a non-finite number") from None
        return value

    @field_validator("amount")
    @classmethod
    def require_finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("amount is not finite")
        return value


# ============================================================================
# Run reports
# ============================================================================


class CamelModel(BaseModel):
    """Base for report schemas serialised with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class RunReport(CamelModel):
    """JSON report of one run-computations invocation."""

    plan_id: int
    status: str
    participants: int
    computations: int
    periods: int
    inserted: int
    blocked: list[dict[str, Any]] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    warnings: list[dict[str, Any]] = Field(default_factory=list)
    note: str | None = None
    run_id: int | None = None

    @classmethod
    def from_result(cls, result: Any) -> "RunReport":
        return cls(
            plan_id=result.plan_id,
            status=result.status.value,
            participants=result.participants,
            computations=result.computations,
            periods=result.periods,
            inserted=result.inserted,
            blocked=[b.to_dict() for b in result.blocked],
            errors=[e.to_dict() for e in result.errors],
            warnings=[w.to_dict() for w in result.warnings],
            note=result.note,
            run_id=result.run_id,
        )


class ParticipantRunTotal(CamelModel):
    """Per-participant totals of a plan's latest run."""

    participant_id: int
    name: str | None = None
    line_count: int
    total_amount: Decimal
    first_period_start: date | None = None
    last_period_end: date | None = None
    last_created_at: datetime | None = None


class PlanRunSummary(CamelModel):
    """Summary of the payout lines currently stored for a plan."""

    plan_id: int
    plan_name: str
    run_id: int | None = None
    finished_at: datetime | None = None
    line_count: int
    total_amount: Decimal
    participants: list[ParticipantRunTotal] = Field(default_factory=list)


class PeriodTotal(CamelModel):
    """A participant's payout total within one period bucket."""

    period_start: str
    line_count: int
    total_amount: Decimal
    run_id: int | None = None


class ParticipantPlanPayouts(CamelModel):
    """A participant's payouts in one plan, newest period first."""

    plan_id: int
    plan_name: str
    plan_version: str | None = None
    payout_frequency: str
    plan_start: date | None = None
    plan_end: date | None = None
    periods: list[PeriodTotal] = Field(default_factory=list)


class PlanSourceInputs(CamelModel):
    """Metric labels a plan's computations read."""

    plan_id: int
    plan_name: str
    inputs: list[str] = Field(default_factory=list)


class RequiredSourceInputs(CamelModel):
    """Metric labels required for a participant across their plans."""

    participant_id: int
    plans: list[PlanSourceInputs] = Field(default_factory=list)
    all_inputs: list[str] = Field(default_factory=list)
