"""Type definitions for the computation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any


class PayoutFrequency(str, Enum):
    """Plan payout frequencies."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUAL = "semi-annual"
    ANNUAL = "annual"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"


class ComputationScope(str, Enum):
    """How often a computation is evaluated."""

    PAYOUT = "payout"  # once per payout period
    PLAN = "plan"  # once over the whole plan window


class RunStatus(str, Enum):
    """Outcome of a run invocation."""

    COMPLETED = "completed"
    SKIPPED = "skipped"  # nothing to do, zero effect
    BLOCKED = "blocked"  # every computation failed the denylist screen
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class PayoutWindow:
    """A concrete date window a computation is evaluated over."""

    start: date
    end: date
    label: str
    due_date: date

    def as_context(self) -> dict[str, str]:
        """Period object exposed to formulas."""
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "label": self.label,
            "dueDate": self.due_date.isoformat(),
        }


@dataclass
class RollupScope:
    """Organisational scope of one participant."""

    participant_id: int
    direct_report_ids: list[int] = field(default_factory=list)
    descendant_ids: list[int] = field(default_factory=list)
    has_cycle: bool = False

    @property
    def scope(self) -> str:
        return "manager" if self.descendant_ids else "individual"


@dataclass
class FormulaResult:
    """One normalised output of a formula evaluation."""

    label: str
    amount: float
    payload: Any = None


@dataclass
class LineCandidate:
    """A payout line before persistence."""

    participant_id: int
    computation_id: int
    window: PayoutWindow
    output_label: str
    amount: Decimal  # already rounded to persistence precision
    payload: dict[str, Any] = field(default_factory=dict)

    def to_row(self, plan_id: int, run_id: int | None = None) -> dict[str, Any]:
        """Column values for a bulk insert."""
        return {
            "plan_id": plan_id,
            "participant_id": self.participant_id,
            "computation_id": self.computation_id,
            "run_id": run_id,
            "period_start": self.window.start,
            "period_end": self.window.end,
            "period_label": self.window.label or None,
            "due_date": self.window.due_date,
            "output_label": self.output_label,
            "amount": self.amount,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class BlockedComputation:
    """A computation skipped because its template hit the denylist."""

    computation_id: int
    name: str
    keyword: str

    def to_dict(self) -> dict[str, Any]:
        return {"computationId": self.computation_id, "name": self.name, "keyword": self.keyword}


@dataclass(frozen=True)
class UnitIssue:
    """An error or warning attached to one evaluation unit."""

    participant_id: int
    computation_id: int | None
    message: str
    period_label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "participantId": self.participant_id,
            "computationId": self.computation_id,
            "error": self.message,
        }
        if self.period_label is not None:
            data["period"] = self.period_label
        return data


@dataclass
class RunResult:
    """Result of one run-computations invocation."""

    plan_id: int
    status: RunStatus
    participants: int = 0
    computations: int = 0
    periods: int = 0
    inserted: int = 0
    blocked: list[BlockedComputation] = field(default_factory=list)
    errors: list[UnitIssue] = field(default_factory=list)
    warnings: list[UnitIssue] = field(default_factory=list)
    note: str | None = None
    run_id: int | None = None
    lines: list[LineCandidate] = field(default_factory=list)
