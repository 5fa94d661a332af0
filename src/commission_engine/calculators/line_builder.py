"""Payout line builder."""

from __future__ import annotations

import copy
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping

from commission_engine.calculators.types import FormulaResult, LineCandidate, PayoutWindow


class PayoutLineBuilder:
    """Turns formula results into payout line candidates.

    Rounding:
    - Amounts persisted at 4 decimals, half-up
    - Summaries reported at 2 decimals, half-up
    - Formula floats are converted through their shortest repr, so 12.345
      becomes 12.3450 rather than 12.3449
    """

    PRECISION = Decimal("0.0001")  # 4 decimal places for persistence
    OUTPUT_PRECISION = Decimal("0.01")  # 2 decimal places for summaries

    @staticmethod
    def to_decimal(amount: float | int | Decimal) -> Decimal:
        if isinstance(amount, Decimal):
            return amount
        return Decimal(repr(float(amount)))

    @staticmethod
    def round_amount(amount: float | int | Decimal) -> Decimal:
        """Round amount to 4 decimal places."""
        return PayoutLineBuilder.to_decimal(amount).quantize(
            PayoutLineBuilder.PRECISION, rounding=ROUND_HALF_UP
        )

    @staticmethod
    def round_to_cents(amount: float | int | Decimal) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return PayoutLineBuilder.to_decimal(amount).quantize(
            PayoutLineBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_UP
        )

    @staticmethod
    def merge_payload(payload: Any, rollup: Mapping[str, Any]) -> dict[str, Any]:
        """Attach roll-up metadata to a result payload.

        Object payloads keep their keys with ``rollup`` set last; anything
        else is wrapped as ``{"value": payload}``.
        """
        if isinstance(payload, dict):
            merged = dict(payload)
        elif payload is None:
            merged = {}
        else:
            merged = {"value": payload}
        merged["rollup"] = copy.deepcopy(dict(rollup))
        return merged

    @staticmethod
    def build_lines(
        participant_id: int,
        computation_id: int,
        window: PayoutWindow,
        results: Iterable[FormulaResult],
        rollup: Mapping[str, Any],
    ) -> list[LineCandidate]:
        """Create one line per result for a single evaluation unit."""
        return [
            LineCandidate(
                participant_id=participant_id,
                computation_id=computation_id,
                window=window,
                output_label=result.label,
                amount=PayoutLineBuilder.round_amount(result.amount),
                payload=PayoutLineBuilder.merge_payload(result.payload, rollup),
            )
            for result in results
        ]

    @staticmethod
    def total(lines: Iterable[LineCandidate]) -> Decimal:
        """Sum line amounts at persistence precision."""
        return sum((line.amount for line in lines), Decimal("0"))
