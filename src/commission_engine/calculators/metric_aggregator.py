"""Metric aggregation over source data."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.models import SourceDataRecord


def normalize_label(label: object) -> str:
    """Canonical metric label: trimmed, upper case."""
    return str(label if label is not None else "").strip().upper()


class MetricAggregator:
    """Sums source data by normalised label for a set of participants.

    The date window is inclusive on both ends. Labels are compared after
    trimming and upper-casing, so ``revenue`` and `` REVENUE`` share a total.
    """

    def __init__(self, session: AsyncSession, record_scope: str | None = None):
        self.session = session
        self.record_scope = record_scope

    async def fetch_totals(
        self,
        target_ids: Sequence[int],
        start_date: date,
        end_date: date,
    ) -> dict[str, Decimal]:
        """Return ``{label: total}`` for ``target_ids`` within the window.

        Labels with no rows are simply absent; callers treat them as zero.
        """
        if not target_ids:
            return {}

        label_key = func.upper(func.trim(SourceDataRecord.label))
        query = (
            select(label_key.label("label"), func.sum(SourceDataRecord.value).label("total"))
            .where(
                SourceDataRecord.participant_id.in_(list(target_ids)),
                SourceDataRecord.metric_date >= start_date,
                SourceDataRecord.metric_date <= end_date,
            )
            .group_by(label_key)
        )
        if self.record_scope is not None:
            query = query.where(SourceDataRecord.record_scope == self.record_scope)

        result = await self.session.execute(query)
        totals: dict[str, Decimal] = {}
        for label, total in result.all():
            totals[label] = Decimal(str(total)) if total is not None else Decimal("0")
        return totals
