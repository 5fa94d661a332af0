"""Source data (metric) records."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import Date, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from commission_engine.models.base import Base, TimestampMixin


class SourceDataRecord(Base, TimestampMixin):
    """A single metric observation for a participant.

    Rows are append-only from the engine's point of view.
    """

    __tablename__ = "source_data"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("plan_participant.id", ondelete="CASCADE"),
        nullable=False,
    )
    record_scope: Mapped[str] = mapped_column(String, nullable=False, default="ACTUAL")
    label: Mapped[str] = mapped_column(String, nullable=False)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)

    __table_args__ = (
        Index("source_data_participant_date_idx", "participant_id", "metric_date"),
    )
