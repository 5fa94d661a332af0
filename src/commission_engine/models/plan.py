"""Compensation plan and payout period models."""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Date, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from commission_engine.models.base import Base, TimestampMixin, UpdatedAtMixin

if TYPE_CHECKING:
    from commission_engine.models.computation import PlanComputation
    from commission_engine.models.participant import ParticipantPlan


class Plan(Base, TimestampMixin, UpdatedAtMixin):
    """Compensation plan."""

    __tablename__ = "comp_plan"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    version: Mapped[str] = mapped_column(String, nullable=False, default="1.0")
    payout_frequency: Mapped[str | None] = mapped_column(String, nullable=True, default="monthly")
    effective_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "effective_end IS NULL OR effective_start IS NULL OR effective_end >= effective_start",
            name="comp_plan_dates_check",
        ),
    )

    # Relationships
    payout_periods: Mapped[list[PayoutPeriod]] = relationship(
        back_populates="plan",
        order_by="PayoutPeriod.start_date",
    )
    participant_links: Mapped[list[ParticipantPlan]] = relationship(back_populates="plan")
    computation_links: Mapped[list[PlanComputation]] = relationship(back_populates="plan")


class PayoutPeriod(Base, TimestampMixin):
    """Explicit payout period belonging to a plan."""

    __tablename__ = "plan_payout_period"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("comp_plan.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    label: Mapped[str | None] = mapped_column(String(120), nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="plan_payout_period_dates_check"),
    )

    # Relationships
    plan: Mapped[Plan] = relationship(back_populates="payout_periods")
