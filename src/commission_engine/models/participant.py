"""Participant and plan attachment models."""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, Date, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from commission_engine.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from commission_engine.models.plan import Plan


class Participant(Base, TimestampMixin):
    """Plan participant with an optional manager link.

    Manager links form a forest; cycles are not prevented at the data layer.
    """

    __tablename__ = "plan_participant"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    manager_participant_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("plan_participant.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    effective_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_end: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "effective_end IS NULL OR effective_start IS NULL OR effective_end >= effective_start",
            name="participant_dates_check",
        ),
    )

    # Relationships
    manager: Mapped[Participant | None] = relationship(remote_side=[id])
    plan_links: Mapped[list[ParticipantPlan]] = relationship(back_populates="participant")

    def display(self) -> dict[str, object]:
        """Display metadata embedded in payout payloads."""
        return {
            "id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
        }


class ParticipantPlan(Base, TimestampMixin):
    """Attachment of a participant to a plan."""

    __tablename__ = "participant_plan"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("plan_participant.id", ondelete="CASCADE"),
        nullable=False,
    )
    plan_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("comp_plan.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    effective_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_end: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        UniqueConstraint("participant_id", "plan_id", name="participant_plan_unique"),
    )

    # Relationships
    participant: Mapped[Participant] = relationship(back_populates="plan_links")
    plan: Mapped[Plan] = relationship(back_populates="participant_links")
