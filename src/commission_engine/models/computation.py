"""Computation definition models."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from commission_engine.models.base import Base, TimestampMixin, UpdatedAtMixin

if TYPE_CHECKING:
    from commission_engine.models.plan import Plan


class ComputationDefinition(Base, TimestampMixin, UpdatedAtMixin):
    """Administrator-authored formula template."""

    __tablename__ = "computation_definition"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    scope: Mapped[str] = mapped_column(String, nullable=False, default="payout")
    template: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Comma-separated labels referenced by the template (informational only)
    source_data_inputs: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("scope IN ('payout', 'plan')", name="computation_scope_check"),
    )

    # Relationships
    plan_links: Mapped[list[PlanComputation]] = relationship(back_populates="computation")

    @property
    def source_inputs(self) -> list[str]:
        """Referenced labels as a list."""
        if not self.source_data_inputs:
            return []
        return [s.strip() for s in self.source_data_inputs.split(",") if s.strip()]


class PlanComputation(Base, TimestampMixin):
    """Attachment of a computation to a plan."""

    __tablename__ = "plan_computation"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("comp_plan.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    computation_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("computation_definition.id", ondelete="CASCADE"),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("plan_id", "computation_id", name="plan_computation_unique"),
    )

    # Relationships
    plan: Mapped[Plan] = relationship(back_populates="computation_links")
    computation: Mapped[ComputationDefinition] = relationship(back_populates="plan_links")
