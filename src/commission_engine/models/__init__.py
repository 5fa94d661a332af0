"""ORM models for the commission engine."""

from commission_engine.models.base import Base, TimestampMixin
from commission_engine.models.computation import ComputationDefinition, PlanComputation
from commission_engine.models.participant import Participant, ParticipantPlan
from commission_engine.models.payout import PayoutHistoryLine, PayoutRun
from commission_engine.models.plan import PayoutPeriod, Plan
from commission_engine.models.source_data import SourceDataRecord

__all__ = [
    "Base",
    "TimestampMixin",
    "ComputationDefinition",
    "PlanComputation",
    "Participant",
    "ParticipantPlan",
    "PayoutHistoryLine",
    "PayoutRun",
    "PayoutPeriod",
    "Plan",
    "SourceDataRecord",
]
