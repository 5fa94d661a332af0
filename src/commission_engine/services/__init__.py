"""Commission engine services."""

from commission_engine.services.computation_service import (
    ComputationService,
    InvalidComputationError,
)
from commission_engine.services.locking_service import PlanRunLocks, RunInProgressError
from commission_engine.services.payout_run_service import PayoutRunService, RunTimeoutError
from commission_engine.services.payout_summary_service import PayoutSummaryService

__all__ = [
    "ComputationService",
    "InvalidComputationError",
    "PlanRunLocks",
    "RunInProgressError",
    "PayoutRunService",
    "RunTimeoutError",
    "PayoutSummaryService",
]
