"""Per-plan run locks."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from commission_engine.errors import CommissionEngineError


class RunInProgressError(CommissionEngineError):
    """Raised when another process holds the run lock for a plan."""

    def __init__(self, plan_id: int):
        self.plan_id = plan_id
        super().__init__(f"A payout run for plan {plan_id} is already in progress")


class PlanRunLocks:
    """Serialises runs for the same plan.

    Two layers:
    1. An ``asyncio.Lock`` per plan id; callers in this process wait their turn
    2. A transaction-scoped PostgreSQL advisory lock; a run in another
       process makes this one fail fast with RunInProgressError
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, plan_id: int) -> asyncio.Lock:
        lock = self._locks.get(plan_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[plan_id] = lock
        return lock

    def is_running(self, plan_id: int) -> bool:
        lock = self._locks.get(plan_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, plan_id: int) -> AsyncIterator[None]:
        """Hold the plan's lock, forgetting it once no caller holds or awaits it."""
        lock = self.lock_for(plan_id)
        self._users[plan_id] = self._users.get(plan_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[plan_id] -= 1
            if not self._users[plan_id]:
                del self._users[plan_id]
                self._locks.pop(plan_id, None)


# Shared by every service instance in the process
plan_run_locks = PlanRunLocks()
