"""Manager hierarchy index used for roll-up scoping."""

from __future__ import annotations

from collections import deque
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.calculators.types import RollupScope
from commission_engine.models import Participant


class OrgHierarchyIndex:
    """Manager -> direct reports adjacency over all participants.

    The index is global (not scoped to a plan) so a manager's roll-up includes
    reports who are not attached to the plan being run.
    """

    def __init__(self, links: Iterable[tuple[int, int]]):
        """Build from ``(manager_id, report_id)`` pairs."""
        self._reports: dict[int, list[int]] = {}
        for manager_id, report_id in links:
            self._reports.setdefault(manager_id, []).append(report_id)

    @classmethod
    async def load(cls, session: AsyncSession) -> OrgHierarchyIndex:
        """Build the index from every participant with a manager."""
        result = await session.execute(
            select(Participant.manager_participant_id, Participant.id)
            .where(Participant.manager_participant_id.is_not(None))
            .order_by(Participant.id)
        )
        return cls((row[0], row[1]) for row in result.all())

    def direct_reports(self, root_id: int) -> list[int]:
        return list(self._reports.get(root_id, []))

    def get_descendants(self, root_id: int) -> list[int]:
        """All transitive reports of ``root_id`` in breadth-first order.

        ``root_id`` itself is never included, even when a cycle leads back
        to it.
        """
        return self._walk(root_id)[0]

    def has_cycle(self, root_id: int) -> bool:
        """Whether ``root_id`` is reachable from its own reports."""
        return self._walk(root_id)[1]

    def rollup_scope(self, root_id: int) -> RollupScope:
        descendants, cycle = self._walk(root_id)
        return RollupScope(
            participant_id=root_id,
            direct_report_ids=self.direct_reports(root_id),
            descendant_ids=descendants,
            has_cycle=cycle,
        )

    def referenced_ids(self) -> set[int]:
        """Every id that appears as a manager or a report."""
        ids = set(self._reports)
        for reports in self._reports.values():
            ids.update(reports)
        return ids

    def _walk(self, root_id: int) -> tuple[list[int], bool]:
        seen: set[int] = set()
        ordered: list[int] = []
        cycle = False
        queue = deque(self._reports.get(root_id, []))
        while queue:
            node = queue.popleft()
            if node == root_id:
                cycle = True
                continue
            if node in seen:
                continue
            seen.add(node)
            ordered.append(node)
            queue.extend(self._reports.get(node, []))
        return ordered, cycle
