"""Pytest fixtures for commission engine tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from commission_engine.config import Settings
from commission_engine.models import (
    Base,
    ComputationDefinition,
    Participant,
    ParticipantPlan,
    PayoutHistoryLine,
    PayoutPeriod,
    Plan,
    PlanComputation,
    SourceDataRecord,
)

# Use in-memory SQLite for tests (with async support)
# Advisory locks are skipped on SQLite; the in-process lock still applies
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine():
    """Create a fresh test database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def settings() -> Settings:
    """Settings that never read the environment."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        engine_version="test",
        log_level="DEBUG",
        debug=False,
        max_units_per_run=10_000,
        run_timeout_seconds=0,
        formula_max_steps=100_000,
    )


class Seeder:
    """Creates plan, participant, computation and metric rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _add(self, obj):
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def plan(
        self,
        name: str = "Sales Plan",
        payout_frequency: str = "monthly",
        effective_start: date | None = date(2024, 1, 1),
        effective_end: date | None = date(2024, 12, 31),
    ) -> Plan:
        return await self._add(
            Plan(
                name=name,
                payout_frequency=payout_frequency,
                effective_start=effective_start,
                effective_end=effective_end,
            )
        )

    async def period(
        self,
        plan: Plan,
        start: date,
        end: date,
        label: str,
        due_date: date | None = None,
    ) -> PayoutPeriod:
        return await self._add(
            PayoutPeriod(
                plan_id=plan.id,
                start_date=start,
                end_date=end,
                label=label,
                due_date=due_date,
            )
        )

    async def participant(
        self,
        first_name: str,
        last_name: str = "Rep",
        manager: Participant | None = None,
        plan: Plan | None = None,
    ) -> Participant:
        person = await self._add(
            Participant(
                first_name=first_name,
                last_name=last_name,
                email=f"{first_name.lower()}@example.com",
                manager_participant_id=manager.id if manager else None,
            )
        )
        if plan is not None:
            await self.attach(person, plan)
        return person

    async def attach(self, participant: Participant, plan: Plan) -> ParticipantPlan:
        return await self._add(ParticipantPlan(participant_id=participant.id, plan_id=plan.id))

    async def computation(
        self,
        name: str,
        template: str,
        scope: str = "payout",
        plan: Plan | None = None,
    ) -> ComputationDefinition:
        comp = await self._add(ComputationDefinition(name=name, scope=scope, template=template))
        if plan is not None:
            await self._add(PlanComputation(plan_id=plan.id, computation_id=comp.id))
        return comp

    async def metric(
        self,
        participant: Participant,
        label: str,
        metric_date: date,
        value: str | int | float,
        record_scope: str = "ACTUAL",
    ) -> SourceDataRecord:
        return await self._add(
            SourceDataRecord(
                participant_id=participant.id,
                label=label,
                metric_date=metric_date,
                value=Decimal(str(value)),
                record_scope=record_scope,
            )
        )


@pytest.fixture
def seed(session: AsyncSession) -> Seeder:
    """Row factory bound to the test session."""
    return Seeder(session)


async def fetch_payout_lines(session: AsyncSession, plan_id: int):
    """Payout line rows for a plan, read as plain rows rather than entities."""
    result = await session.execute(
        select(
            PayoutHistoryLine.participant_id,
            PayoutHistoryLine.computation_id,
            PayoutHistoryLine.run_id,
            PayoutHistoryLine.period_start,
            PayoutHistoryLine.period_end,
            PayoutHistoryLine.period_label,
            PayoutHistoryLine.due_date,
            PayoutHistoryLine.output_label,
            PayoutHistoryLine.amount,
            PayoutHistoryLine.payload,
        )
        .where(PayoutHistoryLine.plan_id == plan_id)
        .order_by(
            PayoutHistoryLine.participant_id,
            PayoutHistoryLine.period_start,
            PayoutHistoryLine.id,
        )
    )
    return result.all()


@pytest.fixture
def payout_lines(session: AsyncSession):
    """Async reader for a plan's persisted payout lines."""

    async def read(plan_id: int):
        return await fetch_payout_lines(session, plan_id)

    return read
