"""Tests for computation definition management."""

import pytest

from commission_engine.services.computation_service import (
    ComputationService,
    InvalidComputationError,
    extract_source_labels,
    validate_definition,
)

pytestmark = pytest.mark.asyncio

TEMPLATE = """<%
rate = 0.1 if sum('Revenue') > has_dr("units") else 0.05
%><%= emit_commission(amount=sum_dr('REVENUE') * rate + sum( "Bonus Pool" )) %>"""


class TestExtractSourceLabels:
    async def test_finds_all_accessors(self):
        assert extract_source_labels(TEMPLATE) == ["Bonus Pool", "REVENUE", "Revenue", "units"]

    async def test_escaped_quotes(self):
        assert extract_source_labels(r"<%= sum('It\'s') %>") == ["It's"]

    async def test_ignores_similar_names(self):
        assert extract_source_labels("<%= summary('A') + total('B') %>") == []

    async def test_empty(self):
        assert extract_source_labels(None) == []
        assert extract_source_labels("<%= sum('  ') %>") == []


class TestValidateDefinition:
    async def test_valid(self):
        assert validate_definition("Team_Bonus", "plan", TEMPLATE) == []
        assert validate_definition("_private", None, "<%= 1 %>") == []

    @pytest.mark.parametrize("name", ["", None, "1st", "has space", "dash-name"])
    async def test_bad_names(self, name):
        errors = validate_definition(name, "payout", "<%= 1 %>")
        assert len(errors) == 1
        assert "Invalid name" in errors[0]

    async def test_bad_scope(self):
        [error] = validate_definition("Ok", "weekly", "<%= 1 %>")
        assert "Invalid scope" in error

    async def test_denylisted_template(self):
        [error] = validate_definition("Ok", "payout", "<%= require('fs') %>")
        assert error == "Template blocked by security policy (keyword: require)"

    async def test_syntax_error(self):
        [error] = validate_definition("Ok", "payout", "<%= 1 + %>")
        assert "Syntax error" in error

    async def test_all_errors_collected(self):
        assert len(validate_definition("9", "never", "<%= eval('1') %>")) == 3


class TestComputationService:
    async def test_create_derives_source_inputs(self, session):
        service = ComputationService(session)

        comp = await service.create_computation("Team_Bonus", TEMPLATE)

        assert comp.id is not None
        assert comp.scope == "payout"
        assert comp.source_data_inputs == "Bonus Pool, REVENUE, Revenue, units"
        assert comp.source_inputs == ["Bonus Pool", "REVENUE", "Revenue", "units"]

    async def test_create_rejects_invalid(self, session):
        with pytest.raises(InvalidComputationError) as exc_info:
            await ComputationService(session).create_computation("bad name", "<%= 1 %>")

        assert len(exc_info.value.errors) == 1

    async def test_update_refreshes_inputs(self, session):
        service = ComputationService(session)
        comp = await service.create_computation("Kicker", "<%= sum('A') %>")

        updated = await service.update_computation(
            comp.id, template="<%= sum('B') + sum_dr('C') %>", scope="plan"
        )

        assert updated.scope == "plan"
        assert updated.name == "Kicker"
        assert updated.source_data_inputs == "B, C"

    async def test_update_validates(self, session):
        service = ComputationService(session)
        comp = await service.create_computation("Kicker", "<%= 1 %>")

        with pytest.raises(InvalidComputationError):
            await service.update_computation(comp.id, template="<%= constructor %>")
        with pytest.raises(InvalidComputationError):
            await service.update_computation(comp.id, owner="me")
        with pytest.raises(InvalidComputationError):
            await service.update_computation(999, name="Other")

        assert comp.template == "<%= 1 %>"

    async def test_attach_is_idempotent(self, session, seed):
        plan = await seed.plan()
        service = ComputationService(session)
        comp = await service.create_computation("Kicker", "<%= 1 %>")

        first = await service.attach_to_plan(plan.id, comp.id)
        second = await service.attach_to_plan(plan.id, comp.id)

        assert first.id == second.id


class TestRequiredSourceInputs:
    async def test_groups_by_plan(self, session, seed):
        alpha = await seed.plan("Alpha")
        beta = await seed.plan("Beta")
        empty = await seed.plan("Gamma")
        rep = await seed.participant("Ann", plan=alpha)
        await seed.attach(rep, beta)
        await seed.attach(rep, empty)
        service = ComputationService(session)
        one = await service.create_computation("One", "<%= sum('revenue') + sum('UNITS') %>")
        two = await service.create_computation("Two", "<%= sum_dr('Revenue') + has('Margin') %>")
        await service.attach_to_plan(alpha.id, one.id)
        await service.attach_to_plan(beta.id, two.id)

        report = await service.required_source_inputs(rep.id)

        assert [p.plan_name for p in report.plans] == ["Alpha", "Beta", "Gamma"]
        assert report.plans[0].inputs == ["REVENUE", "UNITS"]
        assert report.plans[1].inputs == ["MARGIN", "REVENUE"]
        assert report.plans[2].inputs == []
        assert report.all_inputs == ["MARGIN", "REVENUE", "UNITS"]
        assert report.model_dump(by_alias=True)["allInputs"] == report.all_inputs

    async def test_unknown_participant(self, session):
        with pytest.raises(InvalidComputationError):
            await ComputationService(session).required_source_inputs(404)
