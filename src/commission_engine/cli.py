"""Commission engine command line interface.

Provides operational tools for:
- Running a plan's computations
- Summarising stored payout lines
- Checking a formula template before saving it
- Creating the database schema

Usage:
    commission-engine run --plan-id 7
    commission-engine run --plan-id 7 --json
    commission-engine summary --plan-id 7
    commission-engine payouts --participant-id 12
    commission-engine required-inputs --participant-id 12
    commission-engine check-template formula.tpl --name TeamBonus
    commission-engine init-db
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Coroutine

from sqlalchemy.exc import SQLAlchemyError

from commission_engine.calculators.types import RunStatus
from commission_engine.config import get_settings
from commission_engine.database import create_schema, get_session, init_db
from commission_engine.errors import CommissionEngineError
from commission_engine.schemas import RunReport
from commission_engine.services.computation_service import (
    ComputationService,
    extract_source_labels,
    validate_definition,
)
from commission_engine.services.payout_run_service import PayoutRunService
from commission_engine.services.payout_summary_service import PayoutSummaryService

logger = logging.getLogger(__name__)

# Exit code for runs that wrote nothing (unknown plan, nothing attached, all blocked)
EXIT_NO_EFFECT = 2


def _run_async(work: Coroutine[Any, Any, int]) -> int:
    async def _wrapped() -> int:
        engine, _ = init_db()
        try:
            return await work
        finally:
            await engine.dispose()

    return asyncio.run(_wrapped())


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


class CommissionCli:
    """Commission engine command line interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="commission-engine",
            description="Commission computation engine tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # run command
        run = subparsers.add_parser("run", help="Run all computations for a plan")
        run.add_argument("--plan-id", type=int, required=True, help="Plan to run")
        run.add_argument(
            "--record-scope",
            help="Only aggregate source data with this scope tag (e.g. ACTUAL)",
        )
        run.add_argument("--json", action="store_true", help="Print the full JSON report")

        # summary command
        summary = subparsers.add_parser("summary", help="Summarise a plan's payout lines")
        summary.add_argument("--plan-id", type=int, required=True)

        # payouts command
        payouts = subparsers.add_parser(
            "payouts", help="Show a participant's payouts by period"
        )
        payouts.add_argument("--participant-id", type=int, required=True)

        # required-inputs command
        inputs = subparsers.add_parser(
            "required-inputs", help="List metric labels a participant needs data for"
        )
        inputs.add_argument("--participant-id", type=int, required=True)

        # check-template command
        check = subparsers.add_parser(
            "check-template", help="Validate a formula template file"
        )
        check.add_argument("path", type=Path, help="Template file")
        check.add_argument("--name", default="Check", help="Computation name to validate")
        check.add_argument(
            "--scope", choices=["payout", "plan"], default="payout", help="Computation scope"
        )

        # init-db command
        subparsers.add_parser("init-db", help="Create database tables")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        # Dispatch to command handler
        handlers: dict[str, Callable[..., int]] = {
            "run": self._cmd_run,
            "summary": self._cmd_summary,
            "payouts": self._cmd_payouts,
            "required-inputs": self._cmd_required_inputs,
            "check-template": self._cmd_check_template,
            "init-db": self._cmd_init_db,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_run(self, args: argparse.Namespace) -> int:
        """Run computations for a plan."""

        async def work() -> int:
            async with get_session() as session:
                service = PayoutRunService(session, record_scope=args.record_scope)
                result = await service.run_computations(args.plan_id)
            report = RunReport.from_result(result)

            if args.json:
                _print_json(report.model_dump(mode="json", by_alias=True))
            else:
                print(f"Plan {result.plan_id}: {result.status.value}")
                if result.note:
                    print(f"  {result.note}")
                print(f"  Participants: {result.participants}")
                print(f"  Computations: {result.computations}")
                print(f"  Periods:      {result.periods}")
                print(f"  Lines:        {result.inserted}")
                for blocked in result.blocked:
                    print(f"  BLOCKED {blocked.name} (keyword: {blocked.keyword})")
                for issue in result.errors:
                    print(f"  ERROR participant={issue.participant_id} "
                          f"computation={issue.computation_id}: {issue.message}")
                for issue in result.warnings:
                    print(f"  WARN  participant={issue.participant_id} "
                          f"computation={issue.computation_id}: {issue.message}")

            return 0 if result.status == RunStatus.COMPLETED else EXIT_NO_EFFECT

        try:
            return _run_async(work())
        except (CommissionEngineError, SQLAlchemyError) as e:
            print(f"Run failed: {e}", file=sys.stderr)
            return 1

    def _cmd_summary(self, args: argparse.Namespace) -> int:
        """Print the payout run summary for a plan."""

        async def work() -> int:
            async with get_session() as session:
                summary = await PayoutSummaryService(session).plan_run_summary(args.plan_id)
            if summary is None:
                print(f"Plan {args.plan_id} not found", file=sys.stderr)
                return 1
            _print_json(summary.model_dump(mode="json", by_alias=True))
            return 0

        return _run_async(work())

    def _cmd_payouts(self, args: argparse.Namespace) -> int:
        """Print a participant's payouts by period."""

        async def work() -> int:
            async with get_session() as session:
                plans = await PayoutSummaryService(session).participant_payouts(
                    args.participant_id
                )
            _print_json([p.model_dump(mode="json", by_alias=True) for p in plans])
            return 0

        return _run_async(work())

    def _cmd_required_inputs(self, args: argparse.Namespace) -> int:
        """Print the metric labels a participant needs."""

        async def work() -> int:
            async with get_session() as session:
                try:
                    report = await ComputationService(session).required_source_inputs(
                        args.participant_id
                    )
                except CommissionEngineError as e:
                    print(str(e), file=sys.stderr)
                    return 1
            _print_json(report.model_dump(mode="json", by_alias=True))
            return 0

        return _run_async(work())

    def _cmd_check_template(self, args: argparse.Namespace) -> int:
        """Validate a template file without touching the database."""
        try:
            template = args.path.read_text(encoding="utf-8")
        except OSError as e:
            print(f"Cannot read {args.path}: {e}", file=sys.stderr)
            return 1

        errors = validate_definition(args.name, args.scope, template)
        if errors:
            print(f"Template {args.path} is invalid:")
            for error in errors:
                print(f"  - {error}")
            return 1

        labels = extract_source_labels(template)
        print(f"Template {args.path} is valid.")
        print(f"  Source inputs: {', '.join(labels) if labels else '(none)'}")
        return 0

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create all tables."""

        async def work() -> int:
            engine, _ = init_db()
            await create_schema(engine)
            print("Schema created.")
            return 0

        return _run_async(work())


def main() -> int:
    """CLI entry point."""
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cli = CommissionCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
