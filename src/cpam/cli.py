"""CPAM CLI - deterministic command-line interface for the calculation core.

Usage:
    python -m cpam evaluate --graph PATH --observations PATH --as-of DATE
        --base-price AMOUNT --currency CCY [--formula-type additive|multiplicative]
        [--preference FINAL]
    python -m cpam validate --graph PATH
    python -m cpam calendar roll --date DATE [--region US] [--convention following]
    python -m cpam calendar add --date DATE --days N [--region US]
    python -m cpam db upgrade [--revision head]

Exit codes:
    0: Success
    1: Internal error
    2: Invalid input or evaluation failure (structural error, missing data)
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from cpam.calc.engine import GraphEvaluator
from cpam.calc.errors import DataUnavailableError, EvaluationError, StructuralError
from cpam.calc.graph import load_graph, validate_graph
from cpam.calendar import (
    CalendarRegion,
    RollConvention,
    add_business_days,
    apply_roll_convention,
    create_calendar,
)
from cpam.models.formula_graph import FormulaType
from cpam.models.observation import VersionTag
from cpam.persistence.repositories.observations import InMemoryObservationRepository
from cpam.timeseries.ingestion import ObservationIngestor, ObservationRecord
from cpam.timeseries.resolver import VersionResolver

CLI_TENANT_ID = "cli"

EXIT_OK = 0
EXIT_INTERNAL = 1
EXIT_FAILED = 2


class CliInputError(Exception):
    """Raised when a CLI input file or argument cannot be used."""

    pass


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2))


def _error(code: str, message: str) -> dict[str, Any]:
    return {"error": {"code": code, "message": message}, "ok": False}


def _load_json(path: str) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError as e:
        raise CliInputError(f"File not found: {path}") from e
    except json.JSONDecodeError as e:
        raise CliInputError(f"Invalid JSON in {path}: {e}") from e
    except OSError as e:
        raise CliInputError(f"Cannot read {path}: {e}") from e


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from e


def _parse_decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"invalid decimal {value!r}") from e


def _load_observations(path: str) -> InMemoryObservationRepository:
    raw = _load_json(path)
    if not isinstance(raw, list):
        raise CliInputError(f"{path} must contain a JSON array of observation records")
    try:
        records = [ObservationRecord.model_validate(r) for r in raw]
    except ValidationError as e:
        raise CliInputError(f"Invalid observation record in {path}: {e}") from e

    store = InMemoryObservationRepository(CLI_TENANT_ID)
    ObservationIngestor(store, rate_limit_delay=0).ingest(records)
    return store


def cmd_evaluate(args: argparse.Namespace) -> int:
    """Evaluate a graph against observations from a file."""
    try:
        graph = load_graph(_load_json(args.graph))
        store = _load_observations(args.observations)
        evaluator = GraphEvaluator(VersionResolver(store))
        result = evaluator.evaluate(
            graph,
            formula_type=FormulaType(args.formula_type),
            base_price=args.base_price,
            base_currency=args.currency,
            as_of_date=args.as_of,
            version_preference=VersionTag(args.preference),
        )
    except CliInputError as e:
        _output_json(_error("INVALID_INPUT", str(e)))
        return EXIT_FAILED
    except StructuralError as e:
        _output_json(_error("STRUCTURAL_ERROR", str(e)))
        return EXIT_FAILED
    except DataUnavailableError as e:
        _output_json(_error("DATA_UNAVAILABLE", str(e)))
        return EXIT_FAILED
    except EvaluationError as e:
        _output_json(_error("EVALUATION_ERROR", str(e)))
        return EXIT_FAILED

    _output_json(
        {
            "adjusted_price": str(result.adjusted_price),
            "contributions": [c.model_dump(mode="json") for c in result.contributions],
            "currency": result.currency,
            "inputs_hash": result.inputs_hash,
            "ok": True,
            "output_value": str(result.output_value),
        }
    )
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a graph file and report errors and warnings."""
    try:
        graph = load_graph(_load_json(args.graph))
    except CliInputError as e:
        _output_json(_error("INVALID_INPUT", str(e)))
        return EXIT_FAILED
    except StructuralError as e:
        _output_json({"errors": e.errors, "ok": False, "warnings": []})
        return EXIT_FAILED

    validation = validate_graph(graph)
    _output_json(
        {"errors": validation.errors, "ok": validation.is_valid, "warnings": validation.warnings}
    )
    return EXIT_OK if validation.is_valid else EXIT_FAILED


def cmd_calendar(args: argparse.Namespace) -> int:
    """Roll a date or add business days under a regional calendar."""
    cal = create_calendar(args.region)
    if args.calendar_command == "roll":
        result = apply_roll_convention(args.date, cal, args.convention)
    else:
        result = add_business_days(args.date, args.days, cal)
    _output_json({"date": result.isoformat(), "input": args.date.isoformat(), "ok": True})
    return EXIT_OK


def cmd_db_upgrade(args: argparse.Namespace) -> int:
    """Apply migrations to the database named by CPAM_DATABASE_URL."""
    from cpam.persistence.db import get_engine
    from cpam.persistence.migrate import get_current_revision, run_upgrade

    engine = get_engine()
    run_upgrade(engine, args.revision)
    _output_json({"ok": True, "revision": get_current_revision(engine)})
    return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="cpam",
        description="CPAM - Contract Price Adjustment Mechanism CLI",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # evaluate command
    evaluate_parser = subparsers.add_parser(
        "evaluate",
        help="Evaluate a formula graph for one base price",
    )
    evaluate_parser.add_argument("--graph", required=True, metavar="PATH", help="Graph JSON")
    evaluate_parser.add_argument(
        "--observations",
        required=True,
        metavar="PATH",
        help="JSON array of observation records",
    )
    evaluate_parser.add_argument("--as-of", required=True, type=_parse_date, metavar="DATE")
    evaluate_parser.add_argument(
        "--base-price", required=True, type=_parse_decimal, metavar="AMOUNT"
    )
    evaluate_parser.add_argument("--currency", required=True, metavar="CCY")
    evaluate_parser.add_argument(
        "--formula-type",
        default=FormulaType.ADDITIVE.value,
        choices=[t.value for t in FormulaType],
    )
    evaluate_parser.add_argument(
        "--preference",
        default=VersionTag.FINAL.value,
        choices=[t.value for t in VersionTag],
    )

    # validate command
    validate_parser = subparsers.add_parser(
        "validate",
        help="Validate a formula graph",
    )
    validate_parser.add_argument("--graph", required=True, metavar="PATH", help="Graph JSON")

    # calendar command with roll and add subcommands
    calendar_parser = subparsers.add_parser(
        "calendar",
        help="Business calendar operations",
    )
    calendar_subparsers = calendar_parser.add_subparsers(
        dest="calendar_command",
        help="Calendar subcommands",
    )
    roll_parser = calendar_subparsers.add_parser("roll", help="Roll a date to a business day")
    roll_parser.add_argument(
        "--convention",
        default=RollConvention.FOLLOWING.value,
        choices=[c.value for c in RollConvention],
    )
    add_parser = calendar_subparsers.add_parser("add", help="Add business days to a date")
    add_parser.add_argument("--days", required=True, type=int)
    for sub in (roll_parser, add_parser):
        sub.add_argument("--date", required=True, type=_parse_date, metavar="DATE")
        sub.add_argument(
            "--region",
            default=CalendarRegion.US.value,
            choices=[r.value for r in CalendarRegion],
        )

    # db command with upgrade subcommand
    db_parser = subparsers.add_parser(
        "db",
        help="Database migrations",
    )
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database subcommands")
    upgrade_parser = db_subparsers.add_parser("upgrade", help="Apply migrations")
    upgrade_parser.add_argument("--revision", default="head")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Exit codes:
        0: Success
        1: Internal error (unexpected)
        2: Invalid input or evaluation failure
    """
    try:
        parser = create_parser()
        args = parser.parse_args(argv)

        if args.command is None:
            parser.print_help()
            return EXIT_OK

        if args.command == "evaluate":
            return cmd_evaluate(args)

        if args.command == "validate":
            return cmd_validate(args)

        if args.command == "calendar":
            if getattr(args, "calendar_command", None) in ("roll", "add"):
                return cmd_calendar(args)
            parser.parse_args(["calendar", "--help"])
            return EXIT_OK

        if args.command == "db":
            if getattr(args, "db_command", None) == "upgrade":
                return cmd_db_upgrade(args)
            parser.parse_args(["db", "--help"])
            return EXIT_OK

        return EXIT_OK

    except Exception as e:
        # Fail-closed: unexpected errors return exit code 1
        _output_json(_error("INTERNAL_ERROR", str(e)))
        return EXIT_INTERNAL


if __name__ == "__main__":
    sys.exit(main())
