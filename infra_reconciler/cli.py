"""
Infra Reconciler - Command Line Interface

    infra-reconciler plan FILE       Show the operations needed to converge
    infra-reconciler apply FILE      Plan and apply
    infra-reconciler destroy FILE    Delete every managed resource
    infra-reconciler state           List remembered state

Exit codes: 0 success, 1 failed/blocked/cancelled resources, 2 invalid declaration.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from infra_reconciler.adapters import AdapterError
from infra_reconciler.config import Settings, set_settings
from infra_reconciler.engine import DeclarationParser, GraphError, ParserError, Reconciler
from infra_reconciler.main import build_reconciler
from infra_reconciler.models import OperationType, Plan, RunStatus, RunSummary
from infra_reconciler.state import StateStoreError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

_SYMBOLS = {
    OperationType.CREATE: "+",
    OperationType.UPDATE: "~",
    OperationType.DELETE: "-",
}


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="infra-reconciler",
        description="Converge remote infrastructure to a YAML declaration",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML settings file (environment variables still override)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=None,
        help="Log level (defaults to config)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("plan", "Show the plan without applying it"),
        ("apply", "Plan and apply a declaration"),
        ("destroy", "Delete every resource in remembered state"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("file", type=Path, help="Declaration YAML file")
        sub.add_argument(
            "--var",
            action="append",
            default=[],
            metavar="KEY=VALUE",
            help="Override a declaration variable (repeatable)",
        )
        if name != "destroy":
            sub.add_argument(
                "--refresh",
                action="store_true",
                help="Read remote state and detect drift before planning",
            )

    subparsers.add_parser("state", help="List remembered state records")

    return parser.parse_args(list(argv))


def _parse_vars(pairs: List[str]) -> Dict[str, Any]:
    variables: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ParserError(f"Invalid --var '{pair}', expected KEY=VALUE")
        variables[key] = yaml.safe_load(value) if value else ""
    return variables


def format_plan(plan: Plan) -> str:
    """Render a plan as one line per operation."""
    lines = []
    for op in plan.operations:
        lines.append(f"{_SYMBOLS[op.type]} {op.type.value} {op.key} ({op.reason})")
    counts = plan.counts()
    lines.append(
        f"Plan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['delete']} to delete, {len(plan.unchanged)} unchanged."
    )
    return "\n".join(lines)


def format_summary(summary: RunSummary) -> str:
    lines = []
    for result in summary.results:
        line = f"{result.status.value:<10} {result.resource}"
        if result.error_message:
            line += f" - {result.error_message}"
        lines.append(line)
    lines.append(
        f"Run {summary.run_id} {summary.status.value}: {summary.applied} applied, "
        f"{summary.failed} failed, {summary.blocked} blocked, "
        f"{summary.cancelled} cancelled, {summary.unchanged} unchanged."
    )
    return "\n".join(lines)


def _run_declaration(args: argparse.Namespace, reconciler: Reconciler) -> int:
    try:
        declaration = DeclarationParser().parse_file(
            str(args.file), variables=_parse_vars(args.var)
        )
    except ParserError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return EXIT_INVALID

    destroy = args.command == "destroy"
    try:
        plan = reconciler.plan(
            declaration,
            refresh=getattr(args, "refresh", False),
            destroy=destroy,
        )
    except GraphError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_INVALID
    except AdapterError as e:
        print(f"Error: refresh failed: {e.message}", file=sys.stderr)
        return EXIT_FAILED

    print(format_plan(plan))
    if args.command == "plan" or plan.is_empty:
        return EXIT_OK

    try:
        summary = reconciler.apply(plan)
    except StateStoreError as e:
        print(f"Error: state store failure: {e.message}", file=sys.stderr)
        return EXIT_FAILED

    print(format_summary(summary))
    return EXIT_OK if summary.status == RunStatus.COMPLETED else EXIT_FAILED


def _show_state(reconciler: Reconciler) -> int:
    records = reconciler.state_store.list_records()
    if not records:
        print("No resources in state.")
        return EXIT_OK
    for record in records:
        print(f"{record.key}  id={record.outputs.get('id', '-')}  updated={record.updated_at.isoformat()}")
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None, reconciler: Optional[Reconciler] = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)

    settings = Settings.load(args.config)
    set_settings(settings)
    logging.basicConfig(
        level=(args.log_level or settings.server.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    reconciler = reconciler or build_reconciler(settings)
    try:
        if args.command == "state":
            return _show_state(reconciler)
        return _run_declaration(args, reconciler)
    except StateStoreError as e:
        logger.error(f"State store error: {e.message}")
        print(f"Error: state store failure: {e.message}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
