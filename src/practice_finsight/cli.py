# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Command-Line Interface (CLI) for Practice FinSight.

This module wires together the main building blocks of Practice FinSight:

- global configuration (database, identity, import options, logging),
- caller identity,
- therapy types and monthly plans stored in the database,
- the session import pipeline,
- plan-vs-actual reporting and import history.

The CLI is intentionally thin: it does not implement import or planning
logic itself. It performs the caller-side checks on imported files (the
file exists, has a supported extension, and is below the configured size
limit) and then delegates to the underlying modules.


Commands
--------

    import FILE [--format latido|standard] [--dry-run] [--json]
        Import a practice-software export into the monthly plans. With
        --dry-run the file is only parsed, summarized and checked against the
        existing therapy types.

    therapy-types add NAME PRICE
    therapy-types list
        Manage the therapy types that imported labels are matched against.

    plans list [--year YYYY | --last-months N | --from-date D --to-date D] [--summary]
    plans set THERAPY_TYPE MONTH PLANNED
        Show planned vs. actual sessions, or set planned sessions.

    history
        Show imported invoices grouped by import day.

    template [latido|standard]
        Print a sample import file.


Configuration and identity
--------------------------

By default, the CLI reads ``practice_finsight_config.toml`` in the current
working directory (override with ``--config PATH``). Commands that touch the
database run as the user given by ``--user``, else ``[auth].user_id``, else
the demo user when ``[auth].allow_demo_user`` is enabled.
"""

import argparse
import json
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from . import __version__
from .auth import AuthenticationError, Identity, resolve_identity
from .config import AppConfig, load_app_config
from .db import (
    init_database,
    insert_therapy_type,
    list_therapy_types,
    set_planned_sessions,
)
from .importer import (
    ImportPreview,
    ImportResult,
    check_therapy_type_labels,
    preview_session_import,
    run_session_import,
)
from .io import ParseError, format_cents, parse_amount_cents, rows_to_dataframe
from .logging_setup import setup_logging
from .mapping import VENDOR_FORMATS, get_column_mapping, get_import_templates
from .periods import determine_period_from_args, month_key
from .plans_service import (
    get_import_history,
    load_plan_vs_actual,
    summarize_by_therapy_type,
)

SUPPORTED_SUFFIXES = {".xlsx": "xlsx", ".csv": "csv"}


def _build_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the CLI."""
    ap = argparse.ArgumentParser(
        prog="python -m practice_finsight.cli",
        description=(
            "Practice FinSight - financial planning for medical practices. "
            "Imports session data exported by practice software into monthly "
            "plans and reports planned vs. actual sessions."
        ),
    )

    ap.add_argument(
        "--version",
        action="store_true",
        help="Show the installed version of practice_finsight and exit.",
    )
    ap.add_argument(
        "--config",
        dest="config_path",
        help=(
            "Path to the main TOML configuration file. If omitted, "
            "'practice_finsight_config.toml' in the current directory is used."
        ),
    )
    ap.add_argument(
        "--user",
        dest="user_id",
        help="User id to run as. Overrides [auth].user_id from the configuration.",
    )

    subparsers = ap.add_subparsers(dest="command", metavar="command")

    # ------------------------------------------------------------------
    # import
    # ------------------------------------------------------------------
    import_parser = subparsers.add_parser(
        "import",
        help="Import a practice-software export (xlsx or csv).",
    )
    import_parser.add_argument("file", help="Path to the .xlsx or .csv export.")
    import_parser.add_argument(
        "--format",
        dest="vendor_format",
        choices=sorted(VENDOR_FORMATS),
        help="Column layout of the export. Defaults to [import].vendor_format.",
    )
    import_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse and summarize the file without writing to the database.",
    )
    import_parser.add_argument(
        "--json",
        dest="as_json",
        action="store_true",
        help="Print the import result (or the dry-run preview) as JSON.",
    )

    # ------------------------------------------------------------------
    # therapy-types
    # ------------------------------------------------------------------
    therapy_parser = subparsers.add_parser(
        "therapy-types",
        help="Manage therapy types.",
    )
    therapy_sub = therapy_parser.add_subparsers(
        dest="therapy_command", metavar="therapy-command"
    )
    therapy_add = therapy_sub.add_parser("add", help="Create a therapy type.")
    therapy_add.add_argument("name", help="Canonical name, e.g. 'Psychotherapie'.")
    therapy_add.add_argument("price", help="Price per session, e.g. '80' or '80,00'.")
    therapy_sub.add_parser("list", help="List therapy types.")

    # ------------------------------------------------------------------
    # plans
    # ------------------------------------------------------------------
    plans_parser = subparsers.add_parser(
        "plans",
        help="Show or edit monthly plans.",
    )
    plans_sub = plans_parser.add_subparsers(dest="plans_command", metavar="plans-command")

    plans_list = plans_sub.add_parser("list", help="Planned vs. actual sessions.")
    plans_list.add_argument("--year", type=int, help="Calendar year to show.")
    plans_list.add_argument(
        "--last-months",
        dest="last_months",
        type=int,
        help="Show the current month and the N months before it.",
    )
    plans_list.add_argument(
        "--from-date",
        dest="from_date",
        help="Custom start date (YYYY-MM-DD). Ignored when --year is set.",
    )
    plans_list.add_argument(
        "--to-date",
        dest="to_date",
        help="Custom end date (YYYY-MM-DD). Ignored when --year is set.",
    )
    plans_list.add_argument(
        "--summary",
        action="store_true",
        help="Show totals per therapy type instead of one line per month.",
    )

    plans_set = plans_sub.add_parser("set", help="Set planned sessions for a month.")
    plans_set.add_argument("therapy_type", help="Therapy type name.")
    plans_set.add_argument("month", help="Month as YYYY-MM.")
    plans_set.add_argument("planned", type=int, help="Planned number of sessions.")

    # ------------------------------------------------------------------
    # history / template
    # ------------------------------------------------------------------
    subparsers.add_parser("history", help="Show imported invoices by import day.")

    template_parser = subparsers.add_parser("template", help="Print a sample import file.")
    template_parser.add_argument(
        "template_format",
        nargs="?",
        default="latido",
        choices=sorted(VENDOR_FORMATS),
    )

    return ap


def _parse_month(value: str) -> date:
    """
    Parse a CLI month argument ('YYYY-MM' or 'YYYY-MM-DD').

    Raises
    ------
    SystemExit
        If the format is invalid.
    """
    text = value.strip()
    try:
        if len(text) == 7:
            return date.fromisoformat(f"{text}-01")
        return date.fromisoformat(text).replace(day=1)
    except ValueError as exc:
        raise SystemExit(f"Invalid month: {value!r}. Expected YYYY-MM.") from exc


def _resolve_identity(args: argparse.Namespace, config: AppConfig) -> Identity:
    try:
        identity = resolve_identity(config.auth, args.user_id)
    except AuthenticationError as exc:
        raise SystemExit(str(exc)) from exc
    if identity.is_demo:
        print(f"Running as demo user {identity.user_id!r}.", file=sys.stderr)
    return identity


def _print_import_result(result: ImportResult) -> None:
    status = "completed" if result.success else "FAILED"
    print(
        f"Import {status}: {result.imported_count} row(s) imported, "
        f"{result.skipped_count} skipped."
    )

    for agg in result.aggregates:
        print(
            f"  {month_key(agg.month)}  {agg.therapy_type_id}  "
            f"sessions={agg.actual_sessions}  revenue={format_cents(agg.revenue_cents)}"
        )

    if result.missing_therapy_types:
        print()
        print("Unknown therapy types (create them with 'therapy-types add'):")
        for label in result.missing_therapy_types:
            print(f"  - {label}")

    for title, issues in (("Errors", result.errors), ("Warnings", result.warnings)):
        if not issues:
            continue
        print()
        print(f"{title}:")
        for issue in issues:
            prefix = f"row {issue.row}" if issue.row else "file"
            print(f"  [{prefix}] {issue.message}")


def _print_preview(preview: ImportPreview, missing: list[str], currency: str) -> None:
    print(f"Valid rows: {preview.valid_rows}, invalid rows: {preview.invalid_rows}")
    if preview.date_range is not None:
        start, end = preview.date_range
        print(f"Dates: {start.isoformat()} → {end.isoformat()}")
    print(
        f"Sessions: {preview.total_sessions}, "
        f"revenue in file: {format_cents(preview.total_revenue_cents)} {currency}"
    )

    if missing:
        print()
        print("Unknown therapy types (create them with 'therapy-types add'):")
        for label in missing:
            print(f"  - {label}")

    if preview.sample_rows:
        sample = rows_to_dataframe(preview.sample_rows)
        print()
        print(sample[["row", "date", "therapy_type", "sessions", "revenue"]].to_string(index=False))


def _handle_import(
    args: argparse.Namespace, config: AppConfig, parser: argparse.ArgumentParser
) -> None:
    """
    Handle the 'import' command.

    Performs the caller-side checks (existence, extension, size), then runs
    the import pipeline or, with --dry-run, only a preview.
    """
    path = Path(args.file)
    if not path.is_file():
        parser.error(f"Import file not found: {path}")

    file_format = SUPPORTED_SUFFIXES.get(path.suffix.lower())
    if file_format is None:
        parser.error(
            f"Unsupported file type {path.suffix!r}. Only .xlsx and .csv are supported."
        )

    max_size = config.import_options.max_file_size_bytes
    if path.stat().st_size > max_size:
        parser.error(
            f"File too large ({path.stat().st_size} bytes). "
            f"Maximum size is {max_size} bytes."
        )

    data = path.read_bytes()
    identity = _resolve_identity(args, config)

    if args.dry_run:
        mapping = get_column_mapping(
            args.vendor_format or config.import_options.vendor_format
        )
        try:
            preview = preview_session_import(
                data,
                mapping,
                file_format=file_format,
                csv_delimiter=config.import_options.csv_delimiter,
            )
        except ParseError as exc:
            raise SystemExit(f"Could not parse {path}: {exc}") from exc

        labels = check_therapy_type_labels(
            preview.therapy_types_found,
            list_therapy_types(config.database, identity.user_id),
        )
        if args.as_json:
            payload = preview.to_dict()
            payload["missing_therapy_types"] = labels["missing"]
            print(json.dumps(payload, ensure_ascii=False, indent=2))
        else:
            _print_preview(preview, labels["missing"], config.currency)
        return

    result = run_session_import(
        data,
        app_config=config,
        identity=identity,
        vendor_format=args.vendor_format,
        file_format=file_format,
    )

    if args.as_json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    else:
        _print_import_result(result)

    if not result.success:
        raise SystemExit(1)


def _handle_therapy_types(args: argparse.Namespace, config: AppConfig) -> None:
    """Handle 'therapy-types add' and 'therapy-types list'."""
    identity = _resolve_identity(args, config)
    subcmd = getattr(args, "therapy_command", None)

    if subcmd == "add":
        try:
            price_cents = parse_amount_cents(args.price)
            therapy_type = insert_therapy_type(
                config.database,
                user_id=identity.user_id,
                name=args.name,
                price_per_session_cents=price_cents,
            )
        except ValueError as exc:
            raise SystemExit(str(exc)) from exc
        print(
            f"Created therapy type {therapy_type.name!r} "
            f"({format_cents(therapy_type.price_per_session_cents)} {config.currency} "
            f"per session), id {therapy_type.id}."
        )
        return

    if subcmd == "list":
        therapy_types = list_therapy_types(config.database, identity.user_id)
        if not therapy_types:
            print("No therapy types defined yet.")
            return
        for t in therapy_types:
            print(
                f"{t.id}  {t.name}  "
                f"{format_cents(t.price_per_session_cents)} {config.currency}"
            )
        return

    print("No therapy-types subcommand specified. Available: 'add', 'list'.")


def _handle_plans(args: argparse.Namespace, config: AppConfig) -> None:
    """Handle 'plans list' and 'plans set'."""
    identity = _resolve_identity(args, config)
    subcmd = getattr(args, "plans_command", None)

    if subcmd == "list":
        try:
            period = determine_period_from_args(args)
        except ValueError as exc:
            raise SystemExit(str(exc)) from exc

        df = load_plan_vs_actual(config, identity, period)
        print(
            f"Applied period: {period.label} "
            f"({period.start.isoformat()} → {period.end.isoformat()})"
        )
        if df.empty:
            print("No monthly plans found for this period.")
            return

        if args.summary:
            df = summarize_by_therapy_type(df)
        else:
            df = df.copy()
            df["month"] = df["month"].dt.strftime("%Y-%m")

        print()
        print(df.to_string(index=False))
        return

    if subcmd == "set":
        month = _parse_month(args.month)
        wanted = args.therapy_type.strip().lower()
        matches = [
            t
            for t in list_therapy_types(config.database, identity.user_id)
            if t.name.lower() == wanted
        ]
        if len(matches) != 1:
            raise SystemExit(
                f"Therapy type {args.therapy_type!r} not found"
                if not matches
                else f"Therapy type {args.therapy_type!r} is ambiguous"
            )
        try:
            plan = set_planned_sessions(
                config.database,
                user_id=identity.user_id,
                therapy_type_id=matches[0].id,
                month=month,
                planned_sessions=args.planned,
            )
        except ValueError as exc:
            raise SystemExit(str(exc)) from exc
        print(
            f"{matches[0].name} {month_key(plan.month)}: "
            f"planned={plan.planned_sessions} actual={plan.actual_sessions}"
        )
        return

    print("No plans subcommand specified. Available: 'list', 'set'.")


def _handle_history(args: argparse.Namespace, config: AppConfig) -> None:
    identity = _resolve_identity(args, config)
    history = get_import_history(config, identity)
    if history.empty:
        print("No imported invoices recorded yet.")
        return
    print(history.to_string(index=False))


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the Practice FinSight CLI.

    This function parses command-line arguments, handles the commands that
    need no configuration (--version, template), then loads the application
    configuration, sets up logging, initializes the database and dispatches
    to the requested command.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"practice_finsight version {__version__}")
        return

    if args.command is None:
        parser.print_help()
        return

    if args.command == "template":
        print(get_import_templates()[args.template_format], end="")
        return

    # 1) Load application configuration
    try:
        config = load_app_config(args.config_path)
    except (FileNotFoundError, ValueError) as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    # 2) Logging
    setup_logging(config.logging)

    # 3) Initialize the database (create file and schema if needed)
    init_database(config.database)

    # 4) Dispatch
    if args.command == "import":
        _handle_import(args, config, parser)
    elif args.command == "therapy-types":
        _handle_therapy_types(args, config)
    elif args.command == "plans":
        _handle_plans(args, config)
    elif args.command == "history":
        _handle_history(args, config)


if __name__ == "__main__":
    main()
