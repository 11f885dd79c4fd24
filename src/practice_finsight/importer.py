# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Session import pipeline for Practice FinSight.

This module turns a practice-software export into actual session counts on
the user's monthly plans. One import run goes through these stages:

    parsing -> validating -> aggregating -> persisting -> completed

1) Parsing (``io.read_session_export``)
   The file is read and each data row becomes an ``ImportRow`` or a
   row-level error. File-level problems (no data rows, wrong template)
   abort the run.

2) Validating (``resolve_rows``)
   Therapy types are fetched ONCE for the user. Each row's label is matched
   case-insensitively and exactly against their names. Unknown or ambiguous
   labels produce one warning naming the label and the row is skipped; no
   therapy type is ever guessed or created. Revenue is the row's own amount
   when present, otherwise ``sessions x price_per_session`` at import time.

3) Aggregating (``aggregate_rows``)
   Validated rows are summed per (month, therapy type). Summation is
   commutative, so the result does not depend on row order. Rows with zero
   sessions still create their aggregate.

4) Persisting (``persist_aggregates``)
   Each aggregate is upserted independently: the matching monthly plan's
   actual sessions are OVERWRITTEN with the aggregate (so re-importing the
   same file is idempotent), or a new plan with ``planned_sessions = 0`` is
   inserted. A failed lookup, update or insert is recorded with its month
   and therapy type id and the remaining aggregates are still processed.

Error taxonomy
--------------
- Fatal (missing identity, unreadable/empty file, wrong template, store
  failure while fetching therapy types): the run stops before persisting and
  returns ``success=False`` with every row counted as skipped.
- Row-level errors and resolution warnings: accumulated, never raised.
- Persistence errors: accumulated per aggregate; ``success=False`` but the
  run still completes and reports what was written.

Concurrent imports for the same user are not coordinated: the last write to
a monthly plan wins.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any, Literal, Optional

from .auth import Identity
from .db import DatabaseConfig, ImportedInvoice, TherapyTypeReference
from .db import find_imported_invoices as _db_find_imported_invoices
from .db import get_monthly_plan as _db_get_monthly_plan
from .db import insert_monthly_plan as _db_insert_monthly_plan
from .db import list_therapy_types as _db_list_therapy_types
from .db import record_imported_invoices as _db_record_imported_invoices
from .db import update_monthly_plan_actuals as _db_update_monthly_plan_actuals
from .io import (
    ImportIssue,
    ImportRow,
    ParseError,
    format_cents,
    read_session_export,
)
from .mapping import ColumnMapping, get_column_mapping
from .periods import month_key, month_start

if TYPE_CHECKING:
    from .config import AppConfig

logger = logging.getLogger(__name__)

ImportStage = Literal[
    "authenticating",
    "parsing",
    "validating",
    "aggregating",
    "persisting",
    "completed",
]

IMPORT_NOTE = "Imported from practice software"

# Failures the store can raise: SQLite errors, an unusable database path
# (init_database creates parent directories) and an unsupported engine.
STORE_ERRORS = (sqlite3.Error, OSError, ValueError)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidatedRow:
    """An ImportRow resolved to a therapy type, with its revenue fixed."""

    row: ImportRow
    therapy_type: TherapyTypeReference
    revenue_cents: int


@dataclass
class ResolutionOutcome:
    """Output of ``resolve_rows``."""

    rows: list[ValidatedRow] = field(default_factory=list)
    warnings: list[ImportIssue] = field(default_factory=list)
    missing_therapy_types: set[str] = field(default_factory=set)


@dataclass
class MonthlyAggregate:
    """Session and revenue totals for one (month, therapy type) key."""

    month: date
    therapy_type_id: str
    planned_sessions: int = 0
    actual_sessions: int = 0
    revenue_cents: int = 0
    rows: list[int] = field(default_factory=list)

    @property
    def key(self) -> tuple[date, str]:
        return (self.month, self.therapy_type_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "month": month_key(self.month),
            "therapy_type_id": self.therapy_type_id,
            "planned_sessions": self.planned_sessions,
            "actual_sessions": self.actual_sessions,
            "revenue": self.revenue_cents / 100.0,
        }


@dataclass
class PersistOutcome:
    """Output of ``persist_aggregates``."""

    persisted: list[MonthlyAggregate] = field(default_factory=list)
    failed: list[MonthlyAggregate] = field(default_factory=list)
    errors: list[ImportIssue] = field(default_factory=list)


@dataclass
class ImportResult:
    """
    Outcome of one import run.

    ``to_dict()`` returns the JSON contract:
    ``{success, imported_count, skipped_count, errors, warnings}``.
    The remaining attributes are for in-process callers (CLI, tests).
    """

    success: bool
    imported_count: int
    skipped_count: int
    errors: list[ImportIssue] = field(default_factory=list)
    warnings: list[ImportIssue] = field(default_factory=list)
    stage: ImportStage = "completed"
    aggregates: list[MonthlyAggregate] = field(default_factory=list)
    missing_therapy_types: list[str] = field(default_factory=list)

    @classmethod
    def failed(
        cls,
        message: str,
        *,
        stage: ImportStage,
        skipped_count: int,
    ) -> ImportResult:
        """A fatal result: nothing imported, every row skipped."""
        return cls(
            success=False,
            imported_count=0,
            skipped_count=skipped_count,
            errors=[ImportIssue(row=0, message=message)],
            stage=stage,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "imported_count": self.imported_count,
            "skipped_count": self.skipped_count,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass(frozen=True)
class ImportPreview:
    """Summary of a parsed file, computed without touching the store."""

    valid_rows: int
    invalid_rows: int
    therapy_types_found: list[str]
    date_range: Optional[tuple[date, date]]
    total_sessions: int
    total_revenue_cents: int
    sample_rows: list[ImportRow]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid_rows": self.valid_rows,
            "invalid_rows": self.invalid_rows,
            "therapy_types_found": self.therapy_types_found,
            "date_range": (
                None
                if self.date_range is None
                else {
                    "start": self.date_range[0].isoformat(),
                    "end": self.date_range[1].isoformat(),
                }
            ),
            "total_sessions": self.total_sessions,
            "total_revenue": self.total_revenue_cents / 100.0,
            "sample_rows": [
                {
                    "date": r.date.isoformat(),
                    "therapy_type": r.therapy_type_label,
                    "sessions": r.session_count,
                    "revenue": (
                        None if r.revenue_cents is None else r.revenue_cents / 100.0
                    ),
                }
                for r in self.sample_rows
            ],
        }


# ---------------------------------------------------------------------------
# Stage 2: validation
# ---------------------------------------------------------------------------


def _label_key(label: str) -> str:
    return label.strip().lower()


def check_therapy_type_labels(
    labels: Iterable[str],
    references: Sequence[TherapyTypeReference],
) -> dict[str, list[str]]:
    """
    Split labels into those that match a therapy type and those that do not.

    Returns ``{"missing": [...], "existing": [...]}`` in first-seen order,
    without duplicates.
    """
    known = {_label_key(t.name) for t in references}
    missing: list[str] = []
    existing: list[str] = []
    seen: set[str] = set()
    for label in labels:
        if label in seen:
            continue
        seen.add(label)
        (existing if _label_key(label) in known else missing).append(label)
    return {"missing": missing, "existing": existing}


def resolve_rows(
    rows: Sequence[ImportRow],
    references: Sequence[TherapyTypeReference],
    *,
    warn_on_revenue_mismatch: bool = True,
) -> ResolutionOutcome:
    """
    Resolve each row's therapy-type label and fix its revenue.

    Parameters
    ----------
    rows:
        Parsed rows.
    references:
        Snapshot of the user's therapy types (fetched once per run).
    warn_on_revenue_mismatch:
        Add a warning when a row's explicit amount differs from
        sessions x price. The explicit amount is used either way.

    Returns
    -------
    ResolutionOutcome
        Validated rows, warnings, and the set of unknown labels.
    """
    by_name: dict[str, list[TherapyTypeReference]] = {}
    for ref in references:
        by_name.setdefault(_label_key(ref.name), []).append(ref)

    outcome = ResolutionOutcome()

    for row in rows:
        label = row.therapy_type_label
        matches = by_name.get(_label_key(label), [])

        if not matches:
            outcome.missing_therapy_types.add(label)
            outcome.warnings.append(
                ImportIssue(
                    row=row.row,
                    message=(
                        f'Therapy type "{label}" not found. Please create it first '
                        "in therapy management."
                    ),
                    data={"therapy_type": label},
                    severity="warning",
                )
            )
            continue

        if len(matches) > 1:
            names = ", ".join(f'"{m.name}"' for m in matches)
            outcome.warnings.append(
                ImportIssue(
                    row=row.row,
                    message=(
                        f'Therapy type "{label}" is ambiguous: it matches {names}. '
                        "Rename one of them to import this row."
                    ),
                    data={"therapy_type": label, "candidates": [m.id for m in matches]},
                    severity="warning",
                )
            )
            continue

        therapy_type = matches[0]
        computed_cents = row.session_count * therapy_type.price_per_session_cents

        if row.revenue_cents is None:
            revenue_cents = computed_cents
        else:
            revenue_cents = row.revenue_cents
            if warn_on_revenue_mismatch and revenue_cents != computed_cents:
                price = format_cents(therapy_type.price_per_session_cents)
                outcome.warnings.append(
                    ImportIssue(
                        row=row.row,
                        message=(
                            f"Amount {format_cents(revenue_cents)} differs from "
                            f"{row.session_count} x {price} = "
                            f'{format_cents(computed_cents)} for "{therapy_type.name}"; '
                            "the amount from the file is used."
                        ),
                        data={
                            "amount": revenue_cents / 100.0,
                            "computed": computed_cents / 100.0,
                        },
                        severity="warning",
                    )
                )

        outcome.rows.append(
            ValidatedRow(row=row, therapy_type=therapy_type, revenue_cents=revenue_cents)
        )

    return outcome


# ---------------------------------------------------------------------------
# Stage 3: aggregation
# ---------------------------------------------------------------------------


def aggregate_rows(rows: Iterable[ValidatedRow]) -> dict[tuple[date, str], MonthlyAggregate]:
    """
    Sum validated rows per (first-of-month, therapy type id).

    The returned dict is ordered by key and each aggregate's row list is
    sorted, so the output is identical for any ordering of ``rows``.
    """
    aggregates: dict[tuple[date, str], MonthlyAggregate] = {}

    for validated in rows:
        key = (month_start(validated.row.date), validated.therapy_type.id)
        agg = aggregates.get(key)
        if agg is None:
            agg = MonthlyAggregate(month=key[0], therapy_type_id=key[1])
            aggregates[key] = agg
        agg.actual_sessions += validated.row.session_count
        agg.revenue_cents += validated.revenue_cents
        agg.rows.append(validated.row.row)

    for agg in aggregates.values():
        agg.rows.sort()

    return dict(sorted(aggregates.items()))


# ---------------------------------------------------------------------------
# Stage 4: persistence
# ---------------------------------------------------------------------------


def _persist_error(
    agg: MonthlyAggregate, operation: str, message: str
) -> ImportIssue:
    logger.warning(
        "Monthly plan %s failed for month=%s therapy_type_id=%s: %s",
        operation,
        month_key(agg.month),
        agg.therapy_type_id,
        message,
    )
    return ImportIssue(
        row=0,
        message=message,
        data={
            "month": month_key(agg.month),
            "therapy_type_id": agg.therapy_type_id,
            "operation": operation,
            "rows": list(agg.rows),
        },
    )


def persist_aggregates(
    aggregates: Iterable[MonthlyAggregate],
    *,
    db_config: DatabaseConfig,
    user_id: str,
) -> PersistOutcome:
    """
    Upsert one monthly plan per aggregate, each as an independent operation.

    Existing plans get their actual sessions and revenue snapshot overwritten;
    planned sessions are never touched. Missing plans are inserted with
    ``planned_sessions = 0``.
    """
    outcome = PersistOutcome()

    for agg in aggregates:
        try:
            existing = _db_get_monthly_plan(
                db_config,
                user_id=user_id,
                therapy_type_id=agg.therapy_type_id,
                month=agg.month,
            )
        except STORE_ERRORS as exc:
            outcome.errors.append(
                _persist_error(agg, "lookup", f"Error checking monthly plan: {exc}")
            )
            outcome.failed.append(agg)
            continue

        if existing is not None:
            try:
                _db_update_monthly_plan_actuals(
                    db_config,
                    existing.id,
                    user_id=user_id,
                    actual_sessions=agg.actual_sessions,
                    actual_revenue_cents=agg.revenue_cents,
                )
            except STORE_ERRORS + (LookupError,) as exc:
                outcome.errors.append(
                    _persist_error(agg, "update", f"Error updating monthly plan: {exc}")
                )
                outcome.failed.append(agg)
                continue
            agg.planned_sessions = existing.planned_sessions
        else:
            try:
                _db_insert_monthly_plan(
                    db_config,
                    user_id=user_id,
                    therapy_type_id=agg.therapy_type_id,
                    month=agg.month,
                    planned_sessions=0,
                    actual_sessions=agg.actual_sessions,
                    actual_revenue_cents=agg.revenue_cents,
                    notes=IMPORT_NOTE,
                )
            except STORE_ERRORS as exc:
                outcome.errors.append(
                    _persist_error(agg, "insert", f"Error creating monthly plan: {exc}")
                )
                outcome.failed.append(agg)
                continue

        outcome.persisted.append(agg)

    return outcome


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


def _enter(stage: ImportStage) -> ImportStage:
    logger.info("Import stage: %s", stage)
    return stage


def import_session_rows(
    rows: Sequence[ImportRow],
    *,
    db_config: DatabaseConfig,
    user_id: str,
    prior_errors: Sequence[ImportIssue] = (),
    prior_warnings: Sequence[ImportIssue] = (),
    prior_skipped: int = 0,
    warn_on_revenue_mismatch: bool = True,
) -> ImportResult:
    """
    Validate, aggregate and persist already-parsed rows.

    ``prior_*`` carry the parser's row-level errors, warnings and skipped
    count so that they are reported in the same result.
    """
    total_rows = prior_skipped + len(rows)

    if not user_id:
        return ImportResult.failed(
            "Authentication required.", stage="authenticating", skipped_count=total_rows
        )

    errors = list(prior_errors)
    warnings = list(prior_warnings)

    # Validating: one reference fetch for the whole run.
    stage = _enter("validating")
    try:
        references = _db_list_therapy_types(db_config, user_id)
    except STORE_ERRORS as exc:
        logger.error("Could not load therapy types: %s", exc)
        return ImportResult.failed(
            f"Database error: {exc}", stage=stage, skipped_count=total_rows
        )

    resolution = resolve_rows(
        rows, references, warn_on_revenue_mismatch=warn_on_revenue_mismatch
    )
    warnings.extend(resolution.warnings)

    invoice_numbers = [v.row.invoice_number for v in resolution.rows if v.row.invoice_number]
    try:
        already_imported = _db_find_imported_invoices(db_config, user_id, invoice_numbers)
    except STORE_ERRORS as exc:
        logger.warning("Could not check previously imported invoices: %s", exc)
        already_imported = set()
        warnings.append(
            ImportIssue(
                row=0,
                message=f"Could not check previously imported invoices: {exc}",
                severity="warning",
            )
        )
    if already_imported:
        warnings.append(
            ImportIssue(
                row=0,
                message=(
                    f"{len(already_imported)} invoice(s) were already imported by an "
                    "earlier run; actual sessions for their months are replaced by "
                    "this file's totals."
                ),
                data={"invoice_numbers": sorted(already_imported)},
                severity="warning",
            )
        )

    # Aggregating
    stage = _enter("aggregating")
    aggregates = aggregate_rows(resolution.rows)

    # Persisting
    stage = _enter("persisting")
    persisted = persist_aggregates(
        aggregates.values(), db_config=db_config, user_id=user_id
    )
    errors.extend(persisted.errors)

    persisted_keys = {agg.key for agg in persisted.persisted}
    new_invoices = [
        ImportedInvoice(
            invoice_number=v.row.invoice_number,
            invoice_date=v.row.date,
            amount_cents=v.revenue_cents,
            therapy_type_id=v.therapy_type.id,
        )
        for v in resolution.rows
        if v.row.invoice_number
        and (month_start(v.row.date), v.therapy_type.id) in persisted_keys
    ]
    recording_failed = False
    try:
        _db_record_imported_invoices(db_config, user_id, new_invoices)
    except STORE_ERRORS as exc:
        logger.warning("Could not record imported invoices: %s", exc)
        recording_failed = True
        errors.append(
            ImportIssue(row=0, message=f"Error recording imported invoices: {exc}")
        )

    imported_count = sum(len(agg.rows) for agg in persisted.persisted)

    stage = _enter("completed")
    result = ImportResult(
        success=not (persisted.errors or recording_failed),
        imported_count=imported_count,
        skipped_count=total_rows - imported_count,
        errors=errors,
        warnings=warnings,
        stage=stage,
        aggregates=persisted.persisted,
        missing_therapy_types=sorted(resolution.missing_therapy_types, key=str.lower),
    )
    logger.info(
        "Import finished: success=%s imported=%d skipped=%d errors=%d warnings=%d",
        result.success,
        result.imported_count,
        result.skipped_count,
        len(result.errors),
        len(result.warnings),
    )
    return result


def _mapping_for(vendor_format: Optional[str], app_config: AppConfig) -> ColumnMapping:
    return get_column_mapping(vendor_format or app_config.import_options.vendor_format)


def run_session_import(
    data: bytes,
    *,
    app_config: AppConfig,
    identity: Optional[Identity],
    vendor_format: Optional[str] = None,
    file_format: str = "xlsx",
) -> ImportResult:
    """
    Import a practice-software export into the user's monthly plans.

    Parameters
    ----------
    data:
        Raw file content. Size and type are checked by the caller.
    app_config:
        Application configuration (database and import options).
    identity:
        The caller. ``None`` aborts the run before anything is read.
    vendor_format:
        Column mapping name; defaults to ``[import].vendor_format``.
    file_format:
        'xlsx' or 'csv'.

    Returns
    -------
    ImportResult
        Never raises for data problems; see the module docstring for the
        error taxonomy.
    """
    if identity is None or not identity.user_id:
        return ImportResult.failed(
            "Authentication required.", stage="authenticating", skipped_count=0
        )

    options = app_config.import_options
    mapping = _mapping_for(vendor_format, app_config)

    stage = _enter("parsing")
    try:
        parsed = read_session_export(
            data,
            mapping,
            file_format=file_format,
            csv_delimiter=options.csv_delimiter,
        )
    except ParseError as exc:
        logger.error("Import aborted while parsing: %s", exc)
        return ImportResult.failed(str(exc), stage=stage, skipped_count=exc.row_count)

    return import_session_rows(
        parsed.rows,
        db_config=app_config.database,
        user_id=identity.user_id,
        prior_errors=parsed.errors,
        prior_warnings=parsed.warnings,
        prior_skipped=parsed.skipped_count,
        warn_on_revenue_mismatch=options.warn_on_revenue_mismatch,
    )


def preview_session_import(
    data: bytes,
    mapping: ColumnMapping,
    *,
    file_format: str = "xlsx",
    csv_delimiter: str = ",",
    sample_size: int = 5,
) -> ImportPreview:
    """
    Parse a file and summarize it without touching the store.

    Raises
    ------
    ParseError
        Same conditions as ``read_session_export``.
    """
    parsed = read_session_export(
        data, mapping, file_format=file_format, csv_delimiter=csv_delimiter
    )
    rows = parsed.rows

    labels: list[str] = []
    for r in rows:
        if r.therapy_type_label not in labels:
            labels.append(r.therapy_type_label)

    date_range = None
    if rows:
        dates = [r.date for r in rows]
        date_range = (min(dates), max(dates))

    return ImportPreview(
        valid_rows=len(rows),
        invalid_rows=len(parsed.errors),
        therapy_types_found=labels,
        date_range=date_range,
        total_sessions=sum(r.session_count for r in rows),
        total_revenue_cents=sum(r.revenue_cents or 0 for r in rows),
        sample_rows=rows[:sample_size],
    )
