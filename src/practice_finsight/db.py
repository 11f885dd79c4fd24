# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Database layer for Practice FinSight.

This module provides all low-level accessors for the SQLite database that
stands in for the practice's relational data store. It is responsible for:

- Initializing the database schema.
- Reading and creating therapy types (the reference data used by imports).
- Looking up, updating and inserting monthly plans.
- Recording imported invoice numbers for the import history.

Every read and write is scoped by the owning ``user_id``. The identity itself
is resolved by ``auth.py``; this module never assumes a default user.

------------------------------------------------------------------------------
Schema Overview
------------------------------------------------------------------------------

1) therapy_types
   One row per billable service category.

   Columns:
   - id                       TEXT    PRIMARY KEY  -- uuid4 hex string
   - user_id                  TEXT    NOT NULL
   - name                     TEXT    NOT NULL     -- canonical label
   - price_per_session_cents  INTEGER NOT NULL     -- > 0
   - created_at               TEXT    NOT NULL     -- ISO datetime, UTC
   - updated_at               TEXT    NOT NULL


2) monthly_plans
   Planned vs. actual sessions for one therapy type in one calendar month.

   Columns:
   - id                    TEXT    PRIMARY KEY
   - user_id               TEXT    NOT NULL
   - therapy_type_id       TEXT    NOT NULL  -- FK therapy_types.id
   - month                 TEXT    NOT NULL  -- first day of month 'YYYY-MM-01'
   - planned_sessions      INTEGER NOT NULL  -- >= 0
   - actual_sessions       INTEGER           -- >= 0, NULL until known
   - actual_revenue_cents  INTEGER           -- revenue snapshot of the last import
   - notes                 TEXT
   - created_at            TEXT    NOT NULL
   - updated_at            TEXT    NOT NULL

   UNIQUE(user_id, therapy_type_id, month)


3) imported_invoices
   Invoice numbers seen by imports, used for the import history and to
   report re-imported invoices.

   Columns:
   - id               TEXT    PRIMARY KEY
   - user_id          TEXT    NOT NULL
   - invoice_number   TEXT    NOT NULL
   - invoice_date     TEXT    NOT NULL  -- ISO date
   - amount_cents     INTEGER NOT NULL
   - therapy_type_id  TEXT              -- FK therapy_types.id
   - created_at       TEXT    NOT NULL

   UNIQUE(user_id, invoice_number)

------------------------------------------------------------------------------
SQLite Notes
------------------------------------------------------------------------------

- All monetary amounts are stored as integer cents.
- All timestamps are stored as ISO-8601 text (UTC).
- Foreign key enforcement is explicitly enabled.
- Each public function opens, commits and closes its own connection. Callers
  that need independent operations (e.g. one upsert per monthly plan) get
  them by calling these functions one at a time.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path

import pandas as pd

# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """
    Database configuration for Practice FinSight.

    Attributes
    ----------
    engine:
        Database engine identifier. Only "sqlite" is supported.
    path:
        Path to the SQLite database file.
    """

    engine: str
    path: Path


@dataclass(frozen=True)
class TherapyTypeReference:
    """
    A therapy type as read from the store.

    Imports resolve vendor labels against ``name`` (case-insensitive) and use
    ``price_per_session_cents`` to compute revenue when a row has none.
    """

    id: str
    user_id: str
    name: str
    price_per_session_cents: int

    @property
    def price_per_session(self) -> float:
        return self.price_per_session_cents / 100.0


@dataclass(frozen=True)
class MonthlyPlan:
    """Persisted planned/actual session counts for one therapy type and month."""

    id: str
    user_id: str
    therapy_type_id: str
    month: date
    planned_sessions: int
    actual_sessions: int | None
    actual_revenue_cents: int | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ImportedInvoice:
    """An invoice number recorded by an import run."""

    invoice_number: str
    invoice_date: date
    amount_cents: int
    therapy_type_id: str | None


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _ensure_sqlite(cfg: DatabaseConfig) -> None:
    """Raise if the configuration does not refer to a supported engine."""
    if cfg.engine.lower() != "sqlite":
        msg = (
            f"Unsupported database engine: {cfg.engine!r}. "
            "Only 'sqlite' is supported for now."
        )
        raise ValueError(msg)


def _connect(cfg: DatabaseConfig) -> sqlite3.Connection:
    """
    Open a SQLite connection with foreign keys enabled.

    The caller is responsible for closing the connection.
    """
    _ensure_sqlite(cfg)
    conn = sqlite3.connect(cfg.path)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _create_schema_if_needed(conn: sqlite3.Connection) -> None:
    """
    Create tables and indexes if they do not exist yet.

    This function is idempotent and can be called multiple times safely.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS therapy_types (
            id                      TEXT    PRIMARY KEY,
            user_id                 TEXT    NOT NULL,
            name                    TEXT    NOT NULL,
            price_per_session_cents INTEGER NOT NULL
                CHECK (price_per_session_cents > 0),
            created_at              TEXT    NOT NULL,
            updated_at              TEXT    NOT NULL
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monthly_plans (
            id                   TEXT    PRIMARY KEY,
            user_id              TEXT    NOT NULL,
            therapy_type_id      TEXT    NOT NULL,
            month                TEXT    NOT NULL,  -- 'YYYY-MM-01'
            planned_sessions     INTEGER NOT NULL DEFAULT 0
                CHECK (planned_sessions >= 0),
            actual_sessions      INTEGER CHECK (actual_sessions >= 0),
            actual_revenue_cents INTEGER,
            notes                TEXT,
            created_at           TEXT    NOT NULL,
            updated_at           TEXT    NOT NULL,

            UNIQUE (user_id, therapy_type_id, month),
            FOREIGN KEY (therapy_type_id) REFERENCES therapy_types(id)
                ON DELETE CASCADE
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS imported_invoices (
            id              TEXT    PRIMARY KEY,
            user_id         TEXT    NOT NULL,
            invoice_number  TEXT    NOT NULL,
            invoice_date    TEXT    NOT NULL,
            amount_cents    INTEGER NOT NULL,
            therapy_type_id TEXT,
            created_at      TEXT    NOT NULL,

            UNIQUE (user_id, invoice_number),
            FOREIGN KEY (therapy_type_id) REFERENCES therapy_types(id)
                ON DELETE SET NULL
        );
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_therapy_types_user_id
            ON therapy_types(user_id);
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_monthly_plans_user_id_month
            ON monthly_plans(user_id, month);
        """
    )

    conn.commit()


def _now_utc_iso() -> str:
    """Return the current UTC datetime as ISO string."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _new_id() -> str:
    return uuid.uuid4().hex


def _to_iso_month(month: date) -> str:
    """Convert a first-of-month date to its stored 'YYYY-MM-01' form."""
    if month.day != 1:
        raise ValueError(f"Month keys must be the first day of a month, got {month}.")
    return month.isoformat()


def _require_user(user_id: str) -> None:
    if not user_id:
        raise ValueError("A user_id is required for every store operation.")


def _row_to_monthly_plan(row: tuple) -> MonthlyPlan:
    (
        plan_id,
        user_id,
        therapy_type_id,
        month_raw,
        planned_sessions,
        actual_sessions,
        actual_revenue_cents,
        notes,
        created_at_raw,
        updated_at_raw,
    ) = row

    return MonthlyPlan(
        id=plan_id,
        user_id=user_id,
        therapy_type_id=therapy_type_id,
        month=date.fromisoformat(month_raw),
        planned_sessions=int(planned_sessions),
        actual_sessions=None if actual_sessions is None else int(actual_sessions),
        actual_revenue_cents=(
            None if actual_revenue_cents is None else int(actual_revenue_cents)
        ),
        notes=notes,
        created_at=datetime.fromisoformat(created_at_raw),
        updated_at=datetime.fromisoformat(updated_at_raw),
    )


_MONTHLY_PLAN_COLUMNS = """
    id, user_id, therapy_type_id, month,
    planned_sessions, actual_sessions, actual_revenue_cents,
    notes, created_at, updated_at
"""


# ---------------------------------------------------------------------------
# Public API: schema
# ---------------------------------------------------------------------------


def init_database(cfg: DatabaseConfig) -> None:
    """
    Initialize the database schema if needed.

    - Creates the SQLite file (and its parent directory) if it does not exist.
    - Creates tables and indexes if they are missing.
    - This function is idempotent: calling it multiple times is safe.

    Raises
    ------
    ValueError
        If cfg.engine is not supported.
    sqlite3.Error
        If schema creation fails.
    """
    cfg.path.parent.mkdir(parents=True, exist_ok=True)

    conn = _connect(cfg)
    try:
        _create_schema_if_needed(conn)
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Public API: therapy types
# ---------------------------------------------------------------------------


def insert_therapy_type(
    cfg: DatabaseConfig,
    *,
    user_id: str,
    name: str,
    price_per_session_cents: int,
) -> TherapyTypeReference:
    """
    Create a new therapy type for a user.

    Raises
    ------
    ValueError
        If the name is empty or the price is not strictly positive.
    """
    _require_user(user_id)
    clean_name = name.strip()
    if not clean_name:
        raise ValueError("Therapy type name cannot be empty.")
    if price_per_session_cents <= 0:
        raise ValueError("Price per session must be greater than zero.")

    init_database(cfg)

    therapy_type_id = _new_id()
    now_iso = _now_utc_iso()

    conn = _connect(cfg)
    try:
        conn.execute(
            """
            INSERT INTO therapy_types (
                id, user_id, name, price_per_session_cents, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                therapy_type_id,
                user_id,
                clean_name,
                int(price_per_session_cents),
                now_iso,
                now_iso,
            ),
        )
        conn.commit()
    finally:
        conn.close()

    return TherapyTypeReference(
        id=therapy_type_id,
        user_id=user_id,
        name=clean_name,
        price_per_session_cents=int(price_per_session_cents),
    )


def list_therapy_types(cfg: DatabaseConfig, user_id: str) -> list[TherapyTypeReference]:
    """
    Return all therapy types owned by ``user_id``, ordered by name.

    This is the single reference fetch performed once per import run.
    """
    _require_user(user_id)
    init_database(cfg)

    conn = _connect(cfg)
    try:
        cur = conn.execute(
            """
            SELECT id, user_id, name, price_per_session_cents
              FROM therapy_types
             WHERE user_id = ?
             ORDER BY name COLLATE NOCASE, id;
            """,
            (user_id,),
        )
        rows = cur.fetchall()
    finally:
        conn.close()

    return [
        TherapyTypeReference(
            id=row[0],
            user_id=row[1],
            name=row[2],
            price_per_session_cents=int(row[3]),
        )
        for row in rows
    ]


# ---------------------------------------------------------------------------
# Public API: monthly plans
# ---------------------------------------------------------------------------


def get_monthly_plan(
    cfg: DatabaseConfig,
    *,
    user_id: str,
    therapy_type_id: str,
    month: date,
) -> MonthlyPlan | None:
    """Return the monthly plan for (user, therapy type, month), or None."""
    _require_user(user_id)
    init_database(cfg)

    conn = _connect(cfg)
    try:
        cur = conn.execute(
            f"""
            SELECT {_MONTHLY_PLAN_COLUMNS}
              FROM monthly_plans
             WHERE user_id = ?
               AND therapy_type_id = ?
               AND month = ?;
            """,
            (user_id, therapy_type_id, _to_iso_month(month)),
        )
        row = cur.fetchone()
    finally:
        conn.close()

    if row is None:
        return None
    return _row_to_monthly_plan(row)


def update_monthly_plan_actuals(
    cfg: DatabaseConfig,
    plan_id: str,
    *,
    user_id: str,
    actual_sessions: int,
    actual_revenue_cents: int | None,
) -> None:
    """
    Overwrite the actual sessions (and revenue snapshot) of an existing plan.

    Planned sessions are left untouched.

    Raises
    ------
    ValueError
        If ``actual_sessions`` is negative.
    LookupError
        If no plan with this id exists for ``user_id``.
    """
    _require_user(user_id)
    if actual_sessions < 0:
        raise ValueError("actual_sessions cannot be negative.")

    init_database(cfg)

    conn = _connect(cfg)
    try:
        cur = conn.execute(
            """
            UPDATE monthly_plans
               SET actual_sessions = ?,
                   actual_revenue_cents = ?,
                   updated_at = ?
             WHERE id = ?
               AND user_id = ?;
            """,
            (
                int(actual_sessions),
                actual_revenue_cents,
                _now_utc_iso(),
                plan_id,
                user_id,
            ),
        )
        updated = cur.rowcount
        conn.commit()
    finally:
        conn.close()

    if updated == 0:
        raise LookupError(f"Monthly plan {plan_id!r} not found for this user.")


def insert_monthly_plan(
    cfg: DatabaseConfig,
    *,
    user_id: str,
    therapy_type_id: str,
    month: date,
    planned_sessions: int = 0,
    actual_sessions: int | None = None,
    actual_revenue_cents: int | None = None,
    notes: str | None = None,
) -> MonthlyPlan:
    """
    Insert a new monthly plan.

    Raises
    ------
    sqlite3.IntegrityError
        If a plan already exists for (user, therapy type, month) or the
        therapy type does not exist.
    """
    _require_user(user_id)
    if planned_sessions < 0:
        raise ValueError("planned_sessions cannot be negative.")
    if actual_sessions is not None and actual_sessions < 0:
        raise ValueError("actual_sessions cannot be negative.")

    init_database(cfg)

    plan_id = _new_id()
    now_iso = _now_utc_iso()

    conn = _connect(cfg)
    try:
        conn.execute(
            """
            INSERT INTO monthly_plans (
                id, user_id, therapy_type_id, month,
                planned_sessions, actual_sessions, actual_revenue_cents,
                notes, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                plan_id,
                user_id,
                therapy_type_id,
                _to_iso_month(month),
                int(planned_sessions),
                actual_sessions,
                actual_revenue_cents,
                notes,
                now_iso,
                now_iso,
            ),
        )
        conn.commit()
    finally:
        conn.close()

    plan = get_monthly_plan(
        cfg, user_id=user_id, therapy_type_id=therapy_type_id, month=month
    )
    if plan is None:
        msg = f"Monthly plan {plan_id!r} was just inserted but could not be reloaded."
        raise RuntimeError(msg)
    return plan


def set_planned_sessions(
    cfg: DatabaseConfig,
    *,
    user_id: str,
    therapy_type_id: str,
    month: date,
    planned_sessions: int,
) -> MonthlyPlan:
    """
    Create or update the planned sessions for (user, therapy type, month).

    Actual sessions written by imports are preserved.
    """
    existing = get_monthly_plan(
        cfg, user_id=user_id, therapy_type_id=therapy_type_id, month=month
    )
    if existing is None:
        return insert_monthly_plan(
            cfg,
            user_id=user_id,
            therapy_type_id=therapy_type_id,
            month=month,
            planned_sessions=planned_sessions,
        )

    if planned_sessions < 0:
        raise ValueError("planned_sessions cannot be negative.")

    conn = _connect(cfg)
    try:
        conn.execute(
            """
            UPDATE monthly_plans
               SET planned_sessions = ?,
                   updated_at = ?
             WHERE id = ?
               AND user_id = ?;
            """,
            (int(planned_sessions), _now_utc_iso(), existing.id, user_id),
        )
        conn.commit()
    finally:
        conn.close()

    plan = get_monthly_plan(
        cfg, user_id=user_id, therapy_type_id=therapy_type_id, month=month
    )
    if plan is None:
        raise RuntimeError(f"Monthly plan {existing.id!r} vanished during update.")
    return plan


def load_monthly_plans(
    cfg: DatabaseConfig,
    user_id: str,
    start: date,
    end: date,
) -> pd.DataFrame:
    """
    Load monthly plans for a user whose month falls within [start, end].

    Returns
    -------
    pandas.DataFrame
        Columns:
        - month (datetime64[ns], first day of month)
        - therapy_type_id (str)
        - therapy_type (str, name)
        - price_per_session (float)
        - planned_sessions (int)
        - actual_sessions (float, NaN when unknown)
        - actual_revenue (float, NaN when unknown)

        'actual_revenue' is reconstructed from `actual_revenue_cents / 100.0`.
    """
    _require_user(user_id)
    init_database(cfg)

    columns = [
        "month",
        "therapy_type_id",
        "therapy_type",
        "price_per_session",
        "planned_sessions",
        "actual_sessions",
        "actual_revenue",
    ]

    conn = _connect(cfg)
    try:
        cur = conn.execute(
            """
            SELECT
                p.month,
                p.therapy_type_id,
                t.name,
                t.price_per_session_cents,
                p.planned_sessions,
                p.actual_sessions,
                p.actual_revenue_cents
              FROM monthly_plans AS p
              JOIN therapy_types AS t ON t.id = p.therapy_type_id
             WHERE p.user_id = ?
               AND p.month >= ?
               AND p.month <= ?
             ORDER BY p.month ASC, t.name COLLATE NOCASE ASC;
            """,
            (user_id, start.replace(day=1).isoformat(), end.isoformat()),
        )
        rows = cur.fetchall()
    finally:
        conn.close()

    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(rows, columns=columns)
    df["month"] = pd.to_datetime(df["month"])
    df["price_per_session"] = df["price_per_session"] / 100.0
    df["actual_sessions"] = pd.to_numeric(df["actual_sessions"], errors="coerce")
    df["actual_revenue"] = pd.to_numeric(df["actual_revenue"], errors="coerce") / 100.0
    return df


# ---------------------------------------------------------------------------
# Public API: imported invoices
# ---------------------------------------------------------------------------


def find_imported_invoices(
    cfg: DatabaseConfig,
    user_id: str,
    invoice_numbers: Iterable[str],
) -> set[str]:
    """Return the subset of ``invoice_numbers`` already recorded for the user."""
    _require_user(user_id)
    numbers = sorted({n for n in invoice_numbers if n})
    if not numbers:
        return set()

    init_database(cfg)

    found: set[str] = set()
    conn = _connect(cfg)
    try:
        # Chunked to stay under SQLite's host parameter limit.
        for offset in range(0, len(numbers), 500):
            chunk = numbers[offset : offset + 500]
            placeholders = ", ".join("?" for _ in chunk)
            cur = conn.execute(
                f"""
                SELECT invoice_number
                  FROM imported_invoices
                 WHERE user_id = ?
                   AND invoice_number IN ({placeholders});
                """,
                (user_id, *chunk),
            )
            found.update(row[0] for row in cur.fetchall())
    finally:
        conn.close()

    return found


def record_imported_invoices(
    cfg: DatabaseConfig,
    user_id: str,
    invoices: Sequence[ImportedInvoice],
) -> int:
    """
    Record invoice numbers seen by an import.

    Invoices already recorded for the user are left unchanged.

    Returns
    -------
    int
        Number of newly recorded invoices.
    """
    _require_user(user_id)
    if not invoices:
        return 0

    init_database(cfg)

    now_iso = _now_utc_iso()
    inserted = 0
    conn = _connect(cfg)
    try:
        for inv in invoices:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO imported_invoices (
                    id, user_id, invoice_number, invoice_date,
                    amount_cents, therapy_type_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    _new_id(),
                    user_id,
                    inv.invoice_number,
                    inv.invoice_date.isoformat(),
                    int(inv.amount_cents),
                    inv.therapy_type_id,
                    now_iso,
                ),
            )
            inserted += cur.rowcount
        conn.commit()
    finally:
        conn.close()

    return inserted


def load_imported_invoices(cfg: DatabaseConfig, user_id: str) -> pd.DataFrame:
    """
    Return the invoices recorded for a user, newest first.

    Columns:
    - invoice_number
    - invoice_date (datetime64[ns])
    - amount (float)
    - therapy_type_id
    - therapy_type (name, None if the therapy type was deleted)
    - created_at (datetime64[ns, UTC])
    """
    _require_user(user_id)
    init_database(cfg)

    columns = [
        "invoice_number",
        "invoice_date",
        "amount",
        "therapy_type_id",
        "therapy_type",
        "created_at",
    ]

    conn = _connect(cfg)
    try:
        cur = conn.execute(
            """
            SELECT
                i.invoice_number,
                i.invoice_date,
                i.amount_cents,
                i.therapy_type_id,
                t.name,
                i.created_at
              FROM imported_invoices AS i
              LEFT JOIN therapy_types AS t ON t.id = i.therapy_type_id
             WHERE i.user_id = ?
             ORDER BY i.created_at DESC, i.invoice_number ASC;
            """,
            (user_id,),
        )
        rows = cur.fetchall()
    finally:
        conn.close()

    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(rows, columns=columns)
    df["invoice_date"] = pd.to_datetime(df["invoice_date"])
    df["amount"] = df["amount"] / 100.0
    df["created_at"] = pd.to_datetime(df["created_at"], utc=True)
    return df
