# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
High-level services for monthly plans and import history.

This module sits between:
- the low-level database helpers in `db.py`, and
- user-facing layers such as the CLI.

Responsibilities
----------------
1) Plan vs. actual
   - Load monthly plans for a reporting period.
   - Compute session variance (actual - planned) and revenue per row.
   - Summarize totals per therapy type.

2) Import history
   - Group recorded invoices by the day they were imported, newest first,
     with invoice count and total amount.

Design notes
------------
- Months without an imported actual keep ``actual_sessions`` as NaN rather
  than 0, so that "not imported yet" is distinguishable from "no sessions".
- This module orchestrates the database layer and period utilities but
  performs no writes.
"""

import pandas as pd

from .auth import Identity
from .config import AppConfig
from .db import load_imported_invoices as _db_load_imported_invoices
from .db import load_monthly_plans as _db_load_monthly_plans
from .periods import Period, filter_plans_by_period


def load_plan_vs_actual(
    app_config: AppConfig,
    identity: Identity,
    period: Period,
) -> pd.DataFrame:
    """
    Load planned vs. actual sessions for every (month, therapy type) plan in
    the period.

    Returns
    -------
    pandas.DataFrame
        Columns:
        - month (datetime64[ns])
        - therapy_type (str)
        - planned_sessions (int)
        - actual_sessions (float, NaN when not imported)
        - variance (float, actual - planned, NaN when not imported)
        - planned_revenue (float, planned x current price)
        - actual_revenue (float, revenue snapshot written by the import)
    """
    df = _db_load_monthly_plans(
        app_config.database, identity.user_id, period.start, period.end
    )
    columns = [
        "month",
        "therapy_type",
        "planned_sessions",
        "actual_sessions",
        "variance",
        "planned_revenue",
        "actual_revenue",
    ]
    if df.empty:
        return pd.DataFrame(columns=columns)

    df = filter_plans_by_period(df, period)
    df["variance"] = df["actual_sessions"] - df["planned_sessions"]
    df["planned_revenue"] = df["planned_sessions"] * df["price_per_session"]
    return df[columns].reset_index(drop=True)


def summarize_by_therapy_type(plan_vs_actual: pd.DataFrame) -> pd.DataFrame:
    """
    Total a plan-vs-actual table per therapy type.

    NaN actuals count as 0 in the totals. The result is sorted by therapy
    type name.
    """
    columns = [
        "therapy_type",
        "planned_sessions",
        "actual_sessions",
        "variance",
        "planned_revenue",
        "actual_revenue",
    ]
    if plan_vs_actual.empty:
        return pd.DataFrame(columns=columns)

    grouped = (
        plan_vs_actual.fillna(
            {"actual_sessions": 0, "actual_revenue": 0.0, "variance": 0}
        )
        .groupby("therapy_type", as_index=False)[
            ["planned_sessions", "actual_sessions", "planned_revenue", "actual_revenue"]
        ]
        .sum()
    )
    grouped["variance"] = grouped["actual_sessions"] - grouped["planned_sessions"]
    grouped = grouped.sort_values("therapy_type", key=lambda s: s.str.lower())
    return grouped[columns].reset_index(drop=True)


def get_import_history(app_config: AppConfig, identity: Identity) -> pd.DataFrame:
    """
    Group imported invoices by import day, newest first.

    Returns
    -------
    pandas.DataFrame
        Columns:
        - import_date (str, 'YYYY-MM-DD', UTC)
        - invoice_count (int)
        - total_amount (float)
        - therapy_types (str, comma-separated names)
    """
    columns = ["import_date", "invoice_count", "total_amount", "therapy_types"]

    invoices = _db_load_imported_invoices(app_config.database, identity.user_id)
    if invoices.empty:
        return pd.DataFrame(columns=columns)

    invoices = invoices.copy()
    invoices["import_date"] = invoices["created_at"].dt.strftime("%Y-%m-%d")
    invoices["therapy_type"] = invoices["therapy_type"].fillna("(deleted)")

    history = (
        invoices.groupby("import_date")
        .agg(
            invoice_count=("invoice_number", "count"),
            total_amount=("amount", "sum"),
            therapy_types=(
                "therapy_type",
                lambda s: ", ".join(sorted(set(s), key=str.lower)),
            ),
        )
        .reset_index()
        .sort_values("import_date", ascending=False)
        .reset_index(drop=True)
    )
    return history[columns]
