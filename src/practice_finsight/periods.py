# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Period helpers for Practice FinSight.

Monthly plans are keyed by the first day of their month. This module provides
the month arithmetic shared by the importer and the plan reports, and a
Period value object with helpers to derive reporting periods from CLI
arguments.
"""

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

import pandas as pd


@dataclass
class Period:
    """Represents a reporting period with a human-readable label."""

    start: date
    end: date
    label: str


def _today() -> date:
    """Return today's date as a date object (isolated for easier testing)."""
    return datetime.today().date()


def month_start(d: date) -> date:
    """Truncate a date to the first day of its month."""
    return d.replace(day=1)


def month_end(d: date) -> date:
    """Last day of the month containing ``d``."""
    return d.replace(day=monthrange(d.year, d.month)[1])


def month_key(d: date) -> str:
    """'YYYY-MM' label of the month containing ``d``."""
    return f"{d.year:04d}-{d.month:02d}"


def add_months(d: date, months: int) -> date:
    """Shift a first-of-month date by ``months`` (may be negative)."""
    index = d.year * 12 + (d.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def period_for_year(year: int) -> Period:
    """Full calendar year."""
    return Period(
        start=date(year, 1, 1),
        end=date(year, 12, 31),
        label=f"Year {year}",
    )


def period_last_months(months: int) -> Period:
    """The last ``months`` complete calendar months plus the current one."""
    if months < 0:
        raise ValueError("months cannot be negative.")
    today = _today()
    start = add_months(month_start(today), -months)
    return Period(
        start=start,
        end=month_end(today),
        label=f"Last {months} months",
    )


def determine_period_from_args(args) -> Period:
    """
    Determine the reporting period to use based on CLI args.

    Priority (highest to lowest):

        1. args.year
        2. args.last_months
        3. args.from_date / args.to_date (custom period)
        4. current calendar year by default
    """
    year: Optional[int] = getattr(args, "year", None)
    if year is not None:
        return period_for_year(year)

    last_months: Optional[int] = getattr(args, "last_months", None)
    if last_months is not None:
        return period_last_months(last_months)

    from_raw: Optional[str] = getattr(args, "from_date", None)
    to_raw: Optional[str] = getattr(args, "to_date", None)

    if from_raw or to_raw:
        current = period_for_year(_today().year)
        start = date.fromisoformat(from_raw) if from_raw else current.start
        end = date.fromisoformat(to_raw) if to_raw else current.end

        if end < start:
            raise ValueError("Custom period end date cannot be before start date.")

        label = f"Custom period ({start} → {end})"
        return Period(start=start, end=end, label=label)

    return period_for_year(_today().year)


def filter_plans_by_period(plans: pd.DataFrame, period: Period) -> pd.DataFrame:
    """
    Keep only plan rows whose month overlaps the period.

    The `plans` DataFrame is expected to contain a 'month' column of type
    datetime64[ns] holding first-of-month dates (as produced by
    `db.load_monthly_plans`).
    """
    mask = (plans["month"] >= pd.Timestamp(month_start(period.start))) & (
        plans["month"] <= pd.Timestamp(period.end)
    )
    return plans.loc[mask].copy()
