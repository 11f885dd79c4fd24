# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Practice FinSight
-----------------

Financial planning tools for medical practices. Session data exported by
practice software (Latido or a generic template) is imported into monthly
plans, so that planned and actual sessions per therapy type can be compared.

Main capabilities:
- xlsx / csv parsing of practice-software exports with row-level diagnostics,
- case-insensitive matching of session labels against the practice's
  therapy types,
- aggregation per (month, therapy type) with idempotent re-imports,
- per-month upserts of actual sessions and revenue into SQLite,
- plan-vs-actual reporting and import history.


Version: 0.1.0

Usage:
    python -m practice_finsight.cli --help
"""

__all__ = ["importer", "io", "mapping", "db"]

__version__ = "0.1.0"
