# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Configuration helpers for Practice FinSight.

This module is responsible for:
- loading the main application configuration from a TOML file,
- validating it,
- exposing typed dataclasses used by the rest of the application.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - fallback for older Python
    import tomli as tomllib  # type: ignore[import]

from .auth import AuthConfig
from .db import DatabaseConfig
from .logging_setup import DEFAULT_LOG_FORMAT, LoggingConfig
from .mapping import get_column_mapping

DEFAULT_CONFIG_FILE = "practice_finsight_config.toml"
DEFAULT_MAX_FILE_SIZE_MB = 5


@dataclass(frozen=True)
class ImportOptions:
    """
    Options for practice-software imports.

    Attributes
    ----------
    vendor_format:
        Name of the default column mapping ('latido' or 'standard').
    max_file_size_bytes:
        Upper bound on the size of an imported file, checked by the caller
        before parsing.
    warn_on_revenue_mismatch:
        Emit a warning when a row's explicit amount differs from
        sessions x price of its therapy type.
    csv_delimiter:
        Field delimiter used when importing csv files.
    """

    vendor_format: str = "latido"
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_MB * 1024 * 1024
    warn_on_revenue_mismatch: bool = True
    csv_delimiter: str = ","


@dataclass(frozen=True)
class AppConfig:
    """
    Application-wide configuration for Practice FinSight.

    This aggregates:
    - the database configuration (where therapy types and plans are stored),
    - identity settings,
    - import options,
    - logging settings,
    - the presentation currency.
    """

    database: DatabaseConfig
    auth: AuthConfig
    import_options: ImportOptions
    logging: LoggingConfig
    currency: str


def _load_toml(path: Path) -> dict[str, Any]:
    """
    Load a TOML file and return its content as a dictionary.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML content cannot be parsed or is not a table.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Failed to parse TOML config file: {path}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"Invalid TOML root type in {path}, expected a table.")

    return data


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, Mapping):
        raise ValueError(f"Config section [{name}] must be a table.")
    return section


def _parse_bool(section: Mapping[str, Any], key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"Config value '{key}' must be true or false.")
    return value


def _optional_str(section: Mapping[str, Any], key: str) -> Optional[str]:
    value = section.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_auth(raw: Mapping[str, Any]) -> AuthConfig:
    section = _section(raw, "auth")
    allow_demo_user = _parse_bool(section, "allow_demo_user", False)
    demo_user_id = _optional_str(section, "demo_user_id")

    if allow_demo_user and demo_user_id is None:
        raise ValueError(
            "[auth].allow_demo_user is enabled but [auth].demo_user_id is not set."
        )

    return AuthConfig(
        user_id=_optional_str(section, "user_id"),
        allow_demo_user=allow_demo_user,
        demo_user_id=demo_user_id,
    )


def _parse_import_options(raw: Mapping[str, Any]) -> ImportOptions:
    section = _section(raw, "import")

    vendor_format = str(section.get("vendor_format") or "latido").strip().lower()
    get_column_mapping(vendor_format)  # raises ValueError on unknown formats

    raw_size = section.get("max_file_size_mb", DEFAULT_MAX_FILE_SIZE_MB)
    try:
        max_file_size_mb = float(raw_size)
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "Invalid value for 'import.max_file_size_mb'. Expected a number."
        ) from exc
    if max_file_size_mb <= 0:
        raise ValueError("'import.max_file_size_mb' must be greater than zero.")

    csv_delimiter = str(section.get("csv_delimiter", ","))
    if len(csv_delimiter) != 1:
        raise ValueError("'import.csv_delimiter' must be a single character.")

    return ImportOptions(
        vendor_format=vendor_format,
        max_file_size_bytes=int(max_file_size_mb * 1024 * 1024),
        warn_on_revenue_mismatch=_parse_bool(
            section, "warn_on_revenue_mismatch", True
        ),
        csv_delimiter=csv_delimiter,
    )


def _parse_logging(raw: Mapping[str, Any]) -> LoggingConfig:
    section = _section(raw, "logging")
    level = str(section.get("level") or "WARNING").upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"Invalid logging level: {level!r}.")
    fmt = str(section.get("format") or DEFAULT_LOG_FORMAT)
    return LoggingConfig(level=level, format=fmt)


def build_app_config(raw: Mapping[str, Any], base_dir: Path) -> AppConfig:
    """
    Build an AppConfig from already-parsed TOML data.

    Relative paths are resolved against ``base_dir``.
    """
    # 1) Database section
    database_section = _section(raw, "database")
    db_engine = str(database_section.get("engine") or "sqlite").strip().lower()
    if db_engine != "sqlite":
        raise ValueError(
            f"Unsupported database engine: {db_engine!r}. "
            "Only 'sqlite' is supported for now."
        )
    db_path_raw = database_section.get("path") or "data/db/practice_finsight.sqlite"
    db_path = (base_dir / str(db_path_raw)).resolve()

    # 2) Practice section
    practice_section = _section(raw, "practice")
    currency = str(practice_section.get("currency") or "EUR")

    return AppConfig(
        database=DatabaseConfig(engine=db_engine, path=db_path),
        auth=_parse_auth(raw),
        import_options=_parse_import_options(raw),
        logging=_parse_logging(raw),
        currency=currency,
    )


def load_app_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load the Practice FinSight application configuration from a TOML file.

    Expected top-level sections in the TOML file
    --------------------------------------------
    [database]
        Database engine ("sqlite") and file path.

    [auth]
        user_id, allow_demo_user, demo_user_id.

    [import]
        vendor_format ("latido" | "standard"), max_file_size_mb,
        warn_on_revenue_mismatch, csv_delimiter.

    [practice]
        currency.

    [logging]
        level, format.

    Every section is optional. All file paths in the TOML are resolved
    relative to the directory of the TOML file itself.

    Parameters
    ----------
    config_path : str, optional
        Path to the TOML configuration file. Defaults to
        ``practice_finsight_config.toml`` in the current directory.

    Returns
    -------
    AppConfig
        Parsed and validated application configuration.
    """
    if config_path is None:
        config_file = Path(DEFAULT_CONFIG_FILE).resolve()
    else:
        config_file = Path(config_path).resolve()

    raw = _load_toml(config_file)
    return build_app_config(raw, config_file.parent)
