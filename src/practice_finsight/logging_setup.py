# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""Central logging setup (stdlib logging, console handler)."""

import logging
import logging.config
from dataclasses import dataclass
from typing import Optional

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@dataclass(frozen=True)
class LoggingConfig:
    """Settings read from the ``[logging]`` table."""

    level: str = "WARNING"
    format: str = DEFAULT_LOG_FORMAT


def setup_logging(cfg: Optional[LoggingConfig] = None) -> None:
    cfg = cfg or LoggingConfig()

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": cfg.format}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"handlers": ["console"], "level": cfg.level.upper()},
        }
    )
