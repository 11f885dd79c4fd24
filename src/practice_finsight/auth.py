# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Caller identity for Practice FinSight.

Every store read and write is scoped by a user id. This module decides which
user id a command runs as. Precedence (highest to lowest):

    1. an explicit user id (e.g. the CLI ``--user`` option),
    2. ``[auth].user_id`` from the configuration,
    3. ``[auth].demo_user_id``, only when ``[auth].allow_demo_user = true``.

When none applies, ``AuthenticationError`` is raised. The demo user is only
ever reachable through the explicit configuration flag.
"""

from dataclasses import dataclass
from typing import Optional


class AuthenticationError(RuntimeError):
    """Raised when no caller identity can be established."""


@dataclass(frozen=True)
class AuthConfig:
    """Identity settings read from the ``[auth]`` table."""

    user_id: Optional[str] = None
    allow_demo_user: bool = False
    demo_user_id: Optional[str] = None


@dataclass(frozen=True)
class Identity:
    """The caller on whose behalf data is read and written."""

    user_id: str
    is_demo: bool = False


def resolve_identity(cfg: AuthConfig, user_id: Optional[str] = None) -> Identity:
    """
    Resolve the caller identity.

    Args:
        cfg: Identity settings.
        user_id: Explicit user id, overriding the configuration.

    Returns:
        The resolved Identity.

    Raises:
        AuthenticationError: if no identity is available.
    """
    explicit = (user_id or "").strip()
    if explicit:
        return Identity(user_id=explicit)

    configured = (cfg.user_id or "").strip()
    if configured:
        return Identity(user_id=configured)

    if cfg.allow_demo_user:
        demo = (cfg.demo_user_id or "").strip()
        if demo:
            return Identity(user_id=demo, is_demo=True)

    raise AuthenticationError(
        "No user identity available. Pass --user, set [auth].user_id, or "
        "enable [auth].allow_demo_user with a demo_user_id."
    )
