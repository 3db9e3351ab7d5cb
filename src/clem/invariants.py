"""Invariant markers for clem."""

from __future__ import annotations

from typing import NoReturn

from clem.exceptions import NeverThrown


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as intentionally unreachable.

    The optional env payload is metadata only; it travels with the raised
    exception for diagnostics.
    """
    raise NeverThrown(reason or "never() marker reached", env=env)
