"""Base exception shared by every phoenixctl failure."""
from __future__ import annotations


class PhoenixError(RuntimeError):
    """Raised for any failure the CLI reports and converts into exit code 1."""


__all__ = ["PhoenixError"]
