"""phoenixctl package bootstrap.

Exposes the package version for the CLI and packaging metadata.
"""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.1.0"
