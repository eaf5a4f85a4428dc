"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes used across both console scripts.

    Declined confirmations are not failures and exit with ``OK``.
    """

    OK = 0
    FAILURE = 1
