"""Remote operation lock guarding the instance data directory.

The lock is a directory created with ``mkdir`` on the instance (atomic on
POSIX filesystems). Its ``owner.json`` records who holds it so a blocked
operator can see which operation is in flight. Acquisition polls until the
timeout expires. Only an existing lock directory counts as contention; any
other mkdir failure (missing base directory, broken ssh transport) is
reported at once.
"""
from __future__ import annotations

import getpass
import json
import os
import socket
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from .errors import PhoenixError
from .providers.base import RemoteCommandError, RemoteExecutor


class LockTimeoutError(PhoenixError):
    """Raised when the remote lock cannot be acquired in time."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: str
    operation: str
    wait_ms: int


class RemoteLockManager:
    """Acquire and release the per-instance operation lock."""

    def __init__(
        self,
        executor: RemoteExecutor,
        lock_dir: str,
        default_timeout: float = 30.0,
        *,
        poll_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Configure the lock located at *lock_dir* on the instance."""
        self.executor = executor
        self.lock_dir = lock_dir.rstrip("/")
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    @property
    def owner_path(self) -> str:
        """Return the path of the owner metadata file."""
        return f"{self.lock_dir}/owner.json"

    @contextmanager
    def instance_lock(
        self,
        operation: str,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the instance lock for the duration of the ``with`` block."""
        handle = self.acquire(operation, timeout=timeout)
        try:
            yield handle
        finally:
            self.release()

    def acquire(self, operation: str, *, timeout: float | None = None) -> LockHandle:
        """Create the lock directory, waiting up to *timeout* seconds."""
        limit = self.default_timeout if timeout is None else timeout
        started = self._clock()
        retried = False
        while True:
            result = self.executor.run(["sudo", "mkdir", self.lock_dir], check=False)
            if result.returncode == 0:
                break
            if not self._is_held():
                # The holder may have released between mkdir and the check.
                if retried:
                    detail = (result.stderr or "").strip() or f"exit {result.returncode}"
                    raise RemoteCommandError(
                        f"Failed to create lock directory {self.lock_dir}: {detail}",
                        returncode=result.returncode,
                    )
                retried = True
                continue
            retried = False
            if self._clock() - started >= limit:
                holder = self.describe_holder()
                detail = f" (held by {holder})" if holder else ""
                raise LockTimeoutError(
                    f"Another operation is in progress on the instance{detail}; "
                    f"gave up after {limit:.0f}s. Remove {self.lock_dir} if it is stale."
                )
            self._sleep(self.poll_interval)
        wait_ms = int((self._clock() - started) * 1000)
        try:
            self._write_owner(operation)
        except RemoteCommandError:
            self.release()
            raise
        return LockHandle(path=self.lock_dir, operation=operation, wait_ms=wait_ms)

    def release(self) -> None:
        """Remove the lock directory."""
        self.executor.run(["sudo", "rm", "-rf", self.lock_dir])

    def describe_holder(self) -> str | None:
        """Return a short description of the current holder, if recorded."""
        try:
            result = self.executor.run(["sudo", "cat", self.owner_path], check=False)
        except RemoteCommandError:
            return None
        if result.returncode != 0 or not result.stdout:
            return None
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        parts = [
            str(data.get("operation", "?")),
            f"{data.get('user', '?')}@{data.get('host', '?')}",
            f"since {data.get('acquired_at', '?')}",
        ]
        return " ".join(parts)

    def _is_held(self) -> bool:
        result = self.executor.run(["sudo", "test", "-d", self.lock_dir], check=False)
        return result.returncode == 0

    def _write_owner(self, operation: str) -> None:
        payload = {
            "operation": operation,
            "user": _current_user(),
            "host": socket.gethostname(),
            "pid": os.getpid(),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        self.executor.run(
            ["sudo", "tee", self.owner_path],
            input=json.dumps(payload) + "\n",
        )


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


__all__ = ["LockHandle", "LockTimeoutError", "RemoteLockManager"]
