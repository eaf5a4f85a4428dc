"""Systemd provider for the service unit on the instance."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass

from .base import RemoteCommandError, RemoteExecutor


class SystemdError(RemoteCommandError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Drive ``systemctl``/``journalctl`` remotely for one service unit."""

    executor: RemoteExecutor
    service: str = "phoenix"
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def unit_name(self) -> str:
        """Return the systemd unit name."""
        return f"{self.service}.service"

    def start(self) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start")

    def stop(self) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop")

    def is_active(self) -> str:
        """Return the ``systemctl is-active`` state (``unknown`` on failure)."""
        try:
            result = self._systemctl("is-active", check=False)
        except RemoteCommandError:
            return "unknown"
        state = (result.stdout or "").strip().splitlines()
        return state[-1].strip() if state else "unknown"

    def follow_logs(self) -> int:
        """Stream the unit journal to the operator's terminal."""
        return self.executor.interactive(
            ["sudo", self.journalctl_bin, "-u", self.service, "-f"]
        )

    def _systemctl(
        self,
        command: str,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        argv = ["sudo", self.systemctl_bin, command, self.service]
        try:
            return self.executor.run(argv, check=check)
        except SystemdError:
            raise
        except RemoteCommandError as exc:
            raise SystemdError(
                f"{self.systemctl_bin} {command} {self.service} failed: {exc}",
                returncode=exc.returncode,
            ) from exc


__all__ = ["SystemdError", "SystemdProvider"]
