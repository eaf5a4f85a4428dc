"""Remote command execution over ``gcloud compute ssh``."""
from __future__ import annotations

import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from .base import RemoteCommandError


@dataclass(slots=True)
class GcloudSSHExecutor:
    """Run argv lists on one instance through the gcloud CLI.

    Each argv is quoted with :func:`shlex.join` before being handed to
    ``--command`` so arguments are never re-split or interpreted by the remote
    shell.
    """

    instance: str
    zone: str
    project: str
    gcloud_bin: str = "gcloud"

    def base_command(self) -> list[str]:
        """Return the ``gcloud compute ssh`` prefix for this instance."""
        return [
            self.gcloud_bin,
            "compute",
            "ssh",
            self.instance,
            f"--zone={self.zone}",
            f"--project={self.project}",
        ]

    def build_command(self, argv: Sequence[str]) -> list[str]:
        """Return the full local command that runs *argv* remotely."""
        if not argv:
            raise ValueError("Remote command must not be empty.")
        return [*self.base_command(), f"--command={shlex.join(argv)}"]

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *argv* on the instance and capture output."""
        command = self.build_command(argv)
        try:
            result = subprocess.run(  # noqa: S603 - argv list, no local shell
                command,
                capture_output=True,
                text=True,
                input=input,
                check=False,
            )
        except FileNotFoundError as exc:
            raise RemoteCommandError(f"{self.gcloud_bin} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise RemoteCommandError(
                f"{shlex.join(argv)} failed on {self.instance} "
                f"(exit {result.returncode}): {message}",
                returncode=result.returncode,
            )
        return result

    def interactive(self, argv: Sequence[str] | None = None) -> int:
        """Attach the terminal to a remote command or login shell."""
        command = self.base_command() if argv is None else self.build_command(argv)
        try:
            result = subprocess.run(command, check=False)  # noqa: S603
        except FileNotFoundError as exc:
            raise RemoteCommandError(f"{self.gcloud_bin} not found: {exc}") from exc
        return result.returncode


__all__ = ["GcloudSSHExecutor"]
