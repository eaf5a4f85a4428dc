"""Container runtime operations on the instance."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass

from .base import RemoteExecutor


@dataclass(slots=True)
class DockerProvider:
    """Pull images and inspect the running container remotely."""

    executor: RemoteExecutor
    container: str = "phoenix"
    docker_bin: str = "docker"

    def pull(self, image_ref: str) -> subprocess.CompletedProcess[str]:
        """Pull *image_ref* (``image:tag``)."""
        return self.executor.run(["sudo", self.docker_bin, "pull", image_ref])

    def stats(self) -> str | None:
        """Return a one-shot ``docker stats`` table, or ``None`` when not running."""
        result = self.executor.run(
            ["sudo", self.docker_bin, "stats", self.container, "--no-stream"],
            check=False,
        )
        if result.returncode != 0:
            return None
        return result.stdout


__all__ = ["DockerProvider"]
