"""Narrow interfaces over the external systems phoenixctl drives.

The backup manager and the provisioner depend only on these protocols so they
can be exercised with in-memory fakes. Concrete implementations live beside
this module and wrap the Google Cloud client libraries and ``gcloud``.
"""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from ..errors import PhoenixError


class ComputeError(PhoenixError):
    """Raised when a Compute Engine call fails."""


class StorageError(PhoenixError):
    """Raised when a Cloud Storage call fails."""


class RemoteCommandError(PhoenixError):
    """Raised when a command on the instance exits non-zero."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        """Store the remote exit status alongside the message."""
        super().__init__(message)
        self.returncode = returncode


@dataclass(frozen=True, slots=True)
class InstanceInfo:
    """Provider view of a compute instance."""

    name: str
    zone: str
    status: str
    external_ip: str | None = None
    internal_ip: str | None = None

    @property
    def is_running(self) -> bool:
        """Return True when the provider reports the instance as running."""
        return self.status.upper() == "RUNNING"


@dataclass(frozen=True, slots=True)
class InstanceSpec:
    """Everything needed to create the application instance."""

    name: str
    zone: str
    machine_type: str
    disk_size_gb: int
    startup_script: str
    service_account: str
    network_tags: tuple[str, ...] = ("phoenix-server",)
    labels: Mapping[str, str] = field(
        default_factory=lambda: {"app": "phoenix", "environment": "production"}
    )
    scopes: tuple[str, ...] = (
        "https://www.googleapis.com/auth/devstorage.read_write",
        "https://www.googleapis.com/auth/logging.write",
        "https://www.googleapis.com/auth/monitoring.write",
        "https://www.googleapis.com/auth/servicecontrol",
        "https://www.googleapis.com/auth/service.management.readonly",
        "https://www.googleapis.com/auth/trace.append",
    )
    image_project: str = "ubuntu-os-cloud"
    image_family: str = "ubuntu-2204-lts"
    disk_type: str = "pd-standard"


@dataclass(frozen=True, slots=True)
class FirewallRuleSpec:
    """Ingress rule opening the service port."""

    name: str
    port: int
    target_tags: tuple[str, ...] = ("phoenix-server",)
    source_ranges: tuple[str, ...] = ("0.0.0.0/0",)
    description: str = "Allow Phoenix web interface"
    network: str = "global/networks/default"


@dataclass(frozen=True, slots=True)
class StoredObject:
    """Metadata for one object in a bucket."""

    name: str
    size: int | None = None
    updated: datetime | None = None


class ComputeProvider(Protocol):
    """Instance and firewall operations."""

    def get_instance(self, name: str, zone: str) -> InstanceInfo | None:
        """Return the instance or ``None`` when it does not exist."""
        ...

    def create_instance(self, spec: InstanceSpec) -> None:
        """Create an instance and wait for the operation to finish."""
        ...

    def delete_instance(self, name: str, zone: str) -> None:
        """Delete an instance and wait for the operation to finish."""
        ...

    def start_instance(self, name: str, zone: str) -> None:
        """Start a stopped instance."""
        ...

    def stop_instance(self, name: str, zone: str) -> None:
        """Stop a running instance."""
        ...

    def reset_instance(self, name: str, zone: str) -> None:
        """Hard-reset an instance."""
        ...

    def firewall_exists(self, name: str) -> bool:
        """Return True when the firewall rule exists."""
        ...

    def create_firewall(self, rule: FirewallRuleSpec) -> None:
        """Create a firewall rule."""
        ...


class StorageProvider(Protocol):
    """Bucket and object operations."""

    def bucket_exists(self, bucket: str) -> bool:
        """Return True when *bucket* exists."""
        ...

    def create_bucket(self, bucket: str) -> None:
        """Create *bucket*."""
        ...

    def has_retention_rule(self, bucket: str, age_days: int) -> bool:
        """Return True when an age-based delete rule is attached."""
        ...

    def set_retention_rule(self, bucket: str, age_days: int) -> None:
        """Attach a rule deleting objects older than *age_days*."""
        ...

    def list_objects(self, bucket: str, prefix: str) -> list[StoredObject]:
        """Return objects whose names start with *prefix*."""
        ...

    def stat_object(self, bucket: str, name: str) -> StoredObject | None:
        """Return object metadata or ``None`` when it does not exist."""
        ...


class RemoteExecutor(Protocol):
    """Run commands on the instance."""

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *argv* remotely and capture its output."""
        ...

    def interactive(self, argv: Sequence[str] | None = None) -> int:
        """Attach the operator's terminal; open a shell when *argv* is ``None``."""
        ...


__all__ = [
    "ComputeError",
    "ComputeProvider",
    "FirewallRuleSpec",
    "InstanceInfo",
    "InstanceSpec",
    "RemoteCommandError",
    "RemoteExecutor",
    "StorageError",
    "StorageProvider",
    "StoredObject",
]
