"""Provider interfaces and implementations for phoenixctl."""
from __future__ import annotations

from .base import (
    ComputeError,
    ComputeProvider,
    FirewallRuleSpec,
    InstanceInfo,
    InstanceSpec,
    RemoteCommandError,
    RemoteExecutor,
    StorageError,
    StorageProvider,
    StoredObject,
)
from .docker import DockerProvider
from .remote import GcloudSSHExecutor
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "ComputeError",
    "ComputeProvider",
    "DockerProvider",
    "FirewallRuleSpec",
    "GcloudSSHExecutor",
    "InstanceInfo",
    "InstanceSpec",
    "RemoteCommandError",
    "RemoteExecutor",
    "StorageError",
    "StorageProvider",
    "StoredObject",
    "SystemdError",
    "SystemdProvider",
]
