"""Provision the firewall rule and compute instance for Phoenix."""
from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import google.auth
from google.auth import exceptions as auth_exceptions

from .config import AppConfig
from .errors import PhoenixError
from .providers.base import (
    ComputeError,
    ComputeProvider,
    FirewallRuleSpec,
    InstanceInfo,
    InstanceSpec,
)
from .reporting import ProgressReporter
from .templates import TemplateEngine

STARTUP_TEMPLATE = "startup-script.sh.j2"
NETWORK_TAG = "phoenix-server"
RESTART_SEC = 10


class PrerequisiteError(PhoenixError):
    """Raised when local tooling or credentials are missing."""


def check_prerequisites(
    config: AppConfig,
    *,
    which: Callable[[str], str | None] = shutil.which,
    load_credentials: Callable[[], object] | None = None,
) -> None:
    """Verify ``gcloud`` is installed and application credentials resolve."""
    if which(config.gcloud_bin) is None:
        raise PrerequisiteError(
            f"{config.gcloud_bin} CLI not found. Please install Google Cloud SDK."
        )
    load = load_credentials or google.auth.default
    try:
        load()
    except auth_exceptions.DefaultCredentialsError as exc:
        raise PrerequisiteError(
            "Not authenticated with Google Cloud. Please run "
            "'gcloud auth application-default login'"
        ) from exc


def startup_context(config: AppConfig) -> dict[str, object]:
    """Return the template variables for the startup script and unit."""
    service = config.service
    return {
        "service_name": service.name,
        "service_user": service.user,
        "base_dir": service.base_dir.rstrip("/"),
        "data_dir": service.data_dir,
        "image_ref": service.image_ref,
        "port": service.port,
        "container_port": service.container_port,
        "restart_sec": RESTART_SEC,
    }


def firewall_rule_name(port: int) -> str:
    """Return the ingress rule name for *port*."""
    return f"phoenix-allow-{port}"


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    """Outcome of a provisioning run."""

    instance: InstanceInfo
    created: bool
    firewall_created: bool


class Provisioner:
    """Create the firewall rule and the instance running the service unit."""

    def __init__(
        self,
        config: AppConfig,
        *,
        compute: ComputeProvider,
        templates: TemplateEngine,
        reporter: ProgressReporter,
    ) -> None:
        """Bind the provisioner to a compute provider and template engine."""
        self.config = config
        self.compute = compute
        self.templates = templates
        self.reporter = reporter

    def render_startup_script(self) -> str:
        """Render the boot-time script with the unit embedded."""
        return self.templates.render_to_string(STARTUP_TEMPLATE, startup_context(self.config))

    def ensure_firewall(self) -> bool:
        """Create the ingress rule unless it already exists."""
        port = self.config.service.port
        name = firewall_rule_name(port)
        self.reporter.info(f"Creating firewall rule for Phoenix port {port}...")
        if self.compute.firewall_exists(name):
            self.reporter.warn(f"Firewall rule {name} already exists")
            return False
        self.compute.create_firewall(
            FirewallRuleSpec(name=name, port=port, target_tags=(NETWORK_TAG,))
        )
        self.reporter.info("Firewall rule created successfully")
        return True

    def instance_spec(self, startup_script: str) -> InstanceSpec:
        """Return the creation request for the configured instance."""
        instance = self.config.instance
        return InstanceSpec(
            name=instance.name,
            zone=instance.zone,
            machine_type=instance.machine_type,
            disk_size_gb=instance.disk_size_gb,
            startup_script=startup_script,
            service_account=f"{self.config.project_id}@appspot.gserviceaccount.com",
            network_tags=(NETWORK_TAG,),
        )

    def provision(
        self,
        *,
        confirm_recreate: Callable[[], bool],
        startup_script_out: Path | None = None,
    ) -> ProvisionResult:
        """Ensure the firewall rule and instance exist.

        Parameters
        ----------
        confirm_recreate:
            Asked when the instance already exists. ``True`` deletes and
            recreates it; ``False`` keeps the existing instance.
        startup_script_out:
            Optional local path receiving a copy of the rendered script.
        """
        self.config.require_project()
        firewall_created = self.ensure_firewall()

        self.reporter.info("Creating startup script...")
        script = self.render_startup_script()
        if startup_script_out is not None:
            self.templates.render_to_path(
                STARTUP_TEMPLATE,
                startup_script_out,
                startup_context(self.config),
                mode=0o755,
            )
        self.reporter.info("Startup script created")

        name = self.config.instance.name
        zone = self.config.instance.zone
        self.reporter.info(f"Creating GCP Compute Engine instance: {name}")
        existing = self.compute.get_instance(name, zone)
        if existing is not None:
            self.reporter.warn(f"Instance {name} already exists in zone {zone}")
            if not confirm_recreate():
                self.reporter.info("Skipping instance creation")
                return ProvisionResult(
                    instance=existing, created=False, firewall_created=firewall_created
                )
            self.reporter.info("Deleting existing instance...")
            self.compute.delete_instance(name, zone)

        self.compute.create_instance(self.instance_spec(script))
        self.reporter.info("Instance created successfully!")

        info = self.compute.get_instance(name, zone)
        if info is None:
            raise ComputeError(f"Instance {name} was created but cannot be described")
        return ProvisionResult(instance=info, created=True, firewall_created=firewall_created)


__all__ = [
    "PrerequisiteError",
    "ProvisionResult",
    "Provisioner",
    "check_prerequisites",
    "firewall_rule_name",
    "startup_context",
]
