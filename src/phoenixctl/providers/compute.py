"""Compute Engine provider backed by ``google-cloud-compute``."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import compute_v1

from .base import ComputeError, FirewallRuleSpec, InstanceInfo, InstanceSpec

# Client construction is lazy, so credential failures surface at call sites.
_API_ERRORS = (google_exceptions.GoogleAPICallError, auth_exceptions.GoogleAuthError)


@dataclass(slots=True)
class GCEComputeProvider:
    """Instance and firewall operations for one project."""

    project: str
    operation_timeout: float = 300.0
    _instances: Any = field(default=None, repr=False)
    _firewalls: Any = field(default=None, repr=False)

    @property
    def instances(self) -> Any:
        """Return a lazily created ``InstancesClient``."""
        if self._instances is None:
            self._instances = compute_v1.InstancesClient()
        return self._instances

    @property
    def firewalls(self) -> Any:
        """Return a lazily created ``FirewallsClient``."""
        if self._firewalls is None:
            self._firewalls = compute_v1.FirewallsClient()
        return self._firewalls

    # Instances ---------------------------------------------------------
    def get_instance(self, name: str, zone: str) -> InstanceInfo | None:
        """Return the instance or ``None`` when it does not exist."""
        try:
            instance = self.instances.get(project=self.project, zone=zone, instance=name)
        except google_exceptions.NotFound:
            return None
        except _API_ERRORS as exc:
            raise ComputeError(f"Failed to describe instance {name}: {exc}") from exc
        return _instance_info(instance, zone)

    def create_instance(self, spec: InstanceSpec) -> None:
        """Create an instance from *spec* and wait for completion."""
        resource = build_instance_resource(self.project, spec)
        self._wait(
            f"create instance {spec.name}",
            lambda: self.instances.insert(
                project=self.project,
                zone=spec.zone,
                instance_resource=resource,
            ),
        )

    def delete_instance(self, name: str, zone: str) -> None:
        """Delete an instance and wait for completion."""
        self._wait(
            f"delete instance {name}",
            lambda: self.instances.delete(project=self.project, zone=zone, instance=name),
        )

    def start_instance(self, name: str, zone: str) -> None:
        """Start an instance."""
        self._wait(
            f"start instance {name}",
            lambda: self.instances.start(project=self.project, zone=zone, instance=name),
        )

    def stop_instance(self, name: str, zone: str) -> None:
        """Stop an instance."""
        self._wait(
            f"stop instance {name}",
            lambda: self.instances.stop(project=self.project, zone=zone, instance=name),
        )

    def reset_instance(self, name: str, zone: str) -> None:
        """Hard-reset an instance."""
        self._wait(
            f"reset instance {name}",
            lambda: self.instances.reset(project=self.project, zone=zone, instance=name),
        )

    # Firewall ----------------------------------------------------------
    def firewall_exists(self, name: str) -> bool:
        """Return True when the firewall rule exists."""
        try:
            self.firewalls.get(project=self.project, firewall=name)
        except google_exceptions.NotFound:
            return False
        except _API_ERRORS as exc:
            raise ComputeError(f"Failed to describe firewall rule {name}: {exc}") from exc
        return True

    def create_firewall(self, rule: FirewallRuleSpec) -> None:
        """Create the ingress rule described by *rule*."""
        resource = compute_v1.Firewall(
            name=rule.name,
            description=rule.description,
            network=rule.network,
            direction="INGRESS",
            source_ranges=list(rule.source_ranges),
            target_tags=list(rule.target_tags),
            allowed=[compute_v1.Allowed(I_p_protocol="tcp", ports=[str(rule.port)])],
        )
        self._wait(
            f"create firewall rule {rule.name}",
            lambda: self.firewalls.insert(project=self.project, firewall_resource=resource),
        )

    # ------------------------------------------------------------------
    def _wait(self, action: str, call: Any) -> None:
        try:
            operation = call()
            operation.result(timeout=self.operation_timeout)
        except _API_ERRORS as exc:
            raise ComputeError(f"Failed to {action}: {exc}") from exc
        except TimeoutError as exc:
            raise ComputeError(f"Timed out waiting to {action}.") from exc
        error_code = getattr(operation, "error_code", None)
        if error_code:
            message = getattr(operation, "error_message", "") or "unknown error"
            raise ComputeError(f"Failed to {action}: {message}")


def build_instance_resource(project: str, spec: InstanceSpec) -> compute_v1.Instance:
    """Translate *spec* into a ``compute_v1.Instance``."""
    instance = compute_v1.Instance()
    instance.name = spec.name
    instance.machine_type = f"zones/{spec.zone}/machineTypes/{spec.machine_type}"

    disk = compute_v1.AttachedDisk()
    disk.auto_delete = True
    disk.boot = True
    disk.device_name = spec.name
    disk.mode = "READ_WRITE"
    init_params = compute_v1.AttachedDiskInitializeParams()
    init_params.source_image = (
        f"projects/{spec.image_project}/global/images/family/{spec.image_family}"
    )
    init_params.disk_size_gb = spec.disk_size_gb
    init_params.disk_type = f"projects/{project}/zones/{spec.zone}/diskTypes/{spec.disk_type}"
    disk.initialize_params = init_params
    instance.disks = [disk]

    access_config = compute_v1.AccessConfig()
    access_config.name = "External NAT"
    access_config.type_ = "ONE_TO_ONE_NAT"
    access_config.network_tier = "PREMIUM"
    net_iface = compute_v1.NetworkInterface()
    net_iface.network = "global/networks/default"
    net_iface.access_configs = [access_config]
    instance.network_interfaces = [net_iface]

    scheduling = compute_v1.Scheduling()
    scheduling.on_host_maintenance = "MIGRATE"
    scheduling.provisioning_model = "STANDARD"
    instance.scheduling = scheduling

    shielded = compute_v1.ShieldedInstanceConfig()
    shielded.enable_secure_boot = False
    shielded.enable_vtpm = True
    shielded.enable_integrity_monitoring = True
    instance.shielded_instance_config = shielded

    account = compute_v1.ServiceAccount()
    account.email = spec.service_account
    account.scopes = list(spec.scopes)
    instance.service_accounts = [account]

    instance.tags = compute_v1.Tags(items=list(spec.network_tags))
    instance.labels = dict(spec.labels)
    instance.reservation_affinity = compute_v1.ReservationAffinity(
        consume_reservation_type="ANY_RESERVATION"
    )
    instance.metadata = compute_v1.Metadata(
        items=[compute_v1.Items(key="startup-script", value=spec.startup_script)]
    )
    return instance


def _instance_info(instance: Any, zone: str) -> InstanceInfo:
    external_ip: str | None = None
    internal_ip: str | None = None
    interfaces = list(instance.network_interfaces)
    if interfaces:
        primary = interfaces[0]
        internal_ip = primary.network_i_p or None
        access_configs = list(primary.access_configs)
        if access_configs:
            external_ip = access_configs[0].nat_i_p or None
    return InstanceInfo(
        name=instance.name,
        zone=zone,
        status=str(instance.status),
        external_ip=external_ip,
        internal_ip=internal_ip,
    )


__all__ = ["GCEComputeProvider", "build_instance_resource"]
