"""Typer-powered command line for ``phoenixctl`` and ``phoenix-deploy``.

``phoenixctl`` operates an existing Phoenix instance (status, lifecycle,
backups). ``phoenix-deploy`` provisions it. Both share one runtime built from
the layered configuration, and every command records its outcome in the
structured operations log.
"""
from __future__ import annotations

import sys
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console

from . import __version__
from .backups import BackupNotFoundError
from .config import AppConfig, load_config
from .errors import PhoenixError
from .exit_codes import ExitCode
from .locking import RemoteLockManager
from .logging import OperationScope, StructuredLogger
from .manager import BackupManager
from .provisioner import Provisioner, check_prerequisites
from .providers import DockerProvider, GcloudSSHExecutor, SystemdProvider
from .providers.base import ComputeProvider, RemoteExecutor, StorageProvider
from .providers.compute import GCEComputeProvider
from .providers.storage import GCSStorageProvider
from .reporting import Reporter
from .templates import TemplateEngine

console = Console(highlight=False, soft_wrap=True)
err_console = Console(stderr=True, highlight=False, soft_wrap=True)

LOCK_DIR_NAME = ".phoenixctl.lock"

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate YAML config file.",
    dir_okay=False,
    file_okay=True,
)
PROJECT_OPTION = typer.Option(None, "--project", "-p", help="GCP project ID.")
NAME_OPTION = typer.Option(
    None, "--name", "-n", help="Instance name (default: phoenix-server)."
)
ZONE_OPTION = typer.Option(None, "--zone", "-z", help="GCP zone (default: us-central1-a).")
MACHINE_TYPE_OPTION = typer.Option(
    None, "--machine-type", "-m", help="Machine type (default: e2-standard-2)."
)
DISK_SIZE_OPTION = typer.Option(None, "--disk-size", help="Boot disk size (default: 20GB).")
PORT_OPTION = typer.Option(None, "--port", help="Phoenix port (default: 6006).")
PHOENIX_VERSION_OPTION = typer.Option(
    None, "--version", help="Phoenix image version (default: latest)."
)
YES_OPTION = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts.")
STARTUP_SCRIPT_OUT_OPTION = typer.Option(
    None,
    "--startup-script-out",
    help="Also write the rendered startup script to this path.",
    dir_okay=False,
    file_okay=True,
)

COMMANDS_HELP = textwrap.dedent(
    """
    Commands:
      status        Show instance and Phoenix service status
      start         Start the instance
      stop          Stop the instance
      restart       Restart the instance
      logs          Show Phoenix logs (follow mode)
      ssh           SSH into the instance
      update        Update Phoenix to the configured version
      backup        Create and upload backup to GCS
      list-backups  List available backups in GCS
      restore       Restore from GCS backup (usage: restore <backup-filename>)
      resources     Show resource usage
      delete        Delete the instance (WARNING: destructive)
      deploy        Provision the firewall rule and instance
      help          Show this help message
    """
).strip()

app = typer.Typer(
    add_completion=False,
    no_args_is_help=False,
    help="Manage an Arize Phoenix deployment on Google Compute Engine.",
)
deploy_app = typer.Typer(
    add_completion=False,
    help="Deploy Arize Phoenix to a Google Compute Engine instance.",
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    reporter: Reporter
    compute: ComputeProvider
    storage: StorageProvider
    executor: RemoteExecutor
    systemd: SystemdProvider
    docker: DockerProvider
    locks: RemoteLockManager
    config_file: Path | None = None
    overrides: dict[str, object] = field(default_factory=dict)

    def manager(self) -> BackupManager:
        """Return a backup manager wired to this runtime."""
        return BackupManager(
            self.config,
            compute=self.compute,
            storage=self.storage,
            executor=self.executor,
            systemd=self.systemd,
            docker=self.docker,
            locks=self.locks,
            reporter=self.reporter,
        )

    def provisioner(self) -> Provisioner:
        """Return a provisioner wired to this runtime."""
        return Provisioner(
            self.config,
            compute=self.compute,
            templates=self.templates,
            reporter=self.reporter,
        )

    def target(self) -> dict[str, object]:
        """Return the log target describing the managed instance."""
        return {
            "kind": "instance",
            "project": self.config.project_id,
            "name": self.config.instance.name,
            "zone": self.config.instance.zone,
        }


def _build_runtime(
    config_file: Path | None,
    overrides: Mapping[str, object],
) -> RuntimeContext:
    config = load_config(config_file=config_file, overrides=overrides)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    reporter = Reporter(console=console, err_console=err_console)
    compute = GCEComputeProvider(project=config.project_id)
    storage = GCSStorageProvider(project=config.project_id)
    executor = GcloudSSHExecutor(
        instance=config.instance.name,
        zone=config.instance.zone,
        project=config.project_id,
        gcloud_bin=config.gcloud_bin,
    )
    systemd = SystemdProvider(executor=executor, service=config.service.name)
    docker = DockerProvider(executor=executor, container=config.service.name)
    locks = RemoteLockManager(
        executor,
        f"{config.service.base_dir.rstrip('/')}/{LOCK_DIR_NAME}",
        config.lock_timeout,
    )
    return RuntimeContext(
        config=config,
        logger=logger,
        templates=templates,
        reporter=reporter,
        compute=compute,
        storage=storage,
        executor=executor,
        systemd=systemd,
        docker=docker,
        locks=locks,
        config_file=config_file,
        overrides=dict(overrides),
    )


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    runtime = _build_runtime(None, {})
    ctx.obj = runtime
    return runtime


def _instance_overrides(
    project: str | None,
    name: str | None,
    zone: str | None,
) -> dict[str, object]:
    return {"project_id": project, "instance": {"name": name, "zone": zone}}


def _fail(message: str) -> NoReturn:
    """Print *message* as an error and exit with the failure code."""
    Reporter(console=console, err_console=err_console).error(message)
    raise typer.Exit(code=ExitCode.FAILURE)


def _command_error(
    runtime: RuntimeContext,
    op: OperationScope,
    message: str,
    *,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    runtime.reporter.error(message)
    op.error(message, errors=list(errors or [message]), rc=int(ExitCode.FAILURE))
    raise typer.Exit(code=ExitCode.FAILURE)


@contextmanager
def _reported(runtime: RuntimeContext, op: OperationScope) -> Iterator[None]:
    """Convert phoenixctl failures raised inside the block into exit code 1."""
    try:
        yield
    except PhoenixError as exc:
        _command_error(runtime, op, str(exc))


def _validate_project(runtime: RuntimeContext, command: str) -> None:
    if not runtime.config.project_is_placeholder:
        return
    with runtime.logger.operation(
        command,
        args={"project_id": runtime.config.project_id},
        target={"kind": "meta", "scope": "validation"},
    ) as op:
        _command_error(
            runtime,
            op,
            "Please set PROJECT_ID either via environment variable or --project flag",
        )


def _confirm(message: str, *, assume_yes: bool) -> bool:
    """Ask once; anything but y/yes (including EOF) declines."""
    if assume_yes:
        return True
    try:
        reply = typer.prompt(f"{message} (y/N)", default="", show_default=False)
    except typer.Abort:
        return False
    return reply.strip().lower() in {"y", "yes"}


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    project: str | None = PROJECT_OPTION,
    name: str | None = NAME_OPTION,
    zone: str | None = ZONE_OPTION,
    bucket: str | None = typer.Option(
        None, "--bucket", help="Backup bucket (default: <project>-phoenix-backups)."
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    overrides = _instance_overrides(project, name, zone)
    overrides["backups"] = {"bucket": bucket}
    try:
        runtime = _build_runtime(config_file, overrides)
    except PhoenixError as exc:
        _fail(str(exc))
    ctx.obj = runtime

    if ctx.invoked_subcommand == "help":
        return
    _validate_project(runtime, ctx.invoked_subcommand or "root")

    if ctx.invoked_subcommand is None:
        runtime.reporter.error("Please specify a command")
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.FAILURE)


@app.command("help")
def help_command(ctx: typer.Context) -> None:
    """Show this help message."""
    parent = ctx.parent or ctx
    console.print(f"phoenixctl {__version__}")
    console.print(parent.get_help())
    console.print()
    console.print(COMMANDS_HELP)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show instance and Phoenix service status."""
    runtime = _get_runtime(ctx)
    reporter = runtime.reporter
    with runtime.logger.operation("status", target=runtime.target()) as op:
        with _reported(runtime, op):
            reporter.info("Getting Phoenix instance status...")
            info = runtime.manager().require_instance()
            console.print(f"Instance Status: {info.status}")
            console.print(f"External IP: {info.external_ip or '-'}")
            service_state = None
            if info.is_running:
                reporter.info("Checking Phoenix service status...")
                service_state = runtime.systemd.is_active()
                console.print(f"Phoenix Service: {service_state}")
                if info.external_ip:
                    console.print(
                        f"Phoenix URL: http://{info.external_ip}:{runtime.config.service.port}"
                    )
            op.success(
                "Reported instance status.",
                context={"status": info.status, "service": service_state},
            )


def _lifecycle(ctx: typer.Context, command: str, verb: str, done: str) -> None:
    runtime = _get_runtime(ctx)
    instance = runtime.config.instance
    with runtime.logger.operation(command, target=runtime.target()) as op:
        with _reported(runtime, op):
            runtime.reporter.info(f"{verb} Phoenix instance...")
            runtime.manager().require_instance()
            action = {
                "start": runtime.compute.start_instance,
                "stop": runtime.compute.stop_instance,
                "restart": runtime.compute.reset_instance,
            }[command]
            action(instance.name, instance.zone)
            op.add_step(f"compute.{command}")
            runtime.reporter.info(f"Instance {done} successfully!")
            op.success(f"Instance {done}.", changed=1)


@app.command()
def start(ctx: typer.Context) -> None:
    """Start the instance."""
    _lifecycle(ctx, "start", "Starting", "started")


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop the instance."""
    _lifecycle(ctx, "stop", "Stopping", "stopped")


@app.command()
def restart(ctx: typer.Context) -> None:
    """Restart (hard reset) the instance."""
    _lifecycle(ctx, "restart", "Restarting", "restarted")


@app.command()
def logs(ctx: typer.Context) -> None:
    """Show Phoenix logs (follow mode)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("logs", target=runtime.target()) as op:
        with _reported(runtime, op):
            runtime.reporter.info("Showing Phoenix logs...")
            runtime.manager().require_instance()
            rc = runtime.systemd.follow_logs()
            if rc != 0:
                _command_error(runtime, op, f"Log stream exited with status {rc}")
            op.success("Followed service journal.")


@app.command()
def ssh(ctx: typer.Context) -> None:
    """SSH into the instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("ssh", target=runtime.target()) as op:
        with _reported(runtime, op):
            runtime.reporter.info("Connecting to Phoenix instance...")
            runtime.manager().require_instance()
            rc = runtime.executor.interactive()
            if rc != 0:
                _command_error(runtime, op, f"SSH session exited with status {rc}")
            op.success("SSH session closed.")


@app.command()
def update(ctx: typer.Context) -> None:
    """Pull the configured Phoenix image and restart the service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={"image": runtime.config.service.image_ref},
        target=runtime.target(),
    ) as op:
        with _reported(runtime, op):
            runtime.reporter.info("Updating Phoenix...")
            manager = runtime.manager()
            image_ref = manager.update()
            if manager.last_lock_wait_ms is not None:
                op.set_lock_wait_ms(manager.last_lock_wait_ms)
            op.add_step("systemd.stop")
            op.add_step("docker.pull", detail=image_ref)
            op.add_step("systemd.start")
            runtime.reporter.info("Phoenix updated successfully!")
            op.success("Phoenix updated.", changed=1, context={"image": image_ref})


@app.command()
def backup(ctx: typer.Context) -> None:
    """Create a backup and upload it to GCS."""
    runtime = _get_runtime(ctx)
    reporter = runtime.reporter
    with runtime.logger.operation(
        "backup",
        args={"bucket": runtime.config.backups.bucket},
        target=runtime.target(),
    ) as op:
        with _reported(runtime, op):
            reporter.info("Creating backup of Phoenix data...")
            manager = runtime.manager()
            archive = manager.backup()
            if manager.last_lock_wait_ms is not None:
                op.set_lock_wait_ms(manager.last_lock_wait_ms)
            op.add_step("archive.create", detail=archive.name)
            op.add_step("archive.upload", detail=archive.url)
            reporter.info("Backup completed successfully!")
            reporter.info(f"Backup location: {archive.url}")
            reporter.info(f"To download: gsutil cp {archive.url} ./")
            reporter.info("To list all backups: phoenixctl list-backups")
            op.success(
                "Backup created.",
                changed=1,
                context=archive.to_dict(),
            )


def _print_backups(runtime: RuntimeContext, manager: BackupManager) -> int:
    archives = manager.list_backups()
    bucket = runtime.config.backups.bucket
    if not archives:
        runtime.reporter.warn(f"No backups found in gs://{bucket}")
        return 0
    runtime.reporter.backups_table(bucket, archives)
    return len(archives)


@app.command("list-backups")
def list_backups(ctx: typer.Context) -> None:
    """List available backups in GCS."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list-backups",
        args={"bucket": runtime.config.backups.bucket},
        target=runtime.target(),
    ) as op:
        with _reported(runtime, op):
            runtime.reporter.info("Listing available backups...")
            count = _print_backups(runtime, runtime.manager())
            if count == 0:
                op.warning(
                    f"No backups found in gs://{runtime.config.backups.bucket}",
                    context={"count": 0},
                )
                return
            op.success("Listed backups.", context={"count": count})


@app.command()
def restore(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None, help="Backup file name (or gs:// URL) to restore."
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Restore Phoenix data from a GCS backup."""
    runtime = _get_runtime(ctx)
    reporter = runtime.reporter
    with runtime.logger.operation(
        "restore",
        args={"name": name, "yes": yes},
        target=runtime.target(),
    ) as op:
        manager = runtime.manager()
        if not name:
            reporter.error("Please specify a backup file to restore")
            console.print("Usage: phoenixctl restore <backup-filename>")
            console.print()
            console.print("Available backups:")
            with _reported(runtime, op):
                _print_backups(runtime, manager)
            op.error("Missing backup name.", rc=int(ExitCode.FAILURE))
            raise typer.Exit(code=ExitCode.FAILURE)

        def _ask() -> bool:
            reporter.warn("This will replace all current Phoenix data!")
            return _confirm("Are you sure you want to continue?", assume_yes=yes)

        try:
            reporter.info(f"Restoring Phoenix data from: {name}")
            result = manager.restore(name, confirm=_ask)
        except BackupNotFoundError as exc:
            reporter.error(str(exc))
            console.print()
            console.print("Available backups:")
            with _reported(runtime, op):
                _print_backups(runtime, manager)
            op.error(str(exc), rc=int(ExitCode.FAILURE))
            raise typer.Exit(code=ExitCode.FAILURE) from exc
        except PhoenixError as exc:
            _command_error(runtime, op, str(exc))

        if manager.last_lock_wait_ms is not None:
            op.set_lock_wait_ms(manager.last_lock_wait_ms)
        if not result.restored:
            reporter.info("Restore cancelled")
            op.success("Restore cancelled by operator.", context={"archive": result.archive})
            return
        if result.previous_data_dir:
            op.add_step("data.move_aside", detail=result.previous_data_dir)
        op.add_step("archive.extract", detail=result.archive)
        reporter.info("Restore completed successfully!")
        op.success(
            "Backup restored.",
            changed=1,
            context={
                "archive": result.archive,
                "previous_data_dir": result.previous_data_dir,
            },
        )


@app.command()
def resources(ctx: typer.Context) -> None:
    """Show resource usage on the instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("resources", target=runtime.target()) as op:
        with _reported(runtime, op):
            runtime.reporter.info("Showing resource usage...")
            runtime.manager().require_instance()
            sections = (
                ("=== CPU and Memory Usage ===", ["free", "-h"]),
                ("=== Disk Usage ===", ["df", "-h"]),
            )
            for title, argv in sections:
                console.print(title)
                result = runtime.executor.run(argv)
                console.print(result.stdout.rstrip("\n"), markup=False)
                console.print()
            console.print("=== Phoenix Container Stats ===")
            stats = runtime.docker.stats()
            if stats is None:
                console.print("Phoenix container not running")
            else:
                console.print(stats.rstrip("\n"), markup=False)
            op.success("Reported resource usage.", context={"container_running": stats is not None})


@app.command()
def delete(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Delete the instance (WARNING: destructive)."""
    runtime = _get_runtime(ctx)
    instance = runtime.config.instance
    reporter = runtime.reporter
    with runtime.logger.operation(
        "delete",
        args={"yes": yes},
        target=runtime.target(),
    ) as op:
        with _reported(runtime, op):
            runtime.manager().require_instance()
            reporter.warn("This will permanently delete the Phoenix instance and all data!")
            if not _confirm("Are you sure you want to continue?", assume_yes=yes):
                reporter.info("Operation cancelled")
                op.success("Delete cancelled by operator.")
                return
            reporter.info("Deleting Phoenix instance...")
            runtime.compute.delete_instance(instance.name, instance.zone)
            reporter.info("Instance deleted successfully!")
            op.success("Instance deleted.", changed=1)


def _provision(
    runtime: RuntimeContext,
    *,
    command: str,
    yes: bool,
    startup_script_out: Path | None,
) -> None:
    config = runtime.config
    reporter = runtime.reporter
    with runtime.logger.operation(
        command,
        args={
            "machine_type": config.instance.machine_type,
            "disk_size_gb": config.instance.disk_size_gb,
            "port": config.service.port,
            "version": config.service.version,
            "yes": yes,
        },
        target=runtime.target(),
    ) as op:
        with _reported(runtime, op):
            reporter.info("Starting Arize Phoenix deployment to GCP Compute Engine")
            reporter.info(f"Project: {config.project_id}")
            reporter.info(f"Instance: {config.instance.name}")
            reporter.info(f"Zone: {config.instance.zone}")
            reporter.info(f"Machine Type: {config.instance.machine_type}")
            console.print()

            reporter.info("Checking prerequisites...")
            check_prerequisites(config)
            reporter.info("Prerequisites check passed!")
            op.add_step("prerequisites")

            result = runtime.provisioner().provision(
                confirm_recreate=lambda: _confirm(
                    "Do you want to delete and recreate it?", assume_yes=yes
                ),
                startup_script_out=startup_script_out,
            )
            if result.firewall_created:
                op.add_step("firewall.create")
            if result.created:
                op.add_step("instance.create", detail=result.instance.name)

            info = result.instance
            port = config.service.port
            console.print()
            reporter.info("Deployment completed successfully!")
            console.print("===========================================")
            console.print(f"Instance Name: {info.name}")
            console.print(f"Zone: {info.zone}")
            console.print(f"External IP: {info.external_ip or '-'}")
            console.print(f"Internal IP: {info.internal_ip or '-'}")
            if info.external_ip:
                console.print(f"Phoenix URL: http://{info.external_ip}:{port}")
            console.print("===========================================")
            console.print()
            reporter.info("Phoenix is starting up. It may take a few minutes to be accessible.")
            reporter.info("You can check the startup progress with:")
            console.print(
                f"  gcloud compute ssh {info.name} --zone={info.zone} "
                f"--command='sudo journalctl -u {config.service.name} -f'",
                markup=False,
            )
            op.success(
                "Deployment complete." if result.created else "Instance left unchanged.",
                changed=int(result.created) + int(result.firewall_created),
                context={
                    "external_ip": info.external_ip,
                    "internal_ip": info.internal_ip,
                    "created": result.created,
                },
            )


def _deploy_overrides(
    machine_type: str | None,
    disk_size: str | None,
    port: int | None,
    version: str | None,
) -> dict[str, object]:
    return {
        "instance": {"machine_type": machine_type, "disk_size": disk_size},
        "service": {"port": port, "version": version},
    }


def _merge_overrides(
    base: Mapping[str, object],
    extra: Mapping[str, object],
) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            combined = dict(current)
            combined.update({k: v for k, v in value.items() if v is not None})
            merged[key] = combined
        elif value is not None:
            merged[key] = value
    return merged


@app.command()
def deploy(
    ctx: typer.Context,
    machine_type: str | None = MACHINE_TYPE_OPTION,
    disk_size: str | None = DISK_SIZE_OPTION,
    port: int | None = PORT_OPTION,
    version: str | None = PHOENIX_VERSION_OPTION,
    yes: bool = YES_OPTION,
    startup_script_out: Path | None = STARTUP_SCRIPT_OUT_OPTION,
) -> None:
    """Provision the firewall rule and instance."""
    base = _get_runtime(ctx)
    extra = _deploy_overrides(machine_type, disk_size, port, version)
    try:
        runtime = _build_runtime(base.config_file, _merge_overrides(base.overrides, extra))
    except PhoenixError as exc:
        _fail(str(exc))
    _provision(runtime, command="deploy", yes=yes, startup_script_out=startup_script_out)


@deploy_app.command()
def deploy_command(
    project: str | None = PROJECT_OPTION,
    name: str | None = NAME_OPTION,
    zone: str | None = ZONE_OPTION,
    machine_type: str | None = MACHINE_TYPE_OPTION,
    disk_size: str | None = DISK_SIZE_OPTION,
    port: int | None = PORT_OPTION,
    version: str | None = PHOENIX_VERSION_OPTION,
    config_file: Path | None = CONFIG_FILE_OPTION,
    yes: bool = YES_OPTION,
    startup_script_out: Path | None = STARTUP_SCRIPT_OUT_OPTION,
) -> None:
    """Deploy Arize Phoenix to a Google Compute Engine instance."""
    overrides = _merge_overrides(
        _instance_overrides(project, name, zone),
        _deploy_overrides(machine_type, disk_size, port, version),
    )
    try:
        runtime = _build_runtime(config_file, overrides)
    except PhoenixError as exc:
        _fail(str(exc))
    _validate_project(runtime, "deploy")
    _provision(runtime, command="deploy", yes=yes, startup_script_out=startup_script_out)


def run(command: typer.Typer, args: Sequence[str] | None = None) -> int:
    """Invoke *command* and map every failure onto exit code 1.

    Typer reports usage errors itself and exits with status 2; the CLI
    contract only distinguishes success from failure.
    """
    try:
        command(args=list(args) if args is not None else None)
    except SystemExit as exc:
        if exc.code is None or exc.code == 0:
            return int(ExitCode.OK)
        return int(ExitCode.FAILURE)
    return int(ExitCode.OK)


def main() -> None:
    """Console script entry point for ``phoenixctl``."""
    sys.exit(run(app))


def deploy_main() -> None:
    """Console script entry point for ``phoenix-deploy``."""
    sys.exit(run(deploy_app))


__all__ = ["RuntimeContext", "app", "deploy_app", "deploy_main", "main", "run"]
