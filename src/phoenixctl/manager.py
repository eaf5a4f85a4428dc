"""Backup, restore and update orchestration for the Phoenix instance.

Nothing is cached between invocations: every call re-derives the current
state from the providers (does the instance exist, does the bucket exist,
does the archive exist). Operations that touch the data directory or the
service hold the remote lock for their whole duration.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from .backups import (
    BACKUP_PREFIX,
    BackupArchive,
    BackupNotFoundError,
    InstanceNotFoundError,
    RestoreError,
    UploadError,
    disambiguation_token,
    generate_backup_name,
    parse_backup_timestamp,
    restore_suffix,
    sort_newest_first,
    storage_url,
)
from .config import AppConfig
from .locking import RemoteLockManager
from .providers.base import (
    ComputeProvider,
    InstanceInfo,
    RemoteCommandError,
    RemoteExecutor,
    StorageProvider,
)
from .providers.docker import DockerProvider
from .providers.systemd import SystemdProvider
from .reporting import ProgressReporter

RESTORE_DOWNLOAD_NAME = "phoenix-restore.tar.gz"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class RestoreResult:
    """Outcome of a restore request."""

    archive: str
    restored: bool
    previous_data_dir: str | None = None


class BackupManager:
    """Snapshot and restore the instance data directory via Cloud Storage."""

    def __init__(
        self,
        config: AppConfig,
        *,
        compute: ComputeProvider,
        storage: StorageProvider,
        executor: RemoteExecutor,
        systemd: SystemdProvider,
        docker: DockerProvider,
        locks: RemoteLockManager,
        reporter: ProgressReporter,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Wire the manager to its providers."""
        self.config = config
        self.compute = compute
        self.storage = storage
        self.executor = executor
        self.systemd = systemd
        self.docker = docker
        self.locks = locks
        self.reporter = reporter
        self._clock = clock
        self._bucket_ready = False
        self.last_lock_wait_ms: int | None = None

    @property
    def bucket(self) -> str:
        """Return the configured backup bucket name."""
        return self.config.backups.bucket

    # Preconditions -------------------------------------------------------
    def require_instance(self) -> InstanceInfo:
        """Return the target instance or raise :class:`InstanceNotFoundError`."""
        name = self.config.instance.name
        zone = self.config.instance.zone
        info = self.compute.get_instance(name, zone)
        if info is None:
            raise InstanceNotFoundError(f"Instance {name} not found in zone {zone}")
        return info

    def ensure_bucket(self) -> bool:
        """Create the bucket with its retention rule when missing.

        Returns True when the bucket was created by this call. Existing buckets
        are checked for the retention rule and repaired when it is absent.
        """
        if self._bucket_ready:
            return False
        days = self.config.backups.retention_days
        url = storage_url(self.bucket)
        created = False
        if not self.storage.bucket_exists(self.bucket):
            self.reporter.info(f"Creating backup bucket: {url}")
            self.storage.create_bucket(self.bucket)
            self.storage.set_retention_rule(self.bucket, days)
            self.reporter.info(f"Bucket created with {days}-day retention policy")
            created = True
        else:
            self.reporter.info(f"Using existing backup bucket: {url}")
            if not self.storage.has_retention_rule(self.bucket, days):
                self.reporter.warn(
                    f"Bucket {url} has no {days}-day retention rule; attaching it now"
                )
                self.storage.set_retention_rule(self.bucket, days)
        self._bucket_ready = True
        return created

    # Operations ----------------------------------------------------------
    def backup(self) -> BackupArchive:
        """Archive the live data directory and upload it to the bucket."""
        self.require_instance()
        self.ensure_bucket()

        now = self._clock()
        name = self._unique_name(now)
        service = self.config.service
        temp_path = f"{self.config.remote.temp_dir.rstrip('/')}/{name}"
        url = storage_url(self.bucket, name)

        with self.locks.instance_lock("backup") as handle:
            self.last_lock_wait_ms = handle.wait_ms
            self.reporter.info("Creating backup archive on instance...")
            self.executor.run(
                ["sudo", "tar", "-czf", temp_path, "-C", service.base_dir, "data/"]
            )

            self.reporter.info(f"Uploading backup to GCS: {url}")
            try:
                self.executor.run([self.config.remote.gsutil_bin, "cp", temp_path, url])
            except RemoteCommandError as exc:
                raise UploadError(
                    f"Failed to upload backup to GCS; archive left at {temp_path}: {exc}"
                ) from exc

            stored = self.storage.stat_object(self.bucket, name)
            if stored is None:
                raise UploadError(
                    f"Failed to upload backup to GCS; archive left at {temp_path}"
                )

            self.executor.run(["sudo", "rm", "-f", temp_path])
            leftover = self.executor.run(["test", "-e", temp_path], check=False)
            if leftover.returncode == 0:
                self.reporter.warn(f"Temporary archive {temp_path} is still on the instance")
            else:
                self.reporter.info("Local backup file cleaned up")

        return BackupArchive(
            name=name,
            bucket=self.bucket,
            created_at=now.replace(microsecond=0),
            size_bytes=stored.size,
            updated_at=stored.updated,
        )

    def list_backups(self) -> list[BackupArchive]:
        """Return archives in the bucket, newest first."""
        self.ensure_bucket()
        archives: list[BackupArchive] = []
        for stored in self.storage.list_objects(self.bucket, BACKUP_PREFIX):
            created_at = parse_backup_timestamp(stored.name)
            if created_at is None:
                continue
            archives.append(
                BackupArchive(
                    name=stored.name,
                    bucket=self.bucket,
                    created_at=created_at,
                    size_bytes=stored.size,
                    updated_at=stored.updated,
                )
            )
        return sort_newest_first(archives)

    def restore(self, name: str, *, confirm: Callable[[], bool]) -> RestoreResult:
        """Replace the live data directory with the contents of archive *name*.

        The previous data directory is renamed aside, never deleted. A failed
        download restarts the service on its existing data; once the live data
        has been moved, failures leave the service stopped for the operator.
        """
        name = self._normalise_archive_name(name)
        url = storage_url(self.bucket, name)
        self.require_instance()
        self.ensure_bucket()

        if self.storage.stat_object(self.bucket, name) is None:
            raise BackupNotFoundError(f"Backup file not found: {url}")

        if not confirm():
            return RestoreResult(archive=name, restored=False)

        service = self.config.service
        download = f"{self.config.remote.temp_dir.rstrip('/')}/{RESTORE_DOWNLOAD_NAME}"
        with self.locks.instance_lock("restore") as handle:
            self.last_lock_wait_ms = handle.wait_ms
            self.reporter.info("Stopping Phoenix service...")
            self.systemd.stop()

            self.reporter.info("Downloading and restoring backup...")
            try:
                self.executor.run([self.config.remote.gsutil_bin, "cp", url, download])
            except RemoteCommandError as exc:
                # Live data is untouched at this point.
                self.reporter.info("Starting Phoenix service...")
                self.systemd.start()
                raise RestoreError(
                    f"Failed to download {url}; the {service.name} service was restarted "
                    f"with its existing data: {exc}"
                ) from exc

            previous: str | None = None
            try:
                previous = self._move_live_data_aside()
                self.executor.run(["sudo", "mkdir", "-p", service.base_dir])
                self.executor.run(["sudo", "tar", "-xzf", download, "-C", service.base_dir])
                self.executor.run(
                    ["sudo", "chown", "-R", f"{service.user}:{service.user}", service.data_dir]
                )
            except RemoteCommandError as exc:
                kept = f" Previous data preserved at {previous}." if previous else ""
                raise RestoreError(
                    f"Restore of {name} failed and the {service.name} service was left "
                    f"stopped.{kept} Manual intervention required: {exc}"
                ) from exc
            self.executor.run(["sudo", "rm", "-f", download])

            self.reporter.info("Starting Phoenix service...")
            self.systemd.start()

        return RestoreResult(archive=name, restored=True, previous_data_dir=previous)

    def update(self) -> str:
        """Stop the service, pull the configured image and start it again."""
        self.require_instance()
        image_ref = self.config.service.image_ref
        with self.locks.instance_lock("update") as handle:
            self.last_lock_wait_ms = handle.wait_ms
            self.reporter.info("Stopping Phoenix service...")
            self.systemd.stop()
            try:
                self.reporter.info(f"Pulling {image_ref}...")
                self.docker.pull(image_ref)
            finally:
                self.reporter.info("Starting Phoenix service...")
                self.systemd.start()
        return image_ref

    # Helpers ---------------------------------------------------------------
    def _unique_name(self, now: datetime) -> str:
        name = generate_backup_name(now)
        if self.storage.stat_object(self.bucket, name) is None:
            return name
        self.reporter.warn(f"Backup {name} already exists; adding a suffix")
        return generate_backup_name(now, token=disambiguation_token())

    def _move_live_data_aside(self) -> str | None:
        data_dir = self.config.service.data_dir
        exists = self.executor.run(["sudo", "test", "-d", data_dir], check=False)
        if exists.returncode != 0:
            self.reporter.info(f"No existing data directory at {data_dir}")
            return None
        previous = f"{data_dir}.backup.{restore_suffix(self._clock())}"
        self.executor.run(["sudo", "mv", data_dir, previous])
        self.reporter.info(f"Previous data moved to {previous}")
        return previous

    def _normalise_archive_name(self, name: str) -> str:
        value = name.strip()
        prefix = storage_url(self.bucket) + "/"
        if value.startswith(prefix):
            value = value[len(prefix) :]
        if not value or "/" in value:
            raise BackupNotFoundError(f"Invalid backup name: {name!r}")
        return value


__all__ = ["BackupManager", "RestoreResult"]
