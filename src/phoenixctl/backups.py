"""Backup archive naming and metadata helpers."""
from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime

from .errors import PhoenixError

BACKUP_PREFIX = "phoenix-backup-"
BACKUP_SUFFIX = ".tar.gz"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
BACKUP_NAME_PATTERN = re.compile(
    r"^phoenix-backup-(?P<stamp>\d{8}-\d{6})(?:-(?P<token>[0-9a-f]+))?\.tar\.gz$"
)


class BackupError(PhoenixError):
    """Raised when backup operations fail."""


class InstanceNotFoundError(BackupError):
    """Raised when the target instance does not exist."""


class BackupNotFoundError(BackupError):
    """Raised when the requested archive is not in the bucket."""


class UploadError(BackupError):
    """Raised when an uploaded archive cannot be found in the bucket."""


class RestoreError(BackupError):
    """Raised when a restore stops part way through."""


@dataclass(frozen=True, slots=True)
class BackupArchive:
    """An archive object stored in the backup bucket."""

    name: str
    bucket: str
    created_at: datetime
    size_bytes: int | None = None
    updated_at: datetime | None = None

    @property
    def url(self) -> str:
        """Return the ``gs://`` URL of the archive."""
        return storage_url(self.bucket, self.name)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "url": self.url,
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
        }


def storage_url(bucket: str, key: str | None = None) -> str:
    """Return ``gs://bucket[/key]``."""
    if key is None:
        return f"gs://{bucket}"
    return f"gs://{bucket}/{key}"


def generate_backup_name(now: datetime | None = None, *, token: str | None = None) -> str:
    """Return an archive name stamped with *now* at second resolution.

    A *token* is appended when the plain name is already taken.
    """
    moment = now or datetime.now(tz=UTC)
    stamp = moment.strftime(TIMESTAMP_FORMAT)
    if token:
        return f"{BACKUP_PREFIX}{stamp}-{token}{BACKUP_SUFFIX}"
    return f"{BACKUP_PREFIX}{stamp}{BACKUP_SUFFIX}"


def disambiguation_token() -> str:
    """Return a short random token for colliding archive names."""
    return secrets.token_hex(3)


def is_backup_name(name: str) -> bool:
    """Return True when *name* matches the archive naming pattern."""
    return BACKUP_NAME_PATTERN.match(name) is not None


def parse_backup_timestamp(name: str) -> datetime | None:
    """Return the UTC creation time encoded in *name*, if any."""
    match = BACKUP_NAME_PATTERN.match(name)
    if match is None:
        return None
    try:
        parsed = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=UTC)


def restore_suffix(moment: datetime | None = None) -> str:
    """Return the suffix used when moving the live data directory aside."""
    return (moment or datetime.now(tz=UTC)).strftime(TIMESTAMP_FORMAT)


def sort_newest_first(archives: list[BackupArchive]) -> list[BackupArchive]:
    """Order archives by encoded timestamp, newest first."""
    epoch = datetime.min.replace(tzinfo=UTC)
    return sorted(
        archives,
        key=lambda archive: (archive.created_at, archive.updated_at or epoch, archive.name),
        reverse=True,
    )


__all__ = [
    "BACKUP_NAME_PATTERN",
    "BACKUP_PREFIX",
    "BackupArchive",
    "BackupError",
    "BackupNotFoundError",
    "InstanceNotFoundError",
    "RestoreError",
    "UploadError",
    "disambiguation_token",
    "generate_backup_name",
    "is_backup_name",
    "parse_backup_timestamp",
    "restore_suffix",
    "sort_newest_first",
    "storage_url",
]
