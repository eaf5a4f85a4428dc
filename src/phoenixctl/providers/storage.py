"""Cloud Storage provider backed by ``google-cloud-storage``."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import storage

from .base import StorageError, StoredObject

# Client construction is lazy, so credential failures surface at call sites.
_API_ERRORS = (google_exceptions.GoogleAPICallError, auth_exceptions.GoogleAuthError)


@dataclass(slots=True)
class GCSStorageProvider:
    """Bucket and object operations for one project."""

    project: str
    location: str | None = None
    _client: Any = field(default=None, repr=False)

    @property
    def client(self) -> Any:
        """Return a lazily created ``storage.Client``."""
        if self._client is None:
            self._client = storage.Client(project=self.project)
        return self._client

    def bucket_exists(self, bucket: str) -> bool:
        """Return True when *bucket* exists."""
        try:
            return self.client.lookup_bucket(bucket) is not None
        except _API_ERRORS as exc:
            raise StorageError(f"Failed to look up bucket gs://{bucket}: {exc}") from exc

    def create_bucket(self, bucket: str) -> None:
        """Create *bucket* in the configured location."""
        try:
            self.client.create_bucket(bucket, project=self.project, location=self.location)
        except _API_ERRORS as exc:
            raise StorageError(f"Failed to create bucket gs://{bucket}: {exc}") from exc

    def has_retention_rule(self, bucket: str, age_days: int) -> bool:
        """Return True when a delete rule conditioned on *age_days* is attached."""
        handle = self._get_bucket(bucket)
        return any(_is_age_delete_rule(rule, age_days) for rule in handle.lifecycle_rules)

    def set_retention_rule(self, bucket: str, age_days: int) -> None:
        """Attach a rule deleting objects older than *age_days*."""
        handle = self._get_bucket(bucket)
        handle.add_lifecycle_delete_rule(age=age_days)
        try:
            handle.patch()
        except _API_ERRORS as exc:
            raise StorageError(
                f"Failed to set lifecycle policy on gs://{bucket}: {exc}"
            ) from exc

    def list_objects(self, bucket: str, prefix: str) -> list[StoredObject]:
        """Return objects under *prefix*."""
        try:
            blobs = list(self.client.list_blobs(bucket, prefix=prefix))
        except _API_ERRORS as exc:
            raise StorageError(f"Failed to list gs://{bucket}/{prefix}: {exc}") from exc
        return [_stored_object(blob) for blob in blobs]

    def stat_object(self, bucket: str, name: str) -> StoredObject | None:
        """Return metadata for *name* or ``None`` when missing."""
        try:
            blob = self.client.bucket(bucket).get_blob(name)
        except google_exceptions.NotFound:
            return None
        except _API_ERRORS as exc:
            raise StorageError(f"Failed to stat gs://{bucket}/{name}: {exc}") from exc
        if blob is None:
            return None
        return _stored_object(blob)

    def _get_bucket(self, bucket: str) -> Any:
        try:
            return self.client.get_bucket(bucket)
        except _API_ERRORS as exc:
            raise StorageError(f"Failed to load bucket gs://{bucket}: {exc}") from exc


def _is_age_delete_rule(rule: Mapping[str, Any], age_days: int) -> bool:
    action = rule.get("action") or {}
    condition = rule.get("condition") or {}
    if action.get("type") != "Delete":
        return False
    age = condition.get("age")
    return age is not None and int(age) <= age_days


def _stored_object(blob: Any) -> StoredObject:
    return StoredObject(name=blob.name, size=blob.size, updated=blob.updated)


__all__ = ["GCSStorageProvider"]
