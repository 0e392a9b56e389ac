"""
GCSBlobContainer — Google Cloud Storage blob container using google-cloud-storage.

Install extras: pip install "overflowq[gcs]"

A blob container is a key prefix ("<container>/<blob name>") inside one
bucket. create_if_not_exists() creates the bucket if it is missing and enforces
public access prevention on it, whether it was just created or already existed.

GCS has no queue service with pop-receipt semantics, so this adapter is
paired with a queue adapter through CompositeStorageAccount.

Note: google-cloud-storage is synchronous. All operations are wrapped in
asyncio.to_thread to avoid blocking the event loop.
"""

from __future__ import annotations

import asyncio
import dataclasses
from typing import TYPE_CHECKING

from overflowq.domain.errors import BlobNotFoundError, OverflowQError, StorageError

if TYPE_CHECKING:
    from google.cloud.storage import Client as GCSClient


def _gapi_exceptions():  # type: ignore[no-untyped-def]
    try:
        from google.api_core import exceptions as gapi_exc  # type: ignore[import-untyped]
    except ImportError as exc:
        raise ImportError(
            "GCSBlobContainer requires google-cloud-storage. "
            "Install with: pip install 'overflowq[gcs]'"
        ) from exc
    return gapi_exc


@dataclasses.dataclass
class GCSBlobContainer:
    """
    Google Cloud Storage blob container.

    Parameters
    ----------
    name        : container name, used as the key prefix
    bucket_name : GCS bucket name
    client      : google.cloud.storage.Client — created lazily if omitted
    """

    name: str
    bucket_name: str
    client: GCSClient | None = None

    def _get_client(self) -> GCSClient:
        if self.client is not None:
            return self.client
        try:
            from google.cloud import storage  # type: ignore[import-untyped]
        except ImportError as exc:
            raise ImportError(
                "GCSBlobContainer requires google-cloud-storage. "
                "Install with: pip install 'overflowq[gcs]'"
            ) from exc
        self.client = storage.Client()
        return self.client  # type: ignore[return-value]

    def _key(self, blob_name: str) -> str:
        return f"{self.name}/{blob_name}"

    async def create_if_not_exists(self) -> bool:
        try:
            return await asyncio.to_thread(self._sync_create_if_not_exists)
        except Exception as exc:
            raise StorageError(f"GCS create bucket {self.bucket_name!r} failed", exc) from exc

    async def upload(self, blob_name: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._sync_upload, blob_name, data)
        except Exception as exc:
            raise StorageError(f"GCS upload of {blob_name!r} failed", exc) from exc

    async def download(self, blob_name: str) -> bytes:
        try:
            return await asyncio.to_thread(self._sync_download, blob_name)
        except OverflowQError:
            raise
        except Exception as exc:
            raise StorageError(f"GCS download of {blob_name!r} failed", exc) from exc

    async def delete(self, blob_name: str) -> None:
        try:
            await asyncio.to_thread(self._sync_delete, blob_name)
        except OverflowQError:
            raise
        except Exception as exc:
            raise StorageError(f"GCS delete of {blob_name!r} failed", exc) from exc

    async def close(self) -> None:
        pass

    # ------------------------------------------------------------------ #
    # Synchronous implementations (executed in a thread-pool worker)      #
    # ------------------------------------------------------------------ #

    def _sync_create_if_not_exists(self) -> bool:
        client = self._get_client()
        existing = client.lookup_bucket(self.bucket_name)  # type: ignore[attr-defined]
        if existing is not None:
            existing.iam_configuration.public_access_prevention = "enforced"
            existing.patch()
            return False
        bucket = client.bucket(self.bucket_name)  # type: ignore[attr-defined]
        bucket.iam_configuration.public_access_prevention = "enforced"
        try:
            client.create_bucket(bucket)  # type: ignore[attr-defined]
        except _gapi_exceptions().Conflict:
            return False
        return True

    def _sync_upload(self, blob_name: str, data: bytes) -> None:
        bucket = self._get_client().bucket(self.bucket_name)  # type: ignore[attr-defined]
        bucket.blob(self._key(blob_name)).upload_from_string(
            data, content_type="application/octet-stream"
        )

    def _sync_download(self, blob_name: str) -> bytes:
        gapi_exc = _gapi_exceptions()
        bucket = self._get_client().bucket(self.bucket_name)  # type: ignore[attr-defined]
        try:
            content: bytes = bucket.blob(self._key(blob_name)).download_as_bytes()
        except gapi_exc.NotFound as exc:
            raise BlobNotFoundError(blob_name, exc) from exc
        return content

    def _sync_delete(self, blob_name: str) -> None:
        gapi_exc = _gapi_exceptions()
        bucket = self._get_client().bucket(self.bucket_name)  # type: ignore[attr-defined]
        try:
            bucket.blob(self._key(blob_name)).delete()
        except gapi_exc.NotFound as exc:
            raise BlobNotFoundError(blob_name, exc) from exc
