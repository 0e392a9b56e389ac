"""
Azure Storage adapters — queues (azure-storage-queue) and blobs (azure-storage-blob).

Install extras: pip install "overflowq[azure]"

Both adapters wrap the SDKs' asyncio clients. Queue clients encode outgoing
bodies with the binary base64 policy, so they cost 4/3 of their length against
the 64 KiB message limit. Incoming bodies are decoded here rather than by an
SDK policy: a body that is not valid base64 (a plain-text message from another
producer) is delivered as its UTF-8 text instead of failing the receive.

Error mapping
-------------
The SDK raises azure.core HttpResponseError subclasses carrying status_code
and error_code attributes. They are translated without importing azure.core:

  QueueNotFound                        → QueueNotFoundError
  MessageNotFound / PopReceiptMismatch → MessageNotFoundError
  BlobNotFound (404 on a blob)         → BlobNotFoundError
  anything else                        → StorageError naming the operation

Connection
----------
    account = AzureStorageAccount.from_connection_string("DefaultEndpointsProtocol=...")
    account = AzureStorageAccount.from_env()   # AZURE_STORAGE_CONNECTION_STRING
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import dataclasses
import os
from collections.abc import Iterator
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from overflowq.domain.errors import (
    BlobNotFoundError,
    MessageNotFoundError,
    OverflowQError,
    QueueNotFoundError,
    StorageError,
    UnsupportedOperationError,
)
from overflowq.domain.models import AccessPolicy, MessageReceipt, RawMessage

if TYPE_CHECKING:
    from azure.storage.blob.aio import ContainerClient
    from azure.storage.queue.aio import QueueClient

CONNECTION_STRING_ENV = "AZURE_STORAGE_CONNECTION_STRING"

AZURE_MAX_MESSAGE_SIZE = 64 * 1024
AZURE_MAX_BATCH_SIZE = 32

_MESSAGE_ERROR_CODES = ("MessageNotFound", "PopReceiptMismatch")


def _seconds(value: timedelta | None) -> int | None:
    return None if value is None else int(value.total_seconds())


def _status_code(exc: Exception) -> int | None:
    code = getattr(exc, "status_code", None)
    return code if isinstance(code, int) else None


def _error_code(exc: Exception) -> str:
    code = getattr(exc, "error_code", None)
    return str(code) if code else ""


def _decode_content(content: str | bytes | None) -> bytes:
    """Bodies written by this adapter are base64; anything else is taken as text."""
    if content is None:
        return b""
    if isinstance(content, bytes):
        return content
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError):
        return content.encode("utf-8")


def _to_raw(message: Any) -> RawMessage:
    content = _decode_content(message.content)
    return RawMessage(
        id=message.id,
        pop_receipt=getattr(message, "pop_receipt", None),
        dequeue_count=getattr(message, "dequeue_count", None) or 0,
        insertion_time=getattr(message, "inserted_on", None),
        expiration_time=getattr(message, "expires_on", None),
        next_visible_time=getattr(message, "next_visible_on", None),
        content=content,
    )


@dataclasses.dataclass
class AzureQueueClient:
    """
    Azure Storage queue adapter.

    Parameters
    ----------
    name   : queue name
    client : azure.storage.queue.aio.QueueClient with the binary base64 encode policy
             and no decode policy
    """

    name: str
    client: QueueClient
    max_message_size: int = AZURE_MAX_MESSAGE_SIZE
    max_batch_size: int = AZURE_MAX_BATCH_SIZE

    @contextlib.contextmanager
    def _translate(self, operation: str, message_id: str | None = None) -> Iterator[None]:
        try:
            yield
        except OverflowQError:
            raise
        except Exception as exc:
            code = _error_code(exc)
            if message_id is not None and code in _MESSAGE_ERROR_CODES:
                raise MessageNotFoundError(message_id, exc) from exc
            if code == "QueueNotFound" or _status_code(exc) == 404:
                raise QueueNotFoundError(self.name, exc) from exc
            raise StorageError(f"Azure queue {operation} failed", exc) from exc

    # ------------------------------------------------------------------ #
    # Queue lifecycle                                                      #
    # ------------------------------------------------------------------ #

    async def create(self, **options: Any) -> None:
        with self._translate("create_queue"):
            await self.client.create_queue(**options)

    async def create_if_not_exists(self, **options: Any) -> bool:
        if await self.exists(**options):
            return False
        try:
            with self._translate("create_queue"):
                await self.client.create_queue(**options)
        except StorageError as exc:
            if exc.cause is not None and _status_code(exc.cause) == 409:
                return False
            raise
        return True

    async def exists(self, **options: Any) -> bool:
        try:
            with self._translate("get_queue_properties"):
                await self.client.get_queue_properties(**options)
        except QueueNotFoundError:
            return False
        return True

    async def delete_if_exists(self, **options: Any) -> bool:
        try:
            with self._translate("delete_queue"):
                await self.client.delete_queue(**options)
        except QueueNotFoundError:
            return False
        return True

    async def clear(self, **options: Any) -> None:
        with self._translate("clear_messages"):
            await self.client.clear_messages(**options)

    async def get_metadata(self, **options: Any) -> dict[str, str]:
        with self._translate("get_queue_properties"):
            properties = await self.client.get_queue_properties(**options)
        return dict(properties.metadata or {})

    async def set_metadata(self, metadata: dict[str, str], **options: Any) -> None:
        with self._translate("set_queue_metadata"):
            await self.client.set_queue_metadata(metadata=metadata, **options)

    async def get_access_policy(self, **options: Any) -> dict[str, AccessPolicy]:
        with self._translate("get_queue_access_policy"):
            identifiers = await self.client.get_queue_access_policy(**options)
        return {
            policy_id: AccessPolicy(
                permission=str(policy.permission) if policy.permission else None,
                start=policy.start,
                expiry=policy.expiry,
            )
            for policy_id, policy in identifiers.items()
        }

    async def set_access_policy(
        self, policies: dict[str, AccessPolicy], **options: Any
    ) -> None:
        from azure.storage.queue import AccessPolicy as AzureAccessPolicy

        identifiers = {
            policy_id: AzureAccessPolicy(
                permission=policy.permission, expiry=policy.expiry, start=policy.start
            )
            for policy_id, policy in policies.items()
        }
        with self._translate("set_queue_access_policy"):
            await self.client.set_queue_access_policy(
                signed_identifiers=identifiers, **options
            )

    # ------------------------------------------------------------------ #
    # Messages                                                             #
    # ------------------------------------------------------------------ #

    async def send_message(
        self,
        content: bytes,
        *,
        time_to_live: timedelta | None = None,
        visibility_delay: timedelta | None = None,
        **options: Any,
    ) -> None:
        with self._translate("send_message"):
            await self.client.send_message(
                content,
                visibility_timeout=_seconds(visibility_delay),
                time_to_live=_seconds(time_to_live),
                **options,
            )

    async def receive_message(
        self,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> RawMessage | None:
        with self._translate("receive_message"):
            message = await self.client.receive_message(
                visibility_timeout=_seconds(visibility_timeout), **options
            )
        return None if message is None else _to_raw(message)

    async def receive_messages(
        self,
        count: int,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> list[RawMessage]:
        with self._translate("receive_messages"):
            pager = self.client.receive_messages(
                messages_per_page=count,
                max_messages=count,
                visibility_timeout=_seconds(visibility_timeout),
                **options,
            )
            return [_to_raw(message) async for message in pager]

    async def peek_message(self, **options: Any) -> RawMessage | None:
        messages = await self.peek_messages(1, **options)
        return messages[0] if messages else None

    async def peek_messages(self, count: int, **options: Any) -> list[RawMessage]:
        with self._translate("peek_messages"):
            messages = await self.client.peek_messages(max_messages=count, **options)
        return [_to_raw(message) for message in messages]

    async def update_message(
        self,
        message_id: str,
        pop_receipt: str,
        *,
        visibility_timeout: timedelta,
        content: bytes | None = None,
        **options: Any,
    ) -> MessageReceipt:
        with self._translate("update_message", message_id):
            updated = await self.client.update_message(
                message_id,
                pop_receipt=pop_receipt,
                content=content,
                visibility_timeout=_seconds(visibility_timeout),
                **options,
            )
        return MessageReceipt(
            id=updated.id,
            pop_receipt=updated.pop_receipt,
            next_visible_time=updated.next_visible_on,
        )

    async def delete_message(
        self, message_id: str, pop_receipt: str, **options: Any
    ) -> None:
        with self._translate("delete_message", message_id):
            await self.client.delete_message(
                message_id, pop_receipt=pop_receipt, **options
            )

    def generate_shared_access_signature(
        self,
        *,
        permission: str | None = None,
        expiry: datetime | None = None,
        start: datetime | None = None,
        policy_id: str | None = None,
    ) -> str:
        account_key = getattr(self.client.credential, "account_key", None)
        if not account_key:
            raise UnsupportedOperationError(
                "Shared access signatures require a shared key credential"
            )
        from azure.storage.queue import generate_queue_sas

        return generate_queue_sas(
            account_name=self.client.account_name,
            queue_name=self.name,
            account_key=account_key,
            permission=permission,
            expiry=expiry,
            start=start,
            policy_id=policy_id,
        )

    async def close(self) -> None:
        await self.client.close()


@dataclasses.dataclass
class AzureBlobContainer:
    """
    Azure Blob Storage container adapter.

    Parameters
    ----------
    name   : container name
    client : azure.storage.blob.aio.ContainerClient
    """

    name: str
    client: ContainerClient

    async def create_if_not_exists(self) -> bool:
        """Create the container with public access off. False if it existed."""
        try:
            await self.client.create_container(public_access=None)
        except Exception as exc:
            if _status_code(exc) == 409:
                return False
            raise StorageError("Azure blob create_container failed", exc) from exc
        return True

    async def upload(self, blob_name: str, data: bytes) -> None:
        try:
            await self.client.upload_blob(blob_name, data, overwrite=True)
        except Exception as exc:
            raise StorageError(f"Azure blob upload of {blob_name!r} failed", exc) from exc

    async def download(self, blob_name: str) -> bytes:
        try:
            downloader = await self.client.download_blob(blob_name)
            return await downloader.readall()
        except Exception as exc:
            if _status_code(exc) == 404:
                raise BlobNotFoundError(blob_name, exc) from exc
            raise StorageError(f"Azure blob download of {blob_name!r} failed", exc) from exc

    async def delete(self, blob_name: str) -> None:
        try:
            await self.client.delete_blob(blob_name)
        except Exception as exc:
            if _status_code(exc) == 404:
                raise BlobNotFoundError(blob_name, exc) from exc
            raise StorageError(f"Azure blob delete of {blob_name!r} failed", exc) from exc

    async def close(self) -> None:
        await self.client.close()


@dataclasses.dataclass
class AzureStorageAccount:
    """
    Builds Azure queue and container handles from a connection string.

    Handles are created on demand and perform no I/O until used.
    """

    connection_string: str

    @classmethod
    def from_connection_string(cls, connection_string: str) -> "AzureStorageAccount":
        return cls(connection_string=connection_string)

    @classmethod
    def from_env(cls, variable: str = CONNECTION_STRING_ENV) -> "AzureStorageAccount":
        """Read the connection string from the environment."""
        connection_string = os.environ.get(variable)
        if not connection_string:
            raise StorageError(f"Environment variable {variable} is not set")
        return cls(connection_string=connection_string)

    def queue_client(self, queue_name: str) -> AzureQueueClient:
        try:
            from azure.storage.queue import BinaryBase64EncodePolicy
            from azure.storage.queue.aio import QueueClient
        except ImportError as exc:
            raise ImportError(
                "AzureStorageAccount requires azure-storage-queue. "
                "Install with: pip install 'overflowq[azure]'"
            ) from exc
        client = QueueClient.from_connection_string(
            self.connection_string,
            queue_name,
            message_encode_policy=BinaryBase64EncodePolicy(),
        )
        return AzureQueueClient(name=queue_name, client=client)

    def blob_container(self, container_name: str) -> AzureBlobContainer:
        try:
            from azure.storage.blob.aio import ContainerClient
        except ImportError as exc:
            raise ImportError(
                "AzureStorageAccount requires azure-storage-blob. "
                "Install with: pip install 'overflowq[azure]'"
            ) from exc
        client = ContainerClient.from_connection_string(
            self.connection_string, container_name
        )
        return AzureBlobContainer(name=container_name, client=client)
