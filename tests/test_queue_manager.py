import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import BaseModel

from overflowq.adapters.storage.composite import CompositeStorageAccount
from overflowq.adapters.storage.memory import (
    InMemoryBlobContainer,
    InMemoryQueue,
    InMemoryStorageAccount,
)
from overflowq.core import codec
from overflowq.core.manager import OVERSIZED_CONTAINER_NAME, QueueManager
from overflowq.core.serializer import JsonSerializer
from overflowq.domain.errors import (
    BatchReceiveError,
    BlobNotFoundError,
    InvalidArgumentError,
    MessageNotFoundError,
    OffloadedPayloadError,
    OverflowQError,
    StorageError,
)
from overflowq.domain.models import Envelope, RawMessage

# Azure-sized queue: 64 KiB messages → 49149-byte direct-send threshold
THRESHOLD = 49149

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def account() -> InMemoryStorageAccount:
    return InMemoryStorageAccount()


@pytest.fixture
async def manager(account: InMemoryStorageAccount) -> QueueManager:
    return await QueueManager.create("orders", account)


def _queue(account: InMemoryStorageAccount) -> InMemoryQueue:
    return account.queue_client("orders")


def _container(account: InMemoryStorageAccount) -> InMemoryBlobContainer:
    return account.blob_container(OVERSIZED_CONTAINER_NAME)


def _string_of_serialized_size(size: int) -> str:
    """A str whose JSON encoding is exactly `size` bytes (two quote characters)."""
    return "x" * (size - 2)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("name", ["", "   "])
def test_blank_queue_name_rejected(account: InMemoryStorageAccount, name: str) -> None:
    with pytest.raises(InvalidArgumentError) as info:
        QueueManager(name, account)
    assert info.value.argument == "queue_name"


def test_none_account_rejected() -> None:
    with pytest.raises(InvalidArgumentError) as info:
        QueueManager("orders", None)  # type: ignore[arg-type]
    assert info.value.argument == "account"


def test_threshold_derived_from_queue_limit() -> None:
    assert QueueManager("orders", InMemoryStorageAccount()).max_payload_size == THRESHOLD
    sqs_sized = InMemoryStorageAccount(max_message_size=256 * 1024)
    assert QueueManager("orders", sqs_sized).max_payload_size == 196605


async def test_create_ensures_queue_and_container(account: InMemoryStorageAccount) -> None:
    await QueueManager.create("orders", account)
    assert await _queue(account).exists()
    assert await _container(account).create_if_not_exists() is False


async def test_create_tolerates_existing_queue_and_container(
    account: InMemoryStorageAccount,
) -> None:
    await _queue(account).create()
    await _container(account).create_if_not_exists()
    manager = await QueueManager.create("orders", account)
    await manager.send("ok")


async def test_context_manager_initializes_and_closes(
    account: InMemoryStorageAccount,
) -> None:
    async with QueueManager("orders", account) as qm:
        await qm.send("hello")
        message = await qm.receive()
        assert message is not None
    with pytest.raises(OverflowQError):
        await qm.send("after close")


async def test_uninitialized_manager_refuses_core_operations(
    account: InMemoryStorageAccount,
) -> None:
    manager = QueueManager("orders", account)
    with pytest.raises(OverflowQError):
        await manager.send("x")
    with pytest.raises(OverflowQError):
        await manager.receive()


async def test_custom_container_name(account: InMemoryStorageAccount) -> None:
    manager = await QueueManager.create("orders", account, container_name="big")
    await manager.send(_string_of_serialized_size(THRESHOLD + 1))
    assert len(account.blob_container("big").blob_names()) == 1


# ---------------------------------------------------------------------------
# Direct path
# ---------------------------------------------------------------------------


async def test_small_record_roundtrip(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    record = {"sku": "A-1", "q": 3}
    assert len(JsonSerializer().dumps(record)) < THRESHOLD

    await manager.send(record)
    message = await manager.receive()

    assert message is not None
    assert message.content == record
    assert message.large_content_blob_name is None
    assert not message.is_large_message
    assert _container(account).blob_names() == []


async def test_orders_scenario(manager: QueueManager) -> None:
    record = "0123456789"
    await manager.send(record)

    message = await manager.receive()
    assert message is not None
    assert message.content == record
    assert message.large_content_blob_name is None

    await manager.delete(message)
    assert await manager.receive() is None


async def test_receive_empty_queue_returns_none(manager: QueueManager) -> None:
    assert await manager.receive() is None


async def test_send_forwards_visibility_delay(manager: QueueManager) -> None:
    await manager.send("later", visibility_delay=timedelta(hours=1))
    assert await manager.receive() is None


async def test_receive_reports_message_metadata(manager: QueueManager) -> None:
    await manager.send("x")
    message = await manager.receive(visibility_timeout=timedelta(seconds=5))
    assert message is not None
    assert message.dequeue_count == 1
    assert message.pop_receipt is not None
    assert message.insertion_time is not None
    assert message.expiration_time is not None
    assert message.next_visible_time is not None


async def test_typed_payload_roundtrip(account: InMemoryStorageAccount) -> None:
    class Order(BaseModel):
        id: int
        lines: list[str]

    manager = await QueueManager.create(
        "orders", account, serializer=JsonSerializer(Order)
    )
    await manager.send(Order(id=1, lines=["a"]))
    message = await manager.receive()
    assert message is not None
    assert message.content == Order(id=1, lines=["a"])


# ---------------------------------------------------------------------------
# Offload path
# ---------------------------------------------------------------------------


async def test_large_payload_roundtrip(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    payload = {"blob": "y" * 100_000}
    assert len(JsonSerializer().dumps(payload)) > 100_000

    await manager.send(payload)
    [blob_name] = _container(account).blob_names()
    message = await manager.receive()

    assert message is not None
    assert message.content == payload
    assert message.large_content_blob_name == blob_name
    assert message.is_large_message


async def test_large_payload_enqueues_only_envelope(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    data = _string_of_serialized_size(100_000)
    await manager.send(data)

    raw = await _queue(account).peek_message()
    assert raw is not None
    envelope = codec.decode_envelope(raw.content)
    assert envelope is not None
    assert envelope.blob_name in _container(account).blob_names()
    stored = await _container(account).download(envelope.blob_name)
    assert stored == JsonSerializer().dumps(data)


async def test_large_payload_delete_removes_blob_and_message(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    await manager.send(_string_of_serialized_size(100_000))
    message = await manager.receive()
    assert message is not None

    await manager.delete(message)

    assert _container(account).blob_names() == []
    assert await _queue(account).peek_message() is None
    assert await manager.receive() is None


async def test_threshold_boundary(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    await manager.send(_string_of_serialized_size(THRESHOLD))
    assert _container(account).blob_names() == []

    await manager.send(_string_of_serialized_size(THRESHOLD + 1))
    assert len(_container(account).blob_names()) == 1

    first = await manager.receive()
    second = await manager.receive()
    assert first is not None and second is not None
    assert first.large_content_blob_name is None
    assert second.large_content_blob_name is not None
    assert len(first.content) == THRESHOLD - 2
    assert len(second.content) == THRESHOLD - 1


async def test_missing_blob_raises(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    await manager.send(_string_of_serialized_size(100_000))
    [blob_name] = _container(account).blob_names()
    await _container(account).delete(blob_name)

    with pytest.raises(BlobNotFoundError) as info:
        await manager.receive()
    assert info.value.blob_name == blob_name


async def test_corrupt_blob_raises_without_text_fallback(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    await manager.send(_string_of_serialized_size(100_000))
    [blob_name] = _container(account).blob_names()
    await _container(account).upload(blob_name, b"this is not json")

    with pytest.raises(OffloadedPayloadError) as info:
        await manager.receive()
    assert info.value.blob_name == blob_name


# ---------------------------------------------------------------------------
# Foreign messages
# ---------------------------------------------------------------------------


async def test_raw_text_message_delivered_as_text(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    await _queue(account).send_message(b"legacy plain text message")

    message = await manager.receive()

    assert message is not None
    assert message.content == "legacy plain text message"
    assert message.large_content_blob_name is None
    await manager.delete(message)


async def test_json_lookalike_without_marker_is_not_envelope(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    body = json.dumps({"blob_name": "does-not-exist"}).encode()
    await _queue(account).send_message(body)

    message = await manager.receive()

    assert message is not None
    assert message.content == {"blob_name": "does-not-exist"}
    assert not message.is_large_message


# ---------------------------------------------------------------------------
# Batch receive
# ---------------------------------------------------------------------------


async def test_receive_many_mixes_direct_and_offloaded(manager: QueueManager) -> None:
    await manager.send("small")
    await manager.send(_string_of_serialized_size(100_000))

    messages = await manager.receive_many(10)

    assert len(messages) == 2
    assert [m.is_large_message for m in messages] == [False, True]
    assert messages[0].content == "small"


async def test_receive_many_missing_blob_keeps_decoded_messages(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    await manager.send("small")
    await manager.send(_string_of_serialized_size(100_000))
    [blob_name] = _container(account).blob_names()
    await _container(account).delete(blob_name)

    with pytest.raises(BatchReceiveError) as info:
        await manager.receive_many(2)

    [good] = info.value.messages
    assert good.content == "small"
    [(raw, error)] = info.value.failures
    assert isinstance(error, BlobNotFoundError)
    assert error.blob_name == blob_name
    assert raw.pop_receipt is not None

    await manager.delete(good)
    assert await manager.peek_messages(2) == []


async def test_receive_many_propagates_unexpected_errors() -> None:
    manager, queue, container = _mocked_manager()
    await manager.initialize()
    queue.receive_messages.return_value = [_envelope_raw("blob-1")]
    container.download.side_effect = RuntimeError("bug")

    with pytest.raises(RuntimeError, match="bug"):
        await manager.receive_many(1)


@pytest.mark.parametrize("count", [0, -1, 33])
async def test_batch_count_bounds(manager: QueueManager, count: int) -> None:
    with pytest.raises(InvalidArgumentError):
        await manager.receive_many(count)
    with pytest.raises(InvalidArgumentError):
        await manager.get_messages(count)
    with pytest.raises(InvalidArgumentError):
        await manager.peek_messages(count)


async def test_batch_count_upper_bound_is_accepted(manager: QueueManager) -> None:
    assert await manager.get_messages(32) == []
    assert await manager.peek_messages(32) == []


async def test_batch_count_validated_before_any_call() -> None:
    queue = AsyncMock()
    queue.max_message_size = 64 * 1024
    queue.max_batch_size = 32
    container = AsyncMock()
    account = CompositeStorageAccount(queues=lambda _: queue, blobs=lambda _: container)
    manager = QueueManager("orders", account)

    with pytest.raises(InvalidArgumentError):
        await manager.get_messages(0)
    queue.receive_messages.assert_not_called()


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


async def test_delete_twice_surfaces_not_found(manager: QueueManager) -> None:
    await manager.send("x")
    message = await manager.receive()
    assert message is not None
    await manager.delete(message)
    with pytest.raises(MessageNotFoundError):
        await manager.delete(message)


async def test_delete_large_twice_surfaces_not_found(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    await manager.send(_string_of_serialized_size(100_000))
    message = await manager.receive()
    assert message is not None
    await manager.delete(message)
    with pytest.raises(MessageNotFoundError):
        await manager.delete(message)


async def test_delete_small_message_leaves_blobs_alone(
    manager: QueueManager, account: InMemoryStorageAccount
) -> None:
    await manager.send(_string_of_serialized_size(100_000))
    await manager.send("small")
    large = await manager.receive()
    small = await manager.receive()
    assert large is not None and small is not None

    await manager.delete(small)

    assert len(_container(account).blob_names()) == 1


# ---------------------------------------------------------------------------
# Partial failures (mocked collaborators)
# ---------------------------------------------------------------------------


def _mocked_manager() -> tuple[QueueManager, AsyncMock, AsyncMock]:
    queue = AsyncMock()
    queue.max_message_size = 64 * 1024
    queue.max_batch_size = 32
    queue.create_if_not_exists.return_value = False
    container = AsyncMock()
    container.create_if_not_exists.return_value = False
    account = CompositeStorageAccount(queues=lambda _: queue, blobs=lambda _: container)
    return QueueManager("orders", account), queue, container


async def test_enqueue_failure_after_upload_deletes_blob() -> None:
    manager, queue, container = _mocked_manager()
    await manager.initialize()
    queue.send_message.side_effect = StorageError("send failed", RuntimeError("boom"))

    with pytest.raises(StorageError, match="send failed"):
        await manager.send(_string_of_serialized_size(100_000))

    [uploaded_name, _] = container.upload.call_args.args
    container.delete.assert_awaited_once_with(uploaded_name)


async def test_enqueue_failure_with_failed_cleanup_raises_original() -> None:
    manager, queue, container = _mocked_manager()
    await manager.initialize()
    queue.send_message.side_effect = StorageError("send failed")
    container.delete.side_effect = StorageError("delete failed")

    with pytest.raises(StorageError, match="send failed"):
        await manager.send(_string_of_serialized_size(100_000))


async def test_cancelled_send_performs_no_cleanup() -> None:
    manager, queue, container = _mocked_manager()
    await manager.initialize()
    queue.send_message.side_effect = asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await manager.send(_string_of_serialized_size(100_000))

    container.delete.assert_not_called()


async def test_upload_failure_never_enqueues() -> None:
    manager, queue, container = _mocked_manager()
    await manager.initialize()
    container.upload.side_effect = StorageError("upload failed")

    with pytest.raises(StorageError, match="upload failed"):
        await manager.send(_string_of_serialized_size(100_000))

    queue.send_message.assert_not_called()


async def test_delete_deletes_blob_before_message() -> None:
    manager, queue, container = _mocked_manager()
    await manager.initialize()
    calls: list[str] = []
    container.delete.side_effect = lambda name: calls.append(f"blob:{name}")
    queue.delete_message.side_effect = lambda mid, receipt: calls.append(f"msg:{mid}")
    queue.receive_message.return_value = _envelope_raw("blob-1")
    container.download.return_value = b'"big"'

    message = await manager.receive()
    assert message is not None
    await manager.delete(message)

    assert calls == ["blob:blob-1", "msg:m1"]


async def test_delete_blob_failure_still_deletes_message_then_raises() -> None:
    manager, queue, container = _mocked_manager()
    await manager.initialize()
    queue.receive_message.return_value = _envelope_raw("blob-1")
    container.download.return_value = b'"big"'
    container.delete.side_effect = StorageError("blob delete failed")

    message = await manager.receive()
    assert message is not None
    with pytest.raises(StorageError, match="blob delete failed"):
        await manager.delete(message)

    queue.delete_message.assert_awaited_once_with("m1", "r1")


async def test_delete_tolerates_already_deleted_blob() -> None:
    manager, queue, container = _mocked_manager()
    await manager.initialize()
    queue.receive_message.return_value = _envelope_raw("blob-1")
    container.download.return_value = b'"big"'
    container.delete.side_effect = BlobNotFoundError("blob-1")

    message = await manager.receive()
    assert message is not None
    await manager.delete(message)

    queue.delete_message.assert_awaited_once_with("m1", "r1")


async def test_receive_propagates_queue_failure() -> None:
    manager, queue, _ = _mocked_manager()
    await manager.initialize()
    queue.receive_message.side_effect = StorageError("Azure queue receive_message failed")

    with pytest.raises(StorageError, match="receive_message"):
        await manager.receive()


async def test_options_forwarded_to_queue() -> None:
    manager, queue, _ = _mocked_manager()
    await manager.initialize()

    await manager.send("x", timeout=5)

    assert queue.send_message.call_args.kwargs["timeout"] == 5


def _envelope_raw(blob_name: str) -> RawMessage:
    return RawMessage(
        id="m1",
        pop_receipt="r1",
        content=codec.encode_envelope(Envelope.new(blob_name)),
    )


# ---------------------------------------------------------------------------
# Pass-through operations
# ---------------------------------------------------------------------------


async def test_pass_through_queue_lifecycle(manager: QueueManager) -> None:
    assert await manager.exists() is True
    assert await manager.create_queue_if_not_exists() is False
    await manager.set_metadata({"team": "orders"})
    assert await manager.get_metadata() == {"team": "orders"}
    await manager.send("x")
    await manager.clear()
    assert await manager.peek_message() is None
    assert await manager.delete_queue_if_exists() is True
    assert await manager.exists() is False
    await manager.create_queue()
    assert await manager.exists() is True


async def test_pass_through_peek_and_update(manager: QueueManager) -> None:
    await manager.send("x")
    peeked = await manager.peek_message()
    assert peeked is not None
    assert peeked.content == b'"x"'

    [raw] = await manager.get_messages(1)
    assert raw.pop_receipt is not None
    receipt = await manager.update_message(
        raw.id, raw.pop_receipt, visibility_timeout=timedelta(0)
    )
    assert receipt.pop_receipt != raw.pop_receipt
    assert await manager.receive() is not None


async def test_pass_through_shared_access_signature() -> None:
    manager, queue, _ = _mocked_manager()
    queue.generate_shared_access_signature = lambda **kw: f"sig-{kw['permission']}"
    assert manager.generate_shared_access_signature(permission="r") == "sig-r"
