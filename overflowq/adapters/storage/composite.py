"""
CompositeStorageAccount — pairs any queue backend with any blob backend.

    account = CompositeStorageAccount(
        queues=lambda name: SQSQueueClient(name=name, region_name="eu-west-1"),
        blobs=lambda name: GCSBlobContainer(name=name, bucket_name="my-overflow"),
    )
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable

from overflowq.ports.storage import BlobContainerPort, QueueClientPort


@dataclasses.dataclass
class CompositeStorageAccount:
    """
    Parameters
    ----------
    queues : queue name → QueueClientPort
    blobs  : container name → BlobContainerPort
    """

    queues: Callable[[str], QueueClientPort]
    blobs: Callable[[str], BlobContainerPort]

    def queue_client(self, queue_name: str) -> QueueClientPort:
        return self.queues(queue_name)

    def blob_container(self, container_name: str) -> BlobContainerPort:
        return self.blobs(container_name)
