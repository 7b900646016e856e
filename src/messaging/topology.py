"""
messaging/topology.py

The fixed queue catalog and the declaration step run on every new channel.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from pika.adapters.blocking_connection import BlockingChannel

from messaging.models import QueueName

logger = logging.getLogger(__name__)

MAX_PRIORITY = 10


@dataclass(frozen=True)
class QueueDefinition:
    name: str
    durable: bool = True
    max_priority: int | None = None

    def arguments(self) -> dict:
        if self.max_priority is None:
            return {}
        return {"x-max-priority": self.max_priority}


QUEUE_CATALOG = (
    QueueDefinition(QueueName.AI_PROCESSING.value, max_priority=MAX_PRIORITY),
    QueueDefinition(QueueName.EMAIL_NOTIFICATIONS.value),
    QueueDefinition(QueueName.DATA_EXPORTS.value),
    QueueDefinition(QueueName.PLATFORM_SYNC.value),
    QueueDefinition(QueueName.ANALYTICS_PROCESSING.value),
)


def dead_letter_name(queue_name: str, suffix: str = ".dlq") -> str:
    return f"{queue_name}{suffix}"


def declare_topology(
    channel: BlockingChannel,
    catalog: Iterable[QueueDefinition] = QUEUE_CATALOG,
    prefetch_count: int = 1,
    dead_letter_suffix: str | None = ".dlq",
) -> None:
    """
    Declare every catalog queue (and its dead-letter queue) and set prefetch.

    queue_declare is "ensure exists" on the broker, so running this on every
    new channel, from every process, is safe as long as the arguments match.

    Args:
        channel: Open channel to declare on.
        catalog: Queue definitions to declare.
        prefetch_count: Unacknowledged deliveries allowed per consumer.
        dead_letter_suffix: Suffix for the per-queue dead-letter queue;
            ``None`` skips declaring them.
    """
    catalog = tuple(catalog)
    for queue in catalog:
        channel.queue_declare(
            queue=queue.name,
            durable=queue.durable,
            arguments=queue.arguments(),
        )
        if dead_letter_suffix:
            channel.queue_declare(
                queue=dead_letter_name(queue.name, dead_letter_suffix),
                durable=True,
                arguments={},
            )

    # prefetch=1 spreads work fairly across worker replicas on the same queue.
    channel.basic_qos(prefetch_count=prefetch_count)
    logger.info("Topology declared: queues=%s prefetch=%s", [q.name for q in catalog], prefetch_count)
