"""
RabbitMQ task-queue client: connection management, topology, publishing and
consumer dispatch.
"""

from messaging.config import Settings, load_settings
from messaging.connection import BrokerClient, ConnectionState
from messaging.dispatcher import CancellationToken, ConsumerDispatcher
from messaging.errors import (
    ChannelUnavailableError,
    EnvelopeError,
    PermanentTaskError,
    TaskCancelledError,
    TaskQueueError,
    UnknownTaskTypeError,
)
from messaging.models import Outcome, QueueMessage, QueueName, TaskType
from messaging.publisher import Publisher
from messaging.topology import QUEUE_CATALOG, declare_topology

__all__ = [
    "BrokerClient",
    "CancellationToken",
    "ChannelUnavailableError",
    "ConnectionState",
    "ConsumerDispatcher",
    "EnvelopeError",
    "Outcome",
    "PermanentTaskError",
    "Publisher",
    "TaskCancelledError",
    "QUEUE_CATALOG",
    "QueueMessage",
    "QueueName",
    "Settings",
    "TaskQueueError",
    "TaskType",
    "UnknownTaskTypeError",
    "declare_topology",
    "load_settings",
]
