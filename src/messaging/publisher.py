"""
RabbitMQ publisher for enqueueing background tasks.

Callers (HTTP handlers, cron jobs) get a plain success flag back; any
higher-level retry is theirs to decide.
"""

from __future__ import annotations

import logging
import struct
import threading
from typing import Any, Mapping

import pika
import pika.exceptions

from messaging.connection import BrokerClient
from messaging.errors import TaskQueueError
from messaging.models import (
    DEFAULT_PRIORITY,
    TASK_ROUTES,
    QueueMessage,
    QueueName,
    TaskType,
    build_metadata,
    encode_envelope,
)

logger = logging.getLogger(__name__)


class Publisher:
    """
    Publishes task envelopes through a shared ``BrokerClient``.

    Publishes are serialized on the client's single channel. A worker that
    wants to enqueue follow-up tasks from handler threads should give its
    publisher a separate ``BrokerClient``, since the consuming connection
    belongs to the consume loop's thread.
    """

    def __init__(self, client: BrokerClient):
        self.client = client
        self._lock = threading.Lock()

    def publish(
        self,
        queue_name: QueueName | str,
        task_type: TaskType | str,
        payload: Any,
        metadata: Mapping[str, Any] | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> bool:
        """
        Publish a persistent task message to ``queue_name``.

        Args:
            queue_name: One of the declared queues.
            task_type: One of the task catalog values.
            payload: JSON-serializable, task-specific data.
            metadata: Optional ``user_id``/``organization_id``/``request_id``
                overrides; defaults are stamped for anything missing.
            priority: Message priority, passed to the broker as given.

        Returns:
            bool: True if the broker confirmed the message, False otherwise
            (the error is logged).
        """
        try:
            queue = QueueName(queue_name)
            envelope = QueueMessage(
                task_type=TaskType(task_type),
                priority=priority,
                payload=payload,
                metadata=build_metadata(metadata),
            )
            body = encode_envelope(envelope)
            properties = pika.BasicProperties(
                delivery_mode=2,  # persistent message
                priority=priority,
                content_type="application/json",
                message_id=envelope.metadata.request_id,
            )

            with self._lock:
                channel = self.client.ensure_connection()
                channel.basic_publish(
                    exchange="",
                    routing_key=queue.value,
                    body=body,
                    properties=properties,
                    mandatory=True,
                )
        except (pika.exceptions.UnroutableError, pika.exceptions.NackError) as exc:
            # Both subclass AMQPChannelError but leave the channel usable.
            logger.error("Broker rejected message for queue %s: %s", queue_name, exc)
            return False
        except (pika.exceptions.AMQPConnectionError, pika.exceptions.AMQPChannelError) as exc:
            logger.error("Failed to publish message to queue %s: %s", queue_name, exc)
            self.client.mark_broken(exc)
            return False
        except (ValueError, TypeError, struct.error, TaskQueueError) as exc:
            logger.error("Failed to publish message to queue %s: %s", queue_name, exc)
            return False

        logger.info(
            "Published task=%s queue=%s priority=%s request_id=%s",
            envelope.task_type_value, queue.value, priority, envelope.metadata.request_id,
        )
        return True

    def enqueue(
        self,
        task_type: TaskType | str,
        payload: Any,
        metadata: Mapping[str, Any] | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> bool:
        """Publish to the task type's default queue."""
        try:
            queue = TASK_ROUTES[TaskType(task_type)]
        except ValueError:
            logger.error("Cannot enqueue unknown task type %s", task_type)
            return False
        return self.publish(queue, task_type, payload, metadata=metadata, priority=priority)
