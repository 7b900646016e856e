"""
messaging/dispatcher.py

Consumes task envelopes and settles each delivery from its handler's outcome.

Per delivery:
    delivered -> decode -> handle (thread pool) -> ack | nack+requeue | dead-letter

Handlers run off the connection thread so pika keeps servicing heartbeats;
their completion is marshalled back with ``add_callback_threadsafe`` because
the blocking channel may only be used from the thread that drives it.
"""

from __future__ import annotations

import concurrent.futures
import functools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

import pika
import pika.exceptions
from pika.adapters.blocking_connection import BlockingChannel
from pika.spec import Basic, BasicProperties

from messaging.connection import BrokerClient
from messaging.errors import ChannelUnavailableError, EnvelopeError, PermanentTaskError, UnknownTaskTypeError
from messaging.models import Outcome, QueueMessage, QueueName, decode_envelope, now_ms
from messaging.topology import QUEUE_CATALOG, dead_letter_name

logger = logging.getLogger(__name__)

_PERMANENT_ERRORS = (UnknownTaskTypeError, PermanentTaskError)


class CancellationToken:
    """Set when the worker is shutting down; handlers poll it between steps."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


TaskHandler = Callable[[QueueMessage, CancellationToken], Outcome | None]


@dataclass
class Subscription:
    queue: str
    handler: TaskHandler
    consumer_tag: str | None = None


class ConsumerDispatcher:
    """
    Routes deliveries from subscribed queues to handlers and settles them.

    Args:
        client: Shared broker client; subscriptions are re-attached on every
            channel it establishes.
        executor: Runs handlers; defaults to a thread pool with one slot per
            catalog queue per prefetch slot.
    """

    def __init__(self, client: BrokerClient, executor: concurrent.futures.Executor | None = None):
        self.client = client
        self.settings = client.settings
        self.token = CancellationToken()

        self._subscriptions: dict[str, Subscription] = {}
        self._inflight: set[concurrent.futures.Future] = set()
        self._inflight_lock = threading.Lock()
        self._accepting = True
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, len(QUEUE_CATALOG) * max(1, self.settings.prefetch_count)),
            thread_name_prefix="task-handler",
        )
        client.add_ready_listener(self._attach_all)

    @property
    def in_flight(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    @property
    def consuming(self) -> bool:
        return (
            self._accepting
            and bool(self._subscriptions)
            and all(sub.consumer_tag for sub in self._subscriptions.values())
        )

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def register(self, queue_name: QueueName | str, handler: TaskHandler) -> Subscription:
        """Record ``handler`` for ``queue_name``; it is attached on the next new channel."""
        name = QueueName(queue_name).value
        subscription = self._subscriptions.get(name)
        if subscription is None:
            subscription = Subscription(queue=name, handler=handler)
            self._subscriptions[name] = subscription
        else:
            subscription.handler = handler
        return subscription

    def subscribe(self, queue_name: QueueName | str, handler: TaskHandler) -> bool:
        """
        Register ``handler`` for ``queue_name`` and start consuming from it.

        If no channel can be obtained now the subscription stays registered
        and is attached once the connection is re-established.

        Returns:
            bool: True if the consumer is attached.
        """
        subscription = self.register(queue_name, handler)
        name = subscription.queue

        try:
            channel = self.client.ensure_connection()
        except ChannelUnavailableError as exc:
            logger.error(
                "Failed to set up consumer for queue %s; retrying in %.1fs: %s",
                name, self.client.retry_delay, exc,
            )
            return False

        # ensure_connection() may have just attached everything through the
        # ready listener.
        if subscription.consumer_tag:
            return True
        try:
            self._attach(channel, subscription)
        except (pika.exceptions.AMQPConnectionError, pika.exceptions.AMQPChannelError) as exc:
            logger.error("Failed to set up consumer for queue %s: %s", name, exc)
            self.client.mark_broken(exc)
            return False
        return True

    def _attach_all(self, channel: BlockingChannel) -> None:
        for subscription in self._subscriptions.values():
            subscription.consumer_tag = None
        if not self._accepting:
            return
        for subscription in self._subscriptions.values():
            self._attach(channel, subscription)

    def _attach(self, channel: BlockingChannel, subscription: Subscription) -> None:
        subscription.consumer_tag = channel.basic_consume(
            queue=subscription.queue,
            on_message_callback=functools.partial(self._on_message, subscription),
            auto_ack=False,
        )
        logger.info("Consumer registered for queue %s", subscription.queue)

    # ------------------------------------------------------------------
    # Delivery handling
    # ------------------------------------------------------------------

    def _on_message(
        self,
        subscription: Subscription,
        channel: BlockingChannel,
        method: Basic.Deliver,
        properties: BasicProperties,
        body: bytes,
    ) -> None:
        _ = properties
        if not self._accepting:
            # Prefetched before the consumer was cancelled; hand it back.
            self._settle(channel, method, subscription.queue, body, Outcome.RETRY, "worker shutting down")
            return

        try:
            envelope = decode_envelope(body)
        except EnvelopeError as exc:
            logger.error("Malformed message on queue %s: %s", subscription.queue, exc)
            self._settle(channel, method, subscription.queue, body, Outcome.DEAD_LETTER, str(exc))
            return

        if method.redelivered:
            logger.info(
                "Redelivered task=%s queue=%s request_id=%s",
                envelope.task_type_value, subscription.queue, envelope.metadata.request_id,
            )

        future = self._executor.submit(subscription.handler, envelope, self.token)
        with self._inflight_lock:
            self._inflight.add(future)
        connection = channel.connection

        def _done(fut: concurrent.futures.Future) -> None:
            callback = functools.partial(self._complete, channel, method, subscription.queue, body, envelope, fut)
            try:
                connection.add_callback_threadsafe(callback)
            except pika.exceptions.AMQPError:
                # Connection is gone; the broker will redeliver the message.
                self._untrack(fut)
                logger.warning(
                    "Connection closed before task=%s request_id=%s could be settled",
                    envelope.task_type_value, envelope.metadata.request_id,
                )

        future.add_done_callback(_done)

    def _untrack(self, future: concurrent.futures.Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)

    def _complete(
        self,
        channel: BlockingChannel,
        method: Basic.Deliver,
        queue: str,
        body: bytes,
        envelope: QueueMessage,
        future: concurrent.futures.Future,
    ) -> None:
        self._untrack(future)
        outcome, reason = self._outcome_for(future, envelope, queue)
        self._settle(channel, method, queue, body, outcome, reason)

    def _outcome_for(self, future: concurrent.futures.Future, envelope: QueueMessage, queue: str):
        request_id = envelope.metadata.request_id
        task = envelope.task_type_value

        exc = future.exception()
        if exc is None:
            result = future.result()
            if result is None:
                result = Outcome.ACK
            if not isinstance(result, Outcome):
                logger.error("Handler for task=%s returned %r; retrying", task, result)
                return Outcome.RETRY, "invalid handler result"
            if result is Outcome.ACK:
                logger.info("Task completed task=%s queue=%s request_id=%s", task, queue, request_id)
            return result, f"handler returned {result.value}"

        if isinstance(exc, _PERMANENT_ERRORS):
            logger.error("Task failed permanently task=%s queue=%s request_id=%s: %s", task, queue, request_id, exc)
            return Outcome.DEAD_LETTER, str(exc)

        logger.error(
            "Error processing message from queue %s task=%s request_id=%s",
            queue, task, request_id, exc_info=(type(exc), exc, exc.__traceback__),
        )
        return Outcome.RETRY, str(exc)

    def _settle(
        self,
        channel: BlockingChannel,
        method: Basic.Deliver,
        queue: str,
        body: bytes,
        outcome: Outcome,
        reason: str,
    ) -> None:
        if outcome is Outcome.DEAD_LETTER and not self.settings.dead_letter_enabled:
            outcome = Outcome.RETRY

        try:
            if outcome is Outcome.ACK:
                channel.basic_ack(delivery_tag=method.delivery_tag)
            elif outcome is Outcome.RETRY:
                channel.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
            else:
                self._dead_letter(channel, method, queue, body, reason)
        except (pika.exceptions.AMQPConnectionError, pika.exceptions.AMQPChannelError) as exc:
            # The delivery stays unacknowledged and comes back after reconnect.
            logger.error("Failed to settle delivery from queue %s as %s: %s", queue, outcome.value, exc)
            self.client.mark_broken(exc)

    def _dead_letter(self, channel: BlockingChannel, method: Basic.Deliver, queue: str, body: bytes, reason: str) -> None:
        target = dead_letter_name(queue, self.settings.dead_letter_suffix)
        properties = pika.BasicProperties(
            delivery_mode=2,  # persistent message
            content_type="application/json",
            headers={
                "x-original-queue": queue,
                "x-dead-letter-reason": reason[:500],
                "x-dead-lettered-at": now_ms(),
            },
        )
        try:
            channel.basic_publish(exchange="", routing_key=target, body=body, properties=properties, mandatory=True)
        except (pika.exceptions.UnroutableError, pika.exceptions.NackError) as exc:
            logger.error("Dead-letter publish to %s rejected (%s); requeueing instead", target, exc)
            channel.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
            return

        channel.basic_ack(delivery_tag=method.delivery_tag)
        logger.warning("Message from queue %s moved to %s: %s", queue, target, reason)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def stop(self, timeout: float | None = None) -> bool:
        """
        Stop accepting deliveries and drain in-flight handlers.

        Waits up to ``timeout`` seconds (default: ``shutdown_timeout``) while
        pumping broker events so completions get settled, then trips the
        cancellation token for anything still running. Deliveries left
        unsettled are redelivered by the broker once the connection closes.

        Returns:
            bool: True if every in-flight handler finished in time.
        """
        self._accepting = False
        timeout = self.settings.shutdown_timeout if timeout is None else timeout

        channel = self.client.channel
        for subscription in self._subscriptions.values():
            if subscription.consumer_tag and channel is not None and channel.is_open:
                try:
                    channel.basic_cancel(subscription.consumer_tag)
                except pika.exceptions.AMQPError as exc:
                    logger.warning("Failed to cancel consumer for queue %s: %s", subscription.queue, exc)
            subscription.consumer_tag = None

        deadline = time.monotonic() + timeout
        while self.in_flight:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                pumped = self.client.process_data_events(time_limit=min(0.2, remaining))
            except pika.exceptions.AMQPError as exc:
                logger.warning("Connection lost while draining: %s", exc)
                pumped = False
            if not pumped:
                # Without a connection nothing can be settled; just wait for handlers.
                with self._inflight_lock:
                    pending = list(self._inflight)
                concurrent.futures.wait(pending, timeout=remaining)
                break

        with self._inflight_lock:
            still_running = [f for f in self._inflight if not f.done()]
        drained = not still_running
        if not drained:
            logger.warning("%s task(s) still running after %.1fs; cancelling", len(still_running), timeout)
        self.token.cancel()
        self._executor.shutdown(wait=False)
        return drained
