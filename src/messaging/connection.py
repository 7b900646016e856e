"""
messaging/connection.py

Owns the broker connection and channel for one process.

The blocking pika adapter reports a dropped connection by raising from the
next channel operation rather than through close callbacks, so the publisher
and dispatcher report such errors back via ``mark_broken``. Re-establishment
is retried with exponential backoff; with ``auto_reconnect`` the retry is
scheduled on a daemon timer, otherwise the owner (the worker's consume loop)
drives it.
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Any, Callable

import pika
import pika.exceptions
from pika.adapters.blocking_connection import BlockingChannel, BlockingConnection

from messaging.backoff import ReconnectBackoff
from messaging.config import Settings
from messaging.errors import ChannelUnavailableError
from messaging.topology import declare_topology

logger = logging.getLogger(__name__)

ReadyListener = Callable[[BlockingChannel], None]
Scheduler = Callable[[float, Callable[[], None]], Any]


class ConnectionState(str, enum.Enum):
    ABSENT = "absent"
    CONNECTING = "connecting"
    READY = "ready"


def _timer_scheduler(delay: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()
    return timer


def _close_quietly(resource: Any, what: str) -> None:
    if resource is None or not resource.is_open:
        return
    try:
        resource.close()
    except pika.exceptions.AMQPError:
        logger.warning("Failed to close message queue %s", what, exc_info=True)


class BrokerClient:
    """
    Process-wide broker connection/channel with guarded establishment.

    Args:
        settings: Connection and retry settings.
        connection_factory: Callable taking ``pika`` connection parameters and
            returning a connection; defaults to ``pika.BlockingConnection``.
        auto_reconnect: Schedule background reconnects after failures.
        scheduler: ``scheduler(delay, fn)`` used for background reconnects;
            defaults to a daemon ``threading.Timer``.
        rng: Random source for backoff jitter.
    """

    def __init__(
        self,
        settings: Settings,
        connection_factory: Callable[[pika.connection.Parameters], BlockingConnection] | None = None,
        auto_reconnect: bool = False,
        scheduler: Scheduler | None = None,
        rng=None,
    ):
        self.settings = settings
        self.auto_reconnect = auto_reconnect
        self.retry_delay = settings.reconnect_delay

        self._connection_factory = connection_factory or pika.BlockingConnection
        self._scheduler = scheduler or _timer_scheduler
        self._backoff = ReconnectBackoff(settings.reconnect_delay, settings.reconnect_max_delay, rng=rng)
        self._guard = threading.Condition()
        self._state = ConnectionState.ABSENT
        self._connection: BlockingConnection | None = None
        self._channel: BlockingChannel | None = None
        self._ready_listeners: list[ReadyListener] = []
        self._pending_retry: Any = None
        self._closed = False
        self._parameters = self._build_parameters()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connection(self) -> BlockingConnection | None:
        return self._connection

    @property
    def channel(self) -> BlockingChannel | None:
        return self._channel

    @property
    def failed_attempts(self) -> int:
        return self._backoff.attempts

    @property
    def is_ready(self) -> bool:
        with self._guard:
            return self._is_ready_locked()

    def _is_ready_locked(self) -> bool:
        return (
            self._state is ConnectionState.READY
            and self._connection is not None
            and self._connection.is_open
            and self._channel is not None
            and self._channel.is_open
        )

    def add_ready_listener(self, listener: ReadyListener) -> None:
        """Register ``listener(channel)`` to run on every newly established channel."""
        self._ready_listeners.append(listener)

    def parameters(self) -> pika.URLParameters:
        return self._parameters

    def _build_parameters(self) -> pika.URLParameters:
        try:
            params = pika.URLParameters(self.settings.rabbitmq_url)
        except (ValueError, TypeError, KeyError) as exc:
            raise ValueError(f"RABBITMQ_URL is not a valid AMQP URL: {exc}") from exc
        params.heartbeat = self.settings.heartbeat
        return params

    # ------------------------------------------------------------------
    # Establishment
    # ------------------------------------------------------------------

    def ensure_connection(self) -> BlockingChannel:
        """
        Return a ready channel, connecting first if needed.

        A caller arriving while another thread is connecting waits for that
        attempt (bounded by ``connect_timeout``) instead of starting its own.

        Raises:
            ChannelUnavailableError: if no channel could be established.
        """
        with self._guard:
            if self._closed:
                raise ChannelUnavailableError("Broker client is closed")
            if self._is_ready_locked():
                if self._pump_locked():
                    return self._channel
            if self._state is ConnectionState.CONNECTING:
                finished = self._guard.wait_for(
                    lambda: self._state is not ConnectionState.CONNECTING,
                    timeout=self.settings.connect_timeout,
                )
                if finished and self._is_ready_locked():
                    return self._channel
                raise ChannelUnavailableError("Message queue channel not available")
            self._state = ConnectionState.CONNECTING
            stale = self._connection
            self._connection = None
            self._channel = None

        try:
            connection, channel = self._establish(stale)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._record_failure(exc)
            raise ChannelUnavailableError(f"Message queue channel not available: {exc}") from exc

        with self._guard:
            if self._closed:
                self._state = ConnectionState.ABSENT
                self._guard.notify_all()
                _close_quietly(connection, "connection")
                raise ChannelUnavailableError("Broker client is closed")
            self._connection = connection
            self._channel = channel
            self._state = ConnectionState.READY
            self._backoff.reset()
            self.retry_delay = self.settings.reconnect_delay
            self._guard.notify_all()

        logger.info("Message queue connection established successfully")
        return channel

    def _pump_locked(self) -> bool:
        """Service heartbeats on an idle connection; False if it turned out to be dead."""
        try:
            self._connection.process_data_events(time_limit=0)
        except (pika.exceptions.AMQPConnectionError, pika.exceptions.AMQPChannelError) as exc:
            logger.warning("Message queue connection went stale (%s); reconnecting", exc)
            return False
        return self._is_ready_locked()

    def _establish(self, stale: BlockingConnection | None):
        _close_quietly(stale, "connection")

        connection = self._connection_factory(self.parameters())
        try:
            channel = connection.channel()
            channel.confirm_delivery()
            declare_topology(
                channel,
                prefetch_count=self.settings.prefetch_count,
                dead_letter_suffix=self.settings.dead_letter_suffix if self.settings.dead_letter_enabled else None,
            )
            for listener in list(self._ready_listeners):
                listener(channel)
        except Exception:
            _close_quietly(connection, "connection")
            raise
        return connection, channel

    def warm(self) -> bool:
        """
        Try to connect without raising; used to warm the connection at startup.

        Returns False if another attempt is already in flight or this one
        failed (a retry is then scheduled when ``auto_reconnect`` is on).
        """
        with self._guard:
            if self._state is ConnectionState.CONNECTING:
                return False
        try:
            self.ensure_connection()
        except ChannelUnavailableError:
            return False
        return True

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _record_failure(self, exc: BaseException) -> float:
        with self._guard:
            self._state = ConnectionState.ABSENT
            delay = self._backoff.next_delay()
            attempts = self._backoff.attempts
            self.retry_delay = delay
            self._guard.notify_all()

        if attempts >= self.settings.reconnect_alert_after:
            logger.critical(
                "Message queue still unreachable after %s attempts; retrying in %.1fs: %s",
                attempts, delay, exc,
            )
        else:
            logger.error("Failed to initialize message queue (attempt %s); retrying in %.1fs: %s", attempts, delay, exc)
        self._schedule_retry(delay)
        return delay

    def mark_broken(self, exc: BaseException) -> None:
        """Drop the current connection after an error and schedule re-establishment."""
        with self._guard:
            if self._state is ConnectionState.CONNECTING:
                return
            if self._state is ConnectionState.ABSENT and self._connection is None:
                return
            broken = self._connection
            self._state = ConnectionState.ABSENT
            self._connection = None
            self._channel = None
            delay = self._backoff.next_delay()
            self.retry_delay = delay

        _close_quietly(broken, "connection")
        logger.error("Message queue connection lost (%s); reconnecting in %.1fs", exc, delay)
        self._schedule_retry(delay)

    def _schedule_retry(self, delay: float) -> None:
        if not self.auto_reconnect:
            return
        with self._guard:
            if self._closed or self._pending_retry is not None:
                return
            self._pending_retry = self._scheduler(delay, self._scheduled_reconnect)

    def _scheduled_reconnect(self) -> None:
        with self._guard:
            self._pending_retry = None
            if self._closed:
                return
        self.warm()

    # ------------------------------------------------------------------
    # I/O and teardown
    # ------------------------------------------------------------------

    def process_data_events(self, time_limit: float = 0) -> bool:
        """Pump broker I/O and queued thread-safe callbacks; False if not connected."""
        connection = self._connection
        if connection is None or not connection.is_open:
            return False
        connection.process_data_events(time_limit=time_limit)
        return True

    def close(self) -> None:
        """Close channel and connection and stop any further reconnects."""
        with self._guard:
            self._closed = True
            pending = self._pending_retry
            self._pending_retry = None
            channel, connection = self._channel, self._connection
            self._channel = None
            self._connection = None
            self._state = ConnectionState.ABSENT
            self._guard.notify_all()

        if pending is not None and hasattr(pending, "cancel"):
            pending.cancel()

        try:
            if channel is not None and channel.is_open:
                channel.close()
            if connection is not None and connection.is_open:
                connection.close()
        except pika.exceptions.AMQPError:
            logger.error("Error closing message queue connection", exc_info=True)
            return
        logger.info("Message queue connection closed successfully")
