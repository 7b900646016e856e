"""
worker/process.py

Composition root for the worker: one broker client, one dispatcher, one
handler registry, and the consume loop that ties them together.
"""

from __future__ import annotations

import functools
import logging
import signal
import threading
import time
from typing import Any, Mapping

import pika.exceptions

from messaging.config import Settings
from messaging.connection import BrokerClient
from messaging.dispatcher import ConsumerDispatcher
from messaging.errors import ChannelUnavailableError
from messaging.models import QueueName
from worker.handlers import HandlerRegistry, build_default_registry
from worker.health import create_app, serve_in_background

logger = logging.getLogger(__name__)


class WorkerProcess:
    """
    Consumes every catalog queue and routes deliveries to the handler registry.

    Args:
        settings: Loaded settings.
        client: Broker client; built from ``settings`` when omitted.
        dispatcher: Consumer dispatcher; built around ``client`` when omitted.
        registry: Handler registry; the default registry when omitted.
        deps: Extra dependencies for the default registry (``ai_responder_fn``,
            ``open_db_fn``).
    """

    def __init__(
        self,
        settings: Settings,
        client: BrokerClient | None = None,
        dispatcher: ConsumerDispatcher | None = None,
        registry: HandlerRegistry | None = None,
        deps: Mapping[str, Any] | None = None,
    ):
        self.settings = settings
        self.client = client or BrokerClient(settings)
        self.dispatcher = dispatcher or ConsumerDispatcher(self.client)
        self.registry = registry or build_default_registry({"database_url": settings.database_url, **(deps or {})})

        self._stop_requested = threading.Event()
        self._started_at = time.monotonic()
        self._health_server = None

    @property
    def stopping(self) -> bool:
        return self._stop_requested.is_set()

    def status(self) -> dict:
        return {
            "ready": self.client.is_ready and self.dispatcher.consuming and not self.stopping,
            "broker": self.client.state.value,
            "in_flight": self.dispatcher.in_flight,
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
        }

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Register a consumer for every queue and try to connect once."""
        missing = self.registry.missing()
        if missing:
            logger.warning("No handler registered for task types: %s", ", ".join(t.value for t in missing))

        for queue in QueueName:
            self.dispatcher.register(queue, functools.partial(self.registry.dispatch, queue=queue.value))

        connected = self.client.warm()
        if connected:
            logger.info("Worker process started successfully")
        else:
            logger.warning("Worker process started without a broker connection; retrying in %.1fs", self.client.retry_delay)
        return connected

    def start_health_server(self) -> None:
        if not self.settings.health_port:
            return
        app = create_app(deps={"status_fn": self.status})
        try:
            self._health_server = serve_in_background(app, port=self.settings.health_port)
        except OSError as exc:
            logger.error("Could not start health endpoints on port %s: %s", self.settings.health_port, exc)

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._on_signal)
        signal.signal(signal.SIGINT, self._on_signal)

    def _on_signal(self, signum, frame) -> None:
        _ = frame
        logger.info("Received %s signal, shutting down worker process", signal.Signals(signum).name)
        self.request_stop()

    # ------------------------------------------------------------------
    # Consume loop
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask the consume loop to return; safe from signal handlers and other threads."""
        if self._stop_requested.is_set():
            return
        self._stop_requested.set()

        connection, channel = self.client.connection, self.client.channel
        if connection is None or channel is None or not connection.is_open:
            return
        try:
            connection.add_callback_threadsafe(channel.stop_consuming)
        except pika.exceptions.AMQPError as exc:
            logger.warning("Could not interrupt consume loop: %s", exc)

    def run(self) -> int:
        """Consume until a stop is requested, reconnecting with backoff; returns the exit code."""
        self.start()
        try:
            while not self._stop_requested.is_set():
                try:
                    channel = self.client.ensure_connection()
                    channel.start_consuming()
                except ChannelUnavailableError:
                    self._stop_requested.wait(self.client.retry_delay)
                    continue
                except (pika.exceptions.AMQPConnectionError, pika.exceptions.AMQPChannelError) as exc:
                    self.client.mark_broken(exc)
                    self._stop_requested.wait(self.client.retry_delay)
                    continue

                if not self._stop_requested.is_set():
                    # Broker cancelled our consumers (e.g. a queue was deleted).
                    self.client.mark_broken(RuntimeError("consumers cancelled by broker"))
                    self._stop_requested.wait(self.client.retry_delay)
        finally:
            self.shutdown()
        return 0

    def shutdown(self) -> None:
        """Drain in-flight handlers, then close the broker connection and health server."""
        drained = self.dispatcher.stop(self.settings.shutdown_timeout)
        self.client.close()
        if self._health_server is not None:
            self._health_server.shutdown()
            self._health_server = None
        logger.info("Worker process stopped drained=%s", drained)
