"""
worker/handlers.py

Task handler registry for the worker process.

Every handler has the signature ``handler(payload, metadata, cancel_token)``.
Handlers must let errors propagate: a raised exception is what makes the
dispatcher redeliver the message. ``PermanentTaskError`` marks a failure that
redelivery cannot fix and sends the message to the dead-letter queue.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping

import psycopg

from messaging.dispatcher import CancellationToken
from messaging.errors import PermanentTaskError, TaskCancelledError, UnknownTaskTypeError
from messaging.models import MessageMetadata, QueueMessage, TaskType

logger = logging.getLogger(__name__)

Handler = Callable[[Any, MessageMetadata, CancellationToken], None]
AiResponder = Callable[..., str]

UPDATE_AI_MESSAGE_SQL = """
    UPDATE messages
    SET content = %s, is_ai_generated = TRUE, updated_at = now()
    WHERE id = %s;
"""


class HandlerRegistry:
    """Static mapping from task type to handler."""

    def __init__(self, handlers: Mapping[TaskType | str, Handler] | None = None):
        self._handlers: dict[TaskType, Handler] = {}
        for task_type, handler in (handlers or {}).items():
            self.register(task_type, handler)

    def register(self, task_type: TaskType | str, handler: Handler) -> None:
        key = TaskType(task_type)
        if key in self._handlers:
            raise ValueError(f"Handler already registered for task type {key.value}")
        self._handlers[key] = handler

    def resolve(self, task_type: TaskType | str) -> Handler:
        try:
            return self._handlers[TaskType(task_type)]
        except (ValueError, KeyError):
            raise UnknownTaskTypeError(str(getattr(task_type, "value", task_type))) from None

    def missing(self) -> list[TaskType]:
        return [t for t in TaskType if t not in self._handlers]

    def dispatch(self, envelope: QueueMessage, token: CancellationToken, queue: str | None = None) -> None:
        """Run the handler registered for ``envelope``; errors propagate."""
        request_id = envelope.metadata.request_id
        logger.info("Processing task %s from queue %s request_id=%s", envelope.task_type_value, queue, request_id)

        try:
            handler = self.resolve(envelope.task_type)
        except UnknownTaskTypeError:
            logger.error("No handler found for task type %s request_id=%s", envelope.task_type_value, request_id)
            raise

        handler(envelope.payload, envelope.metadata, token)


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def _require_fields(payload: Any, names: Iterable[str]) -> list[Any]:
    if not isinstance(payload, dict):
        raise PermanentTaskError("payload must be a JSON object")
    missing = [name for name in names if payload.get(name) in (None, "")]
    if missing:
        raise PermanentTaskError(f"payload is missing required field(s): {', '.join(missing)}")
    return [payload[name] for name in names]


def _check_cancelled(token: CancellationToken, task: TaskType) -> None:
    if token.cancelled:
        raise TaskCancelledError(f"{task.value} cancelled by worker shutdown")


def open_db_factory(database_url: str | None) -> Callable[[], psycopg.Connection]:
    def _open_db() -> psycopg.Connection:
        if not database_url:
            raise PermanentTaskError("DATABASE_URL is not configured")
        return psycopg.connect(database_url)

    return _open_db


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def make_ai_response_handler(
    responder: AiResponder | None,
    open_db: Callable[[], psycopg.Connection],
) -> Handler:
    """
    Build the generate-ai-response handler.

    Args:
        responder: ``responder(prompt, user_id=..., organization_id=...) -> str``.
        open_db: Returns a psycopg connection used to store the response.
    """

    def handle_generate_ai_response(payload: Any, metadata: MessageMetadata, token: CancellationToken) -> None:
        conversation_id, prompt, message_id = _require_fields(payload, ("conversationId", "prompt", "messageId"))
        if responder is None:
            raise PermanentTaskError("No AI responder is configured for this worker")
        _check_cancelled(token, TaskType.GENERATE_AI_RESPONSE)

        logger.info("Generating AI response for conversation %s request_id=%s", conversation_id, metadata.request_id)
        response = responder(prompt, user_id=metadata.user_id, organization_id=metadata.organization_id)

        conn = open_db()
        try:
            with conn.cursor() as cur:
                cur.execute(UPDATE_AI_MESSAGE_SQL, (response, message_id))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(
            "AI response generated and stored for message %s request_id=%s conversation=%s",
            message_id, metadata.request_id, conversation_id,
        )

    return handle_generate_ai_response


def handle_send_email(payload: Any, metadata: MessageMetadata, token: CancellationToken) -> None:
    recipient, template, subject = _require_fields(payload, ("recipientEmail", "template", "subject"))
    _check_cancelled(token, TaskType.SEND_EMAIL)

    logger.info("Sending email to %s template=%s request_id=%s", recipient, template, metadata.request_id)
    # Delivery goes through the mail provider integration; here it is only recorded.
    logger.info("Email sending simulation complete for %s subject=%r request_id=%s", recipient, subject, metadata.request_id)


def handle_export_conversation_data(payload: Any, metadata: MessageMetadata, token: CancellationToken) -> None:
    conversation_ids, export_format = _require_fields(payload, ("conversationIds", "format"))
    if not isinstance(conversation_ids, list):
        raise PermanentTaskError("conversationIds must be a list")
    _check_cancelled(token, TaskType.EXPORT_CONVERSATION_DATA)

    user_id = payload.get("userId") or metadata.user_id
    logger.info(
        "Exporting conversations data for user %s conversations=%s request_id=%s",
        user_id, len(conversation_ids), metadata.request_id,
    )
    logger.info("Data export complete for user %s format=%s request_id=%s", user_id, export_format, metadata.request_id)


def handle_sync_platform_data(payload: Any, metadata: MessageMetadata, token: CancellationToken) -> None:
    platform_id, platform_type = _require_fields(payload, ("platformId", "platformType"))
    _check_cancelled(token, TaskType.SYNC_PLATFORM_DATA)

    logger.info("Synchronizing data for platform %s type=%s request_id=%s", platform_id, platform_type, metadata.request_id)
    logger.info("Platform synchronization complete for %s request_id=%s", platform_id, metadata.request_id)


def handle_generate_analytics(payload: Any, metadata: MessageMetadata, token: CancellationToken) -> None:
    (time_range,) = _require_fields(payload, ("timeRange",))
    _check_cancelled(token, TaskType.GENERATE_ANALYTICS)

    organization_id = payload.get("organizationId") or metadata.organization_id
    metrics = payload.get("metrics") or []
    logger.info(
        "Generating analytics for organization %s time_range=%s metrics=%s request_id=%s",
        organization_id, time_range, metrics, metadata.request_id,
    )
    logger.info("Analytics generation complete for organization %s request_id=%s", organization_id, metadata.request_id)


def build_default_registry(deps: Mapping[str, Any] | None = None) -> HandlerRegistry:
    """
    Registry with one handler per task type.

    ``deps`` may provide:
        - ai_responder_fn: callable producing AI response text
        - open_db_fn: callable returning a psycopg connection
        - database_url: used to build ``open_db_fn`` when it is not given
    """
    deps = dict(deps or {})
    open_db = deps.get("open_db_fn") or open_db_factory(deps.get("database_url"))

    return HandlerRegistry({
        TaskType.GENERATE_AI_RESPONSE: make_ai_response_handler(deps.get("ai_responder_fn"), open_db),
        TaskType.SEND_EMAIL: handle_send_email,
        TaskType.EXPORT_CONVERSATION_DATA: handle_export_conversation_data,
        TaskType.SYNC_PLATFORM_DATA: handle_sync_platform_data,
        TaskType.GENERATE_ANALYTICS: handle_generate_analytics,
    })
