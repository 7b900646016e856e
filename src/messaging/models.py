"""
messaging/models.py

Queue and task catalogs plus the task envelope that travels through the broker.

Wire format (UTF-8 JSON):

    {
      "taskType": "send-email",
      "priority": 5,
      "payload": {...},
      "metadata": {
        "userId": "...",
        "organizationId": "...",
        "timestamp": 1760000000000,
        "requestId": "req-1760000000000-k3j9x0a1b"
      }
    }
"""

from __future__ import annotations

import enum
import json
import random
import string
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from messaging.errors import EnvelopeError

DEFAULT_PRIORITY = 5
DEFAULT_USER_ID = "anonymous"
DEFAULT_ORGANIZATION_ID = "system"

_REQUEST_ID_ALPHABET = string.ascii_lowercase + string.digits


class QueueName(str, enum.Enum):
    AI_PROCESSING = "ai-processing"
    EMAIL_NOTIFICATIONS = "email-notifications"
    DATA_EXPORTS = "data-exports"
    PLATFORM_SYNC = "platform-sync"
    ANALYTICS_PROCESSING = "analytics-processing"


class TaskType(str, enum.Enum):
    GENERATE_AI_RESPONSE = "generate-ai-response"
    SEND_EMAIL = "send-email"
    EXPORT_CONVERSATION_DATA = "export-conversation-data"
    SYNC_PLATFORM_DATA = "sync-platform-data"
    GENERATE_ANALYTICS = "generate-analytics"


# Queue a task type is published to when the caller does not pick one.
TASK_ROUTES = {
    TaskType.GENERATE_AI_RESPONSE: QueueName.AI_PROCESSING,
    TaskType.SEND_EMAIL: QueueName.EMAIL_NOTIFICATIONS,
    TaskType.EXPORT_CONVERSATION_DATA: QueueName.DATA_EXPORTS,
    TaskType.SYNC_PLATFORM_DATA: QueueName.PLATFORM_SYNC,
    TaskType.GENERATE_ANALYTICS: QueueName.ANALYTICS_PROCESSING,
}


class Outcome(str, enum.Enum):
    """Disposition of one delivery once its handler has finished."""

    ACK = "ack"
    RETRY = "retry"
    DEAD_LETTER = "dead-letter"


@dataclass(frozen=True)
class MessageMetadata:
    user_id: str
    organization_id: str
    timestamp: int
    request_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "organizationId": self.organization_id,
            "timestamp": self.timestamp,
            "requestId": self.request_id,
        }


@dataclass(frozen=True)
class QueueMessage:
    task_type: TaskType | str
    priority: int
    payload: Any
    metadata: MessageMetadata

    @property
    def task_type_value(self) -> str:
        if isinstance(self.task_type, TaskType):
            return self.task_type.value
        return str(self.task_type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskType": self.task_type_value,
            "priority": self.priority,
            "payload": self.payload,
            "metadata": self.metadata.to_dict(),
        }


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_request_id(timestamp_ms: int | None = None, rng: random.Random | None = None) -> str:
    """Return an id of the form ``req-<epoch ms>-<9 base36 chars>``."""
    ts = now_ms() if timestamp_ms is None else timestamp_ms
    chooser = rng or random
    suffix = "".join(chooser.choice(_REQUEST_ID_ALPHABET) for _ in range(9))
    return f"req-{ts}-{suffix}"


def build_metadata(
    overrides: Mapping[str, Any] | None = None,
    clock: Callable[[], int] = now_ms,
) -> MessageMetadata:
    """
    Stamp publish-time metadata, filling in defaults for anything the caller omits.

    ``overrides`` accepts ``user_id``, ``organization_id`` and ``request_id``
    (camelCase keys from HTTP callers are accepted too). Empty values count as
    omitted. The timestamp is always the publish time.
    """
    overrides = overrides or {}

    def pick(snake: str, camel: str) -> str | None:
        value = overrides.get(snake) or overrides.get(camel)
        return str(value) if value else None

    timestamp = clock()
    return MessageMetadata(
        user_id=pick("user_id", "userId") or DEFAULT_USER_ID,
        organization_id=pick("organization_id", "organizationId") or DEFAULT_ORGANIZATION_ID,
        timestamp=timestamp,
        request_id=pick("request_id", "requestId") or generate_request_id(timestamp),
    )


def encode_envelope(message: QueueMessage) -> bytes:
    """
    Serialize an envelope to UTF-8 JSON bytes.

    Raises:
        EnvelopeError: if the payload is not JSON-serializable.
    """
    try:
        text = json.dumps(message.to_dict(), separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise EnvelopeError(f"Envelope is not JSON-serializable: {exc}") from exc
    return text.encode("utf-8")


def _require(mapping: Mapping[str, Any], key: str, kind: type, where: str) -> Any:
    if key not in mapping:
        raise EnvelopeError(f"{where} is missing '{key}'")
    value = mapping[key]
    # bool is an int subclass; it is never a valid priority or timestamp.
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise EnvelopeError(f"{where} field '{key}' must be {kind.__name__}")
    return value


def decode_envelope(body: bytes) -> QueueMessage:
    """
    Parse a delivered message body into a ``QueueMessage``.

    A task type outside the catalog is kept as its raw string so the handler
    registry can report it as unregistered.

    Raises:
        EnvelopeError: if the body is not a structurally valid envelope.
    """
    try:
        raw = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise EnvelopeError(f"Message body is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise EnvelopeError("Envelope must be a JSON object")

    task_type_raw = _require(raw, "taskType", str, "envelope")
    priority = _require(raw, "priority", int, "envelope")
    if "payload" not in raw:
        raise EnvelopeError("envelope is missing 'payload'")
    meta = _require(raw, "metadata", dict, "envelope")

    metadata = MessageMetadata(
        user_id=_require(meta, "userId", str, "metadata"),
        organization_id=_require(meta, "organizationId", str, "metadata"),
        timestamp=_require(meta, "timestamp", int, "metadata"),
        request_id=_require(meta, "requestId", str, "metadata"),
    )

    try:
        task_type: TaskType | str = TaskType(task_type_raw)
    except ValueError:
        task_type = task_type_raw

    return QueueMessage(
        task_type=task_type,
        priority=priority,
        payload=raw["payload"],
        metadata=metadata,
    )
