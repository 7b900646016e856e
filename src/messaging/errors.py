"""
Exception types raised by the task-queue client and worker.

Connection-class errors are recovered by reconnecting, publish-class errors
become a ``False`` return from the publisher, and dispatch-class errors decide
between redelivery and dead-lettering.
"""

from __future__ import annotations


class TaskQueueError(Exception):
    """Base class for task-queue errors."""


class ChannelUnavailableError(TaskQueueError):
    """No usable broker channel could be obtained."""


class EnvelopeError(TaskQueueError):
    """A message body is not a well-formed task envelope."""


class UnknownTaskTypeError(TaskQueueError):
    """No handler is registered for the envelope's task type."""

    def __init__(self, task_type: str):
        super().__init__(f"Unsupported task type: {task_type}")
        self.task_type = task_type


class PermanentTaskError(TaskQueueError):
    """
    Raised by a handler when the task can never succeed on redelivery
    (for example, a payload that is missing required fields).
    """


class TaskCancelledError(TaskQueueError):
    """A handler stopped because the worker is shutting down; the task is retried."""
