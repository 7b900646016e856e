"""
Unit tests for src/messaging/topology.py
"""

from __future__ import annotations

import pika.exceptions
import pytest

from messaging.models import QueueName
from messaging.topology import QUEUE_CATALOG, QueueDefinition, dead_letter_name, declare_topology


@pytest.mark.messaging
def test_catalog_covers_every_queue_and_only_ai_processing_has_priority():
    assert [q.name for q in QUEUE_CATALOG] == [q.value for q in QueueName]
    assert all(q.durable for q in QUEUE_CATALOG)
    by_name = {q.name: q.arguments() for q in QUEUE_CATALOG}
    assert by_name["ai-processing"] == {"x-max-priority": 10}
    assert all(args == {} for name, args in by_name.items() if name != "ai-processing")


@pytest.mark.messaging
def test_declare_creates_queues_dead_letter_queues_and_prefetch(broker):
    channel = broker.connect().channel()
    declare_topology(channel, prefetch_count=1)

    expected = {q.value for q in QueueName} | {dead_letter_name(q.value) for q in QueueName}
    assert set(broker.queues) == expected
    assert broker.queues["ai-processing"].max_priority == 10
    assert broker.queues["ai-processing.dlq"].max_priority is None
    assert all(q.durable for q in broker.queues.values())
    assert channel.prefetch_count == 1


@pytest.mark.messaging
def test_declare_without_dead_letter_suffix(broker):
    channel = broker.connect().channel()
    declare_topology(channel, dead_letter_suffix=None)
    assert set(broker.queues) == {q.value for q in QueueName}


@pytest.mark.messaging
def test_declare_is_idempotent_across_channels(broker):
    first = broker.connect().channel()
    second = broker.connect().channel()

    declare_topology(first)
    declare_topology(second)

    assert len(broker.queues) == 10
    assert len(broker.declare_calls) == 20


@pytest.mark.messaging
def test_declare_accepts_a_generator_catalog(broker):
    channel = broker.connect().channel()
    declare_topology(channel, catalog=(q for q in [QueueDefinition("solo")]), dead_letter_suffix=None)
    assert set(broker.queues) == {"solo"}


@pytest.mark.messaging
def test_mismatched_arguments_surface_as_channel_error(broker):
    broker.declare("ai-processing", True, {})
    channel = broker.connect().channel()
    with pytest.raises(pika.exceptions.ChannelClosedByBroker):
        declare_topology(channel)
