import asyncio

import pytest

from marketing_mq.errors import TopologyError
from marketing_mq.topology import Binding, ensure_default_topology, ensure_topology, queue_arguments


@pytest.mark.asyncio
async def test_declares_exchange_queues_and_bindings(broker, connection):
    channel = await connection.channel()
    result = await ensure_topology(channel, "marketing_exchange", ["sms_queue", "email_queue"], ["sms", "email"])

    assert result.bindings == [
        Binding("marketing_exchange", "sms", "sms_queue"),
        Binding("marketing_exchange", "email", "email_queue"),
    ]
    assert broker.exchanges["marketing_exchange"].durable
    assert broker.queues["sms_queue"].durable
    assert broker.exchanges["marketing_exchange"].bindings["sms"] == {"sms_queue"}
    assert result.dead_letter_queues == []


@pytest.mark.asyncio
async def test_topology_is_idempotent(broker):
    first_conn, second_conn = broker.connection(), broker.connection()
    first_channel = await first_conn.channel()
    second_channel = await second_conn.channel()

    first, second = await asyncio.gather(
        ensure_topology(first_channel, "ex", ["q1", "q2"], ["k1", "k2"], dead_letter_exchange="dlx"),
        ensure_topology(second_channel, "ex", ["q1", "q2"], ["k1", "k2"], dead_letter_exchange="dlx"),
    )

    assert first.binding_set == second.binding_set
    assert broker.exchanges["ex"].bindings == {"k1": {"q1"}, "k2": {"q2"}}
    assert set(broker.queues) == {"q1", "q2", "q1.dlq", "q2.dlq"}


@pytest.mark.asyncio
async def test_length_mismatch_and_empty_lists(connection):
    channel = await connection.channel()
    with pytest.raises(TopologyError):
        await ensure_topology(channel, "ex", ["q1", "q2"], ["k1"])
    with pytest.raises(TopologyError):
        await ensure_topology(channel, "ex", [], [])


@pytest.mark.asyncio
async def test_conflicting_queue_definition_is_fatal(connection):
    channel = await connection.channel()
    await channel.declare_queue("sms_queue", durable=False)
    with pytest.raises(TopologyError) as exc:
        await ensure_topology(channel, "ex", ["sms_queue"], ["sms"])
    assert exc.value.entity == "sms_queue"


@pytest.mark.asyncio
async def test_adding_dead_letter_to_existing_queue_conflicts(connection):
    channel = await connection.channel()
    await ensure_topology(channel, "ex", ["sms_queue"], ["sms"])
    with pytest.raises(TopologyError):
        await ensure_topology(channel, "ex", ["sms_queue"], ["sms"], dead_letter_exchange="dlx")


@pytest.mark.asyncio
async def test_dead_letter_topology(broker, connection, settings):
    channel = await connection.channel()
    result = await ensure_default_topology(channel, settings)

    assert result.dead_letter_exchange == "marketing_dlx"
    assert result.dead_letter_queues == ["sms_queue.dlq", "email_queue.dlq"]
    assert broker.queues["sms_queue"].arguments == queue_arguments("sms_queue", "marketing_dlx")
    assert broker.exchanges["marketing_dlx"].bindings["sms_queue"] == {"sms_queue.dlq"}


def test_queue_arguments_without_dlx():
    assert queue_arguments("sms_queue", None) is None
    assert queue_arguments("sms_queue", "dlx") == {
        "x-dead-letter-exchange": "dlx",
        "x-dead-letter-routing-key": "sms_queue",
    }
