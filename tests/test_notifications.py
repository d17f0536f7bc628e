"""Tests for the RabbitMQ notification publisher."""

import asyncio
import json

from ticketing import notifications
from ticketing.notifications import NotificationPublisher, drain_notifications, notify


class FakeExchange:
    def __init__(self) -> None:
        self.published = []

    async def publish(self, message, routing_key):
        self.published.append((json.loads(message.body), routing_key))


class FakeChannel:
    def __init__(self) -> None:
        self.is_closed = False
        self.default_exchange = FakeExchange()
        self.declared = []

    async def declare_queue(self, name, durable=False):
        self.declared.append((name, durable))


class FakeConnection:
    def __init__(self) -> None:
        self.closed = False
        self.channels = []

    async def channel(self):
        channel = FakeChannel()
        self.channels.append(channel)
        return channel

    async def close(self):
        self.closed = True


def _fake_broker(monkeypatch):
    connections = []

    async def fake_connect_robust(url):
        await asyncio.sleep(0.01)
        connection = FakeConnection()
        connections.append(connection)
        return connection

    monkeypatch.setattr(notifications, "connect_robust", fake_connect_robust)
    return connections


async def test_concurrent_publishes_share_one_connection(monkeypatch):
    connections = _fake_broker(monkeypatch)
    publisher = NotificationPublisher("amqp://test/", "test_queue")

    await asyncio.gather(*(publisher.publish({"n": n}) for n in range(5)))

    assert len(connections) == 1
    channel = connections[0].channels[0]
    assert len(connections[0].channels) == 1
    assert channel.declared == [("test_queue", True)]
    assert sorted(body["n"] for body, _ in channel.default_exchange.published) == [0, 1, 2, 3, 4]


async def test_closed_channel_is_reopened(monkeypatch):
    connections = _fake_broker(monkeypatch)
    publisher = NotificationPublisher("amqp://test/", "test_queue")

    await publisher.publish({"n": 1})
    connections[0].channels[0].is_closed = True
    await publisher.publish({"n": 2})

    assert len(connections) == 1
    assert len(connections[0].channels) == 2

    await publisher.close()
    assert connections[0].closed


async def test_notify_runs_in_background(monkeypatch):
    _fake_broker(monkeypatch)
    publisher = NotificationPublisher("amqp://test/", "test_queue")

    task = notify(publisher, {"kind": "transaction_accepted", "transaction_id": "t-1"})
    assert not task.done()

    await drain_notifications()
    assert task.result() is True


def test_notify_without_publisher_is_a_no_op():
    assert notify(None, {"kind": "transaction_accepted"}) is None
