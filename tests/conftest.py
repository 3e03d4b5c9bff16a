"""Pytest fixtures for the worker.

The suite never talks to a real broker or database: MongoDB and RabbitMQ are
replaced by lightweight in-memory fakes that mimic the small subset of the
Motor and aio-pika APIs the worker uses, and record calls so tests can assert
on them.
"""

from __future__ import annotations

import asyncio
import uuid
from types import SimpleNamespace
from typing import Any

import pytest
from aio_pika.exceptions import ChannelPreconditionFailed
from pymongo.errors import PyMongoError

from app.core.config import Settings


class FakeSession:
    """Client session stand-in tracking its own lifecycle."""

    def __init__(self, causal_consistency: bool | None) -> None:
        self.causal_consistency = causal_consistency
        self.ended = False

    async def __aenter__(self) -> FakeSession:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.ended = True


class FakeCollection:
    """In-memory collection supporting `update_one` with `$set` and `find_one` by filter."""

    def __init__(self) -> None:
        self.docs: dict[Any, dict[str, Any]] = {}
        self.update_calls: int = 0
        self.sessions: list[FakeSession | None] = []
        self.fail_with: Exception | None = None
        self.delay: float = 0.0

    def _match(self, flt: dict[str, Any]) -> dict[str, Any] | None:
        return self.docs.get(flt["_id"])

    async def update_one(
        self, flt: dict[str, Any], update: dict[str, Any], session: FakeSession | None = None
    ) -> SimpleNamespace:
        self.update_calls += 1
        self.sessions.append(session)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

        doc = self._match(flt)
        if doc is None:
            return SimpleNamespace(matched_count=0, modified_count=0)

        changes = update["$set"]
        modified = any(doc.get(k) != v for k, v in changes.items())
        doc.update(changes)
        return SimpleNamespace(matched_count=1, modified_count=int(modified))

    async def find_one(
        self, flt: dict[str, Any], session: FakeSession | None = None
    ) -> dict[str, Any] | None:
        self.sessions.append(session)
        if self.fail_with is not None:
            raise self.fail_with
        doc = self._match(flt)
        return dict(doc) if doc is not None else None


class FakeAdmin:
    def __init__(self) -> None:
        self.healthy = True

    async def command(self, name: str) -> dict[str, Any]:
        if not self.healthy:
            raise PyMongoError("server selection timeout")
        return {"ok": 1.0}


class FakeDatabase:
    def __init__(self) -> None:
        self._collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self._collections.setdefault(name, FakeCollection())


class FakeMongoClient:
    """Motor client stand-in: `client[db][collection]`, sessions and ping."""

    def __init__(self) -> None:
        self._dbs: dict[str, FakeDatabase] = {}
        self.admin = FakeAdmin()
        self.sessions: list[FakeSession] = []
        self.closed = False

    def __getitem__(self, name: str) -> FakeDatabase:
        return self._dbs.setdefault(name, FakeDatabase())

    async def start_session(self, causal_consistency: bool | None = None) -> FakeSession:
        session = FakeSession(causal_consistency)
        self.sessions.append(session)
        return session

    def close(self) -> None:
        self.closed = True


class FakeMessage:
    """aio-pika incoming message stand-in recording settlement calls.

    Settling twice raises, like aio-pika does for an already processed message.
    """

    def __init__(
        self,
        body: bytes,
        delivery_tag: int = 1,
        redelivered: bool = False,
        message_id: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> None:
        self.body = body
        self.delivery_tag = delivery_tag
        self.redelivered = redelivered
        self.message_id = message_id
        self.headers = headers or {}
        self.actions: list[tuple[str, bool | None]] = []

    @property
    def processed(self) -> bool:
        return bool(self.actions)

    def _settle(self, action: str, requeue: bool | None) -> None:
        if self.actions:
            raise RuntimeError("Message already processed")
        self.actions.append((action, requeue))

    async def ack(self, multiple: bool = False) -> None:
        self._settle("ack", None)

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None:
        self._settle("nack", requeue)

    async def reject(self, requeue: bool = False) -> None:
        self._settle("reject", requeue)


class FakeCallbacks(list):  # type: ignore[type-arg]
    """Minimal aio-pika CallbackCollection: `add` and invocation with a sender."""

    def add(self, callback: Any) -> None:
        self.append(callback)

    async def fire(self, sender: Any, *args: Any) -> None:
        for cb in list(self):
            res = cb(sender, *args)
            if asyncio.iscoroutine(res):
                await res


class FakeExchange:
    def __init__(self, name: str, kind: Any, durable: bool, auto_delete: bool) -> None:
        self.name = name
        self.kind = kind
        self.durable = durable
        self.auto_delete = auto_delete


class FakeQueue:
    def __init__(self, name: str, **params: Any) -> None:
        self.name = name
        self.params = params
        self.bindings: list[tuple[str, str]] = []
        self.consumers: dict[str, dict[str, Any]] = {}
        self.cancelled: list[str] = []

    async def bind(self, exchange: FakeExchange, routing_key: str) -> None:
        self.bindings.append((exchange.name, routing_key))

    async def consume(self, callback: Any, no_ack: bool = False, consumer_tag: str | None = None) -> str:
        tag = consumer_tag or f"ctag-{len(self.consumers) + 1}"
        self.consumers[tag] = {"callback": callback, "no_ack": no_ack}
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        self.cancelled.append(consumer_tag)
        self.consumers.pop(consumer_tag, None)

    async def deliver(self, message: FakeMessage) -> None:
        for consumer in self.consumers.values():
            await consumer["callback"](message)


class FakeChannel:
    """Channel stand-in with broker-like idempotent declarations."""

    def __init__(self) -> None:
        self.exchanges: dict[str, FakeExchange] = {}
        self.queues: dict[str, FakeQueue] = {}
        self.close_callbacks = FakeCallbacks()
        self.prefetch_count: int | None = None

    async def set_qos(self, prefetch_count: int) -> None:
        self.prefetch_count = prefetch_count

    async def declare_exchange(
        self, name: str, kind: Any, durable: bool = False, auto_delete: bool = False
    ) -> FakeExchange:
        existing = self.exchanges.get(name)
        if existing is not None:
            if (existing.kind, existing.durable, existing.auto_delete) != (kind, durable, auto_delete):
                raise ChannelPreconditionFailed(f"inequivalent arg for exchange '{name}'")
            return existing
        exchange = FakeExchange(name, kind, durable, auto_delete)
        self.exchanges[name] = exchange
        return exchange

    async def declare_queue(self, name: str | None = None, **params: Any) -> FakeQueue:
        if not name:
            # RobustQueue names server-named queues client side.
            name = f"amq_{uuid.uuid4().hex}"
        if name.startswith("amq."):
            raise PermissionError(f"ACCESS_REFUSED - queue name '{name}' contains reserved prefix 'amq.'")
        existing = self.queues.get(name)
        if existing is not None:
            if existing.params != params:
                raise ChannelPreconditionFailed(f"inequivalent arg for queue '{name}'")
            return existing
        queue = FakeQueue(name, **params)
        self.queues[name] = queue
        return queue


class FakeRobustConnection:
    """Robust connection stand-in for BrokerConnection tests."""

    def __init__(self) -> None:
        self.is_closed = False
        self.connected = asyncio.Event()
        self.connected.set()
        self.reconnect_interval: float | None = None
        self.close_callbacks = FakeCallbacks()
        self.reconnect_callbacks = FakeCallbacks()
        self.channels: list[FakeChannel] = []

    async def channel(self) -> FakeChannel:
        channel = FakeChannel()
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.is_closed = True


@pytest.fixture()
def settings() -> Settings:
    """Settings with credentials supplied explicitly (no `.env` required)."""
    return Settings(
        CLOUD_AMQP_USER="worker",
        CLOUD_AMQP_PASSWORD="s3cret",
        AMQP_HOST="rabbit.local",
        MONGO_USR="pos",
        MONGO_PWD="pos-pwd",
        MONGO_HOSTS="m0.local:27017,m1.local:27017,m2.local:27017",
        MONGO_REPLICA_SET="rs0",
    )


@pytest.fixture()
def mongo_client() -> FakeMongoClient:
    """Provide fake Motor client."""
    return FakeMongoClient()


@pytest.fixture()
def purchases(mongo_client: FakeMongoClient) -> FakeCollection:
    """The `services-pos.Purchase` collection of the fake client."""
    return mongo_client["services-pos"]["Purchase"]


@pytest.fixture()
def channel() -> FakeChannel:
    """Provide fake channel."""
    return FakeChannel()
