"""
Queue / exchange / binding declaration.

Declarations are create-if-absent: redeclaring an identical topology is a
no-op on the broker, while conflicting parameters make the broker close the
channel with PRECONDITION_FAILED, reported here as `TopologyConflictError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

import aio_pika
import structlog
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue
from aio_pika.exceptions import ChannelPreconditionFailed

from app.core.config import Settings
from app.core.errors import TopologyConflictError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class QueueSpec:
    """Queue declaration; an empty name lets the broker assign one."""

    name: str = ""
    durable: bool = False
    auto_delete: bool = True
    exclusive: bool = False
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExchangeSpec:
    """Exchange declaration."""

    name: str = "purchase.created"
    kind: aio_pika.ExchangeType = aio_pika.ExchangeType.FANOUT
    durable: bool = False
    auto_delete: bool = True


@dataclass(frozen=True)
class BindingSpec:
    """Binding between the declared queue and exchange."""

    routing_key: str = "pubSub"


@dataclass(frozen=True)
class Topology:
    """Declared broker objects."""

    queue: AbstractQueue
    exchange: AbstractExchange


def specs_from_settings(settings: Settings) -> tuple[QueueSpec, ExchangeSpec, BindingSpec]:
    """Build the purchase.created topology from settings."""
    arguments: dict[str, Any] = {}
    if settings.amqp_dead_letter_exchange:
        arguments["x-dead-letter-exchange"] = settings.amqp_dead_letter_exchange
    return (
        QueueSpec(name=settings.amqp_queue, arguments=arguments),
        ExchangeSpec(name=settings.amqp_exchange),
        BindingSpec(routing_key=settings.amqp_routing_key),
    )


class TopologyDeclarator:
    """Declares the queue, exchange and binding, and remembers them for reconnects."""

    def __init__(self) -> None:
        self._last: tuple[QueueSpec, ExchangeSpec, BindingSpec] | None = None

    async def declare(
        self,
        channel: AbstractChannel,
        queue_spec: QueueSpec,
        exchange_spec: ExchangeSpec,
        binding_spec: BindingSpec,
    ) -> Topology:
        """
        Ensure the topology exists.

        Args:
            channel: Open channel to declare on.
            queue_spec: Queue parameters.
            exchange_spec: Exchange parameters (fanout by default).
            binding_spec: Routing key for the binding.

        Returns:
            The declared queue and exchange.

        Raises:
            TopologyConflictError: If an existing object has different parameters.
        """
        try:
            exchange = await channel.declare_exchange(
                exchange_spec.name,
                exchange_spec.kind,
                durable=exchange_spec.durable,
                auto_delete=exchange_spec.auto_delete,
            )
            queue = await channel.declare_queue(
                queue_spec.name or None,
                durable=queue_spec.durable,
                auto_delete=queue_spec.auto_delete,
                exclusive=queue_spec.exclusive,
                arguments=queue_spec.arguments or None,
            )
            await queue.bind(exchange, routing_key=binding_spec.routing_key)
        except ChannelPreconditionFailed as e:
            raise TopologyConflictError(
                f"topology conflict on exchange {exchange_spec.name!r}"
                f" / queue {queue_spec.name or '<server-named>'!r}: {e}"
            ) from e

        # Unnamed queues get a client-generated name; reconnects declare it again.
        self._last = (replace(queue_spec, name=queue.name), exchange_spec, binding_spec)
        logger.info(
            "topology_declared",
            queue=queue.name,
            exchange=exchange_spec.name,
            kind=exchange_spec.kind.value,
            routing_key=binding_spec.routing_key,
        )
        return Topology(queue=queue, exchange=exchange)

    async def redeclare(self, channel: AbstractChannel) -> Topology:
        """Declare the last topology again (after a reconnect)."""
        if self._last is None:
            raise RuntimeError("Nothing declared yet. Call declare() first.")
        return await self.declare(channel, *self._last)
