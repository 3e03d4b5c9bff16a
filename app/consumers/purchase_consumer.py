"""RabbitMQ consumer that applies `purchase.created` events to stored purchases."""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError

from app.core.config import AckMode, Settings, get_settings
from app.core.errors import WorkerError
from app.core.logging import configure_logging
from app.db.mongo import dial
from app.messaging.connection import BackoffPolicy, BrokerConnection
from app.messaging.topology import TopologyDeclarator, specs_from_settings
from app.repositories.purchases import PurchasesRepository
from app.schemas.purchases import Outcome
from app.services.processor import MessageProcessor
from app.services.redelivery import RedeliveryGuard

logger = structlog.get_logger(__name__)

_DELIVERY = "delivery"
_CONSUMER_ERROR = "consumer_error"
_CONNECTION_ERROR = "connection_error"
_STOP = "stop"


class ConsumerLoop:
    """
    Drives intake from one queue.

    Deliveries are handed to the processor on tracked tasks, at most
    `max_concurrency` at a time. Consumer and connection errors are logged and
    never stop the loop; only `stop()` or closing the connection does.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        processor: MessageProcessor,
        *,
        max_concurrency: int = 16,
        consumer_tag: str = "purchase-status-worker",
    ) -> None:
        self._connection = connection
        self._processor = processor
        self._consumer_tag = consumer_tag
        self._slots = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task[Outcome | None]] = set()
        self._waiters: dict[str, asyncio.Task[Any]] = {}
        self._stopping = asyncio.Event()
        self._queue: AbstractQueue | None = None
        self._registered_tag: str | None = None

        self.deliveries: asyncio.Queue[AbstractIncomingMessage] = asyncio.Queue()
        self.errors: asyncio.Queue[BaseException] = asyncio.Queue()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def consume(
        self, channel: AbstractChannel, queue: AbstractQueue, ack_mode: AckMode
    ) -> str:
        """
        Register the named consumer on `queue`.

        Args:
            channel: Channel the queue was declared on; its closures are reported as consumer errors.
            queue: Queue to consume from.
            ack_mode: AUTO lets the broker consider deliveries accepted immediately.

        Returns:
            The consumer tag.
        """
        if ack_mode is not self._processor.ack_mode:
            raise ValueError(
                f"ack mode {ack_mode.value!r} does not match the processor's"
                f" {self._processor.ack_mode.value!r}"
            )
        if ack_mode is AckMode.AUTO:
            logger.warning("auto_ack_enabled")

        channel.close_callbacks.add(self._on_channel_close)
        self._queue = queue
        self._registered_tag = await queue.consume(
            self.deliveries.put,
            no_ack=ack_mode is AckMode.AUTO,
            consumer_tag=self._consumer_tag,
        )
        logger.info("consumer_started", queue=queue.name, consumer_tag=self._registered_tag)
        return self._registered_tag

    async def run(self) -> None:
        """Service deliveries and error streams until stopped."""
        try:
            while self._connection.loop() and not self._stopping.is_set():
                for source, item in await self._next_events():
                    if source == _DELIVERY:
                        await self._dispatch(item)
                    elif source == _CONSUMER_ERROR:
                        logger.error("consumer_error", error=repr(item))
                    elif source == _CONNECTION_ERROR:
                        logger.warning("connection_error", error=repr(item))
        finally:
            for waiter in self._waiters.values():
                waiter.cancel()
            self._waiters.clear()

    def request_stop(self) -> None:
        """Ask `run()` to return; safe to call from a signal handler."""
        self._stopping.set()

    async def stop(self, timeout: float | None = 30.0) -> None:
        """
        Stop intake and wait for in-flight deliveries.

        In-flight processing is not aborted; deliveries still running after
        `timeout` are left to the broker (redelivered once the channel closes).
        """
        self._stopping.set()

        if self._queue is not None and self._registered_tag is not None:
            try:
                await self._queue.cancel(self._registered_tag)
            except (AMQPError, RuntimeError) as e:
                logger.warning("consumer_cancel_failed", error=repr(e))
            self._registered_tag = None

        if not self.deliveries.empty():
            logger.info("undispatched_deliveries_left", count=self.deliveries.qsize())

        await self.drain(timeout)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for tracked processing tasks."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("shutdown_timeout", in_flight=len(pending))

    async def _next_events(self) -> list[tuple[str, Any]]:
        sources: dict[str, Callable[[], Awaitable[Any]]] = {
            _DELIVERY: self.deliveries.get,
            _CONSUMER_ERROR: self.errors.get,
            _CONNECTION_ERROR: self._connection.errors.get,
            _STOP: self._wait_stop,
        }
        for name, source in sources.items():
            if name not in self._waiters:
                self._waiters[name] = asyncio.create_task(source())

        done, _ = await asyncio.wait(
            self._waiters.values(), return_when=asyncio.FIRST_COMPLETED
        )

        events: list[tuple[str, Any]] = []
        for name, waiter in list(self._waiters.items()):
            if waiter not in done:
                continue
            del self._waiters[name]
            if name != _STOP:
                events.append((name, waiter.result()))
        return events

    async def _wait_stop(self) -> None:
        stop = asyncio.create_task(self._stopping.wait())
        closed = asyncio.create_task(self._connection.wait_closed())
        try:
            await asyncio.wait({stop, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            closed.cancel()

    async def _dispatch(self, message: AbstractIncomingMessage) -> None:
        logger.debug("delivery_received", delivery_tag=message.delivery_tag, size=len(message.body))
        await self._slots.acquire()
        task = asyncio.create_task(self._process(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, message: AbstractIncomingMessage) -> Outcome | None:
        try:
            return await self._processor.handle(message)
        except Exception as e:  # surfaced on the consumer error stream
            self.errors.put_nowait(e)
            return None
        finally:
            self._slots.release()

    def _on_channel_close(self, _sender: Any, exc: BaseException | None = None) -> None:
        if exc is not None and not self._stopping.is_set():
            self.errors.put_nowait(exc)


async def run_worker(settings: Settings) -> None:
    """Wire the store, the broker session, the topology and the consumer; run until stopped."""
    client = await dial(settings)
    repo = PurchasesRepository(client, settings.mongo_database, settings.mongo_collection)
    processor = MessageProcessor(
        repo,
        default_status=settings.default_status,
        ack_mode=settings.ack_mode,
        guard=RedeliveryGuard(settings.max_redeliveries),
    )

    connection = BrokerConnection(settings.amqp_url, BackoffPolicy.from_settings(settings))
    consumer = ConsumerLoop(
        connection,
        processor,
        max_concurrency=settings.max_concurrency,
        consumer_tag=settings.amqp_consumer_tag,
    )
    health_task: asyncio.Task[None] | None = None

    try:
        await connection.connect()
        channel = await connection.channel(settings.effective_prefetch)

        declarator = TopologyDeclarator()
        topology = await declarator.declare(channel, *specs_from_settings(settings))

        async def _redeclare(_conn: AbstractRobustConnection) -> None:
            await declarator.redeclare(channel)

        connection.add_reconnect_hook(_redeclare)
        await consumer.consume(channel, topology.queue, settings.ack_mode)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, consumer.request_stop)

        if settings.health_port is not None:
            from app.main import serve_health

            health_task = asyncio.create_task(
                serve_health(settings.health_port, repo, connection, consumer)
            )

        await consumer.run()
    finally:
        await consumer.stop(settings.shutdown_timeout)
        if health_task is not None:
            health_task.cancel()
        await connection.close()
        client.close()
        logger.info("worker_stopped")


def main() -> None:
    """Consume from RabbitMQ indefinitely; exit non-zero on startup failures."""
    try:
        settings = get_settings()
    except WorkerError as e:
        configure_logging()
        logger.error("startup_failed", error=str(e), kind=type(e).__name__)
        sys.exit(1)

    configure_logging(settings.log_level, settings.log_json)
    try:
        asyncio.run(run_worker(settings))
    except WorkerError as e:
        logger.error("startup_failed", error=str(e), kind=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
