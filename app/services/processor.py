from __future__ import annotations

from typing import Any, Protocol

import structlog

from app.core.config import AckMode
from app.core.errors import PayloadError, PersistenceError
from app.schemas.purchases import Outcome, PurchasePayload, UpdateResult
from app.services.redelivery import RedeliveryGuard

logger = structlog.get_logger(__name__)


class Delivery(Protocol):
    """The subset of `aio_pika.abc.AbstractIncomingMessage` the processor relies on."""

    body: bytes
    delivery_tag: int | None
    redelivered: bool | None
    message_id: str | None
    headers: Any
    processed: bool

    async def ack(self, multiple: bool = False) -> None: ...

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None: ...

    async def reject(self, requeue: bool = False) -> None: ...


class StatusStore(Protocol):
    """Persistence port used by the processor (see PurchasesRepository)."""

    async def update_status(self, transaction_id: str, status: str) -> UpdateResult: ...


class MessageProcessor:
    """
    Purchase status application service.

    Turns one delivery into one status transition and decides how the
    delivery is acknowledged.

    Responsibilities:
    - Decode the purchase event (defaulting its status).
    - Apply the status update through the store.
    - Map every failure to a requeue or drop outcome.
    - Settle the delivery with the broker exactly once (manual ack mode).

    Non-responsibilities:
    - Queue intake and concurrency (handled by the consumer loop).
    - Store sessions (handled by PurchasesRepository).
    """

    def __init__(
        self,
        store: StatusStore,
        *,
        default_status: str = "FINISHED",
        ack_mode: AckMode = AckMode.MANUAL,
        guard: RedeliveryGuard | None = None,
    ) -> None:
        """
        Initialize MessageProcessor.

        Args:
            store: Persistence gateway exposing `update_status`.
            default_status: Status applied when an event carries none.
            ack_mode: MANUAL settles every delivery; AUTO leaves that to the broker.
            guard: Redelivery guard; None disables the drop policy.
        """
        self._store = store
        self._default_status = default_status
        self._ack_mode = ack_mode
        self._guard = guard or RedeliveryGuard(max_redeliveries=0)

    @property
    def ack_mode(self) -> AckMode:
        return self._ack_mode

    async def process(self, delivery: Delivery) -> Outcome:
        """
        Apply the status transition carried by a delivery.

        Business flow:
        1. Decode the body; on failure requeue.
        2. Update the purchase status; on store failure requeue.
        3. Acknowledge.

        An undecodable delivery is dropped once it exhausted its redelivery
        budget. Store failures are always requeued. A purchase that does not
        exist is acknowledged and reported as a warning.

        Returns:
            The outcome to send back to the broker.
        """
        log = logger.bind(delivery_tag=delivery.delivery_tag, redelivered=delivery.redelivered)

        try:
            payload = PurchasePayload.from_body(delivery.body, self._default_status)
        except PayloadError as e:
            log.warning("payload_rejected", error=str(e))
            return self._retry_or_drop(delivery)

        log = log.bind(transaction_id=payload.transaction_id, status=payload.target_status)

        try:
            result = await self._store.update_status(
                payload.transaction_id, payload.target_status
            )
        except PersistenceError as e:
            # Store outages never consume the redelivery budget.
            log.error("purchase_update_failed", error=str(e))
            return Outcome.NACKED_REQUEUE

        self._guard.forget(delivery)

        if not result.found:
            log.warning("purchase_not_found")
            return Outcome.ACKED

        log.info("purchase_status_updated", modified=result.modified)
        return Outcome.ACKED

    def _retry_or_drop(self, delivery: Delivery) -> Outcome:
        if self._guard.record_failure(delivery):
            logger.error(
                "delivery_dropped",
                delivery_tag=delivery.delivery_tag,
                message_id=delivery.message_id,
            )
            return Outcome.NACKED_DROP
        return Outcome.NACKED_REQUEUE

    async def settle(self, delivery: Delivery, outcome: Outcome) -> None:
        """
        Send the acknowledgment matching an outcome.

        Notes:
            - In AUTO mode the broker already considers the delivery accepted.
            - A delivery that was already settled is left untouched.
        """
        if self._ack_mode is AckMode.AUTO or delivery.processed:
            return

        if outcome is Outcome.ACKED:
            await delivery.ack()
        elif outcome is Outcome.NACKED_REQUEUE:
            await delivery.nack(requeue=True)
        else:
            await delivery.reject(requeue=False)

    async def handle(self, delivery: Delivery) -> Outcome:
        """Process a delivery and settle it with the broker."""
        outcome = await self.process(delivery)
        await self.settle(delivery, outcome)
        return outcome
