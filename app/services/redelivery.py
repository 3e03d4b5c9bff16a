"""
Redelivery guard.

Requeueing a message that can never be processed (e.g. a permanently
malformed body) would loop forever between the broker and the worker. The
guard counts failed attempts per message and tells the processor when to
give up and drop the message instead (the broker dead-letters it when the
queue has a dead-letter exchange).

The count comes from the broker's `x-delivery-count` header when present
(quorum queues). Otherwise failures are counted in-process, keyed by the
message id or a digest of the body; that count is bounded in size and is
lost on restart.
"""

from __future__ import annotations

import hashlib
from collections import OrderedDict
from typing import Any, Protocol


class _Identifiable(Protocol):
    body: bytes
    message_id: str | None
    headers: Any


class RedeliveryGuard:
    """
    Track failed attempts per message.

    Args:
        max_redeliveries: Failures allowed before a message is dropped. 0 disables the guard.
        capacity: Maximum number of message identities remembered in-process.
    """

    def __init__(self, max_redeliveries: int, capacity: int = 10_000) -> None:
        self._max = max_redeliveries
        self._capacity = capacity
        self._failures: OrderedDict[str, int] = OrderedDict()

    @property
    def enabled(self) -> bool:
        return self._max > 0

    @staticmethod
    def key(message: _Identifiable) -> str:
        if message.message_id:
            return f"id:{message.message_id}"
        return "sha256:" + hashlib.sha256(message.body).hexdigest()

    @staticmethod
    def _broker_count(message: _Identifiable) -> int | None:
        headers = message.headers or {}
        raw = headers.get("x-delivery-count")
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    def record_failure(self, message: _Identifiable) -> bool:
        """
        Register one failed attempt.

        Returns:
            True if the message has exhausted its attempts and must be dropped.
        """
        if not self.enabled:
            return False

        broker_count = self._broker_count(message)
        if broker_count is not None:
            # x-delivery-count counts previous deliveries; this failure adds one.
            return broker_count + 1 >= self._max

        key = self.key(message)
        count = self._failures.pop(key, 0) + 1
        if count >= self._max:
            return True
        self._failures[key] = count
        while len(self._failures) > self._capacity:
            self._failures.popitem(last=False)
        return False

    def forget(self, message: _Identifiable) -> None:
        """Drop the failure count of a message that was finally resolved."""
        self._failures.pop(self.key(message), None)

    def failures(self, message: _Identifiable) -> int:
        return self._failures.get(self.key(message), 0)
