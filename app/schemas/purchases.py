"""Schemas for purchase events and store results."""
from __future__ import annotations

import enum
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.errors import PayloadError


class Outcome(str, enum.Enum):
    """How a delivery was resolved."""
    ACKED = "acked"
    NACKED_REQUEUE = "nacked_requeue"
    NACKED_DROP = "nacked_drop"


class PurchasePayload(BaseModel):
    """Decoded `purchase.created` event.

    Unknown purchase fields are kept as extras so newer producers do not break
    older workers.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    transaction_id: str = Field(alias="transactionId", min_length=1)
    status: str | None = Field(default=None, min_length=1)

    @classmethod
    def from_body(cls, body: bytes, default_status: str) -> PurchasePayload:
        """
        Decode a delivery body.

        The status starts from `default_status` so an event without one still
        yields a well-defined target state.

        Raises:
            PayloadError: If the body is not a JSON object with a non-empty transaction id.
        """
        try:
            payload = cls.model_validate_json(body)
        except ValidationError as e:
            raise PayloadError(str(e)) from e
        if not payload.transaction_id.strip():
            raise PayloadError("transactionId must not be blank")
        if payload.status is None:
            payload.status = default_status
        return payload

    @property
    def target_status(self) -> str:
        """Status to store; only payloads built by `from_body` are guaranteed one."""
        if self.status is None:
            raise PayloadError("status was not resolved; decode with from_body")
        return self.status


@dataclass(frozen=True)
class UpdateResult:
    """Counts reported by the store for one status update."""
    matched: int
    modified: int

    @property
    def found(self) -> bool:
        return self.matched > 0
