"""
Purchases repository (MongoDB).

This repository is the single place that knows about the document store.
It owns no connection of its own: it shares one pooled Motor client and
opens a fresh client session for every call, so concurrent message handlers
never share per-session state.

Sessions are causally consistent: a handler always observes its own prior
writes, but not necessarily the latest writes of other sessions.
"""

from __future__ import annotations

from typing import Any

from pymongo.errors import PyMongoError

from app.core.errors import PersistenceError
from app.schemas.purchases import UpdateResult


class PurchasesRepository:
    """
    Data access layer for persisted purchase records.

    Args:
        client: Shared Motor client (connection pool).
        database: Database name (e.g. "services-pos").
        collection: Collection name (e.g. "Purchase").
    """

    def __init__(self, client: Any, database: str, collection: str) -> None:
        self._client = client
        self._database = database
        self._collection_name = collection

    def _collection(self) -> Any:
        return self._client[self._database][self._collection_name]

    async def update_status(self, transaction_id: str, status: str) -> UpdateResult:
        """
        Set the status of one purchase.

        The update is a plain `$set` keyed on `_id`, so applying the same
        (transaction id, status) pair again leaves the document unchanged.

        Args:
            transaction_id: Purchase key (`_id` of the document).
            status: New status value.

        Returns:
            UpdateResult with matched/modified counts. `matched == 0` means
            no purchase exists with that transaction id.

        Raises:
            PersistenceError: If the store fails the operation.
        """
        try:
            async with await self._client.start_session(causal_consistency=True) as session:
                res = await self._collection().update_one(
                    {"_id": transaction_id},
                    {"$set": {"status": status}},
                    session=session,
                )
        except PyMongoError as e:
            raise PersistenceError(
                f"failed to update purchase {transaction_id!r}: {e}"
            ) from e

        return UpdateResult(matched=res.matched_count, modified=res.modified_count)

    async def get(self, transaction_id: str) -> dict[str, Any] | None:
        """
        Load a purchase document.

        Returns:
            The stored document, or None if it does not exist.

        Raises:
            PersistenceError: If the store fails the operation.
        """
        try:
            async with await self._client.start_session(causal_consistency=True) as session:
                doc: dict[str, Any] | None = await self._collection().find_one(
                    {"_id": transaction_id}, session=session
                )
        except PyMongoError as e:
            raise PersistenceError(f"failed to load purchase {transaction_id!r}: {e}") from e
        return doc

    async def ping(self) -> bool:
        """Return True if the store answers a ping."""
        try:
            await self._client.admin.command("ping")
        except PyMongoError:
            return False
        return True
