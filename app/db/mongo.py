"""MongoDB client factory (Motor)."""

from __future__ import annotations

from typing import Any

import structlog
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConfigurationError as MongoConfigurationError
from pymongo.errors import PyMongoError

from app.core.config import Settings
from app.core.errors import ConfigurationError, StoreUnavailableError

logger = structlog.get_logger(__name__)


def create_client(settings: Settings) -> AsyncIOMotorClient[Any]:
    """
    Build the pooled Motor client from settings.

    The client is lazy: no network I/O happens until the first operation.

    Raises:
        ConfigurationError: If the connection string or options are malformed.
    """
    try:
        return AsyncIOMotorClient(
            settings.mongo_dsn,
            tls=settings.mongo_tls,
            tlsAllowInvalidCertificates=settings.mongo_tls_allow_invalid_certificates,
            readPreference=settings.mongo_read_preference,
            serverSelectionTimeoutMS=settings.mongo_server_selection_timeout_ms,
        )
    except (MongoConfigurationError, ValueError, TypeError) as e:
        raise ConfigurationError(f"invalid MongoDB settings: {e}") from e


async def dial(settings: Settings) -> AsyncIOMotorClient[Any]:
    """
    Create the client and make sure the replica set answers.

    Raises:
        ConfigurationError: If the settings are malformed.
        StoreUnavailableError: If the server cannot be reached.
    """
    if settings.mongo_tls_allow_invalid_certificates:
        logger.warning("mongo_tls_certificate_validation_disabled")

    client = create_client(settings)
    try:
        await client.admin.command("ping")
    except PyMongoError as e:
        client.close()
        raise StoreUnavailableError(f"MongoDB not reachable: {e!r}") from e

    logger.info(
        "mongo_connected",
        database=settings.mongo_database,
        read_preference=settings.mongo_read_preference,
        tls=settings.mongo_tls,
    )
    return client
