"""Worker error taxonomy.

Startup errors (configuration, broker authentication, topology conflicts,
unreachable store) are fatal and terminate the process. Per-message errors
(payload, persistence) are turned into a requeue decision by the processor.
"""

from __future__ import annotations


class WorkerError(Exception):
    """Base class for all worker errors."""


class ConfigurationError(WorkerError):
    """Missing credentials or malformed connection settings."""


class BrokerAuthenticationError(WorkerError):
    """The broker refused the supplied credentials or virtual host."""


class BrokerUnavailableError(WorkerError):
    """The broker could not be reached within the allowed attempts."""


class TopologyConflictError(WorkerError):
    """A queue/exchange/binding already exists with different parameters."""


class PayloadError(WorkerError):
    """A delivery body could not be decoded into a purchase event."""


class PersistenceError(WorkerError):
    """The document store rejected or failed an operation."""


class StoreUnavailableError(PersistenceError):
    """The document store could not be reached at startup."""
