"""FastAPI health endpoint served next to the worker."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterator
from typing import Any, Protocol

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request

logger = structlog.get_logger(__name__)


class _Pingable(Protocol):
    async def ping(self) -> bool: ...


class _BrokerState(Protocol):
    @property
    def is_connected(self) -> bool: ...


class _Consumer(Protocol):
    @property
    def in_flight(self) -> int: ...


class _HealthServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the worker."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def create_app(store: _Pingable, broker: _BrokerState, consumer: _Consumer | None = None) -> FastAPI:
    """Build the health app around the worker's live components."""
    app = FastAPI(title="purchase-status-worker", docs_url=None, redoc_url=None)
    app.state.store = store
    app.state.broker = broker
    app.state.consumer = consumer

    @app.get("/healthz")
    async def healthz(request: Request) -> dict[str, Any]:
        status: dict[str, Any] = {}

        # MongoDB
        try:
            status["mongo"] = "ok" if await request.app.state.store.ping() else "fail"
        except Exception as e:
            status["mongo"] = f"fail: {type(e).__name__}"

        # RabbitMQ
        status["rabbitmq"] = "ok" if request.app.state.broker.is_connected else "fail"

        if any(v != "ok" for v in status.values()):
            raise HTTPException(status_code=503, detail=status)

        result: dict[str, Any] = {"status": "ok", "detail": status}
        if request.app.state.consumer is not None:
            result["in_flight"] = request.app.state.consumer.in_flight
        return result

    return app


async def serve_health(
    port: int, store: _Pingable, broker: _BrokerState, consumer: _Consumer | None = None
) -> None:
    """Serve `/healthz` until cancelled."""
    config = uvicorn.Config(
        create_app(store, broker, consumer),
        host="0.0.0.0",
        port=port,
        log_config=None,
        access_log=False,
    )
    server = _HealthServer(config)
    logger.info("health_server_started", port=port)
    try:
        await server.serve()
    except asyncio.CancelledError:
        server.should_exit = True
        raise
