from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from .party_registry import PartyRegistry

logger = logging.getLogger(__name__)


_LOG_BUFFER_LIMIT = 200
_log_buffer = deque(maxlen=_LOG_BUFFER_LIMIT)


class _InMemoryLogHandler(logging.Handler):
    """Collect recent log records for admin diagnostics."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - logging side effect
        try:
            message = self.format(record)
        except Exception:
            message = record.getMessage()
        _log_buffer.append(
            {
                "message": message,
                "level": record.levelname.lower(),
                "logger": record.name,
                "timestamp": record.created,
            }
        )


def _ensure_log_handler() -> None:
    root_logger = logging.getLogger()
    if any(isinstance(handler, _InMemoryLogHandler) for handler in root_logger.handlers):
        return
    handler = _InMemoryLogHandler(level=logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root_logger.addHandler(handler)


def _get_log_tail(limit: int = 50) -> list[dict[str, object]]:
    if limit <= 0:
        return []
    slice_len = min(limit, len(_log_buffer))
    if slice_len == 0:
        return []
    return list(_log_buffer)[-slice_len:]


class AdminDashboard:
    """FastAPI application exposing read-only insight into live parties."""

    def __init__(
        self,
        registry: PartyRegistry,
        *,
        connection_counter: Optional[Callable[[], int]] = None,
    ) -> None:
        self._registry = registry
        self._connection_counter = connection_counter
        self._started_at = time.time()
        self._app = FastAPI(title="Watch party relay admin")

        @self._app.get("/api/health")
        async def health() -> dict:
            snapshot = await self._registry.snapshot()
            return {
                "status": "ok",
                "party_count": snapshot["party_count"],
                "connection_count": self._connection_count(),
                "uptime_seconds": time.time() - self._started_at,
                "timestamp": time.time(),
            }

        @self._app.get("/api/state")
        async def state() -> dict:
            snapshot = await self._registry.snapshot()
            snapshot["timestamp"] = time.time()
            snapshot["connection_count"] = self._connection_count()
            snapshot["log_tail"] = _get_log_tail(40)
            return snapshot

        @self._app.get("/api/parties")
        async def parties() -> list[dict]:
            snapshot = await self._registry.snapshot()
            return snapshot["parties"]

        @self._app.get("/api/parties/{party_code}")
        async def party(party_code: str) -> dict:
            snapshot = await self._registry.snapshot()
            for entry in snapshot["parties"]:
                if entry["party_code"] == party_code.strip().upper():
                    return entry
            raise HTTPException(status_code=404, detail="Party not found")

        @self._app.get("/api/events")
        async def events(limit: int = Query(300, ge=0, le=1000)) -> JSONResponse:
            recent = await self._registry.get_recent_events(limit=limit)
            return JSONResponse(recent)

    @property
    def app(self) -> FastAPI:
        return self._app

    def _connection_count(self) -> int:
        if self._connection_counter is None:
            return 0
        return self._connection_counter()


class AdminServer:
    """Background task helper for running the admin FastAPI server."""

    def __init__(
        self,
        registry: PartyRegistry,
        *,
        host: str,
        port: int,
        connection_counter: Optional[Callable[[], int]] = None,
    ) -> None:
        _ensure_log_handler()
        self._dashboard = AdminDashboard(registry, connection_counter=connection_counter)
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._dashboard.app, host=self._host, port=self._port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Admin dashboard available at http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
