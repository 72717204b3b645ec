"""Fire-and-forget invocation of named stage workers."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import httpx
import structlog

logger = structlog.get_logger(__name__)

WorkerHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class Dispatcher(ABC):
    """Delivers ``body`` to ``worker`` asynchronously, at least once.

    Receivers must be idempotent: the same body may arrive more than once.
    """

    @abstractmethod
    async def dispatch(self, worker: str, body: dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        pass


class InProcessDispatcher(Dispatcher):
    """Runs registered handlers as background tasks on the current loop."""

    def __init__(self):
        self.handlers: dict[str, WorkerHandler] = {}
        self._tasks: set[asyncio.Task] = set()

    def register(self, worker: str, handler: WorkerHandler) -> None:
        self.handlers[worker] = handler

    async def dispatch(self, worker: str, body: dict[str, Any]) -> None:
        handler = self.handlers.get(worker)
        if handler is None:
            raise KeyError(f"No worker registered under '{worker}'")
        task = asyncio.create_task(self._run(worker, handler, body))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, worker: str, handler: WorkerHandler, body: dict[str, Any]) -> None:
        try:
            await handler(body)
        except Exception:
            logger.exception("Dispatched worker crashed", worker=worker, body=body)

    async def drain(self) -> None:
        """Wait until no dispatched work is left, including work it dispatched."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()


class HttpDispatcher(Dispatcher):
    """POSTs ``body`` to ``{base_url}/workers/{worker}`` without awaiting the stage.

    The receiving endpoint schedules ``advance`` and answers immediately, so
    the request only covers delivery, not the stage's work.
    """

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def dispatch(self, worker: str, body: dict[str, Any]) -> None:
        response = await self.client.post(f"{self.base_url}/workers/{worker}", json=body)
        response.raise_for_status()
        logger.debug("Dispatched", worker=worker, body=body)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
