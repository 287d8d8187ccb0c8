"""Polling listeners for capture adapters.

ThreadListener runs one background asyncio task that polls for new thread
references, captures each one once and hands it to a callback.
ListenerRegistry keeps at most one listening adapter per
(tenant_id, integration_type) pair.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from src.threadbase.schemas.knowledge import CapturedThread

if TYPE_CHECKING:
    from src.threadbase.integrations.base import CaptureAdapter

logger = structlog.get_logger(__name__)

MAX_SEEN_REFS = 10_000


class ThreadListener:
    """Background poll loop for one capture adapter.

    Args:
        poll: Returns thread references currently worth capturing.
        capture: Captures one thread reference.
        on_thread: Optional coroutine receiving each newly captured thread.
        interval: Seconds between polls.
        timeout: Upper bound in seconds for capturing one reference.
        name: Task name, used in logs.
        max_seen: How many handled references are remembered (oldest first out).

    A reference counts as handled only once it was captured and on_thread
    returned. Failed references are retried on the next poll.
    """

    def __init__(
        self,
        poll: Callable[[], Awaitable[list[str]]],
        capture: Callable[[str], Awaitable[CapturedThread]],
        on_thread: Callable[[CapturedThread], Awaitable[None]] | None = None,
        interval: float = 30.0,
        timeout: float | None = None,
        name: str = "thread-listener",
        max_seen: int = MAX_SEEN_REFS,
    ) -> None:
        self._poll = poll
        self._capture = capture
        self._on_thread = on_thread
        self._interval = interval
        self._timeout = timeout
        self._name = name
        self._max_seen = max_seen
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self._name)
        logger.info("listener.started", listener=self._name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("listener.stopped", listener=self._name)

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    async def poll_once(self) -> int:
        """Capture every unhandled reference. Returns how many were handled.

        A failing reference is logged and skipped; the rest of the batch
        still runs.
        """
        handled = 0
        for ref in await self._poll():
            if ref in self._seen:
                self._seen.move_to_end(ref)
                continue
            try:
                thread = await asyncio.wait_for(self._capture(ref), timeout=self._timeout)
                if self._on_thread is not None:
                    await self._on_thread(thread)
            except Exception as exc:
                logger.warning(
                    "listener.capture_failed",
                    listener=self._name,
                    thread_ref=ref,
                    error=str(exc) or type(exc).__name__,
                )
                continue
            self._remember(ref)
            handled += 1
        return handled

    def _remember(self, ref: str) -> None:
        self._seen[ref] = None
        while len(self._seen) > self._max_seen:
            self._seen.popitem(last=False)

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("listener.poll_failed", listener=self._name, error=str(exc))
            await asyncio.sleep(self._interval)


class ListenerRegistry:
    """One listening capture adapter per (tenant_id, integration_type)."""

    def __init__(self) -> None:
        self._adapters: dict[tuple[str, str], CaptureAdapter] = {}

    def get(self, tenant_id: str, integration_type: str) -> CaptureAdapter | None:
        return self._adapters.get((tenant_id, integration_type))

    def __len__(self) -> int:
        return len(self._adapters)

    async def start(
        self,
        tenant_id: str,
        adapter: CaptureAdapter,
        on_thread: Callable[[CapturedThread], Awaitable[None]] | None = None,
    ) -> CaptureAdapter:
        """Start listening unless the pair already has a live listener.

        Returns the adapter that is listening for the pair, which is the
        previously registered one when it is still running.
        """
        key = (tenant_id, adapter.integration_type)
        existing = self._adapters.get(key)
        if existing is not None and existing.is_listening:
            return existing
        await adapter.start_listening(on_thread)
        self._adapters[key] = adapter
        logger.info("listener.registered", tenant_id=tenant_id, integration=adapter.integration_type)
        return adapter

    async def stop(self, tenant_id: str, integration_type: str) -> bool:
        adapter = self._adapters.pop((tenant_id, integration_type), None)
        if adapter is None:
            return False
        await adapter.stop_listening()
        return True

    async def stop_all(self) -> None:
        for tenant_id, integration_type in list(self._adapters):
            await self.stop(tenant_id, integration_type)
