"""Integration adapter abstract base classes.

Every chat platform (capture) and wiki (export) connector implements one of
these ABCs. The pipeline never sees platform payloads: capture adapters hand
over a CapturedThread, export adapters take platform-neutral messages and
report an ExportResult.

- Integration: connect / disconnect / test_connection
- CaptureAdapter: capture_thread plus polling-based listening
- ExportAdapter: export_knowledge, errors returned inside ExportResult
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence

from src.threadbase.integrations.listener import ThreadListener
from src.threadbase.schemas.integration import ExportResult, IntegrationConfig
from src.threadbase.schemas.knowledge import CapturedThread, SourceType, ThreadMessage

ThreadCallback = Callable[[CapturedThread], Awaitable[None]]


class Integration(ABC):
    """Common lifecycle of every platform connector.

    Args:
        config: Credentials and settings stored for the tenant.
    """

    integration_type: str = ""

    def __init__(self, config: IntegrationConfig) -> None:
        self._config = config

    @property
    def config(self) -> IntegrationConfig:
        return self._config

    @abstractmethod
    async def connect(self) -> bool:
        """Verify credentials against the platform. Never raises."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Release platform resources."""
        ...

    @abstractmethod
    async def test_connection(self) -> bool:
        """Health check used when an integration is configured."""
        ...


class CaptureAdapter(Integration):
    """Connector that pulls conversations out of a chat platform.

    Listening is polling-based: the listener calls poll_thread_refs() every
    poll_interval seconds and captures each new reference once.
    start_listening() is idempotent per adapter instance.
    """

    source_type: SourceType = SourceType.API

    def __init__(
        self, config: IntegrationConfig, poll_interval: float = 30.0, timeout: float = 20.0
    ) -> None:
        super().__init__(config)
        self._poll_interval = poll_interval
        self._capture_timeout = timeout
        self._listener: ThreadListener | None = None
        self.connections_opened = 0

    @abstractmethod
    async def capture_thread(self, thread_ref: str) -> CapturedThread:
        """Fetch one conversation.

        Raises:
            InvalidInput: thread_ref is malformed.
            AdapterConnectionError: The platform call failed.
        """
        ...

    async def poll_thread_refs(self) -> list[str]:
        """Thread references worth capturing right now. Default: none."""
        return []

    @property
    def is_listening(self) -> bool:
        return self._listener is not None and self._listener.running

    async def start_listening(self, on_thread: ThreadCallback | None = None) -> None:
        if self.is_listening:
            return
        self._listener = ThreadListener(
            poll=self.poll_thread_refs,
            capture=self.capture_thread,
            on_thread=on_thread,
            interval=self._poll_interval,
            timeout=self._capture_timeout,
            name=f"{self.integration_type}-listener",
        )
        self.connections_opened += 1
        await self._listener.start()

    async def stop_listening(self) -> None:
        if self._listener is None:
            return
        await self._listener.stop()
        self._listener = None


class ExportAdapter(Integration):
    """Connector that publishes knowledge into an external wiki."""

    @abstractmethod
    async def export_knowledge(
        self,
        title: str,
        content: Sequence[ThreadMessage],
        tags: Sequence[str] | None = None,
    ) -> ExportResult:
        """Publish one knowledge item. Failures come back as success=False."""
        ...
