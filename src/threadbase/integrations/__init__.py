"""Chat platform capture and wiki export adapters."""

from src.threadbase.integrations.base import CaptureAdapter, ExportAdapter, Integration
from src.threadbase.integrations.listener import ListenerRegistry, ThreadListener
from src.threadbase.integrations.registry import (
    build_adapter,
    build_capture_adapter,
    build_export_adapter,
    register_capture_adapter,
    register_export_adapter,
)

__all__ = [
    "CaptureAdapter",
    "ExportAdapter",
    "Integration",
    "ListenerRegistry",
    "ThreadListener",
    "build_adapter",
    "build_capture_adapter",
    "build_export_adapter",
    "register_capture_adapter",
    "register_export_adapter",
]
