"""Adapter registry -- maps integration type names to adapter classes.

New platforms register here; the pipeline and the knowledge service only
ever ask the registry for an adapter by type name.
"""

from __future__ import annotations

from typing import Any

from src.threadbase.core.errors import InvalidInput
from src.threadbase.integrations.base import CaptureAdapter, ExportAdapter, Integration
from src.threadbase.integrations.confluence import ConfluenceExportAdapter
from src.threadbase.integrations.discord import DiscordCaptureAdapter
from src.threadbase.integrations.notion import NotionExportAdapter
from src.threadbase.integrations.slack import SlackCaptureAdapter
from src.threadbase.schemas.integration import IntegrationConfig

CAPTURE_ADAPTERS: dict[str, type[CaptureAdapter]] = {}
EXPORT_ADAPTERS: dict[str, type[ExportAdapter]] = {}


def register_capture_adapter(integration_type: str, adapter_cls: type[CaptureAdapter]) -> None:
    CAPTURE_ADAPTERS[integration_type.lower()] = adapter_cls


def register_export_adapter(integration_type: str, adapter_cls: type[ExportAdapter]) -> None:
    EXPORT_ADAPTERS[integration_type.lower()] = adapter_cls


def _config(integration_type: str, config: IntegrationConfig | dict[str, Any]) -> IntegrationConfig:
    if isinstance(config, IntegrationConfig):
        return config
    return IntegrationConfig(type=integration_type, **config)


def build_capture_adapter(
    integration_type: str, config: IntegrationConfig | dict[str, Any], **kwargs: Any
) -> CaptureAdapter:
    adapter_cls = CAPTURE_ADAPTERS.get((integration_type or "").lower())
    if adapter_cls is None:
        raise InvalidInput(f"No capture adapter for integration type {integration_type!r}")
    return adapter_cls(_config(integration_type, config), **kwargs)


def build_export_adapter(
    integration_type: str, config: IntegrationConfig | dict[str, Any], **kwargs: Any
) -> ExportAdapter:
    adapter_cls = EXPORT_ADAPTERS.get((integration_type or "").lower())
    if adapter_cls is None:
        raise InvalidInput(f"No export adapter for integration type {integration_type!r}")
    return adapter_cls(_config(integration_type, config), **kwargs)


def build_adapter(
    integration_type: str, config: IntegrationConfig | dict[str, Any], **kwargs: Any
) -> Integration:
    """Build whichever adapter (capture or export) is registered for the type."""
    key = (integration_type or "").lower()
    if key in CAPTURE_ADAPTERS:
        return build_capture_adapter(key, config, **kwargs)
    return build_export_adapter(key, config, **kwargs)


register_capture_adapter("slack", SlackCaptureAdapter)
register_capture_adapter("discord", DiscordCaptureAdapter)
register_export_adapter("notion", NotionExportAdapter)
register_export_adapter("confluence", ConfluenceExportAdapter)
