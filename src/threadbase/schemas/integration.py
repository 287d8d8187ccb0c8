"""Pydantic schemas for integration configuration and export results."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class IntegrationType(str, Enum):
    SLACK = "slack"
    DISCORD = "discord"
    NOTION = "notion"
    CONFLUENCE = "confluence"


class IntegrationConfig(BaseModel):
    """Credentials and settings handed to an adapter at construction time."""

    type: str
    credentials: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)


class IntegrationRead(BaseModel):
    """Integration row without credentials."""

    id: str
    tenant_id: str
    type: str
    settings: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class ExportResult(BaseModel):
    """Outcome of publishing a knowledge item to an external wiki."""

    success: bool
    external_id: str | None = None
    url: str | None = None
    error: str | None = None


class IntegrationUpsert(BaseModel):
    """Request schema for configuring an integration."""

    credentials: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
