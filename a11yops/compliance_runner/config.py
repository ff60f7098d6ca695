"""Runtime configuration for the compliance runner."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field

DATABASE_URL_ENV = "A11YOPS_DATABASE_URL"


class DatabaseConfig(BaseModel):
    """Configuration for the relational store."""

    url: str = Field(
        default="sqlite:///a11yops.db", description="SQLAlchemy database URL"
    )
    transaction_retries: int = Field(
        default=3, ge=0, description="Retries for aborted transactions"
    )
    echo: bool = Field(default=False, description="Log emitted SQL")


class DiscoveryConfig(BaseModel):
    """Configuration for the page discovery service."""

    base_url: str | None = Field(
        default=None, description="Discovery service base URL"
    )
    timeout: float = Field(
        default=60.0, gt=0, description="Seconds to wait for discovery to finish"
    )
    poll_interval: float = Field(
        default=2.0, gt=0, description="Seconds between discovery polls"
    )


class ToolsConfig(BaseModel):
    """Configuration for scanning tool adapters."""

    adapter: Literal["http", "subprocess"] = Field(
        default="http", description="How tools are invoked"
    )
    base_url: str | None = Field(
        default=None, description="Scanning service base URL for the http adapter"
    )
    commands: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Argv template per tool for the subprocess adapter",
    )
    timeout: float = Field(
        default=120.0, gt=0, description="Seconds allowed per tool invocation"
    )
    max_concurrency: int = Field(
        default=4, ge=1, description="Scan units run in parallel per session"
    )


class KnowledgeBaseConfig(BaseModel):
    """Configuration for the criteria knowledge base."""

    catalogue_path: Path | None = Field(
        default=None, description="Catalogue YAML; bundled WCAG catalogue if unset"
    )
    unmapped_policy: Literal["unmapped", "fallback"] = Field(
        default="unmapped", description="Handling of rules with no known criterion"
    )
    fallback_criterion: str = Field(
        default="2.1.1", description="Criterion used by the fallback policy"
    )


class NotificationsConfig(BaseModel):
    """Configuration for reviewer notifications."""

    webhook_url: str | None = Field(
        default=None, description="Webhook receiving notifications; logged if unset"
    )
    reviewer_pool: str = Field(
        default="reviewers", description="Recipient of new task notifications"
    )


class ComplianceSettings(BaseModel):
    """Top-level runner configuration."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    knowledge_base: KnowledgeBaseConfig = Field(default_factory=KnowledgeBaseConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)


def load_settings(path: Path | None = None) -> ComplianceSettings:
    """Load runner settings.

    Args:
        path: Optional YAML settings file. Defaults apply when omitted.

    Returns:
        Validated settings, with the database URL taken from
        A11YOPS_DATABASE_URL when that variable is set

    Raises:
        FileNotFoundError: If the settings file doesn't exist
        ValueError: If YAML is invalid or doesn't match schema

    """
    data: dict = {}
    if path is not None:
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        try:
            with path.open() as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

    try:
        settings = ComplianceSettings.model_validate(data)
    except Exception as e:
        raise ValueError(f"Invalid settings in {path}: {e}") from e

    if DATABASE_URL_ENV in os.environ:
        settings.database.url = os.environ[DATABASE_URL_ENV]
    return settings
