"""
Configuration for datarepo.

Uses pydantic-settings for environment variable loading; every setting can
be overridden with a ``DATAREPO_`` prefixed variable (``DATAREPO_DATABASE``,
``DATAREPO_MAX_PAGE_SIZE`` ...).
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

from .query.example import ExampleMatcher, StringMatcher


class RepositorySettings(BaseSettings):
    """Repository configuration loaded from environment."""

    # Storage
    database: str = Field(default="./data/datarepo.db", description="SQLite database file")
    wal_mode: bool = Field(default=True, description="Enable SQLite WAL mode")
    busy_timeout_ms: int = Field(default=5000, ge=0, description="SQLite busy timeout")
    cache_size_pages: int = Field(default=-64000, description="SQLite cache size (negative = KB)")

    # Locking
    lock_timeout_ms: int = Field(default=3000, ge=0, description="Pessimistic lock wait limit")

    # Pagination defaults
    default_page_size: int = Field(default=20, gt=0, description="Default rows per page")
    max_page_size: int = Field(default=1000, gt=0, description="Maximum rows per page")

    # Auditing
    audit_default_actor: str = Field(
        default="unknown", min_length=1, description="Actor recorded when none is resolved"
    )

    # Query by example
    example_string_matcher: StringMatcher = Field(
        default=StringMatcher.EXACT, description="String matching for probes"
    )
    example_ignore_case: bool = Field(default=False, description="Case-insensitive probes")

    # Observability
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: Literal["json", "text"] = Field(default="text", description="Log output format")

    model_config = {"env_prefix": "DATAREPO_"}

    def example_matcher(self) -> ExampleMatcher:
        """Matcher with the configured defaults and no ignored paths."""
        return ExampleMatcher(
            string_matcher=self.example_string_matcher,
            ignore_case=self.example_ignore_case,
        )


def setup_logging(settings: RepositorySettings) -> None:
    """Configure logging based on configuration.

    Args:
        settings: Repository settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        import json_log_formatter

        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]
