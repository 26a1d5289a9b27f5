"""
CLI tools for datarepo.

This module provides command-line tools for:
- schema: Inspect, validate and create the registered schema
"""

from .schema_cli import SchemaCLI

__all__ = ["SchemaCLI"]
