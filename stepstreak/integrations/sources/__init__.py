"""Observation source provider package."""

from stepstreak.integrations.sources.base import SourceConfig, SourceProvider
from stepstreak.integrations.sources.http import HttpSourceProvider
from stepstreak.integrations.sources.router import SourceRouter

__all__ = [
    "SourceConfig",
    "SourceProvider",
    "HttpSourceProvider",
    "SourceRouter",
]
