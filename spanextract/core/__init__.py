"""Configuration package."""

from spanextract.core.unified_config import (
    AlignmentConfig,
    ChunkingConfig,
    ChunkingStrategy,
    Environment,
    ExtractConfig,
    ValidationConfig,
    get_config,
    reload_config,
)

__all__ = [
    "AlignmentConfig",
    "ChunkingConfig",
    "ChunkingStrategy",
    "Environment",
    "ExtractConfig",
    "ValidationConfig",
    "get_config",
    "reload_config",
]
