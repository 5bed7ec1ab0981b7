"""Configuration loading and validation."""

from .models import (
    SystemConfig,
    CharacterConfig,
    UserConfig,
    ConfigOverrides,
    DatabaseConfig,
    VectorStoreConfig,
    EmbeddingConfig,
    ContextConfig,
    WritebackConfig,
    ResolverCacheConfig,
    PathsConfig,
)
from .loader import ConfigLoader, ConfigLoadError, ConfigValidationError

__all__ = [
    "SystemConfig",
    "CharacterConfig",
    "UserConfig",
    "ConfigOverrides",
    "DatabaseConfig",
    "VectorStoreConfig",
    "EmbeddingConfig",
    "ContextConfig",
    "WritebackConfig",
    "ResolverCacheConfig",
    "PathsConfig",
    "ConfigLoader",
    "ConfigLoadError",
    "ConfigValidationError",
]
