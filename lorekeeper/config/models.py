"""Pydantic models for configuration validation."""

from pathlib import Path
from typing import Optional, Literal
from pydantic import BaseModel, Field, field_validator, ConfigDict


class DatabaseConfig(BaseModel):
    """Relational store configuration."""
    
    url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL. Defaults to a SQLite file under paths.data"
    )
    busy_timeout_seconds: int = Field(default=30, gt=0)
    echo: bool = False


class VectorStoreConfig(BaseModel):
    """Vector index configuration."""
    
    provider: Literal["chroma"] = "chroma"
    directory_name: str = "vector_store"
    candidate_multiplier: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Vector candidates fetched per requested memory (filtering headroom)"
    )


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""
    
    provider: Literal["sentence-transformers", "ollama"] = "sentence-transformers"
    model: str = "all-MiniLM-L6-v2"
    base_url: str = "http://localhost:11434"
    timeout_seconds: float = Field(default=60.0, gt=0)
    
    @field_validator('base_url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Ensure URL is properly formatted."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('base_url must start with http:// or https://')
        return v.rstrip('/')


class ContextConfig(BaseModel):
    """Short-term context and retrieval tuning."""
    
    channel_budget_ratio: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Share of the memory limit reserved for channel-scoped memories (0 disables)"
    )
    retention_days: Optional[int] = Field(
        default=None,
        gt=0,
        description="Physically purge turns older than this many days (None keeps everything)"
    )


class WritebackConfig(BaseModel):
    """Long-term memory writeback pipeline configuration."""
    
    workers: int = Field(default=2, gt=0, le=32)
    max_attempts: int = Field(default=5, gt=0, le=50)
    backoff_base_seconds: float = Field(default=30.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    backoff_max_seconds: float = Field(default=3600.0, ge=0)
    claim_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="A claim older than this is considered abandoned and may be re-claimed"
    )
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    batch_size: int = Field(default=10, gt=0, le=500)
    max_chunk_chars: int = Field(
        default=2000,
        ge=100,
        description="Memory text longer than this is split into a chunk group"
    )


class ResolverCacheConfig(BaseModel):
    """Resolved-settings cache configuration."""
    
    enabled: bool = True
    ttl_seconds: float = Field(default=10.0, gt=0)


class PathsConfig(BaseModel):
    """File path configuration."""
    
    characters: Path = Path("characters")
    users: Path = Path("users")
    data: Path = Path("data")
    
    @field_validator('characters', 'users', 'data')
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure paths are cross-platform."""
        return Path(v)


class ConfigOverrides(BaseModel):
    """
    One tier's settings overrides.
    
    Every field is optional. A key that is absent lets the cascade continue;
    a key present with null is an explicit clear that wins at its tier. Use
    ``model_fields_set`` to tell the two apart.
    """
    
    model_config = ConfigDict(extra='forbid', populate_by_name=True, strict=True)
    
    max_messages: Optional[int] = Field(default=None, alias="maxMessages", ge=0, le=1000)
    max_age: Optional[int] = Field(default=None, alias="maxAge", ge=0)
    max_images: Optional[int] = Field(default=None, alias="maxImages", ge=0, le=100)
    memory_score_threshold: Optional[float] = Field(
        default=None, alias="memoryScoreThreshold", ge=0.0, le=1.0
    )
    memory_limit: Optional[int] = Field(default=None, alias="memoryLimit", ge=0, le=200)
    focus_mode_enabled: Optional[bool] = Field(default=None, alias="focusModeEnabled")
    cross_channel_history_enabled: Optional[bool] = Field(
        default=None, alias="crossChannelHistoryEnabled"
    )
    share_ltm_across_personalities: Optional[bool] = Field(
        default=None, alias="shareLtmAcrossPersonalities"
    )
    
    @field_validator('memory_score_threshold', mode='before')
    @classmethod
    def accept_integral_threshold(cls, v):
        """Allow 0 and 1 written as integers in YAML/JSON."""
        if isinstance(v, int) and not isinstance(v, bool):
            return float(v)
        return v


class SystemConfig(BaseModel):
    """Top-level system configuration."""
    
    model_config = ConfigDict(extra='ignore')
    
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    writeback: WritebackConfig = Field(default_factory=WritebackConfig)
    resolver_cache: ResolverCacheConfig = Field(default_factory=ResolverCacheConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    
    # Admin tier of the settings cascade (raw, validated at resolution time)
    config_defaults: Optional[dict] = None
    
    debug: bool = False
    
    @property
    def database_url(self) -> str:
        """Configured URL or the default SQLite file in the data directory."""
        if self.database.url:
            return self.database.url
        return f"sqlite:///{self.paths.data / 'lorekeeper.db'}"
    
    @property
    def vector_store_path(self) -> Path:
        return self.paths.data / self.vector_store.directory_name


class CharacterConfig(BaseModel):
    """Character-level configuration relevant to memory and context."""
    
    model_config = ConfigDict(extra='ignore')
    
    id: str = Field(min_length=1, max_length=50, pattern=r'^[A-Za-z0-9_-]+$')
    name: str = Field(min_length=1, max_length=100)
    
    # Character-default tier of the settings cascade
    config_defaults: Optional[dict] = None


class UserConfig(BaseModel):
    """User-level settings: global defaults plus per-character overrides."""
    
    model_config = ConfigDict(extra='ignore')
    
    id: str = Field(min_length=1, max_length=100)
    
    # User-default tier of the settings cascade
    config_defaults: Optional[dict] = None
    # User-per-character tier, keyed by character id
    character_overrides: dict[str, dict] = Field(default_factory=dict)
