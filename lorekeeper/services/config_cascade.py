"""
Settings cascade resolution.

Five override tiers are merged field by field, lowest to highest
precedence::

    hardcoded -> admin -> character-default -> user-default -> user-per-character

The last tier that *addresses* a field wins and is recorded as that
field's source. A tier addresses a field when the key is present in its
layer, whether the value is concrete or an explicit null. Absent keys let
the cascade continue; an explicit null is a terminal "cleared" value.

Each field in a parsed layer is one of three variants:

- ``UNSET``: the tier said nothing about the field
- ``CLEARED``: the tier explicitly set the field to null
- ``Value(v)``: the tier set a concrete value
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple, Union

from pydantic import ValidationError

from lorekeeper.config.loader import ConfigLoader
from lorekeeper.config.models import ConfigOverrides, SystemConfig

logger = logging.getLogger(__name__)


class ConfigTier(str, Enum):
    """Precedence tiers, declared lowest first."""
    HARDCODED = "hardcoded"
    ADMIN = "admin"
    CHARACTER_DEFAULT = "character-default"
    USER_DEFAULT = "user-default"
    USER_PER_CHARACTER = "user-per-character"


TIER_ORDER: Tuple[ConfigTier, ...] = tuple(ConfigTier)

_USER_TIERS = (ConfigTier.USER_DEFAULT, ConfigTier.USER_PER_CHARACTER)
_CHARACTER_TIERS = (ConfigTier.CHARACTER_DEFAULT, ConfigTier.USER_PER_CHARACTER)


class Unset:
    """The tier does not address the field."""
    
    def __repr__(self):
        return "UNSET"


class Cleared:
    """The tier explicitly set the field to null."""
    
    def __repr__(self):
        return "CLEARED"


@dataclass(frozen=True)
class Value:
    """The tier set a concrete value."""
    value: Any


UNSET = Unset()
CLEARED = Cleared()

FieldOverride = Union[Unset, Cleared, Value]

# Field name -> camelCase key used in stored layers and in to_dict()
SETTINGS_FIELDS: Dict[str, str] = {
    "max_messages": "maxMessages",
    "max_age": "maxAge",
    "max_images": "maxImages",
    "memory_score_threshold": "memoryScoreThreshold",
    "memory_limit": "memoryLimit",
    "focus_mode_enabled": "focusModeEnabled",
    "cross_channel_history_enabled": "crossChannelHistoryEnabled",
    "share_ltm_across_personalities": "shareLtmAcrossPersonalities",
}

# Fields that may legitimately hold None after resolution
_NULLABLE_FIELDS = {"max_age"}

HARDCODED_DEFAULTS: Dict[str, Any] = {
    "max_messages": 50,
    "max_age": None,
    "max_images": 10,
    "memory_score_threshold": 0.5,
    "memory_limit": 20,
    "focus_mode_enabled": False,
    "cross_channel_history_enabled": False,
    "share_ltm_across_personalities": False,
}

# What an explicit null means per field. Fields missing here cannot be
# unbounded and fall back to the hardcoded value.
CLEARED_VALUES: Dict[str, Any] = {
    "max_age": None,
    "max_images": 0,
    "memory_limit": 0,
    "focus_mode_enabled": False,
    "cross_channel_history_enabled": False,
    "share_ltm_across_personalities": False,
}


class ConfigurationDefect(Exception):
    """The hardcoded tier does not define every field."""
    pass


@dataclass(frozen=True)
class OverrideLayer:
    """One tier's parsed overrides."""
    tier: ConfigTier
    fields: Mapping[str, FieldOverride] = field(default_factory=dict)
    
    def get(self, name: str) -> FieldOverride:
        return self.fields.get(name, UNSET)
    
    @classmethod
    def from_mapping(cls, tier: ConfigTier, raw: Optional[Mapping[str, Any]]) -> "OverrideLayer":
        """
        Validate a raw layer and convert it to tagged variants.
        
        Raises:
            pydantic.ValidationError: unknown key, wrong type or out of range
        """
        if raw is None:
            return cls(tier=tier)
        overrides = ConfigOverrides.model_validate(dict(raw) if isinstance(raw, Mapping) else raw)
        fields = {}
        for name in overrides.model_fields_set:
            value = getattr(overrides, name)
            fields[name] = CLEARED if value is None else Value(value)
        return cls(tier=tier, fields=fields)


@dataclass(frozen=True)
class ResolvedSettings:
    """Fully resolved settings with the tier each value came from."""
    max_messages: int
    max_age: Optional[int]
    max_images: int
    memory_score_threshold: float
    memory_limit: int
    focus_mode_enabled: bool
    cross_channel_history_enabled: bool
    share_ltm_across_personalities: bool
    sources: Mapping[str, ConfigTier]
    
    def to_dict(self) -> Dict[str, Any]:
        """camelCase view including a ``sources`` map of tier names."""
        data = {alias: getattr(self, name) for name, alias in SETTINGS_FIELDS.items()}
        data["sources"] = {SETTINGS_FIELDS[name]: tier.value for name, tier in self.sources.items()}
        return data


def validate_hardcoded(defaults: Mapping[str, Any]) -> None:
    """
    Raise ConfigurationDefect unless every field has a concrete default.
    """
    missing = [name for name in SETTINGS_FIELDS if name not in defaults]
    if missing:
        raise ConfigurationDefect(f"Hardcoded settings tier is missing fields: {', '.join(missing)}")
    
    nulls = [
        name for name in SETTINGS_FIELDS
        if defaults[name] is None and name not in _NULLABLE_FIELDS
    ]
    if nulls:
        raise ConfigurationDefect(f"Hardcoded settings tier has null values for: {', '.join(nulls)}")
    
    try:
        ConfigOverrides.model_validate(
            {name: value for name, value in defaults.items() if name in SETTINGS_FIELDS}
        )
    except ValidationError as e:
        raise ConfigurationDefect(f"Hardcoded settings tier is invalid: {e}") from e


def merge_layers(
    layers: Mapping[ConfigTier, OverrideLayer],
    hardcoded: Mapping[str, Any] = HARDCODED_DEFAULTS
) -> ResolvedSettings:
    """
    Merge parsed layers over the hardcoded floor.
    
    Pure function; tiers missing from ``layers`` are treated as absent.
    """
    values: Dict[str, Any] = {}
    sources: Dict[str, ConfigTier] = {}
    
    for name in SETTINGS_FIELDS:
        value = hardcoded[name]
        source = ConfigTier.HARDCODED
        
        for tier in TIER_ORDER[1:]:
            layer = layers.get(tier)
            if layer is None:
                continue
            override = layer.get(name)
            if isinstance(override, Unset):
                continue
            if isinstance(override, Cleared):
                value = CLEARED_VALUES.get(name, hardcoded[name])
            else:
                value = override.value
            source = tier
        
        values[name] = value
        sources[name] = source
    
    return ResolvedSettings(sources=sources, **values)


class PrecedenceStore(Protocol):
    """Read access to raw override layers."""
    
    def load_layer(
        self,
        tier: ConfigTier,
        user_id: Optional[str],
        character_id: Optional[str]
    ) -> Optional[Mapping[str, Any]]:
        """Return the raw layer for a tier, or None if the tier has none."""
        ...


class StaticPrecedenceStore:
    """In-memory precedence store."""
    
    def __init__(self, admin: Optional[Mapping[str, Any]] = None):
        self.admin = admin
        self.character_defaults: Dict[str, Mapping[str, Any]] = {}
        self.user_defaults: Dict[str, Mapping[str, Any]] = {}
        self.user_character: Dict[Tuple[str, str], Mapping[str, Any]] = {}
    
    def set_admin(self, layer: Optional[Mapping[str, Any]]) -> None:
        self.admin = layer
    
    def set_character_default(self, character_id: str, layer: Mapping[str, Any]) -> None:
        self.character_defaults[character_id] = layer
    
    def set_user_default(self, user_id: str, layer: Mapping[str, Any]) -> None:
        self.user_defaults[user_id] = layer
    
    def set_user_character(self, user_id: str, character_id: str, layer: Mapping[str, Any]) -> None:
        self.user_character[(user_id, character_id)] = layer
    
    def load_layer(self, tier, user_id, character_id):
        if tier == ConfigTier.ADMIN:
            return self.admin
        if tier == ConfigTier.CHARACTER_DEFAULT:
            return self.character_defaults.get(character_id)
        if tier == ConfigTier.USER_DEFAULT:
            return self.user_defaults.get(user_id)
        if tier == ConfigTier.USER_PER_CHARACTER:
            return self.user_character.get((user_id, character_id))
        return None


class YamlPrecedenceStore:
    """
    Precedence store backed by the YAML configuration files.
    
    - admin: ``config_defaults`` in system.yaml
    - character-default: ``config_defaults`` in characters/<id>.yaml
    - user-default: ``config_defaults`` in users/<id>.yaml
    - user-per-character: ``character_overrides[<character>]`` in users/<id>.yaml
    
    Files are read on every call; the resolver's cache bounds the cost.
    """
    
    def __init__(self, system_config: SystemConfig, loader: Optional[ConfigLoader] = None):
        self.system_config = system_config
        self.loader = loader or ConfigLoader()
    
    def _characters_dir(self) -> Path:
        return Path(self.system_config.paths.characters)
    
    def _users_dir(self) -> Path:
        return Path(self.system_config.paths.users)
    
    def load_layer(self, tier, user_id, character_id):
        if tier == ConfigTier.ADMIN:
            return self.system_config.config_defaults
        
        if tier == ConfigTier.CHARACTER_DEFAULT:
            if not (self._characters_dir() / f"{character_id}.yaml").exists():
                return None
            return self.loader.load_character(character_id, self._characters_dir()).config_defaults
        
        if not (self._users_dir() / f"{user_id}.yaml").exists():
            return None
        user = self.loader.load_user(user_id, self._users_dir())
        if tier == ConfigTier.USER_DEFAULT:
            return user.config_defaults
        if tier == ConfigTier.USER_PER_CHARACTER:
            return user.character_overrides.get(character_id)
        return None


class ConfigCascadeResolver:
    """
    Resolve effective settings for a (user, character) pair.
    
    Store failures and invalid layers degrade to "tier absent" with a
    warning; the hardcoded floor makes every resolution total. Results are
    cached per pair for a short TTL, and cache hits return the same object.
    """
    
    def __init__(
        self,
        store: PrecedenceStore,
        hardcoded: Optional[Mapping[str, Any]] = None,
        cache_enabled: bool = True,
        cache_ttl_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.hardcoded = dict(HARDCODED_DEFAULTS if hardcoded is None else hardcoded)
        validate_hardcoded(self.hardcoded)
        
        self.cache_enabled = cache_enabled
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: Dict[Tuple[Optional[str], Optional[str]], Tuple[float, ResolvedSettings]] = {}
        self._lock = threading.Lock()
    
    def resolve(self, user_id: Optional[str] = None, character_id: Optional[str] = None) -> ResolvedSettings:
        """
        Resolve settings for a user and character.
        
        Args:
            user_id: None for anonymous callers (user tiers are skipped)
            character_id: None when no character applies (character tiers are skipped)
        
        Returns:
            Fully populated ResolvedSettings
        """
        key = (user_id, character_id)
        if self.cache_enabled:
            with self._lock:
                cached = self._cache.get(key)
                if cached is not None and self._clock() < cached[0]:
                    return cached[1]
        
        layers = {}
        for tier in TIER_ORDER[1:]:
            layer = self._load_layer(tier, user_id, character_id)
            if layer is not None:
                layers[tier] = layer
        
        resolved = merge_layers(layers, self.hardcoded)
        
        if self.cache_enabled:
            with self._lock:
                now = self._clock()
                for stale in [k for k, (expires, _) in self._cache.items() if expires <= now]:
                    del self._cache[stale]
                self._cache[key] = (now + self.cache_ttl_seconds, resolved)
        
        logger.debug(f"Resolved settings for user={user_id} character={character_id}: {resolved.to_dict()}")
        return resolved
    
    def _load_layer(
        self,
        tier: ConfigTier,
        user_id: Optional[str],
        character_id: Optional[str]
    ) -> Optional[OverrideLayer]:
        if user_id is None and tier in _USER_TIERS:
            return None
        if character_id is None and tier in _CHARACTER_TIERS:
            return None
        
        try:
            raw = self.store.load_layer(tier, user_id, character_id)
        except Exception as e:
            logger.warning(
                f"Failed to load {tier.value} settings layer "
                f"(user={user_id}, character={character_id}): {e}",
                exc_info=True
            )
            return None
        
        if raw is None:
            return None
        
        try:
            return OverrideLayer.from_mapping(tier, raw)
        except ValidationError as e:
            logger.warning(
                f"Ignoring invalid {tier.value} settings layer "
                f"(user={user_id}, character={character_id}): {e.error_count()} error(s): {e}"
            )
            return None
    
    def invalidate_user(self, user_id: str) -> None:
        """Drop cached results for a user."""
        with self._lock:
            for key in [k for k in self._cache if k[0] == user_id]:
                del self._cache[key]
    
    def invalidate_character(self, character_id: str) -> None:
        """Drop cached results for a character."""
        with self._lock:
            for key in [k for k in self._cache if k[1] == character_id]:
                del self._cache[key]
    
    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
