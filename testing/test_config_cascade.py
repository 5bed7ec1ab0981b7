"""
Tests for settings cascade resolution.

Tests cover:
- Field-by-field precedence with source attribution
- Absent vs explicit null at every tier
- Totality over every combination of tier presence
- Invalid layers and failing stores degrading to "tier absent"
- Anonymous users and missing characters
- Cache hits, TTL expiry and invalidation
- Hardcoded tier validation at construction
"""

import itertools

import pytest

from lorekeeper.config import ConfigLoader
from lorekeeper.config.models import SystemConfig, PathsConfig
from lorekeeper.services.config_cascade import (
    CLEARED,
    HARDCODED_DEFAULTS,
    SETTINGS_FIELDS,
    TIER_ORDER,
    UNSET,
    ConfigCascadeResolver,
    ConfigTier,
    ConfigurationDefect,
    OverrideLayer,
    StaticPrecedenceStore,
    Value,
    YamlPrecedenceStore,
    merge_layers,
)


def layers_from(raw_by_tier):
    return {tier: OverrideLayer.from_mapping(tier, raw) for tier, raw in raw_by_tier.items()}


class TestOverrideLayer:
    """Parsing raw layers into tagged variants."""
    
    def test_absent_null_and_value_are_distinct(self):
        layer = OverrideLayer.from_mapping(ConfigTier.ADMIN, {"maxAge": None, "maxMessages": 30})
        
        assert layer.get("max_age") is CLEARED
        assert layer.get("max_messages") == Value(30)
        assert layer.get("max_images") is UNSET
    
    def test_snake_case_keys_accepted(self):
        layer = OverrideLayer.from_mapping(ConfigTier.ADMIN, {"memory_limit": 5})
        assert layer.get("memory_limit") == Value(5)
    
    def test_integral_threshold_accepted(self):
        layer = OverrideLayer.from_mapping(ConfigTier.ADMIN, {"memoryScoreThreshold": 1})
        assert layer.get("memory_score_threshold") == Value(1.0)
    
    @pytest.mark.parametrize("raw", [
        {"unknownKey": 1},
        {"maxMessages": "30"},
        {"maxMessages": -1},
        {"memoryScoreThreshold": 1.5},
        {"focusModeEnabled": "yes"},
        {"maxMessages": True},
    ])
    def test_invalid_layers_rejected(self, raw):
        from pydantic import ValidationError
        with pytest.raises(ValidationError):
            OverrideLayer.from_mapping(ConfigTier.ADMIN, raw)


class TestMergeLayers:
    """Pure merge over parsed layers."""
    
    def test_documented_scenario(self):
        hardcoded = dict(HARDCODED_DEFAULTS, max_messages=50, max_age=None, max_images=10)
        layers = layers_from({
            ConfigTier.ADMIN: {},
            ConfigTier.CHARACTER_DEFAULT: {"maxMessages": 30},
            ConfigTier.USER_DEFAULT: {},
            ConfigTier.USER_PER_CHARACTER: {"maxAge": 3600},
        })
        
        resolved = merge_layers(layers, hardcoded)
        
        assert resolved.max_messages == 30
        assert resolved.sources["max_messages"] == ConfigTier.CHARACTER_DEFAULT
        assert resolved.max_age == 3600
        assert resolved.sources["max_age"] == ConfigTier.USER_PER_CHARACTER
        assert resolved.max_images == 10
        assert resolved.sources["max_images"] == ConfigTier.HARDCODED
    
    def test_explicit_null_wins_over_lower_and_survives_absent_higher(self):
        layers = layers_from({
            ConfigTier.ADMIN: {"maxAge": 600, "memoryLimit": 5},
            ConfigTier.CHARACTER_DEFAULT: {"maxAge": None, "memoryLimit": None},
            ConfigTier.USER_DEFAULT: {},
            ConfigTier.USER_PER_CHARACTER: {"maxMessages": 12},
        })
        
        resolved = merge_layers(layers)
        
        assert resolved.max_age is None
        assert resolved.sources["max_age"] == ConfigTier.CHARACTER_DEFAULT
        assert resolved.memory_limit == 0
        assert resolved.sources["memory_limit"] == ConfigTier.CHARACTER_DEFAULT
    
    def test_higher_tier_value_beats_lower_null(self):
        layers = layers_from({
            ConfigTier.ADMIN: {"maxImages": None},
            ConfigTier.USER_DEFAULT: {"maxImages": 3},
        })
        
        resolved = merge_layers(layers)
        
        assert resolved.max_images == 3
        assert resolved.sources["max_images"] == ConfigTier.USER_DEFAULT
    
    def test_cleared_values(self):
        layers = layers_from({ConfigTier.ADMIN: {alias: None for alias in SETTINGS_FIELDS.values()}})
        
        resolved = merge_layers(layers)
        
        assert resolved.max_age is None
        assert resolved.max_images == 0
        assert resolved.memory_limit == 0
        assert resolved.focus_mode_enabled is False
        assert resolved.cross_channel_history_enabled is False
        assert resolved.share_ltm_across_personalities is False
        # Cannot be unbounded: fall back to the hardcoded value
        assert resolved.max_messages == HARDCODED_DEFAULTS["max_messages"]
        assert resolved.memory_score_threshold == HARDCODED_DEFAULTS["memory_score_threshold"]
        assert set(resolved.sources.values()) == {ConfigTier.ADMIN}
    
    def test_total_over_every_tier_combination(self):
        samples = [
            {"maxMessages": 7},
            {"maxAge": None},
            {"memoryLimit": 3, "focusModeEnabled": True},
            {"memoryScoreThreshold": 0.9},
        ]
        optional_tiers = TIER_ORDER[1:]
        
        for presence in itertools.product([False, True], repeat=len(optional_tiers)):
            raw = {
                tier: samples[i]
                for i, (tier, present) in enumerate(zip(optional_tiers, presence))
                if present
            }
            resolved = merge_layers(layers_from(raw))
            
            for name in SETTINGS_FIELDS:
                assert name in resolved.sources
                if name != "max_age":
                    assert getattr(resolved, name) is not None
    
    def test_to_dict_uses_camel_case(self):
        data = merge_layers({}).to_dict()
        
        assert data["maxMessages"] == 50
        assert data["sources"]["maxMessages"] == "hardcoded"


class CountingStore(StaticPrecedenceStore):
    def __init__(self):
        super().__init__()
        self.calls = []
    
    def load_layer(self, tier, user_id, character_id):
        self.calls.append(tier)
        return super().load_layer(tier, user_id, character_id)


class FailingStore(StaticPrecedenceStore):
    def __init__(self, failing_tier):
        super().__init__()
        self.failing_tier = failing_tier
    
    def load_layer(self, tier, user_id, character_id):
        if tier == self.failing_tier:
            raise ConnectionError("settings database unavailable")
        return super().load_layer(tier, user_id, character_id)


class TestConfigCascadeResolver:
    """Resolver behaviour around the store and the cache."""
    
    def test_resolves_from_store(self):
        store = StaticPrecedenceStore(admin={"memoryLimit": 10})
        store.set_character_default("nova", {"maxMessages": 30})
        store.set_user_default("u1", {"focusModeEnabled": True})
        store.set_user_character("u1", "nova", {"maxAge": 3600})
        
        resolved = ConfigCascadeResolver(store).resolve("u1", "nova")
        
        assert resolved.memory_limit == 10
        assert resolved.max_messages == 30
        assert resolved.focus_mode_enabled is True
        assert resolved.max_age == 3600
        assert resolved.sources["max_age"] == ConfigTier.USER_PER_CHARACTER
    
    def test_invalid_layer_is_ignored_whole(self, caplog):
        store = StaticPrecedenceStore(admin={"memoryLimit": 10})
        store.set_user_default("u1", {"maxMessages": 5, "bogus": True})
        
        resolved = ConfigCascadeResolver(store).resolve("u1", "nova")
        
        assert resolved.max_messages == HARDCODED_DEFAULTS["max_messages"]
        assert resolved.memory_limit == 10
        assert "Ignoring invalid user-default settings layer" in caplog.text
    
    def test_store_failure_degrades_to_lower_tiers(self):
        store = FailingStore(ConfigTier.USER_PER_CHARACTER)
        store.set_character_default("nova", {"maxMessages": 30})
        
        resolved = ConfigCascadeResolver(store).resolve("u1", "nova")
        
        assert resolved.max_messages == 30
        assert resolved.sources["max_messages"] == ConfigTier.CHARACTER_DEFAULT
    
    def test_anonymous_user_skips_user_tiers(self):
        store = CountingStore()
        
        ConfigCascadeResolver(store, cache_enabled=False).resolve(None, "nova")
        
        assert ConfigTier.USER_DEFAULT not in store.calls
        assert ConfigTier.USER_PER_CHARACTER not in store.calls
        assert ConfigTier.CHARACTER_DEFAULT in store.calls
    
    def test_missing_character_skips_character_tiers(self):
        store = CountingStore()
        
        ConfigCascadeResolver(store, cache_enabled=False).resolve("u1", None)
        
        assert store.calls == [ConfigTier.ADMIN, ConfigTier.USER_DEFAULT]
    
    def test_cache_hit_returns_same_object(self):
        store = CountingStore()
        resolver = ConfigCascadeResolver(store)
        
        first = resolver.resolve("u1", "nova")
        calls = len(store.calls)
        second = resolver.resolve("u1", "nova")
        
        assert second is first
        assert len(store.calls) == calls
    
    def test_cache_expires_after_ttl(self):
        now = [100.0]
        store = StaticPrecedenceStore()
        resolver = ConfigCascadeResolver(store, cache_ttl_seconds=10, clock=lambda: now[0])
        
        first = resolver.resolve("u1", "nova")
        store.set_user_default("u1", {"maxMessages": 5})
        now[0] += 5
        assert resolver.resolve("u1", "nova") is first
        
        now[0] += 6
        assert resolver.resolve("u1", "nova").max_messages == 5
    
    def test_expired_entries_are_evicted(self):
        now = [100.0]
        resolver = ConfigCascadeResolver(StaticPrecedenceStore(), cache_ttl_seconds=10, clock=lambda: now[0])
        
        for i in range(50):
            resolver.resolve(f"user-{i}", "nova")
        assert len(resolver._cache) == 50
        
        now[0] += 11
        resolver.resolve("latecomer", "nova")
        
        assert list(resolver._cache) == [("latecomer", "nova")]
    
    def test_invalidation(self):
        store = StaticPrecedenceStore()
        resolver = ConfigCascadeResolver(store)
        resolver.resolve("u1", "nova")
        resolver.resolve("u2", "nova")
        
        store.set_user_default("u1", {"maxMessages": 5})
        store.set_character_default("nova", {"maxImages": 2})
        resolver.invalidate_user("u1")
        
        assert resolver.resolve("u1", "nova").max_messages == 5
        assert resolver.resolve("u2", "nova").max_images == 10
        
        resolver.invalidate_character("nova")
        assert resolver.resolve("u2", "nova").max_images == 2
        
        store.set_admin({"memoryLimit": 1})
        resolver.clear_cache()
        assert resolver.resolve("u2", "nova").memory_limit == 1
    
    def test_missing_hardcoded_field_is_a_defect(self):
        incomplete = dict(HARDCODED_DEFAULTS)
        del incomplete["memory_limit"]
        
        with pytest.raises(ConfigurationDefect, match="memory_limit"):
            ConfigCascadeResolver(StaticPrecedenceStore(), hardcoded=incomplete)
    
    def test_null_hardcoded_value_is_a_defect(self):
        with pytest.raises(ConfigurationDefect, match="max_messages"):
            ConfigCascadeResolver(
                StaticPrecedenceStore(),
                hardcoded=dict(HARDCODED_DEFAULTS, max_messages=None)
            )


class TestYamlPrecedenceStore:
    """Layers read from system, character and user YAML files."""
    
    def test_layers_from_files(self, tmp_path):
        characters = tmp_path / "characters"
        users = tmp_path / "users"
        characters.mkdir()
        users.mkdir()
        (characters / "nova.yaml").write_text(
            "id: nova\nname: Nova\nconfig_defaults:\n  maxMessages: 30\n", encoding="utf-8"
        )
        (users / "u1.yaml").write_text(
            "config_defaults:\n  memoryLimit: 4\n"
            "character_overrides:\n  nova:\n    maxAge: 3600\n",
            encoding="utf-8"
        )
        config = SystemConfig(
            paths=PathsConfig(characters=characters, users=users, data=tmp_path / "data"),
            config_defaults={"maxImages": 2}
        )
        
        resolved = ConfigCascadeResolver(YamlPrecedenceStore(config, ConfigLoader(tmp_path))).resolve("u1", "nova")
        
        assert resolved.max_images == 2
        assert resolved.sources["max_images"] == ConfigTier.ADMIN
        assert resolved.max_messages == 30
        assert resolved.memory_limit == 4
        assert resolved.max_age == 3600
    
    def test_missing_files_mean_absent_tiers(self, tmp_path):
        config = SystemConfig(paths=PathsConfig(characters=tmp_path, users=tmp_path, data=tmp_path))
        
        resolved = ConfigCascadeResolver(YamlPrecedenceStore(config)).resolve("ghost", "nobody")
        
        assert set(resolved.sources.values()) == {ConfigTier.HARDCODED}
