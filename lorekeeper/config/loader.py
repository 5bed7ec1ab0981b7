"""
YAML configuration loading.

Three kinds of file are read:

- ``config/system.yaml``: process settings plus the admin settings layer
- ``characters/<id>.yaml``: a character's default settings layer
- ``users/<id>.yaml``: a user's default layer and per-character layers

Raw settings layers are kept as plain dicts here; they are validated
tier by tier when the cascade resolves them.
"""

import yaml
import logging
from pathlib import Path
from typing import Optional, Dict, Any, Type, TypeVar
from pydantic import BaseModel, ValidationError

from .models import SystemConfig, CharacterConfig, UserConfig

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ConfigLoadError(Exception):
    """A configuration file is missing, unreadable or inconsistent."""
    pass


class ConfigValidationError(ConfigLoadError):
    """A configuration file does not match its schema."""
    
    def __init__(self, errors: list[dict], file_path: Path):
        self.errors = errors
        self.file_path = file_path
        super().__init__(self._describe())
    
    def _describe(self) -> str:
        problems = [
            f"  - {'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in self.errors
        ]
        return f"Invalid configuration in {self.file_path}:\n" + "\n".join(problems)


class ConfigLoader:
    """Reads configuration files relative to a base directory."""
    
    def __init__(self, config_dir: Path = Path(".")):
        self.config_dir = Path(config_dir)
    
    def load_yaml(self, file_path: Path) -> Dict[str, Any]:
        """
        Read a YAML file whose top level is a mapping.
        
        An empty file reads as an empty mapping.
        """
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigLoadError(f"Configuration file not found: {file_path}")
        except yaml.YAMLError as e:
            raise ConfigLoadError(f"Invalid YAML in {file_path}: {e}")
        except OSError as e:
            raise ConfigLoadError(f"Failed to read {file_path}: {e}")
        
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigLoadError(
                f"Expected a mapping at the top of {file_path}, got {type(data).__name__}"
            )
        return data
    
    @staticmethod
    def _validate(model: Type[ModelT], data: Dict[str, Any], file_path: Path) -> ModelT:
        try:
            return model(**data)
        except ValidationError as e:
            raise ConfigValidationError(e.errors(), file_path)
    
    def load_system_config(self, file_path: Optional[Path] = None) -> SystemConfig:
        """
        Load ``config/system.yaml``, or defaults when the file does not exist.
        
        Relative ``paths`` entries are anchored at the config directory so
        the process can be started from anywhere.
        """
        file_path = file_path or self.config_dir / "config" / "system.yaml"
        
        if file_path.exists():
            config = self._validate(SystemConfig, self.load_yaml(file_path), file_path)
            logger.info(f"Loaded system config from {file_path}")
        else:
            logger.info(f"No system config at {file_path}, using defaults")
            config = SystemConfig()
        
        paths = config.paths
        paths.characters = self._anchor(paths.characters)
        paths.users = self._anchor(paths.users)
        paths.data = self._anchor(paths.data)
        return config
    
    def _anchor(self, path: Path) -> Path:
        return path if path.is_absolute() else self.config_dir / path
    
    def _load_entity(
        self,
        model: Type[ModelT],
        kind: str,
        directory: Path,
        entity_id: str,
        defaults: Optional[Dict[str, Any]] = None
    ) -> ModelT:
        """
        Load ``<directory>/<entity_id>.yaml``.
        
        The file's ``id`` defaults to the file name and must match it when given.
        """
        file_path = directory / f"{entity_id}.yaml"
        data = self.load_yaml(file_path)
        for key, value in (defaults or {}).items():
            data.setdefault(key, value)
        
        declared = data.setdefault('id', entity_id)
        if declared != entity_id:
            raise ConfigLoadError(
                f"{kind.capitalize()} file {file_path} declares id '{declared}', expected '{entity_id}'"
            )
        
        entity = self._validate(model, data, file_path)
        logger.debug(f"Loaded {kind} '{entity_id}' from {file_path}")
        return entity
    
    def load_character(self, character_id: str, characters_dir: Optional[Path] = None) -> CharacterConfig:
        """Load a character file; ``name`` defaults to the id."""
        return self._load_entity(
            CharacterConfig,
            "character",
            characters_dir or self.config_dir / "characters",
            character_id,
            defaults={'name': character_id}
        )
    
    def load_user(self, user_id: str, users_dir: Optional[Path] = None) -> UserConfig:
        """Load a user's settings file."""
        return self._load_entity(UserConfig, "user", users_dir or self.config_dir / "users", user_id)
