"""Routing configuration: exit declarations, validation and exit resolution."""

from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError, ResolutionError
from .shared.logging import get_logger

logger = get_logger(__name__)


class ExitConfig(BaseModel):
    """Declarative descriptor of one network exit."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field("", description="Provider kind that serves this exit (e.g. gluetun, direct)")
    country: str = Field("", description="Country the exit egresses from")


class Config(BaseModel):
    """Whole routing policy: the default exit and every declared exit."""

    model_config = ConfigDict(frozen=True)

    default_exit: str = Field("", description="Exit used when a request names none")
    exits: Mapping[str, ExitConfig] = Field(
        default_factory=dict,
        validate_default=True,
        description="Exit name to exit config"
    )

    @field_validator('exits')
    @classmethod
    def freeze_exits(cls, v):
        """Expose exits as a read-only mapping."""
        return MappingProxyType(dict(v))

    def validate(self) -> None:
        """Check that the policy is complete and self-consistent.

        Raises:
            ConfigError: On the first problem found
        """
        if not self.default_exit:
            raise ConfigError("default_exit is required")

        if not self.exits:
            raise ConfigError("at least one exit must be defined")

        if self.default_exit not in self.exits:
            raise ConfigError(f"default_exit '{self.default_exit}' is not defined in exits")

        for name, exit_config in self.exits.items():
            if not exit_config.provider:
                raise ConfigError(f"exit '{name}': provider is required")
            if not exit_config.country:
                raise ConfigError(f"exit '{name}': country is required")

    def get_exit(self, name: str) -> Optional[ExitConfig]:
        return self.exits.get(name)


def load_config(path: Union[str, Path]) -> Config:
    """Load and validate a YAML routing configuration.

    Exit names and the default exit are normalised to lower case.

    Args:
        path: Path to the YAML file

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the file cannot be read, parsed or validated
    """
    path = Path(path)
    logger.info("Loading configuration", path=str(path))

    try:
        with open(path, 'r') as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        logger.error("Failed to read config file", path=str(path), error=str(e))
        raise ConfigError(f"failed to read config file: {e}") from e
    except yaml.YAMLError as e:
        logger.error("Failed to parse YAML", path=str(path), error=str(e))
        raise ConfigError(f"failed to parse config: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError("failed to parse config: top level must be a mapping")

    exits = {}
    for name, exit_data in (raw.get('exits') or {}).items():
        key = str(name).lower()
        if key in exits:
            raise ConfigError(f"invalid config: duplicate exit '{key}'")
        exits[key] = exit_data or {}

    try:
        config = Config(
            default_exit=str(raw.get('default_exit') or '').lower(),
            exits=exits,
        )
    except ValidationError as e:
        raise ConfigError(f"failed to parse config: {e}") from e

    try:
        config.validate()
    except ConfigError as e:
        logger.error("Config validation failed", path=str(path), error=str(e))
        raise ConfigError(f"invalid config: {e}") from e

    logger.info(
        f"Loaded config with default exit '{config.default_exit}' and {len(config.exits)} exits",
        path=str(path)
    )
    return config


class ConfigExitResolver:
    """Maps a requested exit name (or none) onto a declared exit."""

    def __init__(self, config: Config):
        self.config = config

    def resolve(self, exit_name: Optional[str]) -> Tuple[str, ExitConfig]:
        """Resolve an exit name to its canonical name and config.

        Args:
            exit_name: Parsed exit name, or None/empty for the default exit

        Returns:
            (canonical exit name, exit config)

        Raises:
            ResolutionError: If the name is not declared
        """
        if not exit_name:
            name = self.config.default_exit
            logger.debug("Using default exit", exit=name)
            return name, self.config.exits[name]

        exit_config = self.config.get_exit(exit_name)
        if exit_config is not None:
            return exit_name, exit_config

        canonical = exit_name.lower()
        exit_config = self.config.get_exit(canonical)
        if exit_config is not None:
            return canonical, exit_config

        raise ResolutionError(f"unknown exit '{exit_name}'", exit_name=exit_name)
