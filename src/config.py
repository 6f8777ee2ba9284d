"""
Configuration module for plugin registration and sync.

Loads configuration from environment variables or a workspace config file
(JSON or YAML) listing environments and solutions.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from errors import ConfigurationError
from validation import validate_config_document


@dataclass
class DataverseConfig:
    """Dataverse Web API connection configuration."""

    url: str = ""
    api_version: str = "9.2"
    access_token: str = field(default="", repr=False)  # Never log token
    timeout: int = 60  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            url=os.getenv("DATAVERSE_URL", ""),
            api_version=os.getenv("DATAVERSE_API_VERSION", "9.2"),
            access_token=os.getenv("DATAVERSE_ACCESS_TOKEN", ""),
            timeout=int(os.getenv("DATAVERSE_TIMEOUT", "60")),
        )


@dataclass
class SyncConfig:
    """Plugin sync policy configuration."""

    allow_create: bool = False
    default_solution_name: str = "Default"
    solution_name: Optional[str] = None

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            allow_create=os.getenv("XRM_CREATE_MISSING_COMPONENTS", "false").lower()
            == "true",
            default_solution_name=os.getenv("XRM_DEFAULT_SOLUTION", "Default"),
            solution_name=os.getenv("XRM_SOLUTION") or None,
        )


@dataclass
class ReflectionConfig:
    """Reflection provider configuration."""

    provider: str = "manifest"

    # Provider-specific configurations keyed by provider name
    provider_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        # Load provider configs from JSON environment variable
        provider_configs = {}
        if os.getenv("XRM_REFLECTION_CONFIGS"):
            try:
                provider_configs = json.loads(os.getenv("XRM_REFLECTION_CONFIGS"))
            except json.JSONDecodeError:
                pass

        return cls(
            provider=os.getenv("XRM_REFLECTION_PROVIDER", "manifest"),
            provider_configs=provider_configs,
        )

    def get_provider_config(self, provider_name: str) -> Dict[str, Any]:
        """Get configuration for a specific provider."""
        return self.provider_configs.get(provider_name, {})


@dataclass
class EnvironmentConfig:
    """A named Dataverse environment."""

    name: str
    url: str
    resource: Optional[str] = None
    # If false, sync reports would-be creations instead of creating them
    create_missing_components: bool = False


@dataclass
class SolutionConfig:
    """A solution components can be added to."""

    name: str
    prefix: str = ""
    default: bool = False


@dataclass
class Config:
    """Main configuration object."""

    dataverse: DataverseConfig
    sync: SyncConfig
    reflection: ReflectionConfig
    environments: List[EnvironmentConfig] = field(default_factory=list)
    solutions: List[SolutionConfig] = field(default_factory=list)
    default_solution: Optional[str] = None

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            dataverse=DataverseConfig.from_env(),
            sync=SyncConfig.from_env(),
            reflection=ReflectionConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            dataverse=DataverseConfig(),
            sync=SyncConfig(),
            reflection=ReflectionConfig(),
        )

    @classmethod
    def from_file(cls, path: str):
        """
        Load a workspace configuration file, overlaid on environment variables.

        Raises:
            ConfigurationError: If the file cannot be read or is invalid.
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                if path.endswith(".yaml") or path.endswith(".yml"):
                    document = yaml.safe_load(f) or {}
                else:
                    document = json.load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read configuration {path}: {e}") from e

        is_valid, error = validate_config_document(document)
        if not is_valid:
            raise ConfigurationError(f"Invalid configuration {path}: {error}")

        cfg = cls.from_env()
        cfg.environments = [
            EnvironmentConfig(
                name=env["name"],
                url=env["url"],
                resource=env.get("resource"),
                create_missing_components=env.get("createMissingComponents", False),
            )
            for env in document.get("environments", [])
        ]
        cfg.solutions = [
            SolutionConfig(
                name=sol["name"],
                prefix=sol.get("prefix", ""),
                default=sol.get("default", False),
            )
            for sol in document.get("solutions", [])
        ]
        cfg.default_solution = document.get("defaultSolution") or next(
            (s.name for s in cfg.solutions if s.default), None
        )

        reflection = document.get("reflection", {})
        if "XRM_REFLECTION_PROVIDER" not in os.environ and reflection.get("provider"):
            cfg.reflection.provider = reflection["provider"]
        for name, provider_config in reflection.get("configs", {}).items():
            cfg.reflection.provider_configs.setdefault(name, provider_config)

        return cfg

    def get_environment(self, name: Optional[str] = None) -> EnvironmentConfig:
        """
        Get a named environment, or the first configured one.

        Without configured environments, DATAVERSE_URL defines a single
        environment named "default".

        Raises:
            ConfigurationError: If the environment is unknown or no URL is set.
        """
        if self.environments:
            if name is None:
                return self.environments[0]
            for env in self.environments:
                if env.name.lower() == name.lower():
                    return env
            available = ", ".join(e.name for e in self.environments)
            raise ConfigurationError(
                f"Unknown environment: {name}. Available environments: {available}"
            )

        if not self.dataverse.url:
            raise ConfigurationError(
                "No environments configured. Set DATAVERSE_URL or use a config file."
            )
        return EnvironmentConfig(
            name=name or "default",
            url=self.dataverse.url,
            create_missing_components=self.sync.allow_create,
        )

    def solution_for(self, solution_name: Optional[str]) -> Optional[str]:
        """Explicit solution name, else XRM_SOLUTION, else the config default."""
        return solution_name or self.sync.solution_name or self.default_solution


# Global config instance
config: Optional[Config] = None


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_file(path) if path else Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
