"""
Reflection Provider Registry - Discovery and registration of providers.

This module provides the central registry for reflection providers,
handling discovery, registration, and instantiation.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from reflection.base import ReflectionProvider

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "xrm_plugin_sync.reflection"


class ReflectionProviderRegistry:
    """
    Central registry for reflection providers.

    Handles discovery, registration, and instantiation of providers.
    """

    def __init__(self):
        # Registered provider classes (not instantiated)
        self._providers: Dict[str, Type[ReflectionProvider]] = {}

        # Cached provider metadata (name, version) to avoid repeated instantiation
        self._provider_info: Dict[str, Dict[str, str]] = {}

        # Instantiated and initialized provider instances
        self._instances: Dict[str, ReflectionProvider] = {}

        # Provider configurations loaded from environment
        self._provider_configs: Dict[str, Dict[str, Any]] = {}

    def register_provider(self, provider_class: Type[ReflectionProvider]) -> None:
        """
        Register a reflection provider class.

        Args:
            provider_class: The ReflectionProvider subclass to register
        """
        # Create temporary instance to get name/version (only once at registration)
        temp_instance = provider_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._providers:
            logger.warning(f"Overwriting existing reflection provider: {name}")

        self._providers[name] = provider_class
        self._provider_info[name] = {"name": name, "version": version}
        self._provider_configs[name] = provider_class.load_config_from_env()
        self._instances.pop(name, None)
        logger.info(f"Registered reflection provider: {name} v{version}")

    async def get_provider(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> ReflectionProvider:
        """
        Get an initialized reflection provider instance.

        Configuration loaded from the environment at registration is merged
        with the given config, which takes precedence.

        Args:
            name: The provider name to retrieve
            config: Optional configuration to pass to initialize()

        Returns:
            An initialized ReflectionProvider instance

        Raises:
            ValueError: If the provider name is not registered
        """
        if name not in self._providers:
            available = ", ".join(self._providers.keys()) or "none"
            raise ValueError(
                f"Unknown reflection provider: {name}. Available providers: {available}"
            )

        if name not in self._instances:
            provider_config = dict(self._provider_configs.get(name, {}))
            provider_config.update(config or {})
            provider = self._providers[name]()
            await provider.initialize(provider_config)
            self._instances[name] = provider
            logger.info(f"Initialized reflection provider: {name}")

        return self._instances[name]

    def list_providers(self) -> List[str]:
        """List all registered provider names."""
        return list(self._providers.keys())

    def has_provider(self, name: str) -> bool:
        """Check if a provider is registered."""
        return name in self._providers

    def get_provider_info(self, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a registered provider.

        Returns:
            Dictionary with 'name' and 'version', or None if not found
        """
        return self._provider_info.get(name)

    def get_provider_config(self, name: str) -> Dict[str, Any]:
        """Get the environment-loaded configuration for a provider."""
        return self._provider_configs.get(name, {})


# Global registry instance
_registry: Optional[ReflectionProviderRegistry] = None


def get_registry() -> ReflectionProviderRegistry:
    """Get the global reflection provider registry singleton."""
    global _registry
    if _registry is None:
        _registry = ReflectionProviderRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_providers() -> None:
    """
    Register the built-in providers and discover third-party providers
    via entry points.
    """
    from reflection.command import CommandReflectionProvider
    from reflection.manifest import ManifestReflectionProvider

    registry = get_registry()
    registry.register_provider(ManifestReflectionProvider)
    registry.register_provider(CommandReflectionProvider)

    discovered = entry_points(group=ENTRY_POINT_GROUP)
    for ep in discovered:
        try:
            provider_class = ep.load()
            registry.register_provider(provider_class)
        except Exception as e:
            logger.warning(f"Could not load reflection provider {ep.name}: {e}")
