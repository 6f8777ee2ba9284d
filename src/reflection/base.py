"""
Reflection Provider Base - Abstract interface for assembly reflection.

A reflection provider turns a compiled plugin assembly into the list of
plugin types it implements, optionally with step and image declarations.
Reading .NET metadata is left to providers; the built-in ones read a
sidecar manifest or run an external extractor.
"""

import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from errors import ReflectionFault
from models import ReflectedType

# Portable Executable files start with the DOS "MZ" signature
PE_SIGNATURE = b"MZ"


def check_assembly_file(assembly_path: str) -> None:
    """
    Check that a path points at a readable PE file.

    Raises:
        ReflectionFault: If the file is missing, unreadable or not a PE image.
    """
    if not os.path.isfile(assembly_path):
        raise ReflectionFault(
            f"Assembly file not found: {assembly_path}", assembly_path=assembly_path
        )
    try:
        with open(assembly_path, "rb") as f:
            header = f.read(len(PE_SIGNATURE))
    except OSError as e:
        raise ReflectionFault(
            f"Cannot read assembly {assembly_path}: {e}", assembly_path=assembly_path
        ) from e
    if header != PE_SIGNATURE:
        raise ReflectionFault(
            f"{assembly_path} is not a valid managed assembly",
            assembly_path=assembly_path,
        )


class ReflectionProvider(ABC):
    """
    Abstract base class for reflection providers.

    Providers are registered by name and may be shipped by third-party
    packages through the 'xrm_plugin_sync.reflection' entry point group.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this provider (e.g., 'manifest')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Provider version string."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load provider configuration from environment variables."""
        return {}

    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the provider with configuration.

        Args:
            config: Provider-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def extract_plugin_types(self, assembly_path: str) -> List[ReflectedType]:
        """
        List the plugin types implemented by an assembly.

        Args:
            assembly_path: Path of the compiled assembly

        Returns:
            Reflected types, with step/image declarations where known.

        Raises:
            ReflectionFault: If the assembly is not a valid managed assembly
                or contains no recognizable plugin types.
        """
        pass
