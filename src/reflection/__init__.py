"""
Assembly reflection providers.

Providers list the plugin types a compiled assembly implements. Built-in
providers read a sidecar manifest or run an external extractor; others are
discovered via entry points (group: 'xrm_plugin_sync.reflection').
"""

from reflection.base import ReflectionProvider, check_assembly_file
from reflection.registry import ReflectionProviderRegistry, get_registry

__all__ = [
    "ReflectionProvider",
    "ReflectionProviderRegistry",
    "check_assembly_file",
    "get_registry",
]
