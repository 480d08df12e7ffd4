"""Plugin system for the Plugin Gateway."""

from .contract import PluginDescriptor, PluginEnvironment, ResponseSink
from .plugin_manager import PluginManager
from .registry import RegistryService

__all__ = [
    "PluginManager",
    "RegistryService",
    "PluginDescriptor",
    "PluginEnvironment",
    "ResponseSink",
]
