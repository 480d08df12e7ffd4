"""
Error types raised by the gateway core
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for gateway errors"""


class ConfigLoadError(GatewayError):
    """Static configuration is missing, malformed or unusable"""


class PluginDiscoveryError(GatewayError):
    """A plugin module could not be loaded or breaks the plugin contract"""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class RouteConflict(GatewayError):
    """Two plugins claim the same route"""

    def __init__(self, route: str, plugin_name: str, existing_name: str) -> None:
        super().__init__(
            f"Route '{route}' of plugin '{plugin_name}' is already claimed "
            f"by plugin '{existing_name}'"
        )
        self.route = route
        self.plugin_name = plugin_name
        self.existing_name = existing_name


class PluginHandlerError(GatewayError):
    """A plugin handler raised or its upstream call failed"""

    def __init__(self, plugin_name: str, status_code: int = 500, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Plugin '{plugin_name}' failed")
        self.plugin_name = plugin_name
        self.status_code = status_code
        self.cause = cause


class PersistenceError(GatewayError):
    """Reading or writing the usage snapshot failed"""
