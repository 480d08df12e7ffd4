"""
Plugin Registry

Owns the route -> PluginDescriptor table. Populated once at startup by the
PluginManager and read without locking afterwards.
"""

import logging
from typing import Dict, Iterator, List, Optional, Tuple

from gateway.errors import PluginDiscoveryError, RouteConflict
from gateway.plugin_system.contract import HTTP_METHODS, PluginDescriptor, normalize_route, route_key

logger = logging.getLogger(__name__)


class PluginListing:
    """Lazy, restartable view of the registered plugins' public metadata."""

    def __init__(self, registry: "RegistryService") -> None:
        self._registry = registry

    def __iter__(self) -> Iterator[Dict[str, str]]:
        for descriptor in self._registry.descriptors():
            yield descriptor.public_metadata()

    def __len__(self) -> int:
        return len(self._registry)


class RegistryService:
    """Route table for registered plugins."""

    def __init__(self) -> None:
        self._routes: Dict[str, PluginDescriptor] = {}
        self._prefix_routes: List[Tuple[str, PluginDescriptor]] = []
        self._keys: Dict[str, PluginDescriptor] = {}

    def register(self, descriptor: PluginDescriptor, override: bool = False) -> None:
        """
        Claim every route of ``descriptor``.

        Raises RouteConflict when another plugin already claims one of the
        routes; nothing is registered in that case. With ``override=True`` the
        earlier claims are replaced instead and the replacement is logged.
        """
        if not descriptor.routes:
            raise PluginDiscoveryError(descriptor.name, "plugin declares no routes")
        if "/" in descriptor.routes:
            raise PluginDiscoveryError(descriptor.name, "plugin cannot claim the prefix root")
        if not descriptor.methods:
            raise PluginDiscoveryError(descriptor.name, "plugin accepts no HTTP methods")
        unknown = descriptor.methods - HTTP_METHODS
        if unknown:
            raise PluginDiscoveryError(descriptor.name, f"unknown HTTP method(s): {sorted(unknown)}")

        for route in descriptor.routes:
            existing = self._routes.get(route)
            if existing is None or existing is descriptor:
                continue
            if not override:
                raise RouteConflict(route, descriptor.name, existing.name)
            logger.warning(
                f"Plugin '{descriptor.name}' overrides route '{route}' "
                f"previously claimed by '{existing.name}'"
            )

        if not override:
            for other in self.descriptors():
                if other is not descriptor and other.name == descriptor.name:
                    raise PluginDiscoveryError(
                        descriptor.name, "a plugin with this name is already registered"
                    )

        for route in descriptor.routes:
            self._routes[route] = descriptor
        self._rebuild_indexes()

        logger.info(
            f"Registered plugin '{descriptor.name}' on {list(descriptor.routes)} "
            f"({', '.join(sorted(descriptor.methods))})"
        )

    def _rebuild_indexes(self) -> None:
        self._prefix_routes = sorted(
            ((route, d) for route, d in self._routes.items() if d.prefix),
            key=lambda item: len(item[0]),
            reverse=True,
        )
        keys: Dict[str, PluginDescriptor] = {}
        for route, descriptor in self._routes.items():
            keys.setdefault(route_key(route), descriptor)
        self._keys = keys

    def _match(self, path: str) -> Optional[PluginDescriptor]:
        path = normalize_route(path)
        descriptor = self._routes.get(path)
        if descriptor is not None:
            return descriptor
        for route, candidate in self._prefix_routes:
            if path.startswith(route + "/"):
                return candidate
        return None

    def resolve(self, path: str, method: Optional[str] = None) -> Optional[PluginDescriptor]:
        """
        Find the plugin answering ``path`` with ``method``.

        Exact routes win over declared prefixes. ``method=None`` matches any
        method. Returns None when nothing matches.
        """
        descriptor = self._match(path)
        if descriptor is None or not descriptor.accepts(method):
            return None
        return descriptor

    def has_path(self, path: str) -> bool:
        """Whether some plugin answers ``path`` regardless of method."""
        return self._match(path) is not None

    def knows_key(self, key: Optional[str]) -> bool:
        return bool(key) and key in self._keys

    def lookup_key(self, key: str) -> Optional[PluginDescriptor]:
        """Plugin that first claimed a route under the route key ``key``."""
        return self._keys.get(key)

    def descriptors(self) -> Iterator[PluginDescriptor]:
        """Registered descriptors, each once, in registration order."""
        seen = set()
        for descriptor in self._routes.values():
            if id(descriptor) not in seen:
                seen.add(id(descriptor))
                yield descriptor

    def list(self) -> PluginListing:
        return PluginListing(self)

    def __len__(self) -> int:
        return sum(1 for _ in self.descriptors())

    def __contains__(self, route: str) -> bool:
        return normalize_route(route) in self._routes
