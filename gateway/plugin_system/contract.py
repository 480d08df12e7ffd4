"""
Plugin Contract

Every plugin module exposes two attributes:

    config = {
        "name": "trivia",                  # required
        "link": ["/trivia?limit=1"],       # required, str or list of str
        "method": "get",                   # optional, str or list (default GET)
        "category": "others",              # optional
        "description": "...",             # optional
        "author": "...",                  # optional
        "version": "1.0.0",               # optional
        "prefix": False,                   # optional, also answer on sub-paths
        "override": False,                 # optional, replace an earlier claim
    }

    async def initialize(request, response, env):
        response.json({"ok": True})

``initialize`` may be a plain function or a coroutine function. The query
string in a link is only an example shown in the discovery listing; routing
uses the path part.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType, ModuleType
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

import httpx
from starlette.responses import Response

from gateway import formatting
from gateway.errors import PluginDiscoveryError
from gateway.utils import PrettyJSONResponse

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})

Handler = Callable[..., Any]


def normalize_route(link: str) -> str:
    """Strip the example query string and normalise slashes."""
    path = link.split("?", 1)[0].strip()
    path = "/" + path.strip("/")
    return path


def route_key(path: str) -> str:
    """First path segment, the identifier usage is attributed to."""
    return path.strip("/").split("/", 1)[0]


@dataclass(frozen=True)
class PluginDescriptor:
    """One registered plugin. Immutable once created."""

    name: str
    routes: Tuple[str, ...]
    handler: Handler = field(repr=False, compare=False)
    methods: FrozenSet[str] = frozenset({"GET"})
    category: str = ""
    description: str = ""
    author: str = ""
    version: str = "1.0.0"
    prefix: bool = False
    link: str = ""

    def __post_init__(self) -> None:
        # Stored routes and methods are in the same form resolve() looks up
        object.__setattr__(
            self, "routes", tuple(dict.fromkeys(normalize_route(r) for r in self.routes))
        )
        object.__setattr__(self, "methods", frozenset(m.upper() for m in self.methods))

    @property
    def route_keys(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(route_key(r) for r in self.routes))

    def accepts(self, method: Optional[str]) -> bool:
        return method is None or method.upper() in self.methods

    def public_metadata(self) -> Dict[str, str]:
        """
        Metadata safe to show in the discovery listing.

        ``endpoint`` is the declared link relative to the metered prefix.
        """
        return {
            "name": self.name,
            "description": self.description,
            "endpoint": self.link or self.routes[0],
            "category": self.category,
        }


@dataclass(frozen=True)
class PluginEnvironment:
    """Shared, read-only facilities handed to every plugin handler."""

    plugin_name: str
    config: Mapping
    plugin_config: Mapping = field(default_factory=lambda: MappingProxyType({}))
    http_client: Optional[httpx.AsyncClient] = None
    text: ModuleType = formatting


class ResponseSink:
    """
    Response object handed to plugin handlers.

    Handlers write to it in the express style (``response.status(400).json(...)``);
    the router turns it into a real HTTP response once the handler returns.
    """

    def __init__(self) -> None:
        self.status_code = 200
        self.headers: Dict[str, str] = {}
        self._response: Optional[Response] = None

    def status(self, code: int) -> "ResponseSink":
        self.status_code = code
        return self

    def set_header(self, name: str, value: str) -> "ResponseSink":
        self.headers[name] = value
        return self

    def json(self, body: Any, status_code: Optional[int] = None) -> None:
        if status_code is not None:
            self.status_code = status_code
        self._response = PrettyJSONResponse(content=body, status_code=self.status_code)

    def send(self, content: str, status_code: Optional[int] = None, media_type: str = "text/plain") -> None:
        if status_code is not None:
            self.status_code = status_code
        self._response = Response(
            content=content, status_code=self.status_code, media_type=media_type
        )

    def to_response(self) -> Optional[Response]:
        if self._response is None:
            return None
        for name, value in self.headers.items():
            self._response.headers[name] = value
        return self._response


def _as_list(value: Any) -> list:
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def descriptor_from_module(module: ModuleType, source: str) -> Tuple[PluginDescriptor, bool]:
    """
    Check a loaded module against the plugin contract.

    Returns the descriptor and whether the plugin asked to override earlier
    claims on its routes. Raises PluginDiscoveryError on any violation.
    """
    meta = getattr(module, "config", None)
    handler = getattr(module, "initialize", None)

    if meta is None:
        raise PluginDiscoveryError(source, "missing 'config'")
    if not isinstance(meta, Mapping):
        raise PluginDiscoveryError(source, "'config' must be a mapping")
    if handler is None:
        raise PluginDiscoveryError(source, "missing 'initialize'")
    if not callable(handler):
        raise PluginDiscoveryError(source, "'initialize' must be callable")

    name = meta.get("name")
    if not isinstance(name, str) or not name.strip():
        raise PluginDiscoveryError(source, "'config.name' must be a non-empty string")

    links = [link for link in _as_list(meta.get("link")) if isinstance(link, str)]
    routes = tuple(dict.fromkeys(normalize_route(link) for link in links))
    if not routes or any(route == "/" for route in routes):
        raise PluginDiscoveryError(source, "'config.link' must name at least one route")

    methods = frozenset(m.upper() for m in _as_list(meta.get("method", "GET")) if isinstance(m, str))
    if not methods:
        raise PluginDiscoveryError(source, "'config.method' must name at least one HTTP method")
    unknown = methods - HTTP_METHODS
    if unknown:
        raise PluginDiscoveryError(source, f"unknown HTTP method(s): {sorted(unknown)}")

    descriptor = PluginDescriptor(
        name=name.strip(),
        routes=routes,
        handler=handler,
        methods=methods,
        category=str(meta.get("category", "")),
        description=str(meta.get("description", "")),
        author=str(meta.get("author", "")),
        version=str(meta.get("version", "1.0.0")),
        prefix=bool(meta.get("prefix", False)),
        link="/" + links[0].lstrip("/"),
    )
    return descriptor, bool(meta.get("override", False))
