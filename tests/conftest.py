"""
Pytest fixtures for the gateway test suite.

Provides:
- Request / descriptor builders for unit tests of the router and registry
- A plugin file writer for discovery tests
- Settings pointing every path at a temporary directory
"""

import os
import textwrap
from pathlib import Path
from typing import Callable, Iterable, Optional

# Keep test runs from creating logs/ in the working directory
os.environ.setdefault("LOG_FILE", "")

import pytest
from starlette.requests import Request

from gateway.config import Settings
from gateway.plugin_system.contract import PluginDescriptor
from gateway.plugin_system.registry import RegistryService
from gateway.usage import UsageStoreService


def make_request(method: str = "GET", url: str = "/api/trivia") -> Request:
    """Build a bare ASGI request for ``url`` (path plus optional query string)."""
    path, _, query = url.partition("?")
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": query.encode(),
        "headers": [(b"user-agent", b"pytest")],
        "client": ("127.0.0.1", 12345),
        "server": ("testserver", 80),
    }
    return Request(scope)


def make_descriptor(
    name: str = "trivia",
    routes: Iterable[str] = ("/trivia",),
    handler: Optional[Callable] = None,
    methods: Iterable[str] = ("GET",),
    **kwargs,
) -> PluginDescriptor:
    def default_handler(request, response, env):
        response.json({"plugin": name})

    return PluginDescriptor(
        name=name,
        routes=tuple(routes),
        handler=handler or default_handler,
        methods=frozenset(methods),
        **kwargs,
    )


@pytest.fixture
def registry():
    return RegistryService()


@pytest.fixture
def usage_store(tmp_path):
    return UsageStoreService(tmp_path / "db.json")


@pytest.fixture
def write_plugin(tmp_path):
    """Write a plugin module into tmp_path/<directory>/<filename>."""

    def _write(filename: str, source: str, directory: str = "user_plugins") -> Path:
        plugin_dir = tmp_path / directory
        plugin_dir.mkdir(exist_ok=True)
        path = plugin_dir / filename
        path.write_text(textwrap.dedent(source))
        return path

    return _write


@pytest.fixture
def gateway_settings(tmp_path):
    """Settings with every file and directory inside tmp_path."""
    system_dir = tmp_path / "system_plugins"
    user_dir = tmp_path / "user_plugins"
    system_dir.mkdir(exist_ok=True)
    user_dir.mkdir(exist_ok=True)

    return Settings(
        LOG_FILE="",
        STATIC_CONFIG_PATH=str(tmp_path / "config.json"),
        PLUGIN_CONFIG_PATH=str(tmp_path / "plugins.yaml"),
        SYSTEM_PLUGINS_DIR=str(system_dir),
        USER_PLUGINS_DIR=str(user_dir),
        STATS_FILE=str(tmp_path / "db.json"),
        STATS_FLUSH_INTERVAL=3600.0,
    )
