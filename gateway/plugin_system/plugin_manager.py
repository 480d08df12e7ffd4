"""
Plugin Manager

Discovers plugin modules in the system and user plugin folders, checks them
against the plugin contract and registers them in a RegistryService.
"""

import glob
import importlib.util
import logging
import os
import sys
from types import MappingProxyType, ModuleType
from typing import Any, Dict, List, Optional

import httpx
import yaml

from gateway.config import ConfigSnapshot
from gateway.errors import PluginDiscoveryError
from gateway.plugin_system.contract import (
    PluginDescriptor,
    PluginEnvironment,
    descriptor_from_module,
)
from gateway.plugin_system.registry import RegistryService

logger = logging.getLogger(__name__)


class PluginManager:
    """
    Loads plugins into a registry.

    Loads plugins from two locations:
    - gateway/plugins/ (system plugins that ship with the gateway)
    - plugins/ (user-created plugins)

    Loads per-plugin configuration from configs/plugins.yaml
    """

    def __init__(
        self,
        registry: RegistryService,
        system_plugins_dir: str,
        user_plugins_dir: str,
        config_path: str,
        static_config: Optional[ConfigSnapshot] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.registry = registry
        self.system_plugins_dir = system_plugins_dir
        self.user_plugins_dir = user_plugins_dir
        self.config_path = config_path
        self.static_config = static_config if static_config is not None else ConfigSnapshot()
        self.http_client = http_client
        self.loaded_modules: List[str] = []
        self.failed: Dict[str, str] = {}
        self.plugin_configs: Dict[str, Any] = {}
        self._environments: Dict[str, PluginEnvironment] = {}

    def load_plugins(self) -> Dict[str, int]:
        """
        Load plugin configuration and all plugins from both directories.

        A module that fails to load is logged and skipped. RouteConflict is
        not caught: two plugins claiming one route stops startup.

        Returns:
            Dict with counts of loaded plugins by type
        """
        self._load_plugin_config()

        counts = {"system": 0, "user": 0, "failed": 0, "total": 0}

        logger.info("Loading system plugins...")
        counts["system"] = self._load_plugins_from_directory(
            self.system_plugins_dir, plugin_type="system"
        )

        logger.info("Loading user plugins...")
        counts["user"] = self._load_plugins_from_directory(
            self.user_plugins_dir, plugin_type="user"
        )

        counts["failed"] = len(self.failed)
        counts["total"] = counts["system"] + counts["user"]

        logger.info("Plugin loading complete:")
        logger.info(f"  System plugins loaded: {counts['system']}")
        logger.info(f"  User plugins loaded: {counts['user']}")
        logger.info(f"  Failed plugin files: {counts['failed']}")
        logger.info(f"  Registered plugins: {len(self.registry)}")

        return counts

    def _load_plugin_config(self) -> None:
        """Load plugin configuration from YAML file."""
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, "r") as f:
                    config_data = yaml.safe_load(f) or {}

                plugins = config_data.get("plugins", {}) if isinstance(config_data, dict) else {}
                self.plugin_configs = plugins if isinstance(plugins, dict) else {}
                logger.info(f"Loaded plugin configuration from {self.config_path}")
                logger.info(f"  Configured plugins: {list(self.plugin_configs.keys())}")
            else:
                logger.warning(f"Plugin config file not found: {self.config_path}")
                self.plugin_configs = {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load plugin configuration: {e}")
            self.plugin_configs = {}

    def is_enabled(self, plugin_name: str) -> bool:
        entry = self.plugin_configs.get(plugin_name) or {}
        return not (isinstance(entry, dict) and entry.get("enabled", True) is False)

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get the configuration section for a specific plugin."""
        entry = self.plugin_configs.get(plugin_name) or {}
        if not isinstance(entry, dict):
            logger.warning(f"Invalid config format for plugin {plugin_name}, using empty dict")
            return {}

        config_section = entry.get("config", {})
        if not isinstance(config_section, dict):
            logger.warning(f"Invalid config format for plugin {plugin_name}, using empty dict")
            return {}

        return config_section

    def _load_plugins_from_directory(self, directory: str, plugin_type: str) -> int:
        """Load all Python files from a directory as plugins."""
        if not os.path.exists(directory):
            logger.warning(f"Plugin directory not found: {directory}")
            return 0

        loaded_count = 0
        python_files = sorted(glob.glob(os.path.join(directory, "*.py")))

        for filepath in python_files:
            filename = os.path.basename(filepath)

            # Skip __init__.py and private helper modules
            if filename.startswith("_"):
                continue

            module_name = f"{plugin_type}_plugin_{filename[:-3]}"
            try:
                module = self._import_module(filepath, module_name)
                descriptor, override = descriptor_from_module(module, filename)
            except PluginDiscoveryError as e:
                sys.modules.pop(module_name, None)
                logger.error(f"Failed to load {plugin_type} plugin {filename}: {e.reason}")
                self.failed[filename] = e.reason
                continue

            if not self.is_enabled(descriptor.name):
                logger.info(f"Skipping disabled plugin: {descriptor.name}")
                continue

            try:
                self.registry.register(descriptor, override=override)
            except PluginDiscoveryError as e:
                sys.modules.pop(module_name, None)
                logger.error(f"Failed to register {plugin_type} plugin {filename}: {e.reason}")
                self.failed[filename] = e.reason
                continue

            self.loaded_modules.append(module.__name__)
            loaded_count += 1
            logger.info(f"Loaded {plugin_type} plugin: {filename}")

        return loaded_count

    def _import_module(self, filepath: str, module_name: str) -> ModuleType:
        spec = importlib.util.spec_from_file_location(module_name, filepath)
        if spec is None or spec.loader is None:
            raise PluginDiscoveryError(os.path.basename(filepath), "could not load module spec")

        module = importlib.util.module_from_spec(spec)

        # Add to sys.modules so imports inside the plugin work properly
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise PluginDiscoveryError(
                os.path.basename(filepath), f"import failed: {type(e).__name__}: {e}"
            ) from e

        return module

    def environment_for(self, descriptor: PluginDescriptor) -> PluginEnvironment:
        """Environment handed to ``descriptor``'s handler on every request."""
        env = self._environments.get(descriptor.name)
        if env is None:
            env = PluginEnvironment(
                plugin_name=descriptor.name,
                config=self.static_config,
                plugin_config=MappingProxyType(self.get_plugin_config(descriptor.name)),
                http_client=self.http_client,
            )
            self._environments[descriptor.name] = env
        return env

    def get_plugin_status(self) -> Dict[str, Any]:
        """Get status information about loaded plugins."""
        return {
            "loaded_modules": len(self.loaded_modules),
            "config_file": self.config_path,
            "configured_plugins": list(self.plugin_configs.keys()),
            "failed": dict(self.failed),
            "registered_plugins": len(self.registry),
            "plugins": [
                {
                    "name": d.name,
                    "routes": list(d.routes),
                    "methods": sorted(d.methods),
                    "category": d.category,
                    "version": d.version,
                    "prefix": d.prefix,
                    "config_available": d.name in self.plugin_configs,
                }
                for d in self.registry.descriptors()
            ],
        }
