"""
Plugin Registry - Discovery and registration of reconciler plugins.

Reconciler plugins are registered explicitly or discovered through the
'vault_unseal.reconcilers' entry point group.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, Optional, Type

from plugins.reconcilers.base import ReconcilerPlugin

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "vault_unseal.reconcilers"


class PluginRegistry:
    """Central registry for reconciler plugins."""

    def __init__(self):
        # Registered plugin classes (not instantiated)
        self._reconciler_plugins: Dict[str, Type[ReconcilerPlugin]] = {}

        # Cached plugin metadata to avoid repeated instantiation
        self._reconciler_plugin_info: Dict[str, Dict[str, str]] = {}

        # Instantiated and initialized plugin instances
        self._reconciler_instances: Dict[str, ReconcilerPlugin] = {}

        # Plugin configurations loaded from environment
        self._reconciler_plugin_configs: Dict[str, Dict[str, Any]] = {}

    def register_reconciler_plugin(self, plugin_class: Type[ReconcilerPlugin]) -> None:
        """
        Register a reconciler plugin class.

        Args:
            plugin_class: The ReconcilerPlugin subclass to register
        """
        # Create temporary instance to get name/version (only once at registration)
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._reconciler_plugins:
            logger.warning(f"Overwriting existing reconciler plugin: {name}")
            self._reconciler_instances.pop(name, None)

        self._reconciler_plugins[name] = plugin_class
        self._reconciler_plugin_info[name] = {"name": name, "version": version}
        self._reconciler_plugin_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered reconciler plugin: {name} v{version}")

    async def get_reconciler_plugin(
        self, name: Optional[str] = None, config: Optional[Dict[str, Any]] = None
    ) -> ReconcilerPlugin:
        """
        Get an initialized reconciler plugin instance.

        Args:
            name: The plugin name. May be omitted when exactly one plugin
                is registered.
            config: Overrides merged over the env-loaded plugin config

        Returns:
            An initialized ReconcilerPlugin instance

        Raises:
            ValueError: If the plugin is unknown or the choice is ambiguous
        """
        if not name:
            if len(self._reconciler_plugins) != 1:
                available = ", ".join(self._reconciler_plugins.keys()) or "none"
                raise ValueError(
                    f"A reconciler plugin name is required when "
                    f"{len(self._reconciler_plugins)} are registered. "
                    f"Available reconcilers: {available}"
                )
            name = next(iter(self._reconciler_plugins))

        if name not in self._reconciler_plugins:
            available = ", ".join(self._reconciler_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown reconciler plugin: {name}. "
                f"Available reconcilers: {available}"
            )

        if name not in self._reconciler_instances:
            plugin_config = dict(self._reconciler_plugin_configs.get(name, {}))
            if config:
                plugin_config.update(config)
            plugin = self._reconciler_plugins[name]()
            await plugin.initialize(plugin_config)
            self._reconciler_instances[name] = plugin
            logger.info(f"Initialized reconciler plugin: {name}")

        return self._reconciler_instances[name]

    def list_reconciler_plugins(self) -> list[str]:
        """List all registered reconciler plugin names."""
        return list(self._reconciler_plugins.keys())

    def has_reconciler_plugin(self, name: str) -> bool:
        """Check if a reconciler plugin is registered."""
        return name in self._reconciler_plugins

    def get_reconciler_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a registered reconciler plugin.

        Returns:
            Dictionary with 'name' and 'version', or None if not found
        """
        return self._reconciler_plugin_info.get(name)


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def discover_plugins(registry: Optional[PluginRegistry] = None) -> int:
    """
    Register every reconciler plugin advertised through entry points.

    Returns:
        Number of plugins registered.
    """
    registry = registry or get_registry()
    registered = 0
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            registry.register_reconciler_plugin(ep.load())
            registered += 1
        except Exception as e:
            logger.warning(f"Could not load reconciler plugin {ep.name}: {e}")
    return registered
