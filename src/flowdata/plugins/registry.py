"""Plugin registry: built-in collaborators plus entry-point discovery."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Any, Dict, List, Type

from .base import PluginBase, PluginLoadError

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUPS = {
    "gating": "flowdata.gating_strategies",
    "calibration": "flowdata.calibration_methods",
    "compensation": "flowdata.compensation_methods",
    "transforms": "flowdata.transforms",
}


def _builtin_plugins() -> Dict[str, Dict[str, Type[PluginBase]]]:
    from .calibration import BeadRegressionCalibration
    from .compensation import MatrixCompensation, PiecewiseCompensation
    from .gating import DensityGatingPlugin
    from .transforms import IdentityTransform, LogicleTransform

    return {
        "gating": {"density": DensityGatingPlugin},
        "calibration": {"bead_regression": BeadRegressionCalibration},
        "compensation": {"piecewise": PiecewiseCompensation, "matrix": MatrixCompensation},
        "transforms": {"logicle": LogicleTransform, "linear": IdentityTransform},
    }


class PluginRegistry:
    """Registry for discovering, loading, and managing flowdata plugins."""

    def __init__(self, discover: bool = True) -> None:
        self._plugins: Dict[str, Dict[str, Type[PluginBase]]] = {
            plugin_type: dict(plugins) for plugin_type, plugins in _builtin_plugins().items()
        }
        if discover:
            self.discover_plugins()

    def discover_plugins(self) -> None:
        """Discover available plugins via entry points."""
        for plugin_type, group_name in ENTRY_POINT_GROUPS.items():
            for entry_point in importlib.metadata.entry_points(group=group_name):
                try:
                    plugin_class = entry_point.load()
                except Exception as e:
                    logger.warning("Could not load plugin '%s': %s", entry_point.name, e)
                    continue
                if isinstance(plugin_class, type) and issubclass(plugin_class, PluginBase):
                    self._plugins[plugin_type][entry_point.name] = plugin_class
                else:
                    logger.warning("Entry point '%s' is not a flowdata plugin", entry_point.name)

    def register(self, plugin_type: str, plugin_name: str, plugin_class: Type[PluginBase]) -> None:
        if plugin_type not in self._plugins:
            raise ValueError(f"Unknown plugin type: {plugin_type}")
        if not (isinstance(plugin_class, type) and issubclass(plugin_class, PluginBase)):
            raise PluginLoadError(f"{plugin_class!r} is not a flowdata plugin")
        self._plugins[plugin_type][plugin_name] = plugin_class

    def get_available_plugins(self, plugin_type: str | None = None) -> Dict[str, List[str]]:
        """Get list of available plugins."""
        if plugin_type:
            if plugin_type not in self._plugins:
                raise ValueError(f"Unknown plugin type: {plugin_type}")
            return {plugin_type: list(self._plugins[plugin_type].keys())}
        return {ptype: list(p.keys()) for ptype, p in self._plugins.items()}

    def get_plugin_class(self, plugin_type: str, plugin_name: str) -> Type[PluginBase]:
        """Get the class for a specific plugin."""
        if plugin_type not in self._plugins or plugin_name not in self._plugins[plugin_type]:
            raise PluginLoadError(f"Plugin '{plugin_name}' of type '{plugin_type}' not found.")
        return self._plugins[plugin_type][plugin_name]

    def load_plugin(
        self, plugin_type: str, plugin_name: str, config: Dict[str, Any] | None = None
    ) -> PluginBase:
        """Load a specific plugin by type and name."""
        plugin_class = self.get_plugin_class(plugin_type, plugin_name)
        return plugin_class(config=config)


_registry: PluginRegistry | None = None


def get_plugin_registry() -> PluginRegistry:
    """Get the global plugin registry instance, creating it on first use."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry
