"""Plugin system for the collaborators flowdata delegates to."""

from .base import PluginBase, PluginError, PluginLoadError
from .calibration import CalibrationPlugin
from .compensation import CompensationPlugin, CompensationRequest, CompensationResult
from .gating import GatingStrategyPlugin
from .registry import PluginRegistry, get_plugin_registry
from .transforms import TransformPlugin

__all__ = [
    "PluginBase",
    "PluginError",
    "PluginLoadError",
    "GatingStrategyPlugin",
    "CalibrationPlugin",
    "CompensationPlugin",
    "CompensationRequest",
    "CompensationResult",
    "TransformPlugin",
    "PluginRegistry",
    "get_plugin_registry",
]
