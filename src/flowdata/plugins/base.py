"""Base plugin classes and error definitions for the flowdata plugin system."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Type

from pydantic import BaseModel, ValidationError

from flowdata.exceptions import FlowDataError


class PluginError(FlowDataError):
    """Base exception for plugin-related errors."""
    pass


class PluginLoadError(PluginError):
    """Raised when a plugin cannot be found or loaded."""
    pass


class EmptyConfig(BaseModel):
    """Configuration model for plugins without options."""
    pass


class PluginBase(ABC):
    """Base class for all flowdata plugins."""
    config: BaseModel

    @property
    @abstractmethod
    def config_model(self) -> Type[BaseModel]:
        """The Pydantic model for the plugin's configuration."""
        raise NotImplementedError

    def __init__(self, config: Dict[str, Any] | None = None) -> None:
        """Initialize plugin with configuration and validate it."""
        try:
            self.config = self.config_model(**(config or {}))
        except ValidationError as e:
            raise PluginError(f"Invalid configuration for plugin {self.__class__.__name__}:\n{e}") from e

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
