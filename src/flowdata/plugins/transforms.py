"""Plugin interface for display-scale transforms applied before binning."""

from __future__ import annotations

from abc import abstractmethod

import numpy as np
from flowutils import transforms as fu_transforms
from pydantic import BaseModel, Field

from .base import EmptyConfig, PluginBase


class TransformPlugin(PluginBase):
    """Maps a cells x channels matrix to a matrix of the same shape."""

    PLUGIN_TYPE = "transform"

    @abstractmethod
    def transform(self, data: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def __call__(self, data: np.ndarray) -> np.ndarray:
        data = np.asarray(data, dtype=float)
        if data.size == 0:
            return data.copy()
        out = self.transform(data)
        if out.shape != data.shape:
            raise ValueError(f"{self.__class__.__name__} changed shape {data.shape} -> {out.shape}")
        return out


class LogicleParameters(BaseModel):
    T: float = Field(262144, gt=0)
    W: float = Field(0.5, ge=0)
    M: float = Field(4.5, gt=0)
    A: float = 0


class LogicleTransform(TransformPlugin):
    """Logicle (biexponential) scale via flowutils."""

    config_model = LogicleParameters

    def transform(self, data: np.ndarray) -> np.ndarray:
        return fu_transforms.logicle(
            data,
            channel_indices=np.arange(data.shape[1]),
            t=self.config.T,
            m=self.config.M,
            w=self.config.W,
            a=self.config.A,
        )


class IdentityTransform(TransformPlugin):
    """Leaves values on their linear scale."""

    config_model = EmptyConfig

    def transform(self, data: np.ndarray) -> np.ndarray:
        return data.copy()
