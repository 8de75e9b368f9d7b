"""Plugin interface for gate-polygon derivation, and the built-in density strategy."""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
from pydantic import BaseModel, Field, model_validator
from scipy.spatial import ConvexHull
from scipy.stats import gaussian_kde

from flowdata.exceptions import GatingError
from flowdata.gating import apply_polygons, points_in_polygon
from flowdata.model import GatePolygon

from .base import PluginBase

logger = logging.getLogger(__name__)


class GatingStrategyPlugin(PluginBase):
    """Derives named scatter polygons from pooled events and applies them per sample."""

    PLUGIN_TYPE = "gating_strategy"

    @abstractmethod
    def derive_gates(self, pooled: pd.DataFrame) -> List[GatePolygon]:
        """Return polygons in dependency order; each may name the gate it refines."""
        raise NotImplementedError

    def apply_gates(self, scatter: pd.DataFrame, polygons: Sequence[GatePolygon]) -> Dict[str, np.ndarray]:
        """Boolean mask per polygon name for one sample's scatter data."""
        return apply_polygons(scatter, polygons)


class DensityGatingConfig(BaseModel):
    gate_names: List[str] = ['P1', 'P2', 'P3']
    stages: List[Tuple[str, str]] = [('FSC_A', 'SSC_A'), ('FSC_A', 'FSC_H'), ('SSC_A', 'SSC_H')]
    density_percentile: float = Field(90.0, gt=0, le=100)
    max_kde_events: int = Field(50_000, ge=100)
    random_state: int = 0

    @model_validator(mode="after")
    def _names_match_stages(self) -> DensityGatingConfig:
        if len(self.gate_names) != len(self.stages):
            raise ValueError("gate_names and stages must have the same length")
        return self


class DensityGatingPlugin(GatingStrategyPlugin):
    """Keep the densest ``density_percentile`` % of events at each stage and wrap them in a convex hull.

    Stages run in order and each one only sees the events inside the previous
    stage's polygon, so the gates form a hierarchy ending at the last name.
    """

    config_model = DensityGatingConfig

    def derive_gates(self, pooled: pd.DataFrame) -> List[GatePolygon]:
        rng = np.random.default_rng(self.config.random_state)
        inside = np.ones(len(pooled), dtype=bool)
        polygons: List[GatePolygon] = []
        parent = None
        for name, (x, y) in zip(self.config.gate_names, self.config.stages):
            missing = [ch for ch in (x, y) if ch not in pooled.columns]
            if missing:
                raise GatingError(f"Pooled scatter data has no {', '.join(missing)} channel")
            points = pooled.loc[inside, [x, y]].to_numpy(dtype=float)
            vertices = self._density_hull(points, rng, name)
            polygons.append(GatePolygon(name=name, x_channel=x, y_channel=y, vertices=vertices, parent=parent))
            inside &= points_in_polygon(pooled[[x, y]].to_numpy(dtype=float), vertices)
            parent = name
            logger.debug("Gate %s keeps %d pooled events", name, int(inside.sum()))
        return polygons

    def _density_hull(self, points: np.ndarray, rng: np.random.Generator, name: str) -> np.ndarray:
        if len(points) < 3:
            raise GatingError(f"Not enough events to derive gate {name}")
        # Subset to avoid memory issues with KDE on large data
        sample = points
        if len(points) > self.config.max_kde_events:
            sample = points[rng.choice(len(points), self.config.max_kde_events, replace=False)]
        try:
            density = gaussian_kde(sample.T)(points.T)
            threshold = np.percentile(density, 100 - self.config.density_percentile)
            core = points[density >= threshold]
            hull = ConvexHull(core)
        except (np.linalg.LinAlgError, ValueError, RuntimeError) as e:
            raise GatingError(f"Could not derive gate {name}: {e}") from e
        return core[hull.vertices]
