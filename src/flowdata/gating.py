"""Gate mask primitives: pooled scatter, polygon containment and gate crossing."""

from __future__ import annotations

import logging
from functools import reduce
from typing import Dict, Iterable, Optional, Sequence

import numpy as np
import pandas as pd
from matplotlib.path import Path

from flowdata.exceptions import GatingError, InvalidMethodError, ShapeMismatchError
from flowdata.model import GatePolygon
from flowdata.store import SampleCollection

logger = logging.getLogger(__name__)


def pool_scatter(
    collection: SampleCollection,
    scatter_channels: Sequence[str],
    stride: Optional[int] = None,
) -> pd.DataFrame:
    """Pool every ``stride``-th cell of each sample's scatter data, starting at the first cell.

    The stride defaults to the number of samples, which keeps the pooled size
    close to that of one sample while drawing from all of them in proportion.
    """
    stride = stride or max(len(collection), 1)
    frames = []
    for entry in collection:
        missing = [ch for ch in scatter_channels if ch not in entry.scatter.columns]
        if missing:
            raise GatingError(f"Scatter channels missing from sample: {', '.join(missing)}")
        frames.append(entry.scatter[list(scatter_channels)].iloc[::stride])
    if not frames:
        return pd.DataFrame(columns=list(scatter_channels))
    pooled = pd.concat(frames, ignore_index=True)
    logger.debug("Pooled %d scatter events with stride %d", len(pooled), stride)
    return pooled


def cross_masks(mode: str, masks: Sequence[np.ndarray]) -> np.ndarray:
    """Elementwise AND/OR across equally long boolean masks."""
    if mode == "and":
        op = np.logical_and
    elif mode == "or":
        op = np.logical_or
    else:
        raise InvalidMethodError(f"Unsupported gate crossing mode: {mode!r}")
    lengths = {len(m) for m in masks}
    if len(lengths) > 1:
        raise ShapeMismatchError(f"Cannot cross masks of different lengths: {sorted(lengths)}")
    return reduce(op, [np.asarray(m, dtype=bool) for m in masks])


def points_in_polygon(points: np.ndarray, vertices: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=float).reshape(-1, 2)
    if len(points) == 0:
        return np.zeros(0, dtype=bool)
    return Path(np.asarray(vertices, dtype=float)).contains_points(points)


def apply_polygons(scatter: pd.DataFrame, polygons: Iterable[GatePolygon]) -> Dict[str, np.ndarray]:
    """Evaluate polygons in order; a polygon with a parent only admits the parent's cells."""
    masks: Dict[str, np.ndarray] = {}
    for polygon in polygons:
        for ch in (polygon.x_channel, polygon.y_channel):
            if ch not in scatter.columns:
                raise GatingError(f"Gate {polygon.name} needs scatter channel {ch}")
        mask = points_in_polygon(
            scatter[[polygon.x_channel, polygon.y_channel]].to_numpy(), polygon.vertices
        )
        if polygon.parent is not None:
            if polygon.parent not in masks:
                raise GatingError(f"Gate {polygon.name} depends on unknown gate {polygon.parent}")
            mask &= masks[polygon.parent]
        masks[polygon.name] = mask
    return masks

