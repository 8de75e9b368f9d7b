"""N-dimensional half-open binning of per-cell values."""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Mapping, Sequence

import numpy as np
import pandas as pd

from flowdata.exceptions import IndexOutOfRangeError, InvalidBinEdgesError, ValidationError
from flowdata.model import BinConfiguration

logger = logging.getLogger(__name__)


def validate_bin_inputs(bin_inputs: Mapping[str, Sequence[float]]) -> Dict[str, np.ndarray]:
    """Coerce channel -> edges into float arrays, rejecting edges that define no bins."""
    if not isinstance(bin_inputs, Mapping) or not bin_inputs:
        raise ValidationError("Bin inputs must be a non-empty mapping of channel to edges")
    checked = {}
    for channel, edges in bin_inputs.items():
        try:
            array = np.asarray(edges, dtype=float)
        except (TypeError, ValueError) as e:
            raise InvalidBinEdgesError(f"Bin edges for {channel} must be numeric") from e
        if array.ndim != 1 or array.size < 2:
            raise InvalidBinEdgesError(f"At least two bin edges are needed for {channel}")
        if not np.all(np.isfinite(array)):
            raise InvalidBinEdgesError(f"Bin edges for {channel} must be finite")
        if np.any(np.diff(array) <= 0):
            raise InvalidBinEdgesError(f"Bin edges for {channel} must be strictly increasing")
        checked[channel] = array
    return checked


def assign_bins(values: np.ndarray, edges: Sequence[np.ndarray], cell_ids: np.ndarray | None = None) -> np.ndarray:
    """Group cells into the grid spanned by ``edges``.

    ``values`` is cells x channels. A cell lands in bin ``i`` along a channel
    when ``edges[i] <= value < edges[i + 1]``; cells outside the outer edges on
    any channel are dropped. Returns an object array shaped by the bin counts
    whose elements are integer arrays of ``cell_ids`` (row positions by default).
    """
    values = np.asarray(values, dtype=float).reshape(-1, len(edges))
    if cell_ids is None:
        cell_ids = np.arange(len(values))
    cell_ids = np.asarray(cell_ids, dtype=np.intp)
    shape = tuple(len(e) - 1 for e in edges)

    keep = np.ones(len(values), dtype=bool)
    positions = []
    for k, e in enumerate(edges):
        column = values[:, k]
        keep &= (column >= e[0]) & (column < e[-1])
        positions.append(np.searchsorted(e, column, side="right") - 1)

    flat = np.ravel_multi_index(tuple(p[keep] for p in positions), shape)
    kept_ids = cell_ids[keep]
    order = np.argsort(flat, kind="stable")
    counts = np.bincount(flat, minlength=int(np.prod(shape)))
    groups = np.split(kept_ids[order], np.cumsum(counts)[:-1])

    bins = np.empty(shape, dtype=object)
    for flat_index, group in enumerate(groups):
        bins[np.unravel_index(flat_index, shape)] = group
    return bins


class BinCollection:
    """Per-sample bin grids computed for one :class:`BinConfiguration`."""

    def __init__(self, configuration: BinConfiguration, bins: Sequence[np.ndarray]) -> None:
        self.configuration = configuration
        self._bins: List[np.ndarray] = list(bins)

    def __len__(self) -> int:
        return len(self._bins)

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self._bins)

    def __getitem__(self, position: int) -> np.ndarray:
        return self._bins[position]

    def for_sample(self, sample_id: int) -> np.ndarray:
        if not 1 <= sample_id <= len(self._bins):
            raise IndexOutOfRangeError(f"Sample id {sample_id} out of range 1..{len(self._bins)}")
        return self._bins[sample_id - 1]

    def counts(self) -> List[np.ndarray]:
        return [np.vectorize(len, otypes=[int])(grid) for grid in self._bins]

    def to_frame(self) -> pd.DataFrame:
        """Long table of bin occupancy: sample_id, one index column per channel, count."""
        channels = self.configuration.channels
        rows = []
        for sample_id, grid_counts in enumerate(self.counts(), start=1):
            for index in np.ndindex(grid_counts.shape):
                rows.append((sample_id, *index, int(grid_counts[index])))
        return pd.DataFrame(rows, columns=["sample_id", *channels, "count"])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BinCollection):
            return NotImplemented
        if self.configuration != other.configuration or len(self) != len(other):
            return False
        return all(
            a.shape == b.shape and all(np.array_equal(x, y) for x, y in zip(a.flat, b.flat))
            for a, b in zip(self._bins, other._bins)
        )
