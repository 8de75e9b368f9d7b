"""Data models shared by the dataset, its collaborators and the CLI."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


@dataclass
class ImportedSample:
    """One imported sample or control, as produced by the data importer.

    ``channels`` maps channel name -> data type -> per-cell values; ``scatter``
    holds the raw scatter channels used for gating and ``gates`` any masks
    computed before import.
    """

    channels: Dict[str, Dict[str, np.ndarray]]
    n_obs: int
    scatter: Dict[str, np.ndarray] = field(default_factory=dict)
    gates: Dict[str, np.ndarray] = field(default_factory=dict)
    name: Optional[str] = None

    def data_types(self) -> List[str]:
        """Data types present on the first channel, in insertion order."""
        for values in self.channels.values():
            return list(values)
        return []


@dataclass(frozen=True)
class GatePolygon:
    """A 2-D polygon gate drawn on two scatter channels."""

    name: str
    x_channel: str
    y_channel: str
    vertices: np.ndarray
    parent: Optional[str] = None


@dataclass(frozen=True)
class CrossedGate:
    """A gate derived by combining other gates with AND/OR."""

    name: str
    mode: str
    sources: tuple


class BeadSpec(BaseModel):
    """Calibration bead acquisition: data file, bead type and production lot."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    filename: Path
    type: str
    lot: str


class ChannelFit(BaseModel):
    """Per-channel standard curve: log10(MEF) = slope * log10(signal) + intercept."""
    model_config = ConfigDict(frozen=True)

    slope: float
    intercept: float
    peaks: List[float] = Field(default_factory=list)

    def apply(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=float)
        magnitude = np.abs(values)
        with np.errstate(divide="ignore"):
            scaled = np.where(
                magnitude > 0,
                10 ** (self.intercept + self.slope * np.log10(np.where(magnitude > 0, magnitude, 1.0))),
                0.0,
            )
        return np.sign(values) * scaled


class BinConfiguration(BaseModel):
    """The active binning selection."""
    model_config = ConfigDict(frozen=True)

    channels: List[str]
    edges: List[List[float]]
    data_type: str
    gate: str

    @property
    def bin_inputs(self) -> Dict[str, List[float]]:
        return dict(zip(self.channels, self.edges))

    @property
    def shape(self) -> tuple:
        return tuple(len(e) - 1 for e in self.edges)
