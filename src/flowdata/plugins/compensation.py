"""Plugin interface for spectral compensation, with piecewise and matrix built-ins."""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import numpy as np
import pandas as pd
from pydantic import BaseModel, Field

from flowdata.exceptions import CompensationError

from .base import EmptyConfig, PluginBase

logger = logging.getLogger(__name__)

Arrays = Dict[str, np.ndarray]

AUTOFLUORESCENCE = "autofluorescence"
COMPENSATED = "compensated"


@dataclass
class CompensationRequest:
    """Inputs of one compensation run.

    ``reference`` and ``single_color`` hold control cells inside the fitting
    gate; ``samples`` and ``controls`` hold every cell of each entry, controls
    ordered single-color first and reference last.
    """

    channels: List[str]
    reference: Arrays
    single_color: List[Arrays]
    samples: List[Arrays]
    controls: List[Arrays]
    show_plots: bool = False


@dataclass
class CompensationResult:
    """Per-stage outputs keyed by role (``autofluorescence``, ``compensated``)."""

    samples: Dict[str, List[Arrays]]
    controls: Dict[str, List[Arrays]]
    fit_params: Dict[str, Any] = field(default_factory=dict)


def _matrix(entry: Arrays, channels: Sequence[str]) -> np.ndarray:
    return np.column_stack([np.asarray(entry[ch], dtype=float) for ch in channels])


def _arrays(matrix: np.ndarray, channels: Sequence[str]) -> Arrays:
    return {ch: matrix[:, k].copy() for k, ch in enumerate(channels)}


class CompensationPlugin(PluginBase):
    PLUGIN_TYPE = "compensation_method"

    @abstractmethod
    def compensate(self, request: CompensationRequest) -> CompensationResult:
        raise NotImplementedError

    @staticmethod
    def autofluorescence(request: CompensationRequest) -> np.ndarray:
        """Median reference-control signal per channel."""
        reference = _matrix(request.reference, request.channels)
        if len(reference) == 0:
            raise CompensationError("Reference control has no cells inside the fitting gate")
        return np.median(reference, axis=0)

    @staticmethod
    def check_request(request: CompensationRequest) -> None:
        if len(request.single_color) != len(request.channels):
            raise CompensationError(
                f"Expected {len(request.channels)} single-color controls, got {len(request.single_color)}"
            )
        for position, control in enumerate(request.single_color):
            if len(control[request.channels[position]]) == 0:
                raise CompensationError(f"Single-color control for {request.channels[position]} has no gated cells")


class PiecewiseConfig(BaseModel):
    n_bins: int = Field(20, ge=2)


class PiecewiseCompensation(CompensationPlugin):
    """Subtract bleed-through estimated from binned single-color control curves.

    For every ordered channel pair the single-color control of the source
    channel gives a curve of median target signal against source signal; the
    curve is interpolated at each cell's source value and subtracted.
    """

    config_model = PiecewiseConfig

    def _curve(self, source: np.ndarray, target: np.ndarray) -> tuple:
        edges = np.unique(np.quantile(source, np.linspace(0, 1, self.config.n_bins + 1)))
        positions = np.clip(np.searchsorted(edges, source, side="right") - 1, 0, max(len(edges) - 2, 0))
        centers, bleed = [], []
        for b in np.unique(positions):
            in_bin = positions == b
            centers.append(np.median(source[in_bin]))
            bleed.append(np.median(target[in_bin]))
        return np.asarray(centers), np.asarray(bleed)

    def compensate(self, request: CompensationRequest) -> CompensationResult:
        self.check_request(request)
        channels = request.channels
        af = self.autofluorescence(request)
        curves = {}
        for j, control in enumerate(request.single_color):
            corrected = _matrix(control, channels) - af
            for k in range(len(channels)):
                if k != j:
                    curves[(j, k)] = self._curve(corrected[:, j], corrected[:, k])

        def apply(entry: Arrays) -> Arrays:
            data = _matrix(entry, channels) - af
            out = data.copy()
            for (j, k), (centers, bleed) in curves.items():
                out[:, k] -= np.interp(data[:, j], centers, bleed)
            return _arrays(out, channels)

        logger.info("Computed piecewise compensation curves for %d channel pair(s)", len(curves))
        return CompensationResult(
            samples={COMPENSATED: [apply(entry) for entry in request.samples]},
            controls={COMPENSATED: [apply(entry) for entry in request.controls]},
            fit_params={"autofluorescence": dict(zip(channels, af.tolist())), "curves": curves},
        )


class MatrixCompensation(CompensationPlugin):
    """Autofluorescence subtraction followed by inversion of a spillover matrix.

    ``spillover[j, k]`` is the least-squares slope through the origin of
    channel ``k`` against channel ``j`` in the single-color control for ``j``.
    """

    config_model = EmptyConfig

    def spillover(self, request: CompensationRequest, af: np.ndarray) -> np.ndarray:
        n = len(request.channels)
        spill = np.eye(n)
        for j, control in enumerate(request.single_color):
            data = _matrix(control, request.channels) - af
            denom = np.sum(data[:, j] ** 2)
            if denom == 0:
                raise CompensationError(f"Single-color control for {request.channels[j]} carries no signal")
            for k in range(n):
                if k != j:
                    spill[j, k] = np.sum(data[:, j] * data[:, k]) / denom
        return spill

    def compensate(self, request: CompensationRequest) -> CompensationResult:
        self.check_request(request)
        channels = request.channels
        af = self.autofluorescence(request)
        spill = self.spillover(request, af)
        try:
            unmix = np.linalg.inv(spill)
        except np.linalg.LinAlgError as e:
            raise CompensationError(f"Spillover matrix is singular: {e}") from e

        def stages(entries: List[Arrays]) -> Dict[str, List[Arrays]]:
            subtracted = [_matrix(entry, channels) - af for entry in entries]
            return {
                AUTOFLUORESCENCE: [_arrays(data, channels) for data in subtracted],
                COMPENSATED: [_arrays(data @ unmix, channels) for data in subtracted],
            }

        logger.info("Computed %dx%d spillover matrix", len(channels), len(channels))
        return CompensationResult(
            samples=stages(request.samples),
            controls=stages(request.controls),
            fit_params={
                "autofluorescence": dict(zip(channels, af.tolist())),
                "spillover": pd.DataFrame(spill, index=channels, columns=channels),
            },
        )
