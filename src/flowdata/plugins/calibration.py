"""Plugin interface for bead-based unit calibration, and the built-in regression fitter."""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import Dict, List, Mapping, Sequence

import numpy as np
from pydantic import BaseModel, Field
from sklearn.cluster import KMeans

from flowdata.exceptions import CalibrationError
from flowdata.io import read_events, standardize_channels
from flowdata.model import BeadSpec, ChannelFit

from .base import PluginBase

logger = logging.getLogger(__name__)


class CalibrationPlugin(PluginBase):
    """Fits per-channel standard curves from bead files and applies them to per-cell arrays."""

    PLUGIN_TYPE = "calibration_method"

    @abstractmethod
    def fit(self, beads: BeadSpec, channels: Sequence[str], show_plots: bool = False) -> Dict[str, ChannelFit]:
        raise NotImplementedError

    def apply(
        self,
        arrays: Sequence[Mapping[str, np.ndarray]],
        fits: Mapping[str, ChannelFit],
    ) -> List[Dict[str, np.ndarray]]:
        """Convert each entry's channel arrays with the channel's fit."""
        missing = [ch for ch in (arrays[0] if arrays else {}) if ch not in fits]
        if missing:
            raise CalibrationError(f"No calibration fit for channel(s): {', '.join(missing)}")
        return [{ch: fits[ch].apply(values) for ch, values in entry.items()} for entry in arrays]


class BeadRegressionConfig(BaseModel):
    # bead type -> lot -> channel -> reference MEF peak values
    bead_mef_values: Dict[str, Dict[str, Dict[str, List[float]]]] = {}
    rename: Dict[str, str] = {}
    normalize_names: bool = True
    n_init: int = Field(10, ge=1)
    random_state: int = 0


class BeadRegressionCalibration(CalibrationPlugin):
    """Locate bead peaks with k-means on log10 intensity and regress log10(MEF) on log10(peak)."""

    config_model = BeadRegressionConfig

    def reference_values(self, beads: BeadSpec, channel: str) -> np.ndarray:
        try:
            values = self.config.bead_mef_values[beads.type][beads.lot][channel]
        except KeyError:
            raise CalibrationError(
                f"No reference MEF values for bead type {beads.type!r}, lot {beads.lot!r}, channel {channel}"
            ) from None
        values = np.asarray(values, dtype=float)
        if values.size < 2 or np.any(values <= 0):
            raise CalibrationError(f"Reference MEF values for {channel} need at least two positive peaks")
        return np.sort(values)

    def fit(self, beads: BeadSpec, channels: Sequence[str], show_plots: bool = False) -> Dict[str, ChannelFit]:
        events = standardize_channels(
            read_events(beads.filename), self.config.rename, self.config.normalize_names
        )
        fits = {}
        for channel in channels:
            if channel not in events.columns:
                raise CalibrationError(f"Bead file {beads.filename} has no channel {channel}")
            fits[channel] = self._fit_channel(events[channel].to_numpy(dtype=float), self.reference_values(beads, channel))
            logger.debug("Calibration fit for %s: %s", channel, fits[channel])
        logger.info("Fitted bead calibration for %d channel(s) from %s", len(fits), beads.filename)
        return fits

    def _fit_channel(self, values: np.ndarray, reference: np.ndarray) -> ChannelFit:
        positive = values[np.isfinite(values) & (values > 0)]
        n_peaks = len(reference)
        if len(np.unique(positive)) < n_peaks:
            raise CalibrationError(f"Found fewer distinct positive bead events than the {n_peaks} expected peaks")
        log_values = np.log10(positive).reshape(-1, 1)
        kmeans = KMeans(n_clusters=n_peaks, n_init=self.config.n_init, random_state=self.config.random_state)
        kmeans.fit(log_values)
        centers = np.sort(kmeans.cluster_centers_.ravel())
        slope, intercept = np.polyfit(centers, np.log10(reference), 1)
        return ChannelFit(slope=float(slope), intercept=float(intercept), peaks=(10 ** centers).tolist())
