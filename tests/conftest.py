from __future__ import annotations

from pathlib import Path
from typing import Dict, List

import numpy as np
import pandas as pd
import pytest

from flowdata.config import AppConfig
from flowdata.dataset import FlowData
from flowdata.model import ChannelFit, GatePolygon, ImportedSample
from flowdata.plugins.base import EmptyConfig
from flowdata.plugins.calibration import CalibrationPlugin
from flowdata.plugins.gating import GatingStrategyPlugin
from flowdata.plugins.registry import PluginRegistry

CHANNELS = ["GFP", "RFP"]
SCATTER = ["FSC_A", "FSC_H", "SSC_A", "SSC_H"]
# Four samples, each combination of plasmid x dox exactly once
SAMPLE_MAP = pd.DataFrame({
    "plasmid": ["A", "A", "B", "B"],
    "dox": [0, 100, 0, 100],
    "replicate": [1, 1, 1, 2],
})


def scatter_events(rng: np.random.Generator, n: int) -> Dict[str, np.ndarray]:
    fsc_a = rng.normal(50_000, 8_000, n)
    ssc_a = rng.normal(30_000, 6_000, n)
    return {
        "FSC_A": fsc_a,
        "FSC_H": 0.9 * fsc_a + rng.normal(0, 1_000, n),
        "SSC_A": ssc_a,
        "SSC_H": 0.8 * ssc_a + rng.normal(0, 1_000, n),
    }


def make_sample(
    rng: np.random.Generator,
    n: int,
    data_types=("raw",),
    scatter: bool = True,
    values: Dict[str, np.ndarray] | None = None,
) -> ImportedSample:
    values = values or {ch: rng.uniform(-1, 3, n) for ch in CHANNELS}
    channels = {ch: {dt: values[ch] + k for k, dt in enumerate(data_types)} for ch in CHANNELS}
    return ImportedSample(channels=channels, n_obs=n, scatter=scatter_events(rng, n) if scatter else {})


class BoxGating(GatingStrategyPlugin):
    """Fixed nested rectangles; enough for deterministic gate bookkeeping tests."""

    config_model = EmptyConfig

    def derive_gates(self, pooled: pd.DataFrame) -> List[GatePolygon]:
        def box(name, x, y, lo, hi, parent):
            vertices = np.array([[lo[0], lo[1]], [hi[0], lo[1]], [hi[0], hi[1]], [lo[0], hi[1]]], dtype=float)
            return GatePolygon(name=name, x_channel=x, y_channel=y, vertices=vertices, parent=parent)

        return [
            box("P1", "FSC_A", "SSC_A", (30_000, 15_000), (70_000, 45_000), None),
            box("P2", "FSC_A", "FSC_H", (30_000, 20_000), (70_000, 70_000), "P1"),
            box("P3", "SSC_A", "SSC_H", (15_000, 5_000), (45_000, 45_000), "P2"),
        ]


class UnitCalibration(CalibrationPlugin):
    """Identity standard curve for every channel."""

    config_model = EmptyConfig

    def fit(self, beads, channels, show_plots=False):
        return {ch: ChannelFit(slope=1.0, intercept=0.0) for ch in channels}


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(0)


@pytest.fixture
def plugin_registry() -> PluginRegistry:
    registry = PluginRegistry(discover=False)
    registry.register("gating", "box", BoxGating)
    registry.register("calibration", "unit", UnitCalibration)
    return registry


@pytest.fixture
def config() -> AppConfig:
    return AppConfig.model_validate({
        "gating": {"strategy": "box"},
        "calibration": {"method": "unit"},
        "transforms": {"method": "linear"},
    })


@pytest.fixture
def imported_samples(rng) -> List[ImportedSample]:
    return [make_sample(rng, n) for n in (300, 400, 350, 250)]


@pytest.fixture
def flow_data(imported_samples, config, plugin_registry) -> FlowData:
    return FlowData(imported_samples, CHANNELS, SAMPLE_MAP.copy(), config=config, plugins=plugin_registry)


def make_controls(rng: np.random.Generator, n: int = 400, spill: float = 0.2, af: float = 5.0):
    """Single-color controls (GFP, RFP) and an unstained reference, positive everywhere."""
    reference = make_sample(rng, n, values={ch: af + rng.normal(0, 0.5, n) for ch in CHANNELS})
    gfp = rng.uniform(100, 1_000, n)
    rfp = rng.uniform(100, 1_000, n)
    single_color = [
        make_sample(rng, n, values={"GFP": gfp + af, "RFP": spill * gfp + af}),
        make_sample(rng, n, values={"GFP": spill * rfp + af, "RFP": rfp + af}),
    ]
    return reference, single_color


@pytest.fixture
def controls(rng):
    return make_controls(rng)


@pytest.fixture
def bead_file(tmp_path: Path) -> Path:
    path = tmp_path / "beads.csv"
    path.write_text("GFP,RFP\n1,1\n")
    return path


@pytest.fixture
def calibrated_flow_data(rng, config, plugin_registry, bead_file) -> FlowData:
    """Gated dataset with controls and MEF data whose values stay positive."""
    samples = [
        make_sample(rng, n, values={ch: rng.uniform(10, 1_000, n) for ch in CHANNELS}) for n in (300, 400, 350, 250)
    ]
    data = FlowData(samples, CHANNELS, SAMPLE_MAP.copy(), config=config, plugins=plugin_registry)
    data.gate()
    reference, single_color = make_controls(rng)
    data.add_controls(reference, single_color)
    beads = {"filename": bead_file, "type": "URCP-38-2K", "lot": "AJ02"}
    data.convert_to_mef(beads, beads)
    return data
