"""Tests for scatter pooling, polygon masks and the density gating strategy."""
import numpy as np
import pandas as pd
import pytest

from conftest import CHANNELS, SAMPLE_MAP, scatter_events
from flowdata.config import AppConfig
from flowdata.dataset import FlowData
from flowdata.exceptions import GatingError, InvalidMethodError, ShapeMismatchError
from flowdata.gating import apply_polygons, cross_masks, points_in_polygon, pool_scatter
from flowdata.model import GatePolygon, ImportedSample
from flowdata.plugins.base import PluginError
from flowdata.plugins.gating import DensityGatingPlugin
from flowdata.store import SampleCollection, SampleData

SQUARE = np.array([[0, 0], [2, 0], [2, 2], [0, 2]], dtype=float)


def _collection(sizes):
    entries = []
    for n in sizes:
        record = ImportedSample(
            channels={"GFP": {"raw": np.zeros(n)}},
            n_obs=n,
            scatter={"FSC_A": np.arange(n, dtype=float), "SSC_A": np.arange(n, dtype=float) * 2},
        )
        entries.append(SampleData.from_imported(record, ["GFP"], ["FSC_A", "SSC_A"]))
    return SampleCollection(entries, ["GFP"])


def test_pool_scatter_takes_every_nth_cell_from_the_first():
    pooled = pool_scatter(_collection([7, 5, 4]), ["FSC_A", "SSC_A"])
    # stride defaults to the number of samples
    assert pooled["FSC_A"].tolist() == [0, 3, 6, 0, 3, 0, 3]
    assert pooled["SSC_A"].tolist() == [0, 6, 12, 0, 6, 0, 6]


def test_pool_scatter_with_configured_stride():
    pooled = pool_scatter(_collection([7, 5]), ["FSC_A"], stride=4)
    assert pooled["FSC_A"].tolist() == [0, 4, 0, 4]


def test_pool_scatter_missing_channel():
    with pytest.raises(GatingError):
        pool_scatter(_collection([3]), ["FSC_H"])


def test_cross_masks():
    a = np.array([True, True, False, False])
    b = np.array([True, False, True, False])
    np.testing.assert_array_equal(cross_masks("and", [a, b]), [True, False, False, False])
    np.testing.assert_array_equal(cross_masks("or", [a, b]), [True, True, True, False])
    with pytest.raises(InvalidMethodError):
        cross_masks("xor", [a, b])
    with pytest.raises(ShapeMismatchError):
        cross_masks("and", [a, b[:3]])


def test_points_in_polygon():
    points = np.array([[1, 1], [3, 1], [0.5, 1.5]])
    np.testing.assert_array_equal(points_in_polygon(points, SQUARE), [True, False, True])
    assert points_in_polygon(np.empty((0, 2)), SQUARE).shape == (0,)


def test_apply_polygons_restricts_to_parent():
    scatter = pd.DataFrame({"x": [1.0, 1.0, 3.0], "y": [1.0, 3.0, 1.0]})
    polygons = [
        GatePolygon("outer", "x", "y", SQUARE),
        GatePolygon("inner", "y", "x", SQUARE * 2, parent="outer"),
    ]
    masks = apply_polygons(scatter, polygons)
    np.testing.assert_array_equal(masks["outer"], [True, False, False])
    np.testing.assert_array_equal(masks["inner"], [True, False, False])


def test_apply_polygons_unknown_parent():
    scatter = pd.DataFrame({"x": [1.0], "y": [1.0]})
    with pytest.raises(GatingError):
        apply_polygons(scatter, [GatePolygon("g", "x", "y", SQUARE, parent="missing")])


class TestDensityGating:
    def test_derives_nested_gates(self, rng):
        pooled = pd.DataFrame(scatter_events(rng, 3_000))
        plugin = DensityGatingPlugin({"density_percentile": 80})
        polygons = plugin.derive_gates(pooled)
        assert [p.name for p in polygons] == ["P1", "P2", "P3"]
        assert [p.parent for p in polygons] == [None, "P1", "P2"]
        assert (polygons[0].x_channel, polygons[0].y_channel) == ("FSC_A", "SSC_A")

        masks = plugin.apply_gates(pooled, polygons)
        fractions = [masks[name].mean() for name in ("P1", "P2", "P3")]
        assert 0.6 < fractions[0] < 0.95
        assert fractions[0] >= fractions[1] >= fractions[2] > 0.3

    def test_is_deterministic(self, rng):
        pooled = pd.DataFrame(scatter_events(rng, 1_000))
        plugin = DensityGatingPlugin({"max_kde_events": 200})
        first = plugin.derive_gates(pooled)
        second = plugin.derive_gates(pooled)
        for a, b in zip(first, second):
            np.testing.assert_array_equal(a.vertices, b.vertices)

    def test_needs_events(self):
        pooled = pd.DataFrame({ch: [1.0, 2.0] for ch in ["FSC_A", "FSC_H", "SSC_A", "SSC_H"]})
        with pytest.raises(GatingError):
            DensityGatingPlugin().derive_gates(pooled)

    def test_config_validation(self):
        with pytest.raises(PluginError):
            DensityGatingPlugin({"gate_names": ["P1"]})
        with pytest.raises(PluginError):
            DensityGatingPlugin({"density_percentile": 0})


def test_flowdata_gate_with_density_strategy(imported_samples, plugin_registry):
    config = AppConfig.model_validate({"gating": {"subsample_stride": 2}, "transforms": {"method": "linear"}})
    data = FlowData(imported_samples, CHANNELS, SAMPLE_MAP, config=config, plugins=plugin_registry)
    assert data.gate() == ["P1", "P2", "P3"]
    for entry in data.samples:
        assert 0 < entry.mask("P3").sum() <= entry.mask("P1").sum()


def test_flowdata_gate_uses_configured_stages(imported_samples, plugin_registry):
    config = AppConfig.model_validate({
        "gating": {"gate_names": ["cells", "singlets"], "stages": [["FSC_A", "SSC_A"], ["FSC_A", "FSC_H"]]},
        "transforms": {"method": "linear"},
    })
    data = FlowData(imported_samples, CHANNELS, SAMPLE_MAP, config=config, plugins=plugin_registry)
    assert data.gate() == ["cells", "singlets"]
    assert data.gate_polygons["singlets"].y_channel == "FSC_H"
    assert data.gate_polygons["singlets"].parent == "cells"
