"""Tests for the binning engine and the observable binning configuration."""
import numpy as np
import pandas as pd
import pytest

from conftest import CHANNELS, SAMPLE_MAP
from flowdata.binning import BinCollection, assign_bins, validate_bin_inputs
from flowdata.dataset import FlowData
from flowdata.exceptions import (
    IndexOutOfRangeError,
    InvalidBinEdgesError,
    UnknownChannelError,
    UnknownDataTypeError,
    UnknownGateError,
    ValidationError,
)
from flowdata.model import ImportedSample


def _three_sample_dataset(config, values):
    samples = [
        ImportedSample(
            channels={"GFP": {"raw": np.asarray(v, float)}, "RFP": {"raw": np.zeros(len(v))}},
            n_obs=len(v),
        )
        for v in values
    ]
    return FlowData(samples, ["GFP", "RFP"], SAMPLE_MAP.iloc[:3], config=config)


def test_half_open_binning_scenario(config):
    values = [
        [-0.5, 0.0, 0.5, 1.0, 1.5, 2.0, 2.5],
        [0.99, 1.99, -1.0],
        [1.0, 1.0, 0.0],
    ]
    data = _three_sample_dataset(config, values)
    bins = data.bin({"GFP": [0, 1, 2]}, "raw", "all")

    assert len(bins) == 3
    assert all(grid.shape == (2,) for grid in bins)
    np.testing.assert_array_equal(bins[0][0], [1, 2])
    np.testing.assert_array_equal(bins[0][1], [3, 4])
    np.testing.assert_array_equal(bins[1][0], [0])
    np.testing.assert_array_equal(bins[1][1], [1])
    np.testing.assert_array_equal(bins[2][0], [2])
    np.testing.assert_array_equal(bins[2][1], [0, 1])
    assert data.bin_configuration.gate == "all"
    assert data.bin_inputs == {"GFP": [0.0, 1.0, 2.0]}


def test_every_cell_lands_in_at_most_one_bin(flow_data):
    bins = flow_data.bin({"GFP": [-1, 0, 1, 2, 3], "RFP": [0, 1.5, 3]}, "raw")
    for entry, grid in zip(flow_data.samples, bins):
        assert grid.shape == (4, 2)
        cells = np.concatenate(list(grid.flat))
        assert len(cells) == len(np.unique(cells))
        gfp, rfp = entry.get("GFP", "raw"), entry.get("RFP", "raw")
        expected = (gfp >= -1) & (gfp < 3) & (rfp >= 0) & (rfp < 3)
        assert len(cells) == expected.sum()


def test_bins_hold_row_positions_of_full_sample(flow_data):
    flow_data.gate()
    bins = flow_data.bin({"GFP": [-1, 1, 3]}, "raw", "P3")
    entry = flow_data.samples[0]
    low = bins.for_sample(1)[0]
    assert entry.mask("P3")[low].all()
    assert np.all(entry.get("GFP", "raw")[low] < 1)


def test_binning_is_idempotent(flow_data):
    first = flow_data.bin({"GFP": [0, 1, 2], "RFP": [0, 2]}, "raw", "all")
    second = flow_data.bin({"GFP": [0, 1, 2], "RFP": [0, 2]}, "raw", "all")
    assert first is not second
    assert first == second


@pytest.mark.parametrize("edges", [[1.0], [], [0, 0, 1], [2, 1], [0, np.inf], "ab"])
def test_invalid_edges(flow_data, edges):
    with pytest.raises(InvalidBinEdgesError):
        flow_data.bin({"GFP": edges}, "raw")
    assert flow_data.bins is None


def test_unknown_references(flow_data):
    with pytest.raises(UnknownChannelError):
        flow_data.bin({"BFP": [0, 1]}, "raw")
    with pytest.raises(UnknownDataTypeError):
        flow_data.bin({"GFP": [0, 1]}, "mef")
    with pytest.raises(UnknownGateError):
        flow_data.bin({"GFP": [0, 1]}, "raw", "P3")
    with pytest.raises(ValidationError):
        flow_data.bin({}, "raw")


def test_counts_and_frame(flow_data):
    bins = flow_data.bin({"GFP": [-1, 1, 3], "RFP": [-1, 3]}, "raw")
    counts = bins.counts()
    assert [c.shape for c in counts] == [(2, 1)] * 4
    assert counts[0].sum() == flow_data.num_cells[0]
    frame = bins.to_frame()
    assert list(frame.columns) == ["sample_id", "GFP", "RFP", "count"]
    assert len(frame) == 4 * 2
    assert frame.groupby("sample_id")["count"].sum().tolist() == flow_data.num_cells
    with pytest.raises(IndexOutOfRangeError):
        bins.for_sample(5)


def test_assign_bins_drops_values_outside_edges():
    values = np.array([[0.5, 0.5], [1.5, 0.5], [2.5, 0.5], [0.5, -1.0]])
    grid = assign_bins(values, [np.array([0.0, 1.0, 2.0]), np.array([0.0, 1.0])])
    assert grid.shape == (2, 1)
    np.testing.assert_array_equal(grid[0, 0], [0])
    np.testing.assert_array_equal(grid[1, 0], [1])


def test_assign_bins_with_no_cells():
    grid = assign_bins(np.empty((0, 1)), [np.array([0.0, 1.0, 2.0])])
    assert [len(cell) for cell in grid] == [0, 0]


def test_validate_bin_inputs_coerces_to_float():
    checked = validate_bin_inputs({"GFP": [0, 1, 2]})
    assert checked["GFP"].dtype == float


class TestObservableConfiguration:
    def test_setting_properties_rebins_once_complete(self, flow_data):
        flow_data.bin_inputs = {"GFP": [0, 1, 2]}
        assert flow_data.bins is None
        flow_data.bin_data_type = "raw"
        assert flow_data.bins is not None
        assert flow_data.bins.configuration.channels == ["GFP"]

        flow_data.gate()
        flow_data.bin_gate = "P1"
        assert flow_data.bins.configuration.gate == "P1"

        flow_data.bin_inputs = {"RFP": [0, 1]}
        assert flow_data.bins.configuration.channels == ["RFP"]
        assert flow_data.bins.configuration.gate == "P1"

    def test_invalid_property_value_is_rejected(self, flow_data):
        with pytest.raises(UnknownDataTypeError):
            flow_data.bin_data_type = "mef"
        with pytest.raises(UnknownGateError):
            flow_data.bin_gate = "P9"
        with pytest.raises(InvalidBinEdgesError):
            flow_data.bin_inputs = {"GFP": [1]}
        assert flow_data.bin_data_type is None
        assert flow_data.bin_inputs is None

    def test_observers_run_in_registration_order(self, flow_data):
        calls = []
        flow_data.subscribe("binning_configured", lambda **kw: calls.append(("configured", kw["field"])))
        flow_data.subscribe("bins_updated", lambda bins: calls.append(("updated", len(bins))))
        flow_data.bin_inputs = {"GFP": [0, 1]}
        flow_data.bin_data_type = "raw"
        assert calls == [
            ("configured", "bin_inputs"),
            ("updated", 4),
            ("configured", "bin_data_type"),
        ]

    def test_observer_changing_configuration_sees_final_bins(self, flow_data):
        runs = []

        def widen(bins):
            runs.append(bins.configuration.edges)
            flow_data.bin_inputs = {"GFP": [0, 1, 2, 3]}

        flow_data.subscribe("bins_updated", widen)
        flow_data.bin({"GFP": [0, 1]}, "raw")
        assert runs == [[[0.0, 1.0]], [[0.0, 1.0, 2.0, 3.0]]]
        assert flow_data.bins.configuration.edges == [[0.0, 1.0, 2.0, 3.0]]

    def test_property_set_from_observer_is_not_lost(self, flow_data):
        def widen(bins):
            flow_data.bin_inputs = {"GFP": [0, 1, 2, 3]}

        flow_data.subscribe("bins_updated", widen)
        flow_data.bin_data_type = "raw"
        flow_data.bin_inputs = {"GFP": [0, 1]}
        assert flow_data.bin_inputs == {"GFP": [0.0, 1.0, 2.0, 3.0]}
        assert flow_data.bins.configuration.bin_inputs == flow_data.bin_inputs
        assert flow_data.bins.configuration.data_type == flow_data.bin_data_type

    def test_setting_an_unchanged_value_does_not_rebin(self, flow_data):
        calls = []
        flow_data.subscribe("bins_updated", lambda bins: calls.append(1))
        flow_data.bin_inputs = {"GFP": [0, 1]}
        flow_data.bin_data_type = "raw"
        flow_data.bin_inputs = {"GFP": [0.0, 1.0]}
        flow_data.bin_data_type = "raw"
        assert calls == [1]

    def test_unsubscribe(self, flow_data):
        calls = []
        unsubscribe = flow_data.subscribe("bins_updated", lambda bins: calls.append(1))
        flow_data.bin({"GFP": [0, 1]}, "raw")
        unsubscribe()
        flow_data.bin({"GFP": [0, 1]}, "raw")
        assert calls == [1]

    def test_unknown_event(self, flow_data):
        with pytest.raises(ValidationError):
            flow_data.subscribe("gated", lambda **kw: None)
