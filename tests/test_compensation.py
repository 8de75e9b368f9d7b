"""Tests for the piecewise and matrix compensation routines."""
import numpy as np
import pytest

from flowdata.exceptions import CompensationError
from flowdata.plugins.compensation import (
    AUTOFLUORESCENCE,
    COMPENSATED,
    CompensationRequest,
    MatrixCompensation,
    PiecewiseCompensation,
)

CHANNELS = ["GFP", "RFP"]
AF = np.array([5.0, 8.0])
SPILL = np.array([[1.0, 0.25], [0.1, 1.0]])


def _observed(true: np.ndarray) -> dict:
    observed = true @ SPILL + AF
    return {ch: observed[:, k] for k, ch in enumerate(CHANNELS)}


@pytest.fixture
def compensation_request(rng):
    n = 2_000
    reference = _observed(np.zeros((n, 2)))
    gfp = np.column_stack([rng.uniform(50, 2_000, n), np.zeros(n)])
    rfp = np.column_stack([np.zeros(n), rng.uniform(50, 2_000, n)])
    single_color = [_observed(gfp), _observed(rfp)]
    truth = np.column_stack([rng.uniform(0, 1_000, 300), rng.uniform(0, 1_000, 300)])
    return CompensationRequest(
        channels=CHANNELS,
        reference=reference,
        single_color=single_color,
        samples=[_observed(truth)],
        controls=single_color + [reference],
    ), truth


def test_matrix_recovers_spillover_and_signal(compensation_request):
    request, truth = compensation_request
    result = MatrixCompensation().compensate(request)
    np.testing.assert_allclose(result.fit_params["spillover"].to_numpy(), SPILL, atol=1e-9)
    assert result.fit_params["autofluorescence"] == pytest.approx({"GFP": 5.0, "RFP": 8.0})
    assert set(result.samples) == {AUTOFLUORESCENCE, COMPENSATED}
    compensated = result.samples[COMPENSATED][0]
    np.testing.assert_allclose(compensated["GFP"], truth[:, 0], atol=1e-6)
    np.testing.assert_allclose(compensated["RFP"], truth[:, 1], atol=1e-6)
    np.testing.assert_allclose(result.samples[AUTOFLUORESCENCE][0]["GFP"], request.samples[0]["GFP"] - 5.0)
    assert len(result.controls[COMPENSATED]) == 3


def test_matrix_spillover_is_least_squares_slope_through_origin():
    zeros = {"GFP": np.zeros(3), "RFP": np.zeros(3)}
    request = CompensationRequest(
        channels=CHANNELS,
        reference=zeros,
        single_color=[
            {"GFP": np.array([1.0, 2.0, 10.0]), "RFP": np.array([1.0, 1.0, 10.0])},
            {"GFP": np.zeros(3), "RFP": np.array([1.0, 2.0, 3.0])},
        ],
        samples=[zeros],
        controls=[zeros, zeros, zeros],
    )
    spill = MatrixCompensation().spillover(request, np.zeros(2))
    assert spill[0, 1] == pytest.approx(103 / 105)
    assert spill[1, 0] == 0.0


def test_piecewise_removes_most_bleed_through(compensation_request):
    request, truth = compensation_request
    result = PiecewiseCompensation({"n_bins": 25}).compensate(request)
    assert list(result.samples) == [COMPENSATED]
    compensated = result.samples[COMPENSATED][0]
    raw_error = np.abs(request.samples[0]["RFP"] - truth[:, 1]).mean()
    comp_error = np.abs(compensated["RFP"] - truth[:, 1]).mean()
    assert comp_error < 0.25 * raw_error
    gfp_control = result.controls[COMPENSATED][0]
    assert np.abs(np.median(gfp_control["RFP"])) < 5


def test_single_color_count_must_match_channels(compensation_request):
    request, _ = compensation_request
    request.single_color = request.single_color[:1]
    with pytest.raises(CompensationError):
        MatrixCompensation().compensate(request)


def test_empty_reference(compensation_request):
    request, _ = compensation_request
    request.reference = {ch: np.empty(0) for ch in CHANNELS}
    with pytest.raises(CompensationError):
        PiecewiseCompensation().compensate(request)


def test_singular_spillover(compensation_request):
    request, _ = compensation_request
    signal = request.single_color[0]["GFP"]
    request.reference = {ch: np.zeros(10) for ch in CHANNELS}
    request.single_color = [{"GFP": signal, "RFP": signal}, {"GFP": signal, "RFP": signal}]
    with pytest.raises(CompensationError):
        MatrixCompensation().compensate(request)
