import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from trackfit_reco.errors import (
    ConfigurationError,
    EdgeOfGridError,
    EmptyGridError,
    MissingCovarianceError,
    SingularMatrixError,
)
from trackfit_reco.parameters import BoundTrackParameters
from trackfit_reco.surfaces import PerigeeSurface
from trackfit_reco.vertexing import GaussianGridTrackDensity

BEAM_LINE = PerigeeSurface([0.0, 0.0, 0.0])


def _track(d0, z0, sigma_d0=0.1, sigma_z0=0.2, with_cov=True):
    cov = np.diag([sigma_d0 ** 2, sigma_z0 ** 2, 1e-4, 1e-4, 1e-4, 1.0]) if with_cov else None
    return BoundTrackParameters(BEAM_LINE, [d0, z0, 0.0, np.pi / 2, 0.5, 0.0], cov)


@pytest.mark.parametrize("kwargs", [
    {"trk_grid_size": 14},
    {"trk_grid_size": 0},
    {"main_grid_size": 15, "trk_grid_size": 15},
    {"z_min_max": 0.0},
])
def test_invalid_config_raises(kwargs):
    with pytest.raises(ConfigurationError):
        GaussianGridTrackDensity(GaussianGridTrackDensity.Config(**kwargs))


def test_empty_grid_raises():
    density = GaussianGridTrackDensity()
    grid = density.make_main_grid()
    with pytest.raises(EmptyGridError):
        density.get_max_z_position(grid)
    with pytest.raises(EmptyGridError):
        density.get_max_z_position_and_width(grid)


def test_wrong_grid_shape_raises():
    density = GaussianGridTrackDensity()
    with pytest.raises(ValueError):
        density.add_track(_track(0.0, 0.0), np.zeros(10))


def test_single_track_peak_and_removal():
    density = GaussianGridTrackDensity()
    grid = density.make_main_grid()
    z_bin, trk_grid = density.add_track(_track(0.0, 0.23), grid)

    # bin size 0.1 mm: z0 = 0.23 falls into the bin centred at 0.25
    assert z_bin == 1002
    assert trk_grid.shape == (15,)
    assert np.argmax(trk_grid) == 7
    assert density.get_max_z_position(grid) == pytest.approx(0.25)
    assert np.count_nonzero(grid) == 15

    density.remove_track_grid_from_main_grid(z_bin, trk_grid, grid)
    np.testing.assert_array_equal(grid, np.zeros_like(grid))


def test_add_remove_restores_previous_grid():
    density = GaussianGridTrackDensity()
    grid = density.make_main_grid()
    density.add_track(_track(0.02, -3.0), grid)
    density.add_track(_track(-0.05, 4.1, sigma_z0=0.3), grid)
    before = grid.copy()

    z_bin, trk_grid = density.add_track(_track(0.01, -2.95), grid)
    assert not np.allclose(grid, before)
    density.remove_track_grid_from_main_grid(z_bin, trk_grid, grid)
    np.testing.assert_allclose(grid, before, rtol=0, atol=1e-12)


def test_out_of_range_tracks_are_ignored():
    density = GaussianGridTrackDensity()
    grid = density.make_main_grid()
    for params in (_track(1.0, 0.0), _track(0.0, 150.0), _track(0.0, -100.5)):
        z_bin, trk_grid = density.add_track(params, grid)
        assert z_bin == -1
        np.testing.assert_array_equal(trk_grid, np.zeros(15))
        density.remove_track_grid_from_main_grid(z_bin, trk_grid, grid)
    assert not np.any(grid)


def test_track_without_covariance_raises():
    density = GaussianGridTrackDensity()
    with pytest.raises(MissingCovarianceError):
        density.add_track(_track(0.0, 0.0, with_cov=False), density.make_main_grid())


def test_width_matches_track_resolution():
    sigma_z0 = 0.5
    density = GaussianGridTrackDensity(GaussianGridTrackDensity.Config(trk_grid_size=41))
    grid = density.make_main_grid()
    # z0 on a bin center so the peak bin holds the true maximum
    density.add_track(_track(0.0, 0.05, sigma_z0=sigma_z0), grid)
    z, width = density.get_max_z_position_and_width(grid)
    assert z == pytest.approx(0.05)
    assert width == pytest.approx(sigma_z0, rel=0.02)


def test_width_at_grid_edge_raises():
    density = GaussianGridTrackDensity()
    grid = density.make_main_grid()
    density.add_track(_track(0.0, -99.97), grid)
    assert density.get_max_z_position(grid) == pytest.approx(-99.95)
    with pytest.raises(EdgeOfGridError):
        density.get_max_z_position_and_width(grid)

    # no half-maximum crossing anywhere on the grid
    flat = np.ones(density.cfg.main_grid_size)
    flat[500] = 1.5
    with pytest.raises(EdgeOfGridError):
        density.get_max_z_position_and_width(flat)


def _two_peak_grid(n, second_peak, second_side):
    g = np.zeros(n)
    g[99:102] = [0.1, 1.0, 0.1]
    g[299:302] = [second_side, second_peak, second_side]
    return g


def test_highest_sum_prefers_broader_peak():
    plain = GaussianGridTrackDensity()
    summed = GaussianGridTrackDensity(GaussianGridTrackDensity.Config(use_highest_sum_z_position=True))
    g = _two_peak_grid(plain.cfg.main_grid_size, 0.995, 0.5)
    before = g.copy()

    assert plain.get_max_z_position(g) == pytest.approx(plain.bin_center(100))
    assert summed.get_max_z_position(g) == pytest.approx(summed.bin_center(300))
    np.testing.assert_array_equal(g, before)


def test_highest_sum_keeps_global_maximum():
    summed = GaussianGridTrackDensity(GaussianGridTrackDensity.Config(use_highest_sum_z_position=True))
    n = summed.cfg.main_grid_size
    # equal sums: the global maximum stays
    assert summed.get_max_z_position(_two_peak_grid(n, 1.0, 0.1)) == pytest.approx(summed.bin_center(100))
    # second peak outside the relative tolerance
    assert summed.get_max_z_position(_two_peak_grid(n, 0.98, 0.5)) == pytest.approx(summed.bin_center(100))


@pytest.mark.parametrize("k", [0, 1, 999, 1999])
def test_single_bin_maximum_is_bin_center(k):
    density = GaussianGridTrackDensity()
    grid = density.make_main_grid()
    grid[k] = 0.3
    assert density.get_max_z_position(grid) == pytest.approx(-100.0 + (k + 0.5) * 0.1)


@pytest.mark.parametrize("c01", [0.01, 0.02])
def test_degenerate_d0_z0_covariance_raises(c01):
    # c01 = 0.01 gives det == 0, c01 = 0.02 gives det < 0
    density = GaussianGridTrackDensity()
    grid = density.make_main_grid()
    density.add_track(_track(0.0, -0.97), grid)
    before = grid.copy()

    cov = np.diag([0.01, 0.01, 1e-4, 1e-4, 1e-4, 1.0])
    cov[0, 1] = cov[1, 0] = c01
    params = BoundTrackParameters(BEAM_LINE, [0.0, 3.0, 0.0, np.pi / 2, 0.5, 0.0], cov)
    with pytest.raises(SingularMatrixError):
        density.add_track(params, grid)

    np.testing.assert_array_equal(grid, before)
    assert not np.any(np.isnan(grid))
    assert density.get_max_z_position(grid) == pytest.approx(-0.95)
