import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from trackfit_reco.parameters import PHI, QOP, THETA, BoundTrackParameters
from trackfit_reco.surfaces import PerigeeSurface, PlaneSurface
from trackfit_reco.utils import (
    difference_periodic,
    make_direction_from_phi_theta,
    normalize_phi_theta,
    phi_theta_from_direction,
    radian_sym,
)


@pytest.mark.parametrize("phi, theta", [(0.0, 0.5), (1.2, 1.0), (-2.9, 2.5), (np.pi - 1e-3, 0.1)])
@pytest.mark.parametrize("qop", [-0.5, 0.25])
def test_curvilinear_construction(phi, theta, qop):
    pos4 = np.array([1.0, -2.0, 3.0, 4.0])
    direction = make_direction_from_phi_theta(phi, theta)
    params = BoundTrackParameters.curvilinear(pos4, direction, qop)

    assert params.covariance is None
    assert not params.has_covariance
    np.testing.assert_allclose(params.loc, [0.0, 0.0], atol=1e-12)
    assert difference_periodic(params.phi, phi, 2 * np.pi) == pytest.approx(0.0, abs=1e-12)
    assert params.theta == pytest.approx(theta, abs=1e-12)
    assert params.qop == qop
    assert params.time == 4.0
    np.testing.assert_allclose(params.position(), pos4[:3], atol=1e-12)
    np.testing.assert_allclose(params.four_position(), pos4, atol=1e-12)
    np.testing.assert_allclose(params.direction(), direction, atol=1e-12)
    np.testing.assert_allclose(params.reference_surface.center, pos4[:3])
    np.testing.assert_allclose(params.reference_surface.normal, direction, atol=1e-12)
    assert params.absolute_momentum == pytest.approx(1.0 / abs(qop))
    assert params.charge == np.sign(qop)
    assert params.transverse_momentum == pytest.approx(np.sin(theta) / abs(qop))
    np.testing.assert_allclose(params.momentum(), direction / abs(qop), atol=1e-12)


def test_covariance_is_copied_exactly():
    cov = np.diag([1e-2, 2e-2, 1e-4, 2e-4, 1e-6, 1.0])
    cov[0, 1] = cov[1, 0] = 3e-3
    params = BoundTrackParameters.curvilinear([0, 0, 0, 0], [1, 0, 0], 1.0, covariance=cov)
    assert params.has_covariance
    np.testing.assert_array_equal(params.covariance, cov)

    cov[0, 0] = 99.0
    assert params.covariance[0, 0] == 1e-2

    stripped = params.with_covariance(None)
    assert stripped.covariance is None
    np.testing.assert_array_equal(stripped.parameters, params.parameters)


def test_parameters_are_read_only():
    params = BoundTrackParameters.curvilinear([0, 0, 0, 0], [0, 1, 0], -1.0)
    with pytest.raises(ValueError):
        params.parameters[0] = 1.0


def test_invalid_parameters_raise():
    plane = PlaneSurface([0, 0, 0], [1, 0, 0])
    with pytest.raises(ValueError):
        BoundTrackParameters(plane, [0, 0, 0, -0.1, 1.0, 0])
    with pytest.raises(ValueError):
        BoundTrackParameters(plane, [0, 0, 0, np.pi + 0.1, 1.0, 0])
    with pytest.raises(ValueError):
        BoundTrackParameters(plane, [0, 0, 0, 1.0, 0.0, 0])
    with pytest.raises(ValueError):
        BoundTrackParameters(plane, [0, 0, 0, 1.0, 1.0])


def test_phi_is_wrapped():
    plane = PlaneSurface([0, 0, 0], [1, 0, 0])
    params = BoundTrackParameters(plane, [0, 0, 3 * np.pi / 2, 1.0, 1.0, 0])
    assert params.phi == pytest.approx(-np.pi / 2)


def test_neutral_track_momentum():
    params = BoundTrackParameters.curvilinear([0, 0, 0, 0], [0, 0, 1], 0.5, absolute_charge=0.0)
    assert params.absolute_momentum == pytest.approx(2.0)
    assert params.curvature_qop == 0.0
    assert params.charge == 0.0


def test_from_free_on_perigee():
    perigee = PerigeeSurface([0.0, 0.0, 0.0])
    # direction along +x, point displaced to +y: d0 = +2
    free = np.array([0.0, 2.0, 7.0, 1.5, 1.0, 0.0, 0.0, -0.2])
    params = BoundTrackParameters.from_free(perigee, free)
    np.testing.assert_allclose(params.loc, [2.0, 7.0])
    assert params.phi == pytest.approx(0.0)
    assert params.theta == pytest.approx(np.pi / 2)
    np.testing.assert_allclose(params.free_vector(), free, atol=1e-12)


@pytest.mark.parametrize("phi, theta", [(0.3, 0.2), (-1.7, 1.5), (3.0, 3.1)])
def test_direction_round_trip(phi, theta):
    p, t = phi_theta_from_direction(make_direction_from_phi_theta(phi, theta))
    assert difference_periodic(p, phi, 2 * np.pi) == pytest.approx(0.0, abs=1e-12)
    assert t == pytest.approx(theta, abs=1e-12)


def test_direction_along_axis_has_zero_phi():
    assert phi_theta_from_direction([0, 0, 2]) == (0.0, 0.0)
    phi, theta = phi_theta_from_direction([0, 0, -1])
    assert phi == 0.0 and theta == pytest.approx(np.pi)
    with pytest.raises(ValueError):
        phi_theta_from_direction([0, 0, 0])


def test_angle_helpers():
    assert radian_sym(np.pi) == pytest.approx(-np.pi)
    assert difference_periodic(np.pi - 0.1, -np.pi + 0.1, 2 * np.pi) == pytest.approx(-0.2)
    phi, theta = normalize_phi_theta(0.5, -0.2)
    assert theta == pytest.approx(0.2)
    assert phi == pytest.approx(0.5 + np.pi - 2 * np.pi)
    phi, theta = normalize_phi_theta(0.0, np.pi + 0.1)
    assert theta == pytest.approx(np.pi - 0.1)
    assert abs(phi) == pytest.approx(np.pi)
    # indices follow the bound layout
    assert (PHI, THETA, QOP) == (2, 3, 4)
