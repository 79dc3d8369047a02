import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from trackfit_reco.errors import PropagationError
from trackfit_reco.field import ConstantBField
from trackfit_reco.parameters import KAPPA, PION_MASS, BoundTrackParameters
from trackfit_reco.propagator import HelixPropagator, PropagatorOptions, SurfaceNavigator
from trackfit_reco.surfaces import PerigeeSurface, PlaneSurface, planes_along_x
from trackfit_reco.utils import make_direction_from_phi_theta


def test_straight_line_to_plane():
    prop = HelixPropagator(ConstantBField(0.0))
    start = BoundTrackParameters.curvilinear([0, 0, 0, 0], [1, 0, 0], 1.0)
    res = prop.propagate(start, PlaneSurface([100.0, 0, 0], [1, 0, 0]))

    assert res.path_length == pytest.approx(100.0)
    assert res.jacobian is None
    assert not res.end_parameters.has_covariance
    np.testing.assert_allclose(res.end_parameters.position(), [100.0, 0.0, 0.0], atol=1e-12)
    beta = 1.0 / np.hypot(1.0, PION_MASS)
    assert res.end_parameters.time == pytest.approx(100.0 / beta)


def test_helix_end_point_lies_on_circle():
    bz, qop = 2.0, 1.0
    prop = HelixPropagator(ConstantBField(bz))
    start = BoundTrackParameters.curvilinear([0, 0, 0, 0], [1, 0, 0], qop)
    end = prop.propagate(start, PlaneSurface([100.0, 0, 0], [1, 0, 0])).end_parameters

    pos = end.position()
    assert pos[0] == pytest.approx(100.0, abs=1e-9)
    # signed radius sin(theta) / omega, center at (0, rho)
    rho = 1.0 / (-qop * KAPPA * bz)
    assert np.hypot(pos[0], pos[1] - rho) == pytest.approx(abs(rho), rel=1e-12)
    # positive charge in +Bz bends clockwise seen from +z
    assert pos[1] < 0.0
    assert end.phi == pytest.approx(np.arcsin(-100.0 / abs(rho)), rel=1e-9)


def test_round_trip_to_perigee():
    prop = HelixPropagator(ConstantBField(2.0))
    vertex = [0.0, 0.0, 5.0, 0.0]
    phi, theta = 0.1, 1.2
    start = BoundTrackParameters.curvilinear(vertex, make_direction_from_phi_theta(phi, theta), -0.4)
    on_plane = prop.propagate(start, PlaneSurface([200.0, 0, 0], [1, 0, 0])).end_parameters

    back = prop.propagate(on_plane, PerigeeSurface([0, 0, 0]), PropagatorOptions(direction=-1))
    np.testing.assert_allclose(back.end_parameters.loc, [0.0, 5.0], atol=1e-8)
    assert back.end_parameters.phi == pytest.approx(phi, abs=1e-10)
    assert back.end_parameters.theta == pytest.approx(theta, abs=1e-12)
    assert back.end_parameters.time == pytest.approx(0.0, abs=1e-8)
    assert back.path_length < 0.0


def test_surface_against_direction_raises():
    prop = HelixPropagator()
    start = BoundTrackParameters.curvilinear([0, 0, 0, 0], [1, 0, 0], 1.0)
    with pytest.raises(PropagationError):
        prop.propagate(start, PlaneSurface([-50.0, 0, 0], [1, 0, 0]))
    res = prop.propagate(start, PlaneSurface([-50.0, 0, 0], [1, 0, 0]), PropagatorOptions(direction=-1))
    assert res.path_length == pytest.approx(-50.0)


def test_path_limit_raises():
    prop = HelixPropagator(options=PropagatorOptions(max_path_length=10.0))
    start = BoundTrackParameters.curvilinear([0, 0, 0, 0], [1, 0, 0], 1.0)
    with pytest.raises(PropagationError):
        prop.propagate(start, PlaneSurface([50.0, 0, 0], [1, 0, 0]))


def test_straight_line_jacobian_and_covariance():
    length = 100.0
    prop = HelixPropagator()
    cov = np.diag([0.1, 0.2, 1e-3, 2e-3, 1e-4, 1.0])
    start = BoundTrackParameters.curvilinear([0, 0, 0, 0], [1, 0, 0], 1.0, covariance=cov)
    res = prop.propagate(start, PlaneSurface([length, 0, 0], [1, 0, 0]))

    J = res.jacobian
    assert J.shape == (6, 6)
    # plane normal along x: loc0 = -z, loc1 = y
    assert J[0, 0] == pytest.approx(1.0, abs=1e-6)
    assert J[1, 1] == pytest.approx(1.0, abs=1e-6)
    assert J[0, 3] == pytest.approx(length, rel=1e-5)
    assert J[1, 2] == pytest.approx(length, rel=1e-5)
    assert J[2, 2] == pytest.approx(1.0, abs=1e-6)
    assert J[3, 3] == pytest.approx(1.0, abs=1e-6)

    end_cov = res.end_parameters.covariance
    np.testing.assert_allclose(end_cov, end_cov.T)
    np.testing.assert_allclose(end_cov, J @ cov @ J.T, rtol=1e-12, atol=1e-15)
    assert end_cov[1, 1] == pytest.approx(0.2 + length ** 2 * 1e-3, rel=1e-4)


def test_transport_jacobian_on_request():
    prop = HelixPropagator(ConstantBField(2.0))
    start = BoundTrackParameters.curvilinear([0, 0, 0, 0], [1, 0.1, 0], 0.5)
    res = prop.propagate(start, PlaneSurface([80.0, 0, 0], [1, 0, 0]),
                         PropagatorOptions(transport_jacobian=True))
    assert res.jacobian is not None
    assert not res.end_parameters.has_covariance
    assert np.all(np.isfinite(res.jacobian))


def test_navigator_orders_surfaces_ahead():
    planes = planes_along_x([300.0, -20.0, 100.0, 50.0])
    nav = SurfaceNavigator(planes)
    start = BoundTrackParameters.curvilinear([0, 0, 0, 0], [1, 0, 0], 1.0)
    ordered = nav.surfaces_along(start)
    assert [s.center[0] for s in ordered] == [50.0, 100.0, 300.0]
    assert [s.geometry_id for s in ordered] == [4, 3, 1]
