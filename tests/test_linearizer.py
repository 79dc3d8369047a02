import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from trackfit_reco.errors import ConfigurationError, MissingCovarianceError
from trackfit_reco.field import ConstantBField
from trackfit_reco.parameters import PHI, BoundTrackParameters
from trackfit_reco.propagator import HelixPropagator
from trackfit_reco.surfaces import PerigeeSurface
from trackfit_reco.utils import make_direction_from_phi_theta
from trackfit_reco.vertexing import HelicalTrackLinearizer, NumericalTrackLinearizer

COV = np.diag([0.01, 0.02, 1e-4, 2e-4, 1e-3, 1.0])


def _start(qop=0.5, phi=0.4, theta=1.1, cov=COV):
    direction = make_direction_from_phi_theta(phi, theta)
    return BoundTrackParameters.curvilinear([1.0, 0.5, 3.0, 0.2], direction, qop, covariance=cov)


@pytest.mark.parametrize("bz", [0.0, 2.0])
def test_numerical_and_helical_jacobians_agree(bz):
    prop = HelixPropagator(ConstantBField(bz))
    point = [0.05, -0.02, 2.5, 0.0]
    numerical = NumericalTrackLinearizer(NumericalTrackLinearizer.Config(prop, delta=1e-6))
    helical = HelicalTrackLinearizer(HelicalTrackLinearizer.Config(prop))

    lin_n = numerical.linearize_track(_start(), point)
    lin_h = helical.linearize_track(_start(), point)

    np.testing.assert_allclose(lin_n.parameters_at_pca, lin_h.parameters_at_pca)
    np.testing.assert_allclose(lin_n.position_at_pca, lin_h.position_at_pca)
    np.testing.assert_allclose(lin_n.position_jacobian, lin_h.position_jacobian, rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(lin_n.momentum_jacobian, lin_h.momentum_jacobian, rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(lin_n.constant_term, lin_h.constant_term, rtol=1e-4, atol=1e-4)


def test_linearized_track_contents():
    prop = HelixPropagator(ConstantBField(2.0))
    lin = HelicalTrackLinearizer(HelicalTrackLinearizer.Config(prop)).linearize_track(_start(), [0, 0, 0, 0])

    # the PCA lies on the d0 axis of the perigee at the origin
    np.testing.assert_allclose(lin.position_at_pca[2], lin.parameters_at_pca[1], atol=1e-12)
    assert np.hypot(*lin.position_at_pca[:2]) == pytest.approx(abs(lin.parameters_at_pca[0]))
    np.testing.assert_allclose(lin.weight_at_pca @ lin.covariance_at_pca, np.eye(6), atol=1e-8)
    np.testing.assert_array_equal(lin.linearization_point, [0, 0, 0, 0])
    np.testing.assert_allclose(lin.predict(lin.position_at_pca, lin.momentum_at_pca),
                               lin.parameters_at_pca, atol=1e-10)


def test_prediction_follows_a_shifted_track():
    prop = HelixPropagator(ConstantBField(2.0))
    lin = HelicalTrackLinearizer(HelicalTrackLinearizer.Config(prop)).linearize_track(_start(), [0, 0, 0, 0])

    shift = np.array([0.01, -0.02, 0.05, 0.001])
    pos4 = lin.position_at_pca + shift
    phi, theta, qop = lin.momentum_at_pca
    moved = BoundTrackParameters.curvilinear(pos4, make_direction_from_phi_theta(phi, theta), qop)
    actual = prop.propagate(moved, PerigeeSurface([0, 0, 0]),
                            prop.options.with_direction(-1 if shift[:2] @ moved.direction()[:2] > 0 else 1))
    predicted = lin.predict(pos4, lin.momentum_at_pca)
    np.testing.assert_allclose(predicted, actual.end_parameters.parameters, atol=1e-6)
    assert -np.pi <= predicted[PHI] < np.pi


def test_theta_step_outside_range_raises():
    prop = HelixPropagator(ConstantBField(0.0))
    theta = np.pi - 1e-7
    start = BoundTrackParameters(PerigeeSurface([0, 0, 0]), [0.0, 5.0, 0.0, theta, 0.5, 0.0], COV)
    lin = NumericalTrackLinearizer(NumericalTrackLinearizer.Config(prop, delta=1e-6))
    with pytest.raises(ConfigurationError):
        lin.linearize_track(start, [0, 0, 0, 0])


def test_missing_covariance_raises():
    prop = HelixPropagator(ConstantBField(2.0))
    lin = HelicalTrackLinearizer(HelicalTrackLinearizer.Config(prop))
    with pytest.raises(MissingCovarianceError):
        lin.linearize_track(_start(cov=None), [0, 0, 0, 0])


@pytest.mark.parametrize("phi", [np.pi - 1e-9, -np.pi + 1e-9])
def test_jacobians_agree_at_phi_boundary(phi):
    prop = HelixPropagator(ConstantBField(2.0))
    point = [0.05, -0.02, 2.5, 0.0]
    numerical = NumericalTrackLinearizer(NumericalTrackLinearizer.Config(prop, delta=1e-6))
    helical = HelicalTrackLinearizer(HelicalTrackLinearizer.Config(prop))

    lin_n = numerical.linearize_track(_start(phi=phi), point)
    lin_h = helical.linearize_track(_start(phi=phi), point)

    assert np.all(np.isfinite(lin_n.momentum_jacobian))
    assert -np.pi <= lin_n.parameters_at_pca[PHI] < np.pi
    np.testing.assert_allclose(lin_n.position_jacobian, lin_h.position_jacobian, rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(lin_n.momentum_jacobian, lin_h.momentum_jacobian, rtol=1e-4, atol=1e-5)
