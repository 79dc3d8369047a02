from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, replace
from typing import Optional, Tuple

import numpy as np

from trackfit_reco.errors import ConfigurationError, MissingCovarianceError, PropagationError
from trackfit_reco.field import ConstantBField
from trackfit_reco.linalg import safe_inverse
from trackfit_reco.parameters import (
    BOUND_SIZE,
    KAPPA,
    LOC0,
    LOC1,
    PHI,
    QOP,
    THETA,
    TIME,
    BoundTrackParameters,
)
from trackfit_reco.propagator import HelixPropagator
from trackfit_reco.surfaces import PerigeeSurface
from trackfit_reco.utils import difference_periodic, make_direction_from_phi_theta, radian_sym


__all__ = [
    "LinearizedTrack",
    "TrackLinearizer",
    "NumericalTrackLinearizer",
    "HelicalTrackLinearizer",
]


@dataclass
class LinearizedTrack:
    r"""
    First-order expansion of the perigee parameters around a point of
    closest approach (PCA):

    .. math::

        \mathbf{q}(\mathbf{v}, \mathbf{p}) \approx \mathbf{c}
            + A\,\mathbf{v} + B\,\mathbf{p},

    with the 4D vertex position :math:`\mathbf{v}=(x,y,z,t)`, the momentum
    :math:`\mathbf{p}=(\phi,\theta,q/p)`, position Jacobian
    :math:`A\in\mathbb{R}^{6\times4}`, momentum Jacobian
    :math:`B\in\mathbb{R}^{6\times3}` and constant term
    :math:`\mathbf{c} = \mathbf{q}_0 - A\mathbf{v}_0 - B\mathbf{p}_0`.
    """

    parameters_at_pca: np.ndarray
    covariance_at_pca: np.ndarray
    weight_at_pca: np.ndarray
    linearization_point: np.ndarray
    position_jacobian: np.ndarray
    momentum_jacobian: np.ndarray
    position_at_pca: np.ndarray
    momentum_at_pca: np.ndarray
    constant_term: np.ndarray

    def predict(self, position, momentum) -> np.ndarray:
        """Linearized perigee parameters for a vertex ``position`` (4,) and ``momentum`` (3,)."""
        q = (self.constant_term
             + self.position_jacobian @ np.asarray(position, dtype=np.float64)
             + self.momentum_jacobian @ np.asarray(momentum, dtype=np.float64))
        q[PHI] = radian_sym(q[PHI])
        return q


class TrackLinearizer(abc.ABC):
    r"""
    Common part of the linearizers: propagation to the perigee surface at
    the linearization point and assembly of the :class:`LinearizedTrack`.

    The propagation direction follows the sign of the straight-line path to
    the perigee surface; a zero path counts as forward.
    """

    def __init__(self, propagator: HelixPropagator, logger: Optional[logging.Logger] = None):
        self.propagator = propagator
        self.log = logger or logging.getLogger(self.__class__.__name__)

    def _propagate_to(self, params: BoundTrackParameters, perigee: PerigeeSurface) -> BoundTrackParameters:
        try:
            path = perigee.intersect(params.position(), params.direction())
        except PropagationError:
            path = 0.0
        opts = replace(self.propagator.options, direction=-1 if path < 0.0 else 1)
        return self.propagator.propagate(params, perigee, opts).end_parameters

    def linearize_track(self, params: BoundTrackParameters, linearization_point) -> LinearizedTrack:
        r"""
        Linearize ``params`` around ``linearization_point``.

        Parameters
        ----------
        params : BoundTrackParameters
            Track parameters with covariance, on any surface.
        linearization_point : array_like, shape (4,)
            :math:`(x, y, z, t)` of the expansion point.

        Returns
        -------
        LinearizedTrack

        Raises
        ------
        PropagationError
            If the perigee surface cannot be reached.
        MissingCovarianceError
            If the parameters at the PCA carry no covariance.
        SingularMatrixError
            If that covariance cannot be inverted.
        ConfigurationError
            Numerical mode only, for a step that leaves the valid theta range.
        """
        lin_point = np.asarray(linearization_point, dtype=np.float64).reshape(4)
        perigee = PerigeeSurface(lin_point[:3])
        at_pca = self._propagate_to(params, perigee)
        if not at_pca.has_covariance:
            raise MissingCovarianceError("track parameters at the PCA have no covariance.")

        q0 = np.array(at_pca.parameters)
        cov = np.array(at_pca.covariance)
        pos4 = at_pca.four_position()
        mom = np.array([at_pca.phi, at_pca.theta, at_pca.qop])

        pos_jac, mom_jac = self._jacobians(at_pca, perigee, pos4, mom)
        weight = safe_inverse(cov, "covariance at the PCA")
        constant = q0 - pos_jac @ pos4 - mom_jac @ mom
        return LinearizedTrack(
            parameters_at_pca=q0,
            covariance_at_pca=cov,
            weight_at_pca=weight,
            linearization_point=lin_point,
            position_jacobian=pos_jac,
            momentum_jacobian=mom_jac,
            position_at_pca=pos4,
            momentum_at_pca=mom,
            constant_term=constant,
        )

    @abc.abstractmethod
    def _jacobians(self,
                   at_pca: BoundTrackParameters,
                   perigee: PerigeeSurface,
                   pos4: np.ndarray,
                   mom: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Position (6x4) and momentum (6x3) Jacobians at the PCA."""


class NumericalTrackLinearizer(TrackLinearizer):
    r"""
    Linearizer with forward-difference Jacobians.

    Each of the seven coordinates :math:`(x, y, z, t, \phi, \theta, q/p)`
    at the PCA is shifted by ``delta``; curvilinear parameters are built
    from the shifted vector and propagated back to the same perigee surface:

    .. math::

        \frac{\partial \mathbf{q}}{\partial u_k} \approx
        \frac{\mathbf{q}(\mathbf{u} + \delta\,\mathbf{e}_k) - \mathbf{q}_0}{\delta},

    with the :math:`\phi` row taken as a periodic difference.

    Parameters
    ----------
    config : NumericalTrackLinearizer.Config
    logger : logging.Logger, optional
    """

    @dataclass
    class Config:
        propagator: HelixPropagator
        delta: float = 1e-8

    def __init__(self, config: "NumericalTrackLinearizer.Config", logger: Optional[logging.Logger] = None):
        super().__init__(config.propagator, logger)
        self.cfg = config

    def _jacobians(self, at_pca, perigee, pos4, mom):
        delta = self.cfg.delta
        theta = mom[1]
        if not (0.0 <= theta + delta <= np.pi):
            raise ConfigurationError(
                f"step {delta:g} moves theta={theta:.6g} outside [0, pi]; choose a smaller delta."
            )

        q0 = np.array(at_pca.parameters)
        base = np.concatenate([pos4, mom])
        jac = np.zeros((BOUND_SIZE, 7), dtype=np.float64)
        for k in range(7):
            u = base.copy()
            u[k] += delta
            wiggled = BoundTrackParameters.curvilinear(
                u[:4], make_direction_from_phi_theta(u[4], u[5]), u[6],
                absolute_charge=at_pca.absolute_charge, mass=at_pca.mass,
            )
            q = np.array(self._propagate_to(wiggled, perigee).parameters)
            col = (q - q0) / delta
            col[PHI] = difference_periodic(q[PHI], q0[PHI], 2.0 * np.pi) / delta
            jac[:, k] = col
        return jac[:, :4], jac[:, 4:]


class HelicalTrackLinearizer(TrackLinearizer):
    r"""
    Linearizer with closed-form Jacobians for a helix in a uniform :math:`B_z`.

    With the signed transverse radius :math:`\rho = \sin\theta/\omega`,
    :math:`D = d_0 + \rho` (the signed distance from the perigee axis to the
    helix center) and :math:`\beta_T = \beta\sin\theta`, the non-zero
    entries at the PCA are

    .. math::

        \frac{\partial(d_0, z_0, \phi, t)}{\partial(x, y)} =
        \begin{pmatrix}
        -\sin\phi & \cos\phi\\
        -\frac{\rho\cos\phi}{D\tan\theta} & -\frac{\rho\sin\phi}{D\tan\theta}\\
        -\frac{\cos\phi}{D} & -\frac{\sin\phi}{D}\\
        -\frac{\rho\cos\phi}{D\beta_T} & -\frac{\rho\sin\phi}{D\beta_T}
        \end{pmatrix},
        \qquad
        \frac{\partial(z_0, \phi, t)}{\partial\phi} =
        \Big(-\frac{\rho d_0}{D\tan\theta},\; \frac{\rho}{D},\;
             -\frac{\rho d_0}{D\beta_T}\Big),

    plus :math:`\partial z_0/\partial z = \partial t/\partial t =
    \partial\theta/\partial\theta = \partial(q/p)/\partial(q/p) = 1`.
    Straight tracks (neutral or :math:`B_z=0`) use the limit
    :math:`\rho/D\to1`, :math:`1/D\to0`.

    Parameters
    ----------
    config : HelicalTrackLinearizer.Config
    logger : logging.Logger, optional
    """

    @dataclass
    class Config:
        propagator: HelixPropagator
        field: Optional[ConstantBField] = None

    def __init__(self, config: "HelicalTrackLinearizer.Config", logger: Optional[logging.Logger] = None):
        super().__init__(config.propagator, logger)
        self.cfg = config
        self.field = config.field or config.propagator.field

    def _jacobians(self, at_pca, perigee, pos4, mom):
        phi, theta, qop = mom
        d0 = float(at_pca.parameters[LOC0])
        sin_phi, cos_phi = np.sin(phi), np.cos(phi)
        sin_theta = np.sin(theta)
        tan_theta = np.tan(theta)
        p = at_pca.absolute_momentum
        beta_t = p / np.hypot(p, at_pca.mass) * sin_theta

        omega = -at_pca.curvature_qop * KAPPA * float(self.field.get_field(pos4[:3])[2])
        if omega == 0.0:
            rho_over_d, inv_d = 1.0, 0.0
        else:
            rho = sin_theta / omega
            big_d = d0 + rho
            rho_over_d, inv_d = rho / big_d, 1.0 / big_d

        pos_jac = np.zeros((BOUND_SIZE, 4), dtype=np.float64)
        pos_jac[LOC0, 0] = -sin_phi
        pos_jac[LOC0, 1] = cos_phi
        pos_jac[LOC1, 0] = -rho_over_d * cos_phi / tan_theta
        pos_jac[LOC1, 1] = -rho_over_d * sin_phi / tan_theta
        pos_jac[LOC1, 2] = 1.0
        pos_jac[PHI, 0] = -cos_phi * inv_d
        pos_jac[PHI, 1] = -sin_phi * inv_d
        pos_jac[TIME, 0] = -rho_over_d * cos_phi / beta_t
        pos_jac[TIME, 1] = -rho_over_d * sin_phi / beta_t
        pos_jac[TIME, 3] = 1.0

        mom_jac = np.zeros((BOUND_SIZE, 3), dtype=np.float64)
        mom_jac[LOC1, 0] = -rho_over_d * d0 / tan_theta
        mom_jac[PHI, 0] = rho_over_d
        mom_jac[THETA, 1] = 1.0
        mom_jac[QOP, 2] = 1.0
        mom_jac[TIME, 0] = -rho_over_d * d0 / beta_t
        return pos_jac, mom_jac
