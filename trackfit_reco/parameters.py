from __future__ import annotations

from typing import Optional

import numpy as np

from trackfit_reco.surfaces import PlaneSurface, Surface
from trackfit_reco.utils import (
    make_direction_from_phi_theta,
    phi_theta_from_direction,
    radian_sym,
)


__all__ = [
    "LOC0", "LOC1", "PHI", "THETA", "QOP", "TIME", "BOUND_SIZE",
    "FREE_POS0", "FREE_TIME", "FREE_DIR0", "FREE_QOP", "FREE_SIZE",
    "PION_MASS", "KAPPA",
    "BoundTrackParameters",
]

# bound parameter indices
LOC0, LOC1, PHI, THETA, QOP, TIME = range(6)
BOUND_SIZE = 6

# free parameter layout (x, y, z, t, tx, ty, tz, q/p)
FREE_POS0 = 0
FREE_TIME = 3
FREE_DIR0 = 4
FREE_QOP = 7
FREE_SIZE = 8

# GeV
PION_MASS = 0.13957039
# GeV / (T mm): transverse radius R = pT / (KAPPA * B)
KAPPA = 0.299792458e-3


class BoundTrackParameters:
    r"""
    Track parameters bound to a reference surface.

    The parameter vector is

    .. math::

        \mathbf{x} = (l_0,\; l_1,\; \phi,\; \theta,\; q/p,\; t)^\top
        \in \mathbb{R}^6,

    where :math:`(l_0, l_1)` are the surface-local coordinates, :math:`\phi`
    is periodic (stored in :math:`[-\pi,\pi)`), :math:`\theta\in[0,\pi]`, and
    :math:`t` is the time in mm (:math:`c=1`). The covariance is optional.

    Parameters
    ----------
    surface : Surface
        Reference surface defining the local frame.
    parameters : array_like, shape (6,)
        Bound parameter vector.
    covariance : array_like, shape (6, 6), optional
        Parameter covariance; ``None`` if the track carries none.
    absolute_charge : float, optional
        :math:`|q|` in units of :math:`e`. ``0`` marks a neutral track, for
        which the ``q/p`` slot holds :math:`1/p`.
    mass : float, optional
        Particle mass hypothesis (GeV), used for the time propagation.

    Raises
    ------
    ValueError
        If shapes are wrong, :math:`\theta` lies outside :math:`[0,\pi]`, or
        ``q/p`` is zero.

    Notes
    -----
    Parameter and covariance arrays are stored as read-only copies; use
    :meth:`with_covariance` or build a new object to change them.
    """

    __slots__ = ("_surface", "_params", "_cov", "absolute_charge", "mass")

    def __init__(self,
                 surface: Surface,
                 parameters,
                 covariance=None,
                 absolute_charge: float = 1.0,
                 mass: float = PION_MASS):
        p = np.array(parameters, dtype=np.float64).reshape(-1)
        if p.shape != (BOUND_SIZE,):
            raise ValueError(f"bound parameters must have {BOUND_SIZE} entries, got {p.shape}.")
        if not (0.0 <= p[THETA] <= np.pi):
            raise ValueError(f"theta={p[THETA]} outside [0, pi].")
        if p[QOP] == 0.0:
            raise ValueError("q/p must be non-zero.")
        p[PHI] = radian_sym(p[PHI])
        p.setflags(write=False)

        cov = None
        if covariance is not None:
            cov = np.array(covariance, dtype=np.float64)
            if cov.shape != (BOUND_SIZE, BOUND_SIZE):
                raise ValueError(f"covariance must be {BOUND_SIZE}x{BOUND_SIZE}, got {cov.shape}.")
            cov.setflags(write=False)

        self._surface = surface
        self._params = p
        self._cov = cov
        self.absolute_charge = float(abs(absolute_charge))
        self.mass = float(mass)

    @classmethod
    def curvilinear(cls,
                    pos4,
                    direction,
                    qop: float,
                    covariance=None,
                    absolute_charge: float = 1.0,
                    mass: float = PION_MASS) -> "BoundTrackParameters":
        r"""
        Parameters on the curvilinear plane through ``pos4[:3]``.

        The reference plane is perpendicular to ``direction``, hence
        :math:`l_0 = l_1 = 0`.

        Parameters
        ----------
        pos4 : array_like, shape (4,)
            Global position and time :math:`(x, y, z, t)`.
        direction : array_like, shape (3,)
            Momentum direction (normalized internally).
        qop : float
            :math:`q/p`, or :math:`1/p` for neutral tracks.
        """
        pos4 = np.asarray(pos4, dtype=np.float64).reshape(4)
        phi, theta = phi_theta_from_direction(direction)
        surface = PlaneSurface.curvilinear(pos4[:3], make_direction_from_phi_theta(phi, theta))
        return cls(surface, [0.0, 0.0, phi, theta, qop, pos4[3]], covariance,
                   absolute_charge=absolute_charge, mass=mass)

    @classmethod
    def from_free(cls,
                  surface: Surface,
                  free,
                  covariance=None,
                  absolute_charge: float = 1.0,
                  mass: float = PION_MASS) -> "BoundTrackParameters":
        r"""
        Express a free vector :math:`(x,y,z,t,t_x,t_y,t_z,q/p)` on ``surface``.

        The position is assumed to lie on the surface; only its local
        projection is kept.
        """
        free = np.asarray(free, dtype=np.float64)
        direction = free[4:7]
        phi, theta = phi_theta_from_direction(direction)
        loc = surface.global_to_local(free[:3], direction)
        return cls(surface, [loc[0], loc[1], phi, theta, free[7], free[3]], covariance,
                   absolute_charge=absolute_charge, mass=mass)

    def with_covariance(self, covariance) -> "BoundTrackParameters":
        """Copy of these parameters carrying ``covariance`` (may be ``None``)."""
        return BoundTrackParameters(self._surface, self._params, covariance,
                                    absolute_charge=self.absolute_charge, mass=self.mass)

    def with_parameters(self, parameters, covariance=None) -> "BoundTrackParameters":
        """Same surface and particle hypothesis, new parameter vector."""
        return BoundTrackParameters(self._surface, parameters, covariance,
                                    absolute_charge=self.absolute_charge, mass=self.mass)

    # native accessors
    @property
    def reference_surface(self) -> Surface:
        return self._surface

    @property
    def parameters(self) -> np.ndarray:
        return self._params

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return self._cov

    @property
    def has_covariance(self) -> bool:
        return self._cov is not None

    @property
    def loc(self) -> np.ndarray:
        return self._params[:2]

    @property
    def phi(self) -> float:
        return float(self._params[PHI])

    @property
    def theta(self) -> float:
        return float(self._params[THETA])

    @property
    def qop(self) -> float:
        return float(self._params[QOP])

    @property
    def time(self) -> float:
        return float(self._params[TIME])

    # derived quantities
    @property
    def charge(self) -> float:
        return float(np.sign(self.qop) * self.absolute_charge)

    @property
    def absolute_momentum(self) -> float:
        q = self.absolute_charge if self.absolute_charge > 0.0 else 1.0
        return q / abs(self.qop)

    @property
    def transverse_momentum(self) -> float:
        return self.absolute_momentum * float(np.sin(self.theta))

    @property
    def curvature_qop(self) -> float:
        """:math:`q/p` entering the equations of motion; ``0`` for neutral tracks."""
        return self.qop if self.absolute_charge > 0.0 else 0.0

    def direction(self) -> np.ndarray:
        return make_direction_from_phi_theta(self.phi, self.theta)

    def position(self) -> np.ndarray:
        return self._surface.local_to_global(self.loc, self.direction())

    def four_position(self) -> np.ndarray:
        return np.append(self.position(), self.time)

    def momentum(self) -> np.ndarray:
        return self.absolute_momentum * self.direction()

    def free_vector(self) -> np.ndarray:
        r"""Free representation :math:`(x, y, z, t, t_x, t_y, t_z, q/p)`."""
        d = self.direction()
        return np.concatenate([self.position(), [self.time], d, [self.qop]])

    def __repr__(self) -> str:
        return (f"BoundTrackParameters(surface={self._surface!r}, "
                f"parameters={np.array2string(self._params, precision=6)}, "
                f"covariance={'yes' if self._cov is not None else 'no'})")
