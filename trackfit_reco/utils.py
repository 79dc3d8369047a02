from __future__ import annotations

from typing import Tuple

import numpy as np


__all__ = [
    "radian_sym",
    "difference_periodic",
    "make_direction_from_phi_theta",
    "phi_theta_from_direction",
    "normalize_phi_theta",
]


def radian_sym(x: float) -> float:
    r"""
    Wrap an angle into the symmetric range :math:`[-\pi, \pi)`.

    Parameters
    ----------
    x : float
        Angle in radians.

    Returns
    -------
    float
        :math:`x - 2\pi\,\lfloor (x+\pi)/2\pi \rfloor`.
    """
    return float(x - 2.0 * np.pi * np.floor((x + np.pi) / (2.0 * np.pi)))


def difference_periodic(a: float, b: float, period: float) -> float:
    r"""
    Shortest signed difference :math:`a-b` of two periodic values.

    Parameters
    ----------
    a, b : float
        Values on the periodic axis.
    period : float
        Period, e.g. :math:`2\pi` for azimuthal angles.

    Returns
    -------
    float
        Difference in :math:`[-T/2, T/2)` with :math:`T` the period.

    Examples
    --------
    >>> round(difference_periodic(np.pi - 0.1, -np.pi + 0.1, 2 * np.pi), 12)
    -0.2
    """
    half = 0.5 * period
    d = (a - b) % period
    return float(d - period if d >= half else d)


def make_direction_from_phi_theta(phi: float, theta: float) -> np.ndarray:
    r"""
    Unit direction vector from spherical angles.

    .. math::

        \hat{t} = (\cos\phi\sin\theta,\; \sin\phi\sin\theta,\; \cos\theta).

    Parameters
    ----------
    phi : float
        Azimuthal angle.
    theta : float
        Polar angle in :math:`[0, \pi]`.

    Returns
    -------
    ndarray, shape (3,)
    """
    st = np.sin(theta)
    return np.array([np.cos(phi) * st, np.sin(phi) * st, np.cos(theta)], dtype=np.float64)


def phi_theta_from_direction(direction: np.ndarray) -> Tuple[float, float]:
    r"""
    Spherical angles of a (not necessarily normalized) direction.

    Parameters
    ----------
    direction : array_like, shape (3,)

    Returns
    -------
    phi : float
        Azimuth in :math:`[-\pi, \pi]`; ``0`` for exactly forward/backward
        directions where it is ill-defined.
    theta : float
        Polar angle in :math:`[0, \pi]`.

    Raises
    ------
    ValueError
        If the direction has zero length.
    """
    d = np.asarray(direction, dtype=np.float64)
    n = float(np.linalg.norm(d))
    if n == 0.0:
        raise ValueError("direction must have non-zero length.")
    d = d / n
    phi = float(np.arctan2(d[1], d[0])) if (d[0] != 0.0 or d[1] != 0.0) else 0.0
    theta = float(np.arccos(np.clip(d[2], -1.0, 1.0)))
    return phi, theta


def normalize_phi_theta(phi: float, theta: float) -> Tuple[float, float]:
    r"""
    Bring :math:`(\phi, \theta)` back to the canonical ranges.

    A polar angle that left :math:`[0,\pi]` (e.g. after a parameter update)
    is reflected, which flips the azimuth by :math:`\pi`:

    .. math::

        \theta < 0:\ (\phi,\theta)\mapsto(\phi+\pi,\,-\theta),\qquad
        \theta > \pi:\ (\phi,\theta)\mapsto(\phi+\pi,\,2\pi-\theta).

    Returns
    -------
    phi : float
        Wrapped into :math:`[-\pi, \pi)`.
    theta : float
        In :math:`[0, \pi]`.
    """
    theta = float(theta) % (2.0 * np.pi)
    if theta > np.pi:
        theta = 2.0 * np.pi - theta
        phi = phi + np.pi
    return radian_sym(phi), theta
