from __future__ import annotations

import abc
from typing import Iterable, List, Optional

import numpy as np

from trackfit_reco.errors import PropagationError


__all__ = ["Surface", "PlaneSurface", "PerigeeSurface", "planes_along_x"]


class Surface(abc.ABC):
    r"""
    Minimal surface interface used by the propagator, fitter and linearizers.

    A surface provides a 2D bound frame: :meth:`global_to_local` maps a global
    position (and the track direction, needed by line surfaces) to the two
    local coordinates ``(loc0, loc1)``, and :meth:`local_to_global` inverts it.
    :meth:`intersect` returns the straight-line path length from a point along
    a direction to the surface, which is used to order surfaces and to choose
    the propagation direction.

    Parameters
    ----------
    center : array_like, shape (3,)
        Reference point of the surface.
    geometry_id : int or None, optional
        Identifier used to match measurements to surfaces.
    """

    __slots__ = ("center", "geometry_id")

    def __init__(self, center, geometry_id: Optional[int] = None):
        self.center = np.asarray(center, dtype=np.float64).reshape(3)
        self.geometry_id = None if geometry_id is None else int(geometry_id)

    @property
    @abc.abstractmethod
    def normal(self) -> np.ndarray:
        """Plane normal, or the line axis for line-like surfaces."""

    @abc.abstractmethod
    def intersect(self, position: np.ndarray, direction: np.ndarray) -> float:
        """Signed straight-line path length from ``position`` to the surface."""

    @abc.abstractmethod
    def global_to_local(self, position: np.ndarray, direction: np.ndarray) -> np.ndarray:
        """Local ``(loc0, loc1)`` of a global position on the surface."""

    @abc.abstractmethod
    def local_to_global(self, loc: np.ndarray, direction: np.ndarray) -> np.ndarray:
        """Global position of local coordinates ``loc``."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(center={self.center.tolist()}, geometry_id={self.geometry_id})"


class PlaneSurface(Surface):
    r"""
    Plane through ``center`` with unit normal :math:`\mathbf{w}`.

    The local frame has orthonormal in-plane axes :math:`\mathbf{u},\mathbf{v}`
    with :math:`\mathbf{u} = \mathbf{a}\times\mathbf{w}/\|\cdot\|` and
    :math:`\mathbf{v} = \mathbf{w}\times\mathbf{u}`, where the helper axis
    :math:`\mathbf{a}` is :math:`\hat{x}` unless the normal is nearly along
    :math:`\hat{x}` (then :math:`\hat{y}`). Local coordinates are

    .. math::

        \text{loc} = \big[\mathbf{u}^\top(\mathbf{p}-\mathbf{c}),\;
                          \mathbf{v}^\top(\mathbf{p}-\mathbf{c})\big].
    """

    __slots__ = ("_normal", "_frame")

    def __init__(self, center, normal, geometry_id: Optional[int] = None):
        super().__init__(center, geometry_id)
        w = np.asarray(normal, dtype=np.float64).reshape(3)
        n = float(np.linalg.norm(w))
        if n == 0.0:
            raise ValueError("plane normal must have non-zero length.")
        w = w / n
        arbitrary = np.array([1.0, 0.0, 0.0]) if abs(w[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
        u = np.cross(arbitrary, w)
        u /= np.linalg.norm(u)
        v = np.cross(w, u)
        self._normal = w
        self._frame = np.vstack([u, v])

    @classmethod
    def curvilinear(cls, position, direction) -> "PlaneSurface":
        """Plane through ``position`` perpendicular to ``direction``."""
        return cls(position, direction)

    @property
    def normal(self) -> np.ndarray:
        return self._normal

    @property
    def frame(self) -> np.ndarray:
        """Rows :math:`\\mathbf{u}^\\top, \\mathbf{v}^\\top` of the local frame, shape (2, 3)."""
        return self._frame

    def intersect(self, position, direction) -> float:
        position = np.asarray(position, dtype=np.float64)
        direction = np.asarray(direction, dtype=np.float64)
        denom = float(direction @ self._normal)
        if denom == 0.0:
            raise PropagationError("straight line is parallel to the plane.")
        return float((self.center - position) @ self._normal) / denom

    def global_to_local(self, position, direction=None) -> np.ndarray:
        return self._frame @ (np.asarray(position, dtype=np.float64) - self.center)

    def local_to_global(self, loc, direction=None) -> np.ndarray:
        loc = np.asarray(loc, dtype=np.float64)
        return self.center + loc[0] * self._frame[0] + loc[1] * self._frame[1]


class PerigeeSurface(Surface):
    r"""
    Line along the global :math:`z` axis through ``center``.

    Bound coordinates are the transverse impact parameter and the
    longitudinal offset:

    .. math::

        d_0 = \frac{(\hat{z}\times\mathbf{t})\cdot(\mathbf{p}-\mathbf{c})}
                   {\|\mathbf{t}_{xy}\|}, \qquad
        z_0 = p_z - c_z,

    so :math:`d_0` is signed by the side of the line the track passes on.
    The direction must have a transverse component.
    """

    __slots__ = ()

    _AXIS = np.array([0.0, 0.0, 1.0])

    @property
    def normal(self) -> np.ndarray:
        return self._AXIS

    @staticmethod
    def _d0_axis(direction) -> np.ndarray:
        d = np.asarray(direction, dtype=np.float64)
        pt = float(np.hypot(d[0], d[1]))
        if pt == 0.0:
            raise ValueError("direction parallel to the perigee axis; d0 is undefined.")
        return np.array([-d[1] / pt, d[0] / pt, 0.0])

    def intersect(self, position, direction) -> float:
        delta = np.asarray(position, dtype=np.float64)[:2] - self.center[:2]
        d = np.asarray(direction, dtype=np.float64)
        t2 = float(d[0] * d[0] + d[1] * d[1])
        if t2 == 0.0:
            raise PropagationError("direction parallel to the perigee axis.")
        return -float(delta @ d[:2]) / t2

    def global_to_local(self, position, direction) -> np.ndarray:
        delta = np.asarray(position, dtype=np.float64) - self.center
        return np.array([float(self._d0_axis(direction) @ delta), float(delta[2])])

    def local_to_global(self, loc, direction) -> np.ndarray:
        loc = np.asarray(loc, dtype=np.float64)
        return self.center + loc[0] * self._d0_axis(direction) + loc[1] * self._AXIS


def planes_along_x(x_positions: Iterable[float], first_id: int = 1) -> List[PlaneSurface]:
    r"""
    Telescope of measurement planes perpendicular to :math:`\hat{x}`.

    Parameters
    ----------
    x_positions : iterable of float
        Plane positions along :math:`x` (mm).
    first_id : int, optional
        Geometry id of the first plane; ids increase by one.

    Returns
    -------
    list of PlaneSurface
    """
    return [
        PlaneSurface([float(x), 0.0, 0.0], [1.0, 0.0, 0.0], geometry_id=first_id + i)
        for i, x in enumerate(x_positions)
    ]
