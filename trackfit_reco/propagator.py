from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable, List, NamedTuple, Optional

import numpy as np
from scipy.optimize import newton

from trackfit_reco.errors import PropagationError
from trackfit_reco.field import ConstantBField
from trackfit_reco.parameters import (
    BOUND_SIZE,
    KAPPA,
    PHI,
    QOP,
    THETA,
    BoundTrackParameters,
)
from trackfit_reco.surfaces import PerigeeSurface, PlaneSurface, Surface
from trackfit_reco.utils import difference_periodic


__all__ = ["PropagatorOptions", "PropagationResult", "HelixPropagator", "SurfaceNavigator"]


@dataclass(frozen=True)
class PropagatorOptions:
    r"""
    Steering of a single propagation call.

    Parameters
    ----------
    direction : {+1, -1}
        Propagation direction along the momentum.
    max_path_length : float
        Absolute path-length limit (mm).
    tolerance : float
        Path-length tolerance of the intersection solve (mm); also the slack
        allowed for a path that is marginally against ``direction``.
    max_iterations : int
        Iteration cap of the secant solve for plane targets.
    transport_jacobian : bool
        Compute the bound-to-bound Jacobian even without a covariance.
    """

    direction: int = 1
    max_path_length: float = 1.0e5
    tolerance: float = 1.0e-10
    max_iterations: int = 50
    transport_jacobian: bool = False

    def with_direction(self, direction: int) -> "PropagatorOptions":
        return replace(self, direction=1 if direction >= 0 else -1)


class PropagationResult(NamedTuple):
    """End parameters on the target surface, bound-to-bound Jacobian and path length."""

    end_parameters: BoundTrackParameters
    jacobian: Optional[np.ndarray]
    path_length: float


class HelixPropagator:
    r"""
    Analytic helix propagator in a uniform longitudinal field.

    The direction rotates about :math:`\hat{z}` with rate
    :math:`\omega = -(q/p)\,\kappa\,B_z` per unit path length
    (:math:`\kappa = 0.299792458\times10^{-3}` GeV/(T mm)). With
    :math:`a=\omega s` the free state after a path :math:`s` is

    .. math::

        \begin{aligned}
        x(s) &= x_0 + s\,\Big[\tfrac{\sin a}{a}\,t_x - \tfrac{1-\cos a}{a}\,t_y\Big],\\
        y(s) &= y_0 + s\,\Big[\tfrac{1-\cos a}{a}\,t_x + \tfrac{\sin a}{a}\,t_y\Big],\\
        z(s) &= z_0 + t_z\,s, \qquad
        t(s) = t_0 + s\,\frac{\sqrt{p^2+m^2}}{p},
        \end{aligned}

    with the transverse direction rotated by :math:`a`. Neutral tracks and
    :math:`B_z = 0` move on straight lines.

    Targets
    -------
    - :class:`~trackfit_reco.surfaces.PerigeeSurface`: the point of closest
      approach in the transverse plane is solved in closed form from the
      helix circle.
    - :class:`~trackfit_reco.surfaces.PlaneSurface`: straight lines are
      intersected exactly; helices via :func:`scipy.optimize.newton` (secant)
      on :math:`f(s) = (\mathbf{r}(s)-\mathbf{c})\cdot\mathbf{n}` seeded with
      the straight-line path.

    The bound-to-bound Jacobian :math:`\partial\mathbf{x}_\text{end}/\partial
    \mathbf{x}_\text{start}` is evaluated with central differences (periodic
    differences in :math:`\phi`) and used to transport the covariance,
    :math:`C' = J C J^\top`.

    Parameters
    ----------
    field : ConstantBField, optional
        Magnetic field; defaults to no field.
    options : PropagatorOptions, optional
        Default options for :meth:`propagate`.
    logger : logging.Logger, optional
    """

    __slots__ = ("field", "options", "log")

    # central-difference steps for (loc0, loc1, phi, theta, q/p [relative], time)
    _JAC_STEPS = (1e-4, 1e-4, 1e-6, 1e-6, 1e-5, 1e-4)

    def __init__(self,
                 field: Optional[ConstantBField] = None,
                 options: Optional[PropagatorOptions] = None,
                 logger: Optional[logging.Logger] = None):
        self.field = field or ConstantBField(0.0)
        self.options = options or PropagatorOptions()
        self.log = logger or logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------ model
    def _omega(self, params: BoundTrackParameters) -> float:
        bz = float(self.field.get_field(params.position())[2])
        return -params.curvature_qop * KAPPA * bz

    @staticmethod
    def _inverse_beta(params: BoundTrackParameters) -> float:
        p = params.absolute_momentum
        return float(np.hypot(p, params.mass) / p)

    @staticmethod
    def _advance(free: np.ndarray, omega: float, inv_beta: float, s: float) -> np.ndarray:
        r"""
        Free state after path ``s`` on the helix (or straight line for :math:`\omega=0`).
        """
        x0, y0, z0, t0, tx, ty, tz, qop = free
        a = omega * s
        if a == 0.0:
            f1, f2, c, sn = s, 0.0, 1.0, 0.0
        else:
            c, sn = np.cos(a), np.sin(a)
            f1 = s * sn / a
            f2 = s * 2.0 * np.sin(0.5 * a) ** 2 / a
        return np.array([
            x0 + f1 * tx - f2 * ty,
            y0 + f2 * tx + f1 * ty,
            z0 + tz * s,
            t0 + s * inv_beta,
            c * tx - sn * ty,
            sn * tx + c * ty,
            tz,
            qop,
        ], dtype=np.float64)

    # ----------------------------------------------------------- path solves
    def _solve_path(self,
                    free: np.ndarray,
                    omega: float,
                    inv_beta: float,
                    surface: Surface,
                    options: PropagatorOptions,
                    hint: Optional[float] = None) -> float:
        if isinstance(surface, PerigeeSurface):
            return self._solve_path_perigee(free, omega, surface, hint)
        straight = surface.intersect(free[:3], free[4:7])
        if omega == 0.0 or not isinstance(surface, PlaneSurface):
            if omega != 0.0:
                raise PropagationError(f"unsupported target surface {surface!r} for a curved track.")
            return float(straight)
        n, c = surface.normal, surface.center

        def f(s):
            return float((self._advance(free, omega, inv_beta, s)[:3] - c) @ n)

        s0 = float(straight if hint is None else hint)
        try:
            s = float(newton(f, s0, tol=options.tolerance, maxiter=options.max_iterations))
        except (RuntimeError, OverflowError) as e:
            raise PropagationError(f"intersection with {surface!r} did not converge: {e}") from e
        if not np.isfinite(s):
            raise PropagationError(f"intersection with {surface!r} is not finite.")
        return s

    @staticmethod
    def _solve_path_perigee(free: np.ndarray,
                            omega: float,
                            surface: PerigeeSurface,
                            hint: Optional[float]) -> float:
        r"""
        Path to the transverse point of closest approach to the perigee line.

        For a helix with signed transverse radius :math:`\rho=\sin\theta/\omega`
        and circle center :math:`(X_c, Y_c)`, the closest point has azimuth
        :math:`\phi' = \operatorname{atan2}(-\sigma u, \sigma v)` with
        :math:`(u, v) = (X_c - c_x, Y_c - c_y)` and :math:`\sigma =
        \operatorname{sign}\rho`; the path is :math:`s = \Delta\phi/\omega`.
        """
        tx, ty = free[4], free[5]
        sin_theta = float(np.hypot(tx, ty))
        if sin_theta == 0.0:
            raise PropagationError("direction parallel to the perigee axis.")
        if omega == 0.0:
            return surface.intersect(free[:3], free[4:7])

        phi0 = float(np.arctan2(ty, tx))
        rho = sin_theta / omega
        u = free[0] - rho * np.sin(phi0) - surface.center[0]
        v = free[1] + rho * np.cos(phi0) - surface.center[1]
        if np.hypot(u, v) == 0.0:
            raise PropagationError("helix is centred on the perigee axis; closest approach undefined.")
        sigma = 1.0 if rho > 0.0 else -1.0
        phi_pca = float(np.arctan2(-sigma * u, sigma * v))
        s = difference_periodic(phi_pca, phi0, 2.0 * np.pi) / omega
        if hint is not None:
            turn = 2.0 * np.pi / abs(omega)
            s += turn * np.round((hint - s) / turn)
        return float(s)

    # ------------------------------------------------------------- transport
    def _transport(self,
                   start: BoundTrackParameters,
                   surface: Surface,
                   options: PropagatorOptions,
                   hint: Optional[float] = None):
        free = start.free_vector()
        omega = self._omega(start)
        inv_beta = self._inverse_beta(start)
        s = self._solve_path(free, omega, inv_beta, surface, options, hint)
        end_free = self._advance(free, omega, inv_beta, s)
        end = BoundTrackParameters.from_free(surface, end_free,
                                             absolute_charge=start.absolute_charge,
                                             mass=start.mass)
        return end, s, omega

    def _bound_jacobian(self,
                        start: BoundTrackParameters,
                        surface: Surface,
                        options: PropagatorOptions,
                        path: float) -> np.ndarray:
        base = np.array(start.parameters)
        jac = np.zeros((BOUND_SIZE, BOUND_SIZE), dtype=np.float64)
        for i, step in enumerate(self._JAC_STEPS):
            h = step * max(abs(base[QOP]), 1e-3) if i == QOP else step
            ends = []
            offsets = []
            for sign in (1.0, -1.0):
                shifted = base.copy()
                shifted[i] += sign * h
                if i == THETA and not (0.0 <= shifted[i] <= np.pi):
                    # one-sided difference at the poles
                    shifted[i] = base[i]
                params = start.with_parameters(shifted)
                end, _, _ = self._transport(params, surface, options, hint=path)
                ends.append(np.array(end.parameters))
                offsets.append(shifted[i] - base[i])
            width = offsets[0] - offsets[1]
            col = (ends[0] - ends[1]) / width
            col[PHI] = difference_periodic(ends[0][PHI], ends[1][PHI], 2.0 * np.pi) / width
            jac[:, i] = col
        return jac

    def propagate(self,
                  start: BoundTrackParameters,
                  target: Surface,
                  options: Optional[PropagatorOptions] = None) -> PropagationResult:
        r"""
        Propagate ``start`` to ``target``.

        Parameters
        ----------
        start : BoundTrackParameters
            Start parameters (covariance optional).
        target : Surface
            Target surface.
        options : PropagatorOptions, optional
            Overrides the propagator defaults.

        Returns
        -------
        PropagationResult
            End parameters (with transported covariance if ``start`` had one),
            the bound-to-bound Jacobian (``None`` unless a covariance was
            transported or ``options.transport_jacobian`` is set) and the
            signed path length.

        Raises
        ------
        PropagationError
            If the surface cannot be reached in the requested direction
            within the path limit.
        """
        opts = options or self.options
        end, s, omega = self._transport(start, target, opts)

        if opts.direction * s < -opts.tolerance:
            if isinstance(target, PerigeeSurface) and omega != 0.0:
                # next closest approach along the requested direction
                s += opts.direction * 2.0 * np.pi / abs(omega)
                end, s, _ = self._transport(start, target, opts, hint=s)
            else:
                raise PropagationError(
                    f"{target!r} lies against the propagation direction (path {s:.6g} mm)."
                )
        if abs(s) > opts.max_path_length:
            raise PropagationError(
                f"path {s:.6g} mm to {target!r} exceeds the limit of {opts.max_path_length:.6g} mm."
            )

        jacobian = None
        if start.has_covariance or opts.transport_jacobian:
            jacobian = self._bound_jacobian(start, target, opts, s)
        if start.has_covariance:
            cov = jacobian @ start.covariance @ jacobian.T
            end = end.with_covariance(0.5 * (cov + cov.T))

        self.log.debug("propagated %.6g mm to %r", s, target)
        return PropagationResult(end, jacobian, float(s))


class SurfaceNavigator:
    r"""
    Orders a fixed set of surfaces along a track.

    Surfaces are sorted by their straight-line path length from the current
    position; only surfaces ahead of the track (path above ``tolerance``) are
    returned. Surfaces parallel to the track are skipped.

    Parameters
    ----------
    surfaces : iterable of Surface
    """

    __slots__ = ("surfaces",)

    def __init__(self, surfaces: Iterable[Surface]):
        self.surfaces: List[Surface] = list(surfaces)

    def surfaces_along(self, parameters: BoundTrackParameters, tolerance: float = 1e-9) -> List[Surface]:
        pos, d = parameters.position(), parameters.direction()
        ahead = []
        for surface in self.surfaces:
            try:
                path = surface.intersect(pos, d)
            except PropagationError:
                continue
            if path > tolerance:
                ahead.append((path, surface))
        ahead.sort(key=lambda e: e[0])
        return [surface for _, surface in ahead]
