from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from trackfit_reco.errors import ConfigurationError, PropagationError
from trackfit_reco.fitting.components import Gx2FitterExtensions
from trackfit_reco.linalg import safe_inverse, solve_colpiv_qr, weighted_chi2
from trackfit_reco.measurements import SourceLink
from trackfit_reco.parameters import BOUND_SIZE, PHI, THETA, BoundTrackParameters
from trackfit_reco.propagator import HelixPropagator, PropagatorOptions, SurfaceNavigator
from trackfit_reco.surfaces import Surface
from trackfit_reco.trajectory import (
    INVALID,
    MultiTrajectory,
    Track,
    TrackContainer,
    TrackStatePropMask,
    TrackStateType,
    calculate_track_quantities,
)
from trackfit_reco.utils import difference_periodic, normalize_phi_theta


__all__ = ["Gx2FitterOptions", "Gx2FitterResult", "Gx2Fitter"]

# fitted subspace: loc0, loc1, phi, theta
_NFIT = 4


@dataclass
class Gx2FitterOptions:
    r"""
    Steering of :meth:`Gx2Fitter.fit`.

    Parameters
    ----------
    extensions : Gx2FitterExtensions
        Calibrator, updater, outlier finder and smoother.
    reference_surface : Surface, optional
        If given, the fitted parameters are propagated to this surface.
    multiple_scattering, energy_loss : bool
        Material-effect switches; accepted and ignored.
    n_update_max : int
        Number of Gauss-Newton iterations (at least 1).
    max_surface_count : int
        Per-iteration limit on crossed surfaces; the iteration stops after
        the crossing that exceeds it.
    convergence_tolerance : float, optional
        Stop early once :math:`\max_i|\delta_i|` falls below this value.
        ``None`` runs the full ``n_update_max`` iterations.
    on_propagation_failure : {"abort", "continue"}
        ``"abort"`` raises the :class:`~trackfit_reco.errors.PropagationError`;
        ``"continue"`` logs it and keeps the partial iteration.
    propagator_options : PropagatorOptions, optional
        Overrides the propagator defaults.
    calibration_context : object, optional
        Passed through to the calibrator, updater and smoother.
    """

    extensions: Gx2FitterExtensions = field(default_factory=Gx2FitterExtensions)
    reference_surface: Optional[Surface] = None
    multiple_scattering: bool = False
    energy_loss: bool = False
    n_update_max: int = 5
    max_surface_count: int = 11
    convergence_tolerance: Optional[float] = None
    on_propagation_failure: str = "abort"
    propagator_options: Optional[PropagatorOptions] = None
    calibration_context: Any = None

    def validate(self) -> None:
        if self.n_update_max < 1:
            raise ConfigurationError(f"n_update_max must be >= 1, got {self.n_update_max}.")
        if self.max_surface_count < 1:
            raise ConfigurationError(f"max_surface_count must be >= 1, got {self.max_surface_count}.")
        if self.on_propagation_failure not in ("abort", "continue"):
            raise ConfigurationError(
                f"on_propagation_failure must be 'abort' or 'continue', got {self.on_propagation_failure!r}."
            )
        if self.convergence_tolerance is not None and self.convergence_tolerance <= 0.0:
            raise ConfigurationError("convergence_tolerance must be positive.")


@dataclass
class Gx2FitterResult:
    r"""
    Accumulator of one fitter iteration.

    Holds the per-measurement residuals :math:`r_i`, covariances :math:`V_i`
    and projected Jacobians :math:`H_i J_i`, plus the normal equations

    .. math::

        A = \sum_i (H_i J_i)^\top V_i^{-1} (H_i J_i),\qquad
        b = \sum_i (H_i J_i)^\top V_i^{-1} r_i,\qquad
        \chi^2 = \sum_i r_i^\top V_i^{-1} r_i .
    """

    last_measurement_index: int = INVALID
    last_track_index: int = INVALID
    residuals: List[np.ndarray] = field(default_factory=list)
    covariances: List[np.ndarray] = field(default_factory=list)
    projected_jacobians: List[np.ndarray] = field(default_factory=list)
    chi2_per_state: List[float] = field(default_factory=list)
    a_matrix: np.ndarray = field(default_factory=lambda: np.zeros((BOUND_SIZE, BOUND_SIZE)))
    b_vector: np.ndarray = field(default_factory=lambda: np.zeros(BOUND_SIZE))
    chi2: float = 0.0
    measurement_states: int = 0
    measurement_holes: int = 0
    outliers: int = 0
    surface_count: int = 0
    missed_active_surfaces: List[Surface] = field(default_factory=list)
    finished: bool = False
    error: Optional[Exception] = None


class Gx2Fitter:
    r"""
    Global chi-square track fitter.

    Iteratively minimizes

    .. math::

        \chi^2(\mathbf{x}) = \sum_i \big(m_i - H_i\,f_i(\mathbf{x})\big)^\top
                             V_i^{-1}\big(m_i - H_i\,f_i(\mathbf{x})\big)

    over the start parameters :math:`\mathbf{x}`, where :math:`f_i` is the
    propagation to measurement surface :math:`i`. Each iteration
    re-propagates the current parameters surface by surface, chaining the
    transport Jacobian :math:`J_i = \partial f_i/\partial\mathbf{x}`, and
    solves the Gauss-Newton step :math:`A\,\delta = b` restricted to
    :math:`(l_0, l_1, \phi, \theta)` with column-pivoted QR. The number of
    iterations is fixed (``n_update_max``) unless a convergence tolerance is
    configured.

    Parameters
    ----------
    propagator : HelixPropagator
    navigator : SurfaceNavigator
        Supplies the ordered surfaces crossed by the track.
    logger : logging.Logger, optional
    """

    __slots__ = ("propagator", "navigator", "log")

    def __init__(self,
                 propagator: HelixPropagator,
                 navigator: SurfaceNavigator,
                 logger: Optional[logging.Logger] = None):
        self.propagator = propagator
        self.navigator = navigator
        self.log = logger or logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------ fit
    def fit(self,
            source_links: Iterable[SourceLink],
            start_parameters: BoundTrackParameters,
            options: Gx2FitterOptions,
            track_container: TrackContainer) -> Track:
        r"""
        Fit one track.

        Parameters
        ----------
        source_links : iterable of SourceLink
            Measurements of the track; at most one per surface is used.
        start_parameters : BoundTrackParameters
            Initial estimate; its surface is the surface of the fitted
            parameters unless ``options.reference_surface`` is set.
        options : Gx2FitterOptions
        track_container : TrackContainer
            Receives the track and its states.

        Returns
        -------
        Track

        Raises
        ------
        ConfigurationError
            For invalid options.
        PropagationError
            On a propagation failure with ``on_propagation_failure="abort"``.
        SingularMatrixError
            If the information matrix of the fitted parameters (or a
            measurement covariance) is not invertible.
        RuntimeError
            If no calibrator was configured.
        """
        options.validate()
        ext = options.extensions
        measurements: Dict[int, SourceLink] = {}
        for sl in source_links:
            if sl.geometry_id in measurements:
                self.log.debug("ignoring second measurement on surface %d", sl.geometry_id)
                continue
            measurements[sl.geometry_id] = sl
        self.log.debug("fit with %d measurements, %d iterations", len(measurements), options.n_update_max)

        trajectory = track_container.trajectory
        params = np.array(start_parameters.parameters)
        delta = np.zeros(BOUND_SIZE)
        result = Gx2FitterResult()

        for n_update in range(options.n_update_max):
            params = params + delta
            params[PHI], params[THETA] = normalize_phi_theta(params[PHI], params[THETA])
            current = start_parameters.with_parameters(params, start_parameters.covariance)

            result = self._run_iteration(current, measurements, options, trajectory)

            delta = np.zeros(BOUND_SIZE)
            delta[:_NFIT], rank = solve_colpiv_qr(result.a_matrix[:_NFIT, :_NFIT],
                                                  result.b_vector[:_NFIT],
                                                  logger=self.log)
            self.log.debug("iteration %d: chi2=%.6g, nmeas=%d, rank=%d, delta=%s",
                           n_update, result.chi2, result.measurement_states, rank,
                           np.array2string(delta[:_NFIT], precision=6))
            if (options.convergence_tolerance is not None
                    and np.max(np.abs(delta[:_NFIT])) < options.convergence_tolerance):
                self.log.debug("converged after %d iterations", n_update + 1)
                break

        # covariance of the fitted subspace; time and q/p keep unit placeholders
        full_cov = np.eye(BOUND_SIZE)
        full_cov[:_NFIT, :_NFIT] = safe_inverse(result.a_matrix[:_NFIT, :_NFIT], "information matrix")
        fitted = start_parameters.with_parameters(params, full_cov)

        if options.reference_surface is not None:
            fitted = self._to_reference(fitted, options)

        track = track_container.get_track(track_container.add_track())
        track.parameters = np.array(fitted.parameters)
        track.covariance = np.array(fitted.covariance)
        track.reference_surface = fitted.reference_surface
        track.absolute_charge = fitted.absolute_charge
        track.mass = fitted.mass
        track.tip_index = result.last_track_index
        track.propagation_error = result.error

        if track.tip_index != INVALID:
            ext.smoother(options.calibration_context, trajectory, track.tip_index, self.log)
        calculate_track_quantities(track, trajectory)
        self.log.debug("fitted %r", track)
        return track

    # ------------------------------------------------------------ iteration
    def _propagator_options(self, options: Gx2FitterOptions, direction: int = 1) -> PropagatorOptions:
        base = options.propagator_options or self.propagator.options
        return replace(base, direction=direction, transport_jacobian=True)

    def _run_iteration(self,
                       start: BoundTrackParameters,
                       measurements: Dict[int, SourceLink],
                       options: Gx2FitterOptions,
                       trajectory: MultiTrajectory) -> Gx2FitterResult:
        ext = options.extensions
        ctx = options.calibration_context
        prop_opts = self._propagator_options(options)
        result = Gx2FitterResult()

        start_cov = start.covariance
        current = start.with_covariance(None)
        jac_from_start = np.eye(BOUND_SIZE)

        for surface in self.navigator.surfaces_along(start):
            try:
                step = self.propagator.propagate(current, surface, prop_opts)
            except PropagationError as e:
                if options.on_propagation_failure == "abort":
                    raise
                self.log.warning("propagation to %r failed, continuing with partial result: %s", surface, e)
                result.error = e
                break

            jac_from_start = step.jacobian @ jac_from_start
            current = step.end_parameters
            result.surface_count += 1
            predicted = np.array(current.parameters)
            predicted_cov = (jac_from_start @ start_cov @ jac_from_start.T
                             if start_cov is not None else None)

            sl = measurements.get(surface.geometry_id)
            if sl is not None:
                idx = trajectory.add_track_state(TrackStatePropMask.ALL, result.last_track_index)
                state = trajectory.get_track_state(idx)
                state.reference_surface = surface
                state.path_length = step.path_length
                state.predicted = predicted
                state.predicted_covariance = predicted_cov
                state.jacobian = jac_from_start.copy()
                state.uncalibrated_source_link = sl

                ext.calibrator(ctx, sl, state)
                self._collect(state, predicted, jac_from_start, ext, result)
                ext.updater(ctx, state, 1, self.log)

                result.last_measurement_index = idx
                result.last_track_index = idx
            elif result.last_measurement_index != INVALID:
                idx = trajectory.add_track_state(
                    TrackStatePropMask.PREDICTED | TrackStatePropMask.JACOBIAN,
                    result.last_track_index,
                )
                state = trajectory.get_track_state(idx)
                state.reference_surface = surface
                state.path_length = step.path_length
                state.predicted = predicted
                state.predicted_covariance = predicted_cov
                state.jacobian = jac_from_start.copy()
                state.type_flags |= TrackStateType.HOLE
                result.measurement_holes += 1
                result.missed_active_surfaces.append(surface)
                result.last_track_index = idx

            if result.surface_count > options.max_surface_count:
                self.log.info("finished after %d surfaces; result might be garbage", result.surface_count)
                result.finished = True
                break
        else:
            result.finished = True

        return result

    def _collect(self, state, predicted: np.ndarray, jac_from_start: np.ndarray,
                 ext: Gx2FitterExtensions, result: Gx2FitterResult) -> None:
        r"""
        Residual, weight and projected Jacobian of one measurement state.

        Outliers are flagged and kept out of the normal equations.
        """
        indices = list(state.projector_indices)
        residual = np.asarray(state.calibrated, dtype=np.float64) - predicted[indices]
        for k, i in enumerate(indices):
            if i == PHI:
                residual[k] = difference_periodic(state.calibrated[k], predicted[i], 2.0 * np.pi)

        if ext.outlier_finder(state):
            state.type_flags |= TrackStateType.OUTLIER
            result.outliers += 1
            return

        state.type_flags |= TrackStateType.MEASUREMENT
        cov = np.asarray(state.calibrated_covariance, dtype=np.float64)
        weight = safe_inverse(cov, "measurement covariance")
        hj = state.projector() @ jac_from_start
        chi2 = weighted_chi2(residual, weight)
        state.chi2 = chi2

        result.residuals.append(residual)
        result.covariances.append(cov)
        result.projected_jacobians.append(hj)
        result.chi2_per_state.append(chi2)
        result.a_matrix += hj.T @ weight @ hj
        result.b_vector += hj.T @ weight @ residual
        result.chi2 += chi2
        result.measurement_states += 1

    def _to_reference(self, fitted: BoundTrackParameters, options: Gx2FitterOptions) -> BoundTrackParameters:
        target = options.reference_surface
        try:
            path = target.intersect(fitted.position(), fitted.direction())
        except PropagationError:
            path = 0.0
        prop_opts = replace(options.propagator_options or self.propagator.options,
                            direction=-1 if path < 0.0 else 1)
        try:
            return self.propagator.propagate(fitted, target, prop_opts).end_parameters
        except PropagationError as e:
            if options.on_propagation_failure == "abort":
                raise
            self.log.warning("propagation to the reference surface failed, keeping start surface: %s", e)
            return fitted
