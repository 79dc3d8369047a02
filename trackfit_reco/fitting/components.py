from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from trackfit_reco.measurements import SourceLink
from trackfit_reco.trajectory import MultiTrajectory, TrackState, TrackStatePropMask


__all__ = [
    "void_calibrator",
    "void_updater",
    "void_smoother",
    "void_outlier_finder",
    "void_reverse_filtering_logic",
    "Gx2FitterExtensions",
]


def void_calibrator(context: Optional[Any], source_link: SourceLink, state: TrackState) -> None:
    """Placeholder calibrator; a fit needs a real one."""
    raise RuntimeError("void_calibrator should not ever execute")


def void_updater(context: Optional[Any], state: TrackState, direction: int = 1, logger=None) -> None:
    r"""Copy the predicted parameters and covariance to the filtered slots."""
    state.filtered = state.predicted
    state.filtered_covariance = state.predicted_covariance


def void_smoother(context: Optional[Any], trajectory: MultiTrajectory, tip: int, logger=None) -> None:
    r"""Copy the filtered parameters to the smoothed slots along the whole trajectory."""
    for state in trajectory.visit_backwards(tip):
        if state.has("filtered") and state.mask & TrackStatePropMask.SMOOTHED:
            state.smoothed = state.filtered
            state.smoothed_covariance = state.filtered_covariance


def void_outlier_finder(state: TrackState) -> bool:
    return False


def void_reverse_filtering_logic(state: TrackState) -> bool:
    return False


@dataclass
class Gx2FitterExtensions:
    r"""
    Pluggable strategies of the global chi-square fitter.

    Parameters
    ----------
    calibrator : callable
        ``(context, source_link, state) -> None``; writes the calibrated
        measurement, its covariance and projector indices into ``state``.
        Required; the default raises.
    updater : callable
        ``(context, state, direction, logger) -> None``.
    outlier_finder : callable
        ``(state) -> bool``; ``True`` excludes the measurement from the fit.
    smoother : callable
        ``(context, trajectory, tip, logger) -> None``.
    reverse_filtering_logic : callable
        ``(state) -> bool``; unused by the global fit, kept for symmetry with
        the Kalman-style extension set.
    """

    calibrator: Callable = void_calibrator
    updater: Callable = void_updater
    outlier_finder: Callable[[TrackState], bool] = void_outlier_finder
    smoother: Callable = void_smoother
    reverse_filtering_logic: Callable[[TrackState], bool] = void_reverse_filtering_logic
