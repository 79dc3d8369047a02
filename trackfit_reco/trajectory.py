from __future__ import annotations

import enum
from typing import Callable, Dict, Iterator, List, Optional

import numpy as np
import pandas as pd

from trackfit_reco.parameters import BOUND_SIZE, BoundTrackParameters
from trackfit_reco.surfaces import Surface


__all__ = [
    "INVALID",
    "TrackStatePropMask",
    "TrackStateType",
    "TrackState",
    "MultiTrajectory",
    "Track",
    "TrackContainer",
    "calculate_track_quantities",
]

# parent link of the first state of a trajectory
INVALID = -1


class TrackStatePropMask(enum.IntFlag):
    """Components allocated for a track state."""

    NONE = 0
    PREDICTED = 1
    FILTERED = 2
    SMOOTHED = 4
    JACOBIAN = 8
    CALIBRATED = 16
    ALL = PREDICTED | FILTERED | SMOOTHED | JACOBIAN | CALIBRATED


class TrackStateType(enum.IntFlag):
    """Classification flags of a track state."""

    NONE = 0
    MEASUREMENT = 1
    PARAMETER = 2
    OUTLIER = 4
    HOLE = 8


_COMPONENTS: Dict[str, TrackStatePropMask] = {
    "predicted": TrackStatePropMask.PREDICTED,
    "predicted_covariance": TrackStatePropMask.PREDICTED,
    "filtered": TrackStatePropMask.FILTERED,
    "filtered_covariance": TrackStatePropMask.FILTERED,
    "smoothed": TrackStatePropMask.SMOOTHED,
    "smoothed_covariance": TrackStatePropMask.SMOOTHED,
    "jacobian": TrackStatePropMask.JACOBIAN,
    "calibrated": TrackStatePropMask.CALIBRATED,
    "calibrated_covariance": TrackStatePropMask.CALIBRATED,
    "projector_indices": TrackStatePropMask.CALIBRATED,
}


class TrackState:
    r"""
    One entry of a :class:`MultiTrajectory`.

    Optional components (``predicted``, ``filtered``, ``smoothed`` with their
    covariances, ``jacobian``, ``calibrated`` with covariance and
    ``projector_indices``) exist only if the allocation mask contains the
    matching :class:`TrackStatePropMask` bit. Reading or writing a component
    that was not allocated raises :class:`AttributeError`; reading an
    allocated but unset component also raises :class:`AttributeError`.

    Always present: ``index``, ``previous``, ``mask``, ``type_flags``,
    ``path_length``, ``chi2``, ``reference_surface`` and
    ``uncalibrated_source_link``.
    """

    __slots__ = (
        "index", "previous", "mask", "type_flags", "path_length", "chi2",
        "reference_surface", "uncalibrated_source_link",
        *_COMPONENTS.keys(),
    )

    def __init__(self, index: int, mask: TrackStatePropMask, previous: int):
        object.__setattr__(self, "mask", TrackStatePropMask(mask))
        self.index = index
        self.previous = previous
        self.type_flags = TrackStateType.NONE
        self.path_length = 0.0
        self.chi2 = 0.0
        self.reference_surface: Optional[Surface] = None
        self.uncalibrated_source_link = None

    def __setattr__(self, name, value):
        need = _COMPONENTS.get(name)
        if need is not None and not (self.mask & need):
            raise AttributeError(f"component '{name}' not allocated (mask={self.mask!r}).")
        if name == "mask":
            raise AttributeError("allocation mask is fixed at creation.")
        object.__setattr__(self, name, value)

    def has(self, component: str) -> bool:
        """``True`` if ``component`` is allocated and has been set."""
        need = _COMPONENTS.get(component)
        if need is not None and not (self.mask & need):
            return False
        return hasattr(self, component)

    @property
    def parameters(self) -> np.ndarray:
        """Best available parameters: smoothed, else filtered, else predicted."""
        for name in ("smoothed", "filtered", "predicted"):
            if self.has(name):
                return getattr(self, name)
        raise AttributeError("track state carries no parameters.")

    @property
    def calibrated_size(self) -> int:
        return len(self.projector_indices) if self.has("projector_indices") else 0

    def projector(self) -> np.ndarray:
        r"""Projector :math:`H\in\{0,1\}^{k\times 6}` of the calibrated subspace."""
        idx = self.projector_indices
        H = np.zeros((len(idx), BOUND_SIZE), dtype=np.float64)
        H[np.arange(len(idx)), list(idx)] = 1.0
        return H

    def __repr__(self) -> str:
        return (f"TrackState(index={self.index}, previous={self.previous}, "
                f"type={self.type_flags!r}, mask={self.mask!r})")


class MultiTrajectory:
    r"""
    Append-only arena of track states linked by parent indices.

    Several trajectories share the arena; each is identified by its tip
    index and traversed backwards through ``previous`` links until
    :data:`INVALID`. States are never removed or overwritten, so indices
    handed out stay valid for the lifetime of the store.
    """

    __slots__ = ("_states",)

    def __init__(self):
        self._states: List[TrackState] = []

    def add_track_state(self,
                        mask: TrackStatePropMask = TrackStatePropMask.ALL,
                        previous: int = INVALID) -> int:
        if previous != INVALID and not (0 <= previous < len(self._states)):
            raise IndexError(f"previous index {previous} does not exist.")
        index = len(self._states)
        self._states.append(TrackState(index, mask, previous))
        return index

    def get_track_state(self, index: int) -> TrackState:
        if not (0 <= index < len(self._states)):
            raise IndexError(f"track state {index} does not exist.")
        return self._states[index]

    @property
    def size(self) -> int:
        return len(self._states)

    def __len__(self) -> int:
        return len(self._states)

    def visit_backwards(self, tip: int) -> Iterator[TrackState]:
        """Yield the states from ``tip`` back to the first state of its trajectory."""
        i = tip
        while i != INVALID:
            state = self.get_track_state(i)
            yield state
            i = state.previous

    def apply_backwards(self, tip: int, fn: Callable[[TrackState], Optional[bool]]) -> None:
        """Call ``fn`` on each state from ``tip`` backwards; stop early if it returns ``False``."""
        for state in self.visit_backwards(tip):
            if fn(state) is False:
                break


class Track:
    """Fitted track summary stored in a :class:`TrackContainer`."""

    __slots__ = (
        "index", "parameters", "covariance", "reference_surface", "tip_index",
        "n_measurements", "n_holes", "n_outliers", "chi2", "ndf",
        "absolute_charge", "mass", "propagation_error",
    )

    def __init__(self, index: int):
        self.index = index
        self.parameters: Optional[np.ndarray] = None
        self.covariance: Optional[np.ndarray] = None
        self.reference_surface: Optional[Surface] = None
        self.tip_index = INVALID
        self.n_measurements = 0
        self.n_holes = 0
        self.n_outliers = 0
        self.chi2 = 0.0
        self.ndf = 0
        self.absolute_charge = 1.0
        self.mass = None
        self.propagation_error: Optional[Exception] = None

    @property
    def degraded(self) -> bool:
        """True if propagation failed during the fit and the result is partial."""
        return self.propagation_error is not None

    def bound_parameters(self) -> BoundTrackParameters:
        """Track parameters as :class:`BoundTrackParameters` on the reference surface."""
        if self.parameters is None or self.reference_surface is None:
            raise ValueError(f"track {self.index} has no parameters.")
        kw = {"absolute_charge": self.absolute_charge}
        if self.mass is not None:
            kw["mass"] = self.mass
        return BoundTrackParameters(self.reference_surface, self.parameters, self.covariance, **kw)

    def __repr__(self) -> str:
        return (f"Track(index={self.index}, tip={self.tip_index}, nmeas={self.n_measurements}, "
                f"chi2={self.chi2:.3f}, ndf={self.ndf})")


class TrackContainer:
    r"""
    Tracks plus the :class:`MultiTrajectory` holding their states.

    Parameters
    ----------
    trajectory : MultiTrajectory, optional
        Shared state arena; a new one is created if omitted.
    """

    __slots__ = ("trajectory", "_tracks")

    def __init__(self, trajectory: Optional[MultiTrajectory] = None):
        self.trajectory = trajectory if trajectory is not None else MultiTrajectory()
        self._tracks: List[Track] = []

    def add_track(self) -> int:
        self._tracks.append(Track(len(self._tracks)))
        return len(self._tracks) - 1

    def get_track(self, index: int) -> Track:
        return self._tracks[index]

    def __len__(self) -> int:
        return len(self._tracks)

    def __iter__(self) -> Iterator[Track]:
        return iter(self._tracks)

    def to_frame(self) -> pd.DataFrame:
        """One row per track: bound parameters, their errors and fit quality."""
        cols = ["track", "tip", "loc0", "loc1", "phi", "theta", "qop", "time",
                "sigma_loc0", "sigma_loc1", "sigma_phi", "sigma_theta",
                "chi2", "ndf", "nmeas", "nholes", "noutliers", "degraded"]
        rows = []
        for t in self._tracks:
            p = t.parameters if t.parameters is not None else np.full(BOUND_SIZE, np.nan)
            sig = (np.sqrt(np.diag(t.covariance))[:4] if t.covariance is not None
                   else np.full(4, np.nan))
            rows.append([t.index, t.tip_index, *p, *sig,
                         t.chi2, t.ndf, t.n_measurements, t.n_holes, t.n_outliers, t.degraded])
        return pd.DataFrame(rows, columns=cols)


def calculate_track_quantities(track: Track, trajectory: MultiTrajectory) -> Track:
    r"""
    Fill the fit-quality summary of ``track`` from its trajectory.

    Walks back from ``track.tip_index``: measurement states add their
    :math:`\chi^2` and calibrated dimension to :math:`\chi^2` and ndf,
    outliers and holes are counted separately.
    """
    chi2, ndf, nmeas, nholes, noutliers = 0.0, 0, 0, 0, 0
    for state in trajectory.visit_backwards(track.tip_index):
        flags = state.type_flags
        if flags & TrackStateType.OUTLIER:
            noutliers += 1
        elif flags & TrackStateType.MEASUREMENT:
            nmeas += 1
            chi2 += state.chi2
            ndf += state.calibrated_size
        elif flags & TrackStateType.HOLE:
            nholes += 1
    track.chi2 = chi2
    track.ndf = ndf
    track.n_measurements = nmeas
    track.n_holes = nholes
    track.n_outliers = noutliers
    return track
