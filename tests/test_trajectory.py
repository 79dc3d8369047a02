import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from trackfit_reco.surfaces import PerigeeSurface
from trackfit_reco.trajectory import (
    INVALID,
    MultiTrajectory,
    TrackContainer,
    TrackStatePropMask,
    TrackStateType,
    calculate_track_quantities,
)


def _chain(traj, n, mask=TrackStatePropMask.ALL):
    prev = INVALID
    for _ in range(n):
        prev = traj.add_track_state(mask, prev)
    return prev


def test_visit_backwards_follows_parents():
    traj = MultiTrajectory()
    tip_a = _chain(traj, 3)
    tip_b = _chain(traj, 2)
    assert traj.size == 5
    assert [s.index for s in traj.visit_backwards(tip_a)] == [2, 1, 0]
    assert [s.index for s in traj.visit_backwards(tip_b)] == [4, 3]
    assert traj.get_track_state(3).previous == INVALID


def test_apply_backwards_stops_on_false():
    traj = MultiTrajectory()
    tip = _chain(traj, 4)
    seen = []
    traj.apply_backwards(tip, lambda s: seen.append(s.index) or s.index > 2)
    assert seen == [3, 2]


def test_invalid_parent_raises():
    traj = MultiTrajectory()
    with pytest.raises(IndexError):
        traj.add_track_state(TrackStatePropMask.ALL, 5)
    with pytest.raises(IndexError):
        traj.get_track_state(0)


def test_unallocated_components_are_inaccessible():
    traj = MultiTrajectory()
    state = traj.get_track_state(traj.add_track_state(TrackStatePropMask.PREDICTED))
    state.predicted = np.zeros(6)
    assert state.has("predicted")
    assert not state.has("filtered")
    with pytest.raises(AttributeError):
        state.filtered = np.zeros(6)
    with pytest.raises(AttributeError):
        state.calibrated
    with pytest.raises(AttributeError):
        state.mask = TrackStatePropMask.ALL
    np.testing.assert_array_equal(state.parameters, np.zeros(6))


def test_projector_from_indices():
    traj = MultiTrajectory()
    state = traj.get_track_state(traj.add_track_state())
    state.projector_indices = (0, 2)
    H = state.projector()
    np.testing.assert_array_equal(H, [[1, 0, 0, 0, 0, 0], [0, 0, 1, 0, 0, 0]])
    assert state.calibrated_size == 2


def test_track_quantities_and_frame():
    container = TrackContainer()
    traj = container.trajectory
    prev = INVALID
    flags = [TrackStateType.MEASUREMENT, TrackStateType.HOLE,
             TrackStateType.MEASUREMENT, TrackStateType.OUTLIER]
    for k, flag in enumerate(flags):
        prev = traj.add_track_state(TrackStatePropMask.ALL, prev)
        state = traj.get_track_state(prev)
        state.type_flags |= flag
        state.projector_indices = (0, 1)
        state.chi2 = 1.5 * (k + 1)

    track = container.get_track(container.add_track())
    track.tip_index = prev
    track.parameters = np.array([0.1, 2.0, 0.3, 1.0, 0.5, 0.0])
    track.covariance = np.diag([0.01, 0.04, 1e-4, 1e-4, 1.0, 1.0])
    track.reference_surface = PerigeeSurface([0, 0, 0])
    calculate_track_quantities(track, traj)

    assert track.n_measurements == 2
    assert track.n_holes == 1
    assert track.n_outliers == 1
    assert track.chi2 == pytest.approx(1.5 + 4.5)
    assert track.ndf == 4

    df = container.to_frame()
    assert len(df) == 1
    assert df.loc[0, "nmeas"] == 2
    assert df.loc[0, "sigma_loc1"] == pytest.approx(0.2)
    assert track.bound_parameters().has_covariance
