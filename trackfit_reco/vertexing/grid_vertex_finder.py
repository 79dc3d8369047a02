from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from trackfit_reco.parameters import LOC0, LOC1, BoundTrackParameters
from trackfit_reco.vertexing.grid_density import GaussianGridTrackDensity


__all__ = ["Vertex", "GridDensityVertexFinder"]


class Vertex:
    r"""
    Space-time vertex :math:`(x, y, z, t)` with a :math:`4\times4` covariance.
    """

    __slots__ = ("position", "covariance")

    def __init__(self, position=None, covariance=None):
        self.position = (np.zeros(4) if position is None
                         else np.asarray(position, dtype=np.float64).reshape(4).copy())
        self.covariance = (np.zeros((4, 4)) if covariance is None
                           else np.asarray(covariance, dtype=np.float64).reshape(4, 4).copy())

    def __repr__(self) -> str:
        return f"Vertex(position={self.position.tolist()})"


class GridDensityVertexFinder:
    r"""
    Single vertex seed from the maximum of the grid track density.

    Tracks (perigee parameters with respect to the beam line) passing the
    impact-parameter significance cuts

    .. math::

        \frac{d_0^2}{\sigma^2(d_0)} < s_{d_0}^2,\qquad
        \frac{z_0^2}{\sigma^2(z_0)} < s_{z_0}^2

    are added to a :class:`GaussianGridTrackDensity`; the seed sits at the
    beam-spot constraint shifted by the :math:`z` of maximal density. With
    ``estimate_seed_width`` the :math:`z` variance of the seed covariance is
    the squared width of the density peak.

    When ``cache_grid_state_for_track_removal`` is set, each track's
    contribution is kept in the :class:`State`, and subsequent calls only
    subtract the tracks listed in ``state.tracks_to_remove`` instead of
    rebuilding the grid.
    """

    @dataclass
    class Config:
        grid_config: GaussianGridTrackDensity.Config = field(default_factory=GaussianGridTrackDensity.Config)
        max_d0_significance: float = 3.5
        max_z0_significance: float = 12.0
        cache_grid_state_for_track_removal: bool = True
        estimate_seed_width: bool = False

    class State:
        """Grid and per-track contributions carried between :meth:`find` calls."""

        __slots__ = ("main_grid", "bin_and_track_grid", "tracks_to_remove", "initialized")

        def __init__(self, main_grid_size: int):
            self.main_grid = np.zeros(main_grid_size, dtype=np.float64)
            self.bin_and_track_grid: Dict[BoundTrackParameters, Tuple[int, np.ndarray]] = {}
            self.tracks_to_remove: List[BoundTrackParameters] = []
            self.initialized = False

    __slots__ = ("cfg", "density", "log")

    def __init__(self, config: Optional["GridDensityVertexFinder.Config"] = None,
                 logger: Optional[logging.Logger] = None):
        self.cfg = config or GridDensityVertexFinder.Config()
        self.log = logger or logging.getLogger(self.__class__.__name__)
        self.density = GaussianGridTrackDensity(self.cfg.grid_config, logger=self.log)

    def make_state(self) -> "GridDensityVertexFinder.State":
        return GridDensityVertexFinder.State(self.cfg.grid_config.main_grid_size)

    def passes_track_selection(self, params: BoundTrackParameters) -> bool:
        if not params.has_covariance:
            return False
        d0 = params.parameters[LOC0]
        z0 = params.parameters[LOC1]
        cov_d0 = params.covariance[LOC0, LOC0]
        cov_z0 = params.covariance[LOC1, LOC1]
        if cov_d0 <= 0.0 or cov_z0 <= 0.0:
            return False
        return bool(d0 * d0 / cov_d0 < self.cfg.max_d0_significance ** 2
                    and z0 * z0 / cov_z0 < self.cfg.max_z0_significance ** 2)

    def find(self,
             tracks: Sequence[BoundTrackParameters],
             state: Optional["GridDensityVertexFinder.State"] = None,
             constraint: Optional[Vertex] = None) -> Vertex:
        r"""
        Vertex seed for ``tracks``.

        Parameters
        ----------
        tracks : sequence of BoundTrackParameters
            Perigee parameters (beam line as reference).
        state : GridDensityVertexFinder.State, optional
            Reused grid state; a fresh one is made if omitted.
        constraint : Vertex, optional
            Beam-spot constraint; the seed is placed at its position plus
            :math:`(0, 0, z_\text{max}, 0)` and inherits its covariance.

        Returns
        -------
        Vertex
            The seed. If no track contributes, the seed is the constraint
            itself.
        """
        state = state or self.make_state()
        constraint = constraint or Vertex()
        cache = self.cfg.cache_grid_state_for_track_removal

        if cache and state.initialized and state.tracks_to_remove:
            for trk in state.tracks_to_remove:
                entry = state.bin_and_track_grid.pop(trk, None)
                if entry is None:
                    # never added: failed the track selection
                    continue
                z_bin, trk_grid = entry
                self.density.remove_track_grid_from_main_grid(z_bin, trk_grid, state.main_grid)
            self.log.debug("removed %d tracks from the density grid", len(state.tracks_to_remove))
            state.tracks_to_remove = []
        else:
            state.main_grid[:] = 0.0
            state.bin_and_track_grid.clear()
            n_used = 0
            for trk in tracks:
                if not self.passes_track_selection(trk):
                    continue
                z_bin, trk_grid = self.density.add_track(trk, state.main_grid)
                n_used += 1
                if cache:
                    state.bin_and_track_grid[trk] = (z_bin, trk_grid)
            state.initialized = True
            self.log.debug("filled density grid with %d of %d tracks", n_used, len(tracks))

        z, width = 0.0, 0.0
        if np.any(state.main_grid != 0.0):
            if self.cfg.estimate_seed_width:
                z, width = self.density.get_max_z_position_and_width(state.main_grid)
            else:
                z = self.density.get_max_z_position(state.main_grid)

        position = constraint.position + np.array([0.0, 0.0, z, 0.0])
        covariance = constraint.covariance.copy()
        if width != 0.0:
            covariance[2, 2] = width * width
        return Vertex(position, covariance)
