from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from numba import njit

from trackfit_reco.errors import (
    ConfigurationError,
    EdgeOfGridError,
    EmptyGridError,
    MissingCovarianceError,
    SingularMatrixError,
)
from trackfit_reco.parameters import LOC0, LOC1, BoundTrackParameters


__all__ = ["GaussianGridTrackDensity"]

# FWHM = 2 sqrt(2 ln 2) sigma
_HWHM_PER_SIGMA = float(np.sqrt(2.0 * np.log(2.0)))


@njit(cache=True, fastmath=True)
def _normal_2d(d: float, z: float, c00: float, c01: float, c10: float, c11: float) -> float:
    r"""
    Bivariate normal density :math:`\mathcal{N}((d,z);\,0,\,C)`.

    .. math::

        \frac{1}{2\pi\sqrt{|C|}}\exp\!\Big[-\frac{1}{2|C|}
        \big(C_{11}d^2 - d\,z\,(C_{01}+C_{10}) + C_{00}z^2\big)\Big].
    """
    det = c00 * c11 - c01 * c10
    coef = 1.0 / (2.0 * np.pi * np.sqrt(det))
    expo = -1.0 / (2.0 * det) * (c11 * d * d - d * z * (c01 + c10) + c00 * z * z)
    return coef * np.exp(expo)


@njit(cache=True, fastmath=True)
def _create_track_grid(offset: int,
                       trk_size: int,
                       bin_size: float,
                       dist_d: float,
                       dist_z: float,
                       c00: float, c01: float, c10: float, c11: float) -> np.ndarray:
    r"""
    Density of one track along :math:`z` at the beam-line row of its kernel.

    Row ``i = (n-1)/2 + offset`` of the :math:`n\times n` kernel sits at
    :math:`d = \text{offset}\cdot\Delta`; column ``j`` at
    :math:`z_j = (j - (n-1)/2)\,\Delta` relative to the track's z bin center.
    The Gaussian is evaluated at the track-to-point separation
    :math:`(d + \delta_d,\; \delta_z - z_j)`. The z argument is the track
    position minus the bin position, the reverse of the plain offset
    :math:`z_j + \delta_z`, so a track below its bin center peaks in the
    lower kernel bins and a correlated :math:`(d_0, z_0)` block tilts the
    kernel consistently with the track.
    """
    out = np.zeros(trk_size, dtype=np.float64)
    i = (trk_size - 1) // 2 + offset
    d = (i - trk_size / 2.0 + 0.5) * bin_size
    for j in range(trk_size):
        z = (j - trk_size / 2.0 + 0.5) * bin_size
        out[j] = _normal_2d(d + dist_d, dist_z - z, c00, c01, c10, c11)
    return out


@njit(cache=True)
def _modify_main_grid(z_bin: int, trk_grid: np.ndarray, main_grid: np.ndarray, sign: float) -> None:
    r"""
    Add (``sign=+1``) or subtract (``sign=-1``) a track grid centred on ``z_bin``.

    Kernel bins falling outside the main grid are dropped.
    """
    n_main = main_grid.shape[0]
    half = (trk_grid.shape[0] - 1) // 2
    for j in range(trk_grid.shape[0]):
        k = z_bin - half + j
        if 0 <= k < n_main:
            main_grid[k] += sign * trk_grid[j]


class GaussianGridTrackDensity:
    r"""
    One-dimensional track density along the beam axis on a fixed grid.

    Each track with perigee parameters :math:`(d_0, z_0)` and covariance
    block :math:`C = \operatorname{cov}(d_0, z_0)` contributes a truncated
    kernel of ``trk_grid_size`` bins,

    .. math::

        \rho_j = \mathcal{N}\big((d_0,\; z_0 - z_j);\, 0,\, C\big),

    i.e. its 2D Gaussian evaluated on the beam line (:math:`d=0`) at the
    bin centers :math:`z_j` around the bin containing :math:`z_0`. The grid
    spans :math:`[-z_\text{max}, z_\text{max}]` with bin size
    :math:`\Delta = 2 z_\text{max}/N`. Contributions are returned to the
    caller so they can be subtracted again exactly; the grid itself does not
    remember track identity.

    Parameters
    ----------
    config : GaussianGridTrackDensity.Config
    logger : logging.Logger, optional

    Notes
    -----
    The per-track kernels run as ``numba.njit`` compiled loops, so adding
    or removing a track costs :math:`O(n_\text{trk})` regardless of the main
    grid size.
    """

    @dataclass
    class Config:
        r"""
        Parameters
        ----------
        z_min_max : float
            Half range of the grid along :math:`z` (mm).
        main_grid_size : int
            Number of bins of the main grid.
        trk_grid_size : int
            Odd kernel size (bins) of a single track.
        use_highest_sum_z_position : bool
            Choose among near-equal maxima by their 3-bin density sum.
        max_relative_density_dev : float
            Relative tolerance to the global maximum for the above.
        """

        z_min_max: float = 100.0
        main_grid_size: int = 2000
        trk_grid_size: int = 15
        use_highest_sum_z_position: bool = False
        max_relative_density_dev: float = 0.01

        @property
        def bin_size(self) -> float:
            return 2.0 * self.z_min_max / self.main_grid_size

        def validate(self) -> None:
            if self.trk_grid_size < 1 or self.trk_grid_size % 2 == 0:
                raise ConfigurationError(f"trk_grid_size must be odd, got {self.trk_grid_size}.")
            if self.main_grid_size <= self.trk_grid_size:
                raise ConfigurationError(
                    f"main_grid_size ({self.main_grid_size}) must exceed trk_grid_size ({self.trk_grid_size})."
                )
            if self.z_min_max <= 0.0:
                raise ConfigurationError("z_min_max must be positive.")

    __slots__ = ("cfg", "log")

    def __init__(self, config: Optional["GaussianGridTrackDensity.Config"] = None,
                 logger: Optional[logging.Logger] = None):
        self.cfg = config or GaussianGridTrackDensity.Config()
        self.cfg.validate()
        self.log = logger or logging.getLogger(self.__class__.__name__)

    @property
    def bin_size(self) -> float:
        return self.cfg.bin_size

    def make_main_grid(self) -> np.ndarray:
        return np.zeros(self.cfg.main_grid_size, dtype=np.float64)

    def bin_center(self, k: int) -> float:
        r""":math:`z` of bin ``k``: :math:`-z_\text{max} + (k + \tfrac12)\Delta`."""
        return (k + 0.5) * self.cfg.bin_size - self.cfg.z_min_max

    def _check_grid(self, main_grid: np.ndarray) -> None:
        if main_grid.shape != (self.cfg.main_grid_size,):
            raise ValueError(f"main grid must have shape ({self.cfg.main_grid_size},), got {main_grid.shape}.")

    # ------------------------------------------------------------ add/remove
    def add_track(self, params: BoundTrackParameters, main_grid: np.ndarray) -> Tuple[int, np.ndarray]:
        r"""
        Add one track to ``main_grid`` in place.

        Parameters
        ----------
        params : BoundTrackParameters
            Perigee parameters with covariance.
        main_grid : ndarray, shape (main_grid_size,)

        Returns
        -------
        z_bin : int
            Center bin of the contribution, ``-1`` if the track lies outside
            the kernel in :math:`d_0` or outside the grid in :math:`z_0`.
        trk_grid : ndarray, shape (trk_grid_size,)
            The contribution (all zero when ``z_bin == -1``).

        Raises
        ------
        MissingCovarianceError
            If ``params`` has no covariance.
        SingularMatrixError
            If the :math:`(d_0, z_0)` block is not positive definite.
        """
        self._check_grid(main_grid)
        if not params.has_covariance:
            raise MissingCovarianceError("grid density needs the (d0, z0) covariance.")
        cfg = self.cfg
        n_trk = cfg.trk_grid_size
        bin_size = cfg.bin_size
        d0 = float(params.parameters[LOC0])
        z0 = float(params.parameters[LOC1])
        cov = params.covariance[LOC0:LOC1 + 1, LOC0:LOC1 + 1]
        det = float(cov[0, 0] * cov[1, 1] - cov[0, 1] * cov[1, 0])
        if not np.isfinite(det) or det <= 0.0 or cov[0, 0] <= 0.0:
            raise SingularMatrixError(f"(d0, z0) covariance is not positive definite (det={det:g}).")

        d_offset = int(np.floor(d0 / bin_size - 0.5) + 1)
        if abs(d_offset) > (n_trk - 1) // 2:
            return -1, np.zeros(n_trk, dtype=np.float64)

        z_bin = int(np.floor(z0 / bin_size + cfg.main_grid_size / 2.0))
        if not (0 <= z_bin < cfg.main_grid_size):
            return -1, np.zeros(n_trk, dtype=np.float64)

        dist_d = d0 - d_offset * bin_size
        dist_z = z0 - self.bin_center(z_bin)
        trk_grid = _create_track_grid(d_offset, n_trk, bin_size, dist_d, dist_z,
                                      float(cov[0, 0]), float(cov[0, 1]),
                                      float(cov[1, 0]), float(cov[1, 1]))
        _modify_main_grid(z_bin, trk_grid, main_grid, 1.0)
        return z_bin, trk_grid

    def remove_track_grid_from_main_grid(self, z_bin: int, trk_grid: np.ndarray, main_grid: np.ndarray) -> None:
        """Subtract a contribution previously returned by :meth:`add_track`; ``z_bin == -1`` is a no-op."""
        if z_bin == -1:
            return
        self._check_grid(main_grid)
        _modify_main_grid(int(z_bin), np.asarray(trk_grid, dtype=np.float64), main_grid, -1.0)

    # --------------------------------------------------------------- queries
    def _max_bin(self, main_grid: np.ndarray) -> int:
        self._check_grid(main_grid)
        if not np.any(main_grid != 0.0):
            raise EmptyGridError("track density grid is empty.")
        if self.cfg.use_highest_sum_z_position:
            return self._highest_sum_bin(main_grid)
        return int(np.argmax(main_grid))

    def get_max_z_position(self, main_grid: np.ndarray) -> float:
        r"""
        :math:`z` (bin center) of maximal track density.

        Raises
        ------
        EmptyGridError
            If no track contributes to the grid.
        """
        return self.bin_center(self._max_bin(main_grid))

    def get_max_z_position_and_width(self, main_grid: np.ndarray) -> Tuple[float, float]:
        r"""
        Peak position and Gaussian-equivalent width of the density peak.

        Scans outward from the peak to the first bins at or below half the
        peak density, interpolates the half-maximum crossings linearly
        between bin centers and returns

        .. math::

            \sigma = \frac{z_\text{right} - z_\text{left}}{2\sqrt{2\ln 2}}.

        Raises
        ------
        EmptyGridError
            If no track contributes to the grid.
        EdgeOfGridError
            If the peak sits in the first or last bin or a crossing lies
            beyond the grid.
        """
        k = self._max_bin(main_grid)
        return self.bin_center(k), self._estimate_seed_width(main_grid, k)

    def _estimate_seed_width(self, main_grid: np.ndarray, k: int) -> float:
        n = main_grid.shape[0]
        if k == 0 or k == n - 1:
            raise EdgeOfGridError(f"density peak in edge bin {k}.")
        peak = main_grid[k]
        half = 0.5 * peak

        r = k
        while main_grid[r] > half:
            r += 1
            if r >= n:
                raise EdgeOfGridError("no right half-maximum crossing inside the grid.")
        l = k
        while main_grid[l] > half:
            l -= 1
            if l < 0:
                raise EdgeOfGridError("no left half-maximum crossing inside the grid.")

        bin_size = self.cfg.bin_size
        z_right = self.bin_center(r - 1) + bin_size * (main_grid[r - 1] - half) / (main_grid[r - 1] - main_grid[r])
        z_left = self.bin_center(l + 1) - bin_size * (main_grid[l + 1] - half) / (main_grid[l + 1] - main_grid[l])
        return float((z_right - z_left) / 2.0 / _HWHM_PER_SIGMA)

    def _density_sum(self, main_grid: np.ndarray, k: int) -> float:
        lo = max(k - 1, 0)
        hi = min(k + 2, main_grid.shape[0])
        return float(np.sum(main_grid[lo:hi]))

    def _highest_sum_bin(self, main_grid: np.ndarray) -> int:
        r"""
        Among local maxima within ``max_relative_density_dev`` of the global
        maximum, the bin with the largest 3-bin density sum.

        Candidates are the global maximum followed by the other qualifying
        local maxima in grid order; only a strictly larger sum replaces the
        current choice.
        """
        g = main_grid
        k_max = int(np.argmax(g))
        g_max = g[k_max]

        left = np.empty_like(g)
        left[0] = -np.inf
        left[1:] = g[:-1]
        right = np.empty_like(g)
        right[-1] = -np.inf
        right[:-1] = g[1:]
        is_peak = (g >= left) & (g >= right) & (g > 0.0)
        close = (g_max - g) <= self.cfg.max_relative_density_dev * g_max
        candidates: List[int] = [k_max] + [int(k) for k in np.flatnonzero(is_peak & close) if k != k_max]

        best, best_sum = k_max, self._density_sum(g, k_max)
        for k in candidates[1:]:
            s = self._density_sum(g, k)
            if s > best_sum:
                best, best_sum = k, s
        if best != k_max:
            self.log.debug("highest-sum position moved maximum from bin %d to %d", k_max, best)
        return best
