from __future__ import annotations

import logging
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from trackfit_reco.errors import PropagationError
from trackfit_reco.measurements import MeasurementContainer, SourceLink
from trackfit_reco.parameters import BOUND_SIZE, LOC0, LOC1, PHI, QOP, THETA, BoundTrackParameters
from trackfit_reco.propagator import HelixPropagator, SurfaceNavigator
from trackfit_reco.surfaces import Surface
from trackfit_reco.utils import make_direction_from_phi_theta


__all__ = [
    "SimulatedTrack",
    "simulate_track",
    "simulate_event",
    "smear_start_parameters",
]


class SimulatedTrack(NamedTuple):
    """Truth parameters at the production vertex, source links and true surface states."""

    truth: BoundTrackParameters
    source_links: List[SourceLink]
    true_states: List[BoundTrackParameters]


def simulate_track(propagator: HelixPropagator,
                   surfaces: Sequence[Surface],
                   vertex,
                   phi: float,
                   theta: float,
                   qop: float,
                   measurements: MeasurementContainer,
                   resolution: Tuple[float, float] = (0.05, 0.05),
                   rng: Optional[np.random.Generator] = None,
                   absolute_charge: float = 1.0) -> SimulatedTrack:
    r"""
    Propagate one truth track through ``surfaces`` and record smeared hits.

    On every crossed surface the true local position is smeared,

    .. math::

        m = (l_0 + \varepsilon_0,\; l_1 + \varepsilon_1),\qquad
        \varepsilon_k \sim \mathcal{N}(0, \sigma_k^2),

    and stored with covariance :math:`\operatorname{diag}(\sigma_0^2,\sigma_1^2)`.
    The walk stops at the first surface the track cannot reach.

    Parameters
    ----------
    propagator : HelixPropagator
    surfaces : sequence of Surface
        Measurement surfaces (order irrelevant).
    vertex : array_like, shape (4,)
        Production point :math:`(x, y, z, t)`.
    phi, theta, qop : float
        Initial direction and :math:`q/p`.
    measurements : MeasurementContainer
        Receives the smeared hits.
    resolution : (float, float), optional
        Local resolutions :math:`(\sigma_0, \sigma_1)` in mm.
    rng : numpy.random.Generator, optional
    absolute_charge : float, optional

    Returns
    -------
    SimulatedTrack
    """
    rng = np.random.default_rng() if rng is None else rng
    sigma = np.asarray(resolution, dtype=np.float64).reshape(2)
    cov = np.diag(sigma ** 2)

    truth = BoundTrackParameters.curvilinear(vertex, make_direction_from_phi_theta(phi, theta), qop,
                                             absolute_charge=absolute_charge)
    links: List[SourceLink] = []
    states: List[BoundTrackParameters] = []
    current = truth
    for surface in SurfaceNavigator(surfaces).surfaces_along(truth):
        try:
            current = propagator.propagate(current, surface).end_parameters
        except PropagationError as e:
            logging.getLogger(__name__).debug("truth track stops before %r: %s", surface, e)
            break
        states.append(current)
        loc = current.parameters[[LOC0, LOC1]] + rng.normal(0.0, sigma)
        links.append(measurements.add(surface.geometry_id, loc, cov))
    return SimulatedTrack(truth, links, states)


def smear_start_parameters(truth: BoundTrackParameters,
                           sigmas: Sequence[float],
                           rng: Optional[np.random.Generator] = None) -> BoundTrackParameters:
    r"""
    Gaussian-smeared copy of ``truth`` with covariance :math:`\operatorname{diag}(\sigma^2)`.

    ``sigmas`` holds the six bound-parameter widths; :math:`\theta` is kept
    inside :math:`(0,\pi)` by reflecting the smeared value.
    """
    rng = np.random.default_rng() if rng is None else rng
    s = np.asarray(sigmas, dtype=np.float64).reshape(BOUND_SIZE)
    p = np.array(truth.parameters) + rng.normal(0.0, 1.0, BOUND_SIZE) * s
    p[THETA] = abs(p[THETA])
    if p[THETA] > np.pi:
        p[THETA] = 2.0 * np.pi - p[THETA]
        p[PHI] += np.pi
    if p[QOP] == 0.0:
        p[QOP] = truth.qop
    return truth.with_parameters(p, np.diag(s ** 2))


def simulate_event(propagator: HelixPropagator,
                   surfaces: Sequence[Surface],
                   n_tracks: int,
                   rng: Optional[np.random.Generator] = None,
                   vertex_z_sigma: float = 20.0,
                   phi_max: float = 0.2,
                   theta_spread: float = 0.2,
                   p_range: Tuple[float, float] = (1.0, 10.0),
                   resolution: Tuple[float, float] = (0.05, 0.05)) -> Tuple[MeasurementContainer, List[SimulatedTrack], np.ndarray]:
    r"""
    Tracks from one common vertex on the beam line.

    The vertex is :math:`(0, 0, z_v, 0)` with
    :math:`z_v \sim \mathcal{N}(0, \sigma_{z}^2)`. Directions are uniform in
    :math:`|\phi| < \phi_\text{max}` and
    :math:`|\theta - \pi/2| < \Delta\theta`, momenta uniform in ``p_range``
    with a random charge sign.

    Returns
    -------
    measurements : MeasurementContainer
    tracks : list of SimulatedTrack
    vertex : ndarray, shape (4,)
    """
    if n_tracks < 0:
        raise ValueError("n_tracks must be non-negative.")
    rng = np.random.default_rng() if rng is None else rng
    vertex = np.array([0.0, 0.0, rng.normal(0.0, vertex_z_sigma), 0.0])
    measurements = MeasurementContainer()
    tracks = []
    for _ in range(n_tracks):
        phi = rng.uniform(-phi_max, phi_max)
        theta = 0.5 * np.pi + rng.uniform(-theta_spread, theta_spread)
        p = rng.uniform(*p_range)
        q = 1.0 if rng.random() < 0.5 else -1.0
        tracks.append(simulate_track(propagator, surfaces, vertex, phi, theta, q / p,
                                     measurements, resolution=resolution, rng=rng))
    return measurements, tracks, vertex
