from __future__ import annotations


__all__ = [
    "TrackRecoError",
    "PropagationError",
    "SingularMatrixError",
    "EmptyGridError",
    "EdgeOfGridError",
    "ConfigurationError",
    "MissingCovarianceError",
]


class TrackRecoError(Exception):
    """Base class for all failures raised by :mod:`trackfit_reco`."""


class PropagationError(TrackRecoError):
    r"""
    The target surface could not be reached.

    Raised when the intersection solve does not converge, the path exceeds
    the configured limit, or the solved path runs against the requested
    propagation direction.
    """


class SingularMatrixError(TrackRecoError):
    r"""
    A covariance or information matrix could not be inverted.

    Raised instead of substituting an identity or jittered matrix, so that a
    degenerate fit is visible to the caller.
    """


class EmptyGridError(TrackRecoError):
    """Density query on a grid without any track contribution."""


class EdgeOfGridError(TrackRecoError):
    """Width estimation impossible: the peak has no neighbour on one side."""


class ConfigurationError(TrackRecoError, ValueError):
    """Invalid configuration detected at call time."""


class MissingCovarianceError(TrackRecoError):
    """An operation that needs a covariance got track parameters without one."""
