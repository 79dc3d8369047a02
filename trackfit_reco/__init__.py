__all__ = [
    "TrackRecoError", "PropagationError", "SingularMatrixError",
    "EmptyGridError", "EdgeOfGridError", "ConfigurationError",
    "MissingCovarianceError",
    "BoundTrackParameters",
    "Surface", "PlaneSurface", "PerigeeSurface", "planes_along_x",
    "ConstantBField",
    "HelixPropagator", "PropagatorOptions", "PropagationResult", "SurfaceNavigator",
    "SourceLink", "MeasurementContainer", "PassThroughCalibrator",
    "MultiTrajectory", "TrackContainer", "TrackStatePropMask", "TrackStateType",
    "Gx2Fitter", "Gx2FitterOptions", "Gx2FitterExtensions",
    "GaussianGridTrackDensity", "GridDensityVertexFinder", "Vertex",
    "NumericalTrackLinearizer", "HelicalTrackLinearizer", "LinearizedTrack",
    "simulate_event", "simulate_track",
]

# Failure taxonomy
from .errors import (
    TrackRecoError,
    PropagationError,
    SingularMatrixError,
    EmptyGridError,
    EdgeOfGridError,
    ConfigurationError,
    MissingCovarianceError,
)

# Event data and geometry
from .parameters import BoundTrackParameters
from .surfaces import Surface, PlaneSurface, PerigeeSurface, planes_along_x
from .field import ConstantBField
from .measurements import SourceLink, MeasurementContainer, PassThroughCalibrator
from .trajectory import MultiTrajectory, TrackContainer, TrackStatePropMask, TrackStateType

# Propagation
from .propagator import HelixPropagator, PropagatorOptions, PropagationResult, SurfaceNavigator

# Fitting
from .fitting import Gx2Fitter, Gx2FitterOptions, Gx2FitterExtensions

# Vertexing
from .vertexing import (
    GaussianGridTrackDensity,
    GridDensityVertexFinder,
    Vertex,
    NumericalTrackLinearizer,
    HelicalTrackLinearizer,
    LinearizedTrack,
)

# Simulation
from .simulation import simulate_event, simulate_track
