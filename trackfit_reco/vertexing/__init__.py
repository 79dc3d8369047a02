__all__ = [
    "GaussianGridTrackDensity",
    "GridDensityVertexFinder", "Vertex",
    "LinearizedTrack", "TrackLinearizer",
    "NumericalTrackLinearizer", "HelicalTrackLinearizer",
]

from .grid_density import GaussianGridTrackDensity
from .grid_vertex_finder import GridDensityVertexFinder, Vertex
from .linearizer import (
    LinearizedTrack,
    TrackLinearizer,
    NumericalTrackLinearizer,
    HelicalTrackLinearizer,
)
