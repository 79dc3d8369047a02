__all__ = [
    "Gx2Fitter", "Gx2FitterOptions", "Gx2FitterResult", "Gx2FitterExtensions",
    "void_calibrator", "void_updater", "void_smoother",
    "void_outlier_finder", "void_reverse_filtering_logic",
]

from .components import (
    Gx2FitterExtensions,
    void_calibrator,
    void_updater,
    void_smoother,
    void_outlier_finder,
    void_reverse_filtering_logic,
)
from .gx2f import Gx2Fitter, Gx2FitterOptions, Gx2FitterResult
