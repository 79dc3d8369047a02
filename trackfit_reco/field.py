from __future__ import annotations

import numpy as np


__all__ = ["ConstantBField"]


class ConstantBField:
    r"""
    Uniform solenoidal field :math:`\mathbf{B} = (0, 0, B_z)`.

    Parameters
    ----------
    bz : float
        Longitudinal field in Tesla.
    """

    __slots__ = ("bz", "_field")

    def __init__(self, bz: float = 0.0):
        self.bz = float(bz)
        self._field = np.array([0.0, 0.0, self.bz], dtype=np.float64)

    def get_field(self, position=None) -> np.ndarray:
        """Field vector at ``position`` (position-independent)."""
        return self._field.copy()

    def __repr__(self) -> str:
        return f"ConstantBField(bz={self.bz})"
