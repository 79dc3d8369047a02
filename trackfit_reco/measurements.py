from __future__ import annotations

from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from trackfit_reco.parameters import BOUND_SIZE, LOC0, LOC1


__all__ = [
    "SourceLink",
    "Measurement",
    "MeasurementContainer",
    "PassThroughCalibrator",
    "measurements_from_frame",
]


class SourceLink(NamedTuple):
    """Opaque reference from a track state to a raw measurement."""

    geometry_id: int
    index: int


class Measurement(NamedTuple):
    """Raw measurement on a surface, expressed in a subset of bound indices."""

    geometry_id: int
    values: np.ndarray
    covariance: np.ndarray
    indices: Tuple[int, ...]


class MeasurementContainer:
    r"""
    Append-only store of raw measurements, addressed by :class:`SourceLink`.

    Each measurement carries a value vector :math:`m\in\mathbb{R}^k`, its
    covariance :math:`V\in\mathbb{R}^{k\times k}` and the bound parameter
    indices it measures (default ``(LOC0, LOC1)``), which define the
    projector :math:`H` of the fitter.

    Examples
    --------
    >>> mc = MeasurementContainer()
    >>> sl = mc.add(3, [0.1, -0.2], np.diag([0.01, 0.01]))
    >>> mc[sl].geometry_id
    3
    """

    __slots__ = ("_items",)

    def __init__(self):
        self._items: List[Measurement] = []

    def add(self,
            geometry_id: int,
            values,
            covariance,
            indices: Sequence[int] = (LOC0, LOC1)) -> SourceLink:
        idx = tuple(int(i) for i in indices)
        vals = np.array(values, dtype=np.float64).reshape(-1)
        cov = np.array(covariance, dtype=np.float64).reshape(len(idx), len(idx))
        if vals.shape != (len(idx),):
            raise ValueError(f"{len(idx)} indices but {vals.size} values.")
        if len(set(idx)) != len(idx) or any(not (0 <= i < BOUND_SIZE) for i in idx):
            raise ValueError(f"invalid bound indices {idx}.")
        vals.setflags(write=False)
        cov.setflags(write=False)
        self._items.append(Measurement(int(geometry_id), vals, cov, idx))
        return SourceLink(int(geometry_id), len(self._items) - 1)

    def __getitem__(self, link) -> Measurement:
        i = link.index if isinstance(link, SourceLink) else int(link)
        return self._items[i]

    def __len__(self) -> int:
        return len(self._items)

    def source_links(self) -> List[SourceLink]:
        return [SourceLink(m.geometry_id, i) for i, m in enumerate(self._items)]

    def by_geometry_id(self) -> Dict[int, List[SourceLink]]:
        out: Dict[int, List[SourceLink]] = {}
        for i, m in enumerate(self._items):
            out.setdefault(m.geometry_id, []).append(SourceLink(m.geometry_id, i))
        return out

    def to_frame(self) -> pd.DataFrame:
        r"""
        Flat table with one row per measurement.

        Columns ``geometry_id, dim, i0, i1, v0, v1, c00, c01, c11``; the
        second slot of one-dimensional measurements holds ``-1`` / ``NaN``.
        Measurements of more than two dimensions are not representable.
        """
        rows = []
        for m in self._items:
            k = len(m.indices)
            if k > 2:
                raise ValueError("only 1D and 2D measurements can be tabulated.")
            rows.append({
                "geometry_id": m.geometry_id,
                "dim": k,
                "i0": m.indices[0],
                "i1": m.indices[1] if k == 2 else -1,
                "v0": m.values[0],
                "v1": m.values[1] if k == 2 else np.nan,
                "c00": m.covariance[0, 0],
                "c01": m.covariance[0, 1] if k == 2 else np.nan,
                "c11": m.covariance[1, 1] if k == 2 else np.nan,
            })
        return pd.DataFrame(rows, columns=["geometry_id", "dim", "i0", "i1", "v0", "v1", "c00", "c01", "c11"])


def measurements_from_frame(df: pd.DataFrame) -> Tuple[MeasurementContainer, List[SourceLink]]:
    """
    Rebuild a :class:`MeasurementContainer` from :meth:`MeasurementContainer.to_frame` output.

    Raises
    ------
    KeyError
        If a required column is missing.
    """
    required = ("geometry_id", "dim", "i0", "i1", "v0", "v1", "c00", "c01", "c11")
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise KeyError(f"Missing columns in measurement frame: {missing}")

    mc = MeasurementContainer()
    links = []
    for row in df.itertuples(index=False):
        if int(row.dim) == 1:
            links.append(mc.add(row.geometry_id, [row.v0], [[row.c00]], indices=(int(row.i0),)))
        else:
            cov = [[row.c00, row.c01], [row.c01, row.c11]]
            links.append(mc.add(row.geometry_id, [row.v0, row.v1], cov, indices=(int(row.i0), int(row.i1))))
    return mc, links


class PassThroughCalibrator:
    r"""
    Calibrator that copies the raw measurement into the track state.

    Called as ``calibrator(context, source_link, state)``; fills
    ``state.calibrated``, ``state.calibrated_covariance`` and
    ``state.projector_indices``. The context is ignored.

    Parameters
    ----------
    container : MeasurementContainer
    """

    __slots__ = ("container",)

    def __init__(self, container: MeasurementContainer):
        self.container = container

    def __call__(self, context: Optional[object], source_link: SourceLink, state) -> None:
        m = self.container[source_link]
        state.calibrated = np.array(m.values)
        state.calibrated_covariance = np.array(m.covariance)
        state.projector_indices = m.indices
