from __future__ import annotations

import math
import warnings
from typing import TYPE_CHECKING, Literal

import numpy as np

if TYPE_CHECKING:
    from markerwarp.detection import MarkerInfo


CanonicalMode = Literal["corners_4", "grid_2x2", "grid_3x3", "auto", "preserve_relative"]
CANONICAL_MODES: tuple[str, ...] = ("corners_4", "grid_2x2", "grid_3x3", "auto", "preserve_relative")


def _warn(msg: str) -> None:
    warnings.warn(msg, RuntimeWarning, stacklevel=3)


def infer_image_size(centroids: np.ndarray, margin: float) -> tuple[int, int]:
    """Bounding box of the centroids (from the origin) grown by twice the margin."""
    max_row = float(np.max(centroids[:, 0])) + margin
    max_col = float(np.max(centroids[:, 1])) + margin
    return int(math.ceil(max_row + margin)), int(math.ceil(max_col + margin))


def _grid_positions(n_rows: int, n_cols: int, margin: float, spacing: float) -> np.ndarray:
    return np.array(
        [[margin + i * spacing, margin + j * spacing] for i in range(n_rows) for j in range(n_cols)],
        dtype=np.float64,
    )


def _axis_spacing(values: np.ndarray) -> float:
    distinct = np.unique(np.round(values))
    if distinct.size < 2:
        return 0.0
    return float(np.max(values) - np.min(values)) / float(distinct.size - 1)


def _snap_auto(centroids: np.ndarray, margin: float) -> np.ndarray:
    out = np.empty_like(centroids)
    for axis in (0, 1):
        values = centroids[:, axis]
        spacing = _axis_spacing(values)
        if spacing <= 0.0:
            out[:, axis] = margin
            continue
        idx = np.round((values - np.min(values)) / spacing)
        out[:, axis] = margin + idx * spacing
    return out


def _preserve_relative(centroids: np.ndarray, margin: float, height: int, width: int) -> np.ndarray:
    out = np.empty_like(centroids)
    for axis, extent in ((0, height), (1, width)):
        values = centroids[:, axis]
        lo, hi = float(np.min(values)), float(np.max(values))
        span = float(extent) - 2.0 * margin
        if hi - lo <= 0.0:
            # Single distinct coordinate: place it in the middle of the box.
            out[:, axis] = margin + 0.5 * span
        else:
            out[:, axis] = margin + (values - lo) / (hi - lo) * span
    return out


def define_canonical_positions(
    markers: list[MarkerInfo],
    mode: CanonicalMode = "corners_4",
    *,
    image_size: tuple[int, int] | None = None,
    margin: float = 10.0,
    spacing: float | None = None,
) -> np.ndarray:
    """
    Ideal (row, col) positions for the detected markers, one row per marker.

    Modes:
    - "corners_4": the four margin-inset image corners, clockwise from top-left.
    - "grid_2x2" / "grid_3x3": row-major regular grid starting at (margin, margin).
      Default spacing fills the shorter image side.
    - "auto": per-axis spacing estimated from the spread of the centroids; each
      marker is snapped to the nearest grid index. Heuristic only.
    - "preserve_relative": min-max normalization of the centroids into
      [margin, size - margin] on each axis.

    Fixed-template modes return min(N, template size) rows and warn when the
    marker count does not match the template. `image_size` (height, width)
    defaults to the centroid bounding box grown by the margin.
    """
    n = len(markers)
    if n == 0:
        raise ValueError("no markers provided")

    centroids = np.array([m.centroid for m in markers], dtype=np.float64)
    margin = float(margin)
    if image_size is None:
        height, width = infer_image_size(centroids, margin)
    else:
        height, width = int(image_size[0]), int(image_size[1])

    if mode == "corners_4":
        if n != 4:
            _warn(f"corners_4 mode expects 4 markers, got {n}; using the first {min(n, 4)}")
        template = np.array(
            [
                [margin, margin],
                [margin, width - margin],
                [height - margin, width - margin],
                [height - margin, margin],
            ],
            dtype=np.float64,
        )
        return template[: min(n, 4)].copy()

    if mode == "grid_2x2":
        if n != 4:
            _warn(f"grid_2x2 mode expects 4 markers, got {n}; using the first {min(n, 4)}")
        s = float(spacing) if spacing is not None else float(min(height, width)) - 2.0 * margin
        return _grid_positions(2, 2, margin, s)[: min(n, 4)]

    if mode == "grid_3x3":
        if n != 9:
            _warn(f"grid_3x3 mode expects 9 markers, got {n}; using the first {min(n, 9)}")
        s = float(spacing) if spacing is not None else (float(min(height, width)) - 2.0 * margin) / 2.0
        return _grid_positions(3, 3, margin, s)[: min(n, 9)]

    if mode == "auto":
        return _snap_auto(centroids, margin)

    if mode == "preserve_relative":
        return _preserve_relative(centroids, margin, height, width)

    raise ValueError(f"unknown canonical mode: {mode} (expected {'|'.join(CANONICAL_MODES)})")
