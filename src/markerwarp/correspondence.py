from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, Literal

import numpy as np

from markerwarp.core.geometry import pairwise_distances

if TYPE_CHECKING:
    from markerwarp.detection import MarkerInfo


CorrespondenceMethod = Literal["spatial_order", "nearest_neighbor"]
CORRESPONDENCE_METHODS: tuple[str, ...] = ("spatial_order", "nearest_neighbor")


def _row_major_order(points: np.ndarray) -> np.ndarray:
    # lexsort keys are given last-first: row, then col, then input index.
    idx = np.arange(points.shape[0])
    return np.lexsort((idx, points[:, 1], points[:, 0]))


def _greedy_nearest(sources: np.ndarray, targets: np.ndarray) -> np.ndarray:
    dist = pairwise_distances(sources, targets)
    used = np.zeros(targets.shape[0], dtype=bool)
    assignment = np.empty(sources.shape[0], dtype=np.int64)
    for i in range(sources.shape[0]):
        d = np.where(used, np.inf, dist[i])
        j = int(np.argmin(d))
        used[j] = True
        assignment[i] = j
    return assignment


def establish_correspondence(
    markers: list[MarkerInfo],
    canonical_positions: np.ndarray,
    *,
    method: CorrespondenceMethod = "spatial_order",
) -> tuple[np.ndarray, np.ndarray]:
    """
    Pair detected marker centroids with canonical positions.

    Returns (source_points, target_points), both (N,2) float64 (row, col), where
    row i of each refers to the same marker.

    - "spatial_order": both sets sorted row-major (row, then col, then input
      index) and paired by rank. Markers whose rows straddle a sort boundary
      under noise get mis-paired.
    - "nearest_neighbor": markers in input order each take the closest unused
      canonical point (lowest index on ties). Greedy, not globally optimal.

    When the counts differ both inputs are truncated to the shorter length
    with a RuntimeWarning.
    """
    if method not in CORRESPONDENCE_METHODS:
        raise ValueError(f"unknown correspondence method: {method} (expected {'|'.join(CORRESPONDENCE_METHODS)})")

    canonical = np.asarray(canonical_positions, dtype=np.float64).reshape(-1, 2)
    n_markers = len(markers)
    n_canonical = canonical.shape[0]

    if n_markers != n_canonical:
        warnings.warn(
            f"number of markers ({n_markers}) != canonical positions ({n_canonical}); using the first {min(n_markers, n_canonical)}",
            RuntimeWarning,
            stacklevel=2,
        )
    n = min(n_markers, n_canonical)
    centroids = np.array([m.centroid for m in markers[:n]], dtype=np.float64).reshape(-1, 2)
    canonical = canonical[:n]

    if method == "spatial_order":
        src_order = _row_major_order(centroids)
        dst_order = _row_major_order(canonical)
        return centroids[src_order].copy(), canonical[dst_order].copy()

    if method == "nearest_neighbor":
        if n == 0:
            return centroids.copy(), canonical.copy()
        assignment = _greedy_nearest(centroids, canonical)
        return centroids.copy(), canonical[assignment].copy()

    raise AssertionError(f"Unhandled method: {method}")
