from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy import ndimage

from markerwarp.core.geometry import principal_axis_box
from markerwarp.core.preprocess import extract_white_mask, label_components

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarkerInfo:
    """
    One detected calibration marker.

    Coordinates are 0-based (row, col) pixel indices. `corners` holds the four
    oriented-box corners flattened as [r1, c1, r2, c2, r3, c3, r4, c4].
    """

    centroid: tuple[float, float]
    corners: np.ndarray  # (8,)
    mask: np.ndarray  # (H,W) bool, owned by this marker
    size: int
    angle: float  # radians
    aspect_ratio: float  # >= 1
    density: float  # in (0, 1]

    @property
    def corner_points(self) -> np.ndarray:
        return self.corners.reshape(4, 2)

    def summary(self) -> dict[str, object]:
        """JSON-friendly description without the pixel mask."""
        return {
            "centroid": [float(self.centroid[0]), float(self.centroid[1])],
            "corners": [float(v) for v in self.corners],
            "size": int(self.size),
            "angle": float(self.angle),
            "aspect_ratio": float(self.aspect_ratio),
            "density": float(self.density),
        }


def marker_centroids(markers: list[MarkerInfo]) -> np.ndarray:
    if not markers:
        return np.zeros((0, 2), dtype=np.float64)
    return np.array([m.centroid for m in markers], dtype=np.float64)


def detect_markers(
    image: np.ndarray,
    *,
    threshold: float = 0.7,
    min_area: int = 8000,
    max_markers: int = 20,
    min_aspect_ratio: float = 3.0,
    max_aspect_ratio: float = 7.0,
    kernel_size: int = 3,
    region: tuple[int, int, int, int] | None = None,
    enforce_aspect_ratio: bool = False,
    connectivity: int = 4,
) -> list[MarkerInfo]:
    """
    Detect bright calibration markers in an RGB image.

    Steps:
    - threshold all three channels at `threshold` (restricted to `region` if given),
    - close then open with a (2k+1)^2 square when `kernel_size` > 0,
    - label connected components and describe each one by its PCA oriented box,
    - drop components smaller than `min_area`,
    - sort by pixel count (largest first) and keep at most `max_markers`.

    The aspect-ratio bounds are only used to reject markers when
    `enforce_aspect_ratio` is True; otherwise the ratio is reported but never
    filtered on. Returns an empty list when nothing survives.
    """
    white = extract_white_mask(image, threshold, region=region, kernel_size=kernel_size)
    labels, count = label_components(white, connectivity=connectivity)
    if count == 0:
        return []

    h, w = labels.shape
    markers: list[MarkerInfo] = []
    for lab, sl in enumerate(ndimage.find_objects(labels), start=1):
        if sl is None:
            continue
        local = labels[sl] == lab
        size = int(np.count_nonzero(local))
        if size < min_area:
            logger.debug("component %d rejected: area %d < %d", lab, size, min_area)
            continue

        rr, cc = np.nonzero(local)
        rows = rr + sl[0].start
        cols = cc + sl[1].start
        box = principal_axis_box(rows, cols)

        aspect_ratio = box.aspect_ratio
        if enforce_aspect_ratio and not (min_aspect_ratio <= aspect_ratio <= max_aspect_ratio):
            logger.debug(
                "component %d rejected: aspect ratio %.2f outside [%.2f, %.2f]",
                lab,
                aspect_ratio,
                min_aspect_ratio,
                max_aspect_ratio,
            )
            continue

        mask = np.zeros((h, w), dtype=bool)
        mask[rows, cols] = True
        density = min(1.0, size / box.area)

        markers.append(
            MarkerInfo(
                centroid=box.centroid,
                corners=box.corners.reshape(-1).copy(),
                mask=mask,
                size=size,
                angle=box.angle,
                aspect_ratio=aspect_ratio,
                density=float(density),
            )
        )

    # Stable: equal sizes keep label (raster) order.
    markers.sort(key=lambda m: m.size, reverse=True)
    return markers[: max(0, int(max_markers))]
