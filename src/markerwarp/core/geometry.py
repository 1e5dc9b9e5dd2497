from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# Below this distance the TPS kernel is taken as its limit value 0.
KERNEL_EPS = 1e-10


def tps_kernel(r: np.ndarray | float) -> np.ndarray:
    """
    Thin-plate spline radial basis U(r) = r^2 log(r), with U(0) = 0.

    Accepts scalars or arrays of distances; always returns a float64 array.
    """
    r = np.asarray(r, dtype=np.float64)
    out = np.zeros_like(r)
    mask = r >= KERNEL_EPS
    out[mask] = r[mask] * r[mask] * np.log(r[mask])
    return out


def pairwise_distances(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Euclidean distances between rows of `a` (M,2) and rows of `b` (N,2) -> (M,N)."""
    a = np.asarray(a, dtype=np.float64).reshape(-1, 2)
    b = np.asarray(b, dtype=np.float64).reshape(-1, 2)
    dr = a[:, 0:1] - b[:, 0:1].T
    dc = a[:, 1:2] - b[:, 1:2].T
    return np.sqrt(dr * dr + dc * dc)


def as_points(points: np.ndarray, name: str = "points") -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 2:
        raise ValueError(f"{name} must have shape (N,2), got {pts.shape}")
    if not np.all(np.isfinite(pts)):
        raise ValueError(f"{name} contains non-finite values")
    return pts


def symmetric_eig2x2(cov: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Closed-form eigendecomposition of a symmetric 2x2 matrix.

    Returns (eigvals, eigvecs) with eigenvalues in descending order and the
    matching unit eigenvectors as columns. The major vector has a non-negative
    col component (positive row component when col is zero); the minor vector
    is the major one rotated a quarter turn, so the frame handedness is fixed.
    """
    cov = np.asarray(cov, dtype=np.float64).reshape(2, 2)
    a = float(cov[0, 0])
    b = 0.5 * float(cov[0, 1] + cov[1, 0])
    c = float(cov[1, 1])

    mean = 0.5 * (a + c)
    rad = float(np.hypot(0.5 * (a - c), b))
    lam_major = mean + rad
    lam_minor = mean - rad

    scale = max(abs(a), abs(c), abs(b), 1.0)
    if abs(b) <= 1e-12 * scale:
        major = np.array([1.0, 0.0]) if a >= c else np.array([0.0, 1.0])
    elif a >= c:
        major = np.array([lam_major - c, b])
    else:
        major = np.array([b, lam_major - a])
    major = major / np.linalg.norm(major)
    if major[1] < 0.0 or (major[1] == 0.0 and major[0] < 0.0):
        major = -major
    minor = np.array([-major[1], major[0]])

    eigvals = np.array([lam_major, lam_minor], dtype=np.float64)
    eigvecs = np.stack([major, minor], axis=1)
    return eigvals, eigvecs


@dataclass(frozen=True)
class OrientedBox:
    centroid: tuple[float, float]
    major_axis: np.ndarray  # (2,) unit (row, col)
    minor_axis: np.ndarray  # (2,) unit (row, col)
    length: float  # extent along major axis, pixel-inclusive
    width: float  # extent along minor axis, pixel-inclusive
    corners: np.ndarray  # (4,2) (row, col)

    @property
    def area(self) -> float:
        return float(self.length * self.width)

    @property
    def angle(self) -> float:
        return float(np.arctan2(self.major_axis[0], self.major_axis[1]))

    @property
    def aspect_ratio(self) -> float:
        return float(max(self.length, self.width) / min(self.length, self.width))


def principal_axis_box(rows: np.ndarray, cols: np.ndarray) -> OrientedBox:
    """
    PCA oriented bounding box of a set of pixel coordinates.

    Extents are measured between pixel edges (max - min + 1 along each axis) so
    that single-pixel-thick regions keep a finite area. Corners are returned in
    winding order (min,min), (max,min), (max,max), (min,max) in principal-axis
    coordinates (major, minor).
    """
    rows = np.asarray(rows, dtype=np.float64).reshape(-1)
    cols = np.asarray(cols, dtype=np.float64).reshape(-1)
    if rows.size == 0 or rows.size != cols.size:
        raise ValueError("rows and cols must be non-empty and of equal length")

    cr = float(np.mean(rows))
    cc = float(np.mean(cols))
    dr = rows - cr
    dc = cols - cc

    n = float(rows.size)
    cov = np.array(
        [
            [np.sum(dr * dr) / n, np.sum(dr * dc) / n],
            [np.sum(dr * dc) / n, np.sum(dc * dc) / n],
        ],
        dtype=np.float64,
    )
    _vals, vecs = symmetric_eig2x2(cov)
    major = vecs[:, 0]
    minor = vecs[:, 1]

    p1 = dr * major[0] + dc * major[1]
    p2 = dr * minor[0] + dc * minor[1]
    lo1, hi1 = float(np.min(p1)) - 0.5, float(np.max(p1)) + 0.5
    lo2, hi2 = float(np.min(p2)) - 0.5, float(np.max(p2)) + 0.5

    box_proj = ((lo1, lo2), (hi1, lo2), (hi1, hi2), (lo1, hi2))
    corners = np.array(
        [[cr + q1 * major[0] + q2 * minor[0], cc + q1 * major[1] + q2 * minor[1]] for q1, q2 in box_proj],
        dtype=np.float64,
    )

    return OrientedBox(
        centroid=(cr, cc),
        major_axis=major,
        minor_axis=minor,
        length=hi1 - lo1,
        width=hi2 - lo2,
        corners=corners,
    )
