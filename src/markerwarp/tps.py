"""
Thin-plate spline (TPS) fitting and warping in (row, col) pixel coordinates.

The spline maps a 2D point p to

    f(p) = a0 + a_row * row + a_col * col + sum_i w_i U(|p - c_i|),  U(r) = r^2 log r

independently for the output row and the output col, where c_i are the
control points. With regularization lam the weights solve

    [K + lam I  P] [w]   [v]
    [P^T        0] [a] = [0]

(Bookstein 1989). lam = 0 interpolates the targets exactly.

Images and masks are warped by inverse mapping: the spline is fitted from
target to source so every output pixel looks up where it came from.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from markerwarp.core.geometry import as_points, pairwise_distances, tps_kernel
from markerwarp.errors import TPSFitError, WarpCancelled

# Condition number above which the TPS system is treated as singular.
SINGULAR_COND = 1e13

# Sample locations this close outside the image still count as in-bounds.
BOUNDS_TOL_PX = 1e-6


@dataclass(frozen=True)
class TPSModel:
    control_points: np.ndarray  # (N,2) points the spline was fitted on
    weights_row: np.ndarray  # (N,)
    weights_col: np.ndarray  # (N,)
    affine_row: np.ndarray  # (3,) [a0, a_row, a_col]
    affine_col: np.ndarray  # (3,)
    regularization: float = 0.0

    @property
    def n_points(self) -> int:
        return int(self.control_points.shape[0])

    def transform(self, points: np.ndarray) -> np.ndarray:
        return apply_tps(self, points)

    def transform_point(self, point: tuple[float, float]) -> tuple[float, float]:
        out = apply_tps(self, np.asarray(point, dtype=np.float64).reshape(1, 2))
        return float(out[0, 0]), float(out[0, 1])

    def to_dict(self) -> dict[str, object]:
        return {
            "control_points": self.control_points.tolist(),
            "weights_row": self.weights_row.tolist(),
            "weights_col": self.weights_col.tolist(),
            "affine_row": self.affine_row.tolist(),
            "affine_col": self.affine_col.tolist(),
            "regularization": float(self.regularization),
        }


@dataclass(frozen=True)
class ResidualError:
    mean: float
    max: float
    per_point: np.ndarray  # (N,)


@dataclass(frozen=True)
class Deformation:
    mean: float
    max: float
    per_point: np.ndarray  # (N,)


def tps_kernel_matrix(points: np.ndarray) -> np.ndarray:
    """Symmetric (N,N) matrix K[i,j] = U(|p_i - p_j|) with a zero diagonal."""
    pts = as_points(points)
    K = tps_kernel(pairwise_distances(pts, pts))
    np.fill_diagonal(K, 0.0)
    return K


def fit_tps(source_points: np.ndarray, target_points: np.ndarray, *, regularization: float = 0.0) -> TPSModel:
    """
    Fit a TPS mapping `source_points` onto `target_points` (both (N,2), N >= 3).

    Raises TPSFitError when fewer than three points are given or when the
    system is singular (e.g. all control points collinear or duplicated);
    a positive `regularization` relaxes exact interpolation but cannot fix a
    rank-deficient affine part.
    """
    src = as_points(source_points, "source_points")
    dst = as_points(target_points, "target_points")
    if src.shape[0] != dst.shape[0]:
        raise ValueError("source_points and target_points must have the same number of points")
    lam = float(regularization)
    if lam < 0.0:
        raise ValueError("regularization must be >= 0")

    N = int(src.shape[0])
    if N < 3:
        raise TPSFitError(f"need at least 3 control points for TPS, got {N}")

    # Solve in centred, median-scaled coordinates X = (p - m) / s. Because the
    # weights sum to zero against [1, row, col], the raw-coordinate system with
    # regularization lam is the normalized one with lam / s^2, and the raw
    # parameters follow in closed form below.
    m = np.mean(src, axis=0)
    d = np.sqrt(np.sum((src - m[None, :]) ** 2, axis=1))
    s = float(np.median(d))
    if not s > 0.0:
        s = 1.0
    X = (src - m[None, :]) / s

    K = tps_kernel_matrix(X)
    P = np.concatenate([np.ones((N, 1), dtype=np.float64), X], axis=1)  # (N,3)

    A = np.zeros((N + 3, N + 3), dtype=np.float64)
    A[:N, :N] = K + (lam / (s * s)) * np.eye(N)
    A[:N, N:] = P
    A[N:, :N] = P.T

    Y = np.zeros((N + 3, 2), dtype=np.float64)
    Y[:N, :] = dst

    cond = float(np.linalg.cond(A))
    if not np.isfinite(cond) or cond > SINGULAR_COND:
        raise TPSFitError(
            f"TPS system is singular (condition number {cond:.3g}); "
            "check for collinear or duplicate control points, or add regularization"
        )
    try:
        coeff = np.linalg.solve(A, Y)  # (N+3,2): [W; a0,a1,a2] in normalized coordinates
    except np.linalg.LinAlgError as e:
        raise TPSFitError(f"failed to solve TPS system: {e}; try adding regularization") from e

    Wn = coeff[:N, :]
    an = coeff[N:, :]
    # U(r/s) = (U(r) - r^2 log s) / s^2; the r^2 terms collapse to a constant.
    weights = Wn / (s * s)
    lin = an[1:3, :] / s
    const = an[0, :] - m @ lin - (np.log(s) / (s * s)) * (np.sum(src * src, axis=1) @ Wn)
    affine = np.vstack([const[None, :], lin])  # (3,2)

    return TPSModel(
        control_points=src.copy(),
        weights_row=weights[:, 0].copy(),
        weights_col=weights[:, 1].copy(),
        affine_row=affine[:, 0].copy(),
        affine_col=affine[:, 1].copy(),
        regularization=lam,
    )


def apply_tps(model: TPSModel, points: np.ndarray) -> np.ndarray:
    """Map (M,2) (row, col) points through the fitted spline -> (M,2)."""
    q = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    U = tps_kernel(pairwise_distances(q, model.control_points))  # (M,N)
    ar = model.affine_row
    ac = model.affine_col
    out = np.empty_like(q)
    out[:, 0] = ar[0] + ar[1] * q[:, 0] + ar[2] * q[:, 1] + U @ model.weights_row
    out[:, 1] = ac[0] + ac[1] * q[:, 0] + ac[2] * q[:, 1] + U @ model.weights_col
    return out


def _row_chunks(height: int, rows_per_chunk: int) -> list[tuple[int, int]]:
    step = max(1, int(rows_per_chunk))
    return [(r0, min(r0 + step, height)) for r0 in range(0, height, step)]


def _sample_rows(inverse: TPSModel, r0: int, r1: int, width: int) -> tuple[np.ndarray, np.ndarray]:
    rr, cc = np.meshgrid(np.arange(r0, r1, dtype=np.float64), np.arange(width, dtype=np.float64), indexing="ij")
    src = apply_tps(inverse, np.stack([rr.reshape(-1), cc.reshape(-1)], axis=1))
    return src[:, 0].reshape(r1 - r0, width), src[:, 1].reshape(r1 - r0, width)


def _run_chunks(fn, chunks: list[tuple[int, int]], workers: int, cancel: threading.Event | None) -> None:
    def guarded(chunk: tuple[int, int]) -> None:
        if cancel is not None and cancel.is_set():
            raise WarpCancelled("warp cancelled")
        fn(*chunk)

    if workers <= 1 or len(chunks) <= 1:
        for chunk in chunks:
            guarded(chunk)
        return
    with ThreadPoolExecutor(max_workers=int(workers)) as ex:
        # Iterating the results re-raises the first worker exception.
        for _ in ex.map(guarded, chunks):
            pass


def _output_shape(input_hw: tuple[int, int], output_size: tuple[int, int] | None) -> tuple[int, int]:
    if output_size is None:
        return int(input_hw[0]), int(input_hw[1])
    h, w = int(output_size[0]), int(output_size[1])
    if h <= 0 or w <= 0:
        raise ValueError("output_size must be positive")
    return h, w


def warp_image_tps(
    image: np.ndarray,
    source_points: np.ndarray,
    target_points: np.ndarray,
    *,
    output_size: tuple[int, int] | None = None,
    regularization: float = 0.0,
    fill_value: float = 0.0,
    workers: int = 1,
    rows_per_chunk: int = 64,
    cancel: threading.Event | None = None,
) -> np.ndarray:
    """
    Warp `image` so that `source_points` land on `target_points`.

    `image` is (H,W) or (H,W,C); the result is float32 with the same channel
    layout and `output_size` (height, width), defaulting to the input size.
    Each output pixel is mapped back through the inverse spline and sampled
    bilinearly; pixels whose source lies outside the input get `fill_value`.

    Row chunks are independent; `workers` > 1 runs them on a thread pool and
    gives identical output. `cancel` is polled before each chunk.
    """
    img = np.asarray(image)
    squeeze = img.ndim == 2
    if squeeze:
        img = img[:, :, None]
    if img.ndim != 3:
        raise ValueError(f"image must be (H,W) or (H,W,C), got shape {np.asarray(image).shape}")
    H, W, C = img.shape
    data = img.astype(np.float64)

    inverse = fit_tps(target_points, source_points, regularization=regularization)
    out_h, out_w = _output_shape((H, W), output_size)
    out = np.full((out_h, out_w, C), float(fill_value), dtype=np.float32)

    def warp_rows(r0: int, r1: int) -> None:
        sr, sc = _sample_rows(inverse, r0, r1, out_w)
        inside = (
            (sr >= -BOUNDS_TOL_PX)
            & (sr <= H - 1 + BOUNDS_TOL_PX)
            & (sc >= -BOUNDS_TOL_PX)
            & (sc <= W - 1 + BOUNDS_TOL_PX)
        )
        if not np.any(inside):
            return
        r = np.clip(sr[inside], 0.0, H - 1.0)
        c = np.clip(sc[inside], 0.0, W - 1.0)
        r_lo = np.floor(r).astype(np.int64)
        c_lo = np.floor(c).astype(np.int64)
        r_hi = np.minimum(r_lo + 1, H - 1)
        c_hi = np.minimum(c_lo + 1, W - 1)
        wr = (r - r_lo)[:, None]
        wc = (c - c_lo)[:, None]

        v00 = data[r_lo, c_lo]
        v01 = data[r_lo, c_hi]
        v10 = data[r_hi, c_lo]
        v11 = data[r_hi, c_hi]
        top = (1.0 - wc) * v00 + wc * v01
        bottom = (1.0 - wc) * v10 + wc * v11
        block = out[r0:r1]
        block[inside] = ((1.0 - wr) * top + wr * bottom).astype(np.float32)

    _run_chunks(warp_rows, _row_chunks(out_h, rows_per_chunk), workers, cancel)
    return out[:, :, 0] if squeeze else out


def warp_mask_tps(
    mask: np.ndarray,
    source_points: np.ndarray,
    target_points: np.ndarray,
    *,
    output_size: tuple[int, int] | None = None,
    regularization: float = 0.0,
    workers: int = 1,
    rows_per_chunk: int = 64,
    cancel: threading.Event | None = None,
) -> np.ndarray:
    """
    Warp a boolean mask with nearest-neighbour lookups (ties round to even).

    Same inverse mapping as `warp_image_tps`; output pixels that map outside
    the input are False.
    """
    m = np.asarray(mask, dtype=bool)
    if m.ndim != 2:
        raise ValueError(f"mask must be 2D, got shape {m.shape}")
    H, W = m.shape

    inverse = fit_tps(target_points, source_points, regularization=regularization)
    out_h, out_w = _output_shape((H, W), output_size)
    out = np.zeros((out_h, out_w), dtype=bool)

    def warp_rows(r0: int, r1: int) -> None:
        sr, sc = _sample_rows(inverse, r0, r1, out_w)
        ri = np.rint(sr).astype(np.int64)
        ci = np.rint(sc).astype(np.int64)
        inside = (ri >= 0) & (ri < H) & (ci >= 0) & (ci < W)
        block = out[r0:r1]
        block[inside] = m[ri[inside], ci[inside]]

    _run_chunks(warp_rows, _row_chunks(out_h, rows_per_chunk), workers, cancel)
    return out


def tps_residual_error(source_points: np.ndarray, target_points: np.ndarray, model: TPSModel) -> ResidualError:
    """
    Distance between the forward spline applied to each source control point and
    its paired target. Measures fit tightness, not prediction error elsewhere.
    """
    src = as_points(source_points, "source_points")
    dst = as_points(target_points, "target_points")
    pred = apply_tps(model, src)
    err = np.sqrt(np.sum((pred - dst) ** 2, axis=1))
    if err.size == 0:
        return ResidualError(mean=0.0, max=0.0, per_point=err)
    return ResidualError(mean=float(np.mean(err)), max=float(np.max(err)), per_point=err)


def deformation_magnitude(source_points: np.ndarray, target_points: np.ndarray) -> Deformation:
    """Displacement between paired points, independent of any fit."""
    src = as_points(source_points, "source_points")
    dst = as_points(target_points, "target_points")
    if src.shape != dst.shape:
        raise ValueError("source_points and target_points must have the same shape")
    disp = np.sqrt(np.sum((dst - src) ** 2, axis=1))
    if disp.size == 0:
        return Deformation(mean=0.0, max=0.0, per_point=disp)
    return Deformation(mean=float(np.mean(disp)), max=float(np.max(disp)), per_point=disp)


def sample_displacement_field(
    model: TPSModel, shape: tuple[int, int], step: int = 16
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Forward displacement f(p) - p on a regular grid of the given (height, width).

    Returns (rows, cols, displacement) with displacement shaped (len(rows), len(cols), 2).
    """
    step = max(1, int(step))
    rows = np.arange(0, int(shape[0]), step, dtype=np.float64)
    cols = np.arange(0, int(shape[1]), step, dtype=np.float64)
    rr, cc = np.meshgrid(rows, cols, indexing="ij")
    pts = np.stack([rr.reshape(-1), cc.reshape(-1)], axis=1)
    disp = (apply_tps(model, pts) - pts).reshape(rows.size, cols.size, 2)
    return rows, cols, disp
