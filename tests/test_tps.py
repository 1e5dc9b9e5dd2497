from __future__ import annotations

import threading

import numpy as np
import pytest

from markerwarp.core.geometry import tps_kernel
from markerwarp.errors import TPSFitError, WarpCancelled
from markerwarp.tps import (
    apply_tps,
    deformation_magnitude,
    fit_tps,
    sample_displacement_field,
    tps_kernel_matrix,
    tps_residual_error,
    warp_image_tps,
    warp_mask_tps,
)

FRAME = np.array([[0.0, 0.0], [0.0, 29.0], [19.0, 29.0], [19.0, 0.0], [10.0, 15.0]])


def _random_points(n: int, seed: int, scale: float = 100.0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform(0.0, scale, size=(n, 2))


def test_kernel_matrix_is_symmetric_with_zero_diagonal():
    pts = np.array([[0.0, 0.0], [0.0, 2.0], [3.0, 0.0]])
    K = tps_kernel_matrix(pts)
    assert np.allclose(K, K.T)
    assert np.all(np.diag(K) == 0.0)
    assert K[0, 1] == pytest.approx(4.0 * np.log(2.0))
    assert K[0, 2] == pytest.approx(9.0 * np.log(3.0))


def test_fit_interpolates_control_points_exactly():
    src = _random_points(12, seed=1)
    dst = src + np.random.default_rng(2).normal(scale=4.0, size=src.shape)
    model = fit_tps(src, dst)
    assert np.allclose(apply_tps(model, src), dst, atol=1e-6)


def test_fit_with_large_pixel_coordinates():
    src = _random_points(9, seed=3, scale=4000.0) + 1000.0
    dst = src + np.random.default_rng(4).normal(scale=10.0, size=src.shape)
    model = fit_tps(src, dst)
    assert np.allclose(model.transform(src), dst, atol=1e-5)


def test_weights_are_orthogonal_to_affine_terms():
    src = _random_points(8, seed=5)
    dst = src[:, ::-1] * 0.5 + np.random.default_rng(6).normal(size=src.shape)
    model = fit_tps(src, dst)
    for w in (model.weights_row, model.weights_col):
        assert abs(np.sum(w)) < 1e-9
        assert np.allclose(w @ src, 0.0, atol=1e-7)


def test_regularized_fit_solves_raw_system():
    src = _random_points(10, seed=7)
    dst = src + np.random.default_rng(8).normal(scale=3.0, size=src.shape)
    lam = 25.0
    model = fit_tps(src, dst, regularization=lam)

    K = tps_kernel_matrix(src)
    P = np.concatenate([np.ones((10, 1)), src], axis=1)
    lhs_row = (K + lam * np.eye(10)) @ model.weights_row + P @ model.affine_row
    lhs_col = (K + lam * np.eye(10)) @ model.weights_col + P @ model.affine_col
    assert np.allclose(lhs_row, dst[:, 0], atol=1e-5)
    assert np.allclose(lhs_col, dst[:, 1], atol=1e-5)

    residual = tps_residual_error(src, dst, model)
    assert residual.max > 1e-6


def test_affine_targets_give_zero_weights():
    src = _random_points(7, seed=9)
    A = np.array([[1.1, 0.2], [-0.3, 0.9]])
    dst = src @ A.T + np.array([5.0, -2.0])
    model = fit_tps(src, dst)

    assert np.allclose(model.weights_row, 0.0, atol=1e-8)
    assert np.allclose(model.weights_col, 0.0, atol=1e-8)
    assert np.allclose(model.affine_row, [5.0, 1.1, 0.2], atol=1e-8)
    assert np.allclose(model.affine_col, [-2.0, -0.3, 0.9], atol=1e-8)

    q = np.array([[500.0, -200.0], [3.0, 4.0]])
    assert np.allclose(apply_tps(model, q), q @ A.T + np.array([5.0, -2.0]), atol=1e-6)


def test_transform_point_matches_apply():
    src = _random_points(6, seed=10)
    model = fit_tps(src, src + 1.0)
    r, c = model.transform_point((12.5, 40.0))
    assert (r, c) == pytest.approx((13.5, 41.0))


@pytest.mark.parametrize(
    "points",
    [
        np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0], [3.0, 3.0]]),
        np.array([[0.0, 0.0], [0.0, 0.0], [10.0, 0.0], [0.0, 10.0]]),
    ],
    ids=["collinear", "duplicate"],
)
def test_degenerate_control_points_raise(points):
    with pytest.raises(TPSFitError):
        fit_tps(points, points + 1.0)


def test_too_few_points_and_bad_input():
    with pytest.raises(TPSFitError, match="at least 3"):
        fit_tps(np.zeros((2, 2)), np.zeros((2, 2)))
    with pytest.raises(ValueError):
        fit_tps(np.zeros((4, 2)), np.zeros((3, 2)))
    with pytest.raises(ValueError):
        fit_tps(FRAME, FRAME, regularization=-1.0)
    bad = FRAME.copy()
    bad[0, 0] = np.nan
    with pytest.raises(ValueError):
        fit_tps(bad, FRAME)


def _ramp(h: int = 20, w: int = 30) -> np.ndarray:
    rr, cc = np.meshgrid(np.arange(h, dtype=np.float64), np.arange(w, dtype=np.float64), indexing="ij")
    return rr * 10.0 + cc


def test_translation_warp_shifts_and_fills():
    img = _ramp()
    out = warp_image_tps(img, FRAME, FRAME + np.array([3.0, 4.0]), fill_value=-1.0)

    assert out.shape == img.shape
    assert out.dtype == np.float32
    assert np.all(out[:3, :] == -1.0)
    assert np.all(out[:, :4] == -1.0)
    assert np.allclose(out[3:, 4:], img[:-3, :-4], atol=1e-3)


def test_half_pixel_shift_is_bilinear():
    img = np.tile((np.arange(30) % 2).astype(np.float64), (20, 1))
    out = warp_image_tps(img, FRAME, FRAME + np.array([0.0, 0.5]))
    assert np.all(out[:, 0] == 0.0)
    assert np.allclose(out[:, 1:], 0.5, atol=1e-5)


def test_identity_warp_preserves_image_and_channels():
    rng = np.random.default_rng(11)
    img = rng.uniform(size=(20, 30, 3)).astype(np.float32)
    out = warp_image_tps(img, FRAME, FRAME)
    assert out.shape == (20, 30, 3)
    assert np.allclose(out, img, atol=1e-5)


def test_output_size_crops_or_pads():
    img = _ramp()
    out = warp_image_tps(img, FRAME, FRAME, output_size=(25, 10), fill_value=7.0)
    assert out.shape == (25, 10)
    assert np.allclose(out[:20], img[:, :10], atol=1e-3)
    assert np.all(out[20:] == 7.0)
    with pytest.raises(ValueError):
        warp_image_tps(img, FRAME, FRAME, output_size=(0, 10))


def test_identity_mask_warp_is_exact():
    rng = np.random.default_rng(12)
    mask = rng.uniform(size=(20, 30)) > 0.5
    out = warp_mask_tps(mask, FRAME, FRAME)
    assert out.dtype == bool
    assert np.array_equal(out, mask)


def test_mask_translation_uses_nearest_and_clears_outside():
    mask = np.zeros((20, 30), dtype=bool)
    mask[5:10, 5:10] = True
    out = warp_mask_tps(mask, FRAME, FRAME + np.array([2.0, 3.0]))
    expected = np.zeros_like(mask)
    expected[7:12, 8:13] = True
    assert np.array_equal(out, expected)

    full = np.ones((20, 30), dtype=bool)
    shifted = warp_mask_tps(full, FRAME, FRAME + np.array([2.0, 3.0]))
    assert not shifted[:2].any()
    assert not shifted[:, :3].any()
    assert shifted[2:, 3:].all()


def test_worker_count_does_not_change_output():
    rng = np.random.default_rng(13)
    img = rng.uniform(size=(40, 30, 3))
    dst = FRAME + rng.normal(scale=1.5, size=FRAME.shape)
    one = warp_image_tps(img, FRAME, dst, workers=1, rows_per_chunk=7)
    many = warp_image_tps(img, FRAME, dst, workers=4, rows_per_chunk=7)
    assert np.array_equal(one, many)

    mask = img[:, :, 0] > 0.5
    assert np.array_equal(
        warp_mask_tps(mask, FRAME, dst, workers=1, rows_per_chunk=5),
        warp_mask_tps(mask, FRAME, dst, workers=3, rows_per_chunk=5),
    )


@pytest.mark.parametrize("workers", [1, 3])
def test_cancelled_warp_raises(workers):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(WarpCancelled):
        warp_image_tps(_ramp(), FRAME, FRAME, workers=workers, rows_per_chunk=4, cancel=cancel)
    with pytest.raises(WarpCancelled):
        warp_mask_tps(np.zeros((20, 30), dtype=bool), FRAME, FRAME, workers=workers, rows_per_chunk=4, cancel=cancel)


def test_residual_and_deformation_metrics():
    src = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    dst = src + np.array([[3.0, 4.0], [0.0, 0.0], [0.0, 0.0]])
    model = fit_tps(src, dst)

    residual = tps_residual_error(src, dst, model)
    assert residual.per_point.shape == (3,)
    assert residual.max < 1e-8

    deformation = deformation_magnitude(src, dst)
    assert np.allclose(deformation.per_point, [5.0, 0.0, 0.0])
    assert deformation.mean == pytest.approx(5.0 / 3.0)
    assert deformation.max == pytest.approx(5.0)


def test_displacement_field_of_translation():
    model = fit_tps(FRAME, FRAME + np.array([3.0, 4.0]))
    rows, cols, disp = sample_displacement_field(model, (20, 30), step=10)
    assert np.array_equal(rows, [0.0, 10.0])
    assert np.array_equal(cols, [0.0, 10.0, 20.0])
    assert disp.shape == (2, 3, 2)
    assert np.allclose(disp[..., 0], 3.0, atol=1e-8)
    assert np.allclose(disp[..., 1], 4.0, atol=1e-8)


def test_kernel_matches_formula_away_from_zero():
    r = np.array([0.0, 1e-12, 0.5, 1.0, 3.0])
    expected = np.array([0.0, 0.0, 0.25 * np.log(0.5), 0.0, 9.0 * np.log(3.0)])
    assert np.allclose(tps_kernel(r), expected)
