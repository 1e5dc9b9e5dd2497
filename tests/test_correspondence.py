import numpy as np
import pytest

from markerwarp.correspondence import establish_correspondence
from markerwarp.detection import MarkerInfo


def _markers(points):
    return [
        MarkerInfo(
            centroid=(float(r), float(c)),
            corners=np.zeros((8,), dtype=np.float64),
            mask=np.zeros((1, 1), dtype=bool),
            size=1,
            angle=0.0,
            aspect_ratio=1.0,
            density=1.0,
        )
        for r, c in points
    ]


def test_spatial_order_pairs_by_row_major_rank():
    markers = _markers([(470, 30), (30, 470), (30, 30), (470, 470)])
    canonical = np.array([[20, 20], [20, 480], [480, 480], [480, 20]], dtype=np.float64)
    src, dst = establish_correspondence(markers, canonical, method="spatial_order")

    assert np.array_equal(src, [[30, 30], [30, 470], [470, 30], [470, 470]])
    assert np.array_equal(dst, [[20, 20], [20, 480], [480, 20], [480, 480]])
    assert src.dtype == np.float64 and dst.dtype == np.float64


def test_spatial_order_is_permutation_invariant():
    pts = [(10, 10), (10, 90), (90, 10), (90, 90)]
    canonical = np.array([[0, 0], [0, 100], [100, 0], [100, 100]], dtype=np.float64)
    src_a, dst_a = establish_correspondence(_markers(pts), canonical)
    src_b, dst_b = establish_correspondence(_markers(pts[::-1]), canonical[::-1])
    assert np.array_equal(src_a, src_b)
    assert np.array_equal(dst_a, dst_b)


def test_nearest_neighbor_is_greedy_in_marker_order():
    # A takes X first even though pairing A->Y, B->X would cost less in total.
    markers = _markers([(0.0, 2.0), (0.0, 0.0)])
    canonical = np.array([[0.0, 1.0], [0.0, 3.5]])
    src, dst = establish_correspondence(markers, canonical, method="nearest_neighbor")

    assert np.array_equal(src, [[0.0, 2.0], [0.0, 0.0]])
    assert np.array_equal(dst, [[0.0, 1.0], [0.0, 3.5]])


def test_nearest_neighbor_uses_each_target_once():
    markers = _markers([(0, 0), (0, 1), (0, 2)])
    canonical = np.array([[0.0, 0.0], [50.0, 50.0], [60.0, 60.0]])
    _, dst = establish_correspondence(markers, canonical, method="nearest_neighbor")
    assert len({tuple(p) for p in dst.tolist()}) == 3


def test_count_mismatch_truncates_with_warning():
    markers = _markers([(0, 0), (0, 10), (10, 0), (10, 10), (5, 5)])
    canonical = np.array([[0, 0], [0, 10], [10, 0], [10, 10]], dtype=np.float64)
    with pytest.warns(RuntimeWarning, match="number of markers"):
        src, dst = establish_correspondence(markers, canonical)
    assert src.shape == (4, 2)
    assert dst.shape == (4, 2)
    assert [5.0, 5.0] not in src.tolist()


def test_unknown_method_raises_before_warning():
    markers = _markers([(0, 0)])
    canonical = np.zeros((3, 2))
    with pytest.raises(ValueError, match="unknown correspondence method"):
        establish_correspondence(markers, canonical, method="hungarian")  # type: ignore[arg-type]


def test_nearest_neighbor_tie_takes_lowest_index():
    # (0, 5) is equidistant from both targets.
    markers = _markers([(0, 5), (0, 20)])
    canonical = np.array([[0.0, 0.0], [0.0, 10.0]])
    src, dst = establish_correspondence(markers, canonical, method="nearest_neighbor")
    assert np.array_equal(src, [[0.0, 5.0], [0.0, 20.0]])
    assert np.array_equal(dst, [[0.0, 0.0], [0.0, 10.0]])
