from __future__ import annotations

import numpy as np
from scipy import ndimage


def as_rgb_float(image: np.ndarray) -> np.ndarray:
    """
    Return an (H,W,3) float64 view of `image` with values in [0,1].

    uint8 inputs are rescaled by 1/255; float inputs are assumed normalized.
    Extra channels (e.g. alpha) are dropped.
    """
    img = np.asarray(image)
    if img.ndim != 3 or img.shape[2] < 3:
        raise ValueError(f"expected an (H,W,3) RGB image, got shape {img.shape}")
    if img.dtype == np.uint8:
        return img[:, :, :3].astype(np.float64) / 255.0
    return img[:, :, :3].astype(np.float64)


def clamp_region(region: tuple[int, int, int, int], shape: tuple[int, int]) -> tuple[int, int, int, int]:
    """Clamp an inclusive (row_min, row_max, col_min, col_max) box into an image of `shape`."""
    h, w = int(shape[0]), int(shape[1])
    r0, r1, c0, c1 = (int(v) for v in region)
    r0 = min(max(r0, 0), h - 1)
    r1 = min(max(r1, 0), h - 1)
    c0 = min(max(c0, 0), w - 1)
    c1 = min(max(c1, 0), w - 1)
    return r0, r1, c0, c1


def region_mask(shape: tuple[int, int], region: tuple[int, int, int, int] | None) -> np.ndarray:
    h, w = int(shape[0]), int(shape[1])
    if region is None:
        return np.ones((h, w), dtype=bool)
    r0, r1, c0, c1 = clamp_region(region, (h, w))
    out = np.zeros((h, w), dtype=bool)
    out[r0 : r1 + 1, c0 : c1 + 1] = True
    return out


def _square_structure(kernel_size: int) -> np.ndarray:
    k = int(kernel_size)
    return np.ones((2 * k + 1, 2 * k + 1), dtype=bool)


def morphological_dilate(mask: np.ndarray, kernel_size: int) -> np.ndarray:
    mask = np.asarray(mask, dtype=bool)
    if kernel_size <= 0:
        return mask.copy()
    return ndimage.binary_dilation(mask, structure=_square_structure(kernel_size), border_value=0)


def morphological_erode(mask: np.ndarray, kernel_size: int) -> np.ndarray:
    # Pixels outside the image count as background.
    mask = np.asarray(mask, dtype=bool)
    if kernel_size <= 0:
        return mask.copy()
    return ndimage.binary_erosion(mask, structure=_square_structure(kernel_size), border_value=0)


def morphological_close(mask: np.ndarray, kernel_size: int) -> np.ndarray:
    """Dilate then erode with a (2k+1)x(2k+1) square; joins fragments separated by small gaps."""
    return morphological_erode(morphological_dilate(mask, kernel_size), kernel_size)


def morphological_open(mask: np.ndarray, kernel_size: int) -> np.ndarray:
    """Erode then dilate with a (2k+1)x(2k+1) square; removes speckles smaller than the kernel."""
    return morphological_dilate(morphological_erode(mask, kernel_size), kernel_size)


def label_components(mask: np.ndarray, connectivity: int = 4) -> tuple[np.ndarray, int]:
    """
    Label maximal connected regions of a boolean mask.

    Returns (labels, count) with labels an int32 (H,W) array where 0 is background
    and 1..count identify components in raster-scan order of first appearance.
    """
    if connectivity == 4:
        structure = ndimage.generate_binary_structure(2, 1)
    elif connectivity == 8:
        structure = ndimage.generate_binary_structure(2, 2)
    else:
        raise ValueError("connectivity must be 4 or 8")
    labels, count = ndimage.label(np.asarray(mask, dtype=bool), structure=structure)
    return labels.astype(np.int32), int(count)


def extract_white_mask(
    image: np.ndarray,
    threshold: float,
    *,
    region: tuple[int, int, int, int] | None = None,
    kernel_size: int = 0,
) -> np.ndarray:
    """
    Boolean mask of pixels whose R, G and B are all >= `threshold`.

    Pixels outside `region` are forced False before the optional close/open
    cleanup, which can therefore never grow a region back past the gate.
    """
    rgb = as_rgb_float(image)
    white = np.all(rgb >= float(threshold), axis=2)
    white &= region_mask(rgb.shape[:2], region)
    if kernel_size > 0:
        white = morphological_close(white, kernel_size)
        white = morphological_open(white, kernel_size)
        white &= region_mask(rgb.shape[:2], region)
    return white
