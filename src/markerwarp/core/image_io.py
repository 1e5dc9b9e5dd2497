from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image


def load_rgb_float(path: str | Path) -> np.ndarray:
    """
    Load an image as an (H,W,3) float32 array in [0,1], channel order R,G,B.

    Palette, grayscale and alpha images are converted to plain RGB first.
    """
    p = Path(path)
    with Image.open(p) as im:
        im = im.convert("RGB")
        arr = np.asarray(im, dtype=np.uint8)
    return arr.astype(np.float32) / 255.0


def save_rgb_float(path: str | Path, image: np.ndarray) -> None:
    img = np.asarray(image, dtype=np.float64)
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError(f"expected an (H,W,3) image, got shape {img.shape}")
    u8 = np.clip(img * 255.0 + 0.5, 0.0, 255.0).astype(np.uint8)
    Image.fromarray(u8).save(Path(path))


def load_mask(path: str | Path) -> np.ndarray:
    """Load a binary mask; any non-zero gray level counts as foreground."""
    with Image.open(Path(path)) as im:
        arr = np.asarray(im.convert("L"), dtype=np.uint8)
    return arr > 0


def save_mask(path: str | Path, mask: np.ndarray) -> None:
    m = np.asarray(mask, dtype=bool)
    Image.fromarray(m.astype(np.uint8) * 255).save(Path(path))
