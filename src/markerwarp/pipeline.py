from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

import numpy as np

from markerwarp.canonical import CanonicalMode, define_canonical_positions
from markerwarp.core.preprocess import as_rgb_float
from markerwarp.correspondence import CorrespondenceMethod, establish_correspondence
from markerwarp.detection import MarkerInfo, detect_markers
from markerwarp.errors import NoMarkersError
from markerwarp.params import CanonicalParams, DetectionParams, DewarpConfig
from markerwarp.tps import (
    Deformation,
    ResidualError,
    TPSModel,
    deformation_magnitude,
    fit_tps,
    tps_residual_error,
    warp_image_tps,
    warp_mask_tps,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DewarpDiagnostics:
    markers: list[MarkerInfo]
    canonical_positions: np.ndarray  # (N,2) before pairing
    source_points: np.ndarray  # (N,2) detected centroids
    target_points: np.ndarray  # (N,2) paired canonical positions
    tps: TPSModel  # forward source -> target
    residual_error: ResidualError
    deformation: Deformation

    def to_dict(self) -> dict[str, Any]:
        return {
            "markers": [m.summary() for m in self.markers],
            "canonical_positions": self.canonical_positions.tolist(),
            "source_points": self.source_points.tolist(),
            "target_points": self.target_points.tolist(),
            "tps": self.tps.to_dict(),
            "residual_error": {
                "mean_px": self.residual_error.mean,
                "max_px": self.residual_error.max,
                "per_point_px": self.residual_error.per_point.tolist(),
            },
            "deformation": {
                "mean_px": self.deformation.mean,
                "max_px": self.deformation.max,
                "per_point_px": self.deformation.per_point.tolist(),
            },
        }


def _image_hw(image: np.ndarray) -> tuple[int, int]:
    shape = np.asarray(image).shape
    return int(shape[0]), int(shape[1])


def compute_correspondence(
    image: np.ndarray,
    *,
    detection: DetectionParams | None = None,
    canonical_mode: CanonicalMode = "corners_4",
    canonical: CanonicalParams | None = None,
    correspondence_method: CorrespondenceMethod = "spatial_order",
    regularization: float = 0.0,
    output_size: tuple[int, int] | None = None,
) -> DewarpDiagnostics:
    """
    Run detect -> canonical -> correspond -> fit and return everything but the warp.

    Raises NoMarkersError, before any canonical layout is built, when detection
    finds nothing. Every other stage failure propagates unchanged.
    """
    detection = detection or DetectionParams()
    canonical = canonical or CanonicalParams()

    markers = detect_markers(image, **detection.as_kwargs())
    if not markers:
        raise NoMarkersError("no calibration markers detected; adjust detection parameters")
    logger.info("Detected %d calibration markers", len(markers))

    image_size = canonical.image_size or output_size or _image_hw(image)
    canonical_positions = define_canonical_positions(
        markers,
        canonical_mode,
        image_size=image_size,
        margin=canonical.margin,
        spacing=canonical.spacing,
    )

    source_points, target_points = establish_correspondence(
        markers, canonical_positions, method=correspondence_method
    )
    logger.info("Established correspondence for %d control points", source_points.shape[0])

    model = fit_tps(source_points, target_points, regularization=regularization)
    residual = tps_residual_error(source_points, target_points, model)
    deformation = deformation_magnitude(source_points, target_points)
    logger.info(
        "TPS fitted on %d control points: mean residual = %.3f px, max residual = %.3f px",
        model.n_points,
        residual.mean,
        residual.max,
    )
    logger.info("Deformation: mean = %.2f px, max = %.2f px", deformation.mean, deformation.max)

    return DewarpDiagnostics(
        markers=markers,
        canonical_positions=canonical_positions,
        source_points=source_points,
        target_points=target_points,
        tps=model,
        residual_error=residual,
        deformation=deformation,
    )


def dewarp_image_with_markers(
    image: np.ndarray,
    *,
    detection: DetectionParams | None = None,
    canonical_mode: CanonicalMode = "corners_4",
    canonical: CanonicalParams | None = None,
    correspondence_method: CorrespondenceMethod = "spatial_order",
    regularization: float = 0.0,
    output_size: tuple[int, int] | None = None,
    return_diagnostics: bool = False,
    workers: int = 1,
    cancel: threading.Event | None = None,
) -> np.ndarray | tuple[np.ndarray, DewarpDiagnostics]:
    """
    Detect markers, pair them with a canonical layout and TPS-warp the image.

    Returns the warped float32 RGB image in [0,1] (uint8 input is rescaled by
    1/255), or (image, DewarpDiagnostics) when `return_diagnostics` is True.
    Single-shot: any stage failure aborts with no partial result.
    """
    image = as_rgb_float(image)
    diag = compute_correspondence(
        image,
        detection=detection,
        canonical_mode=canonical_mode,
        canonical=canonical,
        correspondence_method=correspondence_method,
        regularization=regularization,
        output_size=output_size,
    )
    warped = warp_image_tps(
        image,
        diag.source_points,
        diag.target_points,
        output_size=output_size,
        regularization=regularization,
        workers=workers,
        cancel=cancel,
    )
    logger.info("Image dewarped successfully")
    if return_diagnostics:
        return warped, diag
    return warped


def dewarp_mask_with_markers(
    image: np.ndarray,
    mask: np.ndarray,
    *,
    detection: DetectionParams | None = None,
    canonical_mode: CanonicalMode = "corners_4",
    canonical: CanonicalParams | None = None,
    correspondence_method: CorrespondenceMethod = "spatial_order",
    regularization: float = 0.0,
    output_size: tuple[int, int] | None = None,
    workers: int = 1,
    cancel: threading.Event | None = None,
) -> tuple[np.ndarray, DewarpDiagnostics]:
    """
    Warp a mask that annotates `image` with the correspondence found on `image`.

    Returns (warped_mask, diagnostics).
    """
    m = np.asarray(mask, dtype=bool)
    if m.shape != _image_hw(image):
        raise ValueError(f"mask shape {m.shape} does not match image size {_image_hw(image)}")
    diag = compute_correspondence(
        image,
        detection=detection,
        canonical_mode=canonical_mode,
        canonical=canonical,
        correspondence_method=correspondence_method,
        regularization=regularization,
        output_size=output_size,
    )
    warped = warp_mask_tps(
        m,
        diag.source_points,
        diag.target_points,
        output_size=output_size,
        regularization=regularization,
        workers=workers,
        cancel=cancel,
    )
    return warped, diag


def dewarp_with_config(
    image: np.ndarray, config: DewarpConfig, *, cancel: threading.Event | None = None
) -> tuple[np.ndarray, DewarpDiagnostics]:
    out = dewarp_image_with_markers(
        image,
        detection=config.detection,
        canonical_mode=config.canonical_mode,
        canonical=config.canonical,
        correspondence_method=config.correspondence_method,
        regularization=config.regularization,
        output_size=config.output_size,
        return_diagnostics=True,
        workers=config.workers,
        cancel=cancel,
    )
    warped, diag = out  # type: ignore[misc]
    return warped, diag
