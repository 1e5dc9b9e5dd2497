from markerwarp.canonical import define_canonical_positions
from markerwarp.correspondence import establish_correspondence
from markerwarp.detection import MarkerInfo, detect_markers
from markerwarp.errors import ConfigValidationError, MarkerWarpError, NoMarkersError, TPSFitError, WarpCancelled
from markerwarp.params import CanonicalParams, DetectionParams, DewarpConfig, load_dewarp_config, parse_dewarp_config
from markerwarp.pipeline import DewarpDiagnostics, dewarp_image_with_markers, dewarp_mask_with_markers
from markerwarp.tps import (
    TPSModel,
    apply_tps,
    deformation_magnitude,
    fit_tps,
    tps_residual_error,
    warp_image_tps,
    warp_mask_tps,
)

__all__ = [
    "MarkerInfo",
    "detect_markers",
    "define_canonical_positions",
    "establish_correspondence",
    "TPSModel",
    "fit_tps",
    "apply_tps",
    "warp_image_tps",
    "warp_mask_tps",
    "tps_residual_error",
    "deformation_magnitude",
    "DewarpDiagnostics",
    "dewarp_image_with_markers",
    "dewarp_mask_with_markers",
    "DetectionParams",
    "CanonicalParams",
    "DewarpConfig",
    "load_dewarp_config",
    "parse_dewarp_config",
    "MarkerWarpError",
    "ConfigValidationError",
    "TPSFitError",
    "NoMarkersError",
    "WarpCancelled",
]
