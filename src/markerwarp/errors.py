from __future__ import annotations


class MarkerWarpError(Exception):
    pass


class ConfigValidationError(MarkerWarpError, ValueError):
    pass


class TPSFitError(MarkerWarpError, RuntimeError):
    """Raised when the thin-plate spline system cannot be solved."""


class NoMarkersError(MarkerWarpError, RuntimeError):
    """Raised by the dewarping pipeline when detection returns nothing."""


class WarpCancelled(MarkerWarpError):
    pass
