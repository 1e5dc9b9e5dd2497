from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from markerwarp.canonical import CANONICAL_MODES, CanonicalMode
from markerwarp.correspondence import CORRESPONDENCE_METHODS, CorrespondenceMethod
from markerwarp.errors import ConfigValidationError

CONFIG_SCHEMA = "markerwarp.config.v0"


@dataclass(frozen=True)
class DetectionParams:
    threshold: float = 0.7
    min_area: int = 8000
    max_markers: int = 20
    min_aspect_ratio: float = 3.0
    max_aspect_ratio: float = 7.0
    kernel_size: int = 3
    region: tuple[int, int, int, int] | None = None
    enforce_aspect_ratio: bool = False
    connectivity: int = 4

    def as_kwargs(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CanonicalParams:
    margin: float = 10.0
    spacing: float | None = None
    # Overrides the pipeline default (output size, else input size).
    image_size: tuple[int, int] | None = None


@dataclass(frozen=True)
class DewarpConfig:
    detection: DetectionParams = field(default_factory=DetectionParams)
    canonical_mode: CanonicalMode = "corners_4"
    canonical: CanonicalParams = field(default_factory=CanonicalParams)
    correspondence_method: CorrespondenceMethod = "spatial_order"
    regularization: float = 0.0
    output_size: tuple[int, int] | None = None
    workers: int = 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["schema_version"] = CONFIG_SCHEMA
        return data


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def _int_tuple(value: Any, n: int, name: str) -> tuple[int, ...]:
    _require(isinstance(value, (list, tuple)) and len(value) == n, f"{name} must be a list of {n} integers")
    return tuple(int(v) for v in value)


def parse_detection_params(data: dict[str, Any]) -> DetectionParams:
    defaults = DetectionParams()

    threshold = float(data.get("threshold", defaults.threshold))
    _require(0.0 <= threshold <= 1.0, "detection.threshold must be in [0, 1]")

    min_area = int(data.get("min_area", defaults.min_area))
    _require(min_area >= 0, "detection.min_area must be >= 0")

    max_markers = int(data.get("max_markers", defaults.max_markers))
    _require(max_markers >= 1, "detection.max_markers must be >= 1")

    min_ar = float(data.get("min_aspect_ratio", defaults.min_aspect_ratio))
    max_ar = float(data.get("max_aspect_ratio", defaults.max_aspect_ratio))
    _require(1.0 <= min_ar <= max_ar, "detection aspect ratios must satisfy 1 <= min <= max")

    kernel_size = int(data.get("kernel_size", defaults.kernel_size))
    _require(kernel_size >= 0, "detection.kernel_size must be >= 0")

    region_raw = data.get("region")
    region = None
    if region_raw is not None:
        r0, r1, c0, c1 = _int_tuple(region_raw, 4, "detection.region")
        _require(r0 <= r1 and c0 <= c1, "detection.region must be [row_min, row_max, col_min, col_max]")
        region = (r0, r1, c0, c1)

    connectivity = int(data.get("connectivity", defaults.connectivity))
    _require(connectivity in (4, 8), "detection.connectivity must be 4 or 8")

    return DetectionParams(
        threshold=threshold,
        min_area=min_area,
        max_markers=max_markers,
        min_aspect_ratio=min_ar,
        max_aspect_ratio=max_ar,
        kernel_size=kernel_size,
        region=region,
        enforce_aspect_ratio=bool(data.get("enforce_aspect_ratio", defaults.enforce_aspect_ratio)),
        connectivity=connectivity,
    )


def parse_canonical_params(data: dict[str, Any]) -> CanonicalParams:
    margin = float(data.get("margin", 10.0))
    _require(margin >= 0.0, "canonical.margin must be >= 0")

    spacing_raw = data.get("spacing")
    spacing = None if spacing_raw is None else float(spacing_raw)
    _require(spacing is None or spacing > 0.0, "canonical.spacing must be > 0")

    size_raw = data.get("image_size")
    image_size = None
    if size_raw is not None:
        h, w = _int_tuple(size_raw, 2, "canonical.image_size")
        _require(h > 0 and w > 0, "canonical.image_size must be positive")
        image_size = (h, w)

    return CanonicalParams(margin=margin, spacing=spacing, image_size=image_size)


def parse_dewarp_config(data: dict[str, Any]) -> DewarpConfig:
    schema_version = data.get("schema_version", CONFIG_SCHEMA)
    _require(schema_version == CONFIG_SCHEMA, f"schema_version must be {CONFIG_SCHEMA}")

    mode = str(data.get("canonical_mode", "corners_4"))
    _require(mode in CANONICAL_MODES, f"canonical_mode must be one of {'|'.join(CANONICAL_MODES)}")

    method = str(data.get("correspondence_method", "spatial_order"))
    _require(
        method in CORRESPONDENCE_METHODS,
        f"correspondence_method must be one of {'|'.join(CORRESPONDENCE_METHODS)}",
    )

    regularization = float(data.get("regularization", 0.0))
    _require(regularization >= 0.0, "regularization must be >= 0")

    out_raw = data.get("output_size")
    output_size = None
    if out_raw is not None:
        h, w = _int_tuple(out_raw, 2, "output_size")
        _require(h > 0 and w > 0, "output_size must be positive")
        output_size = (h, w)

    workers = int(data.get("workers", 1))
    _require(workers >= 1, "workers must be >= 1")

    return DewarpConfig(
        detection=parse_detection_params(data.get("detection", {})),
        canonical_mode=mode,  # type: ignore[arg-type]
        canonical=parse_canonical_params(data.get("canonical", {})),
        correspondence_method=method,  # type: ignore[arg-type]
        regularization=regularization,
        output_size=output_size,
        workers=workers,
    )


def load_dewarp_config(path: Path) -> DewarpConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_dewarp_config(data)
