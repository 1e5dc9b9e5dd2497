from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from markerwarp.canonical import CANONICAL_MODES
from markerwarp.core.image_io import load_mask, load_rgb_float, save_mask, save_rgb_float
from markerwarp.correspondence import CORRESPONDENCE_METHODS
from markerwarp.detection import detect_markers
from markerwarp.errors import ConfigValidationError, NoMarkersError
from markerwarp.params import DewarpConfig, load_dewarp_config, parse_detection_params
from markerwarp.pipeline import dewarp_with_config
from markerwarp.tps import warp_mask_tps

REPORT_SCHEMA = "markerwarp.report.v0"


def _write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


def _detection_overrides(args: argparse.Namespace) -> dict[str, Any]:
    keys = ("threshold", "min_area", "max_markers", "kernel_size", "connectivity")
    out = {k: getattr(args, k) for k in keys if getattr(args, k) is not None}
    if args.region is not None:
        out["region"] = list(args.region)
    if args.enforce_aspect_ratio:
        out["enforce_aspect_ratio"] = True
    return out


def _add_detection_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--threshold", type=float, default=None, help="RGB white threshold in [0,1].")
    p.add_argument("--min-area", type=int, default=None, help="Minimum marker area in pixels.")
    p.add_argument("--max-markers", type=int, default=None)
    p.add_argument("--kernel-size", type=int, default=None, help="Close/open kernel radius (0 disables).")
    p.add_argument("--connectivity", type=int, default=None, choices=[4, 8])
    p.add_argument(
        "--region",
        type=int,
        nargs=4,
        default=None,
        metavar=("ROW_MIN", "ROW_MAX", "COL_MIN", "COL_MAX"),
        help="Restrict detection to this inclusive pixel box.",
    )
    p.add_argument("--enforce-aspect-ratio", action="store_true", help="Reject markers outside the aspect-ratio range.")


def _cmd_detect(args: argparse.Namespace) -> int:
    base = {}
    if args.config is not None:
        base = json.loads(Path(args.config).read_text(encoding="utf-8")).get("detection", {})
    params = parse_detection_params({**base, **_detection_overrides(args)})

    image = load_rgb_float(args.image)
    markers = detect_markers(image, **params.as_kwargs())
    payload = {
        "image": str(args.image),
        "detection": params.as_kwargs(),
        "markers": [m.summary() for m in markers],
    }
    if args.out_json is not None:
        _write_json(args.out_json, payload)
        print(f"Wrote {args.out_json}")
    else:
        print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def _cmd_dewarp(args: argparse.Namespace) -> int:
    if args.mask is not None and args.mask_out is None:
        raise ConfigValidationError("--mask requires --mask-out")
    config = load_dewarp_config(args.config) if args.config is not None else DewarpConfig()

    overrides = _detection_overrides(args)
    if overrides:
        merged = {**config.to_dict()["detection"], **overrides}
        config = replace(config, detection=parse_detection_params(merged))
    if args.canonical_mode is not None:
        config = replace(config, canonical_mode=args.canonical_mode)
    if args.method is not None:
        config = replace(config, correspondence_method=args.method)
    if args.regularization is not None:
        if args.regularization < 0.0:
            raise ConfigValidationError("regularization must be >= 0")
        config = replace(config, regularization=args.regularization)
    if args.workers is not None:
        config = replace(config, workers=max(1, args.workers))

    image = load_rgb_float(args.image)
    try:
        warped, diag = dewarp_with_config(image, config)
    except NoMarkersError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    save_rgb_float(args.out, warped)
    print(f"Wrote {args.out}")

    if args.mask is not None:
        mask = load_mask(args.mask)
        warped_mask = warp_mask_tps(
            mask,
            diag.source_points,
            diag.target_points,
            output_size=config.output_size,
            regularization=config.regularization,
            workers=config.workers,
        )
        save_mask(args.mask_out, warped_mask)
        print(f"Wrote {args.mask_out}")

    if args.report is not None:
        report = {
            "schema_version": REPORT_SCHEMA,
            "image": str(args.image),
            "output": str(args.out),
            "config": config.to_dict(),
            **diag.to_dict(),
        }
        _write_json(args.report, report)
        print(f"Wrote {args.report}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="markerwarp")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for progress, -vv for debug output.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    det = sub.add_parser("detect", help="Detect calibration markers and print them as JSON.")
    det.add_argument("image", type=Path)
    det.add_argument("--config", type=Path, default=None, help="JSON config; only its detection block is used.")
    det.add_argument("--out-json", type=Path, default=None)
    _add_detection_args(det)

    dw = sub.add_parser("dewarp", help="Detect markers and TPS-warp the image onto the canonical layout.")
    dw.add_argument("image", type=Path)
    dw.add_argument("--out", type=Path, required=True, help="Output image path.")
    dw.add_argument("--config", type=Path, default=None, help="JSON config (schema markerwarp.config.v0).")
    dw.add_argument("--canonical-mode", type=str, default=None, choices=list(CANONICAL_MODES))
    dw.add_argument("--method", type=str, default=None, choices=list(CORRESPONDENCE_METHODS))
    dw.add_argument("--regularization", type=float, default=None)
    dw.add_argument("--workers", type=int, default=None, help="Threads for the warp loop.")
    dw.add_argument("--mask", type=Path, default=None, help="Binary mask to warp alongside the image.")
    dw.add_argument("--mask-out", type=Path, default=None)
    dw.add_argument("--report", type=Path, default=None, help="Write a JSON diagnostics report here.")
    _add_detection_args(dw)

    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    if args.cmd == "detect":
        return _cmd_detect(args)

    if args.cmd == "dewarp":
        return _cmd_dewarp(args)

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
