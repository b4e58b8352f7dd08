#!/usr/bin/env python3
"""
FlatPage CLI: flatten photographed pages from the terminal.

Usage:
    python -m flatpage <command> [options]

Commands:
    dewarp      Flatten a photographed page into a straight page image
    info        Show the text structure detected on a page

Examples:
    # Basic dewarp (bilevel output)
    flatpage-cli dewarp page.jpg -o page_flat.png

    # Keep colors, larger output
    flatpage-cli dewarp page.jpg -o page_flat.png --no-binary --zoom 1.5

    # Tune detection for small print
    flatpage-cli dewarp page.jpg -o out.png --x-margin 30 --text-min-width 10

    # Alternative solver and surface model
    flatpage-cli dewarp page.jpg -o out.png --optimizer lm --surface bivariate

    # Save intermediate images
    flatpage-cli dewarp page.jpg -o out.png --debug-dir /tmp/flatpage_debug

    # Info
    flatpage-cli info page.jpg
"""

import argparse
import logging
import sys
import time
from pathlib import Path

from flatpage.utils.i18n import _

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NO_STRUCTURE = 2

# ---------------------------------------------------------------------------
# Image I/O
# ---------------------------------------------------------------------------


def _load_image(path: Path):
    """Load an image file as a BGR (or BGRA) numpy array, honoring EXIF rotation."""
    import cv2
    import numpy as np
    from PIL import Image, ImageOps

    with Image.open(path) as pil_img:
        pil_img = ImageOps.exif_transpose(pil_img)
        if pil_img.mode == "RGBA":
            return cv2.cvtColor(np.array(pil_img), cv2.COLOR_RGBA2BGRA)
        if pil_img.mode != "RGB":
            pil_img = pil_img.convert("RGB")
        return cv2.cvtColor(np.array(pil_img), cv2.COLOR_RGB2BGR)


def _save_image(image, path: Path, dpi: int, bilevel: bool) -> None:
    """Write a BGR/BGRA/gray array with DPI metadata."""
    import cv2
    from PIL import Image

    if image.ndim == 2:
        pil_img = Image.fromarray(image)
        if bilevel:
            pil_img = pil_img.convert("1")
    elif image.shape[2] == 4:
        pil_img = Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA))
    else:
        pil_img = Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))

    path.parent.mkdir(parents=True, exist_ok=True)
    pil_img.save(path, dpi=(dpi, dpi))


def _default_output(input_path: Path) -> Path:
    return input_path.with_name(f"{input_path.stem}_flat.png")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with subcommands."""
    from flatpage import constants as C

    p = argparse.ArgumentParser(
        prog="flatpage-cli",
        description="FlatPage: flatten photographed book and document pages.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("-v", "--verbose", action="store_true", help=_("Verbose logging (DEBUG)"))

    sub = p.add_subparsers(dest="command", help=_("Available commands"))

    # --- dewarp ---
    dw_p = sub.add_parser("dewarp", help=_("Flatten a photographed page"))
    dw_p.add_argument("input", type=Path, help=_("Input image file"))
    dw_p.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help=_("Output image file. Default: <input>_flat.png"),
    )
    _add_detection_args(dw_p, C)

    dw_m = dw_p.add_argument_group(_("Page model"))
    dw_m.add_argument(
        "--focal-length",
        type=float,
        default=C.FOCAL_LENGTH,
        help=_("Camera focal length in normalized units (default: %(default)s)"),
    )
    dw_m.add_argument(
        "--surface",
        choices=["cubic", "bivariate"],
        default="cubic",
        help=_("Page surface model (default: cubic)"),
    )
    dw_m.add_argument(
        "--optimizer",
        choices=["powell", "lm"],
        default="powell",
        help=_("Minimizer for the reprojection error (default: powell)"),
    )
    dw_m.add_argument(
        "--max-iter",
        type=int,
        default=C.OPTIMIZER_MAX_ITERATIONS,
        help=_("Optimizer iteration cap (default: %(default)s)"),
    )
    dw_m.add_argument(
        "--tolerance",
        type=float,
        default=C.OPTIMIZER_TOLERANCE,
        help=_("Optimizer convergence tolerance (default: %(default)s)"),
    )

    dw_o = dw_p.add_argument_group(_("Output"))
    dw_o.add_argument(
        "--zoom",
        type=float,
        default=C.OUTPUT_ZOOM,
        help=_("Output scale relative to the page in the photo (default: %(default)s)"),
    )
    dw_o.add_argument(
        "--no-binary",
        action="store_true",
        help=_("Keep the remapped image instead of thresholding it to black and white"),
    )
    dw_o.add_argument(
        "--decimate",
        type=int,
        default=C.REMAP_DECIMATE,
        help=_("Remap grid step in output pixels (default: %(default)s)"),
    )
    dw_o.add_argument(
        "--max-output-dim",
        type=int,
        default=C.MAX_OUTPUT_DIM,
        help=_("Largest output side in pixels (default: %(default)s)"),
    )
    dw_o.add_argument(
        "--dpi",
        type=int,
        default=C.OUTPUT_DPI,
        help=_("DPI stored in the output file (default: %(default)s)"),
    )
    dw_o.add_argument(
        "--debug-dir",
        type=Path,
        default=None,
        help=_("Save intermediate images into this directory"),
    )

    dw_l = dw_p.add_argument_group(_("Limits"))
    dw_l.add_argument(
        "--timeout",
        type=float,
        default=None,
        help=_("Abort after this many seconds (checked between phases)"),
    )

    # --- info ---
    info_p = sub.add_parser("info", help=_("Show the text structure detected on a page"))
    info_p.add_argument("input", type=Path, help=_("Input image file"))
    _add_detection_args(info_p, C)

    return p


def _add_detection_args(parser: argparse.ArgumentParser, C) -> None:
    """Detection options shared by 'dewarp' and 'info'."""
    det = parser.add_argument_group(_("Text detection"))
    det.add_argument(
        "--x-margin",
        type=int,
        default=C.PAGE_MARGIN_X,
        help=_("Horizontal margin ignored by detection, in working pixels (default: %(default)s)"),
    )
    det.add_argument(
        "--y-margin",
        type=int,
        default=C.PAGE_MARGIN_Y,
        help=_("Vertical margin ignored by detection, in working pixels (default: %(default)s)"),
    )
    det.add_argument(
        "--block-size",
        type=int,
        default=C.ADAPTIVE_WINSZ,
        help=_("Adaptive threshold block size, odd (default: %(default)s)"),
    )
    det.add_argument("--text-min-width", type=int, default=C.TEXT_MIN_WIDTH)
    det.add_argument("--text-min-height", type=int, default=C.TEXT_MIN_HEIGHT)
    det.add_argument("--text-min-aspect", type=float, default=C.TEXT_MIN_ASPECT)
    det.add_argument("--text-max-thickness", type=int, default=C.TEXT_MAX_THICKNESS)
    det.add_argument("--edge-max-length", type=float, default=C.EDGE_MAX_LENGTH)
    det.add_argument("--edge-max-overlap", type=float, default=C.EDGE_MAX_OVERLAP)
    det.add_argument("--edge-max-angle", type=float, default=C.EDGE_MAX_ANGLE)
    det.add_argument("--span-min-width", type=float, default=C.SPAN_MIN_WIDTH)


def config_from_args(args: argparse.Namespace):
    """Build a DewarpConfig from parsed arguments.

    Raises:
        ConfigValidationError: If an option value is invalid.
    """
    from flatpage.services.dewarp.config import DewarpConfig

    values = {
        "x_margin": args.x_margin,
        "y_margin": args.y_margin,
        "adaptive_threshold_block_size": args.block_size,
        "text_min_width": args.text_min_width,
        "text_min_height": args.text_min_height,
        "text_min_aspect": args.text_min_aspect,
        "text_max_thickness": args.text_max_thickness,
        "edge_max_length": args.edge_max_length,
        "edge_max_overlap": args.edge_max_overlap,
        "edge_max_angle": args.edge_max_angle,
        "span_min_width": args.span_min_width,
    }
    if args.command == "dewarp":
        values.update(
            focal_length=args.focal_length,
            surface_model=args.surface,
            optimizer=args.optimizer,
            optimizer_max_iterations=args.max_iter,
            optimizer_tolerance=args.tolerance,
            output_zoom=args.zoom,
            no_binary=args.no_binary,
            remap_decimation_factor=args.decimate,
            max_output_dim=args.max_output_dim,
            timeout_seconds=args.timeout,
            debug=args.debug_dir is not None,
        )
    return DewarpConfig(**values)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_dewarp(args, logger) -> int:
    """Handle the 'dewarp' command."""
    from flatpage.services.dewarp import DewarpStatus, PageDewarper

    config = config_from_args(args)
    output = args.output or _default_output(args.input)

    img = _load_image(args.input)
    logger.info(f"Loaded {args.input} ({img.shape[1]}×{img.shape[0]} px)")

    def progress_cb(phase: str, percent: int, message: str) -> None:
        print(f"\r[{percent:3d}%] {message:<50}", end="", flush=True)

    t0 = time.perf_counter()
    result = PageDewarper(config, progress=progress_cb).dewarp(img)
    elapsed = time.perf_counter() - t0
    print()  # newline after progress

    if result.debug is not None:
        result.debug.save(args.debug_dir, prefix=f"{args.input.stem}_")
        logger.info(f"Debug images saved to {args.debug_dir}")

    diag = result.diagnostics
    if result.status is DewarpStatus.STRUCTURE_NOT_FOUND:
        logger.warning(f"No text structure found in {args.input}; writing it unchanged")
        _save_image(result.image, output, args.dpi, bilevel=False)
        return EXIT_NO_STRUCTURE

    _save_image(result.image, output, args.dpi, bilevel=not config.no_binary)
    logger.info(
        f"Done: {diag.n_spans} spans, {diag.n_keypoints} keypoints, "
        f"objective {diag.initial_objective:.6g} -> {diag.final_objective:.6g}, "
        f"{elapsed:.1f}s total"
    )
    for warning in diag.warnings:
        logger.warning(warning)
    logger.info(f"Wrote {output} ({result.image.shape[1]}×{result.image.shape[0]} px)")
    return EXIT_OK


def _cmd_info(args, _logger) -> int:
    """Handle the 'info' command."""
    from flatpage.services.dewarp import PageDewarper

    config = config_from_args(args)
    img = _load_image(args.input)
    diag = PageDewarper(config).inspect(img)
    stats = diag.span_stats

    print(f"File:        {args.input}")
    print(f"Size:        {diag.input_size[0]}×{diag.input_size[1]} px")
    print(f"Working:     {diag.working_size[0]}×{diag.working_size[1]} px (1/{diag.scale})")
    print(f"Contours:    {diag.text_contours} (text mode)")
    if diag.line_contours is not None:
        print(f"             {diag.line_contours} (line mode)")
    print(f"Mode used:   {diag.detection_mode}")
    print(f"Spans:       {diag.n_spans} ({diag.excluded_spans} excluded)")
    print(f"Keypoints:   {diag.n_keypoints}")
    if stats is not None:
        print(f"Edges:       {stats.valid_edges} valid of {stats.candidate_pairs} pairs")
        print(
            f"Rejected:    {stats.rejected_distance} distance, "
            f"{stats.rejected_overlap} overlap, {stats.rejected_angle} angle"
        )
    return EXIT_OK


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    from flatpage.utils.exceptions import FlatPageError
    from flatpage.utils.logger import setup_logger

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logger(level)
    logger = logging.getLogger("flatpage.cli")

    if not args.input.exists():
        print(f"Error: {args.input} not found", file=sys.stderr)
        return EXIT_ERROR

    handlers = {
        "dewarp": _cmd_dewarp,
        "info": _cmd_info,
    }

    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return EXIT_ERROR

    try:
        return handler(args, logger)
    except FlatPageError as e:
        logger.error(f"{args.command} failed: {e}")
        return EXIT_ERROR
    except OSError as e:
        logger.error(f"I/O error: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
