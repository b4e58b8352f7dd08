"""
Dewarp Configuration.

This module contains the configuration dataclass consumed by the
dewarping pipeline, with validation and host-record conversion.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any

from flatpage import constants as C
from flatpage.utils.exceptions import ConfigValidationError

SURFACE_MODELS = ("cubic", "bivariate")
OPTIMIZERS = ("powell", "lm")

# Host record keys (camelCase) mapped to dataclass fields
_HOST_KEYS: dict[str, str] = {
    "xMargin": "x_margin",
    "yMargin": "y_margin",
    "outputZoom": "output_zoom",
    "noBinary": "no_binary",
    "adaptiveThresholdBlockSize": "adaptive_threshold_block_size",
    "textMinWidth": "text_min_width",
    "textMinHeight": "text_min_height",
    "textMinAspect": "text_min_aspect",
    "textMaxThickness": "text_max_thickness",
    "edgeMaxLength": "edge_max_length",
    "edgeMaxOverlap": "edge_max_overlap",
    "edgeMaxAngle": "edge_max_angle",
    "edgeAngleCost": "edge_angle_cost",
    "spanMinWidth": "span_min_width",
    "spanPxPerStep": "span_px_per_step",
    "optimizerMaxIterations": "optimizer_max_iterations",
    "optimizerTolerance": "optimizer_tolerance",
    "remapDecimationFactor": "remap_decimation_factor",
    "focalLength": "focal_length",
    "screenMaxWidth": "screen_max_width",
    "screenMaxHeight": "screen_max_height",
    "minTextSpans": "min_text_spans",
    "maxOutputDim": "max_output_dim",
    "surfaceModel": "surface_model",
    "timeoutSeconds": "timeout_seconds",
    "maxInputPixels": "max_input_pixels",
}


@dataclass
class DewarpConfig:
    """Configuration for one dewarp invocation.

    Pixel-valued thresholds refer to the reduced working image, not to
    the full-resolution input.

    Attributes:
        x_margin: Horizontal page margin excluded from detection (px)
        y_margin: Vertical page margin excluded from detection (px)
        output_zoom: Output scale relative to the page height in the input
        no_binary: Skip the bilevel threshold on the output
        adaptive_threshold_block_size: Block size of the adaptive thresholds (odd)
        text_min_width: Minimum contour width (px)
        text_min_height: Minimum contour height (px)
        text_min_aspect: Minimum width/height ratio of a contour
        text_max_thickness: Maximum column pixel run of a contour (px)
        edge_max_length: Maximum gap between linked contours (px)
        edge_max_overlap: Maximum horizontal overlap of linked contours (px)
        edge_max_angle: Maximum angular deviation of a link (degrees)
        edge_angle_cost: Score penalty per degree of deviation
        span_min_width: Minimum total width of a span (px)
        span_px_per_step: Sampling step along a span (px)
        optimizer_max_iterations: Outer-iteration cap of the minimizer
        optimizer_tolerance: Relative objective change that stops the minimizer
        remap_decimation_factor: Sparse-grid step of the remap (output px)
        focal_length: Camera focal length in normalized units
        screen_max_width: Width limit of the reduced working image
        screen_max_height: Height limit of the reduced working image
        min_text_spans: Below this span count, line detection is tried
        max_output_dim: Largest allowed output side (px)
        surface_model: Page surface model ("cubic" or "bivariate")
        optimizer: Minimizer ("powell" or "lm")
        timeout_seconds: Optional deadline checked between phases
        max_input_pixels: Optional limit on input width * height
        debug: Collect intermediate images into the debug bundle
    """

    # === Page Extents ===
    x_margin: int = C.PAGE_MARGIN_X
    y_margin: int = C.PAGE_MARGIN_Y

    # === Output ===
    output_zoom: float = C.OUTPUT_ZOOM
    no_binary: bool = False
    remap_decimation_factor: int = C.REMAP_DECIMATE
    max_output_dim: int = C.MAX_OUTPUT_DIM

    # === Text Detection ===
    adaptive_threshold_block_size: int = C.ADAPTIVE_WINSZ
    text_min_width: int = C.TEXT_MIN_WIDTH
    text_min_height: int = C.TEXT_MIN_HEIGHT
    text_min_aspect: float = C.TEXT_MIN_ASPECT
    text_max_thickness: int = C.TEXT_MAX_THICKNESS

    # === Span Assembly ===
    edge_max_length: float = C.EDGE_MAX_LENGTH
    edge_max_overlap: float = C.EDGE_MAX_OVERLAP
    edge_max_angle: float = C.EDGE_MAX_ANGLE
    edge_angle_cost: float = C.EDGE_ANGLE_COST
    span_min_width: float = C.SPAN_MIN_WIDTH
    span_px_per_step: int = C.SPAN_PX_PER_STEP
    min_text_spans: int = C.MIN_TEXT_SPANS

    # === Model & Optimization ===
    focal_length: float = C.FOCAL_LENGTH
    surface_model: str = "cubic"
    optimizer: str = "powell"
    optimizer_max_iterations: int = C.OPTIMIZER_MAX_ITERATIONS
    optimizer_tolerance: float = C.OPTIMIZER_TOLERANCE

    # === Working Resolution ===
    screen_max_width: int = C.SCREEN_MAX_W
    screen_max_height: int = C.SCREEN_MAX_H

    # === Host Limits ===
    timeout_seconds: float | None = None
    max_input_pixels: int | None = None

    debug: bool = False

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check every field and raise on the first invalid one.

        Raises:
            ConfigValidationError: If a value is out of range or of the wrong type.
        """
        for name in ("x_margin", "y_margin"):
            _require_int(name, getattr(self, name), minimum=0)

        _require_positive("output_zoom", self.output_zoom)
        _require_positive("focal_length", self.focal_length)
        _require_positive("text_min_aspect", self.text_min_aspect)
        _require_positive("edge_max_length", self.edge_max_length)
        _require_positive("optimizer_tolerance", self.optimizer_tolerance)
        _require_non_negative("edge_max_overlap", self.edge_max_overlap)
        _require_non_negative("edge_max_angle", self.edge_max_angle)
        _require_non_negative("edge_angle_cost", self.edge_angle_cost)
        _require_non_negative("span_min_width", self.span_min_width)

        for name in (
            "text_min_width",
            "text_min_height",
            "text_max_thickness",
            "span_px_per_step",
            "optimizer_max_iterations",
            "remap_decimation_factor",
            "screen_max_width",
            "screen_max_height",
            "max_output_dim",
        ):
            _require_int(name, getattr(self, name), minimum=1)
        _require_int("min_text_spans", self.min_text_spans, minimum=0)

        block = self.adaptive_threshold_block_size
        _require_int("adaptive_threshold_block_size", block, minimum=3)
        if block % 2 == 0:
            raise ConfigValidationError("adaptive_threshold_block_size", block, "must be odd")

        if not isinstance(self.no_binary, bool):
            raise ConfigValidationError("no_binary", self.no_binary, "must be a boolean")
        if not isinstance(self.debug, bool):
            raise ConfigValidationError("debug", self.debug, "must be a boolean")
        if self.surface_model not in SURFACE_MODELS:
            raise ConfigValidationError(
                "surface_model", self.surface_model, f"must be one of {SURFACE_MODELS}"
            )
        if self.optimizer not in OPTIMIZERS:
            raise ConfigValidationError("optimizer", self.optimizer, f"must be one of {OPTIMIZERS}")

        if self.timeout_seconds is not None:
            _require_positive("timeout_seconds", self.timeout_seconds)
        if self.max_input_pixels is not None:
            _require_int("max_input_pixels", self.max_input_pixels, minimum=1)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> DewarpConfig:
        """Build a config from a host record.

        Accepts the host's camelCase keys (``xMargin``, ``focalLength``...)
        as well as the dataclass field names. Missing keys keep defaults.

        Raises:
            ConfigValidationError: For unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in values.items():
            name = _HOST_KEYS.get(key, key)
            if name not in known:
                raise ConfigValidationError(key, value, "unknown configuration key")
            kwargs[name] = value
        return cls(**kwargs)


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_int(name: str, value: object, minimum: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigValidationError(name, value, "must be an integer")
    if value < minimum:
        raise ConfigValidationError(name, value, f"must be >= {minimum}")


def _require_positive(name: str, value: object) -> None:
    if not _is_number(value) or not math.isfinite(value):
        raise ConfigValidationError(name, value, "must be a finite number")
    if value <= 0:
        raise ConfigValidationError(name, value, "must be > 0")


def _require_non_negative(name: str, value: object) -> None:
    if not _is_number(value) or not math.isfinite(value):
        raise ConfigValidationError(name, value, "must be a finite number")
    if value < 0:
        raise ConfigValidationError(name, value, "must be >= 0")
