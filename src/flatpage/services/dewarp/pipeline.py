"""Page dewarping pipeline.

Primary entry point: **PageDewarper.dewarp**

  Detect text contours -> (too few spans? retry in line mode) -> assemble
  spans -> sample keypoints -> estimate pose -> jointly optimize pose,
  surface shape and keypoint offsets -> refine page dims -> remap.

A page without usable text structure is not an error: the input comes
back unchanged with status STRUCTURE_NOT_FOUND. Pose failures, invalid
configuration and host limits raise; ``dewarp_or_original`` turns those
into statuses for hosts that always want an image back.

``PageDewarper.iter_dewarp`` exposes the same run as a generator that
yields a ProgressEvent between phases, so a host can interleave other
work or abandon the run; the generator's return value is the result.

Based on techniques from:
- Matt Zucker's page_dewarp (2016)
  https://mzucker.github.io/2016/08/15/page-dewarping.html
"""

from __future__ import annotations

import logging
from collections.abc import Generator
from dataclasses import dataclass
from enum import Enum

import numpy as np

from flatpage.services.dewarp.config import DewarpConfig
from flatpage.services.dewarp.contour_detection import (
    MODE_LINE,
    MODE_TEXT,
    ContourArena,
    DetectionResult,
    detect_contours,
)
from flatpage.services.dewarp.debug import (
    DebugBundle,
    DewarpDiagnostics,
    draw_correspondences,
    visualize_contours,
    visualize_span_points,
    visualize_spans,
)
from flatpage.services.dewarp.image_utils import (
    BufferScope,
    check_margins,
    match_channels,
    page_extents,
    resize_to_screen,
    to_bgr,
    validate_image,
    working_size,
)
from flatpage.services.dewarp.keypoints import (
    keypoints_from_samples,
    make_keypoint_index,
    sample_spans,
)
from flatpage.services.dewarp.optimizer import (
    ReprojectionProblem,
    make_optimizer,
    optimize_params,
)
from flatpage.services.dewarp.page_dims import get_page_dims
from flatpage.services.dewarp.pose import estimate_pose
from flatpage.services.dewarp.projection import (
    PageProjection,
    ParameterVector,
    make_surface_model,
)
from flatpage.services.dewarp.remap import remap_image
from flatpage.services.dewarp.span_assembly import SpanAssemblyStats, assemble_spans
from flatpage.services.dewarp.vision_ops import OpenCVOps
from flatpage.utils.exceptions import (
    DewarpTimeoutError,
    FlatPageError,
    PoseEstimationFailedError,
    ResourceExhaustedError,
    StructureNotFoundError,
)
from flatpage.utils.progress import ProgressCallback, ProgressEvent, ProgressReporter
from flatpage.utils.timer import PhaseTimer

logger = logging.getLogger(__name__)

# ── Phases ───────────────────────────────────────────────────────────────────

PHASE_DETECT = "detect"
PHASE_DETECT_LINES = "detect_lines"
PHASE_SAMPLE = "sample"
PHASE_POSE = "pose"
PHASE_OPTIMIZE = "optimize"
PHASE_REFINE_DIMS = "refine_dims"
PHASE_REMAP = "remap"
PHASE_DONE = "done"

PHASE_PERCENT: dict[str, int] = {
    PHASE_DETECT: 0,
    PHASE_DETECT_LINES: 15,
    PHASE_SAMPLE: 25,
    PHASE_POSE: 35,
    PHASE_OPTIMIZE: 40,
    PHASE_REFINE_DIMS: 80,
    PHASE_REMAP: 85,
    PHASE_DONE: 100,
}


class DewarpStatus(Enum):
    """Outcome of a dewarp invocation."""

    SUCCESS = "success"
    STRUCTURE_NOT_FOUND = "structure_not_found"
    POSE_ESTIMATION_FAILED = "pose_estimation_failed"
    RESOURCE_EXHAUSTED = "resource_exhausted"


@dataclass
class DewarpResult:
    """Output of one invocation.

    Attributes:
        image: Flattened page, or the input itself when nothing was done
        status: Outcome of the run
        params: Fitted parameter vector (None unless optimization ran)
        page_dims: Final page (width, height) in normalized units
        diagnostics: Counters and timings of the run
        debug: Intermediate images, only when ``config.debug`` is set
        error: Why the input came back unchanged, None on success
    """

    image: np.ndarray
    status: DewarpStatus
    params: ParameterVector | None = None
    page_dims: tuple[float, float] | None = None
    diagnostics: DewarpDiagnostics | None = None
    debug: DebugBundle | None = None
    error: FlatPageError | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is DewarpStatus.SUCCESS


@dataclass
class _Assembly:
    detection: DetectionResult
    spans: list[list[int]]
    stats: SpanAssemblyStats

    @property
    def arena(self) -> ContourArena:
        return self.detection.arena


@dataclass
class _PageFit:
    params: ParameterVector
    projection: PageProjection
    page_dims: tuple[float, float]


class PageDewarper:
    """Flatten photographed pages.

    Holds only immutable configuration; every call builds its own state,
    so one instance can serve any number of sequential calls.
    """

    def __init__(
        self,
        config: DewarpConfig | None = None,
        ops: OpenCVOps | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        self.config = config or DewarpConfig()
        self.ops = ops or OpenCVOps()
        self.progress = progress

    def __call__(self, image: np.ndarray) -> DewarpResult:
        return self.dewarp(image)

    def dewarp(self, image: np.ndarray) -> DewarpResult:
        """Run the whole pipeline and return its result.

        Raises:
            ConfigValidationError: If the configuration is invalid.
            InvalidImageError: If the buffer is not a gray, BGR or BGRA uint8 image.
            PoseEstimationFailedError: If the page pose cannot be recovered.
            ResourceExhaustedError: If the input or the run exceeds a host limit.
        """
        run = self.iter_dewarp(image)
        while True:
            try:
                next(run)
            except StopIteration as stop:
                return stop.value

    def iter_dewarp(
        self, image: np.ndarray
    ) -> Generator[ProgressEvent, None, DewarpResult]:
        """Run the pipeline, yielding a progress event between phases."""
        config = self.config
        source = self._prepare(image)
        height, width = source.shape[:2]

        timer = PhaseTimer()
        reporter = ProgressReporter(self.progress)
        diag = DewarpDiagnostics(input_size=(width, height))
        bundle = DebugBundle(diagnostics=diag) if config.debug else None

        # The fit runs in its own frame; its working buffers are gone by remap
        with BufferScope("working") as scope:
            fitted = yield from self._fit(source, scope, reporter, timer, diag, bundle)
        diag.buffers_released = scope.released
        if isinstance(fitted, StructureNotFoundError):
            return self._unchanged(image, fitted, reporter, timer, diag, bundle)

        yield self._checkpoint(reporter, timer, PHASE_REMAP, "Remapping page")
        with timer.phase(PHASE_REMAP):
            remapped = remap_image(
                source,
                fitted.page_dims,
                fitted.params,
                fitted.projection,
                output_zoom=config.output_zoom,
                decimate=config.remap_decimation_factor,
                no_binary=config.no_binary,
                block_size=config.adaptive_threshold_block_size,
                max_output_dim=config.max_output_dim,
                ops=self.ops,
            )
        diag.output_size = (remapped.width, remapped.height)
        diag.output_clamped = remapped.clamped
        diag.invalid_map_points = remapped.invalid_points
        if remapped.invalid_points:
            diag.warnings.append(f"{remapped.invalid_points} remap points were not finite")
        if bundle is not None:
            bundle.add("output", remapped.image)

        output = match_channels(remapped.image, image)
        diag.timings = timer.timings()
        reporter.report(PHASE_DONE, PHASE_PERCENT[PHASE_DONE], "Done")
        logger.info(
            f"Dewarped {width}x{height} -> {remapped.width}x{remapped.height} "
            f"in {timer.elapsed():.2f}s"
        )
        return DewarpResult(
            image=output,
            status=DewarpStatus.SUCCESS,
            params=fitted.params,
            page_dims=fitted.page_dims,
            diagnostics=diag,
            debug=bundle,
        )

    def inspect(self, image: np.ndarray) -> DewarpDiagnostics:
        """Run detection, span assembly and sampling only.

        Returns:
            Diagnostics describing the text structure found on the page.
        """
        config = self.config
        source = self._prepare(image)
        diag = DewarpDiagnostics(input_size=(source.shape[1], source.shape[0]))

        with BufferScope("inspect") as scope:
            small, scale = resize_to_screen(
                source, config.screen_max_width, config.screen_max_height
            )
            scope.track(small)
            pagemask, _ = page_extents(small.shape, config.x_margin, config.y_margin)
            diag.working_size = (small.shape[1], small.shape[0])
            diag.scale = scale

            best = self._assemble(small, pagemask, MODE_TEXT)
            diag.text_contours = best.detection.count
            diag.text_spans = len(best.spans)
            if len(best.spans) < config.min_text_spans:
                lines = self._assemble(small, pagemask, MODE_LINE)
                diag.line_contours = lines.detection.count
                diag.line_spans = len(lines.spans)
                if len(lines.spans) > len(best.spans):
                    best = lines

            diag.detection_mode = best.detection.mode
            diag.span_stats = best.stats
            samples = sample_spans(small.shape, best.arena, best.spans, config.span_px_per_step)
            diag.n_spans = samples.n_spans
            diag.excluded_spans = len(samples.excluded)
            diag.n_keypoints = int(sum(samples.span_counts))
        diag.buffers_released = scope.released
        return diag

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _prepare(self, image: np.ndarray) -> np.ndarray:
        """Check configuration, input and host limits, then convert to BGR.

        Margins are checked against the working size before any resize.
        """
        config = self.config
        config.validate()
        validate_image(image)

        height, width = image.shape[:2]
        if config.max_input_pixels is not None and width * height > config.max_input_pixels:
            raise ResourceExhaustedError("input pixels", config.max_input_pixels, width * height)
        small_w, small_h, _ = working_size(
            image.shape, config.screen_max_width, config.screen_max_height
        )
        check_margins(small_w, small_h, config.x_margin, config.y_margin)
        return to_bgr(image)

    def _fit(
        self,
        source: np.ndarray,
        scope: BufferScope,
        reporter: ProgressReporter,
        timer: PhaseTimer,
        diag: DewarpDiagnostics,
        bundle: DebugBundle | None,
    ) -> Generator[ProgressEvent, None, _PageFit | StructureNotFoundError]:
        """Detect, sample, pose, optimize and size the page on the working image."""
        config = self.config
        yield self._checkpoint(reporter, timer, PHASE_DETECT, "Detecting text contours")

        small, scale = resize_to_screen(source, config.screen_max_width, config.screen_max_height)
        scope.track(small)
        pagemask, page_outline = page_extents(small.shape, config.x_margin, config.y_margin)
        scope.track(pagemask)
        diag.working_size = (small.shape[1], small.shape[0])
        diag.scale = scale
        logger.debug(f"Working image {small.shape[1]}x{small.shape[0]} (1/{scale} scale)")
        if bundle is not None:
            bundle.add("original", small.copy())

        with timer.phase(PHASE_DETECT):
            best = self._assemble(small, pagemask, MODE_TEXT)
        scope.track(best.detection.mask)
        diag.text_contours = best.detection.count
        diag.text_spans = len(best.spans)

        if len(best.spans) < config.min_text_spans:
            yield self._checkpoint(
                reporter,
                timer,
                PHASE_DETECT_LINES,
                f"Only {len(best.spans)} text spans, trying line detection",
            )
            with timer.phase(PHASE_DETECT):
                lines = self._assemble(small, pagemask, MODE_LINE)
            scope.track(lines.detection.mask)
            diag.line_contours = lines.detection.count
            diag.line_spans = len(lines.spans)
            logger.debug(f"Line detection found {len(lines.spans)} spans")
            if len(lines.spans) > len(best.spans):
                best = lines

        diag.detection_mode = best.detection.mode
        diag.span_stats = best.stats
        if bundle is not None:
            bundle.add("mask", best.detection.mask.copy())
            bundle.add("contours", visualize_contours(small, best.arena))
            bundle.add("spans", visualize_spans(small, pagemask, best.arena, best.spans))

        if not best.spans:
            return StructureNotFoundError(best.detection.count, 0)

        yield self._checkpoint(reporter, timer, PHASE_SAMPLE, "Sampling text baselines")
        with timer.phase(PHASE_SAMPLE):
            samples = sample_spans(small.shape, best.arena, best.spans, config.span_px_per_step)
        diag.excluded_spans = len(samples.excluded)
        if samples.n_spans == 0:
            return StructureNotFoundError(best.detection.count, len(best.spans))

        keypoints = keypoints_from_samples(small.shape, page_outline, samples.points)
        diag.n_spans = keypoints.n_spans
        diag.n_keypoints = keypoints.n_keypoints
        logger.info(
            f"Found {keypoints.n_spans} spans with {keypoints.n_keypoints} keypoints "
            f"({best.detection.mode} mode)"
        )
        if bundle is not None:
            bundle.add(
                "span_points",
                visualize_span_points(small, keypoints.span_points, keypoints.corners),
            )

        yield self._checkpoint(reporter, timer, PHASE_POSE, "Estimating camera pose")
        with timer.phase(PHASE_POSE):
            pose = estimate_pose(keypoints.corners, config.focal_length)
        diag.rough_dims = pose.rough_dims

        surface = make_surface_model(config.surface_model)
        projection = PageProjection(surface, config.focal_length)
        params = ParameterVector.assemble(
            pose.rvec,
            pose.tvec,
            surface.initial_shape(),
            keypoints.ycoords,
            keypoints.xcoords,
        )
        diag.n_params = len(params)

        keypoint_index = make_keypoint_index(params.layout, keypoints.span_counts)
        dstpoints = keypoints.destination_points()
        problem = ReprojectionProblem(projection, keypoint_index, dstpoints, surface.n_shape)
        if bundle is not None:
            projpts = projection.project_keypoints(params.values, keypoint_index, surface.n_shape)
            bundle.add("keypoints_before", draw_correspondences(small, dstpoints, projpts))

        yield self._checkpoint(
            reporter, timer, PHASE_OPTIMIZE, f"Optimizing {len(params)} parameters"
        )
        optimizer = make_optimizer(
            config.optimizer, config.optimizer_max_iterations, config.optimizer_tolerance
        )
        with timer.phase(PHASE_OPTIMIZE):
            fit = optimize_params(problem, params, optimizer)
        diag.optimizer = fit.method
        diag.initial_objective = fit.initial_objective
        diag.final_objective = fit.final_objective
        diag.optimizer_iterations = fit.iterations
        diag.optimizer_evaluations = fit.evaluations
        diag.optimizer_converged = fit.converged
        if not fit.converged:
            diag.warnings.append(
                f"optimizer stopped at the iteration cap ({config.optimizer_max_iterations})"
            )
        if bundle is not None:
            projpts = projection.project_keypoints(
                fit.params.values, keypoint_index, surface.n_shape
            )
            bundle.add("keypoints_after", draw_correspondences(small, dstpoints, projpts))

        yield self._checkpoint(reporter, timer, PHASE_REFINE_DIMS, "Refining page size")
        with timer.phase(PHASE_REFINE_DIMS):
            dims = get_page_dims(keypoints.corners, pose.rough_dims, fit.params, projection)
        diag.page_dims = dims.dims
        diag.dims_iterations = dims.iterations
        diag.used_rough_dims = dims.used_fallback
        if dims.used_fallback:
            diag.warnings.append(f"page dims fell back to rough estimate: {dims.reason}")

        return _PageFit(params=fit.params, projection=projection, page_dims=dims.dims)

    def _assemble(self, small: np.ndarray, pagemask: np.ndarray, mode: str) -> _Assembly:
        detection = detect_contours(small, pagemask, self.config, mode, self.ops)
        spans, stats = assemble_spans(detection.arena, self.config)
        return _Assembly(detection, spans, stats)

    def _checkpoint(
        self, reporter: ProgressReporter, timer: PhaseTimer, phase: str, message: str
    ) -> ProgressEvent:
        timeout = self.config.timeout_seconds
        if timeout is not None:
            elapsed = timer.elapsed()
            if elapsed > timeout:
                raise DewarpTimeoutError(timeout, phase, elapsed)
        return reporter.report(phase, PHASE_PERCENT[phase], message)

    def _unchanged(
        self,
        image: np.ndarray,
        error: StructureNotFoundError,
        reporter: ProgressReporter,
        timer: PhaseTimer,
        diag: DewarpDiagnostics,
        bundle: DebugBundle | None,
    ) -> DewarpResult:
        logger.info(f"{error}; returning the input unchanged")
        diag.timings = timer.timings()
        reporter.report(PHASE_DONE, PHASE_PERCENT[PHASE_DONE], "No text structure found")
        return DewarpResult(
            image=image,
            status=DewarpStatus.STRUCTURE_NOT_FOUND,
            diagnostics=diag,
            debug=bundle,
            error=error,
        )


def dewarp_page(
    image: np.ndarray,
    config: DewarpConfig | None = None,
    progress: ProgressCallback | None = None,
) -> DewarpResult:
    """Dewarp one page with a fresh PageDewarper."""
    return PageDewarper(config, progress=progress).dewarp(image)


def dewarp_or_original(
    image: np.ndarray,
    config: DewarpConfig | None = None,
    progress: ProgressCallback | None = None,
) -> DewarpResult:
    """Dewarp one page, substituting the input when the run fails.

    Pose and resource failures are reported through the status instead of
    raising. Configuration and input errors still raise.
    """
    try:
        return dewarp_page(image, config, progress)
    except PoseEstimationFailedError as e:
        logger.warning(f"{e}; keeping the original image")
        return DewarpResult(image=image, status=DewarpStatus.POSE_ESTIMATION_FAILED, error=e)
    except ResourceExhaustedError as e:
        logger.warning(f"{e}; keeping the original image")
        return DewarpResult(image=image, status=DewarpStatus.RESOURCE_EXHAUSTED, error=e)
