"""
FlatPage - Numeric Constants

Simple numeric constants with ZERO internal imports to avoid circular dependencies.
These are the defaults behind DewarpConfig; see services/dewarp/config.py.
"""

from typing import Final

# ============================================================================
# Page Extents (reduced-image pixels)
# ============================================================================

PAGE_MARGIN_X: Final[int] = 50
PAGE_MARGIN_Y: Final[int] = 20

# ============================================================================
# Working Resolution
# ============================================================================

SCREEN_MAX_W: Final[int] = 1280
SCREEN_MAX_H: Final[int] = 700

# ============================================================================
# Output
# ============================================================================

OUTPUT_ZOOM: Final[float] = 1.0
OUTPUT_DPI: Final[int] = 300
REMAP_DECIMATE: Final[int] = 16
MAX_OUTPUT_DIM: Final[int] = 3000
REMAP_COORD_LIMIT: Final[float] = 100000.0

# ============================================================================
# Text Region Detection
# ============================================================================

ADAPTIVE_WINSZ: Final[int] = 55
TEXT_THRESHOLD_C: Final[int] = 25
LINE_THRESHOLD_C: Final[int] = 7
BINARY_THRESHOLD_C: Final[int] = 25

TEXT_MIN_WIDTH: Final[int] = 15
TEXT_MIN_HEIGHT: Final[int] = 2
TEXT_MIN_ASPECT: Final[float] = 1.5
TEXT_MAX_THICKNESS: Final[int] = 10

# ============================================================================
# Span Assembly
# ============================================================================

EDGE_MAX_OVERLAP: Final[float] = 1.0
EDGE_MAX_LENGTH: Final[float] = 100.0
EDGE_ANGLE_COST: Final[float] = 10.0
EDGE_MAX_ANGLE: Final[float] = 7.5

SPAN_MIN_WIDTH: Final[float] = 30.0
SPAN_PX_PER_STEP: Final[int] = 20
MIN_TEXT_SPANS: Final[int] = 3

# ============================================================================
# Camera Model & Optimization
# ============================================================================

FOCAL_LENGTH: Final[float] = 1.2
SHAPE_PARAM_LIMIT: Final[float] = 0.5
OPTIMIZER_MAX_ITERATIONS: Final[int] = 100
OPTIMIZER_TOLERANCE: Final[float] = 1e-3
PAGE_DIMS_MAX_ITERATIONS: Final[int] = 100
