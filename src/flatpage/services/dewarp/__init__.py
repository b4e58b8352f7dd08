"""
Page dewarping engine.

Estimates the 3D shape of a photographed page and the camera pose from its
text lines, then resamples the photo into a flat, axis-aligned page.
"""

from flatpage.services.dewarp.config import DewarpConfig
from flatpage.services.dewarp.debug import DebugBundle, DewarpDiagnostics
from flatpage.services.dewarp.pipeline import (
    DewarpResult,
    DewarpStatus,
    PageDewarper,
    dewarp_or_original,
    dewarp_page,
)

__all__ = [
    "DebugBundle",
    "DewarpConfig",
    "DewarpDiagnostics",
    "DewarpResult",
    "DewarpStatus",
    "PageDewarper",
    "dewarp_or_original",
    "dewarp_page",
]
