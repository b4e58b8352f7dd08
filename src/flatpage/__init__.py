"""
FlatPage - Python package for flattening photographed book and document pages

This package provides a dewarping engine that detects text lines on a
photographed page, fits a curved-page camera model to them and resamples
the photo into a flat page image, plus a small command-line front end.
"""

__version__ = "1.0.0"
__license__ = "GPL-3.0"

from flatpage.services.dewarp import (  # noqa: E402
    DewarpConfig,
    DewarpResult,
    DewarpStatus,
    PageDewarper,
    dewarp_or_original,
    dewarp_page,
)


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``python -m flatpage``.

    Returns:
        The process exit code.
    """
    from flatpage.cli import main as cli_main

    return cli_main(argv)


__all__ = [
    "DewarpConfig",
    "DewarpResult",
    "DewarpStatus",
    "PageDewarper",
    "__version__",
    "dewarp_or_original",
    "dewarp_page",
    "main",
]
