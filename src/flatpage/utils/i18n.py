#!/usr/bin/env python3
"""
FlatPage - Internationalization Module

This module initializes gettext for the command-line help and messages.
"""

import gettext
import os
import sys
from collections.abc import Callable

TEXT_DOMAIN = "flatpage"

# Check multiple locations where translation files might be
locale_dirs = [
    "/usr/share/locale",
    os.path.join(sys.prefix, "share", "locale"),
    os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "locale"),
]

_localedir: str | None = next((d for d in locale_dirs if os.path.exists(d)), None)

# fallback=True returns NullTranslations when no catalog is installed
_translation = gettext.translation(TEXT_DOMAIN, localedir=_localedir, fallback=True)
_: Callable[[str], str] = _translation.gettext