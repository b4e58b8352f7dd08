#!/usr/bin/env python3
"""
FlatPage - Entry point for python -m flatpage

This module allows the package to be run as a module:
    python -m flatpage dewarp photo.jpg -o flat.png
"""

import sys

from flatpage import main

if __name__ == "__main__":
    sys.exit(main())
