"""
Main entry point for running the package as a module.

Usage:
    python -m mipcache ladder --base 256 --original 1000
    python -m mipcache warm --root /srv/files
    python -m mipcache inspect --root /srv/files photos/cat.jpg
"""

import sys
from .cli import main

if __name__ == '__main__':
    sys.exit(main())
