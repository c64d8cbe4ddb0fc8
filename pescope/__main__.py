"""
PEScope Module Entry Point
===========================

Allows running the PEScope CLI via: python -m pescope
"""

from pescope.cli import main

if __name__ == "__main__":
    main()
