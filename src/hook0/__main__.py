"""Entry point for running the delivery engine as a module.

Usage:
    python -m hook0 run --concurrency 4
"""

from .cli import main

if __name__ == "__main__":
    main()
