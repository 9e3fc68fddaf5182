"""Allow running sassbridge as a module with python -m sassbridge."""

from .cli import main

if __name__ == "__main__":
    import sys

    sys.exit(main())
