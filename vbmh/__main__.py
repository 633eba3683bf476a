"""Allow ``python -m vbmh``."""

from vbmh.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
