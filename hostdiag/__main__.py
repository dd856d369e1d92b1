"""Module entry-point for ``python -m hostdiag``."""

from __future__ import annotations

from hostdiag.main import main

if __name__ == "__main__":
    main()
