"""SchedIQ resource synchronization layer."""

from __future__ import annotations

__version__ = "0.1.0"


def main() -> None:
    from .server import main as _main

    _main()
