"""patternmem - a bounded, deduplicated, scored memory of work-session patterns.

The engine ingests short observations distilled from work sessions and keeps
the most valuable, non-redundant subset of them on disk, ready to be handed
to future sessions.

Exports:
    __version__: Package version string.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
