"""Console output and logging for patternmem.

Engine modules only log, through ``get_logger(__name__)``. The CLI prints
results and errors on ``console``; log records go to stderr, so a piped
``patternmem export`` carries no log noise.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

APP_LOGGER = "patternmem"

console = Console()
stderr_console = Console(stderr=True)


def resolve_level(level: str | int, *, verbose: bool = False) -> int:
    """Numeric log level; ``verbose`` forces DEBUG and unknown names fall back to INFO."""
    if verbose:
        return logging.DEBUG
    if isinstance(level, int):
        return level
    return logging.getLevelNamesMapping().get(level.upper(), logging.INFO)


def setup_logging(level: str | int = logging.INFO, verbose: bool = False) -> logging.Logger:
    """Route all records through a single Rich handler on stderr.

    Safe to call repeatedly; previous handlers on the root logger are replaced.
    """
    numeric_level = resolve_level(level, verbose=verbose)

    handler = RichHandler(
        console=stderr_console,
        markup=False,
        rich_tracebacks=True,
        tracebacks_show_locals=False,
        show_path=verbose,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(numeric_level)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    root.addHandler(handler)

    # Records reach the handler through root propagation.
    engine_logger = logging.getLogger(APP_LOGGER)
    engine_logger.handlers.clear()
    engine_logger.setLevel(numeric_level)
    return engine_logger


def print_error(message: str) -> None:
    """Print an error line without interpreting markup in ``message``."""
    console.print(f"[red]{escape(message)}[/red]", highlight=False)


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or APP_LOGGER)


__all__ = [
    "APP_LOGGER",
    "console",
    "get_logger",
    "print_error",
    "resolve_level",
    "setup_logging",
    "stderr_console",
]
