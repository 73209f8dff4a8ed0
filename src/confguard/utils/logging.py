"""structlog configuration for confguard.

The CLI calls ``configure_logging`` once; library code only ever calls
``structlog.get_logger()`` and works with whatever configuration is active.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, TextIO

import structlog

__all__ = ["configure_logging"]


def _file_sink(log_file: TextIO) -> Any:
    """Processor appending each event as one JSON line to ``log_file``."""
    renderer = structlog.processors.JSONRenderer()

    def processor(logger: Any, method_name: str, event_dict: Any) -> Any:
        log_file.write(renderer(logger, method_name, dict(event_dict)) + "\n")
        log_file.flush()
        return event_dict

    return processor


def configure_logging(log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure structlog for CLI use.

    Console output goes to stderr so ``--json`` output on stdout stays clean.

    Args:
        log_file: Optional path; events are appended as JSON lines
        verbose: Emit debug-level events
    """
    level = logging.DEBUG if verbose else logging.INFO
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        sink = open(log_file, "a", encoding="utf-8")  # noqa: SIM115
        processors.append(_file_sink(sink))

    processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=False,
    )
