"""
Loguru setup for the harness.

Records go to stderr at the configured level. Debug scopes open up DEBUG
records for selected modules only, which is how a long run is diagnosed
without drowning in output from every replica. Soak runs last for days, so
an optional file sink rotates and prunes its own files.
"""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from loguru import logger

PACKAGE = "chaoskv"

DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)

type RecordFilter = Callable[[dict[str, Any]], bool]


def normalize_scopes(debug_scopes: Iterable[str]) -> tuple[str, ...]:
    """Module prefixes for ``debug_scopes``.

    A short scope such as ``harness.faults`` matches both as written and
    under the package, so ``chaoskv.harness.faults`` is covered too.
    """
    prefixes: list[str] = []
    for scope in debug_scopes:
        scope = scope.strip()
        if not scope:
            continue
        prefixes.append(scope)
        if not scope.startswith(f"{PACKAGE}."):
            prefixes.append(f"{PACKAGE}.{scope}")
    return tuple(dict.fromkeys(prefixes))


def scope_filter(prefixes: tuple[str, ...]) -> RecordFilter:
    def _in_scope(record: dict[str, Any]) -> bool:
        return record["level"].name == "DEBUG" and record["name"].startswith(
            prefixes
        )

    return _in_scope


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
    log_file: Path | None = None,
    rotation: str = "100 MB",
    retention: int = 10,
) -> tuple[int, ...]:
    """Replace every loguru handler; returns the ids of the new ones.

    The file sink, when given, receives what stderr does plus the scoped
    DEBUG records, rotating at ``rotation`` and keeping ``retention`` files.
    """
    logger.remove()
    level = level.upper()
    # At DEBUG every record is already emitted
    prefixes = normalize_scopes(debug_scopes) if level != "DEBUG" else ()
    in_scope = scope_filter(prefixes)

    handler_ids = [
        logger.add(
            sys.stderr, level=level, format=DEFAULT_LOG_FORMAT, colorize=colorize
        )
    ]
    if prefixes:
        handler_ids.append(
            logger.add(
                sys.stderr,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=in_scope,
            )
        )

    if log_file is not None:
        threshold = logger.level(level).no

        def _file_filter(record: dict[str, Any]) -> bool:
            return record["level"].no >= threshold or in_scope(record)

        handler_ids.append(
            logger.add(
                log_file,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                filter=_file_filter,
                rotation=rotation,
                retention=retention,
                enqueue=True,
            )
        )
    return tuple(handler_ids)
