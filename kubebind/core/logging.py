"""Central logging configuration helpers for kubebind."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterable
from typing import Any, TextIO, TypeAlias

from loguru import logger

DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)

RecordFilter: TypeAlias = Callable[[dict[str, Any]], bool]


def _in_scope(module: str, scope: str) -> bool:
    """``bindings.poller`` is shorthand for ``kubebind.bindings.poller``."""
    if module.startswith(scope):
        return True
    return not scope.startswith("kubebind.") and module.startswith(f"kubebind.{scope}")


def debug_scope_filter(scopes: Iterable[str]) -> RecordFilter:
    """Build a loguru filter passing only DEBUG records from modules in ``scopes``."""
    wanted = tuple(s.strip() for s in scopes if s.strip())

    def _filter(record: dict[str, Any]) -> bool:
        if record["level"].name != "DEBUG":
            return False
        module = record.get("name") or ""
        return any(_in_scope(module, scope) for scope in wanted)

    return _filter


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
    sink: TextIO | None = None,
) -> tuple[int, ...]:
    """Replace loguru's handlers with kubebind's.

    Records at ``level`` and above go to ``sink`` (stderr by default). With
    ``debug_scopes`` a second handler lets DEBUG records of just those
    modules through while the global level stays higher. Returns the
    handler ids.
    """
    out = sink if sink is not None else sys.stderr
    logger.remove()

    handler_ids = [logger.add(out, level=level, format=DEFAULT_LOG_FORMAT, colorize=colorize)]

    scopes = [s for s in debug_scopes if s.strip()]
    if scopes and level.upper() != "DEBUG":
        handler_ids.append(
            logger.add(
                out,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=debug_scope_filter(scopes),
            )
        )

    return tuple(handler_ids)
