"""Logging setup for clouds nodes.

Every record carries the id of the node that produced it in
``extra["node"]``. ``CloudsServer.start`` binds it with
``logger.contextualize`` so the listener, heartbeat and call tasks all
inherit it; records logged outside a node show ``-``.

Debug output can be opened for single modules without lowering the
global level:

    CLOUDS_LOG_LEVEL=INFO CLOUDS_DEBUG_SCOPES='["dispatcher"]' clouds serve

A scope matches a module path prefix, either in full
(``clouds.core.dispatcher``) or relative to the package (``dispatcher``,
``server``).
"""

from __future__ import annotations

import sys
from collections.abc import Iterable
from typing import Any, TextIO

from loguru import logger

from clouds.core.config import CloudsSettings

NO_NODE = "-"

DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[node]} | "
    "{name}:{function}:{line} - {message}"
)

PACKAGE_PREFIXES = ("clouds.", "clouds.core.")


def scope_prefixes(scopes: Iterable[str]) -> tuple[str, ...]:
    """Expand debug scopes into the module prefixes they select."""
    prefixes: list[str] = []
    for scope in scopes:
        scope = scope.strip()
        if not scope:
            continue
        prefixes.append(scope)
        if not scope.startswith("clouds"):
            prefixes.extend(package + scope for package in PACKAGE_PREFIXES)
    return tuple(prefixes)


def configure_logging(
    settings: CloudsSettings,
    *,
    sink: TextIO = sys.stderr,
    colorize: bool = False,
) -> tuple[int, ...]:
    """Replace loguru's handlers with the ones ``settings`` asks for.

    Returns the ids of the added handlers.
    """
    logger.remove()
    logger.configure(extra={"node": NO_NODE})

    level = settings.log_level.upper()
    handler_ids = [
        logger.add(sink, level=level, format=DEFAULT_LOG_FORMAT, colorize=colorize)
    ]

    prefixes = scope_prefixes(settings.debug_scopes)
    if prefixes and level != "DEBUG":

        def debug_filter(record: dict[str, Any]) -> bool:
            return record["level"].name == "DEBUG" and any(
                record["name"].startswith(prefix) for prefix in prefixes
            )

        handler_ids.append(
            logger.add(
                sink,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=debug_filter,
            )
        )

    return tuple(handler_ids)
