"""loguru sinks for cloudrig.

The package logs through loguru and stays silent (``logger.disable``) until
a front end calls ``setup_logging``. Records carry a ``component`` extra
naming the part of the rig that emitted them. Each module binds its own,
so the host application's global extras are left alone.

Example:
    from cloudrig.logging import LogConfig, setup_logging, teardown_logging

    sinks = setup_logging(LogConfig(level="DEBUG", file="cloudrig.log"))
    ...
    teardown_logging(sinks)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from loguru import logger

logger.disable("cloudrig")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

STDERR_FORMAT = (
    "<dim>{time:HH:mm:ss}</dim> "
    "<level>{level:<7}</level> "
    "<magenta>[{extra[component]}]</magenta> {message}"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} {level:<7} [{extra[component]}] {name}:{line} {message}"


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Where cloudrig's records go.

    ``file`` receives everything from DEBUG up, whatever ``level`` says.
    """

    level: LogLevel = "INFO"
    console: bool = True
    file: str | Path | None = None
    rotation: str = "10 MB"
    retention: int = 5


def setup_logging(config: LogConfig) -> list[int]:
    """Enable cloudrig's records and add the configured sinks.

    Returns:
        Sink ids, for ``teardown_logging``.
    """
    logger.enable("cloudrig")

    sinks: list[int] = []
    if config.console:
        sinks.append(logger.add(
            sys.stderr,
            level=config.level,
            format=STDERR_FORMAT,
            filter="cloudrig",
        ))
    if config.file is not None:
        sinks.append(logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            filter="cloudrig",
            rotation=config.rotation,
            retention=config.retention,
            diagnose=False,
            enqueue=True,
        ))
    return sinks


def teardown_logging(sinks: list[int]) -> None:
    for sink in sinks:
        logger.remove(sink)
    logger.disable("cloudrig")
