"""Loguru logging for unibroker.

The library logs through the shared loguru ``logger`` and stays silent until
the host application calls :func:`configure_logging` (or
``logger.enable("unibroker")`` with its own sinks).
"""

import logging
import sys
from inspect import currentframe

import typing as t
from loguru import logger

__all__ = ["InterceptHandler", "configure_logging", "get_logger", "logger"]

TRANSPORT_LOGGERS = ("aio_pika", "aiormq", "aiomqtt", "redis")

_FORMAT = (
    "<b><e>[</e> <w>{time:YYYY-MM-DD HH:mm:ss.SSS}</w> <e>]</e></b>"
    " <level>{level:>8}</level>"
    " <b>{extra[adapter]:>8}</b>"
    "  <level>{message}</level>"
)

logger.disable("unibroker")


class InterceptHandler(logging.Handler):
    """Handler to intercept standard library logging and route to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = (currentframe(), 0)
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).bind(
            adapter=record.name.split(".")[0],
        ).log(level, record.getMessage())


def configure_logging(
    level: str = "INFO",
    sink: t.Any = sys.stderr,
    intercept_transports: bool = True,
) -> int:
    """Enable unibroker logging on ``sink``.

    Returns the loguru handler id so callers can ``logger.remove()`` it.
    """
    logger.enable("unibroker")
    logger.configure(extra={"adapter": "core"})
    handler_id = logger.add(sink, level=level.upper(), format=_FORMAT)
    if intercept_transports:
        for name in TRANSPORT_LOGGERS:
            std_logger = logging.getLogger(name)
            std_logger.handlers = [InterceptHandler()]
            std_logger.propagate = False
    return handler_id


def get_logger(adapter: str) -> t.Any:
    return logger.bind(adapter=adapter)
