from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

from pythonjsonlogger.json import JsonFormatter


# Connection id of the websocket whose event is being handled
connection_id_ctx: ContextVar[str | None] = ContextVar("connection_id", default=None)

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class GatewayJsonFormatter(JsonFormatter):
    """JSON lines with ISO-8601 ``ts``, ``level`` and the current ``connection_id``."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname
        if "connection_id" not in log_record:
            connection_id = connection_id_ctx.get()
            if connection_id:
                log_record["connection_id"] = connection_id


def setup_logging(log_level: str = "INFO", *, json_lines: bool = True) -> logging.Logger:
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    if json_lines:
        handler.setFormatter(GatewayJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
    logger.addHandler(handler)

    # aiohttp access lines duplicate what the router already logs
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return logger
