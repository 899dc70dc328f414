"""Application logging configuration helpers."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from sys import stdout
from typing import Any

from loguru import logger

from crm.core.config import settings

request_id_ctx_var: ContextVar[str] = ContextVar("request_id", default="-")
user_code_ctx_var: ContextVar[str] = ContextVar("user_code", default="-")


def _patch_record(record: dict[str, Any]) -> None:
    record["extra"].setdefault("request_id", request_id_ctx_var.get())
    record["extra"].setdefault("user_code", user_code_ctx_var.get())


def setup_logging(level: str | None = None) -> None:
    """Install the JSON Loguru sink; ``level`` defaults to ``LOG_LEVEL``."""

    level = level or settings.LOG_LEVEL
    logging.basicConfig(level=logging.INFO)
    # passlib probes bcrypt's version on first use and logs a harmless traceback
    logging.getLogger("passlib.handlers.bcrypt").setLevel(logging.ERROR)
    logger.remove()
    logger.configure(patcher=_patch_record)
    logger.add(
        stdout,
        level=level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        serialize=True,
    )
