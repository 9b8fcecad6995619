"""Logging bootstrap for host processes embedding the RAG core."""

from __future__ import annotations

import logging

from workshop_rag.core.config import Settings, get_settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=_FORMAT)
    logging.getLogger("workshop_rag").setLevel(level)
    # httpx logs every OpenAI request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
