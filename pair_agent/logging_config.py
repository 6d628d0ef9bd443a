"""
Logging setup - structlog over stdlib logging, JSON lines written to a file

The terminal belongs to the conversation, so log records go to
~/.pair_agent/pair_agent.log (or $PAIR_AGENT_CONFIG_DIR) instead of stderr.
"""

from __future__ import annotations

import logging
from pathlib import Path

import structlog

LOG_FILE_NAME = "pair_agent.log"


def configure_logging(log_dir: str | Path, level: str = "INFO") -> Path:
    """Configure structlog once for the process; returns the log file path"""
    log_path = Path(log_dir) / LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # aiohttp is chatty at DEBUG
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return log_path
