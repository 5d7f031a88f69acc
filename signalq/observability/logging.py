from __future__ import annotations

import logging
import os
from typing import Final

_HANDLER_ATTACHED: bool = False
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_QUIET_LIBRARIES: Final[tuple[str, ...]] = ("urllib3", "slack_sdk", "google", "redis")


def _resolve_level(level_name: str | None = None) -> int:
    """SIGNALQ_LOG_LEVEL wins over the generic LOG_LEVEL."""
    name = level_name or os.getenv("SIGNALQ_LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")
    return getattr(logging, name.upper(), logging.INFO)


def _attach_root_handler(level: int) -> None:
    global _HANDLER_ATTACHED

    root = logging.getLogger()
    if not _HANDLER_ATTACHED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
        for noisy in _QUIET_LIBRARIES:
            logging.getLogger(noisy).setLevel(logging.WARNING)
        _HANDLER_ATTACHED = True
    root.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; the first call installs the shared stream handler."""
    level = _resolve_level()
    _attach_root_handler(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger


def set_log_level(level_name: str) -> int:
    """Re-level every signalq logger at runtime (used by the bootstrap)."""
    level = _resolve_level(level_name)
    _attach_root_handler(level)
    for name, existing in logging.root.manager.loggerDict.items():
        if name.startswith("signalq") and isinstance(existing, logging.Logger):
            existing.setLevel(level)
    return level
