"""
Logging setup for the relay process.

uvicorn is started with ``log_config=None`` so its access and error loggers
propagate into the root handler installed here.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: Union[int, str] = logging.INFO, format: Optional[str] = None) -> int:
    """
    Install a stdout handler on the root logger once and apply ``level``.

    Returns the numeric level that was applied.
    """

    numeric = resolve_level(level)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=numeric,
            format=format or DEFAULT_FORMAT,
            handlers=[logging.StreamHandler(sys.stdout)],
        )

    # Existing handlers are kept; only the relay's own verbosity follows the config.
    logging.getLogger("relay").setLevel(numeric)
    for name in SERVER_LOGGERS:
        logging.getLogger(name).setLevel(numeric)
    return numeric
