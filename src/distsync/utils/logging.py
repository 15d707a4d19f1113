"""Logging helpers shared by adapters, handles and the runtime."""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from rich.logging import RichHandler


_ROOT = "distsync"


def _resolve_level(level: Optional[int]) -> int:
    if level is not None:
        return level
    raw = os.getenv("DISTSYNC_LOG_LEVEL", "INFO").strip().upper()
    resolved = logging.getLevelName(raw)
    return resolved if isinstance(resolved, int) else logging.INFO


def get_logger(name: str, level: Optional[int] = None, *, rich: bool = True) -> logging.Logger:
    """Return a logger under the ``distsync`` hierarchy.

    Handlers are attached once to the package root logger; child loggers
    propagate to it, so repeated calls never stack handlers.
    """
    root = logging.getLogger(_ROOT)
    if not root.handlers:
        resolved = _resolve_level(level)
        root.setLevel(resolved)

        if rich:
            handler: logging.Handler = RichHandler(
                level=resolved,
                markup=False,
                rich_tracebacks=True,
                tracebacks_show_locals=False,
                show_time=True,
                show_path=False,
            )
        else:
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(resolved)

        formatter = logging.Formatter(
            "%(asctime)s %(name)s %(levelname)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.propagate = False

    if name == _ROOT or name.startswith(_ROOT + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT}.{name}")
