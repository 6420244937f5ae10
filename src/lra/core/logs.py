from __future__ import annotations

import logging
import os
import sys

from lra.core import config as config_core

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_LEVEL = "WARNING"


def _configured_level() -> str:
    try:
        return config_core.get_str("logging", "level", default=DEFAULT_LEVEL)
    except ValueError:
        # A broken config file is reported by the command that reads it.
        return DEFAULT_LEVEL


def resolve_level(cli_value: str | None = None) -> int:
    name = cli_value or os.environ.get("LRA_LOG_LEVEL") or _configured_level()
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


def configure(cli_value: str | None = None) -> None:
    """Send `lra.*` logs to stderr; stdout carries only JSON envelopes."""
    root = logging.getLogger("lra")
    root.setLevel(resolve_level(cli_value))
    if not any(getattr(h, "_lra_handler", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._lra_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.propagate = False
