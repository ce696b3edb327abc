from __future__ import annotations

import json
import logging
import os
import sys
import time

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Per-logger defaults; `PINMAP_LOG_LEVELS` entries win.
DEFAULT_LOGGER_LEVELS = {
    "uvicorn.access": "WARNING",
    "httpx": "WARNING",
}


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:
      { "t": 1700000000000, "lvl": "INFO", "name": "engine.scheduler", "msg": "...", "fields": {...} }

    `fields` holds whatever the call site passed via `extra=` (pass kind, record
    counts, timings); values that aren't JSON-native are stringified.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        fields = {k: v for k, v in vars(record).items() if k not in _RESERVED}
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class _PinmapHandler(logging.StreamHandler):
    pass


def _level(name: str | None, fallback: int) -> int:
    lvl = logging.getLevelName((name or "").strip().upper())
    return lvl if isinstance(lvl, int) else fallback


def parse_logger_levels(raw: str | None) -> dict[str, int]:
    """
    `engine.loader=DEBUG,cache=warning` -> {"engine.loader": 10, "cache": 30}.

    Malformed entries are skipped.
    """
    out: dict[str, int] = {}
    for part in (raw or "").split(","):
        name, sep, lvl = part.partition("=")
        name = name.strip()
        if not sep or not name:
            continue
        value = logging.getLevelName(lvl.strip().upper())
        if isinstance(value, int):
            out[name] = value
    return out


def setup_logging(level: str | None = None) -> None:
    """
    Install the JSON handler on the root logger and apply per-logger levels.

    Root level precedence: explicit `level`, then env PINMAP_LOG_LEVEL, then LOG_LEVEL,
    then INFO. Calling it again replaces only the handler it installed earlier;
    handlers owned by others (test capture, uvicorn) are left alone.
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        if isinstance(h, _PinmapHandler):
            root.removeHandler(h)

    handler = _PinmapHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(
        _level(level or os.environ.get("PINMAP_LOG_LEVEL") or os.environ.get("LOG_LEVEL"), logging.INFO)
    )

    levels = {name: _level(lvl, logging.INFO) for name, lvl in DEFAULT_LOGGER_LEVELS.items()}
    levels.update(parse_logger_levels(os.environ.get("PINMAP_LOG_LEVELS")))
    for name, lvl in levels.items():
        logging.getLogger(name).setLevel(lvl)
