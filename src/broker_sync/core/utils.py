from __future__ import annotations

import dataclasses
import json
import logging
import sys
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, Sequence, TypeVar

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso_utc(raw: str | None) -> datetime | None:
    if not raw:
        return None
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def ensure_dir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size <= 0:
        raise ValueError("size must be > 0")
    for start in range(0, len(items), size):
        yield items[start : start + size]


def safe_json_dumps(obj: Any) -> str:
    def _default(o: Any) -> Any:
        if dataclasses.is_dataclass(o):
            return dataclasses.asdict(o)
        if isinstance(o, datetime):
            return iso_utc(o)
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, Enum):
            return o.value
        if hasattr(o, "model_dump"):
            return o.model_dump()
        if isinstance(o, Path):
            return str(o)
        return str(o)

    return json.dumps(obj, default=_default, ensure_ascii=False, separators=(",", ":"))


_RESERVED_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # extra={...} fields
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED_RECORD_KEYS:
                continue
            payload[key] = value
        return safe_json_dumps(payload)


def setup_logging(log_dir: str, level: str = "INFO", *, console: bool = True) -> None:
    ensure_dir(log_dir)
    level_num = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level_num)
    root.handlers.clear()

    human = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if console:
        stream = logging.StreamHandler(stream=sys.stderr)
        stream.setLevel(level_num)
        stream.setFormatter(human)
        root.addHandler(stream)

    text_handler = RotatingFileHandler(
        Path(log_dir) / "broker_sync.log", maxBytes=5_000_000, backupCount=5, encoding="utf-8"
    )
    text_handler.setLevel(level_num)
    text_handler.setFormatter(human)
    root.addHandler(text_handler)

    json_handler = RotatingFileHandler(
        Path(log_dir) / "broker_sync.jsonl", maxBytes=10_000_000, backupCount=3, encoding="utf-8"
    )
    json_handler.setLevel(level_num)
    json_handler.setFormatter(JsonFormatter())
    root.addHandler(json_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
