from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import os
import sys
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    parts = [f"event={event}"]
    for key, value in fields.items():
        parts.append(f"{key}={value}")
    logger.log(level, " ".join(parts))


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    """Root logging to stdout, plus a file when RT_LOG_FILE is set; safe to call repeatedly."""
    level = getattr(logging, os.environ.get("RT_LOG_LEVEL", default_level).upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    if not any(
        isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout
        for handler in root.handlers
    ):
        _add_handler(root, logging.StreamHandler(sys.stdout), level)
    log_path = os.environ.get("RT_LOG_FILE")
    if log_path and not any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_path)
        for handler in root.handlers
    ):
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        _add_handler(root, logging.FileHandler(log_path), level)
    return logging.getLogger(logger_name)


def _add_handler(root: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True)


def json_loads(raw: str | None, default: Any = None) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def new_id() -> str:
    return uuid4().hex


def normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date_value(value: Any) -> datetime | None:
    """Best-effort parse of feed, sitemap and listing dates into aware UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return normalize_datetime(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return normalize_datetime(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    try:
        return normalize_datetime(parsedate_to_datetime(text))
    except (TypeError, ValueError):
        pass
    for fmt in ("%d.%m.%Y", "%d.%m.%Y.", "%Y/%m/%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def utc_now_iso_offset(*, seconds: float) -> str:
    return (utc_now() + timedelta(seconds=seconds)).isoformat()
