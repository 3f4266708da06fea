import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Tuple

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def now_epoch() -> int:
    return int(time.time())


def format_epoch(ts: int, fmt: str = DATE_FORMAT) -> str:
    """Format epoch seconds as UTC."""
    return datetime.fromtimestamp(ts, timezone.utc).strftime(fmt)


def parse_param(s: str) -> Tuple[str, Any]:
    """
    Parse 'key=value'. The value is read as JSON when it parses
    ('n=3', 'flag=true', 'ids=[1,2]'), otherwise kept as a plain string.
    """
    key, sep, raw = s.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValueError(f"Invalid parameter {s!r}, expected key=value")
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw
    return key, value


def parse_params(items: Iterable[str]) -> Dict[str, Any]:
    return dict(parse_param(i) for i in items)
