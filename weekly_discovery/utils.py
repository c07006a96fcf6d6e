from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
import time
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

from .errors import StageTimeout


WEEK_LABEL_RE = re.compile(r"^(\d{4})-W(\d{1,2})$")

# Public suffixes that take an extra label before the registrable name.
MULTI_PART_SUFFIXES = {
    "co.uk",
    "org.uk",
    "ac.uk",
    "gov.uk",
    "com.au",
    "net.au",
    "co.nz",
    "co.jp",
    "co.in",
    "com.br",
    "com.cn",
    "com.hk",
    "com.sg",
    "co.za",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def normalize_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def url_hash(url: str) -> str:
    return hashlib.sha256((url or "").encode("utf-8")).hexdigest()[:16]


def content_hash(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]


def extract_domain(url: str) -> str:
    """Registrable domain of a URL: lowercase host without www and subdomains."""
    parsed = urlparse(url or "")
    host = (parsed.hostname or "").lower().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    labels = [label for label in host.split(".") if label]
    if len(labels) <= 2:
        return ".".join(labels)
    if ".".join(labels[-2:]) in MULTI_PART_SUFFIXES:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


def domain_matches(domain: str, candidates: list[str]) -> bool:
    normalized = (domain or "").lower()
    if normalized.startswith("www."):
        normalized = normalized[4:]
    return any(normalized == item or normalized.endswith(f".{item}") for item in candidates)


def normalize_title(title: str) -> str:
    lowered = (title or "").lower()
    stripped = re.sub(r"[^\w\s]", "", lowered)
    return normalize_whitespace(stripped)


def title_similarity(first: str, second: str) -> float:
    words_a = set(normalize_title(first).split())
    words_b = set(normalize_title(second).split())
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def count_words(text: str) -> int:
    return len((text or "").split())


def safe_sentence(text: str, max_chars: int = 220) -> str:
    cleaned = normalize_whitespace(text)
    if len(cleaned) <= max_chars:
        return cleaned
    truncated = cleaned[: max_chars - 1]
    period_idx = truncated.rfind(".")
    if period_idx > 80:
        return truncated[: period_idx + 1]
    return truncated + "..."


def parse_published(value: str | None, now: datetime | None = None) -> tuple[str | None, bool]:
    """Return (iso date, invalid flag). Future dates beyond one day count as invalid."""
    if not value:
        return None, False
    if now is None:
        now = datetime.now(timezone.utc)
    try:
        parsed = date_parser.parse(str(value))
    except (ValueError, TypeError, OverflowError):
        return str(value), True
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    parsed = parsed.astimezone(timezone.utc)
    if parsed - now > timedelta(days=1):
        return parsed.isoformat(), True
    return parsed.isoformat(), False


# ****************************************************************************************
# Week labels
# ****************************************************************************************


def parse_week_label(label: str) -> tuple[int, int]:
    match = WEEK_LABEL_RE.match(label or "")
    if not match:
        raise ValueError(f"Invalid week format: {label}. Expected YYYY-W## (e.g. 2026-W01)")
    year, week = int(match.group(1)), int(match.group(2))
    date.fromisocalendar(year, week, 1)
    return year, week


def format_week_label(year: int, week: int) -> str:
    return f"{year}-W{week:02d}"


def current_week_label(tz_name: str = "Europe/Copenhagen") -> str:
    year, week, _ = datetime.now(ZoneInfo(tz_name)).isocalendar()
    return format_week_label(year, week)


def previous_week_label(label: str) -> str:
    year, week = parse_week_label(label)
    monday = date.fromisocalendar(year, week, 1) - timedelta(days=7)
    prev_year, prev_week, _ = monday.isocalendar()
    return format_week_label(prev_year, prev_week)


# ****************************************************************************************
# Files
# ****************************************************************************************


def write_json_atomic(path: str | Path, payload: Any) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_text_atomic(path: str | Path, text: str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_json(path: str | Path, default: Any = None) -> Any:
    target = Path(path)
    if not target.exists():
        return default
    try:
        with target.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, ValueError):
        return default


class Deadline:
    """Wall-clock budget for one unit of work; nested calls share the remainder."""

    def __init__(self, seconds: float, label: str = "operation"):
        self.label = label
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(self) -> None:
        if self.expired():
            raise StageTimeout(f"{self.label} exceeded {self.seconds:.0f}s")

    def bound(self, timeout: float) -> float:
        self.check()
        return min(timeout, self.remaining())
