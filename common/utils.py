from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import quote
import time
import unicodedata


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def key_timestamp() -> str:
    """iso_now_ms() with ':' and '.' replaced so it is safe inside object keys."""
    return iso_now_ms().replace(":", "-").replace(".", "-")


def safe_file_name(name: str) -> str:
    """
    Strip accents (NFD + drop combining marks) and percent-encode what is left,
    so arbitrary user file names become safe storage-key components.
    """
    base = name.replace("\\", "/").split("/")[-1] or "file"
    decomposed = unicodedata.normalize("NFD", base)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return quote(stripped, safe="-_.~")


def clamp(v: float, lo: float, hi: float) -> float:
    return float(min(hi, max(lo, v)))


def elapsed_ms(t0: float) -> int:
    """Milliseconds since a time.perf_counter() mark."""
    return int(1000.0 * (time.perf_counter() - t0))
