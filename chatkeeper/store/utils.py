from __future__ import annotations

import datetime as dt
import gzip

ENCODING_PLAIN = "plain"
ENCODING_GZIP = "gzip"


def now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def parse_iso8601(value: str) -> dt.datetime | None:
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=dt.UTC)
        return parsed.astimezone(dt.UTC)
    except (ValueError, OverflowError):
        return None


def encode_content(text: str, *, compress: bool) -> tuple[bytes, str]:
    raw = text.encode("utf-8")
    if compress:
        return gzip.compress(raw, mtime=0), ENCODING_GZIP
    return raw, ENCODING_PLAIN


def decode_content(blob: bytes | str, encoding: str) -> str:
    if isinstance(blob, str):
        return blob
    if encoding == ENCODING_GZIP:
        return gzip.decompress(blob).decode("utf-8")
    return bytes(blob).decode("utf-8")
