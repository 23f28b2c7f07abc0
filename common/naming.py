"""Storage-safe identifiers built from a visitor nickname and the booth clock."""
import re
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Optional

from common.config import CLOCK_UTC_OFFSET_HOURS

PLACEHOLDER = "guest"

_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>|]')
_WHITESPACE = re.compile(r"\s+")


def booth_timezone(offset_hours: float = CLOCK_UTC_OFFSET_HOURS) -> timezone:
    return timezone(timedelta(hours=offset_hours))


def sanitize_label(raw_label: Optional[str]) -> str:
    """Reduce free text to ASCII that is safe inside a storage path.

    Nicknames are often Korean; those characters are dropped entirely, so the
    result falls back to the placeholder when nothing ASCII is left.
    """
    text = unicodedata.normalize("NFKD", raw_label or "")
    text = text.encode("ascii", "ignore").decode("ascii")
    text = _UNSAFE_CHARS.sub("", text)
    # control characters other than whitespace are removed; whitespace becomes "_" below
    text = "".join(ch for ch in text if ch.isprintable() or ch.isspace())
    text = _WHITESPACE.sub("_", text.strip())
    return text or PLACEHOLDER


def time_tag(now: Optional[datetime] = None, offset_hours: float = CLOCK_UTC_OFFSET_HOURS) -> str:
    """HHMMSS on the booth clock. Naive datetimes are taken as UTC."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(booth_timezone(offset_hours)).strftime("%H%M%S")


def make_identifier(raw_label: Optional[str], now: Optional[datetime] = None) -> str:
    return f"{sanitize_label(raw_label)}_{time_tag(now)}"
