"""
Utility functions for the flow automation engine.

Includes:
- UTC datetime helpers
- Identifier generation
- Opaque cursor pagination helpers
"""

import base64
import binascii
import uuid
from datetime import datetime, timezone
from typing import Optional

from core.exceptions import ValidationError


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to an aware UTC value.

    SQLite hands timestamps back without tzinfo; those are taken as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def duration_ms(started_at: datetime, completed_at: datetime) -> int:
    """Milliseconds elapsed between two timestamps."""
    return int((ensure_utc(completed_at) - ensure_utc(started_at)).total_seconds() * 1000)


def new_id() -> str:
    """Generate a new identifier for executions, checkpoints and errors."""
    return str(uuid.uuid4())


def encode_cursor(offset: int) -> str:
    """
    Encode a list offset into an opaque cursor string.

    Args:
        offset: Position of the first item of the next page

    Returns:
        URL-safe cursor
    """
    return base64.urlsafe_b64encode(f"o:{offset}".encode()).decode().rstrip("=")


def decode_cursor(cursor: Optional[str]) -> int:
    """
    Decode a cursor produced by :func:`encode_cursor`.

    Args:
        cursor: Cursor string, or None for the first page

    Returns:
        Offset of the first item to return

    Raises:
        ValidationError: If the cursor was not produced by this service
    """
    if not cursor:
        return 0
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValidationError(f"Invalid cursor: {cursor}") from exc
    if not raw.startswith("o:") or not raw[2:].isdigit():
        raise ValidationError(f"Invalid cursor: {cursor}")
    return int(raw[2:])
