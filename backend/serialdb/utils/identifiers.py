from __future__ import annotations

import os
import random
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

SERIAL_BLOCK_ALPHABET = string.ascii_uppercase + string.digits


def generate_uuid7() -> str:
    """
    Generate a UUIDv7 string (time-ordered).

    Used as the event id so replay cursors sort by publish time.
    """
    ts_ms = int(time.time() * 1000)
    raw = bytearray(ts_ms.to_bytes(6, "big", signed=False) + os.urandom(10))
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


def random_block(length: int = 8) -> str:
    """Return a random string of uppercase letters and digits."""
    return "".join(random.choices(SERIAL_BLOCK_ALPHABET, k=length))


def serial_prefix(stock_id: str) -> str:
    """First three alphanumeric characters of the stock code, upper-cased."""
    cleaned = "".join(ch for ch in (stock_id or "") if ch.isascii() and ch.isalnum())
    return cleaned[:3].upper()


def build_serial(stock_id: str, *, now: Optional[datetime] = None, block_length: int = 8) -> str:
    """
    Candidate serial like 'LAP-261019-7K2Q9ZXA'.

    The prefix is dropped when the stock code has no alphanumeric characters.
    """
    now = now or datetime.now(timezone.utc)
    body = f"{now:%y%m%d}-{random_block(block_length)}"
    prefix = serial_prefix(stock_id)
    if prefix:
        return f"{prefix}-{body}"
    return body
