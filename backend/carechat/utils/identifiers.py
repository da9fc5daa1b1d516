from __future__ import annotations

import os
import threading
import time
import uuid
from datetime import datetime, timezone

_lock = threading.Lock()
_last_ms = 0
_sequence = 0


def generate_uuid7() -> str:
    """
    Generate a UUIDv7 string that sorts strictly after every id this process
    generated before it.

    Layout:
    - 48-bit Unix timestamp in milliseconds
    - 4-bit version (0b0111)
    - 12-bit sequence counter (rand_a), reset to a random low value each ms
    - 2-bit variant + 62-bit randomness

    Within one millisecond the counter increments; if it overflows the
    timestamp is advanced by one millisecond instead of going backwards.
    """
    global _last_ms, _sequence

    with _lock:
        ts_ms = int(time.time() * 1000)
        if ts_ms > _last_ms:
            _last_ms = ts_ms
            _sequence = int.from_bytes(os.urandom(2), "big") & 0x01FF
        else:
            _sequence += 1
            if _sequence > 0x0FFF:
                _last_ms += 1
                _sequence = 0
        ts_ms, seq = _last_ms, _sequence

    tail = bytearray(os.urandom(8))
    tail[0] = (tail[0] & 0x3F) | 0x80
    raw = ts_ms.to_bytes(6, "big") + ((0x7 << 12) | seq).to_bytes(2, "big") + bytes(tail)
    return str(uuid.UUID(bytes=raw))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """sqlite hands timezone columns back naive; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
