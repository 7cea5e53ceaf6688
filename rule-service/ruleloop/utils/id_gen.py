import uuid
import secrets
from typing import Optional

from .time import now_ms


_ULID_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_uuid4() -> str:
    """Generate a UUIDv4 string."""
    return str(uuid.uuid4())


def generate_ulid(timestamp_ms: Optional[int] = None) -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    Format: 26 characters (timestamp 10 + random 16)
    Snapshot and rule version ids use ULIDs so that lexical order
    matches creation order.
    """
    if timestamp_ms is None:
        timestamp_ms = now_ms()

    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(_ULID_ALPHABET[timestamp_ms % 32])
        timestamp_ms //= 32
    timestamp_chars.reverse()

    random_bits = secrets.randbits(80)
    random_chars = []
    for _ in range(16):
        random_chars.append(_ULID_ALPHABET[random_bits % 32])
        random_bits //= 32

    return ''.join(timestamp_chars) + ''.join(random_chars)


def validate_ulid(value: str) -> bool:
    """Return True if value has ULID shape."""
    if len(value) != 26:
        return False

    valid_chars = set(_ULID_ALPHABET)
    return all(c in valid_chars for c in value.upper())


def generate_version_id() -> str:
    """Rule version id: ``rv-<ulid>``."""
    return f"rv-{generate_ulid()}"


def generate_snapshot_id() -> str:
    """Consolidation snapshot id: ``snap-<ulid>``."""
    return f"snap-{generate_ulid()}"
