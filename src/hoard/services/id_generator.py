"""Prefixed ID generation utility."""

import re
import uuid

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def generate_id(prefix: str) -> str:
    """Generate a prefixed unique ID.

    Args:
        prefix: The prefix (e.g., "fam_", "stg_").

    Returns:
        A string like "fam_a1b2c3d4e5f6a7b8".
    """
    short_uuid = uuid.uuid4().hex[:16]
    return f"{prefix}{short_uuid}"


def safe_name(text: str) -> str:
    """Reduce *text* to characters that are safe in a single path component."""
    cleaned = _UNSAFE.sub("_", text).strip("._")
    return cleaned or "package"
