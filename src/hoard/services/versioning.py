"""Version ordering.

Versions are opaque strings; they are compared segment by segment, numeric
segments numerically. Within a segment position a number outranks the end of
the version, which outranks a word, so::

    1.9.0 < 1.10.0 < 2.0.0-beta < 2.0.0 < 2.0.0.1
"""

import re

_SEGMENT = re.compile(r"\d+|[A-Za-z]+")

_WORD = 0
_END = 1
_NUMBER = 2


def version_key(version: str) -> tuple:
    """Sort key for *version*."""
    text = version.strip()
    if text[:1] in ("v", "V") and text[1:2].isdigit():
        text = text[1:]

    key: list[tuple] = []
    for segment in _SEGMENT.findall(text):
        if segment.isdigit():
            key.append((_NUMBER, int(segment), ""))
        else:
            key.append((_WORD, 0, segment.lower()))
    key.append((_END, 0, ""))
    return tuple(key)


def is_newer(candidate: str, current: str) -> bool:
    return version_key(candidate) > version_key(current)
