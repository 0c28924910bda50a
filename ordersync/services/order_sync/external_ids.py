"""Helpers for upstream order ids.

External ids are stored as opaque strings. Anything that needs ordering
(cursor comparison, window bounds) goes through :func:`extract_numeric_id`.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Union

_DIGITS_RE = re.compile(r"\d+")


def extract_numeric_id(value: Union[str, int, None]) -> Optional[int]:
    """Return the numeric core of an external id, or None if it has none.

    >>> extract_numeric_id("20525")
    20525
    >>> extract_numeric_id("ALPH20525")
    20525
    >>> extract_numeric_id("ord-00123")
    123
    >>> extract_numeric_id("N/A") is None
    True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None

    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return int(text)

    # The last run of digits is the core ("ALPH-2024-00123" -> 123).
    runs = _DIGITS_RE.findall(text)
    if not runs:
        return None
    return int(runs[-1])


def normalize_external_id(value: Union[str, int]) -> str:
    return str(value).strip()


def lookup_keys(store_identifier: str, external_id: str) -> List[str]:
    """External id spellings that denote the same order within one store.

    Older imports stored ids prefixed with the store code ("ALPH20525")
    while the upstream reports the bare number ("20525").
    """
    keys = [external_id]
    core = extract_numeric_id(external_id)
    if core is None:
        return keys
    for candidate in (str(core), f"{store_identifier}{core}"):
        if candidate not in keys:
            keys.append(candidate)
    return keys


def max_external_id(values: Iterable[Optional[str]]) -> Optional[str]:
    """Return the id with the highest numeric core (ids without one are ignored)."""
    best: Optional[str] = None
    best_num: Optional[int] = None
    for value in values:
        num = extract_numeric_id(value)
        if num is None:
            continue
        if best_num is None or num > best_num:
            best, best_num = value, num
    return best
