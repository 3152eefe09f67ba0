# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Identifier allocation for new notes and cards."""

from __future__ import annotations

import random
import string
import time
from typing import Callable, Optional

_BASE91_TABLE = string.ascii_letters + string.digits + "!#$%&()*+,-./:;<=>?@[]^_`{|}~"


def int_time_ms() -> int:
    return int(time.time() * 1000)


def _base91(num: int) -> str:
    buf = ""
    table_len = len(_BASE91_TABLE)
    while num:
        num, mod = divmod(num, table_len)
        buf = _BASE91_TABLE[mod] + buf
    return buf or _BASE91_TABLE[0]


def guid64() -> str:
    """Return a random 64-bit note guid encoded in base 91 (~10 chars)."""
    return _base91(random.getrandbits(64))


class IdAllocator:
    """
    Hands out millisecond-timestamp ids that are strictly increasing.

    The watermark lives on the instance; callers should `observe()` the
    highest id already stored in the collection before allocating, so new
    ids never collide with existing notes or cards.

    Usage:
        ids = IdAllocator()
        ids.observe(store.max_id())
        note_id = ids.next_id()
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or int_time_ms
        self._last = 0

    @property
    def last_allocated(self) -> int:
        return self._last

    def observe(self, existing_max: int) -> None:
        """Raise the watermark to `max(existing_max, now)`."""
        self._last = max(self._last, existing_max or 0, self._clock())

    def next_id(self) -> int:
        next_id = max(self._clock(), self._last + 1)
        self._last = next_id
        return next_id
