# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Field codec: packing a note's fields into the stored blob, and the values
derived from them (duplicate checksum, sort field).
"""

from __future__ import annotations

import hashlib
import html
import re
from typing import Iterable

from .errors import IllegalFieldContentError

FIELD_SEPARATOR = "\x1f"
SORT_FIELD_LEN = 256

_re_comment = re.compile(r"(?s)<!--.*?-->")
_re_style = re.compile(r"(?si)<style.*?>.*?</style>")
_re_script = re.compile(r"(?si)<script.*?>.*?</script>")
_re_tag = re.compile(r"(?s)<.*?>")
_re_media = re.compile(r"(?i)<img[^>]+src=[\"']?([^\"'>]+)[\"']?[^>]*>")
_re_whitespace = re.compile(r"\s+")


def join_fields(fields: Iterable[str]) -> str:
    """Join fields into the blob stored in `notes.flds`.

    Raises:
        IllegalFieldContentError: If a field contains the separator.
    """
    fields = list(fields)
    for index, value in enumerate(fields):
        if FIELD_SEPARATOR in value:
            raise IllegalFieldContentError(index)
    return FIELD_SEPARATOR.join(fields)


def split_fields(blob: str) -> list[str]:
    return blob.split(FIELD_SEPARATOR)


def strip_html(text: str) -> str:
    text = _re_comment.sub("", text)
    text = _re_style.sub("", text)
    text = _re_script.sub("", text)
    text = _re_tag.sub("", text)
    return html.unescape(text)


def strip_html_media(text: str) -> str:
    """Strip HTML but keep the file names of images."""
    return strip_html(_re_media.sub(r" \1 ", text))


def field_is_blank(text: str) -> bool:
    return not strip_html_media(text).replace("\u200b", "").strip()


def normalize_field(text: str) -> str:
    """Markup-stripped text with runs of whitespace collapsed."""
    return _re_whitespace.sub(" ", strip_html_media(text)).strip()


def field_checksum(text: str) -> int:
    """
    Checksum used by Anki's duplicate search: the first 32 bits of the SHA-1
    of the normalized text.
    """
    digest = hashlib.sha1(normalize_field(text).encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big")


def sort_field(text: str, max_len: int = SORT_FIELD_LEN) -> str:
    return strip_html_media(text)[:max_len]


def normalize_tags(tags: str | Iterable[str]) -> str:
    """Return tags in stored form: space-separated with a leading and
    trailing space, or an empty string when there are none."""
    if isinstance(tags, str):
        tags = [tags]
    seen: dict[str, str] = {}
    for chunk in tags:
        for tag in chunk.split():
            seen.setdefault(tag.lower(), tag)
    if not seen:
        return ""
    return " " + " ".join(sorted(seen.values(), key=str.lower)) + " "
