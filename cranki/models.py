# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Records read from and written to a collection."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .fields import SORT_FIELD_LEN, field_checksum, join_fields, sort_field

# usn of rows that have not been sent to a sync server yet
USN_PENDING = -1

# Card type / queue of a card that has never been studied
CARD_TYPE_NEW = 0
QUEUE_NEW = 0


class NoteTypeKind(Enum):
    NORMAL = 0
    CLOZE = 1


@dataclass(frozen=True)
class FieldRef:
    """A field used by a question, with the sections enclosing it.

    The reference shows something only when every `required` field is
    non-blank and every `inverted` field is blank.
    """

    name: str
    required: tuple[str, ...] = ()
    inverted: tuple[str, ...] = ()


@dataclass(frozen=True)
class Template:
    """A card template.

    `condition_field` is set when the whole question is wrapped in a
    `{{#Field}}...{{/Field}}` section; `field_refs` lists the fields the
    question refers to. `guarded_refs` keeps the sections around each
    reference; when it is empty, `field_refs` are taken as unguarded.
    """

    name: str
    ordinal: int
    question_format: str = ""
    answer_format: str = ""
    deck_override: Optional[int] = None
    condition_field: Optional[str] = None
    field_refs: tuple[str, ...] = ()
    guarded_refs: tuple[FieldRef, ...] = ()


@dataclass
class NoteType:
    id: int
    name: str
    fields: list[str]
    templates: list[Template]
    kind: NoteTypeKind = NoteTypeKind.NORMAL
    sort_field_index: int = 0

    @property
    def is_cloze(self) -> bool:
        return self.kind == NoteTypeKind.CLOZE


@dataclass
class Deck:
    id: int
    name: str
    filtered: bool = False


@dataclass
class Note:
    """A note row. `sort_field` and `checksum` always follow `fields`."""

    id: int
    guid: str
    model_id: int
    fields: list[str]
    modified: int = 0
    usn: int = USN_PENDING
    tags: str = ""
    sort_field_index: int = 0
    flags: int = 0
    data: str = ""

    @property
    def joined_fields(self) -> str:
        return join_fields(self.fields)

    @property
    def sort_field(self) -> str:
        index = min(self.sort_field_index, len(self.fields) - 1)
        return sort_field(self.fields[index], SORT_FIELD_LEN)

    @property
    def checksum(self) -> int:
        return field_checksum(self.fields[0])


@dataclass
class Card:
    id: int
    note_id: int
    deck_id: int
    ordinal: int
    due: int
    modified: int = 0
    usn: int = USN_PENDING
    type: int = CARD_TYPE_NEW
    queue: int = QUEUE_NEW


@dataclass
class CollectionMeta:
    """Collection-level counters from the `col` row."""

    modified: int = 0
    schema: int = 0
    usn: int = 0
    version: int = 0


@dataclass
class AddNoteResult:
    note_id: int
    card_ids: list[int] = field(default_factory=list)
    duplicate_note_ids: list[int] = field(default_factory=list)
