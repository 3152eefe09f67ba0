# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
crAnki - add notes to an Anki collection file without running Anki.

Usage:
    from cranki import CollectionStore, CollectionWriter

    with CollectionStore.open("/path/to/collection.anki2") as store:
        model = store.find_model("Basic")
        deck = store.find_deck("Default")
        result = CollectionWriter(store).add_note(["Front", "Back"], model.id, deck.id)
        print(result.note_id, result.card_ids)
"""

from .cards import (
    CardGenerator,
    PositionCounter,
    make_template,
    parse_field_refs,
    parse_question,
)
from .collection import MAX_SCHEMA_VERSION, MIN_SCHEMA_VERSION, CollectionStore
from .errors import (
    BusyError,
    CollectionError,
    CollectionNotFoundError,
    EmptyNoteError,
    FieldCountMismatchError,
    IllegalFieldContentError,
    InvalidStateError,
    NotAValidCollectionError,
    StorageIOError,
    UnknownDeckError,
    UnknownModelError,
    UnsupportedSchemaVersionError,
)
from .fields import (
    FIELD_SEPARATOR,
    field_checksum,
    join_fields,
    sort_field,
    split_fields,
)
from .ids import IdAllocator, guid64
from .models import (
    AddNoteResult,
    Card,
    CollectionMeta,
    Deck,
    FieldRef,
    Note,
    NoteType,
    NoteTypeKind,
    Template,
)
from .writer import CollectionWriter, WriterState

__all__ = [
    # Storage
    "CollectionStore",
    "MIN_SCHEMA_VERSION",
    "MAX_SCHEMA_VERSION",
    # Records
    "AddNoteResult",
    "Card",
    "CollectionMeta",
    "Deck",
    "FieldRef",
    "Note",
    "NoteType",
    "NoteTypeKind",
    "Template",
    # Field codec
    "FIELD_SEPARATOR",
    "field_checksum",
    "join_fields",
    "sort_field",
    "split_fields",
    # Ids
    "IdAllocator",
    "guid64",
    # Cards
    "CardGenerator",
    "PositionCounter",
    "make_template",
    "parse_field_refs",
    "parse_question",
    # Writer
    "CollectionWriter",
    "WriterState",
    # Exceptions
    "CollectionError",
    "CollectionNotFoundError",
    "NotAValidCollectionError",
    "UnsupportedSchemaVersionError",
    "InvalidStateError",
    "UnknownModelError",
    "UnknownDeckError",
    "FieldCountMismatchError",
    "IllegalFieldContentError",
    "EmptyNoteError",
    "BusyError",
    "StorageIOError",
]

__version__ = "1.0.0"
