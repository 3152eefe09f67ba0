# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
CollectionWriter - adds one note, and its cards, to a collection.

An add either commits completely (note row, card rows, new-card position,
tags and the collection's usn/mtime) or leaves the file unchanged.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .cards import CardGenerator, PositionCounter
from .collection import CollectionStore
from .errors import BusyError, FieldCountMismatchError, UnknownDeckError
from .fields import join_fields, normalize_field, normalize_tags, split_fields
from .ids import IdAllocator, guid64, int_time_ms
from .models import AddNoteResult, Deck, Note, NoteType, Template

logger = logging.getLogger(__name__)

BUSY_RETRY_ATTEMPTS = 5
BUSY_RETRY_MIN_WAIT = 0.05
BUSY_RETRY_MAX_WAIT = 2.0


class WriterState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    WRITING = "writing"
    COMMITTED = "committed"
    ABORTED = "aborted"


class CollectionWriter:
    """
    Adds notes to an open collection.

    Usage:
        with CollectionStore.open(path) as store:
            writer = CollectionWriter(store)
            result = writer.add_note(["Capital of France", "Paris"], model_id, deck_id)
            print(result.note_id, result.card_ids)

    The writer keeps one IdAllocator for its lifetime, so ids handed out by
    successive adds keep increasing.
    """

    def __init__(
        self,
        store: CollectionStore,
        allocator: Optional[IdAllocator] = None,
        busy_retries: int = BUSY_RETRY_ATTEMPTS,
        busy_wait_min: float = BUSY_RETRY_MIN_WAIT,
        busy_wait_max: float = BUSY_RETRY_MAX_WAIT,
    ):
        self.store = store
        self.allocator = allocator or IdAllocator()
        self.generator = CardGenerator(self.allocator)
        self.busy_retries = busy_retries
        self.busy_wait_min = busy_wait_min
        self.busy_wait_max = busy_wait_max
        self.state = WriterState.IDLE

    def add_note(
        self,
        fields: list[str],
        model_id: int,
        deck_id: int,
        tags: str | Iterable[str] = "",
    ) -> AddNoteResult:
        """
        Add a note built from `fields` to the collection.

        Args:
            fields: Field values, in the note type's field order.
            model_id: Id of the note type.
            deck_id: Id of the deck new cards go to (unless a template
                     overrides it).
            tags: Tags for the note, as a space-separated string or a list.

        Returns:
            The new note id, its card ids, and ids of existing notes whose
            first field looks the same (duplicates are not rejected).

        Raises:
            UnknownModelError, UnknownDeckError: Bad model or deck id.
            FieldCountMismatchError: Wrong number of fields.
            IllegalFieldContentError: A field contains the field separator.
            EmptyNoteError: No template would produce a card.
            BusyError: The collection stayed locked through every retry.
            StorageIOError: The database failed; nothing was written.
        """
        self.state = WriterState.VALIDATING
        try:
            note_type, deck = self._load(model_id, deck_id)
            note, templates = self._validate(list(fields), note_type, tags)

            self.state = WriterState.WRITING
            result = self._write_with_retry(note, deck, templates)
        except BaseException:
            self.state = WriterState.ABORTED
            raise

        self.state = WriterState.COMMITTED
        logger.info(
            "Added note %d with %d card(s) to deck %d",
            result.note_id,
            len(result.card_ids),
            deck.id,
        )
        return result

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _load(self, model_id: int, deck_id: int) -> tuple[NoteType, Deck]:
        note_type = self.store.read_model(model_id)
        deck = self.store.read_deck(deck_id)
        if deck.filtered:
            raise UnknownDeckError(
                deck.id, reason="is a filtered deck and cannot receive new cards"
            )
        return note_type, deck

    def _validate(
        self, fields: list[str], note_type: NoteType, tags: str | Iterable[str]
    ) -> tuple[Note, list[Template]]:
        if len(fields) != len(note_type.fields):
            raise FieldCountMismatchError(
                note_type.name, len(note_type.fields), len(fields)
            )
        join_fields(fields)

        # ids and mtimes are filled in once the write lock is held
        note = Note(
            id=0,
            guid=guid64(),
            model_id=note_type.id,
            fields=fields,
            tags=normalize_tags(tags),
            sort_field_index=note_type.sort_field_index,
        )
        templates = self.generator.renderable_templates(note, note_type)
        return note, templates

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    def _write_with_retry(
        self, note: Note, deck: Deck, templates: list[Template]
    ) -> AddNoteResult:
        retrying = Retrying(
            stop=stop_after_attempt(self.busy_retries),
            wait=wait_exponential(
                multiplier=self.busy_wait_min, min=self.busy_wait_min, max=self.busy_wait_max
            ),
            retry=retry_if_exception_type(BusyError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._write, note, deck, templates)

    def _write(
        self, note: Note, deck: Deck, templates: list[Template]
    ) -> AddNoteResult:
        store = self.store
        with store.transaction():
            self.allocator.observe(store.max_id())
            now_ms = int_time_ms()

            note.id = self.allocator.next_id()
            note.modified = now_ms // 1000
            duplicates = self._find_duplicates(note)
            store.insert_note(note)
            logger.debug("Inserted note %d (guid %s)", note.id, note.guid)

            positions = PositionCounter(store.read_next_position(), store.max_deck_position)
            cards = self.generator.generate(
                note, templates, deck, positions, note.modified, store.get_deck
            )
            for card in cards:
                store.insert_card(card)
                logger.debug(
                    "Inserted card %d (ord %d, deck %d)", card.id, card.ordinal, card.deck_id
                )

            store.register_tags(note.tags.split())
            store.write_next_position(positions.next_position)
            store.mark_modified(now_ms)

        return AddNoteResult(
            note_id=note.id,
            card_ids=[card.id for card in cards],
            duplicate_note_ids=duplicates,
        )

    def _find_duplicates(self, note: Note) -> list[int]:
        """Existing notes of the same type whose first field matches."""
        first = normalize_field(note.fields[0])
        duplicates = [
            nid
            for nid, flds in self.store.notes_with_checksum(note.model_id, note.checksum)
            if normalize_field(split_fields(flds)[0]) == first
        ]
        if duplicates:
            logger.warning(
                "Note looks like a duplicate of existing note(s) %s; adding anyway",
                ", ".join(str(nid) for nid in duplicates),
            )
        return duplicates
