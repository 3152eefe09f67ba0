# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Card generation: which templates of a note type produce a card for a given
note, and the card rows for a new note.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import Callable, Optional

from .errors import EmptyNoteError
from .fields import field_is_blank
from .ids import IdAllocator
from .models import (
    CARD_TYPE_NEW,
    QUEUE_NEW,
    USN_PENDING,
    Card,
    Deck,
    FieldRef,
    Note,
    NoteType,
    Template,
)

logger = logging.getLogger(__name__)

_re_token = re.compile(r"{{\s*([#^/]?)\s*(.*?)\s*}}", re.S)
_re_cloze = re.compile(r"(?s){{c(\d+)::")

# Replacements that never refer to a note field
_SPECIAL_FIELDS = frozenset(
    ["FrontSide", "Tags", "Type", "Deck", "Subdeck", "Card", "CardFlag", "CardID"]
)


# -------------------------------------------------------------------------
# Template Parsing
# -------------------------------------------------------------------------


def _field_name(replacement: str) -> str:
    """`text:Front` -> `Front`, `type:cloze:Text` -> `Text`."""
    return replacement.rsplit(":", 1)[-1].strip()


def parse_field_refs(question_format: str) -> tuple[FieldRef, ...]:
    """
    Every field reference in a question format, in order of first use, with
    the `{{#Field}}` and `{{^Field}}` sections that enclose it.
    """
    sections: list[tuple[str, str]] = []
    refs: list[FieldRef] = []

    for match in _re_token.finditer(question_format):
        kind, body = match.group(1), match.group(2)
        if kind in ("#", "^"):
            sections.append((kind, body))
        elif kind == "/":
            # close the innermost matching section; tolerate bad nesting
            for i in range(len(sections) - 1, -1, -1):
                if sections[i][1] == body:
                    del sections[i:]
                    break
        elif body and not body.startswith("!"):
            name = _field_name(body)
            if name in _SPECIAL_FIELDS or not name:
                continue
            ref = FieldRef(
                name,
                required=tuple(f for k, f in sections if k == "#"),
                inverted=tuple(f for k, f in sections if k == "^"),
            )
            if ref not in refs:
                refs.append(ref)
    return tuple(refs)


def parse_question(question_format: str) -> tuple[Optional[str], tuple[str, ...]]:
    """
    Find the fields a question format refers to, and the field the whole
    question is conditional on (if every reference sits inside the same
    `{{#Field}}` section).

    Returns:
        (condition_field, field_refs)
    """
    refs = parse_field_refs(question_format)
    names = tuple(dict.fromkeys(ref.name for ref in refs))

    condition = None
    if refs:
        common = set(refs[0].required).intersection(*(r.required for r in refs[1:]))
        for name in refs[0].required:
            if name in common:
                condition = name
                break
    return condition, names


def cloze_fields(question_format: str) -> list[str]:
    """Fields rendered with the `cloze:` filter."""
    out = []
    for match in _re_token.finditer(question_format):
        if match.group(1):
            continue
        parts = [p.strip() for p in match.group(2).split(":")]
        if "cloze" in parts[:-1] and parts[-1] not in out:
            out.append(parts[-1])
    return out


def make_template(
    name: str,
    ordinal: int,
    question_format: str,
    answer_format: str = "",
    deck_override: Optional[int] = None,
) -> Template:
    condition, refs = parse_question(question_format)
    guarded = parse_field_refs(question_format)
    return Template(
        name=name,
        ordinal=ordinal,
        question_format=question_format,
        answer_format=answer_format,
        deck_override=deck_override or None,
        condition_field=condition,
        field_refs=refs,
        guarded_refs=guarded,
    )


# -------------------------------------------------------------------------
# Positions
# -------------------------------------------------------------------------


class PositionCounter:
    """
    New-card positions, one counter per deck.

    A deck's counter starts after both the collection's `nextPos` and the
    highest position already used by a new card in that deck.
    """

    def __init__(self, next_position: int, deck_max: Callable[[int], int]):
        self._start = max(next_position, 1)
        self._deck_max = deck_max
        self._per_deck: dict[int, int] = {}

    def take(self, deck_id: int) -> int:
        if deck_id not in self._per_deck:
            self._per_deck[deck_id] = max(self._start, self._deck_max(deck_id) + 1)
        pos = self._per_deck[deck_id]
        self._per_deck[deck_id] = pos + 1
        return pos

    @property
    def next_position(self) -> int:
        """Value to store back as the collection's `nextPos`."""
        return max([self._start, *self._per_deck.values()])


# -------------------------------------------------------------------------
# Generator
# -------------------------------------------------------------------------


class CardGenerator:
    """Builds the card rows for a new note.

    Usage:
        gen = CardGenerator(allocator)
        templates = gen.renderable_templates(note, note_type)  # may raise
        cards = gen.generate(note, templates, deck, positions, now)
    """

    def __init__(self, allocator: IdAllocator):
        self.allocator = allocator

    def renderable_templates(self, note: Note, note_type: NoteType) -> list[Template]:
        """
        Templates that would render content for this note, in ordinal order.

        Raises:
            EmptyNoteError: If no template would render anything.
        """
        values = dict(zip(note_type.fields, note.fields))
        if note_type.is_cloze:
            templates = self._cloze_templates(values, note_type)
        else:
            templates = [
                t
                for t in sorted(note_type.templates, key=lambda t: t.ordinal)
                if self._renders(t, values)
            ]
        if not templates:
            raise EmptyNoteError(note_type.name)
        return templates

    def _renders(self, template: Template, values: dict[str, str]) -> bool:
        if template.condition_field is not None and field_is_blank(
            values.get(template.condition_field, "")
        ):
            return False
        refs = template.guarded_refs or tuple(FieldRef(n) for n in template.field_refs)
        if not refs:
            return True
        return any(self._shows(ref, values) for ref in refs)

    @staticmethod
    def _shows(ref: FieldRef, values: dict[str, str]) -> bool:
        def blank(name: str) -> bool:
            return field_is_blank(values.get(name, ""))

        return (
            not blank(ref.name)
            and not any(blank(name) for name in ref.required)
            and all(blank(name) for name in ref.inverted)
        )

    def _cloze_templates(
        self, values: dict[str, str], note_type: NoteType
    ) -> list[Template]:
        if not note_type.templates:
            return []
        base = note_type.templates[0]
        numbers: set[int] = set()
        for name in cloze_fields(base.question_format):
            numbers.update(int(n) for n in _re_cloze.findall(values.get(name, "")))
        return [
            dataclasses.replace(base, ordinal=n - 1)
            for n in sorted(numbers)
            if n > 0
        ]

    def generate(
        self,
        note: Note,
        templates: list[Template],
        target_deck: Deck,
        positions: PositionCounter,
        now: int,
        resolve_deck: Optional[Callable[[int], Optional[Deck]]] = None,
    ) -> list[Card]:
        """One new card per template, with `usn = -1`.

        A template's deck override is used when it names an existing normal
        deck; otherwise the card goes to `target_deck`.
        """
        cards = []
        for template in templates:
            deck_id = target_deck.id
            if template.deck_override:
                override = None
                if resolve_deck is not None:
                    override = resolve_deck(template.deck_override)
                if override is not None and not override.filtered:
                    deck_id = override.id
                else:
                    logger.debug(
                        "Ignoring deck override %s of template '%s'",
                        template.deck_override,
                        template.name,
                    )
            cards.append(
                Card(
                    id=self.allocator.next_id(),
                    note_id=note.id,
                    deck_id=deck_id,
                    ordinal=template.ordinal,
                    due=positions.take(deck_id),
                    modified=now,
                    usn=USN_PENDING,
                    type=CARD_TYPE_NEW,
                    queue=QUEUE_NEW,
                )
            )
        return cards
