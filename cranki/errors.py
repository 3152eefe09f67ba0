# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Errors raised while opening a collection or adding a note to it."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class CollectionError(Exception):
    pass


# --- Open-time ---


class CollectionNotFoundError(CollectionError):
    def __init__(self, path: str | Path, reason: str = "no such file"):
        self.path = Path(path)
        super().__init__(f"Collection not found at {self.path}: {reason}")


class NotAValidCollectionError(CollectionError):
    def __init__(self, path: str | Path, reason: str):
        self.path, self.reason = Path(path), reason
        super().__init__(f"{self.path} is not a valid collection: {reason}")


class UnsupportedSchemaVersionError(CollectionError):
    def __init__(self, version: int, minimum: int, maximum: int):
        self.version, self.minimum, self.maximum = version, minimum, maximum
        super().__init__(
            f"Collection schema version {version} is not supported "
            f"(supported: {minimum} to {maximum})"
        )


class InvalidStateError(CollectionError):
    pass


# --- Configuration ---


class UnknownModelError(CollectionError):
    def __init__(self, model_id: Optional[int] = None, name: Optional[str] = None):
        self.model_id, self.name = model_id, name
        what = f"'{name}'" if name is not None else str(model_id)
        super().__init__(f"Note type {what} was not found in the collection")


class UnknownDeckError(CollectionError):
    def __init__(
        self,
        deck_id: Optional[int] = None,
        name: Optional[str] = None,
        reason: str = "was not found in the collection",
    ):
        self.deck_id, self.name = deck_id, name
        what = f"'{name}'" if name is not None else str(deck_id)
        super().__init__(f"Deck {what} {reason}")


# --- Note content ---


class FieldCountMismatchError(CollectionError):
    def __init__(self, model_name: str, expected: int, given: int):
        self.model_name, self.expected, self.given = model_name, expected, given
        super().__init__(
            f"Note type '{model_name}' expected {expected} fields "
            f"but {given} were provided"
        )


class IllegalFieldContentError(CollectionError):
    def __init__(self, index: int):
        self.index = index
        super().__init__(
            f"Field {index} contains the reserved field separator (0x1f)"
        )


class EmptyNoteError(CollectionError):
    def __init__(self, model_name: str):
        self.model_name = model_name
        super().__init__(
            f"No card template of note type '{model_name}' would render "
            "content for these fields"
        )


# --- Storage ---


class BusyError(CollectionError):
    pass


class StorageIOError(CollectionError):
    pass
