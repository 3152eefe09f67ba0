# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
CollectionStore - typed access to the tables of an Anki collection file.

This module opens a collection, checks that it has the layout we know how
to write to, and exposes row-level reads and writes. It does not interpret
note fields; that is left to the writer.

Two storage layouts are supported:
    - schema 11: note types, decks, config and tags are JSON in the `col` row
    - schema 15..18: each of those lives in its own table, with protobuf
      blobs for note type, template and deck settings
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .cards import make_template
from .errors import (
    BusyError,
    CollectionError,
    CollectionNotFoundError,
    InvalidStateError,
    NotAValidCollectionError,
    StorageIOError,
    UnknownDeckError,
    UnknownModelError,
    UnsupportedSchemaVersionError,
)
from .models import Card, CollectionMeta, Deck, Note, NoteType, NoteTypeKind

logger = logging.getLogger(__name__)

MIN_SCHEMA_VERSION = 11
MAX_SCHEMA_VERSION = 18
# First version that keeps note types, decks and config in their own tables
SPLIT_TABLES_VERSION = 15
BUSY_TIMEOUT_SECS = 5.0

_REQUIRED_COLUMNS = {
    "col": {"id", "mod", "scm", "ver", "usn"},
    "notes": {
        "id", "guid", "mid", "mod", "usn", "tags",
        "flds", "sfld", "csum", "flags", "data",
    },
    "cards": {
        "id", "nid", "did", "ord", "mod", "usn", "type", "queue", "due",
        "ivl", "factor", "reps", "lapses", "left", "odue", "odid", "flags", "data",
    },
}
_REQUIRED_COLUMNS_LEGACY = {
    "col": {"conf", "models", "decks", "tags"},
}
_REQUIRED_COLUMNS_SPLIT = {
    "notetypes": {"id", "name", "config"},
    "fields": {"ntid", "ord", "name"},
    "templates": {"ntid", "ord", "name", "config"},
    "decks": {"id", "name", "kind"},
    "config": {"key", "usn", "mtime_secs", "val"},
    "tags": {"tag", "usn"},
}

# Unicase collation for Anki compatibility
_unicase = lambda x, y: (x.lower() > y.lower()) - (x.lower() < y.lower())


# -------------------------------------------------------------------------
# Protobuf Helpers (minimal parsing for Anki's protobuf format)
# -------------------------------------------------------------------------


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    """Read a varint from bytes, return (value, new_position)."""
    result = 0
    shift = 0
    while pos < len(data):
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            break
        shift += 7
    return result, pos


def _parse_protobuf_fields(data: bytes) -> dict[int, list]:
    """
    Parse protobuf wire format into a dict of field_number -> list of values.
    Handles VARINT, I64, LEN and I32 wire types.
    """
    fields: dict[int, list] = {}
    pos = 0
    while pos < len(data):
        tag, pos = _read_varint(data, pos)
        field_num = tag >> 3
        wire_type = tag & 0x07

        if wire_type == 0:  # VARINT
            val, pos = _read_varint(data, pos)
            fields.setdefault(field_num, []).append(val)
        elif wire_type == 2:  # LEN (string, bytes, embedded message)
            length, pos = _read_varint(data, pos)
            val = data[pos : pos + length]
            pos += length
            fields.setdefault(field_num, []).append(val)
        elif wire_type == 5:  # I32
            val = int.from_bytes(data[pos : pos + 4], "little")
            pos += 4
            fields.setdefault(field_num, []).append(val)
        elif wire_type == 1:  # I64
            val = int.from_bytes(data[pos : pos + 8], "little")
            pos += 8
            fields.setdefault(field_num, []).append(val)
        else:
            # Unknown wire type, skip rest
            break
    return fields


def _get_str(fields: dict, num: int, default: str = "") -> str:
    """Get string field from parsed protobuf."""
    vals = fields.get(num, [])
    if vals and isinstance(vals[0], bytes):
        return vals[0].decode("utf-8", errors="replace")
    return default


def _get_int(fields: dict, num: int, default: int = 0) -> int:
    """Get int field from parsed protobuf (int64 varints are sign-corrected)."""
    vals = fields.get(num, [])
    if vals and isinstance(vals[0], int):
        val = vals[0]
        return val - (1 << 64) if val >= 1 << 63 else val
    return default


def _connect_db(path: Path, timeout: float = BUSY_TIMEOUT_SECS) -> sqlite3.Connection:
    """Connect to an existing collection DB with required collation.

    Transactions are explicit (`BEGIN IMMEDIATE`), so the connection runs
    in autocommit mode otherwise.
    """
    db = sqlite3.connect(
        path.resolve().as_uri() + "?mode=rw",
        uri=True,
        timeout=timeout,
        isolation_level=None,
    )
    db.row_factory = sqlite3.Row
    db.create_collation("unicase", _unicase)
    return db


def _storage_error(exc: sqlite3.Error) -> CollectionError:
    msg = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in msg or "busy" in msg):
        return BusyError(f"Collection is locked by another process: {exc}")
    return StorageIOError(f"Collection storage failed: {exc}")


@contextmanager
def _guard() -> Iterator[None]:
    """Turn sqlite3 errors raised by reads into collection errors."""
    try:
        yield
    except sqlite3.Error as e:
        raise _storage_error(e) from e


class CollectionStore:
    """
    An open Anki collection.

    Usage:
        with CollectionStore.open("/path/to/collection.anki2") as store:
            model = store.read_model(model_id)
            with store.transaction():
                store.insert_note(note)
                store.mark_modified(now_ms)
    """

    def __init__(self, path: Path, db: sqlite3.Connection, version: int):
        self.path = path
        self.version = version
        self._db: Optional[sqlite3.Connection] = db
        self._columns: dict[str, set[str]] = {}

    @classmethod
    def open(
        cls, col_path: str | Path, timeout: float = BUSY_TIMEOUT_SECS
    ) -> CollectionStore:
        """
        Open and validate a collection file.

        Args:
            col_path: Path to the collection.anki2 file
            timeout: Seconds to wait on a locked database before giving up

        Raises:
            CollectionNotFoundError: If the path does not point to a file.
            NotAValidCollectionError: If the file is not an Anki collection.
            UnsupportedSchemaVersionError: If the schema version is unknown.
        """
        path = Path(col_path)
        if not path.exists():
            raise CollectionNotFoundError(path)
        if not path.is_file():
            raise CollectionNotFoundError(path, "not a regular file")

        try:
            db = _connect_db(path, timeout)
        except sqlite3.Error as e:
            raise NotAValidCollectionError(path, str(e)) from e

        try:
            store = cls._validate(path, db)
        except BaseException:
            db.close()
            raise
        logger.debug("Opened %s (schema %d)", path, store.version)
        return store

    @classmethod
    def _validate(cls, path: Path, db: sqlite3.Connection) -> CollectionStore:
        try:
            tables = {
                row[0].lower()
                for row in db.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
        except sqlite3.DatabaseError as e:
            raise NotAValidCollectionError(path, str(e)) from e

        columns = {}
        for table in ("col", "notes", "cards"):
            if table not in tables:
                raise NotAValidCollectionError(path, f"missing table '{table}'")
            columns[table] = cls._table_columns(db, table)

        missing = _REQUIRED_COLUMNS["col"] - columns["col"]
        if missing:
            raise NotAValidCollectionError(
                path, f"table 'col' lacks columns {sorted(missing)}"
            )

        try:
            row = db.execute("SELECT ver FROM col LIMIT 1").fetchone()
        except sqlite3.DatabaseError as e:
            raise NotAValidCollectionError(path, str(e)) from e
        if row is None:
            raise NotAValidCollectionError(path, "empty 'col' table")
        version = row[0]
        if not isinstance(version, int):
            raise NotAValidCollectionError(
                path, f"schema version {version!r} is not an integer"
            )
        if not MIN_SCHEMA_VERSION <= version <= MAX_SCHEMA_VERSION:
            raise UnsupportedSchemaVersionError(
                version, MIN_SCHEMA_VERSION, MAX_SCHEMA_VERSION
            )

        required = dict(_REQUIRED_COLUMNS)
        extra = (
            _REQUIRED_COLUMNS_SPLIT
            if version >= SPLIT_TABLES_VERSION
            else _REQUIRED_COLUMNS_LEGACY
        )
        for table, cols in extra.items():
            required[table] = required.get(table, set()) | cols

        for table, cols in required.items():
            if table not in columns:
                if table not in tables:
                    raise NotAValidCollectionError(path, f"missing table '{table}'")
                columns[table] = cls._table_columns(db, table)
            missing = cols - columns[table]
            if missing:
                raise NotAValidCollectionError(
                    path, f"table '{table}' lacks columns {sorted(missing)}"
                )

        store = cls(path, db, version)
        store._columns = columns
        return store

    @staticmethod
    def _table_columns(db: sqlite3.Connection, table: str) -> set[str]:
        return {row[1].lower() for row in db.execute(f"PRAGMA table_info({table})")}

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise InvalidStateError("Collection is closed")
        return self._db

    @property
    def is_open(self) -> bool:
        return self._db is not None

    @property
    def split_tables(self) -> bool:
        return self.version >= SPLIT_TABLES_VERSION

    def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            db, self._db = self._db, None
            db.close()

    def __enter__(self) -> CollectionStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Transaction Management
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[CollectionStore]:
        """
        Run the body in one write transaction.

        The transaction takes the write lock up front (`BEGIN IMMEDIATE`), is
        committed when the body returns and rolled back if it raises.

        Raises:
            BusyError: If another process holds the lock.
            StorageIOError: If the engine fails to read or write.
        """
        db = self.db
        if db.in_transaction:
            raise InvalidStateError("A transaction is already in progress")
        try:
            db.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise _storage_error(e) from e

        try:
            yield self
        except sqlite3.Error as e:
            db.rollback()
            raise _storage_error(e) from e
        except BaseException:
            db.rollback()
            raise

        try:
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            raise _storage_error(e) from e

    # -------------------------------------------------------------------------
    # Collection Metadata
    # -------------------------------------------------------------------------

    def sync_meta(self) -> CollectionMeta:
        """Get the collection-level modification counters."""
        with _guard():
            row = self.db.execute("SELECT mod, scm, usn, ver FROM col WHERE id = 1").fetchone()
        if row is None:
            raise StorageIOError("Collection row is missing")
        return CollectionMeta(
            modified=row["mod"], schema=row["scm"], usn=row["usn"], version=row["ver"]
        )

    def mark_modified(self, mtime_ms: int) -> None:
        """Record a change: bump the collection usn once and set its mtime.

        `scm` is left alone; changing it would force a full sync.
        """
        cur = self.db.execute(
            "UPDATE col SET usn = usn + 1, mod = ? WHERE id = 1", (mtime_ms,)
        )
        if cur.rowcount != 1:
            raise StorageIOError("Collection row is missing")

    def _col_json(self, column: str) -> dict:
        with _guard():
            row = self.db.execute(f"SELECT {column} FROM col WHERE id = 1").fetchone()
        if row is None:
            raise StorageIOError("Collection row is missing")
        return json.loads(row[0]) if row[0] else {}

    # -------------------------------------------------------------------------
    # Note Types
    # -------------------------------------------------------------------------

    def read_model(self, model_id: int) -> NoteType:
        """
        Load a note type.

        Raises:
            UnknownModelError: If no note type has this id.
        """
        model = self._read_model(model_id)
        if model is None:
            raise UnknownModelError(model_id)
        return model

    def _read_model(self, model_id: int) -> Optional[NoteType]:
        if not self.split_tables:
            m = self._col_json("models").get(str(model_id))
            return self._model_from_json(m) if m else None

        with _guard():
            row = self.db.execute(
                "SELECT id, name, config FROM notetypes WHERE id = ?", (model_id,)
            ).fetchone()
            if not row:
                return None
            field_rows = self.db.execute(
                "SELECT name FROM fields WHERE ntid = ? ORDER BY ord", (model_id,)
            ).fetchall()
            tmpl_rows = self.db.execute(
                "SELECT name, ord, config FROM templates WHERE ntid = ? ORDER BY ord",
                (model_id,),
            ).fetchall()

        nt_fields = _parse_protobuf_fields(row["config"]) if row["config"] else {}

        templates = []
        for trow in tmpl_rows:
            tmpl_config = trow["config"]
            tmpl_fields = _parse_protobuf_fields(tmpl_config) if tmpl_config else {}
            # Field 1 = qfmt, Field 2 = afmt, Field 5 = target deck id
            templates.append(
                make_template(
                    trow["name"],
                    trow["ord"],
                    _get_str(tmpl_fields, 1, ""),
                    _get_str(tmpl_fields, 2, ""),
                    _get_int(tmpl_fields, 5, 0),
                )
            )

        # Field 1 = kind, Field 2 = sort field index
        return NoteType(
            id=row["id"],
            name=row["name"],
            fields=[frow["name"] for frow in field_rows],
            templates=templates,
            kind=NoteTypeKind(_get_int(nt_fields, 1, 0)),
            sort_field_index=_get_int(nt_fields, 2, 0),
        )

    @staticmethod
    def _model_from_json(m: dict) -> NoteType:
        flds = sorted(m.get("flds", []), key=lambda f: f.get("ord", 0))
        tmpls = sorted(m.get("tmpls", []), key=lambda t: t.get("ord", 0))
        return NoteType(
            id=int(m["id"]),
            name=m.get("name", ""),
            fields=[f["name"] for f in flds],
            templates=[
                make_template(
                    t.get("name", ""),
                    t.get("ord", i),
                    t.get("qfmt", ""),
                    t.get("afmt", ""),
                    t.get("did"),
                )
                for i, t in enumerate(tmpls)
            ],
            kind=NoteTypeKind(m.get("type", 0)),
            sort_field_index=m.get("sortf", 0),
        )

    def models(self) -> list[NoteType]:
        """All note types, by name."""
        if self.split_tables:
            with _guard():
                ids = [row[0] for row in self.db.execute("SELECT id FROM notetypes")]
            found = [self.read_model(ntid) for ntid in ids]
        else:
            found = [self._model_from_json(m) for m in self._col_json("models").values()]
        return sorted(found, key=lambda m: m.name.lower())

    def find_model(self, name: str) -> NoteType:
        for model in self.models():
            if model.name == name:
                return model
        raise UnknownModelError(name=name)

    # -------------------------------------------------------------------------
    # Decks
    # -------------------------------------------------------------------------

    def read_deck(self, deck_id: int) -> Deck:
        """
        Load a deck.

        Raises:
            UnknownDeckError: If no deck has this id.
        """
        deck = self.get_deck(deck_id)
        if deck is None:
            raise UnknownDeckError(deck_id)
        return deck

    def get_deck(self, deck_id: int) -> Optional[Deck]:
        """Like `read_deck`, but returns None for a missing deck."""
        if not self.split_tables:
            d = self._col_json("decks").get(str(deck_id))
            return self._deck_from_json(d) if d else None

        with _guard():
            row = self.db.execute(
                "SELECT id, name, kind FROM decks WHERE id = ?", (deck_id,)
            ).fetchone()
        return self._deck_from_row(row) if row else None

    @staticmethod
    def _deck_from_json(d: dict) -> Deck:
        return Deck(
            id=int(d["id"]), name=d.get("name", ""), filtered=bool(d.get("dyn", 0))
        )

    @staticmethod
    def _deck_from_row(row: sqlite3.Row) -> Deck:
        # Filtered decks have kind field 2 (FilteredDeck); normal decks field 1
        kind = row["kind"]
        kind_fields = _parse_protobuf_fields(kind) if kind else {}
        return Deck(id=row["id"], name=row["name"], filtered=2 in kind_fields)

    def decks(self) -> list[Deck]:
        """All decks, by name."""
        if self.split_tables:
            with _guard():
                rows = self.db.execute("SELECT id, name, kind FROM decks").fetchall()
            found = [self._deck_from_row(row) for row in rows]
        else:
            found = [self._deck_from_json(d) for d in self._col_json("decks").values()]
        return sorted(found, key=lambda d: d.name.lower())

    def find_deck(self, name: str) -> Deck:
        for deck in self.decks():
            if deck.name == name:
                return deck
        raise UnknownDeckError(name=name)

    # -------------------------------------------------------------------------
    # Counts
    # -------------------------------------------------------------------------

    def count(self, table: str) -> int:
        """Count rows in a table."""
        with _guard():
            return self.db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def note_counts(self) -> dict[int, int]:
        """Number of notes per note type id."""
        with _guard():
            rows = self.db.execute("SELECT mid, COUNT(*) FROM notes GROUP BY mid")
            return {mid: n for mid, n in rows}

    def card_counts(self) -> dict[int, int]:
        """Number of cards per deck id."""
        with _guard():
            rows = self.db.execute("SELECT did, COUNT(*) FROM cards GROUP BY did")
            return {did: n for did, n in rows}

    # -------------------------------------------------------------------------
    # Ids and Positions
    # -------------------------------------------------------------------------

    def max_id(self) -> int:
        """Highest id used by any note or card."""
        row = self.db.execute(
            "SELECT max(id) FROM (SELECT id FROM notes UNION ALL SELECT id FROM cards)"
        ).fetchone()
        return row[0] or 0

    def read_next_position(self) -> int:
        """The collection's `nextPos` counter for new cards."""
        if not self.split_tables:
            return int(self._col_json("conf").get("nextPos", 1))
        row = self.db.execute("SELECT val FROM config WHERE key = 'nextPos'").fetchone()
        return int(json.loads(row[0])) if row else 1

    def write_next_position(self, pos: int) -> None:
        if not self.split_tables:
            conf = self._col_json("conf")
            conf["nextPos"] = pos
            self.db.execute("UPDATE col SET conf = ? WHERE id = 1", (json.dumps(conf),))
            return
        self.db.execute(
            "INSERT OR REPLACE INTO config (key, usn, mtime_secs, val) VALUES ('nextPos', -1, ?, ?)",
            (int(time.time()), json.dumps(pos).encode()),
        )

    def max_deck_position(self, deck_id: int) -> int:
        """Highest position of a new card in a deck, or 0."""
        row = self.db.execute(
            "SELECT max(due) FROM cards WHERE did = ? AND type = 0", (deck_id,)
        ).fetchone()
        return row[0] or 0

    # -------------------------------------------------------------------------
    # Notes, Cards and Tags
    # -------------------------------------------------------------------------

    def notes_with_checksum(self, model_id: int, checksum: int) -> list[tuple[int, str]]:
        """(id, flds) of notes of a note type sharing a first-field checksum."""
        with _guard():
            rows = self.db.execute(
                "SELECT id, flds FROM notes WHERE mid = ? AND csum = ?",
                (model_id, checksum),
            ).fetchall()
        return [(row["id"], row["flds"]) for row in rows]

    def insert_note(self, note: Note) -> None:
        self.db.execute(
            """INSERT INTO notes (id, guid, mid, mod, usn, tags, flds, sfld, csum, flags, data)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                note.id,
                note.guid,
                note.model_id,
                note.modified,
                note.usn,
                note.tags,
                note.joined_fields,
                note.sort_field,
                note.checksum,
                note.flags,
                note.data,
            ),
        )

    def insert_card(self, card: Card) -> None:
        self.db.execute(
            """INSERT INTO cards (id, nid, did, ord, mod, usn, type, queue, due, ivl,
                                  factor, reps, lapses, left, odue, odid, flags, data)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, 0, 0, 0, 0, 0, 0, '')""",
            (
                card.id,
                card.note_id,
                card.deck_id,
                card.ordinal,
                card.modified,
                card.usn,
                card.type,
                card.queue,
                card.due,
            ),
        )

    def register_tags(self, tags: list[str], usn: int = -1) -> None:
        """Add tags to the tag list if they are not there yet."""
        if not tags:
            return
        if not self.split_tables:
            known = self._col_json("tags")
            lowered = {t.lower() for t in known}
            added = False
            for tag in tags:
                if tag.lower() not in lowered:
                    known[tag] = usn
                    lowered.add(tag.lower())
                    added = True
            if added:
                self.db.execute(
                    "UPDATE col SET tags = ? WHERE id = 1", (json.dumps(known),)
                )
            return

        if "collapsed" in self._columns.get("tags", set()):
            sql = "INSERT OR IGNORE INTO tags (tag, usn, collapsed, config) VALUES (?, ?, 0, NULL)"
        else:
            sql = "INSERT OR IGNORE INTO tags (tag, usn) VALUES (?, ?)"
        self.db.executemany(sql, [(tag, usn) for tag in tags])
