#!/usr/bin/env python3
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Shared test utilities: building schema 11 and schema 18 collections in a
temporary directory, and raw access to them for assertions.
"""

import json
import random
import sqlite3
import string
import time
from pathlib import Path
from typing import Optional

import pytest

from .. import CollectionStore, field_checksum

# Note type ids
BASIC = 1000
REVERSED = 1001
OPTIONAL_REVERSED = 1002
BACK_ONLY = 1003
THREE_FIELDS = 1004
CLOZE = 1005
ROUTED = 1006

# Deck ids
DEFAULT_DECK = 1
REVERSE_DECK = 2
FILTERED_DECK = 3

# (id, name, kind, fields, [(template name, qfmt, deck override)])
NOTETYPES = [
    (BASIC, "Basic", 0, ["Front", "Back"], [("Card 1", "{{Front}}", None)]),
    (
        REVERSED,
        "Basic (and reversed card)",
        0,
        ["Front", "Back"],
        [("Card 1", "{{Front}}", None), ("Card 2", "{{Back}}", None)],
    ),
    (
        OPTIONAL_REVERSED,
        "Basic (optional reversed card)",
        0,
        ["Front", "Back", "Add Reverse"],
        [
            ("Card 1", "{{Front}}", None),
            ("Card 2", "{{#Add Reverse}}{{Back}}{{/Add Reverse}}", None),
        ],
    ),
    (BACK_ONLY, "Back only", 0, ["Front", "Back"], [("Card 1", "{{#Back}}{{Front}}{{/Back}}", None)]),
    (
        THREE_FIELDS,
        "Three fields",
        0,
        ["Question", "Answer", "Extra"],
        [("Card 1", "{{Question}}", None)],
    ),
    (CLOZE, "Cloze", 1, ["Text", "Back Extra"], [("Cloze", "{{cloze:Text}}", None)]),
    (
        ROUTED,
        "Routed",
        0,
        ["Front", "Back"],
        [("Card 1", "{{Front}}", None), ("Card 2", "{{Back}}", REVERSE_DECK)],
    ),
]

# (id, name, filtered)
DECKS = [
    (DEFAULT_DECK, "Default", False),
    (REVERSE_DECK, "Reverse", False),
    (FILTERED_DECK, "Filtered", True),
]

_SCHEMA_COMMON = """
CREATE TABLE col (
    id integer PRIMARY KEY, crt integer NOT NULL, mod integer NOT NULL,
    scm integer NOT NULL, ver integer NOT NULL, dty integer NOT NULL,
    usn integer NOT NULL, ls integer NOT NULL, conf text NOT NULL,
    models text NOT NULL, decks text NOT NULL, dconf text NOT NULL,
    tags text NOT NULL
);
CREATE TABLE notes (
    id integer PRIMARY KEY, guid text NOT NULL, mid integer NOT NULL,
    mod integer NOT NULL, usn integer NOT NULL, tags text NOT NULL,
    flds text NOT NULL, sfld integer NOT NULL, csum integer NOT NULL,
    flags integer NOT NULL, data text NOT NULL
);
CREATE TABLE cards (
    id integer PRIMARY KEY, nid integer NOT NULL, did integer NOT NULL,
    ord integer NOT NULL, mod integer NOT NULL, usn integer NOT NULL,
    type integer NOT NULL, queue integer NOT NULL, due integer NOT NULL,
    ivl integer NOT NULL, factor integer NOT NULL, reps integer NOT NULL,
    lapses integer NOT NULL, left integer NOT NULL, odue integer NOT NULL,
    odid integer NOT NULL, flags integer NOT NULL, data text NOT NULL
);
CREATE TABLE revlog (
    id integer PRIMARY KEY, cid integer NOT NULL, usn integer NOT NULL,
    ease integer NOT NULL, ivl integer NOT NULL, lastIvl integer NOT NULL,
    factor integer NOT NULL, time integer NOT NULL, type integer NOT NULL
);
CREATE TABLE graves (usn integer NOT NULL, oid integer NOT NULL, type integer NOT NULL);
"""

_SCHEMA_18 = """
CREATE TABLE deck_config (
    id integer PRIMARY KEY NOT NULL, name text NOT NULL COLLATE unicase,
    mtime_secs integer NOT NULL, usn integer NOT NULL, config blob NOT NULL
);
CREATE TABLE config (
    KEY text NOT NULL PRIMARY KEY, usn integer NOT NULL,
    mtime_secs integer NOT NULL, val blob NOT NULL
) without rowid;
CREATE TABLE fields (
    ntid integer NOT NULL, ord integer NOT NULL, name text NOT NULL COLLATE unicase,
    config blob NOT NULL, PRIMARY KEY (ntid, ord)
) without rowid;
CREATE TABLE templates (
    ntid integer NOT NULL, ord integer NOT NULL, name text NOT NULL COLLATE unicase,
    mtime_secs integer NOT NULL, usn integer NOT NULL, config blob NOT NULL,
    PRIMARY KEY (ntid, ord)
) without rowid;
CREATE TABLE notetypes (
    id integer NOT NULL PRIMARY KEY, name text NOT NULL COLLATE unicase,
    mtime_secs integer NOT NULL, usn integer NOT NULL, config blob NOT NULL
);
CREATE TABLE decks (
    id integer PRIMARY KEY NOT NULL, name text NOT NULL COLLATE unicase,
    mtime_secs integer NOT NULL, usn integer NOT NULL, common blob NOT NULL,
    kind blob NOT NULL
);
CREATE TABLE tags (
    tag text NOT NULL PRIMARY KEY COLLATE unicase, usn integer NOT NULL,
    collapsed boolean NOT NULL, config blob NULL
) without rowid;
"""

# Unicase collation for Anki compatibility
_unicase = lambda x, y: (x.lower() > y.lower()) - (x.lower() < y.lower())


def _connect_db(path: Path) -> sqlite3.Connection:
    """Connect to collection DB with required collation."""
    db = sqlite3.connect(str(path))
    db.create_collation("unicase", _unicase)
    return db


# -------------------------------------------------------------------------
# Protobuf Encoding Helpers
# -------------------------------------------------------------------------


def _encode_varint(value: int) -> bytes:
    """Encode an integer as a varint."""
    parts = []
    while value > 0x7F:
        parts.append((value & 0x7F) | 0x80)
        value >>= 7
    parts.append(value)
    return bytes(parts)


def _encode_field(field_num: int, wire_type: int, value: bytes) -> bytes:
    """Encode a protobuf field."""
    tag = (field_num << 3) | wire_type
    return _encode_varint(tag) + value


def _encode_string(field_num: int, value: str) -> bytes:
    """Encode a string field (LEN wire type = 2)."""
    encoded = value.encode("utf-8")
    return _encode_field(field_num, 2, _encode_varint(len(encoded)) + encoded)


def _encode_bytes(field_num: int, value: bytes) -> bytes:
    """Encode a bytes/message field (LEN wire type = 2)."""
    return _encode_field(field_num, 2, _encode_varint(len(value)) + value)


def _encode_varint_field(field_num: int, value: int) -> bytes:
    """Encode a varint field (wire type = 0)."""
    return _encode_field(field_num, 0, _encode_varint(value))


# -------------------------------------------------------------------------
# Collection Builders
# -------------------------------------------------------------------------


def create_collection_v11(path: Path, next_pos: int = 1) -> Path:
    """Create a schema 11 collection (JSON note types and decks in `col`)."""
    models = {}
    for ntid, name, kind, flds, tmpls in NOTETYPES:
        models[str(ntid)] = {
            "id": ntid,
            "name": name,
            "type": kind,
            "sortf": 0,
            "did": DEFAULT_DECK,
            "flds": [{"name": f, "ord": i} for i, f in enumerate(flds)],
            "tmpls": [
                {"name": t, "ord": i, "qfmt": q, "afmt": "{{FrontSide}}", "did": did}
                for i, (t, q, did) in enumerate(tmpls)
            ],
        }
    decks = {
        str(did): {"id": did, "name": name, "dyn": 1 if filtered else 0, "conf": 1}
        for did, name, filtered in DECKS
    }
    now = int(time.time())

    db = _connect_db(path)
    db.executescript(_SCHEMA_COMMON)
    db.execute(
        "INSERT INTO col VALUES (1, ?, ?, ?, 11, 0, 0, 0, ?, ?, ?, '{}', '{}')",
        (
            now,
            now * 1000,
            now * 1000,
            json.dumps({"nextPos": next_pos}),
            json.dumps(models),
            json.dumps(decks),
        ),
    )
    db.commit()
    db.close()
    return path


def create_collection_v18(path: Path, next_pos: int = 1) -> Path:
    """Create a schema 18 collection (note types and decks in their own tables)."""
    now = int(time.time())

    db = _connect_db(path)
    db.executescript(_SCHEMA_COMMON + _SCHEMA_18)
    db.execute(
        "INSERT INTO col VALUES (1, ?, ?, ?, 18, 0, 0, 0, '', '', '', '', '')",
        (now, now * 1000, now * 1000),
    )
    for ntid, name, kind, flds, tmpls in NOTETYPES:
        # Field 1 = kind, Field 2 = sort field index
        config = _encode_varint_field(1, kind) + _encode_varint_field(2, 0)
        db.execute(
            "INSERT INTO notetypes (id, name, mtime_secs, usn, config) VALUES (?, ?, ?, 0, ?)",
            (ntid, name, now, config),
        )
        for i, fname in enumerate(flds):
            db.execute(
                "INSERT INTO fields (ntid, ord, name, config) VALUES (?, ?, ?, ?)",
                (ntid, i, fname, b""),
            )
        for i, (tname, qfmt, did) in enumerate(tmpls):
            # Field 1 = qfmt, Field 2 = afmt, Field 5 = target deck id
            tmpl_config = _encode_string(1, qfmt) + _encode_string(2, "{{FrontSide}}")
            if did:
                tmpl_config += _encode_varint_field(5, did)
            db.execute(
                "INSERT INTO templates (ntid, ord, name, mtime_secs, usn, config) VALUES (?, ?, ?, ?, 0, ?)",
                (ntid, i, tname, now, tmpl_config),
            )
    for did, name, filtered in DECKS:
        if filtered:
            kind = _encode_bytes(2, b"")
        else:
            kind = _encode_bytes(1, _encode_varint_field(1, 1))
        db.execute(
            "INSERT INTO decks (id, name, mtime_secs, usn, common, kind) VALUES (?, ?, ?, 0, ?, ?)",
            (did, name, now, _encode_varint_field(1, 1), kind),
        )
    db.execute(
        "INSERT INTO config (KEY, usn, mtime_secs, val) VALUES ('nextPos', 0, ?, ?)",
        (now, json.dumps(next_pos).encode()),
    )
    db.commit()
    db.close()
    return path


def add_note(
    db: sqlite3.Connection,
    front: str,
    back: str,
    mid: int = BASIC,
    did: int = DEFAULT_DECK,
    note_id: Optional[int] = None,
    due: int = 0,
) -> int:
    """Add a note and card to collection directly. Returns note id."""
    note_id = note_id or int(time.time() * 1000)
    mod = int(time.time())
    guid = "".join(random.choices(string.ascii_letters + string.digits, k=10))
    csum = field_checksum(front)

    db.execute(
        "INSERT INTO notes (id,guid,mid,mod,usn,tags,flds,sfld,csum,flags,data) VALUES (?,?,?,?,-1,'',?,?,?,0,'')",
        (note_id, guid, mid, mod, f"{front}\x1f{back}", front, csum),
    )
    db.execute(
        "INSERT INTO cards (id,nid,did,ord,mod,usn,type,queue,due,ivl,factor,reps,lapses,left,odue,odid,flags,data) VALUES (?,?,?,0,?,-1,0,0,?,0,0,0,0,0,0,0,0,'')",
        (note_id + 1, note_id, did, mod, due),
    )
    db.commit()
    return note_id


def col_usn(path: Path) -> int:
    db = _connect_db(path)
    try:
        return db.execute("SELECT usn FROM col WHERE id = 1").fetchone()[0]
    finally:
        db.close()


def row_counts(path: Path) -> tuple[int, int]:
    """(notes, cards) in the collection."""
    db = _connect_db(path)
    try:
        notes = db.execute("SELECT COUNT(*) FROM notes").fetchone()[0]
        cards = db.execute("SELECT COUNT(*) FROM cards").fetchone()[0]
        return notes, cards
    finally:
        db.close()


# -------------------------------------------------------------------------
# Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def col11_path(tmp_path) -> Path:
    return create_collection_v11(tmp_path / "collection11.anki2")


@pytest.fixture
def col18_path(tmp_path) -> Path:
    return create_collection_v18(tmp_path / "collection18.anki2")


@pytest.fixture(params=[11, 18], ids=["schema11", "schema18"])
def collection_path(request, tmp_path) -> Path:
    """A collection in each supported storage layout."""
    path = tmp_path / "collection.anki2"
    if request.param == 11:
        return create_collection_v11(path)
    return create_collection_v18(path)


@pytest.fixture
def store(collection_path):
    col = CollectionStore.open(collection_path)
    try:
        yield col
    finally:
        col.close()


@pytest.fixture
def raw_db(collection_path):
    db = _connect_db(collection_path)
    db.row_factory = sqlite3.Row
    try:
        yield db
    finally:
        db.close()
