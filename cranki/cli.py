# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Command-line entry point.

Usage:
    cranki -f ~/Anki/User/collection.anki2 -d Default -m Basic add "Front" "Back"
    cranki add "Another front" "Another back"    # reuses the stored settings
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from .collection import CollectionStore
from .config import default_config_path, load_configuration, write_configuration
from .errors import CollectionError, UnknownDeckError, UnknownModelError
from .models import Deck, NoteType
from .writer import CollectionWriter

logger = logging.getLogger(__name__)

COMMANDS = ("add",)


class _ArgumentParser(argparse.ArgumentParser):
    """Exits with status 1 on usage errors, like every other failure."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="cranki",
        description="A simple command-line tool for adding notes to Anki collection files",
        epilog="Available commands: add FIELD...  Add a new note to the collection",
    )
    parser.add_argument(
        "-n",
        "--no-store-config",
        action="store_true",
        help="Don't write the config file (it is written when settings change otherwise)",
    )
    parser.add_argument(
        "-f",
        "--database-file",
        metavar="DATABASE-PATH",
        help="Path to the collection (usually *.anki2). Overrides the stored value",
    )
    parser.add_argument(
        "-d",
        "--deck",
        metavar="DECK-NAME",
        help="Deck to add to. Overrides the stored value",
    )
    parser.add_argument(
        "-m",
        "--model",
        metavar="MODEL-NAME",
        help="Note type to use. Overrides the stored value",
    )
    parser.add_argument(
        "-c", "--config", metavar="CONFIG-PATH", help="Config file path to use"
    )
    parser.add_argument(
        "-t", "--tags", default="", help="Space-separated tags for the new note"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    parser.add_argument("command", help="Command to run")
    parser.add_argument("args", nargs="*", help="Command arguments")
    return parser


def _print_decks(store: CollectionStore, decks: list[Deck]) -> None:
    if not decks:
        print("The database contains no decks!", file=sys.stderr)
        return
    counts = store.card_counts()
    print("Valid deck names are:", file=sys.stderr)
    for deck in decks:
        n = counts.get(deck.id, 0)
        print(f'    "{deck.name}"    ({n} existing cards)', file=sys.stderr)


def _print_models(store: CollectionStore, models: list[NoteType]) -> None:
    if not models:
        print("The database contains no models!", file=sys.stderr)
        return
    counts = store.note_counts()
    print("Valid model names are:", file=sys.stderr)
    for model in models:
        n = counts.get(model.id, 0)
        print(f'    "{model.name}"    ({n} existing notes)', file=sys.stderr)


def _resolve(
    store: CollectionStore, deck_name: Optional[str], model_name: Optional[str]
):
    deck = model = None
    if deck_name is None:
        print(
            "Deck name was not provided and could not be loaded from the config file",
            file=sys.stderr,
        )
    else:
        try:
            deck = store.find_deck(deck_name)
        except UnknownDeckError as e:
            print(e, file=sys.stderr)
    if deck is None:
        _print_decks(store, store.decks())
        return None

    if model_name is None:
        print(
            "Model name was not provided and could not be loaded from the config file",
            file=sys.stderr,
        )
    else:
        try:
            model = store.find_model(model_name)
        except UnknownModelError as e:
            print(e, file=sys.stderr)
    if model is None:
        _print_models(store, store.models())
        return None

    return deck, model


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    # options may come before, between or after the fields
    opts = parser.parse_intermixed_args(argv)

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.DEBUG if opts.verbose else logging.WARNING,
    )

    command = opts.command.lower()
    if command not in COMMANDS:
        print(
            f"Command '{opts.command}' is unrecognised. Valid options are: "
            + ", ".join(f"'{c}'" for c in COMMANDS),
            file=sys.stderr,
        )
        return 1

    config_path = opts.config or default_config_path()
    config = load_configuration(config_path).override(
        database_path=opts.database_file, deck_name=opts.deck, model_name=opts.model
    )

    if config.database_path is None:
        print(
            "Database path was not provided as an argument and could not be loaded "
            "from the config file",
            file=sys.stderr,
        )
        return 1

    try:
        with CollectionStore.open(config.database_path) as store:
            resolved = _resolve(store, config.deck_name, config.model_name)
            if resolved is None:
                return 1
            deck, model = resolved

            fields = list(opts.args)
            print(f"Adding: {fields}")
            result = CollectionWriter(store).add_note(fields, model.id, deck.id, opts.tags)
    except CollectionError as e:
        print(e, file=sys.stderr)
        return 1

    print(
        f"New note {result.note_id} added with {len(result.card_ids)} card(s): "
        + ", ".join(str(cid) for cid in result.card_ids)
    )
    if result.duplicate_note_ids:
        print(
            "Warning: the first field duplicates existing note(s) "
            + ", ".join(str(nid) for nid in result.duplicate_note_ids),
            file=sys.stderr,
        )

    if config.dirty and not opts.no_store_config:
        write_configuration(config_path, config)
    return 0
