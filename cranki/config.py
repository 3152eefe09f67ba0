# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Remembered command-line settings (collection path, deck and note type)."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "cranki.json"


@dataclass
class Configuration:
    database_path: Optional[str] = None
    deck_name: Optional[str] = None
    model_name: Optional[str] = None
    # set when a command-line value differs from the stored one
    dirty: bool = field(default=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "database_path": self.database_path,
            "deck_name": self.deck_name,
            "model_name": self.model_name,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Configuration:
        return cls(
            database_path=d.get("database_path"),
            deck_name=d.get("deck_name"),
            model_name=d.get("model_name"),
        )

    def override(
        self,
        database_path: Optional[str] = None,
        deck_name: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> Configuration:
        """Return a copy with the given values replacing stored ones."""
        merged = Configuration(
            database_path=database_path if database_path is not None else self.database_path,
            deck_name=deck_name if deck_name is not None else self.deck_name,
            model_name=model_name if model_name is not None else self.model_name,
        )
        merged.dirty = self.dirty or merged != self
        return merged


def default_config_path() -> Path:
    base = os.getenv("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / CONFIG_FILENAME


def load_configuration(path: str | Path) -> Configuration:
    """Read the config file; a missing or unreadable file gives an empty one."""
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug("No configuration file at %s", path)
        return Configuration()
    except OSError as e:
        logger.error("Failed to open configuration file at %s: %s", path, e)
        return Configuration()

    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
    except ValueError as e:
        logger.error("Found configuration file at %s, but failed to parse it: %s", path, e)
        return Configuration()

    logger.debug("Loaded configuration from %s", path)
    return Configuration.from_dict(data)


def write_configuration(path: str | Path, config: Configuration) -> bool:
    """Write the config file. Returns False (and logs) if it could not be written."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
    except OSError as e:
        logger.error("Failed to write configuration to '%s': %s", path, e)
        return False
    logger.info("Configuration written to '%s'", path)
    return True
