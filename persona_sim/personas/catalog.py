"""Persona catalog: immutable set of persona profiles loaded from JSON files."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from persona_sim.models import PersonaProfile

_log = logging.getLogger(__name__)


def _load_directory(directory: Path) -> tuple[PersonaProfile, ...]:
    """Parse every *.json file in directory (sorted by name); skip invalid ones."""
    if not directory.exists():
        _log.warning("personas directory %s does not exist; catalog is empty", directory)
        return ()

    files = sorted(p for p in directory.iterdir() if p.suffix == ".json")
    _log.info("found %d persona files in %s", len(files), directory)

    profiles: list[PersonaProfile] = []
    seen: set[str] = set()
    for path in files:
        try:
            profile = PersonaProfile.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            _log.error("failed to load persona file %s: %s", path.name, exc)
            continue
        if profile.user_id in seen:
            _log.error("duplicate persona userId %s in %s; skipped", profile.user_id, path.name)
            continue
        seen.add(profile.user_id)
        profiles.append(profile)

    _log.info("loaded %d personas", len(profiles))
    return tuple(profiles)


class PersonaCatalog:
    """Read-only persona catalog, built once at startup and passed where needed."""

    def __init__(self, profiles: tuple[PersonaProfile, ...] | list[PersonaProfile], source: Path | None = None) -> None:
        self._profiles = tuple(profiles)
        self._by_user_id = {p.user_id: p for p in self._profiles}
        self._source = source

    @classmethod
    def load(cls, directory: Path) -> "PersonaCatalog":
        return cls(_load_directory(directory), source=directory)

    def reload(self) -> "PersonaCatalog":
        """Return a fresh catalog read from the same directory. Dev/test tooling only."""
        if self._source is None:
            raise ValueError("catalog was not loaded from a directory; nothing to reload")
        _log.info("reloading personas from %s", self._source)
        return PersonaCatalog.load(self._source)

    def all(self) -> list[PersonaProfile]:
        return list(self._profiles)

    def get(self, user_id: str) -> PersonaProfile | None:
        return self._by_user_id.get(user_id)

    def __len__(self) -> int:
        return len(self._profiles)

    def __iter__(self) -> Iterator[PersonaProfile]:
        return iter(self._profiles)
