from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol

from PySide6 import QtCore

from .models import ResumeState

logger = logging.getLogger(__name__)

RESUME_STATE_KEY = "neon-resume-state"


class PersistencePort(Protocol):
    def save(self, key: str, doc: dict[str, Any]) -> None: ...

    def load(self, key: str) -> Optional[dict[str, Any]]: ...


def _decode(key: str, raw: Any) -> Optional[dict[str, Any]]:
    if raw is None or raw == "":
        return None
    try:
        doc = json.loads(str(raw))
    except json.JSONDecodeError as e:
        logger.warning("Ignoring unreadable stored document %s: %s", key, e)
        return None
    if not isinstance(doc, dict):
        logger.warning("Ignoring stored document %s: not an object", key)
        return None
    return doc


class QSettingsStore:
    """Stores documents as JSON strings in QSettings under a ``presets/`` group."""

    def __init__(self, settings: Optional[QtCore.QSettings] = None, group: str = "presets"):
        self.settings = settings if settings is not None else QtCore.QSettings("NeonMaster", "NeonMaster")
        self.group = group

    def _key(self, key: str) -> str:
        return f"{self.group}/{key}" if self.group else key

    def save(self, key: str, doc: dict[str, Any]) -> None:
        self.settings.setValue(self._key(key), json.dumps(doc))
        self.settings.sync()

    def load(self, key: str) -> Optional[dict[str, Any]]:
        return _decode(key, self.settings.value(self._key(key), None))

    def remove(self, key: str) -> None:
        self.settings.remove(self._key(key))


class MemoryStore:
    def __init__(self):
        self._docs: dict[str, str] = {}

    def save(self, key: str, doc: dict[str, Any]) -> None:
        self._docs[key] = json.dumps(doc)

    def load(self, key: str) -> Optional[dict[str, Any]]:
        return _decode(key, self._docs.get(key))

    def remove(self, key: str) -> None:
        self._docs.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._docs)


def save_resume_state(store: PersistencePort, state: ResumeState) -> None:
    store.save(RESUME_STATE_KEY, state.to_dict())


def load_resume_state(store: PersistencePort) -> ResumeState:
    doc = store.load(RESUME_STATE_KEY)
    if doc is None:
        return ResumeState()
    return ResumeState.from_dict(doc)
