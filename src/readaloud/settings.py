from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping

from .library import Library

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = ".readaloud-settings.json"
RATE_RANGE = (0.5, 2.0)
PITCH_RANGE = (0.5, 2.0)
_INVALID = object()


@dataclass(frozen=True)
class PlaybackSettings:
    rate: float = 1.0
    pitch: float = 1.0
    voice: str | None = None

    def as_payload(self) -> dict[str, object]:
        return {"rate": self.rate, "pitch": self.pitch, "voice": self.voice}

    def merged(self, payload: object) -> "PlaybackSettings":
        """Return a copy with the valid fields of ``payload`` applied."""
        if not isinstance(payload, Mapping):
            return self
        changes: dict[str, object] = {}
        rate = _ranged_float(payload.get("rate"), RATE_RANGE)
        if rate is not None:
            changes["rate"] = rate
        pitch = _ranged_float(payload.get("pitch"), PITCH_RANGE)
        if pitch is not None:
            changes["pitch"] = pitch
        if "voice" in payload:
            voice = _voice_value(payload.get("voice"))
            if voice is not _INVALID:
                changes["voice"] = voice
        return replace(self, **changes) if changes else self

    @classmethod
    def from_payload(cls, payload: object) -> "PlaybackSettings":
        return cls().merged(payload)


def _voice_value(value: object) -> object:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return str(value).strip()
    return _INVALID


def _ranged_float(value: object, bounds: tuple[float, float]) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    low, high = bounds
    if not low <= float(value) <= high:
        return None
    return float(value)


def settings_path(root: Path) -> Path:
    return Path(root) / SETTINGS_FILENAME


def _load_global_payload(root: Path) -> dict[str, object]:
    path = settings_path(root)
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("Ignoring unreadable settings file %s: %s", path, exc)
        return {}
    return raw if isinstance(raw, dict) else {}


def _clean_patch(patch: Mapping[str, object]) -> dict[str, object]:
    cleaned: dict[str, object] = {}
    for key, bounds in (("rate", RATE_RANGE), ("pitch", PITCH_RANGE)):
        value = _ranged_float(patch.get(key), bounds)
        if value is not None:
            cleaned[key] = value
    if "voice" in patch:
        voice = _voice_value(patch["voice"])
        if voice is not _INVALID:
            cleaned["voice"] = voice
    return cleaned


def load_settings(root: Path, book_id: str | None = None) -> PlaybackSettings:
    """Defaults, overridden by the global file, overridden by the book's record."""
    settings = PlaybackSettings.from_payload(_load_global_payload(root))
    if book_id is None:
        return settings
    record = Library(root).load_book(book_id)
    if record is None:
        return settings
    return settings.merged(record.settings)


def save_settings(
    root: Path, patch: Mapping[str, object], book_id: str | None = None
) -> PlaybackSettings:
    cleaned = _clean_patch(patch)
    if book_id is not None:
        Library(root).update_settings(book_id, cleaned)
        return load_settings(root, book_id)
    current = _load_global_payload(root)
    current.update(cleaned)
    path = settings_path(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(current, ensure_ascii=False, indent=2), encoding="utf-8")
    return load_settings(root)
