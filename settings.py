from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Mapping, Optional

from models import AppSetting
from scoring import AT_RISK_MIN_SEVERE, STANDOUT_LIMIT, ScoringWeights

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
SETTINGS_FILE = os.path.join(BASE_DIR, "scoring_settings.json")

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "20"))
REPORT_DEBOUNCE_SECONDS = float(os.getenv("REPORT_DEBOUNCE_SECONDS", "1.5"))
REPORT_POLL_SECONDS = float(os.getenv("REPORT_POLL_SECONDS", "30"))
SECRET_KEY = os.getenv("SECRET_KEY", "dev")

logger = logging.getLogger(__name__)

_DEFAULT_WEIGHTS = ScoringWeights()
DEFAULT_SCORING_SETTINGS: Dict[str, int] = {
    "weight_positive": _DEFAULT_WEIGHTS.positive,
    "weight_mild": _DEFAULT_WEIGHTS.mild,
    "weight_moderate": _DEFAULT_WEIGHTS.moderate,
    "weight_severe": _DEFAULT_WEIGHTS.severe,
    "standout_limit": STANDOUT_LIMIT,
    "at_risk_min_severe": AT_RISK_MIN_SEVERE,
}


def _check(key: str, value: int) -> None:
    if key == "weight_positive" and value <= 0:
        raise ValueError("weight_positive must be greater than zero")
    if key.startswith("weight_") and key != "weight_positive" and value > 0:
        raise ValueError(f"{key} must not be positive")
    if key in ("standout_limit", "at_risk_min_severe") and value < 1:
        raise ValueError(f"{key} must be at least 1")


def _merged(stored: Mapping[str, Any]) -> Dict[str, int]:
    """Defaults overlaid with the known, integer-valued keys of ``stored``."""
    settings = DEFAULT_SCORING_SETTINGS.copy()
    for key in settings:
        if key not in stored:
            continue
        try:
            settings[key] = int(stored[key])
        except (TypeError, ValueError):
            logger.warning("Ignoring non-integer scoring setting %s=%r", key, stored[key])
    return settings


class ScoringSettingsManager:
    """Scoring weights and ranking limits, kept in the database or a JSON file.

    With a session factory the ``app_settings`` table is authoritative; the
    JSON file only seeds it the first time. Without one the JSON file is used
    directly.
    """

    def __init__(
        self,
        storage_path: Optional[str] = None,
        session_factory: Callable | None = None,
    ):
        self.storage_path = storage_path or SETTINGS_FILE
        self._session_factory = session_factory
        self._settings = self._read()

    def _read(self) -> Dict[str, int]:
        if not self._session_factory:
            return _merged(self._read_file())
        with self._session_factory() as session:
            stored = {row.key: row.value for row in session.query(AppSetting).all()}
            if stored:
                return _merged(stored)
            seeded = _merged(self._read_file())
            session.add_all([AppSetting(key=key, value=value) for key, value in seeded.items()])
            session.commit()
            logger.info("Seeded scoring settings into the database")
            return seeded

    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self.storage_path, encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable scoring settings file %s", self.storage_path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, changed: Dict[str, int]) -> None:
        if self._session_factory:
            with self._session_factory() as session:
                for key, value in changed.items():
                    session.merge(AppSetting(key=key, value=value))
                session.commit()
            return
        folder = os.path.dirname(self.storage_path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        with open(self.storage_path, "w", encoding="utf-8") as handle:
            json.dump(self._settings, handle, indent=2, sort_keys=True)

    def update(self, overrides: Mapping[str, Any]) -> Dict[str, int]:
        """Apply known keys from ``overrides``; raises ValueError on an out of range value."""
        accepted = {}
        for key in self._settings.keys() & overrides.keys():
            try:
                value = int(overrides[key])
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be an integer") from None
            _check(key, value)
            accepted[key] = value
        changed = {key: value for key, value in accepted.items() if self._settings[key] != value}
        if changed:
            self._settings.update(changed)
            self._write(changed)
            logger.info("Scoring settings updated: %s", changed)
        return self.to_dict()

    def to_dict(self) -> Dict[str, int]:
        return dict(self._settings)

    def get(self, key: str) -> int:
        return self._settings[key]

    def weights(self) -> ScoringWeights:
        return ScoringWeights(
            positive=self.get("weight_positive"),
            mild=self.get("weight_mild"),
            moderate=self.get("weight_moderate"),
            severe=self.get("weight_severe"),
        )

    @property
    def standout_limit(self) -> int:
        return self.get("standout_limit")

    @property
    def at_risk_min_severe(self) -> int:
        return self.get("at_risk_min_severe")
