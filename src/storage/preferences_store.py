from __future__ import annotations

import json
import logging
import re
from datetime import time
from pathlib import Path

from schedule_ai.models import SchedulePreferences

logger = logging.getLogger(__name__)

_SAFE_USER_ID = re.compile(r"[^A-Za-z0-9_.-]")


def _time_to_str(t: time) -> str:
    return t.strftime("%H:%M")


def _str_to_time(s: str) -> time:
    h, m = map(int, s.split(":")[:2])
    return time(h, m)


class PreferencesStore:
    """One JSON file of SchedulePreferences per user."""

    def __init__(self, directory: str = "data/preferences"):
        self.directory = Path(directory)

    def _path(self, user_id: str) -> Path:
        return self.directory / f"{_SAFE_USER_ID.sub('_', user_id)}.json"

    def load(self, user_id: str) -> SchedulePreferences:
        path = self._path(user_id)
        try:
            if not path.exists():
                return SchedulePreferences()

            data = json.loads(path.read_text(encoding="utf-8"))

            # times are stored as "HH:MM"
            for key in ("work_start", "work_end"):
                if isinstance(data.get(key), str):
                    data[key] = _str_to_time(data[key])
            for slot in data.get("excluded_slots") or []:
                for key in ("start", "end"):
                    if isinstance(slot.get(key), str):
                        slot[key] = _str_to_time(slot[key])

            return SchedulePreferences(**data)
        except Exception as e:
            logger.warning(f"Unreadable preferences for {user_id} at {path}, using defaults: {e}")
            return SchedulePreferences()

    def save(self, user_id: str, prefs: SchedulePreferences) -> None:
        path = self._path(user_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = prefs.model_dump()

        # convert time objects to strings for JSON
        data["work_start"] = _time_to_str(prefs.work_start)
        data["work_end"] = _time_to_str(prefs.work_end)
        data["excluded_slots"] = [
            {"start": _time_to_str(s.start), "end": _time_to_str(s.end), "reason": s.reason}
            for s in prefs.excluded_slots
        ]

        path.write_text(
            json.dumps(data, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
