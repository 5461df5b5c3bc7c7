from __future__ import annotations
import json
import re
from llm.providers.base import LLMProvider

_TIME_HINT = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE)
_WORK_HOURS = re.compile(r"Work hours: (\d{2}):(\d{2})")


class MockProvider(LLMProvider):
    model = "mock"

    def generate(self, *, system: str, user: str, model: str | None = None) -> str:
        """
        Returns dummy JSON responses based on the prompt content.
        """
        # Entry analysis request
        if "Schedule entry:" in user:
            entry = user.split("Schedule entry:", 1)[1].strip()
            lower_entry = entry.lower()

            category = "work"
            if "meeting" in lower_entry or "call" in lower_entry:
                category = "meeting"
            elif "gym" in lower_entry or "run" in lower_entry or "doctor" in lower_entry:
                category = "health"
            elif "read" in lower_entry or "study" in lower_entry:
                category = "learning"

            # Simple completeness heuristic for demo purposes
            confidence = 0.5
            if entry:
                confidence += 0.2
            if _TIME_HINT.search(entry):
                confidence += 0.2

            return json.dumps({
                "title": entry[:50] or None,
                "description": None,
                "start_at": None,
                "end_at": None,
                "location": None,
                "priority": 3,
                "category": category,
                "importance": 0.5,
                "keywords": [],
                "confidence": round(confidence, 2),
            })

        # Optimization request: lay tasks out back to back from the start of the work day
        if "Tasks to schedule (JSON):" in user:
            tasks = json.loads(user.split("Tasks to schedule (JSON):", 1)[1])
            hours = _WORK_HOURS.search(user)
            cursor = int(hours.group(1)) * 60 + int(hours.group(2)) if hours else 9 * 60

            slots = []
            for task in tasks:
                duration = int(task.get("duration_minutes", 30))
                end = cursor + duration
                if end > 23 * 60 + 59:
                    break
                slots.append({
                    "task_id": task["id"],
                    "task_title": task["title"],
                    "start_time": f"{cursor // 60:02d}:{cursor % 60:02d}",
                    "end_time": f"{end // 60:02d}:{end % 60:02d}",
                    "duration_minutes": duration,
                    "priority": task.get("priority", "medium"),
                    "category": task.get("category"),
                    "reasoning": "Placed in input order",
                    "suitability_score": 0.8,
                    "can_be_rescheduled": True,
                    "reminder_minutes_before": 15,
                })
                cursor = end + 10

            placed = {s["task_id"] for s in slots}
            return json.dumps({
                "schedule_slots": slots,
                "optimization_summary": {"recommendations": []},
                "unplaced_task_ids": [t["id"] for t in tasks if t["id"] not in placed],
            })

        # Default fallback
        return "{}"
