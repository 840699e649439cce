"""Reference plan worker backed by a JSON template artifact.

The artifact maps each supported goal to a session template and nutrition
profile. The gateway treats this program as an opaque request -> plan function;
any program speaking the same frames can replace it.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List

from ..base import BaseWorker, create_worker_main

logger = logging.getLogger("plan_worker")

# kcal per gram
_KCAL = {"protein": 4, "carbs": 4, "fat": 9}


class PlanWorker(BaseWorker):
    """Template-based plan generator."""

    model_name = "template-planner"

    def load_model(self) -> Dict[str, Any]:
        """Load and sanity-check the template artifact."""
        with open(Path(self.model_path), "r", encoding="utf-8") as f:
            model = json.load(f)

        goals = model.get("goals")
        if not isinstance(goals, dict) or not goals:
            raise ValueError(f"Model artifact {self.model_path} defines no goals")
        if model.get("default_goal") not in goals:
            raise ValueError(f"Default goal {model.get('default_goal')!r} missing from artifact")

        self.model_name = model.get("name", self.model_name)
        logger.info(f"Loaded {len(goals)} goal templates: {', '.join(sorted(goals))}")
        return model

    def _pick_goal(self, goals: List[Any]) -> str:
        known = self._model["goals"]
        for goal in goals:
            if isinstance(goal, str) and goal in known:
                return goal
        return self._model["default_goal"]

    def infer(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Build a weekly plan for the first recognised goal."""
        goals = payload.get("goals") or []
        preferences = payload.get("preferences") or {}
        health = payload.get("healthData") or {}

        goal = self._pick_goal(goals)
        template = self._model["goals"][goal]
        sessions = template["sessions"]

        days = preferences.get("daysPerWeek")
        if not isinstance(days, int) or isinstance(days, bool) or not 1 <= days <= 7:
            days = len(sessions)

        workouts = []
        for day in range(days):
            session = sessions[day % len(sessions)]
            workouts.append({
                "day": day + 1,
                "focus": session["focus"],
                "exercises": [
                    {"name": name, "sets": session["sets"], "reps": session["reps"]}
                    for name in session["exercises"]
                ],
            })

        weight = health.get("weightKg")
        if isinstance(weight, (int, float)) and not isinstance(weight, bool) and weight > 0:
            calories = weight * self._model["calories_per_kg"]
        else:
            calories = self._model["base_calories"]
        calories = int(round(calories + template.get("calorie_adjustment", 0)))

        macros = {
            name: int(round(calories * ratio / _KCAL[name]))
            for name, ratio in template["macros"].items()
        }

        return {
            "planId": uuid.uuid4().hex,
            "type": template["type"],
            "durationWeeks": template["durationWeeks"],
            "workouts": workouts,
            "nutrition": {
                "goal": goal,
                "dailyCalories": calories,
                "macrosGrams": macros,
            },
        }


main = create_worker_main(PlanWorker)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
