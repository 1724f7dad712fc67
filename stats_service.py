from __future__ import annotations
import datetime
from typing import Dict, Iterable, List, Optional

from db import (
    BodyWeightRepository,
    ExerciseRepository,
    PreferencesRepository,
    WorkoutRepository,
)
from models import (
    AchievementBadge,
    MeasurementSystem,
    PRType,
    WorkoutSession,
    utcnow,
)
from run_tracking import fastest_km_pace, format_pace
from tools import DistanceConverter, MathTools, WeightConverter

RUNNING_LOAD_PER_KM = 62.137
PR_EPSILON = 0.001


def lifting_load(session: WorkoutSession) -> float:
    """Sum of weight times reps over the completed sets of ``session``."""
    return MathTools.volume(
        (s.reps, s.weight) for _, s in session.iter_sets() if s.completed
    )


def running_load(session: WorkoutSession) -> float:
    km = max(0.0, session.run.distance_km) if session.run is not None else 0.0
    return km * RUNNING_LOAD_PER_KM


def week_start(day: datetime.datetime | datetime.date, monday: bool = True) -> datetime.date:
    """Return the first day of the week containing ``day``."""
    if isinstance(day, datetime.datetime):
        day = day.date()
    offset = day.weekday() if monday else (day.weekday() + 1) % 7
    return day - datetime.timedelta(days=offset)


class StatisticsService:
    """Compute workout statistics for analysis."""

    def __init__(
        self,
        workout_repo: WorkoutRepository,
        exercise_repo: ExerciseRepository,
        preferences_repo: PreferencesRepository | None = None,
        body_weight_repo: BodyWeightRepository | None = None,
    ) -> None:
        self.workouts = workout_repo
        self.exercises = exercise_repo
        self.preferences = preferences_repo
        self.body_weights = body_weight_repo

    def _imperial(self) -> bool:
        if self.preferences is None:
            return False
        return self.preferences.fetch().measurement_system == MeasurementSystem.IMPERIAL

    def _monday(self) -> bool:
        if self.preferences is None:
            return True
        return self.preferences.fetch().week_starts_on_monday

    def _weight_text(self, kg: float) -> str:
        if self._imperial():
            return f"{WeightConverter.kg_to_lb(kg):.1f} lb"
        return f"{kg:.1f} kg"

    def _distance_text(self, km: float) -> str:
        if self._imperial():
            return f"{DistanceConverter.km_to_mi(km):.2f} mi"
        return f"{km:.2f} km"

    def _name(self, exercise_id: str) -> str:
        try:
            return self.exercises.fetch(exercise_id).name
        except ValueError:
            return "Exercise"

    @staticmethod
    def session_volume(session: WorkoutSession) -> float:
        return round(lifting_load(session), 2)

    def exercise_history(self, exercise_id: str) -> List[Dict[str, float]]:
        """Every completed set of ``exercise_id``, oldest first."""
        history = []
        for session in self.workouts.fetch_all(descending=False):
            for _, logged in session.iter_sets():
                if logged.exercise_id != exercise_id or not logged.completed:
                    continue
                history.append(
                    {
                        "session_id": session.id,
                        "date": session.date.date().isoformat(),
                        "reps": logged.reps,
                        "weight": logged.weight,
                        "set_type": logged.set_type.value,
                        "volume": logged.reps * logged.weight,
                        "est_1rm": round(MathTools.epley_1rm(logged.weight, logged.reps), 2),
                    }
                )
        return history

    def progress_points(self, exercise_id: str) -> List[Dict[str, float]]:
        """Per-session top weight, best estimated 1RM and volume."""
        by_session: Dict[str, Dict[str, float]] = {}
        for item in self.exercise_history(exercise_id):
            point = by_session.setdefault(
                item["session_id"],
                {"date": item["date"], "top_weight": 0.0, "est_1rm": 0.0, "volume": 0.0},
            )
            point["top_weight"] = max(point["top_weight"], item["weight"])
            point["est_1rm"] = max(point["est_1rm"], item["est_1rm"])
            point["volume"] += item["volume"]
        return [
            {**p, "volume": round(p["volume"], 2)} for p in by_session.values()
        ]

    def exercises_with_history(self) -> List[Dict[str, object]]:
        counts: Dict[str, int] = {}
        for session in self.workouts.fetch_all():
            for _, logged in session.iter_sets():
                if logged.completed:
                    counts[logged.exercise_id] = counts.get(logged.exercise_id, 0) + 1
        result = [
            {"exercise_id": eid, "name": self._name(eid), "sets": n}
            for eid, n in counts.items()
        ]
        return sorted(result, key=lambda x: str(x["name"]).casefold())

    def totals(self) -> Dict[str, float]:
        sessions = self.workouts.fetch_all()
        return {
            "sessions": len(sessions),
            "sets": sum(
                1 for s in sessions for _, logged in s.iter_sets() if logged.completed
            ),
            "volume": round(sum(lifting_load(s) for s in sessions), 2),
            "run_distance_km": round(
                sum(s.run.distance_km for s in sessions if s.run is not None), 3
            ),
        }

    def personal_records(self, exercise_id: Optional[str] = None) -> List[Dict[str, float]]:
        """Return the best set for each exercise based on estimated 1RM."""
        records: Dict[str, Dict[str, float]] = {}
        for session in self.workouts.fetch_all(descending=False):
            for _, logged in session.iter_sets():
                if not logged.completed:
                    continue
                if exercise_id is not None and logged.exercise_id != exercise_id:
                    continue
                est = MathTools.epley_1rm(logged.weight, logged.reps)
                current = records.get(logged.exercise_id)
                if current is None or est > current["est_1rm"]:
                    records[logged.exercise_id] = {
                        "exercise_id": logged.exercise_id,
                        "date": session.date.date().isoformat(),
                        "reps": logged.reps,
                        "weight": logged.weight,
                        "est_1rm": round(est, 2),
                    }
        return sorted(records.values(), key=lambda x: x["date"])

    def detect_achievements(
        self,
        session: WorkoutSession,
        previous: Optional[Iterable[WorkoutSession]] = None,
    ) -> List[AchievementBadge]:
        """Personal records set by ``session`` compared with ``previous``."""
        if previous is None:
            previous = [s for s in self.workouts.fetch_all() if s.id != session.id]
        previous = list(previous)
        occurred = session.completed_at or utcnow()
        badges: List[AchievementBadge] = []

        for entry in session.entries:
            done = [s for s in entry.sets if s.completed]
            if not done:
                continue
            past = [
                logged
                for old in previous
                for _, logged in old.iter_sets()
                if logged.exercise_id == entry.exercise_id and logged.completed
            ]
            heaviest = max(s.weight for s in done)
            best = max(MathTools.epley_1rm(s.weight, s.reps) for s in done)
            past_heaviest = max((s.weight for s in past), default=0.0)
            past_best = max(
                (MathTools.epley_1rm(s.weight, s.reps) for s in past), default=0.0
            )
            name = self._name(entry.exercise_id)
            if heaviest > past_heaviest + PR_EPSILON:
                badges.append(
                    AchievementBadge(
                        type=PRType.HEAVIEST_SET,
                        title=f"{name}: Heaviest Set PR",
                        value_text=self._weight_text(heaviest),
                        occurred_at=occurred,
                    )
                )
            if best > past_best + PR_EPSILON:
                badges.append(
                    AchievementBadge(
                        type=PRType.ESTIMATED_1RM,
                        title=f"{name}: Estimated 1RM PR",
                        value_text=self._weight_text(best),
                        occurred_at=occurred,
                    )
                )

        run = session.run
        if run is not None:
            longest = max(
                (s.run.distance_km for s in previous if s.run is not None), default=0.0
            )
            if run.distance_km > longest + PR_EPSILON:
                badges.append(
                    AchievementBadge(
                        type=PRType.LONGEST_RUN,
                        title="Longest Run PR",
                        value_text=self._distance_text(run.distance_km),
                        occurred_at=occurred,
                    )
                )
            fastest = fastest_km_pace(run)
            past_paces = [
                p
                for p in (fastest_km_pace(s.run) for s in previous if s.run is not None)
                if p is not None
            ]
            if fastest is not None and (not past_paces or fastest < min(past_paces)):
                badges.append(
                    AchievementBadge(
                        type=PRType.FASTEST_KM,
                        title="Fastest Kilometre PR",
                        value_text=format_pace(fastest),
                        occurred_at=occurred,
                    )
                )
        return badges

    def achievement_timeline(self, limit: Optional[int] = None) -> List[AchievementBadge]:
        """All earned badges, newest first."""
        badges = [b for s in self.workouts.fetch_all() for b in s.achievements]
        badges.sort(key=lambda b: b.occurred_at, reverse=True)
        return badges[:limit] if limit is not None else badges

    def weekly_load(
        self, day: datetime.date | datetime.datetime | None = None
    ) -> Dict[str, object]:
        """Training load for the week containing ``day`` (default today)."""
        start = week_start(day or utcnow(), self._monday())
        end = start + datetime.timedelta(days=7)
        in_week = [
            s
            for s in self.workouts.fetch_all()
            if start <= (s.completed_at or s.date).date() < end
        ]
        lifting = sum(lifting_load(s) for s in in_week)
        running = sum(running_load(s) for s in in_week)
        return {
            "week_start": start.isoformat(),
            "week_end": end.isoformat(),
            "sessions": len(in_week),
            "lifting_load": round(lifting, 2),
            "running_load": round(running, 2),
            "total_load": round(lifting + running, 2),
        }

    def weekly_loads(
        self, weeks: int = 8, day: datetime.date | datetime.datetime | None = None
    ) -> List[Dict[str, object]]:
        """Loads for ``weeks`` consecutive weeks ending with the current one."""
        anchor = week_start(day or utcnow(), self._monday())
        return [
            self.weekly_load(anchor - datetime.timedelta(weeks=offset))
            for offset in range(weeks - 1, -1, -1)
        ]

    def week_over_week_delta(
        self, day: datetime.date | datetime.datetime | None = None
    ) -> Optional[float]:
        """Percent change of total load against the previous week."""
        this_week = self.weekly_load(day)
        last_start = datetime.date.fromisoformat(this_week["week_start"]) - datetime.timedelta(days=7)
        last_week = self.weekly_load(last_start)
        delta = MathTools.percent_change(this_week["total_load"], last_week["total_load"])
        return round(delta, 2) if delta is not None else None

    def body_weight_history(self) -> List[Dict[str, float]]:
        if self.body_weights is None:
            return []
        imperial = self._imperial()
        return [
            {
                "date": recorded.date().isoformat(),
                "weight": WeightConverter.kg_to_lb(kg) if imperial else kg,
            }
            for recorded, kg in self.body_weights.points()
        ]
