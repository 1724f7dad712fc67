"""Entity models persisted in the training state document.

The document root is :class:`AppState`. Every entity is a pydantic model so the
whole state can be validated on load and dumped back to JSON without a separate
mapping layer.
"""

from __future__ import annotations

import datetime
import re
from enum import Enum
from typing import Iterator, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

SCHEMA_VERSION = 2


def new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


class _LenientEnum(str, Enum):
    """Enum accepting values regardless of case, spaces and dashes."""

    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, str):
            return None
        key = re.sub(r"[^a-z0-9]", "", value.lower())
        for member in cls:
            if re.sub(r"[^a-z0-9]", "", member.value.lower()) == key:
                return member
            if member.name.replace("_", "").lower() == key:
                return member
        return None


class ExerciseCategory(_LenientEnum):
    CHEST = "Chest"
    BACK = "Back"
    LEGS = "Legs"
    SHOULDERS = "Shoulders"
    ARMS = "Arms"
    CORE = "Core"
    CARDIO = "Cardio"
    RUNNING = "Running"
    CUSTOM = "Custom"


class Equipment(_LenientEnum):
    NONE = "None"
    DUMBBELLS = "Dumbbells"
    BARBELL = "Barbell"
    MACHINE = "Machine"
    CABLE = "Cable"


class SetType(_LenientEnum):
    WARM_UP = "Warm-Up"
    WORKING = "Working"
    FAILURE = "Failure"
    DROP_SET = "Drop Set"


class SessionState(_LenientEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"


class RunMode(_LenientEnum):
    MANUAL = "Manual"
    GPS = "GPS"


class DistanceSource(_LenientEnum):
    MANUAL = "manual"
    GPS = "gps"
    ESTIMATED = "estimated"


class MeasurementSystem(_LenientEnum):
    METRIC = "metric"
    IMPERIAL = "imperial"


class PRType(_LenientEnum):
    HEAVIEST_SET = "heaviest_set"
    ESTIMATED_1RM = "estimated_1rm"
    FASTEST_KM = "fastest_km"
    LONGEST_RUN = "longest_run"


class Account(BaseModel):
    id: str = Field(default_factory=new_id)
    display_name: str
    email: str = ""
    created_at: datetime.datetime = Field(default_factory=utcnow)


class Preferences(BaseModel):
    measurement_system: MeasurementSystem = MeasurementSystem.METRIC
    week_starts_on_monday: bool = True
    default_run_mode: RunMode = RunMode.MANUAL


class Exercise(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    category: ExerciseCategory = ExerciseCategory.CUSTOM
    is_custom: bool = False
    equipment: Equipment = Equipment.NONE
    default_sets: Optional[int] = Field(default=None, ge=1)
    default_reps: Optional[int] = Field(default=None, ge=0)
    default_weight: Optional[float] = Field(default=None, ge=0)


class TemplateExercise(BaseModel):
    id: str = Field(default_factory=new_id)
    exercise_id: str
    target_sets: int = Field(default=3, ge=1)
    target_reps: int = Field(default=8, ge=0)
    target_weight: Optional[float] = Field(default=None, ge=0)


class Template(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    notes: str = ""
    exercises: list[TemplateExercise] = Field(default_factory=list)
    folder_id: Optional[str] = None
    created_at: datetime.datetime = Field(default_factory=utcnow)
    last_used: Optional[datetime.datetime] = None


class Folder(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    template_ids: list[str] = Field(default_factory=list)


class LoggedSet(BaseModel):
    id: str = Field(default_factory=new_id)
    exercise_id: str
    reps: int = Field(ge=0)
    weight: float = Field(ge=0)
    set_type: SetType = SetType.WORKING
    notes: str = ""
    completed: bool = True

    @field_validator("set_type", mode="before")
    @classmethod
    def _default_set_type(cls, value):
        if value is None or value == "":
            return SetType.WORKING
        return value


class ExerciseEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    exercise_id: str
    notes: str = ""
    sets: list[LoggedSet] = Field(default_factory=list)


class RoutePoint(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    timestamp: datetime.datetime

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, value: datetime.datetime) -> datetime.datetime:
        return _as_utc(value)


class RunSplit(BaseModel):
    index: int
    distance_km: float
    duration_seconds: int
    pace_sec_per_km: int


class Run(BaseModel):
    mode: RunMode = RunMode.MANUAL
    distance_km: float = Field(default=0.0, ge=0)
    duration_seconds: int = Field(default=0, ge=0)
    notes: str = ""
    route: list[RoutePoint] = Field(default_factory=list)
    splits: list[RunSplit] = Field(default_factory=list)
    avg_pace_sec_per_km: Optional[int] = None
    distance_source: DistanceSource = DistanceSource.MANUAL


class AchievementBadge(BaseModel):
    id: str = Field(default_factory=new_id)
    type: PRType
    title: str
    value_text: str
    occurred_at: datetime.datetime


class WorkoutSession(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = "New Session"
    date: datetime.datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime.datetime] = None
    notes: str = ""
    entries: list[ExerciseEntry] = Field(default_factory=list)
    run: Optional[Run] = None
    state: SessionState = SessionState.DRAFT
    template_id: Optional[str] = None
    achievements: list[AchievementBadge] = Field(default_factory=list)

    @field_validator("date", "completed_at")
    @classmethod
    def _utc_date(cls, value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return _as_utc(value) if value is not None else None

    def iter_sets(self) -> Iterator[tuple[int, LoggedSet]]:
        """Yield ``(position, set)`` pairs in in-session order."""
        position = 0
        for entry in self.entries:
            for logged in entry.sets:
                yield position, logged
                position += 1

    def references_exercise(self, exercise_id: str) -> bool:
        if any(entry.exercise_id == exercise_id for entry in self.entries):
            return True
        return any(s.exercise_id == exercise_id for _, s in self.iter_sets())

    def find_entry(self, entry_id: str) -> Optional[ExerciseEntry]:
        return next((e for e in self.entries if e.id == entry_id), None)

    def find_set(self, set_id: str) -> Optional[tuple[ExerciseEntry, LoggedSet]]:
        for entry in self.entries:
            for logged in entry.sets:
                if logged.id == set_id:
                    return entry, logged
        return None


class LastPerformanceEntry(BaseModel):
    exercise_id: str
    reps: Optional[int] = None
    weight: Optional[float] = None
    set_type: SetType = SetType.WORKING
    session_id: Optional[str] = None
    session_date: Optional[datetime.datetime] = None
    position: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.reps is None and self.weight is None


class BodyWeightEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    recorded_at: datetime.datetime = Field(default_factory=utcnow)
    weight_kg: float = Field(gt=0)
    note: str = ""

    @field_validator("recorded_at")
    @classmethod
    def _utc_recorded_at(cls, value: datetime.datetime) -> datetime.datetime:
        return _as_utc(value)


class AppState(BaseModel):
    schema_version: int = SCHEMA_VERSION
    account: Optional[Account] = None
    preferences: Preferences = Field(default_factory=Preferences)
    exercises: list[Exercise] = Field(default_factory=list)
    folders: list[Folder] = Field(default_factory=list)
    templates: list[Template] = Field(default_factory=list)
    sessions: list[WorkoutSession] = Field(default_factory=list)
    active_session: Optional[WorkoutSession] = None
    last_performance: dict[str, LastPerformanceEntry] = Field(default_factory=dict)
    body_weights: list[BodyWeightEntry] = Field(default_factory=list)
