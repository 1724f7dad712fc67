import datetime
import os
import sys

import pytest
from pydantic import ValidationError

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from models import (
    AppState,
    ExerciseCategory,
    ExerciseEntry,
    LastPerformanceEntry,
    LoggedSet,
    RoutePoint,
    SetType,
    WorkoutSession,
)


def test_set_type_defaults_to_working():
    assert LoggedSet(exercise_id="a", reps=5, weight=50).set_type == SetType.WORKING
    assert LoggedSet(exercise_id="a", reps=5, weight=50, set_type=None).set_type == SetType.WORKING
    assert LoggedSet(exercise_id="a", reps=5, weight=50, set_type="").set_type == SetType.WORKING


def test_lenient_enum_values():
    assert SetType("drop set") == SetType.DROP_SET
    assert SetType("DropSet") == SetType.DROP_SET
    assert SetType("warm_up") == SetType.WARM_UP
    assert ExerciseCategory("chest") == ExerciseCategory.CHEST
    with pytest.raises(ValueError):
        SetType("bogus")


def test_negative_values_rejected():
    with pytest.raises(ValidationError):
        LoggedSet(exercise_id="a", reps=-1, weight=10)
    with pytest.raises(ValidationError):
        LoggedSet(exercise_id="a", reps=1, weight=-10)
    with pytest.raises(ValidationError):
        RoutePoint(latitude=91, longitude=0, timestamp=datetime.datetime.now())


def test_session_dates_are_utc():
    naive = datetime.datetime(2024, 1, 2, 10, 0)
    session = WorkoutSession(date=naive, completed_at=naive)
    assert session.date.tzinfo == datetime.timezone.utc
    assert session.completed_at.tzinfo == datetime.timezone.utc


def test_iter_sets_positions_and_lookup():
    first = ExerciseEntry(
        exercise_id="a",
        sets=[LoggedSet(exercise_id="a", reps=5, weight=10), LoggedSet(exercise_id="a", reps=6, weight=10)],
    )
    second = ExerciseEntry(exercise_id="b", sets=[LoggedSet(exercise_id="b", reps=3, weight=20)])
    session = WorkoutSession(entries=[first, second])
    positions = [(pos, s.exercise_id) for pos, s in session.iter_sets()]
    assert positions == [(0, "a"), (1, "a"), (2, "b")]
    assert session.references_exercise("b")
    assert not session.references_exercise("c")
    entry, logged = session.find_set(second.sets[0].id)
    assert entry.id == second.id and logged.reps == 3
    assert session.find_set("missing") is None


def test_empty_last_performance_entry():
    assert LastPerformanceEntry(exercise_id="x").is_empty
    assert not LastPerformanceEntry(exercise_id="x", reps=8, weight=100).is_empty


def test_app_state_defaults():
    state = AppState()
    assert state.schema_version == 2
    assert state.active_session is None
    assert state.last_performance == {}
