import datetime
import json
import os
import sys
import unittest
from unittest import mock

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import persistence
from db import (
    AccountRepository,
    BodyWeightRepository,
    Database,
    ExerciseRepository,
    FolderRepository,
    PreferencesRepository,
    TemplateRepository,
    WorkoutRepository,
    default_exercise_library,
)
from errors import (
    CorruptionError,
    InvalidInputError,
    NotFoundError,
    ReferentialIntegrityError,
)
from models import (
    ExerciseEntry,
    LoggedSet,
    MeasurementSystem,
    SessionState,
    WorkoutSession,
)


def completed_session(exercise_id: str, reps: int, weight: float, day: int = 1) -> WorkoutSession:
    date = datetime.datetime(2024, 5, day, 9, tzinfo=datetime.timezone.utc)
    return WorkoutSession(
        name=f"Day {day}",
        date=date,
        completed_at=date + datetime.timedelta(hours=1),
        state=SessionState.COMPLETED,
        entries=[
            ExerciseEntry(
                exercise_id=exercise_id,
                sets=[LoggedSet(exercise_id=exercise_id, reps=reps, weight=weight)],
            )
        ],
    )


class DatabaseTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.dir = os.path.join(os.path.dirname(__file__), "tmp_db_state")
        os.makedirs(self.dir, exist_ok=True)
        self.path = os.path.join(self.dir, "training-state.json")
        if os.path.exists(self.path):
            os.remove(self.path)
        self.db = Database(self.dir)
        self.exercises = ExerciseRepository(self.db)
        self.folders = FolderRepository(self.db)
        self.templates = TemplateRepository(self.db)
        self.workouts = WorkoutRepository(self.db)

    def tearDown(self) -> None:
        self.db.close()
        for name in os.listdir(self.dir):
            os.remove(os.path.join(self.dir, name))
        os.rmdir(self.dir)

    def _stored(self) -> dict:
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def test_fresh_state_seeds_library_and_persists(self) -> None:
        self.assertTrue(os.path.exists(self.path))
        self.assertEqual(len(self.exercises.fetch_all()), len(default_exercise_library()))
        self.assertEqual(len(self._stored()["exercises"]), 17)

    def test_every_mutation_is_saved(self) -> None:
        self.exercises.add("Zercher Squat", category="Legs")
        names = [e["name"] for e in self._stored()["exercises"]]
        self.assertIn("Zercher Squat", names)
        reloaded = Database(self.dir)
        self.assertIsNotNone(ExerciseRepository(reloaded).find_by_name("zercher squat"))

    def test_validation_errors(self) -> None:
        with self.assertRaises(InvalidInputError):
            self.exercises.add("   ")
        with self.assertRaises(InvalidInputError):
            self.exercises.add("Thing", category="Nonsense")
        with self.assertRaises(InvalidInputError):
            self.exercises.add("Bench Press")
        with self.assertRaises(NotFoundError):
            self.exercises.fetch("missing")

    def test_add_if_needed_is_case_insensitive(self) -> None:
        first = self.exercises.add_if_needed("Sled Push")
        again = self.exercises.add_if_needed("  sled push ")
        self.assertEqual(first.id, again.id)
        self.assertTrue(first.is_custom)

    def test_referenced_exercise_cannot_be_deleted(self) -> None:
        bench = self.exercises.find_by_name("Bench Press")
        self.workouts.add(completed_session(bench.id, 5, 100))
        with self.assertRaises(ReferentialIntegrityError):
            self.exercises.delete(bench.id)
        with self.assertRaises(ReferentialIntegrityError):
            self.exercises.update(bench.id, name="Flat Bench")
        updated = self.exercises.update(bench.id, default_reps=5)
        self.assertEqual(updated.default_reps, 5)

    def test_exercise_used_by_active_draft_or_template_is_protected(self) -> None:
        custom = self.exercises.add("Landmine Press")
        template = self.templates.create("Push")
        item = self.templates.add_exercise(template.id, custom.id)
        with self.assertRaises(ReferentialIntegrityError):
            self.exercises.delete(custom.id)
        self.templates.remove_exercise(template.id, item.id)
        with self.db.transaction() as state:
            state.active_session = WorkoutSession(
                entries=[ExerciseEntry(exercise_id=custom.id)]
            )
        with self.assertRaises(ReferentialIntegrityError):
            self.exercises.delete(custom.id)
        with self.db.transaction() as state:
            state.active_session = None
        self.exercises.delete(custom.id)
        self.assertIsNone(self.exercises.find_by_name("Landmine Press"))

    def test_folder_delete_unassigns_templates(self) -> None:
        folder = self.folders.create("Strength")
        template = self.templates.create("Push", folder_id=folder.id)
        self.assertEqual(self.folders.fetch(folder.id).template_ids, [template.id])
        self.folders.delete(folder.id)
        remaining = self.templates.fetch(template.id)
        self.assertIsNone(remaining.folder_id)
        with self.assertRaises(NotFoundError):
            self.folders.fetch(folder.id)

    def test_template_delete_removes_folder_reference(self) -> None:
        folder = self.folders.create("Strength")
        template = self.templates.create("Push", folder_id=folder.id)
        self.templates.delete(template.id)
        self.assertEqual(self.folders.fetch(folder.id).template_ids, [])

    def test_folder_membership_is_exclusive(self) -> None:
        a = self.folders.create("A")
        b = self.folders.create("B")
        template = self.templates.create("Legs")
        self.folders.assign(template.id, a.id)
        self.folders.assign(template.id, b.id)
        self.folders.assign(template.id, b.id)
        self.assertEqual(self.folders.fetch(a.id).template_ids, [])
        self.assertEqual(self.folders.fetch(b.id).template_ids, [template.id])
        self.assertEqual(self.templates.fetch(template.id).folder_id, b.id)
        self.folders.assign(template.id, None)
        self.assertEqual(self.folders.fetch(b.id).template_ids, [])
        with self.assertRaises(InvalidInputError):
            self.folders.create("a")

    def test_template_editing(self) -> None:
        squat = self.exercises.find_by_name("Back Squat")
        row = self.exercises.find_by_name("Barbell Row")
        template = self.templates.create("Pull")
        first = self.templates.add_exercise(template.id, squat.id)
        second = self.templates.add_exercise(template.id, row.id, target_sets=5, target_reps=5, target_weight=60)
        self.assertEqual(first.target_reps, squat.default_reps)
        self.templates.reorder_exercises(template.id, [second.id, first.id])
        self.assertEqual(
            [i.id for i in self.templates.fetch(template.id).exercises], [second.id, first.id]
        )
        with self.assertRaises(InvalidInputError):
            self.templates.reorder_exercises(template.id, [first.id])
        self.templates.update_exercise(template.id, first.id, target_weight=100)
        clone = self.templates.clone(template.id, "Pull B")
        self.assertEqual(len(clone.exercises), 2)
        self.assertNotEqual(clone.exercises[0].id, second.id)
        self.templates.mark_used(clone.id)
        self.assertEqual([t.id for t in self.templates.fetch_recent()], [clone.id])

    def test_session_delete_is_idempotent_and_rebuilds_index(self) -> None:
        bench = self.exercises.find_by_name("Bench Press")
        old = self.workouts.add(completed_session(bench.id, 8, 100, day=1))
        new = self.workouts.add(completed_session(bench.id, 5, 120, day=2))
        self.assertEqual(self.db.index.lookup(bench.id).weight, 120)
        self.assertTrue(self.workouts.delete(new.id))
        self.assertFalse(self.workouts.delete(new.id))
        self.assertEqual(self.db.index.lookup(bench.id).weight, 100)
        removed = self.workouts.delete_many([old.id, "missing"])
        self.assertTrue(self.db.index.lookup(bench.id).is_empty)
        self.workouts.restore(removed)
        self.assertEqual(self.db.index.lookup(bench.id).weight, 100)
        self.assertTrue(self.db.index.matches(self.workouts.fetch_all()))

    def test_history_edit_refreshes_index(self) -> None:
        bench = self.exercises.find_by_name("Bench Press")
        session = self.workouts.add(completed_session(bench.id, 8, 100))
        set_id = session.entries[0].sets[0].id
        self.workouts.update_set(session.id, set_id, weight=102.5)
        self.assertEqual(self.db.index.lookup(bench.id).weight, 102.5)
        with self.assertRaises(InvalidInputError):
            self.workouts.update_set(session.id, set_id, reps=-2)

    def test_fetch_returns_copies(self) -> None:
        bench = self.exercises.find_by_name("Bench Press")
        bench.name = "Changed"
        self.assertEqual(self.exercises.fetch(bench.id).name, "Bench Press")

    def test_fetch_all_sessions_newest_first(self) -> None:
        bench = self.exercises.find_by_name("Bench Press")
        for day in (3, 1, 2):
            self.workouts.add(completed_session(bench.id, 5, 100, day=day))
        self.assertEqual([s.name for s in self.workouts.fetch_all()], ["Day 3", "Day 2", "Day 1"])
        self.assertEqual(len(self.workouts.fetch_on(datetime.date(2024, 5, 2))), 1)

    def test_cache_is_rebuilt_on_load(self) -> None:
        bench = self.exercises.find_by_name("Bench Press")
        self.workouts.add(completed_session(bench.id, 8, 100))
        data = self._stored()
        data["last_performance"][bench.id]["weight"] = 999
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        reloaded = Database(self.dir)
        self.assertEqual(reloaded.index.lookup(bench.id).weight, 100)

    def test_corrupt_document_fails_loudly(self) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("garbage")
        with self.assertRaises(CorruptionError):
            Database(self.dir)

    def test_save_failure_is_recorded_and_retried(self) -> None:
        with mock.patch.object(persistence.os, "replace", side_effect=OSError("read-only")):
            self.exercises.add("Farmer Carry")
        self.assertTrue(self.db.save_pending)
        self.assertIsNotNone(self.db.last_save_error)
        self.assertTrue(self.db.retry_pending())
        self.assertFalse(self.db.save_pending)
        self.assertIn("Farmer Carry", [e["name"] for e in self._stored()["exercises"]])

    def test_background_saves(self) -> None:
        self.db.close()
        self.db = Database(self.dir, background_saves=True)
        repo = ExerciseRepository(self.db)
        for i in range(10):
            repo.add(f"Drill {i}")
        self.db.flush()
        names = [e["name"] for e in self._stored()["exercises"]]
        self.assertIn("Drill 9", names)

    def test_deleted_library_stays_deleted_after_restart(self) -> None:
        for exercise in self.exercises.fetch_all():
            self.exercises.delete(exercise.id)
        self.db.close()
        self.db = Database(self.dir)
        self.assertEqual(ExerciseRepository(self.db).fetch_all(), [])

    def test_non_finite_history_edit_is_rejected(self) -> None:
        bench = self.exercises.find_by_name("Bench Press")
        session = self.workouts.add(completed_session(bench.id, 8, 100))
        set_id = session.entries[0].sets[0].id
        for value in (float("nan"), float("inf")):
            with self.assertRaises(InvalidInputError):
                self.workouts.update_set(session.id, set_id, weight=value)
        self.assertEqual(self._stored()["sessions"][0]["entries"][0]["sets"][0]["weight"], 100)
        self.assertEqual(Database(self.dir).index.lookup(bench.id).weight, 100)

    def test_reset_keeps_preferences(self) -> None:
        AccountRepository(self.db).create("Sam")
        PreferencesRepository(self.db).update(measurement_system="imperial")
        self.exercises.add("Custom Move")
        self.db.reset()
        self.assertFalse(AccountRepository(self.db).exists())
        self.assertIsNone(self.exercises.find_by_name("Custom Move"))
        self.assertEqual(
            PreferencesRepository(self.db).fetch().measurement_system,
            MeasurementSystem.IMPERIAL,
        )


class AccountAndBodyWeightTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db = Database()

    def test_account_lifecycle(self) -> None:
        accounts = AccountRepository(self.db)
        with self.assertRaises(NotFoundError):
            accounts.fetch()
        created = accounts.create("  Alex ", "alex@example.com ")
        self.assertEqual(created.display_name, "Alex")
        self.assertEqual(created.email, "alex@example.com")
        with self.assertRaises(InvalidInputError):
            accounts.create("Again")
        self.assertEqual(accounts.update(display_name="Al").display_name, "Al")

    def test_preferences_validation(self) -> None:
        prefs = PreferencesRepository(self.db)
        with self.assertRaises(InvalidInputError):
            prefs.update(colour="blue")
        with self.assertRaises(InvalidInputError):
            prefs.update(measurement_system="furlongs")
        self.assertFalse(prefs.update(week_starts_on_monday=False).week_starts_on_monday)

    def test_body_weight_log_and_change(self) -> None:
        weights = BodyWeightRepository(self.db)
        start = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
        self.assertIsNone(weights.change())
        weights.log(80, recorded_at=start)
        weights.log(176.37, unit="imperial", recorded_at=start + datetime.timedelta(days=10))
        self.assertAlmostEqual(weights.fetch_latest().weight_kg, 80.0, places=1)
        weights.log(78.5, recorded_at=start + datetime.timedelta(days=20))
        self.assertEqual(weights.change(30), -1.5)
        self.assertEqual(weights.change(5), None)
        self.assertEqual([kg for _, kg in weights.points()][0], 80)
        with self.assertRaises(InvalidInputError):
            weights.log(0)
        for value in (float("nan"), float("inf"), -3):
            with self.assertRaises(InvalidInputError):
                weights.log(value)

    def test_naive_body_weight_timestamp_is_utc(self) -> None:
        weights = BodyWeightRepository(self.db)
        weights.log(80)
        entry = weights.log(81, recorded_at=datetime.datetime(2024, 1, 1))
        self.assertEqual(entry.recorded_at.tzinfo, datetime.timezone.utc)
        self.assertEqual([e.weight_kg for e in weights.fetch_all()], [80, 81])
        weights.log(82, recorded_at=datetime.datetime(2024, 1, 2))
        self.assertEqual(len(weights.fetch_all()), 3)


if __name__ == "__main__":
    unittest.main()
