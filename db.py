import datetime
import math
import os
import threading
from contextlib import contextmanager
from typing import Callable, Iterable, List, Optional

from loguru import logger

from errors import (
    InvalidInputError,
    NotFoundError,
    PersistenceError,
    ReferentialIntegrityError,
)
from last_performance import LastPerformanceIndex
from models import (
    Account,
    AppState,
    BodyWeightEntry,
    Equipment,
    Exercise,
    ExerciseCategory,
    Folder,
    LoggedSet,
    MeasurementSystem,
    Preferences,
    SessionState,
    SetType,
    Template,
    TemplateExercise,
    WorkoutSession,
    new_id,
    utcnow,
)
from persistence import BackgroundSaver, PersistenceGateway
from tools import WeightConverter

DEFAULT_STATE_FILENAME = "training-state.json"

_DEFAULT_EXERCISES = [
    ("Bench Press", ExerciseCategory.CHEST, Equipment.BARBELL, 3, 8),
    ("Incline Dumbbell Press", ExerciseCategory.CHEST, Equipment.DUMBBELLS, 3, 10),
    ("Push-Up", ExerciseCategory.CHEST, Equipment.NONE, 3, 12),
    ("Pull-Up", ExerciseCategory.BACK, Equipment.NONE, 3, 8),
    ("Barbell Row", ExerciseCategory.BACK, Equipment.BARBELL, 3, 8),
    ("Lat Pulldown", ExerciseCategory.BACK, Equipment.MACHINE, 3, 10),
    ("Back Squat", ExerciseCategory.LEGS, Equipment.BARBELL, 3, 6),
    ("Romanian Deadlift", ExerciseCategory.LEGS, Equipment.BARBELL, 3, 8),
    ("Walking Lunge", ExerciseCategory.LEGS, Equipment.DUMBBELLS, 3, 10),
    ("Overhead Press", ExerciseCategory.SHOULDERS, Equipment.BARBELL, 3, 8),
    ("Lateral Raise", ExerciseCategory.SHOULDERS, Equipment.DUMBBELLS, 3, 12),
    ("Biceps Curl", ExerciseCategory.ARMS, Equipment.DUMBBELLS, 3, 10),
    ("Triceps Pressdown", ExerciseCategory.ARMS, Equipment.CABLE, 3, 10),
    ("Plank", ExerciseCategory.CORE, Equipment.NONE, 3, 1),
    ("Cable Crunch", ExerciseCategory.CORE, Equipment.CABLE, 3, 12),
    ("Treadmill Run", ExerciseCategory.RUNNING, Equipment.MACHINE, 1, 1),
    ("Outdoor Run", ExerciseCategory.RUNNING, Equipment.NONE, 1, 1),
]


def default_exercise_library() -> List[Exercise]:
    return [
        Exercise(
            name=name,
            category=category,
            equipment=equipment,
            default_sets=sets,
            default_reps=reps,
        )
        for name, category, equipment, sets, reps in _DEFAULT_EXERCISES
    ]


def clean_name(name: Optional[str], what: str = "name") -> str:
    clean = (name or "").strip()
    if not clean:
        raise InvalidInputError(f"{what} must not be empty")
    return clean


def check_reps(reps: int) -> int:
    if (
        reps is None
        or isinstance(reps, bool)
        or not math.isfinite(reps)
        or int(reps) != reps
        or reps < 0
    ):
        raise InvalidInputError("reps must be a non-negative integer")
    return int(reps)


def check_weight(weight: float, what: str = "weight") -> float:
    # NaN and infinity are not valid JSON and would make the document unloadable
    if weight is None or not math.isfinite(weight) or weight < 0:
        raise InvalidInputError(f"{what} must be a finite non-negative number")
    return float(weight)


def check_duration(seconds: int) -> int:
    if seconds is None or not math.isfinite(seconds) or seconds < 0:
        raise InvalidInputError("duration must be a finite non-negative number")
    return int(seconds)


def parse_enum(enum_cls, value, what: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidInputError(f"unknown {what}: {value!r}")


class Database:
    """Owns the canonical state document and serializes every mutation.

    All repositories share one ``Database``. Mutations run inside
    :meth:`transaction`, which holds the mutation lock, runs registered
    pre-mutation hooks (GPS route draining) and persists the document once the
    outermost transaction completes.
    """

    def __init__(
        self,
        data_dir: Optional[str] = None,
        *,
        filename: str = DEFAULT_STATE_FILENAME,
        gateway: Optional[PersistenceGateway] = None,
        state: Optional[AppState] = None,
        background_saves: bool = False,
    ) -> None:
        self._lock = threading.RLock()
        self._flag_lock = threading.Lock()
        self._depth = 0
        self._seq = 0
        self._failed_seq = 0
        self._hooks: list[Callable[[AppState], None]] = []
        self._saver: Optional[BackgroundSaver] = None
        self.save_pending = False
        self.last_save_error: Optional[PersistenceError] = None
        if gateway is None and data_dir is not None:
            gateway = PersistenceGateway(os.path.join(data_dir, filename))
        self.gateway = gateway
        self.index = LastPerformanceIndex()

        fresh = False
        if state is None:
            state = self.gateway.load() if self.gateway is not None else None
            if state is None:
                state = AppState(exercises=default_exercise_library())
                fresh = True
        self.state = state
        self._sync_index()

        if background_saves and self.gateway is not None:
            self._saver = BackgroundSaver(
                self.gateway,
                on_error=self._record_failure,
                on_success=self._record_success,
            )
            self._saver.start()
        if fresh:
            self.persist()

    def _sync_index(self) -> None:
        self.index.rebuild(self.state.sessions)
        rebuilt = self.index.snapshot()
        if self.state.last_performance and self.state.last_performance != rebuilt:
            logger.warning("Stored last-performance cache diverged from history; rebuilt")
        self.state.last_performance = rebuilt

    def add_pre_mutation_hook(self, hook: Callable[[AppState], None]) -> None:
        self._hooks.append(hook)

    @contextmanager
    def read(self):
        with self._lock:
            yield self.state

    @contextmanager
    def transaction(self, save: bool = True):
        with self._lock:
            if self._depth == 0:
                for hook in self._hooks:
                    hook(self.state)
            self._depth += 1
            try:
                yield self.state
            finally:
                self._depth -= 1
            if self._depth == 0 and save:
                self.persist()

    def rebuild_index(self) -> None:
        with self._lock:
            self.index.rebuild(self.state.sessions)

    def persist(self) -> None:
        """Queue (or write) a snapshot of the current state."""
        if self.gateway is None:
            return
        with self._lock:
            self.state.last_performance = self.index.snapshot()
            self._seq += 1
            seq = self._seq
            payload = self.gateway.dumps(self.state)
            if self._saver is not None:
                self._saver.submit(seq, payload)
                return
            try:
                self.gateway.write(payload)
            except PersistenceError as exc:
                logger.warning("Save #{} failed: {}", seq, exc)
                self._record_failure(seq, exc)
            else:
                self._record_success(seq)

    def save_now(self) -> None:
        """Write the current state synchronously, raising on failure."""
        if self.gateway is None:
            return
        with self._lock:
            # Queued snapshots are older than this one and must land first.
            self.flush()
            self.state.last_performance = self.index.snapshot()
            self._seq += 1
            seq = self._seq
            try:
                self.gateway.save(self.state)
            except PersistenceError as exc:
                self._record_failure(seq, exc)
                raise
            self._record_success(seq)

    def retry_pending(self) -> bool:
        """Retry a failed save; return True when a retry was needed."""
        if not self.save_pending:
            return False
        logger.info("Retrying pending save")
        self.save_now()
        return True

    def flush(self) -> None:
        if self._saver is not None:
            self._saver.flush()

    def close(self) -> None:
        if self._saver is not None:
            self._saver.stop()
            self._saver = None

    def _record_failure(self, seq: int, exc: PersistenceError) -> None:
        with self._flag_lock:
            self._failed_seq = max(self._failed_seq, seq)
            self.save_pending = True
            self.last_save_error = exc

    def _record_success(self, seq: int) -> None:
        with self._flag_lock:
            # A later full snapshot supersedes any earlier failed one.
            if seq > self._failed_seq:
                self.save_pending = False
                self.last_save_error = None

    def reset(self) -> None:
        """Drop all data except preferences and reseed the exercise library."""
        with self.transaction() as state:
            preferences = state.preferences
            fresh = AppState(preferences=preferences, exercises=default_exercise_library())
            for field in AppState.model_fields:
                setattr(state, field, getattr(fresh, field))
            self.index.rebuild([])
        logger.info("State reset")


class BaseRepository:
    """Base repository providing access to the shared state document."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def _template(self, state: AppState, template_id: str) -> Template:
        for template in state.templates:
            if template.id == template_id:
                return template
        raise NotFoundError("template", template_id)

    def _exercise(self, state: AppState, exercise_id: str) -> Exercise:
        for exercise in state.exercises:
            if exercise.id == exercise_id:
                return exercise
        raise NotFoundError("exercise", exercise_id)

    def _folder(self, state: AppState, folder_id: str) -> Folder:
        for folder in state.folders:
            if folder.id == folder_id:
                return folder
        raise NotFoundError("folder", folder_id)

    def _session(self, state: AppState, session_id: str) -> WorkoutSession:
        for session in state.sessions:
            if session.id == session_id:
                return session
        raise NotFoundError("session", session_id)


class AccountRepository(BaseRepository):
    """Repository for the single local account."""

    def create(self, display_name: str, email: str = "") -> Account:
        name = clean_name(display_name, "display name")
        with self.db.transaction() as state:
            if state.account is not None:
                raise InvalidInputError("account already exists")
            state.account = Account(display_name=name, email=(email or "").strip())
            return state.account.model_copy()

    def fetch(self) -> Account:
        with self.db.read() as state:
            if state.account is None:
                raise NotFoundError("account", "")
            return state.account.model_copy()

    def exists(self) -> bool:
        with self.db.read() as state:
            return state.account is not None

    def update(self, display_name: str | None = None, email: str | None = None) -> Account:
        name = clean_name(display_name, "display name") if display_name is not None else None
        with self.db.transaction() as state:
            if state.account is None:
                raise NotFoundError("account", "")
            if name is not None:
                state.account.display_name = name
            if email is not None:
                state.account.email = email.strip()
            return state.account.model_copy()


class PreferencesRepository(BaseRepository):
    """Repository for user preferences."""

    def fetch(self) -> Preferences:
        with self.db.read() as state:
            return state.preferences.model_copy()

    def update(self, **fields) -> Preferences:
        unknown = set(fields) - set(Preferences.model_fields)
        if unknown:
            raise InvalidInputError(f"unknown preference: {sorted(unknown)[0]}")
        try:
            updated = Preferences.model_validate(
                {**self.fetch().model_dump(), **fields}
            )
        except ValueError as e:
            raise InvalidInputError(str(e))
        with self.db.transaction() as state:
            state.preferences = updated
            return updated.model_copy()


class ExerciseRepository(BaseRepository):
    """Repository for the exercise library."""

    @staticmethod
    def is_referenced(state: AppState, exercise_id: str) -> bool:
        sessions = list(state.sessions)
        if state.active_session is not None:
            sessions.append(state.active_session)
        return any(session.references_exercise(exercise_id) for session in sessions)

    def add(
        self,
        name: str,
        category: ExerciseCategory | str = ExerciseCategory.CUSTOM,
        equipment: Equipment | str = Equipment.NONE,
        is_custom: bool = True,
        default_sets: Optional[int] = None,
        default_reps: Optional[int] = None,
        default_weight: Optional[float] = None,
    ) -> Exercise:
        clean = clean_name(name)
        exercise = Exercise(
            name=clean,
            category=parse_enum(ExerciseCategory, category, "category"),
            equipment=parse_enum(Equipment, equipment, "equipment"),
            is_custom=is_custom,
            default_sets=max(1, default_sets) if default_sets is not None else None,
            default_reps=check_reps(default_reps) if default_reps is not None else None,
            default_weight=check_weight(default_weight) if default_weight is not None else None,
        )
        with self.db.transaction() as state:
            if self._by_name(state, clean) is not None:
                raise InvalidInputError("exercise exists")
            state.exercises.append(exercise)
            return exercise.model_copy()

    def add_if_needed(self, name: str, **kwargs) -> Exercise:
        """Return the exercise named ``name``, creating a custom one if absent."""
        clean = clean_name(name)
        with self.db.transaction():
            existing = self.find_by_name(clean)
            if existing is not None:
                return existing
            return self.add(clean, **kwargs)

    @staticmethod
    def _by_name(state: AppState, name: str) -> Optional[Exercise]:
        key = name.strip().casefold()
        for exercise in state.exercises:
            if exercise.name.casefold() == key:
                return exercise
        return None

    def find_by_name(self, name: str) -> Optional[Exercise]:
        with self.db.read() as state:
            found = self._by_name(state, name)
            return found.model_copy() if found is not None else None

    def fetch(self, exercise_id: str) -> Exercise:
        with self.db.read() as state:
            return self._exercise(state, exercise_id).model_copy()

    def fetch_all(self, category: ExerciseCategory | str | None = None) -> List[Exercise]:
        wanted = parse_enum(ExerciseCategory, category, "category") if category else None
        with self.db.read() as state:
            rows = [
                e.model_copy()
                for e in state.exercises
                if wanted is None or e.category == wanted
            ]
        return sorted(rows, key=lambda e: e.name.casefold())

    def update(
        self,
        exercise_id: str,
        name: Optional[str] = None,
        category: ExerciseCategory | str | None = None,
        equipment: Equipment | str | None = None,
        default_sets: Optional[int] = None,
        default_reps: Optional[int] = None,
        default_weight: Optional[float] = None,
    ) -> Exercise:
        clean = clean_name(name) if name is not None else None
        new_category = parse_enum(ExerciseCategory, category, "category") if category is not None else None
        new_equipment = parse_enum(Equipment, equipment, "equipment") if equipment is not None else None
        with self.db.transaction() as state:
            exercise = self._exercise(state, exercise_id)
            renaming = clean is not None and clean != exercise.name
            recategorizing = new_category is not None and new_category != exercise.category
            if (renaming or recategorizing) and self.is_referenced(state, exercise_id):
                raise ReferentialIntegrityError("exercise is referenced by logged sets")
            if renaming:
                other = self._by_name(state, clean)
                if other is not None and other.id != exercise_id:
                    raise InvalidInputError("exercise exists")
                exercise.name = clean
            if new_category is not None:
                exercise.category = new_category
            if new_equipment is not None:
                exercise.equipment = new_equipment
            if default_sets is not None:
                exercise.default_sets = max(1, default_sets)
            if default_reps is not None:
                exercise.default_reps = check_reps(default_reps)
            if default_weight is not None:
                exercise.default_weight = check_weight(default_weight)
            return exercise.model_copy()

    def delete(self, exercise_id: str) -> None:
        with self.db.transaction() as state:
            self._exercise(state, exercise_id)
            if self.is_referenced(state, exercise_id):
                raise ReferentialIntegrityError("exercise is referenced by logged sets")
            if any(
                item.exercise_id == exercise_id
                for template in state.templates
                for item in template.exercises
            ):
                raise ReferentialIntegrityError("exercise is used by a template")
            state.exercises = [e for e in state.exercises if e.id != exercise_id]


class FolderRepository(BaseRepository):
    """Repository for template folders."""

    def create(self, name: str) -> Folder:
        clean = clean_name(name)
        with self.db.transaction() as state:
            if any(f.name.casefold() == clean.casefold() for f in state.folders):
                raise InvalidInputError("folder exists")
            folder = Folder(name=clean)
            state.folders.append(folder)
            return folder.model_copy()

    def fetch(self, folder_id: str) -> Folder:
        with self.db.read() as state:
            return self._folder(state, folder_id).model_copy()

    def fetch_all(self) -> List[Folder]:
        with self.db.read() as state:
            rows = [f.model_copy() for f in state.folders]
        return sorted(rows, key=lambda f: f.name.casefold())

    def rename(self, folder_id: str, name: str) -> Folder:
        clean = clean_name(name)
        with self.db.transaction() as state:
            folder = self._folder(state, folder_id)
            if any(
                f.id != folder_id and f.name.casefold() == clean.casefold()
                for f in state.folders
            ):
                raise InvalidInputError("folder exists")
            folder.name = clean
            return folder.model_copy()

    def assign(self, template_id: str, folder_id: Optional[str]) -> Template:
        """Move a template into ``folder_id`` (or out of any folder when None)."""
        with self.db.transaction() as state:
            template = self._template(state, template_id)
            target = self._folder(state, folder_id) if folder_id is not None else None
            for folder in state.folders:
                if template_id in folder.template_ids:
                    folder.template_ids.remove(template_id)
            if target is not None:
                target.template_ids.append(template_id)
            template.folder_id = folder_id
            return template.model_copy(deep=True)

    def templates_in(self, folder_id: str) -> List[Template]:
        with self.db.read() as state:
            folder = self._folder(state, folder_id)
            return [
                self._template(state, tid).model_copy(deep=True)
                for tid in folder.template_ids
            ]

    def delete(self, folder_id: str) -> None:
        with self.db.transaction() as state:
            self._folder(state, folder_id)
            for template in state.templates:
                if template.folder_id == folder_id:
                    template.folder_id = None
            state.folders = [f for f in state.folders if f.id != folder_id]


class TemplateRepository(BaseRepository):
    """Repository for workout templates."""

    def create(
        self, name: str, folder_id: Optional[str] = None, notes: str = ""
    ) -> Template:
        clean = clean_name(name)
        with self.db.transaction() as state:
            if folder_id is not None:
                self._folder(state, folder_id)
            template = Template(name=clean, notes=notes)
            state.templates.append(template)
            if folder_id is not None:
                FolderRepository(self.db).assign(template.id, folder_id)
            return template.model_copy(deep=True)

    def create_from_session(
        self, session: WorkoutSession, name: str, folder_id: Optional[str] = None
    ) -> Template:
        """Build a template mirroring the exercises and last sets of ``session``."""
        with self.db.transaction() as state:
            template = self.create(name, folder_id, session.notes)
            stored = self._template(state, template.id)
            for entry in session.entries:
                last = entry.sets[-1] if entry.sets else None
                stored.exercises.append(
                    TemplateExercise(
                        exercise_id=entry.exercise_id,
                        target_sets=max(1, len(entry.sets)),
                        target_reps=last.reps if last is not None else 8,
                        target_weight=last.weight if last is not None else 0.0,
                    )
                )
            return stored.model_copy(deep=True)

    def fetch(self, template_id: str) -> Template:
        with self.db.read() as state:
            return self._template(state, template_id).model_copy(deep=True)

    def fetch_all(self) -> List[Template]:
        with self.db.read() as state:
            rows = [t.model_copy(deep=True) for t in state.templates]
        return sorted(rows, key=lambda t: (t.name.casefold(), t.created_at))

    def fetch_recent(self, limit: int = 5) -> List[Template]:
        with self.db.read() as state:
            used = [t.model_copy(deep=True) for t in state.templates if t.last_used]
        used.sort(key=lambda t: t.last_used, reverse=True)
        return used[:limit]

    def rename(self, template_id: str, name: str) -> Template:
        clean = clean_name(name)
        with self.db.transaction() as state:
            template = self._template(state, template_id)
            template.name = clean
            return template.model_copy(deep=True)

    def set_notes(self, template_id: str, notes: str) -> Template:
        with self.db.transaction() as state:
            template = self._template(state, template_id)
            template.notes = notes or ""
            return template.model_copy(deep=True)

    def add_exercise(
        self,
        template_id: str,
        exercise_id: str,
        target_sets: Optional[int] = None,
        target_reps: Optional[int] = None,
        target_weight: Optional[float] = None,
    ) -> TemplateExercise:
        with self.db.transaction() as state:
            template = self._template(state, template_id)
            exercise = self._exercise(state, exercise_id)
            memory = self.db.index.lookup(exercise_id)
            if target_reps is None:
                target_reps = (
                    exercise.default_reps
                    if exercise.default_reps is not None
                    else memory.reps if memory.reps is not None else 8
                )
            if target_weight is None:
                target_weight = (
                    exercise.default_weight
                    if exercise.default_weight is not None
                    else memory.weight if memory.weight is not None else 0.0
                )
            item = TemplateExercise(
                exercise_id=exercise_id,
                target_sets=max(1, target_sets or exercise.default_sets or 3),
                target_reps=check_reps(target_reps),
                target_weight=check_weight(target_weight),
            )
            template.exercises.append(item)
            return item.model_copy()

    def update_exercise(
        self,
        template_id: str,
        item_id: str,
        target_sets: Optional[int] = None,
        target_reps: Optional[int] = None,
        target_weight: Optional[float] = None,
    ) -> TemplateExercise:
        with self.db.transaction() as state:
            template = self._template(state, template_id)
            item = next((i for i in template.exercises if i.id == item_id), None)
            if item is None:
                raise NotFoundError("template exercise", item_id)
            if target_sets is not None:
                item.target_sets = max(1, target_sets)
            if target_reps is not None:
                item.target_reps = check_reps(target_reps)
            if target_weight is not None:
                item.target_weight = check_weight(target_weight)
            return item.model_copy()

    def remove_exercise(self, template_id: str, item_id: str) -> None:
        with self.db.transaction() as state:
            template = self._template(state, template_id)
            if not any(i.id == item_id for i in template.exercises):
                raise NotFoundError("template exercise", item_id)
            template.exercises = [i for i in template.exercises if i.id != item_id]

    def reorder_exercises(self, template_id: str, order: list[str]) -> Template:
        with self.db.transaction() as state:
            template = self._template(state, template_id)
            existing = [i.id for i in template.exercises]
            if set(order) != set(existing) or len(order) != len(existing):
                raise InvalidInputError("invalid order")
            by_id = {i.id: i for i in template.exercises}
            template.exercises = [by_id[i] for i in order]
            return template.model_copy(deep=True)

    def mark_used(self, template_id: str) -> None:
        with self.db.transaction() as state:
            self._template(state, template_id).last_used = utcnow()

    def clone(self, template_id: str, new_name: str) -> Template:
        with self.db.transaction() as state:
            source = self._template(state, template_id)
            copy = self.create(new_name, source.folder_id, source.notes)
            stored = self._template(state, copy.id)
            stored.exercises = [
                item.model_copy(update={"id": new_id()})
                for item in source.exercises
            ]
            return stored.model_copy(deep=True)

    def delete(self, template_id: str) -> None:
        with self.db.transaction() as state:
            self._template(state, template_id)
            for folder in state.folders:
                if template_id in folder.template_ids:
                    folder.template_ids.remove(template_id)
            state.templates = [t for t in state.templates if t.id != template_id]


class WorkoutRepository(BaseRepository):
    """Repository for completed workout sessions (history)."""

    def _check_exercises(self, state: AppState, session: WorkoutSession) -> None:
        for entry in session.entries:
            self._exercise(state, entry.exercise_id)
            for logged in entry.sets:
                if logged.exercise_id != entry.exercise_id:
                    raise InvalidInputError("set exercise does not match its entry")

    def add(self, session: WorkoutSession) -> WorkoutSession:
        """Insert a completed session, e.g. from an import."""
        session = session.model_copy(deep=True)
        session.state = SessionState.COMPLETED
        if session.completed_at is None:
            session.completed_at = session.date
        with self.db.transaction() as state:
            if any(s.id == session.id for s in state.sessions):
                raise InvalidInputError("session exists")
            self._check_exercises(state, session)
            state.sessions.append(session)
            self.db.index.apply_session(session)
            return session.model_copy(deep=True)

    def fetch(self, session_id: str) -> WorkoutSession:
        with self.db.read() as state:
            return self._session(state, session_id).model_copy(deep=True)

    def fetch_all(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[WorkoutSession]:
        with self.db.read() as state:
            rows = [s.model_copy(deep=True) for s in state.sessions]
        if start_date:
            rows = [s for s in rows if s.date.date().isoformat() >= start_date]
        if end_date:
            rows = [s for s in rows if s.date.date().isoformat() <= end_date]
        rows.sort(key=lambda s: (s.date, s.completed_at or s.date), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def fetch_on(self, day: datetime.date) -> List[WorkoutSession]:
        return self.fetch_all(day.isoformat(), day.isoformat())

    def rename(self, session_id: str, name: str) -> WorkoutSession:
        clean = clean_name(name)
        with self.db.transaction() as state:
            session = self._session(state, session_id)
            session.name = clean
            return session.model_copy(deep=True)

    def update_notes(self, session_id: str, notes: str) -> WorkoutSession:
        with self.db.transaction() as state:
            session = self._session(state, session_id)
            session.notes = notes or ""
            return session.model_copy(deep=True)

    def update_set(
        self,
        session_id: str,
        set_id: str,
        reps: Optional[int] = None,
        weight: Optional[float] = None,
        set_type: SetType | str | None = None,
        notes: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> LoggedSet:
        """Edit a set of a completed session and refresh the index."""
        new_reps = check_reps(reps) if reps is not None else None
        new_weight = check_weight(weight) if weight is not None else None
        new_type = parse_enum(SetType, set_type, "set type") if set_type is not None else None
        with self.db.transaction() as state:
            session = self._session(state, session_id)
            found = session.find_set(set_id)
            if found is None:
                raise NotFoundError("set", set_id)
            _entry, logged = found
            if new_reps is not None:
                logged.reps = new_reps
            if new_weight is not None:
                logged.weight = new_weight
            if new_type is not None:
                logged.set_type = new_type
            if notes is not None:
                logged.notes = notes
            if completed is not None:
                logged.completed = completed
            self.db.index.rebuild(state.sessions)
            return logged.model_copy()

    def delete(self, session_id: str) -> bool:
        """Remove a session and its run; deleting an unknown id is a no-op."""
        return bool(self.delete_many([session_id]))

    def delete_many(self, session_ids: Iterable[str]) -> List[WorkoutSession]:
        ids = set(session_ids)
        with self.db.read() as state:
            if not any(s.id in ids for s in state.sessions):
                return []
        with self.db.transaction() as state:
            removed = [s for s in state.sessions if s.id in ids]
            state.sessions = [s for s in state.sessions if s.id not in ids]
            self.db.index.rebuild(state.sessions)
            return removed

    def restore(self, sessions: Iterable[WorkoutSession]) -> None:
        """Put back sessions returned by :meth:`delete_many` (undo)."""
        with self.db.transaction() as state:
            known = {s.id for s in state.sessions}
            for session in sessions:
                if session.id not in known:
                    state.sessions.append(session.model_copy(deep=True))
            state.sessions.sort(key=lambda s: s.completed_at or s.date)
            self.db.index.rebuild(state.sessions)


class BodyWeightRepository(BaseRepository):
    """Repository for body weight log entries (stored in kg)."""

    def log(
        self,
        value: float,
        unit: MeasurementSystem | str = MeasurementSystem.METRIC,
        recorded_at: Optional[datetime.datetime] = None,
        note: str = "",
    ) -> BodyWeightEntry:
        if check_weight(value, "body weight") == 0:
            raise InvalidInputError("body weight must be positive")
        system = parse_enum(MeasurementSystem, unit, "measurement system")
        kg = value if system == MeasurementSystem.METRIC else WeightConverter.lb_to_kg(value)
        entry = BodyWeightEntry(
            recorded_at=recorded_at or utcnow(), weight_kg=kg, note=(note or "").strip()
        )
        with self.db.transaction() as state:
            state.body_weights.append(entry)
            state.body_weights.sort(key=lambda e: e.recorded_at)
            return entry.model_copy()

    def delete(self, entry_id: str) -> None:
        with self.db.transaction() as state:
            if not any(e.id == entry_id for e in state.body_weights):
                raise NotFoundError("body weight entry", entry_id)
            state.body_weights = [e for e in state.body_weights if e.id != entry_id]

    def fetch_all(self) -> List[BodyWeightEntry]:
        with self.db.read() as state:
            rows = [e.model_copy() for e in state.body_weights]
        return sorted(rows, key=lambda e: e.recorded_at, reverse=True)

    def fetch_latest(self) -> Optional[BodyWeightEntry]:
        rows = self.fetch_all()
        return rows[0] if rows else None

    def points(self) -> List[tuple[datetime.datetime, float]]:
        """Return ``(recorded_at, weight_kg)`` pairs, oldest first."""
        return [(e.recorded_at, e.weight_kg) for e in reversed(self.fetch_all())]

    def change(self, days: int = 30) -> Optional[float]:
        """Weight change in kg across the last ``days`` days, or None."""
        if days <= 0:
            raise InvalidInputError("days must be positive")
        latest = self.fetch_latest()
        if latest is None:
            return None
        cutoff = latest.recorded_at - datetime.timedelta(days=days)
        window = [
            e for e in self.fetch_all() if e.recorded_at >= cutoff
        ]
        oldest = window[-1]
        if oldest.id == latest.id:
            return None
        return round(latest.weight_kg - oldest.weight_kg, 2)
