"""Lifecycle of the single active workout session.

The active session lives in ``AppState.active_session``. It starts as a draft,
becomes active on its first edit and leaves the slot either by :meth:`complete`
(moved into history) or :meth:`discard`.
"""

from __future__ import annotations

import datetime
from contextlib import contextmanager
from typing import Optional

from loguru import logger

from db import (
    Database,
    ExerciseRepository,
    PreferencesRepository,
    TemplateRepository,
    WorkoutRepository,
    check_duration,
    check_reps,
    check_weight,
    parse_enum,
)
from errors import AlreadyActiveError, InvalidInputError, NotFoundError, PersistenceError
from models import (
    AppState,
    ExerciseEntry,
    LastPerformanceEntry,
    LoggedSet,
    Run,
    RunMode,
    SessionState,
    SetType,
    Template,
    WorkoutSession,
    utcnow,
)
from run_tracking import (
    DEFAULT_QUEUE_SIZE,
    MAX_ACCURACY_M,
    MAX_JUMP_M,
    RouteRecorder,
    finalize_run,
)
from stats_service import StatisticsService


class SessionLifecycleController:
    """Start, edit, complete and discard the active session."""

    def __init__(
        self,
        db: Database,
        stats: StatisticsService | None = None,
        gps_queue_size: int = DEFAULT_QUEUE_SIZE,
        max_gps_accuracy_m: float = MAX_ACCURACY_M,
        max_gps_jump_m: float = MAX_JUMP_M,
    ) -> None:
        self.db = db
        self.exercises = ExerciseRepository(db)
        self.templates = TemplateRepository(db)
        self.stats = stats or StatisticsService(
            WorkoutRepository(db), self.exercises, PreferencesRepository(db)
        )
        self.gps_queue_size = gps_queue_size
        self.max_gps_accuracy_m = max_gps_accuracy_m
        self.max_gps_jump_m = max_gps_jump_m
        self._recorder: Optional[RouteRecorder] = None
        self._pending_persist: set[str] = set()
        self.last_persistence_error: Optional[PersistenceError] = None
        db.add_pre_mutation_hook(self._drain_hook)

    # ------------------------------------------------------------------
    # slot access
    # ------------------------------------------------------------------
    @property
    def active(self) -> Optional[WorkoutSession]:
        with self.db.read() as state:
            session = state.active_session
            return session.model_copy(deep=True) if session is not None else None

    def _settle_pending(self) -> None:
        # Any later successful save also wrote the pending sessions.
        if self._pending_persist and not self.db.save_pending:
            logger.info("Persisted {} pending session(s)", len(self._pending_persist))
            self._pending_persist.clear()
            self.last_persistence_error = None

    @property
    def pending_persist(self) -> set[str]:
        self._settle_pending()
        return set(self._pending_persist)

    def is_pending_persist(self, session_id: str) -> bool:
        self._settle_pending()
        return session_id in self._pending_persist

    @staticmethod
    def _require(state: AppState) -> WorkoutSession:
        if state.active_session is None:
            raise NotFoundError("active session", "")
        return state.active_session

    @contextmanager
    def _edit(self):
        with self.db.transaction() as state:
            session = self._require(state)
            yield session
            if session.state == SessionState.DRAFT:
                session.state = SessionState.ACTIVE
                logger.debug("Session {} is now active", session.id)

    @staticmethod
    def _entry(session: WorkoutSession, entry_id: str) -> ExerciseEntry:
        entry = session.find_entry(entry_id)
        if entry is None:
            raise NotFoundError("exercise entry", entry_id)
        return entry

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def start(
        self, name: Optional[str] = None, template_id: Optional[str] = None
    ) -> WorkoutSession:
        with self.db.transaction() as state:
            if state.active_session is not None:
                raise AlreadyActiveError(state.active_session.id)
            template: Optional[Template] = None
            if template_id is not None:
                template = self.templates.fetch(template_id)
            clean = (name or "").strip()
            session = WorkoutSession(
                name=clean or (template.name if template is not None else "New Session"),
                notes=template.notes if template is not None else "",
                template_id=template_id,
            )
            if template is not None:
                for item in template.exercises:
                    memory = self.db.index.lookup(item.exercise_id)
                    reps = memory.reps if memory.reps is not None else item.target_reps
                    weight = (
                        memory.weight
                        if memory.weight is not None
                        else item.target_weight or 0.0
                    )
                    session.entries.append(
                        ExerciseEntry(
                            exercise_id=item.exercise_id,
                            sets=[
                                LoggedSet(
                                    exercise_id=item.exercise_id,
                                    reps=reps,
                                    weight=weight,
                                    set_type=memory.set_type,
                                    completed=False,
                                )
                                for _ in range(max(1, item.target_sets))
                            ],
                        )
                    )
                self.templates.mark_used(template_id)
            state.active_session = session
            logger.debug("Started session {} ({})", session.id, session.name)
            return session.model_copy(deep=True)

    def complete(self) -> WorkoutSession:
        """Move the active session into history.

        The history append, the index update and the save form one unit. A
        failed save leaves the session committed in memory and flagged
        pending-persist until a later save succeeds.
        """
        with self.db.transaction(save=False) as state:
            session = self._require(state)
            if self._recorder is not None:
                self._stop_recorder(session)
            session.completed_at = utcnow()
            session.state = SessionState.COMPLETED
            if not session.name.strip():
                session.name = "Workout"
            if session.run is not None:
                session.run = finalize_run(session.run)
            session.achievements = self.stats.detect_achievements(session, state.sessions)
            state.sessions.append(session)
            state.active_session = None
            self.db.index.apply_session(session)
            completed = session.model_copy(deep=True)
        logger.info(
            "Completed session {} with {} sets and {} achievements",
            completed.id,
            sum(1 for _ in completed.iter_sets()),
            len(completed.achievements),
        )
        try:
            self.db.save_now()
        except PersistenceError as exc:
            self._pending_persist.add(completed.id)
            self.last_persistence_error = exc
            logger.error("Session {} is pending persist: {}", completed.id, exc)
        return completed

    def discard(self) -> bool:
        """Destroy the draft; return False when the slot was already empty."""
        with self.db.transaction() as state:
            if state.active_session is None:
                return False
            session_id = state.active_session.id
            if self._recorder is not None:
                dropped = self._recorder.cancel()
                self._recorder = None
                if dropped:
                    logger.debug("Dropped {} pending GPS samples", dropped)
            state.active_session = None
        logger.info("Discarded session {}", session_id)
        return True

    def on_foreground(self) -> bool:
        """Retry failed saves; return True when everything is persisted."""
        if not self._pending_persist and not self.db.save_pending:
            return True
        try:
            self.db.save_now()
        except PersistenceError as exc:
            self.last_persistence_error = exc
            logger.warning("Retry of pending save failed: {}", exc)
            return False
        self._settle_pending()
        return True

    # ------------------------------------------------------------------
    # edits
    # ------------------------------------------------------------------
    def prefill(self, exercise_id: str) -> LastPerformanceEntry:
        return self.db.index.lookup(exercise_id)

    def rename(self, name: str) -> WorkoutSession:
        with self._edit() as session:
            session.name = (name or "").strip()
        return self.active

    def update_notes(self, notes: str) -> WorkoutSession:
        with self._edit() as session:
            session.notes = notes or ""
        return self.active

    def add_exercise(
        self, exercise_id: str, sets: Optional[int] = None
    ) -> ExerciseEntry:
        """Append an exercise with pre-filled sets from its last performance."""
        exercise = self.exercises.fetch(exercise_id)
        memory = self.prefill(exercise_id)
        reps = memory.reps if memory.reps is not None else exercise.default_reps
        weight = memory.weight if memory.weight is not None else exercise.default_weight
        count = sets if sets is not None else exercise.default_sets or 1
        with self._edit() as session:
            entry = ExerciseEntry(
                exercise_id=exercise_id,
                sets=[
                    LoggedSet(
                        exercise_id=exercise_id,
                        reps=reps if reps is not None else 8,
                        weight=weight or 0.0,
                        set_type=memory.set_type,
                        completed=False,
                    )
                    for _ in range(max(0, count))
                ],
            )
            session.entries.append(entry)
            return entry.model_copy(deep=True)

    def remove_exercise(self, entry_id: str) -> None:
        with self._edit() as session:
            self._entry(session, entry_id)
            session.entries = [e for e in session.entries if e.id != entry_id]

    def add_set(
        self,
        exercise_id: str,
        reps: Optional[int] = None,
        weight: Optional[float] = None,
        set_type: SetType | str | None = None,
        notes: str = "",
        completed: bool = True,
        entry_id: Optional[str] = None,
    ) -> LoggedSet:
        """Log a set, creating the exercise entry when needed.

        Missing values come from the previous set of the entry, then from the
        last completed performance, then from the exercise defaults.
        """
        exercise = self.exercises.fetch(exercise_id)
        if reps is not None:
            reps = check_reps(reps)
        if weight is not None:
            weight = check_weight(weight)
        kind = parse_enum(SetType, set_type, "set type") if set_type else None
        with self._edit() as session:
            if entry_id is not None:
                entry = self._entry(session, entry_id)
                if entry.exercise_id != exercise_id:
                    raise InvalidInputError("set exercise does not match its entry")
            else:
                entry = next(
                    (e for e in reversed(session.entries) if e.exercise_id == exercise_id),
                    None,
                )
                if entry is None:
                    entry = ExerciseEntry(exercise_id=exercise_id)
                    session.entries.append(entry)
            previous = entry.sets[-1] if entry.sets else None
            memory = self.db.index.lookup(exercise_id)
            if reps is None:
                reps = next(
                    v
                    for v in (
                        previous.reps if previous else None,
                        memory.reps,
                        exercise.default_reps,
                        0,
                    )
                    if v is not None
                )
            if weight is None:
                weight = next(
                    v
                    for v in (
                        previous.weight if previous else None,
                        memory.weight,
                        exercise.default_weight,
                        0.0,
                    )
                    if v is not None
                )
            logged = LoggedSet(
                exercise_id=exercise_id,
                reps=reps,
                weight=weight,
                set_type=kind or (previous.set_type if previous else SetType.WORKING),
                notes=notes or "",
                completed=completed,
            )
            entry.sets.append(logged)
            return logged.model_copy()

    def edit_set(
        self,
        set_id: str,
        reps: Optional[int] = None,
        weight: Optional[float] = None,
        set_type: SetType | str | None = None,
        notes: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> LoggedSet:
        new_reps = check_reps(reps) if reps is not None else None
        new_weight = check_weight(weight) if weight is not None else None
        kind = parse_enum(SetType, set_type, "set type") if set_type is not None else None
        with self._edit() as session:
            found = session.find_set(set_id)
            if found is None:
                raise NotFoundError("set", set_id)
            _entry, logged = found
            if new_reps is not None:
                logged.reps = new_reps
            if new_weight is not None:
                logged.weight = new_weight
            if kind is not None:
                logged.set_type = kind
            if notes is not None:
                logged.notes = notes
            if completed is not None:
                logged.completed = completed
            return logged.model_copy()

    def remove_set(self, set_id: str) -> None:
        with self._edit() as session:
            found = session.find_set(set_id)
            if found is None:
                raise NotFoundError("set", set_id)
            entry, _logged = found
            entry.sets = [s for s in entry.sets if s.id != set_id]

    def set_run(
        self,
        distance_km: float,
        duration_seconds: int,
        notes: str = "",
    ) -> Run:
        """Attach a manually entered run to the active session."""
        distance_km = check_weight(distance_km, "distance")
        duration_seconds = check_duration(duration_seconds)
        run = finalize_run(
            Run(
                mode=RunMode.MANUAL,
                distance_km=distance_km,
                duration_seconds=duration_seconds,
                notes=notes or "",
            )
        )
        with self._edit() as session:
            if self._recorder is not None:
                self._recorder.cancel()
                self._recorder = None
            session.run = run
            return run.model_copy(deep=True)

    def clear_run(self) -> None:
        with self._edit() as session:
            if self._recorder is not None:
                self._recorder.cancel()
                self._recorder = None
            session.run = None

    # ------------------------------------------------------------------
    # GPS
    # ------------------------------------------------------------------
    def start_gps_run(self) -> Run:
        with self._edit() as session:
            if self._recorder is not None and self._recorder.active:
                raise InvalidInputError("a GPS run is already recording")
            session.run = Run(mode=RunMode.GPS)
            self._recorder = RouteRecorder(
                session.id,
                maxsize=self.gps_queue_size,
                max_accuracy_m=self.max_gps_accuracy_m,
                max_jump_m=self.max_gps_jump_m,
            )
            logger.debug("GPS recording started for session {}", session.id)
            return session.run.model_copy(deep=True)

    def record_route_point(
        self,
        latitude: float,
        longitude: float,
        timestamp: Optional[datetime.datetime] = None,
        horizontal_accuracy: float = 5.0,
    ) -> bool:
        """Buffer a location sample without taking the mutation lock."""
        recorder = self._recorder
        if recorder is None:
            return False
        return recorder.push(latitude, longitude, timestamp or utcnow(), horizontal_accuracy)

    def drain_route_points(self) -> int:
        """Fold buffered samples into the active run; return the route length."""
        with self.db.transaction() as state:
            session = state.active_session
            run = session.run if session is not None else None
            return len(run.route) if run is not None else 0

    def _drain_hook(self, state: AppState) -> None:
        recorder = self._recorder
        if recorder is None or not recorder.pending():
            return
        session = state.active_session
        if session is None or session.id != recorder.session_id or session.run is None:
            recorder.cancel()
            self._recorder = None
            return
        points, added_m = recorder.drain()
        session.run.route.extend(points)
        session.run.distance_km += added_m / 1000

    def _stop_recorder(self, session: WorkoutSession) -> None:
        recorder = self._recorder
        self._recorder = None
        recorder.active = False
        run = session.run
        if run is None:
            return
        route = run.route
        if len(route) >= 2:
            run.duration_seconds = max(
                run.duration_seconds,
                int(round((route[-1].timestamp - route[0].timestamp).total_seconds())),
            )
        run.distance_km = round(run.distance_km, 3)
        logger.debug(
            "GPS recording stopped: {} points, {} km, {} dropped",
            len(route),
            run.distance_km,
            recorder.dropped,
        )

    def stop_gps_run(self, duration_seconds: Optional[int] = None) -> Run:
        """Stop recording and finalize the run's pace and splits."""
        if duration_seconds is not None:
            duration_seconds = check_duration(duration_seconds)
        with self._edit() as session:
            if self._recorder is None or session.run is None:
                raise InvalidInputError("no GPS run is recording")
            self._stop_recorder(session)
            if duration_seconds is not None:
                session.run.duration_seconds = int(duration_seconds)
            session.run = finalize_run(session.run)
            return session.run.model_copy(deep=True)

    # ------------------------------------------------------------------
    # templates
    # ------------------------------------------------------------------
    def save_as_template(self, name: str, folder_id: Optional[str] = None) -> Template:
        with self.db.transaction() as state:
            session = self._require(state)
            return self.templates.create_from_session(session, name, folder_id)

