import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger

from config import APP_VERSION, YamlConfig, resolve_data_dir
from db import (
    AccountRepository,
    BodyWeightRepository,
    Database,
    ExerciseRepository,
    FolderRepository,
    PreferencesRepository,
    TemplateRepository,
    WorkoutRepository,
)
from errors import (
    AlreadyActiveError,
    CorruptionError,
    InvalidInputError,
    NotFoundError,
    PersistenceError,
    ReferentialIntegrityError,
    TrainingLogError,
)
from session_service import SessionLifecycleController
from stats_service import StatisticsService

ERROR_STATUS = {
    NotFoundError: 404,
    ReferentialIntegrityError: 409,
    InvalidInputError: 400,
    CorruptionError: 500,
    AlreadyActiveError: 409,
    PersistenceError: 503,
}


def status_for(exc: TrainingLogError) -> int:
    for kind, status in ERROR_STATUS.items():
        if isinstance(exc, kind):
            return status
    return 400


class TrainingAPI:
    """Provides REST endpoints for the training log."""

    def __init__(
        self,
        data_dir: Optional[str] = None,
        yaml_path: str = "settings.yaml",
        *,
        background_saves: Optional[bool] = None,
    ) -> None:
        self.config = YamlConfig(yaml_path)
        settings = self.config.settings()
        if data_dir is not None:
            settings.data_dir = data_dir
        if background_saves is not None:
            settings.background_saves = background_saves
        self.settings = settings
        self.data_dir = resolve_data_dir(settings)
        self.db = Database(
            self.data_dir,
            filename=settings.state_filename,
            background_saves=settings.background_saves,
        )
        self.account = AccountRepository(self.db)
        self.preferences = PreferencesRepository(self.db)
        self.exercises = ExerciseRepository(self.db)
        self.folders = FolderRepository(self.db)
        self.templates = TemplateRepository(self.db)
        self.workouts = WorkoutRepository(self.db)
        self.body_weights = BodyWeightRepository(self.db)
        self.statistics = StatisticsService(
            self.workouts, self.exercises, self.preferences, self.body_weights
        )
        self.sessions = SessionLifecycleController(
            self.db,
            self.statistics,
            gps_queue_size=settings.gps_queue_size,
            max_gps_accuracy_m=settings.max_gps_accuracy_m,
            max_gps_jump_m=settings.max_gps_jump_m,
        )
        self.app = FastAPI(
            title="Training Log API",
            description="REST API for the offline-first training log",
            version=APP_VERSION,
        )
        self.app.add_exception_handler(TrainingLogError, self._handle_error)
        self._setup_routes()

    @staticmethod
    async def _handle_error(request: Request, exc: TrainingLogError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error("{} {} failed: {}", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status, content={"detail": str(exc), "code": exc.code}
        )

    def close(self) -> None:
        self.db.close()

    def _setup_routes(self) -> None:
        exercises_router = APIRouter(prefix="/exercises", tags=["Exercises"])
        folders_router = APIRouter(prefix="/folders", tags=["Folders"])
        templates_router = APIRouter(prefix="/templates", tags=["Templates"])
        sessions_router = APIRouter(prefix="/sessions", tags=["Sessions"])
        active_router = APIRouter(prefix="/active", tags=["Active Session"])
        stats_router = APIRouter(prefix="/stats", tags=["Statistics"])
        weight_router = APIRouter(prefix="/body_weight", tags=["Body Weight"])

        @self.app.get(
            "/health",
            summary="Health check",
            description="Report whether the state document is fully persisted.",
        )
        def health():
            return {
                "status": "ok",
                "version": APP_VERSION,
                "save_pending": self.db.save_pending,
                "pending_persist": sorted(self.sessions.pending_persist),
            }

        @self.app.post("/lifecycle/foreground")
        def foreground():
            """Retry failed saves after the app returns to the foreground."""
            if not self.sessions.on_foreground():
                raise HTTPException(
                    status_code=503, detail=str(self.sessions.last_persistence_error)
                )
            return {"status": "persisted"}

        @self.app.post("/reset")
        def reset():
            if self.sessions.active is not None:
                self.sessions.discard()
            self.db.reset()
            return {"status": "reset"}

        @self.app.post("/account")
        def create_account(display_name: str, email: str = ""):
            return self.account.create(display_name, email)

        @self.app.get("/account")
        def get_account():
            return self.account.fetch()

        @self.app.put("/account")
        def update_account(display_name: str = None, email: str = None):
            return self.account.update(display_name, email)

        @self.app.get("/preferences")
        def get_preferences():
            return self.preferences.fetch()

        @self.app.put("/preferences")
        def update_preferences(
            measurement_system: str = None,
            week_starts_on_monday: bool = None,
            default_run_mode: str = None,
        ):
            fields = {
                "measurement_system": measurement_system,
                "week_starts_on_monday": week_starts_on_monday,
                "default_run_mode": default_run_mode,
            }
            return self.preferences.update(
                **{k: v for k, v in fields.items() if v is not None}
            )

        @self.app.get("/prefill/{exercise_id}")
        def prefill(exercise_id: str):
            return self.sessions.prefill(exercise_id)

        @exercises_router.get("")
        def list_exercises(category: str = None):
            return self.exercises.fetch_all(category)

        @exercises_router.post("")
        def add_exercise(
            name: str,
            category: str = "Custom",
            equipment: str = "None",
            default_sets: int = None,
            default_reps: int = None,
            default_weight: float = None,
            if_needed: bool = False,
        ):
            kwargs = dict(
                category=category,
                equipment=equipment,
                default_sets=default_sets,
                default_reps=default_reps,
                default_weight=default_weight,
            )
            if if_needed:
                return self.exercises.add_if_needed(name, **kwargs)
            return self.exercises.add(name, **kwargs)

        @exercises_router.get("/{exercise_id}")
        def get_exercise(exercise_id: str):
            return self.exercises.fetch(exercise_id)

        @exercises_router.put("/{exercise_id}")
        def update_exercise(
            exercise_id: str,
            name: str = None,
            category: str = None,
            equipment: str = None,
            default_sets: int = None,
            default_reps: int = None,
            default_weight: float = None,
        ):
            return self.exercises.update(
                exercise_id,
                name=name,
                category=category,
                equipment=equipment,
                default_sets=default_sets,
                default_reps=default_reps,
                default_weight=default_weight,
            )

        @exercises_router.delete("/{exercise_id}")
        def delete_exercise(exercise_id: str):
            self.exercises.delete(exercise_id)
            return {"status": "deleted"}

        @folders_router.get("")
        def list_folders():
            return self.folders.fetch_all()

        @folders_router.post("")
        def create_folder(name: str):
            return self.folders.create(name)

        @folders_router.put("/{folder_id}")
        def rename_folder(folder_id: str, name: str):
            return self.folders.rename(folder_id, name)

        @folders_router.delete("/{folder_id}")
        def delete_folder(folder_id: str):
            self.folders.delete(folder_id)
            return {"status": "deleted"}

        @folders_router.get("/{folder_id}/templates")
        def folder_templates(folder_id: str):
            return self.folders.templates_in(folder_id)

        @templates_router.get("")
        def list_templates():
            return self.templates.fetch_all()

        @templates_router.post("")
        def create_template(name: str, folder_id: str = None, notes: str = ""):
            return self.templates.create(name, folder_id, notes)

        @templates_router.get("/recent")
        def recent_templates(limit: int = 5):
            return self.templates.fetch_recent(limit)

        @templates_router.get("/{template_id}")
        def get_template(template_id: str):
            return self.templates.fetch(template_id)

        @templates_router.put("/{template_id}")
        def update_template(template_id: str, name: str = None, notes: str = None):
            template = self.templates.fetch(template_id)
            if name is not None:
                template = self.templates.rename(template_id, name)
            if notes is not None:
                template = self.templates.set_notes(template_id, notes)
            return template

        @templates_router.delete("/{template_id}")
        def delete_template(template_id: str):
            self.templates.delete(template_id)
            return {"status": "deleted"}

        @templates_router.post("/{template_id}/clone")
        def clone_template(template_id: str, name: str):
            return self.templates.clone(template_id, name)

        @templates_router.put("/{template_id}/folder")
        def assign_folder(template_id: str, folder_id: str = None):
            return self.folders.assign(template_id, folder_id)

        @templates_router.post("/{template_id}/exercises")
        def add_template_exercise(
            template_id: str,
            exercise_id: str,
            target_sets: int = None,
            target_reps: int = None,
            target_weight: float = None,
        ):
            return self.templates.add_exercise(
                template_id, exercise_id, target_sets, target_reps, target_weight
            )

        @templates_router.put("/{template_id}/exercises/{item_id}")
        def update_template_exercise(
            template_id: str,
            item_id: str,
            target_sets: int = None,
            target_reps: int = None,
            target_weight: float = None,
        ):
            return self.templates.update_exercise(
                template_id, item_id, target_sets, target_reps, target_weight
            )

        @templates_router.delete("/{template_id}/exercises/{item_id}")
        def remove_template_exercise(template_id: str, item_id: str):
            self.templates.remove_exercise(template_id, item_id)
            return {"status": "deleted"}

        @templates_router.put("/{template_id}/order")
        def reorder_template(template_id: str, order: List[str] = Body(...)):
            return self.templates.reorder_exercises(template_id, order)

        @sessions_router.get("")
        def list_sessions(
            start_date: str = None, end_date: str = None, limit: int = None
        ):
            return self.workouts.fetch_all(start_date, end_date, limit=limit)

        @sessions_router.get("/{session_id}")
        def get_session(session_id: str):
            return self.workouts.fetch(session_id)

        @sessions_router.put("/{session_id}")
        def update_session(session_id: str, name: str = None, notes: str = None):
            session = self.workouts.fetch(session_id)
            if name is not None:
                session = self.workouts.rename(session_id, name)
            if notes is not None:
                session = self.workouts.update_notes(session_id, notes)
            return session

        @sessions_router.put("/{session_id}/sets/{set_id}")
        def update_session_set(
            session_id: str,
            set_id: str,
            reps: int = None,
            weight: float = None,
            set_type: str = None,
            notes: str = None,
            completed: bool = None,
        ):
            return self.workouts.update_set(
                session_id, set_id, reps, weight, set_type, notes, completed
            )

        @sessions_router.delete("/{session_id}")
        def delete_session(session_id: str):
            removed = self.workouts.delete(session_id)
            return {"status": "deleted" if removed else "absent"}

        @active_router.get("")
        def get_active():
            return self.sessions.active

        @active_router.post("/start")
        def start_session(name: str = None, template_id: str = None):
            return self.sessions.start(name, template_id)

        @active_router.put("")
        def update_active(name: str = None, notes: str = None):
            session = self.sessions.active
            if name is not None:
                session = self.sessions.rename(name)
            if notes is not None:
                session = self.sessions.update_notes(notes)
            if session is None:
                raise NotFoundError("active session", "")
            return session

        @active_router.post("/exercises")
        def add_active_exercise(exercise_id: str, sets: int = None):
            return self.sessions.add_exercise(exercise_id, sets)

        @active_router.delete("/exercises/{entry_id}")
        def remove_active_exercise(entry_id: str):
            self.sessions.remove_exercise(entry_id)
            return {"status": "deleted"}

        @active_router.post("/sets")
        def add_active_set(
            exercise_id: str,
            reps: int = None,
            weight: float = None,
            set_type: str = None,
            notes: str = "",
            completed: bool = True,
            entry_id: str = None,
        ):
            return self.sessions.add_set(
                exercise_id, reps, weight, set_type, notes, completed, entry_id
            )

        @active_router.put("/sets/{set_id}")
        def edit_active_set(
            set_id: str,
            reps: int = None,
            weight: float = None,
            set_type: str = None,
            notes: str = None,
            completed: bool = None,
        ):
            return self.sessions.edit_set(set_id, reps, weight, set_type, notes, completed)

        @active_router.delete("/sets/{set_id}")
        def remove_active_set(set_id: str):
            self.sessions.remove_set(set_id)
            return {"status": "deleted"}

        @active_router.put("/run")
        def set_run(distance_km: float, duration_seconds: int, notes: str = ""):
            return self.sessions.set_run(distance_km, duration_seconds, notes)

        @active_router.delete("/run")
        def clear_run():
            self.sessions.clear_run()
            return {"status": "deleted"}

        @active_router.post("/gps/start")
        def start_gps():
            return self.sessions.start_gps_run()

        @active_router.post("/gps/points")
        def add_gps_point(
            latitude: float,
            longitude: float,
            accuracy: float = 5.0,
            timestamp: datetime.datetime = None,
        ):
            accepted = self.sessions.record_route_point(
                latitude, longitude, timestamp, accuracy
            )
            return {"accepted": accepted}

        @active_router.post("/gps/stop")
        def stop_gps(duration_seconds: int = None):
            return self.sessions.stop_gps_run(duration_seconds)

        @active_router.post("/template")
        def save_active_as_template(name: str, folder_id: str = None):
            return self.sessions.save_as_template(name, folder_id)

        @active_router.post("/complete")
        def complete_session():
            session = self.sessions.complete()
            pending = self.sessions.is_pending_persist(session.id)
            return {
                "session": session,
                "pending_persist": pending,
                "error": str(self.sessions.last_persistence_error) if pending else None,
            }

        @active_router.post("/discard")
        def discard_session():
            return {"discarded": self.sessions.discard()}

        @stats_router.get("/totals")
        def totals():
            return self.statistics.totals()

        @stats_router.get("/exercises")
        def exercises_with_history():
            return self.statistics.exercises_with_history()

        @stats_router.get("/progress/{exercise_id}")
        def progress(exercise_id: str):
            self.exercises.fetch(exercise_id)
            return self.statistics.progress_points(exercise_id)

        @stats_router.get("/records")
        def personal_records(exercise_id: str = None):
            return self.statistics.personal_records(exercise_id)

        @stats_router.get("/sessions/{session_id}/volume")
        def session_volume(session_id: str):
            session = self.workouts.fetch(session_id)
            return {"volume": self.statistics.session_volume(session)}

        @stats_router.get("/weekly_load")
        def weekly_load(weeks: int = 1, day: datetime.date = None):
            if weeks < 1:
                raise HTTPException(status_code=400, detail="weeks must be positive")
            if weeks == 1:
                return self.statistics.weekly_load(day)
            return self.statistics.weekly_loads(weeks, day)

        @stats_router.get("/week_over_week")
        def week_over_week(day: datetime.date = None):
            return {"delta_percent": self.statistics.week_over_week_delta(day)}

        @stats_router.get("/achievements")
        def achievements(limit: int = None):
            return self.statistics.achievement_timeline(limit)

        @weight_router.post("")
        def log_weight(value: float, unit: str = "metric", note: str = ""):
            return self.body_weights.log(value, unit, note=note)

        @weight_router.get("")
        def list_weights():
            return self.body_weights.fetch_all()

        @weight_router.get("/change")
        def weight_change(days: int = 30):
            return {"change_kg": self.body_weights.change(days)}

        @weight_router.get("/history")
        def weight_history():
            return self.statistics.body_weight_history()

        @weight_router.delete("/{entry_id}")
        def delete_weight(entry_id: str):
            self.body_weights.delete(entry_id)
            return {"status": "deleted"}

        for router in (
            exercises_router,
            folders_router,
            templates_router,
            sessions_router,
            active_router,
            stats_router,
            weight_router,
        ):
            self.app.include_router(router)


def create_app(data_dir: Optional[str] = None, yaml_path: str = "settings.yaml") -> FastAPI:
    return TrainingAPI(data_dir, yaml_path).app


if __name__ == "__main__":
    import uvicorn

    from config import configure_logging

    api = TrainingAPI()
    configure_logging(api.settings.log_level)
    uvicorn.run(api.app)
