import argparse
import csv
import json
import os
import sys
from typing import Optional

from loguru import logger

from config import YamlConfig, configure_logging, resolve_data_dir
from db import (
    DEFAULT_STATE_FILENAME,
    AccountRepository,
    Database,
    ExerciseRepository,
    WorkoutRepository,
)
from errors import CorruptionError, TrainingLogError
from last_performance import LastPerformanceIndex
from persistence import PersistenceGateway
from session_service import SessionLifecycleController
from tools import WeightConverter


def _state_path(data_dir: str, filename: str = DEFAULT_STATE_FILENAME) -> str:
    return os.path.join(data_dir, filename)


def export_sessions(
    data_dir: str,
    fmt: str,
    output_dir: str = ".",
    filename: str = DEFAULT_STATE_FILENAME,
) -> int:
    """Write one file per completed session; return the number written."""
    state = PersistenceGateway(_state_path(data_dir, filename)).load()
    if state is None:
        return 0
    # Without a gateway the export never writes the document back.
    db = Database(state=state)
    workouts = WorkoutRepository(db)
    names = {e.id: e.name for e in ExerciseRepository(db).fetch_all()}
    os.makedirs(output_dir, exist_ok=True)
    sessions = workouts.fetch_all(descending=False)
    for session in sessions:
        if fmt == "csv":
            out_path = os.path.join(output_dir, f"session_{session.id}.csv")
            with open(out_path, "w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                writer.writerow(
                    ["date", "session", "exercise", "set", "reps", "weight", "set_type", "completed"]
                )
                for position, logged in session.iter_sets():
                    writer.writerow(
                        [
                            session.date.date().isoformat(),
                            session.name,
                            names.get(logged.exercise_id, logged.exercise_id),
                            position + 1,
                            logged.reps,
                            logged.weight,
                            logged.set_type.value,
                            int(logged.completed),
                        ]
                    )
        else:
            out_path = os.path.join(output_dir, f"session_{session.id}.json")
            with open(out_path, "w", encoding="utf-8") as f:
                json.dump(session.model_dump(mode="json"), f, indent=2)
    return len(sessions)


def backup_state(
    data_dir: str, backup_path: str, filename: str = DEFAULT_STATE_FILENAME
) -> None:
    gateway = PersistenceGateway(_state_path(data_dir, filename))
    state = gateway.load()
    if state is None:
        raise FileNotFoundError(gateway.path)
    PersistenceGateway(backup_path).save(state)


def restore_state(
    backup_path: str, data_dir: str, filename: str = DEFAULT_STATE_FILENAME
) -> None:
    """Replace the state document with a validated backup."""
    state = PersistenceGateway(backup_path).load()
    if state is None:
        raise FileNotFoundError(backup_path)
    PersistenceGateway(_state_path(data_dir, filename)).save(state)


def verify_index(data_dir: str, filename: str = DEFAULT_STATE_FILENAME) -> bool:
    """Compare the stored last-performance cache with a fresh rebuild."""
    state = PersistenceGateway(_state_path(data_dir, filename)).load()
    if state is None:
        return True
    rebuilt = LastPerformanceIndex().rebuild(state.sessions).snapshot()
    if rebuilt != state.last_performance:
        stale = sorted(set(rebuilt) ^ set(state.last_performance)) or [
            key for key in rebuilt if rebuilt[key] != state.last_performance.get(key)
        ]
        logger.warning("Last-performance cache differs for {}", ", ".join(stale))
        return False
    return True


def demo_data(data_dir: str, filename: str = DEFAULT_STATE_FILENAME) -> bool:
    """Populate an empty history with a demo session."""
    db = Database(data_dir, filename=filename)
    if WorkoutRepository(db).fetch_all():
        print("History already contains sessions")
        return False
    accounts = AccountRepository(db)
    if not accounts.exists():
        accounts.create("Demo")
    exercises = ExerciseRepository(db)
    bench = exercises.add_if_needed("Bench Press", category="Chest")
    squat = exercises.add_if_needed("Back Squat", category="Legs")
    controller = SessionLifecycleController(db)
    controller.start("Demo session")
    controller.add_set(bench.id, 5, 100.0)
    controller.add_set(bench.id, 5, 105.0)
    controller.add_set(squat.id, 5, 140.0)
    controller.set_run(3.2, 1080)
    controller.complete()
    print("Demo data inserted")
    return True


def convert(value: float, unit: str) -> str:
    if unit == "kg":
        return f"{value} kg = {WeightConverter.kg_to_lb(value)} lb"
    return f"{value} lb = {WeightConverter.lb_to_kg(value)} kg"


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Utility commands")
    parser.add_argument("--data-dir", default=None)
    parser.add_argument("--yaml", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    exp = sub.add_parser("export")
    exp.add_argument("--fmt", choices=["csv", "json"], default="csv")
    exp.add_argument("--out", default=".")

    bkp = sub.add_parser("backup")
    bkp.add_argument("--out", default="backup.json")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.json")

    sub.add_parser("demo")
    sub.add_parser("verify-index")

    conv = sub.add_parser("convert")
    conv.add_argument("--weight", type=float, required=True)
    conv.add_argument("--unit", choices=["kg", "lb"], required=True)

    args = parser.parse_args(argv)

    if args.cmd == "convert":
        print(convert(args.weight, args.unit))
        return 0

    settings = YamlConfig(args.yaml).settings()
    if args.data_dir:
        settings.data_dir = args.data_dir
    configure_logging(settings.log_level)
    data_dir = resolve_data_dir(settings)
    filename = settings.state_filename

    try:
        if args.cmd == "export":
            count = export_sessions(data_dir, args.fmt, args.out, filename)
            print(f"Exported {count} sessions to {args.out}")
        elif args.cmd == "backup":
            backup_state(data_dir, args.out, filename)
            print(f"Backup written to {args.out}")
        elif args.cmd == "restore":
            restore_state(args.src, data_dir, filename)
            print(f"Restored {args.src}")
        elif args.cmd == "demo":
            demo_data(data_dir, filename)
        elif args.cmd == "verify-index":
            if not verify_index(data_dir, filename):
                print("Last-performance cache is stale")
                return 1
            print("Last-performance cache is consistent")
    except CorruptionError as e:
        print(f"State document is corrupt: {e}", file=sys.stderr)
        return 2
    except (TrainingLogError, FileNotFoundError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
