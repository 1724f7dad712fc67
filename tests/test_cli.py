import csv
import json
import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from cli import convert, demo_data, export_sessions, main, verify_index
from db import DEFAULT_STATE_FILENAME, Database, WorkoutRepository
from migrate import migrate
from models import SCHEMA_VERSION


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return str(path)


def run_cli(tmp_path, data_dir, *args):
    return main(["--data-dir", data_dir, "--yaml", str(tmp_path / "none.yaml"), *args])


def test_demo_then_export_csv(tmp_path, data_dir):
    assert demo_data(data_dir) is True
    assert demo_data(data_dir) is False
    out = tmp_path / "exports"
    assert export_sessions(data_dir, "csv", str(out)) == 1
    files = os.listdir(out)
    assert len(files) == 1 and files[0].endswith(".csv")
    with open(out / files[0], newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert rows[0][:3] == ["date", "session", "exercise"]
    assert [r[2] for r in rows[1:]] == ["Bench Press", "Bench Press", "Back Squat"]


def test_export_json(tmp_path, data_dir):
    demo_data(data_dir)
    assert run_cli(tmp_path, data_dir, "export", "--fmt", "json", "--out", str(tmp_path / "j")) == 0
    (name,) = os.listdir(tmp_path / "j")
    data = json.loads((tmp_path / "j" / name).read_text())
    assert data["state"] == "completed"
    assert data["run"]["distance_km"] == 3.2


def test_backup_and_restore(tmp_path, data_dir):
    demo_data(data_dir)
    backup = str(tmp_path / "backup.json")
    assert run_cli(tmp_path, data_dir, "backup", "--out", backup) == 0
    other = str(tmp_path / "restored")
    os.makedirs(other)
    assert run_cli(tmp_path, other, "restore", "--in", backup) == 0
    sessions = WorkoutRepository(Database(other)).fetch_all()
    assert [s.name for s in sessions] == ["Demo session"]


def test_backup_without_document_fails(tmp_path, data_dir, capsys):
    assert run_cli(tmp_path, data_dir, "backup", "--out", str(tmp_path / "b.json")) == 1
    assert "error" in capsys.readouterr().err


def test_verify_index_detects_stale_cache(tmp_path, data_dir):
    demo_data(data_dir)
    assert verify_index(data_dir) is True
    path = os.path.join(data_dir, DEFAULT_STATE_FILENAME)
    with open(path, encoding="utf-8") as f:
        document = json.load(f)
    document["last_performance"] = {}
    with open(path, "w", encoding="utf-8") as f:
        json.dump(document, f)
    assert verify_index(data_dir) is False
    assert run_cli(tmp_path, data_dir, "verify-index") == 1


def test_corrupt_document_exit_code(tmp_path, data_dir):
    with open(os.path.join(data_dir, DEFAULT_STATE_FILENAME), "w", encoding="utf-8") as f:
        f.write("{not json")
    assert run_cli(tmp_path, data_dir, "export") == 2


def test_convert(capsys):
    assert convert(100, "kg").startswith("100 kg = 220.4")
    assert main(["convert", "--weight", "220", "--unit", "lb"]) == 0
    assert "lb =" in capsys.readouterr().out


def test_migrate_rewrites_v1_document(data_dir):
    assert migrate(data_dir) is False
    path = os.path.join(data_dir, DEFAULT_STATE_FILENAME)
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"schema_version": 1, "lastSetMemory": {"Bench Press": {"reps": 5}}}, f)
    assert migrate(data_dir) is True
    with open(path, encoding="utf-8") as f:
        document = json.load(f)
    assert document["schema_version"] == SCHEMA_VERSION
    assert "lastSetMemory" not in document


def test_export_on_empty_directory_writes_nothing(tmp_path, data_dir):
    assert export_sessions(data_dir, "csv", str(tmp_path / "out")) == 0
    assert os.listdir(data_dir) == []


def test_configured_state_filename_is_used(tmp_path, data_dir):
    settings = tmp_path / "custom.yaml"
    settings.write_text("state_filename: custom-state.json\n")

    def run(*args):
        return main(["--data-dir", data_dir, "--yaml", str(settings), *args])

    assert run("demo") == 0
    assert os.listdir(data_dir) == ["custom-state.json"]
    assert run("verify-index") == 0
    backup = str(tmp_path / "backup.json")
    assert run("backup", "--out", backup) == 0
    assert run("export", "--out", str(tmp_path / "out")) == 0
    assert len(os.listdir(tmp_path / "out")) == 1
    assert os.listdir(data_dir) == ["custom-state.json"]
