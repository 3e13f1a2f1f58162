import json

import main
from main import _parse_args
from vpnsync.models import SyncResult, SyncRunRecorder


def test_default_command_invokes_serve() -> None:
    args = _parse_args([])
    assert args.command == "serve"


def test_default_command_accepts_options_without_subcommand() -> None:
    args = _parse_args(["--host", "127.0.0.1", "--port", "9000"])
    assert args.command == "serve"
    assert args.host == "127.0.0.1"
    assert args.port == 9000


def test_sync_subcommand_flags() -> None:
    args = _parse_args(["sync", "--dry-run", "--delete-orphaned", "--config", "custom.yaml"])
    assert args.command == "sync"
    assert args.dry_run is True
    assert args.delete_orphaned is True
    assert args.config == "custom.yaml"


def test_status_and_init_db_subcommands_available() -> None:
    assert _parse_args(["status"]).command == "status"
    assert _parse_args(["init-db"]).command == "init-db"


class DummyService:
    def __init__(self, result) -> None:
        self._result = result
        self.calls = []

    def full_sync(self, *, dry_run, delete_orphaned):
        self.calls.append((dry_run, delete_orphaned))
        return self._result


def test_sync_command_prints_json_summary(monkeypatch, tmp_path, capsys) -> None:
    recorder = SyncRunRecorder(trigger="manual", dry_run=True, delete_orphaned=False)
    recorder.created.append("erin")
    service = DummyService(SyncResult(run=recorder.finish()))
    monkeypatch.setattr("vpnsync.application.build_service", lambda *_args, **_kwargs: service)
    monkeypatch.setenv("VPNSYNC_DB_PATH", str(tmp_path / "cli.sqlite3"))
    monkeypatch.setenv("VPNSYNC_CONFIG", str(tmp_path / "missing.yaml"))

    exit_code = main.main(["sync", "--dry-run"])

    assert exit_code == 0
    assert service.calls == [(True, False)]
    payload = json.loads(capsys.readouterr().out)
    assert payload["created"] == ["erin"]
    assert payload["dryRun"] is True


def test_init_db_creates_database(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("VPNSYNC_DB_PATH", str(tmp_path / "cli.sqlite3"))
    monkeypatch.setenv("VPNSYNC_CONFIG", str(tmp_path / "missing.yaml"))

    assert main.main(["init-db"]) == 0
    assert (tmp_path / "cli.sqlite3").exists()
