from __future__ import annotations

from pathlib import Path

import pytest

import main
from main import _parse_args
from mailadmin.database import Database
from mailadmin.models import Role


def test_default_command_invokes_serve() -> None:
    args = _parse_args([])
    assert args.command == "serve"
    assert args.port == 8000


def test_default_command_accepts_options_without_subcommand() -> None:
    args = _parse_args(["--host", "0.0.0.0", "--port", "8080"])
    assert args.command == "serve"
    assert args.host == "0.0.0.0"
    assert args.port == 8080


def test_global_config_option_precedes_default_command() -> None:
    args = _parse_args(["--config", "/etc/mailadmin.yaml", "--port", "9000"])
    assert args.command == "serve"
    assert args.config == "/etc/mailadmin.yaml"
    assert args.port == 9000


def test_create_user_arguments() -> None:
    args = _parse_args(["create-user", "root", "root@example.com", "--role", "super_admin"])
    assert args.command == "create-user"
    assert args.username == "root"
    assert args.role == "super_admin"


def test_create_user_rejects_unknown_role() -> None:
    with pytest.raises(SystemExit):
        _parse_args(["create-user", "root", "root@example.com", "--role", "owner"])


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    db_path = tmp_path / "cli.sqlite3"
    monkeypatch.setenv("MAILADMIN_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("MAILADMIN_DB_PATH", str(db_path))
    return db_path


def _answer_prompts(monkeypatch, *answers: str) -> None:
    replies = iter(answers)
    monkeypatch.setattr(main, "getpass", lambda prompt="": next(replies))


def test_create_user_bootstraps_super_admin(cli_env: Path, monkeypatch, capsys) -> None:
    _answer_prompts(monkeypatch, "bootstrap-secret", "bootstrap-secret")

    exit_code = main.main(["create-user", "root", "Root@Example.com", "--role", "super_admin"])

    assert exit_code == 0
    assert "Created user" in capsys.readouterr().out
    database = Database(cli_env)
    user = database.get_user_by_username("root")
    assert user is not None
    assert user.role is Role.SUPER_ADMIN
    assert user.email == "root@example.com"
    [entry] = database.list_audit_entries()
    assert entry.action == "CREATE_USER"
    assert entry.user_id == user.id


def test_create_user_reports_validation_errors(cli_env: Path, monkeypatch, capsys) -> None:
    _answer_prompts(monkeypatch, "bootstrap-secret", "bootstrap-secret")

    exit_code = main.main(["create-user", "root", "not-an-email"])

    assert exit_code == 1
    assert "email" in capsys.readouterr().err
    assert Database(cli_env).get_user_by_username("root") is None


def test_mismatched_passwords_abort(cli_env: Path, monkeypatch) -> None:
    _answer_prompts(monkeypatch, "first-secret", "other-secret", "short", "first-secret", "nope-nope")

    assert main.main(["create-user", "root", "root@example.com"]) == 1


def test_set_password_and_list_users(cli_env: Path, monkeypatch, capsys) -> None:
    _answer_prompts(monkeypatch, "bootstrap-secret", "bootstrap-secret", "rotated-secret", "rotated-secret")
    assert main.main(["create-user", "alice", "alice@example.com"]) == 0

    assert main.main(["set-password", "alice"]) == 0
    assert main.main(["list-users"]) == 0

    out = capsys.readouterr().out
    assert "Password updated for alice" in out
    assert "alice" in out and "client" in out
    actions = [entry.action for entry in Database(cli_env).list_audit_entries()]
    assert actions == ["RESET_PASSWORD", "CREATE_USER"]


def test_set_password_for_unknown_user(cli_env: Path, monkeypatch, capsys) -> None:
    _answer_prompts(monkeypatch, "rotated-secret", "rotated-secret")

    assert main.main(["set-password", "ghost"]) == 1
    assert "User not found" in capsys.readouterr().err


def test_purge_sessions_and_init_db(cli_env: Path, capsys) -> None:
    assert main.main(["init-db"]) == 0
    assert cli_env.exists()
    assert main.main(["purge-sessions"]) == 0
    assert "Removed 0 expired session(s)." in capsys.readouterr().out
