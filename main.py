"""Command-line interface for the webmail administration service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from getpass import getpass
from pathlib import Path
from typing import Sequence


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv():
        return

    root = Path(__file__).resolve().parent
    venv_dir = root / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
        venv_dir / "Scripts" / "python.exe",
        venv_dir / "Scripts" / "python",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


if __name__ == "__main__":
    _bootstrap_virtualenv()

from mailadmin.config import Settings, load_settings
from mailadmin.database import Database
from mailadmin.errors import MailAdminError, ValidationError
from mailadmin.handlers import build_handlers
from mailadmin.models import Role
from mailadmin.schemas import CreateUserRequest, parse_request
from mailadmin.sessions import SessionManager

logger = logging.getLogger("mailadmin.main")

PASSWORD_MIN_LENGTH = 6
KNOWN_COMMANDS = {"serve", "init-db", "create-user", "set-password", "list-users", "purge-sessions"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Webmail administration utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML settings file (default: MAILADMIN_CONFIG or config/mailadmin.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the application database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port for the API (default: 8000)")

    create_parser = subparsers.add_parser(
        "create-user", help="Create an account directly in the database (bootstraps the first super admin)"
    )
    create_parser.add_argument("username", help="Unique login name")
    create_parser.add_argument("email", help="Unique email address")
    create_parser.add_argument(
        "--role",
        choices=[role.value for role in Role],
        default=Role.CLIENT.value,
        help="Role of the new account (default: client)",
    )
    create_parser.add_argument("--first-name", default=None)
    create_parser.add_argument("--last-name", default=None)
    create_parser.add_argument("--domain-id", default=None, help="Associate the account with a domain")

    password_parser = subparsers.add_parser("set-password", help="Reset the password of an account")
    password_parser.add_argument("username", help="Login name of the account")

    subparsers.add_parser("list-users", help="List registered accounts")
    subparsers.add_parser("purge-sessions", help="Delete expired login sessions")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first_command = next((item for item in args_list if item in KNOWN_COMMANDS), None)
        if first_command is None and not any(flag in args_list for flag in ("-h", "--help")):
            args_list = _insert_default_command(args_list)

    return parser.parse_args(args_list)


def _insert_default_command(args_list: list[str]) -> list[str]:
    """Place ``serve`` after any global ``--config`` option."""

    if args_list[:1] == ["--config"] and len(args_list) >= 2:
        return [*args_list[:2], "serve", *args_list[2:]]
    if args_list and args_list[0].startswith("--config="):
        return [args_list[0], "serve", *args_list[1:]]
    return ["serve", *args_list]


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(*, settings: Settings, database: Database, host: str, port: int) -> None:
    from mailadmin.api import create_app
    import uvicorn

    logger.info("Starting mail admin API on http://%s:%s", host, port)
    app = create_app(settings=settings, database=database)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass(f"Password (min {PASSWORD_MIN_LENGTH} characters): ")
        if len(password) < PASSWORD_MIN_LENGTH:
            print("Password is too short. Please try again.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _print_validation_errors(exc: ValidationError) -> None:
    print(f"Error: {exc.message}", file=sys.stderr)
    for error in exc.errors:
        print(f"  {error.field}: {error.message}", file=sys.stderr)


def _create_user(settings: Settings, database: Database, args: argparse.Namespace) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Aborted creating user.", file=sys.stderr)
        return 1

    handlers = build_handlers(database, settings)
    try:
        request = parse_request(
            CreateUserRequest,
            {
                "username": args.username,
                "email": args.email,
                "role": args.role,
                "firstName": args.first_name,
                "lastName": args.last_name,
                "domainId": args.domain_id,
                "tempPassword": password,
            },
        )
        user = handlers.users.bootstrap_user(request)
    except ValidationError as exc:
        _print_validation_errors(exc)
        return 1
    except MailAdminError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1

    print(f"Created user {user.id}: {user.username} <{user.email}> ({user.role.value})")
    return 0


def _set_password(settings: Settings, database: Database, args: argparse.Namespace) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Aborted resetting password.", file=sys.stderr)
        return 1

    handlers = build_handlers(database, settings)
    try:
        user = handlers.users.bootstrap_password(args.username, password)
    except ValidationError as exc:
        _print_validation_errors(exc)
        return 1
    except MailAdminError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1

    print(f"Password updated for {user.username}; existing sessions were signed out.")
    return 0


def _list_users(database: Database) -> int:
    users = database.list_users()
    if not users:
        print("No users are currently registered.")
        return 0

    print(f"{len(users)} user(s) found:")
    print(f"{'Username':<24}  {'Role':<12}  {'Active':<6}  {'Email':<32}  Created")
    print("-" * 100)
    for user in users:
        created = user.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        email = user.email or "<no email>"
        active = "yes" if user.is_active else "no"
        print(f"{user.username:<24}  {user.role.value:<12}  {active:<6}  {email:<32}  {created}")
    return 0


def _purge_sessions(settings: Settings, database: Database) -> int:
    from datetime import timedelta

    manager = SessionManager(database, ttl=timedelta(hours=settings.session_ttl_hours))
    removed = manager.purge_expired()
    print(f"Removed {removed} expired session(s).")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    args = _parse_args(argv)
    settings = load_settings(Path(args.config).expanduser() if args.config else None)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings=settings, database=database, host=args.host, port=args.port)
        return 0
    if args.command == "create-user":
        return _create_user(settings, database, args)
    if args.command == "set-password":
        return _set_password(settings, database, args)
    if args.command == "list-users":
        return _list_users(database)
    if args.command == "purge-sessions":
        return _purge_sessions(settings, database)
    if args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
