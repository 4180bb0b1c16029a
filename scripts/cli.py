"""CLI entry point for Clinbox terminal email triage."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import set_key

from clinbox.config.settings import ENV_PREFIX, ClinboxSettings
from clinbox.core.exceptions import InvariantViolation
from clinbox.core.models import SessionSummary, TriageFilter
from clinbox.pipeline.session import TriageSession
from clinbox.storage.checkpoint import CheckpointStore
from clinbox.storage.tasks import TaskStore

ENV_FILE = Path(".env")
SECRET_MARKERS = ("key", "token", "secret", "password")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVARIANT = 2
EXIT_INTERRUPTED = 130


def setup_logging(level: str, log_file: Path | None = None) -> None:
    """Configure logging with timestamp and module info.

    With a log file the terminal stays reserved for the triage UI.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        filename=str(log_file) if log_file else None,
    )


def mask_secret(name: str, value: str) -> str:
    """Hide most of a value whose setting name looks sensitive."""
    if not any(marker in name.lower() for marker in SECRET_MARKERS):
        return value
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


def env_name(key: str) -> str:
    """Map a user-supplied setting name to its environment variable."""
    name = key.strip().upper().replace("-", "_").replace(".", "_")
    if name.startswith(ENV_PREFIX):
        return name
    return ENV_PREFIX + name


def format_report(summary: SessionSummary) -> str:
    counts = " ".join(f"{kind}={n}" for kind, n in sorted(summary.as_dict().items()))
    state = "quit" if summary.quit else "finished"
    return f"{state}: processed={summary.total()} {counts}".rstrip()


def _validate_run_args(args: argparse.Namespace) -> None:
    """Reject non-positive --max-emails."""
    if args.max_emails is not None and args.max_emails <= 0:
        print("Error: --max-emails must be positive", file=sys.stderr)
        sys.exit(EXIT_FAILURE)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Clinbox - Triage your Gmail inbox from the terminal"
    )
    parser.add_argument(
        "--max-emails",
        "-n",
        type=int,
        default=None,
        dest="max_emails",
        help="Maximum number of emails to triage (default: from settings)",
    )
    parser.add_argument(
        "--all",
        "-a",
        action="store_true",
        dest="all",
        help="Include read emails, not just unread ones",
    )
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Discard saved progress for this filter and start over",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # tasks command
    tasks_parser = subparsers.add_parser("tasks", help="List pending tasks")
    tasks_parser.add_argument("--done", metavar="TASK_ID", help="Mark a task as completed")

    # status command
    status_parser = subparsers.add_parser("status", help="Show configuration and saved sessions")
    status_parser.add_argument(
        "--clear", action="store_true", help="Delete all saved session checkpoints"
    )

    # config command
    config_parser = subparsers.add_parser("config", help="Set a value in the .env file")
    config_parser.add_argument("key", help="Setting name, e.g. ai_api_key")
    config_parser.add_argument("value", help="Value to store")

    return parser


def run_triage(args: argparse.Namespace, settings: ClinboxSettings) -> int:
    missing = settings.missing_settings()
    if missing:
        print("Error: configuration incomplete:", file=sys.stderr)
        for name in missing:
            print(f"  - {env_name(name)}", file=sys.stderr)
        print("Use 'config KEY VALUE' or edit .env to fix.", file=sys.stderr)
        return EXIT_FAILURE

    triage_filter = TriageFilter(
        unread_only=not args.all,
        limit=args.max_emails or settings.max_emails,
    )
    session = TriageSession(settings)
    try:
        summary = session.run(triage_filter, fresh=args.fresh)
    finally:
        session.close()
    print(f"\nComplete ({format_report(summary)})")
    return EXIT_OK


def show_tasks(args: argparse.Namespace, settings: ClinboxSettings) -> int:
    store = TaskStore(settings.tasks_path)
    if args.done:
        if not store.complete(args.done):
            print(f"Error: no task with id '{args.done}'", file=sys.stderr)
            return EXIT_FAILURE
        print(f"Completed task {args.done}")
        return EXIT_OK

    tasks = store.list_pending()
    if not tasks:
        print("No pending tasks.")
        return EXIT_OK
    print(f"\n{len(tasks)} pending tasks:\n")
    for task in tasks:
        print(f"  {task.task_id}  {task.title}")
        if task.source_subject:
            print(f"  {'':17s} from: {task.source_subject}")
    return EXIT_OK


def show_status(args: argparse.Namespace, settings: ClinboxSettings) -> int:
    print("\nConfiguration:")
    print(f"  credentials: {settings.credentials_path} "
          f"({'found' if settings.credentials_path.exists() else 'missing'})")
    print(f"  token:       {settings.token_path} "
          f"({'found' if settings.token_path.exists() else 'not yet authorized'})")
    api_key = mask_secret("ai_api_key", settings.ai_api_key) if settings.ai_api_key else "missing"
    print(f"  AI key:      {api_key}")
    print(f"  models:      {settings.ai_model_analysis} / {settings.ai_model_reply}")
    print(f"  database:    {settings.database_path}")
    print(f"  tasks:       {settings.tasks_path}")

    with CheckpointStore(settings.database_path) as checkpoints:
        if args.clear:
            removed = checkpoints.clear_all()
            print(f"\nCleared {removed} saved sessions")
            return EXIT_OK
        saved = checkpoints.list_checkpoints()

    print("\nSaved sessions:")
    if not saved:
        print("  none")
    for entry in saved:
        print(
            f"  {entry['filter_key']}: {entry['pending']}/{entry['items']} pending "
            f"(updated {entry['updated_at']})"
        )
    return EXIT_OK


def set_config(args: argparse.Namespace) -> int:
    name = env_name(args.key)
    field = name[len(ENV_PREFIX):].lower()
    if field not in ClinboxSettings.model_fields:
        print(f"Error: unknown setting '{args.key}'", file=sys.stderr)
        return EXIT_FAILURE
    ENV_FILE.touch(exist_ok=True)
    set_key(str(ENV_FILE), name, args.value)
    print(f"Set {name}={mask_secret(name, args.value)} in {ENV_FILE}")
    return EXIT_OK


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "config":
        sys.exit(set_config(args))

    _validate_run_args(args)

    try:
        settings = ClinboxSettings()
        if args.command is None:
            settings.ensure_directories()
        setup_logging(settings.log_level, settings.log_file if args.command is None else None)

        if args.command == "tasks":
            code = show_tasks(args, settings)
        elif args.command == "status":
            code = show_status(args, settings)
        else:
            code = run_triage(args, settings)

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except InvariantViolation as e:
        print(f"\nInternal error, session aborted: {e}", file=sys.stderr)
        sys.exit(EXIT_INVARIANT)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    sys.exit(code)


if __name__ == "__main__":
    main()
