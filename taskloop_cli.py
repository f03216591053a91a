"""Command line entry point for taskloop.

Commands: start, status, stop, resume, logs, cleanup, delete, backends.
The CLI owns the wiring: it resolves configuration once, builds the session
store and backend, and turns loop transitions into store writes.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import subprocess
import sys
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from backends import backend_names, get_backend
from log_redactor import install_redaction
from loop_config import (
    ENV_PROMPT_TEMPLATE_FILE,
    PROJECT_DIR_NAME,
    LoggingConfig,
    StateConfig,
    TaskloopConfig,
    config_search_paths,
    load_config,
)
from loop_controller import (
    BackendUnavailable,
    LoopController,
    LoopOptions,
    StateUpdate,
)
from session_store import (
    CleanupMode,
    SessionNotFoundError,
    SessionRecord,
    SessionStatus,
    SessionStore,
    RESUMABLE_STATUSES,
)
from state_lock import LockTimeout, is_pid_alive
from task_blocks import count_remaining

logger = logging.getLogger(__name__)

# Exit codes
EXIT_COMPLETE = 0
EXIT_MAX_ITERATIONS = 1
EXIT_FAILED = 2
EXIT_ERROR = 3
EXIT_INTERRUPTED = 130

_STATUS_EXIT_CODES = {
    SessionStatus.COMPLETE: EXIT_COMPLETE,
    SessionStatus.MAX_ITERATIONS: EXIT_MAX_ITERATIONS,
    SessionStatus.FAILED: EXIT_FAILED,
}


class CommandError(Exception):
    """A user-facing failure; printed without a traceback."""


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps({
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        })


def setup_logging(verbose: bool = False, json_log: bool = False,
                  logging_config: Optional[LoggingConfig] = None) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    if json_log:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
        logging.root.addHandler(handler)
        logging.root.setLevel(log_level)
    else:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    install_redaction((logging_config or LoggingConfig()).redact_patterns)


def sanitize_session_name(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "-", value.strip())


def truncate_dir(path: str, width: int = 40) -> str:
    if width <= 0 or len(path) <= width:
        return path
    if width <= 3:
        return path[:width]
    return "..." + path[-(width - 3):]


def format_remaining(remaining: int) -> str:
    if remaining < 0:
        return "?"
    if remaining == 1:
        return "1 task"
    return f"{remaining} tasks"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_config(state_config: StateConfig, project_dir: Optional[Path] = None) -> TaskloopConfig:
    result = load_config(*config_search_paths(state_config, project_dir))
    if not result.success:
        raise CommandError(f"Config error: {result.error}")
    return result.data


def _current_remaining(record: SessionRecord) -> int:
    task_path = record.task_path
    if task_path is not None and task_path.is_file():
        try:
            return count_remaining(task_path)
        except OSError:
            pass
    return record.last_task_count


# -- start --

def _child_command(args: argparse.Namespace, session_name: str, values: dict) -> list[str]:
    command = [
        sys.executable, "-m", "taskloop_cli", "start", str(values["dir"]),
        "--child",
        "--name", session_name,
        "--max-iterations", str(values["max_iterations"]),
        "--task-file", values["task_file"],
        "--completion-marker", values["completion_marker"],
        "--backend", values["backend"],
        "--sleep", str(values["sleep_seconds"]),
    ]
    if values.get("model"):
        command += ["--model", values["model"]]
    if values.get("prompt_template_file"):
        command += ["--prompt-template", str(values["prompt_template_file"])]
    if values.get("context_files"):
        command += ["--context-files", ",".join(values["context_files"])]
    if args.verbose:
        command.append("--verbose")
    return command


def spawn_detached(command: list[str], project_dir: Path, session_name: str) -> int:
    """Start the loop in its own process session; returns the child pid."""
    out_dir = project_dir / PROJECT_DIR_NAME
    out_dir.mkdir(parents=True, exist_ok=True)
    with open(out_dir / f"{session_name}.out", "a", encoding="utf-8") as out:
        proc = subprocess.Popen(
            command,
            cwd=str(project_dir),
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    return proc.pid


def _raise_interrupt(signum, frame) -> None:
    # `stop` sends SIGTERM; unwind like Ctrl-C so the backend child is terminated too
    raise KeyboardInterrupt


def ensure_session_available(store: SessionStore, name: str) -> None:
    record = store.get(name)
    if record is None or record.status != SessionStatus.RUNNING:
        return
    if record.pid > 0 and store.is_alive(record.pid):
        raise CommandError(f"Session '{name}' is already running (pid: {record.pid})")
    logger.warning("Session '%s' appears stale and will be restarted", name)


def _resolve_start_values(args: argparse.Namespace, config: TaskloopConfig, project_dir: Path) -> dict:
    defaults = config.defaults
    if args.max_iterations is not None and args.max_iterations <= 0:
        raise CommandError("--max-iterations must be a positive integer")

    template_file = args.prompt_template or os.environ.get(ENV_PROMPT_TEMPLATE_FILE) or None
    if template_file:
        template_file = str(Path(template_file).resolve())
        if not Path(template_file).is_file():
            raise CommandError(f"Prompt template file does not exist: {template_file}")

    context_files = defaults.context_files
    if args.context_files is not None:
        context_files = [p.strip() for p in args.context_files.split(",") if p.strip()]

    return {
        "dir": project_dir,
        "max_iterations": args.max_iterations or defaults.max_iterations,
        "task_file": (args.task_file or defaults.task_file).strip(),
        "completion_marker": (args.completion_marker or defaults.completion_marker).strip(),
        "backend": (args.backend or defaults.backend).strip(),
        "model": args.model if args.model is not None else defaults.model,
        "sleep_seconds": args.sleep if args.sleep is not None else defaults.sleep_seconds,
        "prompt_template_file": template_file,
        "context_files": context_files,
    }


def cmd_start(args: argparse.Namespace, state_config: StateConfig) -> int:
    project_dir = Path(args.dir).resolve()
    if not project_dir.is_dir():
        raise CommandError(f"Project directory does not exist: {project_dir}")

    config = _load_config(state_config, project_dir)
    values = _resolve_start_values(args, config, project_dir)

    try:
        backend = get_backend(values["backend"])
    except KeyError as e:
        raise CommandError(str(e.args[0])) from None
    if not backend.is_installed():
        raise CommandError(
            f"Backend '{values['backend']}' is not installed. {backend.get_install_hint()}"
        )

    task_path = project_dir / values["task_file"]
    if not task_path.is_file():
        raise CommandError(f"Task file does not exist: {task_path}")

    session_name = sanitize_session_name(args.name or project_dir.name)
    if not session_name:
        raise CommandError("Session name is required")

    store = SessionStore(state_config)
    store.init()
    if not args.child:
        ensure_session_available(store, session_name)

    log_file = project_dir / PROJECT_DIR_NAME / f"{session_name}.log"
    fields = {
        "dir": str(project_dir),
        "task_file": values["task_file"],
        "status": SessionStatus.RUNNING,
        "started_at": _now(),
        "iteration": 1,
        "max_iterations": values["max_iterations"],
        "completion_marker": values["completion_marker"],
        "last_task_count": count_remaining(task_path),
        "log_file": str(log_file),
        "backend": values["backend"],
        "model": values["model"] or "",
        "prompt_template_file": values["prompt_template_file"] or "",
        "context_files": values["context_files"],
        "sleep_seconds": values["sleep_seconds"],
    }

    if args.detach and not args.child:
        pid = spawn_detached(_child_command(args, session_name, values), project_dir, session_name)
        store.set(session_name, fields, pid=pid, detached=True)
        print(f"Loop started in background: {session_name} (pid {pid})")
        print(f"Log: {log_file}")
        return EXIT_COMPLETE

    store.set(session_name, fields, pid=os.getpid(), detached=bool(args.child))

    def on_transition(update: StateUpdate) -> None:
        store.set(update.session, {
            "iteration": update.iteration,
            "status": update.status,
            "last_task_count": update.remaining,
        })

    options = LoopOptions(
        project_dir=project_dir,
        task_file=values["task_file"],
        max_iterations=values["max_iterations"],
        completion_marker=values["completion_marker"],
        model=values["model"],
        session_name=session_name,
        prompt_template_file=values["prompt_template_file"],
        context_files=values["context_files"],
        log_file=log_file,
        sleep_seconds=values["sleep_seconds"],
        log_retain_days=config.logging.retain_days,
    )
    controller = LoopController(options, backend, on_transition=on_transition)

    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        result = controller.run()
    except KeyboardInterrupt:
        logger.warning("Interrupted; marking session '%s' stopped", session_name)
        store.set(session_name, status=SessionStatus.STOPPED, pid=0, ended_at=_now())
        return EXIT_INTERRUPTED
    except (BackendUnavailable, FileNotFoundError, NotADirectoryError, ValueError) as e:
        store.set(session_name, status=SessionStatus.FAILED, error=str(e), ended_at=_now())
        raise CommandError(str(e)) from None
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    final = {
        "status": result.status,
        "last_task_count": result.remaining_tasks,
        "ended_at": _now(),
        "duration_seconds": round(result.duration, 1),
    }
    if result.error:
        final["error"] = result.error
    store.set(session_name, final)

    if result.status is SessionStatus.COMPLETE:
        print(f"Session '{session_name}' complete after {result.iterations} iterations")
    elif result.status is SessionStatus.MAX_ITERATIONS:
        print(f"Session '{session_name}' hit max iterations ({result.iterations}); "
              f"{format_remaining(result.remaining_tasks)} remaining")
    else:
        print(f"Session '{session_name}' failed: {result.error}", file=sys.stderr)
    return _STATUS_EXIT_CODES.get(result.status, EXIT_FAILED)


# -- status --

def cmd_status(args: argparse.Namespace, state_config: StateConfig) -> int:
    store = SessionStore(state_config)
    store.init()
    store.cleanup_stale(CleanupMode.MARK)
    sessions = sorted(store.list(), key=lambda r: r.name)

    if args.json:
        payload = []
        for record in sessions:
            data = record.model_dump()
            data["remaining"] = _current_remaining(record)
            payload.append(data)
        print(json.dumps({"sessions": payload}, indent=2))
        return EXIT_COMPLETE

    if not sessions:
        print("No sessions found")
        print("Start a new loop with: taskloop start <directory>")
        return EXIT_COMPLETE

    rows = [("NAME", "DIR", "ITERATION", "STATUS", "REMAINING")]
    for record in sessions:
        rows.append((
            record.name,
            truncate_dir(record.dir),
            f"{record.iteration}/{record.max_iterations}",
            record.status,
            format_remaining(_current_remaining(record)),
        ))
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    for index, row in enumerate(rows):
        print("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
        if index == 0:
            print("  ".join("-" * w for w in widths))
    print("")
    print("Commands: taskloop stop <name>, taskloop resume [name], taskloop cleanup")
    return EXIT_COMPLETE


# -- stop --

def stop_session(store: SessionStore, record: SessionRecord) -> None:
    if record.pid > 0 and store.is_alive(record.pid):
        try:
            if record.extra("detached"):
                os.killpg(record.pid, signal.SIGTERM)
            else:
                os.kill(record.pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Process %d already gone", record.pid)
        except PermissionError as e:
            raise CommandError(f"Cannot signal pid {record.pid}: {e}") from None
    store.set(record.name, status=SessionStatus.STOPPED, pid=0, ended_at=_now())


def cmd_stop(args: argparse.Namespace, state_config: StateConfig) -> int:
    store = SessionStore(state_config)
    store.init()

    if args.all:
        running = [r for r in store.list() if r.status == SessionStatus.RUNNING]
        if not running:
            print("No running sessions to stop")
            return EXIT_COMPLETE
        for record in running:
            stop_session(store, record)
            print(f"Stopped session: {record.name}")
        print(f"Stopped {len(running)} session(s)")
        return EXIT_COMPLETE

    if not args.name:
        raise CommandError("Session name is required (use --all to stop all sessions)")
    record = store.get(args.name)
    if record is None:
        raise CommandError(f"Session not found: {args.name}")
    stop_session(store, record)
    print(f"Stopped session: {args.name}")
    return EXIT_COMPLETE


# -- resume --

def resume_reason(record: SessionRecord, is_alive=is_pid_alive) -> tuple[bool, str]:
    """Decide whether a session may be resumed, with a short reason."""
    if record.status == SessionStatus.RUNNING:
        if record.pid <= 0:
            return True, "missing pid"
        if not is_alive(record.pid):
            return True, "stale pid"
        return False, "already running"
    if record.status in RESUMABLE_STATUSES:
        return True, record.status
    if not record.status:
        return True, "unknown status"
    return False, record.status


def cmd_resume(args: argparse.Namespace, state_config: StateConfig) -> int:
    store = SessionStore(state_config)
    store.init()
    sessions = store.list()
    if not sessions:
        print("No sessions found")
        return EXIT_COMPLETE

    resumed = 0
    for record in sessions:
        if args.name and record.name != args.name:
            continue
        ok, reason = resume_reason(record, store.is_alive)
        if not ok:
            if args.name:
                logger.warning("Session '%s' is not resumable (%s)", record.name, reason)
            continue

        project_dir = Path(record.dir) if record.dir else None
        if project_dir is None or not project_dir.is_dir():
            logger.warning("Skipping '%s' (directory missing: %s)", record.name, record.dir)
            continue
        task_file = record.task_file or "PRD.md"
        task_path = project_dir / task_file
        if not task_path.is_file():
            logger.warning("Skipping '%s' (task file missing: %s)", record.name, task_path)
            continue

        values = {
            "dir": project_dir,
            "max_iterations": record.max_iterations,
            "task_file": task_file,
            "completion_marker": record.completion_marker or "COMPLETE",
            "backend": record.extra("backend") or "claude",
            "model": record.extra("model") or None,
            "sleep_seconds": record.extra("sleep_seconds", 2.0),
            "prompt_template_file": record.extra("prompt_template_file") or None,
            "context_files": record.extra("context_files") or [],
        }
        pid = spawn_detached(_child_command(args, record.name, values), project_dir, record.name)
        store.set(record.name, {
            "pid": pid,
            "detached": True,
            "status": SessionStatus.RUNNING,
            "last_task_count": count_remaining(task_path),
            "resumed_at": _now(),
        })
        print(f"Resumed session: {record.name} (pid {pid})")
        resumed += 1

    if args.name and resumed == 0:
        raise CommandError("No matching session resumed")
    if resumed == 0:
        print("No sessions to resume")
    else:
        print(f"Resumed {resumed} session(s)")
    return EXIT_COMPLETE


# -- logs --

def resolve_log_file(record: SessionRecord) -> Optional[Path]:
    log_file = record.extra("log_file")
    if log_file:
        return Path(log_file)
    if record.dir:
        return Path(record.dir) / PROJECT_DIR_NAME / f"{record.name}.log"
    return None


def tail_lines(path: Path, limit: int) -> list[str]:
    if limit <= 0:
        return []
    with open(path, encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=limit)]


def follow_log(path: Path, store: SessionStore, name: str, poll_interval: float = 0.5) -> None:
    """Print lines appended to the log until the session stops running."""
    with open(path, encoding="utf-8", errors="replace") as f:
        f.seek(0, os.SEEK_END)
        while True:
            line = f.readline()
            if line:
                print(line, end="", flush=True)
                continue
            record = store.get(name)
            if record is None or record.status != SessionStatus.RUNNING:
                rest = f.read()
                if rest:
                    print(rest, end="", flush=True)
                return
            time.sleep(poll_interval)


def cmd_logs(args: argparse.Namespace, state_config: StateConfig) -> int:
    store = SessionStore(state_config)
    record = store.get(args.name)
    if record is None:
        raise CommandError(f"Session not found: {args.name}")

    log_file = resolve_log_file(record)
    if log_file is None:
        raise CommandError(f"Cannot determine log file for session: {args.name}")
    if not log_file.is_file():
        raise CommandError(f"Log file does not exist: {log_file}")

    print(f"Session: {record.name} (status: {record.status})")
    print(f"Log file: {log_file}")
    print("")
    for line in tail_lines(log_file, args.lines):
        print(line)

    if args.follow:
        try:
            follow_log(log_file, store, record.name)
        except KeyboardInterrupt:
            print("")
    return EXIT_COMPLETE


# -- maintenance --

def cmd_cleanup(args: argparse.Namespace, state_config: StateConfig) -> int:
    store = SessionStore(state_config)
    mode = CleanupMode.REMOVE if args.remove else CleanupMode.MARK
    cleaned = store.cleanup_stale(mode)
    if not cleaned:
        print("No stale sessions")
    for name in cleaned:
        print(f"{'Removed' if args.remove else 'Marked stale'}: {name}")
    return EXIT_COMPLETE


def cmd_delete(args: argparse.Namespace, state_config: StateConfig) -> int:
    store = SessionStore(state_config)
    try:
        store.delete(args.name)
    except SessionNotFoundError as e:
        raise CommandError(str(e)) from None
    print(f"Deleted session: {args.name}")
    return EXIT_COMPLETE


def cmd_backends(args: argparse.Namespace, state_config: StateConfig) -> int:
    for name in backend_names():
        backend = get_backend(name)
        if backend.is_installed():
            print(f"{name}  installed")
        else:
            print(f"{name}  missing ({backend.get_install_hint()})")
    return EXIT_COMPLETE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskloop",
        description="Run resumable agent loops over a markdown task list",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start a new loop")
    start.add_argument("dir", help="Project directory")
    start.add_argument("--name", "-n", default=None, help="Session name (default: directory name)")
    start.add_argument("--max-iterations", type=int, default=None, help="Max iterations before giving up")
    start.add_argument("--task-file", "-f", default=None, help="Task file path (relative to project)")
    start.add_argument("--completion-marker", default=None, help="Completion promise text")
    start.add_argument("--backend", "-b", default=None, help=f"Backend ({', '.join(backend_names())})")
    start.add_argument("--model", "-m", default=None, help="Model override (backend-specific)")
    start.add_argument("--prompt-template", default=None, help="Path to a prompt template file")
    start.add_argument("--context-files", default=None, help="Comma separated files to read first")
    start.add_argument("--sleep", type=float, default=None, help="Seconds between iterations")
    start.add_argument("--detach", action="store_true", help="Run in the background")
    start.add_argument("--child", action="store_true", help=argparse.SUPPRESS)
    start.set_defaults(handler=cmd_start)

    status = sub.add_parser("status", help="Show all sessions")
    status.add_argument("--json", action="store_true", help="Print sessions as JSON")
    status.set_defaults(handler=cmd_status)

    stop = sub.add_parser("stop", help="Stop a running loop")
    stop.add_argument("name", nargs="?", default=None)
    stop.add_argument("--all", "-a", action="store_true", help="Stop all running sessions")
    stop.set_defaults(handler=cmd_stop)

    resume = sub.add_parser("resume", help="Resume stale or stopped sessions")
    resume.add_argument("name", nargs="?", default=None)
    resume.set_defaults(handler=cmd_resume)

    logs = sub.add_parser("logs", help="Show a session's log")
    logs.add_argument("name")
    logs.add_argument("--follow", "-f", action="store_true", help="Keep printing while the session runs")
    logs.add_argument("--lines", "-n", type=int, default=100, help="Number of trailing lines to show")
    logs.set_defaults(handler=cmd_logs)

    cleanup = sub.add_parser("cleanup", help="Mark sessions with dead pids as stale")
    cleanup.add_argument("--remove", action="store_true", help="Delete them instead")
    cleanup.set_defaults(handler=cmd_cleanup)

    delete = sub.add_parser("delete", help="Delete a session record")
    delete.add_argument("name")
    delete.set_defaults(handler=cmd_delete)

    backends = sub.add_parser("backends", help="List available backends")
    backends.set_defaults(handler=cmd_backends)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    state_config = StateConfig.from_env()
    project_dir = Path(args.dir).resolve() if getattr(args, "dir", None) else None
    try:
        config = _load_config(state_config, project_dir)
    except CommandError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    setup_logging(args.verbose, args.json_log, config.logging)

    try:
        return args.handler(args, state_config)
    except CommandError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except LockTimeout as e:
        logger.error("%s", e)
        return EXIT_ERROR


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
