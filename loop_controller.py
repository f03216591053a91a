"""Iteration loop controller.

Runs the backend against a task document until the agent signals completion,
the iteration budget runs out, or an iteration fails. State changes are
reported through a callback; the controller never touches the session store
or its lock, so nothing is held while the backend runs.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from pydantic import BaseModel, Field

from backends import Backend
from loop_config import PROJECT_DIR_NAME
from prompt_template import render_prompt, resolve_prompt_template
from session_store import SessionStatus
from task_blocks import DEFAULT_DELIMITERS, BlockDelimiters, count_remaining, next_unchecked_block

logger = logging.getLogger(__name__)

NEGATION_PHRASES = (
    "cannot", "can't", "won't", "will not", "do not", "don't",
    "should not", "shouldn't", "must not", "mustn't",
)
_NEGATED_PROMISE = re.compile(
    r"(?:" + "|".join(re.escape(p) for p in NEGATION_PHRASES) + r")[^<]*<promise>",
    re.IGNORECASE,
)


class BackendUnavailable(Exception):
    """The configured backend is not installed."""


class IterationFailure(Exception):
    """An iteration ended with a non-zero exit or no usable output."""


class LoopOptions(BaseModel):
    """Inputs for one loop run."""

    project_dir: Path
    task_file: str = "PRD.md"
    max_iterations: int = 30
    completion_marker: str = "COMPLETE"
    model: Optional[str] = None
    session_name: str = "taskloop"
    prompt_template: Optional[str] = None
    prompt_template_file: Optional[Path] = None
    context_files: list[str] = Field(default_factory=list)
    log_file: Optional[Path] = None
    sleep_seconds: float = 2.0
    log_retain_days: int = 7


@dataclass
class StateUpdate:
    """A state transition reported to the caller."""

    session: str
    iteration: int
    status: SessionStatus
    remaining: int


@dataclass
class LoopResult:
    status: SessionStatus
    iterations: int
    remaining_tasks: int
    duration: float
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status is SessionStatus.COMPLETE


def last_non_blank_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line
    return ""


def promise_satisfied(answer_text: str, completion_marker: str) -> bool:
    """Check the completion promise on the answer's last non-blank line.

    The line must be exactly ``<promise>MARKER</promise>`` (surrounding
    whitespace allowed) and must not carry a negation before the tag.
    """
    line = last_non_blank_line(answer_text or "")
    if not line:
        return False
    promise = re.compile(r"^\s*<promise>" + re.escape(completion_marker) + r"</promise>\s*$")
    if not promise.match(line):
        return False
    if _NEGATED_PROMISE.search(line):
        return False
    return True


def check_completion(
    task_path: str | Path,
    answer_text: str,
    completion_marker: str,
    delimiters: BlockDelimiters = DEFAULT_DELIMITERS,
) -> bool:
    """Complete only when no tasks remain and the promise is valid."""
    if count_remaining(task_path, delimiters) > 0:
        return False
    return promise_satisfied(answer_text, completion_marker)


@contextmanager
def _working_directory(path: Path) -> Iterator[None]:
    previous = os.getcwd()
    os.chdir(path)
    try:
        yield
    finally:
        os.chdir(previous)


def raw_log_path(log_file: Path) -> Path:
    if log_file.suffix == ".log":
        return log_file.with_suffix(".raw.log")
    return log_file.with_name(log_file.name + ".raw.log")


def prune_old_logs(log_dir: Path, retain_days: int) -> int:
    """Delete ``*.log`` files older than the retention window."""
    if retain_days <= 0 or not log_dir.is_dir():
        return 0
    cutoff = (datetime.now() - timedelta(days=retain_days)).timestamp()
    removed = 0
    for entry in log_dir.glob("*.log"):
        try:
            if entry.is_file() and entry.stat().st_mtime < cutoff:
                entry.unlink()
                removed += 1
        except OSError as e:
            logger.debug("Could not prune %s: %s", entry, e)
    return removed


class LoopController:
    """Drives the iteration sequence for one session."""

    def __init__(
        self,
        options: LoopOptions,
        backend: Backend,
        on_transition: Optional[Callable[[StateUpdate], None]] = None,
        delimiters: BlockDelimiters = DEFAULT_DELIMITERS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.options = options
        self.backend = backend
        self.on_transition = on_transition
        self.delimiters = delimiters
        self._sleep = sleep
        self.project_dir = Path(options.project_dir).resolve()
        self.task_path = self.project_dir / options.task_file
        self.log_file = options.log_file or (
            self.project_dir / PROJECT_DIR_NAME / f"{options.session_name}.log"
        )

    def _emit(self, iteration: int, status: SessionStatus, remaining: int) -> None:
        if self.on_transition is not None:
            self.on_transition(StateUpdate(
                session=self.options.session_name,
                iteration=iteration,
                status=status,
                remaining=remaining,
            ))

    def check_preconditions(self) -> None:
        if not self.project_dir.is_dir():
            raise NotADirectoryError(f"Project directory does not exist: {self.project_dir}")
        if self.options.max_iterations <= 0:
            raise ValueError("max_iterations must be a positive integer")
        if not self.task_path.is_file():
            raise FileNotFoundError(f"Task file does not exist: {self.task_path}")
        if not self.backend.is_installed():
            name = getattr(self.backend, "name", "") or type(self.backend).__name__
            raise BackendUnavailable(
                f"Backend '{name}' is not installed. {self.backend.get_install_hint()}"
            )

    def run(self) -> LoopResult:
        """Execute the loop. Max iterations is a result, not an exception."""
        self.check_preconditions()
        opts = self.options

        handler = self._open_session_log()
        try:
            return self._run(opts)
        finally:
            if handler is not None:
                logging.getLogger().removeHandler(handler)
                handler.close()

    def _run(self, opts: LoopOptions) -> LoopResult:
        start = time.monotonic()
        logger.info("Starting loop in %s", self.project_dir)
        logger.info("Task file: %s", opts.task_file)
        logger.info("Max iterations: %d", opts.max_iterations)
        logger.info("Completion marker: %s", opts.completion_marker)
        if opts.model:
            logger.info("Model: %s", opts.model)
        logger.info("Started at: %s", datetime.now(timezone.utc).isoformat())
        logger.info("Initial remaining tasks: %d", count_remaining(self.task_path, self.delimiters))

        template = resolve_prompt_template(
            self.project_dir, opts.prompt_template, opts.prompt_template_file
        )

        for iteration in range(1, opts.max_iterations + 1):
            remaining_before = count_remaining(self.task_path, self.delimiters)
            logger.info("")
            logger.info(
                "=== Iteration %d/%d (Remaining: %d) ===",
                iteration, opts.max_iterations, remaining_before,
            )
            self._emit(iteration, SessionStatus.RUNNING, remaining_before)

            try:
                answer = self.run_iteration(iteration, template)
            except IterationFailure as e:
                logger.error("Iteration %d failed: %s", iteration, e)
                return self._failed(iteration, remaining_before, start, str(e))
            except Exception as e:
                logger.exception("Iteration %d: backend raised", iteration)
                return self._failed(
                    iteration, remaining_before, start, f"backend error: {type(e).__name__}: {e}"
                )

            if check_completion(self.task_path, answer, opts.completion_marker, self.delimiters):
                duration = time.monotonic() - start
                logger.info("")
                logger.info("Loop complete after %d iterations.", iteration)
                logger.info("Duration: %ds", int(duration))
                self._emit(iteration, SessionStatus.COMPLETE, 0)
                return LoopResult(
                    status=SessionStatus.COMPLETE,
                    iterations=iteration,
                    remaining_tasks=0,
                    duration=duration,
                )

            remaining_after = count_remaining(self.task_path, self.delimiters)
            logger.info("Tasks remaining after iteration: %d", remaining_after)
            self._emit(iteration, SessionStatus.RUNNING, remaining_after)

            if iteration < opts.max_iterations and opts.sleep_seconds > 0:
                self._sleep(opts.sleep_seconds)

        duration = time.monotonic() - start
        remaining_final = count_remaining(self.task_path, self.delimiters)
        logger.warning("Hit max iterations (%d)", opts.max_iterations)
        logger.info("Remaining tasks: %d", remaining_final)
        logger.info("Duration: %ds", int(duration))
        self._emit(opts.max_iterations, SessionStatus.MAX_ITERATIONS, remaining_final)
        return LoopResult(
            status=SessionStatus.MAX_ITERATIONS,
            iterations=opts.max_iterations,
            remaining_tasks=remaining_final,
            duration=duration,
        )

    def _failed(self, iteration: int, remaining: int, start: float, error: str) -> LoopResult:
        self._emit(iteration, SessionStatus.FAILED, remaining)
        return LoopResult(
            status=SessionStatus.FAILED,
            iterations=iteration,
            remaining_tasks=remaining,
            duration=time.monotonic() - start,
            error=error,
        )

    def build_prompt(self, iteration: int, template: str) -> str:
        opts = self.options
        block = next_unchecked_block(self.task_path, self.delimiters)
        return render_prompt(
            template,
            task_file=opts.task_file,
            completion_marker=opts.completion_marker,
            iteration=iteration,
            max_iterations=opts.max_iterations,
            task_block=block.raw_text if block else None,
            context_files=opts.context_files,
        )

    def run_iteration(self, iteration: int, template: str) -> str:
        """Invoke the backend once and return its final answer text.

        Raises IterationFailure on a non-zero exit or empty output.
        """
        prompt = self.build_prompt(iteration, template)
        raw_path = raw_log_path(self.log_file)

        fd, tmp_name = tempfile.mkstemp(prefix="taskloop-iteration-", suffix=".jsonl")
        os.close(fd)
        output_path = Path(tmp_name)
        try:
            with _working_directory(self.project_dir):
                output = self.backend.run_iteration(prompt, self.options.model, output_path)

            if output_path.exists() and output_path.stat().st_size:
                try:
                    shutil.copyfile(output_path, raw_path)
                except OSError as e:
                    logger.debug("Could not keep raw transcript: %s", e)

            if output.exit_code != 0:
                detail = output.stderr.strip()[:500] or f"raw output: {raw_path}"
                raise IterationFailure(f"backend exited with code {output.exit_code}: {detail}")

            text = output.final_text
            if not text.strip() and output_path.exists() and output_path.stat().st_size:
                text = self.backend.parse_text(output_path)
            if not text.strip():
                raise IterationFailure(f"backend returned no parsed result, raw output: {raw_path}")
            return text
        finally:
            try:
                output_path.unlink()
            except FileNotFoundError:
                pass

    def _open_session_log(self) -> Optional[logging.Handler]:
        log_dir = self.log_file.parent
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Cannot create log directory %s: %s", log_dir, e)
            return None
        if log_dir.resolve() == self.project_dir / PROJECT_DIR_NAME:
            # Only the project's .taskloop directory is ours to prune
            prune_old_logs(log_dir, self.options.log_retain_days)

        handler = logging.FileHandler(self.log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(message)s"))
        for existing in logging.getLogger().handlers:
            for log_filter in existing.filters:
                handler.addFilter(log_filter)
        logging.getLogger().addHandler(handler)
        return handler
