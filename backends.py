"""Backend capability interface and the Claude CLI adapter.

The loop controller only talks to :class:`Backend`; concrete adapters are
picked by name here and injected by the caller.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ndjson_parser import parse_ndjson_file, parse_ndjson_line

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = "claude"


@dataclass
class IterationOutput:
    """Outcome of one backend invocation."""

    exit_code: int
    final_text: str = ""
    stderr: str = ""


class Backend(ABC):
    """An external text-generation tool the loop can drive."""

    name: str = ""

    @abstractmethod
    def is_installed(self) -> bool:
        ...

    @abstractmethod
    def get_install_hint(self) -> str:
        ...

    @abstractmethod
    def run_iteration(
        self, prompt: str, model: Optional[str], output_path: Path
    ) -> IterationOutput:
        """Run the tool once, writing its raw transcript to ``output_path``."""

    @abstractmethod
    def parse_text(self, path: Path) -> str:
        """Extract the final answer text from a transcript file."""


class ClaudeBackend(Backend):
    """Drives ``claude --print --output-format stream-json``."""

    name = "claude"

    def __init__(self, executable: str = "claude", cwd: Optional[str | Path] = None) -> None:
        self.executable = executable
        self.cwd = cwd

    def is_installed(self) -> bool:
        return shutil.which(self.executable) is not None

    def get_install_hint(self) -> str:
        return "Install Claude Code: npm install -g @anthropic-ai/claude-code"

    def build_args(self, prompt: str, model: Optional[str]) -> list[str]:
        args = [
            self.executable,
            "--dangerously-skip-permissions",
            "--verbose",
            "--print",
            "--output-format", "stream-json",
        ]
        if model:
            args.extend(["--model", model])
        args.extend(["-p", prompt])
        return args

    def run_iteration(
        self, prompt: str, model: Optional[str], output_path: Path
    ) -> IterationOutput:
        if not prompt.strip():
            raise ValueError("prompt is required")
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        args = self.build_args(prompt, model)
        logger.debug("Spawning: %s ...", " ".join(args[:6]))
        try:
            proc = subprocess.Popen(
                args,
                cwd=str(self.cwd) if self.cwd else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError:
            logger.error("%s CLI not found on PATH", self.executable)
            return IterationOutput(exit_code=127, stderr=f"{self.executable}: not found")
        except OSError as e:
            logger.error("Cannot start %s: %s", self.executable, e)
            return IterationOutput(exit_code=126, stderr=f"{self.executable}: {e}")

        # Drain stderr in background to prevent pipe buffer deadlock
        stderr_lines: list[str] = []
        stderr_thread = threading.Thread(
            target=_drain_pipe, args=(proc.stderr, stderr_lines), daemon=True
        )
        stderr_thread.start()

        try:
            with open(output_path, "w", encoding="utf-8") as out:
                for line in proc.stdout:
                    out.write(line if line.endswith("\n") else line + "\n")
                    event = parse_ndjson_line(line)
                    if event and event.text:
                        logger.info("%s", event.text.rstrip())
            exit_code = proc.wait()
        except BaseException:
            # Interrupted or stopped: never leave the agent editing files alone
            _terminate(proc)
            raise

        stderr_thread.join(timeout=2)
        stderr_text = "".join(stderr_lines).strip()
        if exit_code != 0:
            logger.warning("%s exited with %d: %s", self.executable, exit_code, stderr_text[:500])

        final_text = self.parse_text(output_path) if output_path.stat().st_size else ""
        return IterationOutput(exit_code=exit_code, final_text=final_text, stderr=stderr_text)

    def parse_text(self, path: Path) -> str:
        parsed = parse_ndjson_file(path)
        if parsed.result and parsed.result.result_text:
            return parsed.result.result_text
        # Not a stream-json transcript: hand back what the tool printed
        return Path(path).read_text(encoding="utf-8", errors="replace")


def _terminate(proc, grace: float = 5.0) -> None:
    """Terminate a child process, killing it if it ignores SIGTERM."""
    try:
        proc.terminate()
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("Process %d ignored SIGTERM, killing", proc.pid)
        proc.kill()
    except OSError as e:
        logger.debug("Could not terminate %d: %s", proc.pid, e)


def _drain_pipe(pipe, lines: list[str]) -> None:
    """Drain a pipe into a list of lines (for background thread)."""
    try:
        for line in pipe:
            lines.append(line)
    except (OSError, ValueError):
        pass


_REGISTRY: dict[str, Callable[[], Backend]] = {}


def register_backend(name: str, factory: Callable[[], Backend]) -> None:
    key = name.strip().lower()
    if not key:
        raise ValueError("backend name is required")
    if key in _REGISTRY:
        raise ValueError(f"backend already registered: {key}")
    _REGISTRY[key] = factory


def get_backend(name: Optional[str] = None) -> Backend:
    """Instantiate a registered backend; raises KeyError for unknown names."""
    key = (name or DEFAULT_BACKEND).strip().lower()
    try:
        factory = _REGISTRY[key]
    except KeyError:
        raise KeyError(f"backend not found: {key} (available: {', '.join(backend_names())})") from None
    return factory()


def backend_names() -> list[str]:
    return sorted(_REGISTRY)


register_backend("claude", ClaudeBackend)
