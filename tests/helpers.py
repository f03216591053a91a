"""Shared test helpers for the taskloop test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers
(fake backends, NDJSON stream builders, Popen mocks) used across test files.
"""

import io
import json
import os
from pathlib import Path
from typing import Callable, Optional

from backends import Backend, IterationOutput
from ndjson_parser import parse_ndjson_file


# --- NDJSON stream builders ---

def build_ndjson_stream(
    session_id: str,
    result_text: str,
    cost: float = 0.01,
    turns: int = 1,
    is_error: bool = False,
) -> str:
    """Build a realistic NDJSON stream string matching Claude CLI output format."""
    lines = [
        json.dumps({"type": "system", "subtype": "init", "session_id": session_id}),
        json.dumps({
            "type": "assistant",
            "message": {
                "role": "assistant",
                "content": [{"type": "text", "text": result_text}],
            },
            "session_id": session_id,
        }),
        json.dumps({
            "type": "result",
            "session_id": session_id,
            "total_cost_usd": cost,
            "num_turns": turns,
            "result": result_text,
            "is_error": is_error,
        }),
    ]
    return "\n".join(lines) + "\n"


# --- Fake backend ---

class FakeBackend(Backend):
    """Scripted backend: each call pops the next answer.

    ``on_call`` runs before the answer is returned, so a test can edit the
    task file the way an agent would.
    """

    name = "fake"

    def __init__(
        self,
        answers: Optional[list[str]] = None,
        exit_codes: Optional[list[int]] = None,
        installed: bool = True,
        on_call: Optional[Callable[[int, str], None]] = None,
    ) -> None:
        self.answers = list(answers or [])
        self.exit_codes = list(exit_codes or [])
        self.installed = installed
        self.on_call = on_call
        self.prompts: list[str] = []
        self.models: list[Optional[str]] = []
        self.cwds: list[str] = []

    def is_installed(self) -> bool:
        return self.installed

    def get_install_hint(self) -> str:
        return "pip install fake-agent"

    def run_iteration(self, prompt: str, model: Optional[str], output_path: Path) -> IterationOutput:
        self.prompts.append(prompt)
        self.models.append(model)
        self.cwds.append(os.getcwd())
        call = len(self.prompts)
        if self.on_call is not None:
            self.on_call(call, prompt)

        answer = self.answers.pop(0) if self.answers else ""
        exit_code = self.exit_codes.pop(0) if self.exit_codes else 0
        Path(output_path).write_text(build_ndjson_stream("fake", answer), encoding="utf-8")
        return IterationOutput(exit_code=exit_code, final_text=answer, stderr="boom" if exit_code else "")

    def parse_text(self, path: Path) -> str:
        return parse_ndjson_file(path).final_text


def check_off_all(task_path: Path) -> None:
    """Mark every unchecked item in a task file as done."""
    text = task_path.read_text(encoding="utf-8")
    task_path.write_text(text.replace("- [ ]", "- [x]"), encoding="utf-8")


def check_off_first(task_path: Path) -> None:
    text = task_path.read_text(encoding="utf-8")
    task_path.write_text(text.replace("- [ ]", "- [x]", 1), encoding="utf-8")


# --- Popen mock for streaming NDJSON ---

class MockPopen:
    """Mock subprocess.Popen that yields NDJSON lines from stdout."""

    def __init__(self, ndjson_stream: str, returncode: int = 0, stderr: str = "") -> None:
        self.stdout = io.StringIO(ndjson_stream)
        self.stderr = io.StringIO(stderr)
        self.returncode = returncode
        self.pid = 99999
        self.terminated = False
        self.killed = False

    def wait(self, timeout: float | None = None) -> int:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.killed = True


def make_popen_factory(ndjson_stream: str, returncode: int = 0, stderr: str = "", calls: Optional[list] = None):
    """Create a factory for subprocess.Popen mock (returns MockPopen)."""
    def factory(*args, **kwargs):
        if calls is not None:
            calls.append((args, kwargs))
        return MockPopen(ndjson_stream, returncode, stderr)
    return factory
