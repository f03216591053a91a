"""Shared pytest fixtures for the taskloop test suite.

Non-fixture helpers (fake backends, NDJSON stream builders) are in helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Tests import helpers.py and the top-level modules directly
sys.path.insert(0, str(Path(__file__).parent))
sys.path.insert(0, str(Path(__file__).parent.parent))

from loop_config import StateConfig  # noqa: E402
from session_store import SessionStore  # noqa: E402

PRD_TWO_TASKS = """# Project

## Tasks

### Task 1: Scaffold
- [x] create layout
- [ ] add README

### Task 2: Parser
- [ ] tokenize
- [x] parse

---

## Notes
- [ ] this checkbox is outside every block
"""


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A project directory holding a PRD.md with two open tasks.

    Tests needing a bare directory should use tmp_path directly.
    """
    project = tmp_path / "project"
    project.mkdir()
    (project / "PRD.md").write_text(PRD_TWO_TASKS, encoding="utf-8")
    return project


@pytest.fixture
def state_config(tmp_path: Path) -> StateConfig:
    """State config rooted in a temp dir with a short lock timeout."""
    return StateConfig.for_directory(
        tmp_path / "state",
        lock_timeout_seconds=2.0,
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def store(state_config: StateConfig) -> SessionStore:
    session_store = SessionStore(state_config)
    session_store.init()
    return session_store


@pytest.fixture(autouse=True)
def isolated_state_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep every test away from the real ~/.config/taskloop."""
    for var in (
        "TASKLOOP_STATE_FILE",
        "TASKLOOP_LOCK_FILE",
        "TASKLOOP_LOCK_DIR",
        "TASKLOOP_LOCK_TIMEOUT",
        "TASKLOOP_PROMPT_TEMPLATE_FILE",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TASKLOOP_STATE_DIR", str(tmp_path / "state"))
