"""Configuration models and loading for taskloop."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Mapping, Optional, TypeVar

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

APP_NAME = "taskloop"
PROJECT_DIR_NAME = ".taskloop"

ENV_STATE_DIR = "TASKLOOP_STATE_DIR"
ENV_STATE_FILE = "TASKLOOP_STATE_FILE"
ENV_LOCK_FILE = "TASKLOOP_LOCK_FILE"
ENV_LOCK_DIR = "TASKLOOP_LOCK_DIR"
ENV_LOCK_TIMEOUT = "TASKLOOP_LOCK_TIMEOUT"
ENV_PROMPT_TEMPLATE_FILE = "TASKLOOP_PROMPT_TEMPLATE_FILE"

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class StateConfig(BaseModel):
    """Locations and timeouts for the shared session state."""

    state_dir: Path
    state_file: Path
    lock_file: Path
    lock_dir: Path
    lock_timeout_seconds: float = Field(default=DEFAULT_LOCK_TIMEOUT_SECONDS, gt=0)
    poll_interval_seconds: float = Field(default=0.1, gt=0)

    @classmethod
    def for_directory(cls, state_dir: str | Path, **overrides) -> StateConfig:
        """Build a config with every path derived from one state directory."""
        state_dir = Path(state_dir)
        lock_file = Path(overrides.pop("lock_file", state_dir / "state.lock"))
        values = {
            "state_dir": state_dir,
            "state_file": state_dir / "state.json",
            "lock_file": lock_file,
            "lock_dir": Path(str(lock_file) + ".dir"),
        }
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        home: Optional[Path] = None,
    ) -> StateConfig:
        """Resolve state locations from TASKLOOP_* environment overrides.

        Called once at process start; the store and controller only ever
        receive the resulting value.
        """
        env = os.environ if environ is None else environ
        home = home or Path.home()

        state_dir = Path(env.get(ENV_STATE_DIR) or home / ".config" / APP_NAME)
        state_file = Path(env.get(ENV_STATE_FILE) or state_dir / "state.json")
        lock_file = Path(env.get(ENV_LOCK_FILE) or state_dir / "state.lock")
        lock_dir = Path(env.get(ENV_LOCK_DIR) or str(lock_file) + ".dir")

        timeout = DEFAULT_LOCK_TIMEOUT_SECONDS
        raw_timeout = env.get(ENV_LOCK_TIMEOUT)
        if raw_timeout:
            try:
                parsed = float(raw_timeout)
            except ValueError:
                logger.warning("Ignoring invalid %s=%r", ENV_LOCK_TIMEOUT, raw_timeout)
            else:
                if parsed > 0:
                    timeout = parsed

        return cls(
            state_dir=state_dir,
            state_file=state_file,
            lock_file=lock_file,
            lock_dir=lock_dir,
            lock_timeout_seconds=timeout,
        )


class DefaultsConfig(BaseModel):
    """Defaults applied to `start` when a flag is not given."""

    max_iterations: int = Field(default=30, ge=1)
    task_file: str = Field(default="PRD.md", min_length=1)
    completion_marker: str = Field(default="COMPLETE", min_length=1)
    backend: str = Field(default="claude")
    model: Optional[str] = None
    context_files: list[str] = Field(default_factory=list)
    sleep_seconds: float = Field(
        default=2.0,
        description="Delay between iterations; non-positive disables it",
    )


class LoggingConfig(BaseModel):
    """Session log retention and redaction settings."""

    retain_days: int = Field(default=7, ge=1)
    redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"sk-ant-[\w-]+",
            r"sk-proj-[\w-]+",
            r"AIza[\w-]{20,}",
        ]
    )


class TaskloopConfig(BaseModel):
    """Root configuration model for config.json files."""

    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(*config_paths: str | Path | None) -> Result[TaskloopConfig]:
    """Load and validate config, merging JSON files in order (later wins).

    Missing files are skipped, so with no files present the defaults apply.
    """
    merged: dict = {}
    for config_path in config_paths:
        if config_path is None:
            continue
        path = Path(config_path)
        if not path.exists():
            logger.debug("Config not found at %s, skipping", path)
            continue
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
        except OSError as e:
            return Result.fail(f"Cannot read {path}: {e}", "READ_ERROR")
        if not isinstance(raw, dict):
            return Result.fail(f"Config root in {path} must be an object", "VALIDATION_ERROR")
        merged = _deep_merge(merged, raw)

    try:
        return Result.ok(TaskloopConfig.model_validate(merged))
    except ValidationError as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")


def config_search_paths(state_config: StateConfig, project_dir: Optional[Path] = None) -> list[Path]:
    """Global config first, then the per-project override."""
    paths = [state_config.state_dir / "config.json"]
    if project_dir is not None:
        paths.append(Path(project_dir) / PROJECT_DIR_NAME / "config.json")
    return paths
