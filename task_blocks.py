"""Task block parsing for markdown task documents.

A task block starts at a ``### Task ...`` header and runs until the next
header, a ``---`` separator or a ``## `` heading. Unchecked items are
``- [ ]`` lines. Every call re-reads the file: the agent edits it between
iterations.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Pattern

logger = logging.getLogger(__name__)

TASK_HEADER_PATTERN = r"^\s*###\s+Task\s+"
SEPARATOR_PATTERN = r"^\s*---"
SECTION_HEADING_PATTERN = r"^\s*##\s+"
UNCHECKED_PATTERN = r"^\s*- \[ \]"


@dataclass(frozen=True)
class BlockDelimiters:
    """Patterns that delimit task blocks and mark unchecked items."""

    header: Pattern[str] = field(default_factory=lambda: re.compile(TASK_HEADER_PATTERN))
    terminators: tuple[Pattern[str], ...] = field(
        default_factory=lambda: (
            re.compile(SEPARATOR_PATTERN),
            re.compile(SECTION_HEADING_PATTERN),
        )
    )
    unchecked: Pattern[str] = field(default_factory=lambda: re.compile(UNCHECKED_PATTERN))

    def with_terminators(self, *patterns: str) -> BlockDelimiters:
        """Return a copy that also ends blocks on the given regex patterns."""
        extra = tuple(re.compile(p) for p in patterns)
        return BlockDelimiters(
            header=self.header,
            terminators=self.terminators + extra,
            unchecked=self.unchecked,
        )

    def is_terminator(self, line: str) -> bool:
        return any(p.match(line) for p in self.terminators)


DEFAULT_DELIMITERS = BlockDelimiters()


@dataclass
class TaskBlock:
    """One delimited unit of work from the task document."""

    raw_text: str
    unchecked_count: int
    start_line: int = 1

    @property
    def header(self) -> str:
        return self.raw_text.split("\n", 1)[0].strip()


def _count_unchecked(lines: list[str], delimiters: BlockDelimiters) -> int:
    return sum(1 for line in lines if delimiters.unchecked.match(line))


def _read_lines(path: str | Path) -> list[str]:
    # FileNotFoundError propagates: a missing task file is never "zero tasks".
    return Path(path).read_text(encoding="utf-8").splitlines()


def parse_blocks(
    path: str | Path, delimiters: BlockDelimiters = DEFAULT_DELIMITERS
) -> Iterator[TaskBlock]:
    """Yield the task blocks of a document in order."""
    lines = _read_lines(path)

    current: list[str] = []
    start = 0
    in_block = False

    def _emit() -> TaskBlock:
        return TaskBlock(
            raw_text="\n".join(current),
            unchecked_count=_count_unchecked(current, delimiters),
            start_line=start,
        )

    for number, line in enumerate(lines, start=1):
        if delimiters.header.match(line):
            if in_block:
                yield _emit()
            current = [line]
            start = number
            in_block = True
            continue

        if in_block and delimiters.is_terminator(line):
            yield _emit()
            current = []
            in_block = False
            continue

        if in_block:
            current.append(line)

    if in_block:
        yield _emit()


def count_remaining(path: str | Path, delimiters: BlockDelimiters = DEFAULT_DELIMITERS) -> int:
    """Count unchecked items inside task blocks.

    Documents without any block structure fall back to a whole-file count.
    """
    blocks = list(parse_blocks(path, delimiters))
    if blocks:
        return sum(block.unchecked_count for block in blocks)
    return _count_unchecked(_read_lines(path), delimiters)


def next_unchecked_block(
    path: str | Path, delimiters: BlockDelimiters = DEFAULT_DELIMITERS
) -> Optional[TaskBlock]:
    """Return the first block that still has unchecked items.

    With no blocks at all, the first unchecked line (if any) is returned as
    a one-line block.
    """
    has_blocks = False
    for block in parse_blocks(path, delimiters):
        has_blocks = True
        if block.unchecked_count > 0:
            return block
    if has_blocks:
        return None

    lines = _read_lines(path)
    for number, line in enumerate(lines, start=1):
        if delimiters.unchecked.match(line):
            logger.debug("No task blocks in %s; using line %d", path, number)
            return TaskBlock(raw_text=line, unchecked_count=1, start_line=number)
    return None
