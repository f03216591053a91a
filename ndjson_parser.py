"""Parser for Claude CLI ``--output-format stream-json`` transcripts.

Each line of the transcript is one JSON event. The final answer is carried
by the ``result`` event; ``assistant`` events carry the streamed text.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass
class StreamEvent:
    """A single parsed NDJSON event."""

    type: str  # system, assistant, user, result
    raw: dict = field(default_factory=dict)

    @property
    def session_id(self) -> Optional[str]:
        return self.raw.get("session_id")

    @property
    def text(self) -> str:
        """Concatenated text content of an assistant event."""
        if self.type != "assistant":
            return ""
        message = self.raw.get("message") or {}
        parts = []
        for block in message.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                parts.append(block["text"])
        return "".join(parts)


@dataclass
class StreamResult:
    """Fields of the terminal ``result`` event."""

    result_text: str
    is_error: bool = False
    num_turns: int = 0
    cost_usd: float = 0.0
    session_id: str = ""


@dataclass
class ParsedStream:
    """Accumulated data from a parsed transcript."""

    events: list[StreamEvent] = field(default_factory=list)
    session_id: Optional[str] = None
    result: Optional[StreamResult] = None
    assistant_text: str = ""
    malformed_lines: int = 0

    @property
    def final_text(self) -> str:
        """The answer text: the result event if present, else streamed text."""
        if self.result and self.result.result_text:
            return self.result.result_text
        return self.assistant_text


def parse_ndjson_line(line: str) -> Optional[StreamEvent]:
    """Parse one line; blank or malformed lines yield None."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON line: %s", stripped[:200])
        return None
    if not isinstance(data, dict):
        return None
    return StreamEvent(type=str(data.get("type", "unknown")), raw=data)


def iter_events(lines: Iterable[str]) -> Iterator[StreamEvent]:
    for line in lines:
        event = parse_ndjson_line(line)
        if event:
            yield event


def process_events(events: Iterable[StreamEvent]) -> ParsedStream:
    """Fold events into a ParsedStream."""
    parsed = ParsedStream()
    for event in events:
        parsed.events.append(event)
        if event.session_id and not parsed.session_id:
            parsed.session_id = event.session_id

        if event.type == "assistant":
            parsed.assistant_text += event.text
        elif event.type == "result":
            raw = event.raw
            result_text = raw.get("result") or ""
            # Later non-empty results win; an empty one never clears an earlier answer
            if result_text or parsed.result is None:
                parsed.result = StreamResult(
                    result_text=result_text,
                    is_error=bool(raw.get("is_error", False)),
                    num_turns=int(raw.get("num_turns") or 0),
                    cost_usd=float(raw.get("total_cost_usd") or 0.0),
                    session_id=raw.get("session_id") or "",
                )
    return parsed


def parse_ndjson_string(raw: str) -> ParsedStream:
    """Parse a complete transcript held in memory."""
    lines = raw.splitlines()
    parsed = process_events(iter_events(lines))
    parsed.malformed_lines = sum(1 for line in lines if line.strip()) - len(parsed.events)
    return parsed


def parse_ndjson_file(path: str | Path) -> ParsedStream:
    return parse_ndjson_string(Path(path).read_text(encoding="utf-8", errors="replace"))
