"""Iteration prompt templates."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from loop_config import PROJECT_DIR_NAME

logger = logging.getLogger(__name__)

NO_TASK_BLOCK_TEXT = "No task block available."

DEFAULT_PROMPT_TEMPLATE = (
    "Read {task_file} carefully. Find any task marked '- [ ]' (unchecked).\n"
    "\n"
    "If unchecked tasks exist:\n"
    "- Complete ONE task fully\n"
    "- Mark it '- [x]' in {task_file}\n"
    "- Commit changes\n"
    "- Exit normally (do NOT output completion promise)\n"
    "\n"
    "If ZERO '- [ ]' remain (all complete):\n"
    "- Verify by searching the file\n"
    "- Output ONLY: <promise>{completion_marker}</promise>\n"
    "\n"
    "CRITICAL: Never mention the promise unless outputting it as the completion signal.\n"
    "\n"
    "{context_files_section}Task Block:\n"
    "{task_block}\n"
    "\n"
    "Iteration: {iteration}/{max_iterations}"
)

PROJECT_TEMPLATE_NAME = "prompt-template.txt"


def render_prompt(
    template: str,
    task_file: str,
    completion_marker: str,
    iteration: int,
    max_iterations: int,
    task_block: Optional[str],
    context_files: Sequence[str] = (),
) -> str:
    """Substitute the ``{placeholder}`` variables of an iteration template.

    Plain string replacement, so braces elsewhere in a custom template are
    left alone.
    """
    if not task_block or not task_block.strip():
        task_block = NO_TASK_BLOCK_TEXT

    context_list = "\n".join(context_files)
    context_section = ""
    if context_files:
        context_section = f"Context Files (read these first):\n{context_list}\n"

    replacements = {
        "{task_file}": task_file,
        "{completion_marker}": completion_marker,
        "{iteration}": str(iteration),
        "{max_iterations}": str(max_iterations),
        "{task_block}": task_block,
        "{context_files_section}": context_section,
        "{context_files}": context_list,
    }
    rendered = template
    for placeholder, value in replacements.items():
        rendered = rendered.replace(placeholder, value)
    return rendered


def normalize_context_files(raw: str | Sequence[str] | None) -> list[str]:
    """Accept a comma separated string or a list; drop blanks."""
    if not raw:
        return []
    parts = raw.split(",") if isinstance(raw, str) else list(raw)
    return [p.strip() for p in parts if p and p.strip()]


def resolve_prompt_template(
    project_dir: str | Path,
    inline: Optional[str] = None,
    template_file: Optional[str | Path] = None,
) -> str:
    """Pick the template: inline text, then a template file, then the
    project's ``.taskloop/prompt-template.txt``, then the built-in default.
    """
    if inline and inline.strip():
        return inline

    candidates = []
    if template_file:
        candidates.append(Path(template_file))
    candidates.append(Path(project_dir) / PROJECT_DIR_NAME / PROJECT_TEMPLATE_NAME)

    for path in candidates:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("Cannot read prompt template %s: %s", path, e)
            continue
        if text.strip():
            logger.debug("Using prompt template %s", path)
            return text

    return DEFAULT_PROMPT_TEMPLATE
