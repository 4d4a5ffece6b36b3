"""Prompt assembly for initial and resumed agent invocations."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from agent_taskflow.runner.models import Verdict, VerdictKind

logger = logging.getLogger(__name__)

CONTINUE_INSTRUCTION = "continue"
APPLY_SUGGESTION_INSTRUCTION = "apply your suggestion"

_SECTION_SEPARATOR = "\n\n"


def instruction_for(verdict: Verdict | None) -> str:
    """Short resume instruction implied by the previous verdict."""

    if verdict is not None and verdict.kind is VerdictKind.AUTO:
        return APPLY_SUGGESTION_INSTRUCTION
    return CONTINUE_INSTRUCTION


def build_task_prompt(
    *,
    shared_prompt_files: Sequence[str] = (),
    spec_files: Sequence[str] = (),
    task_prompt: str | None = None,
    base_dir: Path | None = None,
) -> str:
    """Concatenate shared prompt files, spec files and the task prompt.

    Missing shared prompt files are skipped with a warning. Spec files are
    required to exist; a missing one raises ``FileNotFoundError``.
    """

    root = base_dir or Path.cwd()
    sections: list[str] = []
    for name in shared_prompt_files:
        path = _resolve(root, name)
        if not path.is_file():
            logger.warning("Skipping missing prompt file: %s", name)
            continue
        sections.append(path.read_text(encoding="utf-8"))

    for name in spec_files:
        path = _resolve(root, name)
        if not path.is_file():
            raise FileNotFoundError(f"Spec file not found: {name}")
        sections.append(path.read_text(encoding="utf-8"))

    if task_prompt and task_prompt.strip():
        sections.append(task_prompt)

    prompt = _SECTION_SEPARATOR.join(sections)
    logger.debug(
        "Built task prompt: %s sections, %s chars",
        len(sections),
        len(prompt),
    )
    return prompt


def _resolve(root: Path, name: str) -> Path:
    path = Path(name)
    return path if path.is_absolute() else root / path
