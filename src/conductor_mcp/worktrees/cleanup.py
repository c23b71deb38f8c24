"""Housekeeping for files agents leave behind in a worktree."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

PLAN_ARTIFACTS: tuple[str, ...] = ("implementation-plan.json", "implementation_plan.json")
QUESTION_ARTIFACTS: tuple[str, ...] = ("planning-questions.json", "planning_questions.json")
PLANNING_ARTIFACTS: tuple[str, ...] = PLAN_ARTIFACTS + QUESTION_ARTIFACTS


def remove_planning_artifacts(path: Path | str) -> list[Path]:
    """Delete planning JSON files written by an agent; returns the files removed."""

    root = Path(path)
    removed: list[Path] = []
    for name in PLANNING_ARTIFACTS:
        candidate = root / name
        try:
            candidate.unlink()
        except FileNotFoundError:
            continue
        removed.append(candidate)
    if removed:
        logger.debug("Removed planning artifacts", extra={"path": str(root), "files": [p.name for p in removed]})
    return removed


__all__ = ["PLANNING_ARTIFACTS", "PLAN_ARTIFACTS", "QUESTION_ARTIFACTS", "remove_planning_artifacts"]
