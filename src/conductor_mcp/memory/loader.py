"""Memory loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import ContextData


class MemoryLoadError(RuntimeError):
    """Raised when one or more memory files cannot be parsed."""


class MemoryLoader:
    """Loads context memory from YAML files on disk.

    Each file holds any of the ``patterns``, ``gotchas`` and ``history`` lists.
    Files are merged in search-path order, then by file name.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load(self) -> ContextData:
        context = ContextData()
        if not self._search_paths:
            return context

        errors: list[str] = []
        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:  # pragma: no cover - library type
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    context = context.merged(ContextData.model_validate(document))
                except ValidationError as exc:
                    errors.append(f"Memory validation error in {path}: {exc}")

        if errors:
            raise MemoryLoadError("; ".join(errors))

        return context


__all__ = ["MemoryLoadError", "MemoryLoader"]
