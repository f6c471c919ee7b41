"""Helper for laying out throwaway extension-module projects in tests."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Mapping


DEFAULT_PYPROJECT = """
[project]
name = "demo-ext"
version = "1.2.0"
description = "Demo extension"
"""


class ProjectBuilder:
    """Writes a project tree (pyproject, sources, compiled artifacts) under ``tmp_path``."""

    def __init__(self, tmp_path: Path) -> None:
        self.root = tmp_path / "project"
        self.root.mkdir()

    def write(self, files: Mapping[str, str]) -> None:
        """Write `path -> contents` text files into the project."""
        for relative, content in files.items():
            path = self.root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(textwrap.dedent(content).lstrip("\n"), encoding="utf-8")

    def write_bytes(self, relative: str, data: bytes) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def pyproject(self, text: str = DEFAULT_PYPROJECT) -> Path:
        self.write({"pyproject.toml": text})
        return self.root / "pyproject.toml"

    def path(self) -> Path:
        return self.root


__all__ = ["DEFAULT_PYPROJECT", "ProjectBuilder"]
