"""Gitignore-style filtering of the project tree for source distributions."""

from collections.abc import Iterable
from dataclasses import dataclass
import logging
import os
import pathlib
import re


# Build and tool directories skipped at the project root.
DEFAULT_IGNORE_NAMES: frozenset[str] = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        ".venv",
        "venv",
        "env",
        "build",
        "dist",
        "target",
    }
)

# Skipped at any depth.
_ALWAYS_IGNORED: tuple[str, ...] = ("__pycache__/", ".DS_Store", "*.pyc", "*.pyo")


@dataclass(frozen=True, slots=True)
class IgnorePattern:
    """One compiled ignore line.

    :ivar source: Pattern text as written.
    :ivar base: Directory (relative, POSIX, ``""`` for the root) the pattern applies under.
    :ivar regex: Compiled matcher for paths relative to ``base``.
    :ivar negated: ``!pattern`` re-includes matches.
    :ivar dir_only: Trailing ``/`` restricts the pattern to directories.
    """

    source: str
    base: str
    regex: re.Pattern[str]
    negated: bool
    dir_only: bool

    def matches(self, relpath: str, *, is_dir: bool) -> bool:
        if self.dir_only is True and is_dir is False:
            return False
        if len(self.base) > 0:
            prefix: str = self.base + "/"
            if relpath.startswith(prefix) is False:
                return False
            relpath = relpath[len(prefix) :]
        return self.regex.fullmatch(relpath) is not None


def compile_pattern(line: str, *, base: str = "") -> IgnorePattern | None:
    """Compile one gitignore line.

    :param line: Raw line.
    :param base: Directory of the ignore file, relative to the project root.
    :returns: Compiled pattern, or ``None`` for blanks and comments.
    """

    text: str = line.rstrip("\n")
    if text.endswith("\\ ") is False:
        text = text.rstrip()
    if len(text) == 0 or text.startswith("#") is True:
        return None

    negated: bool = False
    if text.startswith("!") is True:
        negated = True
        text = text[1:]
    elif text.startswith("\\!") is True or text.startswith("\\#") is True:
        text = text[1:]

    dir_only: bool = False
    if text.endswith("/") is True:
        dir_only = True
        text = text.rstrip("/")
    if len(text) == 0:
        return None

    anchored: bool = "/" in text
    text = text.lstrip("/")
    body: str = _translate(text)
    if anchored is False:
        body = "(?:.*/)?" + body
    return IgnorePattern(
        source=line.strip(),
        base=base,
        regex=re.compile(body, re.DOTALL),
        negated=negated,
        dir_only=dir_only,
    )


def _translate(glob: str) -> str:
    out: list[str] = []
    i: int = 0
    n: int = len(glob)
    while i < n:
        c: str = glob[i]
        if c == "*":
            if glob.startswith("**", i) is True:
                at_start: bool = i == 0 or glob[i - 1] == "/"
                followed_by_slash: bool = glob.startswith("**/", i)
                if at_start is True and followed_by_slash is True:
                    out.append("(?:.*/)?")
                    i += 3
                    continue
                if at_start is True and i + 2 == n:
                    out.append(".*")
                    i += 2
                    continue
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            j: int = glob.find("]", i + 2 if glob.startswith("[!", i) or glob.startswith("[^", i) else i + 1)
            if j < 0:
                out.append(re.escape(c))
                i += 1
                continue
            inner: str = glob[i + 1 : j]
            if inner.startswith("!") is True:
                inner = "^" + inner[1:]
            out.append("[" + inner.replace("\\", "\\\\") + "]")
            i = j + 1
        elif c == "\\" and i + 1 < n:
            out.append(re.escape(glob[i + 1]))
            i += 2
        else:
            out.append(re.escape(c))
            i += 1
    return "".join(out)


class IgnoreRules:
    """Ordered ignore patterns; the last matching pattern decides."""

    def __init__(self, patterns: Iterable[IgnorePattern] = ()) -> None:
        self._patterns: list[IgnorePattern] = list(patterns)

    @classmethod
    def from_lines(cls, lines: Iterable[str], *, base: str = "") -> "IgnoreRules":
        compiled: list[IgnorePattern] = []
        for line in lines:
            p: IgnorePattern | None = compile_pattern(line, base=base)
            if p is not None:
                compiled.append(p)
        return cls(compiled)

    def extended(self, other: "IgnoreRules") -> "IgnoreRules":
        return IgnoreRules([*self._patterns, *other._patterns])

    def __len__(self) -> int:
        return len(self._patterns)

    def is_ignored(self, relpath: str, *, is_dir: bool = False) -> bool:
        ignored: bool = False
        for p in self._patterns:
            if p.matches(relpath, is_dir=is_dir) is True:
                ignored = p.negated is False
        return ignored


def default_rules(exclude: Iterable[str] = (), *, project_root: bool = True) -> IgnoreRules:
    """Built-in ignores plus configured ``exclude`` patterns.

    :param exclude: Extra gitignore-style patterns.
    :param project_root: Also skip build and tool directories at the top level.
    """

    lines: list[str] = []
    if project_root is True:
        lines.extend(f"/{name}/" for name in sorted(DEFAULT_IGNORE_NAMES))
    lines.extend(_ALWAYS_IGNORED)
    lines.extend(exclude)
    return IgnoreRules.from_lines(lines)


def collect_files(
    root: pathlib.Path,
    *,
    exclude: Iterable[str] = (),
    skip_paths: Iterable[pathlib.Path] = (),
    use_gitignore: bool = True,
    project_root: bool = True,
    logger: logging.Logger | None = None,
) -> list[str]:
    """List the files of ``root`` that a source distribution should contain.

    ``.gitignore`` files are honored in every directory. Directories that
    are ignored are not descended into, so a negated pattern cannot
    re-include files below them.

    :param root: Project root.
    :param exclude: Extra gitignore-style patterns.
    :param skip_paths: Files or directories never included (e.g. the output archive).
    :param use_gitignore: Read ``.gitignore`` files.
    :param project_root: ``root`` is a project root (skip build and tool directories there).
    :param logger: Optional logger.
    :returns: Sorted POSIX paths relative to ``root``.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    root_resolved: pathlib.Path = root.resolve()
    skip_parts: list[tuple[str, ...]] = []
    for p in skip_paths:
        resolved: pathlib.Path = p.resolve()
        if resolved.is_relative_to(root_resolved) is True:
            skip_parts.append(pathlib.PurePosixPath(resolved.relative_to(root_resolved).as_posix()).parts)

    def is_skipped(relpath: str) -> bool:
        parts: tuple[str, ...] = pathlib.PurePosixPath(relpath).parts
        for ex in skip_parts:
            if len(parts) >= len(ex) and parts[0 : len(ex)] == ex:
                return True
        return False

    rules_by_dir: dict[str, IgnoreRules] = {}
    out: list[str] = []
    for dir_str, dirs, files in os.walk(root_resolved, topdown=True):
        dir_path: pathlib.Path = pathlib.Path(dir_str)
        rel_dir: str = dir_path.relative_to(root_resolved).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir

        parent_rules: IgnoreRules
        if len(rel_dir) == 0:
            parent_rules = default_rules(exclude, project_root=project_root)
        else:
            parent_rules = rules_by_dir[rel_dir.rsplit("/", 1)[0] if "/" in rel_dir else ""]
        rules: IgnoreRules = parent_rules
        gitignore: pathlib.Path = dir_path / ".gitignore"
        if use_gitignore is True and gitignore.is_file() is True:
            try:
                lines: list[str] = gitignore.read_text(encoding="utf-8", errors="replace").splitlines()
            except OSError as e:
                log.warning(f"wheelwright: cannot read {gitignore}: {e}")
                lines = []
            rules = parent_rules.extended(IgnoreRules.from_lines(lines, base=rel_dir))
        rules_by_dir[rel_dir] = rules

        keep_dirs: list[str] = []
        for d in sorted(dirs):
            rel: str = f"{rel_dir}/{d}" if len(rel_dir) > 0 else d
            if rules.is_ignored(rel, is_dir=True) is True or is_skipped(rel) is True:
                continue
            keep_dirs.append(d)
        dirs[:] = keep_dirs

        for name in files:
            rel = f"{rel_dir}/{name}" if len(rel_dir) > 0 else name
            if rules.is_ignored(rel) is True or is_skipped(rel) is True:
                continue
            out.append(rel)

    if log.isEnabledFor(logging.DEBUG) is True:
        log.debug(f"wheelwright: collected {len(out)} source files from {root_resolved}")
    return sorted(out)
