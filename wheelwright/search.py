"""Locate shared-library dependencies the way each platform's loader would.

The search is read-only and may run concurrently from several build tasks.
Candidate files are accepted only if their format and architecture fit the
referencing binary, so a 32-bit ``libfoo.so`` in ``/usr/lib`` is skipped
for a 64-bit extension.
"""

from collections.abc import Mapping
import functools
import glob
import logging
import os
import pathlib

from wheelwright.binary import BinaryArtifact, BinaryFormat, inspect_binary
from wheelwright.errors import InvalidBinaryError
from wheelwright.target import Target


_LINUX_DEFAULT_DIRS: tuple[str, ...] = ("/lib64", "/usr/lib64", "/lib", "/usr/lib")

_LINUX_MULTIARCH: dict[str, str] = {
    "x86_64": "x86_64-linux-gnu",
    "i686": "i386-linux-gnu",
    "aarch64": "aarch64-linux-gnu",
    "armv7l": "arm-linux-gnueabihf",
    "ppc64le": "powerpc64le-linux-gnu",
    "ppc64": "powerpc64-linux-gnu",
    "s390x": "s390x-linux-gnu",
    "riscv64": "riscv64-linux-gnu",
}

_MACOS_FALLBACK_DIRS: tuple[str, ...] = ("/usr/local/lib", "/usr/lib")


class LibrarySearcher:
    """Resolve needed-library names to files.

    :param target: Target being built (selects the platform rules).
    :param extra_paths: Configured directories, searched before system locations.
    :param env: Environment for ``LD_LIBRARY_PATH``/``DYLD_LIBRARY_PATH``/``PATH``;
        defaults to ``os.environ``.
    :param system_paths: Overrides the platform's default directories
        (``ld.so.conf`` plus the built-in list on Linux).
    :param logger: Logger for debug output.
    """

    def __init__(
        self,
        *,
        target: Target,
        extra_paths: tuple[pathlib.Path, ...] = (),
        env: Mapping[str, str] | None = None,
        system_paths: tuple[pathlib.Path, ...] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._target: Target = target
        self._extra_paths: tuple[pathlib.Path, ...] = extra_paths
        self._env: Mapping[str, str] = env if env is not None else os.environ
        self._system_paths: tuple[pathlib.Path, ...] = (
            system_paths if system_paths is not None else _default_system_paths(target)
        )
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
        self._inspected: dict[pathlib.Path, BinaryArtifact | None] = {}

    def inspect(self, path: pathlib.Path) -> BinaryArtifact | None:
        """Inspect a candidate file once; unreadable or foreign files yield ``None``."""

        key: pathlib.Path = path.resolve()
        if key not in self._inspected:
            try:
                self._inspected[key] = inspect_binary(key)
            except InvalidBinaryError as e:
                if self._logger.isEnabledFor(logging.DEBUG) is True:
                    self._logger.debug(f"wheelwright: skipping candidate {key}: {e}")
                self._inspected[key] = None
        return self._inspected[key]

    def resolve(
        self,
        name: str,
        *,
        referrer: BinaryArtifact,
        root: BinaryArtifact,
    ) -> pathlib.Path | None:
        """Find the file the loader would map for ``name``.

        :param name: Needed-library name as recorded in ``referrer``.
        :param referrer: Binary that references ``name``.
        :param root: The extension module at the top of the graph.
        :returns: Resolved absolute path, or ``None`` when not found.
        """

        for candidate in self._candidates(name, referrer=referrer, root=root):
            if candidate.is_file() is False:
                continue
            found: BinaryArtifact | None = self.inspect(candidate)
            if found is not None and found.can_satisfy(referrer) is True:
                return candidate.resolve()
        return None

    def _candidates(self, name: str, *, referrer: BinaryArtifact, root: BinaryArtifact) -> list[pathlib.Path]:
        if referrer.format == BinaryFormat.ELF:
            return self._elf_candidates(name, referrer=referrer)
        if referrer.format == BinaryFormat.MACHO:
            return self._macho_candidates(name, referrer=referrer, root=root)
        return self._pe_candidates(name, referrer=referrer)

    def _elf_candidates(self, name: str, *, referrer: BinaryArtifact) -> list[pathlib.Path]:
        if "/" in name:
            return [pathlib.Path(name)]

        origin: str = str(referrer.path.resolve().parent)
        dirs: list[str] = []
        if len(referrer.runpaths) == 0:
            dirs.extend(referrer.rpaths)
        dirs.extend(_split_env(self._env.get("LD_LIBRARY_PATH")))
        dirs.extend(referrer.runpaths)
        dirs.extend(str(p) for p in self._extra_paths)
        dirs.extend(str(p) for p in self._system_paths)

        out: list[pathlib.Path] = []
        for d in dirs:
            expanded: str = d.replace("${ORIGIN}", origin).replace("$ORIGIN", origin)
            out.append(pathlib.Path(expanded) / name)
        return out

    def _macho_candidates(
        self, name: str, *, referrer: BinaryArtifact, root: BinaryArtifact
    ) -> list[pathlib.Path]:
        loader_dir: str = str(referrer.path.resolve().parent)
        executable_dir: str = str(root.path.resolve().parent)
        leaf: str = name.rsplit("/", 1)[-1]

        def expand(path: str) -> str:
            return path.replace("@loader_path", loader_dir).replace("@executable_path", executable_dir)

        out: list[pathlib.Path] = []
        for d in _split_env(self._env.get("DYLD_LIBRARY_PATH")):
            out.append(pathlib.Path(d) / leaf)

        if name.startswith("@rpath/") is True:
            rest: str = name[len("@rpath/") :]
            rpaths: list[str] = list(referrer.rpaths)
            for r in root.rpaths:
                if r not in rpaths:
                    rpaths.append(r)
            for r in rpaths:
                out.append(pathlib.Path(expand(r)) / rest)
        elif name.startswith("@loader_path/") is True or name.startswith("@executable_path/") is True:
            out.append(pathlib.Path(expand(name)))
        else:
            out.append(pathlib.Path(name))

        for d in self._extra_paths:
            out.append(d / leaf)
        for d in _split_env(self._env.get("DYLD_FALLBACK_LIBRARY_PATH")):
            out.append(pathlib.Path(d) / leaf)
        for d in self._system_paths:
            out.append(d / leaf)
        return out

    def _pe_candidates(self, name: str, *, referrer: BinaryArtifact) -> list[pathlib.Path]:
        dirs: list[pathlib.Path] = [referrer.path.resolve().parent, *self._extra_paths]
        dirs.extend(pathlib.Path(d) for d in _split_env(self._env.get("PATH")))
        dirs.extend(self._system_paths)

        out: list[pathlib.Path] = []
        for d in dirs:
            match: str | None = _case_insensitive_entry(str(d), name.lower())
            if match is not None:
                out.append(d / match)
        return out


def _default_system_paths(target: Target) -> tuple[pathlib.Path, ...]:
    if target.is_linux is True:
        dirs: list[str] = list(ld_so_conf_dirs(pathlib.Path("/etc/ld.so.conf")))
        multiarch: str | None = _LINUX_MULTIARCH.get(target.arch)
        if multiarch is not None:
            for base in ("/lib", "/usr/lib"):
                d: str = f"{base}/{multiarch}"
                if d not in dirs:
                    dirs.append(d)
        for d in _LINUX_DEFAULT_DIRS:
            if d not in dirs:
                dirs.append(d)
        return tuple(pathlib.Path(d) for d in dirs)
    if target.is_macos is True:
        return tuple(pathlib.Path(d) for d in _MACOS_FALLBACK_DIRS)
    return ()


def ld_so_conf_dirs(conf: pathlib.Path) -> tuple[str, ...]:
    """Read the directories listed in ``ld.so.conf`` (following ``include`` globs).

    :param conf: Configuration file.
    :returns: Directories in file order; missing files yield an empty tuple.
    """

    return _read_ld_so_conf(str(conf), ())


@functools.lru_cache(maxsize=None)
def _read_ld_so_conf(conf: str, seen: tuple[str, ...]) -> tuple[str, ...]:
    if conf in seen:
        return ()
    try:
        with open(conf, "r", encoding="utf-8", errors="replace") as f:
            lines: list[str] = f.read().splitlines()
    except OSError:
        return ()

    dirs: list[str] = []
    base: str = os.path.dirname(conf)
    for raw in lines:
        line: str = raw.split("#", 1)[0].strip()
        if len(line) == 0:
            continue
        if line.startswith("include ") is True or line.startswith("include\t") is True:
            pattern: str = line.split(None, 1)[1].strip()
            if os.path.isabs(pattern) is False:
                pattern = os.path.join(base, pattern)
            for included in sorted(glob.glob(pattern)):
                for d in _read_ld_so_conf(included, (*seen, conf)):
                    if d not in dirs:
                        dirs.append(d)
            continue
        if line.startswith("hwcap ") is True:
            continue
        if line not in dirs:
            dirs.append(line)
    return tuple(dirs)


def _split_env(value: str | None, *, sep: str = os.pathsep) -> list[str]:
    if value is None:
        return []
    return [p for p in value.split(sep) if len(p) > 0]


def _case_insensitive_entry(directory: str, lower_name: str) -> str | None:
    try:
        entries: list[str] = os.listdir(directory)
    except OSError:
        return None
    for entry in entries:
        if entry.lower() == lower_name:
            return entry
    return None
