"""Wheel and sdist assembly.

Archives are built from an in-memory list of :class:`ArchiveEntry` records
that is sorted and de-duplicated before anything is written. ``RECORD`` is
computed last from every other entry and is the one member written out of
path order, at the end of the wheel. Output goes to a temporary file in
the destination directory and is moved into place with ``os.replace`` so a
failed build never leaves a truncated archive behind.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
import base64
import csv
import gzip
import hashlib
import io
import logging
import os
import pathlib
import posixpath
import stat
import tarfile
import tempfile
import time
import zipfile

from wheelwright.errors import ArchiveIOError
from wheelwright.ignore import IgnoreRules, collect_files
from wheelwright.metadata import PackageMetadata
from wheelwright.repair import BundledLibrary
from wheelwright.target import PythonTarget, ResolvedTarget, Target


GENERATOR: str = "wheelwright"

COMPRESSION: dict[str, int] = {
    "stored": zipfile.ZIP_STORED,
    "deflated": zipfile.ZIP_DEFLATED,
    "bzip2": zipfile.ZIP_BZIP2,
    "lzma": zipfile.ZIP_LZMA,
}

DATA_SUBDIRS: frozenset[str] = frozenset({"data", "scripts", "headers", "purelib", "platlib"})

_NATIVE_SUFFIXES: tuple[str, ...] = (".so", ".pyd", ".dylib", ".dll")

_LINUX_MULTIARCH: dict[tuple[str, str], str] = {
    ("x86_64", "gnu"): "x86_64-linux-gnu",
    ("x86_64", "musl"): "x86_64-linux-musl",
    ("i686", "gnu"): "i386-linux-gnu",
    ("i686", "musl"): "i386-linux-musl",
    ("aarch64", "gnu"): "aarch64-linux-gnu",
    ("aarch64", "musl"): "aarch64-linux-musl",
    ("armv7l", "gnu"): "arm-linux-gnueabihf",
    ("armv7l", "musl"): "arm-linux-musleabihf",
    ("ppc64le", "gnu"): "powerpc64le-linux-gnu",
    ("ppc64", "gnu"): "powerpc64-linux-gnu",
    ("s390x", "gnu"): "s390x-linux-gnu",
    ("riscv64", "gnu"): "riscv64-linux-gnu",
}


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """One file inside an archive.

    :ivar path: POSIX path inside the archive.
    :ivar data: File contents.
    :ivar mode: Permission bits.
    """

    path: str
    data: bytes
    mode: int = 0o644


@dataclass(frozen=True, slots=True)
class RecordEntry:
    path: str
    hash: str
    size: int


@dataclass(frozen=True, slots=True)
class WheelLayout:
    """Where the extension module goes inside the wheel.

    :ivar extension_path: Archive path of the compiled module.
    :ivar module_dir: Directory holding ``extension_path`` (``""`` for the root).
    :ivar package_dir: Top-level package directory the module belongs to.
    :ivar mixed: A Python package tree from ``python-source`` is shipped too.
    """

    extension_path: str
    module_dir: str
    package_dir: str
    mixed: bool


class EntryList:
    """Collects archive entries, rejecting conflicting duplicates."""

    def __init__(self) -> None:
        self._entries: dict[str, ArchiveEntry] = {}

    def add(self, entry: ArchiveEntry) -> None:
        path: str = _check_archive_path(entry.path)
        existing: ArchiveEntry | None = self._entries.get(path)
        if existing is not None:
            if existing.data != entry.data:
                raise ArchiveIOError(f"Two different files would be written to {path!r}")
            return
        self._entries[path] = entry if path == entry.path else ArchiveEntry(path, entry.data, entry.mode)

    def add_bytes(self, path: str, data: bytes, *, mode: int = 0o644) -> None:
        self.add(ArchiveEntry(path=path, data=data, mode=mode))

    def add_text(self, path: str, text: str) -> None:
        self.add_bytes(path, text.encode("utf-8"))

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def sorted_entries(self) -> list[ArchiveEntry]:
        return [self._entries[p] for p in sorted(self._entries)]


def _check_archive_path(path: str) -> str:
    normalized: str = posixpath.normpath(path.replace("\\", "/"))
    if normalized.startswith("/") is True or normalized == ".." or normalized.startswith("../") is True:
        raise ArchiveIOError(f"Archive path {path!r} escapes the archive root")
    if normalized == ".":
        raise ArchiveIOError("Empty archive path")
    return normalized


def record_hash(data: bytes) -> str:
    """``sha256=<urlsafe base64 without padding>`` as used in ``RECORD``."""

    digest: bytes = hashlib.sha256(data).digest()
    return "sha256=" + base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def record_entries(entries: Iterable[ArchiveEntry]) -> list[RecordEntry]:
    return [RecordEntry(path=e.path, hash=record_hash(e.data), size=len(e.data)) for e in entries]


def render_record(entries: list[ArchiveEntry], record_path: str) -> bytes:
    """Render ``RECORD`` for ``entries``; the file's own row has no hash or size.

    :param entries: Every archive entry except ``RECORD`` itself.
    :param record_path: Archive path of ``RECORD``.
    :returns: CSV bytes.
    """

    buf: io.StringIO = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    for r in record_entries(sorted(entries, key=lambda e: e.path)):
        writer.writerow([r.path, r.hash, r.size])
    writer.writerow([record_path, "", ""])
    return buf.getvalue().encode("utf-8")


def wheel_file_text(tags: Iterable[str], *, generator_version: str) -> str:
    lines: list[str] = [
        "Wheel-Version: 1.0",
        f"Generator: {GENERATOR} ({generator_version})",
        "Root-Is-Purelib: false",
    ]
    lines.extend(f"Tag: {t}" for t in tags)
    return "\n".join(lines) + "\n"


def wheel_tags(python: PythonTarget, platform_tags: tuple[str, ...]) -> list[str]:
    return [f"{python.python_tag}-{python.abi}-{p}" for p in platform_tags]


def wheel_filename(metadata: PackageMetadata, python: PythonTarget, platform_tags: tuple[str, ...]) -> str:
    """``{dist}-{version}-{python}-{abi}-{platform}.whl`` with a compressed platform tag set."""

    return (
        f"{metadata.dist_name}-{metadata.dist_version}-"
        f"{python.python_tag}-{python.abi}-{'.'.join(platform_tags)}.whl"
    )


def sdist_filename(metadata: PackageMetadata) -> str:
    return f"{metadata.dist_name}-{metadata.dist_version}.tar.gz"


def extension_filename(module_leaf: str, *, resolved: ResolvedTarget, python: PythonTarget) -> str:
    """File name the interpreter will import the extension module from.

    :param module_leaf: Last component of the module's import path.
    :param resolved: Resolved target.
    :param python: Interpreter tags.
    :returns: File name such as ``foo.cpython-312-x86_64-linux-gnu.so``.
    """

    target: Target = resolved.target
    if target.is_windows is True:
        if python.is_abi3 is True or python.implementation != "cp":
            return f"{module_leaf}.pyd"
        return f"{module_leaf}.{python.python_tag}-{resolved.candidate_tags[0]}.pyd"

    if python.is_abi3 is True or python.implementation != "cp":
        suffix: str = "abi3.so" if python.is_abi3 is True else "so"
        return f"{module_leaf}.{suffix}"

    version: str = python.python_version.replace(".", "")
    if target.is_macos is True:
        return f"{module_leaf}.cpython-{version}-darwin.so"
    multiarch: str = _LINUX_MULTIARCH.get((target.arch, target.abi), f"{target.arch}-linux-{target.abi}")
    return f"{module_leaf}.cpython-{version}-{multiarch}.so"


def plan_layout(
    metadata: PackageMetadata,
    *,
    resolved: ResolvedTarget,
    python: PythonTarget,
    python_source: pathlib.Path | None,
) -> WheelLayout:
    """Decide where the extension module lives inside the wheel.

    Without ``python-source`` the module gets a package of its own
    (``<module>/__init__.py`` re-exporting it). With ``python-source`` the
    module sits inside the user's package: ``pkg._native`` goes to
    ``pkg/_native.<suffix>``.

    :param metadata: Project metadata.
    :param resolved: Resolved target.
    :param python: Interpreter tags.
    :param python_source: Directory containing the Python package, if any.
    :returns: Layout.
    :raises ArchiveIOError: If the mixed package directory does not exist.
    """

    parts: list[str] = metadata.module_name.split(".")
    filename: str = extension_filename(parts[-1], resolved=resolved, python=python)

    if python_source is None:
        module_dir: str = "/".join(parts)
        return WheelLayout(
            extension_path=f"{module_dir}/{filename}",
            module_dir=module_dir,
            package_dir=module_dir,
            mixed=False,
        )

    package_src: pathlib.Path = python_source / parts[0]
    if package_src.is_dir() is False:
        raise ArchiveIOError(f"python-source has no package directory {parts[0]!r}", path=package_src)
    module_dir = "/".join(parts[:-1]) if len(parts) > 1 else parts[0]
    return WheelLayout(
        extension_path=f"{module_dir}/{filename}",
        module_dir=module_dir,
        package_dir=parts[0],
        mixed=True,
    )


def _init_py(module_leaf: str) -> str:
    return (
        f"from .{module_leaf} import *\n"
        "\n"
        f"__doc__ = {module_leaf}.__doc__\n"
        f'if hasattr({module_leaf}, "__all__"):\n'
        f"    __all__ = {module_leaf}.__all__\n"
    )


def _dll_directory_snippet(package_dir: str, libs_dir: str) -> str:
    rel: str = posixpath.relpath(libs_dir, package_dir)
    parts: str = ", ".join(repr(p) for p in rel.split("/"))
    return (
        "def _add_bundled_dll_directory():\n"
        "    import os\n"
        "\n"
        f"    libs = os.path.join(os.path.dirname(os.path.abspath(__file__)), {parts})\n"
        '    if hasattr(os, "add_dll_directory") and os.path.isdir(libs):\n'
        "        os.add_dll_directory(libs)\n"
        "\n"
        "\n"
        "_add_bundled_dll_directory()\n"
        "del _add_bundled_dll_directory\n"
    )


def _insert_preamble(source: str, preamble: str) -> str:
    """Insert ``preamble`` after any ``from __future__`` imports of ``source``."""

    lines: list[str] = source.splitlines(keepends=True)
    last_future: int = -1
    for i, line in enumerate(lines):
        if line.startswith("from __future__ import") is True:
            last_future = i
    if last_future < 0:
        return preamble + "\n" + source
    head: str = "".join(lines[: last_future + 1])
    tail: str = "".join(lines[last_future + 1 :])
    return head + "\n" + preamble + tail


def _read_file(path: pathlib.Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise ArchiveIOError(f"Cannot read {path}: {e}", path=path) from e


def _file_mode(path: pathlib.Path) -> int:
    try:
        st_mode: int = path.stat().st_mode
    except OSError as e:
        raise ArchiveIOError(f"Cannot stat {path}: {e}", path=path) from e
    return 0o755 if st_mode & 0o111 else 0o644


def wheel_entries(
    metadata: PackageMetadata,
    *,
    layout: WheelLayout,
    extension: bytes,
    bundled: tuple[BundledLibrary, ...],
    tags: list[str],
    is_windows: bool,
    python_source: pathlib.Path | None = None,
    data_dir: pathlib.Path | None = None,
    generator_version: str,
) -> list[ArchiveEntry]:
    """Assemble every wheel entry, ``RECORD`` last.

    Entries are in path order except ``RECORD``, which is always appended at
    the end because it hashes every entry before it.

    :param metadata: Project metadata.
    :param layout: Extension placement from :func:`plan_layout`.
    :param extension: Extension module bytes (already repaired).
    :param bundled: Bundled libraries from the repairer.
    :param tags: Full ``python-abi-platform`` tags.
    :param is_windows: Target is Windows (bundled DLLs need ``os.add_dll_directory``).
    :param python_source: Directory containing the Python package for mixed layouts.
    :param data_dir: Directory shipped as ``<dist>-<ver>.data``.
    :param generator_version: wheelwright version for the ``WHEEL`` file.
    :returns: Entries sorted by path, followed by ``RECORD``.
    :raises ArchiveIOError: If an input cannot be read or paths collide.
    """

    entries: EntryList = EntryList()
    entries.add_bytes(layout.extension_path, extension, mode=0o755)
    for lib in bundled:
        entries.add_bytes(lib.archive_path, lib.content, mode=0o755)

    needs_dll_dir: bool = is_windows is True and len(bundled) > 0
    dll_snippet: str = _dll_directory_snippet(layout.package_dir, metadata.libs_dir)
    init_path: str = f"{layout.package_dir}/__init__.py"

    if layout.mixed is False:
        leaf: str = metadata.module_leaf
        init_text: str = _init_py(leaf)
        if needs_dll_dir is True:
            init_text = dll_snippet + "\n\n" + init_text
        entries.add_text(f"{layout.module_dir}/__init__.py", init_text)
        stub: pathlib.Path = metadata.project_dir / f"{leaf}.pyi"
        if stub.is_file() is True:
            entries.add_bytes(f"{layout.module_dir}/__init__.pyi", _read_file(stub))
            entries.add_bytes(f"{layout.module_dir}/py.typed", b"")
    else:
        if python_source is None:
            raise ArchiveIOError("Mixed layout requires python-source")
        package_src: pathlib.Path = python_source / layout.package_dir
        for rel in collect_files(package_src, use_gitignore=False, project_root=False):
            if rel.endswith(_NATIVE_SUFFIXES) is True:
                continue
            src: pathlib.Path = package_src / rel
            arc: str = f"{layout.package_dir}/{rel}"
            data: bytes = _read_file(src)
            if arc == init_path and needs_dll_dir is True:
                data = _insert_preamble(data.decode("utf-8"), dll_snippet).encode("utf-8")
            entries.add_bytes(arc, data, mode=_file_mode(src))
        if needs_dll_dir is True and init_path not in entries:
            entries.add_text(init_path, dll_snippet)

    if data_dir is not None:
        _add_data_dir(entries, data_dir, prefix=metadata.data_dir)

    dist_info: str = metadata.dist_info_dir
    for lf in metadata.license_files:
        try:
            rel_license: str = lf.relative_to(metadata.project_dir).as_posix()
        except ValueError:
            rel_license = lf.name
        entries.add_bytes(f"{dist_info}/licenses/{rel_license}", _read_file(lf))
    entries.add_text(f"{dist_info}/METADATA", metadata.to_file_contents())
    entries.add_text(f"{dist_info}/WHEEL", wheel_file_text(tags, generator_version=generator_version))
    ep: str | None = metadata.entry_points_text()
    if ep is not None:
        entries.add_text(f"{dist_info}/entry_points.txt", ep)

    record_path: str = f"{dist_info}/RECORD"
    body: list[ArchiveEntry] = entries.sorted_entries()
    return [*body, ArchiveEntry(path=record_path, data=render_record(body, record_path))]


def _add_data_dir(entries: EntryList, data_dir: pathlib.Path, *, prefix: str) -> None:
    if data_dir.is_dir() is False:
        raise ArchiveIOError("data directory does not exist", path=data_dir)
    for rel in collect_files(data_dir, use_gitignore=False, project_root=False):
        top: str = rel.split("/", 1)[0]
        if "/" not in rel or top not in DATA_SUBDIRS:
            raise ArchiveIOError(
                f"{rel!r} is not inside one of {', '.join(sorted(DATA_SUBDIRS))}",
                path=data_dir / rel,
            )
        src: pathlib.Path = data_dir / rel
        mode: int = 0o755 if top == "scripts" else _file_mode(src)
        entries.add_bytes(f"{prefix}/{rel}", _read_file(src), mode=mode)


def sdist_entries(
    metadata: PackageMetadata,
    *,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
    skip_paths: Iterable[pathlib.Path] = (),
    logger: logging.Logger | None = None,
) -> list[ArchiveEntry]:
    """Collect the source tree under ``<dist>-<version>/``.

    :param metadata: Project metadata (``PKG-INFO`` is generated from it).
    :param include: Globs added even when otherwise ignored.
    :param exclude: Extra gitignore-style patterns.
    :param skip_paths: Paths never included (the output directory).
    :param logger: Optional logger.
    :returns: Sorted entries.
    """

    root: pathlib.Path = metadata.project_dir
    prefix: str = f"{metadata.dist_name}-{metadata.dist_version}"
    skips: list[pathlib.Path] = list(skip_paths)
    files: set[str] = set(collect_files(root, exclude=exclude, skip_paths=skips, logger=logger))
    skip_rules: IgnoreRules = IgnoreRules.from_lines(["__pycache__/", "*.pyc"])
    for pattern in include:
        for match in sorted(root.glob(pattern)):
            if match.is_file() is False:
                continue
            rel: str = match.relative_to(root).as_posix()
            if skip_rules.is_ignored(rel) is False:
                files.add(rel)
    files.discard("PKG-INFO")

    entries: EntryList = EntryList()
    for rel in sorted(files):
        src: pathlib.Path = root / rel
        entries.add_bytes(f"{prefix}/{rel}", _read_file(src), mode=_file_mode(src))
    entries.add_text(f"{prefix}/PKG-INFO", metadata.to_file_contents())
    return entries.sorted_entries()


def zip_date_time(epoch: int) -> tuple[int, int, int, int, int, int]:
    t: time.struct_time = time.gmtime(max(epoch, 315532800))
    return (t.tm_year, t.tm_mon, t.tm_mday, t.tm_hour, t.tm_min, t.tm_sec)


def render_zip(
    entries: list[ArchiveEntry],
    *,
    compression: str = "deflated",
    compresslevel: int | None = None,
    epoch: int = 315532800,
) -> bytes:
    """Serialize entries to zip bytes in the given order.

    :param entries: Entries, already sorted (``RECORD`` last for wheels).
    :param compression: Compression method name.
    :param compresslevel: Level for ``deflated``/``bzip2``.
    :param epoch: Timestamp for every entry.
    :returns: Zip bytes.
    """

    method: int = COMPRESSION[compression]
    level: int | None = compresslevel if method in (zipfile.ZIP_DEFLATED, zipfile.ZIP_BZIP2) else None
    date_time: tuple[int, int, int, int, int, int] = zip_date_time(epoch)

    buf: io.BytesIO = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=method) as zf:
        for e in entries:
            info: zipfile.ZipInfo = zipfile.ZipInfo(e.path, date_time=date_time)
            info.create_system = 3
            info.external_attr = (e.mode | stat.S_IFREG) << 16
            info.compress_type = method
            zf.writestr(info, e.data, compress_type=method, compresslevel=level)
    return buf.getvalue()


def render_tar_gz(entries: list[ArchiveEntry], *, epoch: int = 315532800) -> bytes:
    """Serialize entries to a reproducible ``.tar.gz``.

    Ownership is ``0:0`` with empty names, permissions are normalized and
    both the tar members and the gzip header carry ``epoch``.

    :param entries: Sorted entries.
    :param epoch: Timestamp.
    :returns: Compressed bytes.
    """

    raw: io.BytesIO = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=epoch) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tf:
            for e in entries:
                info: tarfile.TarInfo = tarfile.TarInfo(e.path)
                info.size = len(e.data)
                info.mtime = epoch
                info.mode = 0o755 if e.mode & 0o111 else 0o644
                info.uid = 0
                info.gid = 0
                info.uname = ""
                info.gname = ""
                info.type = tarfile.REGTYPE
                tf.addfile(info, io.BytesIO(e.data))
    return raw.getvalue()


def write_atomic(
    out_path: pathlib.Path,
    render: Callable[[], bytes],
    *,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Write ``render()`` to ``out_path`` through a temp file, retrying once.

    :param out_path: Final archive path.
    :param render: Produces the archive bytes.
    :param logger: Optional logger.
    :returns: ``out_path``.
    :raises ArchiveIOError: If writing fails twice.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    data: bytes = render()
    last_error: OSError | None = None
    for attempt in (1, 2):
        tmp_path: pathlib.Path | None = None
        try:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{out_path.name}.", suffix=".tmp", dir=out_path.parent)
            tmp_path = pathlib.Path(tmp_name)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp_path, 0o644)
            tmp_path.replace(out_path)
            return out_path
        except OSError as e:
            last_error = e
            if tmp_path is not None and tmp_path.exists() is True:
                tmp_path.unlink()
            if attempt == 1:
                log.warning(f"wheelwright: writing {out_path} failed ({e}); retrying once")
    raise ArchiveIOError(f"Cannot write archive: {last_error}", path=out_path) from last_error
