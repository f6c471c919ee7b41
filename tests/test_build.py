"""End-to-end tests for wheelwright.build."""

from __future__ import annotations

import base64
import csv
import hashlib
import io
import tarfile
import zipfile
from pathlib import Path

from tests._fixtures.binaries import (
    CPU_TYPE_ARM64,
    EM_AARCH64,
    make_elf,
    make_macho,
    set_dynamic_value,
    strip_section_headers,
)
from tests._fixtures.project_builder import ProjectBuilder
from wheelwright.binary import inspect_bytes
from wheelwright.build import BatchContext, BuildRequest, build_sdist, build_wheel, build_wheels, prepare_batch
from wheelwright.config import load_config
from wheelwright.errors import InvalidBinaryError, NameMismatchError, UnknownTargetError
from wheelwright.repair import Outcome

LINUX = "x86_64-unknown-linux-gnu"


def _context(project: ProjectBuilder, **overrides: object) -> BatchContext:
    config = load_config(project.path(), env={}).with_overrides(python_version="3.12", implementation="cp", **overrides)
    return prepare_batch(config, env={})


def _extension(project: ProjectBuilder, name: str = "target/demo_ext.so", **kwargs: object) -> Path:
    kwargs.setdefault("exports", ["PyInit_demo_ext"])
    kwargs.setdefault("needed", ["libc.so.6"])
    return project.write_bytes(name, make_elf(**kwargs))


def test_linux_wheel_end_to_end(project: ProjectBuilder, tmp_path: Path) -> None:
    project.pyproject()
    ext = _extension(project)

    result = build_wheel(BuildRequest(LINUX, (ext,), tmp_path / "dist"), context=_context(project))

    assert result.ok is True
    assert result.outcome == Outcome.PASS
    assert result.platform_tag == "manylinux_2_5_x86_64"
    assert result.archive_path == tmp_path / "dist" / "demo_ext-1.2.0-cp312-cp312-manylinux_2_5_x86_64.manylinux1_x86_64.whl"
    with zipfile.ZipFile(result.archive_path) as zf:
        names = zf.namelist()
        wheel_text = zf.read("demo_ext-1.2.0.dist-info/WHEEL").decode("utf-8")
        module = zf.read("demo_ext/demo_ext.cpython-312-x86_64-linux-gnu.so")
    assert names[-1] == "demo_ext-1.2.0.dist-info/RECORD"
    assert "demo_ext/__init__.py" in names
    assert "Tag: cp312-cp312-manylinux_2_5_x86_64\nTag: cp312-cp312-manylinux1_x86_64\n" in wheel_text
    assert module == ext.read_bytes()


def test_wheels_are_reproducible(project: ProjectBuilder, tmp_path: Path) -> None:
    project.pyproject()
    ext = _extension(project)
    context = _context(project)

    first = build_wheel(BuildRequest(LINUX, (ext,), tmp_path / "a"), context=context)
    second = build_wheel(BuildRequest(LINUX, (ext,), tmp_path / "b"), context=context)

    assert first.archive_path is not None and second.archive_path is not None
    assert first.archive_path.read_bytes() == second.archive_path.read_bytes()


def test_dependency_from_search_path_is_bundled(project: ProjectBuilder, tmp_path: Path) -> None:
    project.pyproject(
        """
        [project]
        name = "demo-ext"
        version = "1.2.0"

        [tool.wheelwright]
        library-search-paths = ["deps"]
        """
    )
    project.write_bytes("deps/libdemo_support.so.1", make_elf(soname="libdemo_support.so.1", needed=["libc.so.6"]))
    ext = _extension(project, needed=["libdemo_support.so.1", "libc.so.6"])

    result = build_wheel(BuildRequest(LINUX, (ext,), tmp_path / "dist"), context=_context(project))

    assert result.outcome == Outcome.PASS_WITH_BUNDLED
    assert result.archive_path is not None
    with zipfile.ZipFile(result.archive_path) as zf:
        bundled = [n for n in zf.namelist() if n.startswith("demo_ext.libs/")]
        module = inspect_bytes(zf.read("demo_ext/demo_ext.cpython-312-x86_64-linux-gnu.so"), path=ext)
    assert len(bundled) == 1
    assert bundled[0].startswith("demo_ext.libs/libdemo_support-")
    assert module.needed_libraries[0] == bundled[0].split("/", 1)[1]
    assert module.runpaths == ("$ORIGIN/../demo_ext.libs",)
    assert any("bundled libdemo_support.so.1" in w for w in result.warnings)


def test_record_matches_wheel_contents(project: ProjectBuilder, tmp_path: Path) -> None:
    project.pyproject(
        """
        [project]
        name = "demo-ext"
        version = "1.2.0"

        [tool.wheelwright]
        library-search-paths = ["deps"]
        """
    )
    project.write_bytes("deps/libdemo_support.so.1", make_elf(soname="libdemo_support.so.1", needed=["libc.so.6"]))
    ext = _extension(project, needed=["libdemo_support.so.1", "libc.so.6"])

    result = build_wheel(BuildRequest(LINUX, (ext,), tmp_path / "dist"), context=_context(project))

    assert result.archive_path is not None
    record_path = "demo_ext-1.2.0.dist-info/RECORD"
    with zipfile.ZipFile(result.archive_path) as zf:
        names = zf.namelist()
        rows = list(csv.reader(io.StringIO(zf.read(record_path).decode("utf-8"))))
        contents = {name: zf.read(name) for name in names}
    assert any(n.startswith("demo_ext.libs/") for n in names)
    assert {row[0] for row in rows} == set(names)
    assert len(rows) == len(names)
    for path, digest, size in rows:
        if path == record_path:
            assert (digest, size) == ("", "")
            continue
        expected = base64.urlsafe_b64encode(hashlib.sha256(contents[path]).digest()).rstrip(b"=").decode("ascii")
        assert digest == f"sha256={expected}"
        assert int(size) == len(contents[path])
    # Members are in path order apart from RECORD, which closes the archive.
    assert names[-1] == record_path
    assert names[:-1] == sorted(names[:-1])


def test_universal2_wheel(project: ProjectBuilder, tmp_path: Path) -> None:
    project.pyproject()
    intel = project.write_bytes(
        "target/x86_64/demo_ext.so",
        make_macho(needed=["/usr/lib/libSystem.B.dylib"], exports=["PyInit_demo_ext"], min_os=(10, 12)),
    )
    arm = project.write_bytes(
        "target/arm64/demo_ext.so",
        make_macho(
            cputype=CPU_TYPE_ARM64, needed=["/usr/lib/libSystem.B.dylib"], exports=["PyInit_demo_ext"], min_os=(11, 0)
        ),
    )

    result = build_wheel(
        BuildRequest("universal2-apple-darwin", (intel, arm), tmp_path / "dist"), context=_context(project)
    )

    assert result.platform_tag == "macosx_10_12_universal2"
    assert result.archive_path is not None
    assert result.archive_path.name == "demo_ext-1.2.0-cp312-cp312-macosx_10_12_universal2.whl"
    with zipfile.ZipFile(result.archive_path) as zf:
        module = inspect_bytes(zf.read("demo_ext/demo_ext.cpython-312-darwin.so"), path=intel)
    assert module.architecture == "universal2"


def test_universal2_tag_follows_intel_slice(project: ProjectBuilder, tmp_path: Path) -> None:
    project.pyproject()
    intel = project.write_bytes(
        "target/x86_64/demo_ext.so",
        make_macho(needed=["/usr/lib/libSystem.B.dylib"], exports=["PyInit_demo_ext"], min_os=(10, 15)),
    )
    arm = project.write_bytes(
        "target/arm64/demo_ext.so",
        make_macho(
            cputype=CPU_TYPE_ARM64, needed=["/usr/lib/libSystem.B.dylib"], exports=["PyInit_demo_ext"], min_os=(12, 0)
        ),
    )

    result = build_wheel(
        BuildRequest("universal2-apple-darwin", (intel, arm), tmp_path / "dist"), context=_context(project)
    )

    assert result.platform_tag == "macosx_10_15_universal2"


def test_failures_do_not_stop_siblings(project: ProjectBuilder, tmp_path: Path) -> None:
    project.pyproject()
    good = _extension(project)
    wrong_name = _extension(project, "target/other.so", exports=["PyInit_other"])
    arm_musl = _extension(project, "target/arm.so", machine=EM_AARCH64, needed=["libc.so"])
    out = tmp_path / "dist"
    requests = [
        BuildRequest(LINUX, (wrong_name,), out),
        BuildRequest(LINUX, (good,), out),
        BuildRequest("aarch64-unknown-linux-musl", (arm_musl,), out),
        BuildRequest("aarch64-unknown-linux-gnu", (good,), out),
    ]

    results = build_wheels(requests, context=_context(project, jobs=2))

    assert [r.request for r in results] == requests
    assert [r.ok for r in results] == [False, True, True, False]
    assert isinstance(results[0].error, NameMismatchError)
    assert results[0].outcome == Outcome.FAIL
    assert results[2].platform_tag == "musllinux_1_1_aarch64"
    assert isinstance(results[3].error, InvalidBinaryError)


def test_malformed_extension_fails_only_its_own_build(project: ProjectBuilder, tmp_path: Path) -> None:
    project.pyproject()
    good = _extension(project)
    stripped = strip_section_headers(make_elf(needed=["libc.so.6"], exports=["PyInit_demo_ext"], hash_table=True))
    broken = project.write_bytes("target/broken/demo_ext.so", set_dynamic_value(stripped, 4, len(stripped) + 0x40))
    out = tmp_path / "dist"
    requests = [BuildRequest(LINUX, (broken,), out), BuildRequest(LINUX, (good,), out)]

    results = build_wheels(requests, context=_context(project, jobs=2))

    assert [r.ok for r in results] == [False, True]
    assert isinstance(results[0].error, InvalidBinaryError)
    assert results[1].archive_path is not None and results[1].archive_path.is_file()


def test_fail_fast_cancels_pending_builds(project: ProjectBuilder, tmp_path: Path) -> None:
    project.pyproject()
    good = _extension(project)
    out = tmp_path / "dist"
    requests = [BuildRequest("sparc-unknown-linux-gnu", (good,), out)] + [
        BuildRequest(LINUX, (good,), out) for _ in range(4)
    ]

    results = build_wheels(requests, context=_context(project, jobs=1, fail_fast=True))

    assert len(results) == 5
    assert isinstance(results[0].error, UnknownTargetError)
    for r in results[1:]:
        assert r.ok is True or (r.cancelled is True and r.outcome is None)


def test_build_sdist(project: ProjectBuilder) -> None:
    project.pyproject()
    project.write({"src/lib.rs": "// native\n", "README.md": "# demo\n"})
    config = load_config(project.path(), env={})

    path = build_sdist(config, out_dir=project.path() / "dist")

    assert path.name == "demo_ext-1.2.0.tar.gz"
    with tarfile.open(fileobj=io.BytesIO(path.read_bytes()), mode="r:gz") as tf:
        names = tf.getnames()
    assert names == [
        "demo_ext-1.2.0/PKG-INFO",
        "demo_ext-1.2.0/README.md",
        "demo_ext-1.2.0/pyproject.toml",
        "demo_ext-1.2.0/src/lib.rs",
    ]
