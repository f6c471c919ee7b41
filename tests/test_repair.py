"""Tests for wheelwright.repair."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from tests._fixtures.binaries import make_elf, make_macho, make_pe, write_binary
from wheelwright.binary import inspect_binary, inspect_bytes
from wheelwright.errors import PolicyViolationError
from wheelwright.policy import PolicySet
from wheelwright.repair import Classification, Outcome, build_dependency_graph, hashed_library_name, repair
from wheelwright.search import LibrarySearcher
from wheelwright.target import ResolvedTarget, resolve_target

LIBS_DIR = "demo_ext.libs"
MODULE_DIR = "demo_ext"


def _linux(policies: PolicySet) -> ResolvedTarget:
    return resolve_target("x86_64-unknown-linux-gnu", policies=policies)


def _searcher(resolved: ResolvedTarget, *extra: Path) -> LibrarySearcher:
    return LibrarySearcher(target=resolved.target, extra_paths=extra, env={}, system_paths=())


def _repair(path: Path, resolved: ResolvedTarget, policies: PolicySet, *extra: Path):
    return repair(
        inspect_binary(path),
        resolved=resolved,
        policies=policies,
        searcher=_searcher(resolved, *extra),
        libs_dir=LIBS_DIR,
        module_dir=MODULE_DIR,
    )


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("libfoo.so.1", "libfoo-0123abcd.so.1"),
        ("libfoo.1.dylib", "libfoo-0123abcd.1.dylib"),
        ("foo.dll", "foo-0123abcd.dll"),
        ("libfoo", "libfoo-0123abcd"),
    ],
)
def test_hashed_library_name(name: str, expected: str) -> None:
    assert hashed_library_name(name, "0123abcdef" * 4) == expected


def test_only_system_libraries_pass_oldest_policy(tmp_path: Path, policies: PolicySet) -> None:
    path = write_binary(
        tmp_path / "demo.so",
        make_elf(needed=["libc.so.6", "libm.so.6"], exports=["PyInit_demo"]),
    )
    before = path.read_bytes()

    result = _repair(path, _linux(policies), policies)

    assert result.outcome == Outcome.PASS
    assert result.platform_tag == "manylinux_2_5_x86_64"
    assert result.bundled == ()
    assert result.root_content == before
    classes = {n.name: n.classification for n in result.report.nodes.values()}
    assert classes == {"libc.so.6": Classification.ALWAYS_PRESENT, "libm.so.6": Classification.ALWAYS_PRESENT}


def test_symbol_versions_pick_the_first_satisfied_policy(tmp_path: Path, policies: PolicySet) -> None:
    path = write_binary(
        tmp_path / "demo.so",
        make_elf(needed=["libc.so.6"], version_requirements={"libc.so.6": ["GLIBC_2.2.5", "GLIBC_2.28"]}),
    )

    result = _repair(path, _linux(policies), policies)

    assert result.platform_tag == "manylinux_2_28_x86_64"


def test_too_new_symbol_version_fails(tmp_path: Path, policies: PolicySet) -> None:
    path = write_binary(
        tmp_path / "demo.so",
        make_elf(needed=["libc.so.6"], version_requirements={"libc.so.6": ["GLIBC_2.99"]}),
    )

    with pytest.raises(PolicyViolationError) as excinfo:
        _repair(path, _linux(policies), policies)

    (violation,) = excinfo.value.violations
    assert excinfo.value.policy == "manylinux_2_34"
    assert violation.required == "GLIBC_2.99"
    assert violation.allowed == "GLIBC_2.34"


def test_libpython_is_denied(tmp_path: Path, policies: PolicySet) -> None:
    path = write_binary(tmp_path / "demo.so", make_elf(needed=["libpython3.12.so.1.0", "libc.so.6"]))

    with pytest.raises(PolicyViolationError, match="libpython3.12.so.1.0") as excinfo:
        _repair(path, _linux(policies), policies)

    assert [v.library for v in excinfo.value.violations] == ["libpython3.12.so.1.0"]


def test_unresolved_library_is_denied(tmp_path: Path, policies: PolicySet) -> None:
    path = write_binary(tmp_path / "demo.so", make_elf(needed=["libmissing.so.2"]))

    with pytest.raises(PolicyViolationError, match="not found"):
        _repair(path, _linux(policies), policies)


def test_external_library_is_bundled_and_references_patched(tmp_path: Path, policies: PolicySet) -> None:
    path = write_binary(
        tmp_path / "build" / "demo.so",
        make_elf(needed=["libfoo.so.1", "libc.so.6"], exports=["PyInit_demo"]),
    )
    lib_bytes = make_elf(soname="libfoo.so.1", needed=["libc.so.6"], rpath="/opt/foo/lib")
    lib = write_binary(tmp_path / "deps" / "libfoo.so.1", lib_bytes)
    root_before = path.read_bytes()

    result = _repair(path, _linux(policies), policies, tmp_path / "deps")

    digest = hashlib.sha256(lib_bytes).hexdigest()
    new_name = f"libfoo-{digest[:8]}.so.1"
    assert result.outcome == Outcome.PASS_WITH_BUNDLED
    assert result.platform_tag == "manylinux_2_5_x86_64"
    (bundled,) = result.bundled
    assert bundled.archive_path == f"{LIBS_DIR}/{new_name}"
    assert bundled.source == lib.resolve()
    assert bundled.sha256 == digest

    root = inspect_bytes(result.root_content, path=path)
    assert root.needed_libraries == (new_name, "libc.so.6")
    assert root.runpaths == ("$ORIGIN/../demo_ext.libs",)

    copied = inspect_bytes(bundled.content, path=Path(new_name))
    assert copied.install_name == new_name
    assert copied.runpaths == ("$ORIGIN",)
    assert copied.rpaths == ()

    assert f"bundled libfoo.so.1 as {LIBS_DIR}/{new_name}" in result.warnings
    # The build tree is never modified.
    assert path.read_bytes() == root_before
    assert lib.read_bytes() == lib_bytes


def test_diamond_dependency_is_bundled_once(tmp_path: Path, policies: PolicySet) -> None:
    deps = tmp_path / "deps"
    path = write_binary(tmp_path / "demo.so", make_elf(needed=["liba.so", "libb.so"]))
    write_binary(deps / "liba.so", make_elf(soname="liba.so", needed=["libshared.so"]))
    write_binary(deps / "libb.so", make_elf(soname="libb.so", needed=["libshared.so"]))
    write_binary(deps / "libshared.so", make_elf(soname="libshared.so"))

    result = _repair(path, _linux(policies), policies, deps)

    names = [Path(b.archive_path).name for b in result.bundled]
    assert len(names) == 3
    shared = next(n for n in names if n.startswith("libshared-"))
    for b in result.bundled:
        if Path(b.archive_path).name.startswith(("liba-", "libb-")):
            assert inspect_bytes(b.content, path=Path(b.archive_path)).needed_libraries == (shared,)


def test_identical_content_is_deduplicated(tmp_path: Path, policies: PolicySet) -> None:
    deps = tmp_path / "deps"
    same = make_elf(exports=["shared_symbol"])
    path = write_binary(tmp_path / "demo.so", make_elf(needed=["libx.so.1", "liby.so.1"]))
    write_binary(deps / "libx.so.1", same)
    write_binary(deps / "liby.so.1", same)

    result = _repair(path, _linux(policies), policies, deps)

    (bundled,) = result.bundled
    new_name = Path(bundled.archive_path).name
    assert new_name.startswith("libx-")
    root = inspect_bytes(result.root_content, path=path)
    assert root.needed_libraries == (new_name, new_name)


def test_dependency_cycle_terminates(tmp_path: Path, policies: PolicySet) -> None:
    deps = tmp_path / "deps"
    path = write_binary(tmp_path / "demo.so", make_elf(needed=["liba.so"]))
    write_binary(deps / "liba.so", make_elf(soname="liba.so", needed=["libb.so"]))
    write_binary(deps / "libb.so", make_elf(soname="libb.so", needed=["liba.so"]))
    root = inspect_binary(path)
    resolved = _linux(policies)

    graph = build_dependency_graph(root, searcher=_searcher(resolved, deps))
    result = _repair(path, resolved, policies, deps)

    assert len(graph.nodes) == 3
    liba = graph.nodes[str((deps / "liba.so").resolve())]
    assert sorted(liba.referrers) == sorted([graph.root_key, str((deps / "libb.so").resolve())])
    assert len(result.bundled) == 2


def test_macos_repair_uses_loader_path(tmp_path: Path, policies: PolicySet) -> None:
    deps = tmp_path / "deps"
    path = write_binary(
        tmp_path / "demo.so",
        make_macho(
            needed=["/opt/homebrew/lib/libfoo.dylib", "/usr/lib/libSystem.B.dylib"],
            exports=["PyInit_demo"],
            min_os=(11, 0),
        ),
    )
    write_binary(deps / "libfoo.dylib", make_macho(install_name="/opt/homebrew/lib/libfoo.dylib", min_os=(10, 15)))
    resolved = resolve_target("x86_64-apple-darwin", policies=policies)

    result = _repair(path, resolved, policies, deps)

    (bundled,) = result.bundled
    new_name = Path(bundled.archive_path).name
    assert result.platform_tag == "macosx_11_0_x86_64"
    root = inspect_bytes(result.root_content, path=path)
    assert root.needed_libraries == (f"@loader_path/../demo_ext.libs/{new_name}", "/usr/lib/libSystem.B.dylib")
    assert inspect_bytes(bundled.content, path=Path(new_name)).install_name == f"@rpath/{new_name}"


def test_windows_repair_bundles_dll(tmp_path: Path, policies: PolicySet) -> None:
    path = write_binary(tmp_path / "demo.pyd", make_pe(needed=["foo.dll", "KERNEL32.dll"], exports=["PyInit_demo"]))
    write_binary(tmp_path / "foo.dll", make_pe(dll_name="foo.dll"))
    resolved = resolve_target("x86_64-pc-windows-msvc", policies=policies)

    result = _repair(path, resolved, policies)

    (bundled,) = result.bundled
    new_name = Path(bundled.archive_path).name
    assert result.platform_tag == "win_amd64"
    assert new_name.startswith("foo-")
    assert inspect_bytes(result.root_content, path=path).needed_libraries == (new_name, "KERNEL32.dll")
