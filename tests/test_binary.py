"""Tests for wheelwright.binary."""

from __future__ import annotations

from pathlib import Path

import pytest

from tests._fixtures.binaries import CPU_TYPE_ARM64, EM_AARCH64, make_elf, make_macho, make_pe, write_binary
from wheelwright.binary import BinaryFormat, check_architecture, detect_format, inspect_binary, inspect_bytes
from wheelwright.errors import InvalidBinaryError
from wheelwright.macho import merge_fat
from wheelwright.target import Target

LINUX_X86_64 = Target(arch="x86_64", os="linux", abi="gnu")
MACOS_UNIVERSAL = Target(arch="universal2", os="macos", abi="")


def test_detect_format() -> None:
    assert detect_format(make_elf()) == BinaryFormat.ELF
    assert detect_format(make_macho()) == BinaryFormat.MACHO
    assert detect_format(make_pe()) == BinaryFormat.PE
    assert detect_format(b"#!/bin/sh\n") is None


def test_inspect_elf_artifact(tmp_path: Path) -> None:
    path = write_binary(
        tmp_path / "demo.so",
        make_elf(needed=["libfoo.so.1"], rpath="/opt/lib", exports=["PyInit_demo", "PyInit_other"]),
    )

    artifact = inspect_binary(path)

    assert artifact.path == path
    assert artifact.format == BinaryFormat.ELF
    assert artifact.architecture == "x86_64"
    assert artifact.is_fat is False
    assert artifact.needed_libraries == ("libfoo.so.1",)
    assert artifact.rpaths == ("/opt/lib",)
    assert artifact.compat_key == "elf64-le-62"
    assert artifact.entry_modules() == ("demo", "other")
    assert artifact.has_entry_symbol("demo") is True
    assert artifact.has_entry_symbol("missing") is False


def test_inspect_missing_file(tmp_path: Path) -> None:
    with pytest.raises(InvalidBinaryError, match="Cannot read file"):
        inspect_binary(tmp_path / "nope.so")


def test_inspect_rejects_unknown_format(tmp_path: Path) -> None:
    path = tmp_path / "demo.so"

    with pytest.raises(InvalidBinaryError, match="Unrecognized binary header") as excinfo:
        inspect_bytes(b"\x00" * 128, path=path)

    assert excinfo.value.path == path
    assert str(excinfo.value).startswith(str(path))


def test_fat_macho_reports_universal2(tmp_path: Path) -> None:
    fat = merge_fat(
        [
            make_macho(exports=["PyInit_demo", "only_intel"], min_os=(10, 12)),
            make_macho(cputype=CPU_TYPE_ARM64, exports=["PyInit_demo"], min_os=(11, 0)),
        ]
    )

    artifact = inspect_bytes(fat, path=tmp_path / "demo.so")

    assert artifact.architecture == "universal2"
    assert artifact.is_fat is True
    assert artifact.min_os_version == (11, 0)
    assert artifact.min_os_for("universal2") == (10, 12)
    assert artifact.min_os_for("aarch64") == (11, 0)
    # Only symbols common to every slice count.
    assert artifact.exported_symbols == frozenset({"PyInit_demo"})
    check_architecture(artifact, MACOS_UNIVERSAL)


def test_check_architecture_rejects_wrong_os(tmp_path: Path) -> None:
    artifact = inspect_bytes(make_macho(), path=tmp_path / "demo.so")

    with pytest.raises(InvalidBinaryError, match="binary cannot target linux"):
        check_architecture(artifact, LINUX_X86_64)


def test_check_architecture_rejects_wrong_arch(tmp_path: Path) -> None:
    artifact = inspect_bytes(make_elf(machine=EM_AARCH64), path=tmp_path / "demo.so")

    with pytest.raises(InvalidBinaryError, match="does not match target x86_64"):
        check_architecture(artifact, LINUX_X86_64)


def test_universal_target_needs_both_slices(tmp_path: Path) -> None:
    artifact = inspect_bytes(make_macho(), path=tmp_path / "demo.so")

    with pytest.raises(InvalidBinaryError, match="universal2 target needs slices"):
        check_architecture(artifact, MACOS_UNIVERSAL)


def test_can_satisfy_requires_matching_loader(tmp_path: Path) -> None:
    root = inspect_bytes(make_elf(needed=["libfoo.so.1"]), path=tmp_path / "demo.so")
    same = inspect_bytes(make_elf(soname="libfoo.so.1"), path=tmp_path / "a" / "libfoo.so.1")
    other = inspect_bytes(make_elf(machine=EM_AARCH64, soname="libfoo.so.1"), path=tmp_path / "b" / "libfoo.so.1")
    dylib = inspect_bytes(make_macho(), path=tmp_path / "libfoo.dylib")

    assert same.can_satisfy(root) is True
    assert other.can_satisfy(root) is False
    assert dylib.can_satisfy(root) is False
