"""Compiled-artifact inspection.

:func:`inspect_binary` detects the native format of a shared library
(ELF, Mach-O or PE) and returns a read-only :class:`BinaryArtifact`. All
three formats share one interface: ``architecture``, ``needed_libraries``,
``install_name``, :meth:`BinaryArtifact.has_entry_symbol` and
:func:`patch_references`.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
import enum
import pathlib
import struct
import types

from wheelwright import elf, macho, pe
from wheelwright.errors import InvalidBinaryError
from wheelwright.target import Target


class BinaryFormat(enum.Enum):
    ELF = "elf"
    MACHO = "macho"
    PE = "pe"


_FORMAT_OS: dict[BinaryFormat, str] = {
    BinaryFormat.ELF: "linux",
    BinaryFormat.MACHO: "macos",
    BinaryFormat.PE: "windows",
}

ENTRY_SYMBOL_PREFIX: str = "PyInit_"


@dataclass(frozen=True, slots=True)
class BinaryArtifact:
    """Read-only view over a compiled shared library.

    :ivar path: File the artifact was read from.
    :ivar format: Detected native format.
    :ivar architectures: Architectures present (several for fat Mach-O).
    :ivar needed_libraries: Referenced library names in load order.
    :ivar install_name: ``DT_SONAME``, ``LC_ID_DYLIB`` or the PE export name.
    :ivar rpaths: ELF ``DT_RPATH`` or Mach-O ``LC_RPATH`` entries.
    :ivar runpaths: ELF ``DT_RUNPATH`` entries.
    :ivar exported_symbols: Exported symbol names.
    :ivar version_requirements: ELF library -> required symbol versions.
    :ivar min_os_version: Mach-O minimum macOS version (highest over slices).
    :ivar slice_min_os: Mach-O architecture -> that slice's minimum macOS version.
    :ivar has_code_signature: Mach-O image carries ``LC_CODE_SIGNATURE``.
    :ivar compat_key: Identifies which loaders may load the file (ELF class,
        byte order and machine; PE machine).
    """

    path: pathlib.Path
    format: BinaryFormat
    architectures: tuple[str, ...]
    needed_libraries: tuple[str, ...]
    install_name: str | None
    rpaths: tuple[str, ...] = ()
    runpaths: tuple[str, ...] = ()
    exported_symbols: frozenset[str] = frozenset()
    version_requirements: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: types.MappingProxyType({})
    )
    min_os_version: tuple[int, int] | None = None
    slice_min_os: Mapping[str, tuple[int, int]] = field(default_factory=lambda: types.MappingProxyType({}))
    has_code_signature: bool = False
    compat_key: str = ""

    @property
    def architecture(self) -> str:
        """Single architecture name; ``universal2`` for an x86_64 + arm64 fat image."""

        if set(self.architectures) == {"x86_64", "aarch64"}:
            return "universal2"
        return self.architectures[0]

    @property
    def is_fat(self) -> bool:
        return len(self.architectures) > 1

    def min_os_for(self, arch: str) -> tuple[int, int] | None:
        """Minimum macOS version that governs a wheel tagged for ``arch``.

        Intel hosts check a ``universal2`` tag against the x86_64 slice, and
        arm64 hosts start at macOS 11, so the x86_64 slice decides that tag.

        :param arch: Target architecture, ``universal2`` included.
        :returns: The version, or ``None`` if the relevant slice declares none.
        """

        key: str = "x86_64" if arch == "universal2" else arch
        if key in self.architectures:
            return self.slice_min_os.get(key)
        return self.min_os_version

    def has_entry_symbol(self, module_name: str | None = None) -> bool:
        """Check for the extension-module init symbol.

        :param module_name: Last component of the import name; ``None`` accepts any ``PyInit_*``.
        :returns: ``True`` if the symbol is exported.
        """

        if module_name is not None:
            return f"{ENTRY_SYMBOL_PREFIX}{module_name}" in self.exported_symbols
        return len(self.entry_modules()) > 0

    def entry_modules(self) -> tuple[str, ...]:
        """Module names that have a ``PyInit_<name>`` export, sorted."""

        names: list[str] = []
        for sym in self.exported_symbols:
            if sym.startswith(ENTRY_SYMBOL_PREFIX) is True and len(sym) > len(ENTRY_SYMBOL_PREFIX):
                names.append(sym[len(ENTRY_SYMBOL_PREFIX) :])
        return tuple(sorted(names))

    def can_satisfy(self, referrer: "BinaryArtifact") -> bool:
        """Whether the loader of ``referrer`` would accept this file as a dependency."""

        if self.format != referrer.format:
            return False
        if self.format == BinaryFormat.MACHO:
            return len(set(self.architectures) & set(referrer.architectures)) > 0
        return self.compat_key == referrer.compat_key


def detect_format(data: bytes) -> BinaryFormat | None:
    if elf.is_elf(data) is True:
        return BinaryFormat.ELF
    if macho.is_macho(data) is True:
        return BinaryFormat.MACHO
    if pe.is_pe(data) is True:
        return BinaryFormat.PE
    return None


def inspect_binary(path: pathlib.Path) -> BinaryArtifact:
    """Read and parse a compiled artifact.

    :param path: Shared library path.
    :returns: Read-only artifact view.
    :raises InvalidBinaryError: If the file cannot be read or is not a supported format.
    """

    try:
        data: bytes = path.read_bytes()
    except OSError as e:
        raise InvalidBinaryError(f"Cannot read file: {e}", path=path) from e
    return inspect_bytes(data, path=path)


def inspect_bytes(data: bytes, *, path: pathlib.Path) -> BinaryArtifact:
    """Parse artifact bytes already in memory (``path`` is used for reporting).

    :param data: File bytes.
    :param path: Path the bytes belong to.
    :returns: Read-only artifact view.
    :raises InvalidBinaryError: If the format is unrecognized or malformed.
    """

    fmt: BinaryFormat | None = detect_format(data)
    if fmt is None:
        raise InvalidBinaryError("Unrecognized binary header (expected ELF, Mach-O or PE)", path=path)

    try:
        if fmt == BinaryFormat.ELF:
            return _from_elf(elf.parse_elf(data), path=path)
        if fmt == BinaryFormat.MACHO:
            return _from_macho(macho.parse_macho(data), path=path)
        return _from_pe(pe.parse_pe(data), path=path)
    except InvalidBinaryError as e:
        if e.path is not None:
            raise
        raise InvalidBinaryError(str(e), path=path) from e
    except struct.error as e:
        raise InvalidBinaryError(f"Truncated {fmt.value} image: {e}", path=path) from e


def check_architecture(artifact: BinaryArtifact, target: Target) -> None:
    """Ensure an artifact can run on ``target``.

    :param artifact: Inspected artifact.
    :param target: Resolved target.
    :raises InvalidBinaryError: If the format or architecture does not match.
    """

    expected_os: str = _FORMAT_OS[artifact.format]
    if expected_os != target.os:
        raise InvalidBinaryError(
            f"{artifact.format.value.upper()} binary cannot target {target.os}",
            path=artifact.path,
        )

    if target.is_universal is True:
        missing: list[str] = [a for a in target.universal_archs if a not in artifact.architectures]
        if len(missing) > 0:
            raise InvalidBinaryError(
                f"universal2 target needs slices {', '.join(target.universal_archs)}; "
                f"binary has {', '.join(artifact.architectures)}",
                path=artifact.path,
            )
        return

    if _arch_matches(artifact, target.arch) is False:
        raise InvalidBinaryError(
            f"Binary architecture {'/'.join(artifact.architectures)} does not match target {target.arch}",
            path=artifact.path,
        )


def patch_references(
    data: bytes,
    fmt: BinaryFormat,
    *,
    replace: Mapping[str, str] | None = None,
    install_name: str | None = None,
    runpath: tuple[str, ...] | None = None,
    add_rpaths: tuple[str, ...] = (),
    remove_rpaths: tuple[str, ...] = (),
) -> bytes:
    """Return patched bytes with dependency references rewritten.

    ``runpath`` applies to ELF only, ``add_rpaths``/``remove_rpaths`` to
    Mach-O only; PE images have no install name or search path to rewrite.

    :param data: Original bytes (not modified).
    :param fmt: Format of ``data``.
    :param replace: Old reference -> new reference.
    :param install_name: New SONAME / ``LC_ID_DYLIB``.
    :param runpath: New ELF ``DT_RUNPATH``.
    :param add_rpaths: Mach-O ``LC_RPATH`` entries to add.
    :param remove_rpaths: Mach-O ``LC_RPATH`` entries to remove.
    :returns: Patched bytes.
    :raises InvalidBinaryError: If the image cannot hold the new references.
    """

    mapping: Mapping[str, str] = replace if replace is not None else {}
    if fmt == BinaryFormat.ELF:
        return elf.rewrite_elf(data, replace_needed=mapping, soname=install_name, runpath=runpath)
    if fmt == BinaryFormat.MACHO:
        return macho.rewrite_macho(
            data,
            replace_needed=mapping,
            install_name=install_name,
            add_rpaths=add_rpaths,
            remove_rpaths=remove_rpaths,
        )
    return pe.rewrite_pe(data, replace_needed=mapping)


def _arch_matches(artifact: BinaryArtifact, arch: str) -> bool:
    if arch in artifact.architectures:
        return True
    # Generic 32-bit ARM Mach-O/PE names.
    if arch == "armv7l" and "armv7" in artifact.architectures:
        return True
    return False


def _from_elf(info: elf.ElfInfo, *, path: pathlib.Path) -> BinaryArtifact:
    order: str = "le" if info.little_endian is True else "be"
    return BinaryArtifact(
        path=path,
        format=BinaryFormat.ELF,
        architectures=(info.arch,),
        needed_libraries=info.needed,
        install_name=info.soname,
        rpaths=info.rpath,
        runpaths=info.runpath,
        exported_symbols=info.exported_symbols,
        version_requirements=info.version_requirements,
        compat_key=f"elf{info.elfclass}-{order}-{info.machine}",
    )


def _from_macho(info: macho.MachOInfo, *, path: pathlib.Path) -> BinaryArtifact:
    needed: list[str] = []
    rpaths: list[str] = []
    install_name: str | None = None
    min_os: tuple[int, int] | None = None
    signed: bool = False
    slice_min_os: dict[str, tuple[int, int]] = {}
    exported: frozenset[str] | None = None
    for s in info.slices:
        for name in s.needed:
            if name not in needed:
                needed.append(name)
        for rpath in s.rpaths:
            if rpath not in rpaths:
                rpaths.append(rpath)
        if install_name is None:
            install_name = s.install_name
        if s.min_os is not None and (min_os is None or s.min_os > min_os):
            min_os = s.min_os
        if s.min_os is not None:
            slice_min_os[s.arch] = s.min_os
        signed = signed or s.has_code_signature
        # A symbol only counts as exported if every slice exports it.
        exported = s.exported_symbols if exported is None else exported & s.exported_symbols
    return BinaryArtifact(
        path=path,
        format=BinaryFormat.MACHO,
        architectures=tuple(s.arch for s in info.slices),
        needed_libraries=tuple(needed),
        install_name=install_name,
        rpaths=tuple(rpaths),
        exported_symbols=exported if exported is not None else frozenset(),
        min_os_version=min_os,
        slice_min_os=types.MappingProxyType(slice_min_os),
        has_code_signature=signed,
        compat_key="macho-" + "+".join(str(s.cputype) for s in info.slices),
    )


def _from_pe(info: pe.PeInfo, *, path: pathlib.Path) -> BinaryArtifact:
    return BinaryArtifact(
        path=path,
        format=BinaryFormat.PE,
        architectures=(info.arch,),
        needed_libraries=info.needed,
        install_name=info.dll_name,
        exported_symbols=info.exported_symbols,
        compat_key=f"pe-{info.machine}",
    )
