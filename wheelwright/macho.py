"""Mach-O (thin and fat) parsing, load-command rewriting and fat merging.

Rewrites never move code or data: the load-command region is rebuilt in
the padding between the commands and the first section. Images linked
without enough header padding are rejected. Any code signature is left
stale; callers should warn so the user re-signs.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import struct

from wheelwright.errors import InvalidBinaryError


MH_MAGIC: int = 0xFEEDFACE
MH_MAGIC_64: int = 0xFEEDFACF
MH_CIGAM: int = 0xCEFAEDFE
MH_CIGAM_64: int = 0xCFFAEDFE
FAT_MAGIC: int = 0xCAFEBABE
FAT_MAGIC_64: int = 0xCAFEBABF

LC_SEGMENT: int = 0x1
LC_SYMTAB: int = 0x2
LC_LOAD_DYLIB: int = 0xC
LC_ID_DYLIB: int = 0xD
LC_SEGMENT_64: int = 0x19
LC_CODE_SIGNATURE: int = 0x1D
LC_LAZY_LOAD_DYLIB: int = 0x20
LC_VERSION_MIN_MACOSX: int = 0x24
LC_BUILD_VERSION: int = 0x32
LC_LOAD_WEAK_DYLIB: int = 0x80000018
LC_RPATH: int = 0x8000001C
LC_REEXPORT_DYLIB: int = 0x8000001F
LC_LOAD_UPWARD_DYLIB: int = 0x80000023

DYLIB_LOAD_COMMANDS: frozenset[int] = frozenset(
    {LC_LOAD_DYLIB, LC_LOAD_WEAK_DYLIB, LC_REEXPORT_DYLIB, LC_LAZY_LOAD_DYLIB, LC_LOAD_UPWARD_DYLIB}
)

CPU_TYPE_X86: int = 7
CPU_TYPE_X86_64: int = 0x01000007
CPU_TYPE_ARM: int = 12
CPU_TYPE_ARM64: int = 0x0100000C
CPU_TYPE_POWERPC: int = 18
CPU_TYPE_POWERPC64: int = 0x01000012

_CPU_ARCHS: dict[int, str] = {
    CPU_TYPE_X86: "i686",
    CPU_TYPE_X86_64: "x86_64",
    CPU_TYPE_ARM: "armv7",
    CPU_TYPE_ARM64: "aarch64",
    CPU_TYPE_POWERPC: "ppc",
    CPU_TYPE_POWERPC64: "ppc64",
}

# Fat slice alignment (log2) per CPU, matching what lipo produces.
_FAT_ALIGN: dict[int, int] = {
    CPU_TYPE_ARM64: 14,
    CPU_TYPE_ARM: 14,
}
_DEFAULT_FAT_ALIGN: int = 12

_PLATFORM_MACOS: int = 1

N_STAB: int = 0xE0
N_TYPE: int = 0x0E
N_SECT: int = 0x0E
N_EXT: int = 0x01


@dataclass(frozen=True, slots=True)
class MachOSlice:
    """One architecture slice.

    :ivar arch: Normalized architecture name (``x86_64``, ``aarch64``...).
    :ivar cputype: Raw CPU type.
    :ivar cpusubtype: Raw CPU subtype.
    :ivar offset: Slice offset in the file (0 for thin images).
    :ivar size: Slice size in bytes.
    :ivar needed: Install names of linked dylibs, in load-command order.
    :ivar install_name: ``LC_ID_DYLIB`` name, if any.
    :ivar rpaths: ``LC_RPATH`` entries.
    :ivar exported_symbols: External defined symbols without the leading underscore.
    :ivar min_os: Minimum macOS version from ``LC_BUILD_VERSION``/``LC_VERSION_MIN_MACOSX``.
    :ivar has_code_signature: Whether ``LC_CODE_SIGNATURE`` is present.
    """

    arch: str
    cputype: int
    cpusubtype: int
    offset: int
    size: int
    needed: tuple[str, ...]
    install_name: str | None
    rpaths: tuple[str, ...]
    exported_symbols: frozenset[str]
    min_os: tuple[int, int] | None
    has_code_signature: bool


@dataclass(frozen=True, slots=True)
class MachOInfo:
    """A thin or fat Mach-O file."""

    fat: bool
    slices: tuple[MachOSlice, ...]


@dataclass(slots=True)
class _LoadCommand:
    cmd: int
    raw: bytes


@dataclass(slots=True)
class _Thin:
    endian: str
    is64: bool
    header: list[int]
    header_size: int
    commands: list[_LoadCommand]
    payload_limit: int


def is_macho(data: bytes) -> bool:
    if len(data) < 8:
        return False
    magic_le: int = struct.unpack_from("<I", data, 0)[0]
    if magic_le in (MH_MAGIC, MH_MAGIC_64, MH_CIGAM, MH_CIGAM_64):
        return True
    return _is_fat(data)


def _is_fat(data: bytes) -> bool:
    if len(data) < 8:
        return False
    magic_be, nfat = struct.unpack_from(">II", data, 0)
    # Java class files share 0xcafebabe; their version field is always >= 45.
    return magic_be in (FAT_MAGIC, FAT_MAGIC_64) and 0 < nfat < 32


def parse_macho(data: bytes) -> MachOInfo:
    """Parse a thin or fat Mach-O image.

    :param data: File bytes.
    :returns: Per-slice linking metadata.
    :raises InvalidBinaryError: If the image is malformed.
    """

    if is_macho(data) is False:
        raise InvalidBinaryError("Not a Mach-O image")

    if _is_fat(data) is True:
        slices: list[MachOSlice] = []
        for cputype, _sub, offset, size, _align in _fat_arches(data):
            if offset + size > len(data):
                raise InvalidBinaryError("Fat Mach-O slice extends past end of file")
            slices.append(_parse_thin(data[offset : offset + size], offset=offset))
            if slices[-1].cputype != cputype:
                raise InvalidBinaryError("Fat Mach-O header CPU type disagrees with slice header")
        return MachOInfo(fat=True, slices=tuple(slices))

    return MachOInfo(fat=False, slices=(_parse_thin(data, offset=0),))


def rewrite_macho(
    data: bytes,
    *,
    replace_needed: Mapping[str, str] | None = None,
    install_name: str | None = None,
    add_rpaths: tuple[str, ...] = (),
    remove_rpaths: tuple[str, ...] = (),
) -> bytes:
    """Return a copy of ``data`` with rewritten load commands.

    :param data: Thin or fat image (not modified).
    :param replace_needed: Old install name -> new install name for dylib load commands.
    :param install_name: New ``LC_ID_DYLIB`` name (only applied when the command exists).
    :param add_rpaths: ``LC_RPATH`` entries to append when missing.
    :param remove_rpaths: ``LC_RPATH`` entries to drop.
    :returns: Patched image bytes; fat slices keep their offsets and sizes.
    :raises InvalidBinaryError: If a slice lacks the header padding the new commands need.
    """

    replace: Mapping[str, str] = replace_needed if replace_needed is not None else {}

    if _is_fat(data) is True:
        out: bytearray = bytearray(data)
        for _cputype, _sub, offset, size, _align in _fat_arches(data):
            patched: bytes = _rewrite_thin(
                data[offset : offset + size],
                replace=replace,
                install_name=install_name,
                add_rpaths=add_rpaths,
                remove_rpaths=remove_rpaths,
            )
            out[offset : offset + size] = patched
        return bytes(out)

    return _rewrite_thin(
        data,
        replace=replace,
        install_name=install_name,
        add_rpaths=add_rpaths,
        remove_rpaths=remove_rpaths,
    )


def merge_fat(images: list[bytes]) -> bytes:
    """Combine thin images into one fat (universal) image.

    Slices are ordered by CPU type and aligned the way ``lipo`` aligns them.

    :param images: Thin Mach-O images, one per architecture.
    :returns: Fat image bytes.
    :raises InvalidBinaryError: If an input is not thin or two inputs share a CPU type.
    """

    thin: list[tuple[int, int, bytes]] = []
    for image in images:
        if is_macho(image) is False or _is_fat(image) is True:
            raise InvalidBinaryError("Only thin Mach-O images can be merged")
        t: _Thin = _load_thin(image)
        thin.append((t.header[1], t.header[2], image))
    thin.sort(key=lambda item: item[0] & 0xFFFFFFFF)

    seen: set[int] = set()
    for cputype, _sub, _image in thin:
        if cputype in seen:
            raise InvalidBinaryError(f"Duplicate CPU type {cputype:#x} in merge inputs")
        seen.add(cputype)

    header_size: int = 8 + 20 * len(thin)
    arch_entries: list[bytes] = []
    placed: list[tuple[int, bytes]] = []
    cursor: int = header_size
    for cputype, cpusubtype, image in thin:
        align: int = _FAT_ALIGN.get(cputype, _DEFAULT_FAT_ALIGN)
        offset: int = _align(cursor, 1 << align)
        arch_entries.append(struct.pack(">iiIII", cputype, cpusubtype, offset, len(image), align))
        placed.append((offset, image))
        cursor = offset + len(image)

    out: bytearray = bytearray(struct.pack(">II", FAT_MAGIC, len(thin)))
    for entry in arch_entries:
        out.extend(entry)
    for offset, image in placed:
        out.extend(b"\x00" * (offset - len(out)))
        out.extend(image)
    return bytes(out)


def thin_slice(data: bytes, arch: str) -> bytes:
    """Extract the slice for ``arch`` from a fat image (or return a matching thin image)."""

    if _is_fat(data) is False:
        info: MachOInfo = parse_macho(data)
        if info.slices[0].arch != arch:
            raise InvalidBinaryError(f"Mach-O image is {info.slices[0].arch}, not {arch}")
        return data
    for cputype, _sub, offset, size, _align in _fat_arches(data):
        if _CPU_ARCHS.get(cputype) == arch:
            return data[offset : offset + size]
    raise InvalidBinaryError(f"Fat Mach-O image has no {arch} slice")


def _fat_arches(data: bytes) -> list[tuple[int, int, int, int, int]]:
    magic, nfat = struct.unpack_from(">II", data, 0)
    arches: list[tuple[int, int, int, int, int]] = []
    try:
        pos: int = 8
        for _ in range(nfat):
            if magic == FAT_MAGIC_64:
                cputype, cpusubtype, offset, size, align, _reserved = struct.unpack_from(">iiQQII", data, pos)
                pos += 32
            else:
                cputype, cpusubtype, offset, size, align = struct.unpack_from(">iiIII", data, pos)
                pos += 20
            arches.append((cputype, cpusubtype, offset, size, align))
    except struct.error as e:
        raise InvalidBinaryError(f"Truncated fat Mach-O header: {e}") from e
    return arches


def _load_thin(data: bytes) -> _Thin:
    if len(data) < 28:
        raise InvalidBinaryError("Truncated Mach-O header")
    magic_le: int = struct.unpack_from("<I", data, 0)[0]
    endian: str
    is64: bool
    if magic_le in (MH_MAGIC, MH_MAGIC_64):
        endian = "<"
        is64 = magic_le == MH_MAGIC_64
    elif magic_le in (MH_CIGAM, MH_CIGAM_64):
        endian = ">"
        is64 = magic_le == MH_CIGAM_64
    else:
        raise InvalidBinaryError("Not a thin Mach-O image")

    header_fmt: str = endian + ("IiiIIIII" if is64 is True else "IiiIIII")
    header_size: int = struct.calcsize(header_fmt)
    try:
        header: list[int] = list(struct.unpack_from(header_fmt, data, 0))
    except struct.error as e:
        raise InvalidBinaryError(f"Truncated Mach-O header: {e}") from e
    ncmds: int = header[4]
    sizeofcmds: int = header[5]
    if header_size + sizeofcmds > len(data):
        raise InvalidBinaryError("Mach-O load commands extend past end of image")

    commands: list[_LoadCommand] = []
    limit: int = len(data)
    try:
        pos: int = header_size
        for _ in range(ncmds):
            cmd, cmdsize = struct.unpack_from(endian + "II", data, pos)
            if cmdsize < 8 or pos + cmdsize > header_size + sizeofcmds:
                raise InvalidBinaryError(f"Malformed Mach-O load command {cmd:#x} (cmdsize={cmdsize})")
            commands.append(_LoadCommand(cmd=cmd, raw=data[pos : pos + cmdsize]))
            pos += cmdsize
        for c in commands:
            for off in _payload_offsets(c, endian=endian):
                if off > 0 and off < limit:
                    limit = off
    except struct.error as e:
        raise InvalidBinaryError(f"Truncated Mach-O load commands: {e}") from e

    return _Thin(
        endian=endian,
        is64=is64,
        header=header,
        header_size=header_size,
        commands=commands,
        payload_limit=limit,
    )


def _payload_offsets(c: _LoadCommand, *, endian: str) -> list[int]:
    """File offsets of data that follows the load commands (sections, symbol and string tables)."""

    if c.cmd == LC_SYMTAB:
        symoff, _nsyms, stroff, _strsize = struct.unpack_from(endian + "IIII", c.raw, 8)
        return [off for off in (symoff, stroff) if off > 0]
    if c.cmd == LC_SEGMENT_64:
        seg = struct.unpack_from(endian + "II16sQQQQiiII", c.raw, 0)
        fileoff, filesize, nsects = seg[5], seg[6], seg[9]
        sect_fmt: str = endian + "16s16sQQIIIIIIII"
        sect_size: int = 80
        seg_size: int = 72
    elif c.cmd == LC_SEGMENT:
        seg = struct.unpack_from(endian + "II16sIIIIiiII", c.raw, 0)
        fileoff, filesize, nsects = seg[5], seg[6], seg[9]
        sect_fmt = endian + "16s16sIIIIIIIII"
        sect_size = 68
        seg_size = 56
    else:
        return []

    offsets: list[int] = []
    for i in range(nsects):
        sect = struct.unpack_from(sect_fmt, c.raw, seg_size + i * sect_size)
        size: int = sect[3]
        offset: int = sect[4]
        if offset > 0 and size > 0:
            offsets.append(offset)
    if nsects == 0 and filesize > 0 and fileoff > 0:
        offsets.append(fileoff)
    return offsets


def _parse_thin(data: bytes, *, offset: int) -> MachOSlice:
    t: _Thin = _load_thin(data)
    e: str = t.endian
    cputype: int = t.header[1]

    needed: list[str] = []
    install_name: str | None = None
    rpaths: list[str] = []
    min_os: tuple[int, int] | None = None
    has_signature: bool = False
    exported: frozenset[str] = frozenset()

    try:
        for c in t.commands:
            if c.cmd in DYLIB_LOAD_COMMANDS:
                needed.append(_lc_str(c.raw, struct.unpack_from(e + "I", c.raw, 8)[0]))
            elif c.cmd == LC_ID_DYLIB:
                install_name = _lc_str(c.raw, struct.unpack_from(e + "I", c.raw, 8)[0])
            elif c.cmd == LC_RPATH:
                rpaths.append(_lc_str(c.raw, struct.unpack_from(e + "I", c.raw, 8)[0]))
            elif c.cmd == LC_BUILD_VERSION:
                plat, minos = struct.unpack_from(e + "II", c.raw, 8)
                if plat == _PLATFORM_MACOS:
                    min_os = _decode_version(minos)
            elif c.cmd == LC_VERSION_MIN_MACOSX:
                min_os = _decode_version(struct.unpack_from(e + "I", c.raw, 8)[0])
            elif c.cmd == LC_CODE_SIGNATURE:
                has_signature = True
            elif c.cmd == LC_SYMTAB:
                exported = _exported_symbols(data, c.raw, endian=e, is64=t.is64)
    except struct.error as err:
        raise InvalidBinaryError(f"Truncated Mach-O load command: {err}") from err

    return MachOSlice(
        arch=_CPU_ARCHS.get(cputype, f"cpu-{cputype:#x}"),
        cputype=cputype,
        cpusubtype=t.header[2],
        offset=offset,
        size=len(data),
        needed=tuple(needed),
        install_name=install_name,
        rpaths=tuple(rpaths),
        exported_symbols=exported,
        min_os=min_os,
        has_code_signature=has_signature,
    )


def _exported_symbols(data: bytes, raw: bytes, *, endian: str, is64: bool) -> frozenset[str]:
    symoff, nsyms, stroff, strsize = struct.unpack_from(endian + "IIII", raw, 8)
    nlist_fmt: str = endian + ("IBBHQ" if is64 is True else "IBBHI")
    nlist_size: int = struct.calcsize(nlist_fmt)
    if symoff + nsyms * nlist_size > len(data) or stroff + strsize > len(data):
        raise InvalidBinaryError("Mach-O symbol table extends past end of image")

    names: set[str] = set()
    for i in range(nsyms):
        n_strx, n_type, _n_sect, _n_desc, _n_value = struct.unpack_from(nlist_fmt, data, symoff + i * nlist_size)
        if n_type & N_STAB:
            continue
        if (n_type & N_EXT) == 0 or (n_type & N_TYPE) != N_SECT:
            continue
        if n_strx == 0 or n_strx >= strsize:
            continue
        end: int = data.find(b"\x00", stroff + n_strx, stroff + strsize)
        if end < 0:
            end = stroff + strsize
        name: str = data[stroff + n_strx : end].decode("utf-8", errors="surrogateescape")
        if name.startswith("_") is True:
            name = name[1:]
        names.add(name)
    return frozenset(names)


def _rewrite_thin(
    data: bytes,
    *,
    replace: Mapping[str, str],
    install_name: str | None,
    add_rpaths: tuple[str, ...],
    remove_rpaths: tuple[str, ...],
) -> bytes:
    t: _Thin = _load_thin(data)
    e: str = t.endian
    pad: int = 8 if t.is64 is True else 4

    new_commands: list[bytes] = []
    existing_rpaths: set[str] = set()
    for c in t.commands:
        if c.cmd in DYLIB_LOAD_COMMANDS or c.cmd == LC_ID_DYLIB:
            name_off: int = struct.unpack_from(e + "I", c.raw, 8)[0]
            name: str = _lc_str(c.raw, name_off)
            new_name: str | None = install_name if c.cmd == LC_ID_DYLIB else replace.get(name)
            if new_name is not None and new_name != name:
                timestamp, current, compat = struct.unpack_from(e + "III", c.raw, 12)
                new_commands.append(
                    _dylib_command(c.cmd, new_name, timestamp, current, compat, endian=e, pad=pad)
                )
                continue
        elif c.cmd == LC_RPATH:
            path: str = _lc_str(c.raw, struct.unpack_from(e + "I", c.raw, 8)[0])
            if path in remove_rpaths:
                continue
            existing_rpaths.add(path)
        new_commands.append(c.raw)

    for rpath in add_rpaths:
        if rpath not in existing_rpaths:
            new_commands.append(_rpath_command(rpath, endian=e, pad=pad))
            existing_rpaths.add(rpath)

    new_size: int = sum(len(c) for c in new_commands)
    if t.header_size + new_size > t.payload_limit:
        raise InvalidBinaryError(
            f"Mach-O header padding too small for the new load commands "
            f"({t.header_size + new_size} > {t.payload_limit}); relink with -headerpad_max_install_names"
        )

    old_end: int = t.header_size + t.header[5]
    header: list[int] = list(t.header)
    header[4] = len(new_commands)
    header[5] = new_size
    header_fmt: str = e + ("IiiIIIII" if t.is64 is True else "IiiIIII")

    out: bytearray = bytearray(data)
    region: bytearray = bytearray(struct.pack(header_fmt, *header))
    for c_raw in new_commands:
        region.extend(c_raw)
    end: int = max(old_end, len(region))
    region.extend(b"\x00" * (end - len(region)))
    out[0:end] = region
    return bytes(out)


def _dylib_command(
    cmd: int, name: str, timestamp: int, current: int, compat: int, *, endian: str, pad: int
) -> bytes:
    raw_name: bytes = name.encode("utf-8") + b"\x00"
    size: int = _align(24 + len(raw_name), pad)
    body: bytes = struct.pack(endian + "IIIIII", cmd, size, 24, timestamp, current, compat) + raw_name
    return body + b"\x00" * (size - len(body))


def _rpath_command(path: str, *, endian: str, pad: int) -> bytes:
    raw_path: bytes = path.encode("utf-8") + b"\x00"
    size: int = _align(12 + len(raw_path), pad)
    body: bytes = struct.pack(endian + "III", LC_RPATH, size, 12) + raw_path
    return body + b"\x00" * (size - len(body))


def _lc_str(raw: bytes, offset: int) -> str:
    if offset >= len(raw):
        raise InvalidBinaryError("Mach-O load command string offset out of range")
    end: int = raw.find(b"\x00", offset)
    if end < 0:
        end = len(raw)
    return raw[offset:end].decode("utf-8", errors="surrogateescape")


def _decode_version(value: int) -> tuple[int, int]:
    return (value >> 16, (value >> 8) & 0xFF)


def encode_version(major: int, minor: int, patch: int = 0) -> int:
    return (major << 16) | (minor << 8) | patch


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment
