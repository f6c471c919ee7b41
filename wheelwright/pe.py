"""PE/COFF DLL parsing and import-name rewriting.

DLL names in the import and delay-import tables are rewritten in place
when the new name fits in the old slot. Longer names are stored in a new
read-only section appended after the last one, which requires one free
section-header slot inside ``SizeOfHeaders``. Rewritten images lose their
Authenticode certificate and their checksum is cleared.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import struct

from wheelwright.errors import InvalidBinaryError


_MACHINES: dict[int, str] = {
    0x014C: "i686",
    0x8664: "x86_64",
    0xAA64: "aarch64",
    0x01C4: "armv7",
}

PE32_MAGIC: int = 0x10B
PE32_PLUS_MAGIC: int = 0x20B

DIR_EXPORT: int = 0
DIR_IMPORT: int = 1
DIR_SECURITY: int = 4
DIR_DELAY_IMPORT: int = 13

_SECTION_SIZE: int = 40
_NEW_SECTION_NAME: bytes = b".wwdll\x00\x00"
_SCN_INITIALIZED_DATA: int = 0x00000040
_SCN_MEM_READ: int = 0x40000000


@dataclass(frozen=True, slots=True)
class PeInfo:
    """Read-only summary of a PE image.

    :ivar machine: Raw COFF machine value.
    :ivar arch: Normalized architecture name.
    :ivar pe32_plus: ``True`` for 64-bit (PE32+) images.
    :ivar needed: Imported DLL names (regular imports first, then delay-loaded).
    :ivar dll_name: Name recorded in the export directory, if any.
    :ivar exported_symbols: Exported function names.
    """

    machine: int
    arch: str
    pe32_plus: bool
    needed: tuple[str, ...]
    dll_name: str | None
    exported_symbols: frozenset[str]


@dataclass(slots=True)
class _Section:
    index: int
    name: bytes
    virtual_size: int
    virtual_address: int
    raw_size: int
    raw_pointer: int


@dataclass(slots=True)
class _Image:
    data: bytes
    pe_offset: int
    machine: int
    opt_offset: int
    magic: int
    image_base: int
    section_alignment: int
    file_alignment: int
    size_of_headers: int
    directories: list[tuple[int, int]]
    dir_offset: int
    section_table: int
    sections: list[_Section]

    def rva_to_offset(self, rva: int) -> int:
        if rva < self.size_of_headers:
            return rva
        for s in self.sections:
            span: int = max(s.virtual_size, s.raw_size)
            if s.virtual_address <= rva < s.virtual_address + span:
                off: int = s.raw_pointer + (rva - s.virtual_address)
                if off >= len(self.data):
                    break
                return off
        raise InvalidBinaryError(f"PE RVA {rva:#x} is not backed by file data")

    def read_cstr(self, rva: int) -> str:
        off: int = self.rva_to_offset(rva)
        end: int = self.data.find(b"\x00", off)
        if end < 0:
            raise InvalidBinaryError(f"Unterminated PE string at RVA {rva:#x}")
        return self.data[off:end].decode("ascii", errors="surrogateescape")


def is_pe(data: bytes) -> bool:
    if len(data) < 0x40 or data[0:2] != b"MZ":
        return False
    pe_offset: int = struct.unpack_from("<I", data, 0x3C)[0]
    return data[pe_offset : pe_offset + 4] == b"PE\x00\x00"


def parse_pe(data: bytes) -> PeInfo:
    """Parse a PE image.

    :param data: File bytes.
    :returns: Import/export summary.
    :raises InvalidBinaryError: If the image is malformed.
    """

    img: _Image = _load(data)
    names: list[str] = []
    seen: set[str] = set()
    for _name_field, rva, _bias in [*_import_name_fields(img), *_delay_import_name_fields(img)]:
        name: str = img.read_cstr(rva)
        if name.lower() not in seen:
            seen.add(name.lower())
            names.append(name)

    dll_name, exports = _exports(img)
    return PeInfo(
        machine=img.machine,
        arch=_MACHINES.get(img.machine, f"pe-machine-{img.machine:#x}"),
        pe32_plus=img.magic == PE32_PLUS_MAGIC,
        needed=tuple(names),
        dll_name=dll_name,
        exported_symbols=frozenset(exports),
    )


def rewrite_pe(data: bytes, *, replace_needed: Mapping[str, str]) -> bytes:
    """Return a copy of ``data`` with imported DLL names replaced.

    :param data: Original image (not modified).
    :param replace_needed: Old DLL name -> new DLL name, matched case-insensitively.
    :returns: Patched image bytes.
    :raises InvalidBinaryError: If a longer name needs a new section and the headers are full.
    """

    img: _Image = _load(data)
    replace: dict[str, str] = {k.lower(): v for k, v in replace_needed.items()}

    out: bytearray = bytearray(data)
    # Editing the image invalidates the signature, so drop the certificate table.
    sec_off, sec_size = img.directories[DIR_SECURITY] if len(img.directories) > DIR_SECURITY else (0, 0)
    if sec_size > 0:
        if sec_off + sec_size == len(out):
            del out[sec_off:]
        struct.pack_into("<II", out, img.dir_offset + DIR_SECURITY * 8, 0, 0)

    pending: list[tuple[int, int, str]] = []
    for name_field, rva, bias in [*_import_name_fields(img), *_delay_import_name_fields(img)]:
        old: str = img.read_cstr(rva)
        new: str | None = replace.get(old.lower())
        if new is None:
            continue
        raw_new: bytes = new.encode("ascii")
        if len(raw_new) <= len(old):
            off: int = img.rva_to_offset(rva)
            out[off : off + len(old)] = raw_new + b"\x00" * (len(old) - len(raw_new))
        else:
            pending.append((name_field, bias, new))

    if len(pending) > 0:
        _append_name_section(out, img, pending)

    struct.pack_into("<I", out, img.opt_offset + 64, 0)
    return bytes(out)


def _append_name_section(out: bytearray, img: _Image, pending: list[tuple[int, int, str]]) -> None:
    header_end: int = img.section_table + len(img.sections) * _SECTION_SIZE
    first_raw: int = min((s.raw_pointer for s in img.sections if s.raw_pointer > 0), default=img.size_of_headers)
    if header_end + _SECTION_SIZE > min(img.size_of_headers, first_raw):
        raise InvalidBinaryError("No room in the PE section table for a new section")

    virtual_address: int = _align(
        max((s.virtual_address + max(s.virtual_size, s.raw_size) for s in img.sections), default=img.size_of_headers),
        img.section_alignment,
    )
    raw_pointer: int = _align(len(out), img.file_alignment)

    content: bytearray = bytearray()
    placed: dict[str, int] = {}
    for _field, _bias, name in pending:
        if name not in placed:
            placed[name] = len(content)
            content.extend(name.encode("ascii") + b"\x00")
    virtual_size: int = len(content)
    raw_size: int = _align(virtual_size, img.file_alignment)

    out.extend(b"\x00" * (raw_pointer - len(out)))
    out.extend(content)
    out.extend(b"\x00" * (raw_size - virtual_size))

    struct.pack_into(
        "<8sIIIIIIHHI",
        out,
        header_end,
        _NEW_SECTION_NAME,
        virtual_size,
        virtual_address,
        raw_size,
        raw_pointer,
        0,
        0,
        0,
        0,
        _SCN_INITIALIZED_DATA | _SCN_MEM_READ,
    )
    struct.pack_into("<H", out, img.pe_offset + 6, len(img.sections) + 1)
    struct.pack_into("<I", out, img.opt_offset + 56, _align(virtual_address + virtual_size, img.section_alignment))

    for field_off, bias, name in pending:
        struct.pack_into("<I", out, field_off, virtual_address + placed[name] + bias)


def _load(data: bytes) -> _Image:
    if is_pe(data) is False:
        raise InvalidBinaryError("Not a PE image")
    try:
        pe_offset: int = struct.unpack_from("<I", data, 0x3C)[0]
        machine, nsections, _ts, _symptr, _nsyms, opt_size, _chars = struct.unpack_from(
            "<HHIIIHH", data, pe_offset + 4
        )
        opt: int = pe_offset + 24
        magic: int = struct.unpack_from("<H", data, opt)[0]
        if magic == PE32_MAGIC:
            image_base: int = struct.unpack_from("<I", data, opt + 28)[0]
            count_off: int = opt + 92
        elif magic == PE32_PLUS_MAGIC:
            image_base = struct.unpack_from("<Q", data, opt + 24)[0]
            count_off = opt + 108
        else:
            raise InvalidBinaryError(f"Unknown PE optional header magic {magic:#x}")
        section_alignment, file_alignment = struct.unpack_from("<II", data, opt + 32)
        size_of_headers: int = struct.unpack_from("<I", data, opt + 60)[0]
        ndirs: int = struct.unpack_from("<I", data, count_off)[0]
        dir_offset: int = count_off + 4
        directories: list[tuple[int, int]] = [
            struct.unpack_from("<II", data, dir_offset + i * 8) for i in range(min(ndirs, 16))
        ]

        section_table: int = opt + opt_size
        sections: list[_Section] = []
        for i in range(nsections):
            name, vsize, vaddr, raw_size, raw_ptr = struct.unpack_from("<8sIIII", data, section_table + i * _SECTION_SIZE)
            sections.append(
                _Section(
                    index=i,
                    name=name,
                    virtual_size=vsize,
                    virtual_address=vaddr,
                    raw_size=raw_size,
                    raw_pointer=raw_ptr,
                )
            )
    except struct.error as e:
        raise InvalidBinaryError(f"Truncated PE headers: {e}") from e

    if section_alignment == 0 or file_alignment == 0:
        raise InvalidBinaryError("PE image declares zero section/file alignment")

    return _Image(
        data=data,
        pe_offset=pe_offset,
        machine=machine,
        opt_offset=opt,
        magic=magic,
        image_base=image_base,
        section_alignment=section_alignment,
        file_alignment=file_alignment,
        size_of_headers=size_of_headers,
        directories=directories,
        dir_offset=dir_offset,
        section_table=section_table,
        sections=sections,
    )


def _import_name_fields(img: _Image) -> list[tuple[int, int, int]]:
    """Return ``(file offset of the Name field, name RVA, address bias)`` per import descriptor."""

    if len(img.directories) <= DIR_IMPORT:
        return []
    rva, size = img.directories[DIR_IMPORT]
    if rva == 0 or size == 0:
        return []

    fields: list[tuple[int, int, int]] = []
    pos: int = img.rva_to_offset(rva)
    try:
        while True:
            desc: tuple[int, ...] = struct.unpack_from("<IIIII", img.data, pos)
            if all(v == 0 for v in desc):
                break
            fields.append((pos + 12, desc[3], 0))
            pos += 20
    except struct.error as e:
        raise InvalidBinaryError(f"Truncated PE import directory: {e}") from e
    return fields


def _delay_import_name_fields(img: _Image) -> list[tuple[int, int, int]]:
    if len(img.directories) <= DIR_DELAY_IMPORT:
        return []
    rva, size = img.directories[DIR_DELAY_IMPORT]
    if rva == 0 or size == 0:
        return []

    fields: list[tuple[int, int, int]] = []
    pos: int = img.rva_to_offset(rva)
    try:
        while True:
            desc: tuple[int, ...] = struct.unpack_from("<IIIIIIII", img.data, pos)
            if all(v == 0 for v in desc):
                break
            attributes: int = desc[0]
            bias: int = 0
            if attributes & 1 == 0:
                # Pre-VC7 descriptors hold virtual addresses.
                bias = img.image_base
            fields.append((pos + 4, desc[1] - bias, bias))
            pos += 32
    except struct.error as e:
        raise InvalidBinaryError(f"Truncated PE delay-import directory: {e}") from e
    return fields


def _exports(img: _Image) -> tuple[str | None, list[str]]:
    if len(img.directories) <= DIR_EXPORT:
        return (None, [])
    rva, size = img.directories[DIR_EXPORT]
    if rva == 0 or size == 0:
        return (None, [])

    try:
        off: int = img.rva_to_offset(rva)
        name_rva, _base, _nfuncs, nnames, _funcs, names_rva, _ords = struct.unpack_from(
            "<IIIIIII", img.data, off + 12
        )
        dll_name: str | None = img.read_cstr(name_rva) if name_rva != 0 else None
        names: list[str] = []
        if nnames > 0:
            names_off: int = img.rva_to_offset(names_rva)
            for i in range(nnames):
                names.append(img.read_cstr(struct.unpack_from("<I", img.data, names_off + i * 4)[0]))
    except struct.error as e:
        raise InvalidBinaryError(f"Truncated PE export directory: {e}") from e
    return (dll_name, names)


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment
