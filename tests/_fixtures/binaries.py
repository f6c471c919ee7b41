"""Tiny synthetic ELF, Mach-O and PE images for tests.

The images carry only what the loaders' dynamic-linking metadata needs
(no code), which is enough for inspection, auditing and rewriting.
"""

from __future__ import annotations

import struct
from pathlib import Path
from typing import Mapping, Sequence

from wheelwright.macho import CPU_TYPE_ARM64, CPU_TYPE_X86_64, encode_version


EM_X86_64 = 62
EM_AARCH64 = 183

PE_AMD64 = 0x8664
PE_ARM64 = 0xAA64


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


class _StringTable:
    def __init__(self) -> None:
        self.data = bytearray(b"\x00")
        self._offsets: dict[str, int] = {}

    def add(self, text: str) -> int:
        if text not in self._offsets:
            self._offsets[text] = len(self.data)
            self.data.extend(text.encode("utf-8") + b"\x00")
        return self._offsets[text]


def make_elf(
    *,
    machine: int = EM_X86_64,
    needed: Sequence[str] = (),
    soname: str | None = None,
    rpath: str | None = None,
    runpath: str | None = None,
    exports: Sequence[str] = (),
    version_requirements: Mapping[str, Sequence[str]] | None = None,
    spare_dynamic: int = 0,
    hash_table: bool = False,
) -> bytes:
    """Build a little-endian 64-bit ``ET_DYN`` image.

    One ``PT_LOAD`` maps the whole file at address 0, so every file offset
    is also its virtual address.
    """

    requirements = dict(version_requirements or {})
    strings = _StringTable()
    needed_offs = [strings.add(n) for n in needed]
    soname_off = strings.add(soname) if soname is not None else None
    rpath_off = strings.add(rpath) if rpath is not None else None
    runpath_off = strings.add(runpath) if runpath is not None else None
    export_offs = [strings.add(s) for s in exports]
    verneed_offs = {lib: (strings.add(lib), [strings.add(v) for v in versions]) for lib, versions in requirements.items()}

    ehdr_size = 64
    phdr_size = 56
    phnum = 2
    dynstr_off = ehdr_size + phnum * phdr_size
    dynstr = bytes(strings.data)

    dynsym_off = _align(dynstr_off + len(dynstr), 8)
    dynsym = bytearray(24)
    for name_off in export_offs:
        dynsym.extend(struct.pack("<IBBHQQ", name_off, 0x12, 0, 1, 0, 0))

    verneed_off = _align(dynsym_off + len(dynsym), 8)
    verneed = bytearray()
    libs = list(verneed_offs.items())
    other = 2
    for i, (_lib, (file_off, version_offs)) in enumerate(libs):
        last_lib = i == len(libs) - 1
        vn_next = 0 if last_lib else 16 + 16 * len(version_offs)
        verneed.extend(struct.pack("<HHIII", 1, len(version_offs), file_off, 16, vn_next))
        for j, version_off in enumerate(version_offs):
            vna_next = 0 if j == len(version_offs) - 1 else 16
            verneed.extend(struct.pack("<IHHII", 0, 0, other, version_off, vna_next))
            other += 1

    hash_off = _align(verneed_off + len(verneed), 8)
    hash_data = bytearray()
    if hash_table:
        nsyms = len(dynsym) // 24
        hash_data.extend(struct.pack("<II", 1, nsyms))
        hash_data.extend(struct.pack("<I", 0))
        hash_data.extend(b"\x00" * 4 * nsyms)

    dyn_off = _align(hash_off + len(hash_data), 8)
    entries: list[tuple[int, int]] = [(1, off) for off in needed_offs]
    if soname_off is not None:
        entries.append((14, soname_off))
    if rpath_off is not None:
        entries.append((15, rpath_off))
    if runpath_off is not None:
        entries.append((29, runpath_off))
    entries.extend([(5, dynstr_off), (10, len(dynstr)), (6, dynsym_off), (11, 24)])
    if hash_table:
        entries.append((4, hash_off))
    if len(libs) > 0:
        entries.extend([(0x6FFFFFFE, verneed_off), (0x6FFFFFFF, len(libs))])
    dynamic = bytearray()
    for tag, value in entries:
        dynamic.extend(struct.pack("<qQ", tag, value))
    dynamic.extend(b"\x00" * 16 * (1 + spare_dynamic))

    section_names = _StringTable()
    # (name, type, flags, offset, size, link, info, align, entsize); index 1 is .dynstr.
    sections = [
        (".dynstr", 3, 2, dynstr_off, len(dynstr), 0, 0, 1, 0),
        (".dynsym", 11, 2, dynsym_off, len(dynsym), 1, 1, 8, 24),
        (".dynamic", 6, 3, dyn_off, len(dynamic), 1, 0, 8, 16),
    ]
    if len(libs) > 0:
        sections.append((".gnu.version_r", 0x6FFFFFFE, 2, verneed_off, len(verneed), 1, len(libs), 8, 0))
    if hash_table:
        sections.append((".hash", 5, 2, hash_off, len(hash_data), 2, 0, 8, 4))
    name_offs = [section_names.add(s[0]) for s in sections]
    shstrtab_name = section_names.add(".shstrtab")
    shstrtab_off = dyn_off + len(dynamic)
    shstrtab = bytes(section_names.data)

    shoff = _align(shstrtab_off + len(shstrtab), 8)
    shdrs = bytearray(64)
    for name_off, (_name, kind, flags, off, size, link, info, align, entsize) in zip(name_offs, sections):
        shdrs.extend(struct.pack("<IIQQQQIIQQ", name_off, kind, flags, off, off, size, link, info, align, entsize))
    shdrs.extend(struct.pack("<IIQQQQIIQQ", shstrtab_name, 3, 0, 0, shstrtab_off, len(shstrtab), 0, 0, 1, 0))
    shnum = len(sections) + 2
    total = shoff + len(shdrs)

    out = bytearray(total)
    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + b"\x00" * 8
    out[0:ehdr_size] = struct.pack(
        "<16sHHIQQQIHHHHHH",
        ident,
        3,
        machine,
        1,
        0,
        ehdr_size,
        shoff,
        0,
        ehdr_size,
        phdr_size,
        phnum,
        64,
        shnum,
        shnum - 1,
    )
    out[ehdr_size : ehdr_size + phdr_size] = struct.pack("<IIQQQQQQ", 1, 5, 0, 0, 0, total, total, 0x1000)
    out[ehdr_size + phdr_size : dynstr_off] = struct.pack(
        "<IIQQQQQQ", 2, 6, dyn_off, dyn_off, dyn_off, len(dynamic), len(dynamic), 8
    )
    out[dynstr_off : dynstr_off + len(dynstr)] = dynstr
    out[dynsym_off : dynsym_off + len(dynsym)] = dynsym
    out[verneed_off : verneed_off + len(verneed)] = verneed
    out[hash_off : hash_off + len(hash_data)] = hash_data
    out[dyn_off : dyn_off + len(dynamic)] = dynamic
    out[shstrtab_off : shstrtab_off + len(shstrtab)] = shstrtab
    out[shoff:total] = shdrs
    return bytes(out)


def strip_section_headers(data: bytes) -> bytes:
    """Drop the section header table the way ``sstrip`` does.

    The loader only needs program headers, so the result still links.
    """

    shoff = struct.unpack_from("<Q", data, 40)[0]
    out = bytearray(data[0:shoff])
    struct.pack_into("<Q", out, 40, 0)
    struct.pack_into("<HHH", out, 58, 0, 0, 0)
    return bytes(out)


def set_dynamic_value(data: bytes, tag: int, value: int) -> bytes:
    """Overwrite the value of an existing ``PT_DYNAMIC`` entry of a :func:`make_elf` image."""

    out = bytearray(data)
    # p_offset of the PT_DYNAMIC header, the second program header.
    pos = struct.unpack_from("<Q", out, 64 + 56 + 8)[0]
    while True:
        d_tag, _value = struct.unpack_from("<qQ", out, pos)
        if d_tag == 0:
            raise KeyError(tag)
        if d_tag == tag:
            struct.pack_into("<qQ", out, pos, tag, value)
            return bytes(out)
        pos += 16


def _lc_string(cmd: int, fixed: bytes, text: str) -> bytes:
    raw = text.encode("utf-8") + b"\x00"
    header_len = 8 + len(fixed)
    size = _align(header_len + len(raw), 8)
    body = struct.pack("<II", cmd, size) + fixed + raw
    return body + b"\x00" * (size - len(body))


def make_macho(
    *,
    cputype: int = CPU_TYPE_X86_64,
    install_name: str | None = None,
    needed: Sequence[str] = (),
    rpaths: Sequence[str] = (),
    exports: Sequence[str] = (),
    min_os: tuple[int, int] = (11, 0),
    payload_offset: int | None = 0x1000,
) -> bytes:
    """Build a thin little-endian 64-bit Mach-O image.

    ``payload_offset`` is where ``__text`` starts; the gap after the load
    commands is the header padding rewrites may use. ``None`` leaves no
    padding at all.
    """

    commands: list[bytes] = []
    version = encode_version(1, 0, 0)
    if install_name is not None:
        commands.append(_lc_string(0xD, struct.pack("<IIII", 24, 2, version, version), install_name))
    for name in needed:
        commands.append(_lc_string(0xC, struct.pack("<IIII", 24, 2, version, version), name))
    for path in rpaths:
        commands.append(_lc_string(0x8000001C, struct.pack("<I", 12), path))
    minos = encode_version(min_os[0], min_os[1])
    commands.append(struct.pack("<IIIIII", 0x32, 24, 1, minos, minos, 0))

    header_size = 32
    commands_size = sum(len(c) for c in commands) + 152 + 24
    start = payload_offset if payload_offset is not None else _align(header_size + commands_size, 8)
    text_size = 16
    symoff = start + text_size
    strings = _StringTable()
    name_offs = [strings.add("_" + s) for s in exports]
    stroff = symoff + 16 * len(name_offs)
    strtab = bytes(strings.data)

    segment = struct.pack(
        "<II16sQQQQiiII", 0x19, 152, b"__TEXT", 0, symoff, 0, symoff, 5, 5, 1, 0
    ) + struct.pack("<16s16sQQIIIIIIII", b"__text", b"__TEXT", start, text_size, start, 4, 0, 0, 0x80000400, 0, 0, 0)
    commands.append(segment)
    commands.append(struct.pack("<IIIIII", 2, 24, symoff, len(name_offs), stroff, len(strtab)))

    sizeofcmds = sum(len(c) for c in commands)
    filetype = 6 if install_name is not None else 8
    cpusubtype = 3 if cputype == CPU_TYPE_X86_64 else 0
    out = bytearray(struct.pack("<IiiIIIII", 0xFEEDFACF, cputype, cpusubtype, filetype, len(commands), sizeofcmds, 0, 0))
    for c in commands:
        out.extend(c)
    if len(out) > start:
        raise ValueError("load commands do not fit before payload_offset")
    out.extend(b"\x00" * (start - len(out)))
    out.extend(b"\xc3" * text_size)
    for name_off in name_offs:
        out.extend(struct.pack("<IBBHQ", name_off, 0x0F, 1, 0, start))
    out.extend(strtab)
    return bytes(out)


def make_pe(
    *,
    machine: int = PE_AMD64,
    needed: Sequence[str] = (),
    delay_needed: Sequence[str] = (),
    dll_name: str | None = None,
    exports: Sequence[str] = (),
) -> bytes:
    """Build a PE32+ DLL with one ``.rdata`` section holding its import and export tables."""

    section_rva = 0x1000
    raw_pointer = 0x400
    file_alignment = 0x200

    content = bytearray()
    import_off = 0
    content.extend(b"\x00" * 20 * (len(needed) + 1))
    delay_off = len(content)
    content.extend(b"\x00" * 32 * (len(delay_needed) + 1))
    export_off = len(content)
    content.extend(b"\x00" * 40)
    names_array_off = len(content)
    content.extend(b"\x00" * 4 * len(exports))

    def put_string(text: str) -> int:
        off = len(content)
        content.extend(text.encode("ascii") + b"\x00")
        return section_rva + off

    for i, name in enumerate(needed):
        struct.pack_into("<IIIII", content, import_off + i * 20, 0, 0, 0, put_string(name), 0)
    for i, name in enumerate(delay_needed):
        struct.pack_into("<IIIIIIII", content, delay_off + i * 32, 1, put_string(name), 0, 0, 0, 0, 0, 0)
    dll_name_rva = put_string(dll_name) if dll_name is not None else 0
    for i, sym in enumerate(exports):
        struct.pack_into("<I", content, names_array_off + i * 4, put_string(sym))
    struct.pack_into(
        "<IIHHIIIIIII",
        content,
        export_off,
        0,
        0,
        0,
        0,
        dll_name_rva,
        1,
        len(exports),
        len(exports),
        0,
        section_rva + names_array_off,
        0,
    )

    raw_size = _align(len(content), file_alignment)
    out = bytearray(raw_pointer + raw_size)
    out[0:2] = b"MZ"
    struct.pack_into("<I", out, 0x3C, 0x40)
    out[0x40:0x44] = b"PE\x00\x00"
    opt_size = 240
    struct.pack_into("<HHIIIHH", out, 0x44, machine, 1, 0, 0, 0, opt_size, 0x2022)

    opt = 0x58
    struct.pack_into("<H", out, opt, 0x20B)
    struct.pack_into("<Q", out, opt + 24, 0x180000000)
    struct.pack_into("<II", out, opt + 32, 0x1000, file_alignment)
    struct.pack_into("<I", out, opt + 56, _align(section_rva + len(content), 0x1000))
    struct.pack_into("<I", out, opt + 60, raw_pointer)
    struct.pack_into("<I", out, opt + 108, 16)
    dirs = opt + 112
    if dll_name is not None or len(exports) > 0:
        struct.pack_into("<II", out, dirs + 0 * 8, section_rva + export_off, 40)
    if len(needed) > 0:
        struct.pack_into("<II", out, dirs + 1 * 8, section_rva + import_off, 20 * (len(needed) + 1))
    if len(delay_needed) > 0:
        struct.pack_into("<II", out, dirs + 13 * 8, section_rva + delay_off, 32 * (len(delay_needed) + 1))

    section_table = opt + opt_size
    struct.pack_into(
        "<8sIIIIIIHHI",
        out,
        section_table,
        b".rdata\x00\x00",
        len(content),
        section_rva,
        raw_size,
        raw_pointer,
        0,
        0,
        0,
        0,
        0x40000040,
    )
    out[raw_pointer : raw_pointer + len(content)] = content
    return bytes(out)


def write_binary(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


__all__ = [
    "CPU_TYPE_ARM64",
    "CPU_TYPE_X86_64",
    "EM_AARCH64",
    "EM_X86_64",
    "PE_AMD64",
    "PE_ARM64",
    "make_elf",
    "make_macho",
    "make_pe",
    "set_dynamic_value",
    "strip_section_headers",
    "write_binary",
]
