"""ELF shared-object parsing and dynamic-section rewriting.

Reading goes through pyelftools and covers 32/64-bit, little/big-endian
images: ``DT_NEEDED``, ``DT_SONAME``, ``DT_RPATH``/``DT_RUNPATH``,
``.gnu.version_r`` requirements and the exported dynamic symbols.

Rewriting never edits strings in place. Changed strings are appended to a
copy of ``.dynstr`` which is moved, together with the program header table
(and ``.dynamic`` when it needs more slots), into a new ``PT_LOAD`` segment
at the end of the file. Every address, offset and size that points at the
moved tables is updated.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
import io
import struct
import types

from elftools.common.exceptions import ELFError
from elftools.construct.core import ConstructError
from elftools.elf.dynamic import DynamicSegment
from elftools.elf.elffile import ELFFile
from elftools.elf.enums import ENUM_E_MACHINE
from elftools.elf.gnuversions import GNUVerNeedSection
from elftools.elf.sections import SymbolTableSection

from wheelwright.errors import InvalidBinaryError


ELF_MAGIC: bytes = b"\x7fELF"

PT_LOAD: int = 1
PT_DYNAMIC: int = 2
PT_PHDR: int = 6

PF_W: int = 0x2
PF_R: int = 0x4

DT_NULL: int = 0
DT_NEEDED: int = 1
DT_STRTAB: int = 5
DT_STRSZ: int = 10
DT_SONAME: int = 14
DT_RPATH: int = 15
DT_RUNPATH: int = 29
DT_VERNEED: int = 0x6FFFFFFE
DT_VERNEEDNUM: int = 0x6FFFFFFF

SHT_STRTAB: int = 3
SHT_DYNAMIC: int = 6

_MACHINES: dict[int, str] = {
    3: "i686",
    8: "mips",
    20: "ppc",
    21: "ppc64",
    22: "s390x",
    40: "armv7l",
    62: "x86_64",
    183: "aarch64",
    243: "riscv64",
}

# Machines whose kernels commonly run with 64 KiB pages.
_LARGE_PAGE_MACHINES: frozenset[int] = frozenset({21, 183})

_EXPORT_BINDS: frozenset[str] = frozenset({"STB_GLOBAL", "STB_WEAK"})
_EXPORT_TYPES: frozenset[str] = frozenset({"STT_NOTYPE", "STT_OBJECT", "STT_FUNC"})
_EXPORT_VISIBILITIES: frozenset[str] = frozenset({"STV_DEFAULT", "STV_PROTECTED"})


@dataclass(frozen=True, slots=True)
class ElfInfo:
    """Read-only summary of an ELF shared object.

    :ivar elfclass: 32 or 64.
    :ivar little_endian: Byte order.
    :ivar machine: Raw ``e_machine`` value.
    :ivar arch: Normalized architecture name.
    :ivar needed: ``DT_NEEDED`` names in file order.
    :ivar soname: ``DT_SONAME``, if any.
    :ivar rpath: ``DT_RPATH`` entries.
    :ivar runpath: ``DT_RUNPATH`` entries.
    :ivar version_requirements: Library name -> version names it must provide.
    :ivar exported_symbols: Defined global dynamic symbols.
    """

    elfclass: int
    little_endian: bool
    machine: int
    arch: str
    needed: tuple[str, ...]
    soname: str | None
    rpath: tuple[str, ...]
    runpath: tuple[str, ...]
    version_requirements: Mapping[str, tuple[str, ...]]
    exported_symbols: frozenset[str]


@dataclass(slots=True)
class _Phdr:
    type: int
    flags: int
    offset: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    align: int


@dataclass(slots=True)
class _Shdr:
    name: int
    type: int
    flags: int
    addr: int
    offset: int
    size: int
    link: int
    info: int
    addralign: int
    entsize: int


class _Layout:
    """Struct formats for one ELF class and byte order."""

    def __init__(self, *, elfclass: int, little_endian: bool) -> None:
        e: str = "<" if little_endian is True else ">"
        self.elfclass: int = elfclass
        self.endian: str = e
        self.is64: bool = elfclass == 64
        if self.is64 is True:
            self.ehdr = struct.Struct(e + "16sHHIQQQIHHHHHH")
            self.phdr = struct.Struct(e + "IIQQQQQQ")
            self.shdr = struct.Struct(e + "IIQQQQIIQQ")
            self.dyn = struct.Struct(e + "qQ")
            self.word = 8
        else:
            self.ehdr = struct.Struct(e + "16sHHIIIIIHHHHHH")
            self.phdr = struct.Struct(e + "IIIIIIII")
            self.shdr = struct.Struct(e + "IIIIIIIIII")
            self.dyn = struct.Struct(e + "iI")
            self.word = 4
        self.u32 = struct.Struct(e + "I")
        self.verneed = struct.Struct(e + "HHIII")
        self.vernaux = struct.Struct(e + "IHHII")

    def unpack_phdr(self, data: bytes, off: int) -> _Phdr:
        v = self.phdr.unpack_from(data, off)
        if self.is64 is True:
            return _Phdr(type=v[0], flags=v[1], offset=v[2], vaddr=v[3], paddr=v[4], filesz=v[5], memsz=v[6], align=v[7])
        return _Phdr(type=v[0], offset=v[1], vaddr=v[2], paddr=v[3], filesz=v[4], memsz=v[5], flags=v[6], align=v[7])

    def pack_phdr(self, p: _Phdr) -> bytes:
        if self.is64 is True:
            return self.phdr.pack(p.type, p.flags, p.offset, p.vaddr, p.paddr, p.filesz, p.memsz, p.align)
        return self.phdr.pack(p.type, p.offset, p.vaddr, p.paddr, p.filesz, p.memsz, p.flags, p.align)

    def unpack_shdr(self, data: bytes, off: int) -> _Shdr:
        return _Shdr(*self.shdr.unpack_from(data, off))

    def pack_shdr(self, s: _Shdr) -> bytes:
        return self.shdr.pack(
            s.name, s.type, s.flags, s.addr, s.offset, s.size, s.link, s.info, s.addralign, s.entsize
        )


@dataclass(slots=True)
class _Image:
    """Header-level view of an image for the rewriter."""

    data: bytes
    layout: _Layout
    machine: int
    phoff: int
    phentsize: int
    phdrs: list[_Phdr]
    shoff: int
    shentsize: int
    shdrs: list[_Shdr]
    dyn_off: int
    dyn_size: int
    dynamic: list[tuple[int, int]]
    strtab_off: int
    strtab_size: int
    ehdr_fields: list[int] = field(default_factory=list)

    def vaddr_to_offset(self, vaddr: int) -> int:
        for p in self.phdrs:
            if p.type == PT_LOAD and p.vaddr <= vaddr < p.vaddr + p.filesz:
                return p.offset + (vaddr - p.vaddr)
        raise InvalidBinaryError(f"ELF address {vaddr:#x} is not mapped by any PT_LOAD segment")

    def dyn_value(self, tag: int) -> int | None:
        for t, v in self.dynamic:
            if t == tag:
                return v
        return None

    def dyn_values(self, tag: int) -> list[int]:
        return [v for t, v in self.dynamic if t == tag]

    def read_str(self, off: int) -> str:
        if off < 0 or off >= self.strtab_size:
            raise InvalidBinaryError(f"ELF string offset {off} outside .dynstr")
        start: int = self.strtab_off + off
        end: int = self.data.find(b"\x00", start, self.strtab_off + self.strtab_size)
        if end < 0:
            end = self.strtab_off + self.strtab_size
        return self.data[start:end].decode("utf-8", errors="surrogateescape")


def is_elf(data: bytes) -> bool:
    return data[0:4] == ELF_MAGIC


def parse_elf(data: bytes) -> ElfInfo:
    """Parse an ELF shared object with pyelftools.

    Dynamic tags come from the ``PT_DYNAMIC`` segment, which is what the
    loader reads, so images with stripped section headers still parse.

    :param data: File bytes.
    :returns: Summary of the dynamic linking metadata.
    :raises InvalidBinaryError: If the image is malformed or not dynamically linked.
    """

    if len(data) < 52 or is_elf(data) is False:
        raise InvalidBinaryError("Not an ELF image")

    try:
        elf: ELFFile = ELFFile(io.BytesIO(data))
        if elf.num_segments() == 0:
            raise InvalidBinaryError("ELF image has no program headers")
        dynamic: DynamicSegment | None = None
        for segment in elf.iter_segments():
            if isinstance(segment, DynamicSegment) is True:
                dynamic = segment
                break
        if dynamic is None:
            raise InvalidBinaryError("ELF image has no PT_DYNAMIC segment (statically linked?)")

        needed: list[str] = []
        soname: str | None = None
        rpath: tuple[str, ...] = ()
        runpath: tuple[str, ...] = ()
        has_symtab: bool = False
        has_verneed: bool = False
        for tag in dynamic.iter_tags():
            kind: str = tag.entry.d_tag
            if kind == "DT_NEEDED":
                needed.append(tag.needed)
            elif kind == "DT_SONAME":
                soname = tag.soname
            elif kind == "DT_RPATH":
                rpath = _split_path_list(tag.rpath)
            elif kind == "DT_RUNPATH":
                runpath = _split_path_list(tag.runpath)
            elif kind == "DT_SYMTAB":
                has_symtab = True
            elif kind == "DT_VERNEED":
                has_verneed = True

        requirements: dict[str, tuple[str, ...]] = {}
        for lib, names in _version_requirements(elf, data, has_verneed=has_verneed):
            merged: list[str] = list(requirements.get(lib, ()))
            for n in names:
                if n not in merged:
                    merged.append(n)
            requirements[lib] = tuple(merged)

        exports: frozenset[str] = _exported_symbols(elf, dynamic, has_symtab=has_symtab)
        machine: int = _machine_number(elf["e_machine"])
        little_endian: bool = elf.little_endian
        elfclass: int = elf.elfclass
    except (ELFError, ConstructError, struct.error) as e:
        raise InvalidBinaryError(f"Malformed ELF image: {e}") from e

    return ElfInfo(
        elfclass=elfclass,
        little_endian=little_endian,
        machine=machine,
        arch=_arch_name(machine, little_endian=little_endian),
        needed=tuple(needed),
        soname=soname,
        rpath=rpath,
        runpath=runpath,
        version_requirements=types.MappingProxyType(requirements),
        exported_symbols=exports,
    )


def _version_requirements(elf: ELFFile, data: bytes, *, has_verneed: bool) -> list[tuple[str, tuple[str, ...]]]:
    """``(library, version names)`` from ``.gnu.version_r``.

    Without a section header for it the table is found through ``DT_VERNEED``.
    """

    out: list[tuple[str, tuple[str, ...]]] = []
    found: bool = False
    for section in elf.iter_sections():
        if isinstance(section, GNUVerNeedSection) is False:
            continue
        found = True
        for verneed, vernaux in section.iter_versions():
            out.append((verneed.name, tuple(aux.name for aux in vernaux)))
    if found is False and has_verneed is True:
        return [(lib, names) for lib, names, _file_field_off in _iter_verneed(_load(data))]
    return out


def _exported_symbols(elf: ELFFile, dynamic: DynamicSegment, *, has_symtab: bool) -> frozenset[str]:
    symbols = None
    for section in elf.iter_sections():
        if isinstance(section, SymbolTableSection) is True and section["sh_type"] == "SHT_DYNSYM":
            symbols = section.iter_symbols()
            break
    if symbols is None:
        if has_symtab is False:
            return frozenset()
        # Stripped section headers: the symbol count comes from DT_HASH or DT_GNU_HASH.
        symbols = dynamic.iter_symbols()

    names: set[str] = set()
    for sym in symbols:
        if len(sym.name) == 0 or sym["st_shndx"] == "SHN_UNDEF":
            continue
        if sym["st_info"]["bind"] not in _EXPORT_BINDS or sym["st_info"]["type"] not in _EXPORT_TYPES:
            continue
        if sym["st_other"]["visibility"] not in _EXPORT_VISIBILITIES:
            continue
        names.add(sym.name)
    return frozenset(names)


def _machine_number(value: str | int) -> int:
    if isinstance(value, int) is True:
        return value
    number: int | None = ENUM_E_MACHINE.get(value)
    if number is None:
        raise InvalidBinaryError(f"Unknown ELF machine {value!r}")
    return number


def rewrite_elf(
    data: bytes,
    *,
    replace_needed: Mapping[str, str] | None = None,
    soname: str | None = None,
    runpath: tuple[str, ...] | None = None,
) -> bytes:
    """Return a copy of ``data`` with updated dynamic linking references.

    :param data: Original ELF bytes (not modified).
    :param replace_needed: Old ``DT_NEEDED`` name -> new name.
    :param soname: New ``DT_SONAME`` (added when absent).
    :param runpath: New ``DT_RUNPATH`` entries; any ``DT_RPATH`` becomes ``DT_RUNPATH``.
    :returns: Patched ELF bytes.
    :raises InvalidBinaryError: If the image cannot be rewritten.
    """

    img: _Image = _load(data)
    lay: _Layout = img.layout
    replace: Mapping[str, str] = replace_needed if replace_needed is not None else {}

    old_strtab: bytes = data[img.strtab_off : img.strtab_off + img.strtab_size]
    strtab: bytearray = bytearray(old_strtab)
    if len(strtab) == 0 or strtab[-1] != 0:
        strtab.append(0)

    def intern(text: str) -> int:
        raw: bytes = text.encode("utf-8", errors="surrogateescape") + b"\x00"
        if len(raw) == 1 and len(strtab) > 0:
            return len(strtab) - 1
        pos: int = strtab.find(raw)
        if pos >= 0:
            return pos
        pos = len(strtab)
        strtab.extend(raw)
        return pos

    entries: list[tuple[int, int]] = list(img.dynamic)
    renamed_offsets: dict[int, int] = {}
    for i, (tag, val) in enumerate(entries):
        if tag == DT_NEEDED:
            name: str = img.read_str(val)
            new_name: str | None = replace.get(name)
            if new_name is not None:
                new_off: int = intern(new_name)
                entries[i] = (tag, new_off)
                renamed_offsets[val] = new_off

    if soname is not None:
        soname_off: int = intern(soname)
        entries = _set_dyn(entries, DT_SONAME, soname_off)

    if runpath is not None:
        runpath_off: int = intern(":".join(runpath))
        has_runpath: bool = any(t == DT_RUNPATH for t, _v in entries)
        converted: list[tuple[int, int]] = []
        for t, v in entries:
            if t == DT_RPATH:
                if has_runpath is True:
                    continue
                converted.append((DT_RUNPATH, runpath_off))
                has_runpath = True
                continue
            if t == DT_RUNPATH:
                converted.append((t, runpath_off))
                continue
            converted.append((t, v))
        entries = converted
        if has_runpath is False:
            entries = _set_dyn(entries, DT_RUNPATH, runpath_off)

    out: bytearray = bytearray(data)

    # .gnu.version_r names the library each requirement belongs to.
    for _lib, _names, file_field_off in _iter_verneed(img):
        old_val: int = lay.u32.unpack_from(data, file_field_off)[0]
        if old_val in renamed_offsets:
            lay.u32.pack_into(out, file_field_off, renamed_offsets[old_val])

    dyn_capacity: int = img.dyn_size // lay.dyn.size
    strtab_grew: bool = len(strtab) > img.strtab_size
    dynamic_fits: bool = len(entries) + 1 <= dyn_capacity

    if strtab_grew is False and dynamic_fits is True:
        _write_dynamic(out, lay, img.dyn_off, entries, dyn_capacity)
        return bytes(out)

    return _relocate(out, img, bytes(strtab), entries, move_dynamic=not dynamic_fits)


def _relocate(
    out: bytearray,
    img: _Image,
    strtab: bytes,
    entries: list[tuple[int, int]],
    *,
    move_dynamic: bool,
) -> bytes:
    """Move ``.dynstr`` (and optionally ``.dynamic``) into a new trailing PT_LOAD."""

    lay: _Layout = img.layout
    page: int = 0x10000 if img.machine in _LARGE_PAGE_MACHINES else 0x1000

    loads: list[_Phdr] = [p for p in img.phdrs if p.type == PT_LOAD]
    if len(loads) == 0:
        raise InvalidBinaryError("ELF image has no PT_LOAD segment")

    seg_off: int = _align(len(out), page)
    seg_vaddr: int = _align(max(p.vaddr + p.memsz for p in loads), page)

    n_phdrs: int = len(img.phdrs) + 1
    phdr_rel: int = 0
    strtab_rel: int = _align(phdr_rel + n_phdrs * img.phentsize, lay.word)
    end_rel: int = strtab_rel + len(strtab)
    dyn_rel: int = 0
    dyn_slots: int = 0
    if move_dynamic is True:
        dyn_rel = _align(end_rel, lay.word * 2)
        # Leave spare DT_NULL slots so later edits can stay in place.
        dyn_slots = len(entries) + 4
        end_rel = dyn_rel + dyn_slots * lay.dyn.size

    strtab_vaddr: int = seg_vaddr + strtab_rel
    new_entries: list[tuple[int, int]] = []
    for tag, val in entries:
        if tag == DT_STRTAB:
            new_entries.append((tag, strtab_vaddr))
        elif tag == DT_STRSZ:
            new_entries.append((tag, len(strtab)))
        else:
            new_entries.append((tag, val))

    new_load: _Phdr = _Phdr(
        type=PT_LOAD,
        flags=PF_R | (PF_W if move_dynamic is True else 0),
        offset=seg_off,
        vaddr=seg_vaddr,
        paddr=seg_vaddr,
        filesz=end_rel,
        memsz=end_rel,
        align=page,
    )

    phdrs: list[_Phdr] = []
    last_load_idx: int = max(i for i, p in enumerate(img.phdrs) if p.type == PT_LOAD)
    for i, p in enumerate(img.phdrs):
        q: _Phdr = _Phdr(p.type, p.flags, p.offset, p.vaddr, p.paddr, p.filesz, p.memsz, p.align)
        if q.type == PT_PHDR:
            q.offset = seg_off + phdr_rel
            q.vaddr = seg_vaddr + phdr_rel
            q.paddr = q.vaddr
            q.filesz = n_phdrs * img.phentsize
            q.memsz = q.filesz
        elif q.type == PT_DYNAMIC and move_dynamic is True:
            q.offset = seg_off + dyn_rel
            q.vaddr = seg_vaddr + dyn_rel
            q.paddr = q.vaddr
            q.filesz = dyn_slots * lay.dyn.size
            q.memsz = q.filesz
        phdrs.append(q)
        if i == last_load_idx:
            phdrs.append(new_load)

    segment: bytearray = bytearray(end_rel)
    for i, p in enumerate(phdrs):
        packed: bytes = lay.pack_phdr(p)
        segment[phdr_rel + i * img.phentsize : phdr_rel + i * img.phentsize + len(packed)] = packed
    segment[strtab_rel : strtab_rel + len(strtab)] = strtab

    if move_dynamic is True:
        _write_dynamic(segment, lay, dyn_rel, new_entries, dyn_slots)
    else:
        _write_dynamic(out, lay, img.dyn_off, new_entries, img.dyn_size // lay.dyn.size)

    # Section headers are informational for the loader but must stay coherent for tooling.
    for idx, s in enumerate(img.shdrs):
        changed: bool = False
        if s.type == SHT_STRTAB and s.offset == img.strtab_off and s.size == img.strtab_size:
            s.offset = seg_off + strtab_rel
            s.addr = strtab_vaddr
            s.size = len(strtab)
            changed = True
        elif s.type == SHT_DYNAMIC and move_dynamic is True:
            s.offset = seg_off + dyn_rel
            s.addr = seg_vaddr + dyn_rel
            s.size = dyn_slots * lay.dyn.size
            changed = True
        if changed is True:
            packed_s: bytes = lay.pack_shdr(s)
            pos: int = img.shoff + idx * img.shentsize
            out[pos : pos + len(packed_s)] = packed_s

    ehdr = list(img.ehdr_fields)
    ehdr[5] = seg_off  # e_phoff
    ehdr[10] = n_phdrs  # e_phnum
    out[0 : lay.ehdr.size] = lay.ehdr.pack(*ehdr)

    out.extend(b"\x00" * (seg_off - len(out)))
    out.extend(segment)
    return bytes(out)


def _write_dynamic(
    buf: bytearray,
    lay: _Layout,
    off: int,
    entries: list[tuple[int, int]],
    capacity: int,
) -> None:
    if len(entries) + 1 > capacity:
        raise InvalidBinaryError("Internal error: dynamic section overflow")
    pos: int = off
    for tag, val in entries:
        lay.dyn.pack_into(buf, pos, tag, val)
        pos += lay.dyn.size
    while pos < off + capacity * lay.dyn.size:
        lay.dyn.pack_into(buf, pos, DT_NULL, 0)
        pos += lay.dyn.size


def _set_dyn(entries: list[tuple[int, int]], tag: int, value: int) -> list[tuple[int, int]]:
    """Set ``tag`` to ``value``; a missing tag is inserted after the last DT_NEEDED."""

    for i, (t, _v) in enumerate(entries):
        if t == tag:
            updated: list[tuple[int, int]] = list(entries)
            updated[i] = (tag, value)
            return updated
    insert_at: int = 0
    for i, (t, _v) in enumerate(entries):
        if t == DT_NEEDED:
            insert_at = i + 1
    return [*entries[0:insert_at], (tag, value), *entries[insert_at:]]


def _load(data: bytes) -> _Image:
    if len(data) < 52 or is_elf(data) is False:
        raise InvalidBinaryError("Not an ELF image")

    ei_class: int = data[4]
    ei_data: int = data[5]
    if ei_class not in (1, 2):
        raise InvalidBinaryError(f"Unsupported ELF class {ei_class}")
    if ei_data not in (1, 2):
        raise InvalidBinaryError(f"Unsupported ELF byte order {ei_data}")
    lay: _Layout = _Layout(elfclass=64 if ei_class == 2 else 32, little_endian=ei_data == 1)

    try:
        ehdr_fields: list[int] = list(lay.ehdr.unpack_from(data, 0))
        machine: int = ehdr_fields[2]
        phoff: int = ehdr_fields[5]
        shoff: int = ehdr_fields[6]
        phentsize: int = ehdr_fields[9]
        phnum: int = ehdr_fields[10]
        shentsize: int = ehdr_fields[11]
        shnum: int = ehdr_fields[12]

        if phnum == 0 or phentsize < lay.phdr.size:
            raise InvalidBinaryError("ELF image has no program headers")
        phdrs: list[_Phdr] = [lay.unpack_phdr(data, phoff + i * phentsize) for i in range(phnum)]

        shdrs: list[_Shdr] = []
        if shoff != 0 and shentsize >= lay.shdr.size and shoff + shnum * shentsize <= len(data):
            shdrs = [lay.unpack_shdr(data, shoff + i * shentsize) for i in range(shnum)]
    except struct.error as e:
        raise InvalidBinaryError(f"Truncated ELF headers: {e}") from e

    dyn: _Phdr | None = None
    for p in phdrs:
        if p.type == PT_DYNAMIC:
            dyn = p
            break
    if dyn is None:
        raise InvalidBinaryError("ELF image has no PT_DYNAMIC segment (statically linked?)")
    if dyn.offset + dyn.filesz > len(data):
        raise InvalidBinaryError("ELF PT_DYNAMIC segment extends past end of file")

    dynamic: list[tuple[int, int]] = []
    pos: int = dyn.offset
    while pos + lay.dyn.size <= dyn.offset + dyn.filesz:
        tag, val = lay.dyn.unpack_from(data, pos)
        if tag == DT_NULL:
            break
        dynamic.append((tag, val))
        pos += lay.dyn.size

    img: _Image = _Image(
        data=data,
        layout=lay,
        machine=machine,
        phoff=phoff,
        phentsize=phentsize,
        phdrs=phdrs,
        shoff=shoff,
        shentsize=shentsize,
        shdrs=shdrs,
        dyn_off=dyn.offset,
        dyn_size=dyn.filesz,
        dynamic=dynamic,
        strtab_off=0,
        strtab_size=0,
        ehdr_fields=ehdr_fields,
    )

    strtab_addr: int | None = img.dyn_value(DT_STRTAB)
    strtab_size: int | None = img.dyn_value(DT_STRSZ)
    if strtab_addr is None or strtab_size is None:
        raise InvalidBinaryError("ELF dynamic section lacks DT_STRTAB/DT_STRSZ")
    img.strtab_off = img.vaddr_to_offset(strtab_addr)
    img.strtab_size = strtab_size
    if img.strtab_off + strtab_size > len(data):
        raise InvalidBinaryError("ELF .dynstr extends past end of file")
    return img


def _iter_verneed(img: _Image) -> list[tuple[str, tuple[str, ...], int]]:
    """Return ``(library, version names, file offset of vn_file)`` per Verneed entry."""

    addr: int | None = img.dyn_value(DT_VERNEED)
    count: int | None = img.dyn_value(DT_VERNEEDNUM)
    if addr is None or count is None:
        return []

    lay: _Layout = img.layout
    result: list[tuple[str, tuple[str, ...], int]] = []
    try:
        pos: int = img.vaddr_to_offset(addr)
        for _ in range(count):
            _vn_version, vn_cnt, vn_file, vn_aux, vn_next = lay.verneed.unpack_from(img.data, pos)
            names: list[str] = []
            aux_pos: int = pos + vn_aux
            for _ in range(vn_cnt):
                _hash, _flags, _other, vna_name, vna_next = lay.vernaux.unpack_from(img.data, aux_pos)
                names.append(img.read_str(vna_name))
                if vna_next == 0:
                    break
                aux_pos += vna_next
            result.append((img.read_str(vn_file), tuple(names), pos + 4))
            if vn_next == 0:
                break
            pos += vn_next
    except struct.error as e:
        raise InvalidBinaryError(f"Truncated ELF version requirements: {e}") from e
    return result


def _arch_name(machine: int, *, little_endian: bool) -> str:
    name: str = _MACHINES.get(machine, f"elf-machine-{machine}")
    if name == "ppc64" and little_endian is True:
        return "ppc64le"
    return name


def _split_path_list(value: str) -> tuple[str, ...]:
    return tuple(p for p in value.split(":") if len(p) > 0)


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment
