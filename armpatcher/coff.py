from __future__ import annotations

import enum
from typing import NamedTuple, Union

from mrcrowbar import models as mrc
from mrcrowbar import utils

from .errors import (
    MissingSymbolTable,
    ObjectOutOfBounds,
    ObjectTooSmall,
    UnexpectedOptionalHeader,
)

COFF_HEADER_SIZE = 20
SECTION_HEADER_SIZE = 40
SYMBOL_SIZE = 18
RELOCATION_SIZE = 10
STRING_TABLE_LENGTH_SIZE = 4

FILE_SYMBOL_NAME = ".file"


class Machine(enum.IntEnum):
    UNKNOWN = 0x0000
    I386 = 0x014C
    ARM = 0x01C0
    THUMB = 0x01C2
    ARMNT = 0x01C4
    AMD64 = 0x8664
    ARM64 = 0xAA64


class X86RelocationType(enum.IntEnum):
    ABSOLUTE = 0x00
    DIR16 = 0x01
    REL16 = 0x02
    DIR32 = 0x06
    DIR32NB = 0x07
    SEG12 = 0x09
    SECTION = 0x0A
    SECREL = 0x0B
    TOKEN = 0x0C
    SECREL7 = 0x0D
    REL32 = 0x14


class AMD64RelocationType(enum.IntEnum):
    ABSOLUTE = 0x00
    ADDR64 = 0x01
    ADDR32 = 0x02
    ADDR32NB = 0x03
    REL32 = 0x04
    REL32_1 = 0x05
    REL32_2 = 0x06
    REL32_3 = 0x07
    REL32_4 = 0x08
    REL32_5 = 0x09
    SECTION = 0x0A
    SECREL = 0x0B
    SECREL7 = 0x0C
    TOKEN = 0x0D
    SREL32 = 0x0E
    PAIR = 0x0F
    SSPAN32 = 0x10


class ARMRelocationType(enum.IntEnum):
    ABSOLUTE = 0x00
    ADDR32 = 0x01
    ADDR32NB = 0x02
    BRANCH24 = 0x03
    BRANCH11 = 0x04
    TOKEN = 0x05
    BLX24 = 0x08
    BLX11 = 0x09
    REL32 = 0x0A
    SECTION = 0x0E
    SECREL = 0x0F
    MOV32A = 0x10
    MOV32T = 0x11
    BRANCH20T = 0x12
    BRANCH24T = 0x14
    BLX23T = 0x15


class ARM64RelocationType(enum.IntEnum):
    ABSOLUTE = 0x00
    ADDR32 = 0x01
    ADDR32NB = 0x02
    BRANCH26 = 0x03
    PAGEBASE_REL21 = 0x04
    REL21 = 0x05
    PAGEOFFSET_12A = 0x06
    PAGEOFFSET_12L = 0x07
    SECREL = 0x08
    SECREL_LOW12A = 0x09
    SECREL_HIGH12A = 0x0A
    SECREL_LOW12L = 0x0B
    TOKEN = 0x0C
    SECTION = 0x0D
    ADDR64 = 0x0E
    BRANCH19 = 0x0F
    BRANCH14 = 0x10
    REL32 = 0x11


class RelocationArch(enum.Enum):
    X86 = "x86"
    AMD64 = "amd64"
    ARM = "arm"
    ARM64 = "arm64"


RELOCATION_TYPES: dict[RelocationArch, type[enum.IntEnum]] = {
    RelocationArch.X86: X86RelocationType,
    RelocationArch.AMD64: AMD64RelocationType,
    RelocationArch.ARM: ARMRelocationType,
    RelocationArch.ARM64: ARM64RelocationType,
}


def relocation_arch(machine: int) -> RelocationArch:
    # anything we don't recognise gets the x86 interpretation
    if machine == Machine.AMD64:
        return RelocationArch.AMD64
    if machine in (Machine.ARM, Machine.THUMB, Machine.ARMNT):
        return RelocationArch.ARM
    if machine == Machine.ARM64:
        return RelocationArch.ARM64
    return RelocationArch.X86


class RelocationType(NamedTuple):
    arch: RelocationArch
    value: int

    @property
    def kind(self) -> enum.IntEnum | None:
        """The architecture's relocation type, or None if the value is undefined there."""
        try:
            return RELOCATION_TYPES[self.arch](self.value)
        except ValueError:
            return None

    @property
    def mnemonic(self) -> str:
        kind = self.kind
        return kind.name if kind is not None else "UNKNOWN"


class CoffHeader(mrc.Block):
    machine = mrc.UInt16_LE()
    number_of_sections = mrc.UInt16_LE()
    time_date_stamp = mrc.UInt32_LE()
    pointer_to_symbol_table = mrc.UInt32_LE()
    number_of_symbols = mrc.UInt32_LE()
    size_of_optional_header = mrc.UInt16_LE()
    characteristics = mrc.UInt16_LE()


class SectionHeader(mrc.Block):
    name = mrc.Bytes(length=8)
    virtual_size = mrc.UInt32_LE()
    virtual_address = mrc.UInt32_LE()
    size_of_raw_data = mrc.UInt32_LE()
    pointer_to_raw_data = mrc.UInt32_LE()
    pointer_to_relocations = mrc.UInt32_LE()
    pointer_to_linenumbers = mrc.UInt32_LE()
    number_of_relocations = mrc.UInt16_LE()
    number_of_linenumbers = mrc.UInt16_LE()
    characteristics = mrc.UInt32_LE()


class RelocationEntry(mrc.Block):
    virtual_address = mrc.UInt32_LE()
    symbol_table_index = mrc.UInt32_LE()
    type = mrc.UInt16_LE()


class SymbolTableEntry(mrc.Block):
    name = mrc.Bytes(length=8)
    value = mrc.UInt32_LE()
    section_number = mrc.Int16_LE()
    type = mrc.UInt16_LE()
    storage_class = mrc.UInt8()
    number_of_aux_symbols = mrc.UInt8()


# auxiliary record following the symbol for a section
class SectionDefinition(mrc.Block):
    length = mrc.UInt32_LE()
    number_of_relocations = mrc.UInt16_LE()
    number_of_linenumbers = mrc.UInt16_LE()
    checksum = mrc.UInt32_LE()
    number = mrc.UInt16_LE()
    selection = mrc.UInt8()
    unused = mrc.Bytes(length=3)


class Relocation(NamedTuple):
    virtual_address: int
    symbol_table_index: int
    type: RelocationType
    name: str | None


class Section(NamedTuple):
    name: str
    header: SectionHeader
    raw_data: bytes
    relocations: list[Relocation]


AuxSymbol = Union[str, SectionDefinition, None]


class Symbol(NamedTuple):
    name: str
    value: int
    section_number: int
    type: int
    storage_class: int
    number_of_aux_symbols: int
    aux: AuxSymbol


class ObjectFile(NamedTuple):
    header: CoffHeader
    sections: list[Section]
    symbols: list[Symbol]

    def get_section(self, name: str) -> Section | None:
        for section in self.sections:
            if section.name == name:
                return section
        return None


def check_window(file_size: int, offset: int, length: int, description: str) -> None:
    if offset + length > file_size:
        raise ObjectOutOfBounds(
            f"{description} (0x{offset:08x}+0x{length:x}) exceeds the object file size 0x{file_size:x}"
        )


def decode_section_name(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def decode_symbol_name(raw: bytes) -> str:
    # a zero high dword means the low dword is an offset into the string table
    if raw[0:4] == b"\x00\x00\x00\x00":
        return f"/{utils.from_uint32_le(raw[4:8])}"
    return raw.strip(b"\x00").decode("utf-8", errors="replace")


def resolve_name(name: str, string_table: bytes) -> str:
    """Replace a "/<offset>" name with the string it points to in the string table.

    Offsets count from the start of the table including its 4-byte length
    field, which is not part of string_table.
    """
    if not name.startswith("/"):
        return name
    index_text = name[1:]
    if not index_text.isdigit():
        return name
    index = int(index_text) - STRING_TABLE_LENGTH_SIZE
    if index < 0 or index >= len(string_table):
        raise ObjectOutOfBounds(
            f"String table reference {name} exceeds the string table length 0x{len(string_table):x}"
        )
    end = string_table.find(b"\x00", index)
    if end < 0:
        end = len(string_table)
    return string_table[index:end].decode("utf-8", errors="replace")


def parse_relocations(
    data: bytes, header: SectionHeader, arch: RelocationArch, section_name: str
) -> list[Relocation]:
    if header.pointer_to_relocations == 0 or header.number_of_relocations == 0:
        return []
    check_window(
        len(data),
        header.pointer_to_relocations,
        header.number_of_relocations * RELOCATION_SIZE,
        f"Relocation table of section {section_name}",
    )
    relocations = []
    for i in range(header.number_of_relocations):
        start = header.pointer_to_relocations + i * RELOCATION_SIZE
        entry = RelocationEntry(data[start : start + RELOCATION_SIZE])
        relocations.append(
            Relocation(
                entry.virtual_address,
                entry.symbol_table_index,
                RelocationType(arch, entry.type),
                None,
            )
        )
    return relocations


def parse_sections(data: bytes, header: CoffHeader) -> list[Section]:
    check_window(
        len(data),
        COFF_HEADER_SIZE,
        header.number_of_sections * SECTION_HEADER_SIZE,
        "Section table",
    )
    arch = relocation_arch(header.machine)
    sections = []
    for i in range(header.number_of_sections):
        start = COFF_HEADER_SIZE + i * SECTION_HEADER_SIZE
        section_header = SectionHeader(data[start : start + SECTION_HEADER_SIZE])
        name = decode_section_name(section_header.name)
        check_window(
            len(data),
            section_header.pointer_to_raw_data,
            section_header.size_of_raw_data,
            f"Raw data of section {name}",
        )
        raw_data = data[
            section_header.pointer_to_raw_data : section_header.pointer_to_raw_data
            + section_header.size_of_raw_data
        ]
        relocations = parse_relocations(data, section_header, arch, name)
        sections.append(Section(name, section_header, raw_data, relocations))
    return sections


def parse_string_table(data: bytes, header: CoffHeader) -> bytes:
    offset = header.pointer_to_symbol_table + header.number_of_symbols * SYMBOL_SIZE
    check_window(len(data), offset, STRING_TABLE_LENGTH_SIZE, "String table")
    length = utils.from_uint32_le(data[offset : offset + STRING_TABLE_LENGTH_SIZE])
    check_window(len(data), offset, length, "String table")
    if length < STRING_TABLE_LENGTH_SIZE:
        return b""
    return data[offset + STRING_TABLE_LENGTH_SIZE : offset + length]


def parse_symbols(
    data: bytes, header: CoffHeader, section_names: set[str]
) -> list[Symbol | None]:
    """Decode the symbol table, leaving None in the slots held by auxiliary records."""
    count = header.number_of_symbols
    symbols: list[Symbol | None] = [None] * count
    i = 0
    while i < count:
        start = header.pointer_to_symbol_table + i * SYMBOL_SIZE
        entry = SymbolTableEntry(data[start : start + SYMBOL_SIZE])
        name = decode_symbol_name(entry.name)
        aux_count = entry.number_of_aux_symbols
        if i + 1 + aux_count > count:
            raise ObjectOutOfBounds(
                f"Auxiliary records of symbol {name} run past the end of the symbol table"
            )
        aux: AuxSymbol = None
        if aux_count:
            aux_start = start + SYMBOL_SIZE
            aux_data = data[aux_start : aux_start + aux_count * SYMBOL_SIZE]
            if name == FILE_SYMBOL_NAME:
                aux = aux_data.rstrip(b"\x00").decode("utf-8", errors="replace")
            elif name in section_names:
                aux = SectionDefinition(aux_data[:SYMBOL_SIZE])
        symbols[i] = Symbol(
            name,
            entry.value,
            entry.section_number,
            entry.type,
            entry.storage_class,
            aux_count,
            aux,
        )
        i += 1 + aux_count
    return symbols


def parse_object_file(data: bytes) -> ObjectFile:
    """Decode a COFF relocatable object file.

    Every offset and length read from the file is checked against the file
    size before it is used; malformed input raises a subclass of
    ObjectDecodeError.
    """
    if len(data) < COFF_HEADER_SIZE:
        raise ObjectTooSmall(
            f"Object file is {len(data)} bytes, too small to store a COFF header"
        )
    header = CoffHeader(data[:COFF_HEADER_SIZE])
    if header.size_of_optional_header != 0:
        raise UnexpectedOptionalHeader(
            f"COFF header declares a {header.size_of_optional_header} byte optional header; object files don't have one"
        )
    if header.pointer_to_symbol_table == 0:
        raise MissingSymbolTable("Object file has no symbol table")

    sections = parse_sections(data, header)
    string_table = parse_string_table(data, header)
    raw_symbols = parse_symbols(data, header, {s.name for s in sections})

    sections = [
        s._replace(name=resolve_name(s.name, string_table)) for s in sections
    ]
    raw_symbols = [
        s._replace(name=resolve_name(s.name, string_table)) if s else None
        for s in raw_symbols
    ]

    # relocations refer to symbols by their raw index, auxiliary slots included
    for section in sections:
        for j, relocation in enumerate(section.relocations):
            if relocation.symbol_table_index >= len(raw_symbols):
                raise ObjectOutOfBounds(
                    f"Relocation in section {section.name} refers to symbol {relocation.symbol_table_index}, past the end of the symbol table"
                )
            symbol = raw_symbols[relocation.symbol_table_index]
            section.relocations[j] = relocation._replace(
                name=symbol.name if symbol else None
            )

    symbols = [s for s in raw_symbols if s is not None]
    return ObjectFile(header, sections, symbols)
