"""Hand-built COFF objects and PE images for the tests, packed with struct."""

from __future__ import annotations

import copy
import pathlib
import re
import struct

from armpatcher.catalog import PatchCatalog

COFF_HEADER = struct.Struct("<HHIIIHH")
SECTION_HEADER = struct.Struct("<8sIIIIIIHHI")
RELOCATION = struct.Struct("<IIH")
SYMBOL = struct.Struct("<8sIhHBB")
SECTION_DEFINITION = struct.Struct("<IHHIHB3x")
OPTIONAL_HEADER32 = struct.Struct("<HBB9I6H4I2H6I")
OPTIONAL_HEADER64 = struct.Struct("<HBB5IQ2I6H4I2H4Q2I")

ARMNT = 0x01C4
CODE_FLAGS = 0x60000020


def symbol(
    name: str | int,
    value: int = 0,
    section_number: int = 1,
    type: int = 0,
    storage_class: int = 3,
    aux_count: int = 0,
) -> bytes:
    """A symbol record; an int name is an offset into the string table."""
    if isinstance(name, int):
        raw_name = struct.pack("<II", 0, name)
    else:
        raw_name = name.encode().ljust(8, b"\x00")
    return SYMBOL.pack(raw_name, value, section_number, type, storage_class, aux_count)


def section_definition(length: int, relocations: int = 0, number: int = 1) -> bytes:
    return SECTION_DEFINITION.pack(length, relocations, 0, 0, number, 0)


def file_aux(name: str, records: int = 1) -> bytes:
    return name.encode().ljust(records * SYMBOL.size, b"\x00")


def build_object(
    sections: list[tuple[bytes, bytes, list[tuple[int, int, int]]]] = (),
    symbols: list[bytes] = (),
    strings: bytes = b"",
    machine: int = ARMNT,
    optional_header_size: int = 0,
    symbol_pointer: int | None = None,
) -> bytes:
    """Lay out header, section table, section data with relocations, symbols, strings.

    sections are (name, raw data, [(virtual address, symbol index, type)]),
    symbols are raw 18-byte records including auxiliary ones, strings is the
    string table without its length field.
    """
    offset = COFF_HEADER.size + SECTION_HEADER.size * len(sections)
    headers = b""
    body = b""
    for name, data, relocations in sections:
        raw_pointer = offset
        body += data
        offset += len(data)
        reloc_pointer = offset if relocations else 0
        for relocation in relocations:
            body += RELOCATION.pack(*relocation)
            offset += RELOCATION.size
        headers += SECTION_HEADER.pack(
            name,
            0,
            0,
            len(data),
            raw_pointer,
            reloc_pointer,
            0,
            len(relocations),
            0,
            CODE_FLAGS,
        )
    symbol_table = b"".join(symbols)
    header = COFF_HEADER.pack(
        machine,
        len(sections),
        0,
        offset if symbol_pointer is None else symbol_pointer,
        len(symbol_table) // SYMBOL.size,
        optional_header_size,
        0,
    )
    string_table = struct.pack("<I", len(strings) + 4) + strings
    return header + headers + body + symbol_table + string_table


def build_pe(
    sections: list[tuple[bytes, int, int, int]] = (),
    image_base: int = 0x400000,
    is_64bit: bool = False,
    size: int = 0x800,
    checksum: int = 0,
    data_directories: int = 16,
    e_lfanew: int = 0x80,
) -> bytearray:
    """A PE image of the given size; sections are (name, VirtualAddress, SizeOfRawData, PointerToRawData)."""
    image = bytearray(size)
    image[0:2] = b"MZ"
    image[0x3C:0x40] = struct.pack("<I", e_lfanew)
    ptr = e_lfanew
    image[ptr : ptr + 4] = b"PE\x00\x00"
    ptr += 4
    if is_64bit:
        optional_header = OPTIONAL_HEADER64.pack(
            0x20B, 14, 0,
            0, 0, 0, 0, 0,
            image_base,
            0x1000, 0x200,
            6, 0, 0, 0, 6, 0,
            0, size, 0x400, checksum,
            2, 0,
            0, 0, 0, 0,
            0, data_directories,
        )  # fmt: skip
        file_header = COFF_HEADER.pack(0xAA64, len(sections), 0, 0, 0, 240, 0x0022)
    else:
        optional_header = OPTIONAL_HEADER32.pack(
            0x10B, 14, 0,
            0, 0, 0, 0, 0, 0, image_base, 0x1000, 0x200,
            6, 0, 0, 0, 6, 0,
            0, size, 0x400, checksum,
            2, 0,
            0, 0, 0, 0, 0, data_directories,
        )  # fmt: skip
        file_header = COFF_HEADER.pack(ARMNT, len(sections), 0, 0, 0, 224, 0x0102)
    optional_header += bytes(16 * 8)
    image[ptr : ptr + len(file_header)] = file_header
    ptr += len(file_header)
    image[ptr : ptr + len(optional_header)] = optional_header
    ptr += len(optional_header)
    for name, virtual_address, raw_size, raw_pointer in sections:
        image[ptr : ptr + SECTION_HEADER.size] = SECTION_HEADER.pack(
            name, raw_size, virtual_address, raw_size, raw_pointer, 0, 0, 0, 0, CODE_FLAGS
        )
        ptr += SECTION_HEADER.size
    return image


def reference_checksum(data: bytes, checksum_offset: int) -> int:
    """The loader's checksum, folding the carry after every word."""
    image = bytearray(data)
    image[checksum_offset : checksum_offset + 4] = bytes(4)
    checksum = 0
    for i in range(0, len(image) & ~1, 2):
        checksum += image[i] | (image[i + 1] << 8)
        if checksum >> 16:
            checksum = (checksum & 0xFFFF) + (checksum >> 16)
    if len(image) % 2:
        checksum += image[-1]
        if checksum >> 16:
            checksum = (checksum & 0xFFFF) + (checksum >> 16)
    return checksum + len(image)


class MemoryCatalogStore:
    def __init__(self, catalog: PatchCatalog | None = None) -> None:
        self.catalog = catalog or PatchCatalog()
        self.saves = 0

    def load(self) -> PatchCatalog:
        return copy.deepcopy(self.catalog)

    def save(self, catalog: PatchCatalog) -> None:
        self.catalog = copy.deepcopy(catalog)
        self.saves += 1


class FakeAssembler:
    """Stands in for armasm: emits the SPACE padding as zeros, then fixed code."""

    def __init__(self, code: bytes = b"", returncode: int = 0, output: str = "") -> None:
        self.code = code
        self.returncode = returncode
        self.output = output
        self.source: str | None = None
        self.paths: tuple[pathlib.Path, pathlib.Path] | None = None

    def __call__(
        self, source_path: pathlib.Path, object_path: pathlib.Path
    ) -> tuple[int, str]:
        self.source = source_path.read_text()
        self.paths = (source_path, object_path)
        if self.returncode:
            return self.returncode, self.output.replace("SOURCE", str(source_path))
        match = re.search(r"^ SPACE (\d+)$", self.source, re.MULTILINE)
        padding = int(match.group(1)) if match else 0
        data = bytes(padding) + self.code
        object_path.write_bytes(
            build_object(
                sections=[(b"ARM_AREA", data, [])],
                symbols=[
                    symbol("ARM_AREA", storage_class=3, aux_count=1),
                    section_definition(len(data)),
                ],
            )
        )
        return 0, self.output
