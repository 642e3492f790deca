from __future__ import annotations

from mrcrowbar import models as mrc

from .coff import (
    COFF_HEADER_SIZE,
    SECTION_HEADER_SIZE,
    CoffHeader,
    SectionHeader,
    decode_section_name,
)
from .errors import AddressTranslationError, ImageDecodeError

DOS_MAGIC = 0x5A4D  # MZ
PE_SIGNATURE = b"PE\x00\x00"
NUMBER_OF_DATA_DIRECTORIES = 16

IMAGE_FILE_32BIT_MACHINE = 0x0100

DOS_HEADER_SIZE = 0x40
OPTIONAL_HEADER32_SIZE = 224
OPTIONAL_HEADER64_SIZE = 240


class DosHeader(mrc.Block):
    e_magic = mrc.UInt16_LE()
    e_cblp = mrc.UInt16_LE()
    e_cp = mrc.UInt16_LE()
    e_crlc = mrc.UInt16_LE()
    e_cparhdr = mrc.UInt16_LE()
    e_minalloc = mrc.UInt16_LE()
    e_maxalloc = mrc.UInt16_LE()
    e_ss = mrc.UInt16_LE()
    e_sp = mrc.UInt16_LE()
    e_csum = mrc.UInt16_LE()
    e_ip = mrc.UInt16_LE()
    e_cs = mrc.UInt16_LE()
    e_lfarlc = mrc.UInt16_LE()
    e_ovno = mrc.UInt16_LE()
    e_res1 = mrc.Bytes(length=8)
    e_oemid = mrc.UInt16_LE()
    e_oeminfo = mrc.UInt16_LE()
    e_res2 = mrc.Bytes(length=20)
    e_lfanew = mrc.UInt32_LE()


class DataDirectory(mrc.Block):
    virtual_address = mrc.UInt32_LE()
    size = mrc.UInt32_LE()


class OptionalHeader32(mrc.Block):
    magic = mrc.UInt16_LE()
    major_linker_version = mrc.UInt8()
    minor_linker_version = mrc.UInt8()
    size_of_code = mrc.UInt32_LE()
    size_of_initialized_data = mrc.UInt32_LE()
    size_of_uninitialized_data = mrc.UInt32_LE()
    address_of_entry_point = mrc.UInt32_LE()
    base_of_code = mrc.UInt32_LE()
    base_of_data = mrc.UInt32_LE()
    image_base = mrc.UInt32_LE()
    section_alignment = mrc.UInt32_LE()
    file_alignment = mrc.UInt32_LE()
    major_operating_system_version = mrc.UInt16_LE()
    minor_operating_system_version = mrc.UInt16_LE()
    major_image_version = mrc.UInt16_LE()
    minor_image_version = mrc.UInt16_LE()
    major_subsystem_version = mrc.UInt16_LE()
    minor_subsystem_version = mrc.UInt16_LE()
    win32_version_value = mrc.UInt32_LE()
    size_of_image = mrc.UInt32_LE()
    size_of_headers = mrc.UInt32_LE()
    checksum = mrc.UInt32_LE()
    subsystem = mrc.UInt16_LE()
    dll_characteristics = mrc.UInt16_LE()
    size_of_stack_reserve = mrc.UInt32_LE()
    size_of_stack_commit = mrc.UInt32_LE()
    size_of_heap_reserve = mrc.UInt32_LE()
    size_of_heap_commit = mrc.UInt32_LE()
    loader_flags = mrc.UInt32_LE()
    number_of_rva_and_sizes = mrc.UInt32_LE()
    data_directories = mrc.BlockField(DataDirectory, count=NUMBER_OF_DATA_DIRECTORIES)


class OptionalHeader64(mrc.Block):
    magic = mrc.UInt16_LE()
    major_linker_version = mrc.UInt8()
    minor_linker_version = mrc.UInt8()
    size_of_code = mrc.UInt32_LE()
    size_of_initialized_data = mrc.UInt32_LE()
    size_of_uninitialized_data = mrc.UInt32_LE()
    address_of_entry_point = mrc.UInt32_LE()
    base_of_code = mrc.UInt32_LE()
    image_base = mrc.UInt64_LE()
    section_alignment = mrc.UInt32_LE()
    file_alignment = mrc.UInt32_LE()
    major_operating_system_version = mrc.UInt16_LE()
    minor_operating_system_version = mrc.UInt16_LE()
    major_image_version = mrc.UInt16_LE()
    minor_image_version = mrc.UInt16_LE()
    major_subsystem_version = mrc.UInt16_LE()
    minor_subsystem_version = mrc.UInt16_LE()
    win32_version_value = mrc.UInt32_LE()
    size_of_image = mrc.UInt32_LE()
    size_of_headers = mrc.UInt32_LE()
    checksum = mrc.UInt32_LE()
    subsystem = mrc.UInt16_LE()
    dll_characteristics = mrc.UInt16_LE()
    size_of_stack_reserve = mrc.UInt64_LE()
    size_of_stack_commit = mrc.UInt64_LE()
    size_of_heap_reserve = mrc.UInt64_LE()
    size_of_heap_commit = mrc.UInt64_LE()
    loader_flags = mrc.UInt32_LE()
    number_of_rva_and_sizes = mrc.UInt32_LE()
    data_directories = mrc.BlockField(DataDirectory, count=NUMBER_OF_DATA_DIRECTORIES)


def read_struct(data: bytes, offset: int, size: int, description: str) -> bytes:
    if offset + size > len(data):
        raise ImageDecodeError(
            f"{description} at 0x{offset:08x} runs past the end of the image"
        )
    return data[offset : offset + size]


class ExecutableImage:
    """Headers of a PE image, enough to map virtual addresses to file offsets."""

    def __init__(self, data: bytes) -> None:
        self.dos_header = DosHeader(
            read_struct(data, 0, DOS_HEADER_SIZE, "DOS header")
        )
        if self.dos_header.e_magic != DOS_MAGIC:
            raise ImageDecodeError("File is not a portable executable")

        ptr = self.dos_header.e_lfanew
        signature = read_struct(data, ptr, len(PE_SIGNATURE), "PE signature")
        if signature != PE_SIGNATURE:
            raise ImageDecodeError("Invalid portable executable signature in NT header")
        ptr += len(PE_SIGNATURE)

        self.file_header = CoffHeader(
            read_struct(data, ptr, COFF_HEADER_SIZE, "File header")
        )
        ptr += COFF_HEADER_SIZE

        self.optional_header: OptionalHeader32 | OptionalHeader64
        if self.is_32bit:
            self.optional_header = OptionalHeader32(
                read_struct(data, ptr, OPTIONAL_HEADER32_SIZE, "Optional header")
            )
            ptr += OPTIONAL_HEADER32_SIZE
        else:
            self.optional_header = OptionalHeader64(
                read_struct(data, ptr, OPTIONAL_HEADER64_SIZE, "Optional header")
            )
            ptr += OPTIONAL_HEADER64_SIZE
        if self.optional_header.number_of_rva_and_sizes != NUMBER_OF_DATA_DIRECTORIES:
            raise ImageDecodeError(
                f"Invalid number of data directories in NT header ({self.optional_header.number_of_rva_and_sizes})"
            )

        self.sections: list[SectionHeader] = []
        for i in range(self.file_header.number_of_sections):
            self.sections.append(
                SectionHeader(
                    read_struct(data, ptr, SECTION_HEADER_SIZE, f"Section header {i}")
                )
            )
            ptr += SECTION_HEADER_SIZE

    @property
    def is_32bit(self) -> bool:
        return bool(self.file_header.characteristics & IMAGE_FILE_32BIT_MACHINE)

    @property
    def image_base(self) -> int:
        return self.optional_header.image_base

    @property
    def checksum(self) -> int:
        return self.optional_header.checksum

    def find_section(self, virtual_address: int) -> SectionHeader | None:
        for section in self.sections:
            start = self.image_base + section.virtual_address
            if start <= virtual_address < start + section.size_of_raw_data:
                return section
        return None

    def convert_virtual_to_raw(self, virtual_address: int) -> int:
        section = self.find_section(virtual_address)
        if section is None:
            raise AddressTranslationError(
                f"No section contains virtual address 0x{virtual_address:08x}"
            )
        if not decode_section_name(section.name) or section.size_of_raw_data == 0:
            raise AddressTranslationError(
                f"Virtual address 0x{virtual_address:08x} falls in an unnamed or empty section"
            )
        return section.pointer_to_raw_data + (
            virtual_address - section.virtual_address - self.image_base
        )
