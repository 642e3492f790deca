from __future__ import annotations

import hashlib
import os
import pathlib

from mrcrowbar import utils

from .catalog import CatalogStore, Patch, TargetFile
from .errors import AddressTranslationError, CatalogError, ImageDecodeError
from .pe import ExecutableImage

PE_HEADER_POINTER_OFFSET = 0x3C
# NT signature + file header + the checksum's position in the optional header
CHECKSUM_FIELD_OFFSET = 0x58
CHECKSUM_SIZE = 4


def get_checksum_offset(data: bytes) -> int:
    if len(data) < PE_HEADER_POINTER_OFFSET + 4:
        raise ImageDecodeError("Image is too small to hold a PE header pointer")
    offset = (
        utils.from_uint32_le(data[PE_HEADER_POINTER_OFFSET : PE_HEADER_POINTER_OFFSET + 4])
        + CHECKSUM_FIELD_OFFSET
    )
    if offset + CHECKSUM_SIZE > len(data):
        raise ImageDecodeError(
            f"Checksum field at 0x{offset:08x} lies outside the image"
        )
    return offset


def calculate_checksum(data: bytes, checksum_offset: int | None = None) -> int:
    """Compute the PE image checksum the way the loader verifies it.

    The checksum field counts as zero. The file is summed as little-endian
    16-bit words with the carry folded back into the low 16 bits, a trailing
    odd byte is added as one more term, and the file length is added last.
    Folding once at the end gives the same result as folding after every word.
    """
    if checksum_offset is None:
        checksum_offset = get_checksum_offset(data)
    image = bytearray(data)
    image[checksum_offset : checksum_offset + CHECKSUM_SIZE] = bytes(CHECKSUM_SIZE)

    checksum = sum(utils.from_uint16_le_array(bytes(image[: len(image) & ~1])))
    if len(image) % 2:
        checksum += image[-1]
    while checksum >> 16:
        checksum = (checksum & 0xFFFF) + (checksum >> 16)
    return (checksum + len(image)) & 0xFFFFFFFF


def update_checksum(data: bytearray, checksum_offset: int | None = None) -> int:
    if checksum_offset is None:
        checksum_offset = get_checksum_offset(data)
    checksum = calculate_checksum(data, checksum_offset)
    data[checksum_offset : checksum_offset + CHECKSUM_SIZE] = utils.to_uint32_le(checksum)
    return checksum


def apply_patches(data: bytearray, patches: list[Patch]) -> None:
    for patch in patches:
        end = patch.address + len(patch.patched_bytes)
        if end > len(data):
            raise ImageDecodeError(
                f"Patch at 0x{patch.address:08x} runs past the end of the image (0x{len(data):x} bytes)"
            )
        data[patch.address : end] = patch.patched_bytes


def add_or_update_patch(
    input_path: str | os.PathLike,
    store: CatalogStore,
    definition_name: str,
    version_description: str,
    target_path: str,
    virtual_offset: int | None = None,
    code: bytes | None = None,
    output_path: str | os.PathLike | None = None,
) -> TargetFile:
    """Record a code patch for a target file and repair the image checksum.

    The definition, version and target file are created in the catalog if
    they don't exist yet. When code is given it replaces the bytes at
    virtual_offset; every patch recorded for the target file is then
    applied, the checksum recomputed and stored as a patch of its own.
    The catalog is saved through the store only once everything succeeded.
    """
    binary = bytearray(pathlib.Path(input_path).read_bytes())

    checksum_offset = get_checksum_offset(binary)
    original_checksum = utils.from_uint32_le(
        binary[checksum_offset : checksum_offset + CHECKSUM_SIZE]
    )

    image = ExecutableImage(bytes(binary))
    raw_offset = None
    if code is not None:
        if virtual_offset is None:
            raise AddressTranslationError("Code was given without a virtual offset")
        raw_offset = image.convert_virtual_to_raw(virtual_offset)
        if raw_offset + len(code) > len(binary):
            raise ImageDecodeError(
                f"{len(code)} bytes of code at 0x{raw_offset:08x} run past the end of the image"
            )

    catalog = store.load()
    target_file = (
        catalog.get_or_create_definition(definition_name)
        .get_or_create_version(version_description)
        .get_or_create_file(target_path)
    )
    target_file.path = target_path
    target_file.hash_original = hashlib.sha1(binary).digest()

    if code is not None:
        target_file.set_patch(
            raw_offset, binary[raw_offset : raw_offset + len(code)], code
        )
        print(
            f"Patch for virtual address 0x{virtual_offset:08x} recorded at file offset 0x{raw_offset:08x} ({len(code)} bytes)"
        )

    apply_patches(binary, target_file.patches)

    checksum = update_checksum(binary, checksum_offset)
    target_file.set_patch(
        checksum_offset,
        utils.to_uint32_le(original_checksum),
        utils.to_uint32_le(checksum),
    )
    print(f"Checksum 0x{original_checksum:08x} -> 0x{checksum:08x}")

    target_file.hash_patched = hashlib.sha1(binary).digest()

    if output_path is not None:
        pathlib.Path(output_path).write_bytes(binary)
        print(f"Patched file written to {output_path}")

    store.save(catalog)
    return target_file


def apply_target_file(
    input_path: str | os.PathLike,
    output_path: str | os.PathLike,
    store: CatalogStore,
    definition_name: str,
    version_description: str,
    target_path: str,
) -> bool:
    """Re-apply the patches recorded for a target file to a fresh copy of it.

    Returns False if the input already is the patched file, True once the
    patched output has been written. The catalog is only read.
    """
    target_file = store.load().find_target_file(
        definition_name, version_description, target_path
    )
    if target_file is None:
        raise CatalogError(
            f"No patch for {target_path} in {definition_name} / {version_description}"
        )

    binary = bytearray(pathlib.Path(input_path).read_bytes())
    digest = hashlib.sha1(binary).digest()
    if digest == target_file.hash_patched:
        print(f"{input_path} is already patched")
        return False
    if target_file.hash_original is not None and digest != target_file.hash_original:
        raise CatalogError(
            f"{input_path} does not match the original file recorded for {target_file.path}"
        )

    apply_patches(binary, target_file.patches)
    if (
        target_file.hash_patched is not None
        and hashlib.sha1(binary).digest() != target_file.hash_patched
    ):
        raise CatalogError(
            f"Patching {input_path} did not produce the file recorded for {target_file.path}"
        )

    pathlib.Path(output_path).write_bytes(binary)
    print(f"Applied {len(target_file.patches)} patches to {input_path}, written to {output_path}")
    return True
