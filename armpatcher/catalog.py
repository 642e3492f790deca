from __future__ import annotations

import os
import pathlib
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from typing_extensions import Protocol

from .errors import CatalogError

PATH_SEPARATORS = "\\/"


def normalise_name(name: str) -> str:
    return name.casefold()


def normalise_path(path: str) -> str:
    # TODO: "a\b" and "a/b" compare unequal; decide whether separators should be unified
    return path.lstrip(PATH_SEPARATORS).casefold()


@dataclass
class Patch:
    address: int
    original_bytes: bytes
    patched_bytes: bytes

    def __post_init__(self) -> None:
        if len(self.original_bytes) != len(self.patched_bytes):
            raise CatalogError(
                f"Patch at 0x{self.address:08x} has {len(self.original_bytes)} original bytes but {len(self.patched_bytes)} patched bytes"
            )


@dataclass
class TargetFile:
    path: str
    hash_original: bytes | None = None
    hash_patched: bytes | None = None
    patches: list[Patch] = field(default_factory=list)

    def find_patch(self, address: int) -> Patch | None:
        for patch in self.patches:
            if patch.address == address:
                return patch
        return None

    def set_patch(self, address: int, original_bytes: bytes, patched_bytes: bytes) -> Patch:
        """Add a patch, or replace the one already at address in place."""
        new_patch = Patch(address, bytes(original_bytes), bytes(patched_bytes))
        for i, patch in enumerate(self.patches):
            if patch.address == address:
                self.patches[i] = new_patch
                return new_patch
        self.patches.append(new_patch)
        return new_patch


@dataclass
class TargetVersion:
    description: str
    target_files: list[TargetFile] = field(default_factory=list)

    def find_file(self, path: str) -> TargetFile | None:
        for target_file in self.target_files:
            if normalise_path(target_file.path) == normalise_path(path):
                return target_file
        return None

    def get_or_create_file(self, path: str) -> TargetFile:
        target_file = self.find_file(path)
        if target_file is None:
            target_file = TargetFile(path)
            self.target_files.append(target_file)
        return target_file


@dataclass
class PatchDefinition:
    name: str
    target_versions: list[TargetVersion] = field(default_factory=list)

    def find_version(self, description: str) -> TargetVersion | None:
        for version in self.target_versions:
            if normalise_name(version.description) == normalise_name(description):
                return version
        return None

    def get_or_create_version(self, description: str) -> TargetVersion:
        version = self.find_version(description)
        if version is None:
            version = TargetVersion(description)
            self.target_versions.append(version)
        return version


@dataclass
class PatchCatalog:
    definitions: list[PatchDefinition] = field(default_factory=list)

    def find_definition(self, name: str) -> PatchDefinition | None:
        for definition in self.definitions:
            if normalise_name(definition.name) == normalise_name(name):
                return definition
        return None

    def get_or_create_definition(self, name: str) -> PatchDefinition:
        definition = self.find_definition(name)
        if definition is None:
            definition = PatchDefinition(name)
            self.definitions.append(definition)
        return definition

    def find_target_file(
        self, name: str, description: str, path: str
    ) -> TargetFile | None:
        definition = self.find_definition(name)
        version = definition.find_version(description) if definition else None
        return version.find_file(path) if version else None


class CatalogStore(Protocol):
    def load(self) -> PatchCatalog: ...

    def save(self, catalog: PatchCatalog) -> None: ...


def required(element: ET.Element, attribute: str) -> str:
    value = element.get(attribute)
    if value is None:
        raise CatalogError(f"<{element.tag}> is missing the {attribute} attribute")
    return value


def decode_hex(value: str | None, description: str) -> bytes | None:
    if value is None:
        return None
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise CatalogError(f"{description} is not a hex string: {value!r}") from None


def catalog_from_xml(root: ET.Element) -> PatchCatalog:
    if root.tag != "PatchDefinitions":
        raise CatalogError(f"Expected <PatchDefinitions> root element, found <{root.tag}>")
    catalog = PatchCatalog()
    for def_el in root.iterfind("PatchDefinition"):
        definition = PatchDefinition(required(def_el, "Name"))
        for ver_el in def_el.iterfind("TargetVersions/TargetVersion"):
            version = TargetVersion(required(ver_el, "Description"))
            for file_el in ver_el.iterfind("TargetFiles/TargetFile"):
                path = required(file_el, "Path")
                target_file = TargetFile(
                    path,
                    decode_hex(file_el.get("HashOriginal"), f"HashOriginal of {path}"),
                    decode_hex(file_el.get("HashPatched"), f"HashPatched of {path}"),
                )
                for patch_el in file_el.iterfind("Patches/Patch"):
                    try:
                        address = int(required(patch_el, "Address"), 0)
                    except ValueError:
                        raise CatalogError(
                            f"Bad patch address {patch_el.get('Address')!r} in {path}"
                        ) from None
                    target_file.patches.append(
                        Patch(
                            address,
                            decode_hex(required(patch_el, "OriginalBytes"), "OriginalBytes"),
                            decode_hex(required(patch_el, "PatchedBytes"), "PatchedBytes"),
                        )
                    )
                version.target_files.append(target_file)
            definition.target_versions.append(version)
        catalog.definitions.append(definition)
    return catalog


def catalog_to_xml(catalog: PatchCatalog) -> ET.Element:
    root = ET.Element("PatchDefinitions")
    for definition in catalog.definitions:
        def_el = ET.SubElement(root, "PatchDefinition", Name=definition.name)
        versions_el = ET.SubElement(def_el, "TargetVersions")
        for version in definition.target_versions:
            ver_el = ET.SubElement(versions_el, "TargetVersion", Description=version.description)
            files_el = ET.SubElement(ver_el, "TargetFiles")
            for target_file in version.target_files:
                file_el = ET.SubElement(files_el, "TargetFile", Path=target_file.path)
                if target_file.hash_original is not None:
                    file_el.set("HashOriginal", target_file.hash_original.hex().upper())
                if target_file.hash_patched is not None:
                    file_el.set("HashPatched", target_file.hash_patched.hex().upper())
                patches_el = ET.SubElement(file_el, "Patches")
                for patch in target_file.patches:
                    ET.SubElement(
                        patches_el,
                        "Patch",
                        Address=f"0x{patch.address:08X}",
                        OriginalBytes=patch.original_bytes.hex().upper(),
                        PatchedBytes=patch.patched_bytes.hex().upper(),
                    )
    return root


class XmlCatalogStore:
    """Keeps the patch catalog in an XML document on disk."""

    def __init__(self, path: str | os.PathLike, create: bool = False) -> None:
        self.path = pathlib.Path(path)
        self.create = create

    def load(self) -> PatchCatalog:
        if self.create and not self.path.exists():
            return PatchCatalog()
        try:
            tree = ET.parse(self.path)
        except ET.ParseError as e:
            raise CatalogError(f"{self.path} is not a valid patch catalog: {e}") from e
        return catalog_from_xml(tree.getroot())

    def save(self, catalog: PatchCatalog) -> None:
        """Write the catalog, replacing the file only once the new document reads back."""
        root = catalog_to_xml(catalog)
        ET.indent(root)
        data = ET.tostring(root, encoding="utf-8", xml_declaration=True)
        try:
            ET.fromstring(data)
        except ET.ParseError as e:
            raise CatalogError(f"Catalog can't be stored as XML: {e}") from e
        temp_path = self.path.with_name(f"{self.path.name}.tmp")
        temp_path.write_bytes(data)
        os.replace(temp_path, self.path)
