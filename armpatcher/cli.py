from __future__ import annotations

import argparse
import os
import pathlib
import sys

from .assembler import Armasm, CodeType, compile_fragment
from .catalog import XmlCatalogStore
from .coff import ObjectFile, SectionDefinition, parse_object_file
from .disasm import disassemble
from .errors import ArmPatcherError
from .patch import add_or_update_patch, apply_target_file
from .pe import ExecutableImage
from .version import __version__

TOOLCHAIN_ENV = "ARMPATCHER_TOOLCHAIN"

CODE_TYPES = {
    "arm": CodeType.ARM,
    "thumb": CodeType.THUMB,
    "thumb2": CodeType.THUMB2,
}


def address(value: str) -> int:
    return int(value, 0)


def add_compile_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--mode",
        choices=CODE_TYPES,
        default="arm",
        help="Instruction set to assemble for: 32-bit ARM, 16-bit Thumb or mixed Thumb-2.",
    )
    parser.add_argument(
        "--toolchain",
        default=os.environ.get(TOOLCHAIN_ENV),
        help=f"Path to armasm.exe or to a Visual Studio install with the ARM SDK (default: ${TOOLCHAIN_ENV}).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up on the assembler after this many seconds.",
    )


def compile_from_args(args: argparse.Namespace, fragment_path: pathlib.Path) -> bytes:
    runner = Armasm.from_toolchain(args.toolchain, args.timeout)
    return compile_fragment(
        fragment_path.read_text(), args.origin, CODE_TYPES[args.mode], runner=runner
    )


def print_object(obj: ObjectFile) -> None:
    header = obj.header
    print(
        f"Machine 0x{header.machine:04x}, {header.number_of_sections} sections, {header.number_of_symbols} symbol records"
    )
    for section in obj.sections:
        print(
            f"Section {section.name}: 0x{len(section.raw_data):x} bytes at 0x{section.header.pointer_to_raw_data:08x}, flags 0x{section.header.characteristics:08x}"
        )
        for reloc in section.relocations:
            print(
                f"    0x{reloc.virtual_address:08x} {reloc.type.mnemonic} {reloc.name}"
            )
    for symbol in obj.symbols:
        line = f"Symbol {symbol.name}: value 0x{symbol.value:08x}, section {symbol.section_number}, class {symbol.storage_class}"
        if isinstance(symbol.aux, str):
            line += f", file {symbol.aux}"
        elif isinstance(symbol.aux, SectionDefinition):
            line += f", length 0x{symbol.aux.length:x}"
        print(line)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Assemble ARM code fragments and patch them into PE images"
    )
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Show program's version number and exit.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    compile_parser = subparsers.add_parser(
        "compile", help="Assemble a fragment and print the resulting bytes."
    )
    compile_parser.add_argument(
        "FRAGMENT", type=pathlib.Path, help="File containing the assembly fragment"
    )
    compile_parser.add_argument(
        "--origin",
        type=address,
        required=True,
        help="Virtual address the code will be placed at.",
    )
    compile_parser.add_argument(
        "--disassemble",
        action="store_true",
        help="Print a disassembly listing of the compiled code.",
    )
    add_compile_arguments(compile_parser)

    add_parser = subparsers.add_parser(
        "add",
        help="Add or update a patch in the catalog and fix up the image checksum.",
    )
    add_parser.add_argument("INPUT", type=pathlib.Path, help="Image to patch")
    add_parser.add_argument("CATALOG", type=pathlib.Path, help="Patch catalog XML file")
    add_parser.add_argument("--definition", required=True, help="Patch definition name")
    add_parser.add_argument(
        "--target-version", required=True, help="Description of the target version"
    )
    add_parser.add_argument(
        "--target-path",
        required=True,
        help="Path of the image relative to the root of the patch definition",
    )
    add_parser.add_argument(
        "--origin", type=address, help="Virtual address to place the code at."
    )
    add_parser.add_argument(
        "--fragment", type=pathlib.Path, help="File containing the assembly fragment"
    )
    add_parser.add_argument(
        "--output", type=pathlib.Path, help="Write the patched image here"
    )
    add_parser.add_argument(
        "--new-catalog",
        action="store_true",
        help="Start an empty catalog if CATALOG doesn't exist.",
    )
    add_compile_arguments(add_parser)

    apply_parser = subparsers.add_parser(
        "apply", help="Apply the patches recorded in the catalog to an image."
    )
    apply_parser.add_argument("INPUT", type=pathlib.Path, help="Unpatched image")
    apply_parser.add_argument("OUTPUT", type=pathlib.Path, help="Output file name")
    apply_parser.add_argument("CATALOG", type=pathlib.Path, help="Patch catalog XML file")
    apply_parser.add_argument("--definition", required=True, help="Patch definition name")
    apply_parser.add_argument(
        "--target-version", required=True, help="Description of the target version"
    )
    apply_parser.add_argument(
        "--target-path", required=True, help="Path of the image within the definition"
    )

    objdump_parser = subparsers.add_parser(
        "objdump", help="List the sections, relocations and symbols of an object file."
    )
    objdump_parser.add_argument("OBJECT", type=pathlib.Path, help="COFF object file")

    v2r_parser = subparsers.add_parser(
        "v2r", help="Translate a virtual address to a file offset."
    )
    v2r_parser.add_argument("IMAGE", type=pathlib.Path, help="PE image")
    v2r_parser.add_argument("ADDRESS", type=address, help="Virtual address")

    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    try:
        if args.command == "compile":
            code = compile_from_args(args, args.FRAGMENT)
            print(code.hex())
            if args.disassemble:
                for line in disassemble(code, args.origin, CODE_TYPES[args.mode]):
                    print(line)
        elif args.command == "add":
            if (args.fragment is None) != (args.origin is None):
                parser.error("--fragment and --origin must be given together")
            code = None
            if args.fragment is not None:
                code = compile_from_args(args, args.fragment)
            add_or_update_patch(
                args.INPUT,
                XmlCatalogStore(args.CATALOG, create=args.new_catalog),
                args.definition,
                args.target_version,
                args.target_path,
                args.origin,
                code,
                args.output,
            )
            print(f"Patch definitions written to {args.CATALOG}")
        elif args.command == "apply":
            apply_target_file(
                args.INPUT,
                args.OUTPUT,
                XmlCatalogStore(args.CATALOG),
                args.definition,
                args.target_version,
                args.target_path,
            )
        elif args.command == "objdump":
            print_object(parse_object_file(args.OBJECT.read_bytes()))
        elif args.command == "v2r":
            image = ExecutableImage(args.IMAGE.read_bytes())
            print(f"0x{image.convert_virtual_to_raw(args.ADDRESS):08x}")
    except (ArmPatcherError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
