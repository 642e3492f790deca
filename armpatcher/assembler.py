from __future__ import annotations

import enum
import os
import pathlib
import re
import subprocess
import tempfile
from typing import NamedTuple

from typing_extensions import Protocol

from .coff import parse_object_file
from .errors import AssemblyFailure, ObjectDecodeError, ToolchainMissing

AREA_NAME = "ARM_AREA"
START_LABEL = "start"

ARMASM_RELATIVE_PATH = pathlib.Path("VC", "bin", "x86_arm", "armasm.exe")
VISUAL_STUDIO_TOOL_DIRS = (
    pathlib.Path("Common7", "IDE"),
    pathlib.Path("Common7", "Tools"),
    pathlib.Path("VC", "bin"),
    pathlib.Path("VC", "bin", "x86_arm"),
)

BANNER_PREFIXES = (
    "Microsoft (R) ARM Macro Assembler",
    "Copyright (C) Microsoft Corporation",
)

CONDITION_CODES = "EQ NE CS HS CC LO MI PL VS VC HI LS GE LT GT LE AL".split()
BRANCH_OPCODES = frozenset(
    op + cond for op in ("B", "BL") for cond in [""] + CONDITION_CODES
)
LOAD_OPCODE = "LDR"

HEX_LITERAL = re.compile(r"(?:0[xX])?([0-9A-Fa-f]+)")
OPCODE_END = re.compile(r"[\t .]")
EQU_DIRECTIVE = re.compile(r"[\t ]EQU[\t ]", re.IGNORECASE)


class CodeType(enum.Enum):
    ARM = "CODE32"
    THUMB = "CODE16"
    THUMB2 = "THUMB"


class AssemblyModule(NamedTuple):
    source: str
    padding: int


class AssemblerRunner(Protocol):
    def __call__(
        self, source_path: pathlib.Path, object_path: pathlib.Path
    ) -> tuple[int, str]: ...


def parse_absolute_address(operand: str) -> int | None:
    match = HEX_LITERAL.fullmatch(operand)
    if not match:
        return None
    value = int(match.group(1), 16)
    if value > 0xFFFFFFFF:
        return None
    return value


def address_operand(code: str) -> str | None:
    """Return the operand that may hold an absolute address, if the opcode takes one."""
    match = OPCODE_END.search(code)
    if not match or match.start() == 0:
        return None
    opcode = code[: match.start()].upper()
    if opcode == LOAD_OPCODE:
        return code[code.find(",") + 1 :].strip()
    if opcode in BRANCH_OPCODES:
        gap = re.search(r"[\t ]", code)
        return code[gap.start() + 1 :].strip() if gap else ""
    return None


def preprocess_fragment(fragment: str, origin: int) -> AssemblyModule:
    """Rewrite absolute addresses in an assembly fragment so it can be relocated.

    The assembler places the code at address 0 of the module. Every absolute
    load or branch target gets "+ start - origin" appended, so that the
    assembled value is correct once the bytes are copied to origin in the
    target image. Targets below origin would need a negative module address,
    so the largest shortfall is returned as padding to emit before start.
    """
    lines = []
    padding = 0
    for line in fragment.splitlines():
        code = line
        if ":" in line:
            label, _, code = line.partition(":")
            label = label.strip()
            if label:
                lines.append(label)

        # constant definitions have to stay in the first column
        if EQU_DIRECTIVE.search(code):
            lines.append(code.strip())
            continue

        code = code.strip()
        is_absolute = False
        operand = address_operand(code)
        if operand is not None:
            value = parse_absolute_address(operand)
            if value is not None:
                is_absolute = True
                if value < origin:
                    padding = max(padding, origin - value)

        if is_absolute:
            lines.append(f" {code} + {START_LABEL} - 0x{origin:08X}")
        else:
            lines.append(f" {code}")

    return AssemblyModule("".join(f"{line}\n" for line in lines), padding)


def build_module(
    fragment: str, origin: int, code_type: CodeType = CodeType.ARM
) -> AssemblyModule:
    processed = preprocess_fragment(fragment, origin)
    source = f" AREA {AREA_NAME}, CODE, READONLY\n"
    source += f" {code_type.value}\n"
    if processed.padding > 0:
        source += f" SPACE {processed.padding}\n"
    source += f"{START_LABEL}\n"
    source += processed.source
    source += " end\n"
    return AssemblyModule(source, processed.padding)


def clean_diagnostics(output: str, source_path: pathlib.Path | str) -> str:
    source_prefix = str(source_path)
    result = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith(BANNER_PREFIXES):
            continue
        if line.startswith(source_prefix):
            line = line[len(source_prefix) :]
            line = line[line.find(":") + 1 :].strip()
        result.append(line)
    return "\n".join(result)


class Armasm:
    """Runs the Microsoft ARM macro assembler as a blocking subprocess."""

    def __init__(
        self,
        executable: pathlib.Path,
        extra_paths: list[pathlib.Path] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.executable = executable
        self.extra_paths = extra_paths or []
        self.timeout = timeout

    @classmethod
    def from_toolchain(
        cls, toolchain: str | os.PathLike | None, timeout: float | None = None
    ) -> Armasm:
        if not toolchain:
            raise ToolchainMissing("ARM assembler toolchain path is not set")
        path = pathlib.Path(toolchain)
        extra_paths = []
        if path.is_dir():
            extra_paths = [path / d for d in VISUAL_STUDIO_TOOL_DIRS]
            path = path / ARMASM_RELATIVE_PATH
        if not path.is_file():
            raise ToolchainMissing(f"ARM assembler not found at {path}")
        return cls(path, extra_paths, timeout)

    def environment(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.extra_paths:
            parts = [env.get("PATH", "")] + [str(p) for p in self.extra_paths]
            env["PATH"] = os.pathsep.join(p for p in parts if p)
        return env

    def __call__(
        self, source_path: pathlib.Path, object_path: pathlib.Path
    ) -> tuple[int, str]:
        try:
            result = subprocess.run(
                [str(self.executable), "-g", str(source_path), str(object_path)],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=self.environment(),
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise AssemblyFailure(
                f"{self.executable.name} did not finish within {self.timeout} seconds"
            ) from None
        return result.returncode, result.stdout.decode("utf-8", errors="replace")


def compile_fragment(
    fragment: str,
    origin: int,
    code_type: CodeType = CodeType.ARM,
    toolchain: str | os.PathLike | None = None,
    runner: AssemblerRunner | None = None,
) -> bytes:
    """Assemble a code fragment so that it is correct when placed at origin.

    Either a runner callable or a toolchain path must be given; the runner
    takes the source and object file paths and returns the exit code and
    the assembler's output.
    """
    if runner is None:
        runner = Armasm.from_toolchain(toolchain)

    module = build_module(fragment, origin, code_type)
    with tempfile.TemporaryDirectory(prefix="armpatcher-") as temp_dir:
        source_path = pathlib.Path(temp_dir) / "fragment.asm"
        object_path = pathlib.Path(temp_dir) / "fragment.obj"
        source_path.write_text(module.source)
        returncode, output = runner(source_path, object_path)
        if returncode != 0:
            raise AssemblyFailure(clean_diagnostics(output, source_path), returncode)
        obj = parse_object_file(object_path.read_bytes())

    section = obj.get_section(AREA_NAME)
    if section is None:
        raise ObjectDecodeError(f"Assembler output has no {AREA_NAME} section")
    if len(section.raw_data) < module.padding:
        raise ObjectDecodeError(
            f"{AREA_NAME} section is 0x{len(section.raw_data):x} bytes, shorter than its 0x{module.padding:x} bytes of padding"
        )
    return section.raw_data[module.padding :]
