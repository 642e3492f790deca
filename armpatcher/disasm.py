from __future__ import annotations

import capstone

from .assembler import CodeType


def disassemble(code: bytes, origin: int, code_type: CodeType = CodeType.ARM) -> list[str]:
    mode = capstone.CS_MODE_ARM if code_type is CodeType.ARM else capstone.CS_MODE_THUMB
    md = capstone.Cs(capstone.CS_ARCH_ARM, mode)
    return [
        f"0x{insn.address:08x}: {bytes(insn.bytes).hex()} {insn.mnemonic} {insn.op_str}".rstrip()
        for insn in md.disasm(bytes(code), origin)
    ]
