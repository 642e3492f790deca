from armpatcher.assembler import CodeType
from armpatcher.disasm import disassemble


def test_arm():
    lines = disassemble(bytes.fromhex("0000a0e31eff2fe1"), 0x401000)
    assert lines == [
        "0x00401000: 0000a0e3 mov r0, #0",
        "0x00401004: 1eff2fe1 bx lr",
    ]


def test_thumb():
    lines = disassemble(bytes.fromhex("00207047"), 0x1000, CodeType.THUMB2)
    assert lines == [
        "0x00001000: 0020 movs r0, #0",
        "0x00001002: 7047 bx lr",
    ]
