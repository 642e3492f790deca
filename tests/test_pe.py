import pytest

from armpatcher.errors import AddressTranslationError, ImageDecodeError
from armpatcher.pe import ExecutableImage

from .builders import build_pe

TEXT = (b".text", 0x1000, 0x200, 0x400)


def test_headers():
    image = ExecutableImage(bytes(build_pe([TEXT], checksum=0x1234)))
    assert image.dos_header.e_lfanew == 0x80
    assert image.file_header.number_of_sections == 1
    assert image.is_32bit
    assert image.image_base == 0x400000
    assert image.checksum == 0x1234
    assert len(image.optional_header.data_directories) == 16
    assert len(image.sections) == 1
    assert image.sections[0].pointer_to_raw_data == 0x400


def test_convert_virtual_to_raw():
    image = ExecutableImage(bytes(build_pe([TEXT])))
    assert image.convert_virtual_to_raw(0x401050) == 0x450
    assert image.convert_virtual_to_raw(0x401000) == 0x400
    assert image.convert_virtual_to_raw(0x4011FF) == 0x5FF


def test_convert_virtual_to_raw_picks_the_right_section():
    image = ExecutableImage(
        bytes(build_pe([TEXT, (b".data", 0x2000, 0x100, 0x600)], size=0x800))
    )
    assert image.convert_virtual_to_raw(0x402010) == 0x610


def test_convert_virtual_to_raw_64bit():
    image = ExecutableImage(
        bytes(build_pe([TEXT], image_base=0x140000000, is_64bit=True))
    )
    assert not image.is_32bit
    assert image.convert_virtual_to_raw(0x140001050) == 0x450


@pytest.mark.parametrize("address", [0x400FFF, 0x401200, 0x1050])
def test_address_outside_sections(address):
    image = ExecutableImage(bytes(build_pe([TEXT])))
    with pytest.raises(AddressTranslationError):
        image.convert_virtual_to_raw(address)


def test_address_in_unnamed_section():
    image = ExecutableImage(bytes(build_pe([(b"", 0x1000, 0x200, 0x400)])))
    with pytest.raises(AddressTranslationError):
        image.convert_virtual_to_raw(0x401050)


def test_bad_dos_magic():
    data = build_pe([TEXT])
    data[0:2] = b"ZM"
    with pytest.raises(ImageDecodeError):
        ExecutableImage(bytes(data))


def test_bad_pe_signature():
    data = build_pe([TEXT])
    data[0x80:0x84] = b"NE\x00\x00"
    with pytest.raises(ImageDecodeError):
        ExecutableImage(bytes(data))


def test_wrong_data_directory_count():
    with pytest.raises(ImageDecodeError):
        ExecutableImage(bytes(build_pe([TEXT], data_directories=10)))


def test_truncated_headers():
    with pytest.raises(ImageDecodeError):
        ExecutableImage(bytes(build_pe([TEXT]))[:0x100])
