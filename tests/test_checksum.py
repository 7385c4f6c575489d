from __future__ import annotations

from dissect.util.hash.crc32c import crc32c

from dissect.vhdx.checksum import crc32c_zeroed


def test_crc32c_castagnoli() -> None:
    assert crc32c(b"123456789") == 0xE3069283


def test_crc32c_zeroed() -> None:
    buf = b"head" + b"\xde\xad\xbe\xef" + b"123456789"

    assert crc32c_zeroed(buf) == crc32c(b"head" + b"\x00" * 4 + b"123456789")
    assert crc32c_zeroed(buf, offset=0) == crc32c(b"\x00" * 4 + b"\xde\xad\xbe\xef" + b"123456789")
