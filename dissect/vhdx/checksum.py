from __future__ import annotations

from dissect.util.hash.crc32c import crc32c

from dissect.vhdx.c_vhdx import CHECKSUM_OFFSET


def crc32c_zeroed(buf: bytes, offset: int = CHECKSUM_OFFSET) -> int:
    """Calculate the CRC-32C of a structure with its own checksum field zeroed.

    Args:
        buf: The raw bytes of the structure.
        offset: The offset of the 4 byte checksum field within ``buf``.
    """
    return crc32c(bytes(buf[:offset]) + b"\x00\x00\x00\x00" + bytes(buf[offset + 4 :]))
