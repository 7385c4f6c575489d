from __future__ import annotations

import io
from typing import BinaryIO

from dissect.vhdx.exceptions import ReadError


def read_at(fh: BinaryIO, offset: int, length: int) -> bytes:
    """Read exactly ``length`` bytes at ``offset``.

    Raises:
        ReadError: If the range can't be read completely.
    """
    try:
        fh.seek(offset)
        buf = fh.read(length)
    except OSError as e:
        raise ReadError(f"Failed to read 0x{length:x} bytes at offset 0x{offset:x}: {e}") from e

    if len(buf) != length:
        raise ReadError(f"Short read at offset 0x{offset:x}: expected 0x{length:x} bytes, got 0x{len(buf):x}")

    return buf


def file_size(fh: BinaryIO) -> int:
    if hasattr(fh, "size") and isinstance(fh.size, int):
        return fh.size

    offset = fh.tell()
    size = fh.seek(0, io.SEEK_END)
    fh.seek(offset)
    return size
