from __future__ import annotations

import logging
import os
from typing import Any, BinaryIO, Iterable, Optional, TypeVar
from uuid import UUID

from dissect.vhdx import checksum
from dissect.vhdx.c_vhdx import (
    FILE_IDENTIFIER_OFFSET,
    FILE_IDENTIFIER_SIGNATURE,
    HEADER_OFFSETS,
    HEADER_SIGNATURE,
    HEADER_SIZE,
    MAX_REGION_TABLE_ENTRIES,
    REGION_TABLE_OFFSETS,
    REGION_TABLE_SIGNATURE,
    REGION_TABLE_SIZE,
    c_vhdx,
)
from dissect.vhdx.exceptions import CorruptHeaderError, InvalidSignature
from dissect.vhdx.util import read_at

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))

T = TypeVar("T")


class FileIdentifier:
    """The file type identifier at the start of every VHDX file."""

    def __init__(self, fh: BinaryIO):
        # Check the signature on its own first, so short non-VHDX files are reported as such
        fh.seek(FILE_IDENTIFIER_OFFSET)
        self.signature = fh.read(len(FILE_IDENTIFIER_SIGNATURE))

        if self.signature != FILE_IDENTIFIER_SIGNATURE:
            raise InvalidSignature(
                f"Invalid file identifier signature: expected {FILE_IDENTIFIER_SIGNATURE!r}, got {self.signature!r}"
            )

        buf = read_at(fh, FILE_IDENTIFIER_OFFSET, len(c_vhdx.file_identifier))
        self.identifier = c_vhdx.file_identifier(buf)
        self.creator = self.identifier.creator.decode("utf-16-le", errors="replace").split("\x00")[0]

    def __repr__(self) -> str:
        return f"<FileIdentifier creator={self.creator!r}>"


class Header:
    """A single copy of the VHDX header.

    Args:
        fh: The file-like object to read the header from.
        offset: The offset of this header copy.
    """

    def __init__(self, fh: BinaryIO, offset: int):
        self.offset = offset
        self.raw = read_at(fh, offset, HEADER_SIZE)
        self.header = c_vhdx.header(self.raw)

        self.signature = self.header.signature
        self.checksum = self.header.checksum
        self.sequence_number = self.header.sequence_number
        self.file_write_guid = UUID(bytes_le=self.header.file_write_guid)
        self.data_write_guid = UUID(bytes_le=self.header.data_write_guid)
        self.log_guid = UUID(bytes_le=self.header.log_guid)
        self.log_version = self.header.log_version
        self.version = self.header.version
        self.log_length = self.header.log_length
        self.log_offset = self.header.log_offset

        self.calculated_checksum = checksum.crc32c_zeroed(self.raw)

    def __repr__(self) -> str:
        return f"<Header offset={self.offset:#x} sequence_number={self.sequence_number:#x} valid={self.is_valid}>"

    @property
    def is_valid(self) -> bool:
        return self.signature == HEADER_SIGNATURE and self.checksum == self.calculated_checksum

    def describe_error(self) -> str:
        if self.signature != HEADER_SIGNATURE:
            return f"header at 0x{self.offset:x} has signature {self.signature!r}, expected {HEADER_SIGNATURE!r}"
        return (
            f"header at 0x{self.offset:x} has checksum 0x{self.checksum:08x}, "
            f"calculated 0x{self.calculated_checksum:08x}"
        )


class RegionTableCopy:
    """A single copy of the raw region table.

    Only the table header is validated here, interpreting the entries is left to :mod:`dissect.vhdx.region`.
    """

    def __init__(self, fh: BinaryIO, offset: int):
        self.offset = offset
        self.raw = read_at(fh, offset, REGION_TABLE_SIZE)
        self.header = c_vhdx.region_table_header(self.raw)

        self.signature = self.header.signature
        self.checksum = self.header.checksum
        self.entry_count = self.header.entry_count

        self.calculated_checksum = checksum.crc32c_zeroed(self.raw)

    def __repr__(self) -> str:
        return f"<RegionTableCopy offset={self.offset:#x} entry_count={self.entry_count} valid={self.is_valid}>"

    @property
    def is_valid(self) -> bool:
        return (
            self.signature == REGION_TABLE_SIGNATURE
            and self.checksum == self.calculated_checksum
            and self.entry_count <= MAX_REGION_TABLE_ENTRIES
        )

    def describe_error(self) -> str:
        if self.signature != REGION_TABLE_SIGNATURE:
            return (
                f"region table at 0x{self.offset:x} has signature {self.signature!r}, "
                f"expected {REGION_TABLE_SIGNATURE!r}"
            )
        if self.checksum != self.calculated_checksum:
            return (
                f"region table at 0x{self.offset:x} has checksum 0x{self.checksum:08x}, "
                f"calculated 0x{self.calculated_checksum:08x}"
            )
        return (
            f"region table at 0x{self.offset:x} has {self.entry_count} entries, "
            f"maximum is {MAX_REGION_TABLE_ENTRIES}"
        )


def select_copy(candidates: Iterable[tuple[T, bool, Any]]) -> Optional[T]:
    """Select the active copy out of a set of redundant copies.

    The valid candidate with the greatest priority key wins. On equal keys, the candidate that comes
    first wins.

    Args:
        candidates: An iterable of ``(value, valid, key)`` tuples, in format defined order.

    Returns:
        The winning value, or ``None`` if no candidate is valid.
    """
    winner = None
    winner_key = None

    for value, valid, key in candidates:
        if not valid:
            continue

        if winner is None or key > winner_key:
            winner = value
            winner_key = key

    return winner


def read_file_identifier(fh: BinaryIO) -> FileIdentifier:
    return FileIdentifier(fh)


def read_headers(fh: BinaryIO) -> tuple[Header, list[Header]]:
    """Read both header copies and select the active one.

    Returns:
        A tuple of the active header and a list of both header copies.

    Raises:
        CorruptHeaderError: If neither header copy is valid.
    """
    headers = [Header(fh, offset) for offset in HEADER_OFFSETS]

    for header in headers:
        if not header.is_valid:
            log.warning("Ignoring invalid VHDX header: %s", header.describe_error())

    active = select_copy((header, header.is_valid, header.sequence_number) for header in headers)
    if active is None:
        raise CorruptHeaderError(
            "No valid VHDX header found: " + "; ".join(header.describe_error() for header in headers)
        )

    valid = [header for header in headers if header.is_valid]
    if len(valid) == 2 and valid[0].sequence_number == valid[1].sequence_number:
        log.warning("Both VHDX headers have sequence number 0x%x, using the first copy", active.sequence_number)

    log.debug("Selected VHDX header at 0x%x (sequence number 0x%x)", active.offset, active.sequence_number)
    return active, headers


def read_region_tables(fh: BinaryIO) -> tuple[RegionTableCopy, list[RegionTableCopy]]:
    """Read both region table copies and select the active one.

    Region tables carry no sequence number, the first valid copy is used.

    Raises:
        CorruptHeaderError: If neither region table copy is valid.
    """
    tables = [RegionTableCopy(fh, offset) for offset in REGION_TABLE_OFFSETS]

    for table in tables:
        if not table.is_valid:
            log.warning("Ignoring invalid region table: %s", table.describe_error())

    active = select_copy((table, table.is_valid, 0) for table in tables)
    if active is None:
        raise CorruptHeaderError(
            "No valid region table found: " + "; ".join(table.describe_error() for table in tables)
        )

    log.debug("Selected region table at 0x%x", active.offset)
    return active, tables
