from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from dissect.vhdx.c_vhdx import (
    BAT_REGION_GUID,
    MB,
    METADATA_REGION_GUID,
    MIN_REGION_OFFSET,
    REGION_TYPES,
    RegionType,
    c_vhdx,
)
from dissect.vhdx.exceptions import InvalidVirtualDisk, RegionOutOfBounds, UnsupportedRequiredRegion

if TYPE_CHECKING:
    from dissect.vhdx.header import RegionTableCopy

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))


class RegionTableEntry:
    def __init__(self, entry):
        self.entry = entry
        self.guid = UUID(bytes_le=entry.guid)
        self.file_offset = entry.file_offset
        self.length = entry.length
        self.required = bool(entry.required)
        self.type = REGION_TYPES.get(self.guid, RegionType.UNKNOWN)

    def __repr__(self) -> str:
        return (
            f"<RegionTableEntry type={self.type.name} guid={self.guid} "
            f"file_offset={self.file_offset:#x} length={self.length:#x} required={self.required}>"
        )

    @property
    def end(self) -> int:
        return self.file_offset + self.length


class RegionTable:
    """The decoded entries of the active region table.

    Args:
        table: The selected region table copy.
        size: The effective size of the file.
        log_region: The ``(offset, length)`` of the log region, which regions may not overlap.

    Raises:
        UnsupportedRequiredRegion: If a region we don't know is marked as required.
        RegionOutOfBounds: If a region extends past the end of the file or overlaps another region.
        InvalidVirtualDisk: If a region is misaligned or the BAT or metadata region is missing.
    """

    def __init__(self, table: RegionTableCopy, size: int, log_region: Optional[tuple[int, int]] = None):
        self.table = table
        self.offset = table.offset
        self.checksum = table.checksum
        self.entry_count = table.entry_count

        raw_entries = c_vhdx.region_table_entry[self.entry_count](table.raw[len(c_vhdx.region_table_header) :])
        self.entries = [RegionTableEntry(entry) for entry in raw_entries]

        for entry in self.entries:
            _check_entry(entry, size)

        _check_overlap(self.entries, log_region)

        self.lookup = {entry.guid: entry for entry in self.entries}

        self.bat = self.get(BAT_REGION_GUID)
        self.metadata = self.get(METADATA_REGION_GUID)

    def __repr__(self) -> str:
        return f"<RegionTable offset={self.offset:#x} entry_count={self.entry_count}>"

    def get(self, guid: UUID, required: bool = True) -> Optional[RegionTableEntry]:
        data = self.lookup.get(guid)
        if not data and required:
            raise InvalidVirtualDisk(f"Missing required region: {guid}")
        return data


def _check_entry(entry: RegionTableEntry, size: int) -> None:
    if entry.type == RegionType.UNKNOWN:
        if entry.required:
            raise UnsupportedRequiredRegion(f"Unsupported required region: {entry.guid}")
        log.info("Ignoring unknown optional region %s", entry.guid)

    if entry.file_offset < MIN_REGION_OFFSET or entry.file_offset % MB:
        raise InvalidVirtualDisk(
            f"Region {entry.guid} has invalid offset 0x{entry.file_offset:x} "
            "(must be a 1 MiB multiple of at least 1 MiB)"
        )

    if entry.length % MB:
        raise InvalidVirtualDisk(
            f"Region {entry.guid} has invalid length 0x{entry.length:x} (must be a 1 MiB multiple)"
        )

    if entry.end > size:
        raise RegionOutOfBounds(
            f"Region {entry.guid} at 0x{entry.file_offset:x}-0x{entry.end:x} extends past end of file (0x{size:x})"
        )


def _check_overlap(entries: list[RegionTableEntry], log_region: Optional[tuple[int, int]]) -> None:
    ranges = [(entry.file_offset, entry.end, str(entry.guid)) for entry in entries if entry.length]
    if log_region and log_region[1]:
        ranges.append((log_region[0], log_region[0] + log_region[1], "log"))

    ranges.sort()
    for (start, end, name), (next_start, next_end, next_name) in zip(ranges, ranges[1:]):
        if next_start < end:
            raise RegionOutOfBounds(
                f"Region {name} at 0x{start:x}-0x{end:x} overlaps region {next_name} at 0x{next_start:x}-0x{next_end:x}"
            )
