from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any, BinaryIO, Optional
from uuid import UUID

from dissect.vhdx.c_vhdx import (
    FILE_PARAMETERS_GUID,
    LOGICAL_SECTOR_SIZE_GUID,
    MAX_BLOCK_SIZE,
    MAX_METADATA_TABLE_ENTRIES,
    METADATA_TABLE_SIGNATURE,
    METADATA_TABLE_SIZE,
    MIN_BLOCK_SIZE,
    PARENT_LINKAGE2_KEY,
    PARENT_LINKAGE_KEY,
    PARENT_LOCATOR_GUID,
    PHYSICAL_SECTOR_SIZE_GUID,
    SECTOR_SIZES,
    VHDX_PARENT_LOCATOR_GUID,
    VIRTUAL_DISK_ID_GUID,
    VIRTUAL_DISK_SIZE_GUID,
    c_vhdx,
)
from dissect.vhdx.exceptions import (
    InvalidSignature,
    InvalidVirtualDisk,
    RegionOutOfBounds,
    UnsupportedRequiredMetadata,
)
from dissect.vhdx.util import read_at

if TYPE_CHECKING:
    from dissect.vhdx.region import RegionTableEntry

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))


class FileParameters:
    def __init__(self, buf: bytes):
        self.parameters = c_vhdx.file_parameters(buf)
        self.block_size = self.parameters.block_size
        self.leave_block_allocated = bool(self.parameters.leave_block_allocated)
        self.has_parent = bool(self.parameters.has_parent)

    def __repr__(self) -> str:
        return (
            f"<FileParameters block_size={self.block_size:#x} "
            f"leave_block_allocated={self.leave_block_allocated} has_parent={self.has_parent}>"
        )


def _decode_utf16(buf: bytes) -> str:
    if len(buf) % 2:
        raise InvalidVirtualDisk(f"Parent locator key/value has an odd length: {len(buf)}")

    try:
        return buf.decode("utf-16-le")
    except UnicodeDecodeError as e:
        raise InvalidVirtualDisk(f"Parent locator key/value is not valid UTF-16: {e}") from e


class ParentLocatorEntry:
    def __init__(self, entry, buf: bytes):
        self.entry = entry
        self.key_offset = entry.key_offset
        self.value_offset = entry.value_offset
        self.key_length = entry.key_length
        self.value_length = entry.value_length

        if self.key_offset + self.key_length > len(buf) or self.value_offset + self.value_length > len(buf):
            raise InvalidVirtualDisk("Parent locator key/value extends past the parent locator item")

        self.key = _decode_utf16(buf[self.key_offset : self.key_offset + self.key_length])
        self.value = _decode_utf16(buf[self.value_offset : self.value_offset + self.value_length])

        if "\x00" in self.key or "\x00" in self.value:
            raise InvalidVirtualDisk(f"Parent locator key/value contains a NUL character: {self.key!r}")

    def __repr__(self) -> str:
        return f"<ParentLocatorEntry key={self.key!r} value={self.value!r}>"


class ParentLocator:
    """The parent locator of a differencing disk.

    A parent locator is a typed set of UTF-16 key/value pairs. For the VHDX locator type, these describe the
    data write GUID of the parent (``parent_linkage`` and ``parent_linkage2``) and where to find the parent
    (``relative_path``, ``volume_path`` and ``absolute_win32_path``).
    """

    def __init__(self, buf: bytes):
        self.header = c_vhdx.parent_locator_header(buf)
        self.type = UUID(bytes_le=self.header.locator_type)
        self.key_value_count = self.header.key_value_count

        offset = len(c_vhdx.parent_locator_header)
        if offset + self.key_value_count * len(c_vhdx.parent_locator_entry) > len(buf):
            raise InvalidVirtualDisk(f"Parent locator has too many key/value entries: {self.key_value_count}")

        raw_entries = c_vhdx.parent_locator_entry[self.key_value_count](buf[offset:])
        self._entries = [ParentLocatorEntry(entry, buf) for entry in raw_entries]

        self.entries = {}
        for entry in self._entries:
            if entry.key in self.entries:
                log.warning("Duplicate parent locator key %r", entry.key)
            self.entries[entry.key] = entry.value

    def __repr__(self) -> str:
        return f"<ParentLocator type={self.type} entries={self.entries!r}>"

    @property
    def is_vhdx(self) -> bool:
        return self.type == VHDX_PARENT_LOCATOR_GUID

    @property
    def parent_linkage(self) -> Optional[UUID]:
        return _parse_guid(self.entries.get(PARENT_LINKAGE_KEY))

    @property
    def parent_linkage2(self) -> Optional[UUID]:
        return _parse_guid(self.entries.get(PARENT_LINKAGE2_KEY))


def _parse_guid(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None

    try:
        return UUID(value)
    except ValueError:
        log.warning("Invalid GUID in parent locator: %r", value)
        return None


class MetadataTableEntry:
    def __init__(self, entry):
        self.entry = entry
        self.item_id = UUID(bytes_le=entry.item_id)
        self.offset = entry.offset
        self.length = entry.length
        self.is_user = bool(entry.is_user)
        self.is_virtual_disk = bool(entry.is_virtual_disk)
        self.is_required = bool(entry.is_required)

    def __repr__(self) -> str:
        return (
            f"<MetadataTableEntry item_id={self.item_id} offset={self.offset:#x} length={self.length:#x} "
            f"is_required={self.is_required}>"
        )


def _uint32(buf: bytes) -> int:
    return c_vhdx.uint32(buf[:4])


def _uint64(buf: bytes) -> int:
    return c_vhdx.uint64(buf[:8])


def _guid(buf: bytes) -> UUID:
    return UUID(bytes_le=buf[:16])


REQUIRED_METADATA = (
    FILE_PARAMETERS_GUID,
    VIRTUAL_DISK_SIZE_GUID,
    VIRTUAL_DISK_ID_GUID,
    LOGICAL_SECTOR_SIZE_GUID,
    PHYSICAL_SECTOR_SIZE_GUID,
)


class MetadataTable:
    """The metadata table and the decoded metadata items.

    Args:
        fh: The (replayed) file-like object to read from.
        region: The metadata region entry from the region table.

    Raises:
        InvalidSignature: If the metadata table signature is invalid.
        UnsupportedRequiredMetadata: If an item we don't know is marked as required.
        RegionOutOfBounds: If an item extends past the metadata region.
        InvalidVirtualDisk: If the known metadata is missing or inconsistent.
    """

    METADATA_MAP = {
        FILE_PARAMETERS_GUID: (FileParameters, 8),
        VIRTUAL_DISK_SIZE_GUID: (_uint64, 8),
        VIRTUAL_DISK_ID_GUID: (_guid, 16),
        LOGICAL_SECTOR_SIZE_GUID: (_uint32, 4),
        PHYSICAL_SECTOR_SIZE_GUID: (_uint32, 4),
        PARENT_LOCATOR_GUID: (ParentLocator, len(c_vhdx.parent_locator_header)),
    }

    def __init__(self, fh: BinaryIO, region: RegionTableEntry):
        self.offset = region.file_offset
        self.length = region.length

        buf = read_at(fh, self.offset, min(METADATA_TABLE_SIZE, self.length))
        self.header = c_vhdx.metadata_table_header(buf)
        if self.header.signature != METADATA_TABLE_SIGNATURE:
            raise InvalidSignature(
                f"Invalid metadata table signature at 0x{self.offset:x}: expected {METADATA_TABLE_SIGNATURE!r}, "
                f"got {self.header.signature!r}"
            )

        self.entry_count = self.header.entry_count
        if self.entry_count > MAX_METADATA_TABLE_ENTRIES:
            raise InvalidVirtualDisk(
                f"Metadata table has {self.entry_count} entries, maximum is {MAX_METADATA_TABLE_ENTRIES}"
            )

        entries_offset = len(c_vhdx.metadata_table_header)
        if entries_offset + self.entry_count * len(c_vhdx.metadata_table_entry) > len(buf):
            raise RegionOutOfBounds(f"Metadata table entries extend past the metadata table at 0x{self.offset:x}")

        raw_entries = c_vhdx.metadata_table_entry[self.entry_count](buf[entries_offset:])
        self.entries = [MetadataTableEntry(entry) for entry in raw_entries]

        self.lookup: dict[UUID, Any] = {}
        self.unknown: dict[UUID, bytes] = {}

        for entry in self.entries:
            if entry.offset + entry.length > self.length:
                raise RegionOutOfBounds(
                    f"Metadata item {entry.item_id} at 0x{entry.offset:x}-0x{entry.offset + entry.length:x} "
                    f"extends past the metadata region (0x{self.length:x})"
                )

            data = read_at(fh, self.offset + entry.offset, entry.length) if entry.length else b""

            if entry.item_id not in self.METADATA_MAP:
                if entry.is_required:
                    raise UnsupportedRequiredMetadata(f"Unsupported required metadata item: {entry.item_id}")

                log.info("Preserving unknown metadata item %s (0x%x bytes)", entry.item_id, entry.length)
                self.unknown[entry.item_id] = data
                continue

            parser, min_length = self.METADATA_MAP[entry.item_id]
            if entry.length < min_length:
                raise InvalidVirtualDisk(
                    f"Metadata item {entry.item_id} is too small: 0x{entry.length:x} < 0x{min_length:x}"
                )

            self.lookup[entry.item_id] = parser(data)

        self._check()

    def __repr__(self) -> str:
        return f"<MetadataTable offset={self.offset:#x} entry_count={self.entry_count}>"

    def get(self, guid: UUID, required: bool = True) -> Any:
        data = self.lookup.get(guid)
        if data is None and required:
            raise InvalidVirtualDisk(f"Missing required metadata: {guid}")
        return data

    @property
    def file_parameters(self) -> FileParameters:
        return self.get(FILE_PARAMETERS_GUID)

    @property
    def virtual_disk_size(self) -> int:
        return self.get(VIRTUAL_DISK_SIZE_GUID)

    @property
    def virtual_disk_id(self) -> UUID:
        return self.get(VIRTUAL_DISK_ID_GUID)

    @property
    def page_83_data(self) -> UUID:
        """The SCSI page 0x83 identifier of the disk, stored as the virtual disk ID."""
        return self.virtual_disk_id

    @property
    def logical_sector_size(self) -> int:
        return self.get(LOGICAL_SECTOR_SIZE_GUID)

    @property
    def physical_sector_size(self) -> int:
        return self.get(PHYSICAL_SECTOR_SIZE_GUID)

    @property
    def parent_locator(self) -> Optional[ParentLocator]:
        return self.get(PARENT_LOCATOR_GUID, required=False)

    def _check(self) -> None:
        for guid in REQUIRED_METADATA:
            self.get(guid)

        block_size = self.file_parameters.block_size
        if not MIN_BLOCK_SIZE <= block_size <= MAX_BLOCK_SIZE or block_size & (block_size - 1):
            raise InvalidVirtualDisk(f"Invalid block size: 0x{block_size:x}")

        if self.logical_sector_size not in SECTOR_SIZES:
            raise InvalidVirtualDisk(f"Invalid logical sector size: {self.logical_sector_size}")

        if self.physical_sector_size not in SECTOR_SIZES:
            raise InvalidVirtualDisk(f"Invalid physical sector size: {self.physical_sector_size}")

        if self.virtual_disk_size % self.logical_sector_size:
            raise InvalidVirtualDisk(
                f"Virtual disk size 0x{self.virtual_disk_size:x} is not a multiple of the logical sector size"
            )

        if self.file_parameters.has_parent and self.parent_locator is None:
            raise InvalidVirtualDisk("File parameter HasParent is set but the file has no parent locator")
