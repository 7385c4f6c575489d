from __future__ import annotations

import struct
from io import BytesIO
from pathlib import Path
from typing import Optional, Union
from uuid import UUID

import pytest
from dissect.util.hash.crc32c import crc32c

from dissect.vhdx.c_vhdx import (
    BAT_REGION_GUID,
    FILE_PARAMETERS_GUID,
    LOGICAL_SECTOR_SIZE_GUID,
    METADATA_REGION_GUID,
    PARENT_LOCATOR_GUID,
    PHYSICAL_SECTOR_SIZE_GUID,
    VHDX_PARENT_LOCATOR_GUID,
    VIRTUAL_DISK_ID_GUID,
    VIRTUAL_DISK_SIZE_GUID,
)

KB = 1024
MB = 1024 * KB
GB = 1024 * MB

LOG_OFFSET = 1 * MB
LOG_LENGTH = 1 * MB
METADATA_OFFSET = 2 * MB
METADATA_LENGTH = 1 * MB
METADATA_ITEMS_OFFSET = 64 * KB
BAT_OFFSET = 3 * MB
BAT_LENGTH = 1 * MB

FILE_WRITE_GUID = UUID("11111111-2222-3333-4444-555555555555")
DATA_WRITE_GUID = UUID("66666666-7777-8888-9999-aaaaaaaaaaaa")
LOG_GUID = UUID("bbbbbbbb-cccc-dddd-eeee-ffffffffffff")
VIRTUAL_DISK_ID = UUID("4a49d245-db0a-4634-9818-9f93db5ba6c1")

IS_VIRTUAL_DISK = 2
IS_REQUIRED = 4


def _checksummed(buf: bytearray) -> bytearray:
    buf[4:8] = b"\x00\x00\x00\x00"
    buf[4:8] = struct.pack("<I", crc32c(bytes(buf)))
    return buf


class ImageBuilder:
    """Build minimal valid VHDX images in memory.

    The layout is fixed: headers and region tables in the first MiB, followed by a 1 MiB log, a 1 MiB metadata
    region and a 1 MiB BAT.
    """

    LOG_OFFSET = LOG_OFFSET
    LOG_LENGTH = LOG_LENGTH
    METADATA_OFFSET = METADATA_OFFSET
    METADATA_ITEMS_OFFSET = METADATA_ITEMS_OFFSET
    BAT_OFFSET = BAT_OFFSET
    BAT_LENGTH = BAT_LENGTH

    FILE_WRITE_GUID = FILE_WRITE_GUID
    DATA_WRITE_GUID = DATA_WRITE_GUID
    LOG_GUID = LOG_GUID
    VIRTUAL_DISK_ID = VIRTUAL_DISK_ID

    def __init__(
        self,
        size: int = 1 * GB,
        block_size: int = 32 * MB,
        logical_sector_size: int = 512,
        physical_sector_size: int = 4096,
        leave_block_allocated: bool = False,
        data_write_guid: UUID = DATA_WRITE_GUID,
        creator: str = "dissect.vhdx tests",
    ):
        self.size = size
        self.block_size = block_size
        self.logical_sector_size = logical_sector_size
        self.physical_sector_size = physical_sector_size
        self.leave_block_allocated = leave_block_allocated
        self.has_parent = False
        self.data_write_guid = data_write_guid
        self.creator = creator

        self.header_sequence_numbers = [1, 2]
        self.corrupt_headers = set()
        self.corrupt_region_tables = set()
        self.log_guid: Optional[UUID] = None
        self.log_length = LOG_LENGTH

        self.regions = [
            (BAT_REGION_GUID, BAT_OFFSET, BAT_LENGTH, True),
            (METADATA_REGION_GUID, METADATA_OFFSET, METADATA_LENGTH, True),
        ]
        self.extra_metadata = []
        self.parent_locator = None
        self.bat = {}
        self.log_entries = []
        self.file_size = 4 * MB

    def set_parent_locator(
        self, entries: dict[Union[str, bytes], Union[str, bytes]], locator_type: UUID = VHDX_PARENT_LOCATOR_GUID
    ) -> None:
        """Set the parent locator. Keys and values are encoded as UTF-16, unless given as raw bytes."""
        self.has_parent = True
        self.parent_locator = (locator_type, entries)

    def add_region(self, guid: UUID, offset: int, length: int, required: bool) -> None:
        self.regions.append((guid, offset, length, required))

    def add_metadata(self, guid: UUID, data: bytes, required: bool = False) -> None:
        self.extra_metadata.append((guid, data, IS_REQUIRED if required else 0))

    def add_log_entry(
        self,
        offset: int,
        sequence_number: int,
        descriptors: list[tuple],
        tail: Optional[int] = None,
        corrupt: bool = False,
        log_guid: Optional[UUID] = None,
    ) -> None:
        """Add a log entry at ``offset`` in the log.

        Descriptors are ``("data", file_offset, data)`` or ``("zero", file_offset, length)`` tuples.
        """
        self.log_guid = LOG_GUID
        self.log_entries.append(
            (offset, sequence_number, descriptors, offset if tail is None else tail, corrupt, log_guid or LOG_GUID)
        )

    def metadata_items(self) -> list[tuple[UUID, bytes, int]]:
        flags = int(self.leave_block_allocated) | (int(self.has_parent) << 1)
        items = [
            (FILE_PARAMETERS_GUID, struct.pack("<II", self.block_size, flags), IS_REQUIRED),
            (VIRTUAL_DISK_SIZE_GUID, struct.pack("<Q", self.size), IS_VIRTUAL_DISK | IS_REQUIRED),
            (VIRTUAL_DISK_ID_GUID, VIRTUAL_DISK_ID.bytes_le, IS_VIRTUAL_DISK | IS_REQUIRED),
            (LOGICAL_SECTOR_SIZE_GUID, struct.pack("<I", self.logical_sector_size), IS_VIRTUAL_DISK | IS_REQUIRED),
            (PHYSICAL_SECTOR_SIZE_GUID, struct.pack("<I", self.physical_sector_size), IS_VIRTUAL_DISK | IS_REQUIRED),
        ]

        if self.parent_locator:
            items.append((PARENT_LOCATOR_GUID, self._parent_locator(), IS_VIRTUAL_DISK | IS_REQUIRED))

        return items + self.extra_metadata

    def _parent_locator(self) -> bytes:
        locator_type, entries = self.parent_locator

        header = struct.pack("<16sHH", locator_type.bytes_le, 0, len(entries))
        strings_offset = len(header) + 12 * len(entries)

        table = b""
        strings = b""
        for key, value in entries.items():
            key = key.encode("utf-16-le") if isinstance(key, str) else key
            value = value.encode("utf-16-le") if isinstance(value, str) else value
            key_offset = strings_offset + len(strings)
            value_offset = key_offset + len(key)
            table += struct.pack("<IIHH", key_offset, value_offset, len(key), len(value))
            strings += key + value

        return header + table + strings

    def build(self) -> BytesIO:
        end = max(offset + length for _, offset, length, _ in self.regions)
        buf = bytearray(max(self.file_size, end))

        buf[0:8] = b"vhdxfile"
        creator = self.creator.encode("utf-16-le")
        buf[8 : 8 + len(creator)] = creator

        self._write_metadata(buf)
        self._write_bat(buf)
        self._write_log(buf)
        self._write_headers(buf)
        self._write_region_tables(buf)

        return BytesIO(bytes(buf))

    def write(self, path: Path) -> Path:
        path.write_bytes(self.build().getvalue())
        return path

    def _write_headers(self, buf: bytearray) -> None:
        log_guid = self.log_guid or UUID(int=0)

        for idx, offset in enumerate((64 * KB, 128 * KB)):
            header = bytearray(4 * KB)
            header[:80] = struct.pack(
                "<4sIQ16s16s16sHHIQ",
                b"head",
                0,
                self.header_sequence_numbers[idx],
                FILE_WRITE_GUID.bytes_le,
                self.data_write_guid.bytes_le,
                log_guid.bytes_le,
                0,
                1,
                self.log_length,
                LOG_OFFSET,
            )
            _checksummed(header)

            if idx in self.corrupt_headers:
                header[100] ^= 0x01

            buf[offset : offset + len(header)] = header

    def _write_region_tables(self, buf: bytearray) -> None:
        for idx, offset in enumerate((192 * KB, 256 * KB)):
            table = bytearray(64 * KB)
            table[:16] = struct.pack("<4sIII", b"regi", 0, len(self.regions), 0)
            for entry_idx, (guid, region_offset, length, required) in enumerate(self.regions):
                entry_offset = 16 + entry_idx * 32
                table[entry_offset : entry_offset + 32] = struct.pack(
                    "<16sQII", guid.bytes_le, region_offset, length, int(required)
                )
            _checksummed(table)

            if idx in self.corrupt_region_tables:
                table[16] ^= 0x01

            buf[offset : offset + len(table)] = table

    def _write_metadata(self, buf: bytearray) -> None:
        items = self.metadata_items()
        buf[METADATA_OFFSET : METADATA_OFFSET + 32] = struct.pack("<8s2sH20s", b"metadata", b"", len(items), b"")

        item_offset = METADATA_ITEMS_OFFSET
        for idx, (guid, data, flags) in enumerate(items):
            entry_offset = METADATA_OFFSET + 32 + idx * 32
            buf[entry_offset : entry_offset + 32] = struct.pack(
                "<16sIIII", guid.bytes_le, item_offset, len(data), flags, 0
            )
            buf[METADATA_OFFSET + item_offset : METADATA_OFFSET + item_offset + len(data)] = data
            item_offset += (len(data) + 7) & ~7

    def _write_bat(self, buf: bytearray) -> None:
        for idx, value in self.bat.items():
            offset = BAT_OFFSET + idx * 8
            buf[offset : offset + 8] = struct.pack("<Q", value)

    def _write_log(self, buf: bytearray) -> None:
        for offset, sequence_number, descriptors, tail, corrupt, log_guid in self.log_entries:
            entry = build_log_entry(sequence_number, descriptors, tail, log_guid, len(buf))
            if corrupt:
                entry[200] ^= 0x01

            start = LOG_OFFSET + offset
            buf[start : start + len(entry)] = entry


def build_log_entry(
    sequence_number: int, descriptors: list[tuple], tail: int, log_guid: UUID, file_size: int
) -> bytearray:
    data_descriptors = [descriptor for descriptor in descriptors if descriptor[0] == "data"]
    entry = bytearray(4 * KB + len(data_descriptors) * 4 * KB)

    entry[:64] = struct.pack(
        "<4sIIIQII16sQQ",
        b"loge",
        0,
        len(entry),
        tail,
        sequence_number,
        len(descriptors),
        0,
        log_guid.bytes_le,
        file_size,
        file_size,
    )

    sector_offset = 4 * KB
    for idx, (kind, file_offset, value) in enumerate(descriptors):
        descriptor_offset = 64 + idx * 32

        if kind == "zero":
            descriptor = struct.pack("<4sIQQQ", b"zero", 0, value, file_offset, sequence_number)
        else:
            descriptor = struct.pack(
                "<4s4s8sQQ", b"desc", value[4092:4096], value[0:8], file_offset, sequence_number
            )
            entry[sector_offset : sector_offset + 4 * KB] = struct.pack(
                "<4sI4084sI", b"data", sequence_number >> 32, value[8:4092], sequence_number & 0xFFFFFFFF
            )
            sector_offset += 4 * KB

        entry[descriptor_offset : descriptor_offset + 32] = descriptor

    return _checksummed(entry)


@pytest.fixture
def image_builder() -> type[ImageBuilder]:
    return ImageBuilder
