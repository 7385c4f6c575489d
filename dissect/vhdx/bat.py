from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, BinaryIO, Iterator, NamedTuple, Union

from dissect.vhdx.c_vhdx import (
    BAT_ENTRY_SIZE,
    BAT_FILE_OFFSET_SHIFT,
    BAT_STATE_MASK,
    CHUNK_RATIO_FACTOR,
    MB,
    DiskType,
    PayloadBlockState,
    SectorBitmapState,
    c_vhdx,
)
from dissect.vhdx.exceptions import InvalidVirtualDisk, RegionOutOfBounds
from dissect.vhdx.util import read_at

if TYPE_CHECKING:
    from dissect.vhdx.metadata import MetadataTable
    from dissect.vhdx.region import RegionTableEntry

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))

PAYLOAD_BLOCK_STATES = frozenset(state.value for state in PayloadBlockState)
SECTOR_BITMAP_STATES = frozenset(state.value for state in SectorBitmapState)


class UnknownState(NamedTuple):
    """A BAT entry state bit pattern that is reserved or invalid for the kind of entry."""

    value: int

    def __str__(self) -> str:
        return f"UNKNOWN({self.value})"


BlockState = Union[PayloadBlockState, SectorBitmapState, UnknownState]


class BatEntry:
    """A decoded BAT entry.

    Args:
        value: The raw 64-bit entry.
        index: The index of the entry in the BAT.
        is_sector_bitmap: Whether this entry describes a sector bitmap block instead of a payload block.
    """

    __slots__ = ("value", "index", "is_sector_bitmap", "state", "file_offset_mb")

    def __init__(self, value: int, index: int, is_sector_bitmap: bool = False):
        self.value = value
        self.index = index
        self.is_sector_bitmap = is_sector_bitmap
        self.state = decode_state(value & BAT_STATE_MASK, is_sector_bitmap)
        self.file_offset_mb = value >> BAT_FILE_OFFSET_SHIFT

    def __repr__(self) -> str:
        kind = "sector_bitmap" if self.is_sector_bitmap else "payload"
        return f"<BatEntry index={self.index} kind={kind} state={self.state} file_offset_mb={self.file_offset_mb:#x}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BatEntry):
            return NotImplemented
        return (self.value, self.index, self.is_sector_bitmap) == (other.value, other.index, other.is_sector_bitmap)

    def __hash__(self) -> int:
        return hash((self.value, self.index, self.is_sector_bitmap))

    @property
    def is_unknown(self) -> bool:
        return isinstance(self.state, UnknownState)

    @property
    def is_present(self) -> bool:
        """Whether the entry points at data in this file."""
        return self.state in (
            PayloadBlockState.FULLY_PRESENT,
            PayloadBlockState.PARTIALLY_PRESENT,
            SectorBitmapState.PRESENT,
        )

    @property
    def file_offset(self) -> int:
        """The absolute file offset of the block, only meaningful if the block is present."""
        return self.file_offset_mb * MB


def decode_state(value: int, is_sector_bitmap: bool = False) -> BlockState:
    """Decode the 3-bit state of a BAT entry.

    Payload and sector bitmap entries share the same bits but have a different set of states. Any bit pattern
    that isn't a documented state for the kind of entry decodes to :class:`UnknownState`.
    """
    if is_sector_bitmap:
        if value in SECTOR_BITMAP_STATES:
            return SectorBitmapState(value)
    elif value in PAYLOAD_BLOCK_STATES:
        return PayloadBlockState(value)
    return UnknownState(value)


def chunk_ratio(logical_sector_size: int, block_size: int) -> int:
    """The amount of payload blocks a single sector bitmap block describes."""
    return (CHUNK_RATIO_FACTOR * logical_sector_size) // block_size


def payload_block_count(virtual_disk_size: int, block_size: int) -> int:
    return (virtual_disk_size + block_size - 1) // block_size


def entry_count(virtual_disk_size: int, block_size: int, logical_sector_size: int, has_parent: bool) -> int:
    """Calculate the total number of BAT entries, including the interleaved sector bitmap entries."""
    ratio = chunk_ratio(logical_sector_size, block_size)
    pb_count = payload_block_count(virtual_disk_size, block_size)
    sb_count = (pb_count + ratio - 1) // ratio

    if has_parent:
        # The last entry of a differencing disk BAT is the sector bitmap entry of the last chunk
        return sb_count * (ratio + 1)

    if pb_count == 0:
        return 0

    # The last entry of a fixed or dynamic disk BAT is the entry of the last payload block
    return pb_count + (pb_count - 1) // ratio


class BlockAllocationTable:
    """The decoded block allocation table.

    Payload block entries and sector bitmap entries are interleaved: after every ``chunk_ratio`` payload entries
    follows the sector bitmap entry describing those blocks. Entries are stored in :attr:`entries` by their
    index in the BAT.

    Args:
        fh: The (replayed) file-like object to read from.
        region: The BAT region entry from the region table.
        metadata: The decoded metadata table.

    Raises:
        RegionOutOfBounds: If the BAT region is too small to hold all entries.
    """

    def __init__(self, fh: BinaryIO, region: RegionTableEntry, metadata: MetadataTable):
        self.offset = region.file_offset
        self.length = region.length

        parameters = metadata.file_parameters
        self.block_size = parameters.block_size
        self.has_parent = parameters.has_parent
        self.leave_block_allocated = parameters.leave_block_allocated
        self.virtual_disk_size = metadata.virtual_disk_size
        self.logical_sector_size = metadata.logical_sector_size

        self.chunk_ratio = chunk_ratio(self.logical_sector_size, self.block_size)
        if self.chunk_ratio == 0:
            raise InvalidVirtualDisk(
                f"Chunk ratio is 0 for block size 0x{self.block_size:x} "
                f"and logical sector size 0x{self.logical_sector_size:x}"
            )

        self.payload_block_count = payload_block_count(self.virtual_disk_size, self.block_size)
        self.sector_bitmap_block_count = (self.payload_block_count + self.chunk_ratio - 1) // self.chunk_ratio
        self.entry_count = entry_count(
            self.virtual_disk_size, self.block_size, self.logical_sector_size, self.has_parent
        )

        if self.entry_count * BAT_ENTRY_SIZE > self.length:
            raise RegionOutOfBounds(
                f"BAT with {self.entry_count} entries needs 0x{self.entry_count * BAT_ENTRY_SIZE:x} bytes, "
                f"BAT region is only 0x{self.length:x} bytes"
            )

        log.debug(
            "Reading BAT at 0x%x: %d entries, chunk ratio %d", self.offset, self.entry_count, self.chunk_ratio
        )

        buf = read_at(fh, self.offset, self.entry_count * BAT_ENTRY_SIZE)
        values = c_vhdx.uint64[self.entry_count](buf) if self.entry_count else []
        self.entries = [BatEntry(value, idx, self.is_sector_bitmap_index(idx)) for idx, value in enumerate(values)]

        for entry in self.entries:
            if entry.is_unknown:
                log.warning("BAT entry %d has unknown state %s", entry.index, entry.state)

    def __repr__(self) -> str:
        return f"<BlockAllocationTable offset={self.offset:#x} entry_count={self.entry_count}>"

    def __len__(self) -> int:
        return self.entry_count

    def __iter__(self) -> Iterator[BatEntry]:
        return iter(self.entries)

    def is_sector_bitmap_index(self, index: int) -> bool:
        return (index + 1) % (self.chunk_ratio + 1) == 0

    def get(self, index: int) -> BatEntry:
        """Get a BAT entry by its index in the BAT."""
        if not 0 <= index < self.entry_count:
            raise IndexError(f"Invalid entry for BAT lookup: {index} (max entry is {self.entry_count - 1})")
        return self.entries[index]

    def pb(self, block: int) -> BatEntry:
        """Get a payload block entry for a given block."""
        # Calculate how many interleaved sector bitmap entries there must be for this block
        sb_entries = block // self.chunk_ratio
        return self.get(block + sb_entries)

    def sb(self, block: int) -> BatEntry:
        """Get the sector bitmap entry of the chunk a given block is in."""
        num_sb = block // self.chunk_ratio
        return self.get(((num_sb + 1) * self.chunk_ratio) + num_sb)

    def payload_entries(self) -> Iterator[BatEntry]:
        for block in range(self.payload_block_count):
            yield self.pb(block)

    def sector_bitmap_entries(self) -> Iterator[BatEntry]:
        for entry in self.entries:
            if entry.is_sector_bitmap:
                yield entry

    @property
    def disk_type(self) -> DiskType:
        if self.has_parent:
            return DiskType.DIFFERENCING

        if self.leave_block_allocated:
            return DiskType.FIXED

        sparse_states = (PayloadBlockState.NOT_PRESENT, PayloadBlockState.PARTIALLY_PRESENT)
        if any(entry.state in sparse_states for entry in self.payload_entries()):
            return DiskType.DYNAMIC

        return DiskType.FIXED
