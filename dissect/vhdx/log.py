from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, BinaryIO, Optional, Union
from uuid import UUID

from dissect.util.stream import AlignedStream

from dissect.vhdx import checksum
from dissect.vhdx.c_vhdx import (
    DATA_DESCRIPTOR_SIGNATURE,
    DATA_SECTOR_SIGNATURE,
    LOG_ENTRY_SIGNATURE,
    LOG_SECTOR_SIZE,
    NULL_GUID,
    ZERO_DESCRIPTOR_SIGNATURE,
    c_vhdx,
)
from dissect.vhdx.exceptions import Error, RegionOutOfBounds
from dissect.vhdx.util import file_size, read_at

if TYPE_CHECKING:
    from dissect.vhdx.header import Header

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))

LOG_ENTRY_HEADER_SIZE = len(c_vhdx.log_entry_header)
DESCRIPTOR_SIZE = len(c_vhdx.zero_descriptor)
ZERO_PAGE = b"\x00" * LOG_SECTOR_SIZE


class InvalidLogEntry(Error):
    pass


class ReplayState(Enum):
    EMPTY = "empty"
    SCANNING = "scanning"
    REPLAYED = "replayed"


class ZeroDescriptor:
    """Log descriptor that zeroes a range of the file."""

    def __init__(self, buf: bytes):
        self.descriptor = c_vhdx.zero_descriptor(buf)
        self.file_offset = self.descriptor.file_offset
        self.length = self.descriptor.zero_length
        self.sequence_number = self.descriptor.sequence_number

    def __repr__(self) -> str:
        return f"<ZeroDescriptor file_offset={self.file_offset:#x} length={self.length:#x}>"

    def apply(self, stream: ReplayStream) -> None:
        stream.zero(self.file_offset, self.length)


class DataDescriptor:
    """Log descriptor that writes a single 4 KiB sector to the file.

    The first 8 and last 4 bytes of the sector are stored in the descriptor, the sector itself in a
    data sector with its own signature and sequence number in their place.
    """

    def __init__(self, buf: bytes, sector: bytes):
        self.descriptor = c_vhdx.data_descriptor(buf)
        self.sector = c_vhdx.data_sector(sector)
        self.file_offset = self.descriptor.file_offset
        self.length = LOG_SECTOR_SIZE
        self.sequence_number = self.descriptor.sequence_number

    def __repr__(self) -> str:
        return f"<DataDescriptor file_offset={self.file_offset:#x}>"

    @property
    def sector_sequence_number(self) -> int:
        return (self.sector.sequence_high << 32) | self.sector.sequence_low

    @property
    def data(self) -> bytes:
        return self.descriptor.leading_bytes + self.sector.data + self.descriptor.trailing_bytes

    def apply(self, stream: ReplayStream) -> None:
        stream.write(self.file_offset, self.data)


Descriptor = Union[ZeroDescriptor, DataDescriptor]


class LogEntry:
    """A single, validated, log entry.

    Args:
        buf: The raw bytes of the entry, at least ``entry_length`` long.
        offset: The offset of the entry relative to the start of the log.
        log_guid: The log GUID of the active header, entries of other logs are invalid.
        log_length: The size of the log region.

    Raises:
        InvalidLogEntry: If any part of the entry fails validation.
    """

    def __init__(self, buf: bytes, offset: int, log_guid: UUID, log_length: int):
        self.offset = offset
        self.header = c_vhdx.log_entry_header(buf[:LOG_ENTRY_HEADER_SIZE])

        self.signature = self.header.signature
        self.checksum = self.header.checksum
        self.entry_length = self.header.entry_length
        self.tail = self.header.tail
        self.sequence_number = self.header.sequence_number
        self.descriptor_count = self.header.descriptor_count
        self.log_guid = UUID(bytes_le=self.header.log_guid)
        self.flushed_file_offset = self.header.flushed_file_offset
        self.last_file_offset = self.header.last_file_offset

        if self.signature != LOG_ENTRY_SIGNATURE:
            raise InvalidLogEntry(f"Invalid log entry signature at 0x{offset:x}: {self.signature!r}")

        if (
            self.entry_length == 0
            or self.entry_length % LOG_SECTOR_SIZE
            or self.entry_length > log_length
            or self.entry_length > len(buf)
        ):
            raise InvalidLogEntry(f"Invalid log entry length at 0x{offset:x}: 0x{self.entry_length:x}")

        if self.tail % LOG_SECTOR_SIZE or self.tail >= log_length:
            raise InvalidLogEntry(f"Invalid log entry tail at 0x{offset:x}: 0x{self.tail:x}")

        if self.log_guid != log_guid:
            raise InvalidLogEntry(f"Log entry at 0x{offset:x} belongs to log {self.log_guid}, expected {log_guid}")

        self.raw = buf[: self.entry_length]
        calculated = checksum.crc32c_zeroed(self.raw)
        if calculated != self.checksum:
            raise InvalidLogEntry(
                f"Log entry at 0x{offset:x} has checksum 0x{self.checksum:08x}, calculated 0x{calculated:08x}"
            )

        self.descriptors = self._parse_descriptors()

    def __repr__(self) -> str:
        return (
            f"<LogEntry offset={self.offset:#x} sequence_number={self.sequence_number:#x} "
            f"tail={self.tail:#x} descriptors={self.descriptor_count}>"
        )

    def _parse_descriptors(self) -> list[Descriptor]:
        descriptor_area = LOG_ENTRY_HEADER_SIZE + self.descriptor_count * DESCRIPTOR_SIZE
        if descriptor_area > self.entry_length:
            raise InvalidLogEntry(
                f"Log entry at 0x{self.offset:x} has {self.descriptor_count} descriptors, "
                f"which don't fit in 0x{self.entry_length:x} bytes"
            )

        # Data sectors start on the first sector boundary after the descriptors
        sector_offset = (descriptor_area + LOG_SECTOR_SIZE - 1) // LOG_SECTOR_SIZE * LOG_SECTOR_SIZE

        descriptors = []
        for idx in range(self.descriptor_count):
            offset = LOG_ENTRY_HEADER_SIZE + idx * DESCRIPTOR_SIZE
            buf = self.raw[offset : offset + DESCRIPTOR_SIZE]
            signature = buf[:4]

            if signature == ZERO_DESCRIPTOR_SIGNATURE:
                descriptor = ZeroDescriptor(buf)
                if descriptor.length % LOG_SECTOR_SIZE or descriptor.file_offset % LOG_SECTOR_SIZE:
                    raise InvalidLogEntry(f"Unaligned zero descriptor {idx} in log entry at 0x{self.offset:x}")

            elif signature == DATA_DESCRIPTOR_SIGNATURE:
                if sector_offset + LOG_SECTOR_SIZE > self.entry_length:
                    raise InvalidLogEntry(f"Data sector of descriptor {idx} exceeds log entry at 0x{self.offset:x}")

                descriptor = DataDescriptor(buf, self.raw[sector_offset : sector_offset + LOG_SECTOR_SIZE])
                sector_offset += LOG_SECTOR_SIZE

                if descriptor.file_offset % LOG_SECTOR_SIZE:
                    raise InvalidLogEntry(f"Unaligned data descriptor {idx} in log entry at 0x{self.offset:x}")

                if descriptor.sector.signature != DATA_SECTOR_SIGNATURE:
                    raise InvalidLogEntry(
                        f"Invalid data sector signature for descriptor {idx} in log entry at 0x{self.offset:x}: "
                        f"{descriptor.sector.signature!r}"
                    )

                if descriptor.sector_sequence_number != self.sequence_number:
                    raise InvalidLogEntry(
                        f"Data sector of descriptor {idx} in log entry at 0x{self.offset:x} has sequence number "
                        f"0x{descriptor.sector_sequence_number:x}, expected 0x{self.sequence_number:x}"
                    )

            else:
                raise InvalidLogEntry(f"Unknown descriptor signature in log entry at 0x{self.offset:x}: {signature!r}")

            if descriptor.sequence_number != self.sequence_number:
                raise InvalidLogEntry(
                    f"Descriptor {idx} in log entry at 0x{self.offset:x} has sequence number "
                    f"0x{descriptor.sequence_number:x}, expected 0x{self.sequence_number:x}"
                )

            descriptors.append(descriptor)

        return descriptors


class ReplayStream(AlignedStream):
    """An overlay of replayed log writes on top of the original file.

    Writes are tracked per 4 KiB page, anything not written is read from the underlying file.

    Args:
        fh: The original file-like object.
        size: The size of the replayed file, which may be larger than the original file.
    """

    def __init__(self, fh: BinaryIO, size: int):
        self.fh = fh
        self.pages: dict[int, bytes] = {}
        super().__init__(size, align=LOG_SECTOR_SIZE)

    def write(self, offset: int, data: bytes) -> None:
        for idx in range(0, len(data), LOG_SECTOR_SIZE):
            self.pages[offset + idx] = bytes(data[idx : idx + LOG_SECTOR_SIZE])

    def zero(self, offset: int, length: int) -> None:
        for page in range(offset, offset + length, LOG_SECTOR_SIZE):
            self.pages[page] = ZERO_PAGE

    def _read(self, offset: int, length: int) -> bytes:
        result = []
        end = offset + length

        while offset < end:
            if offset in self.pages:
                result.append(self.pages[offset])
                offset += LOG_SECTOR_SIZE
                continue

            # Read runs of untouched pages from the original file in one go
            run_end = offset + LOG_SECTOR_SIZE
            while run_end < end and run_end not in self.pages:
                run_end += LOG_SECTOR_SIZE

            self.fh.seek(offset)
            buf = self.fh.read(run_end - offset)
            result.append(buf.ljust(run_end - offset, b"\x00"))
            offset = run_end

        return b"".join(result)


@dataclass
class ReplayResult:
    state: ReplayState
    entries: list[LogEntry] = field(default_factory=list)
    diagnostic: Optional[str] = None
    stream: Optional[ReplayStream] = None

    @property
    def replayed(self) -> bool:
        return bool(self.entries)


class Log:
    """The VHDX metadata transaction log.

    The log is a circular buffer of entries. The active sequence is a run of valid entries with increasing
    sequence numbers, which is replayed on top of the file before any other structure is read.

    Args:
        fh: The file-like object of the VHDX file.
        header: The active VHDX header.
    """

    def __init__(self, fh: BinaryIO, header: Header):
        self.fh = fh
        self.header = header
        self.offset = header.log_offset
        self.length = header.log_length
        self.guid = header.log_guid
        self.state = ReplayState.EMPTY

        self._buf = None
        self._entries = {}

    def __repr__(self) -> str:
        return f"<Log offset={self.offset:#x} length={self.length:#x} state={self.state.name}>"

    @property
    def is_empty(self) -> bool:
        return self.length == 0 or self.guid == NULL_GUID

    def replay(self) -> ReplayResult:
        """Scan the log for the active sequence and replay it.

        Replay never fails on a corrupt log, the longest valid prefix is replayed instead and the reason
        the scan stopped is returned as the diagnostic.
        """
        if self.is_empty:
            log.debug("Log is empty (length 0x%x, GUID %s), nothing to replay", self.length, self.guid)
            self.state = ReplayState.EMPTY
            return ReplayResult(self.state)

        size = file_size(self.fh)
        if self.offset + self.length > size:
            raise RegionOutOfBounds(
                f"Log region 0x{self.offset:x}-0x{self.offset + self.length:x} extends past end of file (0x{size:x})"
            )

        self.state = ReplayState.SCANNING
        self._buf = read_at(self.fh, self.offset, self.length)
        self._entries = {}

        sequence, diagnostic = self.find_sequence()
        if not sequence:
            log.debug("No valid log sequence found: %s", diagnostic)
            self.state = ReplayState.REPLAYED
            return ReplayResult(self.state, diagnostic=diagnostic)

        stream = ReplayStream(self.fh, max(size, sequence[-1].flushed_file_offset))
        for entry in sequence:
            log.debug("Replaying %r", entry)
            for descriptor in entry.descriptors:
                descriptor.apply(stream)

        self.state = ReplayState.REPLAYED
        return ReplayResult(self.state, sequence, diagnostic, stream)

    def find_sequence(self) -> tuple[list[LogEntry], Optional[str]]:
        """Find the active log sequence.

        Every valid entry whose tail points at itself, or that is the tail of another valid entry, starts a
        candidate sequence. If there are none, every valid entry does. Each next entry must have the next
        sequence number and a tail inside the sequence so far. The longest sequence wins, ties are broken by
        the highest final sequence number.

        Returns:
            A tuple of the winning sequence and the reason it ended, if it ended on an invalid entry.
        """
        valid = []
        first_error = None
        for offset in range(0, self.length, LOG_SECTOR_SIZE):
            entry, error = self._entry(offset)
            if entry is not None:
                valid.append(entry)
            elif first_error is None and self._buf[offset : offset + 4] == LOG_ENTRY_SIGNATURE:
                first_error = error

        if not valid:
            return [], first_error or "No log entries found"

        # Self-contained entries and the heads named by other entries' tails
        heads = {entry.tail for entry in valid}
        starts = [entry for entry in valid if entry.tail == entry.offset or entry.offset in heads] or valid

        best, best_error = [], None
        for start in starts:
            sequence, error = self._walk(start)
            log.debug("Candidate log sequence at 0x%x: %d entries (%s)", start.offset, len(sequence), error)

            if (
                not best
                or len(sequence) > len(best)
                or (len(sequence) == len(best) and sequence[-1].sequence_number > best[-1].sequence_number)
            ):
                best, best_error = sequence, error

        return best, best_error

    def _walk(self, start: LogEntry) -> tuple[list[LogEntry], Optional[str]]:
        sequence = [start]
        offsets = {start.offset}
        offset = (start.offset + start.entry_length) % self.length

        while offset not in offsets:
            entry, error = self._entry(offset)
            if entry is None:
                return sequence, error

            previous = sequence[-1]
            if entry.sequence_number != previous.sequence_number + 1:
                return sequence, (
                    f"Log entry at 0x{offset:x} has sequence number 0x{entry.sequence_number:x}, "
                    f"expected 0x{previous.sequence_number + 1:x}"
                )

            if entry.tail not in offsets:
                return sequence, f"Log entry at 0x{offset:x} has tail 0x{entry.tail:x} outside of the sequence"

            sequence.append(entry)
            offsets.add(offset)
            offset = (offset + entry.entry_length) % self.length

        return sequence, None

    def _entry(self, offset: int) -> tuple[Optional[LogEntry], Optional[str]]:
        if offset not in self._entries:
            try:
                self._entries[offset] = (LogEntry(self._read(offset), offset, self.guid, self.length), None)
            except InvalidLogEntry as e:
                self._entries[offset] = (None, str(e))
        return self._entries[offset]

    def _read(self, offset: int) -> bytes:
        header = c_vhdx.log_entry_header(self._circular(offset, LOG_ENTRY_HEADER_SIZE))
        length = header.entry_length
        if length == 0 or length > self.length:
            length = LOG_ENTRY_HEADER_SIZE
        return self._circular(offset, length)

    def _circular(self, offset: int, length: int) -> bytes:
        buf = self._buf[offset : offset + length]
        if len(buf) < length:
            buf += self._buf[: length - len(buf)]
        return buf
