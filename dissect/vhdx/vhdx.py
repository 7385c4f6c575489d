# References:
# - [MS-VHDX] https://docs.microsoft.com/en-us/openspecs/windows_protocols/ms-vhdx/83e061f8-f6e2-4de1-91bd-5d518a43d477

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import BinaryIO, Optional, Union
from uuid import UUID

from dissect.vhdx.bat import BlockAllocationTable
from dissect.vhdx.c_vhdx import DiskType
from dissect.vhdx.chain import resolve_parent
from dissect.vhdx.exceptions import ParentError
from dissect.vhdx.header import read_file_identifier, read_headers, read_region_tables
from dissect.vhdx.log import Log
from dissect.vhdx.metadata import MetadataTable, ParentLocator
from dissect.vhdx.region import RegionTable
from dissect.vhdx.util import file_size

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))


class VHDX:
    """Hyper-V VHDX structure decoder.

    Decodes every structure of a fixed, dynamic or differencing VHDX file: the file identifier, both headers,
    the log, both region tables, the metadata table and the BAT. The log is replayed in memory before the
    region table, metadata and BAT are read. Nothing is ever written to the file.

    Everything is read during construction. If a path is given, the file is opened and closed again before the
    constructor returns, and the replay overlay in :attr:`replay` is dropped with it. A file-like object remains
    owned by the caller, and the overlay stays readable for as long as the caller keeps it open.

    Differencing disks can have their parent chain decoded with ``follow_parent``. Failing to locate a parent
    does not fail the child, the error is stored in :attr:`parent_error` instead.

    Args:
        fh: A file-like object or a path to the VHDX file.
        follow_parent: Whether to locate and decode the parent chain of a differencing disk.
        visited: Canonical paths of the images already in the chain, used to detect cycles.
    """

    def __init__(
        self,
        fh: Union[BinaryIO, Path, str],
        follow_parent: bool = False,
        visited: Optional[set[Path]] = None,
    ):
        if hasattr(fh, "read"):
            name = getattr(fh, "name", None)
            self.path = Path(name) if isinstance(name, str) else None
            self._decode(fh)
        else:
            if not isinstance(fh, Path):
                fh = Path(fh)
            self.path = fh
            with fh.open("rb") as fh:
                self._decode(fh)

            # The overlay reads through to the file we just closed
            self.replay.stream = None

        self.visited = set(visited or ())
        if self.path is not None:
            self.visited.add(self.path.resolve())

        self.parent = None
        self.parent_error = None
        self.linkage_matched = None
        if follow_parent and self.has_parent:
            try:
                self.parent, self.linkage_matched = resolve_parent(self, self.visited)
            except ParentError as e:
                log.warning("Failed to resolve parent of %s: %s", self.path, e)
                self.parent_error = e

    def __repr__(self) -> str:
        return f"<VHDX path={self.path} type={self.disk_type.name} size={self.size:#x}>"

    def _decode(self, fh: BinaryIO) -> None:
        self.file_identifier = read_file_identifier(fh)
        self.creator = self.file_identifier.creator
        self.file_size = file_size(fh)

        # The log location comes from the on-disk headers, everything else from the replayed view
        self.disk_header, self.disk_headers = read_headers(fh)
        self.log = Log(fh, self.disk_header)
        self.replay = self.log.replay()
        if self.replay.diagnostic:
            log.info("Log replay stopped: %s", self.replay.diagnostic)

        stream = self.replay.stream or fh

        self.header, self.headers = read_headers(stream)
        region_table, self.region_tables = read_region_tables(stream)

        log_region = (self.header.log_offset, self.header.log_length)
        self.region_table = RegionTable(region_table, file_size(stream), log_region)
        self.metadata = MetadataTable(stream, self.region_table.metadata)
        self.bat = BlockAllocationTable(stream, self.region_table.bat, self.metadata)

        file_parameters = self.metadata.file_parameters
        self.size = self.metadata.virtual_disk_size
        self.block_size = file_parameters.block_size
        self.has_parent = file_parameters.has_parent
        self.leave_block_allocated = file_parameters.leave_block_allocated
        self.sector_size = self.metadata.logical_sector_size
        self.physical_sector_size = self.metadata.physical_sector_size
        self.id = self.metadata.virtual_disk_id
        self.chunk_ratio = self.bat.chunk_ratio

    @property
    def disk_type(self) -> DiskType:
        return self.bat.disk_type

    @property
    def data_write_guid(self) -> UUID:
        return self.header.data_write_guid

    @property
    def parent_locator(self) -> Optional[ParentLocator]:
        return self.metadata.parent_locator

    def chain(self) -> list[VHDX]:
        """Return this image and every decoded ancestor, child first."""
        images = [self]
        while images[-1].parent is not None:
            images.append(images[-1].parent)
        return images


def open_chain(path: Union[Path, str]) -> list[VHDX]:
    """Decode a VHDX file and its complete parent chain, child first."""
    return VHDX(path, follow_parent=True).chain()
