from dissect.vhdx.bat import BatEntry, BlockAllocationTable, UnknownState
from dissect.vhdx.c_vhdx import DiskType, PayloadBlockState, SectorBitmapState
from dissect.vhdx.exceptions import (
    CorruptHeaderError,
    Error,
    InvalidSignature,
    InvalidVirtualDisk,
    ParentCycleDetected,
    ParentError,
    ParentNotFound,
    ReadError,
    RegionOutOfBounds,
    UnsupportedRequiredMetadata,
    UnsupportedRequiredRegion,
)
from dissect.vhdx.vhdx import VHDX, open_chain

__all__ = [
    "BatEntry",
    "BlockAllocationTable",
    "CorruptHeaderError",
    "DiskType",
    "Error",
    "InvalidSignature",
    "InvalidVirtualDisk",
    "ParentCycleDetected",
    "ParentError",
    "ParentNotFound",
    "PayloadBlockState",
    "ReadError",
    "RegionOutOfBounds",
    "SectorBitmapState",
    "UnknownState",
    "UnsupportedRequiredMetadata",
    "UnsupportedRequiredRegion",
    "VHDX",
    "open_chain",
]
