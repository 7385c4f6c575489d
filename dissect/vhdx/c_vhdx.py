# References:
# - [MS-VHDX] https://docs.microsoft.com/en-us/openspecs/windows_protocols/ms-vhdx/83e061f8-f6e2-4de1-91bd-5d518a43d477

from __future__ import annotations

from enum import IntEnum
from uuid import UUID

from dissect.cstruct import cstruct

vhdx_def = """
struct file_identifier {
    char    signature[8];
    char    creator[512];
};

struct header {
    char    signature[4];
    uint32  checksum;
    uint64  sequence_number;
    char    file_write_guid[16];
    char    data_write_guid[16];
    char    log_guid[16];
    uint16  log_version;
    uint16  version;
    uint32  log_length;
    uint64  log_offset;
    char    reserved[4016];
};

struct region_table_header {
    char    signature[4];
    uint32  checksum;
    uint32  entry_count;
    uint32  reserved;
};

struct region_table_entry {
    char    guid[16];
    uint64  file_offset;
    uint32  length;
    uint32  required:1;
    uint32  reserved:31;
};

struct log_entry_header {
    char    signature[4];
    uint32  checksum;
    uint32  entry_length;
    uint32  tail;
    uint64  sequence_number;
    uint32  descriptor_count;
    uint32  reserved;
    char    log_guid[16];
    uint64  flushed_file_offset;
    uint64  last_file_offset;
};

struct zero_descriptor {
    char    signature[4];
    uint32  reserved;
    uint64  zero_length;
    uint64  file_offset;
    uint64  sequence_number;
};

struct data_descriptor {
    char    signature[4];
    char    trailing_bytes[4];
    char    leading_bytes[8];
    uint64  file_offset;
    uint64  sequence_number;
};

struct data_sector {
    char    signature[4];
    uint32  sequence_high;
    char    data[4084];
    uint32  sequence_low;
};

struct metadata_table_header {
    char    signature[8];
    char    reserved[2];
    uint16  entry_count;
    char    reserved2[20];
};

struct metadata_table_entry {
    char    item_id[16];
    uint32  offset;
    uint32  length;
    uint32  is_user:1;
    uint32  is_virtual_disk:1;
    uint32  is_required:1;
    uint32  reserved:29;
    uint32  reserved2;
};

struct file_parameters {
    uint32  block_size;
    uint32  leave_block_allocated:1;
    uint32  has_parent:1;
    uint32  reserved:30;
};

struct parent_locator_header {
    char    locator_type[16];
    uint16  reserved;
    uint16  key_value_count;
};

struct parent_locator_entry {
    uint32  key_offset;
    uint32  value_offset;
    uint16  key_length;
    uint16  value_length;
};
"""

c_vhdx = cstruct().load(vhdx_def)

KB = 1024
MB = 1024 * KB

ALIGNMENT = 64 * KB
LOG_SECTOR_SIZE = 4 * KB

FILE_IDENTIFIER_OFFSET = 0
HEADER_OFFSETS = (1 * ALIGNMENT, 2 * ALIGNMENT)
HEADER_SIZE = 4 * KB
REGION_TABLE_OFFSETS = (3 * ALIGNMENT, 4 * ALIGNMENT)
REGION_TABLE_SIZE = ALIGNMENT
MAX_REGION_TABLE_ENTRIES = 2047
MIN_REGION_OFFSET = 1 * MB

METADATA_TABLE_SIZE = ALIGNMENT
MAX_METADATA_TABLE_ENTRIES = 2047

MIN_BLOCK_SIZE = 1 * MB
MAX_BLOCK_SIZE = 256 * MB
SECTOR_SIZES = (512, 4096)

CHECKSUM_OFFSET = 4
CHUNK_RATIO_FACTOR = 2**23

BAT_ENTRY_SIZE = 8
BAT_STATE_MASK = 0b111
BAT_FILE_OFFSET_SHIFT = 20

FILE_IDENTIFIER_SIGNATURE = b"vhdxfile"
HEADER_SIGNATURE = b"head"
REGION_TABLE_SIGNATURE = b"regi"
METADATA_TABLE_SIGNATURE = b"metadata"
LOG_ENTRY_SIGNATURE = b"loge"
ZERO_DESCRIPTOR_SIGNATURE = b"zero"
DATA_DESCRIPTOR_SIGNATURE = b"desc"
DATA_SECTOR_SIGNATURE = b"data"

NULL_GUID = UUID("00000000-0000-0000-0000-000000000000")

BAT_REGION_GUID = UUID("2DC27766-F623-4200-9D64-115E9BFD4A08")
METADATA_REGION_GUID = UUID("8B7CA206-4790-4B9A-B8FE-575F050F886E")

FILE_PARAMETERS_GUID = UUID("CAA16737-FA36-4D43-B3B6-33F0AA44E76B")
VIRTUAL_DISK_SIZE_GUID = UUID("2FA54224-CD1B-4876-B211-5DBED83BF4B8")
VIRTUAL_DISK_ID_GUID = UUID("BECA12AB-B2E6-4523-93EF-C309E000C746")
LOGICAL_SECTOR_SIZE_GUID = UUID("8141BF1D-A96F-4709-BA47-F233A8FAAB5F")
PHYSICAL_SECTOR_SIZE_GUID = UUID("CDA348C7-445D-4471-9CC9-E9885251C556")
PARENT_LOCATOR_GUID = UUID("A8D35F2D-B30B-454D-ABF7-D3D84834AB0C")

VHDX_PARENT_LOCATOR_GUID = UUID("B04AEFB7-D19E-4A81-B789-25B8E9445913")


class RegionType(IntEnum):
    UNKNOWN = 0
    BAT = 1
    METADATA = 2


class PayloadBlockState(IntEnum):
    NOT_PRESENT = 0
    UNDEFINED = 1
    ZERO = 2
    UNMAPPED = 3
    FULLY_PRESENT = 6
    PARTIALLY_PRESENT = 7


class SectorBitmapState(IntEnum):
    NOT_PRESENT = 0
    PRESENT = 6


class DiskType(IntEnum):
    FIXED = 0
    DYNAMIC = 1
    DIFFERENCING = 2


REGION_TYPES = {
    BAT_REGION_GUID: RegionType.BAT,
    METADATA_REGION_GUID: RegionType.METADATA,
}

PARENT_LINKAGE_KEY = "parent_linkage"
PARENT_LINKAGE2_KEY = "parent_linkage2"
RELATIVE_PATH_KEY = "relative_path"
VOLUME_PATH_KEY = "volume_path"
ABSOLUTE_WIN32_PATH_KEY = "absolute_win32_path"
