import argparse
import logging
import sys
from pathlib import Path

from dissect.vhdx.bat import BlockAllocationTable, BlockState, UnknownState
from dissect.vhdx.c_vhdx import VHDX_PARENT_LOCATOR_GUID
from dissect.vhdx.exceptions import Error
from dissect.vhdx.vhdx import VHDX

try:
    from rich.logging import RichHandler
except ImportError:
    RichHandler = logging.StreamHandler


log = logging.getLogger(__name__)


def setup_logging(logger: logging.Logger, verbosity: int) -> None:
    if verbosity == 1:
        level = logging.ERROR
    elif verbosity == 2:
        level = logging.WARNING
    elif verbosity == 3:
        level = logging.INFO
    elif verbosity >= 4:
        level = logging.DEBUG
    else:
        level = logging.CRITICAL

    handler = RichHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(level)
    logger.addHandler(handler)
    logger.setLevel(level)

    # The decoder modules set their own level on import
    for name in ("header", "log", "region", "metadata", "bat", "chain", "vhdx"):
        logging.getLogger(f"dissect.vhdx.{name}").setLevel(level)


def print_image(vhdx: VHDX, blocks: bool) -> None:
    print(f"VHDX file {vhdx.path} is {vhdx.disk_type.name.lower()}.")
    print(f"File signature is created by {vhdx.creator!r}.")
    print()

    header = vhdx.header
    print(f"VHDX header at 0x{header.offset:x}:")
    print(f"\tChecksum:             0x{header.checksum:08x}")
    print(f"\tSequence number:      0x{header.sequence_number:x}")
    print(f"\tFile write GUID:      {header.file_write_guid}")
    print(f"\tData write GUID:      {header.data_write_guid}")
    print(f"\tLog GUID:             {header.log_guid}")
    print(f"\tLog version:          {header.log_version}")
    print(f"\tVersion:              {header.version}")
    print(f"\tLog length:           0x{header.log_length:x}")
    print(f"\tLog offset:           0x{header.log_offset:x}")
    for copy in vhdx.headers:
        if not copy.is_valid:
            print(f"\tIgnored: {copy.describe_error()}")
    print()

    replay = vhdx.replay
    print(f"Log is {replay.state.value}, {len(replay.entries)} entries replayed.")
    for entry in replay.entries:
        print(
            f"\tEntry at 0x{entry.offset:x}: sequence number 0x{entry.sequence_number:x}, "
            f"{entry.descriptor_count} descriptors"
        )
    if replay.diagnostic:
        print(f"\tReplay stopped: {replay.diagnostic}")
    print()

    region_table = vhdx.region_table
    print(f"Region table at 0x{region_table.offset:x}:")
    print(f"\tChecksum:             0x{region_table.checksum:08x}")
    print(f"\tEntry count:          {region_table.entry_count}")
    for entry in region_table.entries:
        print(f"\t\tType:       {entry.type.name}")
        print(f"\t\tGUID:       {entry.guid}")
        print(f"\t\tOffset:     0x{entry.file_offset:x}")
        print(f"\t\tLength:     0x{entry.length:x}")
        print(f"\t\tRequired:   {entry.required}")
        print()

    if blocks:
        print_blocks(vhdx.bat)

    metadata = vhdx.metadata
    print(f"Metadata table at 0x{metadata.offset:x}:")
    print(f"\tEntry count:          {metadata.entry_count}")
    for entry in metadata.entries:
        print(f"\t\tItem ID:         {entry.item_id}")
        print(f"\t\tOffset:          0x{entry.offset:x}")
        print(f"\t\tLength:          0x{entry.length:x}")
        print(f"\t\tIs user:         {entry.is_user}")
        print(f"\t\tIs virtual disk: {entry.is_virtual_disk}")
        print(f"\t\tIs required:     {entry.is_required}")
        print()

    print("Metadata:")
    print(f"\tBlock size:           0x{vhdx.block_size:x}")
    print(f"\tLeave block allocated: {vhdx.leave_block_allocated}")
    print(f"\tHas parent:           {vhdx.has_parent}")
    print(f"\tVirtual disk size:    0x{vhdx.size:x}")
    print(f"\tVirtual disk size on disk: 0x{vhdx.file_size:x}")
    print(f"\tVirtual disk ID:      {vhdx.id}")
    print(f"\tLogical sector size:  0x{vhdx.sector_size:x}")
    print(f"\tPhysical sector size: 0x{vhdx.physical_sector_size:x}")
    for item_id, data in metadata.unknown.items():
        print(f"\tUnknown item {item_id}: 0x{len(data):x} bytes")

    locator = vhdx.parent_locator
    if locator is None:
        print()
        print("\tParent locator absent, disk is the head of its chain.")
    else:
        kind = "VHDX" if locator.type == VHDX_PARENT_LOCATOR_GUID else "unknown"
        print(f"\tParent locator ({kind}, {locator.type}):")
        for key, value in locator.entries.items():
            print(f"\t\t{key}: {value}")
    print()


def state_name(state: BlockState) -> str:
    return str(state) if isinstance(state, UnknownState) else state.name


def print_blocks(bat: BlockAllocationTable) -> None:
    print("Payload blocks:")
    for block, entry in enumerate(bat.payload_entries()):
        print(f"\tBlock {block} at offset {entry.file_offset_mb}MiB is {state_name(entry.state)}.")
    print()

    print("Sector bitmap blocks:")
    for chunk, entry in enumerate(bat.sector_bitmap_entries()):
        print(f"\tBlock {chunk} at offset {entry.file_offset_mb}MiB is {state_name(entry.state)}.")
    print()


def main() -> int:
    parser = argparse.ArgumentParser(description="Retrieves VHDX file structures for debugging")
    parser.add_argument("input", type=Path, help="path to the VHDX file")
    parser.add_argument(
        "-f", "--follow", action="store_true", help="follow the parent chain of a differencing disk"
    )
    parser.add_argument("-b", "--blocks", action="store_true", help="print the full block status information")
    parser.add_argument("-v", "--verbose", action="count", default=2, help="increase output verbosity")
    args = parser.parse_args()

    setup_logging(logging.getLogger("dissect.vhdx"), args.verbose)

    in_file = args.input.resolve()
    if not in_file.exists():
        log.error("Input file does not exist: %s", in_file)
        return 1

    try:
        vhdx = VHDX(in_file, follow_parent=args.follow)
    except (Error, OSError) as e:
        log.error("Failed to decode %s: %s", in_file, e)
        log.debug("", exc_info=e)
        return 1

    for image in vhdx.chain():
        print_image(image, args.blocks)

        if image.parent_error is not None:
            print(f"Parent chain ends here: {image.parent_error}")
        elif image.parent is not None and not image.linkage_matched:
            print(f"Parent {image.parent.path} does not match the parent linkage of {image.path}.")

    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        pass
