from __future__ import annotations

from io import BytesIO
from unittest.mock import patch

import pytest

from dissect.vhdx import VHDX, DiskType, PayloadBlockState
from dissect.vhdx.c_vhdx import MB
from dissect.vhdx.exceptions import InvalidSignature, ReadError
from dissect.vhdx.log import ReplayState

GB = 1024 * MB


def test_vhdx(image_builder) -> None:
    builder = image_builder()
    v = VHDX(builder.build())

    assert v.path is None
    assert v.creator == "dissect.vhdx tests"
    assert v.size == 1 * GB
    assert v.block_size == 32 * MB
    assert not v.has_parent
    assert not v.leave_block_allocated
    assert v.sector_size == 512
    assert v.physical_sector_size == 4096
    assert v.id == image_builder.VIRTUAL_DISK_ID
    assert v.chunk_ratio == 128
    assert v.data_write_guid == image_builder.DATA_WRITE_GUID
    assert v.header.file_write_guid == image_builder.FILE_WRITE_GUID
    assert v.parent_locator is None
    assert v.disk_type == DiskType.DYNAMIC

    assert v.replay.state == ReplayState.EMPTY
    assert v.replay.stream is None

    assert len(v.bat) == 32
    assert all(entry.state == PayloadBlockState.NOT_PRESENT for entry in v.bat.payload_entries())
    assert v.chain() == [v]


def test_vhdx_path(image_builder, tmp_path) -> None:
    path = image_builder().write(tmp_path / "disk.vhdx")

    v = VHDX(path)
    assert v.path == path
    assert v.visited == {path.resolve()}

    v = VHDX(str(path))
    assert v.path == path

    with path.open("rb") as fh:
        v = VHDX(fh)
        assert v.path == path
        assert not fh.closed


def test_vhdx_invalid_signature() -> None:
    fh = BytesIO(b"notvhdx!" + b"\x00" * (1 * MB))

    with patch("dissect.vhdx.vhdx.read_headers") as mock_read_headers:
        with pytest.raises(InvalidSignature):
            VHDX(fh)

    mock_read_headers.assert_not_called()


def test_vhdx_truncated() -> None:
    with pytest.raises(ReadError):
        VHDX(BytesIO(b"vhdxfile"))

    with pytest.raises(InvalidSignature):
        VHDX(BytesIO(b"not a vhdx file"))

    with pytest.raises(InvalidSignature):
        VHDX(BytesIO(b""))


def test_vhdx_deterministic(image_builder) -> None:
    builder = image_builder()
    builder.bat[0] = 6 | (4 << 20)
    builder.bat[1] = 4
    builder.add_log_entry(0, 10, [("zero", image_builder.BAT_OFFSET + 4096, 4096)])
    buf = builder.build().getvalue()

    first = VHDX(BytesIO(buf))
    second = VHDX(BytesIO(buf))

    assert first.header.sequence_number == second.header.sequence_number
    assert [entry.sequence_number for entry in first.replay.entries] == [
        entry.sequence_number for entry in second.replay.entries
    ]
    assert [(entry.guid, entry.file_offset) for entry in first.region_table.entries] == [
        (entry.guid, entry.file_offset) for entry in second.region_table.entries
    ]
    assert first.metadata.lookup.keys() == second.metadata.lookup.keys()
    assert list(first.bat) == list(second.bat)
    assert first.disk_type == second.disk_type


@pytest.mark.parametrize(
    "kwargs, bat, expected",
    [
        ({}, {}, DiskType.DYNAMIC),
        ({"leave_block_allocated": True}, {}, DiskType.FIXED),
        ({}, {idx: 6 | ((4 + idx) << 20) for idx in range(32)}, DiskType.FIXED),
        ({}, {idx: 6 | ((4 + idx) << 20) for idx in range(31)}, DiskType.DYNAMIC),
    ],
)
def test_vhdx_disk_type(image_builder, kwargs: dict, bat: dict, expected: DiskType) -> None:
    builder = image_builder(**kwargs)
    builder.bat.update(bat)

    assert VHDX(builder.build()).disk_type == expected


def test_vhdx_differencing_without_follow(image_builder) -> None:
    builder = image_builder()
    builder.set_parent_locator({"relative_path": "parent.vhdx"})

    v = VHDX(builder.build())
    assert v.has_parent
    assert v.disk_type == DiskType.DIFFERENCING
    assert v.parent is None
    assert v.parent_error is None
    assert v.linkage_matched is None


def test_vhdx_replay_stream_lifetime(image_builder, tmp_path) -> None:
    builder = image_builder()
    builder.add_log_entry(0, 1, [("zero", image_builder.BAT_OFFSET, 4096)])
    path = builder.write(tmp_path / "disk.vhdx")

    v = VHDX(path)
    assert [entry.sequence_number for entry in v.replay.entries] == [1]
    assert v.replay.stream is None
    assert v.file_size == 4 * MB

    with path.open("rb") as fh:
        v = VHDX(fh)
        v.replay.stream.seek(image_builder.BAT_OFFSET)
        assert v.replay.stream.read(4096) == b"\x00" * 4096
