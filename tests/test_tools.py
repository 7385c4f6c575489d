from __future__ import annotations

from pathlib import Path
from uuid import UUID

import pytest

from dissect.vhdx.tools.vhdx import main

PARENT_GUID = UUID("0f1e2d3c-4b5a-6978-8796-a5b4c3d2e1f0")


def test_vhdx_tool(
    image_builder, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture, tmp_path: Path
) -> None:
    builder = image_builder()
    builder.bat[0] = 0b110 | (4 << 20)
    path = builder.write(tmp_path / "disk.vhdx")

    with monkeypatch.context() as m:
        m.setattr("sys.argv", ["vhdx-inspect", str(path), "-b"])
        assert main() == 0

    out = capsys.readouterr().out
    assert "is dynamic." in out
    assert "File signature is created by 'dissect.vhdx tests'." in out
    assert "Log is empty, 0 entries replayed." in out
    assert "Block 0 at offset 4MiB is FULLY_PRESENT." in out
    assert "Virtual disk size on disk: 0x400000" in out
    assert "Parent locator absent" in out


def test_vhdx_tool_follow(
    image_builder, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture, tmp_path: Path
) -> None:
    image_builder(data_write_guid=PARENT_GUID).write(tmp_path / "parent.vhdx")
    builder = image_builder()
    builder.set_parent_locator({"parent_linkage": str(PARENT_GUID), "relative_path": "parent.vhdx"})
    path = builder.write(tmp_path / "child.vhdx")

    with monkeypatch.context() as m:
        m.setattr("sys.argv", ["vhdx-inspect", str(path), "-f"])
        assert main() == 0

    out = capsys.readouterr().out
    assert "child.vhdx is differencing." in out
    assert "parent.vhdx is dynamic." in out
    assert "relative_path: parent.vhdx" in out


def test_vhdx_tool_invalid(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "invalid.vhdx"
    path.write_bytes(b"\x00" * 4096)

    with monkeypatch.context() as m:
        m.setattr("sys.argv", ["vhdx-inspect", str(path)])
        assert main() == 1

        m.setattr("sys.argv", ["vhdx-inspect", str(tmp_path / "missing.vhdx")])
        assert main() == 1


def test_vhdx_tool_invalid_parent_locator(
    image_builder, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    builder = image_builder()
    builder.set_parent_locator({b"rel": "parent.vhdx"})
    path = builder.write(tmp_path / "child.vhdx")

    with monkeypatch.context() as m:
        m.setattr("sys.argv", ["vhdx-inspect", str(path)])
        assert main() == 1
