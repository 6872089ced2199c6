from __future__ import annotations

from pathlib import Path

import allure
import pytest

from genbatch.models import Payload
from genbatch.sink import FileSystemArtifactSink, render_artifact_name

pytestmark = [
    allure.epic("Batch Generation"),
    allure.feature("Artifact Storage"),
]


@pytest.mark.parametrize(
    ("template", "prefix", "expected"),
    [
        ("{prefix}_{n}.png", "batch", "batch_0007.png"),
        ("{prefix}-{n}", "fox", "fox-0007.png"),
        ("scene_{n}_{unknown}.jpg", "batch", "scene_0007_.jpg"),
        ("{prefix}/{n}.png", "a:b", "a_b_0007.png"),
    ],
)
def test_render_artifact_name(template: str, prefix: str, expected: str) -> None:
    assert render_artifact_name(7, template=template, prefix=prefix) == expected


def test_store_writes_payload(tmp_path: Path) -> None:
    sink = FileSystemArtifactSink(tmp_path / "out")

    result = sink.store(Payload(data=b"png-bytes"), "batch_0001.png")

    assert result.ok
    assert result.artifact_id is not None
    assert Path(result.artifact_id).read_bytes() == b"png-bytes"


def test_name_collisions_are_uniquified(tmp_path: Path) -> None:
    sink = FileSystemArtifactSink(tmp_path)

    first = sink.store(Payload(data=b"1"), "batch_0001.png")
    second = sink.store(Payload(data=b"2"), "batch_0001.png")
    third = sink.store(Payload(data=b"3"), "batch_0001.png")

    assert Path(first.artifact_id or "").name == "batch_0001.png"
    assert Path(second.artifact_id or "").name == "batch_0001 (1).png"
    assert Path(third.artifact_id or "").name == "batch_0001 (2).png"
    assert (tmp_path / "batch_0001.png").read_bytes() == b"1"


def test_path_like_names_are_rejected(tmp_path: Path) -> None:
    sink = FileSystemArtifactSink(tmp_path)

    result = sink.store(Payload(data=b"x"), "../escape.png")

    assert not result.ok
    assert "plain file name" in (result.error or "")
    assert not (tmp_path.parent / "escape.png").exists()


def test_unwritable_directory_reports_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    sink = FileSystemArtifactSink(blocker)

    result = sink.store(Payload(data=b"x"), "batch_0001.png")

    assert not result.ok
    assert result.error


class _FullDiskHandle:
    def __init__(self, handle) -> None:
        self._handle = handle

    def __enter__(self) -> _FullDiskHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._handle.close()

    def write(self, data: bytes) -> int:
        raise OSError(28, "No space left on device")


def test_failed_write_releases_the_claimed_name(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    real_open = Path.open

    def _open(self: Path, mode: str = "r", *args, **kwargs):
        handle = real_open(self, mode, *args, **kwargs)
        return _FullDiskHandle(handle) if "x" in mode else handle

    monkeypatch.setattr(Path, "open", _open)
    sink = FileSystemArtifactSink(tmp_path)

    first = sink.store(Payload(data=b"x"), "batch_0001.png")
    second = sink.store(Payload(data=b"x"), "batch_0001.png")

    assert not first.ok
    assert "No space left" in (first.error or "")
    assert not second.ok
    assert list(tmp_path.iterdir()) == []
