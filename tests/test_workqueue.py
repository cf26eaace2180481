from __future__ import annotations

import errno
import fcntl
import os
import sys
import time
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from docrelay.core import workqueue
from docrelay.core.errors import RetryableIOError
from docrelay.core.workqueue import WorkQueueDirectory, move_file


def _touch(path: Path, content: bytes = b"<a/>", mtime: float | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_directories_are_created_lazily(tmp_path):
    queue = WorkQueueDirectory(tmp_path / "requests", ("processed", "failed"))
    assert not (tmp_path / "requests").exists()

    queue.ensure()
    queue.ensure()

    assert (tmp_path / "requests" / "processed").is_dir()
    assert (tmp_path / "requests" / "failed").is_dir()


def test_list_returns_oldest_first_and_skips_hidden_partial_and_dirs(tmp_path):
    queue = WorkQueueDirectory(tmp_path, ("processed",))
    now = time.time()
    _touch(tmp_path / "newer.xml", mtime=now)
    _touch(tmp_path / "older.xml", mtime=now - 100)
    _touch(tmp_path / ".hidden.xml")
    _touch(tmp_path / "copy.xml.partial")
    queue.ensure()

    assert [item.name for item in queue.list()] == ["older.xml", "newer.xml"]


def test_list_skips_files_that_are_still_locked(tmp_path):
    queue = WorkQueueDirectory(tmp_path)
    ready = _touch(tmp_path / "ready.xml")
    busy = _touch(tmp_path / "busy.xml")

    with busy.open("ab") as writer:
        fcntl.flock(writer.fileno(), fcntl.LOCK_EX)
        listed = queue.list()

    assert listed == [ready]
    assert queue.list() == sorted([ready, busy], key=lambda p: (p.stat().st_mtime, p.name))


def test_transition_moves_item_between_states(tmp_path):
    queue = WorkQueueDirectory(tmp_path, ("processed", "failed"))
    _touch(tmp_path / "item.xml")

    target = queue.transition("item.xml", None, "processed")

    assert target == tmp_path / "processed" / "item.xml"
    assert target.exists()
    assert not (tmp_path / "item.xml").exists()
    assert not queue.contains("item.xml", "failed")


def test_transition_of_missing_item_is_retryable(tmp_path):
    queue = WorkQueueDirectory(tmp_path, ("processed",))

    with pytest.raises(RetryableIOError):
        queue.transition("ghost.xml", None, "processed")


def test_is_drained_ignores_reserved_subfolders(tmp_path):
    outbound = WorkQueueDirectory(tmp_path / "out", ("sent", "error"))
    outbound.ensure()
    _touch(tmp_path / "out" / "sent" / "old.xml")
    assert outbound.is_drained()

    _touch(tmp_path / "out" / "pending.xml")
    assert not outbound.is_drained()


def test_cross_device_move_copies_verifies_and_removes_source(tmp_path, monkeypatch):
    source = _touch(tmp_path / "a" / "doc.xml", b"payload")
    target = tmp_path / "b" / "doc.xml"

    def exdev(src, dst):
        if str(src).endswith(".partial"):
            return real_replace(src, dst)
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    real_replace = os.replace
    monkeypatch.setattr(workqueue.os, "replace", exdev)

    move_file(source, target)

    assert target.read_bytes() == b"payload"
    assert not source.exists()
    assert not (tmp_path / "b" / "doc.xml.partial").exists()


def test_unverifiable_cross_device_copy_keeps_source(tmp_path, monkeypatch):
    source = _touch(tmp_path / "a" / "doc.xml", b"payload")
    target = tmp_path / "b" / "doc.xml"

    def exdev(src, dst):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    def truncated_copy(src, dst):
        Path(dst).write_bytes(b"pay")

    monkeypatch.setattr(workqueue.os, "replace", exdev)
    monkeypatch.setattr(workqueue.shutil, "copyfile", truncated_copy)

    with pytest.raises(RetryableIOError):
        move_file(source, target)

    assert source.read_bytes() == b"payload"
    assert not target.exists()
    assert not (tmp_path / "b" / "doc.xml.partial").exists()
