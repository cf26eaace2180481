"""Directory-backed work queues.

A work item is a file; its state is the directory it sits in.  Moving an
item between states is a rename, so other workers observe either the old or
the new location and never both.
"""
from __future__ import annotations

import errno
import fcntl
import hashlib
import logging
import os
import shutil
from pathlib import Path
from typing import Iterable

from docrelay.core.errors import RetryableIOError

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"
_NOT_READY = {errno.EBUSY, errno.EACCES, errno.EAGAIN, errno.EWOULDBLOCK, errno.ETXTBSY}


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fp:
        for chunk in iter(lambda: fp.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_accessible(path: Path) -> bool:
    """Return ``True`` once no producer still holds ``path`` open for writing."""

    try:
        with path.open("rb") as fp:
            fcntl.flock(fp.fileno(), fcntl.LOCK_SH | fcntl.LOCK_NB)
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
    except FileNotFoundError:
        return False
    except OSError as exc:
        if exc.errno in _NOT_READY:
            return False
        raise
    return True


def move_file(source: Path, target: Path, *, overwrite: bool = True) -> Path:
    """Atomically move ``source`` to ``target``.

    Falls back to copy, verify and delete when the rename crosses devices.  An
    unverifiable copy is discarded and the source kept in place.
    """

    target.parent.mkdir(parents=True, exist_ok=True)
    if not overwrite and target.exists():
        raise FileExistsError(target)
    try:
        os.replace(source, target)
        return target
    except FileNotFoundError as exc:
        raise RetryableIOError(f"{source.name} disappeared before the move", source="filesystem") from exc
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            if exc.errno in _NOT_READY:
                raise RetryableIOError(f"{source.name} is busy", source="filesystem") from exc
            raise

    partial = target.with_name(target.name + PARTIAL_SUFFIX)
    try:
        shutil.copyfile(source, partial)
        if partial.stat().st_size != source.stat().st_size or _sha256(partial) != _sha256(source):
            raise RetryableIOError(f"copy of {source.name} could not be verified", source="filesystem")
        os.replace(partial, target)
    except OSError as exc:
        partial.unlink(missing_ok=True)
        raise RetryableIOError(f"cross-device copy of {source.name} failed: {exc}", source="filesystem") from exc
    except RetryableIOError:
        partial.unlink(missing_ok=True)
        raise
    source.unlink(missing_ok=True)
    logger.debug("copied %s across devices to %s", source, target)
    return target


class WorkQueueDirectory:
    """A root directory whose named subfolders are the states of its items."""

    def __init__(self, root: Path, states: Iterable[str] = ()) -> None:
        self.root = Path(root)
        self.states = tuple(states)

    def path(self, state: str | None = None) -> Path:
        folder = self.root if not state else self.root / state
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    def ensure(self) -> None:
        for state in (None, *self.states):
            self.path(state)

    def list(self, state: str | None = None) -> list[Path]:
        """Accessible regular files of ``state``, oldest first."""

        folder = self.path(state)
        items: list[tuple[float, str, Path]] = []
        for entry in os.scandir(folder):
            if entry.name.startswith(".") or entry.name.endswith(PARTIAL_SUFFIX):
                continue
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                mtime = entry.stat().st_mtime
            except FileNotFoundError:
                continue
            path = Path(entry.path)
            if not is_accessible(path):
                logger.debug("%s is still being written, skipping", path)
                continue
            items.append((mtime, entry.name, path))
        items.sort()
        return [path for _, _, path in items]

    def transition(
        self,
        name: str,
        from_state: str | None,
        to_state: str | None,
        *,
        overwrite: bool = True,
    ) -> Path:
        source = self.path(from_state) / name
        target = self.path(to_state) / name
        return move_file(source, target, overwrite=overwrite)

    def contains(self, name: str, state: str | None = None) -> bool:
        return (self.path(state) / name).is_file()

    def is_drained(self) -> bool:
        """``True`` when the root holds nothing besides its own state folders."""

        folder = self.path()
        reserved = set(self.states)
        for entry in os.scandir(folder):
            if entry.name in reserved and entry.is_dir():
                continue
            return False
        return True
