"""Whole-file write safety for the doing file.

Saves always go through atomic_write, so a crash mid-save leaves either the
old file or the new one. file_lock is opt-in (``[file] lock = true``) for
users who run several writers against one file.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, TextIO

import portalocker


def lock_path_for(path: Path) -> Path:
    return path.with_suffix(path.suffix + ".lock")


@contextmanager
def file_lock(path: Path, timeout: float = 10.0) -> Generator[None, None, None]:
    """Hold an exclusive lock on a .lock file beside `path`.

    Args:
        path: File to lock
        timeout: Seconds to wait for lock

    Raises:
        portalocker.LockException: If lock cannot be acquired
    """
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.touch(exist_ok=True)

    with portalocker.Lock(lock_path, timeout=timeout):
        yield


@contextmanager
def atomic_write(path: Path, encoding: str = "utf-8") -> Generator[TextIO, None, None]:
    """Write a text file atomically: temp file, fsync, then rename over `path`.

    Newlines are written as-is (no platform translation).

    Yields:
        File handle for writing
    """
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(tmp_path, "w", encoding=encoding, newline="") as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def write_text(path: Path, text: str, lock: bool = False, timeout: float = 10.0) -> None:
    """Overwrite `path` with `text` atomically, optionally under file_lock."""
    if lock:
        with file_lock(path, timeout=timeout):
            with atomic_write(path) as f:
                f.write(text)
    else:
        with atomic_write(path) as f:
            f.write(text)
