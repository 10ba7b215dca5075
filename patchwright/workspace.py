"""
File access and locking for a target workspace.

The applier reads, writes, and deletes files only through the
`Workspace` interface. `LocalWorkspace` confines every path to the
workspace root and refuses to touch the tool's own metadata directory
or version-control metadata.
"""

from __future__ import annotations

import logging
import os
import posixpath
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import Dict, Optional, Sequence

from .config import DEFAULT_METADATA_DIR
from .errors import FileApplicationError, WorkspaceLockedError

LOG = logging.getLogger(__name__)

LOCK_FILE = "apply.lock"


def normalize_path(path: str) -> str:
    """
    Return the canonical form of a workspace-relative path.

    Backslashes become forward slashes and ``.``, ``..`` and repeated
    separators are collapsed, so ``./src\\app.js`` and ``src/app.js``
    name the same entry. Empty and absolute paths are returned unchanged
    for `LocalWorkspace.resolve` to reject.
    """

    posix = path.replace("\\", "/")
    if not posix.strip() or posix.startswith("/"):
        return path
    normalized = posixpath.normpath(posix)
    return path if normalized == "." else normalized


def write_atomic(target: str, data: bytes, mode: Optional[int] = None) -> None:
    """
    Replace `target` with `data` through a sibling temp file.

    Without an explicit `mode` an existing file keeps its permissions and
    a new one gets 0644.
    """

    directory = os.path.dirname(target)
    os.makedirs(directory, exist_ok=True)
    if mode is None:
        mode = os.stat(target).st_mode & 0o777 if os.path.isfile(target) else 0o644

    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".patchwright-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, target)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class Workspace(ABC):
    """
    Abstract interface for reading and mutating workspace files.

    Paths are relative to the workspace root and use forward slashes.
    Text methods use UTF-8 without newline translation; the byte methods
    are what rollback uses to put back arbitrary files.
    """

    @abstractmethod
    def read(self, path: str) -> str:
        """Return the file's text content."""

    @abstractmethod
    def read_bytes(self, path: str) -> bytes:
        """Return the file's raw content."""

    @abstractmethod
    def write(self, path: str, content: str) -> None:
        """Create or overwrite the file, creating parent directories."""

    @abstractmethod
    def write_bytes(self, path: str, data: bytes, mode: Optional[int] = None) -> None:
        """Like `write`, for raw content; `mode` overrides the permissions."""

    @abstractmethod
    def delete(self, path: str) -> None:
        """Remove the file."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Return True if the path is an existing file."""


class LocalWorkspace(Workspace):
    def __init__(self, root: str, reserved: Sequence[str] = (DEFAULT_METADATA_DIR, ".git")) -> None:
        self.root = os.path.realpath(root)
        self.reserved = tuple(reserved)

    def resolve(self, path: str) -> str:
        """
        Map a workspace-relative path to an absolute one.

        Raises FileApplicationError for paths that escape the root or
        point into a reserved directory.
        """

        normalized = normalize_path(path)
        pure = PurePosixPath(normalized.replace("\\", "/"))
        parts = pure.parts
        if not parts or pure.is_absolute():
            raise FileApplicationError(f"invalid workspace path: {path!r}", path)
        if parts[0] in self.reserved:
            raise FileApplicationError(f"path is inside reserved directory {parts[0]}: {path}", path)

        resolved = os.path.realpath(os.path.join(self.root, *parts))
        if not resolved.startswith(self.root + os.sep):
            raise FileApplicationError(f"path escapes workspace: {path}", path)
        return resolved

    def read(self, path: str) -> str:
        with open(self.resolve(path), "r", encoding="utf-8", newline="") as handle:
            return handle.read()

    def read_bytes(self, path: str) -> bytes:
        with open(self.resolve(path), "rb") as handle:
            return handle.read()

    def write(self, path: str, content: str) -> None:
        write_atomic(self.resolve(path), content.encode("utf-8"))

    def write_bytes(self, path: str, data: bytes, mode: Optional[int] = None) -> None:
        write_atomic(self.resolve(path), data, mode)

    def delete(self, path: str) -> None:
        os.remove(self.resolve(path))

    def exists(self, path: str) -> bool:
        return os.path.isfile(self.resolve(path))

    def prune_empty_dirs(self, path: str) -> None:
        """
        Remove now-empty parent directories of `path` up to the root.
        """

        directory = os.path.dirname(self.resolve(path))
        while directory.startswith(self.root + os.sep):
            try:
                os.rmdir(directory)
            except OSError:
                return
            directory = os.path.dirname(directory)


_process_locks: Dict[str, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def _process_lock(key: str) -> threading.Lock:
    with _process_locks_guard:
        return _process_locks.setdefault(key, threading.Lock())


class WorkspaceLock:
    """
    Exclusive apply lock for one workspace.

    Combines an in-process lock with an ``O_EXCL`` lock file under the
    metadata directory so a second apply fails fast, whether it comes
    from another thread or another process.
    """

    def __init__(self, root: str, metadata_dir: str = DEFAULT_METADATA_DIR) -> None:
        self.root = os.path.realpath(root)
        self.path = os.path.join(self.root, metadata_dir, LOCK_FILE)
        self._thread_lock = _process_lock(self.root)
        self._held = False

    def acquire(self) -> None:
        if not self._thread_lock.acquire(blocking=False):
            raise WorkspaceLockedError(f"another apply is already running in {self.root}")

        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            self._thread_lock.release()
            owner = _read_owner(self.path)
            raise WorkspaceLockedError(
                f"workspace {self.root} is locked by {owner or 'another process'}; "
                f"remove {self.path} if no apply is running"
            ) from None
        except OSError:
            self._thread_lock.release()
            raise

        with os.fdopen(fd, "w") as handle:
            handle.write(f"pid {os.getpid()}\n")
        self._held = True
        LOG.debug("Acquired workspace lock %s", self.path)

    def release(self) -> None:
        if not self._held:
            return
        try:
            os.remove(self.path)
        except FileNotFoundError:
            LOG.warning("Workspace lock file %s disappeared before release", self.path)
        finally:
            self._held = False
            self._thread_lock.release()
        LOG.debug("Released workspace lock %s", self.path)

    def __enter__(self) -> "WorkspaceLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _read_owner(path: str) -> Optional[str]:
    try:
        with open(path, "r") as handle:
            return handle.read().strip() or None
    except OSError:
        return None
