"""
Pre-apply workspace snapshots.

A snapshot is a gzip-compressed tar archive of the workspace plus a JSON
sidecar holding its metadata. Both live under the tool's metadata
directory, which, like ``.git``, is never included in an archive.
Snapshots are only removed by an explicit `delete`.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tarfile
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .config import DEFAULT_METADATA_DIR
from .domain import SnapshotInfo
from .errors import SnapshotError
from .workspace import normalize_path, write_atomic

LOG = logging.getLogger(__name__)

_SNAPSHOT_ID = re.compile(r"^snapshot-\d+-[0-9a-f]{8}$")


@dataclass(frozen=True)
class ArchivedFile:
    data: bytes
    mode: int


class SnapshotStore:
    def __init__(self, workspace_root: str, metadata_dir: str = DEFAULT_METADATA_DIR) -> None:
        self.root = os.path.realpath(workspace_root)
        self.metadata_dir = metadata_dir
        self.directory = os.path.join(self.root, metadata_dir, "snapshots")
        self.excluded = {metadata_dir, ".git"}

    def _paths(self, snapshot_id: str) -> Tuple[str, str]:
        if not _SNAPSHOT_ID.match(snapshot_id):
            raise SnapshotError(f"invalid snapshot id: {snapshot_id!r}")
        return (
            os.path.join(self.directory, f"{snapshot_id}.tar.gz"),
            os.path.join(self.directory, f"{snapshot_id}.json"),
        )

    def create(self, description: str = "") -> SnapshotInfo:
        """
        Archive the whole workspace and write the sidecar record.
        """

        if not os.path.isdir(self.root):
            raise SnapshotError(f"workspace does not exist: {self.root}")
        os.makedirs(self.directory, exist_ok=True)

        snapshot_id = f"snapshot-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        archive_path, sidecar_path = self._paths(snapshot_id)

        workspace_size = 0
        try:
            with tarfile.open(archive_path, "w:gz") as archive:
                for relative, absolute in self._walk():
                    archive.add(absolute, arcname=relative, recursive=False)
                    if not os.path.islink(absolute):
                        workspace_size += os.path.getsize(absolute)
        except (OSError, tarfile.TarError) as exc:
            if os.path.exists(archive_path):
                os.remove(archive_path)
            raise SnapshotError(f"failed to create snapshot: {exc}") from exc

        info = SnapshotInfo(
            id=snapshot_id,
            created_at=datetime.now(timezone.utc).isoformat(),
            description=description or "Manual snapshot",
            archive_path=archive_path,
            archive_size=os.path.getsize(archive_path),
            workspace_size=workspace_size,
        )
        record = info.to_dict()
        record["workspace_path"] = self.root
        with open(sidecar_path, "w", encoding="utf-8") as handle:
            json.dump(record, handle, indent=2)

        LOG.info(
            "Created snapshot %s (%d bytes archived from %d bytes)",
            snapshot_id,
            info.archive_size,
            info.workspace_size,
        )
        return info

    def _walk(self) -> Iterator[Tuple[str, str]]:
        for current, dirnames, filenames in os.walk(self.root):
            rel_dir = os.path.relpath(current, self.root)
            if rel_dir == ".":
                dirnames[:] = [d for d in dirnames if d not in self.excluded]
            dirnames.sort()
            for name in sorted(filenames):
                absolute = os.path.join(current, name)
                relative = name if rel_dir == "." else f"{rel_dir}/{name}"
                yield relative.replace(os.sep, "/"), absolute
            # os.walk does not descend into symlinked directories; keep the link itself.
            for name in dirnames:
                absolute = os.path.join(current, name)
                if os.path.islink(absolute):
                    relative = name if rel_dir == "." else f"{rel_dir}/{name}"
                    yield relative.replace(os.sep, "/"), absolute

    def list(self) -> List[SnapshotInfo]:
        """
        Return all snapshots, newest first.
        """

        if not os.path.isdir(self.directory):
            return []

        snapshots: List[SnapshotInfo] = []
        for name in os.listdir(self.directory):
            if not name.endswith(".json"):
                continue
            path = os.path.join(self.directory, name)
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    snapshots.append(SnapshotInfo.from_dict(json.load(handle)))
            except (OSError, ValueError, KeyError) as exc:
                LOG.warning("Ignoring unreadable snapshot record %s: %s", path, exc)
        snapshots.sort(key=lambda s: s.created_at, reverse=True)
        return snapshots

    def load(self, snapshot_id: str) -> SnapshotInfo:
        _, sidecar_path = self._paths(snapshot_id)
        try:
            with open(sidecar_path, "r", encoding="utf-8") as handle:
                return SnapshotInfo.from_dict(json.load(handle))
        except FileNotFoundError:
            raise SnapshotError(f"snapshot not found: {snapshot_id}") from None
        except (OSError, ValueError, KeyError) as exc:
            raise SnapshotError(f"cannot read snapshot {snapshot_id}: {exc}") from exc

    def read_archived(self, snapshot: SnapshotInfo, paths: Iterable[str]) -> Dict[str, Optional[ArchivedFile]]:
        """
        Return the archived content and permissions for each path, or
        None if the path was absent when the snapshot was taken.

        Paths are looked up in their normalized form, which is how
        `create` names archive members.
        """

        wanted = list(dict.fromkeys(paths))
        result: Dict[str, Optional[ArchivedFile]] = {path: None for path in wanted}
        try:
            with tarfile.open(snapshot.archive_path, "r:gz") as archive:
                for path in wanted:
                    try:
                        member = archive.getmember(normalize_path(path))
                    except KeyError:
                        continue
                    if not member.isfile():
                        raise SnapshotError(f"snapshot entry {path} is not a regular file")
                    extracted = archive.extractfile(member)
                    if extracted is not None:
                        result[path] = ArchivedFile(data=extracted.read(), mode=member.mode & 0o777)
        except (OSError, tarfile.TarError) as exc:
            raise SnapshotError(f"cannot read snapshot {snapshot.id}: {exc}") from exc
        return result

    def read_files(self, snapshot: SnapshotInfo, paths: Iterable[str]) -> Dict[str, Optional[bytes]]:
        """
        Return the archived bytes for each path, or None if it was absent.
        """

        archived = self.read_archived(snapshot, paths)
        return {path: entry.data if entry else None for path, entry in archived.items()}

    def restore(self, snapshot_id: str, backup: bool = True, remove_new: bool = False) -> Optional[SnapshotInfo]:
        """
        Put the whole workspace back to a snapshot.

        A backup snapshot of the current state is taken first and
        returned, so a restore can itself be undone. Archived files are
        written over the workspace; with `remove_new`, files created
        since the snapshot are deleted too. The metadata directory and
        ``.git`` are never touched.
        """

        info = self.load(snapshot_id)
        if not os.path.exists(info.archive_path):
            raise SnapshotError(f"snapshot archive missing: {info.archive_path}")

        backup_info = None
        if backup:
            backup_info = self.create(f"Auto-backup before restoring {snapshot_id}")

        restored = 0
        archived_names = set()
        try:
            with tarfile.open(info.archive_path, "r:gz") as archive:
                for member in archive.getmembers():
                    name = normalize_path(member.name)
                    archived_names.add(name)
                    target = self._restore_target(name)
                    if target is None:
                        LOG.warning("Skipping snapshot entry outside the workspace: %s", member.name)
                        continue
                    if member.isdir():
                        os.makedirs(target, exist_ok=True)
                    elif member.issym():
                        if os.path.lexists(target):
                            os.remove(target)
                        os.makedirs(os.path.dirname(target), exist_ok=True)
                        os.symlink(member.linkname, target)
                    elif member.isfile():
                        extracted = archive.extractfile(member)
                        data = extracted.read() if extracted is not None else b""
                        if os.path.isdir(target) and not os.path.islink(target):
                            raise SnapshotError(f"cannot restore {name}: a directory is in the way")
                        if os.path.islink(target):
                            os.remove(target)
                        write_atomic(target, data, member.mode & 0o777)
                        restored += 1
                    else:
                        LOG.warning("Skipping unsupported snapshot entry %s", member.name)

            removed = 0
            if remove_new:
                for relative, absolute in list(self._walk()):
                    if relative not in archived_names:
                        os.remove(absolute)
                        removed += 1
        except (OSError, tarfile.TarError) as exc:
            raise SnapshotError(f"failed to restore snapshot {snapshot_id}: {exc}") from exc

        LOG.info(
            "Restored %d file(s) from snapshot %s (%d new file(s) removed)",
            restored,
            snapshot_id,
            removed,
        )
        return backup_info

    def _restore_target(self, name: str) -> Optional[str]:
        parts = name.split("/")
        if not name or name.startswith("/") or ".." in parts or parts[0] in self.excluded:
            return None
        target = os.path.join(self.root, *parts)
        parent = os.path.realpath(os.path.dirname(target))
        if parent != self.root and not parent.startswith(self.root + os.sep):
            return None
        return target

    def delete(self, snapshot_id: str) -> None:
        archive_path, sidecar_path = self._paths(snapshot_id)
        if not os.path.exists(sidecar_path) and not os.path.exists(archive_path):
            raise SnapshotError(f"snapshot not found: {snapshot_id}")
        for path in (archive_path, sidecar_path):
            if os.path.exists(path):
                os.remove(path)
        LOG.info("Deleted snapshot %s", snapshot_id)
