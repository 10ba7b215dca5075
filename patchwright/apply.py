"""
Transactional application of a bundle to a workspace.

The applier snapshots the workspace, validates the bundle against it,
runs pre-apply commands, writes files, runs migrations, runs post-apply
commands, and verifies the result. Any failure after the snapshot exists
rolls the workspace back to it. Failures are collected into the returned
ApplyResult; only a failed rollback marks the result critical.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .bundle import checksum_bytes, validate_bundle
from .commands import CommandRunner
from .config import Config
from .domain import ApplyResult, Bundle, BundleCommand, BundleFile, BundleMigration, Conflict, SnapshotInfo
from .errors import (
    ApplyValidationError,
    CommandError,
    ConflictError,
    FileApplicationError,
    MigrationError,
    PatchwrightError,
    RollbackError,
    TransactionCancelled,
    VerificationError,
)
from .events import EventChannel, EventKind
from .migrations import MigrationExecutor
from .signing import BundleVerifier
from .snapshots import ArchivedFile, SnapshotStore
from .workspace import LocalWorkspace, Workspace, WorkspaceLock, normalize_path

LOG = logging.getLogger(__name__)


class ApplyState(str, enum.Enum):
    UNPACKING = "unpacking"
    SNAPSHOT_CREATING = "snapshot_creating"
    VALIDATING = "validating"
    PRE_COMMANDS = "pre_commands"
    APPLYING_FILES = "applying_files"
    RUNNING_MIGRATIONS = "running_migrations"
    POST_COMMANDS = "post_commands"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    # Failed before a snapshot existed; nothing was mutated.
    FAILED = "failed"


# Cancellation is honoured up to and including this state.
_LAST_CANCELLABLE = ApplyState.VALIDATING


class ConflictResolution(str, enum.Enum):
    USE_NEW = "use-new"
    KEEP_LOCAL = "keep-local"
    MANUAL_MERGE = "manual-merge"
    CANCEL = "cancel"


ConflictResolver = Callable[[Conflict], Union[ConflictResolution, str]]


def merge_with_markers(local: str, incoming: str) -> str:
    """
    Combine both versions of a file between git-style conflict markers.
    """

    def terminated(text: str) -> str:
        return text if not text or text.endswith("\n") else text + "\n"

    return f"<<<<<<< local\n{terminated(local)}=======\n{terminated(incoming)}>>>>>>> bundle\n"


@dataclass
class _Operation:
    path: str
    action: str  # "write", "delete" or "skip"
    content: str = ""


@dataclass
class _Transaction:
    bundle: Optional[Bundle] = None
    snapshot: Optional[SnapshotInfo] = None
    entries: List[BundleFile] = field(default_factory=list)
    operations: List[_Operation] = field(default_factory=list)
    # Paths that passed validation; rollback restores exactly these.
    paths: List[str] = field(default_factory=list)
    applied_migrations: List[BundleMigration] = field(default_factory=list)


class TransactionalApplier:
    """
    Apply bundles to one workspace, all or nothing.

    Collaborators are passed in explicitly; local implementations are
    used for whichever are omitted, except for the migration executor
    which must be supplied whenever a bundle carries migrations.
    """

    def __init__(
        self,
        workspace_root: str,
        config: Optional[Config] = None,
        *,
        workspace: Optional[Workspace] = None,
        command_runner: Optional[CommandRunner] = None,
        migration_executor: Optional[MigrationExecutor] = None,
        events: Optional[EventChannel] = None,
        verifier: Optional[BundleVerifier] = None,
        resolver: Optional[ConflictResolver] = None,
        snapshots: Optional[SnapshotStore] = None,
        run_commands: bool = True,
    ) -> None:
        self.config = config or Config()
        self.root = workspace_root
        self.workspace = workspace or LocalWorkspace(workspace_root, reserved=(self.config.metadata_dir, ".git"))
        self.command_runner = command_runner or CommandRunner(
            timeout=self.config.command_timeout,
            max_output_bytes=self.config.max_output_bytes,
        )
        self.migration_executor = migration_executor
        self.events = events or EventChannel()
        self.verifier = verifier
        self.resolver = resolver
        self.snapshots = snapshots or SnapshotStore(workspace_root, self.config.metadata_dir)
        self.run_commands = run_commands
        self.state: Optional[ApplyState] = None
        self._cancel_requested = threading.Event()
        # Guards state changes against concurrent cancel() calls.
        self._state_lock = threading.Lock()

    def cancel(self) -> bool:
        """
        Request cancellation of the running transaction.

        Returns False when the transaction is already past validation,
        in which case it runs to completion or to rollback.
        """

        with self._state_lock:
            if self.state is not None and _past_cancellable(self.state):
                LOG.info("Ignoring cancel request in state %s", self.state.value)
                return False
            self._cancel_requested.set()
            return True

    def apply(self, bundle: Union[Bundle, Mapping[str, Any]]) -> ApplyResult:
        """
        Apply the bundle under the workspace lock.

        Raises WorkspaceLockedError if another apply holds the lock; all
        other failures are reported in the returned ApplyResult.
        """

        with WorkspaceLock(self.root, self.config.metadata_dir):
            self._cancel_requested.clear()
            self.state = None
            try:
                return self._apply_locked(bundle)
            finally:
                self._cancel_requested.clear()

    def _enter(self, state: ApplyState, kind: EventKind, **data: Any) -> None:
        with self._state_lock:
            # A cancel accepted while still cancellable stops the
            # transaction here at the latest.
            if self._cancel_requested.is_set():
                raise TransactionCancelled("apply cancelled before any change was made")
            self.state = state
        LOG.debug("Apply state -> %s", state.value)
        self.events.publish(kind, **data)

    def _check_cancel(self) -> None:
        if self._cancel_requested.is_set():
            raise TransactionCancelled("apply cancelled before any change was made")

    def _apply_locked(self, bundle: Union[Bundle, Mapping[str, Any]]) -> ApplyResult:
        tx = _Transaction()
        result = ApplyResult(success=False, final_state=ApplyState.UNPACKING.value)

        try:
            self._enter(ApplyState.UNPACKING, EventKind.UNPACKING)
            tx.bundle = self._unpack(bundle)
            tx.entries = _normalized_entries(
                list(tx.bundle.files)
                + [
                    BundleFile(path=t.path, content=t.content, action="create", checksum=t.checksum, layer="test")
                    for t in tx.bundle.tests
                ]
            )
            self.events.publish(
                EventKind.UNPACKED,
                bundle_id=tx.bundle.id,
                files=len(tx.entries),
                migrations=len(tx.bundle.migrations),
                commands=len(tx.bundle.commands),
            )
            self._check_cancel()

            self._enter(ApplyState.SNAPSHOT_CREATING, EventKind.SNAPSHOT_CREATING)
            tx.snapshot = self.snapshots.create(f"Before applying bundle {tx.bundle.id}")
            result.snapshot = tx.snapshot
            self.events.publish(EventKind.SNAPSHOT_CREATED, snapshot_id=tx.snapshot.id)
            self._check_cancel()

            self._enter(ApplyState.VALIDATING, EventKind.VALIDATING)
            self._validate(tx, result)
            self._check_cancel()
            self.events.publish(EventKind.VALIDATED, conflicts=len(result.conflicts))

            self._enter(ApplyState.PRE_COMMANDS, EventKind.PRE_COMMANDS_RUNNING)
            self._run_commands(tx.bundle.commands, "pre-apply", result)
            self.events.publish(EventKind.PRE_COMMANDS_COMPLETE)

            self._enter(ApplyState.APPLYING_FILES, EventKind.FILES_APPLYING, total=len(tx.operations))
            self._apply_files(tx, result)
            self.events.publish(EventKind.FILES_APPLIED, count=len(result.applied_files))

            self._enter(
                ApplyState.RUNNING_MIGRATIONS, EventKind.MIGRATIONS_RUNNING, total=len(tx.bundle.migrations)
            )
            self._run_migrations(tx, result)
            self.events.publish(EventKind.MIGRATIONS_COMPLETE, count=len(result.applied_migrations))

            self._enter(ApplyState.POST_COMMANDS, EventKind.POST_COMMANDS_RUNNING)
            self._run_commands(tx.bundle.commands, "post-apply", result)
            self.events.publish(EventKind.POST_COMMANDS_COMPLETE)

            self._enter(ApplyState.VERIFYING, EventKind.VERIFYING)
            self._verify(tx)
            self.events.publish(EventKind.VERIFIED)

            self._enter(
                ApplyState.COMPLETE,
                EventKind.COMPLETE,
                files=len(result.applied_files),
                migrations=len(result.applied_migrations),
                commands=len(result.executed_commands),
            )
            result.success = True
            result.final_state = ApplyState.COMPLETE.value
            LOG.info("Applied bundle %s", tx.bundle.id)
            return result
        except Exception as exc:  # noqa: BLE001
            failed_state = self.state
            LOG.error("Apply failed in state %s: %s", failed_state.value if failed_state else "?", exc)
            result.errors.append(exc)
            self.events.publish(
                EventKind.ERROR,
                message=str(exc),
                stage=failed_state.value if failed_state else "unknown",
            )

        if tx.snapshot is None:
            self.state = ApplyState.FAILED
            result.final_state = ApplyState.FAILED.value
            return result

        self.state = ApplyState.ROLLING_BACK
        self.events.publish(EventKind.ROLLBACK_STARTING, snapshot_id=tx.snapshot.id)
        try:
            self._rollback(tx)
        except RollbackError as exc:
            LOG.critical("Rollback to snapshot %s failed: %s", tx.snapshot.id, exc)
            result.errors.append(exc)
            result.critical = True
            self.state = ApplyState.ROLLBACK_FAILED
            result.final_state = ApplyState.ROLLBACK_FAILED.value
            self.events.publish(EventKind.ROLLBACK_FAILED, snapshot_id=tx.snapshot.id, error=str(exc))
            return result

        self.state = ApplyState.ROLLED_BACK
        result.final_state = ApplyState.ROLLED_BACK.value
        self.events.publish(EventKind.ROLLBACK_COMPLETE, snapshot_id=tx.snapshot.id)
        LOG.info("Rolled back to snapshot %s", tx.snapshot.id)
        return result

    def _unpack(self, bundle: Union[Bundle, Mapping[str, Any]]) -> Bundle:
        record = bundle.to_dict() if isinstance(bundle, Bundle) else bundle
        if self.verifier is not None:
            self.verifier.verify_or_reject(record)

        report = validate_bundle(record)
        for warning in report.warnings:
            LOG.warning("Bundle warning: %s", warning)
        if not report.valid:
            raise ApplyValidationError("bundle failed structural validation", report.errors)

        if isinstance(bundle, Bundle):
            return bundle
        try:
            return Bundle.from_dict(record)
        except (KeyError, TypeError, ValueError) as exc:
            raise ApplyValidationError(f"bundle record is malformed: {exc}") from exc

    def _validate(self, tx: _Transaction, result: ApplyResult) -> None:
        errors: List[str] = []
        conflicts: List[Conflict] = []
        seen = set()

        for entry in tx.entries:
            if entry.path in seen:
                errors.append(f"Duplicate bundle path: {entry.path}")
                continue
            seen.add(entry.path)
            try:
                exists = self.workspace.exists(entry.path)
            except FileApplicationError as exc:
                errors.append(str(exc))
                continue
            tx.paths.append(entry.path)

            if entry.action in ("modify", "delete") and not exists:
                errors.append(f"Cannot {entry.action} non-existent file: {entry.path}")
                continue

            if entry.action in ("modify", "delete") and entry.base_checksum:
                current_bytes = self.workspace.read_bytes(entry.path)
                if checksum_bytes(current_bytes) != entry.base_checksum:
                    current = current_bytes.decode("utf-8", errors="replace")
                    conflicts.append(
                        Conflict(
                            path=entry.path,
                            action=entry.action,
                            message=f"File {entry.path} has been modified since the bundle was built",
                            current_content=current,
                            expected_checksum=entry.base_checksum,
                            new_content=entry.content,
                        )
                    )

        migrations = tx.bundle.migrations if tx.bundle else ()
        if migrations and self.migration_executor is None:
            errors.append("Bundle contains migrations but no migration executor is configured")
        elif migrations:
            for migration in migrations:
                if self.migration_executor.is_applied(migration.id):
                    errors.append(f"Migration {migration.id} has already been applied")

        if errors:
            raise ApplyValidationError("pre-apply validation failed", errors)

        resolutions: Dict[str, ConflictResolution] = {}
        if conflicts:
            self.events.publish(EventKind.CONFLICTS_DETECTED, conflicts=[c.path for c in conflicts])
        for conflict in conflicts:
            resolution = self._resolve(conflict)
            conflict.resolution = resolution.value
            result.conflicts.append(conflict)
            if resolution is ConflictResolution.CANCEL:
                raise ConflictError(f"conflict on {conflict.path} was not resolved", conflict)
            resolutions[conflict.path] = resolution

        tx.operations = [self._plan_operation(entry, resolutions.get(entry.path), result) for entry in tx.entries]

    def _resolve(self, conflict: Conflict) -> ConflictResolution:
        if self.resolver is None:
            LOG.warning("Conflict on %s and no resolver configured; cancelling", conflict.path)
            return ConflictResolution.CANCEL
        answer = self.resolver(conflict)
        try:
            return ConflictResolution(answer)
        except ValueError:
            raise ConflictError(f"invalid conflict resolution {answer!r} for {conflict.path}", conflict) from None

    def _plan_operation(
        self,
        entry: BundleFile,
        resolution: Optional[ConflictResolution],
        result: ApplyResult,
    ) -> _Operation:
        if resolution is ConflictResolution.KEEP_LOCAL:
            return _Operation(entry.path, "skip")
        if resolution is ConflictResolution.MANUAL_MERGE:
            if entry.action == "delete":
                result.warnings.append(f"Kept local {entry.path} instead of deleting it (manual merge)")
                return _Operation(entry.path, "skip")
            merged = merge_with_markers(self.workspace.read(entry.path), entry.content)
            result.warnings.append(f"Wrote conflict markers to {entry.path}")
            return _Operation(entry.path, "write", merged)
        if entry.action == "delete":
            return _Operation(entry.path, "delete")
        return _Operation(entry.path, "write", entry.content)

    def _run_commands(self, commands: Any, phase: str, result: ApplyResult) -> None:
        selected: List[BundleCommand] = [c for c in commands if c.phase == phase]
        if not selected:
            return
        if not self.run_commands:
            result.warnings.append(f"Skipped {len(selected)} {phase} command(s)")
            return

        for command in selected:
            if command.kind == "migrate":
                # Migrations already ran through the migration executor.
                LOG.debug("Skipping migrate command %s", command.command)
                continue

            self.events.publish(EventKind.COMMAND_START, command=command.command, phase=phase)
            outcome = self.command_runner.run(command.command, cwd=self.root)
            result.executed_commands.append(command.command)
            self.events.publish(
                EventKind.COMMAND_COMPLETE,
                command=command.command,
                phase=phase,
                success=outcome.success,
                returncode=outcome.returncode,
            )
            if outcome.success:
                continue

            detail = "timed out" if outcome.timed_out else f"exited with {outcome.returncode}"
            if phase == "pre-apply":
                raise CommandError(f"pre-apply command {command.command!r} {detail}: {outcome.stderr.strip()[:500]}")
            LOG.warning("Post-apply command %s %s", command.command, detail)
            result.warnings.append(f"Post-apply command {command.command!r} {detail}")

    def _apply_files(self, tx: _Transaction, result: ApplyResult) -> None:
        total = len(tx.operations)
        for index, op in enumerate(tx.operations):
            if op.action == "skip":
                LOG.info("Keeping local %s", op.path)
                continue
            self.events.publish(EventKind.FILE_APPLYING, index=index, total=total, path=op.path, action=op.action)
            try:
                if op.action == "delete":
                    self.workspace.delete(op.path)
                else:
                    self.workspace.write(op.path, op.content)
            except FileApplicationError:
                raise
            except OSError as exc:
                raise FileApplicationError(f"failed to apply {op.path}: {exc}", op.path) from exc
            result.applied_files.append(op.path)
            self.events.publish(EventKind.FILE_APPLIED, index=index, total=total, path=op.path)

    def _run_migrations(self, tx: _Transaction, result: ApplyResult) -> None:
        migrations = tx.bundle.migrations if tx.bundle else ()
        total = len(migrations)
        for index, migration in enumerate(migrations):
            if migration.data_loss_risk not in ("none", "low"):
                LOG.warning("Running migration %s with %s data loss risk", migration.id, migration.data_loss_risk)
            self.events.publish(EventKind.MIGRATION_START, index=index, total=total, migration=migration.id)
            try:
                self.migration_executor.apply(migration.to_migration())
            except MigrationError:
                raise
            except PatchwrightError as exc:
                raise MigrationError(f"migration {migration.id} failed: {exc}", migration.id) from exc
            tx.applied_migrations.append(migration)
            result.applied_migrations.append(migration.id)
            self.events.publish(EventKind.MIGRATION_COMPLETE, index=index, total=total, migration=migration.id)

    def _verify(self, tx: _Transaction) -> None:
        errors: List[str] = []
        for op in tx.operations:
            if op.action == "skip":
                continue
            exists = self.workspace.exists(op.path)
            if op.action == "delete":
                if exists:
                    errors.append(f"File was not deleted: {op.path}")
            elif not exists:
                errors.append(f"File was not written: {op.path}")
            elif self.workspace.read(op.path) != op.content:
                errors.append(f"File content does not match bundle: {op.path}")

        for migration in tx.applied_migrations:
            if not self.migration_executor.is_applied(migration.id):
                errors.append(f"Migration was not recorded as applied: {migration.id}")

        if errors:
            raise VerificationError("post-apply verification failed", errors)

    def _rollback(self, tx: _Transaction) -> None:
        """
        Restore every validated bundle path from the snapshot and revert
        applied migrations, newest first.

        Every step is attempted; failures are gathered into one
        RollbackError.
        """

        failures: List[str] = []

        for migration in reversed(tx.applied_migrations):
            try:
                self.migration_executor.revert(migration.to_migration())
            except Exception as exc:  # noqa: BLE001
                failures.append(f"migration {migration.id}: {exc}")

        if tx.paths:
            try:
                originals = self.snapshots.read_archived(tx.snapshot, tx.paths)
            except Exception as exc:  # noqa: BLE001
                failures.append(f"cannot read snapshot {tx.snapshot.id}: {exc}")
                raise RollbackError("; ".join(failures)) from exc

            for path in tx.paths:
                try:
                    self._restore(path, originals[path])
                except Exception as exc:  # noqa: BLE001
                    failures.append(f"{path}: {exc}")

        if failures:
            raise RollbackError("; ".join(failures))

    def _restore(self, path: str, original: Optional[ArchivedFile]) -> None:
        exists = self.workspace.exists(path)
        if original is None:
            if exists:
                self.workspace.delete(path)
                if isinstance(self.workspace, LocalWorkspace):
                    self.workspace.prune_empty_dirs(path)
            return

        if exists and self.workspace.read_bytes(path) == original.data:
            return
        self.workspace.write_bytes(path, original.data, mode=original.mode)


def _past_cancellable(state: ApplyState) -> bool:
    order = list(ApplyState)
    return order.index(state) > order.index(_LAST_CANCELLABLE)


def _normalized_entries(entries: List[BundleFile]) -> List[BundleFile]:
    """
    Rewrite entry paths to the form the workspace and snapshots use, so
    ``./src/a.js`` and ``src/a.js`` are recognized as the same file.
    """

    normalized = []
    for entry in entries:
        path = normalize_path(entry.path)
        if path != entry.path:
            LOG.debug("Normalized bundle path %r to %r", entry.path, path)
            entry = dataclasses.replace(entry, path=path)
        normalized.append(entry)
    return normalized
