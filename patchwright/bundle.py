"""
Bundle compilation and structural validation.

A bundle is the content-addressed artifact compiled from an accepted
plan: every file, test, and migration statement carries a SHA-256
checksum, the bundle is classified by its mix of actions, and the
commands it needs before and after application are inferred from what
it touches.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .domain import (
    ACTIONS,
    BUNDLE_TYPES,
    COMMAND_PHASES,
    Bundle,
    BundleCommand,
    BundleFile,
    BundleMigration,
    BundleTest,
    FileChange,
    GeneratedTest,
    Migration,
    Plan,
    Step,
    ValidationReport,
)
from .errors import BundleValidationError
from .workspace import Workspace

LOG = logging.getLogger(__name__)

RISK_ORDER = ("none", "low", "medium", "high", "critical")

# Manifest file name -> install command run before any file is applied.
INSTALL_COMMANDS: Dict[str, str] = {
    "package.json": "npm install",
    "requirements.txt": "pip install -r requirements.txt",
    "pyproject.toml": "pip install -e .",
}

MIGRATE_COMMANDS: Dict[str, str] = {
    "PostgreSQL": "npm run migrate",
    "MySQL": "npm run migrate",
    "MariaDB": "npm run migrate",
    "SQLite": "npm run migrate",
    "MongoDB": "npm run migrate:mongo",
    "SQL Server": "npm run migrate:mssql",
}

BUILD_CONFIG_MARKERS = ("webpack.config", "vite.config", "tsconfig.json")


def checksum(content: str) -> str:
    """
    Return the SHA-256 hex digest of the UTF-8 encoding of `content`.
    """

    return checksum_bytes(content.encode("utf-8"))


def checksum_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def classify_bundle_type(actions: Sequence[str]) -> str:
    """
    Classify a bundle from its file actions.

    More than 80% creates is `full`; creates mixed with modifies or
    deletes is `feature`; anything else, including an empty bundle, is
    `patch`.
    """

    if not actions:
        return "patch"
    creates = sum(1 for a in actions if a == "create")
    if creates / len(actions) > 0.8:
        return "full"
    if creates and any(a in ("modify", "delete") for a in actions):
        return "feature"
    return "patch"


def max_risk(levels: Sequence[str]) -> str:
    ranked = [lvl for lvl in levels if lvl in RISK_ORDER]
    if not ranked:
        return "low"
    return max(ranked, key=RISK_ORDER.index)


def infer_commands(files: Sequence[BundleFile], migrations: Sequence[BundleMigration]) -> List[BundleCommand]:
    commands: List[BundleCommand] = []
    touched = [f for f in files if f.action in ("create", "modify")]

    for manifest, command in INSTALL_COMMANDS.items():
        if any(PurePosixPath(f.path).name == manifest for f in touched):
            commands.append(
                BundleCommand(
                    command=command,
                    phase="pre-apply",
                    risk_level="low",
                    description=f"Install dependencies from {manifest}",
                    kind="install",
                )
            )

    if migrations:
        database = migrations[0].database
        commands.append(
            BundleCommand(
                command=MIGRATE_COMMANDS.get(database, "npm run migrate"),
                phase="post-apply",
                risk_level=max_risk([m.data_loss_risk for m in migrations]),
                description="Run database migrations",
                kind="migrate",
            )
        )

    if any(marker in f.path for f in touched for marker in BUILD_CONFIG_MARKERS):
        commands.append(
            BundleCommand(
                command="npm run build",
                phase="post-apply",
                risk_level="low",
                description="Rebuild the application after configuration changes",
                kind="build",
            )
        )

    return commands


class BundleCompiler:
    """
    Compile generated files, tests, and migrations into a Bundle.
    """

    def compile_bundle(
        self,
        files: Sequence[FileChange],
        tests: Sequence[GeneratedTest] = (),
        migrations: Sequence[Migration] = (),
        plan: Optional[Plan] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Bundle:
        LOG.info(
            "Compiling bundle from %d file(s), %d test(s), %d migration(s)",
            len(files),
            len(tests),
            len(migrations),
        )

        bundle_files = tuple(self._process_file(f) for f in files)
        bundle_tests = tuple(
            BundleTest(
                path=t.path,
                content=t.content,
                checksum=checksum(t.content),
                source_file=t.source_file,
                framework=t.framework,
                coverage=t.coverage,
            )
            for t in tests
        )
        bundle_migrations = tuple(
            BundleMigration(
                id=m.id,
                type=m.type,
                sql_forward=m.sql_forward,
                sql_reverse=m.sql_reverse,
                checksum_forward=checksum(m.sql_forward or ""),
                checksum_reverse=checksum(m.sql_reverse or ""),
                data_loss_risk=m.data_loss_risk,
                description=m.description,
                database=m.database,
            )
            for m in migrations
        )
        commands = tuple(infer_commands(bundle_files, bundle_migrations))
        actions = [f.action for f in bundle_files]

        compiled: Dict[str, Any] = {
            "tokens_used": 0,
            "generation_time": 0,
            "files_created": actions.count("create"),
            "files_modified": actions.count("modify"),
            "files_deleted": actions.count("delete"),
            "tests_generated": len(bundle_tests),
            "migrations_generated": len(bundle_migrations),
            "commands_required": len(commands),
        }
        if plan is not None:
            compiled["plan_risk_score"] = plan.risk_report.overall_score
        compiled.update(metadata or {})

        bundle = Bundle(
            id=str(uuid.uuid4()),
            type=classify_bundle_type(actions),
            created_at=datetime.now(timezone.utc).isoformat(),
            files=bundle_files,
            tests=bundle_tests,
            migrations=bundle_migrations,
            commands=commands,
            metadata=compiled,
            plan_id=plan.id if plan is not None else None,
        )
        LOG.info("Compiled %s bundle %s", bundle.type, bundle.id)
        return bundle

    @staticmethod
    def _process_file(change: FileChange) -> BundleFile:
        if change.action not in ACTIONS:
            raise BundleValidationError(f"{change.path}: unsupported action {change.action!r}")
        content = change.content or ""
        base = None
        if change.action in ("modify", "delete") and change.base_content is not None:
            base = checksum(change.base_content)
        return BundleFile(
            path=change.path,
            content=content,
            action=change.action,
            checksum=checksum(content),
            layer=change.layer,
            description=change.description,
            size=len(content.encode("utf-8")),
            base_checksum=base,
        )


def steps_to_files(
    steps: Sequence[Step],
    contents: Mapping[str, str],
    workspace: Optional[Workspace] = None,
) -> List[FileChange]:
    """
    Pair accepted steps with generated contents.

    `contents` maps a step target to its new content; delete steps need
    none. For modify and delete steps the current workspace content is
    recorded as the base the bundle was built against.
    """

    changes: List[FileChange] = []
    missing: List[str] = []
    for step in steps:
        if step.action != "delete" and step.target not in contents:
            missing.append(step.target)
            continue
        base = None
        if step.action in ("modify", "delete") and workspace is not None and workspace.exists(step.target):
            base = workspace.read(step.target)
        changes.append(
            FileChange(
                path=step.target,
                content=contents.get(step.target, "") if step.action != "delete" else "",
                action=step.action,
                layer=step.layer,
                description=step.description,
                base_content=base,
            )
        )

    if missing:
        raise BundleValidationError(
            f"no generated content for {len(missing)} step target(s)",
            [f"missing content for {path}" for path in missing],
        )
    return changes


def _unsafe_path(path: str) -> bool:
    pure = PurePosixPath(path.replace("\\", "/"))
    return pure.is_absolute() or ".." in pure.parts


def validate_bundle(record: Mapping[str, Any]) -> ValidationReport:
    """
    Check a bundle record's structure without modifying it.
    """

    errors: List[str] = []
    warnings: List[str] = []

    if not isinstance(record, Mapping):
        return ValidationReport(valid=False, errors=["Bundle is not an object"])

    if not record.get("id"):
        errors.append("Missing bundle id")
    if not record.get("type"):
        errors.append("Missing bundle type")
    elif record["type"] not in BUNDLE_TYPES:
        errors.append(f"Invalid bundle type '{record['type']}'")
    if not record.get("created_at"):
        errors.append("Missing created_at")

    files = record.get("files")
    if not isinstance(files, list):
        errors.append("Missing or invalid files array")
        files = []
    elif not files:
        warnings.append("Bundle contains no files")

    for key in ("tests", "migrations", "commands"):
        if key in record and not isinstance(record[key], list):
            errors.append(f"Invalid {key} array")

    for idx, entry in enumerate(files):
        if not isinstance(entry, Mapping):
            errors.append(f"File {idx} is not an object")
            continue
        path = entry.get("path")
        if not path:
            errors.append(f"File {idx} missing path")
        elif _unsafe_path(path):
            errors.append(f"File {idx} has unsafe path '{path}'")
        action = entry.get("action")
        if not action:
            errors.append(f"File {idx} missing action")
        elif action not in ACTIONS:
            errors.append(f"File {idx} has invalid action '{action}'")
        if not entry.get("checksum"):
            warnings.append(f"File {idx} missing checksum")
        elif checksum(entry.get("content") or "") != entry["checksum"]:
            errors.append(f"File {idx} checksum does not match content")

    tests = record.get("tests") if isinstance(record.get("tests"), list) else []
    for idx, entry in enumerate(tests):
        if not isinstance(entry, Mapping) or not entry.get("path"):
            errors.append(f"Test {idx} missing path")
            continue
        if entry.get("checksum") and checksum(entry.get("content") or "") != entry["checksum"]:
            errors.append(f"Test {idx} checksum does not match content")

    migrations = record.get("migrations") if isinstance(record.get("migrations"), list) else []
    for idx, entry in enumerate(migrations):
        if not isinstance(entry, Mapping):
            errors.append(f"Migration {idx} is not an object")
            continue
        if not entry.get("id"):
            errors.append(f"Migration {idx} missing id")
        if not entry.get("sql_forward"):
            errors.append(f"Migration {idx} missing sql_forward")
        elif entry.get("checksum_forward") and checksum(entry["sql_forward"]) != entry["checksum_forward"]:
            errors.append(f"Migration {idx} forward checksum does not match")
        if not entry.get("sql_reverse"):
            warnings.append(f"Migration {idx} missing sql_reverse")
        if entry.get("data_loss_risk") in ("high", "critical"):
            warnings.append(f"Migration {idx} has {entry['data_loss_risk']} data loss risk")

    commands = record.get("commands") if isinstance(record.get("commands"), list) else []
    for idx, entry in enumerate(commands):
        if not isinstance(entry, Mapping) or not entry.get("command"):
            errors.append(f"Command {idx} missing command")
            continue
        if entry.get("phase") not in COMMAND_PHASES:
            errors.append(f"Command {idx} has invalid phase '{entry.get('phase')}'")

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def bundle_summary(bundle: Bundle) -> Dict[str, Any]:
    actions = [f.action for f in bundle.files]
    return {
        "id": bundle.id,
        "type": bundle.type,
        "created_at": bundle.created_at,
        "signed": bundle.signature is not None,
        "files": {
            "total": len(bundle.files),
            "created": actions.count("create"),
            "modified": actions.count("modify"),
            "deleted": actions.count("delete"),
        },
        "tests": {"total": len(bundle.tests)},
        "migrations": {
            "total": len(bundle.migrations),
            "high_risk": sum(1 for m in bundle.migrations if m.data_loss_risk in ("high", "critical")),
        },
        "commands": {
            "total": len(bundle.commands),
            "pre_apply": sum(1 for c in bundle.commands if c.phase == "pre-apply"),
            "post_apply": sum(1 for c in bundle.commands if c.phase == "post-apply"),
        },
    }
