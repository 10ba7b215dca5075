"""
Core domain models for patchwright.

These dataclasses describe steps, migrations, plans, risk reports,
bundles, snapshots, and apply results. They intentionally avoid any file
system, subprocess, or cryptography dependencies so they can be reused by
every stage of the pipeline.

Records cross the pipeline boundary as plain dictionaries; `to_dict` and
`from_dict` convert between the two representations using snake_case
field names.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

Action = Literal["create", "modify", "delete"]
Layer = Literal["database", "backend", "frontend", "general", "test"]
Severity = Literal["low", "medium", "high", "critical"]

ACTIONS: Tuple[str, ...] = ("create", "modify", "delete")
LAYERS: Tuple[str, ...] = ("database", "backend", "frontend", "general", "test")
SEVERITIES: Tuple[str, ...] = ("low", "medium", "high", "critical")
RISK_TYPES: Tuple[str, ...] = (
    "breaking_change",
    "data_loss",
    "security",
    "performance",
    "dependency",
    "migration",
)
BUNDLE_TYPES: Tuple[str, ...] = ("patch", "feature", "full")
COMMAND_PHASES: Tuple[str, ...] = ("pre-apply", "post-apply")


@dataclass(frozen=True)
class Step:
    """
    One atomic create/modify/delete action on a single target.
    """

    id: str
    feature_id: str
    action: Action
    target: str
    layer: Layer
    dependencies: Tuple[str, ...] = ()
    estimated_tokens: int = 2000
    risk_level: str = "medium"
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "action": self.action,
            "target": self.target,
            "layer": self.layer,
            "dependencies": list(self.dependencies),
            "estimated_tokens": self.estimated_tokens,
            "risk_level": self.risk_level,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Step":
        return cls(
            id=data["id"],
            feature_id=data.get("feature_id", ""),
            action=data["action"],
            target=data["target"],
            layer=data.get("layer", "general"),
            dependencies=tuple(data.get("dependencies") or ()),
            estimated_tokens=int(data.get("estimated_tokens", 2000)),
            risk_level=data.get("risk_level", "medium"),
            description=data.get("description") or "",
        )


@dataclass(frozen=True)
class Migration:
    """
    A forward (and optionally reverse) database change.
    """

    id: str
    type: str
    sql_forward: str = ""
    sql_reverse: Optional[str] = None
    data_loss_risk: str = "medium"
    description: str = ""
    step_id: Optional[str] = None
    database: str = "PostgreSQL"

    @property
    def reversible(self) -> bool:
        return bool(self.sql_reverse and self.sql_reverse.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "sql_forward": self.sql_forward,
            "sql_reverse": self.sql_reverse,
            "data_loss_risk": self.data_loss_risk,
            "description": self.description,
            "step_id": self.step_id,
            "database": self.database,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Migration":
        return cls(
            id=data["id"],
            type=data["type"],
            sql_forward=data.get("sql_forward") or "",
            sql_reverse=data.get("sql_reverse"),
            data_loss_risk=data.get("data_loss_risk") or "medium",
            description=data.get("description") or "",
            step_id=data.get("step_id"),
            database=data.get("database") or "PostgreSQL",
        )


@dataclass(frozen=True)
class PlannedTest:
    """
    A test the plan expects to be generated for a step.
    """

    id: str
    target: str
    covers: str
    type: str
    description: str = ""
    priority: str = "normal"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "target": self.target,
            "covers": self.covers,
            "type": self.type,
            "description": self.description,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlannedTest":
        return cls(
            id=data["id"],
            target=data["target"],
            covers=data["covers"],
            type=data.get("type", "integration"),
            description=data.get("description") or "",
            priority=data.get("priority", "normal"),
        )


@dataclass(frozen=True)
class TestRunSummary:
    """
    Pass/fail counts reported by a test runner.
    """

    __test__ = False  # not a pytest test class

    passed: int
    failed: int
    total: int

    def to_dict(self) -> Dict[str, int]:
        return {"passed": self.passed, "failed": self.failed, "total": self.total}


@dataclass(frozen=True)
class ResourceEstimate:
    """
    Token, file, and time estimates for a plan.
    """

    step_tokens: int
    migration_tokens: int
    test_tokens: int
    token_budget: int
    files_created: int
    files_modified: int
    files_deleted: int
    estimated_seconds: int
    baseline_tests: Optional[TestRunSummary] = None

    @property
    def total_tokens(self) -> int:
        return self.step_tokens + self.migration_tokens + self.test_tokens

    @property
    def within_budget(self) -> bool:
        return self.total_tokens <= self.token_budget

    @property
    def files_total(self) -> int:
        return self.files_created + self.files_modified + self.files_deleted

    @property
    def estimated_minutes(self) -> int:
        return -(-self.estimated_seconds // 60)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens": {
                "steps": self.step_tokens,
                "migrations": self.migration_tokens,
                "tests": self.test_tokens,
                "total": self.total_tokens,
                "budget": self.token_budget,
                "within_budget": self.within_budget,
            },
            "files": {
                "created": self.files_created,
                "modified": self.files_modified,
                "deleted": self.files_deleted,
                "total": self.files_total,
            },
            "time": {
                "estimated_minutes": self.estimated_minutes,
                "estimated_seconds": self.estimated_seconds,
            },
            "baseline_tests": self.baseline_tests.to_dict() if self.baseline_tests else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceEstimate":
        tokens = data.get("tokens") or {}
        files = data.get("files") or {}
        time = data.get("time") or {}
        baseline = data.get("baseline_tests")
        return cls(
            step_tokens=int(tokens.get("steps", 0)),
            migration_tokens=int(tokens.get("migrations", 0)),
            test_tokens=int(tokens.get("tests", 0)),
            token_budget=int(tokens.get("budget", 0)),
            files_created=int(files.get("created", 0)),
            files_modified=int(files.get("modified", 0)),
            files_deleted=int(files.get("deleted", 0)),
            estimated_seconds=int(time.get("estimated_seconds", 0)),
            baseline_tests=TestRunSummary(**baseline) if baseline else None,
        )


@dataclass(frozen=True)
class Risk:
    """
    One categorized risk found by a detector.
    """

    type: str
    category: str
    severity: Severity
    score: int
    description: str
    impact: str = ""
    mitigation: str = ""
    affected_steps: Tuple[str, ...] = ()
    affected_migrations: Tuple[str, ...] = ()
    details: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.severity not in SEVERITIES:
            raise ValueError(f"unknown risk severity: {self.severity!r}")
        if self.type not in RISK_TYPES:
            raise ValueError(f"unknown risk type: {self.type!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "category": self.category,
            "severity": self.severity,
            "score": self.score,
            "description": self.description,
            "impact": self.impact,
            "mitigation": self.mitigation,
            "affected_steps": list(self.affected_steps),
            "affected_migrations": list(self.affected_migrations),
            "details": list(self.details),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Risk":
        return cls(
            type=data["type"],
            category=data.get("category", ""),
            severity=data["severity"],
            score=int(data["score"]),
            description=data.get("description", ""),
            impact=data.get("impact", ""),
            mitigation=data.get("mitigation", ""),
            affected_steps=tuple(data.get("affected_steps") or ()),
            affected_migrations=tuple(data.get("affected_migrations") or ()),
            details=tuple(data.get("details") or ()),
        )


@dataclass(frozen=True)
class RiskReport:
    """
    Aggregate risk assessment for one plan.
    """

    overall_score: int
    level: Severity
    risks: Tuple[Risk, ...]
    warnings: Tuple[str, ...]
    recommendation: str
    safe_to_auto_apply: bool
    metadata: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_score": self.overall_score,
            "level": self.level,
            "risks": [r.to_dict() for r in self.risks],
            "warnings": list(self.warnings),
            "recommendation": self.recommendation,
            "safe_to_auto_apply": self.safe_to_auto_apply,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RiskReport":
        return cls(
            overall_score=int(data["overall_score"]),
            level=data["level"],
            risks=tuple(Risk.from_dict(r) for r in data.get("risks") or ()),
            warnings=tuple(data.get("warnings") or ()),
            recommendation=data.get("recommendation", ""),
            safe_to_auto_apply=bool(data.get("safe_to_auto_apply", False)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Plan:
    """
    The full ordered, risk-assessed set of steps for one change request.

    A new Plan is built for every change request; plans are never
    updated in place.
    """

    version: str
    id: str
    generated_at: str
    steps: Tuple[Step, ...]
    migrations: Tuple[Migration, ...]
    tests: Tuple[PlannedTest, ...]
    estimate: ResourceEstimate
    risk_report: RiskReport
    metadata: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "id": self.id,
            "generated_at": self.generated_at,
            "steps": [s.to_dict() for s in self.steps],
            "migrations": [m.to_dict() for m in self.migrations],
            "tests": [t.to_dict() for t in self.tests],
            "estimate": self.estimate.to_dict(),
            "risk_report": self.risk_report.to_dict(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Plan":
        return cls(
            version=data["version"],
            id=data["id"],
            generated_at=data.get("generated_at", ""),
            steps=tuple(Step.from_dict(s) for s in data.get("steps") or ()),
            migrations=tuple(Migration.from_dict(m) for m in data.get("migrations") or ()),
            tests=tuple(PlannedTest.from_dict(t) for t in data.get("tests") or ()),
            estimate=ResourceEstimate.from_dict(data.get("estimate") or {}),
            risk_report=RiskReport.from_dict(data["risk_report"]),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ValidationReport:
    """
    Outcome of a structural validation pass.
    """

    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class FileChange:
    """
    A generated file handed to the bundle compiler.

    `base_content` is the content the plan was built against; it is only
    meaningful for modify and delete actions.
    """

    path: str
    content: str = ""
    action: Action = "create"
    layer: Optional[str] = None
    description: Optional[str] = None
    base_content: Optional[str] = None


@dataclass
class GeneratedTest:
    """
    A generated test file handed to the bundle compiler.
    """

    __test__ = False

    path: str
    content: str
    source_file: Optional[str] = None
    framework: str = "pytest"
    coverage: Optional[str] = None


@dataclass(frozen=True)
class BundleFile:
    path: str
    content: str
    action: Action
    checksum: str
    layer: Optional[str] = None
    description: Optional[str] = None
    size: int = 0
    base_checksum: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "content": self.content,
            "action": self.action,
            "checksum": self.checksum,
            "layer": self.layer,
            "description": self.description,
            "size": self.size,
            "base_checksum": self.base_checksum,
        }


@dataclass(frozen=True)
class BundleTest:
    __test__ = False

    path: str
    content: str
    checksum: str
    source_file: Optional[str] = None
    framework: str = "pytest"
    coverage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "content": self.content,
            "checksum": self.checksum,
            "source_file": self.source_file,
            "framework": self.framework,
            "coverage": self.coverage,
        }


@dataclass(frozen=True)
class BundleMigration:
    id: str
    type: str
    sql_forward: str
    sql_reverse: Optional[str]
    checksum_forward: str
    checksum_reverse: str
    data_loss_risk: str = "medium"
    description: str = ""
    database: str = "PostgreSQL"

    def to_migration(self) -> Migration:
        return Migration(
            id=self.id,
            type=self.type,
            sql_forward=self.sql_forward,
            sql_reverse=self.sql_reverse,
            data_loss_risk=self.data_loss_risk,
            description=self.description,
            database=self.database,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "sql_forward": self.sql_forward,
            "sql_reverse": self.sql_reverse,
            "checksum_forward": self.checksum_forward,
            "checksum_reverse": self.checksum_reverse,
            "data_loss_risk": self.data_loss_risk,
            "database": self.database,
        }


@dataclass(frozen=True)
class BundleCommand:
    """
    A command inferred from the bundle contents.

    `phase` is either "pre-apply" (before any file is touched) or
    "post-apply" (after files and migrations). `kind` is one of install,
    migrate, build, or custom; migrate commands are informational when a
    migration executor runs the migrations.
    """

    command: str
    phase: str
    risk_level: str = "low"
    description: str = ""
    kind: str = "custom"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "phase": self.phase,
            "risk_level": self.risk_level,
            "description": self.description,
            "kind": self.kind,
        }


@dataclass(frozen=True)
class Signature:
    algorithm: str
    key_id: str
    signed_at: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "algorithm": self.algorithm,
            "key_id": self.key_id,
            "signed_at": self.signed_at,
            "value": self.value,
        }


@dataclass(frozen=True)
class Bundle:
    """
    The content-addressed artifact compiled from an accepted plan.
    """

    id: str
    type: str
    created_at: str
    files: Tuple[BundleFile, ...] = ()
    tests: Tuple[BundleTest, ...] = ()
    migrations: Tuple[BundleMigration, ...] = ()
    commands: Tuple[BundleCommand, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    plan_id: Optional[str] = None
    signature: Optional[Signature] = None

    def to_dict(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "created_at": self.created_at,
            "plan_id": self.plan_id,
            "files": [f.to_dict() for f in self.files],
            "tests": [t.to_dict() for t in self.tests],
            "migrations": [m.to_dict() for m in self.migrations],
            "commands": [c.to_dict() for c in self.commands],
            "metadata": dict(self.metadata),
        }
        if self.signature is not None:
            record["signature"] = self.signature.to_dict()
        return record

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Bundle":
        signature = data.get("signature")
        return cls(
            id=data["id"],
            type=data["type"],
            created_at=data["created_at"],
            plan_id=data.get("plan_id"),
            files=tuple(
                BundleFile(
                    path=f["path"],
                    content=f.get("content") or "",
                    action=f["action"],
                    checksum=f.get("checksum") or "",
                    layer=f.get("layer"),
                    description=f.get("description"),
                    size=int(f.get("size", 0)),
                    base_checksum=f.get("base_checksum"),
                )
                for f in data.get("files") or ()
            ),
            tests=tuple(
                BundleTest(
                    path=t["path"],
                    content=t.get("content") or "",
                    checksum=t.get("checksum") or "",
                    source_file=t.get("source_file"),
                    framework=t.get("framework", "pytest"),
                    coverage=t.get("coverage"),
                )
                for t in data.get("tests") or ()
            ),
            migrations=tuple(
                BundleMigration(
                    id=m["id"],
                    type=m.get("type", "unknown"),
                    sql_forward=m.get("sql_forward") or "",
                    sql_reverse=m.get("sql_reverse"),
                    checksum_forward=m.get("checksum_forward") or "",
                    checksum_reverse=m.get("checksum_reverse") or "",
                    data_loss_risk=m.get("data_loss_risk") or "medium",
                    description=m.get("description") or "",
                    database=m.get("database") or "PostgreSQL",
                )
                for m in data.get("migrations") or ()
            ),
            commands=tuple(
                BundleCommand(
                    command=c["command"],
                    phase=c.get("phase", "post-apply"),
                    risk_level=c.get("risk_level", "low"),
                    description=c.get("description", ""),
                    kind=c.get("kind", "custom"),
                )
                for c in data.get("commands") or ()
            ),
            metadata=dict(data.get("metadata") or {}),
            signature=Signature(**signature) if signature else None,
        )


@dataclass(frozen=True)
class SnapshotInfo:
    """
    Sidecar metadata for one pre-apply workspace archive.
    """

    id: str
    created_at: str
    description: str
    archive_path: str
    archive_size: int
    workspace_size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "description": self.description,
            "archive_path": self.archive_path,
            "archive_size": self.archive_size,
            "workspace_size": self.workspace_size,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SnapshotInfo":
        return cls(
            id=data["id"],
            created_at=data["created_at"],
            description=data.get("description", ""),
            archive_path=data["archive_path"],
            archive_size=int(data.get("archive_size", 0)),
            workspace_size=int(data.get("workspace_size", 0)),
        )


@dataclass
class Conflict:
    """
    A file whose workspace content no longer matches what the plan saw.
    """

    path: str
    action: str
    message: str
    current_content: str
    expected_checksum: Optional[str]
    new_content: str
    resolution: Optional[str] = None


@dataclass
class ApplyResult:
    """
    Outcome of one apply transaction.

    `critical` is set only when rollback itself failed.
    """

    success: bool
    final_state: str
    snapshot: Optional[SnapshotInfo] = None
    applied_files: List[str] = field(default_factory=list)
    applied_migrations: List[str] = field(default_factory=list)
    executed_commands: List[str] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    critical: bool = False
