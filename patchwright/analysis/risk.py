"""
Risk assessment for plans.

Each risk detector is a named class implementing `Detector`. Detectors
are held in an explicit `DetectorRegistry` that the `RiskEngine` runs in
registration order before it computes the aggregate score, the level,
and the auto-apply gate.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..config import RiskThresholds
from ..domain import RISK_TYPES, SEVERITIES, Migration, ResourceEstimate, Risk, RiskReport, Step
from .scheduler import find_cycles, find_missing_dependencies

LOG = logging.getLogger(__name__)

SEVERITY_WEIGHTS: Dict[str, int] = {"critical": 4, "high": 3, "medium": 2, "low": 1}

RECOMMENDATIONS: Dict[str, str] = {
    "critical": (
        "High risk - proceed with extreme caution. Manual review required. "
        "Consider breaking into smaller changes."
    ),
    "high": "Moderate risk - review carefully before execution. Test in a staging environment first.",
    "medium": "Low to moderate risk - standard review recommended. Can proceed with caution.",
    "low": "Low risk - safe to proceed with normal precautions.",
}

_SCHEMA_BREAKING = ("alter_table", "drop_column", "change_column_type")
_DESTRUCTIVE = ("drop_table", "drop_column", "truncate_table")


@dataclass(frozen=True)
class RiskContext:
    """
    Everything a detector may inspect.
    """

    steps: Tuple[Step, ...]
    migrations: Tuple[Migration, ...] = ()
    analysis: Mapping[str, Any] = field(default_factory=dict)
    estimate: Optional[ResourceEstimate] = None

    @property
    def total_tokens(self) -> int:
        if self.estimate is not None:
            return self.estimate.total_tokens
        return sum(s.estimated_tokens for s in self.steps)


class Detector(ABC):
    """
    Abstract interface for one risk category.

    `essential` detectors must complete for a report to be produced. A
    non-essential detector that raises is skipped and reported as a
    warning instead.
    """

    name: str = ""
    essential: bool = True

    @abstractmethod
    def detect(self, context: RiskContext) -> List[Risk]:
        """
        Return zero or more risks found in the context.

        Implementations must be pure: no I/O and no mutation of the
        context.
        """


class DetectorRegistry:
    """
    Ordered, inspectable collection of detectors keyed by name.
    """

    def __init__(self, detectors: Iterable[Detector] = ()) -> None:
        self._detectors: Dict[str, Detector] = {}
        for detector in detectors:
            self.register(detector)

    def register(self, detector: Detector) -> None:
        if not detector.name:
            raise ValueError(f"detector {type(detector).__name__} has no name")
        if detector.name in self._detectors:
            raise ValueError(f"detector {detector.name!r} is already registered")
        self._detectors[detector.name] = detector

    def unregister(self, name: str) -> Detector:
        try:
            return self._detectors.pop(name)
        except KeyError:
            raise KeyError(f"no detector named {name!r}") from None

    def get(self, name: str) -> Detector:
        return self._detectors[name]

    def names(self) -> List[str]:
        return list(self._detectors)

    def __iter__(self) -> Iterator[Detector]:
        return iter(list(self._detectors.values()))

    def __len__(self) -> int:
        return len(self._detectors)

    def __contains__(self, name: object) -> bool:
        return name in self._detectors


def _target(step: Step) -> str:
    return step.target.lower()


def _ids(items: Iterable[Any]) -> Tuple[str, ...]:
    return tuple(item.id for item in items)


class BreakingChangeDetector(Detector):
    name = "breaking_change"

    def detect(self, context: RiskContext) -> List[Risk]:
        risks: List[Risk] = []

        api_changes = [
            s
            for s in context.steps
            if s.action == "modify"
            and ((s.layer == "backend" and "route" in _target(s)) or "api" in _target(s))
        ]
        if api_changes:
            risks.append(
                Risk(
                    type="breaking_change",
                    category="api",
                    severity="high",
                    score=50,
                    description=f"{len(api_changes)} API route(s) will be modified",
                    impact="May break existing API consumers",
                    mitigation="Version API endpoints, maintain backward compatibility",
                    affected_steps=_ids(api_changes),
                )
            )

        schema_changes = [m for m in context.migrations if m.type in _SCHEMA_BREAKING]
        if schema_changes:
            risks.append(
                Risk(
                    type="breaking_change",
                    category="database",
                    severity="critical",
                    score=80,
                    description=f"{len(schema_changes)} breaking database schema change(s)",
                    impact="May break existing code; stored data may become incompatible",
                    mitigation="Create a migration path and update all dependent code",
                    affected_migrations=_ids(schema_changes),
                )
            )

        component_changes = [
            s
            for s in context.steps
            if s.layer == "frontend" and s.action == "modify" and "component" in _target(s)
        ]
        if len(component_changes) > 3:
            risks.append(
                Risk(
                    type="breaking_change",
                    category="ui",
                    severity="medium",
                    score=40,
                    description=f"{len(component_changes)} component(s) will be modified",
                    impact="May break parent components or pages",
                    mitigation="Test component integration and check prop usage",
                    affected_steps=_ids(component_changes),
                )
            )

        return risks


class DataLossDetector(Detector):
    name = "data_loss"

    def detect(self, context: RiskContext) -> List[Risk]:
        risks: List[Risk] = []

        deletions = [s for s in context.steps if s.action == "delete"]
        if deletions:
            many = len(deletions) > 5
            risks.append(
                Risk(
                    type="data_loss",
                    category="file_deletion",
                    severity="critical" if many else "high",
                    score=70 if many else 50,
                    description=f"{len(deletions)} file(s) will be deleted",
                    impact="Permanent loss of code and configuration",
                    mitigation="Create a backup and review each deletion",
                    affected_steps=_ids(deletions),
                )
            )

        dropped_tables = [m for m in context.migrations if m.type == "drop_table"]
        if dropped_tables:
            risks.append(
                Risk(
                    type="data_loss",
                    category="database",
                    severity="critical",
                    score=90,
                    description=f"{len(dropped_tables)} table(s) will be dropped",
                    impact="Permanent loss of data",
                    mitigation="Back up the database and confirm the data is no longer needed",
                    affected_migrations=_ids(dropped_tables),
                )
            )

        dropped_columns = [m for m in context.migrations if m.type == "drop_column"]
        if dropped_columns:
            risks.append(
                Risk(
                    type="data_loss",
                    category="database",
                    severity="high",
                    score=70,
                    description=f"{len(dropped_columns)} column(s) will be dropped",
                    impact="Loss of data in specific columns",
                    mitigation="Export the data and confirm the columns are unused",
                    affected_migrations=_ids(dropped_columns),
                )
            )

        return risks


class SecurityDetector(Detector):
    name = "security"

    def detect(self, context: RiskContext) -> List[Risk]:
        risks: List[Risk] = []

        auth = [
            s
            for s in context.steps
            if any(word in _target(s) for word in ("auth", "login", "session"))
            or "auth" in s.description.lower()
        ]
        if auth and any(s.action == "modify" for s in auth):
            risks.append(
                Risk(
                    type="security",
                    category="authentication",
                    severity="high",
                    score=60,
                    description="Authentication system will be modified",
                    impact="May introduce security vulnerabilities",
                    mitigation="Run a security review and test authentication flows",
                    affected_steps=_ids(auth),
                )
            )

        permissions = [
            s
            for s in context.steps
            if any(word in _target(s) for word in ("permission", "role", "authorization"))
        ]
        if permissions:
            risks.append(
                Risk(
                    type="security",
                    category="authorization",
                    severity="high",
                    score=60,
                    description="Authorization system will be modified",
                    impact="May grant unintended access",
                    mitigation="Review the permission model and test access controls",
                    affected_steps=_ids(permissions),
                )
            )

        sensitive = [
            s
            for s in context.steps
            if any(word in _target(s) for word in ("password", "secret", "key", "token"))
        ]
        if sensitive:
            risks.append(
                Risk(
                    type="security",
                    category="sensitive_data",
                    severity="medium",
                    score=45,
                    description="Sensitive data handling will change",
                    impact="May expose or mishandle sensitive information",
                    mitigation="Encrypt sensitive data and use secure storage",
                    affected_steps=_ids(sensitive),
                )
            )

        return risks


class PerformanceDetector(Detector):
    name = "performance"

    def detect(self, context: RiskContext) -> List[Risk]:
        risks: List[Risk] = []

        db_steps = [s for s in context.steps if s.layer == "database"]
        if len(db_steps) > 10:
            risks.append(
                Risk(
                    type="performance",
                    category="database",
                    severity="medium",
                    score=35,
                    description=f"{len(db_steps)} database operations",
                    impact="May slow down application startup or migrations",
                    mitigation="Batch migrations, optimize queries, add indexes",
                    affected_steps=_ids(db_steps),
                )
            )

        if len(context.steps) > 50:
            risks.append(
                Risk(
                    type="performance",
                    category="complexity",
                    severity="medium",
                    score=40,
                    description=f"Large plan with {len(context.steps)} steps",
                    impact="May take significant time to execute",
                    mitigation="Break the plan into smaller plans",
                )
            )

        tokens = context.total_tokens
        if tokens > 80_000:
            risks.append(
                Risk(
                    type="performance",
                    category="cost",
                    severity="low",
                    score=20,
                    description=f"High token usage: {tokens}",
                    impact="May incur higher generation costs",
                    mitigation="Trim the plan or cache generated output",
                )
            )

        return risks


class DependencyDetector(Detector):
    name = "dependency"

    def detect(self, context: RiskContext) -> List[Risk]:
        risks: List[Risk] = []

        cycles = find_cycles(context.steps)
        if cycles:
            members = []
            for chain in cycles:
                for step_id in chain.split(" -> "):
                    if step_id not in members:
                        members.append(step_id)
            risks.append(
                Risk(
                    type="dependency",
                    category="circular",
                    severity="high",
                    score=65,
                    description=f"{len(cycles)} circular dependency chain(s)",
                    impact="Steps cannot all run after their dependencies",
                    mitigation="Resolve circular dependencies before execution",
                    affected_steps=tuple(members),
                    details=tuple(cycles),
                )
            )

        missing = find_missing_dependencies(context.steps)
        if missing:
            affected: List[str] = []
            for step_id, _ in missing:
                if step_id not in affected:
                    affected.append(step_id)
            risks.append(
                Risk(
                    type="dependency",
                    category="missing",
                    severity="medium",
                    score=40,
                    description=f"{len(missing)} dependency reference(s) point at unknown steps",
                    impact="Execution may fail or produce incorrect results",
                    mitigation="Add the missing steps or remove the invalid dependencies",
                    affected_steps=tuple(affected),
                    details=tuple(f"{step_id} -> {dep}" for step_id, dep in missing),
                )
            )

        complex_steps = [s for s in context.steps if len(s.dependencies) > 5]
        if complex_steps:
            risks.append(
                Risk(
                    type="dependency",
                    category="complexity",
                    severity="low",
                    score=25,
                    description=f"{len(complex_steps)} step(s) have many dependencies",
                    impact="May be difficult to execute or debug",
                    mitigation="Simplify dependencies or split into smaller steps",
                    affected_steps=_ids(complex_steps),
                )
            )

        return risks


class MigrationDetector(Detector):
    name = "migration"

    def detect(self, context: RiskContext) -> List[Risk]:
        migrations = context.migrations
        risks: List[Risk] = []
        if not migrations:
            return risks

        if len(migrations) > 5:
            risks.append(
                Risk(
                    type="migration",
                    category="complexity",
                    severity="medium",
                    score=45,
                    description=f"{len(migrations)} database migrations",
                    impact="Complex migration path with a higher chance of failure",
                    mitigation="Test each migration individually and keep a rollback plan",
                    affected_migrations=_ids(migrations),
                )
            )

        irreversible = [m for m in migrations if not m.reversible]
        if irreversible:
            risks.append(
                Risk(
                    type="migration",
                    category="rollback",
                    severity="high",
                    score=55,
                    description=f"{len(irreversible)} migration(s) without rollback",
                    impact="Cannot undo the migration if something goes wrong",
                    mitigation="Write reverse SQL for every migration",
                    affected_migrations=_ids(irreversible),
                )
            )

        destructive = [m for m in migrations if m.type in _DESTRUCTIVE]
        if destructive:
            risks.append(
                Risk(
                    type="migration",
                    category="destructive",
                    severity="critical",
                    score=85,
                    description=f"{len(destructive)} destructive migration(s)",
                    impact="Permanent data loss if executed",
                    mitigation="Back up the database and verify the data is no longer needed",
                    affected_migrations=_ids(destructive),
                )
            )

        return risks


def default_registry() -> DetectorRegistry:
    """
    Build a fresh registry holding the six built-in detectors.
    """

    return DetectorRegistry(
        [
            BreakingChangeDetector(),
            DataLossDetector(),
            SecurityDetector(),
            PerformanceDetector(),
            DependencyDetector(),
            MigrationDetector(),
        ]
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_risk_score(risks: Sequence[Risk]) -> int:
    """
    Severity-weighted mean of risk scores, scaled up by risk count.

    The count multiplier grows 5% per risk and caps at 1.5. The result is
    clamped to 0..100.
    """

    if not risks:
        return 0

    weighted = 0
    total_weight = 0
    for risk in risks:
        weight = SEVERITY_WEIGHTS.get(risk.severity, 1)
        weighted += risk.score * weight
        total_weight += weight

    multiplier = min(1 + 0.05 * len(risks), 1.5)
    score = _round_half_up(weighted / total_weight * multiplier)
    return max(0, min(score, 100))


def is_safe_to_auto_apply(score: int, risks: Sequence[Risk], threshold: int) -> bool:
    """
    The auto-apply gate: every condition must hold.
    """

    if score >= threshold:
        return False
    if any(r.severity in ("critical", "high") for r in risks):
        return False
    if any(r.type == "data_loss" for r in risks):
        return False
    if any(r.type == "breaking_change" for r in risks):
        return False
    return True


class RiskEngine:
    """
    Run the registered detectors and aggregate their findings.
    """

    def __init__(
        self,
        registry: Optional[DetectorRegistry] = None,
        thresholds: Optional[RiskThresholds] = None,
    ) -> None:
        self.registry = registry if registry is not None else default_registry()
        self.thresholds = thresholds or RiskThresholds()

    def assess(
        self,
        steps: Sequence[Step],
        migrations: Sequence[Migration] = (),
        analysis: Optional[Mapping[str, Any]] = None,
        estimate: Optional[ResourceEstimate] = None,
    ) -> RiskReport:
        context = RiskContext(
            steps=tuple(steps),
            migrations=tuple(migrations),
            analysis=dict(analysis or {}),
            estimate=estimate,
        )

        risks: List[Risk] = []
        skipped: List[str] = []
        for detector in self.registry:
            try:
                found = detector.detect(context)
            except Exception as exc:
                if detector.essential:
                    raise
                LOG.warning("Skipping non-essential risk detector %s: %s", detector.name, exc)
                skipped.append(f"Risk detector {detector.name} was skipped: {exc}")
                continue
            LOG.debug("Detector %s found %d risk(s)", detector.name, len(found))
            risks.extend(found)

        score = calculate_risk_score(risks)
        level = self.thresholds.level_for(score)
        warnings = self._warnings(risks, estimate) + skipped

        metadata = {"total_risks": len(risks)}
        for severity in SEVERITIES:
            metadata[f"{severity}_risks"] = sum(1 for r in risks if r.severity == severity)
        for kind in RISK_TYPES:
            metadata[f"{kind}_risks"] = sum(1 for r in risks if r.type == kind)

        return RiskReport(
            overall_score=score,
            level=level,
            risks=tuple(risks),
            warnings=tuple(warnings),
            recommendation=RECOMMENDATIONS[level],
            safe_to_auto_apply=is_safe_to_auto_apply(score, risks, self.thresholds.auto_apply),
            metadata=metadata,
        )

    @staticmethod
    def _warnings(risks: Sequence[Risk], estimate: Optional[ResourceEstimate]) -> List[str]:
        warnings: List[str] = []

        high = [r for r in risks if r.severity in ("high", "critical")]
        if high:
            warnings.append(f"Plan contains {len(high)} high-risk operation(s)")
        if any(r.type == "data_loss" for r in risks):
            warnings.append("Data loss is possible - backup recommended")
        if any(r.type == "breaking_change" for r in risks):
            warnings.append("Breaking changes detected - coordinate with the team")
        if any(r.type == "security" for r in risks):
            warnings.append("Security-sensitive changes - review carefully")
        if estimate is not None and not estimate.within_budget:
            warnings.append("Plan exceeds token budget")

        return warnings
