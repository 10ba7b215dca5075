"""
High-level plan construction for patchwright.

The planner is responsible for:
  - extracting features from an app specification,
  - expanding them into steps and resolving implicit dependencies,
  - ordering the steps,
  - deriving migrations and the planned test list,
  - estimating resources, and
  - running the risk engine over the result.

Plan construction never fails because of cycles or dangling dependency
references; those are reported as risks instead.
"""

from __future__ import annotations

import logging
import time
from collections import namedtuple
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, List, Mapping, Optional, Sequence

from .analysis.risk import RiskEngine
from .analysis.scheduler import find_cycles, order_steps
from .analysis.steps import extract_features, generate_steps, resolve_dependencies
from .commands import TestRunner
from .config import Config
from .domain import ACTIONS, Migration, Plan, PlannedTest, ResourceEstimate, Step, TestRunSummary, ValidationReport
from .errors import PatchwrightError, PlanValidationError

LOG = logging.getLogger(__name__)

PLAN_VERSION = "1.0"

_DependencyNode = namedtuple("_DependencyNode", ["id", "dependencies"])


def build_plan(
    app_spec: Mapping[str, Any],
    analysis: Optional[Mapping[str, Any]] = None,
    config: Optional[Config] = None,
    *,
    test_runner: Optional[TestRunner] = None,
    workspace: Optional[str] = None,
    engine: Optional[RiskEngine] = None,
) -> Plan:
    """
    Build a complete, risk-assessed plan for one change request.

    When both `test_runner` and `workspace` are given, the workspace's
    current test suite is run once and its counts are recorded in the
    estimate as a baseline.
    """

    config = config or Config()
    analysis = analysis or {}

    features = extract_features(app_spec)
    LOG.info("Extracted %d feature(s) from app specification", len(features))

    raw_steps: List[Step] = []
    for feature in features:
        raw_steps.extend(generate_steps(feature, analysis))

    seen = set()
    for step in raw_steps:
        if step.id in seen:
            raise PlanValidationError(f"duplicate step id {step.id}", [f"duplicate step id {step.id}"])
        seen.add(step.id)

    steps = order_steps(resolve_dependencies(raw_steps))
    if len(steps) > config.max_steps:
        LOG.warning("Plan has %d steps, above the configured maximum of %d", len(steps), config.max_steps)

    migrations = generate_migrations(app_spec, steps)
    tests = generate_tests(steps)

    baseline = None
    if test_runner is not None and workspace is not None:
        baseline = _baseline_tests(test_runner, workspace)

    estimate = estimate_resources(steps, migrations, tests, config.token_budget, baseline)

    engine = engine or RiskEngine(thresholds=config.risk_thresholds)
    report = engine.assess(steps, migrations, analysis, estimate)
    LOG.info(
        "Plan risk score %d (%s); safe to auto-apply: %s",
        report.overall_score,
        report.level,
        report.safe_to_auto_apply,
    )

    return Plan(
        version=PLAN_VERSION,
        id=str(app_spec.get("id") or f"spec_{int(time.time() * 1000)}"),
        generated_at=datetime.now(timezone.utc).isoformat(),
        steps=tuple(steps),
        migrations=tuple(migrations),
        tests=tuple(tests),
        estimate=estimate,
        risk_report=report,
        metadata={
            "features": len(features),
            "steps": len(steps),
            "migrations": len(migrations),
            "tests": len(tests),
        },
    )


def generate_migrations(app_spec: Mapping[str, Any], steps: Sequence[Step]) -> List[Migration]:
    """
    Collect declared migrations and derive create_table migrations.

    Every database-layer step that creates a model gets a create_table
    migration named after the model file.
    """

    migrations = [Migration.from_dict(m) for m in app_spec.get("migrations") or []]
    ids = {m.id for m in migrations}

    db_steps = [s for s in steps if s.layer == "database"]
    for idx, step in enumerate(db_steps):
        if step.action != "create" or "model" not in step.target:
            continue
        migration_id = f"migration_{idx + 1}"
        if migration_id in ids:
            raise PlanValidationError(
                f"declared migration id {migration_id} collides with a derived migration",
                [f"duplicate migration id {migration_id}"],
            )
        table = PurePosixPath(step.target).stem.lower()
        migrations.append(
            Migration(
                id=migration_id,
                type="create_table",
                sql_forward=f"CREATE TABLE {table} (id INTEGER PRIMARY KEY);",
                sql_reverse=f"DROP TABLE {table};",
                data_loss_risk="low",
                description=f"Create table for {step.target}",
                step_id=step.id,
            )
        )
        ids.add(migration_id)

    return migrations


def generate_tests(steps: Sequence[Step]) -> List[PlannedTest]:
    tests: List[PlannedTest] = []
    for idx, step in enumerate(steps):
        if step.layer not in ("backend", "frontend"):
            continue
        tests.append(
            PlannedTest(
                id=f"test_{idx + 1}",
                target=step.target,
                covers=step.id,
                type="integration" if step.layer == "backend" else "component",
                description=f"Test {step.description}",
                priority="critical" if step.risk_level == "high" else "normal",
            )
        )
    return tests


def estimate_resources(
    steps: Sequence[Step],
    migrations: Sequence[Migration] = (),
    tests: Sequence[PlannedTest] = (),
    token_budget: int = 100_000,
    baseline: Optional[TestRunSummary] = None,
) -> ResourceEstimate:
    """
    Rough token, file, and time estimates.

    Migrations cost 1000 tokens and 60 seconds each, tests 500 tokens
    each, and steps their own estimate plus 30 seconds each.
    """

    return ResourceEstimate(
        step_tokens=sum(s.estimated_tokens or 2000 for s in steps),
        migration_tokens=len(migrations) * 1000,
        test_tokens=len(tests) * 500,
        token_budget=token_budget,
        files_created=sum(1 for s in steps if s.action == "create"),
        files_modified=sum(1 for s in steps if s.action == "modify"),
        files_deleted=sum(1 for s in steps if s.action == "delete"),
        estimated_seconds=len(steps) * 30 + len(migrations) * 60,
        baseline_tests=baseline,
    )


def validate_plan(record: Mapping[str, Any], max_steps: int = 100) -> ValidationReport:
    """
    Structurally validate a plan record without modifying it.

    Cycles are errors here even though plan construction tolerates
    them: a plan that still contains one should not be executed as-is.
    """

    errors: List[str] = []
    warnings: List[str] = []

    if not record.get("version"):
        errors.append("Missing plan version")
    if not record.get("id"):
        errors.append("Missing plan id")

    steps = record.get("steps")
    if not isinstance(steps, list):
        errors.append("Missing or invalid steps array")
        steps = []

    nodes = []
    for idx, step in enumerate(steps):
        if not isinstance(step, Mapping):
            errors.append(f"Step {idx}: not an object")
            continue
        if not step.get("id"):
            errors.append(f"Step {idx}: Missing id")
        if not step.get("target"):
            errors.append(f"Step {idx}: Missing target")
        if not step.get("action"):
            errors.append(f"Step {idx}: Missing action")
        elif step["action"] not in ACTIONS:
            errors.append(f"Step {idx}: Invalid action '{step['action']}'")
        nodes.append(_DependencyNode(step.get("id"), tuple(step.get("dependencies") or ())))

    cycles = find_cycles(nodes)
    if cycles:
        errors.append(f"Circular dependencies detected: {', '.join(cycles)}")

    if len(steps) > max_steps:
        warnings.append(f"Step count ({len(steps)}) exceeds recommended maximum ({max_steps})")

    migrations = record.get("migrations")
    if migrations is not None and not isinstance(migrations, list):
        errors.append("Invalid migrations array")
    for idx, migration in enumerate(migrations or []):
        if not isinstance(migration, Mapping):
            errors.append(f"Migration {idx}: not an object")
            continue
        if not migration.get("id"):
            errors.append(f"Migration {idx}: Missing id")
        if not migration.get("type"):
            errors.append(f"Migration {idx}: Missing type")

    if not record.get("estimate"):
        warnings.append("Missing resource estimate")
    if not record.get("risk_report"):
        warnings.append("Missing risk report")

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def _baseline_tests(runner: TestRunner, workspace: str) -> Optional[TestRunSummary]:
    try:
        summary = runner.run(workspace)
    except (PatchwrightError, OSError) as exc:
        LOG.warning("Baseline test run failed; continuing without it: %s", exc)
        return None
    LOG.info("Baseline tests: %d passed, %d failed, %d total", summary.passed, summary.failed, summary.total)
    return summary
