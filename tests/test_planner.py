import pytest

from patchwright.commands import TestRunner
from patchwright.config import Config
from patchwright.domain import Plan, TestRunSummary
from patchwright.errors import CommandError, PlanValidationError
from patchwright.planner import build_plan, generate_migrations, validate_plan


USERS_SPEC = {
    "id": "spec-1",
    "features": [
        {"id": "users", "models": ["User"], "routes": ["users"], "components": ["UserList"]},
    ],
}


class _FixedRunner(TestRunner):
    def __init__(self, summary=None, error=None):
        self.summary = summary
        self.error = error
        self.calls = []

    def run(self, cwd):
        self.calls.append(cwd)
        if self.error is not None:
            raise self.error
        return self.summary


def test_build_plan_orders_steps_and_derives_outputs():
    plan = build_plan(USERS_SPEC)

    assert plan.id == "spec-1"
    assert plan.version == "1.0"
    assert [s.id for s in plan.steps] == ["users_model_0", "users_route_1", "users_comp_2"]
    assert plan.steps[2].dependencies == ("users_route_1", "users_model_0")

    assert [m.id for m in plan.migrations] == ["migration_1"]
    migration = plan.migrations[0]
    assert migration.type == "create_table"
    assert migration.sql_forward == "CREATE TABLE user (id INTEGER PRIMARY KEY);"
    assert migration.sql_reverse == "DROP TABLE user;"
    assert migration.step_id == "users_model_0"

    assert [(t.id, t.type) for t in plan.tests] == [("test_2", "integration"), ("test_3", "component")]
    assert plan.metadata == {"features": 1, "steps": 3, "migrations": 1, "tests": 2}


def test_build_plan_estimate_and_risk():
    plan = build_plan(USERS_SPEC)

    assert plan.estimate.step_tokens == 6000
    assert plan.estimate.total_tokens == 8000
    assert plan.estimate.files_created == 3
    assert plan.estimate.estimated_minutes == 3
    assert plan.estimate.baseline_tests is None

    assert plan.risk_report.overall_score == 0
    assert plan.risk_report.safe_to_auto_apply is True


def test_build_plan_tolerates_cycles_and_reports_them():
    spec = {
        "id": "cyclic",
        "features": [
            {
                "id": "f",
                "changes": [
                    {"target": "src/a.js", "action": "create", "dependencies": ["f_change_1"]},
                    {"target": "src/b.js", "action": "create", "dependencies": ["f_change_0"]},
                ],
            }
        ],
    }

    plan = build_plan(spec)

    assert len(plan.steps) == 2
    assert any(r.category == "circular" for r in plan.risk_report.risks)
    assert plan.risk_report.safe_to_auto_apply is False

    report = validate_plan(plan.to_dict())
    assert report.valid is False
    assert any(e.startswith("Circular dependencies detected") for e in report.errors)


def test_build_plan_rejects_duplicate_step_ids():
    spec = {"features": [{"id": "x", "models": ["A"]}, {"id": "x", "models": ["B"]}]}

    with pytest.raises(PlanValidationError):
        build_plan(spec)


def test_build_plan_uses_config_token_budget():
    spec = {"features": [{"id": "f", "changes": [{"target": "src/util.js", "action": "modify"}]}]}

    plan = build_plan(spec, config=Config(token_budget=1000))

    assert "Plan exceeds token budget" in plan.risk_report.warnings
    assert plan.id.startswith("spec_")


def test_build_plan_records_baseline_tests(tmp_path):
    runner = _FixedRunner(summary=TestRunSummary(passed=3, failed=1, total=4))

    plan = build_plan(USERS_SPEC, test_runner=runner, workspace=str(tmp_path))

    assert runner.calls == [str(tmp_path)]
    assert plan.estimate.baseline_tests == TestRunSummary(passed=3, failed=1, total=4)
    assert plan.to_dict()["estimate"]["baseline_tests"] == {"passed": 3, "failed": 1, "total": 4}


def test_build_plan_continues_when_baseline_fails(tmp_path):
    runner = _FixedRunner(error=CommandError("pytest missing"))

    plan = build_plan(USERS_SPEC, test_runner=runner, workspace=str(tmp_path))

    assert plan.estimate.baseline_tests is None


def test_generate_migrations_rejects_colliding_declared_id():
    spec = {
        "migrations": [{"id": "migration_1", "type": "add_column", "sql_forward": "ALTER TABLE t ADD c INT;"}],
        "features": [{"id": "f", "models": ["Thing"]}],
    }

    with pytest.raises(PlanValidationError):
        build_plan(spec)


def test_generate_migrations_keeps_declared_migrations_first():
    plan = build_plan(
        {
            "migrations": [
                {"id": "drop_legacy", "type": "drop_table", "sql_forward": "DROP TABLE legacy;"},
            ],
            "features": [{"id": "f", "models": ["Thing"]}],
        }
    )

    migrations = generate_migrations({"migrations": [m.to_dict() for m in plan.migrations[:1]]}, plan.steps)

    assert [m.id for m in migrations] == ["drop_legacy", "migration_1"]
    assert plan.risk_report.level == "critical"
    assert plan.risk_report.safe_to_auto_apply is False


def test_plan_record_round_trip():
    plan = build_plan(USERS_SPEC)

    assert Plan.from_dict(plan.to_dict()) == plan


def test_validate_plan_reports_structural_errors():
    report = validate_plan({"steps": [{"id": "a", "action": "rename"}, "nope"]}, max_steps=1)

    assert report.valid is False
    assert "Missing plan version" in report.errors
    assert "Missing plan id" in report.errors
    assert "Step 0: Missing target" in report.errors
    assert "Step 0: Invalid action 'rename'" in report.errors
    assert "Step 1: not an object" in report.errors
    assert "Step count (2) exceeds recommended maximum (1)" in report.warnings
