import itertools
from fractions import Fraction

import pytest

from patchwright.analysis.risk import (
    RECOMMENDATIONS,
    SEVERITY_WEIGHTS,
    DataLossDetector,
    Detector,
    DetectorRegistry,
    RiskContext,
    RiskEngine,
    SecurityDetector,
    calculate_risk_score,
    default_registry,
    is_safe_to_auto_apply,
)
from patchwright.config import RiskThresholds
from patchwright.domain import Migration, Risk, Step
from patchwright.planner import estimate_resources


def _step(step_id, target, action="create", layer="general", deps=()):
    return Step(id=step_id, feature_id="f", action=action, target=target, layer=layer, dependencies=tuple(deps))


def _risk(severity, score, type_="performance"):
    return Risk(type=type_, category="test", severity=severity, score=score, description="")


class _Exploding(Detector):
    name = "exploding"

    def __init__(self, essential):
        self.essential = essential

    def detect(self, context):
        raise RuntimeError("boom")


def test_drop_table_without_reverse_is_rejected():
    migration = Migration(id="m1", type="drop_table", sql_forward="DROP TABLE users;", sql_reverse="")

    report = RiskEngine().assess([], [migration])

    categories = {(r.category, r.severity, r.score) for r in report.risks}
    assert ("destructive", "critical", 85) in categories
    assert ("rollback", "high", 55) in categories
    assert report.overall_score > 70
    assert report.level == "critical"
    assert report.safe_to_auto_apply is False
    assert "Data loss is possible - backup recommended" in report.warnings


def test_plan_without_risks_is_safe():
    report = RiskEngine().assess([_step("a", "src/util.js")])

    assert report.risks == ()
    assert report.overall_score == 0
    assert report.level == "low"
    assert report.recommendation == RECOMMENDATIONS["low"]
    assert report.safe_to_auto_apply is True
    assert report.metadata["total_risks"] == 0


def test_calculate_risk_score_weighted_mean_with_multiplier():
    # (60*3 + 20*1) / 4 = 50, times 1.10 for two risks.
    assert calculate_risk_score([_risk("high", 60), _risk("low", 20)]) == 55
    assert calculate_risk_score([]) == 0


def test_calculate_risk_score_is_clamped():
    risks = [_risk("critical", 100) for _ in range(12)]

    assert calculate_risk_score(risks) == 100


def test_score_does_not_decrease_as_risks_are_upgraded():
    risks = [_risk("low", 10), _risk("low", 35), _risk("medium", 40), _risk("low", 20)]
    previous = calculate_risk_score(risks)

    for idx in range(len(risks)):
        risks[idx] = _risk("critical", 100)
        current = calculate_risk_score(risks)
        assert current >= previous
        previous = current


@pytest.mark.parametrize("severity", ["high", "critical"])
def test_gate_rejects_high_severity_regardless_of_score(severity):
    assert is_safe_to_auto_apply(0, [_risk(severity, 1)], threshold=30) is False


def test_gate_rejects_data_loss_and_breaking_change_types():
    assert is_safe_to_auto_apply(5, [_risk("low", 5, "data_loss")], threshold=30) is False
    assert is_safe_to_auto_apply(5, [_risk("low", 5, "breaking_change")], threshold=30) is False
    assert is_safe_to_auto_apply(5, [_risk("low", 5)], threshold=30) is True
    assert is_safe_to_auto_apply(30, [], threshold=30) is False


def test_detectors_match_targets_case_insensitively():
    context = RiskContext(steps=(_step("a", "src/Auth/Login.js", action="modify"),))

    risks = SecurityDetector().detect(context)

    assert [r.category for r in risks] == ["authentication"]


def test_many_deletions_are_critical_data_loss():
    steps = tuple(_step(f"s{i}", f"src/old{i}.js", action="delete") for i in range(6))

    risks = DataLossDetector().detect(RiskContext(steps=steps))

    assert risks[0].severity == "critical"
    assert risks[0].score == 70
    assert len(risks[0].affected_steps) == 6


def test_api_modification_is_breaking_change():
    steps = [_step("r", "src/routes/users.js", action="modify", layer="backend")]

    report = RiskEngine().assess(steps)

    assert any(r.type == "breaking_change" and r.category == "api" for r in report.risks)
    assert report.safe_to_auto_apply is False


def test_dependency_detector_reports_cycle_and_missing_reference():
    steps = [
        _step("a", "src/a.js", deps=["b"]),
        _step("b", "src/b.js", deps=["a"]),
        _step("c", "src/c.js", deps=["ghost"]),
    ]

    report = RiskEngine().assess(steps)

    by_category = {r.category: r for r in report.risks if r.type == "dependency"}
    assert by_category["circular"].severity == "high"
    assert "a -> b -> a" in by_category["circular"].details
    assert by_category["missing"].details == ("c -> ghost",)


def test_token_budget_warning():
    steps = [_step("a", "src/a.js")]
    estimate = estimate_resources(steps, token_budget=100)

    report = RiskEngine().assess(steps, estimate=estimate)

    assert "Plan exceeds token budget" in report.warnings


def test_custom_thresholds_change_level():
    steps = [_step(f"d{i}", f"src/db{i}.js", layer="database") for i in range(11)]

    default = RiskEngine().assess(steps)
    strict = RiskEngine(thresholds=RiskThresholds(auto_apply=10, critical=30, high=20, medium=10)).assess(steps)

    assert default.overall_score == strict.overall_score == 37
    assert default.level == "medium"
    assert strict.level == "critical"
    assert strict.safe_to_auto_apply is False


def test_non_essential_detector_failure_becomes_warning():
    registry = default_registry()
    registry.register(_Exploding(essential=False))

    report = RiskEngine(registry=registry).assess([_step("a", "src/a.js")])

    assert "Risk detector exploding was skipped: boom" in report.warnings


def test_essential_detector_failure_propagates():
    registry = DetectorRegistry([_Exploding(essential=True)])

    with pytest.raises(RuntimeError):
        RiskEngine(registry=registry).assess([])


def test_registry_rejects_duplicates_and_is_inspectable():
    registry = default_registry()

    assert registry.names() == [
        "breaking_change",
        "data_loss",
        "security",
        "performance",
        "dependency",
        "migration",
    ]
    with pytest.raises(ValueError):
        registry.register(SecurityDetector())

    removed = registry.unregister("security")
    assert isinstance(removed, SecurityDetector)
    assert "security" not in registry
    assert len(registry) == 5


# (severity, score) pairs the built-in detectors can emit.
DETECTOR_PAIRS = [
    ("low", 20),
    ("low", 25),
    ("medium", 35),
    ("medium", 40),
    ("medium", 45),
    ("high", 50),
    ("high", 55),
    ("high", 60),
    ("high", 65),
    ("high", 70),
    ("critical", 70),
    ("critical", 80),
    ("critical", 85),
    ("critical", 90),
]


def _weighted_mean(pairs):
    total = sum(SEVERITY_WEIGHTS[severity] for severity, _ in pairs)
    return Fraction(sum(score * SEVERITY_WEIGHTS[severity] for severity, score in pairs), total)


@pytest.mark.parametrize("size", [2, 3])
def test_upgrading_a_risk_above_the_mean_never_lowers_the_score(size):
    for pairs in itertools.product(DETECTOR_PAIRS, repeat=size):
        before = calculate_risk_score([_risk(severity, score) for severity, score in pairs])
        mean = _weighted_mean(pairs)
        for idx, (severity, score) in enumerate(pairs):
            for upgrade in DETECTOR_PAIRS:
                if SEVERITY_WEIGHTS[upgrade[0]] <= SEVERITY_WEIGHTS[severity]:
                    continue
                if upgrade[1] < score or upgrade[1] < mean:
                    continue
                upgraded = list(pairs)
                upgraded[idx] = upgrade
                after = calculate_risk_score([_risk(s, v) for s, v in upgraded])
                assert after >= before, (pairs, idx, upgrade)


def test_upgrading_a_risk_below_the_mean_can_lower_the_score():
    # A heavier weight on a score under the mean pulls the mean down:
    # (90*4 + 20) / 5 = 76 versus (90*4 + 50*3) / 7 = 72.86, both times 1.10.
    assert calculate_risk_score([_risk("critical", 90), _risk("low", 20)]) == 84
    assert calculate_risk_score([_risk("critical", 90), _risk("high", 50)]) == 80


def test_risk_rejects_unknown_severity_and_type():
    with pytest.raises(ValueError, match="severity"):
        _risk("severe", 50)
    with pytest.raises(ValueError, match="type"):
        _risk("low", 5, "cosmetic")


def test_report_metadata_counts_severities_and_types():
    migration = Migration(id="m1", type="drop_table", sql_forward="DROP TABLE users;", sql_reverse="")

    report = RiskEngine().assess([], [migration])

    assert report.metadata["total_risks"] == len(report.risks)
    assert report.metadata["critical_risks"] >= 1
    assert report.metadata["data_loss_risks"] >= 1
    assert report.metadata["migration_risks"] >= 1
    assert report.metadata["security_risks"] == 0
