import hashlib

import pytest

from patchwright.bundle import (
    BundleCompiler,
    bundle_summary,
    checksum,
    classify_bundle_type,
    steps_to_files,
    validate_bundle,
)
from patchwright.domain import Bundle, FileChange, GeneratedTest, Migration, Step
from patchwright.errors import BundleValidationError
from patchwright.workspace import LocalWorkspace


def _creates(count):
    return [FileChange(path=f"src/file{i}.js", content=f"export const v{i} = {i};\n") for i in range(count)]


def test_checksum_is_sha256_of_utf8():
    assert checksum("héllo") == hashlib.sha256("héllo".encode("utf-8")).hexdigest()


def test_identical_content_yields_identical_checksums_across_compilations():
    compiler = BundleCompiler()

    first = compiler.compile_bundle(_creates(3))
    second = compiler.compile_bundle(_creates(3))

    assert first.id != second.id
    assert [f.checksum for f in first.files] == [f.checksum for f in second.files]


def test_five_creates_is_full_bundle():
    bundle = BundleCompiler().compile_bundle(_creates(5))

    assert bundle.type == "full"
    assert bundle.metadata["files_created"] == 5


def test_two_modifies_is_patch_bundle():
    files = [
        FileChange(path="src/a.js", content="a2", action="modify", base_content="a1"),
        FileChange(path="src/b.js", content="b2", action="modify", base_content="b1"),
    ]

    bundle = BundleCompiler().compile_bundle(files)

    assert bundle.type == "patch"
    assert [f.base_checksum for f in bundle.files] == [checksum("a1"), checksum("b1")]


@pytest.mark.parametrize(
    "actions, expected",
    [
        ([], "patch"),
        (["create"] * 4 + ["modify"], "feature"),
        (["create"] * 5 + ["delete"], "full"),
        (["delete"], "patch"),
    ],
)
def test_classify_bundle_type(actions, expected):
    assert classify_bundle_type(actions) == expected


def test_compile_records_sizes_tests_and_migrations():
    files = [FileChange(path="src/naïve.js", content="é")]
    tests = [GeneratedTest(path="tests/test_naive.py", content="def test_x():\n    pass\n", source_file="src/naïve.js")]
    migrations = [
        Migration(id="m1", type="create_table", sql_forward="CREATE TABLE t (id INTEGER);", sql_reverse="DROP TABLE t;")
    ]

    bundle = BundleCompiler().compile_bundle(files, tests, migrations, metadata={"tokens_used": 42})

    assert bundle.files[0].size == 2
    assert bundle.tests[0].checksum == checksum(tests[0].content)
    assert bundle.migrations[0].checksum_forward == checksum("CREATE TABLE t (id INTEGER);")
    assert bundle.migrations[0].checksum_reverse == checksum("DROP TABLE t;")
    assert bundle.metadata["tokens_used"] == 42
    assert bundle.metadata["migrations_generated"] == 1


def test_compile_infers_commands():
    files = [
        FileChange(path="package.json", content="{}", action="modify", base_content="{ }"),
        FileChange(path="webpack.config.js", content="module.exports = {};"),
    ]
    migrations = [
        Migration(id="m1", type="add_column", sql_forward="ALTER TABLE t ADD c INT;", data_loss_risk="low"),
        Migration(id="m2", type="drop_column", sql_forward="ALTER TABLE t DROP c;", data_loss_risk="high"),
    ]

    bundle = BundleCompiler().compile_bundle(files, migrations=migrations)

    commands = [(c.command, c.phase, c.kind, c.risk_level) for c in bundle.commands]
    assert commands == [
        ("npm install", "pre-apply", "install", "low"),
        ("npm run migrate", "post-apply", "migrate", "high"),
        ("npm run build", "post-apply", "build", "low"),
    ]


def test_compile_rejects_unknown_action():
    with pytest.raises(BundleValidationError):
        BundleCompiler().compile_bundle([FileChange(path="a.js", content="", action="rename")])


def test_compiled_bundle_validates_and_round_trips():
    bundle = BundleCompiler().compile_bundle(_creates(2))
    record = bundle.to_dict()

    report = validate_bundle(record)

    assert report.valid, report.errors
    assert Bundle.from_dict(record) == bundle
    assert "signature" not in record


def test_validate_bundle_detects_tampered_content():
    record = BundleCompiler().compile_bundle(_creates(1)).to_dict()
    record["files"][0]["content"] = "tampered"

    report = validate_bundle(record)

    assert report.valid is False
    assert "File 0 checksum does not match content" in report.errors


def test_validate_bundle_reports_errors_and_warnings():
    record = {
        "id": "b1",
        "type": "mega",
        "created_at": "2024-01-01T00:00:00+00:00",
        "files": [
            {"path": "../outside.js", "action": "create", "content": "x"},
            {"path": "src/a.js", "action": "rename", "content": "", "checksum": checksum("")},
        ],
        "migrations": [{"id": "m1", "sql_forward": "DROP TABLE t;", "data_loss_risk": "critical"}],
        "commands": [{"command": "npm test", "phase": "during"}],
    }

    report = validate_bundle(record)

    assert report.valid is False
    assert "Invalid bundle type 'mega'" in report.errors
    assert "File 0 has unsafe path '../outside.js'" in report.errors
    assert "File 1 has invalid action 'rename'" in report.errors
    assert "Command 0 has invalid phase 'during'" in report.errors
    assert "File 0 missing checksum" in report.warnings
    assert "Migration 0 missing sql_reverse" in report.warnings
    assert "Migration 0 has critical data loss risk" in report.warnings


def test_validate_bundle_does_not_mutate_record():
    record = BundleCompiler().compile_bundle(_creates(1)).to_dict()
    before = repr(record)

    validate_bundle(record)

    assert repr(record) == before


def test_steps_to_files_reads_base_content(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.js").write_text("old\n")
    steps = [
        Step(id="s1", feature_id="f", action="modify", target="src/app.js", layer="backend"),
        Step(id="s2", feature_id="f", action="create", target="src/new.js", layer="backend"),
    ]

    changes = steps_to_files(steps, {"src/app.js": "new\n", "src/new.js": "x"}, LocalWorkspace(str(tmp_path)))

    assert changes[0].base_content == "old\n"
    assert changes[0].content == "new\n"
    assert changes[1].base_content is None


def test_steps_to_files_requires_content_for_every_non_delete_step():
    steps = [
        Step(id="s1", feature_id="f", action="create", target="src/a.js", layer="general"),
        Step(id="s2", feature_id="f", action="delete", target="src/b.js", layer="general"),
    ]

    with pytest.raises(BundleValidationError) as excinfo:
        steps_to_files(steps, {})

    assert excinfo.value.errors == ["missing content for src/a.js"]


def test_bundle_summary_counts():
    bundle = BundleCompiler().compile_bundle(
        _creates(2) + [FileChange(path="src/old.js", action="delete", base_content="x")]
    )

    summary = bundle_summary(bundle)

    assert summary["files"] == {"total": 3, "created": 2, "modified": 0, "deleted": 1}
    assert summary["signed"] is False
