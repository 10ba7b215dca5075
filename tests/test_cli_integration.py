import json
import sqlite3
from pathlib import Path

from patchwright import cli
from patchwright.snapshots import SnapshotStore


def _write_json(path: Path, data) -> str:
    path.write_text(json.dumps(data))
    return str(path)


def test_cli_plan_bundle_sign_verify_apply(tmp_path, capsys):
    """
    End-to-end run through every sub-command.

    The app specification asks for a model, a route, and a component.
    The resulting plan is safe to auto-apply; the bundle is signed with
    a fresh key pair and applied to an empty workspace with a SQLite
    database for the derived migration.
    """

    workspace = tmp_path / "ws"
    workspace.mkdir()
    keys = str(tmp_path / "keys")
    db = str(tmp_path / "app.db")

    spec = _write_json(
        tmp_path / "spec.json",
        {"id": "users", "features": [{"id": "users", "models": ["User"], "routes": ["users"], "components": ["UserList"]}]},
    )
    plan_path = str(tmp_path / "plan.json")
    assert cli.main(["plan", spec, "-o", plan_path]) == 0
    assert "risk score 0 (low)" in capsys.readouterr().err

    contents = _write_json(
        tmp_path / "contents.json",
        {
            "src/models/User.js": "module.exports = class User {};\n",
            "src/routes/users.js": "module.exports = [];\n",
            "src/components/UserList.jsx": "export default () => null;\n",
        },
    )
    bundle_path = str(tmp_path / "bundle.json")
    assert cli.main(["bundle", plan_path, "--contents", contents, "--workspace", str(workspace), "-o", bundle_path]) == 0

    assert cli.main(["keygen", "--keys", keys]) == 0
    assert "fingerprint SHA256:" in capsys.readouterr().out

    signed_path = str(tmp_path / "signed.json")
    assert cli.main(["sign", bundle_path, "--keys", keys, "--key-id", "ci", "-o", signed_path]) == 0

    assert cli.main(["verify", signed_path, "--keys", keys]) == 0
    assert "valid: signed by ci" in capsys.readouterr().out

    code = cli.main(["apply", signed_path, "--workspace", str(workspace), "--keys", keys, "--db", db])
    out = capsys.readouterr().out
    assert code == 0
    assert "3 file(s), 1 migration(s)" in out
    assert (workspace / "src" / "models" / "User.js").read_text() == "module.exports = class User {};\n"
    conn = sqlite3.connect(db)
    try:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    finally:
        conn.close()
    assert "user" in tables

    assert cli.main(["snapshots", "--workspace", str(workspace), "list"]) == 0
    listing = capsys.readouterr().out
    snapshot_id = listing.split()[0]
    assert snapshot_id.startswith("snapshot-")

    assert cli.main(["snapshots", "--workspace", str(workspace), "delete", snapshot_id]) == 0
    assert cli.main(["snapshots", "--workspace", str(workspace), "list"]) == 0
    assert "no snapshots" in capsys.readouterr().out


def test_cli_rejects_tampered_bundle(tmp_path, capsys):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    keys = str(tmp_path / "keys")
    bundle = {
        "id": "b1",
        "type": "full",
        "created_at": "2024-01-01T00:00:00+00:00",
        "files": [],
    }
    bundle_path = _write_json(tmp_path / "bundle.json", bundle)
    signed_path = str(tmp_path / "signed.json")
    assert cli.main(["sign", bundle_path, "--keys", keys, "-o", signed_path]) == 0

    signed = json.loads(Path(signed_path).read_text())
    signed["type"] = "patch"
    tampered = _write_json(tmp_path / "tampered.json", signed)
    capsys.readouterr()

    assert cli.main(["verify", tampered, "--keys", keys]) == 2
    assert "invalid: signature does not match bundle contents" in capsys.readouterr().out

    assert cli.main(["apply", tampered, "--workspace", str(workspace), "--keys", keys]) == 2
    assert "bundle rejected" in capsys.readouterr().err


def test_cli_plan_exits_2_when_gate_rejects(tmp_path, capsys):
    spec = _write_json(
        tmp_path / "spec.json",
        {"migrations": [{"id": "drop_users", "type": "drop_table", "sql_forward": "DROP TABLE users;"}], "description": "cleanup"},
    )

    code = cli.main(["plan", spec])

    captured = capsys.readouterr()
    assert code == 2
    assert json.loads(captured.out)["risk_report"]["safe_to_auto_apply"] is False
    assert "(critical)" in captured.err


def test_cli_apply_failure_exits_2_and_restores(tmp_path, capsys):
    workspace = tmp_path / "ws"
    (workspace / "src").mkdir(parents=True)
    (workspace / "src" / "app.js").write_text("local\n")
    bundle = {
        "id": "b2",
        "type": "patch",
        "created_at": "2024-01-01T00:00:00+00:00",
        "files": [{"path": "src/missing.js", "action": "modify", "content": ""}],
    }
    bundle_path = _write_json(tmp_path / "bundle.json", bundle)

    code = cli.main(["apply", bundle_path, "--workspace", str(workspace), "--unsigned"])

    assert code == 2
    err = capsys.readouterr().err
    assert "Cannot modify non-existent file: src/missing.js" in err
    assert "apply failed (rolled_back)" in err
    assert (workspace / "src" / "app.js").read_text() == "local\n"


def test_cli_reports_errors_with_exit_1(tmp_path, capsys):
    assert cli.main(["verify", str(tmp_path / "missing.json"), "--keys", str(tmp_path)]) == 1
    assert capsys.readouterr().err.startswith("patchwright: error: cannot read")

    config = _write_json(tmp_path / "config.json", {"notAnOption": True})
    assert cli.main(["--config", config, "keygen", "--keys", str(tmp_path / "k")]) == 1
    assert "unknown configuration option: notAnOption" in capsys.readouterr().err


def test_cli_snapshots_restore(tmp_path, capsys):
    workspace = tmp_path / "ws"
    (workspace / "src").mkdir(parents=True)
    (workspace / "src" / "app.js").write_text("old\n")
    original = SnapshotStore(str(workspace)).create("before")
    (workspace / "src" / "app.js").write_text("broken\n")
    (workspace / "src" / "stray.js").write_text("stray\n")

    assert cli.main(["snapshots", "--workspace", str(workspace), "restore", original.id, "--clean"]) == 0

    out = capsys.readouterr().out
    assert f"restored {original.id}" in out
    assert "previous state saved as snapshot-" in out
    assert (workspace / "src" / "app.js").read_text() == "old\n"
    assert not (workspace / "src" / "stray.js").exists()
    assert not (workspace / ".patchwright" / "apply.lock").exists()

    assert cli.main(["snapshots", "--workspace", str(workspace), "restore", "snapshot-1-deadbeef"]) == 1
    assert "snapshot not found" in capsys.readouterr().err
