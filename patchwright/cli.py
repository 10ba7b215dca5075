"""
Command-line interface for patchwright.

This module is responsible for argument parsing and delegating to the
planner, bundle compiler, signer, and applier. Every sub-command reads
and writes JSON records so the stages can be chained through files.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .apply import ConflictResolution, TransactionalApplier
from .bundle import BundleCompiler, bundle_summary, steps_to_files
from .commands import PytestRunner
from .config import Config, load_config
from .domain import Bundle, Plan
from .errors import PatchwrightError
from .events import EventChannel
from .logging_utils import configure_logging, log_progress
from .migrations import SqliteMigrationExecutor
from .planner import build_plan
from .signing import BundleSigner, BundleVerifier, KeyStore, check_freshness, load_public_key
from .snapshots import SnapshotStore
from .workspace import LocalWorkspace, WorkspaceLock

LOG = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2
EXIT_CRITICAL = 3
EXIT_INTERRUPTED = 130


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="patchwright",
        description=(
            "Plan, bundle, sign, and transactionally apply code changes "
            "to a workspace."
        ),
    )
    parser.add_argument(
        "--config",
        help="Path to a JSON configuration file.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be specified multiple times).",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    plan = sub.add_parser("plan", help="Build a risk-assessed plan from an app specification.")
    plan.add_argument("spec", help="App specification JSON file.")
    plan.add_argument("--analysis", help="Codebase analysis JSON file.")
    plan.add_argument("-o", "--output", help="Write the plan here instead of stdout.")
    plan.add_argument(
        "--baseline",
        metavar="WORKSPACE",
        help="Run the workspace's pytest suite once and record the counts.",
    )
    plan.set_defaults(handler=_cmd_plan)

    bundle = sub.add_parser("bundle", help="Compile a plan and generated contents into a bundle.")
    bundle.add_argument("plan", help="Plan JSON file.")
    bundle.add_argument(
        "--contents",
        required=True,
        help="Directory holding generated files, or a JSON object mapping paths to contents.",
    )
    bundle.add_argument(
        "--workspace",
        help="Workspace the bundle targets; modify and delete steps record its current content.",
    )
    bundle.add_argument("-o", "--output", help="Write the bundle here instead of stdout.")
    bundle.set_defaults(handler=_cmd_bundle)

    keygen = sub.add_parser("keygen", help="Generate a signing key pair.")
    keygen.add_argument("--keys", help="Key directory (default from configuration).")
    keygen.add_argument("--force", action="store_true", help="Replace an existing key pair.")
    keygen.set_defaults(handler=_cmd_keygen)

    sign = sub.add_parser("sign", help="Sign a bundle.")
    sign.add_argument("bundle", help="Bundle JSON file.")
    sign.add_argument("--keys", help="Key directory (default from configuration).")
    sign.add_argument("--key-id", help="Key identifier recorded in the signature.")
    sign.add_argument("-o", "--output", help="Write the signed bundle here instead of stdout.")
    sign.set_defaults(handler=_cmd_sign)

    verify = sub.add_parser("verify", help="Verify a bundle's signature.")
    verify.add_argument("bundle", help="Signed bundle JSON file.")
    _add_trust_arguments(verify)
    verify.set_defaults(handler=_cmd_verify)

    apply = sub.add_parser("apply", help="Apply a signed bundle to a workspace.")
    apply.add_argument("bundle", help="Signed bundle JSON file.")
    apply.add_argument("--workspace", default=".", help="Workspace root (default: current directory).")
    apply.add_argument("--db", help="SQLite database to run migrations against.")
    apply.add_argument(
        "--on-conflict",
        choices=[r.value for r in ConflictResolution],
        default=ConflictResolution.CANCEL.value,
        help="Resolution applied to every conflict (default: cancel).",
    )
    apply.add_argument(
        "--skip-commands",
        action="store_true",
        help="Do not run the bundle's pre- and post-apply commands.",
    )
    apply.add_argument(
        "--unsigned",
        action="store_true",
        help="Apply without checking the signature.",
    )
    _add_trust_arguments(apply)
    apply.set_defaults(handler=_cmd_apply)

    snapshots = sub.add_parser("snapshots", help="List, restore, or delete workspace snapshots.")
    snapshots.add_argument("--workspace", default=".", help="Workspace root (default: current directory).")
    snap_sub = snapshots.add_subparsers(dest="snapshot_command", metavar="ACTION")
    snap_sub.required = True
    snap_list = snap_sub.add_parser("list", help="List snapshots, newest first.")
    snap_list.set_defaults(handler=_cmd_snapshots_list)
    snap_delete = snap_sub.add_parser("delete", help="Delete a snapshot.")
    snap_delete.add_argument("snapshot_id")
    snap_delete.set_defaults(handler=_cmd_snapshots_delete)
    snap_restore = snap_sub.add_parser("restore", help="Put the workspace back to a snapshot.")
    snap_restore.add_argument("snapshot_id")
    snap_restore.add_argument(
        "--clean",
        action="store_true",
        help="Also delete files created since the snapshot was taken.",
    )
    snap_restore.add_argument(
        "--no-backup",
        action="store_true",
        help="Do not snapshot the current state before restoring.",
    )
    snap_restore.set_defaults(handler=_cmd_snapshots_restore)

    return parser


def _add_trust_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--keys", help="Key directory holding public.pem (default from configuration).")
    parser.add_argument("--public-key", help="Public key PEM file; overrides --keys.")
    parser.add_argument(
        "--max-age-days",
        type=float,
        default=7.0,
        help="Reject signatures older than this many days (default: 7).",
    )
    parser.add_argument(
        "--no-freshness",
        action="store_true",
        help="Accept signatures of any age.",
    )


def _read_json(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except OSError as exc:
        raise PatchwrightError(f"cannot read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise PatchwrightError(f"{path} is not valid JSON: {exc}") from exc


def _write_json(record: Any, path: Optional[str]) -> None:
    text = json.dumps(record, indent=2, ensure_ascii=False) + "\n"
    if path is None:
        sys.stdout.write(text)
        return
    try:
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
    except OSError as exc:
        raise PatchwrightError(f"cannot write {path}: {exc}") from exc
    LOG.info("Wrote %s", path)


def _load_contents(source: str, plan: Plan) -> Dict[str, str]:
    if os.path.isdir(source):
        contents: Dict[str, str] = {}
        for step in plan.steps:
            candidate = os.path.join(source, *step.target.split("/"))
            if os.path.isfile(candidate):
                with open(candidate, "r", encoding="utf-8", newline="") as handle:
                    contents[step.target] = handle.read()
        return contents

    record = _read_json(source)
    if not isinstance(record, dict) or not all(isinstance(v, str) for v in record.values()):
        raise PatchwrightError(f"{source} must map file paths to string contents")
    return record


def _public_key(args: argparse.Namespace, config: Config):
    if args.public_key:
        return load_public_key(args.public_key)
    return KeyStore(args.keys or config.keys_path).load_public_key()


def _cmd_plan(args: argparse.Namespace, config: Config) -> int:
    app_spec = _read_json(args.spec)
    analysis = _read_json(args.analysis) if args.analysis else {}

    runner = PytestRunner() if args.baseline else None
    plan = build_plan(app_spec, analysis, config, test_runner=runner, workspace=args.baseline)
    _write_json(plan.to_dict(), args.output)

    report = plan.risk_report
    print(
        f"risk score {report.overall_score} ({report.level}): {report.recommendation}",
        file=sys.stderr,
    )
    for warning in report.warnings:
        print(f"  warning: {warning}", file=sys.stderr)
    return EXIT_OK if report.safe_to_auto_apply else EXIT_REJECTED


def _cmd_bundle(args: argparse.Namespace, config: Config) -> int:
    try:
        plan = Plan.from_dict(_read_json(args.plan))
    except (KeyError, TypeError, ValueError) as exc:
        raise PatchwrightError(f"{args.plan} is not a valid plan: {exc}") from exc

    contents = _load_contents(args.contents, plan)
    workspace = LocalWorkspace(args.workspace, reserved=(config.metadata_dir, ".git")) if args.workspace else None
    files = steps_to_files(plan.steps, contents, workspace)
    bundle = BundleCompiler().compile_bundle(files, migrations=plan.migrations, plan=plan)
    _write_json(bundle.to_dict(), args.output)

    summary = bundle_summary(bundle)
    print(f"bundle {bundle.id} ({bundle.type}): {json.dumps(summary['files'])}", file=sys.stderr)
    return EXIT_OK


def _cmd_keygen(args: argparse.Namespace, config: Config) -> int:
    store = KeyStore(args.keys or config.keys_path)
    store.generate(overwrite=args.force)
    print(f"generated key pair in {store.path}")
    print(f"fingerprint {store.fingerprint()}")
    return EXIT_OK


def _cmd_sign(args: argparse.Namespace, config: Config) -> int:
    record = _read_json(args.bundle)
    private_key, _ = KeyStore(args.keys or config.keys_path).load_or_generate()
    signed = BundleSigner(private_key, args.key_id or config.key_id).sign(record)
    _write_json(signed, args.output)
    return EXIT_OK


def _check_trust(record: Any, args: argparse.Namespace, config: Config) -> Optional[str]:
    """
    Return None if the record is trusted, otherwise the rejection reason.
    """

    result = BundleVerifier(_public_key(args, config)).verify_detailed(record)
    if not result.valid:
        return result.reason
    if not args.no_freshness and not check_freshness(record, timedelta(days=args.max_age_days)):
        return f"signature is older than {args.max_age_days:g} days"
    return None


def _cmd_verify(args: argparse.Namespace, config: Config) -> int:
    record = _read_json(args.bundle)
    reason = _check_trust(record, args, config)
    if reason is not None:
        print(f"invalid: {reason}")
        return EXIT_REJECTED
    print(f"valid: signed by {record['signature']['key_id']} at {record['signature']['signed_at']}")
    return EXIT_OK


def _cmd_apply(args: argparse.Namespace, config: Config) -> int:
    record = _read_json(args.bundle)
    if args.unsigned:
        LOG.warning("Applying %s without signature verification", args.bundle)
    else:
        reason = _check_trust(record, args, config)
        if reason is not None:
            print(f"patchwright: bundle rejected: {reason}", file=sys.stderr)
            return EXIT_REJECTED

    try:
        bundle = Bundle.from_dict(record)
    except (KeyError, TypeError, ValueError) as exc:
        raise PatchwrightError(f"{args.bundle} is not a valid bundle: {exc}") from exc

    resolution = ConflictResolution(args.on_conflict)
    events = EventChannel()
    events.subscribe(log_progress)
    applier = TransactionalApplier(
        args.workspace,
        config,
        events=events,
        migration_executor=SqliteMigrationExecutor(args.db) if args.db else None,
        resolver=lambda conflict: resolution,
        run_commands=not args.skip_commands,
    )
    result = applier.apply(bundle)

    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    if result.success:
        print(
            f"applied bundle {bundle.id}: {len(result.applied_files)} file(s), "
            f"{len(result.applied_migrations)} migration(s), {len(result.executed_commands)} command(s)"
        )
        return EXIT_OK

    for error in result.errors:
        print(f"patchwright: error: {error}", file=sys.stderr)
        for detail in getattr(error, "errors", []):
            print(f"  {detail}", file=sys.stderr)
    snapshot_id = result.snapshot.id if result.snapshot else "none"
    if result.critical:
        print(
            f"patchwright: rollback failed; run `patchwright snapshots restore {snapshot_id}`",
            file=sys.stderr,
        )
        return EXIT_CRITICAL
    print(f"apply failed ({result.final_state}); snapshot {snapshot_id}", file=sys.stderr)
    return EXIT_REJECTED


def _cmd_snapshots_list(args: argparse.Namespace, config: Config) -> int:
    snapshots = SnapshotStore(args.workspace, config.metadata_dir).list()
    if not snapshots:
        print("no snapshots")
    for snapshot in snapshots:
        print(f"{snapshot.id}  {snapshot.created_at}  {snapshot.archive_size:>10}  {snapshot.description}")
    return EXIT_OK


def _cmd_snapshots_delete(args: argparse.Namespace, config: Config) -> int:
    SnapshotStore(args.workspace, config.metadata_dir).delete(args.snapshot_id)
    print(f"deleted {args.snapshot_id}")
    return EXIT_OK


def _cmd_snapshots_restore(args: argparse.Namespace, config: Config) -> int:
    store = SnapshotStore(args.workspace, config.metadata_dir)
    with WorkspaceLock(args.workspace, config.metadata_dir):
        backup = store.restore(args.snapshot_id, backup=not args.no_backup, remove_new=args.clean)
    print(f"restored {args.snapshot_id}")
    if backup is not None:
        print(f"previous state saved as {backup.id}")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config) if args.config else Config()
        config = config.merged(verbosity=args.verbose or None)
        configure_logging(verbosity=config.verbosity)
        return args.handler(args, config)
    except KeyboardInterrupt:
        # Graceful shutdown on Ctrl+C
        return EXIT_INTERRUPTED
    except PatchwrightError as exc:
        print(f"patchwright: error: {exc}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":  # pragma: no cover - manual invocation
    raise SystemExit(main())
