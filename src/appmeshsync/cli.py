"""
Command-line interface for AppMesh Sync.

Usage (examples):
  - Dry-run (reads only, no mutating App Mesh calls):
      python -m appmeshsync.cli sync --snapshot ./snapshot.yml --dry-run

  - Real sync against a local endpoint (e.g. moto server):
      python -m appmeshsync.cli sync --snapshot ./snapshot.yml \
        --endpoint-url http://127.0.0.1:5000

  - Flip mesh TLS in the snapshot file:
      python -m appmeshsync.cli mtls toggle --snapshot ./snapshot.yml \
        --namespace default --name m1
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, Iterable, Optional

from .core.config import AppConfig, load_config
from .core.encryption import EncryptionOperation, update_mesh_encryption
from .core.errors import (
    AppMeshSyncError,
    MeshSyncError,
    RemoteError,
    SessionConstructionError,
    SyncAggregateError,
    SyncCancelled,
    TranslationError,
    ValidationError,
)
from .core.logging_setup import build_logger
from .core.model import ResourceRef
from .core.provider import CancelToken
from .core.reporting import print_results, summarize_counts
from .core.sessions import SessionCache, boto3_client_factory
from .core.snapshot import load_snapshot
from .core.syncer import AppMeshSyncer

EXIT_OK = 0
EXIT_GENERIC_ERROR = 1
EXIT_VALIDATION_ERROR = 2
EXIT_REMOTE_ERROR = 3
EXIT_CANCELLED = 4


def exit_code_for(exc: BaseException) -> int:
    """Map an error (unwrapping mesh context) to a process exit code."""
    if isinstance(exc, SyncAggregateError):
        codes = {exit_code_for(e) for e in exc.errors}
        return codes.pop() if len(codes) == 1 else EXIT_GENERIC_ERROR
    if isinstance(exc, MeshSyncError):
        return exit_code_for(exc.cause)
    if isinstance(exc, SyncCancelled):
        return EXIT_CANCELLED
    if isinstance(exc, (ValidationError, TranslationError, FileNotFoundError)):
        return EXIT_VALIDATION_ERROR
    if isinstance(exc, (RemoteError, SessionConstructionError)):
        return EXIT_REMOTE_ERROR
    return EXIT_GENERIC_ERROR


def _put(d: Dict[str, Any], section: str, key: str, value: Any) -> None:
    # only explicit flags override file/env values
    if value is not None:
        d.setdefault(section, {})[key] = value


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    _put(out, "app", "dry_run", True if getattr(args, "dry_run", False) else None)
    _put(out, "sync", "prune", False if getattr(args, "no_prune", False) else None)
    _put(out, "sync", "isolate_mesh_failures", True if getattr(args, "isolate_failures", False) else None)
    _put(out, "sync", "deadline_sec", getattr(args, "deadline_sec", None))
    _put(out, "aws", "endpoint_url", getattr(args, "endpoint_url", None))
    _put(out, "inputs", "snapshot_path", args.snapshot)
    _put(out, "logging", "base_dir", args.logs_dir)
    _put(out, "logging", "console_level", args.console_level)
    _put(out, "logging", "file_level", args.file_level)
    return out


def _logger(cfg: AppConfig, action: str):
    return build_logger(
        run_id=cfg.run_id,
        action=action,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
    )


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--snapshot", default=None, help="Snapshot YAML file (default: inputs.snapshot_path)")
    p.add_argument("--logs-dir", default=None, help="Logs base directory")
    p.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    p.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="amsync", description="AWS App Mesh syncer")

    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("sync", help="Reconcile App Mesh resources against a snapshot")
    _add_common(s)
    s.add_argument("--dry-run", action="store_true", help="Read-only: report changes, do not apply them")
    s.add_argument("--no-prune", action="store_true", help="Keep remote resources that are no longer desired")
    s.add_argument("--isolate-failures", action="store_true", help="Continue with other meshes after a failure")
    s.add_argument("--deadline-sec", type=float, default=None, help="Abort the cycle after N seconds")
    s.add_argument("--endpoint-url", default=None, help="App Mesh endpoint override")
    s.add_argument("--format", choices=["table", "json"], default="table", help="Output format")

    m = sub.add_parser("mtls", help="Enable, disable or toggle mesh TLS in a snapshot file")
    m.add_argument("operation", choices=[op.value for op in EncryptionOperation], help="Encryption operation")
    _add_common(m)
    m.add_argument("--namespace", default="default", help="Mesh namespace")
    m.add_argument("--name", required=True, help="Mesh name")

    return p


def _sync_cmd(args: argparse.Namespace) -> int:
    cfg = load_config(_overrides(args))
    logger = _logger(cfg, "sync")
    logger.info("Starting amsync sync (dry_run=%s prune=%s)", cfg.app.dry_run, cfg.sync.prune)

    try:
        snapshot = load_snapshot(cfg.inputs.snapshot_path)
        sessions = SessionCache(boto3_client_factory(cfg.aws), logger=logger)
        syncer = AppMeshSyncer(sessions, config=cfg.sync, dry_run=cfg.app.dry_run, logger=logger)
        cancel = CancelToken(cfg.sync.deadline_sec or None)
        report = syncer.sync(snapshot, cancel)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_CANCELLED
    except (AppMeshSyncError, FileNotFoundError) as exc:
        code = exit_code_for(exc)
        logger.error("Sync failed (%s, exit=%d): %s", type(exc).__name__, code, exc)
        return code

    print_results(report.results, args.format)
    summary = summarize_counts(report.counts)
    logger.info("Sync summary: %s", summary)
    print(summary)
    return EXIT_OK


def _mtls_cmd(args: argparse.Namespace) -> int:
    cfg = load_config(_overrides(args))
    logger = _logger(cfg, "mtls")
    ref = ResourceRef(namespace=args.namespace, name=args.name)
    try:
        mesh = update_mesh_encryption(cfg.inputs.snapshot_path, ref, args.operation, logger=logger)
    except (AppMeshSyncError, FileNotFoundError) as exc:
        code = exit_code_for(exc)
        logger.error("mtls %s failed (exit=%d): %s", args.operation, code, exc)
        return code

    status = "enabled" if mesh.encryption.tls_enabled else "disabled"
    print(f"mesh {ref}: tls {status}")
    return EXIT_OK


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        if args.cmd == "sync":
            return _sync_cmd(args)
        if args.cmd == "mtls":
            return _mtls_cmd(args)
    except ValidationError as exc:
        # config errors happen before a logger exists
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR

    parser.error("Unknown command")  # pragma: no cover
    return EXIT_GENERIC_ERROR  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
