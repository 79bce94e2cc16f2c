"""
One App Mesh sync cycle over a snapshot.

For each mesh, sequentially:
  - skip meshes that are not App Mesh meshes
  - translate the whole snapshot into the desired resource graph
  - resolve an App Mesh client from the mesh's secret and region
  - reconcile (mesh, nodes, routers, services, routes, then prune)

The first mesh failure aborts the cycle unless `isolate_mesh_failures` is set,
in which case every failure is collected and raised together at the end.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import SyncSection
from .errors import MeshSyncError, MissingProviderConfigError, SyncAggregateError, SyncCancelled
from .logging_setup import for_mesh
from .model import AppMeshType, Mesh, Snapshot
from .provider import AppMeshApi, CancelToken
from .reconciler import ReconcileResult, Reconciler
from .sessions import SessionCache
from .translator import desired_state


def mesh_name(mesh: Mesh) -> str:
    return f"{mesh.metadata.namespace}.{mesh.metadata.name}"


@dataclass
class SyncReport:
    snapshot_hash: str
    results: List[ReconcileResult] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    synced: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def merge(self, reconciler: Reconciler) -> None:
        self.results.extend(reconciler.results)
        for status, n in reconciler.counts.items():
            self.counts[status] = self.counts.get(status, 0) + n


class AppMeshSyncer:
    def __init__(
        self,
        sessions: SessionCache,
        *,
        config: Optional[SyncSection] = None,
        dry_run: bool = False,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.sessions = sessions
        self.config = config or SyncSection()
        self.dry_run = dry_run
        self.log = logger or logging.LoggerAdapter(logging.getLogger("amsync.syncer"), {})

    def sync(self, snapshot: Snapshot, cancel: Optional[CancelToken] = None) -> SyncReport:
        cancel = cancel or CancelToken()
        report = SyncReport(snapshot_hash=snapshot.hash())
        self.log.info(
            "begin sync %s (%d meshes, %d upstreams, %d routing rules, %d secrets) dry_run=%s",
            report.snapshot_hash,
            len(snapshot.meshes),
            len(snapshot.upstreams),
            len(snapshot.routing_rules),
            len(snapshot.secrets),
            self.dry_run,
        )

        failures: List[MeshSyncError] = []
        try:
            for mesh in snapshot.meshes:
                ref = str(mesh.metadata.ref())
                if not isinstance(mesh.mesh_type, AppMeshType):
                    self.log.debug("Skipping mesh %s: not an App Mesh mesh", ref)
                    report.skipped.append(ref)
                    continue
                try:
                    self._sync_mesh(mesh, snapshot, cancel, report)
                except SyncCancelled:
                    self.log.warning("Sync cancelled while processing mesh %s", ref)
                    raise
                except Exception as exc:
                    err = MeshSyncError(ref, exc)
                    err.__cause__ = exc
                    failures.append(err)
                    if not self.config.isolate_mesh_failures:
                        self.log.error("%s", err)
                        raise err
                    self.log.error("%s (continuing with next mesh)", err)
        finally:
            self.log.info(
                "end sync %s: synced=%d skipped=%d failed=%d counts=%s",
                report.snapshot_hash,
                len(report.synced),
                len(report.skipped),
                len(failures),
                report.counts,
            )
        if failures:
            raise SyncAggregateError(failures)
        return report

    def _sync_mesh(self, mesh: Mesh, snapshot: Snapshot, cancel: CancelToken, report: SyncReport) -> None:
        app_mesh = mesh.mesh_type.app_mesh
        if app_mesh is None:
            raise MissingProviderConfigError(f"mesh {mesh.metadata.ref()} has no App Mesh configuration")

        name = mesh_name(mesh)
        log = for_mesh(self.log, name, app_mesh.aws_region)

        state = desired_state(name, snapshot, max_weighted_targets=self.config.max_weighted_targets)
        client = self.sessions.resolve(app_mesh, snapshot.secrets)

        api = AppMeshApi(client, name, cancel=cancel, logger=log)
        reconciler = Reconciler(api, dry_run=self.dry_run, prune=self.config.prune, logger=log)
        reconciler.reconcile(state)

        report.merge(reconciler)
        report.synced.append(str(mesh.metadata.ref()))
        log.info("Mesh synced: %s", reconciler.counts)
