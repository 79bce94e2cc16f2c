from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .provider import AppMeshApi, ResourceKind, Scope, Spec
from .translator import DesiredResource, DesiredState


class ReconcileStatus(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class ReconcileResult:
    mesh: str
    kind: ResourceKind
    name: str
    status: ReconcileStatus
    scope: str = ""


def project(remote: Any, desired: Any) -> Any:
    """
    Reduce `remote` to the shape of `desired` so fields populated by App Mesh
    (defaults, metadata) do not count as drift.
    """
    if isinstance(desired, dict) and isinstance(remote, dict):
        return {k: project(remote.get(k), v) for k, v in desired.items()}
    if isinstance(desired, list) and isinstance(remote, list) and len(desired) == len(remote):
        return [project(r, d) for r, d in zip(remote, desired)]
    return remote


def canonical_spec(spec: Any) -> str:
    return json.dumps(spec, sort_keys=True, separators=(",", ":"), default=str)


def specs_equal(desired: Spec, remote: Spec) -> bool:
    return canonical_spec(desired) == canonical_spec(project(remote, desired))


class Reconciler:
    """
    Create/update/delete App Mesh resources of one mesh until they match a DesiredState.

    Per kind: list names in scope, create the missing ones, describe+compare the
    present ones (update on drift), then delete the remote names that are no
    longer desired (when prune is on). Deletes run after every create/update,
    in reverse dependency order: routes, services, routers, nodes.
    """

    def __init__(
        self,
        api: AppMeshApi,
        *,
        dry_run: bool = False,
        prune: bool = True,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.api = api
        self.dry_run = dry_run
        self.prune = prune
        self.log = logger or logging.getLogger("amsync.reconciler")
        self.results: List[ReconcileResult] = []
        self.counts: Dict[str, int] = {}

    # ------------- Mesh -------------

    def reconcile_mesh(self, desired: DesiredResource) -> Optional[ReconcileStatus]:
        """describe -> not found -> create. An existing mesh is left as-is."""
        if self.api.describe_spec(ResourceKind.MESH, desired.name) is not None:
            self.log.debug("Mesh '%s' exists", desired.name)
            return None
        self.log.info("Mesh '%s' not found, creating it", desired.name)
        if not self.dry_run:
            self.api.create(ResourceKind.MESH, desired.name, desired.spec or None)
        self._append(desired.kind, desired.name, ReconcileStatus.CREATED)
        return ReconcileStatus.CREATED

    # ------------- Generic kind -------------

    def reconcile_kind(
        self,
        kind: ResourceKind,
        desired: Sequence[DesiredResource],
        *,
        scope: Optional[Scope] = None,
        existing: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Create/update `desired` and return the sorted names of remote orphans."""
        names = set(existing if existing is not None else self.api.list_names(kind, scope))
        for resource in desired:
            self._reconcile_one(resource, resource.name in names)
        wanted = {r.name for r in desired}
        return sorted(names - wanted)

    def _reconcile_one(self, desired: DesiredResource, present: bool) -> ReconcileStatus:
        kind, name, scope = desired.kind, desired.name, desired.scope_dict()
        current = self.api.describe_spec(kind, name, scope) if present else None

        if current is None:
            self.log.info("Creating %s '%s'", kind.value, name)
            if not self.dry_run:
                self.api.create(kind, name, desired.spec, scope)
            return self._append(kind, name, ReconcileStatus.CREATED, scope)

        if specs_equal(desired.spec, current):
            self.log.debug("%s '%s' unchanged", kind.value, name)
            return self._append(kind, name, ReconcileStatus.UNCHANGED, scope)

        self.log.info("Updating %s '%s'", kind.value, name)
        self.log.debug("%s '%s' drift: remote=%s desired=%s", kind.value, name,
                       canonical_spec(current), canonical_spec(desired.spec))
        if not self.dry_run:
            self.api.update(kind, name, desired.spec, scope)
        return self._append(kind, name, ReconcileStatus.UPDATED, scope)

    def delete_all(self, kind: ResourceKind, names: Sequence[str], scope: Optional[Scope] = None) -> None:
        for name in names:
            self.log.info("Deleting orphaned %s '%s'", kind.value, name)
            if not self.dry_run:
                self.api.delete(kind, name, scope)
            self._append(kind, name, ReconcileStatus.DELETED, scope or {})

    # ------------- Full graph -------------

    def reconcile(self, state: DesiredState) -> List[ReconcileResult]:
        created = self.reconcile_mesh(state.mesh) is ReconcileStatus.CREATED
        # a dry run never creates the mesh, so there is nothing to list inside it
        empty: Optional[List[str]] = [] if created and self.dry_run else None

        node_orphans = self.reconcile_kind(ResourceKind.VIRTUAL_NODE, state.virtual_nodes, existing=empty)
        existing_routers = empty if empty is not None else self.api.list_names(ResourceKind.VIRTUAL_ROUTER)
        router_orphans = self.reconcile_kind(
            ResourceKind.VIRTUAL_ROUTER, state.virtual_routers, existing=existing_routers
        )
        service_orphans = self.reconcile_kind(
            ResourceKind.VIRTUAL_SERVICE, state.virtual_services, existing=empty
        )

        routes_by_router: Dict[str, List[DesiredResource]] = {}
        for route in state.routes:
            routes_by_router.setdefault(route.scope_dict()["virtualRouterName"], []).append(route)

        route_orphans: List[Tuple[Scope, List[str]]] = []
        for router in sorted(set(existing_routers) | set(routes_by_router)):
            scope = {"virtualRouterName": router}
            # routers created in this pass have no routes yet
            existing = None if router in existing_routers else []
            orphans = self.reconcile_kind(
                ResourceKind.ROUTE, routes_by_router.get(router, []), scope=scope, existing=existing
            )
            route_orphans.append((scope, orphans))

        if self.prune:
            for scope, names in route_orphans:
                self.delete_all(ResourceKind.ROUTE, names, scope)
            self.delete_all(ResourceKind.VIRTUAL_SERVICE, service_orphans)
            self.delete_all(ResourceKind.VIRTUAL_ROUTER, router_orphans)
            self.delete_all(ResourceKind.VIRTUAL_NODE, node_orphans)
        else:
            orphan_count = len(node_orphans) + len(router_orphans) + len(service_orphans)
            orphan_count += sum(len(n) for _, n in route_orphans)
            if orphan_count:
                self.log.warning("Prune disabled: leaving %d orphaned resource(s) in place", orphan_count)

        return list(self.results)

    def _append(
        self,
        kind: ResourceKind,
        name: str,
        status: ReconcileStatus,
        scope: Optional[Scope] = None,
    ) -> ReconcileStatus:
        scope_str = ",".join(f"{k}={v}" for k, v in sorted((scope or {}).items()))
        self.results.append(ReconcileResult(self.api.mesh_name, kind, name, status, scope_str))
        self.counts[status.value] = self.counts.get(status.value, 0) + 1
        return status
