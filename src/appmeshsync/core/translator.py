"""
Translation of mesh intent into desired App Mesh resources.

Pure functions: no network, no clock, no randomness. Every collection is
returned sorted by its canonical string, so identical input always yields
byte-identical output.

Mapping:
  - one virtual node per distinct upstream host (one http listener per port,
    backends = every host of the snapshot, DNS discovery on the host)
  - one virtual router per distinct host (http listener on the lowest port)
  - one virtual service per distinct host, provided by the router of the same name
  - one route per (routing rule with traffic shifting, destination host)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from .errors import ReferenceNotFoundError, TranslationError
from .model import PrefixMatch, RoutingRule, Snapshot, Upstream, find
from .provider import ResourceKind

Spec = Dict[str, Any]

# App Mesh only supports one protocol here for now
LISTENER_PROTOCOL = "http"
DEFAULT_PREFIX = "/"
# App Mesh default, sent explicitly so the created mesh is unambiguous
MESH_SPEC = {"egressFilter": {"type": "DROP_ALL"}}


@dataclass(frozen=True)
class DesiredResource:
    kind: ResourceKind
    name: str
    spec: Spec = field(default_factory=dict, hash=False)
    scope: Tuple[Tuple[str, str], ...] = ()

    def scope_dict(self) -> Dict[str, str]:
        return dict(self.scope)

    def canonical(self) -> str:
        return json.dumps(
            {"kind": self.kind.value, "name": self.name, "scope": self.scope_dict(), "spec": self.spec},
            sort_keys=True,
            separators=(",", ":"),
        )


@dataclass(frozen=True)
class DesiredState:
    mesh: DesiredResource
    virtual_nodes: Tuple[DesiredResource, ...] = ()
    virtual_routers: Tuple[DesiredResource, ...] = ()
    virtual_services: Tuple[DesiredResource, ...] = ()
    routes: Tuple[DesiredResource, ...] = ()


def _sorted(resources: Iterable[DesiredResource]) -> Tuple[DesiredResource, ...]:
    return tuple(sorted(resources, key=lambda r: r.canonical()))


def _host(us: Upstream) -> str:
    if not us.host:
        raise TranslationError(f"getting host for upstream {us.metadata.ref()}: no host")
    return us.host


def _ports_by_host(upstreams: Sequence[Upstream]) -> Dict[str, List[int]]:
    out: Dict[str, List[int]] = {}
    for us in upstreams:
        host = _host(us)
        if not us.ports:
            raise TranslationError(f"getting port for upstream {us.metadata.ref()}: no port")
        seen = out.setdefault(host, [])
        for port in us.ports:
            if port not in seen:
                seen.append(port)
    return out


def virtual_nodes_from_upstreams(upstreams: Sequence[Upstream]) -> Tuple[DesiredResource, ...]:
    ports_by_host = _ports_by_host(upstreams)
    # TODO: filter backends per routing rule selector instead of every known host
    backends = [{"virtualService": {"virtualServiceName": h}} for h in sorted(ports_by_host)]
    nodes = []
    for host, ports in ports_by_host.items():
        spec = {
            "listeners": [
                {"portMapping": {"port": port, "protocol": LISTENER_PROTOCOL}} for port in sorted(ports)
            ],
            "backends": list(backends),
            "serviceDiscovery": {"dns": {"hostname": host}},
        }
        nodes.append(DesiredResource(ResourceKind.VIRTUAL_NODE, host, spec))
    return _sorted(nodes)


def virtual_routers_from_upstreams(upstreams: Sequence[Upstream]) -> Tuple[DesiredResource, ...]:
    routers = []
    for host, ports in _ports_by_host(upstreams).items():
        spec = {"listeners": [{"portMapping": {"port": min(ports), "protocol": LISTENER_PROTOCOL}}]}
        routers.append(DesiredResource(ResourceKind.VIRTUAL_ROUTER, host, spec))
    return _sorted(routers)


def virtual_services_from_upstreams(upstreams: Sequence[Upstream]) -> Tuple[DesiredResource, ...]:
    services = []
    for host in _ports_by_host(upstreams):
        spec = {"provider": {"virtualRouter": {"virtualRouterName": host}}}
        services.append(DesiredResource(ResourceKind.VIRTUAL_SERVICE, host, spec))
    return _sorted(services)


def _upstream_host(upstreams: Sequence[Upstream], ref: Any, rule: RoutingRule) -> str:
    try:
        us = find(upstreams, ref, kind="upstream")
    except ReferenceNotFoundError as exc:
        raise TranslationError(f"cannot find destination {ref} for routing rule {rule.metadata.ref()}") from exc
    return _host(us)


def _path_prefix(rule: RoutingRule) -> str:
    # only the first matcher is honoured, and only its prefix form
    if rule.request_matchers:
        spec = rule.request_matchers[0].path_specifier
        if isinstance(spec, PrefixMatch):
            return spec.prefix
    return DEFAULT_PREFIX


def routes_from_rules(
    upstreams: Sequence[Upstream],
    rules: Sequence[RoutingRule],
    *,
    max_weighted_targets: int = 0,
) -> Tuple[DesiredResource, ...]:
    """
    Build routes for rules carrying traffic shifting; other rules are skipped.
    Sources are ignored: App Mesh applies routes to every source in the mesh.
    """
    routes = []
    for rule in rules:
        if rule.traffic_shifting is None:
            continue

        destination_hosts: List[str] = []
        for ref in rule.destinations:
            host = _upstream_host(upstreams, ref, rule)
            if host not in destination_hosts:
                destination_hosts.append(host)

        targets = [
            {"virtualNode": _upstream_host(upstreams, dest.upstream, rule), "weight": int(dest.weight)}
            for dest in rule.traffic_shifting.destinations
        ]
        if max_weighted_targets and len(targets) > max_weighted_targets:
            raise TranslationError(
                f"routing rule {rule.metadata.ref()} has {len(targets)} weighted targets; "
                f"App Mesh allows at most {max_weighted_targets}"
            )

        prefix = _path_prefix(rule)
        for host in destination_hosts:
            spec = {
                "httpRoute": {
                    "match": {"prefix": prefix},
                    "action": {"weightedTargets": [dict(t) for t in targets]},
                }
            }
            routes.append(
                DesiredResource(
                    ResourceKind.ROUTE,
                    f"{host}-{rule.metadata.namespace}-{rule.metadata.name}",
                    spec,
                    scope=(("virtualRouterName", host),),
                )
            )
    return _sorted(routes)


def desired_state(mesh_name: str, snapshot: Snapshot, *, max_weighted_targets: int = 0) -> DesiredState:
    """Translate the whole snapshot into the desired resource graph of one mesh."""
    upstreams = snapshot.upstreams
    return DesiredState(
        mesh=DesiredResource(ResourceKind.MESH, mesh_name, dict(MESH_SPEC)),
        virtual_nodes=virtual_nodes_from_upstreams(upstreams),
        virtual_routers=virtual_routers_from_upstreams(upstreams),
        virtual_services=virtual_services_from_upstreams(upstreams),
        routes=routes_from_rules(upstreams, snapshot.routing_rules, max_weighted_targets=max_weighted_targets),
    )
