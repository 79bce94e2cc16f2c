import pytest

from appmeshsync.core.errors import TranslationError
from appmeshsync.core.model import (
    ExactMatch,
    Matcher,
    Metadata,
    ResourceRef,
    RoutingRule,
    TrafficShifting,
    Upstream,
    WeightedDestination,
)
from appmeshsync.core.provider import ResourceKind
from appmeshsync.core.translator import (
    desired_state,
    routes_from_rules,
    virtual_nodes_from_upstreams,
    virtual_routers_from_upstreams,
    virtual_services_from_upstreams,
)


def _us(name, host, *ports):
    return Upstream(metadata=Metadata(name=name, namespace="prod"), host=host, ports=tuple(ports))


def _ref(name):
    return ResourceRef(namespace="prod", name=name)


def _rule(name, dests, shifting=None, matchers=()):
    return RoutingRule(
        metadata=Metadata(name=name, namespace="prod"),
        destinations=tuple(_ref(d) for d in dests),
        request_matchers=tuple(matchers),
        traffic_shifting=TrafficShifting(
            destinations=tuple(WeightedDestination(upstream=_ref(u), weight=w) for u, w in shifting)
        ) if shifting is not None else None,
    )


UPSTREAMS = [_us("a1", "svcA", 8080), _us("a2", "svcA", 9090), _us("b1", "svcB", 8080)]


def test_nodes_grouped_by_host():
    nodes = virtual_nodes_from_upstreams(UPSTREAMS)
    assert [n.name for n in nodes] == ["svcA", "svcB"]
    a = nodes[0].spec
    assert a["listeners"] == [
        {"portMapping": {"port": 8080, "protocol": "http"}},
        {"portMapping": {"port": 9090, "protocol": "http"}},
    ]
    assert a["serviceDiscovery"] == {"dns": {"hostname": "svcA"}}
    assert a["backends"] == [
        {"virtualService": {"virtualServiceName": "svcA"}},
        {"virtualService": {"virtualServiceName": "svcB"}},
    ]
    assert nodes[1].spec["listeners"] == [{"portMapping": {"port": 8080, "protocol": "http"}}]


def test_duplicate_ports_collapse():
    nodes = virtual_nodes_from_upstreams([_us("a1", "svcA", 8080), _us("a2", "svcA", 8080)])
    assert len(nodes) == 1
    assert len(nodes[0].spec["listeners"]) == 1


def test_routers_and_services_per_host():
    routers = virtual_routers_from_upstreams(UPSTREAMS)
    assert [r.name for r in routers] == ["svcA", "svcB"]
    assert routers[0].kind is ResourceKind.VIRTUAL_ROUTER
    assert routers[0].spec == {"listeners": [{"portMapping": {"port": 8080, "protocol": "http"}}]}

    services = virtual_services_from_upstreams(UPSTREAMS)
    assert [s.name for s in services] == ["svcA", "svcB"]
    assert services[1].spec == {"provider": {"virtualRouter": {"virtualRouterName": "svcB"}}}


def test_translation_is_deterministic():
    rules = [_rule("shift", ["b1"], [("b1", 90), ("a1", 10)])]
    shuffled = list(reversed(UPSTREAMS))
    first = [r.canonical() for r in virtual_nodes_from_upstreams(UPSTREAMS)]
    second = [r.canonical() for r in virtual_nodes_from_upstreams(shuffled)]
    assert first == second
    assert [r.canonical() for r in routes_from_rules(UPSTREAMS, rules)] == [
        r.canonical() for r in routes_from_rules(shuffled, rules)
    ]


def test_rules_without_traffic_shifting_are_skipped():
    assert routes_from_rules(UPSTREAMS, [_rule("plain", ["a1"])]) == ()


def test_route_naming_and_weights():
    rules = [_rule("shift-canary", ["b1"], [("b1", 90), ("a1", 10)])]
    (route,) = routes_from_rules(UPSTREAMS, rules)
    assert route.name == "svcB-prod-shift-canary"
    assert route.scope_dict() == {"virtualRouterName": "svcB"}
    assert route.spec["httpRoute"]["match"] == {"prefix": "/"}
    assert route.spec["httpRoute"]["action"]["weightedTargets"] == [
        {"virtualNode": "svcB", "weight": 90},
        {"virtualNode": "svcA", "weight": 10},
    ]


def test_one_route_per_destination_host():
    # a1 and a2 share a host -> one route for svcA
    rules = [_rule("r", ["a1", "a2", "b1"], [("a1", 50), ("b1", 50)])]
    routes = routes_from_rules(UPSTREAMS, rules)
    assert sorted(r.name for r in routes) == ["svcA-prod-r", "svcB-prod-r"]
    targets = {tuple(t["virtualNode"] for t in r.spec["httpRoute"]["action"]["weightedTargets"]) for r in routes}
    assert targets == {("svcA", "svcB")}


def test_only_prefix_matcher_is_honoured():
    rules = [_rule("r", ["b1"], [("b1", 100)], matchers=[Matcher(path_specifier=ExactMatch(exact="/x"))])]
    (route,) = routes_from_rules(UPSTREAMS, rules)
    assert route.spec["httpRoute"]["match"] == {"prefix": "/"}


def test_unknown_destination_raises():
    with pytest.raises(TranslationError, match="cannot find destination"):
        routes_from_rules(UPSTREAMS, [_rule("r", ["missing"], [("b1", 100)])])


def test_upstream_without_host_raises():
    with pytest.raises(TranslationError, match="no host"):
        virtual_nodes_from_upstreams([_us("x", "", 80)])


def test_weighted_target_cap():
    shifting = [("a1", 10)] * 3
    with pytest.raises(TranslationError, match="at most 2"):
        routes_from_rules(UPSTREAMS, [_rule("r", ["b1"], shifting)], max_weighted_targets=2)
    assert len(routes_from_rules(UPSTREAMS, [_rule("r", ["b1"], shifting)], max_weighted_targets=0)) == 1


def test_desired_state_from_snapshot(snapshot):
    state = desired_state("default.m1", snapshot)
    assert state.mesh.name == "default.m1"
    assert state.mesh.kind is ResourceKind.MESH
    assert [n.name for n in state.virtual_nodes] == ["svcA", "svcB"]
    assert [r.name for r in state.routes] == ["svcB-prod-shift-canary"]
    assert state.routes[0].spec["httpRoute"]["match"] == {"prefix": "/api"}
