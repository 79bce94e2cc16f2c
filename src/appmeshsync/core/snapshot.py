"""
Snapshot documents (YAML) <-> immutable model.

Document shape (camelCase keys, as produced by the snapshot aggregator):

    meshes:
      - metadata: {name: my-mesh, namespace: ns}
        appMesh: {awsRegion: us-east-1, awsCredentials: {name: creds, namespace: ns}}
        encryption: {tlsEnabled: true}
    upstreams:
      - metadata: {name: svc-a-8080, namespace: ns}
        host: svc-a
        port: 8080            # or ports: [8080, 9090]
    routingRules:
      - metadata: {name: shift-canary, namespace: prod}
        destinations: [{name: svc-b-8080, namespace: ns}]
        requestMatchers: [{prefix: /api}]
        trafficShifting:
          destinations:
            - {upstream: {name: svc-b-8080, namespace: ns}, weight: 90}
    secrets:
      - metadata: {name: creds, namespace: ns}
        aws: {accessKey: AKIA..., secretKey: ...}
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import SnapshotError
from .model import (
    AppMesh,
    AppMeshType,
    AwsSecret,
    Encryption,
    ExactMatch,
    Istio,
    IstioType,
    Linkerd,
    LinkerdType,
    Matcher,
    Mesh,
    MeshType,
    Metadata,
    OpaqueSecret,
    PrefixMatch,
    RegexMatch,
    ResourceRef,
    RoutingRule,
    Secret,
    SecretKind,
    Snapshot,
    TlsSecret,
    TrafficShifting,
    Upstream,
    WeightedDestination,
)

_MESH_TYPE_KEYS = ("appMesh", "istio", "linkerd")
_SECRET_KIND_KEYS = ("aws", "tls", "opaque")
_PATH_KEYS = ("prefix", "exact", "regex")


# ---------- Parsing helpers ----------

def _mapping(obj: Any, where: str) -> Dict[str, Any]:
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise SnapshotError(f"{where} must be a mapping")
    return obj


def _list(obj: Any, where: str) -> List[Any]:
    if obj is None:
        return []
    if not isinstance(obj, list):
        raise SnapshotError(f"{where} must be a list")
    return obj


def _metadata(obj: Any, where: str) -> Metadata:
    m = _mapping(obj, f"{where}.metadata")
    name = m.get("name")
    if not name:
        raise SnapshotError(f"{where}.metadata.name is required")
    return Metadata(name=str(name), namespace=str(m.get("namespace") or "default"))


def _ref(obj: Any, where: str) -> ResourceRef:
    m = _mapping(obj, where)
    if not m.get("name"):
        raise SnapshotError(f"{where}.name is required")
    return ResourceRef(namespace=str(m.get("namespace") or "default"), name=str(m["name"]))


def _one_of(obj: Dict[str, Any], keys: Tuple[str, ...], where: str) -> Optional[str]:
    present = [k for k in keys if k in obj]
    if len(present) > 1:
        raise SnapshotError(f"{where} must set at most one of {', '.join(keys)}; got {', '.join(present)}")
    return present[0] if present else None


def _int(value: Any, where: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise SnapshotError(f"{where} must be an integer, got {value!r}") from exc


def _bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise SnapshotError(f"{where} must be a boolean, got {value!r}")
    return value


def _key_text(value: Any, where: str) -> Any:
    if value is None:
        return ""
    if not isinstance(value, (str, bytes)):
        raise SnapshotError(f"{where} must be a string, got {type(value).__name__}")
    return value


# ---------- Per-type parsers ----------

def _parse_mesh_type(obj: Dict[str, Any], where: str) -> Optional[MeshType]:
    key = _one_of(obj, _MESH_TYPE_KEYS, where)
    if key is None:
        return None
    raw = obj[key]
    if key == "appMesh":
        if raw is None:
            return AppMeshType(app_mesh=None)
        cfg = _mapping(raw, f"{where}.appMesh")
        creds = cfg.get("awsCredentials")
        return AppMeshType(
            app_mesh=AppMesh(
                aws_region=str(cfg.get("awsRegion") or ""),
                aws_credentials=_ref(creds, f"{where}.appMesh.awsCredentials") if creds else None,
            )
        )
    if key == "istio":
        if raw is None:
            return IstioType(istio=None)
        return IstioType(istio=Istio(install_namespace=str(_mapping(raw, where).get("installationNamespace") or "")))
    if raw is None:
        return LinkerdType(linkerd=None)
    return LinkerdType(linkerd=Linkerd(install_namespace=str(_mapping(raw, where).get("installationNamespace") or "")))


def _parse_mesh(obj: Any, idx: int) -> Mesh:
    where = f"meshes[{idx}]"
    m = _mapping(obj, where)
    enc = m.get("encryption")
    encryption = None
    if enc is not None:
        e = _mapping(enc, f"{where}.encryption")
        encryption = Encryption(tls_enabled=_bool(e.get("tlsEnabled", False), f"{where}.encryption.tlsEnabled"))
    return Mesh(
        metadata=_metadata(m.get("metadata"), where),
        mesh_type=_parse_mesh_type(m, where),
        encryption=encryption,
    )


def _parse_upstream(obj: Any, idx: int) -> Upstream:
    where = f"upstreams[{idx}]"
    m = _mapping(obj, where)
    ports: List[int] = []
    if "port" in m and m["port"] is not None:
        ports.append(_int(m["port"], f"{where}.port"))
    for i, p in enumerate(_list(m.get("ports"), f"{where}.ports")):
        ports.append(_int(p, f"{where}.ports[{i}]"))
    return Upstream(
        metadata=_metadata(m.get("metadata"), where),
        host=str(m.get("host") or ""),
        ports=tuple(ports),
    )


def _parse_matcher(obj: Any, where: str) -> Matcher:
    m = _mapping(obj, where)
    key = _one_of(m, _PATH_KEYS, where)
    if key == "prefix":
        return Matcher(path_specifier=PrefixMatch(prefix=str(m["prefix"])))
    if key == "exact":
        return Matcher(path_specifier=ExactMatch(exact=str(m["exact"])))
    if key == "regex":
        return Matcher(path_specifier=RegexMatch(regex=str(m["regex"])))
    return Matcher(path_specifier=None)


def _parse_rule(obj: Any, idx: int) -> RoutingRule:
    where = f"routingRules[{idx}]"
    m = _mapping(obj, where)
    shifting = None
    if m.get("trafficShifting") is not None:
        ts = _mapping(m["trafficShifting"], f"{where}.trafficShifting")
        dests = []
        for i, d in enumerate(_list(ts.get("destinations"), f"{where}.trafficShifting.destinations")):
            dw = f"{where}.trafficShifting.destinations[{i}]"
            dm = _mapping(d, dw)
            dests.append(
                WeightedDestination(
                    upstream=_ref(dm.get("upstream"), f"{dw}.upstream"),
                    weight=_int(dm.get("weight", 0), f"{dw}.weight"),
                )
            )
        shifting = TrafficShifting(destinations=tuple(dests))
    return RoutingRule(
        metadata=_metadata(m.get("metadata"), where),
        destinations=tuple(
            _ref(d, f"{where}.destinations[{i}]") for i, d in enumerate(_list(m.get("destinations"), f"{where}.destinations"))
        ),
        request_matchers=tuple(
            _parse_matcher(x, f"{where}.requestMatchers[{i}]")
            for i, x in enumerate(_list(m.get("requestMatchers"), f"{where}.requestMatchers"))
        ),
        traffic_shifting=shifting,
    )


def _parse_secret(obj: Any, idx: int) -> Secret:
    where = f"secrets[{idx}]"
    m = _mapping(obj, where)
    key = _one_of(m, _SECRET_KIND_KEYS, where)
    kind: SecretKind
    if key == "aws":
        a = _mapping(m["aws"], f"{where}.aws")
        kind = AwsSecret(
            access_key=_key_text(a.get("accessKey"), f"{where}.aws.accessKey"),
            secret_key=_key_text(a.get("secretKey"), f"{where}.aws.secretKey"),
        )
    elif key == "tls":
        t = _mapping(m["tls"], f"{where}.tls")
        kind = TlsSecret(
            root_cert=str(t.get("rootCert") or ""),
            cert_chain=str(t.get("certChain") or ""),
            private_key=str(t.get("privateKey") or ""),
        )
    elif key == "opaque":
        o = _mapping(m["opaque"], f"{where}.opaque")
        kind = OpaqueSecret(data=tuple(sorted((str(k), str(v)) for k, v in o.items())))
    else:
        raise SnapshotError(f"{where} must set one of {', '.join(_SECRET_KIND_KEYS)}")
    return Secret(metadata=_metadata(m.get("metadata"), where), kind=kind)


# ---------- Public API ----------

def snapshot_from_dict(data: Dict[str, Any]) -> Snapshot:
    """Build a Snapshot from a parsed document. Raises SnapshotError."""
    doc = _mapping(data, "snapshot")
    return Snapshot(
        meshes=tuple(_parse_mesh(x, i) for i, x in enumerate(_list(doc.get("meshes"), "meshes"))),
        upstreams=tuple(_parse_upstream(x, i) for i, x in enumerate(_list(doc.get("upstreams"), "upstreams"))),
        routing_rules=tuple(_parse_rule(x, i) for i, x in enumerate(_list(doc.get("routingRules"), "routingRules"))),
        secrets=tuple(_parse_secret(x, i) for i, x in enumerate(_list(doc.get("secrets"), "secrets"))),
    )


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _meta_dict(md: Metadata) -> Dict[str, Any]:
    return {"name": md.name, "namespace": md.namespace}


def _ref_dict(ref: ResourceRef) -> Dict[str, Any]:
    return {"name": ref.name, "namespace": ref.namespace}


def _mesh_dict(mesh: Mesh) -> Dict[str, Any]:
    out: Dict[str, Any] = {"metadata": _meta_dict(mesh.metadata)}
    mt = mesh.mesh_type
    if isinstance(mt, AppMeshType):
        if mt.app_mesh is None:
            out["appMesh"] = None
        else:
            am: Dict[str, Any] = {"awsRegion": mt.app_mesh.aws_region}
            if mt.app_mesh.aws_credentials is not None:
                am["awsCredentials"] = _ref_dict(mt.app_mesh.aws_credentials)
            out["appMesh"] = am
    elif isinstance(mt, IstioType):
        out["istio"] = None if mt.istio is None else {"installationNamespace": mt.istio.install_namespace}
    elif isinstance(mt, LinkerdType):
        out["linkerd"] = None if mt.linkerd is None else {"installationNamespace": mt.linkerd.install_namespace}
    if mesh.encryption is not None:
        out["encryption"] = {"tlsEnabled": mesh.encryption.tls_enabled}
    return out


def _upstream_dict(us: Upstream) -> Dict[str, Any]:
    return {"metadata": _meta_dict(us.metadata), "host": us.host, "ports": list(us.ports)}


def _matcher_dict(m: Matcher) -> Dict[str, Any]:
    ps = m.path_specifier
    if isinstance(ps, PrefixMatch):
        return {"prefix": ps.prefix}
    if isinstance(ps, ExactMatch):
        return {"exact": ps.exact}
    if isinstance(ps, RegexMatch):
        return {"regex": ps.regex}
    return {}


def _rule_dict(rule: RoutingRule) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "metadata": _meta_dict(rule.metadata),
        "destinations": [_ref_dict(d) for d in rule.destinations],
        "requestMatchers": [_matcher_dict(m) for m in rule.request_matchers],
    }
    if rule.traffic_shifting is not None:
        out["trafficShifting"] = {
            "destinations": [
                {"upstream": _ref_dict(d.upstream), "weight": d.weight}
                for d in rule.traffic_shifting.destinations
            ]
        }
    return out


def _secret_dict(secret: Secret) -> Dict[str, Any]:
    out: Dict[str, Any] = {"metadata": _meta_dict(secret.metadata)}
    k = secret.kind
    if isinstance(k, AwsSecret):
        out["aws"] = {"accessKey": _text(k.access_key), "secretKey": _text(k.secret_key)}
    elif isinstance(k, TlsSecret):
        out["tls"] = {"rootCert": k.root_cert, "certChain": k.cert_chain, "privateKey": k.private_key}
    elif isinstance(k, OpaqueSecret):
        out["opaque"] = dict(k.data)
    return out


def snapshot_to_dict(snapshot: Snapshot) -> Dict[str, Any]:
    return {
        "meshes": [_mesh_dict(m) for m in snapshot.meshes],
        "upstreams": [_upstream_dict(u) for u in snapshot.upstreams],
        "routingRules": [_rule_dict(r) for r in snapshot.routing_rules],
        "secrets": [_secret_dict(s) for s in snapshot.secrets],
    }


def snapshot_hash(snapshot: Snapshot) -> str:
    raw = json.dumps(snapshot_to_dict(snapshot), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def load_snapshot(path: str) -> Snapshot:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise SnapshotError(f"Invalid YAML in snapshot {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise SnapshotError(f"Top-level YAML must be a mapping: {path}")
    return snapshot_from_dict(data)


def dump_snapshot(snapshot: Snapshot, path: str) -> None:
    """Write the snapshot back to `path`, overwriting any existing file."""
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(snapshot_to_dict(snapshot), f, sort_keys=False, default_flow_style=False)
