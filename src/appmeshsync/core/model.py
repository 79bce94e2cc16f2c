"""
Intent model consumed by the syncer.

Everything here is immutable. Tagged unions (mesh type, secret kind, path
specifier) are closed sets of dataclass variants; loaders reject anything else.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, TypeVar, Union

from .errors import ReferenceNotFoundError


# =========================
# References
# =========================

@dataclass(frozen=True, order=True)
class ResourceRef:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}.{self.name}"


@dataclass(frozen=True)
class Metadata:
    name: str
    namespace: str = "default"

    def ref(self) -> ResourceRef:
        return ResourceRef(namespace=self.namespace, name=self.name)


# =========================
# Secrets
# =========================

@dataclass(frozen=True)
class AwsSecret:
    """Static AWS credentials; empty strings mean "use the default chain"."""
    access_key: Union[str, bytes] = ""
    secret_key: Union[str, bytes] = ""


@dataclass(frozen=True)
class TlsSecret:
    root_cert: str = ""
    cert_chain: str = ""
    private_key: str = ""


@dataclass(frozen=True)
class OpaqueSecret:
    data: Tuple[Tuple[str, str], ...] = ()


SecretKind = Union[AwsSecret, TlsSecret, OpaqueSecret]


@dataclass(frozen=True)
class Secret:
    metadata: Metadata
    kind: SecretKind


# =========================
# Meshes
# =========================

@dataclass(frozen=True)
class AppMesh:
    aws_region: str = ""
    aws_credentials: Optional[ResourceRef] = None


@dataclass(frozen=True)
class Istio:
    install_namespace: str = ""


@dataclass(frozen=True)
class Linkerd:
    install_namespace: str = ""


@dataclass(frozen=True)
class AppMeshType:
    app_mesh: Optional[AppMesh] = None


@dataclass(frozen=True)
class IstioType:
    istio: Optional[Istio] = None


@dataclass(frozen=True)
class LinkerdType:
    linkerd: Optional[Linkerd] = None


MeshType = Union[AppMeshType, IstioType, LinkerdType]


@dataclass(frozen=True)
class Encryption:
    tls_enabled: bool = False


@dataclass(frozen=True)
class Mesh:
    metadata: Metadata
    mesh_type: Optional[MeshType] = None
    encryption: Optional[Encryption] = None


# =========================
# Upstreams & routing rules
# =========================

@dataclass(frozen=True)
class Upstream:
    metadata: Metadata
    host: str
    ports: Tuple[int, ...] = ()


@dataclass(frozen=True)
class PrefixMatch:
    prefix: str


@dataclass(frozen=True)
class ExactMatch:
    exact: str


@dataclass(frozen=True)
class RegexMatch:
    regex: str


PathSpecifier = Union[PrefixMatch, ExactMatch, RegexMatch]


@dataclass(frozen=True)
class Matcher:
    path_specifier: Optional[PathSpecifier] = None


@dataclass(frozen=True)
class WeightedDestination:
    upstream: ResourceRef
    weight: int


@dataclass(frozen=True)
class TrafficShifting:
    destinations: Tuple[WeightedDestination, ...] = ()


@dataclass(frozen=True)
class RoutingRule:
    metadata: Metadata
    destinations: Tuple[ResourceRef, ...] = ()
    request_matchers: Tuple[Matcher, ...] = ()
    traffic_shifting: Optional[TrafficShifting] = None


# =========================
# Snapshot
# =========================

T = TypeVar("T", Mesh, Upstream, RoutingRule, Secret)


def find(items: Iterable[T], ref: ResourceRef, *, kind: str) -> T:
    """Return the item whose metadata matches `ref` or raise ReferenceNotFoundError."""
    for it in items:
        if it.metadata.ref() == ref:
            return it
    raise ReferenceNotFoundError(f"{kind} {ref} not found")


@dataclass(frozen=True)
class Snapshot:
    """One immutable, versioned view of mesh intent for a sync cycle."""
    meshes: Tuple[Mesh, ...] = ()
    upstreams: Tuple[Upstream, ...] = ()
    routing_rules: Tuple[RoutingRule, ...] = ()
    secrets: Tuple[Secret, ...] = ()

    def find_mesh(self, ref: ResourceRef) -> Mesh:
        return find(self.meshes, ref, kind="mesh")

    def find_upstream(self, ref: ResourceRef) -> Upstream:
        return find(self.upstreams, ref, kind="upstream")

    def find_secret(self, ref: ResourceRef) -> Secret:
        return find(self.secrets, ref, kind="secret")

    def hash(self) -> str:
        """Content fingerprint, for logging and tracing only."""
        from .snapshot import snapshot_hash  # snapshot imports this module

        return snapshot_hash(self)
