import copy
from collections import Counter
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError

from appmeshsync.core.model import AwsSecret, Metadata, Secret
from appmeshsync.core.sessions import SessionCache
from appmeshsync.core.snapshot import snapshot_from_dict


# (name param, response key, list key) per App Mesh kind
_KINDS = {
    "mesh": ("meshName", "mesh", "meshes"),
    "virtual_node": ("virtualNodeName", "virtualNode", "virtualNodes"),
    "virtual_router": ("virtualRouterName", "virtualRouter", "virtualRouters"),
    "virtual_service": ("virtualServiceName", "virtualService", "virtualServices"),
    "route": ("routeName", "route", "routes"),
}


class FakeAppMesh:
    """
    In-memory stand-in for a boto3 "appmesh" client.

    - store: {(kind, mesh, router, name): spec}; router is "" except for routes
    - calls: Counter of operation names
    - fail: {operation: error code} to inject ClientErrors
    - server_defaults: {kind: {...}} merged into stored specs (like App Mesh does)
    """

    def __init__(self, page_size=2):
        self.page_size = page_size
        self.store = {}
        self.calls = Counter()
        self.fail = {}
        self.server_defaults = {}
        self.log = []

    # ---- helpers used by tests ----

    def put(self, kind, mesh, name, spec, router=""):
        if kind != "mesh" and ("mesh", mesh, "", mesh) not in self.store:
            self.store[("mesh", mesh, "", mesh)] = {}
        self.store[(kind, mesh, router, name)] = copy.deepcopy(spec)

    def names(self, kind, mesh, router=""):
        return sorted(k[3] for k in self.store if k[0] == kind and k[1] == mesh and k[2] == router)

    def spec(self, kind, mesh, name, router=""):
        return self.store[(kind, mesh, router, name)]

    def mutating_calls(self):
        return sum(n for op, n in self.calls.items() if op.split("_", 1)[0] in {"create", "update", "delete"})

    # ---- client surface ----

    def _raise(self, op, code, message):
        raise ClientError({"Error": {"Code": code, "Message": message}}, op)

    def _enter(self, op):
        self.calls[op] += 1
        self.log.append(op)
        if op in self.fail:
            self._raise(op, self.fail[op], f"injected failure for {op}")

    def _key(self, kind, params):
        name_param = _KINDS[kind][0]
        mesh = params["meshName"]
        router = params.get("virtualRouterName", "") if kind == "route" else ""
        return (kind, mesh, router, params[name_param])

    def _require_scope(self, op, kind, params):
        mesh = params["meshName"]
        if kind != "mesh" and ("mesh", mesh, "", mesh) not in self.store:
            self._raise(op, "NotFoundException", f"mesh {mesh} not found")
        if kind == "route" and ("virtual_router", mesh, "", params["virtualRouterName"]) not in self.store:
            self._raise(op, "NotFoundException", f"virtual router {params['virtualRouterName']} not found")

    def _body(self, kind, key, spec):
        name_param, resp_key, _ = _KINDS[kind]
        return {
            resp_key: {
                name_param: key[3],
                "meshName": key[1],
                "spec": copy.deepcopy(spec),
                "metadata": {"version": 1},
                "status": {"status": "ACTIVE"},
            }
        }

    def _stored_spec(self, kind, spec):
        out = copy.deepcopy(self.server_defaults.get(kind, {}))
        out.update(copy.deepcopy(spec or {}))
        return out

    def get_paginator(self, op):
        kind = op[len("list_"):]
        kind = "mesh" if kind == "meshes" else kind[:-1]
        name_param, _, list_key = _KINDS[kind]

        def paginate(**params):
            self._enter(op)
            self._require_scope(op, kind, params)
            router = params.get("virtualRouterName", "") if kind == "route" else ""
            items = [
                {name_param: k[3], "meshName": k[1]}
                for k in sorted(self.store)
                if k[0] == kind and k[1] == params["meshName"] and k[2] == router
            ]
            for i in range(0, max(len(items), 1), self.page_size):
                yield {list_key: items[i:i + self.page_size]}

        return SimpleNamespace(paginate=paginate)

    def __getattr__(self, op):
        verb, _, kind = op.partition("_")
        if verb not in {"describe", "create", "update", "delete"} or kind not in _KINDS:
            raise AttributeError(op)

        def call(**params):
            self._enter(op)
            self._require_scope(op, kind, params)
            key = self._key(kind, params)
            exists = key in self.store
            if verb == "create":
                if exists:
                    self._raise(op, "ConflictException", f"{key[3]} already exists")
                self.store[key] = self._stored_spec(kind, params.get("spec"))
            elif not exists:
                self._raise(op, "NotFoundException", f"{kind} {key[3]} not found")
            elif verb == "update":
                self.store[key] = self._stored_spec(kind, params["spec"])
            elif verb == "delete":
                return self._body(kind, key, self.store.pop(key))
            return self._body(kind, key, self.store[key])

        return call


@pytest.fixture()
def fake():
    return FakeAppMesh()


@pytest.fixture()
def sessions(fake):
    return SessionCache(lambda access_key, secret_key, region: fake)


@pytest.fixture()
def aws_secret():
    return Secret(
        metadata=Metadata(name="creds", namespace="ops"),
        kind=AwsSecret(access_key="AKIAEXAMPLEEXAMPLE01", secret_key="s3cr3t"),
    )


@pytest.fixture()
def snapshot_doc():
    return {
        "meshes": [
            {
                "metadata": {"name": "m1", "namespace": "default"},
                "appMesh": {"awsRegion": "us-east-1", "awsCredentials": {"name": "creds", "namespace": "ops"}},
            },
            {
                "metadata": {"name": "legacy", "namespace": "default"},
                "istio": {"installationNamespace": "istio-system"},
            },
        ],
        "upstreams": [
            {"metadata": {"name": "svc-a-8080", "namespace": "prod"}, "host": "svcA", "port": 8080},
            {"metadata": {"name": "svc-a-9090", "namespace": "prod"}, "host": "svcA", "port": 9090},
            {"metadata": {"name": "svc-b-8080", "namespace": "prod"}, "host": "svcB", "port": 8080},
        ],
        "routingRules": [
            {
                "metadata": {"name": "shift-canary", "namespace": "prod"},
                "destinations": [{"name": "svc-b-8080", "namespace": "prod"}],
                "requestMatchers": [{"prefix": "/api"}],
                "trafficShifting": {
                    "destinations": [
                        {"upstream": {"name": "svc-b-8080", "namespace": "prod"}, "weight": 90},
                        {"upstream": {"name": "svc-a-8080", "namespace": "prod"}, "weight": 10},
                    ]
                },
            },
            {
                "metadata": {"name": "plain", "namespace": "prod"},
                "destinations": [{"name": "svc-a-8080", "namespace": "prod"}],
            },
        ],
        "secrets": [
            {
                "metadata": {"name": "creds", "namespace": "ops"},
                "aws": {"accessKey": "AKIAEXAMPLEEXAMPLE01", "secretKey": "s3cr3t"},
            }
        ],
    }


@pytest.fixture()
def snapshot(snapshot_doc):
    return snapshot_from_dict(snapshot_doc)
