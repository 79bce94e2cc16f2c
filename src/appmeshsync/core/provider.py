"""
App Mesh API access (boto3 "appmesh" client).

- ResourceKind: closed set of resource kinds handled by the reconciler.
- KIND_OPS: per-kind client operation names and response keys.
- CancelToken: cooperative cancellation + deadline, checked before every call.
  A call already in flight is not interrupted: it is bounded only by the
  client timeouts and retries (aws.read_timeout_sec x aws.max_attempts), so a
  cycle may overrun its deadline by up to one such call.
- AppMeshApi: list/describe/create/update/delete helpers with error wrapping.
  A "not found" from describe is returned as None (expected absence).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import DeadlineExceeded, RemoteError, SyncCancelled

Spec = Dict[str, Any]
Scope = Dict[str, str]


class ResourceKind(str, Enum):
    MESH = "mesh"
    VIRTUAL_NODE = "virtual node"
    VIRTUAL_ROUTER = "virtual router"
    VIRTUAL_SERVICE = "virtual service"
    ROUTE = "route"


@dataclass(frozen=True)
class KindOps:
    name_param: str
    list_op: str
    list_key: str
    describe_op: str
    describe_key: str
    create_op: str
    update_op: str
    delete_op: str


def _ops(snake: str, camel: str, plural: str) -> KindOps:
    return KindOps(
        name_param=f"{camel}Name",
        list_op=f"list_{snake}s",
        list_key=plural,
        describe_op=f"describe_{snake}",
        describe_key=camel,
        create_op=f"create_{snake}",
        update_op=f"update_{snake}",
        delete_op=f"delete_{snake}",
    )


KIND_OPS: Dict[ResourceKind, KindOps] = {
    ResourceKind.MESH: replace(_ops("mesh", "mesh", "meshes"), list_op="list_meshes"),
    ResourceKind.VIRTUAL_NODE: _ops("virtual_node", "virtualNode", "virtualNodes"),
    ResourceKind.VIRTUAL_ROUTER: _ops("virtual_router", "virtualRouter", "virtualRouters"),
    ResourceKind.VIRTUAL_SERVICE: _ops("virtual_service", "virtualService", "virtualServices"),
    ResourceKind.ROUTE: _ops("route", "route", "routes"),
}

NOT_FOUND_CODES = {"NotFoundException"}


def is_not_found(exc: BaseException) -> bool:
    """True when a ClientError means "resource does not exist"."""
    if not isinstance(exc, ClientError):
        return False
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in NOT_FOUND_CODES or code.endswith("NotFound")


class CancelToken:
    """Thread-safe cancellation flag with an optional monotonic deadline."""

    def __init__(
        self,
        deadline_sec: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + float(deadline_sec) if deadline_sec else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise SyncCancelled("sync cancelled")
        if self._deadline is not None and self._clock() >= self._deadline:
            raise DeadlineExceeded("sync deadline exceeded")


class AppMeshApi:
    """App Mesh calls for one mesh, with cancellation checks and RemoteError wrapping."""

    def __init__(
        self,
        client: Any,
        mesh_name: str,
        *,
        cancel: Optional[CancelToken] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.client = client
        self.mesh_name = mesh_name
        self.cancel = cancel or CancelToken()
        self.log = logger or logging.getLogger("amsync.provider")

    # ------------- Public API -------------

    def list_names(self, kind: ResourceKind, scope: Optional[Scope] = None) -> List[str]:
        ops = KIND_OPS[kind]
        params = {"meshName": self.mesh_name, **(scope or {})}

        def run() -> List[str]:
            names: List[str] = []
            for page in self.client.get_paginator(ops.list_op).paginate(**params):
                for item in page.get(ops.list_key, []):
                    names.append(item[ops.name_param])
            return names

        return self._call(ops.list_op, kind, "*", run)

    def describe_spec(self, kind: ResourceKind, name: str, scope: Optional[Scope] = None) -> Optional[Spec]:
        """Return the remote spec, or None if the resource does not exist."""
        ops = KIND_OPS[kind]
        params = self._params(kind, name, scope)
        try:
            resp = self._call(ops.describe_op, kind, name, lambda: getattr(self.client, ops.describe_op)(**params))
        except RemoteError as exc:
            if is_not_found(exc.__cause__):
                return None
            raise
        return (resp.get(ops.describe_key) or {}).get("spec") or {}

    def create(self, kind: ResourceKind, name: str, spec: Optional[Spec], scope: Optional[Scope] = None) -> None:
        ops = KIND_OPS[kind]
        params = self._params(kind, name, scope)
        if spec is not None:
            params["spec"] = spec
        self._call(ops.create_op, kind, name, lambda: getattr(self.client, ops.create_op)(**params))

    def update(self, kind: ResourceKind, name: str, spec: Spec, scope: Optional[Scope] = None) -> None:
        ops = KIND_OPS[kind]
        params = {**self._params(kind, name, scope), "spec": spec}
        self._call(ops.update_op, kind, name, lambda: getattr(self.client, ops.update_op)(**params))

    def delete(self, kind: ResourceKind, name: str, scope: Optional[Scope] = None) -> None:
        ops = KIND_OPS[kind]
        params = self._params(kind, name, scope)
        self._call(ops.delete_op, kind, name, lambda: getattr(self.client, ops.delete_op)(**params))

    # ------------- Internal -------------

    def _params(self, kind: ResourceKind, name: str, scope: Optional[Scope]) -> Dict[str, Any]:
        params: Dict[str, Any] = {"meshName": self.mesh_name}
        params.update(scope or {})
        if kind is not ResourceKind.MESH:
            params[KIND_OPS[kind].name_param] = name
        return params

    def _call(self, operation: str, kind: ResourceKind, name: str, fn: Callable[[], Any]) -> Any:
        self.cancel.check()
        start = time.time()
        try:
            result = fn()
        except ClientError as exc:
            err = exc.response.get("Error", {})
            code = str(err.get("Code", ""))
            if not is_not_found(exc):
                self.log.warning("%s %s '%s' failed (code=%s): %s", operation, kind.value, name, code, exc)
            raise RemoteError(
                operation, kind.value, name, self.mesh_name, code=code, message=str(err.get("Message", ""))
            ) from exc
        except BotoCoreError as exc:
            self.log.warning("%s %s '%s' failed: %s", operation, kind.value, name, exc)
            raise RemoteError(operation, kind.value, name, self.mesh_name, message=str(exc)) from exc
        self.log.debug("%s %s '%s' ok in %.1fms", operation, kind.value, name, (time.time() - start) * 1000)
        return result
