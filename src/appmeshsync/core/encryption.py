"""
Mesh encryption flag operations.

`apply_encryption` is pure; `update_mesh_encryption` does read-mutate-write on
a snapshot YAML file (the file is overwritten).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import Optional, Union

from .errors import UnknownOperationError
from .model import Encryption, Mesh, ResourceRef, Snapshot
from .snapshot import dump_snapshot, load_snapshot

log = logging.getLogger("amsync.encryption")


class EncryptionOperation(str, Enum):
    ENABLE = "enable"
    DISABLE = "disable"
    TOGGLE = "toggle"

    @classmethod
    def parse(cls, value: Union[str, "EncryptionOperation"]) -> "EncryptionOperation":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(op.value for op in cls)
            raise UnknownOperationError(
                f"unknown encryption operation {value!r} (expected one of: {allowed})"
            ) from exc


def apply_encryption(mesh: Mesh, op: EncryptionOperation) -> Mesh:
    """Return a copy of `mesh` with the TLS flag set, cleared or flipped."""
    current = mesh.encryption.tls_enabled if mesh.encryption is not None else False
    if op is EncryptionOperation.ENABLE:
        enabled = True
    elif op is EncryptionOperation.DISABLE:
        enabled = False
    else:
        enabled = not current
    return replace(mesh, encryption=Encryption(tls_enabled=enabled))


def set_mesh_encryption(snapshot: Snapshot, ref: ResourceRef, op: EncryptionOperation) -> Snapshot:
    mesh = snapshot.find_mesh(ref)
    updated = apply_encryption(mesh, op)
    meshes = tuple(updated if m.metadata.ref() == ref else m for m in snapshot.meshes)
    return replace(snapshot, meshes=meshes)


def update_mesh_encryption(
    path: str,
    ref: ResourceRef,
    op: Union[str, EncryptionOperation],
    *,
    logger: Optional[logging.LoggerAdapter] = None,
) -> Mesh:
    """Load the snapshot at `path`, update mesh `ref` and write the file back."""
    lg = logger or log
    operation = EncryptionOperation.parse(op)
    snapshot = set_mesh_encryption(load_snapshot(path), ref, operation)
    dump_snapshot(snapshot, path)
    mesh = snapshot.find_mesh(ref)
    lg.info("Mesh %s encryption %s -> tls_enabled=%s", ref, operation.value, mesh.encryption.tls_enabled)
    return mesh
