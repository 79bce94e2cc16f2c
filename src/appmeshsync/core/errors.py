"""
Error taxonomy for AppMesh Sync.

- ValidationError family: detected before any network call.
- RemoteError: App Mesh API failure other than the expected "not found".
- SyncCancelled / DeadlineExceeded: cooperative cancellation.
- MeshSyncError / SyncAggregateError: mesh-level context and aggregation.
"""

from __future__ import annotations

from typing import List, Optional


class AppMeshSyncError(Exception):
    """Base error for AppMesh Sync."""


# =========================
# Validation
# =========================

class ValidationError(AppMeshSyncError):
    """Raised when inputs are invalid; never retried."""


class ConfigError(ValidationError):
    """Raised when runtime configuration cannot be resolved."""


class SnapshotError(ValidationError):
    """Raised when a snapshot document is structurally invalid."""


class MissingRegionError(ValidationError):
    """Raised when a mesh does not provide an AWS region."""


class InvalidCredentialError(ValidationError):
    """Raised when a secret is not an AWS secret or its keys are not valid text."""


class MissingProviderConfigError(ValidationError):
    """Raised when an App Mesh mesh carries no App Mesh configuration."""


class ReferenceNotFoundError(ValidationError):
    """Raised when a resource reference cannot be resolved in the snapshot."""


class UnknownOperationError(ValidationError):
    """Raised when an operation value is outside its closed enumeration."""


# =========================
# Translation / sessions
# =========================

class TranslationError(AppMeshSyncError):
    """Raised when intent cannot be translated into App Mesh resources."""


class SessionConstructionError(AppMeshSyncError):
    """Raised when an App Mesh client cannot be built."""


# =========================
# Remote / cancellation
# =========================

class RemoteError(AppMeshSyncError):
    """App Mesh API failure with operation context."""

    def __init__(
        self,
        operation: str,
        kind: str,
        name: str,
        mesh: str,
        *,
        code: str = "",
        message: str = "",
    ) -> None:
        self.operation = operation
        self.kind = kind
        self.name = name
        self.mesh = mesh
        self.code = code
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"{self.operation} failed for {self.kind} '{self.name}' in mesh '{self.mesh}'"
        if self.code:
            base += f" (code={self.code})"
        if self.message:
            base += f": {self.message}"
        return base


class SyncCancelled(AppMeshSyncError):
    """Raised when a sync cycle is cancelled before the next remote call."""


class DeadlineExceeded(SyncCancelled):
    """Raised when a sync cycle runs past its deadline."""


# =========================
# Mesh-level wrappers
# =========================

class MeshSyncError(AppMeshSyncError):
    """Wraps any failure with the identity of the mesh being synced."""

    def __init__(self, mesh_ref: str, cause: BaseException) -> None:
        self.mesh_ref = mesh_ref
        self.cause = cause
        super().__init__(f"syncing mesh {mesh_ref}: {cause}")


class SyncAggregateError(AppMeshSyncError):
    """Raised at the end of a cycle when several meshes failed in isolation mode."""

    def __init__(self, errors: List[MeshSyncError], message: Optional[str] = None) -> None:
        self.errors = list(errors)
        refs = ", ".join(e.mesh_ref for e in self.errors)
        super().__init__(message or f"{len(self.errors)} mesh(es) failed to sync: {refs}")
