"""
Process-lifetime cache of authenticated App Mesh clients.

Entries are keyed by an explicit SessionKey (secret identity, access key id,
digest of the secret key, region) and created lazily on first use. The lock
guards lookup and insert only; client construction happens outside it, so two
concurrent misses for the same key may each build a client. The first one
stored wins and is returned to both callers.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Union

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import AwsSection
from .errors import (
    InvalidCredentialError,
    MissingRegionError,
    ReferenceNotFoundError,
    SessionConstructionError,
)
from .model import AppMesh, AwsSecret, Secret, find

AppMeshClient = Any  # botocore client for the "appmesh" service
ClientFactory = Callable[[str, str, str], AppMeshClient]


@dataclass(frozen=True)
class SessionKey:
    secret_namespace: str
    secret_name: str
    access_key: str
    secret_key_digest: str
    region: str


def _valid_text(value: Union[str, bytes], field: str) -> str:
    if not isinstance(value, (str, bytes)):
        raise InvalidCredentialError(f"{field} not a valid string")
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidCredentialError(f"{field} not a valid string") from exc
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise InvalidCredentialError(f"{field} not a valid string") from exc
    return value


def boto3_client_factory(aws: Optional[AwsSection] = None) -> ClientFactory:
    """Return a factory building App Mesh clients from static (or default) credentials."""
    aws = aws or AwsSection()
    boto_cfg = BotoConfig(
        retries={"max_attempts": aws.max_attempts, "mode": aws.retry_mode},
        connect_timeout=aws.connect_timeout_sec,
        read_timeout=aws.read_timeout_sec,
    )

    def build(access_key: str, secret_key: str, region: str) -> AppMeshClient:
        # empty keys -> boto3 default credential chain (env, profile, instance role)
        session = boto3.session.Session(
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            region_name=region,
        )
        return session.client(
            "appmesh",
            region_name=region,
            endpoint_url=aws.endpoint_url or None,
            config=boto_cfg,
        )

    return build


class SessionCache:
    """Thread-safe map of SessionKey -> App Mesh client. Only get_or_create/resolve are public."""

    def __init__(
        self,
        factory: Optional[ClientFactory] = None,
        *,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self._factory = factory or boto3_client_factory()
        self._lock = threading.Lock()
        self._clients: Dict[SessionKey, AppMeshClient] = {}
        self.log = logger or logging.getLogger("amsync.sessions")

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    @staticmethod
    def _key(secret: Secret, access_key: str, secret_key: str, region: str) -> SessionKey:
        return SessionKey(
            secret_namespace=secret.metadata.namespace,
            secret_name=secret.metadata.name,
            access_key=access_key,
            secret_key_digest=hashlib.sha256(secret_key.encode("utf-8")).hexdigest(),
            region=region,
        )

    def get_or_create(self, secret: Secret, region: str) -> AppMeshClient:
        """
        Return the cached client for (secret, region), building it on first use.

        Raises:
            InvalidCredentialError: secret is not an AWS secret or keys are not valid text.
            MissingRegionError: region is empty.
            SessionConstructionError: the client could not be built.
        """
        if not isinstance(secret.kind, AwsSecret):
            raise InvalidCredentialError(
                f"mesh referenced non-AWS secret {secret.metadata.ref()}, AWS secret required"
            )
        if not region:
            raise MissingRegionError("mesh must provide aws_region")
        access_key = _valid_text(secret.kind.access_key, "access_key")
        secret_key = _valid_text(secret.kind.secret_key, "secret_key")

        key = self._key(secret, access_key, secret_key, region)
        with self._lock:
            client = self._clients.get(key)
        if client is not None:
            return client

        self.log.info("Creating App Mesh client: secret=%s region=%s", secret.metadata.ref(), region)
        try:
            client = self._factory(access_key, secret_key, region)
        except (BotoCoreError, ClientError, ValueError) as exc:
            raise SessionConstructionError(
                f"creating aws client from provided secret/region: {exc}"
            ) from exc

        with self._lock:
            return self._clients.setdefault(key, client)

    def resolve(self, app_mesh: AppMesh, secrets: Iterable[Secret]) -> AppMeshClient:
        """Find the mesh's credentials secret among `secrets` and return its client."""
        if app_mesh.aws_credentials is None:
            raise ReferenceNotFoundError("mesh does not reference an AWS credentials secret")
        secret = find(secrets, app_mesh.aws_credentials, kind="secret")
        if not app_mesh.aws_region:
            raise MissingRegionError("mesh must provide aws_region")
        return self.get_or_create(secret, app_mesh.aws_region)
