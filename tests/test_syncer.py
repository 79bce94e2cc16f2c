import logging
from dataclasses import replace

import pytest

from appmeshsync import cli
from appmeshsync.core.config import SyncSection
from appmeshsync.core.errors import (
    InvalidCredentialError,
    MeshSyncError,
    MissingProviderConfigError,
    RemoteError,
    SyncAggregateError,
    SyncCancelled,
)
from appmeshsync.core.model import AwsSecret
from appmeshsync.core.provider import CancelToken
from appmeshsync.core.sessions import SessionCache
from appmeshsync.core.snapshot import snapshot_from_dict
from appmeshsync.core.syncer import AppMeshSyncer


def _second_mesh(doc, name="m2", app_mesh=True):
    cfg = {"awsRegion": "eu-west-1", "awsCredentials": {"name": "creds", "namespace": "ops"}} if app_mesh else None
    doc["meshes"].append({"metadata": {"name": name, "namespace": "default"}, "appMesh": cfg})
    return doc


def test_sync_skips_non_app_mesh_and_reconciles(fake, sessions, snapshot):
    report = AppMeshSyncer(sessions).sync(snapshot)

    assert report.synced == ["default.m1"]
    assert report.skipped == ["default.legacy"]
    assert report.counts == {"CREATED": 8}
    assert report.snapshot_hash == snapshot.hash()
    assert fake.names("virtual_node", "default.m1") == ["svcA", "svcB"]
    assert fake.names("virtual_node", "default.legacy") == []


def test_sync_twice_is_idempotent(fake, sessions, snapshot):
    syncer = AppMeshSyncer(sessions)
    syncer.sync(snapshot)
    writes = fake.mutating_calls()

    report = syncer.sync(snapshot)
    assert fake.mutating_calls() == writes
    assert report.counts == {"UNCHANGED": 7}


def test_session_reused_across_cycles(fake, snapshot):
    built = []

    def factory(access_key, secret_key, region):
        built.append(region)
        return fake

    syncer = AppMeshSyncer(SessionCache(factory))
    syncer.sync(snapshot)
    syncer.sync(snapshot)
    assert built == ["us-east-1"]


def test_dry_run_sync_writes_nothing(fake, sessions, snapshot):
    report = AppMeshSyncer(sessions, dry_run=True).sync(snapshot)
    assert fake.mutating_calls() == 0
    assert report.counts == {"CREATED": 8}


def test_app_mesh_without_config_fails(sessions, snapshot_doc):
    snap = snapshot_from_dict(_second_mesh(snapshot_doc, app_mesh=False))
    with pytest.raises(MeshSyncError) as exc:
        AppMeshSyncer(sessions).sync(snap)
    assert exc.value.mesh_ref == "default.m2"
    assert isinstance(exc.value.cause, MissingProviderConfigError)


def test_fail_fast_stops_at_first_mesh(fake, sessions, snapshot_doc):
    snapshot_doc["meshes"].insert(0, {"metadata": {"name": "bad", "namespace": "default"}, "appMesh": None})
    snap = snapshot_from_dict(snapshot_doc)

    with pytest.raises(MeshSyncError) as exc:
        AppMeshSyncer(sessions).sync(snap)
    assert exc.value.mesh_ref == "default.bad"
    assert sum(fake.calls.values()) == 0


def test_isolated_failures_are_all_reported(fake, sessions, snapshot_doc):
    snapshot_doc["meshes"].insert(0, {"metadata": {"name": "bad", "namespace": "default"}, "appMesh": None})
    _second_mesh(snapshot_doc, name="worse", app_mesh=False)
    snap = snapshot_from_dict(snapshot_doc)

    syncer = AppMeshSyncer(sessions, config=SyncSection(isolate_mesh_failures=True))
    with pytest.raises(SyncAggregateError) as exc:
        syncer.sync(snap)

    assert [e.mesh_ref for e in exc.value.errors] == ["default.bad", "default.worse"]
    # the healthy mesh in between was still synced
    assert fake.names("virtual_node", "default.m1") == ["svcA", "svcB"]


def test_remote_failure_wrapped_with_mesh(fake, sessions, snapshot):
    fake.fail["create_mesh"] = "ServiceUnavailableException"
    with pytest.raises(MeshSyncError) as exc:
        AppMeshSyncer(sessions).sync(snapshot)
    assert isinstance(exc.value.cause, RemoteError)
    assert "syncing mesh default.m1" in str(exc.value)


def test_cancellation_is_not_wrapped(fake, sessions, snapshot):
    token = CancelToken()
    token.cancel()
    with pytest.raises(SyncCancelled):
        AppMeshSyncer(sessions, config=SyncSection(isolate_mesh_failures=True)).sync(snapshot, token)
    assert sum(fake.calls.values()) == 0


def test_prune_flag_from_config(fake, sessions, snapshot):
    fake.put("virtual_node", "default.m1", "gone", {})
    AppMeshSyncer(sessions, config=SyncSection(prune=False)).sync(snapshot)
    assert "gone" in fake.names("virtual_node", "default.m1")

    AppMeshSyncer(sessions).sync(snapshot)
    assert "gone" not in fake.names("virtual_node", "default.m1")


def test_non_text_secret_key_is_a_credential_error(fake, sessions, snapshot):
    creds = replace(snapshot.secrets[0], kind=AwsSecret(access_key="AKIAEXAMPLEEXAMPLE01", secret_key=1234567890))
    snap = replace(snapshot, secrets=(creds,))

    with pytest.raises(MeshSyncError) as exc:
        AppMeshSyncer(sessions).sync(snap)
    assert isinstance(exc.value.cause, InvalidCredentialError)
    assert cli.exit_code_for(exc.value) == cli.EXIT_VALIDATION_ERROR
    assert sum(fake.calls.values()) == 0


def test_end_of_cycle_logged_when_failing_fast(sessions, snapshot_doc, caplog):
    snapshot_doc["meshes"].insert(0, {"metadata": {"name": "bad", "namespace": "default"}, "appMesh": None})
    snap = snapshot_from_dict(snapshot_doc)

    caplog.set_level(logging.INFO, logger="amsync.syncer")
    with pytest.raises(MeshSyncError):
        AppMeshSyncer(sessions).sync(snap)
    assert f"end sync {snap.hash()}: synced=0 skipped=0 failed=1" in caplog.text


def test_end_of_cycle_logged_when_cancelled(sessions, snapshot, caplog):
    token = CancelToken()
    token.cancel()
    caplog.set_level(logging.INFO, logger="amsync.syncer")
    with pytest.raises(SyncCancelled):
        AppMeshSyncer(sessions).sync(snapshot, token)
    assert f"end sync {snapshot.hash()}" in caplog.text
