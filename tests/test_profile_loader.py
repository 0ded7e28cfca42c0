"""Tests for ProfileLoader: provisioning, retry, timeout and de-duplication."""

import asyncio

import pytest

from cafcoop.errors import (
    DatastoreError,
    InvalidArgument,
    ProfileCreateFailed,
    ProfileLoadFailed,
    ProvisionFailed,
    TransientKind,
    TransientNetworkError,
)
from tests.conftest import build_config, build_loader, make_profile, make_session


class _FailingProvisioner:
    def __init__(self):
        self.calls = 0

    async def provision(self, auth_id, email, defaults):
        self.calls += 1
        raise ProvisionFailed("Échec création profil")


def _aborted():
    return TransientNetworkError("fetch aborted", kind=TransientKind.ABORTED)


# ---------------------------------------------------------------------------
# Lookup and provisioning
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_login_provisions_profile(loader, store, gateway, telemetry):
    gateway.session = make_session("auth-1", "awa@cafcoop.bf")

    profile = await loader.load("auth-1")

    assert profile.auth_id == "auth-1"
    assert profile.email == "awa@cafcoop.bf"
    assert profile.role == "agriculteur"
    assert store.inserts == 1
    created = telemetry.get_events()
    assert [e.data["existed"] for e in created if e.message == "Profile created"] == [False]


@pytest.mark.asyncio
async def test_returning_user_does_not_provision(loader, store, telemetry):
    store.add(make_profile("auth-1", profile_id=7))

    profile = await loader.load("auth-1")

    assert profile.profile_id == 7
    assert store.inserts == 0
    assert telemetry.count("Profile created") == 0
    assert telemetry.count("Profile loaded") == 1


@pytest.mark.asyncio
async def test_incomplete_profile_is_returned_with_advisory(loader, store, telemetry):
    store.add(make_profile("auth-1", nom="", prenom=""))

    profile = await loader.load("auth-1")

    assert profile.is_incomplete
    assert profile.missing_identity_fields == ["nom", "prenom"]
    assert telemetry.count("Profile incomplete") == 1


@pytest.mark.asyncio
async def test_empty_auth_id_is_rejected(loader, store):
    with pytest.raises(InvalidArgument):
        await loader.load("")

    assert store.lookups == 0


@pytest.mark.asyncio
async def test_provisioner_failure_surfaces_as_create_failed(
    store, gateway, telemetry, config, logger,
):
    gateway.session = make_session("auth-1")
    failing = _FailingProvisioner()
    loader = build_loader(store, gateway, telemetry, config, logger, provisioner=failing)

    with pytest.raises(ProfileCreateFailed, match="Échec création profil"):
        await loader.load("auth-1")

    assert failing.calls == 1
    assert telemetry.count("Profile creation failed") == 1
    loader.close()


@pytest.mark.asyncio
async def test_missing_auth_user_email_fails_provisioning(loader, gateway, store):
    gateway.session = None

    with pytest.raises(ProfileCreateFailed):
        await loader.load("auth-1")

    assert store.inserts == 0


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_transient_failures_are_retried_at_most_twice(loader, store, telemetry):
    store.lookup_failures = [_aborted(), _aborted(), _aborted(), _aborted()]

    with pytest.raises(ProfileLoadFailed):
        await loader.load("auth-1")

    assert store.lookups == 3
    assert telemetry.count("Profile load retry") == 2
    assert telemetry.count("Profile load failed") == 1


@pytest.mark.asyncio
async def test_transient_failure_then_success(loader, store, telemetry):
    store.add(make_profile("auth-1"))
    store.lookup_failures = [_aborted()]

    profile = await loader.load("auth-1")

    assert profile.auth_id == "auth-1"
    assert store.lookups == 2
    assert telemetry.count("Profile load retry") == 1


@pytest.mark.asyncio
async def test_query_timeout_then_success_records_one_retry(
    store, gateway, telemetry, logger,
):
    config = build_config(PROFILE_QUERY_TIMEOUT_S=0.05)
    loader = build_loader(store, gateway, telemetry, config, logger)
    store.add(make_profile("auth-1"))
    stuck = asyncio.Event()
    store.lookup_gate = stuck

    profile = await loader.load("auth-1")

    assert profile.auth_id == "auth-1"
    retries = [e for e in telemetry.get_events() if e.message == "Profile load retry"]
    assert len(retries) == 1
    assert "timeout" in retries[0].data["error"]

    stuck.set()
    await asyncio.sleep(0)
    loader.close()


@pytest.mark.asyncio
async def test_non_transient_failure_is_not_retried(loader, store):
    store.lookup_failures = [DatastoreError("permission denied", code="42501")]

    with pytest.raises(ProfileLoadFailed, match="permission denied"):
        await loader.load("auth-1")

    assert store.lookups == 1


# ---------------------------------------------------------------------------
# De-duplication
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_loads_for_same_identity_collapse(loader, store):
    store.add(make_profile("auth-1"))

    first, second = await asyncio.gather(loader.load("auth-1"), loader.load("auth-1"))

    assert first is not None and first.auth_id == "auth-1"
    assert second is None
    assert store.lookups == 1


@pytest.mark.asyncio
async def test_dedup_window_expires_after_settling(loader, store, telemetry):
    store.add(make_profile("auth-1"))

    assert await loader.load("auth-1") is not None
    assert await loader.load("auth-1") is None
    assert telemetry.count("Profile load already in flight") == 1

    await asyncio.sleep(0.35)

    assert await loader.load("auth-1") is not None
    assert store.lookups == 2


@pytest.mark.asyncio
async def test_force_bypasses_dedup(loader, store):
    store.add(make_profile("auth-1"))
    await loader.load("auth-1")
    store.add(make_profile("auth-1", nom="Sawadogo"))

    refreshed = await loader.load("auth-1", force=True)

    assert refreshed.nom == "Sawadogo"


@pytest.mark.asyncio
async def test_different_identities_are_not_collapsed(loader, store):
    store.add(make_profile("auth-1", profile_id=1, email="a@cafcoop.bf"))
    store.add(make_profile("auth-2", profile_id=2, email="b@cafcoop.bf"))

    first, second = await asyncio.gather(loader.load("auth-1"), loader.load("auth-2"))

    assert first.profile_id == 1
    assert second.profile_id == 2
