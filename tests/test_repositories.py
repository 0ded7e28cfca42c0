"""Tests for the Supabase-backed repositories using a fake postgrest builder."""

from types import SimpleNamespace

import httpx
import pytest
from postgrest.exceptions import APIError

from cafcoop.errors import ConstraintViolation, DatastoreError, ProfileNotFound, TransientNetworkError
from cafcoop.gateway import ProviderGateway
from cafcoop.models.profile import ProfileDraft, ProfileUpdate
from cafcoop.repositories.audit_repository import AuditRepository
from cafcoop.repositories.profile_repository import ProfileRepository
from cafcoop.utils.audit import AuditEvent


def _row(auth_id="auth-1", profile_id=7, nom="Ouedraogo"):
    return {
        "id_utilisateur": profile_id,
        "id_auth": auth_id,
        "email": "awa@cafcoop.bf",
        "nom": nom,
        "prenom": "Awa",
        "telephone": "",
        "role": "agriculteur",
        "statut": "actif",
    }


class _FakeQuery:
    """Chainable stand-in for postgrest's async request builder."""

    def __init__(self, table, outcome):
        self.table = table
        self.calls = []
        self._outcome = outcome

    def _record(self, name, *args):
        self.calls.append((name, args))
        return self

    def select(self, *columns):
        return self._record("select", *columns)

    def eq(self, column, value):
        return self._record("eq", column, value)

    def maybe_single(self):
        return self._record("maybe_single")

    def insert(self, row):
        return self._record("insert", row)

    def update(self, row):
        return self._record("update", row)

    async def execute(self):
        self.calls.append(("execute", ()))
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return self._outcome


class _FakeDatastore:
    """Fake Supabase client whose ``table()`` returns scripted queries."""

    def __init__(self):
        self.outcomes = []
        self.queries = []

    def table(self, name):
        outcome = self.outcomes.pop(0) if self.outcomes else SimpleNamespace(data=[])
        query = _FakeQuery(name, outcome)
        self.queries.append(query)
        return query


@pytest.fixture
def datastore():
    return _FakeDatastore()


@pytest.fixture
def provider(datastore, logger):
    async def _factory(url, key, options):
        return datastore

    return ProviderGateway(
        supabase_url="https://cafcoop-test.supabase.co",
        supabase_key="anon-key",
        logger=logger,
        client_factory=_factory,
    )


@pytest.fixture
def profiles(provider, logger):
    return ProfileRepository(gateway=provider, logger=logger)


# ---------------------------------------------------------------------------
# ProfileRepository
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_find_returns_validated_profile(profiles, datastore):
    datastore.outcomes = [SimpleNamespace(data=_row())]

    profile = await profiles.find_profile_by_auth_id("auth-1")

    assert profile.profile_id == 7
    assert profile.auth_id == "auth-1"
    query = datastore.queries[0]
    assert query.table == "utilisateurs"
    assert ("eq", ("id_auth", "auth-1")) in query.calls
    assert ("maybe_single", ()) in query.calls


@pytest.mark.asyncio
async def test_find_without_row_returns_none(profiles, datastore):
    datastore.outcomes = [None]

    assert await profiles.find_profile_by_auth_id("auth-1") is None


@pytest.mark.asyncio
async def test_find_uses_configured_table(provider, datastore, logger):
    repo = ProfileRepository(gateway=provider, logger=logger, table="profils_test")
    datastore.outcomes = [SimpleNamespace(data=None)]

    assert await repo.find_profile_by_auth_id("auth-1") is None
    assert datastore.queries[0].table == "profils_test"


@pytest.mark.asyncio
async def test_transport_failure_is_transient(profiles, datastore):
    datastore.outcomes = [httpx.ReadError("connection reset")]

    with pytest.raises(TransientNetworkError):
        await profiles.find_profile_by_auth_id("auth-1")


@pytest.mark.asyncio
async def test_insert_returns_stored_row(profiles, datastore):
    datastore.outcomes = [SimpleNamespace(data=[_row(profile_id=11)])]
    draft = ProfileDraft(auth_id="auth-1", email="awa@cafcoop.bf")

    profile = await profiles.insert_profile(draft)

    assert profile.profile_id == 11
    name, (row,) = datastore.queries[0].calls[0]
    assert name == "insert"
    assert row["id_auth"] == "auth-1"
    assert row["statut"] == "actif"


@pytest.mark.asyncio
async def test_unique_violation_becomes_constraint_violation(profiles, datastore):
    datastore.outcomes = [APIError({
        "message": 'duplicate key value violates unique constraint "utilisateurs_id_auth_key"',
        "code": "23505",
    })]
    draft = ProfileDraft(auth_id="auth-1", email="awa@cafcoop.bf")

    with pytest.raises(ConstraintViolation) as exc_info:
        await profiles.insert_profile(draft)

    assert exc_info.value.code == "23505"


@pytest.mark.asyncio
async def test_other_api_error_is_datastore_error(profiles, datastore):
    datastore.outcomes = [APIError({"message": "permission denied", "code": "42501"})]

    with pytest.raises(DatastoreError) as exc_info:
        await profiles.find_profile_by_auth_id("auth-1")

    assert not isinstance(exc_info.value, ConstraintViolation)


@pytest.mark.asyncio
async def test_update_returns_updated_profile(profiles, datastore):
    datastore.outcomes = [SimpleNamespace(data=[_row(nom="Diallo")])]

    profile = await profiles.update_profile("auth-1", ProfileUpdate(nom=" Diallo ", prenom="Awa"))

    assert profile.nom == "Diallo"
    name, (row,) = datastore.queries[0].calls[0]
    assert name == "update"
    assert row == {"nom": "Diallo", "prenom": "Awa", "telephone": ""}


@pytest.mark.asyncio
async def test_update_without_matching_row_raises_not_found(profiles, datastore):
    datastore.outcomes = [SimpleNamespace(data=[])]

    with pytest.raises(ProfileNotFound):
        await profiles.update_profile("auth-missing", ProfileUpdate(nom="Diallo"))


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_audit_insert_writes_row(provider, datastore, logger):
    repo = AuditRepository(gateway=provider, logger=logger)
    event = AuditEvent(action="profile_created", user_id="auth-1", metadata={"role": "agriculteur"})

    await repo.insert_audit(event)

    query = datastore.queries[0]
    assert query.table == "audit_logs"
    name, (row,) = query.calls[0]
    assert name == "insert"
    assert row["action"] == "profile_created"
    assert row["metadata"]["role"] == "agriculteur"


@pytest.mark.asyncio
async def test_audit_insert_failure_is_translated(provider, datastore, logger):
    repo = AuditRepository(gateway=provider, logger=logger)
    datastore.outcomes = [APIError({"message": 'relation "audit_logs" does not exist', "code": "42P01"})]

    with pytest.raises(DatastoreError):
        await repo.insert_audit(AuditEvent(action="profile_created", user_id="auth-1"))
