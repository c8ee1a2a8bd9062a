from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy.exc import InternalError, OperationalError

from relayrag.core.errors import DatabaseError, RetrievalError
from relayrag.ingestion.embeddings import HashEmbeddingClient, hash_embedding
from relayrag.providers.retrieval.local_pgvector import PgVectorStore
from relayrag.services.quota import QuotaScope, SqlQuotaStore
from relayrag.services.retrieval import RetrievalEngine


class _Result:
    def __init__(self, value: int) -> None:
        self._value = value

    def scalar_one(self) -> int:
        return self._value

    def scalar_one_or_none(self) -> int:
        return self._value

    def all(self) -> list:
        return []


class _Savepoint:
    def __init__(self, session: "AbortingSession") -> None:
        self._session = session

    async def __aenter__(self) -> "_Savepoint":
        self._session.savepoints += 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            # ROLLBACK TO SAVEPOINT clears the aborted state.
            self._session.aborted = False
            self._session.savepoint_rollbacks += 1
        return False


class AbortingSession:
    """Mimics Postgres: after a failed statement every query fails until rollback."""

    def __init__(self, *, failures: int = 0, value: int = 42) -> None:
        self._failures = failures
        self._value = value
        self.aborted = False
        self.savepoints = 0
        self.savepoint_rollbacks = 0
        self.rollbacks = 0

    def begin_nested(self) -> _Savepoint:
        return _Savepoint(self)

    async def execute(self, stmt):
        if self.aborted:
            raise InternalError("SELECT", {}, Exception("current transaction is aborted"))
        if self._failures:
            self._failures -= 1
            self.aborted = True
            raise OperationalError("SELECT", {}, Exception("statement timeout"))
        return _Result(self._value)

    async def rollback(self) -> None:
        self.aborted = False
        self.rollbacks += 1


@pytest.mark.asyncio
async def test_failed_vector_query_rolls_back_to_savepoint_only() -> None:
    session = AbortingSession(failures=1)
    store = PgVectorStore(session)

    with pytest.raises(RetrievalError):
        await store.search(hash_embedding("reset password"), threshold=0.6, top_k=3)

    assert session.savepoints == 1
    assert session.savepoint_rollbacks == 1
    assert session.rollbacks == 0
    assert session.aborted is False


@pytest.mark.asyncio
async def test_quota_reads_still_work_after_retrieval_degrades() -> None:
    session = AbortingSession(failures=1)
    engine = RetrievalEngine(PgVectorStore(session), HashEmbeddingClient(), embed_delay_ms=0)
    quota_store = SqlQuotaStore(session)

    snippets = await engine.search("reset password", company_id="c1")
    used = await quota_store.get_daily_usage(QuotaScope.INDIVIDUAL, "p1", date(2026, 10, 18))
    limit = await quota_store.get_daily_limit(QuotaScope.TEAM, "g1")

    assert snippets == []
    assert used == 42
    assert limit == 42


@pytest.mark.asyncio
async def test_quota_reads_raise_database_error_on_failure() -> None:
    session = AbortingSession()
    session.aborted = True
    quota_store = SqlQuotaStore(session)

    with pytest.raises(DatabaseError):
        await quota_store.get_daily_usage(QuotaScope.ORGANIZATION, "c1", date(2026, 10, 18))
    with pytest.raises(DatabaseError):
        await quota_store.get_daily_limit(QuotaScope.INDIVIDUAL, "p1")
