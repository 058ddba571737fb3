"""
Tests for memory persistence, search, expiry and reference counting.
"""

from datetime import timedelta

import pydantic
import pytest

from domain.context.memory.vector_memory_store import MemoryStore
from domain.errors import RemoteCallFailed, StorageError, ValidationError
from domain.models import Err, Memory, MemoryCandidate, MemoryKind, Ok, utc_now
from fakes import basis_vector


def candidate(content="Dana brings donuts every Friday", channel_id="C1", significance=0.5, **kwargs):
    return MemoryCandidate(
        content=content,
        kind=kwargs.pop("kind", MemoryKind.FACT),
        channel_id=channel_id,
        user_id=kwargs.pop("user_id", "U1"),
        significance=significance,
        **kwargs
    )


def ticking_clock(step=timedelta(seconds=1)):
    """Each call returns a later time than the previous one"""
    state = {"now": utc_now()}

    def now():
        state["now"] += step
        return state["now"]
    return now


class QueryEmbedder:

    def __init__(self, vector=None, error=None):
        self.vector = vector
        self.error = error
        self.calls = 0

    async def __call__(self, text):
        self.calls += 1
        if self.error:
            raise self.error
        return self.vector


class TestMemoryValidation:

    @pytest.mark.parametrize("significance", [1.5, -0.1])
    def test_out_of_range_significance_is_rejected(self, significance):
        with pytest.raises(pydantic.ValidationError):
            Memory(id="m1", content="x", kind=MemoryKind.FACT, channel_id="C1", significance=significance)

    def test_expiry_cannot_precede_creation(self):
        now = utc_now()
        with pytest.raises(pydantic.ValidationError):
            Memory(
                id="m1", content="x", kind=MemoryKind.FACT, channel_id="C1", significance=0.5,
                created_at=now, expires_at=now - timedelta(seconds=1)
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("significance", [1.5, -0.1])
    async def test_create_raises_validation_error(self, repository, significance):
        store = MemoryStore(repository)

        with pytest.raises(ValidationError):
            await store.create(candidate(significance=significance))

        assert repository.memories == {}


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_assigns_identity_and_retention(self, repository):
        store = MemoryStore(repository, retention_days=180)

        result = await store.create(candidate())

        assert isinstance(result, Ok)
        memory = result.value
        assert memory.id in repository.memories
        assert memory.reference_count == 0
        assert memory.expires_at - memory.created_at == timedelta(days=180)
        assert memory.searchable_text == "dana brings donuts every friday"

    @pytest.mark.asyncio
    async def test_canonical_embedding_is_indexed(self, repository):
        store = MemoryStore(repository)

        memory = (await store.create(candidate(embedding=basis_vector(3)))).value

        assert memory.has_vector
        assert await repository.count_vectors() == 1

    @pytest.mark.asyncio
    async def test_wrong_sized_embedding_is_dropped(self, repository):
        store = MemoryStore(repository)

        memory = (await store.create(candidate(embedding=[0.1, 0.2, 0.3]))).value

        assert memory.embedding is None
        assert await repository.count_vectors() == 0

    @pytest.mark.asyncio
    async def test_storage_failure_is_returned_not_raised(self, repository):
        repository.failing.add("insert_memory")
        store = MemoryStore(repository)

        result = await store.create(candidate())

        assert isinstance(result, Err)
        assert result.kind == "StorageError"
        assert not result.ok


class TestSearch:

    @pytest.mark.asyncio
    async def test_keyword_search_orders_by_significance_then_recency(self, repository):
        store = MemoryStore(repository, now=ticking_clock())
        await store.create(candidate("pizza friday is back", significance=0.4))
        await store.create(candidate("PIZZA party in the lobby", significance=0.9))
        await store.create(candidate("new pizza oven arrived", significance=0.4))
        await store.create(candidate("standup moved to 10", significance=1.0))

        memories = (await store.search("pizza", limit=5)).value

        assert [m.content for m in memories] == [
            "PIZZA party in the lobby",
            "new pizza oven arrived",
            "pizza friday is back",
        ]

    @pytest.mark.asyncio
    async def test_channel_filter_applies_before_limit(self, repository):
        store = MemoryStore(repository)
        for n in range(3):
            await store.create(candidate(f"release notes {n}", channel_id="C2", significance=0.9))
        await store.create(candidate("release party", channel_id="C1", significance=0.1))

        memories = (await store.search("release", limit=1, channel_id="C1")).value

        assert [m.content for m in memories] == ["release party"]

    @pytest.mark.asyncio
    async def test_vector_search_orders_by_cosine_distance(self, repository):
        embedder = QueryEmbedder(vector=basis_vector(1))
        store = MemoryStore(repository, embed_query=embedder)
        near = [0.0] * len(basis_vector(0))
        near[1], near[2] = 0.9, 0.1
        await store.create(candidate("far", embedding=basis_vector(2)))
        await store.create(candidate("exact", embedding=basis_vector(1)))
        await store.create(candidate("near", embedding=near))

        memories = (await store.search("anything", limit=3)).value

        assert embedder.calls == 1
        assert [m.content for m in memories] == ["exact", "near", "far"]

    @pytest.mark.asyncio
    async def test_given_query_embedding_skips_embedder(self, repository):
        embedder = QueryEmbedder(vector=basis_vector(2))
        store = MemoryStore(repository, embed_query=embedder)
        await store.create(candidate("one", embedding=basis_vector(1)))
        await store.create(candidate("two", embedding=basis_vector(2)))

        memories = (await store.search("q", limit=1, query_embedding=basis_vector(1))).value

        assert embedder.calls == 0
        assert [m.content for m in memories] == ["one"]

    @pytest.mark.asyncio
    async def test_keyword_search_when_index_is_empty(self, repository):
        embedder = QueryEmbedder(vector=basis_vector(1))
        store = MemoryStore(repository, embed_query=embedder)
        await store.create(candidate("deploy freeze starts monday"))

        memories = (await store.search("freeze")).value

        assert embedder.calls == 0
        assert [m.content for m in memories] == ["deploy freeze starts monday"]

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_keywords(self, repository):
        embedder = QueryEmbedder(error=RemoteCallFailed("generate_embedding", True, 4, TimeoutError()))
        store = MemoryStore(repository, embed_query=embedder)
        await store.create(candidate("vectorized", embedding=basis_vector(1)))
        await store.create(candidate("keyword match"))

        memories = (await store.search("keyword")).value

        assert [m.content for m in memories] == ["keyword match"]

    @pytest.mark.asyncio
    async def test_channel_without_vectors_uses_keywords(self, repository):
        embedder = QueryEmbedder(vector=basis_vector(1))
        store = MemoryStore(repository, embed_query=embedder)
        await store.create(candidate("team loves tacos", channel_id="C1", embedding=basis_vector(1)))
        await store.create(candidate("pizza friday is sacred", channel_id="C2"))

        memories = (await store.search("pizza", 5, channel_id="C2")).value

        assert embedder.calls == 0
        assert [m.content for m in memories] == ["pizza friday is sacred"]

    @pytest.mark.asyncio
    async def test_keyword_only_memories_fill_short_vector_results(self, repository):
        embedder = QueryEmbedder(vector=basis_vector(1))
        store = MemoryStore(repository, embed_query=embedder)
        await store.create(candidate("team loves tacos", embedding=basis_vector(1)))
        await store.create(candidate("taco tuesday moved to wednesday"))
        await store.create(candidate("standup is at ten"))

        memories = (await store.search("taco", limit=5)).value

        assert [m.content for m in memories] == ["team loves tacos", "taco tuesday moved to wednesday"]
        assert all(m.reference_count == 1 for m in memories)

    @pytest.mark.asyncio
    async def test_expired_vectors_do_not_select_vector_search(self, repository):
        embedder = QueryEmbedder(vector=basis_vector(1))
        store = MemoryStore(repository, embed_query=embedder)
        now = utc_now()
        repository.memories["old"] = Memory(
            id="old", content="old vector", kind=MemoryKind.FACT, channel_id="C1", significance=0.5,
            embedding=basis_vector(1), created_at=now - timedelta(days=200), expires_at=now - timedelta(days=1)
        )
        await store.create(candidate("deploy freeze starts monday"))

        memories = (await store.search("freeze")).value

        assert embedder.calls == 0
        assert [m.content for m in memories] == ["deploy freeze starts monday"]

    @pytest.mark.asyncio
    async def test_each_hit_is_referenced_once_per_search(self, repository):
        store = MemoryStore(repository)
        created = (await store.create(candidate("coffee machine is broken"))).value

        first = (await store.search("coffee")).value
        second = (await store.search("coffee")).value

        assert first[0].reference_count == 1
        assert second[0].reference_count == 2
        assert repository.memories[created.id].reference_count == 2

    @pytest.mark.asyncio
    async def test_storage_failure_is_an_err(self, repository):
        store = MemoryStore(repository)
        repository.failing.add("keyword_search")

        result = await store.search("anything")

        assert isinstance(result, Err)
        assert isinstance(result.error, StorageError)
        assert result.unwrap_or([]) == []


class TestExpiry:

    async def _insert_expired(self, repository):
        now = utc_now()
        expired = Memory(
            id="expired-1",
            content="anything goes on launch day",
            kind=MemoryKind.MOMENT,
            channel_id="C1",
            significance=0.9,
            created_at=now - timedelta(days=1),
            expires_at=now - timedelta(seconds=1),
            searchable_text="anything goes on launch day",
        )
        await repository.insert_memory(expired)
        return expired

    @pytest.mark.asyncio
    async def test_expired_memory_is_hidden_then_removed(self, repository):
        store = MemoryStore(repository)
        await self._insert_expired(repository)

        assert (await store.search("anything")).value == []
        assert (await store.get_recent("C1")).value == []
        assert "expired-1" in repository.memories

        assert await store.cleanup_expired() == 1
        assert await store.cleanup_expired() == 0
        assert repository.memories == {}

    @pytest.mark.asyncio
    async def test_cleanup_keeps_live_memories(self, repository):
        store = MemoryStore(repository)
        await self._insert_expired(repository)
        live = (await store.create(candidate("still relevant"))).value

        assert await store.cleanup_expired() == 1
        assert list(repository.memories) == [live.id]


class TestRecent:

    @pytest.mark.asyncio
    async def test_recent_is_newest_first(self, repository):
        clock = {"now": utc_now()}
        store = MemoryStore(repository, now=lambda: clock["now"])
        for n in range(3):
            await store.create(candidate(f"memory {n}"))
            clock["now"] += timedelta(minutes=1)

        memories = (await store.get_recent("C1", limit=2)).value

        assert [m.content for m in memories] == ["memory 2", "memory 1"]

    @pytest.mark.asyncio
    async def test_recent_failure_is_an_err(self, repository):
        repository.failing.add("recent_memories")

        result = await MemoryStore(repository).get_recent("C1")

        assert isinstance(result, Err)


class TestUserErasure:

    @pytest.mark.asyncio
    async def test_delete_user_memories_only_touches_that_user(self, repository):
        store = MemoryStore(repository)
        await store.create(candidate("mine", user_id="U1"))
        await store.create(candidate("also mine", user_id="U1"))
        theirs = (await store.create(candidate("theirs", user_id="U2"))).value

        assert await store.delete_user_memories("U1") == 2
        assert list(repository.memories) == [theirs.id]
