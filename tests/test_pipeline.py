"""Tests for the embedding pipeline: selection, retry policy, batch shape, upsert."""

import uuid
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest
from sqlalchemy import select

from models.knowledge import EventEmbedding
from services.embeddings import PermanentProviderError, TransientProviderError
from services.pipeline import EmbeddingPipeline
from tests.conftest import ScriptedEmbeddingProvider, vec


def _pipeline(provider, session_factory, **kwargs) -> EmbeddingPipeline:
    kwargs.setdefault("retry_delay", 0.0)
    kwargs.setdefault("call_timeout", 5.0)
    return EmbeddingPipeline(provider, session_factory, **kwargs)


async def _stored(session_factory) -> dict[uuid.UUID, EventEmbedding]:
    async with session_factory() as s:
        rows = (await s.execute(select(EventEmbedding))).scalars().all()
        return {r.event_id: r for r in rows}


async def _seed(add_event, n: int, user: uuid.UUID | None = None) -> list:
    user = user or uuid.uuid4()
    now = datetime.now(timezone.utc)
    return [
        await add_event(user, f"event number {i}", timestamp=now - timedelta(hours=n - i))
        for i in range(n)
    ]


class TestSelectUnembedded:

    @pytest.mark.asyncio
    async def test_newest_first_and_limited(self, session_factory, add_event, mock_provider):
        events = await _seed(add_event, 5)
        pipeline = _pipeline(mock_provider, session_factory)

        async with session_factory() as db:
            picked = await pipeline.select_unembedded(db, 3)

        assert [e.id for e in picked] == [e.id for e in reversed(events)][:3]

    @pytest.mark.asyncio
    async def test_skips_events_with_embeddings(self, session_factory, add_event, mock_provider):
        user = uuid.uuid4()
        done = await add_event(user, "already embedded", embedding=vec(1.0))
        pending = await add_event(user, "waiting")
        pipeline = _pipeline(mock_provider, session_factory)

        async with session_factory() as db:
            picked = await pipeline.select_unembedded(db, 10)

        assert [e.id for e in picked] == [pending.id]
        assert done.id not in {e.id for e in picked}


class TestRun:

    @pytest.mark.asyncio
    async def test_embeds_every_pending_event(self, session_factory, add_event, mock_provider):
        events = await _seed(add_event, 4)
        result = await _pipeline(mock_provider, session_factory).run()

        assert result.selected == 4
        assert result.embedded == 4
        assert not result.aborted
        stored = await _stored(session_factory)
        assert set(stored) == {e.id for e in events}
        for e in events:
            np.testing.assert_allclose(stored[e.id].embedding, mock_provider.embed(e.content), rtol=1e-5)

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, session_factory, add_event, mock_provider):
        await _seed(add_event, 3)
        pipeline = _pipeline(mock_provider, session_factory)
        await pipeline.run()
        before = {k: (v.created_at, list(v.embedding)) for k, v in (await _stored(session_factory)).items()}
        calls = mock_provider.batch_calls

        result = await pipeline.run()

        assert result.selected == 0 and result.embedded == 0
        assert mock_provider.batch_calls == calls
        after = {k: (v.created_at, list(v.embedding)) for k, v in (await _stored(session_factory)).items()}
        assert after == before

    @pytest.mark.asyncio
    async def test_empty_store_does_not_call_provider(self, session_factory, mock_provider):
        result = await _pipeline(mock_provider, session_factory).run()
        assert result.selected == 0
        assert mock_provider.batch_calls == 0

    @pytest.mark.asyncio
    async def test_batch_size_caps_one_run(self, session_factory, add_event, mock_provider):
        await _seed(add_event, 5)
        pipeline = _pipeline(mock_provider, session_factory, batch_size=2)

        first = await pipeline.run()
        assert first.embedded == 2
        assert len(await _stored(session_factory)) == 2

        await pipeline.run()
        await pipeline.run()
        assert len(await _stored(session_factory)) == 5


class TestBatchShape:

    @pytest.mark.asyncio
    async def test_count_mismatch_persists_nothing(self, session_factory, add_event):
        await _seed(add_event, 3)
        provider = ScriptedEmbeddingProvider(drop=1)

        result = await _pipeline(provider, session_factory).run()

        assert result.aborted
        assert "Expected 3 vectors, got 2" in result.reason
        assert await _stored(session_factory) == {}

    @pytest.mark.asyncio
    async def test_mismatch_in_later_chunk_persists_nothing(self, session_factory, add_event):
        await _seed(add_event, 5)
        provider = ScriptedEmbeddingProvider(max_batch_size=2)

        # Only the third chunk comes back short
        original = provider.embed_batch

        async def short_third(texts):
            out = await original(texts)
            return out[:-1] if provider.batch_calls == 3 else out

        provider.embed_batch = short_third
        result = await _pipeline(provider, session_factory).run()

        assert result.aborted
        assert provider.batch_calls == 3
        assert await _stored(session_factory) == {}

    @pytest.mark.asyncio
    async def test_chunks_follow_provider_batch_size(self, session_factory, add_event):
        await _seed(add_event, 5)
        provider = ScriptedEmbeddingProvider(max_batch_size=2)

        result = await _pipeline(provider, session_factory).run()

        assert result.embedded == 5
        assert provider.batch_calls == 3


class TestRetryPolicy:

    @pytest.mark.asyncio
    async def test_single_transient_failure_is_retried(self, session_factory, add_event):
        await _seed(add_event, 2)
        provider = ScriptedEmbeddingProvider([TransientProviderError("model loading")])

        result = await _pipeline(provider, session_factory).run()

        assert not result.aborted
        assert result.embedded == 2
        assert provider.batch_calls == 2

    @pytest.mark.asyncio
    async def test_second_transient_failure_aborts_run(self, session_factory, add_event):
        await _seed(add_event, 2)
        provider = ScriptedEmbeddingProvider([TransientProviderError("loading"), TransientProviderError("still loading")])

        result = await _pipeline(provider, session_factory).run()

        assert result.aborted
        assert provider.batch_calls == 2
        assert await _stored(session_factory) == {}

    @pytest.mark.asyncio
    async def test_abort_stops_remaining_chunks(self, session_factory, add_event):
        await _seed(add_event, 6)
        provider = ScriptedEmbeddingProvider(
            [None, TransientProviderError("a"), TransientProviderError("b")], max_batch_size=2
        )

        result = await _pipeline(provider, session_factory).run()

        assert result.aborted
        # chunk 1 ok, chunk 2 failed twice, chunk 3 never attempted
        assert provider.batch_calls == 3
        assert await _stored(session_factory) == {}

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, session_factory, add_event):
        await _seed(add_event, 2)
        provider = ScriptedEmbeddingProvider([PermanentProviderError("401 invalid token")])

        result = await _pipeline(provider, session_factory).run()

        assert result.aborted
        assert provider.batch_calls == 1
        assert await _stored(session_factory) == {}

    @pytest.mark.asyncio
    async def test_timeout_counts_as_transient(self, session_factory, add_event):
        await _seed(add_event, 1)
        provider = ScriptedEmbeddingProvider([1.0])

        result = await _pipeline(provider, session_factory, call_timeout=0.05).run()

        assert not result.aborted
        assert result.embedded == 1
        assert provider.batch_calls == 2

    @pytest.mark.asyncio
    async def test_two_timeouts_abort(self, session_factory, add_event):
        await _seed(add_event, 1)
        provider = ScriptedEmbeddingProvider([1.0, 1.0])

        result = await _pipeline(provider, session_factory, call_timeout=0.05).run()

        assert result.aborted
        assert await _stored(session_factory) == {}

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_ends_run_cleanly(self, session_factory, add_event):
        await _seed(add_event, 1)
        provider = ScriptedEmbeddingProvider([KeyError("data")])

        result = await _pipeline(provider, session_factory).run()

        assert result.aborted
        assert provider.batch_calls == 1

    @pytest.mark.asyncio
    async def test_next_run_picks_up_aborted_backlog(self, session_factory, add_event):
        events = await _seed(add_event, 3)
        provider = ScriptedEmbeddingProvider([PermanentProviderError("bad key")])
        pipeline = _pipeline(provider, session_factory)

        assert (await pipeline.run()).aborted
        result = await pipeline.run()

        assert result.embedded == 3
        assert set(await _stored(session_factory)) == {e.id for e in events}


class TestPersist:

    @pytest.mark.asyncio
    async def test_upsert_overwrites_existing_vector(self, session_factory, add_event, mock_provider):
        event = await add_event(uuid.uuid4(), "x", embedding=vec(1.0))
        pipeline = _pipeline(mock_provider, session_factory)

        async with session_factory() as db:
            await pipeline.persist(db, event.id, vec(0.0, 2.0))
            await db.commit()
            await pipeline.persist(db, event.id, vec(0.0, 3.0))
            await db.commit()

        stored = await _stored(session_factory)
        assert len(stored) == 1
        assert list(stored[event.id].embedding[:2]) == [0.0, 3.0]
