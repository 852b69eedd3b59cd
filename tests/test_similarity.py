"""
Unit tests for cosine similarity and the similarity retriever.
"""

from datetime import timedelta

import numpy as np
import pytest

from conftest import DIMENSION, axis, blend
from services.knowledge_engine.SimilarityRetriever import cosine_similarities, cosine_similarity
from shared.errors.engine_errors import DocumentNotFoundError, EmbeddingDimensionError, EmbeddingError, InvalidInputError
from shared.models.knowledge import CompanyResearchEntry, DocumentMetadata, KnowledgeChunk
from shared.models.retrieval import RetrievalOptions


async def ingest(engine, content, vector, owner="owner-1", title=None, tags=None):
    engine.embed.vectors[content] = vector
    return await engine.ingestion.ingest_document(
        content, DocumentMetadata(title=title or content[:20], owner_id=owner, tags=tags or [])
    )


async def add_company(engine, name, vector, expires_in=timedelta(days=7), confidence=0.9):
    now = engine.clock()
    entry = CompanyResearchEntry(
        normalized_key=f"{name.lower()}::::",
        company_name=name,
        description=f"{name} description",
        confidence=confidence,
        embedding=vector,
        created_at=now,
        updated_at=now,
        expires_at=now + expires_in,
    )
    await engine.store.do_upsert_company_entry(entry)
    return entry


class TestCosineSimilarity:
    """Tests for the cosine similarity primitives."""

    def test_identity(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_symmetry(self):
        a, b = [0.3, -1.2, 4.0], [2.0, 0.5, -0.7]
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_orthogonal_and_opposite(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_norm_is_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_dimension_mismatch_raises(self):
        with pytest.raises(EmbeddingDimensionError):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])

    def test_matrix_version_handles_zero_rows(self):
        matrix = np.asarray([[1.0, 0.0], [0.0, 0.0], [0.0, 2.0]])
        scores = cosine_similarities([1.0, 0.0], matrix)
        assert scores.tolist() == pytest.approx([1.0, 0.0, 0.0])


class TestRetrieveChunks:
    """Tests for chunk pool ranking, thresholds and filters."""

    @pytest.mark.asyncio
    async def test_orders_by_similarity_and_truncates(self, engine):
        await ingest(engine, "best match", blend(0, 1, 0.99))
        await ingest(engine, "second match", blend(0, 2, 0.9))
        await ingest(engine, "third match", blend(0, 3, 0.8))
        engine.embed.vectors["the query"] = axis(0)

        result = await engine.retriever.retrieve(
            "the query", "owner-1", RetrievalOptions(match_count=2, similarity_threshold=0.5)
        )

        assert [c.text for c in result.chunks] == ["best match", "second match"]
        assert result.chunks[0].similarity >= result.chunks[1].similarity

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive_and_filters_below(self, engine):
        await ingest(engine, "exactly at threshold", axis(0))
        await ingest(engine, "below threshold", blend(0, 1, 0.5))
        engine.embed.vectors["q"] = axis(0)

        result = await engine.retriever.retrieve("q", "owner-1", RetrievalOptions(similarity_threshold=1.0))

        assert [c.text for c in result.chunks] == ["exactly at threshold"]

    @pytest.mark.asyncio
    async def test_no_near_duplicates_gives_empty_success(self, engine):
        """A strict threshold over an unrelated corpus returns an empty chunk list, not an error."""
        await ingest(engine, "unrelated one", axis(1))
        await ingest(engine, "unrelated two", blend(2, 3, 0.5))
        engine.embed.vectors["query"] = axis(0)

        result = await engine.retriever.retrieve(
            "query", "owner-1", RetrievalOptions(similarity_threshold=0.9, include_company_research=False)
        )

        assert result.chunks == []
        assert result.company_matches == []
        assert result.top_similarity is None

    @pytest.mark.asyncio
    async def test_ties_break_by_newest_then_id(self, engine, clock):
        await ingest(engine, "older twin", axis(0))
        clock.advance(minutes=5)
        await ingest(engine, "newer twin", axis(0))
        engine.embed.vectors["q"] = axis(0)

        result = await engine.retriever.retrieve("q", "owner-1", RetrievalOptions(similarity_threshold=0.5))

        assert [c.text for c in result.chunks] == ["newer twin", "older twin"]

    @pytest.mark.asyncio
    async def test_owner_isolation(self, engine):
        await ingest(engine, "mine", axis(0), owner="owner-1")
        await ingest(engine, "theirs", axis(0), owner="owner-2")
        engine.embed.vectors["q"] = axis(0)

        result = await engine.retriever.retrieve("q", "owner-1", RetrievalOptions(similarity_threshold=0.5))

        assert [c.text for c in result.chunks] == ["mine"]

    @pytest.mark.asyncio
    async def test_filter_tags_match_any(self, engine):
        await ingest(engine, "tagged finance", axis(0), tags=["finance"])
        await ingest(engine, "tagged legal", axis(0), tags=["legal", "contracts"])
        await ingest(engine, "untagged", axis(0))
        engine.embed.vectors["q"] = axis(0)

        result = await engine.retriever.retrieve(
            "q", "owner-1", RetrievalOptions(similarity_threshold=0.5, filter_tags=["contracts", "finance"])
        )

        assert sorted(c.text for c in result.chunks) == ["tagged finance", "tagged legal"]

    @pytest.mark.asyncio
    async def test_chunks_of_unfinished_documents_are_invisible(self, engine):
        document_id = await ingest(engine, "visible", axis(0))
        hidden = KnowledgeChunk(
            document_id="not-a-completed-document",
            owner_id="owner-1",
            chunk_index=0,
            text="hidden",
            embedding=axis(0),
        )
        await engine.store.do_insert_chunks([hidden])
        engine.embed.vectors["q"] = axis(0)

        result = await engine.retriever.retrieve("q", "owner-1", RetrievalOptions(similarity_threshold=0.5))

        assert [c.document_id for c in result.chunks] == [document_id]

    @pytest.mark.asyncio
    async def test_stored_vectors_of_wrong_dimension_are_skipped(self, engine):
        document_id = await ingest(engine, "good", axis(0))
        broken = KnowledgeChunk(
            document_id=document_id,
            owner_id="owner-1",
            chunk_index=1,
            text="broken",
            embedding=[1.0] * (DIMENSION + 2),
        )
        await engine.store.do_insert_chunks([broken])
        engine.embed.vectors["q"] = axis(0)

        result = await engine.retriever.retrieve("q", "owner-1", RetrievalOptions(similarity_threshold=0.5))

        assert [c.text for c in result.chunks] == ["good"]

    @pytest.mark.asyncio
    async def test_match_count_zero_skips_chunk_pool(self, engine):
        await ingest(engine, "anything", axis(0))
        engine.embed.vectors["q"] = axis(0)

        result = await engine.retriever.retrieve(
            "q", "owner-1", RetrievalOptions(match_count=0, include_company_research=False)
        )

        assert result.chunks == []

    @pytest.mark.asyncio
    async def test_embedding_failure_propagates(self, engine):
        engine.embed.fail_on = {"boom"}
        with pytest.raises(EmbeddingError):
            await engine.retriever.retrieve("boom", "owner-1")

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, engine):
        with pytest.raises(InvalidInputError):
            await engine.retriever.retrieve("   ", "owner-1")

    @pytest.mark.asyncio
    async def test_precomputed_vector_skips_embedding(self, engine):
        await ingest(engine, "doc", axis(0))
        calls = len(engine.embed.calls)

        result = await engine.retriever.retrieve(
            "ignored", "owner-1", RetrievalOptions(similarity_threshold=0.5), query_vector=axis(0)
        )

        assert len(engine.embed.calls) == calls
        assert len(result.chunks) == 1

    @pytest.mark.asyncio
    async def test_query_embedding_is_reused_until_expiry(self, engine, clock):
        engine.embed.vectors["q"] = axis(0)
        calls = len(engine.embed.calls)

        first = await engine.retriever.embed_query("q")
        clock.advance(hours=23)
        second = await engine.retriever.embed_query("q")
        other = await engine.retriever.embed_query("Q")
        clock.advance(hours=2)
        engine.embed.vectors["q"] = axis(1)
        renewed = await engine.retriever.embed_query("q")

        assert first == second == axis(0)
        assert renewed == axis(1)
        assert engine.embed.calls[calls:] == [["q"], ["Q"], ["q"]]

    @pytest.mark.asyncio
    async def test_failed_embedding_is_not_cached(self, engine):
        engine.embed.fail_on = {"boom"}
        with pytest.raises(EmbeddingError):
            await engine.retriever.embed_query("boom")

        engine.embed.fail_on = set()
        calls = len(engine.embed.calls)
        await engine.retriever.embed_query("boom")

        assert engine.embed.calls[calls:] == [["boom"]]


class TestRetrieveCompanies:
    """Tests for the company research pool."""

    @pytest.mark.asyncio
    async def test_pools_are_ranked_independently(self, engine):
        await ingest(engine, "chunk a", axis(0))
        await add_company(engine, "Acme", blend(0, 1, 0.7))
        await add_company(engine, "Globex", blend(0, 2, 0.65))
        await add_company(engine, "Initech", blend(0, 3, 0.3))
        engine.embed.vectors["q"] = axis(0)

        result = await engine.retriever.retrieve(
            "q", "owner-1", RetrievalOptions(similarity_threshold=0.9, company_similarity_threshold=0.6)
        )

        assert [c.text for c in result.chunks] == ["chunk a"]
        assert [m.company_name for m in result.company_matches] == ["Acme", "Globex"]
        assert result.total_retrieved == 3

    @pytest.mark.asyncio
    async def test_expired_entries_are_never_matched(self, engine):
        await add_company(engine, "Stale", axis(0), expires_in=timedelta(seconds=-1))
        engine.embed.vectors["q"] = axis(0)

        result = await engine.retriever.retrieve("q", "owner-1", RetrievalOptions(company_similarity_threshold=0.1))

        assert result.company_matches == []

    @pytest.mark.asyncio
    async def test_company_pool_can_be_disabled(self, engine):
        await add_company(engine, "Acme", axis(0))
        engine.embed.vectors["q"] = axis(0)

        result = await engine.retriever.retrieve("q", "owner-1", RetrievalOptions(include_company_research=False))

        assert result.company_matches == []


class TestFindSimilarDocuments:
    """Tests for document-to-document similarity."""

    @pytest.mark.asyncio
    async def test_best_similarity_per_document(self, engine):
        source = await ingest(engine, "source doc", axis(0))
        close = await ingest(engine, "close doc", blend(0, 1, 0.9))
        await ingest(engine, "far doc", blend(0, 2, 0.2))

        similar = await engine.retriever.find_similar_documents(source, "owner-1")

        assert [d.id for d in similar] == [close]
        assert similar[0].similarity == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_foreign_document_is_not_found(self, engine):
        source = await ingest(engine, "source doc", axis(0), owner="owner-2")
        with pytest.raises(DocumentNotFoundError):
            await engine.retriever.find_similar_documents(source, "owner-1")
