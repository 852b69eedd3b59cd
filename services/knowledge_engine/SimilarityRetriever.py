"""Linear cosine-similarity scan over an owner's chunks and the company research cache."""

import hashlib
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import TypeVar

import numpy as np

from services.knowledge_engine.CompanyResearchCache import CompanyResearchCache
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.errors.engine_errors import DocumentNotFoundError, EmbeddingDimensionError, InvalidInputError
from shared.helper.HelperConfig import HelperConfig
from shared.models.knowledge import utc_now
from shared.models.retrieval import (
    ChunkMatch,
    CompanyMatch,
    RetrievalOptions,
    RetrievalResult,
    SimilarDocument,
)

SIMILAR_DOCUMENT_THRESHOLD = 0.5

T = TypeVar("T")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|), or 0.0 when either norm is zero."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise EmbeddingDimensionError(f"Cannot compare vectors of dimension {va.size} and {vb.size}.")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``. Zero-norm rows score 0."""
    q = np.asarray(query, dtype=np.float64)
    if matrix.size == 0:
        return np.zeros(0)
    denom = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    return np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)


def rank(
    items: list[T],
    vectors: list[list[float]],
    query_vector: Sequence[float],
    threshold: float,
    limit: int,
    created_at: Callable[[T], datetime],
    item_id: Callable[[T], str],
) -> list[tuple[T, float]]:
    """Score, filter and order candidates of one pool.

    Keeps scores >= threshold, orders by score desc, then created_at desc, then id,
    and truncates to ``limit``.
    """
    if not items or limit <= 0:
        return []
    scores = cosine_similarities(query_vector, np.asarray(vectors, dtype=np.float64))
    kept = [(item, float(score)) for item, score in zip(items, scores) if score >= threshold]
    kept.sort(key=lambda pair: item_id(pair[0]))
    kept.sort(key=lambda pair: (pair[1], created_at(pair[0])), reverse=True)
    return kept[:limit]


class SimilarityRetriever:
    def __init__(
        self,
        helper_config: HelperConfig,
        store_client: StoreClientInterface,
        embed_client: EmbedClientInterface,
        company_cache: CompanyResearchCache,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._store = store_client
        self._embed_client = embed_client
        self._company_cache = company_cache
        self._clock = clock
        self.embed_dimension = int(helper_config.get_number_val("EMBED_DIMENSION", default=768))
        self.embedding_ttl = timedelta(seconds=helper_config.get_number_val("EMBED_CACHE_TTL_SECONDS", default=86400))
        self.embedding_cache_size = int(helper_config.get_number_val("EMBED_CACHE_MAX_ENTRIES", default=1000))
        # text hash -> (vector, expires_at), oldest first
        self._embeddings: dict[str, tuple[list[float], datetime]] = {}

    ##########################################
    ################ CORE ####################
    ##########################################

    async def embed_query(self, query: str) -> list[float]:
        """Embed a query, reusing the vector of the same text for EMBED_CACHE_TTL_SECONDS."""
        if not query or not query.strip():
            raise InvalidInputError("Query must not be empty.")
        key = hashlib.sha256(query.encode("utf-8")).hexdigest()
        now = self._clock()
        cached = self._embeddings.get(key)
        if cached is not None and cached[1] > now:
            return cached[0]
        vector = (await self._embed_client.do_embed([query]))[0]
        self._embeddings.pop(key, None)
        self._embeddings[key] = (vector, now + self.embedding_ttl)
        while len(self._embeddings) > self.embedding_cache_size:
            del self._embeddings[next(iter(self._embeddings))]
        return vector

    async def retrieve(
        self,
        query: str,
        owner_id: str,
        options: RetrievalOptions | None = None,
        query_vector: list[float] | None = None,
    ) -> RetrievalResult:
        """Rank the owner's chunks and the active company entries against the query.

        Args:
            query (str): The query text. Ignored for embedding when ``query_vector`` is given.
            owner_id (str): Only this owner's chunks are considered.
            options (RetrievalOptions | None): Counts and thresholds per pool.
            query_vector (list[float] | None): Precomputed query embedding.

        Returns:
            RetrievalResult: Both pools, each ranked and truncated independently. Empty pools are success.

        Raises:
            InvalidInputError: If query or owner are empty.
            EmbeddingError: If the query cannot be embedded.
            StorageError: If candidates cannot be read.
        """
        options = options or RetrievalOptions()
        if not owner_id or not owner_id.strip():
            raise InvalidInputError("owner_id must not be empty.")
        if query_vector is None:
            query_vector = await self.embed_query(query)
        if len(query_vector) != self.embed_dimension:
            raise EmbeddingDimensionError(
                f"Query embedding has dimension {len(query_vector)}, expected {self.embed_dimension}."
            )

        chunks: list[ChunkMatch] = []
        if options.match_count > 0:
            chunks = await self._retrieve_chunks(query_vector, owner_id, options)

        company_matches: list[CompanyMatch] = []
        if options.include_company_research and options.company_match_count > 0:
            company_matches = await self._retrieve_companies(query_vector, options)

        self.logging.debug(
            "Retrieved %d chunks and %d company matches for owner %s",
            len(chunks), len(company_matches), owner_id,
        )
        return RetrievalResult(chunks=chunks, company_matches=company_matches)

    async def _retrieve_chunks(self, query_vector: list[float], owner_id: str, options: RetrievalOptions) -> list[ChunkMatch]:
        candidates = await self._store.do_fetch_chunk_candidates(owner_id, options.filter_tags)
        candidates = self._valid_dimension(candidates, lambda c: c.chunk.embedding, lambda c: c.chunk.id)
        ranked = rank(
            candidates,
            [c.chunk.embedding for c in candidates],
            query_vector,
            options.similarity_threshold,
            options.match_count,
            created_at=lambda c: c.chunk.created_at,
            item_id=lambda c: c.chunk.id,
        )
        return [
            ChunkMatch(
                id=candidate.chunk.id,
                document_id=candidate.chunk.document_id,
                chunk_index=candidate.chunk.chunk_index,
                text=candidate.chunk.text,
                similarity=similarity,
                document_title=candidate.document_title,
                document_tags=candidate.document_tags,
                source_url=candidate.source_url,
                created_at=candidate.chunk.created_at,
                metadata=candidate.chunk.metadata,
            )
            for candidate, similarity in ranked
        ]

    async def _retrieve_companies(self, query_vector: list[float], options: RetrievalOptions) -> list[CompanyMatch]:
        entries = await self._company_cache.active_entries()
        entries = self._valid_dimension(entries, lambda e: e.embedding, lambda e: e.id)
        ranked = rank(
            entries,
            [e.embedding for e in entries],
            query_vector,
            options.company_similarity_threshold,
            options.company_match_count,
            created_at=lambda e: e.created_at,
            item_id=lambda e: e.id,
        )
        return [
            CompanyMatch(
                id=entry.id,
                normalized_key=entry.normalized_key,
                company_name=entry.company_name,
                description=entry.description,
                industry=entry.industry,
                location=entry.location,
                confidence=entry.confidence,
                similarity=similarity,
                research_data=entry.research_data,
                created_at=entry.created_at,
                expires_at=entry.expires_at,
            )
            for entry, similarity in ranked
        ]

    def _valid_dimension(self, items: list[T], vector_of, id_of) -> list[T]:
        valid = []
        for item in items:
            if len(vector_of(item)) != self.embed_dimension:
                self.logging.error(
                    "Skipping stored vector %s with dimension %d, expected %d",
                    id_of(item), len(vector_of(item)), self.embed_dimension,
                )
                continue
            valid.append(item)
        return valid

    ##########################################
    ########### SIMILAR DOCUMENTS ############
    ##########################################

    async def find_similar_documents(self, document_id: str, owner_id: str, limit: int = 5) -> list[SimilarDocument]:
        """Find the owner's documents closest to a document, using its first chunk as the query.

        Returns the best chunk similarity per other document, at least 0.5, highest first.
        A document without chunks yields an empty list.
        """
        if await self._store.do_get_document(document_id, owner_id=owner_id) is None:
            raise DocumentNotFoundError(f"Document {document_id} not found.")
        chunks = await self._store.do_list_chunks(document_id)
        if not chunks or limit <= 0:
            return []
        query_vector = chunks[0].embedding

        candidates = [
            c for c in await self._store.do_fetch_chunk_candidates(owner_id)
            if c.chunk.document_id != document_id
        ]
        candidates = self._valid_dimension(candidates, lambda c: c.chunk.embedding, lambda c: c.chunk.id)
        if not candidates:
            return []
        scores = cosine_similarities(query_vector, np.asarray([c.chunk.embedding for c in candidates], dtype=np.float64))

        best: dict[str, SimilarDocument] = {}
        for candidate, score in zip(candidates, scores):
            score = float(score)
            if score < SIMILAR_DOCUMENT_THRESHOLD:
                continue
            current = best.get(candidate.chunk.document_id)
            if current is None or score > current.similarity:
                best[candidate.chunk.document_id] = SimilarDocument(
                    id=candidate.chunk.document_id,
                    title=candidate.document_title,
                    tags=candidate.document_tags,
                    similarity=score,
                )
        return sorted(best.values(), key=lambda d: (-d.similarity, d.id))[:limit]
