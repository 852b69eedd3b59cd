"""Ingestion pipeline.

Turns a document into overlapping, embedded chunks. A document is claimed
through a status compare-and-set (pending|failed -> processing) before any
chunk is written; every failure after the claim deletes the chunks written so
far and marks the document failed, so a document is either fully searchable
or not searchable at all.
"""

from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta

from services.knowledge_engine.Chunker import split_text
from services.knowledge_engine.CompanyResearchCache import normalize_company_key
from services.knowledge_engine.QueryCache import QueryCache
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.errors.engine_errors import (
    DocumentBusyError,
    DocumentNotFoundError,
    InvalidInputError,
    KnowledgeEngineError,
)
from shared.helper.HelperConfig import HelperConfig
from shared.models.knowledge import (
    CompanyProfile,
    CompanyResearchEntry,
    DocumentListResult,
    DocumentMetadata,
    DocumentStatus,
    KnowledgeBaseStats,
    KnowledgeChunk,
    KnowledgeDocument,
    ProcessingStatus,
    RecentUpload,
    TagCount,
    utc_now,
)

CLAIMABLE_STATUSES = {DocumentStatus.PENDING, DocumentStatus.FAILED}


class IngestionService:
    def __init__(
        self,
        helper_config: HelperConfig,
        store_client: StoreClientInterface,
        embed_client: EmbedClientInterface,
        query_cache: QueryCache | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._store = store_client
        self._embed_client = embed_client
        self._query_cache = query_cache
        self._clock = clock

        self.chunk_size = int(helper_config.get_number_val("CHUNK_SIZE", default=500))
        self.chunk_overlap = int(helper_config.get_number_val("CHUNK_OVERLAP", default=50))
        self.embed_batch_size = max(1, int(helper_config.get_number_val("EMBED_BATCH_SIZE", default=32)))
        self.company_ttl = timedelta(days=helper_config.get_number_val("COMPANY_CACHE_TTL_DAYS", default=7))
        self.usage_retention_days = int(helper_config.get_number_val("USAGE_RETENTION_DAYS", default=90))

    ##########################################
    ############### INGESTION ################
    ##########################################

    async def ingest_document(self, content: str, metadata: DocumentMetadata) -> str:
        """Chunk, embed and persist a document.

        With ``metadata.document_id`` set the call is idempotent: a completed document is
        returned unchanged, a pending or failed one is processed again from scratch.

        Args:
            content (str): The full document text.
            metadata (DocumentMetadata): Title, owner and descriptive fields.

        Returns:
            str: The document id.

        Raises:
            InvalidInputError: If title, owner or content are empty.
            DocumentBusyError: If the document is being processed by another call.
            EmbeddingError: If the embedding backend fails; the document is marked failed.
            StorageError: If the store fails; the document is marked failed where possible.
        """
        if not metadata.title or not metadata.title.strip():
            raise InvalidInputError("Document title must not be empty.")
        if not metadata.owner_id or not metadata.owner_id.strip():
            raise InvalidInputError("Document owner_id must not be empty.")
        # validates the content and chunk settings before anything is persisted
        split_text(content, self.chunk_size, self.chunk_overlap)

        document = None
        if metadata.document_id:
            document = await self._store.do_get_document(metadata.document_id)
            if document is not None and document.owner_id != metadata.owner_id:
                raise InvalidInputError(f"Document id '{metadata.document_id}' is already in use.")
        if document is not None:
            if document.status == DocumentStatus.COMPLETED:
                self.logging.info("Document %s already completed, skipping ingestion", document.id)
                return document.id
            if document.status == DocumentStatus.PROCESSING:
                raise DocumentBusyError(f"Document {document.id} is already being processed.")
        else:
            now = self._clock()
            document = KnowledgeDocument(
                content=content,
                created_at=now,
                updated_at=now,
                **self._metadata_fields(metadata),
                **({"id": metadata.document_id} if metadata.document_id else {}),
            )
            if await self._store.do_create_document(document) is None:
                raise DocumentBusyError(f"Document {document.id} is being created by another call.")
            self.logging.info("Created document %s '%s' for owner %s", document.id, document.title, document.owner_id)

        # metadata is written together with the claim
        await self._process(document.id, content, **self._metadata_fields(metadata))
        return document.id

    async def reprocess_document(self, document_id: str, owner_id: str) -> str:
        """Run the pipeline again for a pending or failed document using its stored content.

        Raises:
            DocumentNotFoundError: If the document does not exist for the owner.
            DocumentBusyError: If the document is currently processing.
        """
        document = await self.get_document(document_id, owner_id)
        if document.status == DocumentStatus.PROCESSING:
            raise DocumentBusyError(f"Document {document_id} is already being processed.")
        if document.status == DocumentStatus.COMPLETED:
            # back to pending so the claim below succeeds
            await self._store.do_transition_document_status(
                document_id, {DocumentStatus.COMPLETED}, DocumentStatus.PENDING
            )
        await self._process(document_id, document.content)
        return document_id

    async def _process(self, document_id: str, content: str, **changes) -> None:
        now = self._clock()
        claimed = await self._store.do_transition_document_status(
            document_id,
            CLAIMABLE_STATUSES,
            DocumentStatus.PROCESSING,
            **changes,
            content=content,
            error_message=None,
            chunk_count=0,
            processing_started_at=now,
            processing_completed_at=None,
            updated_at=now,
        )
        if claimed is None:
            raise DocumentBusyError(f"Document {document_id} could not be claimed for processing.")

        try:
            # leftovers of an interrupted run
            await self._store.do_delete_chunks(document_id)
            chunks = await self._build_chunks(claimed, content)
            await self._store.do_insert_chunks(chunks)
            finished = self._clock()
            await self._store.do_transition_document_status(
                document_id,
                {DocumentStatus.PROCESSING},
                DocumentStatus.COMPLETED,
                chunk_count=len(chunks),
                processing_completed_at=finished,
                updated_at=finished,
            )
        except Exception as exc:
            await self._rollback(claimed, exc)
            raise

        self.logging.info("Document %s processed into %d chunks", document_id, len(chunks))
        await self._invalidate_cache(claimed.owner_id)

    async def _build_chunks(self, document: KnowledgeDocument, content: str) -> list[KnowledgeChunk]:
        texts = list(split_text(content, self.chunk_size, self.chunk_overlap))
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.embed_batch_size):
            batch = texts[start:start + self.embed_batch_size]
            vectors.extend(await self._embed_client.do_embed(batch))
            self.logging.debug(
                "Embedded chunks %d-%d of %d for document %s",
                start + 1, start + len(batch), len(texts), document.id,
            )

        now = self._clock()
        return [
            KnowledgeChunk(
                document_id=document.id,
                owner_id=document.owner_id,
                chunk_index=index,
                text=text,
                embedding=vector,
                created_at=now,
                metadata={
                    "word_count": len(text.split()),
                    "char_count": len(text),
                    "document_title": document.title,
                    "document_tags": list(document.tags),
                    "source_url": document.source_url,
                },
            )
            for index, (text, vector) in enumerate(zip(texts, vectors))
        ]

    async def _rollback(self, document: KnowledgeDocument, exc: Exception) -> None:
        reason = str(exc) or exc.__class__.__name__
        self.logging.error("Processing document %s failed: %s", document.id, reason)
        try:
            await self._store.do_delete_chunks(document.id)
            await self._store.do_transition_document_status(
                document.id,
                {DocumentStatus.PROCESSING},
                DocumentStatus.FAILED,
                error_message=reason,
                chunk_count=0,
                updated_at=self._clock(),
            )
        except KnowledgeEngineError as rollback_exc:
            self.logging.error("Rolling back document %s failed: %s", document.id, rollback_exc)

    @staticmethod
    def _metadata_fields(metadata: DocumentMetadata) -> dict:
        return {
            "owner_id": metadata.owner_id,
            "title": metadata.title.strip(),
            "source_url": metadata.source_url,
            "file_type": metadata.file_type,
            "file_size": metadata.file_size,
            "tags": metadata.tags,
        }

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    async def get_document(self, document_id: str, owner_id: str) -> KnowledgeDocument:
        """Raises DocumentNotFoundError for missing documents and documents of other owners alike."""
        document = await self._store.do_get_document(document_id, owner_id=owner_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found.")
        return document

    async def get_processing_status(self, document_id: str, owner_id: str) -> ProcessingStatus:
        document = await self.get_document(document_id, owner_id)
        return ProcessingStatus(
            document_id=document.id,
            status=document.status,
            error_message=document.error_message,
            chunk_count=document.chunk_count,
            processing_started_at=document.processing_started_at,
            processing_completed_at=document.processing_completed_at,
        )

    async def list_documents(
        self,
        owner_id: str,
        limit: int = 50,
        offset: int = 0,
        tags: list[str] | None = None,
        search: str | None = None,
    ) -> DocumentListResult:
        """List an owner's documents newest first.

        Args:
            owner_id (str): The owner.
            limit (int): Page size.
            offset (int): Number of documents to skip.
            tags (list[str] | None): Keep documents carrying any of these tags.
            search (str | None): Case-insensitive substring to match in the title.

        Returns:
            DocumentListResult: The page and the total number of matching documents.
        """
        if limit < 0 or offset < 0:
            raise InvalidInputError("limit and offset must not be negative.")
        documents = await self._store.do_list_documents(owner_id)
        if tags:
            wanted = set(tags)
            documents = [d for d in documents if wanted & set(d.tags)]
        if search:
            needle = search.casefold()
            documents = [d for d in documents if needle in d.title.casefold()]
        documents.sort(key=lambda d: d.id)
        documents.sort(key=lambda d: d.created_at, reverse=True)
        return DocumentListResult(documents=documents[offset:offset + limit], total=len(documents))

    async def search_documents_by_text(
        self, owner_id: str, query: str = "", limit: int = 10, tags: list[str] | None = None
    ) -> list[KnowledgeDocument]:
        """Keyword search over an owner's documents, newest first.

        A document matches if ``query`` occurs case-insensitively in its title or content
        and it carries every tag in ``tags``. An empty query matches every document.
        """
        if not owner_id or not owner_id.strip():
            raise InvalidInputError("owner_id must not be empty.")
        if limit <= 0:
            raise InvalidInputError("limit must be positive.")
        documents = await self._store.do_list_documents(owner_id)
        if tags:
            wanted = set(tags)
            documents = [d for d in documents if wanted <= set(d.tags)]
        needle = (query or "").strip().casefold()
        if needle:
            documents = [d for d in documents if needle in d.title.casefold() or needle in d.content.casefold()]
        documents.sort(key=lambda d: d.id)
        documents.sort(key=lambda d: d.created_at, reverse=True)
        return documents[:limit]

    async def update_document(
        self,
        document_id: str,
        owner_id: str,
        title: str | None = None,
        tags: list[str] | None = None,
    ) -> KnowledgeDocument:
        """Change title and/or tags of a document. Content changes go through re-ingestion."""
        document = await self.get_document(document_id, owner_id)
        changes: dict = {"updated_at": self._clock()}
        if title is not None:
            if not title.strip():
                raise InvalidInputError("Document title must not be empty.")
            changes["title"] = title.strip()
        if tags is not None:
            changes["tags"] = DocumentMetadata(title="-", owner_id=owner_id, tags=tags).tags
        # status unchanged, the transition only guards against a concurrent claim
        updated = await self._store.do_transition_document_status(document_id, {document.status}, document.status, **changes)
        if updated is None:
            raise DocumentBusyError(f"Document {document_id} changed status during the update, try again.")
        await self._invalidate_cache(owner_id)
        return updated

    async def delete_document(self, document_id: str, owner_id: str) -> None:
        """Delete a document and its chunks.

        Raises:
            DocumentNotFoundError: If the document does not exist for the owner.
            DocumentBusyError: If the document is currently processing.
        """
        document = await self.get_document(document_id, owner_id)
        if document.status == DocumentStatus.PROCESSING:
            raise DocumentBusyError(f"Document {document_id} is being processed and cannot be deleted.")
        await self._store.do_delete_document(document_id)
        self.logging.info("Deleted document %s of owner %s", document_id, owner_id)
        await self._invalidate_cache(owner_id)

    async def _invalidate_cache(self, owner_id: str) -> None:
        if self._query_cache is None:
            return
        try:
            await self._query_cache.invalidate_owner(owner_id)
        except KnowledgeEngineError as exc:
            self.logging.warning("Query cache invalidation for owner %s failed: %s", owner_id, exc)

    ##########################################
    ############### STATISTICS ###############
    ##########################################

    async def get_knowledge_base_stats(self, owner_id: str) -> KnowledgeBaseStats:
        """Aggregate counts and sizes over an owner's documents. Read-only."""
        documents = await self._store.do_list_documents(owner_id)
        if not documents:
            return KnowledgeBaseStats()
        chunk_counts = await self._store.do_count_chunks(owner_id)

        total_chunks = sum(chunk_counts.values())
        total_size = sum(
            d.file_size if d.file_size is not None else len(d.content.encode("utf-8")) for d in documents
        )
        tag_counter = Counter(tag for d in documents for tag in d.tags)
        status_counter = Counter(d.status.value for d in documents)
        newest = sorted(documents, key=lambda d: (d.created_at, d.id), reverse=True)[:5]

        return KnowledgeBaseStats(
            total_documents=len(documents),
            total_chunks=total_chunks,
            total_size_bytes=total_size,
            avg_chunks_per_document=round(total_chunks / len(documents), 2),
            documents_by_status=dict(status_counter),
            tag_counts=dict(tag_counter),
            most_common_tags=[
                TagCount(tag=tag, count=count)
                for tag, count in sorted(tag_counter.items(), key=lambda item: (-item[1], item[0]))[:10]
            ],
            recent_uploads=[RecentUpload(id=d.id, title=d.title, created_at=d.created_at) for d in newest],
        )

    async def cleanup_old_usage_logs(self, days_to_keep: int | None = None) -> int:
        """Delete usage logs older than ``days_to_keep`` days (default USAGE_RETENTION_DAYS)."""
        days = self.usage_retention_days if days_to_keep is None else days_to_keep
        if days < 0:
            raise InvalidInputError("days_to_keep must not be negative.")
        deleted = await self._store.do_delete_usage_logs_before(self._clock() - timedelta(days=days))
        self.logging.info("Deleted %d usage logs older than %d days", deleted, days)
        return deleted

    ##########################################
    ############ COMPANY RESEARCH ############
    ##########################################

    async def ingest_company_research(self, profile: CompanyProfile) -> str:
        """Embed and cache a company profile, replacing any entry under the same key.

        Returns:
            str: The id of the stored entry.

        Raises:
            InvalidInputError: If the company name is empty or the expiry lies in the past.
            EmbeddingError: If the profile cannot be embedded.
        """
        key = normalize_company_key(profile.company_name, profile.industry, profile.location)
        now = self._clock()
        expires_at = profile.expires_at or now + self.company_ttl
        if expires_at <= now:
            raise InvalidInputError("Company research expiry must lie in the future.")

        text = " ".join(part for part in (profile.company_name, profile.description, profile.industry) if part)
        embedding = (await self._embed_client.do_embed([text]))[0]

        existing = await self._store.do_list_company_entries(normalized_key=key, active_at=now)
        existing.sort(key=lambda e: (e.expires_at, e.updated_at), reverse=True)
        entry = CompanyResearchEntry(
            normalized_key=key,
            embedding=embedding,
            created_at=existing[0].created_at if existing else now,
            updated_at=now,
            expires_at=expires_at,
            **profile.model_dump(exclude={"expires_at"}),
            **({"id": existing[0].id} if existing else {}),
        )
        await self._store.do_upsert_company_entry(entry)
        # retire duplicates so one active entry remains per key
        for stale in existing[1:]:
            await self._store.do_upsert_company_entry(stale.model_copy(update={"expires_at": now, "updated_at": now}))
        self.logging.info("Cached company research '%s' until %s", key, expires_at.isoformat())
        return entry.id
