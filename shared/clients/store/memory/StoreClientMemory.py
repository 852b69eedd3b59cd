from datetime import datetime

import httpx

from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig
from shared.models.knowledge import (
    ChunkCandidate,
    CompanyResearchEntry,
    DocumentStatus,
    KnowledgeChunk,
    KnowledgeDocument,
    SearchCacheEntry,
    UsageFeedback,
    UsageLogEntry,
)


class StoreClientMemory(StoreClientInterface):
    """In-process store backed by dicts. Records are copied on the way in and out."""

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._documents: dict[str, KnowledgeDocument] = {}
        self._chunks: dict[str, list[KnowledgeChunk]] = {}
        self._companies: dict[str, CompanyResearchEntry] = {}
        self._search_cache: dict[str, SearchCacheEntry] = {}
        self._usage_logs: dict[str, UsageLogEntry] = {}
        self._feedback: list[UsageFeedback] = []

    ##########################################
    ################ GETTER ##################
    ##########################################

    def _get_engine_name(self) -> str:
        return "Memory"

    def _get_required_config(self) -> list[EnvConfig]:
        return []

    def _get_auth_header(self) -> dict:
        return {}

    def _get_base_url(self) -> str:
        return ""

    def _get_endpoint_healthcheck(self) -> str:
        return ""

    ##########################################
    ############### LIFECYCLE ################
    ##########################################

    async def boot(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def do_healthcheck(self) -> httpx.Response:
        return httpx.Response(200, json={"status": "ok"})

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    async def do_insert_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        self._documents[document.id] = document.model_copy(deep=True)
        return document

    async def do_get_document(self, document_id: str, owner_id: str | None = None) -> KnowledgeDocument | None:
        document = self._documents.get(document_id)
        if document is None or (owner_id is not None and document.owner_id != owner_id):
            return None
        return document.model_copy(deep=True)

    async def do_update_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        self._documents[document.id] = document.model_copy(deep=True)
        return document

    async def do_delete_document(self, document_id: str) -> bool:
        self._chunks.pop(document_id, None)
        return self._documents.pop(document_id, None) is not None

    async def do_list_documents(self, owner_id: str) -> list[KnowledgeDocument]:
        documents = [d.model_copy(deep=True) for d in self._documents.values() if d.owner_id == owner_id]
        return sorted(documents, key=lambda d: d.created_at, reverse=True)

    ##########################################
    ################ CHUNKS ##################
    ##########################################

    async def do_insert_chunks(self, chunks: list[KnowledgeChunk]) -> None:
        for chunk in chunks:
            self._chunks.setdefault(chunk.document_id, []).append(chunk.model_copy(deep=True))

    async def do_delete_chunks(self, document_id: str) -> int:
        return len(self._chunks.pop(document_id, []))

    async def do_list_chunks(self, document_id: str) -> list[KnowledgeChunk]:
        chunks = self._chunks.get(document_id, [])
        return sorted((c.model_copy(deep=True) for c in chunks), key=lambda c: c.chunk_index)

    async def do_fetch_chunk_candidates(self, owner_id: str, filter_tags: list[str] | None = None) -> list[ChunkCandidate]:
        candidates: list[ChunkCandidate] = []
        for document in self._documents.values():
            if document.owner_id != owner_id or document.status != DocumentStatus.COMPLETED:
                continue
            if filter_tags and not set(filter_tags) & set(document.tags):
                continue
            for chunk in self._chunks.get(document.id, []):
                candidates.append(
                    ChunkCandidate(
                        chunk=chunk,
                        document_title=document.title,
                        document_tags=list(document.tags),
                        source_url=document.source_url,
                    )
                )
        return candidates

    async def do_count_chunks(self, owner_id: str) -> dict[str, int]:
        return {
            document_id: len(chunks)
            for document_id, chunks in self._chunks.items()
            if document_id in self._documents and self._documents[document_id].owner_id == owner_id
        }

    ##########################################
    ########### COMPANY RESEARCH #############
    ##########################################

    async def do_upsert_company_entry(self, entry: CompanyResearchEntry) -> CompanyResearchEntry:
        self._companies[entry.id] = entry.model_copy(deep=True)
        return entry

    async def do_list_company_entries(
        self, normalized_key: str | None = None, active_at: datetime | None = None
    ) -> list[CompanyResearchEntry]:
        entries = []
        for entry in self._companies.values():
            if normalized_key is not None and entry.normalized_key != normalized_key:
                continue
            if active_at is not None and not entry.is_active(active_at):
                continue
            entries.append(entry.model_copy(deep=True))
        return entries

    ##########################################
    ############# SEARCH CACHE ###############
    ##########################################

    async def do_get_search_cache(self, cache_key: str) -> SearchCacheEntry | None:
        entry = self._search_cache.get(cache_key)
        return entry.model_copy(deep=True) if entry else None

    async def do_put_search_cache(self, entry: SearchCacheEntry) -> None:
        self._search_cache[entry.cache_key] = entry.model_copy(deep=True)

    async def do_delete_search_cache_expired(self, now: datetime) -> int:
        expired = [key for key, entry in self._search_cache.items() if entry.expires_at <= now]
        for key in expired:
            del self._search_cache[key]
        return len(expired)

    async def do_delete_search_cache_for_owner(self, owner_id: str) -> int:
        owned = [key for key, entry in self._search_cache.items() if entry.owner_id == owner_id]
        for key in owned:
            del self._search_cache[key]
        return len(owned)

    ##########################################
    ################ USAGE ###################
    ##########################################

    async def do_insert_usage_log(self, entry: UsageLogEntry) -> None:
        self._usage_logs[entry.id] = entry.model_copy(deep=True)

    async def do_get_usage_log(self, usage_id: str) -> UsageLogEntry | None:
        entry = self._usage_logs.get(usage_id)
        return entry.model_copy(deep=True) if entry else None

    async def do_list_usage_logs(self, owner_id: str, since: datetime | None = None) -> list[UsageLogEntry]:
        logs = [
            e.model_copy(deep=True)
            for e in self._usage_logs.values()
            if e.owner_id == owner_id and (since is None or e.created_at >= since)
        ]
        return sorted(logs, key=lambda e: e.created_at, reverse=True)

    async def do_delete_usage_logs_before(self, cutoff: datetime) -> int:
        old = [usage_id for usage_id, e in self._usage_logs.items() if e.created_at < cutoff]
        for usage_id in old:
            del self._usage_logs[usage_id]
        return len(old)

    async def do_insert_feedback(self, feedback: UsageFeedback) -> None:
        self._feedback.append(feedback.model_copy(deep=True))

    async def do_list_feedback(self, owner_id: str, since: datetime | None = None) -> list[UsageFeedback]:
        return [
            f.model_copy(deep=True)
            for f in self._feedback
            if f.owner_id == owner_id and (since is None or f.created_at >= since)
        ]
