import asyncio
from abc import abstractmethod
from datetime import datetime

from shared.clients.ClientInterface import ClientInterface
from shared.errors.engine_errors import StorageError
from shared.helper.HelperConfig import HelperConfig
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


class StoreClientInterface(ClientInterface):
    """Persistence contract for documents, chunks, company research, the query cache and usage logs.

    Every read that returns documents or chunks is scoped by ``owner_id`` where the
    caller supplies one. Implementations raise StorageError on backend failures.
    """

    request_error_class = StorageError

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.embed_dimension = int(helper_config.get_number_val("EMBED_DIMENSION", default=768))
        # serialises status compare-and-set within this process
        self._status_lock = asyncio.Lock()

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        return "store"

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    @abstractmethod
    async def do_insert_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        """Persist a new document record."""
        pass

    async def do_create_document(self, document: KnowledgeDocument) -> KnowledgeDocument | None:
        """Insert ``document`` unless a document with its id already exists.

        Runs under the same lock as the status transitions.

        Returns:
            KnowledgeDocument | None: The inserted document, or None if the id is taken.
        """
        async with self._status_lock:
            if await self.do_get_document(document.id) is not None:
                return None
            return await self.do_insert_document(document)

    @abstractmethod
    async def do_get_document(self, document_id: str, owner_id: str | None = None) -> KnowledgeDocument | None:
        """Return the document, or None if absent or not owned by ``owner_id``."""
        pass

    @abstractmethod
    async def do_update_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        """Replace the stored record of an existing document."""
        pass

    async def do_transition_document_status(
        self,
        document_id: str,
        from_statuses: set[DocumentStatus],
        to_status: DocumentStatus,
        **changes,
    ) -> KnowledgeDocument | None:
        """Atomically move a document to ``to_status`` if its current status is allowed.

        Args:
            document_id (str): The document to transition.
            from_statuses (set[DocumentStatus]): Statuses the document may currently have.
            to_status (DocumentStatus): The target status.
            **changes: Further fields to set on the document together with the status.

        Returns:
            KnowledgeDocument | None: The updated document, or None if it does not exist
                or its current status is not in ``from_statuses``.
        """
        async with self._status_lock:
            document = await self.do_get_document(document_id)
            if document is None or document.status not in from_statuses:
                return None
            updated = document.model_copy(update={"status": to_status, **changes})
            return await self.do_update_document(updated)

    @abstractmethod
    async def do_delete_document(self, document_id: str) -> bool:
        """Delete the document and all of its chunks. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def do_list_documents(self, owner_id: str) -> list[KnowledgeDocument]:
        """Return all documents of an owner, newest first."""
        pass

    ##########################################
    ################ CHUNKS ##################
    ##########################################

    @abstractmethod
    async def do_insert_chunks(self, chunks: list[KnowledgeChunk]) -> None:
        pass

    @abstractmethod
    async def do_delete_chunks(self, document_id: str) -> int:
        """Delete every chunk of a document and return how many were removed."""
        pass

    @abstractmethod
    async def do_list_chunks(self, document_id: str) -> list[KnowledgeChunk]:
        """Return the chunks of a document ordered by chunk_index."""
        pass

    @abstractmethod
    async def do_fetch_chunk_candidates(self, owner_id: str, filter_tags: list[str] | None = None) -> list[ChunkCandidate]:
        """Return the searchable chunks of an owner.

        Only chunks of completed documents are returned. With ``filter_tags`` a document
        must carry at least one of the tags.
        """
        pass

    @abstractmethod
    async def do_count_chunks(self, owner_id: str) -> dict[str, int]:
        """Return the number of chunks per document id for an owner."""
        pass

    ##########################################
    ########### COMPANY RESEARCH #############
    ##########################################

    @abstractmethod
    async def do_upsert_company_entry(self, entry: CompanyResearchEntry) -> CompanyResearchEntry:
        """Insert a company entry or replace the one with the same id."""
        pass

    @abstractmethod
    async def do_list_company_entries(
        self, normalized_key: str | None = None, active_at: datetime | None = None
    ) -> list[CompanyResearchEntry]:
        """Return company entries, optionally restricted to a key and to entries unexpired at ``active_at``."""
        pass

    ##########################################
    ############# SEARCH CACHE ###############
    ##########################################

    @abstractmethod
    async def do_get_search_cache(self, cache_key: str) -> SearchCacheEntry | None:
        pass

    @abstractmethod
    async def do_put_search_cache(self, entry: SearchCacheEntry) -> None:
        pass

    @abstractmethod
    async def do_delete_search_cache_expired(self, now: datetime) -> int:
        """Delete every cache entry with ``expires_at`` at or before ``now``."""
        pass

    @abstractmethod
    async def do_delete_search_cache_for_owner(self, owner_id: str) -> int:
        pass

    ##########################################
    ################ USAGE ###################
    ##########################################

    @abstractmethod
    async def do_insert_usage_log(self, entry: UsageLogEntry) -> None:
        pass

    @abstractmethod
    async def do_get_usage_log(self, usage_id: str) -> UsageLogEntry | None:
        pass

    @abstractmethod
    async def do_list_usage_logs(self, owner_id: str, since: datetime | None = None) -> list[UsageLogEntry]:
        """Return an owner's usage logs created at or after ``since``, newest first."""
        pass

    @abstractmethod
    async def do_delete_usage_logs_before(self, cutoff: datetime) -> int:
        pass

    @abstractmethod
    async def do_insert_feedback(self, feedback: UsageFeedback) -> None:
        pass

    @abstractmethod
    async def do_list_feedback(self, owner_id: str, since: datetime | None = None) -> list[UsageFeedback]:
        pass

    ##########################################
    ############### LIFECYCLE ################
    ##########################################

    async def do_prepare(self) -> None:
        """Create any backend structures the store needs. No-op by default."""
        return None
