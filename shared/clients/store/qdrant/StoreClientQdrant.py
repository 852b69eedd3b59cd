import json
import math
import uuid
from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.clients.store.models.Scroll import ScrollResult
from shared.errors.engine_errors import StorageError
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

# payload-only collections carry a 1-dimensional placeholder vector
PLACEHOLDER_VECTOR = [1.0]


class StoreClientQdrant(StoreClientInterface):
    """Store backed by a Qdrant instance over its REST API.

    Each record kind lives in its own collection named ``{prefix}_{kind}``. Record ids
    are mapped to point ids with uuid5 so arbitrary caller ids are accepted; the
    original id is kept in the payload.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        self._api_key = self.get_config_val("API_KEY", default="", val_type="string")
        self._prefix = self.get_config_val("COLLECTION_PREFIX", default="knowledge", val_type="string")
        self.page_size = int(self.get_config_val("PAGE_SIZE", default=1000, val_type="number"))

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Qdrant"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="API_KEY", val_type="string", default=""),
            EnvConfig(env_key="COLLECTION_PREFIX", val_type="string", default="knowledge"),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        if self._api_key:
            return {"api-key": f"{self._api_key}"}
        return {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/healthz"

    def get_collection_name(self, kind: str) -> str:
        return f"{self._prefix}_{kind}"

    def _get_endpoint_collection(self, kind: str, suffix: str = "") -> str:
        return f"/collections/{self.get_collection_name(kind)}{suffix}"

    def get_collection_layout(self) -> dict[str, int]:
        """Returns the vector size of every collection the store uses, keyed by kind."""
        return {
            "documents": len(PLACEHOLDER_VECTOR),
            "chunks": self.embed_dimension,
            "companies": self.embed_dimension,
            "search_cache": len(PLACEHOLDER_VECTOR),
            "usage": len(PLACEHOLDER_VECTOR),
            "feedback": len(PLACEHOLDER_VECTOR),
        }

    ##########################################
    ########### PAYLOAD BUILDER ##############
    ##########################################

    @staticmethod
    def get_point_id(record_id: str) -> str:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, record_id))

    @staticmethod
    def match(key: str, value: Any) -> dict:
        return {"key": key, "match": {"value": value}}

    @staticmethod
    def match_any(key: str, values: list) -> dict:
        return {"key": key, "match": {"any": values}}

    @staticmethod
    def match_range(key: str, **bounds: float) -> dict:
        return {"key": key, "range": bounds}

    def build_point(self, record_id: str, model: BaseModel, vector: list[float] | None = None, **extra: Any) -> dict:
        """Serialise a record into a point. ``embedding`` moves from the payload into the vector."""
        payload = model.model_dump(mode="json", exclude={"embedding"})
        payload.update(extra)
        return {
            "id": self.get_point_id(record_id),
            "vector": vector if vector is not None else PLACEHOLDER_VECTOR,
            "payload": payload,
        }

    def get_scroll_payload(self, filters: list[dict], with_vector: bool, limit: int, offset: str | None = None) -> dict:
        payload = {
            "filter": {"must": filters},
            "limit": limit,
            "with_payload": True,
            "with_vector": with_vector,
        }
        if offset is not None:
            payload["offset"] = offset
        return payload

    ##########################################
    ########### RESPONSE PARSER ##############
    ##########################################

    @staticmethod
    def decode_response(resp: httpx.Response) -> dict:
        """Return the JSON body of a Qdrant response.

        Raises:
            StorageError: If the body is not a JSON object.
        """
        try:
            data = resp.json()
        except ValueError as exc:
            raise StorageError(f"Qdrant returned a body that is not JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"Qdrant returned {type(data).__name__} instead of a JSON object.")
        return data

    @staticmethod
    def extract_scroll_content(raw_response: dict) -> ScrollResult:
        result = raw_response.get("result") or {}
        try:
            return ScrollResult(
                result=result.get("points", []),
                status=raw_response.get("status", "ok"),
                time=raw_response.get("time", 0),
                next_page_offset=result.get("next_page_offset"),
            )
        except (AttributeError, ValidationError) as exc:
            raise StorageError(f"Unexpected Qdrant scroll response: {exc}") from exc

    @staticmethod
    def point_to_record(point: dict, model_class: type[BaseModel]) -> BaseModel:
        data = dict(point.get("payload") or {})
        if "embedding" in model_class.model_fields:
            data["embedding"] = point.get("vector") or []
        try:
            return model_class.model_validate(data)
        except ValidationError as exc:
            raise StorageError(f"Stored {model_class.__name__} {point.get('id')} is unreadable: {exc}") from exc

    @staticmethod
    def to_ts(value: datetime) -> float:
        return value.timestamp()

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_prepare(self) -> None:
        """Create every missing collection with its configured vector size."""
        for kind, size in self.get_collection_layout().items():
            resp = await self.do_request(method="GET", endpoint=self._get_endpoint_collection(kind, "/exists"), raise_on_error=True)
            if self.decode_response(resp).get("result", {}).get("exists"):
                continue
            self.logging.info("Creating Qdrant collection %s with vector size %d", self.get_collection_name(kind), size)
            await self.do_request(
                method="PUT",
                json={"vectors": {"size": size, "distance": "Cosine"}},
                endpoint=self._get_endpoint_collection(kind),
                raise_on_error=True,
            )

    async def do_upsert_points(self, kind: str, points: list[dict]) -> None:
        if not points:
            return
        await self.do_request(
            method="PUT",
            content=json.dumps({"points": points}),
            endpoint=self._get_endpoint_collection(kind, "/points"),
            params={"wait": "true"},
            additional_headers={"Content-Type": "application/json"},
            raise_on_error=True,
        )

    async def do_get_point(self, kind: str, record_id: str) -> dict | None:
        resp = await self.do_request(
            method="GET",
            endpoint=self._get_endpoint_collection(kind, f"/points/{self.get_point_id(record_id)}"),
        )
        if resp.status_code == 404:
            return None
        if resp.status_code >= 300:
            self.logging.error("Fetching point %s from %s failed with status %d", record_id, kind, resp.status_code)
            raise StorageError(f"Fetching point from {self.get_collection_name(kind)} failed with status {resp.status_code}")
        return self.decode_response(resp).get("result")

    async def do_count(self, kind: str, filters: list[dict]) -> int:
        resp = await self.do_request(
            method="POST",
            json={"filter": {"must": filters}, "exact": True},
            endpoint=self._get_endpoint_collection(kind, "/points/count"),
            raise_on_error=True,
        )
        return self.decode_response(resp).get("result", {}).get("count", 0)

    async def do_delete_by_filter(self, kind: str, filters: list[dict]) -> int:
        """Delete all points matching the filters and return how many there were."""
        count = await self.do_count(kind, filters)
        if count:
            await self.do_request(
                method="POST",
                json={"filter": {"must": filters}},
                endpoint=self._get_endpoint_collection(kind, "/points/delete"),
                params={"wait": "true"},
                raise_on_error=True,
            )
        return count

    async def do_scroll(self, kind: str, filters: list[dict], with_vector: bool = False, offset: str | None = None) -> ScrollResult:
        resp = await self.do_request(
            method="POST",
            json=self.get_scroll_payload(filters, with_vector, self.page_size, offset),
            endpoint=self._get_endpoint_collection(kind, "/points/scroll"),
            raise_on_error=True,
        )
        return self.extract_scroll_content(self.decode_response(resp))

    async def do_scroll_all(self, kind: str, filters: list[dict], with_vector: bool = False) -> list[dict]:
        """Scroll through all points matching the filters, paginating automatically."""
        all_points: list[dict] = []
        offset: str | None = None
        page = 1
        total_points = await self.do_count(kind, filters)
        total_pages = math.ceil(total_points / self.page_size) if total_points > 0 else 1
        while True:
            page_result = await self.do_scroll(kind, filters, with_vector=with_vector, offset=offset)
            all_points.extend(page_result.result)
            self.logging.debug(
                "Fetched %s page %d of %d, total points so far: %d of %d",
                self.get_collection_name(kind), page, total_pages, len(all_points), total_points,
            )
            offset = page_result.next_page_offset
            if not offset:
                break
            page += 1
        return all_points

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    def _document_point(self, document: KnowledgeDocument) -> dict:
        return self.build_point(document.id, document, created_ts=self.to_ts(document.created_at))

    async def do_insert_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        await self.do_upsert_points("documents", [self._document_point(document)])
        return document

    async def do_get_document(self, document_id: str, owner_id: str | None = None) -> KnowledgeDocument | None:
        point = await self.do_get_point("documents", document_id)
        if point is None:
            return None
        document = self.point_to_record(point, KnowledgeDocument)
        if owner_id is not None and document.owner_id != owner_id:
            return None
        return document

    async def do_update_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        await self.do_upsert_points("documents", [self._document_point(document)])
        return document

    async def do_delete_document(self, document_id: str) -> bool:
        await self.do_delete_chunks(document_id)
        deleted = await self.do_delete_by_filter("documents", [self.match("id", document_id)])
        return deleted > 0

    async def do_list_documents(self, owner_id: str) -> list[KnowledgeDocument]:
        points = await self.do_scroll_all("documents", [self.match("owner_id", owner_id)])
        documents = [self.point_to_record(p, KnowledgeDocument) for p in points]
        return sorted(documents, key=lambda d: d.created_at, reverse=True)

    ##########################################
    ################ CHUNKS ##################
    ##########################################

    async def do_insert_chunks(self, chunks: list[KnowledgeChunk]) -> None:
        points = [self.build_point(c.id, c, vector=c.embedding) for c in chunks]
        for start in range(0, len(points), self.page_size):
            await self.do_upsert_points("chunks", points[start:start + self.page_size])

    async def do_delete_chunks(self, document_id: str) -> int:
        return await self.do_delete_by_filter("chunks", [self.match("document_id", document_id)])

    async def do_list_chunks(self, document_id: str) -> list[KnowledgeChunk]:
        points = await self.do_scroll_all("chunks", [self.match("document_id", document_id)], with_vector=True)
        chunks = [self.point_to_record(p, KnowledgeChunk) for p in points]
        return sorted(chunks, key=lambda c: c.chunk_index)

    async def do_fetch_chunk_candidates(self, owner_id: str, filter_tags: list[str] | None = None) -> list[ChunkCandidate]:
        filters = [self.match("owner_id", owner_id), self.match("status", DocumentStatus.COMPLETED.value)]
        if filter_tags:
            filters.append(self.match_any("tags", filter_tags))
        documents = {
            d.id: d for d in (self.point_to_record(p, KnowledgeDocument) for p in await self.do_scroll_all("documents", filters))
        }
        if not documents:
            return []
        points = await self.do_scroll_all(
            "chunks",
            [self.match("owner_id", owner_id), self.match_any("document_id", list(documents))],
            with_vector=True,
        )
        candidates = []
        for point in points:
            chunk = self.point_to_record(point, KnowledgeChunk)
            document = documents[chunk.document_id]
            candidates.append(
                ChunkCandidate(
                    chunk=chunk,
                    document_title=document.title,
                    document_tags=document.tags,
                    source_url=document.source_url,
                )
            )
        return candidates

    async def do_count_chunks(self, owner_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for point in await self.do_scroll_all("chunks", [self.match("owner_id", owner_id)]):
            document_id = point.get("payload", {}).get("document_id")
            counts[document_id] = counts.get(document_id, 0) + 1
        return counts

    ##########################################
    ########### COMPANY RESEARCH #############
    ##########################################

    async def do_upsert_company_entry(self, entry: CompanyResearchEntry) -> CompanyResearchEntry:
        point = self.build_point(entry.id, entry, vector=entry.embedding, expires_ts=self.to_ts(entry.expires_at))
        await self.do_upsert_points("companies", [point])
        return entry

    async def do_list_company_entries(
        self, normalized_key: str | None = None, active_at: datetime | None = None
    ) -> list[CompanyResearchEntry]:
        filters = []
        if normalized_key is not None:
            filters.append(self.match("normalized_key", normalized_key))
        if active_at is not None:
            filters.append(self.match_range("expires_ts", gt=self.to_ts(active_at)))
        points = await self.do_scroll_all("companies", filters, with_vector=True)
        return [self.point_to_record(p, CompanyResearchEntry) for p in points]

    ##########################################
    ############# SEARCH CACHE ###############
    ##########################################

    async def do_get_search_cache(self, cache_key: str) -> SearchCacheEntry | None:
        point = await self.do_get_point("search_cache", cache_key)
        return self.point_to_record(point, SearchCacheEntry) if point else None

    async def do_put_search_cache(self, entry: SearchCacheEntry) -> None:
        point = self.build_point(entry.cache_key, entry, expires_ts=self.to_ts(entry.expires_at))
        await self.do_upsert_points("search_cache", [point])

    async def do_delete_search_cache_expired(self, now: datetime) -> int:
        return await self.do_delete_by_filter("search_cache", [self.match_range("expires_ts", lte=self.to_ts(now))])

    async def do_delete_search_cache_for_owner(self, owner_id: str) -> int:
        return await self.do_delete_by_filter("search_cache", [self.match("owner_id", owner_id)])

    ##########################################
    ################ USAGE ###################
    ##########################################

    async def do_insert_usage_log(self, entry: UsageLogEntry) -> None:
        point = self.build_point(entry.id, entry, created_ts=self.to_ts(entry.created_at))
        await self.do_upsert_points("usage", [point])

    async def do_get_usage_log(self, usage_id: str) -> UsageLogEntry | None:
        point = await self.do_get_point("usage", usage_id)
        return self.point_to_record(point, UsageLogEntry) if point else None

    async def do_list_usage_logs(self, owner_id: str, since: datetime | None = None) -> list[UsageLogEntry]:
        filters = [self.match("owner_id", owner_id)]
        if since is not None:
            filters.append(self.match_range("created_ts", gte=self.to_ts(since)))
        logs = [self.point_to_record(p, UsageLogEntry) for p in await self.do_scroll_all("usage", filters)]
        return sorted(logs, key=lambda e: e.created_at, reverse=True)

    async def do_delete_usage_logs_before(self, cutoff: datetime) -> int:
        return await self.do_delete_by_filter("usage", [self.match_range("created_ts", lt=self.to_ts(cutoff))])

    async def do_insert_feedback(self, feedback: UsageFeedback) -> None:
        point = self.build_point(feedback.id, feedback, created_ts=self.to_ts(feedback.created_at))
        await self.do_upsert_points("feedback", [point])

    async def do_list_feedback(self, owner_id: str, since: datetime | None = None) -> list[UsageFeedback]:
        filters = [self.match("owner_id", owner_id)]
        if since is not None:
            filters.append(self.match_range("created_ts", gte=self.to_ts(since)))
        return [self.point_to_record(p, UsageFeedback) for p in await self.do_scroll_all("feedback", filters)]
