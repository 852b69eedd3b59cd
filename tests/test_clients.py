"""
Unit tests for the HTTP backend clients, using httpx.MockTransport instead of real servers.
"""

import json

import httpx
import pytest

from conftest import DIMENSION
from shared.clients.embed.EmbedClientManager import EmbedClientManager
from shared.clients.embed.ollama.EmbedClientOllama import EmbedClientOllama
from shared.clients.embed.openai.EmbedClientOpenai import EmbedClientOpenai
from shared.clients.llm.LLMClientManager import LLMClientManager
from shared.clients.llm.ollama.LLMClientOllama import LLMClientOllama
from shared.clients.llm.openai.LLMClientOpenai import LLMClientOpenai
from shared.clients.store.StoreClientManager import StoreClientManager
from shared.clients.store.memory.StoreClientMemory import StoreClientMemory
from shared.clients.store.qdrant.StoreClientQdrant import StoreClientQdrant
from shared.errors.engine_errors import EmbeddingDimensionError, EmbeddingError, GenerationError, StorageError
from shared.models.knowledge import KnowledgeDocument


@pytest.fixture
def backend_env(env, monkeypatch):
    monkeypatch.setenv("EMBED_OLLAMA_BASE_URL", "http://ollama:11434")
    monkeypatch.setenv("LLM_OLLAMA_BASE_URL", "http://ollama:11434")
    monkeypatch.setenv("EMBED_OPENAI_API_KEY", "sk-embed")
    monkeypatch.setenv("LLM_OPENAI_API_KEY", "sk-chat")
    monkeypatch.setenv("STORE_QDRANT_BASE_URL", "http://qdrant:6333")
    monkeypatch.setenv("STORE_QDRANT_PAGE_SIZE", "2")
    return env


def mount(client, handler, requests: list | None = None):
    """Replace the client's transport with a handler; optionally record every request."""

    def recording_handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return handler(request)

    client._client = httpx.AsyncClient(transport=httpx.MockTransport(recording_handler))
    return client


def vector(value: float = 1.0) -> list[float]:
    return [value] * DIMENSION


class TestEmbedClientOllama:
    @pytest.mark.asyncio
    async def test_embed_payload_and_parsing(self, backend_env, helper_config):
        requests = []
        client = mount(
            EmbedClientOllama(helper_config),
            lambda request: httpx.Response(200, json={"embeddings": [vector(0.1), vector(0.2)]}),
            requests,
        )

        vectors = await client.do_embed(["first", "second"])

        assert vectors == [vector(0.1), vector(0.2)]
        assert str(requests[0].url) == "http://ollama:11434/api/embed"
        assert json.loads(requests[0].content) == {"model": "fake-embed", "input": ["first", "second"]}

    @pytest.mark.asyncio
    async def test_wrong_dimension_rejected(self, backend_env, helper_config):
        client = mount(
            EmbedClientOllama(helper_config),
            lambda request: httpx.Response(200, json={"embeddings": [[1.0, 2.0]]}),
        )

        with pytest.raises(EmbeddingDimensionError):
            await client.do_embed("text")

    @pytest.mark.asyncio
    async def test_backend_error_is_embedding_error(self, backend_env, helper_config):
        client = mount(EmbedClientOllama(helper_config), lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(EmbeddingError) as exc_info:
            await client.do_embed("text")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_malformed_response_is_embedding_error(self, backend_env, helper_config):
        client = mount(EmbedClientOllama(helper_config), lambda request: httpx.Response(200, json={"nope": []}))

        with pytest.raises(EmbeddingError):
            await client.do_embed("text")

    @pytest.mark.asyncio
    async def test_empty_text_rejected_without_request(self, backend_env, helper_config):
        requests = []
        client = mount(EmbedClientOllama(helper_config), lambda request: httpx.Response(200), requests)

        with pytest.raises(EmbeddingError):
            await client.do_embed(["ok", "  "])
        assert requests == []

    @pytest.mark.asyncio
    async def test_vector_size_from_model_details(self, backend_env, helper_config):
        client = mount(
            EmbedClientOllama(helper_config),
            lambda request: httpx.Response(200, json={"model_info": {"nomic-bert.embedding_length": 768}}),
        )

        assert await client.do_fetch_embedding_vector_size() == 768

    @pytest.mark.asyncio
    async def test_transport_failure(self, backend_env, helper_config):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        client = mount(EmbedClientOllama(helper_config), handler)

        with pytest.raises(EmbeddingError):
            await client.do_embed("text")

    @pytest.mark.asyncio
    async def test_not_booted(self, backend_env, helper_config):
        with pytest.raises(EmbeddingError):
            await EmbedClientOllama(helper_config).do_embed("text")


class TestEmbedClientOpenai:
    @pytest.mark.asyncio
    async def test_results_sorted_by_index(self, backend_env, helper_config):
        requests = []
        body = {"data": [{"index": 1, "embedding": vector(0.2)}, {"index": 0, "embedding": vector(0.1)}]}
        client = mount(EmbedClientOpenai(helper_config), lambda request: httpx.Response(200, json=body), requests)

        vectors = await client.do_embed(["first", "second"])

        assert vectors == [vector(0.1), vector(0.2)]
        assert str(requests[0].url) == "https://api.openai.com/v1/embeddings"
        assert requests[0].headers["Authorization"] == "Bearer sk-embed"

    @pytest.mark.asyncio
    async def test_vector_size_is_measured(self, backend_env, helper_config):
        body = {"data": [{"index": 0, "embedding": [0.5] * 12}]}
        client = mount(EmbedClientOpenai(helper_config), lambda request: httpx.Response(200, json=body))

        assert await client.do_fetch_embedding_vector_size() == 12

    def test_api_key_required(self, env, helper_config):
        with pytest.raises(ValueError):
            EmbedClientOpenai(helper_config)


class TestLLMClients:
    @pytest.mark.asyncio
    async def test_ollama_chat(self, backend_env, helper_config):
        requests = []
        client = mount(
            LLMClientOllama(helper_config),
            lambda request: httpx.Response(200, json={"message": {"role": "assistant", "content": "Hi"}}),
            requests,
        )

        answer = await client.do_chat([{"role": "user", "content": "Hello"}])

        body = json.loads(requests[0].content)
        assert answer == "Hi"
        assert str(requests[0].url) == "http://ollama:11434/api/chat"
        assert body["model"] == "fake-chat"
        assert body["stream"] is False
        assert body["options"] == {"temperature": 0.7, "num_predict": 1000}

    @pytest.mark.asyncio
    async def test_openai_chat(self, backend_env, helper_config):
        requests = []
        body = {"choices": [{"message": {"role": "assistant", "content": "Answer"}}]}
        client = mount(LLMClientOpenai(helper_config), lambda request: httpx.Response(200, json=body), requests)

        answer = await client.do_chat([{"role": "user", "content": "Hello"}])

        payload = json.loads(requests[0].content)
        assert answer == "Answer"
        assert payload["temperature"] == 0.7
        assert payload["max_tokens"] == 1000
        assert requests[0].headers["Authorization"] == "Bearer sk-chat"

    @pytest.mark.asyncio
    async def test_openai_without_choices(self, backend_env, helper_config):
        client = mount(LLMClientOpenai(helper_config), lambda request: httpx.Response(200, json={"choices": []}))

        with pytest.raises(GenerationError):
            await client.do_chat([{"role": "user", "content": "Hello"}])

    @pytest.mark.asyncio
    async def test_http_error_is_generation_error(self, backend_env, helper_config):
        client = mount(LLMClientOllama(helper_config), lambda request: httpx.Response(503, text="loading"))

        with pytest.raises(GenerationError):
            await client.do_chat([{"role": "user", "content": "Hello"}])


class TestClientManagers:
    def test_store_defaults_to_memory(self, env, helper_config):
        assert isinstance(StoreClientManager(helper_config).get_client(), StoreClientMemory)

    def test_engines_from_env(self, backend_env, helper_config, monkeypatch):
        monkeypatch.setenv("STORE_ENGINE", "qdrant")
        monkeypatch.setenv("EMBED_ENGINE", "OLLAMA")
        monkeypatch.setenv("LLM_ENGINE", "openai")

        assert isinstance(StoreClientManager(helper_config).get_client(), StoreClientQdrant)
        assert isinstance(EmbedClientManager(helper_config).get_client(), EmbedClientOllama)
        assert isinstance(LLMClientManager(helper_config).get_client(), LLMClientOpenai)

    def test_unknown_engine(self, env, helper_config, monkeypatch):
        monkeypatch.setenv("LLM_ENGINE", "carrier-pigeon")
        with pytest.raises(ValueError):
            LLMClientManager(helper_config)


class TestStoreClientQdrant:
    @pytest.mark.asyncio
    async def test_prepare_creates_missing_collections(self, backend_env, helper_config):
        requests = []

        def handler(request):
            if request.method == "GET":
                exists = request.url.path == "/collections/knowledge_documents/exists"
                return httpx.Response(200, json={"result": {"exists": exists}})
            return httpx.Response(200, json={"result": True})

        client = mount(StoreClientQdrant(helper_config), handler, requests)

        await client.do_prepare()

        created = {r.url.path: json.loads(r.content)["vectors"]["size"] for r in requests if r.method == "PUT"}
        assert created == {
            "/collections/knowledge_chunks": DIMENSION,
            "/collections/knowledge_companies": DIMENSION,
            "/collections/knowledge_search_cache": 1,
            "/collections/knowledge_usage": 1,
            "/collections/knowledge_feedback": 1,
        }

    @pytest.mark.asyncio
    async def test_get_document_round_trip_and_missing(self, backend_env, helper_config):
        client = StoreClientQdrant(helper_config)
        document = KnowledgeDocument(id="doc-1", owner_id="owner-1", title="Report", tags=["a"])
        point = client.build_point(document.id, document)

        def handler(request):
            if request.url.path.endswith(client.get_point_id("doc-1")):
                return httpx.Response(200, json={"result": point})
            return httpx.Response(404, json={"status": {"error": "Not found"}})

        mount(client, handler)

        assert await client.do_get_document("doc-1") == document
        assert await client.do_get_document("doc-1", owner_id="owner-2") is None
        assert await client.do_get_document("missing") is None

    @pytest.mark.asyncio
    async def test_scroll_all_paginates(self, backend_env, helper_config):
        client = StoreClientQdrant(helper_config)
        documents = [KnowledgeDocument(id=f"doc-{i}", owner_id="owner-1", title=f"Doc {i}") for i in range(3)]
        points = [client.build_point(d.id, d) for d in documents]
        scroll_bodies = []

        def handler(request):
            if request.url.path.endswith("/points/count"):
                return httpx.Response(200, json={"result": {"count": 3}})
            body = json.loads(request.content)
            scroll_bodies.append(body)
            if "offset" not in body:
                return httpx.Response(200, json={"result": {"points": points[:2], "next_page_offset": "p2"}})
            return httpx.Response(200, json={"result": {"points": points[2:], "next_page_offset": None}})

        mount(client, handler)

        listed = await client.do_list_documents("owner-1")

        assert sorted(d.id for d in listed) == ["doc-0", "doc-1", "doc-2"]
        assert [b.get("offset") for b in scroll_bodies] == [None, "p2"]
        assert scroll_bodies[0]["filter"] == {"must": [{"key": "owner_id", "match": {"value": "owner-1"}}]}
        assert scroll_bodies[0]["limit"] == 2

    @pytest.mark.asyncio
    async def test_delete_skips_request_when_nothing_matches(self, backend_env, helper_config):
        requests = []
        client = mount(
            StoreClientQdrant(helper_config),
            lambda request: httpx.Response(200, json={"result": {"count": 0}}),
            requests,
        )

        assert await client.do_delete_chunks("doc-1") == 0
        assert [r.url.path for r in requests] == ["/collections/knowledge_chunks/points/count"]

    @pytest.mark.asyncio
    async def test_server_error_is_storage_error(self, backend_env, helper_config):
        client = mount(StoreClientQdrant(helper_config), lambda request: httpx.Response(500, text="down"))

        with pytest.raises(StorageError) as exc_info:
            await client.do_list_documents("owner-1")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_upsert_waits_for_write(self, backend_env, helper_config):
        requests = []
        client = mount(StoreClientQdrant(helper_config), lambda request: httpx.Response(200, json={}), requests)

        await client.do_insert_document(KnowledgeDocument(owner_id="owner-1", title="Report"))

        assert requests[0].url.params["wait"] == "true"
        assert json.loads(requests[0].content)["points"][0]["vector"] == [1.0]

    @pytest.mark.asyncio
    async def test_non_json_body_is_storage_error(self, backend_env, helper_config):
        client = mount(StoreClientQdrant(helper_config), lambda request: httpx.Response(200, text="<html>proxy</html>"))

        with pytest.raises(StorageError, match="not JSON"):
            await client.do_get_document("doc-1")
        with pytest.raises(StorageError):
            await client.do_count_chunks("owner-1")

    @pytest.mark.asyncio
    async def test_unreadable_payload_is_storage_error(self, backend_env, helper_config):
        client = StoreClientQdrant(helper_config)
        point = {"id": client.get_point_id("doc-1"), "payload": {"id": "doc-1", "status": "not-a-status"}}
        mount(client, lambda request: httpx.Response(200, json={"result": point}))

        with pytest.raises(StorageError, match="KnowledgeDocument"):
            await client.do_get_document("doc-1")
