"""
Pytest configuration and fixtures.
Deterministic fakes for the embedding and generation backends, an adjustable
clock and the in-memory store.
"""

import asyncio
import hashlib
import logging
import re
from datetime import datetime, timedelta, timezone

import pytest

from services.knowledge_engine.AnswerGenerator import AnswerGenerator
from services.knowledge_engine.CompanyResearchCache import CompanyResearchCache
from services.knowledge_engine.IngestionService import IngestionService
from services.knowledge_engine.QueryCache import QueryCache
from services.knowledge_engine.RetrievalOrchestrator import RetrievalOrchestrator
from services.knowledge_engine.SimilarityRetriever import SimilarityRetriever
from services.knowledge_engine.UsageRecorder import UsageRecorder
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.clients.store.memory.StoreClientMemory import StoreClientMemory
from shared.errors.engine_errors import EmbeddingError, GenerationError
from shared.helper.HelperConfig import HelperConfig

DIMENSION = 16

TEST_ENV = {
    "EMBED_DIMENSION": str(DIMENSION),
    "EMBED_MODEL": "fake-embed",
    "EMBED_BATCH_SIZE": "4",
    "LLM_CHAT_MODEL": "fake-chat",
    "CHUNK_SIZE": "120",
    "CHUNK_OVERLAP": "20",
    "QUERY_CACHE_TTL_SECONDS": "300",
    "COMPANY_CACHE_TTL_DAYS": "7",
    "RAG_TIMEOUT_SECONDS": "2",
    "API_SERVER_API_KEY": "test-key",
}

_TOKEN = re.compile(r"[a-z0-9]+")


def bag_of_words(text: str, dimension: int = DIMENSION) -> list[float]:
    """Hash every lowercase token into one of ``dimension`` buckets and count."""
    vector = [0.0] * dimension
    for token in _TOKEN.findall(text.lower()):
        bucket = int(hashlib.sha1(token.encode("utf-8")).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    return vector


class FakeEmbedClient(EmbedClientInterface):
    """Embeds with bag_of_words. Texts containing a word from ``fail_on`` raise EmbeddingError."""

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.fail_on: set[str] = set()
        self.calls: list[list[str]] = []
        self.delay = 0.0
        self.dimension_override: int | None = None
        # exact text -> vector overrides for tests that need precise similarities
        self.vectors: dict[str, list[float]] = {}

    def _get_engine_name(self) -> str:
        return "Fake"

    def _get_required_config(self) -> list:
        return []

    def _get_auth_header(self) -> dict:
        return {}

    def _get_base_url(self) -> str:
        return "http://fake-embed"

    def _get_endpoint_healthcheck(self) -> str:
        return ""

    def get_endpoint_embedding(self) -> str:
        return "/embed"

    def get_endpoint_model_details(self) -> str:
        return ""

    def get_embed_payload(self, texts: list[str]) -> dict:
        return {"input": texts}

    def extract_vector_size_from_model_info(self, model_info: dict) -> int:
        return DIMENSION

    def extract_embeddings_from_response(self, response_data: dict) -> list[list[float]]:
        return response_data["embeddings"]

    async def _do_embed_raw(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        for text in texts:
            if set(_TOKEN.findall(text.lower())) & self.fail_on:
                raise EmbeddingError("embedding backend unavailable")
        return [
            self.vectors.get(text) or bag_of_words(text, self.dimension_override or self.embed_dimension)
            for text in texts
        ]


class FakeLLMClient(LLMClientInterface):
    """Returns scripted answers. ``fail`` raises GenerationError, ``delay`` sleeps before answering."""

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.answer = "Scripted answer [1]."
        self.fail = False
        self.delay = 0.0
        self.messages: list[list[dict]] = []

    def _get_engine_name(self) -> str:
        return "Fake"

    def _get_required_config(self) -> list:
        return []

    def _get_auth_header(self) -> dict:
        return {}

    def _get_base_url(self) -> str:
        return "http://fake-llm"

    def _get_endpoint_healthcheck(self) -> str:
        return ""

    def _get_endpoint_chat(self) -> str:
        return "/chat"

    def get_chat_payload(self, messages: list[dict]) -> dict:
        return {"messages": messages}

    def extract_chat_response(self, response_data: dict) -> str:
        return response_data["answer"]

    async def do_chat(self, messages: list[dict]) -> str:
        self.messages.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise GenerationError("generation backend unavailable")
        return self.answer


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class Engine:
    """All services wired against the fakes."""

    def __init__(self, helper_config: HelperConfig, clock: FakeClock, store: StoreClientMemory | None = None):
        self.helper_config = helper_config
        self.clock = clock
        self.store = store or StoreClientMemory(helper_config=helper_config)
        self.embed = FakeEmbedClient(helper_config=helper_config)
        self.llm = FakeLLMClient(helper_config=helper_config)
        self.query_cache = QueryCache(helper_config=helper_config, store_client=self.store, clock=clock)
        self.company_cache = CompanyResearchCache(helper_config=helper_config, store_client=self.store, clock=clock)
        self.usage = UsageRecorder(helper_config=helper_config, store_client=self.store, clock=clock)
        self.ingestion = IngestionService(
            helper_config=helper_config,
            store_client=self.store,
            embed_client=self.embed,
            query_cache=self.query_cache,
            clock=clock,
        )
        self.retriever = SimilarityRetriever(
            helper_config=helper_config,
            store_client=self.store,
            embed_client=self.embed,
            company_cache=self.company_cache,
            clock=clock,
        )
        self.orchestrator = RetrievalOrchestrator(
            helper_config=helper_config,
            retriever=self.retriever,
            generator=AnswerGenerator(helper_config=helper_config, llm_client=self.llm),
            query_cache=self.query_cache,
            usage_recorder=self.usage,
            clock=clock,
        )


@pytest.fixture
def env(monkeypatch):
    """Apply the test environment variables."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    return TEST_ENV


@pytest.fixture
def helper_config(env):
    return HelperConfig(logger=logging.getLogger("knowledge_engine.tests"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(helper_config, clock):
    return Engine(helper_config, clock)


def axis(index: int, weight: float = 1.0, dimension: int = DIMENSION) -> list[float]:
    """A vector pointing along one axis."""
    vector = [0.0] * dimension
    vector[index] = weight
    return vector


def blend(primary: int, secondary: int, similarity: float, dimension: int = DIMENSION) -> list[float]:
    """A unit vector whose cosine similarity to axis(primary) is exactly ``similarity``."""
    vector = [0.0] * dimension
    vector[primary] = similarity
    vector[secondary] = (1.0 - similarity ** 2) ** 0.5
    return vector
