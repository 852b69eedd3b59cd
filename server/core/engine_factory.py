"""Wires the knowledge engine services onto the application state."""

from collections.abc import Callable
from datetime import datetime

from services.knowledge_engine.AnswerGenerator import AnswerGenerator
from services.knowledge_engine.CompanyResearchCache import CompanyResearchCache
from services.knowledge_engine.FileProcessor import FileProcessor
from services.knowledge_engine.IngestionService import IngestionService
from services.knowledge_engine.QueryCache import QueryCache
from services.knowledge_engine.RetrievalOrchestrator import RetrievalOrchestrator
from services.knowledge_engine.SimilarityRetriever import SimilarityRetriever
from services.knowledge_engine.UsageRecorder import UsageRecorder
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.knowledge import utc_now


def build_engine_state(
    state,
    helper_config: HelperConfig,
    store_client: StoreClientInterface,
    embed_client: EmbedClientInterface,
    llm_client: LLMClientInterface,
    clock: Callable[[], datetime] = utc_now,
) -> None:
    """Construct every service with its collaborators and attach them to ``state``.

    Args:
        state: The FastAPI ``app.state`` (or any attribute container).
        helper_config (HelperConfig): Configuration shared by all services.
        store_client (StoreClientInterface): Booted persistence backend.
        embed_client (EmbedClientInterface): Booted embedding backend.
        llm_client (LLMClientInterface): Booted generation backend.
        clock (Callable[[], datetime]): Source of the current UTC time.
    """
    query_cache = QueryCache(helper_config=helper_config, store_client=store_client, clock=clock)
    company_cache = CompanyResearchCache(helper_config=helper_config, store_client=store_client, clock=clock)
    usage_recorder = UsageRecorder(helper_config=helper_config, store_client=store_client, clock=clock)
    retriever = SimilarityRetriever(
        helper_config=helper_config,
        store_client=store_client,
        embed_client=embed_client,
        company_cache=company_cache,
        clock=clock,
    )

    state.helper_config = helper_config
    state.store_client = store_client
    state.embed_client = embed_client
    state.llm_client = llm_client
    state.query_cache = query_cache
    state.company_cache = company_cache
    state.usage_recorder = usage_recorder
    state.retriever = retriever
    state.file_processor = FileProcessor(helper_config=helper_config)
    state.ingestion_service = IngestionService(
        helper_config=helper_config,
        store_client=store_client,
        embed_client=embed_client,
        query_cache=query_cache,
        clock=clock,
    )
    state.orchestrator = RetrievalOrchestrator(
        helper_config=helper_config,
        retriever=retriever,
        generator=AnswerGenerator(helper_config=helper_config, llm_client=llm_client),
        query_cache=query_cache,
        usage_recorder=usage_recorder,
        clock=clock,
    )
