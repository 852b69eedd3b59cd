"""FastAPI application entry point for the knowledge engine."""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from shared.logging.logging_setup import setup_logging
from shared.helper.HelperConfig import HelperConfig
from shared.clients.ClientInterface import ClientInterface
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.clients.embed.EmbedClientManager import EmbedClientManager
from shared.clients.llm.LLMClientManager import LLMClientManager
from shared.clients.store.StoreClientManager import StoreClientManager
from shared.errors.engine_errors import KnowledgeEngineError
from server.core.engine_factory import build_engine_state
from server.core.error_handlers import register_error_handlers
from server.models.responses import HealthResponse
from server.routers.AnalyticsRouter import router as analytics_router
from server.routers.CompanyRouter import router as company_router
from server.routers.DocumentRouter import router as document_router
from server.routers.QueryRouter import router as query_router

logging = setup_logging()
app_version = os.getenv("APP_VERSION", "unknown")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # when the app starts
    helper_config = HelperConfig(logger=logging)

    store_client = StoreClientManager(helper_config=helper_config).get_client()
    embed_client = EmbedClientManager(helper_config=helper_config).get_client()
    llm_client = LLMClientManager(helper_config=helper_config).get_client()
    clients: list[ClientInterface] = [store_client, embed_client, llm_client]

    logging.info("Booting all clients...")
    for client in clients:
        await client.boot()
    logging.info("All clients booted successfully.")

    await check_connections(store_client, embed_client, llm_client)
    await store_client.do_prepare()

    build_engine_state(
        app.state,
        helper_config=helper_config,
        store_client=store_client,
        embed_client=embed_client,
        llm_client=llm_client,
    )

    # while the app is running...
    yield

    # when the app shuts down, close all client connections
    logging.info("Shutting down, closing all clients...")
    await app.state.orchestrator.wait_for_background_tasks()
    for client in clients:
        await client.close()
    logging.info("All clients closed.")


async def check_connections(
    store_client: StoreClientInterface,
    embed_client: EmbedClientInterface,
    llm_client: LLMClientInterface,
) -> None:
    """Check connectivity to all configured backends on startup.

    LLM failures are non-fatal (answers degrade to retrieval only).
    Store and embedding failures are fatal, nothing can be ingested or retrieved without them.

    Raises:
        KnowledgeEngineError: If the store or the embedding backend is not usable.
    """
    result = await store_client.do_healthcheck()
    if not result.is_success:
        raise store_client.request_error_class(
            f"Store '{store_client.get_engine_name()}' is not reachable (status {result.status_code})."
        )

    result = await embed_client.do_healthcheck()
    if not result.is_success:
        raise embed_client.request_error_class(
            f"Embed client '{embed_client.get_engine_name()}' is not reachable (status {result.status_code})."
        )
    vector_size = await embed_client.do_fetch_embedding_vector_size()
    if vector_size != embed_client.embed_dimension:
        raise embed_client.request_error_class(
            f"Embedding model '{embed_client.embed_model}' produces {vector_size} dimensions, "
            f"EMBED_DIMENSION is {embed_client.embed_dimension}."
        )

    try:
        result = await llm_client.do_healthcheck()
        if not result.is_success:
            logging.warning(
                "LLM client '%s' is not reachable (status %d). Answers will be skipped.",
                llm_client.get_engine_name(),
                result.status_code,
            )
    except KnowledgeEngineError as e:
        logging.warning("LLM client '%s' is not reachable: %s. Answers will be skipped.", llm_client.get_engine_name(), e)


def create_app(with_lifespan: bool = True) -> FastAPI:
    """Build the FastAPI application. Without lifespan the caller populates app.state itself."""
    app = FastAPI(
        title="knowledge_engine",
        description=(
            "Retrieval-augmented knowledge engine. Documents are chunked and embedded via "
            "POST /documents, company research is cached via POST /companies, and questions "
            "are answered from both sources via POST /query."
        ),
        version=app_version,
        lifespan=lifespan if with_lifespan else None,
    )
    app.state.logging = logging

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.include_router(document_router)
    app.include_router(query_router)
    app.include_router(analytics_router)
    app.include_router(company_router)

    @app.get("/health", tags=["health"])
    async def health(request: Request) -> HealthResponse:
        """Report the reachability of every backend. Needs no API key."""
        backends: dict[str, str] = {}
        for name in ("store_client", "embed_client", "llm_client"):
            client: ClientInterface = getattr(request.app.state, name)
            try:
                result = await client.do_healthcheck()
                backends[client.get_client_type()] = "ok" if result.is_success else f"status {result.status_code}"
            except KnowledgeEngineError as e:
                backends[client.get_client_type()] = f"error: {e}"
        status = "ok" if all(v == "ok" for v in backends.values()) else "degraded"
        return HealthResponse(status=status, version=app_version, backends=backends)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.info(
        "Starting knowledge_engine API Server v%s from root dir: %s on port 8000...",
        app_version,
        os.environ.get("ROOT_DIR", "unknown"),
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
