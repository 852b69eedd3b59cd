"""Retrieval orchestrator.

Flow of one query:
  1. query cache lookup (a hit with an answer returns right away)
  2. similarity scan over both pools, shielded from cancellation
  3. merge into a numbered context, company research first
  4. answer generation, degraded to ``generation_skipped`` on failure
  5. cache write and usage log, both best-effort

The whole call is bounded by RAG_TIMEOUT_SECONDS. An interrupted scan still
runs to completion in the background and lands in the query cache, and so
does the scan result of a call cancelled during generation. Cache and usage
writes that outlast the deadline also finish in the background.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime

from services.knowledge_engine.AnswerGenerator import AnswerGenerator, build_context_items, format_context
from services.knowledge_engine.QueryCache import QueryCache
from services.knowledge_engine.SimilarityRetriever import SimilarityRetriever
from services.knowledge_engine.UsageRecorder import UsageRecorder
from shared.errors.engine_errors import InvalidInputError, RetrievalTimeoutError
from shared.helper.HelperConfig import HelperConfig
from shared.models.knowledge import QueryType, UsageFeedback, UsageLogEntry, utc_now
from shared.models.retrieval import RAGResponse, RetrievalOptions, RetrievalResult


class RetrievalOrchestrator:
    def __init__(
        self,
        helper_config: HelperConfig,
        retriever: SimilarityRetriever,
        generator: AnswerGenerator,
        query_cache: QueryCache,
        usage_recorder: UsageRecorder,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._retriever = retriever
        self._generator = generator
        self._query_cache = query_cache
        self._usage_recorder = usage_recorder
        self._clock = clock
        self._background_tasks: set[asyncio.Task] = set()

        self.timeout = helper_config.get_number_val("RAG_TIMEOUT_SECONDS", default=30)
        self.default_options = RetrievalOptions(
            match_count=int(helper_config.get_number_val("RAG_MATCH_COUNT", default=5)),
            similarity_threshold=helper_config.get_number_val("RAG_SIMILARITY_THRESHOLD", default=0.7),
            company_match_count=int(helper_config.get_number_val("RAG_COMPANY_MATCH_COUNT", default=3)),
            company_similarity_threshold=helper_config.get_number_val("RAG_COMPANY_SIMILARITY_THRESHOLD", default=0.6),
        )

    ##########################################
    ################ CORE ####################
    ##########################################

    async def generate_rag_response(
        self, query: str, owner_id: str, options: RetrievalOptions | None = None
    ) -> RAGResponse:
        """Retrieve context for a query and generate an answer from it.

        Args:
            query (str): The user question.
            owner_id (str): The owner whose knowledge base is searched.
            options (RetrievalOptions | None): Retrieval parameters, defaults from configuration.

        Returns:
            RAGResponse: Answer, cited sources and the raw retrieval. A failed generation is
                reported through ``generation_skipped`` and ``generation_error``.

        Raises:
            InvalidInputError: If query or owner are empty.
            EmbeddingError: If the query cannot be embedded.
            StorageError: If candidates cannot be read.
            RetrievalTimeoutError: If the scan does not finish within RAG_TIMEOUT_SECONDS.
        """
        return await self._run(query, owner_id, options, generate=True)

    async def retrieve_only(
        self, query: str, owner_id: str, options: RetrievalOptions | None = None
    ) -> RAGResponse:
        """Like generate_rag_response without the generation step. Still cached and logged."""
        return await self._run(query, owner_id, options, generate=False)

    async def record_feedback(
        self, usage_id: str, owner_id: str, rating: int, comment: str | None = None
    ) -> UsageFeedback:
        return await self._usage_recorder.record_feedback(usage_id, owner_id, rating, comment)

    async def _run(self, query: str, owner_id: str, options: RetrievalOptions | None, generate: bool) -> RAGResponse:
        if not query or not query.strip():
            raise InvalidInputError("Query must not be empty.")
        if not owner_id or not owner_id.strip():
            raise InvalidInputError("owner_id must not be empty.")
        options = options or self.default_options
        started = time.perf_counter()
        deadline = asyncio.get_running_loop().time() + self.timeout

        cached = await self._cache_get(query, owner_id, options, deadline)
        cache_hit = cached is not None
        answer: str | None = None
        if cached is not None:
            retrieval, answer = cached
        else:
            retrieval = await self._scan(query, owner_id, options, deadline)

        items = build_context_items(retrieval)
        context = format_context(items)
        generation_skipped = False
        generation_error: str | None = None
        if generate and answer is None:
            try:
                answer, generation_error = await self._generate(query, context, deadline)
            except asyncio.CancelledError:
                if not cache_hit:
                    self._track(self._write_cache(query, owner_id, options, retrieval, None))
                raise
            generation_skipped = answer is None
            if answer is not None or not cache_hit:
                await self._cache_put(query, owner_id, options, retrieval, answer, deadline)
        elif not cache_hit:
            await self._cache_put(query, owner_id, options, retrieval, None, deadline)

        response = RAGResponse(
            query=query,
            answer=answer if generate else None,
            sources=items,
            context=context,
            retrieval=retrieval,
            generation_skipped=generation_skipped,
            generation_error=generation_error,
            cache_hit=cache_hit,
            response_time_ms=int((time.perf_counter() - started) * 1000),
        )
        response.usage_id = await self._record_usage(query, owner_id, options, response, deadline)
        return response

    ##########################################
    ################ STEPS ###################
    ##########################################

    async def _scan(self, query: str, owner_id: str, options: RetrievalOptions, deadline: float) -> RetrievalResult:
        scan_task = asyncio.create_task(self._retriever.retrieve(query, owner_id, options))
        try:
            return await asyncio.wait_for(asyncio.shield(scan_task), timeout=self._remaining(deadline))
        except asyncio.TimeoutError:
            self._cache_in_background(scan_task, query, owner_id, options)
            self.logging.error("Retrieval for owner %s exceeded %ss", owner_id, self.timeout)
            raise RetrievalTimeoutError(f"Retrieval exceeded {self.timeout} seconds.")
        except asyncio.CancelledError:
            self._cache_in_background(scan_task, query, owner_id, options)
            raise

    def _cache_in_background(self, scan_task: asyncio.Task, query: str, owner_id: str, options: RetrievalOptions) -> None:
        async def finish() -> None:
            try:
                retrieval = await scan_task
            except Exception as exc:
                self.logging.warning("Interrupted retrieval for owner %s failed: %s", owner_id, exc)
                return
            await self._write_cache(query, owner_id, options, retrieval, None)

        self._track(finish())

    async def _generate(self, query: str, context: str, deadline: float) -> tuple[str | None, str | None]:
        """Returns (answer, None) on success, (None, reason) otherwise."""
        remaining = self._remaining(deadline)
        if remaining <= 0:
            return None, "No time left for generation."
        try:
            return await asyncio.wait_for(self._generator.generate(query, context), timeout=remaining), None
        except asyncio.TimeoutError:
            self.logging.warning("Generation timed out after %.2fs", remaining)
            return None, "Generation timed out."
        except Exception as exc:
            self.logging.warning("Generation failed, returning retrieval only: %s", exc)
            return None, str(exc) or exc.__class__.__name__

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    @staticmethod
    def _remaining(deadline: float) -> float:
        return max(0.0, deadline - asyncio.get_running_loop().time())

    async def _within_deadline(self, coro, deadline: float, what: str) -> bool:
        """Await a best-effort write until the deadline; a slower write continues in the background.

        Returns False only if the write finished and failed.
        """
        task = self._track(coro)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._remaining(deadline))
        except asyncio.TimeoutError:
            self.logging.warning("%s did not finish within %ss, completing in the background", what, self.timeout)
            return True

    async def wait_for_background_tasks(self) -> None:
        """Wait for interrupted scans and overdue writes still finishing in the background."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    ##########################################
    ############ CACHE & ANALYTICS ###########
    ##########################################

    async def _cache_get(
        self, query: str, owner_id: str, options: RetrievalOptions, deadline: float
    ) -> tuple[RetrievalResult, str | None] | None:
        """Return (retrieval, answer) of a usable cache entry. Failures, timeouts and unreadable entries are misses."""
        try:
            entry = await asyncio.wait_for(
                self._query_cache.get(query, owner_id, options), timeout=self._remaining(deadline)
            )
            if entry is None:
                return None
            return RetrievalResult.model_validate(entry.result["retrieval"]), entry.result.get("answer")
        except asyncio.TimeoutError:
            self.logging.warning("Query cache lookup exceeded the time limit, treating it as a miss")
        except Exception as exc:
            self.logging.warning("Query cache lookup failed, treating it as a miss: %s", exc)
        return None

    async def _cache_put(
        self,
        query: str,
        owner_id: str,
        options: RetrievalOptions,
        retrieval: RetrievalResult,
        answer: str | None,
        deadline: float,
    ) -> None:
        await self._within_deadline(
            self._write_cache(query, owner_id, options, retrieval, answer), deadline, "Query cache write"
        )

    async def _write_cache(
        self, query: str, owner_id: str, options: RetrievalOptions, retrieval: RetrievalResult, answer: str | None
    ) -> bool:
        try:
            await self._query_cache.put(
                query, owner_id, options, {"retrieval": retrieval.model_dump(mode="json"), "answer": answer}
            )
        except Exception as exc:
            self.logging.warning("Query cache write failed: %s", exc)
            return False
        return True

    @staticmethod
    def get_query_type(options: RetrievalOptions) -> QueryType:
        if options.include_company_research and options.company_match_count > 0:
            return QueryType.HYBRID if options.match_count > 0 else QueryType.COMPANY
        return QueryType.KNOWLEDGE

    async def _record_usage(
        self, query: str, owner_id: str, options: RetrievalOptions, response: RAGResponse, deadline: float
    ) -> str | None:
        entry = UsageLogEntry(
            owner_id=owner_id,
            query=query,
            query_type=self.get_query_type(options),
            search_params=options.model_dump(mode="json"),
            results_count=response.retrieval.total_retrieved,
            top_similarity=response.retrieval.top_similarity,
            response_time_ms=response.response_time_ms,
            cache_hit=response.cache_hit,
            generation_skipped=response.generation_skipped,
            created_at=self._clock(),
        )
        recorded = await self._within_deadline(self._write_usage(entry), deadline, "Usage log write")
        return entry.id if recorded else None

    async def _write_usage(self, entry: UsageLogEntry) -> bool:
        try:
            await self._usage_recorder.record(entry)
        except Exception as exc:
            self.logging.warning("Recording usage failed: %s", exc)
            return False
        return True
