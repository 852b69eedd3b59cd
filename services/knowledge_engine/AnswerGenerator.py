from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.errors.engine_errors import GenerationError
from shared.helper.HelperConfig import HelperConfig
from shared.models.retrieval import ContextItem, RetrievalResult, SourceType

SYSTEM_PROMPT = (
    "You are an AI assistant with access to a knowledge base. "
    "Provide accurate, well-sourced responses based on the given context."
)

USER_PROMPT_TEMPLATE = """You are an AI assistant with access to a knowledge base. Please answer the user's question based on the provided context.

Context:
{context}

User Question: {query}

Instructions:
1. Use the provided context to answer the question
2. If the context doesn't contain enough information, clearly state that
3. Provide a comprehensive and helpful response
4. Cite the sources by their [number] when using specific information
5. Maintain a professional and helpful tone

Response:"""

NO_CONTEXT = "No relevant context was found in the knowledge base."


def build_context_items(retrieval: RetrievalResult) -> list[ContextItem]:
    """Merge both pools into one numbered list: company research first, then knowledge chunks."""
    items: list[ContextItem] = []
    for company in retrieval.company_matches:
        items.append(
            ContextItem(
                position=len(items) + 1,
                source_type=SourceType.COMPANY,
                id=company.id,
                title=company.company_name,
                content=company.description or "",
                similarity=company.similarity,
                metadata={
                    "industry": company.industry,
                    "location": company.location,
                    "confidence": company.confidence,
                    "research_data": company.research_data,
                },
            )
        )
    for chunk in sorted(retrieval.chunks, key=lambda c: c.similarity, reverse=True):
        items.append(
            ContextItem(
                position=len(items) + 1,
                source_type=SourceType.KNOWLEDGE,
                id=chunk.id,
                title=chunk.document_title,
                content=chunk.text,
                similarity=chunk.similarity,
                metadata={
                    "document_id": chunk.document_id,
                    "chunk_index": chunk.chunk_index,
                    "document_tags": chunk.document_tags,
                    "source_url": chunk.source_url,
                },
            )
        )
    return items


def format_context(items: list[ContextItem]) -> str:
    lines = []
    for item in items:
        if item.source_type == SourceType.COMPANY:
            lines.append(f"[{item.position}] {item.title}: {item.content} (Company research)")
        else:
            lines.append(f"[{item.position}] {item.content} (Source: {item.title})")
    return "\n\n".join(lines)


class AnswerGenerator:
    """Asks the LLM backend for an answer grounded in the merged context."""

    def __init__(self, helper_config: HelperConfig, llm_client: LLMClientInterface) -> None:
        self.logging = helper_config.get_logger()
        self._llm_client = llm_client

    def build_messages(self, query: str, context: str) -> list[dict]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": USER_PROMPT_TEMPLATE.format(context=context or NO_CONTEXT, query=query)},
        ]

    async def generate(self, query: str, context: str) -> str:
        """
        Raises:
            GenerationError: If the backend fails or returns an empty answer.
        """
        answer = await self._llm_client.do_chat(self.build_messages(query, context))
        if not answer or not answer.strip():
            raise GenerationError("Generation backend returned an empty answer.")
        return answer.strip()
