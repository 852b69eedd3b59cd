"""Error taxonomy of the knowledge engine.

Every error raised across a service boundary derives from KnowledgeEngineError.
The ``retryable`` flag tells callers whether repeating the same call (with
backoff) can succeed without changing the input.
"""


class KnowledgeEngineError(Exception):
    """Base class for all knowledge engine failures."""

    retryable: bool = False


class InvalidInputError(KnowledgeEngineError, ValueError):
    """Malformed chunking, ingestion or retrieval parameters."""


class DocumentNotFoundError(KnowledgeEngineError, LookupError):
    """The document does not exist or belongs to another owner."""


class DocumentBusyError(KnowledgeEngineError):
    """The document is currently being processed by another ingestion run."""

    retryable = True


class EmbeddingError(KnowledgeEngineError):
    """The embedding provider failed or returned an unusable response."""

    retryable = True


class EmbeddingDimensionError(EmbeddingError):
    """An embedding does not have the configured system-wide dimension."""

    retryable = False


class StorageError(KnowledgeEngineError):
    """The persistent store failed to read or write."""

    retryable = True


class RetrievalTimeoutError(KnowledgeEngineError, TimeoutError):
    """A bounded wait was exceeded."""

    retryable = True


class GenerationError(KnowledgeEngineError):
    """The generation backend failed. Never escapes the orchestrator."""

    retryable = True
