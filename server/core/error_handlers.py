from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from server.models.responses import ErrorResponse
from shared.errors.engine_errors import (
    DocumentBusyError,
    DocumentNotFoundError,
    EmbeddingError,
    GenerationError,
    InvalidInputError,
    KnowledgeEngineError,
    RetrievalTimeoutError,
    StorageError,
)

# most specific first
STATUS_CODES: list[tuple[type[KnowledgeEngineError], int]] = [
    (InvalidInputError, 400),
    (DocumentNotFoundError, 404),
    (DocumentBusyError, 409),
    (EmbeddingError, 502),
    (GenerationError, 502),
    (StorageError, 503),
    (RetrievalTimeoutError, 504),
]


def get_status_code(exc: KnowledgeEngineError) -> int:
    for error_class, status_code in STATUS_CODES:
        if isinstance(exc, error_class):
            return status_code
    return 500


async def handle_engine_error(request: Request, exc: KnowledgeEngineError) -> JSONResponse:
    """Render an engine error as JSON with its HTTP status and retry hint."""
    status_code = get_status_code(exc)
    logging = request.app.state.logging
    if status_code >= 500:
        logging.error("%s %s failed: %s: %s", request.method, request.url.path, exc.__class__.__name__, exc)
    else:
        logging.info("%s %s rejected: %s: %s", request.method, request.url.path, exc.__class__.__name__, exc)
    body = ErrorResponse(detail=str(exc), error=exc.__class__.__name__, retryable=exc.retryable)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(KnowledgeEngineError, handle_engine_error)
