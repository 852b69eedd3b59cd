"""Overlapping text chunker.

Chunks end on a paragraph boundary where the window holds one, otherwise on a
sentence boundary, otherwise at a hard character cut. Each chunk after the
first starts ``overlap`` characters before the end of its predecessor, so the
chunks can be joined back into the exact source text.
"""

from collections.abc import Iterator

from shared.errors.engine_errors import InvalidInputError

PARAGRAPH_SEPARATORS = ("\n\n",)
SENTENCE_SEPARATORS = (". ", "! ", "? ", "\n")


class ChunkSequence:
    """Lazy, restartable sequence of chunks. Every iteration recomputes from the source text."""

    def __init__(self, text: str, target_size: int, overlap: int):
        self.text = text
        self.target_size = target_size
        self.overlap = overlap

    def __iter__(self) -> Iterator[str]:
        text = self.text
        start = 0
        while True:
            limit = start + self.target_size
            if limit >= len(text):
                yield text[start:]
                return
            end = self._find_boundary(start, limit)
            yield text[start:end]
            start = end - self.overlap

    def _find_boundary(self, start: int, limit: int) -> int:
        """Returns the chunk end for the window text[start:limit]. Always > start + overlap."""
        floor = start + self.overlap
        for separators in (PARAGRAPH_SEPARATORS, SENTENCE_SEPARATORS):
            best = -1
            for separator in separators:
                idx = self.text.rfind(separator, floor, limit)
                if idx != -1:
                    best = max(best, idx + len(separator))
            if best > floor:
                return best
        return limit

    def __repr__(self) -> str:
        return f"ChunkSequence(chars={len(self.text)}, target_size={self.target_size}, overlap={self.overlap})"


def split_text(text: str, target_size: int = 500, overlap: int = 50) -> ChunkSequence:
    """Split text into overlapping chunks of at most ``target_size`` characters.

    Args:
        text (str): The document content.
        target_size (int): Maximum characters per chunk.
        overlap (int): Characters shared between adjacent chunks.

    Returns:
        ChunkSequence: The chunks, computed on iteration.

    Raises:
        InvalidInputError: If the text is empty or blank, or the size parameters are inconsistent.
    """
    if not text or not text.strip():
        raise InvalidInputError("Cannot chunk empty text.")
    if target_size <= 0:
        raise InvalidInputError(f"Chunk size must be positive, got {target_size}.")
    if overlap < 0:
        raise InvalidInputError(f"Chunk overlap must not be negative, got {overlap}.")
    if overlap >= target_size:
        raise InvalidInputError(f"Chunk overlap ({overlap}) must be smaller than chunk size ({target_size}).")
    return ChunkSequence(text, target_size, overlap)


def join_chunks(chunks: list[str], overlap: int) -> str:
    """Rebuild the source text from chunks produced by split_text with the same overlap."""
    if not chunks:
        return ""
    return chunks[0] + "".join(chunk[overlap:] for chunk in chunks[1:])
