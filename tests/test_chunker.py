"""
Unit tests for the overlapping text chunker.
"""

import pytest

from services.knowledge_engine.Chunker import ChunkSequence, join_chunks, split_text
from shared.errors.engine_errors import InvalidInputError

PARAGRAPHS = "\n\n".join(
    [
        "Retrieval augmented generation combines a search step with a language model. " * 4,
        "Documents are split into overlapping chunks before they are embedded. " * 4,
        "Each chunk keeps a reference to its document so answers can cite their sources. " * 4,
    ]
)


class TestSplitText:
    """Tests for split_text boundaries and sizes."""

    def test_short_text_is_one_chunk(self):
        assert list(split_text("A short note.", 500, 50)) == ["A short note."]

    def test_three_paragraphs_reconstruct_exactly(self):
        """A 3-paragraph document with 500/50 yields 2-4 chunks that join back to the source."""
        chunks = list(split_text(PARAGRAPHS, 500, 50))
        assert 2 <= len(chunks) <= 4
        assert join_chunks(chunks, 50) == PARAGRAPHS

    def test_chunks_respect_target_size(self):
        chunks = list(split_text(PARAGRAPHS, 120, 20))
        assert all(len(chunk) <= 120 for chunk in chunks)
        assert join_chunks(chunks, 20) == PARAGRAPHS

    def test_adjacent_chunks_share_overlap(self):
        chunks = list(split_text(PARAGRAPHS, 150, 30))
        for previous, current in zip(chunks, chunks[1:]):
            assert current[:30] == previous[-30:]

    def test_prefers_paragraph_boundary(self):
        text = "First paragraph text here.\n\nSecond paragraph that is rather long and keeps going."
        chunks = list(split_text(text, 60, 5))
        assert chunks[0].endswith("\n\n")

    def test_falls_back_to_sentence_boundary(self):
        text = "One sentence here. Another sentence follows and it goes on for a while without stopping"
        chunks = list(split_text(text, 40, 5))
        assert chunks[0] == "One sentence here. "

    def test_hard_cut_without_boundaries(self):
        text = "x" * 250
        chunks = list(split_text(text, 100, 10))
        assert [len(c) for c in chunks] == [100, 100, 70]
        assert join_chunks(chunks, 10) == text

    def test_zero_overlap(self):
        text = "abcdefghij" * 10
        chunks = list(split_text(text, 25, 0))
        assert "".join(chunks) == text


class TestSplitTextValidation:
    """Tests for rejected inputs."""

    @pytest.mark.parametrize("text", ["", "   ", "\n\n\t"])
    def test_blank_text_rejected(self, text):
        with pytest.raises(InvalidInputError):
            split_text(text, 100, 10)

    @pytest.mark.parametrize("size,overlap", [(0, 0), (-5, 0), (100, -1), (100, 100), (50, 80)])
    def test_inconsistent_sizes_rejected(self, size, overlap):
        with pytest.raises(InvalidInputError):
            split_text("some text", size, overlap)

    def test_invalid_input_error_is_value_error(self):
        with pytest.raises(ValueError):
            split_text("", 100, 10)


class TestChunkSequence:
    """Tests for the lazy, restartable sequence."""

    def test_is_restartable(self):
        sequence = split_text(PARAGRAPHS, 100, 10)
        assert isinstance(sequence, ChunkSequence)
        assert list(sequence) == list(sequence)

    def test_join_empty(self):
        assert join_chunks([], 10) == ""
