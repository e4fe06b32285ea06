"""
Tests for execution/legal_kb/chunker.py

Covers: ChunkConfig validation, sliding-window boundaries and overlap,
        tokenizer vs character fallback, section label extraction.
"""

from unittest.mock import patch, MagicMock

import pytest


class FakeEncoding:
    """One token per character, so token offsets equal character offsets."""

    def encode(self, text):
        return list(text)

    def decode(self, tokens):
        return "".join(tokens)


# ---------------------------------------------------------------------------
# ChunkConfig
# ---------------------------------------------------------------------------

class TestChunkConfig:
    """Tests for ChunkConfig defaults and validation."""

    def test_defaults(self):
        from execution.legal_kb.chunker import ChunkConfig
        cfg = ChunkConfig()
        assert cfg.chunk_size == 1000
        assert cfg.chunk_overlap == 200
        assert cfg.encoding_name == "cl100k_base"
        assert cfg.chars_per_token == 4

    def test_overlap_must_be_smaller_than_size(self):
        from execution.legal_kb.chunker import ChunkConfig
        with pytest.raises(ValueError):
            ChunkConfig(chunk_size=100, chunk_overlap=100)

    def test_size_must_be_positive(self):
        from execution.legal_kb.chunker import ChunkConfig
        with pytest.raises(ValueError):
            ChunkConfig(chunk_size=0, chunk_overlap=0)

    def test_from_env(self, monkeypatch):
        from execution.legal_kb.chunker import ChunkConfig
        monkeypatch.setenv("CHUNK_SIZE", "500")
        monkeypatch.setenv("CHUNK_OVERLAP", "50")
        cfg = ChunkConfig.from_env()
        assert cfg.chunk_size == 500
        assert cfg.chunk_overlap == 50


# ---------------------------------------------------------------------------
# Token windows
# ---------------------------------------------------------------------------

class TestTokenWindows:
    """Window boundaries when a tokenizer is available."""

    def _chunker(self, size=10, overlap=3):
        from execution.legal_kb.chunker import ChunkConfig, TextChunker
        return TextChunker(ChunkConfig(chunk_size=size, chunk_overlap=overlap), encoding=FakeEncoding())

    def test_windows_step_by_size_minus_overlap(self):
        chunks = self._chunker().chunk_text("abcdefghijklmnopqrstuvwxy")  # 25 tokens
        assert [(c.start_offset, c.end_offset) for c in chunks] == [(0, 10), (7, 17), (14, 24), (21, 25)]
        assert all(c.unit == "token" for c in chunks)

    def test_consecutive_windows_share_overlap(self):
        chunks = self._chunker().chunk_text("abcdefghijklmnopqrstuvwxy")
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev.text[-3:] == nxt.text[:3]

    def test_final_window_may_be_short(self):
        chunks = self._chunker().chunk_text("abcdefghijklmnopqrstuvwxy")
        assert chunks[-1].token_count == 4
        assert all(c.token_count == 10 for c in chunks[:-1])

    def test_text_equal_to_window_gives_one_chunk(self):
        chunks = self._chunker().chunk_text("abcdefghij")
        assert len(chunks) == 1
        assert chunks[0].text == "abcdefghij"

    def test_indices_are_sequential(self):
        chunks = self._chunker().chunk_text("x" * 100)
        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_windows_cover_whole_text(self):
        text = "The tenant shall pay rent monthly. " * 5
        chunks = self._chunker(size=20, overlap=5).chunk_text(text)
        assert chunks[0].start_offset == 0
        assert chunks[-1].end_offset == len(text)

    def test_empty_and_whitespace_text(self):
        chunker = self._chunker()
        assert chunker.chunk_text("") == []
        assert chunker.chunk_text("   \n\t ") == []

    def test_count_tokens_uses_encoding(self):
        assert self._chunker().count_tokens("hello") == 5


# ---------------------------------------------------------------------------
# Character fallback
# ---------------------------------------------------------------------------

class TestCharacterFallback:
    """Same window policy applied to characters at 4 chars/token."""

    def test_char_windows(self, chunker):
        chunks = chunker.chunk_text("a" * 1000)
        assert [(c.start_offset, c.end_offset) for c in chunks] == [(0, 400), (320, 720), (640, 1000)]
        assert all(c.unit == "char" for c in chunks)
        assert chunks[0].token_count == 100
        assert chunks[-1].token_count == 90

    def test_count_tokens_approximation_rounds_up(self, chunker):
        assert chunker.count_tokens("abcde") == 2
        assert chunker.count_tokens("abcd") == 1

    def test_tokenizer_disabled(self, chunker):
        assert chunker.uses_tokenizer is False

    def test_tokenizer_load_failure_falls_back(self):
        from execution.legal_kb.chunker import ChunkConfig, TextChunker

        mock_tiktoken = MagicMock()
        mock_tiktoken.get_encoding.side_effect = OSError("no network")
        with patch.dict("sys.modules", {"tiktoken": mock_tiktoken}):
            chunker = TextChunker(ChunkConfig(chunk_size=10, chunk_overlap=2))
            chunks = chunker.chunk_text("a" * 50)

        assert chunker.uses_tokenizer is False
        assert chunks[0].unit == "char"
        assert chunks[0].end_offset == 40

    def test_tokenizer_loaded_once(self):
        from execution.legal_kb.chunker import ChunkConfig, TextChunker

        mock_tiktoken = MagicMock()
        mock_tiktoken.get_encoding.return_value = FakeEncoding()
        with patch.dict("sys.modules", {"tiktoken": mock_tiktoken}):
            chunker = TextChunker(ChunkConfig(chunk_size=10, chunk_overlap=2))
            chunker.chunk_text("some text")
            chunker.count_tokens("more text")

        mock_tiktoken.get_encoding.assert_called_once_with("cl100k_base")


# ---------------------------------------------------------------------------
# Section labels
# ---------------------------------------------------------------------------

class TestExtractSection:
    """Tests for extract_section and TextChunk.section."""

    def test_section_label(self):
        from execution.legal_kb.chunker import extract_section
        assert extract_section("Under Section 12 the tribunal may") == "Section 12"

    def test_article_with_subsection(self):
        from execution.legal_kb.chunker import extract_section
        assert extract_section("see Article 27(4) of the Constitution") == "Article 27(4)"

    def test_lettered_section(self):
        from execution.legal_kb.chunker import extract_section
        assert extract_section("Part 3A applies") == "Part 3A"

    def test_first_match_wins(self):
        from execution.legal_kb.chunker import extract_section
        assert extract_section("Section 4 and Section 6") == "Section 4"

    def test_no_label(self):
        from execution.legal_kb.chunker import extract_section
        assert extract_section("The landlord shall give notice.") is None

    def test_chunk_section_property(self, chunker, sample_act_text):
        chunks = chunker.chunk_text(sample_act_text)
        assert chunks[0].section == "Section 1"
