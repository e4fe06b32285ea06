"""
Sliding-Window Chunker

Splits extracted document text into overlapping windows sized for embedding.

Windows are measured in tokens (tiktoken, cl100k_base by default). When the
tokenizer cannot be loaded the same window/overlap policy is applied to
characters, approximating one token as four characters.
"""

import os
import re
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# Section/Article/Chapter/Part labels, e.g. "Section 12", "Article 27A", "Part 3(2)"
SECTION_PATTERN = re.compile(
    r"(?:Section|Article|Chapter|Part)\s+(\d+[A-Za-z]?(?:\(\d+\))?)",
    re.IGNORECASE,
)


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters."""
    chunk_size: int = 1000     # tokens per window
    chunk_overlap: int = 200   # tokens shared with the next window
    encoding_name: str = "cl100k_base"
    chars_per_token: int = 4   # used when the tokenizer is unavailable
    use_tokenizer: bool = True

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")

    @classmethod
    def from_env(cls) -> "ChunkConfig":
        return cls(
            chunk_size=int(os.getenv("CHUNK_SIZE", "1000")),
            chunk_overlap=int(os.getenv("CHUNK_OVERLAP", "200")),
            encoding_name=os.getenv("TOKENIZER_ENCODING", "cl100k_base"),
        )


@dataclass
class TextChunk:
    """One window of a document.

    Offsets are in the unit the window was measured in: tokens when the
    tokenizer is in use, characters otherwise (see ``unit``).
    """
    index: int
    text: str
    start_offset: int
    end_offset: int
    token_count: int
    unit: str = "token"

    @property
    def section(self) -> Optional[str]:
        return extract_section(self.text)


def extract_section(text: str) -> Optional[str]:
    """Return the first "Section 12"-style label found in the text, if any."""
    match = SECTION_PATTERN.search(text)
    return match.group(0) if match else None


class TextChunker:
    """
    Token-window chunker with a character fallback.

    Usage:
        chunker = TextChunker()
        chunks = chunker.chunk_text(text)
        tokens = chunker.count_tokens(text)
    """

    def __init__(self, config: Optional[ChunkConfig] = None, encoding=None):
        """
        Initialize chunker.

        Args:
            config: Optional configuration. Uses defaults if not provided.
            encoding: Optional pre-built tokenizer exposing encode/decode.
        """
        self.config = config or ChunkConfig()
        self._encoding = encoding
        self._encoding_loaded = encoding is not None

    def _get_encoding(self):
        """Load the tiktoken encoding once; None means use the character fallback."""
        if self._encoding_loaded:
            return self._encoding
        self._encoding_loaded = True
        if not self.config.use_tokenizer:
            return None
        try:
            import tiktoken
            self._encoding = tiktoken.get_encoding(self.config.encoding_name)
        except Exception as e:
            # tiktoken fetches BPE files on first use; offline hosts land here
            logger.warning(
                f"Tokenizer {self.config.encoding_name} unavailable, "
                f"using {self.config.chars_per_token} chars/token approximation: {e}"
            )
            self._encoding = None
        return self._encoding

    @property
    def uses_tokenizer(self) -> bool:
        return self._get_encoding() is not None

    def count_tokens(self, text: str) -> int:
        """Count tokens with the tokenizer, or approximate from length."""
        encoding = self._get_encoding()
        if encoding is not None:
            return len(encoding.encode(text))
        return -(-len(text) // self.config.chars_per_token)

    def chunk_text(self, text: str) -> list[TextChunk]:
        """
        Split text into overlapping windows.

        Each window starts ``chunk_size - chunk_overlap`` units after the
        previous one. The final window may be shorter than ``chunk_size``.

        Args:
            text: Full document text

        Returns:
            Chunks in document order, indexed from 0
        """
        if not text or not text.strip():
            return []

        encoding = self._get_encoding()
        if encoding is not None:
            return self._chunk_tokens(text, encoding)
        return self._chunk_chars(text)

    def _windows(self, total: int, size: int, overlap: int):
        step = size - overlap
        start = 0
        while start < total:
            end = min(start + size, total)
            yield start, end
            if end >= total:
                break
            start += step

    def _chunk_tokens(self, text: str, encoding) -> list[TextChunk]:
        tokens = encoding.encode(text)
        chunks = []
        for start, end in self._windows(
            len(tokens), self.config.chunk_size, self.config.chunk_overlap
        ):
            chunks.append(TextChunk(
                index=len(chunks),
                text=encoding.decode(tokens[start:end]),
                start_offset=start,
                end_offset=end,
                token_count=end - start,
                unit="token",
            ))
        return chunks

    def _chunk_chars(self, text: str) -> list[TextChunk]:
        cpt = self.config.chars_per_token
        chunks = []
        for start, end in self._windows(
            len(text), self.config.chunk_size * cpt, self.config.chunk_overlap * cpt
        ):
            piece = text[start:end]
            chunks.append(TextChunk(
                index=len(chunks),
                text=piece,
                start_offset=start,
                end_offset=end,
                token_count=-(-len(piece) // cpt),
                unit="char",
            ))
        return chunks


# CLI for testing
if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) < 2:
        print("Usage: python -m execution.legal_kb.chunker <text-file>")
        sys.exit(1)

    with open(sys.argv[1], encoding="utf-8") as f:
        content = f.read()

    chunker = TextChunker(ChunkConfig.from_env())
    result = chunker.chunk_text(content)
    print(f"Total tokens: {chunker.count_tokens(content)}")
    print(f"Chunks: {len(result)}")
    for c in result[:5]:
        print(f"  [{c.index}] {c.start_offset}-{c.end_offset} ({c.unit}) section={c.section}")
