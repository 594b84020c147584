"""Text chunking service for RAG ingestion."""

import re
from typing import Any, Dict, List, Optional

from botkit_rag.config import Settings, get_settings
from botkit_rag.models.chunk import ChunkMetadata, TextChunk
from botkit_rag.utils.errors import ChunkingError
from botkit_rag.utils.logging import get_logger

logger = get_logger("chunking_service")

PARAGRAPH_PATTERN = re.compile(r"\n\s*\n")
SENTENCE_PATTERN = re.compile(r"(?<=[.!?])\s+")

# A chunk whose overlap would push it past this multiple of chunk_size keeps no overlap
MAX_OVERLAP_GROWTH = 1.5


class TextChunker:
    """
    Split normalized text into overlapping character-sized chunks.

    Pipeline:
    - normalize line endings and whitespace
    - split on blank lines (paragraphs)
    - re-split paragraphs longer than chunk_size on sentence boundaries
    - merge chunks smaller than min_chunk_size with their neighbours
    - attach overlap windows from the previous and next chunk
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        min_chunk_size: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the chunker.

        Args:
            chunk_size: Maximum chunk size in characters (defaults to settings.chunking.size)
            chunk_overlap: Overlap in characters, capped at half the chunk size
            min_chunk_size: Chunks below this size are merged with neighbours
        """
        settings = settings or get_settings()
        self.chunk_size = chunk_size or settings.chunking.size
        overlap = chunk_overlap if chunk_overlap is not None else settings.chunking.overlap
        self.chunk_min_size = min_chunk_size if min_chunk_size is not None else settings.chunking.min_size

        if self.chunk_size <= 0:
            raise ChunkingError("chunk_size must be > 0", details={"chunk_size": self.chunk_size})
        if overlap < 0:
            raise ChunkingError("overlap must be >= 0", details={"overlap": overlap})
        self.chunk_overlap = min(overlap, self.chunk_size // 2)

    def split_text(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> List[TextChunk]:
        """
        Split text into chunks carrying position metadata.

        Args:
            text: Input text
            metadata: Metadata merged into every chunk's metadata

        Returns:
            Chunks with contiguous chunk_index values starting at 0; empty
            input yields an empty list
        """
        if text is None:
            raise ChunkingError("Text is None")

        normalized = self._normalize_text(text)
        if not normalized:
            return []

        pieces = self._split(normalized, PARAGRAPH_PATTERN)
        pieces = self._optimize_chunks(pieces)
        pieces = self._merge_small_chunks(pieces)
        chunks = self._process_chunks(pieces, metadata or {})

        logger.info(
            "Chunked text",
            extra={
                "extra_fields": {
                    "chunks": len(chunks),
                    "chunk_size": self.chunk_size,
                    "overlap": self.chunk_overlap,
                    "input_length": len(normalized),
                }
            },
        )
        return chunks

    def get_settings(self) -> Dict[str, int]:
        return {
            "chunk_size": self.chunk_size,
            "chunk_overlap": self.chunk_overlap,
            "min_chunk_size": self.chunk_min_size,
        }

    @staticmethod
    def _normalize_text(text: str) -> str:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()

    @staticmethod
    def _split(text: str, pattern: re.Pattern) -> List[str]:
        return [part.strip() for part in pattern.split(text) if part and part.strip()]

    def _hard_split(self, text: str) -> List[str]:
        # a single sentence longer than chunk_size has no natural boundary left
        return [text[i : i + self.chunk_size] for i in range(0, len(text), self.chunk_size)]

    def _optimize_chunks(self, pieces: List[str]) -> List[str]:
        optimized: List[str] = []
        for piece in pieces:
            if len(piece) <= self.chunk_size:
                optimized.append(piece)
                continue

            current = ""
            for sentence in self._split(piece, SENTENCE_PATTERN):
                if len(sentence) > self.chunk_size:
                    if current:
                        optimized.append(current)
                        current = ""
                    optimized.extend(self._hard_split(sentence))
                    continue
                if not current or len(current) + 1 + len(sentence) <= self.chunk_size:
                    current = f"{current} {sentence}" if current else sentence
                else:
                    if current:
                        optimized.append(current)
                    current = sentence
            if current:
                optimized.append(current)
        return optimized

    def _merge_small_chunks(self, pieces: List[str]) -> List[str]:
        if not pieces:
            return pieces

        merged: List[str] = []
        current = ""
        for piece in pieces:
            if current and len(current) >= self.chunk_min_size:
                merged.append(current)
                current = piece
                continue
            if not current or len(current) + 1 + len(piece) <= self.chunk_size:
                current = f"{current} {piece}" if current else piece
            else:
                if current:
                    merged.append(current)
                current = piece

        if current:
            if len(current) < self.chunk_min_size and merged:
                previous = merged.pop()
                if len(previous) + 1 + len(current) <= self.chunk_size:
                    merged.append(f"{previous} {current}")
                else:
                    merged.extend([previous, current])
            else:
                merged.append(current)
        return merged

    def _process_chunks(self, pieces: List[str], metadata: Dict[str, Any]) -> List[TextChunk]:
        total = len(pieces)
        chunks: List[TextChunk] = []
        for i, piece in enumerate(pieces):
            prev_overlap = pieces[i - 1][-self.chunk_overlap :] if i > 0 and self.chunk_overlap else ""
            next_overlap = pieces[i + 1][: self.chunk_overlap] if i < total - 1 and self.chunk_overlap else ""

            content = piece
            if prev_overlap:
                content = f"{prev_overlap}\n{content}"
            if next_overlap:
                content = f"{content}\n{next_overlap}"
            if len(content) > self.chunk_size * MAX_OVERLAP_GROWTH:
                content = piece
                prev_overlap = next_overlap = ""

            chunk_meta = ChunkMetadata.from_flat_dict(
                {
                    **metadata,
                    "chunk_index": i,
                    "total_chunks": total,
                    "has_previous": i > 0,
                    "has_next": i < total - 1,
                    "size": len(content),
                    "original_size": len(piece),
                    "has_overlap_prev": bool(prev_overlap),
                    "has_overlap_next": bool(next_overlap),
                }
            )
            chunks.append(TextChunk(content=content, metadata=chunk_meta))
        return chunks
