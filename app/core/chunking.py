"""
Sentence-aware word chunking with overlap for prompt pipelines
"""
from typing import List, Optional
from dataclasses import dataclass, field
import re

import structlog

from app.core.exceptions import ChunkingError

logger = structlog.get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?\n])\s+")


@dataclass(frozen=True)
class ChunkPolicy:
    """How one generation task slices its source text"""
    target_words: int
    overlap_words: int
    max_chunks: int
    time_budget_ms: Optional[int] = None


@dataclass(frozen=True)
class ChunkPlan:
    """Ordered chunks plus the bookkeeping that produced them"""
    chunks: List[str] = field(default_factory=list)
    target_words: int = 0
    overlap_words: int = 0
    total_words: int = 0
    total_chars: int = 0
    time_budget_ms: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.chunks


def _words(text: str) -> List[str]:
    return [w for w in text.split(" ") if w]


class TextChunker:
    """Splits normalized text into word-bounded, sentence-aware chunks"""

    def plan(self, text: str, policy: ChunkPolicy) -> ChunkPlan:
        normalized = _WHITESPACE_RE.sub(" ", text or "").strip()
        if not normalized:
            return ChunkPlan(
                target_words=policy.target_words,
                overlap_words=policy.overlap_words,
                time_budget_ms=policy.time_budget_ms,
            )

        if policy.target_words < 1 or policy.max_chunks < 1:
            raise ChunkingError(
                "Chunk policy needs positive target_words and max_chunks",
                {"target_words": policy.target_words, "max_chunks": policy.max_chunks},
            )

        target = policy.target_words
        overlap = max(0, min(policy.overlap_words, target - 1))
        max_chunks = policy.max_chunks

        # Sentence boundaries are matched on the raw text so newlines count
        sentences = [
            _WHITESPACE_RE.sub(" ", s).strip()
            for s in _SENTENCE_SPLIT_RE.split((text or "").strip())
        ]
        sentences = [s for s in sentences if s]

        if len(sentences) <= 1:
            chunks = self._word_windows(_words(normalized), target, overlap, max_chunks)
        else:
            chunks = self._sentence_chunks(sentences, target, overlap, max_chunks)

        chunks = [c for c in chunks if c.strip()]

        plan = ChunkPlan(
            chunks=chunks,
            target_words=target,
            overlap_words=overlap,
            total_words=len(_words(normalized)),
            total_chars=len(normalized),
            time_budget_ms=policy.time_budget_ms,
        )
        logger.debug("Chunk plan built",
                     chunks=len(plan.chunks),
                     total_words=plan.total_words,
                     target_words=target)
        return plan

    @staticmethod
    def _word_windows(words: List[str], target: int, overlap: int, max_chunks: int) -> List[str]:
        step = max(1, target - overlap)
        chunks: List[str] = []
        start = 0
        while start < len(words) and len(chunks) < max_chunks:
            chunks.append(" ".join(words[start:start + target]))
            if start + target >= len(words):
                break
            start += step
        return chunks

    @staticmethod
    def _sentence_chunks(sentences: List[str], target: int, overlap: int, max_chunks: int) -> List[str]:
        chunks: List[str] = []
        buf: List[str] = []
        buf_words = 0

        for sentence in sentences:
            w = len(_words(sentence))
            if buf_words > 0 and buf_words + w > target:
                chunks.append(" ".join(buf))
                if len(chunks) >= max_chunks:
                    return chunks
                tail = _words(" ".join(buf))[-overlap:] if overlap > 0 else []
                buf = [" ".join(tail), sentence] if tail else [sentence]
                buf_words = len(tail) + w
            else:
                buf.append(sentence)
                buf_words += w

        if buf and len(chunks) < max_chunks:
            chunks.append(" ".join(buf))
        return chunks
