import pytest

from app.core.chunking import ChunkPolicy, TextChunker
from app.core.exceptions import ChunkingError


def _sentence(i: int) -> str:
    return f"Sentence number {i} has exactly seven words."


def test_empty_text_gives_empty_plan():
    plan = TextChunker().plan("   \n\t ", ChunkPolicy(target_words=10, overlap_words=2, max_chunks=3, time_budget_ms=500))

    assert plan.is_empty
    assert plan.total_words == 0
    assert plan.time_budget_ms == 500


def test_short_text_is_one_chunk():
    plan = TextChunker().plan("Hello there.  How are\nyou?", ChunkPolicy(target_words=50, overlap_words=5, max_chunks=4))

    assert plan.chunks == ["Hello there. How are you?"]
    assert plan.total_words == 5


def test_sentences_are_not_split_across_chunks():
    text = " ".join(_sentence(i) for i in range(10))
    plan = TextChunker().plan(text, ChunkPolicy(target_words=20, overlap_words=0, max_chunks=20))

    assert len(plan.chunks) > 1
    for chunk in plan.chunks:
        assert chunk.endswith(".")
        assert len(chunk.split()) <= 21


def test_max_chunks_caps_the_plan():
    text = " ".join(_sentence(i) for i in range(30))
    plan = TextChunker().plan(text, ChunkPolicy(target_words=14, overlap_words=0, max_chunks=3))

    assert len(plan.chunks) == 3
    assert plan.total_words == 30 * 7


def test_overlap_carries_tail_words_into_next_chunk():
    text = " ".join(_sentence(i) for i in range(4))
    plan = TextChunker().plan(text, ChunkPolicy(target_words=14, overlap_words=3, max_chunks=10))

    first, second = plan.chunks[0], plan.chunks[1]
    assert second.split()[:3] == first.split()[-3:]


def test_single_long_sentence_uses_word_windows():
    text = " ".join(f"w{i}" for i in range(25))
    plan = TextChunker().plan(text, ChunkPolicy(target_words=10, overlap_words=2, max_chunks=10))

    assert plan.chunks[0].split() == [f"w{i}" for i in range(10)]
    assert plan.chunks[1].split()[0] == "w8"
    assert plan.chunks[-1].split()[-1] == "w24"


def test_overlap_is_clamped_below_target():
    text = " ".join(f"w{i}" for i in range(12))
    plan = TextChunker().plan(text, ChunkPolicy(target_words=4, overlap_words=9, max_chunks=50))

    assert plan.overlap_words == 3
    assert all(c.strip() for c in plan.chunks)


def test_invalid_policy_raises():
    with pytest.raises(ChunkingError):
        TextChunker().plan("some words here", ChunkPolicy(target_words=0, overlap_words=0, max_chunks=1))


def test_same_input_gives_same_plan():
    text = "\n".join(_sentence(i) for i in range(30))
    policy = ChunkPolicy(target_words=20, overlap_words=4, max_chunks=10)

    first = TextChunker().plan(text, policy)
    second = TextChunker().plan(text, policy)

    assert first == second
    assert len(first.chunks) > 1
    assert first.chunks[0].startswith("Sentence number 0")
