import pytest

from app.config import ChunkPolicySettings
from app.core.nlp import NlpTask
from app.core.services import build_services
from fakes import failed_result, json_result, mcq_payload

TEXT = "The cat sat on the mat. The dog ran to the door."


def word(term):
    return {"term": term, "meaning": "a thing in the story", "example_sentence": "I can see it.", "translation": ""}


@pytest.fixture
def nlp(settings, fake_llm):
    small_chunks = ChunkPolicySettings(target_words=8, overlap_words=0, max_chunks=4)
    return build_services(settings.model_copy(update={"nlp_chunk": small_chunks}), llm=fake_llm).nlp


@pytest.mark.anyio
async def test_chunks_are_merged_and_deduped(nlp, fake_llm):
    question = mcq_payload("comprehension", "Where did the cat sit?")
    fake_llm.push(
        json_result({
            "sentences": [{"text": "The cat sat on the mat.", "translation": ""}],
            "words": [word("cat"), word("mat")],
            "exercises": [question],
        }),
        json_result({
            "sentences": [{"text": "the cat sat on the mat"}, {"text": "The dog ran to the door."}],
            "words": [word("Cat"), word("door")],
            "exercises": [question],
        }),
    )

    result = await nlp.analyze_text(TEXT)

    assert result.ok
    output = result.items[0]
    assert [w.term for w in output.words] == ["cat", "mat", "door"]
    assert [s.text for s in output.sentences] == ["The cat sat on the mat.", "The dog ran to the door."]
    assert len(output.exercises) == 1
    assert len(fake_llm.calls) == 2
    assert "The dog ran" not in fake_llm.calls[0]["messages"][1]["content"]
    assert "The dog ran to the door." in fake_llm.calls[1]["messages"][1]["content"]


@pytest.mark.anyio
async def test_failed_chunk_does_not_drop_the_others(nlp, fake_llm):
    fake_llm.push(failed_result(), json_result({"words": [word("door")]}))

    result = await nlp.analyze_text(TEXT, task=NlpTask.WORDS_ONLY)

    assert result.ok
    assert [w.term for w in result.items[0].words] == ["door"]


@pytest.mark.anyio
async def test_nothing_usable_is_no_results(nlp, fake_llm):
    fake_llm.push(json_result({"words": []}), json_result({"sentences": [{"text": ""}]}))

    result = await nlp.analyze_text(TEXT)

    assert not result.ok
    assert result.error.kind.value == "no_results"
