import uuid

import pytest
from sqlalchemy import delete, select

from app.ai_lesson_job import run_ai_lesson_job
from app.analysis_job import run_analysis_job
from app.core.job_runner import JobContext, run_job
from app.generation_job import (
    run_exercises_job,
    run_grammar_job,
    run_process_job,
    run_sentences_job,
    run_words_job,
)
from app.models import (
    GenerationJob,
    Lesson,
    LessonExercise,
    LessonExerciseOption,
    LessonGrammarPoint,
    LessonSentence,
    LessonWord,
)
from app.translation_job import run_translation_job
from fakes import add_lesson, failed_result, json_result, lesson_pack_payload, mcq_payload

TEXT = "The cat sat on the mat. THE CAT ran to the door."


def word(term):
    return {"term": term, "meaning": "a thing in the story", "example_sentence": "I can see it.", "translation": ""}


def new_job_id() -> str:
    return str(uuid.uuid4())


async def fetch_all(session_factory, model, lesson_id):
    async with session_factory() as session:
        rows = await session.scalars(
            select(model).where(model.lesson_id == lesson_id).order_by(model.order_index)
        )
        return rows.all()


async def fetch(session_factory, model, key):
    async with session_factory() as session:
        return await session.get(model, key)


async def seed_words(session_factory, lesson_id, *terms):
    async with session_factory() as session:
        async with session.begin():
            session.add_all(
                LessonWord(lesson_id=lesson_id, order_index=i, term=term) for i, term in enumerate(terms)
            )


@pytest.mark.anyio
async def test_words_job_replaces_existing_words(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    await seed_words(session_factory, lesson_id, "old one", "old two")
    fake_llm.push(json_result({"words": [word("cat"), word("mat")]}))
    job_id = new_job_id()

    status = await run_words_job(lesson_id, job_id, **job_overrides)

    assert status == "completed"
    words = await fetch_all(session_factory, LessonWord, lesson_id)
    assert sorted(w.term for w in words) == ["cat", "mat"]
    assert [w.order_index for w in words] == [0, 1]
    job = await fetch(session_factory, GenerationJob, job_id)
    assert job.status == "completed"
    assert job.items_created == 2
    assert job.completed_at is not None


@pytest.mark.anyio
async def test_words_job_appends_after_existing_order(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    await seed_words(session_factory, lesson_id, "old one", "old two")
    fake_llm.push(json_result({"words": [word("door")]}))

    status = await run_words_job(lesson_id, new_job_id(), replace_existing=False, **job_overrides)

    assert status == "completed"
    words = await fetch_all(session_factory, LessonWord, lesson_id)
    assert [(w.term, w.order_index) for w in words] == [("old one", 0), ("old two", 1), ("door", 2)]


@pytest.mark.anyio
async def test_failed_generation_leaves_lesson_untouched(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    await seed_words(session_factory, lesson_id, "keep me")
    fake_llm.push(failed_result(), failed_result())
    job_id = new_job_id()

    status = await run_words_job(lesson_id, job_id, **job_overrides)

    assert status == "skipped"
    words = await fetch_all(session_factory, LessonWord, lesson_id)
    assert [w.term for w in words] == ["keep me"]
    job = await fetch(session_factory, GenerationJob, job_id)
    assert job.error_message == "no_results"


@pytest.mark.anyio
async def test_empty_text_is_skipped_without_calls(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text="   ")

    status = await run_grammar_job(lesson_id, new_job_id(), **job_overrides)

    assert status == "skipped"
    assert fake_llm.calls == []


@pytest.mark.anyio
async def test_locked_lesson_is_skipped(session_factory, fake_llm, locks, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    await locks.acquire(f"lock:lesson:{lesson_id}:words", "another-job", 60)
    job_id = new_job_id()

    status = await run_words_job(lesson_id, job_id, **job_overrides)

    assert status == "skipped"
    assert fake_llm.calls == []
    job = await fetch(session_factory, GenerationJob, job_id)
    assert job.error_message == "locked"


@pytest.mark.anyio
async def test_lock_is_released_after_the_job(session_factory, fake_llm, locks, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    fake_llm.push(json_result({"words": [word("cat")]}))

    await run_words_job(lesson_id, new_job_id(), **job_overrides)

    assert await locks.holder(f"lock:lesson:{lesson_id}:words") is None


@pytest.mark.anyio
async def test_missing_lesson_fails_the_job(session_factory, job_overrides):
    job_id = new_job_id()

    status = await run_words_job(9999, job_id, **job_overrides)

    assert status == "failed"
    job = await fetch(session_factory, GenerationJob, job_id)
    assert job.status == "failed"
    assert "not found" in job.error_message


@pytest.mark.anyio
async def test_job_is_failed_even_when_the_failure_hook_raises(session_factory, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    job_id = new_job_id()
    ctx = JobContext(job_id=job_id, job_type="words", lesson_id=lesson_id, **job_overrides)

    async def body(_ctx):
        raise ValueError("generation broke")

    async def on_failure(_ctx, _error):
        raise RuntimeError("status update broke")

    status = await run_job(ctx, body, on_failure=on_failure)

    assert status == "failed"
    job = await fetch(session_factory, GenerationJob, job_id)
    assert job.status == "failed"
    assert job.error_message == "generation broke"
    assert await job_overrides["locks"].holder(ctx.lock_key) is None


@pytest.mark.anyio
async def test_grammar_replace_keeps_other_collections(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    await seed_words(session_factory, lesson_id, "cat")
    fake_llm.push(json_result({"grammar_points": [{
        "id": "past_simple",
        "title": "Past simple",
        "description": "Finished actions in the past.",
        "pattern": "verb + ed",
        "examples": [
            {"sentence": "The cat sat on the mat.", "translation": "The cat was sitting.", "source": "lesson"},
            {"sentence": "She walked home.", "translation": "She went home on foot.", "source": "extra"},
        ],
    }]}))

    status = await run_grammar_job(lesson_id, new_job_id(), **job_overrides)

    assert status == "completed"
    points = await fetch_all(session_factory, LessonGrammarPoint, lesson_id)
    assert [p.key for p in points] == ["past_simple"]
    assert len(points[0].examples) == 2
    assert len(await fetch_all(session_factory, LessonWord, lesson_id)) == 1


@pytest.mark.anyio
async def test_sentences_job_keeps_one_copy_per_sentence(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    fake_llm.push(json_result({"sentences": [
        {"text": "The cat sat on the mat.", "translation": ""},
        {"text": "the cat sat on the mat", "translation": ""},
        {"text": "The cat ran to the door.", "translation": ""},
    ]}))

    status = await run_sentences_job(lesson_id, new_job_id(), **job_overrides)

    assert status == "completed"
    sentences = await fetch_all(session_factory, LessonSentence, lesson_id)
    assert [s.text for s in sentences] == ["The cat sat on the mat.", "The cat ran to the door."]
    assert {s.source for s in sentences} == {"ai"}


@pytest.mark.anyio
async def test_exercises_job_replaces_exercises_and_options(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    await seed_words(session_factory, lesson_id, "mat", "door")
    async with session_factory() as session:
        async with session.begin():
            old = LessonExercise(lesson_id=lesson_id, order_index=0, type="mcq", skill="vocabulary",
                                 question_prompt="Old question?")
            old.options = [LessonExerciseOption(order_index=0, label="A", text="old", is_correct=True)]
            session.add(old)
    fake_llm.push(json_result({"exercises": [
        mcq_payload("vocabulary", "What does 'mat' mean?"),
        mcq_payload("grammar", "She ___ home yesterday.", correct=1),
        mcq_payload("comprehension", "Why did the cat run to the door?", correct=2),
        mcq_payload("comprehension", "Where did the story happen?"),
    ]}))

    status = await run_exercises_job(lesson_id, new_job_id(), **job_overrides)

    assert status == "completed"
    exercises = await fetch_all(session_factory, LessonExercise, lesson_id)
    assert [e.question_prompt for e in exercises] == [
        "What does 'mat' mean?",
        "She ___ home yesterday.",
        "Why did the cat run to the door?",
    ]
    async with session_factory() as session:
        options = (await session.scalars(select(LessonExerciseOption))).all()
    assert len(options) == 9
    assert sum(o.is_correct for o in options) == 3
    assert '"term": "mat"' in fake_llm.calls[0]["messages"][1]["content"]


@pytest.mark.anyio
async def test_process_job_writes_all_collections_and_marks_ready(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    fake_llm.push(json_result({
        "sentences": [{"text": "The cat sat on the mat.", "translation": ""}],
        "words": [word("cat"), word("Cat")],
        "exercises": [mcq_payload("comprehension", "Where did the cat sit?")],
    }))
    job_id = new_job_id()

    status = await run_process_job(lesson_id, job_id, **job_overrides)

    assert status == "completed"
    lesson = await fetch(session_factory, Lesson, lesson_id)
    assert lesson.status == "ready"
    assert [s.text for s in await fetch_all(session_factory, LessonSentence, lesson_id)] == ["The cat sat on the mat."]
    assert [w.term for w in await fetch_all(session_factory, LessonWord, lesson_id)] == ["cat"]
    exercises = await fetch_all(session_factory, LessonExercise, lesson_id)
    assert len(exercises) == 1
    job = await fetch(session_factory, GenerationJob, job_id)
    assert job.result_data == {"sentences": 1, "words": 1, "exercises": 1}


@pytest.mark.anyio
async def test_process_job_without_output_marks_lesson_failed(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    fake_llm.push(failed_result())

    status = await run_process_job(lesson_id, new_job_id(), task="words_only", **job_overrides)

    assert status == "skipped"
    lesson = await fetch(session_factory, Lesson, lesson_id)
    assert lesson.status == "failed"


@pytest.mark.anyio
async def test_translation_job_fills_missing_translations(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT, support_language="nl")
    async with session_factory() as session:
        async with session.begin():
            session.add_all([
                LessonSentence(lesson_id=lesson_id, order_index=0, text="The cat sat on the mat."),
                LessonSentence(lesson_id=lesson_id, order_index=1, text="The cat ran.", translation="De kat rende."),
            ])
    sentences = await fetch_all(session_factory, LessonSentence, lesson_id)
    fake_llm.push(json_result({"translations": [{"id": sentences[0].id, "translation": "De kat zat op de mat."}]}))

    status = await run_translation_job(lesson_id, new_job_id(), **job_overrides)

    assert status == "completed"
    translated = await fetch_all(session_factory, LessonSentence, lesson_id)
    assert [s.translation for s in translated] == ["De kat zat op de mat.", "De kat rende."]
    assert f"ID: {sentences[1].id}\n" not in fake_llm.calls[0]["messages"][1]["content"]


@pytest.mark.anyio
async def test_analysis_job_merges_meta(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, original_text=TEXT, analysis_meta={"lesson_pack": {"title": "x"}})
    fake_llm.push(
        json_result({"notes": {"overview_points": ["a cat"]}, "meta_guess": {"estimated_level": "A1"}}),
        json_result({
            "overview": "A tiny story about a cat.",
            "grammar_points": "- past simple",
            "vocabulary_focus": "- cat\n- mat",
            "study_tips": "- retell the story",
            "meta": {"estimated_level": "A1", "estimated_time_minutes": 10},
        }),
    )

    status = await run_analysis_job(lesson_id, new_job_id(), **job_overrides)

    assert status == "completed"
    lesson = await fetch(session_factory, Lesson, lesson_id)
    assert lesson.analysis_overview == "A tiny story about a cat."
    assert lesson.analysis_meta == {
        "lesson_pack": {"title": "x"},
        "estimated_level": "A1",
        "estimated_time_minutes": 10,
    }


@pytest.mark.anyio
async def test_ai_lesson_job_writes_pack_and_chains_analysis(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(
        session_factory,
        original_text=None,
        status="generating",
        tags=["cafe"],
        analysis_meta={"ai_generation": {"topic": "Ordering coffee", "length": "short"}},
    )
    fake_llm.push(
        json_result(lesson_pack_payload()),
        json_result({"notes": {"overview_points": ["ordering in a cafe"]}}),
        failed_result(),
    )

    status = await run_ai_lesson_job(lesson_id, new_job_id(), **job_overrides)

    assert status == "completed"
    lesson = await fetch(session_factory, Lesson, lesson_id)
    assert lesson.status == "draft"
    assert lesson.title == "Ordering coffee"
    assert lesson.original_text.startswith("Sara walks into a small cafe")
    assert len(lesson.short_description) <= 180
    assert lesson.tags == ["cafe", "ordering"]
    assert lesson.analysis_meta["ai_generation"]["topic"] == "Ordering coffee"
    assert len(lesson.analysis_meta["lesson_pack"]["dialogue"]) == 12
    assert lesson.analysis_overview == "- ordering in a cafe"
    assert len(fake_llm.calls) == 3


@pytest.mark.anyio
async def test_ai_lesson_job_failure_marks_lesson_failed(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(
        session_factory,
        status="generating",
        analysis_meta={"ai_generation": {"topic": "Ordering coffee"}},
    )
    fake_llm.push(*[json_result(lesson_pack_payload(speakers=("A",))) for _ in range(3)])
    job_id = new_job_id()

    status = await run_ai_lesson_job(lesson_id, job_id, **job_overrides)

    assert status == "failed"
    lesson = await fetch(session_factory, Lesson, lesson_id)
    assert lesson.status == "failed"
    assert "exactly 2 speakers" in lesson.analysis_meta["ai_generation_error"]
    job = await fetch(session_factory, GenerationJob, job_id)
    assert job.status == "failed"


@pytest.mark.anyio
async def test_ai_lesson_job_ignores_lessons_not_generating(session_factory, fake_llm, job_overrides):
    lesson_id = await add_lesson(session_factory, status="ready")

    status = await run_ai_lesson_job(lesson_id, new_job_id(), **job_overrides)

    assert status == "skipped"
    assert fake_llm.calls == []


@pytest.mark.anyio
async def test_process_job_survives_lesson_deleted_mid_run(session_factory, fake_llm, job_overrides, monkeypatch):
    lesson_id = await add_lesson(session_factory, original_text=TEXT)
    fake_llm.push(json_result({"words": [word("cat")]}))
    chat = fake_llm.chat

    async def chat_then_delete(messages, options=None):
        async with session_factory() as session:
            async with session.begin():
                await session.execute(delete(Lesson).where(Lesson.id == lesson_id))
        return await chat(messages, options)

    monkeypatch.setattr(fake_llm, "chat", chat_then_delete)
    job_id = new_job_id()

    status = await run_process_job(lesson_id, job_id, task="words_only", **job_overrides)

    assert status == "completed"
    assert await fetch(session_factory, Lesson, lesson_id) is None
    job = await fetch(session_factory, GenerationJob, job_id)
    assert job.status == "completed"
