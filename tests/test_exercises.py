import pytest

from app.core.exercises import (
    build_anchors,
    effective_count,
    normalize_exercise,
    normalize_exercises,
    pick_correct_index,
    select_balanced,
    skill_minimums,
)
from fakes import json_result, mcq_payload as mcq

LESSON_TEXT = (
    "Mia goes to the market every morning. She buys fresh bread and red apples. "
    "The market is busy on Saturday morning."
)
WORDS = [{"term": "market"}, {"term": "fresh bread"}, {"term": "red apples"}, {"term": "busy"}]


def test_normalized_exercise_has_exactly_one_correct_option():
    raw = mcq("vocabulary", "What does 'market' mean?", options=5)
    raw["options"][0]["is_correct"] = True
    raw["options"][2]["is_correct"] = "true"

    exercise = normalize_exercise(raw, "en")

    assert len(exercise.options) == 4
    assert [o.label for o in exercise.options] == ["A", "B", "C", "D"]
    assert [o.is_correct for o in exercise.options] == [True, False, False, False]


def test_explicit_correct_index_breaks_ties():
    raw = mcq("grammar", "She ___ to work.")
    raw["options"][1]["is_correct"] = True
    raw["correct_option_index"] = 1

    exercise = normalize_exercise(raw, "en")

    assert exercise.correct_option.text == "option 1"


def test_no_flag_defaults_to_first_option():
    assert pick_correct_index([False, False, False], None) == 0
    assert pick_correct_index([False, False, False], 2) == 2
    assert pick_correct_index([False, True, False], 0) == 1


def test_exercises_with_too_few_options_or_no_type_are_dropped():
    assert normalize_exercise(mcq("vocabulary", "What does 'busy' mean?", options=2), "en") is None
    assert normalize_exercise(mcq("vocabulary", "What does 'busy' mean?", type=""), "en") is None
    assert normalize_exercise(mcq("listening", "What did you hear?"), "en") is None
    assert normalize_exercise(mcq("grammar", "   "), "en") is None


def test_aliases_and_defaults_are_applied():
    exercise = normalize_exercise(mcq("Vocab", "What does 'busy' mean?", difficulty="hard"), "en")

    assert exercise.skill == "vocabulary"
    assert exercise.difficulty == "easy"


def test_support_fields_in_wrong_script_are_blanked():
    raw = mcq("vocabulary", "What does 'busy' mean?", instructions="گزینه درست را انتخاب کنید")
    raw["options"][1]["explanation"] = "این درست نیست"

    exercise = normalize_exercise(raw, "en")

    assert exercise.instructions is None
    assert exercise.options[1].explanation is None
    assert exercise.solution_explanation == "It matches the text."


def test_skill_minimums_never_exceed_count():
    assert skill_minimums(10, 0.4, 0.4) == (4, 4)
    assert skill_minimums(10, 0.6, 0.6) == (5, 5)


def test_anchors_start_with_vocabulary_terms():
    anchors = build_anchors("fresh bread fresh bread and fresh bread", [{"term": "Market"}, {"term": "market"}])

    assert anchors == ["Market", "fresh bread"]


def test_select_balanced_fills_minimums_before_comprehension():
    items = [
        normalize_exercise(mcq("comprehension", f"Who is person {i}?"), "en") for i in range(5)
    ] + [
        normalize_exercise(mcq("vocabulary", f"What does '{w['term']}' mean?"), "en") for w in WORDS
    ] + [
        normalize_exercise(mcq("grammar", f"She ___ thing {i}."), "en") for i in range(3)
    ]

    selected = select_balanced(items, 10, 4, 3, [w["term"] for w in WORDS])

    skills = [e.skill for e in selected]
    assert skills.count("vocabulary") == 4
    assert skills.count("grammar") == 3
    assert skills.count("comprehension") == 3


def test_select_balanced_uses_each_anchor_once_for_short_anchor_lists():
    items = [
        normalize_exercise(mcq("vocabulary", "What does 'market' mean?"), "en"),
        normalize_exercise(mcq("vocabulary", "Which word is closest to 'market'?"), "en"),
    ]

    selected = select_balanced(items, 10, 2, 0, ["market"])

    assert len(selected) == 1


def test_unanchored_questions_are_dropped():
    anchors = ["market", "fresh bread"]
    raw = [
        mcq("vocabulary", "What does 'market' mean?"),
        mcq("vocabulary", "What does 'bakery' mean?"),
        mcq("vocabulary", "What does market mean?"),
        mcq("grammar", "She ___ to the market."),
        mcq("grammar", "Which verb form is correct?"),
        mcq("comprehension", "Why does Mia like FRESH BREAD?"),
        mcq("comprehension", "What is the capital of France?"),
    ]

    kept = normalize_exercises(raw, "en", anchors)

    assert [e.question_prompt for e in kept] == [
        "What does 'market' mean?",
        "She ___ to the market.",
        "Why does Mia like FRESH BREAD?",
    ]
    assert len(normalize_exercises(raw, "en")) == len(raw)


def test_non_finite_correct_index_is_ignored():
    raw = mcq("grammar", "She ___ to work.", correct_option_index=float("nan"))
    raw["options"][0]["is_correct"] = False

    exercise = normalize_exercise(raw, "en")

    assert sum(o.is_correct for o in exercise.options) == 1
    assert exercise.correct_option.label == "A"


def test_short_lessons_cap_the_exercise_count():
    anchors = ["a1", "a2", "a3"]
    short = " ".join(["word"] * 100)
    medium = " ".join(["word"] * 200)
    long = " ".join(["word"] * 300)

    assert effective_count(short, 20, anchors) == 9
    assert effective_count(short, 20, []) == 8
    assert effective_count(short, 6, anchors) == 6
    assert effective_count(medium, 20, anchors * 4) == 18
    assert effective_count(medium, 20, []) == 10
    assert effective_count(long, 20, []) == 20


@pytest.mark.anyio
async def test_service_generates_balanced_batch(services, fake_llm):
    batch = [mcq("vocabulary", f"What does '{w['term']}' mean?") for w in WORDS]
    batch += [mcq("grammar", q) for q in (
        "She ___ to work by bus.", "They ___ happy yesterday.", "We ___ dinner at seven.", "He ___ a book now.")]
    batch += [mcq("comprehension", "When does Mia shop?"), mcq("comprehension", "What happens on Saturday?")]
    batch += [mcq("comprehension", "What is the capital of France?"), mcq("grammar", "Which form is correct?")]
    fake_llm.push(json_result({"exercises": batch}))

    words = WORDS + [{"term": "Mia"}, {"term": "Saturday"}]
    result = await services.exercises.generate(LESSON_TEXT, "en", "en", words=words, count=10)

    assert result.ok
    assert len(result.items) == 10
    assert len(fake_llm.calls) == 1
    assert "What is the capital of France?" not in [e.question_prompt for e in result.items]
    assert all(sum(o.is_correct for o in e.options) == 1 for e in result.items)
    assert '"fresh bread"' in fake_llm.calls[0]["messages"][1]["content"]


@pytest.mark.anyio
async def test_service_rejects_empty_text(services, fake_llm):
    result = await services.exercises.generate("  <p> </p> ")

    assert not result.ok
    assert result.error.kind.value == "empty_input"
    assert fake_llm.calls == []
