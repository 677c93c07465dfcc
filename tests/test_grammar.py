import pytest

from app.core.grammar import desired_grammar_point_count, grammar_key, normalize_grammar_points
from fakes import json_result


def point(point_id, title="Past simple", **extra):
    raw = {
        "id": point_id,
        "title": title,
        "level": "A2",
        "description": "Use it for finished actions.",
        "pattern": "subject + verb-ed",
        "examples": [
            {"sentence": "I walked home.", "translation": "I went home on foot.", "source": "extra"},
            {"sentence": "The cat sat on the mat.", "translation": "The cat was on the mat.", "source": "lesson"},
            {"sentence": "She played.", "translation": "She had fun.", "source": "extra"},
        ],
    }
    raw.update(extra)
    return raw


def test_incomplete_points_are_dropped():
    points = [
        point("no_pattern", pattern=""),
        point("", key=""),
        point("wrong_script", title="گذشته ساده"),
        point("one_example", examples=[{"sentence": "I walked.", "translation": "I went.", "source": "lesson"}]),
        point("bad_translations", examples=[
            {"sentence": "I walked.", "translation": "رفتم", "source": "lesson"},
            {"sentence": "I ran.", "translation": "", "source": "extra"},
            {"sentence": "", "translation": "Nothing.", "source": "extra"},
        ]),
    ]

    assert normalize_grammar_points(points, "en") == []


def test_points_are_deduped_by_key_and_capped_at_two():
    points = [
        point("Past Simple"),
        point("past  simple!"),
        point("present_perfect", title="Present perfect"),
        point("future", title="Future with will"),
    ]

    normalized = normalize_grammar_points(points, "en")

    assert [p.key for p in normalized] == ["Past Simple", "present_perfect"]
    assert grammar_key("past  simple!") == grammar_key("Past Simple") == "past_simple"


def test_lesson_and_extra_examples_are_kept():
    normalized = normalize_grammar_points([point("past_simple")], "en")

    examples = normalized[0].examples
    assert [e.source for e in examples] == ["lesson", "extra"]
    assert examples[0].sentence == "The cat sat on the mat."


def test_unknown_example_source_becomes_extra():
    raw = point("past_simple", examples=[
        {"sentence": "I walked.", "translation": "I went.", "source": "book"},
        {"sentence": "I ran.", "translation": "I hurried."},
    ])

    normalized = normalize_grammar_points([raw], "en")

    assert [e.source for e in normalized[0].examples] == ["extra", "extra"]


def test_long_lessons_ask_for_two_points():
    assert desired_grammar_point_count(100) == 1
    assert desired_grammar_point_count(351) == 2


@pytest.mark.anyio
async def test_service_returns_one_point_for_short_text(services, fake_llm):
    fake_llm.push(json_result({"grammar_points": [point("past_simple"), point("present", title="Present")]}))

    result = await services.grammar.generate("The cat sat on the mat. The cat ran to the door.")

    assert result.ok
    assert [p.key for p in result.items] == ["past_simple"]
    assert len(fake_llm.calls) == 1
