import pytest

from app.core.analysis import clamp_minutes, join_bullets, merge_notes
from fakes import failed_result, json_result

TEXT = "Tom takes the train to work. He reads a book on the way. The train is often late in winter."


def notes_row(overview, level=None, minutes=None):
    return {"json": {
        "notes": {"overview_points": overview, "grammar_points": ["present simple"], "vocabulary_focus": ["commute"],
                  "study_tips": ["read aloud"]},
        "meta_guess": {"estimated_level": level, "estimated_time_minutes": minutes},
    }}


def final_payload(**overrides):
    data = {
        "overview": "A short text about commuting by train.",
        "grammar_points": "- present simple for routines",
        "vocabulary_focus": "- commute\n- late",
        "study_tips": "- read the text aloud twice",
        "meta": {"estimated_level": "A2", "estimated_time_minutes": 200},
    }
    data.update(overrides)
    return data


def test_merge_notes_dedupes_and_caps_sections():
    rows = [
        notes_row([f"point {i}" for i in range(5)], level="A2", minutes=10),
        notes_row(["Point 1", "point 5", "point 6", "point 7"], level="B1", minutes=30),
        {"json": {"notes": {}, "meta_guess": {"estimated_time_minutes": 90}}},
    ]

    merged = merge_notes(rows)

    assert merged["overview_points"] == [f"point {i}" for i in range(6)]
    assert merged["grammar_points"] == ["present simple"]
    assert merged["meta_guess"] == {"estimated_level": "A2", "estimated_time_minutes": 20}


def test_minutes_are_clamped():
    assert clamp_minutes(1) == 5
    assert clamp_minutes("200") == 90
    assert clamp_minutes(None) == 15


def test_join_bullets_formats_unique_items():
    assert join_bullets(["a", "A", "b"]) == "- a\n- b"


@pytest.mark.anyio
async def test_final_synthesis_is_used_when_valid(services, fake_llm):
    fake_llm.push(json_result(notes_row(["commuting"], "A2", 15)["json"]), json_result(final_payload()))

    result = await services.analysis.generate(TEXT, "en", "en")

    analysis = result.items[0]
    assert analysis.overview == "A short text about commuting by train."
    assert analysis.meta == {"estimated_level": "A2", "estimated_time_minutes": 90}
    assert fake_llm.calls[1]["options"]["operation"] == "lesson_analysis_final"


@pytest.mark.anyio
async def test_notes_are_the_fallback_when_synthesis_fails(services, fake_llm):
    fake_llm.push(json_result(notes_row(["commuting"], "A2", 15)["json"]), failed_result())

    result = await services.analysis.generate(TEXT, "en", "en")

    analysis = result.items[0]
    assert analysis.overview == "- commuting"
    assert analysis.meta["source"] == "notes"


@pytest.mark.anyio
async def test_synthesis_in_wrong_script_falls_back_to_notes(services, fake_llm):
    fake_llm.push(
        json_result(notes_row(["commuting"])["json"]),
        json_result(final_payload(overview="متن کوتاه درباره قطار")),
    )

    result = await services.analysis.generate(TEXT, "en", "en")

    assert result.items[0].meta["source"] == "notes"


@pytest.mark.anyio
async def test_no_notes_and_no_synthesis_is_a_failure(services, fake_llm):
    fake_llm.push(failed_result(), failed_result())

    result = await services.analysis.generate(TEXT, "en", "en")

    assert not result.ok
