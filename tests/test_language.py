from app.utils.language import (
    is_text_in_language,
    lang_meta,
    label_for_language,
    normalize_language_code,
    resolve_lesson_languages,
    support_text_looks_valid,
)
from app.utils.text import normalize_text, shrink_text


def test_language_codes_are_normalized():
    assert normalize_language_code("EN_us") == "en"
    assert normalize_language_code("fas") == "fa"
    assert normalize_language_code("  ") is None
    assert normalize_language_code(None) is None


def test_unknown_language_meta_falls_back_to_code():
    assert lang_meta("nl-BE").label == "Dutch"
    assert lang_meta("fa").direction == "rtl"
    assert lang_meta("xx").label == "xx"
    assert label_for_language("xx") == "the target language"


def test_script_checks():
    assert is_text_in_language("Ik woon in Amsterdam.", "nl")
    assert not is_text_in_language("Я живу в Москве.", "nl")
    assert is_text_in_language("Я живу в Москве.", "ru")
    assert is_text_in_language("من در تهران زندگی می کنم", "fa")
    assert not is_text_in_language("كان هذا في البيت", "fa")
    assert is_text_in_language("", "de")


def test_support_guard_rejects_arabic_script_outside_arabic_languages():
    assert support_text_looks_valid("De kat slaapt.", "nl")
    assert not support_text_looks_valid("گربه", "nl")
    assert not support_text_looks_valid("   ", "en")
    assert support_text_looks_valid("گربه می خوابد", "fa")
    assert not support_text_looks_valid("كانت هذه المدرسة", "fa")


def test_explicit_languages_skip_detection():
    assert resolve_lesson_languages("NL", "fas", "any text") == ("nl", "fa")
    assert resolve_lesson_languages("de", None, "", default_support="en") == ("de", "en")


def test_missing_target_falls_back_when_text_is_empty():
    assert resolve_lesson_languages(None, None, "", default_target="es") == ("es", "en")


def test_normalize_text_strips_tags_and_entities():
    assert normalize_text("<p>Tom &amp; Jerry</p>\n\n run") == "Tom & Jerry run"


def test_shrink_text_keeps_head_and_tail():
    shrunk = shrink_text("a" * 50 + "b" * 50, 20)

    assert shrunk == "a" * 10 + "\n...\n" + "b" * 10
    assert shrink_text("short", 20) == "short"
