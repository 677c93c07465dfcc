from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import re

from langdetect import DetectorFactory, detect_langs
from langdetect.lang_detect_exception import LangDetectException

DetectorFactory.seed = 0


@dataclass(frozen=True)
class LanguageMeta:
    """Display data for a learning language."""

    code: str
    label: str
    native: str
    direction: str = "ltr"


_SUPPORTED: dict[str, LanguageMeta] = {
    meta.code: meta
    for meta in (
        LanguageMeta("en", "English", "English"),
        LanguageMeta("fa", "Persian (Farsi)", "فارسی", "rtl"),
        LanguageMeta("nl", "Dutch", "Nederlands"),
        LanguageMeta("de", "German", "Deutsch"),
        LanguageMeta("fr", "French", "Français"),
        LanguageMeta("es", "Spanish", "Español"),
        LanguageMeta("it", "Italian", "Italiano"),
        LanguageMeta("pt", "Portuguese", "Português"),
        LanguageMeta("ru", "Russian", "Русский"),
        LanguageMeta("tr", "Turkish", "Türkçe"),
        LanguageMeta("ar", "Arabic", "العربية", "rtl"),
        LanguageMeta("hi", "Hindi", "हिन्दी"),
        LanguageMeta("ur", "Urdu", "اردو", "rtl"),
        LanguageMeta("sv", "Swedish", "Svenska"),
        LanguageMeta("no", "Norwegian", "Norsk"),
        LanguageMeta("da", "Danish", "Dansk"),
        LanguageMeta("pl", "Polish", "Polski"),
        LanguageMeta("ja", "Japanese", "日本語"),
        LanguageMeta("ko", "Korean", "한국어"),
        LanguageMeta("zh", "Chinese", "中文"),
    )
}

_ALIASES = {"fas": "fa", "per": "fa", "nld": "nl", "dut": "nl", "eng": "en", "ger": "de", "deu": "de"}

_LATIN_LANGS = {"en", "nl", "de", "fr", "es", "it", "pt", "pl", "sv", "no", "da", "tr"}
_ARABIC_SCRIPT_LANGS = {"fa", "ar", "ur"}

_LATIN_RANGES = ((0x0041, 0x005A), (0x0061, 0x007A), (0x00C0, 0x024F), (0x1E00, 0x1EFF))
_CYRILLIC_RANGES = ((0x0400, 0x04FF), (0x0500, 0x052F), (0x2DE0, 0x2DFF), (0xA640, 0xA69F))
_ARABIC_RANGES = ((0x0600, 0x06FF), (0x0750, 0x077F), (0x08A0, 0x08FF), (0xFB50, 0xFDFF), (0xFE70, 0xFEFF))
_DEVANAGARI_RANGES = ((0x0900, 0x097F),)
_KANA_KANJI_RANGES = ((0x3040, 0x30FF), (0x4E00, 0x9FFF))
_HANGUL_RANGES = ((0x1100, 0x11FF), (0x3130, 0x318F), (0xAC00, 0xD7AF))
_HAN_RANGES = ((0x3400, 0x4DBF), (0x4E00, 0x9FFF))

_ARABIC_DIACRITICS_RE = re.compile("[\\u064B-\\u065F\\u0670\\u06D6-\\u06ED]")
# Arabic function words that do not occur in Persian prose
_ARABIC_SIGNAL_WORDS = ("كانت", "كان", "هذا", "هذه", "الذي", "التي", "في", "إلى", "على", "لكن", "لذلك")
_ARABIC_MARKERS = ("ة", "ى", "ً", "ٌ", "ٍ", "َ", "ُ", "ِ", "ّ", "ْ")
_ARABIC_WORDS_IN_PERSIAN = ("كانت", "كان", "التي", "الذي", "هذا", "هذه", "على", "إلى", "في")


def normalize_language_code(code: Optional[str]) -> Optional[str]:
    """Lower-case base code with three-letter aliases folded (fas -> fa)."""
    if not code:
        return None
    cleaned = code.replace("_", "-").strip().lower()
    if not cleaned:
        return None
    base = cleaned.split("-")[0]
    return _ALIASES.get(base, base)


def lang_meta(code: Optional[str]) -> LanguageMeta:
    normalized = normalize_language_code(code) or "en"
    meta = _SUPPORTED.get(normalized)
    if meta is None:
        return LanguageMeta(normalized, normalized, normalized)
    return meta


def label_for_language(code: Optional[str]) -> str:
    normalized = normalize_language_code(code)
    if not normalized:
        return "the target language"
    meta = _SUPPORTED.get(normalized)
    return meta.label if meta else "the target language"


def _char_in_ranges(ch: str, ranges: tuple[tuple[int, int], ...]) -> bool:
    code_point = ord(ch)
    return any(start <= code_point <= end for start, end in ranges)


def _script_ratio(text: str, ranges: tuple[tuple[int, int], ...]) -> Optional[float]:
    letters = [ch for ch in text if ch.isalpha()]
    if not letters:
        return None
    hits = sum(1 for ch in letters if _char_in_ranges(ch, ranges))
    return hits / len(letters)


def _has_script(text: str, ranges: tuple[tuple[int, int], ...]) -> bool:
    return any(_char_in_ranges(ch, ranges) for ch in text)


def contains_arabic_script(text: str) -> bool:
    return _has_script(text, _ARABIC_RANGES)


def _ratio_at_least(text: str, ranges, threshold: float) -> bool:
    ratio = _script_ratio(text, ranges)
    return ratio is None or ratio >= threshold


def is_text_in_language(text: str, lang_code: Optional[str]) -> bool:
    """Script-level check that text is written in lang_code; unknown languages pass."""
    text = (text or "").strip()
    if not text:
        return True

    code = normalize_language_code(lang_code) or ""

    if code in _LATIN_LANGS:
        return _ratio_at_least(text, _LATIN_RANGES, 0.85)

    if code == "fa":
        if _ARABIC_DIACRITICS_RE.search(text):
            return False
        tokens = set(re.findall(r"\w+", text))
        if any(sig in tokens for sig in _ARABIC_SIGNAL_WORDS):
            return False
        return _ratio_at_least(text, _ARABIC_RANGES, 0.75)

    if code in ("ar", "ur"):
        return _ratio_at_least(text, _ARABIC_RANGES, 0.75)

    if code == "ru":
        return _ratio_at_least(text, _CYRILLIC_RANGES, 0.85)

    if code == "hi":
        return _ratio_at_least(text, _DEVANAGARI_RANGES, 0.85)

    if code == "ja":
        return _has_script(text, _KANA_KANJI_RANGES)

    if code == "ko":
        return _has_script(text, _HANGUL_RANGES)

    if code == "zh":
        return _has_script(text, _HAN_RANGES)

    return True


def support_text_looks_valid(text: str, support_code: Optional[str]) -> bool:
    """Reject empty text, stray Arabic script, and Arabic leaking into Persian."""
    text = (text or "").strip()
    if not text:
        return False

    code = normalize_language_code(support_code) or ""

    if code not in _ARABIC_SCRIPT_LANGS and contains_arabic_script(text):
        return False

    if code == "fa":
        hits = sum(1 for marker in _ARABIC_MARKERS if marker in text)
        padded = f" {text} "
        hits += sum(1 for word in _ARABIC_WORDS_IN_PERSIAN if f" {word} " in padded)
        if hits >= 2:
            return False

    return True


def detect_language(text: str, fallback: Optional[str] = None, *, min_confidence: float = 0.55) -> Optional[str]:
    """Best langdetect guess for text, or the normalized fallback."""
    sample = (text or "").strip()[:4000]
    fallback_code = normalize_language_code(fallback)
    if not sample:
        return fallback_code
    try:
        candidates = detect_langs(sample)
    except LangDetectException:
        return fallback_code
    for candidate in candidates:
        if candidate.prob >= min_confidence:
            return normalize_language_code(candidate.lang)
    return fallback_code


def resolve_lesson_languages(
    target: Optional[str],
    support: Optional[str],
    text: str,
    *,
    default_target: str = "en",
    default_support: str = "en",
) -> tuple[str, str]:
    """Lesson language pair; a missing target is detected from the lesson text."""
    target_code = normalize_language_code(target) or detect_language(text, fallback=default_target) or "en"
    support_code = normalize_language_code(support) or normalize_language_code(default_support) or "en"
    return target_code, support_code


__all__ = [
    "LanguageMeta",
    "contains_arabic_script",
    "detect_language",
    "is_text_in_language",
    "label_for_language",
    "lang_meta",
    "normalize_language_code",
    "resolve_lesson_languages",
    "support_text_looks_valid",
]
