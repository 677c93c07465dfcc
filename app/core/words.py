"""
Vocabulary pack generation: terms anchored to the lesson text
"""
from typing import Any, Dict, List, Optional
import re

from app.core.coerce import get_string
from app.core.logging import get_logger
from app.core.pipeline import (
    GenerationService,
    chunk_line,
    custom_prompt_block,
    per_chunk_count,
)
from app.core.result import GenerationErrorKind, GenerationResult
from app.schemas import WordItem
from app.utils.language import is_text_in_language, lang_meta, normalize_language_code
from app.utils.text import normalize_text, shrink_text, word_count

logger = get_logger(__name__)

_MUSIC_MARKER_RE = re.compile(r"\[music\]", re.IGNORECASE)
_KEY_STRIP_RE = re.compile(r"[^\w\s-]+", re.UNICODE)
_KEY_SPACE_RE = re.compile(r"[\s\-_]+", re.UNICODE)
_PLURAL_RE = re.compile(r"(ies|es|s)$")
_SPACE_RE = re.compile(r"\s+")

# Misspelling -> correct form, for English lessons that teach the spelling
CANONICAL_ENGLISH_TERMS = {"isle": "aisle"}

MIN_PER_CHUNK = 5
MAX_PER_CHUNK = 10

WORDS_PROMPT = """You are an expert language teacher and curriculum designer building a vocabulary pack for a language-learning app.

Return ONLY a valid JSON object. No markdown. No extra keys. No extra text.

Schema (exact):
{{"words":[{{"term":"","meaning":"","example_sentence":"","translation":""}}]}}

Goal:
Pick the most useful, high-impact vocabulary needed to understand THIS text. Prefer common, reusable expressions learners actually use.

Count:
- Return EXACTLY {count} items.
- If truly impossible, return as many as possible but at least {min_count}.

Hard constraints (MUST follow):
- Output MUST be valid JSON and MUST match the schema exactly.
- Every "term" MUST appear in the provided text EXACTLY as written (same casing, spaces, punctuation).
- "term" MUST be a vocabulary item (word or short phrase), NOT a full sentence or clause.

Term constraints (VERY STRICT):
- "term" word count: 1 to 5 words ONLY.
- "term" length: max 42 characters.
- "term" MUST NOT contain newline characters.
- "term" MUST NOT contain sentence punctuation: . ! ? ; :
- "term" MUST NOT contain more than 1 comma.
- "term" MUST NOT contain URLs, emails, hashtags, @handles, timestamps, raw numbers, or boilerplate UI/app text.
- Avoid proper names (people/brands/places) unless they are essential learning items.
- Prefer phrases (2-5 words) over single words when they carry meaning and appear in the text.

Meaning (STRICT):
- "meaning" must be a short learner-friendly explanation written ONLY in {target_label} ({target_native}).
- Do NOT translate word-by-word; explain the sense used in THIS text.
- Keep it concise (one short sentence or a phrase). No lists.

Example sentence (STRICT):
- "example_sentence" must be a NEW natural sentence written ONLY in {target_label} ({target_native}).
- It MUST clearly demonstrate the same meaning as "meaning".
- Keep it short, clear, realistic, and learner-friendly.
- Do NOT copy a full sentence from the text. You may reuse the term, but the sentence must be newly written.

Translation (VERY STRICT):
- "translation" must be ONLY in {support_label} ({support_native}), even inside parentheses.
- "translation" MUST translate the ENTIRE example_sentence naturally (human translation). Do NOT translate word-by-word.
- If the term is idiomatic, translate the idiomatic meaning (not the literal words).
- "translation" MUST match the exact sense used in example_sentence.
- REQUIRED FORMAT (exact structure):
  "{{translated example_sentence}} ({{translated meaning of term}})"
  The part in parentheses MUST be a short natural translation of the term itself (same sense as meaning/example).
- If you are not confident the translation is correct and natural (either sentence or term), set "translation" to "".

Quality filters:
- Avoid near-duplicates (same term with minor punctuation/plural changes).
- Avoid overly generic words (e.g., "good", "very", "thing") unless they are key in context.
- Prefer terms that are useful beyond this single text.

Spelling / teaching constraints:
- If the text explicitly teaches a correct spelling (e.g., it spells a word like "A I S L E"),
  output ONLY the correct spelling form.
- Do NOT include the common mistake form if the correct form also appears in the text.
{custom}
{chunk_line}

Text:
{text}"""


def build_word_prompt(
    level: Optional[str] = None,
    domain: Optional[str] = None,
    min_items: Optional[int] = None,
    max_items: Optional[int] = None,
    notes: Optional[str] = None,
    inline_prompt: Optional[str] = None,
) -> Optional[str]:
    """Lesson vocabulary preferences folded into one instruction block"""
    if not any((level, domain, min_items, max_items, notes, inline_prompt)):
        return None

    parts = ["You are selecting vocabulary items for flashcards."]
    if level:
        parts.append(f"Learner level: {level}.")
    if domain:
        parts.append(f"Focus domain: {domain}.")
    if min_items or max_items:
        span = f"{min_items or ''}-{max_items or ''}".strip("-")
        if span:
            parts.append(f"Approximate number of vocabulary items: {span}.")

    parts.extend([
        "Selection preferences:",
        "- Prefer words and phrases that are useful for this learner level and appear in the source text.",
        "- Skip names of people, places, brands, numbers and dates, unless they are very important for understanding the text.",
        "- Avoid extremely rare or technical words unless the focus domain requires them.",
        "- Prefer items that can be reused in many everyday situations, not only in this one text.",
        "- If there are not enough suitable items, return fewer, but never invent words that are not present in the original text.",
    ])
    if notes:
        parts.extend(["Additional preferences from the teacher or course designer:", notes])
    if inline_prompt:
        parts.extend(["Additional user instructions for this specific generation call:", inline_prompt])
    return "\n".join(parts)


def prepare_lesson_text(text: str) -> str:
    return normalize_text(_MUSIC_MARKER_RE.sub(" ", normalize_text(text)))


def clean_field(value: Any) -> str:
    return _SPACE_RE.sub(" ", value.strip()) if isinstance(value, str) else ""


def _term_pattern(term: str, flags: int = 0) -> "re.Pattern[str]":
    return re.compile(r"(?<![^\W_])(" + re.escape(term) + r")(?![^\W_])", flags)


def coerce_term_to_text(term: str, full_text: str) -> str:
    """The exact substring of full_text matching term, preferring same casing"""
    term = term.strip()
    if not term or not full_text:
        return term
    match = _term_pattern(term).search(full_text) or _term_pattern(term, re.IGNORECASE).search(full_text)
    return match.group(1) if match else term


def term_in_text(term: str, full_text: str) -> bool:
    term = term.strip()
    if not term or not full_text:
        return False
    return bool(_term_pattern(term, re.IGNORECASE).search(full_text))


def term_key(term: str) -> str:
    """Dedup key: case, punctuation, spacing and a simple plural folded away"""
    key = _KEY_STRIP_RE.sub("", term.strip().lower())
    key = _KEY_SPACE_RE.sub(" ", key).strip().replace(" ", "")
    return _PLURAL_RE.sub("", key)


def suggest_word_count(text: str, min_items: int) -> int:
    n = word_count(text)
    if n <= 120:
        suggested = 14
    elif n <= 260:
        suggested = 18
    elif n <= 420:
        suggested = 20
    elif n <= 650:
        suggested = 22
    else:
        suggested = 24
    return max(min_items, suggested)


def _frequency(term: str, full_lower: str) -> int:
    lowered = term.lower()
    return full_lower.count(lowered) if lowered else 0


def pick_better(a: WordItem, b: WordItem, full_lower: str) -> WordItem:
    """Between two duplicates prefer frequency, spaced phrases, length, then a translation"""
    fa, fb = _frequency(a.term, full_lower), _frequency(b.term, full_lower)
    if fa != fb:
        return a if fa > fb else b

    sa, sb = " " in a.term, " " in b.term
    if sa != sb:
        return a if sa else b

    if len(a.term) != len(b.term):
        return a if len(a.term) > len(b.term) else b

    ta, tb = bool(a.translation), bool(b.translation)
    if ta != tb:
        return a if ta else b
    return a


def sanitize_word(raw: Dict[str, Any], term: str, target: str, support: str) -> Optional[WordItem]:
    meaning = clean_field(raw.get("meaning"))
    example = clean_field(raw.get("example_sentence"))
    translation = clean_field(raw.get("translation"))

    if not meaning or not example:
        return None
    if not is_text_in_language(meaning, target) or not is_text_in_language(example, target):
        return None
    if translation and not is_text_in_language(translation, support):
        translation = ""

    return WordItem(term=term, meaning=meaning, example_sentence=example, translation=translation or None)


def enforce_canonical_english(items: List[WordItem]) -> List[WordItem]:
    terms = {item.term.strip().lower() for item in items}
    dropped = {wrong for wrong, right in CANONICAL_ENGLISH_TERMS.items() if wrong in terms and right in terms}
    return [item for item in items if item.term.strip().lower() not in dropped]


def merge_and_rank_words(
    raw_items: List[Dict[str, Any]],
    full_text: str,
    desired: int,
    target: str,
    support: str,
) -> List[WordItem]:
    full = prepare_lesson_text(full_text)
    full_lower = full.lower()
    by_key: Dict[str, WordItem] = {}

    for raw in raw_items:
        term_raw = get_string(raw, "term")
        if not term_raw:
            continue
        term = coerce_term_to_text(term_raw, full)
        if not term_in_text(term, full):
            continue

        item = sanitize_word(raw, term, target, support)
        if item is None:
            continue

        key = term_key(item.term)
        if not key:
            continue
        by_key[key] = pick_better(by_key[key], item, full_lower) if key in by_key else item

    kept = list(by_key.values())
    if normalize_language_code(target) == "en":
        kept = enforce_canonical_english(kept)

    kept.sort(key=lambda w: (-_frequency(w.term, full_lower), -len(w.term)))
    return kept[:desired]


class FastLessonWordsService(GenerationService):
    """Vocabulary items whose terms appear verbatim in the lesson text"""

    task = "words"

    def prompt(
        self,
        text: str,
        target: str,
        support: str,
        count: int,
        min_count: int,
        chunk_index: int,
        chunks_total: int,
        custom_prompt: Optional[str] = None,
    ) -> str:
        target_meta = lang_meta(target)
        support_meta = lang_meta(support)
        return WORDS_PROMPT.format(
            count=count,
            min_count=min_count,
            target_label=target_meta.label,
            target_native=target_meta.native,
            support_label=support_meta.label,
            support_native=support_meta.native,
            custom=custom_prompt_block(custom_prompt),
            chunk_line=chunk_line(chunk_index, chunks_total),
            text=text,
        )

    async def generate(
        self,
        text: str,
        target: str = "en",
        support: str = "en",
        custom_prompt: Optional[str] = None,
        count: Optional[int] = None,
    ) -> GenerationResult[WordItem]:
        full_text = prepare_lesson_text(text)
        if not full_text:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Lesson text is empty")

        settings = self.settings
        min_items, max_items = settings.words_min_items, settings.words_max_items
        desired = count or suggest_word_count(full_text, min_items)
        desired = max(min_items, min(max_items, desired))
        minimum = min(min_items, desired)

        shrunk = shrink_text(full_text, settings.words_max_chars)
        plan = self.chunker.plan(shrunk, settings.chunk_policy("words"))
        if plan.is_empty:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Chunk plan is empty")

        per_chunk = per_chunk_count(len(plan.chunks), desired, MIN_PER_CHUNK, MAX_PER_CHUNK)
        per_chunk_min = max(3, int(per_chunk * 0.6))

        def prompt_for(chunk_text: str, index: int, total: int, fallback: bool) -> str:
            if fallback:
                return self.prompt(chunk_text, target, support, desired, minimum, 0, 0, custom_prompt)
            return self.prompt(chunk_text, target, support, per_chunk, per_chunk_min, index, total, custom_prompt)

        log_context = {
            "pipeline": "lesson_words",
            "desired": desired,
            "min_items": min_items,
            "max_items": max_items,
        }
        log = logger.bind(**log_context)

        try:
            merged = await self.run_chunks_until(
                plan,
                prompt_for,
                "words",
                lambda raw: merge_and_rank_words(raw, full_text, desired, target, support),
                desired=desired,
                minimum=minimum,
                fallback_text=shrunk,
                log_context=log_context,
            )
        except Exception as e:
            log.error("Word generation failed", error=str(e))
            return GenerationResult.failure(GenerationErrorKind.UNEXPECTED, str(e))

        if len(merged) < minimum:
            log.warning("Insufficient word items", got=len(merged), need_at_least=minimum)
            return GenerationResult.failure(
                GenerationErrorKind.NO_RESULTS,
                "Insufficient vocabulary items",
                got=len(merged),
                need_at_least=minimum,
            )

        return GenerationResult.success(merged[:desired])
