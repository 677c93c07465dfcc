"""
Shadowing sentence generation
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
    translation_language_guard,
)
from app.core.result import GenerationErrorKind, GenerationResult
from app.schemas import SentenceItem
from app.utils.language import lang_meta, support_text_looks_valid
from app.utils.text import normalize_text, shrink_text, word_count

logger = get_logger(__name__)

_MUSIC_PREFIX_RE = re.compile(r"^\[music\]\s*", re.IGNORECASE)
_MUSIC_SUFFIX_RE = re.compile(r"\s*\[music\]$", re.IGNORECASE)
_SPACE_RE = re.compile(r"\s+")
_ELLIPSIS_RE = re.compile(r"\.{3,}")
_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_TIMESTAMP_RE = re.compile(r"\b\d{1,2}:\d{2}\b")
_KEY_RE = re.compile(r"[^\w\s]+|_", re.UNICODE)

QUOTE_CHARS = " \t\n\r\0\x0b\"“”‘’'«»"

# Platform talk, calls to action and podcast framing
JUNK_MARKERS = (
    "welcome back",
    "subscribe",
    "like and subscribe",
    "episode of",
    "english pod",
    "englishpod.com",
    "go to our website",
    "thanks for listening",
    "until next time",
    "goodbye",
    "bye",
    "vocabulary preview",
    "language takeaway",
    "slow down",
)

MIN_PER_CHUNK = 4
MAX_PER_CHUNK = 8

SENTENCES_PROMPT = """You are creating shadowing-ready sentences for a language-learning app.

Return ONLY valid JSON. No markdown. No extra keys. No extra text.

Schema (exact):
{{"sentences":[{{"text":"","translation":""}}]}}

Goal:
Select natural, content-rich sentences that learners can repeat aloud.
Avoid noise.

Rules for selecting sentences:
- Use ONLY the lesson content. Exclude intros/outros, greetings, calls-to-action, platform/channel talk, URLs, timestamps, and filler.
- Prefer clear, everyday language with strong meaning (actions, feelings, events, causes).
- Each sentence should be 5-16 words when possible. Do NOT exceed 22 words.
- If a sentence is too long, you may split it into shorter natural sentences while preserving meaning.
- Do NOT output fragments, broken lines, or messy punctuation.
- Avoid duplicates / near-duplicates.

Count:
- Return EXACTLY {count} sentences.
- If truly impossible, return as many as possible but at least {min_count}.

Language constraints:
- "text" must be written ONLY in {target_label} ({target_native}).
{guard}

Important:
- "translation" must translate the sentence text (not a summary).
- No transliteration.
{custom}
{chunk_line}

Text:
{text}"""


def clean_sentence_text(value: str) -> str:
    text = _MUSIC_PREFIX_RE.sub("", value.strip())
    text = _MUSIC_SUFFIX_RE.sub("", text)
    text = _SPACE_RE.sub(" ", text)
    return text.strip(QUOTE_CHARS).strip()


def looks_like_junk(text: str) -> bool:
    lowered = text.lower()
    if any(marker in lowered for marker in JUNK_MARKERS):
        return True
    return bool(_ELLIPSIS_RE.search(text) or _URL_RE.search(text) or _TIMESTAMP_RE.search(text))


def sentence_length_ok(text: str) -> bool:
    if not 12 <= len(text) <= 220:
        return False
    # Word bounds only apply to space-separated scripts
    n = word_count(text)
    if n >= 2 and not 5 <= n <= 22:
        return False
    return True


def sentence_key(text: str) -> str:
    return _SPACE_RE.sub(" ", _KEY_RE.sub(" ", text.lower())).strip()


def suggest_sentence_count(text: str, min_items: int, max_items: int) -> int:
    n = word_count(text)
    if n <= 250:
        desired = 12
    elif n <= 500:
        desired = 14
    elif n <= 900:
        desired = 16
    else:
        desired = 18
    return max(min_items, min(max_items, desired))


def merge_and_clean_sentences(raw_items: List[Dict[str, Any]], support: str, max_keep: int) -> List[SentenceItem]:
    out: List[SentenceItem] = []
    seen = set()

    for raw in raw_items:
        text = get_string(raw, "text") or get_string(raw, "sentence")
        text = clean_sentence_text(text)
        if not text or looks_like_junk(text) or not sentence_length_ok(text):
            continue

        translation = clean_sentence_text(get_string(raw, "translation"))
        if translation and not support_text_looks_valid(translation, support):
            translation = ""

        key = sentence_key(text)
        if key in seen:
            continue
        seen.add(key)

        out.append(SentenceItem(text=text, translation=translation or None))
        if len(out) >= max_keep:
            break

    return out


class LessonSentenceService(GenerationService):
    """Short natural sentences from the lesson for repeat-aloud practice"""

    task = "sentences"

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
        return SENTENCES_PROMPT.format(
            count=count,
            min_count=min_count,
            target_label=target_meta.label,
            target_native=target_meta.native,
            guard=translation_language_guard(support),
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
    ) -> GenerationResult[SentenceItem]:
        full_text = normalize_text(text)
        if not full_text:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Lesson text is empty")

        settings = self.settings
        min_items, max_items = settings.sentences_min_items, settings.sentences_max_items
        desired = max(min_items, min(max_items, count)) if count else suggest_sentence_count(full_text, min_items, max_items)
        minimum = min(min_items, desired)

        shrunk = shrink_text(full_text, settings.sentences_max_chars)
        plan = self.chunker.plan(shrunk, settings.chunk_policy("sentences"))
        if plan.is_empty:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Chunk plan is empty")

        per_chunk = per_chunk_count(len(plan.chunks), desired, MIN_PER_CHUNK, MAX_PER_CHUNK)
        per_chunk_min = max(3, int(per_chunk * 0.6))

        def prompt_for(chunk_text: str, index: int, total: int, fallback: bool) -> str:
            if fallback:
                return self.prompt(chunk_text, target, support, desired, minimum, 0, 0, custom_prompt)
            return self.prompt(chunk_text, target, support, per_chunk, per_chunk_min, index, total, custom_prompt)

        log_context = {
            "pipeline": "lesson_sentences",
            "desired": desired,
            "min_items": min_items,
            "max_items": max_items,
            "chunks": len(plan.chunks),
            "target_lang": target,
            "support_lang": support,
        }
        log = logger.bind(**log_context)

        try:
            merged = await self.run_chunks_until(
                plan,
                prompt_for,
                "sentences",
                lambda raw: merge_and_clean_sentences(raw, support, desired),
                desired=desired,
                minimum=minimum,
                fallback_text=shrunk,
                log_context=log_context,
            )
        except Exception as e:
            log.error("Sentence generation failed", error=str(e))
            return GenerationResult.failure(GenerationErrorKind.UNEXPECTED, str(e))

        if len(merged) < minimum:
            log.warning("Insufficient sentences", items=len(merged), need_at_least=minimum)
            return GenerationResult.failure(
                GenerationErrorKind.NO_RESULTS,
                "Insufficient sentences",
                got=len(merged),
                need_at_least=minimum,
            )

        return GenerationResult.success(merged[:desired])
