"""
Compact grammar point extraction
"""
from typing import Any, Dict, List, Optional
import re

from app.core.coerce import get_array, get_dict, get_string
from app.core.logging import get_logger
from app.core.pipeline import GenerationService, chunk_line
from app.core.result import GenerationErrorKind, GenerationResult
from app.schemas import GrammarExample, GrammarPointItem
from app.utils.language import LanguageMeta, lang_meta, support_text_looks_valid
from app.utils.text import normalize_text, shrink_text, word_count

logger = get_logger(__name__)

MAX_GRAMMAR_POINTS = 2

_ID_STRIP_RE = re.compile(r"[^\w\s-]+", re.UNICODE)
_SPACE_RE = re.compile(r"\s+")

GRAMMAR_SYSTEM_PROMPT = "You extract compact grammar points for language learners. Return strict JSON only."

GRAMMAR_PROMPT = """Extract ONLY the most important grammar points from this {target_label} lesson in a compact, UI-friendly way.

Lesson language: {target_label} ({target_code})
Learner language: {support_label} ({support_code})
Approx length: {words} words

Rules:
- Return ONLY JSON. No extra text. No markdown.
- Choose EXACTLY {count} grammar point(s). If truly impossible, return as many as possible but at least {min_count}.
- Keep it simple: speak like a friendly tutor in {support_label}.
- Each grammar point must include:
  1) WHEN we use it (real-life)
  2) HOW we build it (structure)
  3) ONE common mistake
- Keep description short (max 3 short sentences).
- Provide EXACTLY 2 examples:
  - One close to the lesson (source="lesson")
  - One simple extra example (source="extra")
- Examples: sentence in {target_label}, translation in {support_label}.
- NO exercises at all.

Language guard (STRICT):
- All support-language fields MUST be written ONLY in {support_label} ({support_native}).
- Support-language fields are: title, description, examples[].translation.
- Do NOT include any words from other languages (even one word).
- If you are not 100% sure, use an empty string for that field.

Return JSON with this exact shape:

{{
  "grammar_points": [
    {{
      "id": "short_key",
      "title": "Short title in {support_label}",
      "level": "A1|A2|B1|B2|C1|C2 or null",
      "description": "Short explanation in {support_label}. Include when/how/mistake.",
      "pattern": "One short pattern line in {target_label} notation.",
      "examples": [
        {{
          "sentence": "Sentence in {target_label}",
          "translation": "Natural {support_label}",
          "source": "lesson|extra"
        }}
      ],
      "meta": {{
        "importance": "high|medium|low",
        "tags": ["tag_one", "tag_two"]
      }}
    }}
  ],
  "exercises": []
}}
{custom}
{chunk_line}

Lesson text:
{text}"""


def desired_grammar_point_count(words: int) -> int:
    return 1 if words <= 350 else 2


def grammar_key(point_id: str) -> str:
    key = _ID_STRIP_RE.sub("", point_id.strip().lower())
    return _SPACE_RE.sub("_", key).strip()


def pick_best_two(examples: List[GrammarExample]) -> List[GrammarExample]:
    lesson = next((ex for ex in examples if ex.source == "lesson"), None)
    extra = next((ex for ex in examples if ex.source == "extra"), None)
    if lesson and extra:
        return [lesson, extra]
    return examples[:2]


def normalize_grammar_points(points: List[Dict[str, Any]], support: str) -> List[GrammarPointItem]:
    out: List[GrammarPointItem] = []
    seen = set()

    for raw in points:
        point_id = get_string(raw, "id") or get_string(raw, "key")
        title = get_string(raw, "title")
        description = get_string(raw, "description")
        pattern = get_string(raw, "pattern")
        if not (point_id and title and description and pattern):
            continue

        if not support_text_looks_valid(title, support) or not support_text_looks_valid(description, support):
            continue

        key = grammar_key(point_id)
        if key in seen:
            continue
        seen.add(key)

        examples: List[GrammarExample] = []
        for ex in get_array(raw, "examples"):
            sentence = get_string(ex, "sentence")
            translation = get_string(ex, "translation")
            if not sentence:
                continue
            if not translation or not support_text_looks_valid(translation, support):
                continue
            source = get_string(ex, "source", "extra")
            examples.append(GrammarExample(
                sentence=sentence,
                translation=translation,
                source=source if source in ("lesson", "extra") else "extra",
            ))

        if len(examples) < 2:
            continue

        out.append(GrammarPointItem(
            key=point_id,
            title=title,
            level=get_string(raw, "level") or None,
            description=description,
            pattern=pattern,
            examples=pick_best_two(examples),
            meta=get_dict(raw, "meta"),
        ))

    return out[:MAX_GRAMMAR_POINTS]


class LessonGrammarService(GenerationService):
    """One or two grammar points, each with a lesson example and an extra one"""

    task = "grammar"
    system_prompt = GRAMMAR_SYSTEM_PROMPT

    def prompt(
        self,
        text: str,
        target_meta: LanguageMeta,
        support_meta: LanguageMeta,
        count: int,
        min_count: int,
        chunk_index: int,
        chunks_total: int,
        custom_prompt: Optional[str] = None,
    ) -> str:
        custom = (custom_prompt or "").strip()
        custom_block = (
            "\nAdditional user preferences (follow ONLY if they do not conflict with schema/rules):\n" + custom + "\n"
            if custom else ""
        )
        return GRAMMAR_PROMPT.format(
            target_label=target_meta.label,
            target_code=target_meta.code,
            support_label=support_meta.label,
            support_code=support_meta.code,
            support_native=support_meta.native,
            words=word_count(text),
            count=count,
            min_count=min_count,
            custom=custom_block,
            chunk_line=chunk_line(chunk_index, chunks_total),
            text=text,
        )

    async def generate(
        self,
        text: str,
        target: str = "en",
        support: str = "en",
        custom_prompt: Optional[str] = None,
    ) -> GenerationResult[GrammarPointItem]:
        plain = normalize_text(text)
        if not plain:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Lesson text is empty")

        target_meta, support_meta = lang_meta(target), lang_meta(support)
        desired = desired_grammar_point_count(word_count(plain))
        shrunk = shrink_text(plain, self.settings.grammar_max_chars)
        plan = self.chunker.plan(shrunk, self.settings.chunk_policy("grammar"))
        if plan.is_empty:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Chunk plan is empty")

        def prompt_for(chunk_text: str, index: int, total: int, fallback: bool) -> str:
            # One point per chunk keeps each call small
            count = desired if fallback else 1
            return self.prompt(chunk_text, target_meta, support_meta, count, 1, index, total, custom_prompt)

        log_context = {
            "pipeline": "lesson_grammar",
            "target_lang": target,
            "support_lang": support,
            "desired": desired,
            "chunks": len(plan.chunks),
        }
        log = logger.bind(**log_context)

        try:
            points = await self.run_chunks_until(
                plan,
                prompt_for,
                "grammar_points",
                lambda raw: normalize_grammar_points(raw, support),
                desired=desired,
                minimum=desired,
                fallback_text=shrunk,
                log_context=log_context,
            )
        except Exception as e:
            log.error("Grammar generation failed", error=str(e))
            return GenerationResult.failure(GenerationErrorKind.UNEXPECTED, str(e))

        if not points:
            log.warning("Empty or invalid grammar output")
            return GenerationResult.failure(GenerationErrorKind.NO_RESULTS, "No valid grammar points")

        return GenerationResult.success(points[:desired])
