"""
AI lesson pack generation from a topic: lesson text, two-speaker dialogue, phrases and questions
"""
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
import html
import json
import re

from app.core.chunking import ChunkPlan
from app.core.coerce import get_array, get_bool_loose, get_string
from app.core.exceptions import GenerationFailedError, ValidationError
from app.core.logging import get_logger
from app.core.pipeline import GenerationService, json_messages
from app.schemas import DialogueTurn, LessonPack
from app.utils.language import LanguageMeta, contains_arabic_script, lang_meta, normalize_language_code

logger = get_logger(__name__)

MAX_ATTEMPTS = 3
MIN_LESSON_TEXT_CHARS = 220
MIN_PARAGRAPHS = 4

LENGTH_TARGETS = {
    "short": (180, 260),
    "medium": (280, 420),
    "long": (420, 620),
}

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_INLINE_SPACE_RE = re.compile(r"[ \t]+")
_LEADING_LINE_SPACE_RE = re.compile(r"\n[ \t]+")
_SECTION_RE = re.compile(r"\b(Key phrases|Quick questions)\b", re.IGNORECASE)
_BULLET_LINE_RE = re.compile(r"(^|\n)\s*[-•]\s+")
_NUMBERED_LINE_RE = re.compile(r"(^|\n)\s*\d+\.\s+")
_BULLET_PREFIX_RE = re.compile(r"^\s*[-•]\s+")
_NUMBERED_PREFIX_RE = re.compile(r"^\s*\d+\.\s+")
_SPEAKER_LABEL_RE = re.compile(r"(^|\n)\s*[^\W\d_][\w \-̀-ًͯ-ٟ]{0,20}:\s+")
_SPEAKER_STRIP_RE = re.compile(r"[^\w\-]|_")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n{2,}")
_EXTRA_NEWLINES_RE = re.compile(r"\n{3,}")

SYSTEM_PROMPT = "Return ONLY valid JSON. No markdown. No extra text. No extra keys."

LESSON_PROMPT = """Return ONLY valid JSON. No markdown. No extra text. No extra keys.
Use EXACT schema (all keys must exist):
{{
  "title": "",
  "lesson_text": "",
  "dialogue": [{{"speaker":"","text":""}}],
  "key_phrases": [""],
  "quick_questions": [""],
  "tags": [""]
}}

Target language: {target_label} ({target_code})
Support language: {support_label} ({support_code})

CRITICAL:
- lesson_text must be ONLY clean paragraphs in target language.
- lesson_text must NOT contain: markdown, **, headings, lists, bullets, numbering, speaker labels like "Anna:", "Key phrases", "Quick questions".
- No translations, no bilingual lines, no romanization.
- Separate paragraphs with a blank line.

Lesson_text requirements:
- 4-8 paragraphs.
- Realistic scenario + useful learning context.
- Natural, non-robotic phrasing.
- Avoid repeating proper names too often (use pronouns).
- Keep it easy to read.

Topic: {topic}
{goal_line}{level_line}{title_line}
Length: {length} (~{min_words}-{max_words} words)

Keywords (optional, use naturally if relevant):
{keywords}

{dialogue_rules}

{phrases_rules}

{questions_rules}

tags rules:
- 2-6 tags, English, snake_case or simple words.
- Must be an array of strings.

{strict}"""

DIALOGUE_RULES = """dialogue rules:
- MUST be a non-empty array of 10-18 items.
- MUST use exactly 2 speakers total across all items.
- speaker must be short (max 10 chars), e.g. "A" and "B" or "Mia" and "Noah".
- Each item must be {"speaker":"", "text":""}
- text must be natural, short, conversational (1-2 sentences max).
- If you cannot follow these rules, fix it and still output valid JSON."""

PHRASES_RULES = """key_phrases rules:
- MUST be an array of 6-10 items.
- Each item must be a single phrase (no numbering, no bullets).
- Must be only in target language."""

QUESTIONS_RULES = """quick_questions rules:
- MUST be an array of 4-6 items.
- Each item must be a single question sentence.
- Must be only in target language."""

STRICT_RULES = (
    "STRICT: Output must be ONLY JSON. Start with { and end with }. No extra characters.\n"
    "STRICT: Use schema EXACTLY. Do not add keys.\n"
)


@dataclass(frozen=True)
class LessonBrief:
    """What the learner asked the generator for"""
    topic: str
    target_language: str = "en"
    support_language: str = "en"
    goal: str = ""
    level: str = ""
    length: str = "medium"
    keywords: List[str] = field(default_factory=list)
    title_hint: str = ""
    include_dialogue: bool = True
    include_key_phrases: bool = True
    include_quick_questions: bool = True

    @classmethod
    def from_meta(cls, meta: Dict[str, Any], default_target: str = "en", default_support: str = "en") -> "LessonBrief":
        keywords = get_array(meta, "keywords")
        return cls(
            topic=get_string(meta, "topic"),
            target_language=normalize_language_code(get_string(meta, "target_language")) or default_target,
            support_language=normalize_language_code(get_string(meta, "support_language")) or default_support,
            goal=get_string(meta, "goal"),
            level=get_string(meta, "level"),
            length=get_string(meta, "length", "medium"),
            keywords=[str(k).strip() for k in keywords if str(k).strip()],
            title_hint=get_string(meta, "title_hint"),
            include_dialogue=get_bool_loose(meta.get("include_dialogue", True)),
            include_key_phrases=get_bool_loose(meta.get("include_key_phrases", True)),
            include_quick_questions=get_bool_loose(meta.get("include_quick_questions", True)),
        )


def normalize_length(value: str) -> str:
    length = (value or "").strip().lower()
    return length if length in LENGTH_TARGETS else "medium"


def strip_bad_inline_tokens(value: str) -> str:
    text = html.unescape(_TAG_RE.sub("", value))
    text = _SPACE_RE.sub(" ", text).strip().replace("**", "")
    text = _BULLET_PREFIX_RE.sub("", text)
    text = _NUMBERED_PREFIX_RE.sub("", text)
    return text.strip()


def normalize_speaker(value: str) -> str:
    speaker = _SPACE_RE.sub(" ", value.strip())
    return _SPEAKER_STRIP_RE.sub("", speaker)[:10].strip()


def normalize_lesson_text(value: str) -> str:
    text = html.unescape(_TAG_RE.sub("", value))
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _INLINE_SPACE_RE.sub(" ", text)
    text = _LEADING_LINE_SPACE_RE.sub("\n", text).strip()
    text = text.replace("**", "")
    text = _SECTION_RE.sub("", text)
    text = _BULLET_LINE_RE.sub("\n", text)
    text = _NUMBERED_LINE_RE.sub("\n", text)
    text = _SPEAKER_LABEL_RE.sub("\n", text)
    return _EXTRA_NEWLINES_RE.sub("\n\n", text).strip()


def _unique_limited(values: List[Any], max_len: int, max_items: int, clean=strip_bad_inline_tokens) -> List[str]:
    out: List[str] = []
    for value in values:
        if isinstance(value, (dict, list)) or value is None:
            continue
        item = clean(str(value).strip())[:max_len]
        if item and item not in out:
            out.append(item)
    return out[:max_items]


def response_format_for(brief: LessonBrief) -> Dict[str, Any]:
    """Strict JSON schema with item counts matching the requested sections"""
    def bounds(enabled: bool, low: int, high: int) -> Dict[str, int]:
        return {"minItems": low, "maxItems": high} if enabled else {"minItems": 0, "maxItems": 0}

    return {
        "type": "json_schema",
        "json_schema": {
            "name": "lesson_pack",
            "strict": True,
            "schema": {
                "type": "object",
                "additionalProperties": False,
                "required": ["title", "lesson_text", "dialogue", "key_phrases", "quick_questions", "tags"],
                "properties": {
                    "title": {"type": "string", "minLength": 1, "maxLength": 120},
                    "lesson_text": {"type": "string", "minLength": MIN_LESSON_TEXT_CHARS},
                    "dialogue": {
                        "type": "array",
                        **bounds(brief.include_dialogue, 10, 18),
                        "items": {
                            "type": "object",
                            "additionalProperties": False,
                            "required": ["speaker", "text"],
                            "properties": {
                                "speaker": {"type": "string", "minLength": 1, "maxLength": 10},
                                "text": {"type": "string", "minLength": 1, "maxLength": 220},
                            },
                        },
                    },
                    "key_phrases": {
                        "type": "array",
                        **bounds(brief.include_key_phrases, 6, 10),
                        "items": {"type": "string", "minLength": 1, "maxLength": 90},
                    },
                    "quick_questions": {
                        "type": "array",
                        **bounds(brief.include_quick_questions, 4, 6),
                        "items": {"type": "string", "minLength": 1, "maxLength": 140},
                    },
                    "tags": {
                        "type": "array",
                        "minItems": 2,
                        "maxItems": 6,
                        "items": {"type": "string", "minLength": 1, "maxLength": 30},
                    },
                },
            },
        },
    }


def normalize_pack(data: Dict[str, Any], brief: LessonBrief, target: LanguageMeta, support: LanguageMeta) -> LessonPack:
    dialogue = []
    for row in get_array(data, "dialogue"):
        speaker = normalize_speaker(get_string(row, "speaker"))
        text = strip_bad_inline_tokens(get_string(row, "text"))
        if speaker and text:
            dialogue.append(DialogueTurn(speaker=speaker, text=text[:220]))

    return LessonPack(
        title=(get_string(data, "title") or "Generated lesson")[:120],
        lesson_text=normalize_lesson_text(get_string(data, "lesson_text")),
        dialogue=dialogue[:24],
        key_phrases=_unique_limited(get_array(data, "key_phrases"), 90, 12),
        quick_questions=_unique_limited(get_array(data, "quick_questions"), 140, 10),
        tags=_unique_limited(get_array(data, "tags"), 30, 8, clean=lambda s: s),
        meta={
            "level": brief.level or None,
            "target_language": target.code,
            "support_language": support.code,
            "options": {
                "include_dialogue": brief.include_dialogue,
                "include_key_phrases": brief.include_key_phrases,
                "include_quick_questions": brief.include_quick_questions,
            },
        },
    )


def validate_pack(pack: LessonPack, brief: LessonBrief, target: LanguageMeta) -> None:
    """Raise ValidationError describing the first rule the pack breaks"""
    if not pack.title.strip():
        raise ValidationError("Invalid LLM response: title is empty.")

    text = pack.lesson_text.strip()
    if not text:
        raise ValidationError("Invalid LLM response: lesson_text is empty.")
    if len(text) < MIN_LESSON_TEXT_CHARS:
        raise ValidationError("Invalid LLM response: lesson_text too short.")
    if "**" in text:
        raise ValidationError("Invalid LLM response: lesson_text contains markdown (**).")
    if _BULLET_LINE_RE.search(text):
        raise ValidationError("Invalid LLM response: lesson_text contains bullet list.")
    if _NUMBERED_LINE_RE.search(text):
        raise ValidationError("Invalid LLM response: lesson_text contains numbered list.")
    if _SPEAKER_LABEL_RE.search(text):
        raise ValidationError("Invalid LLM response: lesson_text contains speaker labels.")
    if _SECTION_RE.search(text):
        raise ValidationError("Invalid LLM response: lesson_text contains section headings text.")

    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text) if p.strip()]
    if len(paragraphs) < MIN_PARAGRAPHS:
        raise ValidationError("Invalid LLM response: lesson_text should be 4+ paragraphs.")

    if target.code not in ("fa", "ar", "ur") and contains_arabic_script(text):
        raise ValidationError("Invalid LLM response: contains Arabic-script characters for non-Arabic target.")

    if brief.include_dialogue:
        if len(pack.dialogue) < 10:
            raise ValidationError("Invalid LLM response: dialogue missing or too short.")
        speakers = {turn.speaker for turn in pack.dialogue}
        if len(speakers) != 2:
            raise ValidationError("Invalid LLM response: dialogue must have exactly 2 speakers.",
                                  {"speakers": sorted(speakers)})
    elif pack.dialogue:
        raise ValidationError("Invalid LLM response: dialogue must be empty.")

    if brief.include_key_phrases:
        if len(pack.key_phrases) < 6:
            raise ValidationError("Invalid LLM response: key_phrases missing or too short.")
    elif pack.key_phrases:
        raise ValidationError("Invalid LLM response: key_phrases must be empty.")

    if brief.include_quick_questions:
        if len(pack.quick_questions) < 4:
            raise ValidationError("Invalid LLM response: quick_questions missing or too short.")
    elif pack.quick_questions:
        raise ValidationError("Invalid LLM response: quick_questions must be empty.")


class AiLessonGeneratorService(GenerationService):
    """
    Builds a complete lesson pack from a topic using schema-constrained output.

    Unlike the other services this one raises: after three invalid responses
    it gives up with ``GenerationFailedError`` carrying the last validation
    message. Each retry adds stricter output instructions to the prompt.
    """

    task = "lessons"
    system_prompt = SYSTEM_PROMPT

    def prompt(self, brief: LessonBrief, target: LanguageMeta, support: LanguageMeta, attempt: int) -> str:
        length = normalize_length(brief.length)
        min_words, max_words = LENGTH_TARGETS[length]
        return LESSON_PROMPT.format(
            target_label=target.label,
            target_code=target.code,
            support_label=support.label,
            support_code=support.code,
            topic=brief.topic.strip(),
            goal_line=f"Goal: {brief.goal.strip()}\n" if brief.goal.strip() else "",
            level_line=f"CEFR Level: {brief.level.strip()}\n" if brief.level.strip() else "CEFR Level: (not provided)\n",
            title_line=f"Title hint: {brief.title_hint.strip()}\n" if brief.title_hint.strip() else "",
            length=length,
            min_words=min_words,
            max_words=max_words,
            keywords=json.dumps(brief.keywords[:12], ensure_ascii=False),
            dialogue_rules=DIALOGUE_RULES if brief.include_dialogue else "dialogue rules:\n- MUST be an empty array: []",
            phrases_rules=PHRASES_RULES if brief.include_key_phrases else "key_phrases rules:\n- MUST be an empty array: []",
            questions_rules=QUESTIONS_RULES if brief.include_quick_questions else "quick_questions rules:\n- MUST be an empty array: []",
            strict=STRICT_RULES if attempt >= 2 else "",
        )

    async def generate(self, brief: LessonBrief) -> LessonPack:
        if not brief.topic.strip():
            raise ValidationError("Topic is required.")

        target = lang_meta(brief.target_language)
        support = lang_meta(brief.support_language)
        options = self.options(response_format=response_format_for(brief))
        plan = ChunkPlan(chunks=["seed"], target_words=0, overlap_words=0, total_words=1, total_chars=4)
        last_error: Optional[str] = None

        for attempt in range(1, MAX_ATTEMPTS + 1):
            log_context = {
                "pipeline": "ai_lesson_generator",
                "attempt": attempt,
                "target_lang": target.code,
                "support_lang": support.code,
                "length": normalize_length(brief.length),
            }
            log = logger.bind(**log_context)
            results = await self.runner.run_json(
                plan,
                lambda _seed, _i, _n, attempt=attempt: json_messages(
                    self.prompt(brief, target, support, attempt), self.system_prompt),
                options,
                log_context,
            )
            data = next((r["json"] for r in results if isinstance(r.get("json"), dict)), None)
            if data is None:
                last_error = "Invalid LLM response (missing json)."
                log.warning("Lesson pack attempt returned no JSON")
                continue

            pack = normalize_pack(data, brief, target, support)
            try:
                validate_pack(pack, brief, target)
            except ValidationError as e:
                last_error = e.message
                log.warning("Lesson pack failed validation", error=e.message)
                continue

            log.info("Lesson pack generated", dialogue_turns=len(pack.dialogue))
            return pack

        raise GenerationFailedError(last_error or "Invalid LLM response.", {"attempts": MAX_ATTEMPTS})

    async def generate_dialogue_only(self, brief: LessonBrief) -> LessonPack:
        """Lesson text plus a two-speaker dialogue, without phrases or questions"""
        dialogue_brief = replace(brief, include_dialogue=True, include_key_phrases=False, include_quick_questions=False)
        return await self.generate(dialogue_brief)
