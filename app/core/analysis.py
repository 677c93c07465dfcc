"""
Lesson analysis: per-chunk notes merged into one learner-facing summary
"""
from typing import Any, Dict, List, Optional
import json
import re
import statistics

from app.core.coerce import get_dict, get_int, get_string
from app.core.logging import get_logger
from app.core.pipeline import GenerationService, json_messages
from app.core.result import GenerationErrorKind, GenerationResult
from app.schemas import LessonAnalysis
from app.utils.language import LanguageMeta, lang_meta, support_text_looks_valid
from app.utils.text import normalize_text, shrink_text, word_count

logger = get_logger(__name__)

NOTE_SECTIONS = {
    "overview_points": 6,
    "grammar_points": 8,
    "vocabulary_focus": 8,
    "study_tips": 8,
}
DEFAULT_MINUTES = 15
MIN_MINUTES = 5
MAX_MINUTES = 90

_SPACE_RE = re.compile(r"\s+")

FINAL_SYSTEM_PROMPT = "Return ONLY a valid JSON object. No markdown. No extra text. Follow schema exactly."

SUPPORT_GUARD = """Language guard (STRICT):
- ALL output must be written ONLY in {label} ({native}).
- Do NOT include words from any other language (even one word).
- If you need to mention a target-language example, you may include a very short quoted example (max 6 words) inside "quotes".
- If you are not 100% sure, write simpler sentences in {label}."""

NOTES_PROMPT = """You will extract compact NOTES for a language-learning lesson analysis.

Lesson target language: {target_label} ({target_code})
Learner support language: {support_label} ({support_code})
Approx length: {words} words

Return ONLY JSON with this exact shape:
{{
  "notes": {{
    "overview_points": ["..."],
    "grammar_points": ["..."],
    "vocabulary_focus": ["..."],
    "study_tips": ["..."]
  }},
  "meta_guess": {{
    "estimated_level": "A1|A2|B1|B2|C1|C2 or short text",
    "estimated_time_minutes": 15
  }}
}}

Rules:
- Keep each bullet short (1 sentence).
- Focus only on the most useful items.
- Aim for:
  - overview_points: 2-4
  - grammar_points: 2-5
  - vocabulary_focus: 2-5
  - study_tips: 3-5 (must mention flashcards, shadowing, MCQ)
- Do not mention that you are an AI model.
- Do not add any other keys.

{guard}
{custom}

Lesson text (chunk):
{text}"""

FINAL_PROMPT = """You will write the FINAL lesson analysis for a learner.

Target language of the lesson: {target_label} ({target_code})
Support language for the learner: {support_label} ({support_code})
Approx length: {words} words

You are given merged notes (from multiple chunks). Use them to produce a clean, friendly analysis.

Return ONLY JSON with this exact shape:
{{
  "overview": "Short, friendly explanation in {support_label}.",
  "grammar_points": "Explain only the 2-5 most useful grammar ideas. Use short paragraphs and optional bullets.",
  "vocabulary_focus": "Explain key vocabulary themes and useful words/phrases to notice.",
  "study_tips": "Concrete tips for using this lesson in the app: flashcards, shadowing, MCQ. Keep it practical.",
  "meta": {{
    "estimated_level": "A1|A2|B1|B2|C1|C2 or short description in {support_label}",
    "estimated_time_minutes": 15
  }}
}}

Rules:
- All fields must be natural, learner-friendly {support_label}.
- Do NOT switch to {target_label}, except very short quoted examples if needed.
- Keep tone clear, motivating, and practical.
- No extra keys. No extra text.

{guard}
{custom}

Merged notes JSON:
{notes}"""


def clean_text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return _SPACE_RE.sub(" ", value.strip()).strip()


def as_string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def unique_trimmed(items: List[str], limit: int) -> List[str]:
    seen = set()
    out: List[str] = []
    for item in items:
        text = str(item).strip()
        if not text:
            continue
        key = _SPACE_RE.sub(" ", text).lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(text)
        if len(out) >= limit:
            break
    return out


def clamp_minutes(value: Any) -> int:
    minutes = get_int(value)
    if minutes is None:
        minutes = DEFAULT_MINUTES
    return max(MIN_MINUTES, min(MAX_MINUTES, minutes))


def merge_notes(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Union of chunk notes with per-section caps, first level guess and median minutes"""
    merged: Dict[str, Any] = {section: [] for section in NOTE_SECTIONS}
    levels: List[str] = []
    minutes: List[int] = []

    for row in results:
        payload = row.get("json") or {}
        notes = get_dict(payload, "notes")
        if not notes:
            continue
        for section in NOTE_SECTIONS:
            merged[section].extend(as_string_list(notes.get(section)))

        guess = get_dict(payload, "meta_guess")
        level = get_string(guess, "estimated_level")
        if level:
            levels.append(level)
        value = get_int(guess.get("estimated_time_minutes"))
        if value is not None:
            minutes.append(value)

    for section, limit in NOTE_SECTIONS.items():
        merged[section] = unique_trimmed(merged[section], limit)

    merged["meta_guess"] = {
        "estimated_level": levels[0] if levels else None,
        "estimated_time_minutes": round(statistics.median(minutes)) if minutes else DEFAULT_MINUTES,
    }
    return merged


def notes_empty(notes: Dict[str, Any]) -> bool:
    return not any(notes.get(section) for section in NOTE_SECTIONS)


def join_bullets(items: List[str]) -> str:
    items = unique_trimmed(items, 12)
    return "\n".join(f"- {item}" for item in items)


def normalize_final_analysis(data: Dict[str, Any], support: LanguageMeta) -> Optional[LessonAnalysis]:
    overview = clean_text(data.get("overview"))
    grammar = clean_text(data.get("grammar_points"))
    vocabulary = clean_text(data.get("vocabulary_focus"))
    tips = clean_text(data.get("study_tips"))
    if not (overview and grammar and vocabulary and tips):
        return None

    if not support_text_looks_valid(" ".join((overview, grammar, vocabulary, tips)), support.code):
        return None

    meta = get_dict(data, "meta")
    return LessonAnalysis(
        overview=overview,
        grammar_points=grammar,
        vocabulary_focus=vocabulary,
        study_tips=tips,
        meta={
            "estimated_level": clean_text(meta.get("estimated_level")) or None,
            "estimated_time_minutes": clamp_minutes(meta.get("estimated_time_minutes", DEFAULT_MINUTES)),
        },
    )


def analysis_from_notes(notes: Dict[str, Any]) -> Optional[LessonAnalysis]:
    if notes_empty(notes):
        return None
    guess = notes.get("meta_guess") or {}
    return LessonAnalysis(
        overview=join_bullets(notes.get("overview_points", [])),
        grammar_points=join_bullets(notes.get("grammar_points", [])),
        vocabulary_focus=join_bullets(notes.get("vocabulary_focus", [])),
        study_tips=join_bullets(notes.get("study_tips", [])),
        meta={
            "estimated_level": clean_text(guess.get("estimated_level")) or None,
            "estimated_time_minutes": clamp_minutes(guess.get("estimated_time_minutes", DEFAULT_MINUTES)),
            "source": "notes",
        },
    )


class LessonAnalysisService(GenerationService):
    """Two-stage analysis: notes per chunk, then one small synthesis call"""

    task = "analysis_notes"

    def _custom_block(self, custom_prompt: Optional[str]) -> str:
        custom = (custom_prompt or "").strip()
        if not custom:
            return ""
        return "\nAdditional user instructions (follow ONLY if they do not conflict with schema/rules):\n" + custom

    def notes_prompt(self, text: str, target: LanguageMeta, support: LanguageMeta, words: int,
                     custom_prompt: Optional[str] = None) -> str:
        return NOTES_PROMPT.format(
            target_label=target.label,
            target_code=target.code,
            support_label=support.label,
            support_code=support.code,
            words=words,
            guard=SUPPORT_GUARD.format(label=support.label, native=support.native),
            custom=self._custom_block(custom_prompt),
            text=text,
        )

    def final_prompt(self, notes: Dict[str, Any], target: LanguageMeta, support: LanguageMeta, words: int,
                     custom_prompt: Optional[str] = None) -> str:
        return FINAL_PROMPT.format(
            target_label=target.label,
            target_code=target.code,
            support_label=support.label,
            support_code=support.code,
            words=words,
            guard=SUPPORT_GUARD.format(label=support.label, native=support.native),
            custom=self._custom_block(custom_prompt),
            notes=json.dumps(notes, ensure_ascii=False),
        )

    async def generate(
        self,
        text: str,
        target: str = "en",
        support: str = "en",
        custom_prompt: Optional[str] = None,
    ) -> GenerationResult[LessonAnalysis]:
        plain = normalize_text(text)
        if not plain:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Lesson text is empty")

        target_meta, support_meta = lang_meta(target), lang_meta(support)
        plain = shrink_text(plain, self.settings.analysis_max_chars)
        plan = self.chunker.plan(plain, self.settings.chunk_policy("analysis"))
        if plan.is_empty:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Chunk plan is empty")

        words = word_count(plain)
        log_context = {
            "pipeline": "lesson_analysis",
            "target_lang": target_meta.code,
            "support_lang": support_meta.code,
            "chunks": len(plan.chunks),
            "word_count": words,
        }
        log = logger.bind(**log_context)

        try:
            results = await self.runner.run_json(
                plan,
                lambda chunk, _i, _n: json_messages(
                    self.notes_prompt(chunk, target_meta, support_meta, words, custom_prompt)),
                self.options("analysis_notes"),
                log_context,
            )
            notes = merge_notes(results)
            if notes_empty(notes):
                log.warning("Analysis notes are empty")

            final = await self.llm.chat_json(
                json_messages(self.final_prompt(notes, target_meta, support_meta, words, custom_prompt),
                              FINAL_SYSTEM_PROMPT),
                {**self.options("analysis_final"), "operation": "lesson_analysis_final"},
            )
        except Exception as e:
            log.error("Lesson analysis failed", error=str(e))
            return GenerationResult.failure(GenerationErrorKind.UNEXPECTED, str(e))

        analysis = None
        if final.ok and isinstance(final.json, dict):
            analysis = normalize_final_analysis(final.json, support_meta)
            if analysis is None:
                log.warning("Final analysis has invalid shape", decoded_keys=sorted(final.json.keys()))
        else:
            log.warning("Final analysis synthesis failed",
                        status=final.status,
                        error=final.error,
                        content_head=(final.content or "")[:900])

        if analysis is None:
            analysis = analysis_from_notes(notes)

        if analysis is None:
            return GenerationResult.failure(GenerationErrorKind.NO_RESULTS, "No analysis could be produced")

        return GenerationResult.success([analysis])
