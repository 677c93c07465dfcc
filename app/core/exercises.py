"""
Multiple-choice exercise generation with skill balancing
"""
from typing import Any, Dict, List, Optional
import hashlib
import json
import re

from app.core.coerce import get_array, get_bool_loose, get_dict, get_int, get_string
from app.core.logging import get_logger
from app.core.pipeline import GenerationService, collect_items, json_messages
from app.core.result import GenerationErrorKind, GenerationResult
from app.schemas import ExerciseItem, ExerciseOptionItem
from app.utils.language import LanguageMeta, lang_meta, support_text_looks_valid
from app.utils.text import normalize_text, shrink_text, word_count

logger = get_logger(__name__)

MIN_EXERCISES = 10
MAX_EXERCISES = 24
MAX_COMPACT_WORDS = 18
MAX_COMPACT_GRAMMAR = 6
MAX_ANCHORS = 18
MAX_ALREADY_HAVE = 18
MIN_OPTIONS = 3
MAX_OPTIONS = 4
OPTION_LABELS = "ABCD"

VALID_SKILLS = ("vocabulary", "grammar", "comprehension")
SKILL_ALIASES = {"vocab": "vocabulary", "grammer": "grammar"}
VALID_DIFFICULTIES = ("easy", "medium")

_SPACE_RE = re.compile(r"\s+")
_SINGLE_QUOTED_RE = re.compile(r"'([^']{2,80})'")
_DOUBLE_QUOTED_RE = re.compile(r'"([^"]{2,80})"')
_BIGRAM_TOKEN_RE = re.compile(r"^[a-z][a-z'-]{2,}$")

STOPWORDS = frozenset("""
the a an and or but so to of in on at for with from by as is are was were be been being i you he she it we they
me him her them my your his their our this that these those there here what who when where why how do does did
done can could will would should may might must not no yes just really very about into over under up down out
again now then only also too more most much many some any if because while during after before until than all
ever every one two three
""".split())

EXERCISES_PROMPT = """Return ONLY valid JSON. No markdown. No extra text.

Target language: {target_label} ({target_code})
Support language: {support_label} ({support_code})

Create EXACTLY {count} NEW MCQ exercises.
Minimums in this batch:
- at least {vocab_min} vocabulary
- at least {grammar_min} grammar
- remaining can be comprehension

Anchoring rule:
Every exercise MUST be anchored to the lesson using ONE anchor from "Allowed anchors".
If an exercise is not anchored, do NOT create it.

Hard rules:
- type="mcq"
- difficulty: "easy" or "medium"
- options: 3 or 4
- Exactly ONE option has is_correct=true (boolean)
- question_prompt: {target_label} only
- options[].text: {target_label} only
- instructions: {support_label} only, one short sentence
- solution_explanation: {support_label} only, 1 short sentence, max ~110 chars
- options[].explanation: {support_label} only, or empty string ""

Quality rules:
- Do NOT repeat or closely match anything in "Already have".
- No generic questions unless they clearly reference an anchor.
- Vocabulary skill:
  - question_prompt MUST contain the exact anchor term in single quotes, e.g. What does 'small talk' mean?
  - Ask meaning in THIS context.
- Grammar skill:
  - question_prompt MUST be fill-in-the-blank and contain ___
  - Options are the possible fills.
- Comprehension skill:
  - Ask a concrete fact from the text (who/what/why/where).
  - Must mention at least one anchor word/name.

Language guard (STRICT):
- Support-language fields MUST be ONLY {support_label} ({support_native}).
- Support fields: instructions, solution_explanation, options[].explanation.
- If unsure, output empty string "".

Schema:
{{
  "exercises": [
    {{
      "type": "mcq",
      "skill": "vocabulary|grammar|comprehension",
      "difficulty": "easy|medium",
      "question_prompt": "",
      "instructions": "",
      "solution_explanation": "",
      "options": [
        {{ "text": "", "is_correct": true, "explanation": "" }}
      ]
    }}
  ]
}}

Allowed anchors (MUST use one per exercise):
{anchors}

Already have (DO NOT repeat):
{already_have}

Vocabulary list (prefer these if relevant):
{words}

Grammar list (prefer these if relevant):
{grammar}
{custom}
Lesson text:
{text}"""


def _collapse(value: str) -> str:
    return _SPACE_RE.sub(" ", value).strip()


def normalize_skill(value: str) -> str:
    skill = value.strip().lower()
    return SKILL_ALIASES.get(skill, skill)


def _option_flag(raw: Dict[str, Any]) -> bool:
    for key in ("is_correct", "isCorrect", "correct"):
        if key in raw:
            return get_bool_loose(raw[key])
    return False


def pick_correct_index(flags: List[bool], explicit_index: Optional[int]) -> int:
    """Index of the single correct option; explicit index, then first flagged, then 0"""
    if flags.count(True) == 1:
        return flags.index(True)
    if explicit_index is not None and 0 <= explicit_index < len(flags):
        return explicit_index
    if True in flags:
        return flags.index(True)
    return 0


def question_is_anchored(skill: str, question: str, anchors: List[str]) -> bool:
    """Grammar needs a ___ blank, vocabulary a quoted anchor term, comprehension any anchor mention"""
    if skill == "grammar":
        return "___" in question
    lowered = [a.lower() for a in anchors if a]
    if skill == "vocabulary":
        term = extract_quoted_term(question)
        return bool(term) and term.lower() in lowered
    q = question.lower()
    return any(a in q for a in lowered)


def normalize_exercise(raw: Dict[str, Any], support: str,
                       anchors: Optional[List[str]] = None) -> Optional[ExerciseItem]:
    if get_string(raw, "type").lower() != "mcq":
        return None

    skill = normalize_skill(get_string(raw, "skill"))
    if skill not in VALID_SKILLS:
        return None

    difficulty = get_string(raw, "difficulty", "easy").lower()
    if difficulty not in VALID_DIFFICULTIES:
        difficulty = "easy"

    question = get_string(raw, "question_prompt")
    if not question:
        return None
    if anchors is not None and not question_is_anchored(skill, question, anchors):
        return None

    raw_options = [o for o in get_array(raw, "options") if isinstance(o, dict) and get_string(o, "text")]
    raw_options = raw_options[:MAX_OPTIONS]
    if len(raw_options) < MIN_OPTIONS:
        return None

    flags = [_option_flag(o) for o in raw_options]
    correct = pick_correct_index(flags, get_int(raw.get("correct_option_index")))

    options = []
    for i, opt in enumerate(raw_options):
        explanation = get_string(opt, "explanation")
        if explanation and not support_text_looks_valid(explanation, support):
            explanation = ""
        options.append(ExerciseOptionItem(
            label=OPTION_LABELS[i],
            text=get_string(opt, "text"),
            is_correct=i == correct,
            explanation=explanation or None,
        ))

    instructions = get_string(raw, "instructions")
    if instructions and not support_text_looks_valid(instructions, support):
        instructions = ""
    solution = get_string(raw, "solution_explanation")
    if solution and not support_text_looks_valid(solution, support):
        solution = ""

    return ExerciseItem(
        type="mcq",
        skill=skill,
        difficulty=difficulty,
        question_prompt=question,
        instructions=instructions or None,
        solution_explanation=solution or None,
        options=options,
        meta=get_dict(raw, "meta"),
    )


def normalize_exercises(raw_items: List[Dict[str, Any]], support: str,
                        anchors: Optional[List[str]] = None) -> List[ExerciseItem]:
    out = []
    for raw in raw_items:
        exercise = normalize_exercise(raw, support, anchors)
        if exercise is not None:
            out.append(exercise)
    return out


def exercise_key(exercise: ExerciseItem) -> str:
    texts = sorted(_collapse(o.text).lower() for o in exercise.options)
    correct = exercise.correct_option
    parts = [
        exercise.skill,
        _collapse(exercise.question_prompt).lower(),
        "|".join(texts),
        _collapse(correct.text).lower() if correct else "",
    ]
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()


def dedupe_exercises(exercises: List[ExerciseItem]) -> List[ExerciseItem]:
    seen = set()
    out = []
    for exercise in exercises:
        key = exercise_key(exercise)
        if key in seen:
            continue
        seen.add(key)
        out.append(exercise)
    return out


def extract_quoted_term(text: str) -> Optional[str]:
    match = _SINGLE_QUOTED_RE.search(text) or _DOUBLE_QUOTED_RE.search(text)
    return match.group(1).strip() if match else None


def infer_anchor(exercise: ExerciseItem, anchors: List[str]) -> Optional[str]:
    if exercise.skill == "vocabulary":
        return extract_quoted_term(exercise.question_prompt) or None
    question = exercise.question_prompt.lower()
    return next((a for a in anchors if a and a.lower() in question), None)


def select_balanced(
    exercises: List[ExerciseItem],
    count: int,
    vocab_min: int,
    grammar_min: int,
    anchors: List[str],
) -> List[ExerciseItem]:
    """
    Fill the skill minimums first, then top up from every skill.

    Each anchor may back at most one exercise (two when the anchor list is
    long) so a batch does not circle the same term.
    """
    by_skill: Dict[str, List[ExerciseItem]] = {skill: [] for skill in VALID_SKILLS}
    for exercise in exercises:
        by_skill[exercise.skill].append(exercise)

    anchor_limit = 1 if len(anchors) <= 14 else 2
    anchor_use: Dict[str, int] = {}
    selected: List[ExerciseItem] = []
    selected_keys = set()

    def push(exercise: ExerciseItem) -> None:
        key = exercise_key(exercise)
        if len(selected) >= count or key in selected_keys:
            return
        anchor = infer_anchor(exercise, anchors)
        if anchor is not None:
            anchor_key = anchor.lower()
            if anchor_use.get(anchor_key, 0) >= anchor_limit:
                return
            anchor_use[anchor_key] = anchor_use.get(anchor_key, 0) + 1
        selected.append(exercise)
        selected_keys.add(key)

    for skill, minimum in (("vocabulary", vocab_min), ("grammar", grammar_min)):
        for exercise in by_skill[skill]:
            if count_skill(selected, skill) >= minimum:
                break
            push(exercise)

    for exercise in by_skill["vocabulary"] + by_skill["grammar"] + by_skill["comprehension"]:
        if len(selected) >= count:
            break
        push(exercise)

    return selected


def count_skill(exercises: List[ExerciseItem], skill: str) -> int:
    return sum(1 for e in exercises if e.skill == skill)


def compact_words(words: List[Dict[str, Any]], limit: int = MAX_COMPACT_WORDS) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    seen = set()
    for word in words:
        term = get_string(word, "term")
        if not term or term.lower() in seen:
            continue
        seen.add(term.lower())
        out.append({"term": term, "meaning": get_string(word, "meaning") or None})
        if len(out) >= limit:
            break
    return out


def compact_grammar(points: List[Dict[str, Any]], limit: int = MAX_COMPACT_GRAMMAR) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    seen = set()
    for point in points:
        point_id = get_string(point, "key") or get_string(point, "id")
        title = get_string(point, "title")
        if not point_id and not title:
            continue
        key = (point_id or title).lower()
        if key in seen:
            continue
        seen.add(key)
        out.append({
            "id": point_id or None,
            "title": title or None,
            "pattern": get_string(point, "pattern") or None,
        })
        if len(out) >= limit:
            break
    return out


def build_anchors(text: str, words: List[Dict[str, Any]], limit: int = MAX_ANCHORS) -> List[str]:
    """Vocabulary terms first, then content bigrams repeated in the text"""
    anchors: List[str] = []
    seen = set()
    for word in words:
        term = get_string(word, "term")
        if term and term.lower() not in seen:
            seen.add(term.lower())
            anchors.append(term)

    tokens = text.lower().split()
    bigrams: Dict[str, int] = {}
    for a, b in zip(tokens, tokens[1:]):
        if a in STOPWORDS or b in STOPWORDS:
            continue
        if not _BIGRAM_TOKEN_RE.match(a) or not _BIGRAM_TOKEN_RE.match(b):
            continue
        bigram = f"{a} {b}"
        bigrams[bigram] = bigrams.get(bigram, 0) + 1

    for bigram, hits in sorted(bigrams.items(), key=lambda kv: -kv[1]):
        if len(anchors) >= limit or hits < 2:
            break
        if bigram not in seen:
            seen.add(bigram)
            anchors.append(bigram)

    return anchors[:limit]


def compact_existing(exercises: List[ExerciseItem], limit: int = MAX_ALREADY_HAVE) -> List[Dict[str, Any]]:
    return [
        {
            "skill": e.skill,
            "difficulty": e.difficulty,
            "question_prompt": e.question_prompt,
            "options": [{"text": o.text, "is_correct": o.is_correct} for o in e.options],
        }
        for e in exercises[:limit]
    ]


def effective_count(text: str, requested: int, anchors: List[str]) -> int:
    """Short lessons cannot carry many distinct anchored questions"""
    words = word_count(text)
    if words <= 140:
        return min(requested, max(8, min(14, len(anchors) + 6)))
    if words <= 240:
        return min(requested, max(10, min(18, len(anchors) + 7)))
    return requested


def skill_minimums(count: int, vocab_ratio: float, grammar_ratio: float) -> tuple:
    vocab_min = int(count * vocab_ratio)
    grammar_min = int(count * grammar_ratio)
    if vocab_min + grammar_min > count:
        vocab_min = count // 2
        grammar_min = count - vocab_min
    return vocab_min, grammar_min


class LessonExerciseService(GenerationService):
    """MCQ exercises anchored to the lesson's vocabulary and grammar"""

    task = "exercises"
    system_prompt = "Return ONLY valid JSON. No markdown. No extra text."

    def prompt(
        self,
        text: str,
        target_meta: LanguageMeta,
        support_meta: LanguageMeta,
        words: List[Dict[str, Any]],
        grammar: List[Dict[str, Any]],
        anchors: List[str],
        already_have: List[Dict[str, Any]],
        count: int,
        vocab_min: int,
        grammar_min: int,
        custom_prompt: Optional[str] = None,
    ) -> str:
        custom = (custom_prompt or "").strip()
        return EXERCISES_PROMPT.format(
            target_label=target_meta.label,
            target_code=target_meta.code,
            support_label=support_meta.label,
            support_code=support_meta.code,
            support_native=support_meta.native,
            count=count,
            vocab_min=vocab_min,
            grammar_min=grammar_min,
            anchors=json.dumps(anchors, ensure_ascii=False),
            already_have=json.dumps(already_have, ensure_ascii=False),
            words=json.dumps(words, ensure_ascii=False),
            grammar=json.dumps(grammar, ensure_ascii=False),
            custom=f"\nUser instructions:\n{custom}\n" if custom else "",
            text=text,
        )

    async def generate(
        self,
        text: str,
        target: str = "en",
        support: str = "en",
        words: Optional[List[Dict[str, Any]]] = None,
        grammar_points: Optional[List[Dict[str, Any]]] = None,
        count: Optional[int] = None,
        custom_prompt: Optional[str] = None,
    ) -> GenerationResult[ExerciseItem]:
        plain = normalize_text(text)
        if not plain:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Lesson text is empty")

        settings = self.settings
        target_meta, support_meta = lang_meta(target), lang_meta(support)
        words_compact = compact_words(words or [])
        grammar_compact = compact_grammar(grammar_points or [])
        anchors = build_anchors(plain, words_compact)

        count = max(MIN_EXERCISES, min(MAX_EXERCISES, count or settings.exercises_count))
        count = effective_count(plain, count, anchors)
        vocab_min, grammar_min = skill_minimums(count, settings.exercises_vocab_ratio, settings.exercises_grammar_ratio)

        policy = settings.chunk_policy("exercises")
        plan = self.chunker.plan(plain, policy)
        if plan.is_empty:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Chunk plan is empty")

        options = self.options()
        log_context = {
            "pipeline": "lesson_exercises",
            "target_lang": target_meta.code,
            "support_lang": support_meta.code,
            "count": count,
            "chunks": len(plan.chunks),
        }
        log = logger.bind(**log_context)

        raw: List[Dict[str, Any]] = []
        selected: List[ExerciseItem] = []
        rounds = 1 + max(0, settings.exercises_topup_rounds)
        started = self.runner.clock()

        try:
            for round_no in range(1, rounds + 1):
                if policy.time_budget_ms and (self.runner.clock() - started) * 1000 >= policy.time_budget_ms:
                    log.warning("Time budget exhausted before round", round=round_no)
                    break

                need = count - len(selected)
                need_vocab = max(0, vocab_min - count_skill(selected, "vocabulary"))
                need_grammar = max(0, grammar_min - count_skill(selected, "grammar"))
                if need_vocab + need_grammar > need:
                    need_vocab = need // 2
                    need_grammar = need - need_vocab

                chunk_text = shrink_text(plan.chunks[(round_no - 1) % len(plan.chunks)],
                                         settings.exercises_prompt_text_max_chars)
                already_have = compact_existing(selected)

                def factory(t: str, _index: int, _total: int, need=need, nv=need_vocab, ng=need_grammar, have=already_have):
                    return json_messages(
                        self.prompt(t, target_meta, support_meta, words_compact, grammar_compact,
                                    anchors, have, need, nv, ng, custom_prompt),
                        self.system_prompt,
                    )

                results = await self.runner.run_json(
                    self.single_plan(chunk_text, plan),
                    factory,
                    options,
                    {**log_context, "round": round_no},
                )
                added = collect_items(results, "exercises")
                if not added:
                    break

                raw.extend(added)
                selected = select_balanced(
                    dedupe_exercises(normalize_exercises(raw, support, anchors)),
                    count, vocab_min, grammar_min, anchors,
                )
                if len(selected) >= count:
                    break
        except Exception as e:
            log.error("Exercise generation failed", error=str(e))
            return GenerationResult.failure(GenerationErrorKind.UNEXPECTED, str(e))

        if len(selected) < count:
            log.warning("Fewer exercises than requested", got=len(selected))

        return GenerationResult.success(selected[:count])
