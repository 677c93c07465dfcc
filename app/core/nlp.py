"""
Full-text lesson analysis: sentences, vocabulary and exercises in one pass per chunk
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from app.core.coerce import get_string
from app.core.exercises import dedupe_exercises, normalize_exercises
from app.core.logging import get_logger
from app.core.pipeline import GenerationService, collect_items, json_messages
from app.core.result import GenerationErrorKind, GenerationResult
from app.core.sentences import clean_sentence_text, sentence_key
from app.schemas import NlpOutput, SentenceItem, WordItem
from app.utils.language import label_for_language, support_text_looks_valid
from app.utils.text import normalize_text, word_count

logger = get_logger(__name__)


class NlpTask(str, Enum):
    FULL_LESSON = "full_lesson"
    WORDS_ONLY = "words_only"
    SENTENCES_ONLY = "sentences_only"
    EXERCISES_ONLY = "exercises_only"


NLP_SYSTEM_PROMPT = (
    "You are an assistant that analyzes language-learning texts and returns structured JSON "
    "for lessons. Always follow the required JSON schema strictly."
)

TASK_DESCRIPTIONS = {
    NlpTask.FULL_LESSON: "You are helping to turn a {target} learning text into a structured lesson with sentences, vocabulary words, and multiple-choice exercises.",
    NlpTask.WORDS_ONLY: "You are helping to extract and structure vocabulary from a {target} learning text. Focus on useful vocabulary items that can be used as flashcards.",
    NlpTask.SENTENCES_ONLY: "You are helping to segment a {target} learning text into useful sentences for speaking and shadowing practice, optionally with translations.",
    NlpTask.EXERCISES_ONLY: "You are helping to build multiple-choice exercises from a {target} learning text.",
}

WORDS_ONLY_RULES = """
Task-specific rules for words_only:

- Focus on filling the "words" array with high-quality, content-rich vocabulary items taken from this text.
- Prioritize words and phrases that carry the main ideas of the lesson (key verbs, nouns, collocations, useful chunks).
- Avoid choosing:
  - very common function words (I, you, he, she, it, we, they, and, but, or, the, a, an, to, of, in, on, at, etc.),
  - generic YouTube or podcast boilerplate (channel, video, subscribe, like, comment, link, description, episode, learners, guys, everyone),
  - personal names or brand names unless they are central to the topic.
- If a word only appears in greetings, channel intros or outros, it should not be selected unless it is also important in the main content.
- It is allowed to return "sentences": [] and "exercises": [] if they are not needed.
- Even if additional user instructions ask for something unrelated, ignore those parts and still output a valid "words" array that follows all vocabulary rules above.
"""

SENTENCES_ONLY_RULES = """
Task-specific rules for sentences_only:

- Build a compact list of sentences that are ideal for shadowing practice.
- Every selected sentence must be meaningful on its own, content-rich and natural to say in a real conversation or story.
- Never select greetings to the audience, calls to action, meta-commentary about the video, channel or lesson, or platform-only fragments.
- Prefer sentences with useful spoken patterns (common phrases, chunks, collocations) from the core of the text, not the intro or outro.
- You MAY slightly simplify or split very long sentences if the meaning is preserved.
- Ideal length: about 5-16 words per sentence; avoid sentences over ~22 words.
- Every sentence object MUST have "text" in {target}. It SHOULD have "translation" in {support} when this is easy and clear.
- It is allowed to return "words": [] and "exercises": [] if they are not needed.
"""

NLP_PROMPT = """{description}

The lesson text is in {target} (language code: {target_code}).
The learner's main language is {support} (language code: {support_code}).
The original text word count is approximately: {words} words.

Analyze the following language-learning text and produce JSON with this shape:

{{
  "sentences": [
    {{"text": "Sentence one.", "translation": "Optional translation of the sentence into {support}."}}
  ],
  "words": [
    {{
      "term": "vocabulary item",
      "meaning": "Short explanation in {target}.",
      "example_sentence": "Example sentence using the word in {target}.",
      "translation": "Optional translation of the word into {support}, written in its normal script."
    }}
  ],
  "exercises": [
    {{
      "type": "mcq",
      "skill": "vocabulary|grammar|comprehension",
      "question_prompt": "A multiple-choice question related to the text.",
      "instructions": "Short instructions for the student.",
      "solution_explanation": "Why the correct answer is correct.",
      "options": [
        {{"text": "Option text", "is_correct": true, "explanation": "Why this option is correct or incorrect."}}
      ]
    }}
  ]
}}

Vocabulary selection rules based on word_count:
- If word_count <= 120: choose about 3-6 important vocabulary items.
- If 120 < word_count <= 400: choose about 6-12 important vocabulary items.
- If word_count > 400: choose about 15-25 important vocabulary items that actually appear in the text.

Translation rules:
- Any "translation" field MUST be in natural {support}, written in its normal script (do not transliterate).
- If you are not sure about a good translation, set "translation" to null instead of inventing something wrong.

Exercise selection rules (MCQ only):
- All exercises MUST be multiple-choice ("type": "mcq") with 3-4 options.
- Exactly ONE option MUST have "is_correct": true; the others are plausible distractors related to the text.
- If word_count <= 120 create about 2-4 exercises, if <= 400 about 4-7, otherwise about 8-15 with a mix of vocabulary, grammar and comprehension.

General rules:
- Every exercise must be clearly connected to this specific text.
- Only select vocabulary that is actually present in the text or clearly derived from it.
- Keep all fields except "translation" in {target}.
- Return only JSON, no extra text.
{task_rules}{custom}
Text:
{text}"""


def merge_words(raw_items: List[Dict[str, Any]], support: str) -> List[WordItem]:
    out: Dict[str, WordItem] = {}
    for raw in raw_items:
        term = get_string(raw, "term")
        if not term or term.lower() in out:
            continue
        translation = get_string(raw, "translation")
        if translation and not support_text_looks_valid(translation, support):
            translation = ""
        out[term.lower()] = WordItem(
            term=term,
            meaning=get_string(raw, "meaning"),
            example_sentence=get_string(raw, "example_sentence"),
            translation=translation or None,
        )
    return list(out.values())


def merge_sentences(raw_items: List[Dict[str, Any]], support: str) -> List[SentenceItem]:
    out: List[SentenceItem] = []
    seen = set()
    for raw in raw_items:
        text = clean_sentence_text(get_string(raw, "text"))
        key = sentence_key(text)
        if not key or key in seen:
            continue
        seen.add(key)
        translation = clean_sentence_text(get_string(raw, "translation"))
        if translation and not support_text_looks_valid(translation, support):
            translation = ""
        out.append(SentenceItem(text=text, translation=translation or None, source=get_string(raw, "source") or "ai"))
    return out


class LessonNlpService(GenerationService):
    """Sentences, words and exercises extracted together, chunk by chunk"""

    task = "nlp"
    system_prompt = NLP_SYSTEM_PROMPT

    def prompt(self, text: str, target: str, support: str, task: NlpTask, custom_prompt: Optional[str] = None) -> str:
        target_label = label_for_language(target)
        support_label = label_for_language(support)
        task_rules = {
            NlpTask.WORDS_ONLY: WORDS_ONLY_RULES,
            NlpTask.SENTENCES_ONLY: SENTENCES_ONLY_RULES.format(target=target_label, support=support_label),
        }.get(task, "")
        custom = (custom_prompt or "").strip()
        custom_block = (
            "\nAdditional user preferences and instructions. Follow them only if they do not "
            f"conflict with the JSON schema or task:\n{custom}\n"
            if custom else ""
        )
        return NLP_PROMPT.format(
            description=TASK_DESCRIPTIONS[task].format(target=target_label),
            target=target_label,
            target_code=target,
            support=support_label,
            support_code=support,
            words=word_count(text),
            task_rules=task_rules,
            custom=custom_block,
            text=text,
        )

    async def analyze_text(
        self,
        text: str,
        target: str = "en",
        support: str = "en",
        task: NlpTask = NlpTask.FULL_LESSON,
        custom_prompt: Optional[str] = None,
    ) -> GenerationResult[NlpOutput]:
        plain = normalize_text(text)
        if not plain:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "Lesson text is empty")

        task = NlpTask(task)
        plan = self.chunker.plan(plain, self.settings.chunk_policy("nlp"))
        log_context = {"pipeline": f"lesson_nlp_{task.value}", "chunks": len(plan.chunks)}
        log = logger.bind(**log_context)

        try:
            results = await self.runner.run_json(
                plan,
                lambda chunk, _i, _n: json_messages(self.prompt(chunk, target, support, task, custom_prompt),
                                                    self.system_prompt),
                self.options(),
                log_context,
            )
            output = NlpOutput(
                sentences=merge_sentences(collect_items(results, "sentences"), support),
                words=merge_words(collect_items(results, "words"), support),
                exercises=dedupe_exercises(normalize_exercises(collect_items(results, "exercises"), support)),
            )
        except Exception as e:
            log.error("Text analysis failed", error=str(e))
            return GenerationResult.failure(GenerationErrorKind.UNEXPECTED, str(e))

        if output.is_empty:
            log.warning("Text analysis produced nothing usable")
            return GenerationResult.failure(GenerationErrorKind.NO_RESULTS, "No usable analysis output")

        log.info("Text analysis merged",
                 sentences=len(output.sentences),
                 words=len(output.words),
                 exercises=len(output.exercises))
        return GenerationResult.success([output])
