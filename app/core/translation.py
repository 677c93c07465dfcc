"""
Batch translation of lesson sentences into the learner's language
"""
from typing import Dict, List, Optional

from app.core.coerce import get_int, get_string
from app.core.logging import get_logger
from app.core.pipeline import GenerationService, collect_items, json_messages
from app.core.result import GenerationErrorKind, GenerationResult
from app.schemas import SentenceTranslation
from app.utils.language import lang_meta, support_text_looks_valid

logger = get_logger(__name__)

TRANSLATION_SYSTEM_PROMPT = (
    "You are an assistant that translates language-learning sentences and returns structured JSON. "
    "Always follow the required JSON schema strictly."
)

TRANSLATION_PROMPT = """You will receive a list of sentences in {target_label} (language code: {target_code}).
Translate each sentence into natural {support_label} (language code: {support_code}) that is easy to understand for learners.

Return a single JSON object with this shape:

{{
  "translations": [
    {{
      "id": 123,
      "translation": "Sentence translated into {support_label}."
    }}
  ]
}}

Rules:
- Use natural, learner-friendly {support_label}. Do not translate word-by-word in an unnatural way.
- Do not add explanations, notes or comments in the translation field.
- If a sentence is incomplete or too strange, still provide the best reasonable translation you can.
- Never invent new sentences; only translate the ones given.
- The "id" must match exactly the sentence ID from the list.
{custom}
Sentences to translate:

{items}"""


def items_block(sentences: List[Dict]) -> str:
    lines: List[str] = []
    for sentence in sentences:
        lines.append(f"ID: {sentence['id']}")
        lines.append(f"Text: {sentence['text']}")
        lines.append("---")
    return "\n".join(lines)


class LessonSentenceTranslationService(GenerationService):
    """Translates existing lesson sentences in a single structured call"""

    task = "translation"
    system_prompt = TRANSLATION_SYSTEM_PROMPT

    def prompt(self, sentences: List[Dict], target: str, support: str, custom_prompt: Optional[str] = None) -> str:
        target_meta, support_meta = lang_meta(target), lang_meta(support)
        custom = (custom_prompt or "").strip()
        custom_block = (
            "\nAdditional user instructions for translation. Follow them only if they do not conflict "
            f"with the required JSON schema or translation rules:\n{custom}\n"
            if custom else ""
        )
        return TRANSLATION_PROMPT.format(
            target_label=target_meta.label,
            target_code=target_meta.code,
            support_label=support_meta.label,
            support_code=support_meta.code,
            custom=custom_block,
            items=items_block(sentences),
        )

    async def translate(
        self,
        sentences: List[Dict],
        target: str = "en",
        support: str = "en",
        custom_prompt: Optional[str] = None,
    ) -> GenerationResult[SentenceTranslation]:
        """
        Translate ``[{"id": int, "text": str}, ...]``.

        Only ids from the input come back, each at most once, and only when
        the translation passes the support-language guard.
        """
        sentences = [s for s in sentences if str(s.get("text") or "").strip()]
        if not sentences:
            return GenerationResult.failure(GenerationErrorKind.EMPTY_INPUT, "No sentences to translate")

        known_ids = {int(s["id"]) for s in sentences}
        log_context = {
            "pipeline": "lesson_sentence_translation",
            "sentences": len(sentences),
            "target_lang": target,
            "support_lang": support,
        }
        log = logger.bind(**log_context)

        try:
            results = await self.runner.run_json(
                self.single_plan(items_block(sentences)),
                lambda _text, _i, _n: json_messages(
                    self.prompt(sentences, target, support, custom_prompt), self.system_prompt),
                self.options(),
                log_context,
            )
        except Exception as e:
            log.error("Sentence translation failed", error=str(e))
            return GenerationResult.failure(GenerationErrorKind.UNEXPECTED, str(e))

        out: Dict[int, SentenceTranslation] = {}
        for raw in collect_items(results, "translations"):
            sentence_id = get_int(raw.get("id"))
            translation = get_string(raw, "translation")
            if sentence_id is None or sentence_id not in known_ids or sentence_id in out:
                continue
            if not support_text_looks_valid(translation, support):
                continue
            out[sentence_id] = SentenceTranslation(id=sentence_id, translation=translation)

        log.info("Sentence translations merged", translated=len(out))
        return GenerationResult.success(list(out.values()))
