"""
Shared plumbing for the lesson generation services
"""
from typing import Any, Callable, Dict, List, Optional

from app.config import Settings
from app.core.chunking import ChunkPlan, TextChunker
from app.core.llm import LlmClient, Messages
from app.core.logging import get_logger
from app.core.runner import ChunkedPromptRunner
from app.utils.language import lang_meta
from app.utils.text import word_count

logger = get_logger(__name__)

JSON_ONLY_SYSTEM_PROMPT = "Return ONLY a valid JSON object. No markdown. No extra keys. No extra text."


def json_messages(user_prompt: str, system_prompt: str = JSON_ONLY_SYSTEM_PROMPT) -> Messages:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def chunk_line(index: int, total: int) -> str:
    return f"Chunk: {index}/{total}" if total > 0 else "Chunk: full text"


def custom_prompt_block(custom_prompt: Optional[str]) -> str:
    custom = (custom_prompt or "").strip()
    if not custom:
        return ""
    return (
        "\nExtra instructions from the teacher (follow them unless they break the rules above):\n"
        f"{custom}\n"
    )


def translation_language_guard(support_code: str) -> str:
    meta = lang_meta(support_code)
    return (
        "Translation rules (STRICT):\n"
        f'- "translation" must be written ONLY in {meta.label} ({meta.native}) language.\n'
        "- Do NOT include any words, letters, or phrases from any other language (even one word).\n"
        f"- Use the normal writing system/script used by {meta.label}.\n"
        f'- If you are not 100% sure you can produce correct {meta.label}, set "translation" to "".'
    )


def per_chunk_count(chunks: int, desired_total: int, min_per: int, max_per: int) -> int:
    if chunks <= 1:
        return desired_total
    base = -(-desired_total // chunks)
    return max(min_per, min(max_per, base))


def collect_items(results: List[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    """Dict items under json[key] across runner rows, in chunk order"""
    items: List[Dict[str, Any]] = []
    for row in results:
        payload = row.get("json") or {}
        values = payload.get(key) if isinstance(payload, dict) else None
        if not isinstance(values, list):
            continue
        items.extend(v for v in values if isinstance(v, dict))
    return items


class GenerationService:
    """Base for services that prompt the LLM through the chunked runner"""

    task = ""
    system_prompt = JSON_ONLY_SYSTEM_PROMPT

    def __init__(
        self,
        settings: Settings,
        llm: LlmClient,
        runner: Optional[ChunkedPromptRunner] = None,
        chunker: Optional[TextChunker] = None,
    ):
        self.settings = settings
        self.llm = llm
        self.runner = runner or ChunkedPromptRunner(llm, settings)
        self.chunker = chunker or TextChunker()

    def options(self, task: Optional[str] = None, response_format: Any = "json_object") -> Dict[str, Any]:
        return self.settings.llm_options(task or self.task, response_format=response_format)

    def single_plan(self, text: str, source: Optional[ChunkPlan] = None) -> ChunkPlan:
        return ChunkPlan(
            chunks=[text],
            target_words=source.target_words if source else 0,
            overlap_words=source.overlap_words if source else 0,
            total_words=word_count(text),
            total_chars=len(text),
        )

    async def run_chunks_until(
        self,
        plan: ChunkPlan,
        prompt_for: Callable[[str, int, int, bool], str],
        key: str,
        merge: Callable[[List[Dict[str, Any]]], List[Any]],
        desired: int,
        minimum: int,
        fallback_text: str,
        log_context: Dict[str, Any],
    ) -> List[Any]:
        """
        Prompt chunk by chunk until ``desired`` merged items exist, then fall
        back to one full-text pass when fewer than ``minimum`` were kept.

        ``prompt_for(text, index, total, is_fallback)`` builds the user prompt;
        ``merge`` turns the raw item dicts gathered so far into clean items.
        """
        options = self.options()
        raw: List[Dict[str, Any]] = []
        merged: List[Any] = []
        total = len(plan.chunks)
        started = self.runner.clock()

        for index, chunk_text in enumerate(plan.chunks, start=1):
            if plan.time_budget_ms and (self.runner.clock() - started) * 1000 >= plan.time_budget_ms:
                logger.bind(**log_context).warning("Time budget exhausted before chunk", chunk=index, total=total)
                break
            results = await self.runner.run_json(
                self.single_plan(chunk_text, plan),
                lambda text, _i, _n, index=index: json_messages(prompt_for(text, index, total, False), self.system_prompt),
                options,
                {**log_context, "chunk": index, "chunks_total": total},
            )
            raw.extend(collect_items(results, key))
            merged = merge(raw)
            if len(merged) >= desired:
                break

        if len(merged) < minimum:
            results = await self.runner.run_json(
                self.single_plan(fallback_text),
                lambda text, _i, _n: json_messages(prompt_for(text, 0, 0, True), self.system_prompt),
                options,
                {**log_context, "chunk": 0, "chunks_total": 0, "fallback": True},
            )
            raw.extend(collect_items(results, key))
            merged = merge(raw)

        return merged
