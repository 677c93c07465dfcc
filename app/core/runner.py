"""
Drives a chunk plan through the LLM with a time budget and truncated-JSON repair
"""
from typing import Any, Callable, Dict, List, Optional
import time

import structlog

from app.config import Settings
from app.core.chunking import ChunkPlan
from app.core.llm import LlmClient, LlmResult, Messages
from app.core.logging import get_logger, metrics_logger

logger = get_logger(__name__)

MessagesFactory = Callable[[str, int, int], Messages]

REPAIR_MAX_INPUT_CHARS = 12000
REPAIR_EXCERPT_CHARS = 6000
CONTENT_HEAD_CHARS = 1200

REPAIR_SYSTEM_PROMPT = "Return ONLY a valid JSON object. No markdown. No extra text."
REPAIR_USER_PROMPT = (
    "You are given PARTIAL JSON output that was cut off. "
    "Return a valid JSON object of the SAME schema. "
    "Do NOT add new items. If the last item is incomplete, remove it. "
    "Close arrays/objects properly. Output ONLY JSON."
)


class ChunkedPromptRunner:
    """
    Runs one structured prompt per chunk, in order.

    Each row of the returned list is ``{chunk_index, chunks_total, json,
    finish_reason, usage}`` with a 1-based ``chunk_index``. Chunks whose call
    fails, or whose output cannot be decoded even after a repair pass, are
    dropped. When the plan carries a time budget the run stops before the
    first chunk that would start after the budget is spent.
    """

    def __init__(
        self,
        llm: LlmClient,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.llm = llm
        self.settings = settings
        self.clock = clock

    async def run_json(
        self,
        plan: ChunkPlan,
        messages_factory: MessagesFactory,
        options: Dict[str, Any],
        log_context: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        log_context = dict(log_context or {})
        pipeline = str(log_context.get("pipeline", "unknown"))
        log = logger.bind(**log_context)

        if plan.is_empty:
            log.info("Chunk plan is empty, nothing to run")
            return []

        total = len(plan.chunks)
        budget_ms = plan.time_budget_ms
        started = self.clock()
        results: List[Dict[str, Any]] = []

        for index, chunk_text in enumerate(plan.chunks, start=1):
            if budget_ms:
                elapsed_ms = (self.clock() - started) * 1000
                if elapsed_ms >= budget_ms:
                    log.warning("Time budget exhausted, stopping early",
                                chunk=index,
                                total=total,
                                elapsed_ms=int(elapsed_ms),
                                budget_ms=budget_ms)
                    metrics_logger.log_chunk_outcome(pipeline, "budget_skipped")
                    break

            try:
                messages = messages_factory(chunk_text, index, total)
                result = await self.llm.chat_json(messages, {**options, "operation": pipeline})
            except Exception as e:
                # A broken chunk must not abort the remaining ones
                log.warning("Chunk call raised, skipping",
                            chunk=index,
                            total=total,
                            error=str(e),
                            error_type=type(e).__name__)
                metrics_logger.log_chunk_outcome(pipeline, "error")
                continue

            if self._needs_repair(result):
                repaired = await self.repair(result.content, options, pipeline,
                                             log.bind(chunk=index, total=total))
                if repaired is not None:
                    result = repaired

            if not result.ok or not isinstance(result.json, dict):
                log.warning("Chunk produced no usable JSON",
                            chunk=index,
                            total=total,
                            status=result.status,
                            finish_reason=result.finish_reason,
                            error=result.error,
                            content_head=(result.content or "")[:CONTENT_HEAD_CHARS])
                metrics_logger.log_chunk_outcome(pipeline, "dropped")
                continue

            metrics_logger.log_chunk_outcome(pipeline, "ok")
            results.append({
                "chunk_index": index,
                "chunks_total": total,
                "json": result.json,
                "finish_reason": result.finish_reason,
                "usage": result.usage,
            })

        log.info("Chunked run finished", chunks=total, succeeded=len(results))
        return results

    @staticmethod
    def _needs_repair(result: LlmResult) -> bool:
        return (
            result.ok
            and result.json is None
            and bool((result.content or "").strip())
            and result.finish_reason == "length"
        )

    async def repair(
        self,
        content: Optional[str],
        options: Dict[str, Any],
        pipeline: str,
        log: structlog.BoundLogger,
    ) -> Optional[LlmResult]:
        partial = content or ""
        if len(partial) > REPAIR_MAX_INPUT_CHARS:
            partial = partial[:REPAIR_EXCERPT_CHARS] + "\n...\n" + partial[-REPAIR_EXCERPT_CHARS:]

        repair_options = {
            **options,
            "temperature": 0,
            "max_output_tokens": self.settings.repair_max_output_tokens,
            "response_format": "json_object",
            "operation": "json_repair",
        }
        messages = [
            {"role": "system", "content": REPAIR_SYSTEM_PROMPT},
            {"role": "user", "content": REPAIR_USER_PROMPT + "\n\n" + partial},
        ]

        try:
            repaired = await self.llm.chat_json(messages, repair_options)
        except Exception as e:
            log.warning("JSON repair call raised", error=str(e))
            return None

        if repaired.ok and isinstance(repaired.json, dict):
            log.info("Truncated chunk repaired")
            metrics_logger.log_chunk_outcome(pipeline, "repaired")
            return repaired

        log.warning("JSON repair failed", status=repaired.status)
        return None
