from typing import Any, Dict, List, Optional

from app.core.llm import LlmResult
from app.models import Lesson


class FakeLlm:
    """Stands in for LlmClient: replays queued results and records every call"""

    def __init__(self, results: Optional[List[Any]] = None):
        self.queue = list(results or [])
        self.calls: List[Dict[str, Any]] = []

    def push(self, *results: Any) -> None:
        self.queue.extend(results)

    def _next(self) -> LlmResult:
        if not self.queue:
            return LlmResult(ok=False, status=0, error={"message": "no scripted response"})
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def chat(self, messages, options=None) -> LlmResult:
        self.calls.append({"messages": messages, "options": dict(options or {})})
        return self._next()

    async def chat_json(self, messages, options=None) -> LlmResult:
        return await self.chat(messages, options)


def json_result(payload: Dict[str, Any], finish_reason: str = "stop") -> LlmResult:
    return LlmResult(ok=True, status=200, content="{}", json=payload, finish_reason=finish_reason)


def truncated_result(content: str) -> LlmResult:
    return LlmResult(ok=True, status=200, content=content, json=None, finish_reason="length",
                     error={"message": "Failed to decode JSON from model output"})


def failed_result(status: int = 500) -> LlmResult:
    return LlmResult(ok=False, status=status, error={"message": "upstream failure"})


async def add_lesson(session_factory, **values: Any) -> int:
    defaults = {
        "title": "At the market",
        "original_text": "The cat sat on the mat. The cat ran to the market.",
        "target_language": "en",
        "support_language": "en",
        "status": "draft",
    }
    defaults.update(values)
    async with session_factory() as session:
        async with session.begin():
            lesson = Lesson(**defaults)
            session.add(lesson)
            await session.flush()
            return lesson.id


LESSON_PARAGRAPHS = [
    "Sara walks into a small cafe near the station on a rainy Monday morning.",
    "She looks at the menu on the wall and tries to decide what to order today.",
    "The barista smiles and asks her if she wants her coffee with milk or without.",
    "In the end she orders a warm cappuccino and a slice of apple cake to take away.",
]


def lesson_pack_payload(speakers=("A", "B"), key_phrases=None, quick_questions=None, **overrides) -> Dict[str, Any]:
    data = {
        "title": "Ordering coffee",
        "lesson_text": "\n\n".join(LESSON_PARAGRAPHS),
        "dialogue": [{"speaker": speakers[i % len(speakers)], "text": f"Line number {i}."} for i in range(12)],
        "key_phrases": key_phrases if key_phrases is not None else [f"phrase {i}" for i in range(7)],
        "quick_questions": quick_questions if quick_questions is not None else [f"Question {i}?" for i in range(5)],
        "tags": ["cafe", "ordering"],
    }
    data.update(overrides)
    return data


def mcq_payload(skill, question, correct=0, options=3, **extra) -> Dict[str, Any]:
    raw = {
        "type": "mcq",
        "skill": skill,
        "difficulty": "easy",
        "question_prompt": question,
        "instructions": "Choose the best answer.",
        "solution_explanation": "It matches the text.",
        "options": [
            {"text": f"option {i}", "is_correct": i == correct, "explanation": ""}
            for i in range(options)
        ],
    }
    raw.update(extra)
    return raw
