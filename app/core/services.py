"""
Wiring for the lesson generation services
"""
from dataclasses import dataclass
from typing import Optional

from app.config import Settings
from app.core.analysis import LessonAnalysisService
from app.core.chunking import TextChunker
from app.core.dialogue import AiLessonGeneratorService
from app.core.exercises import LessonExerciseService
from app.core.grammar import LessonGrammarService
from app.core.llm import LlmClient
from app.core.nlp import LessonNlpService
from app.core.runner import ChunkedPromptRunner
from app.core.sentences import LessonSentenceService
from app.core.translation import LessonSentenceTranslationService
from app.core.words import FastLessonWordsService


@dataclass
class LessonServices:
    words: FastLessonWordsService
    sentences: LessonSentenceService
    grammar: LessonGrammarService
    exercises: LessonExerciseService
    nlp: LessonNlpService
    dialogue: AiLessonGeneratorService
    translation: LessonSentenceTranslationService
    analysis: LessonAnalysisService


def build_services(settings: Settings, llm: Optional[LlmClient] = None) -> LessonServices:
    """One client, runner and chunker shared by every service"""
    llm = llm or LlmClient(settings)
    runner = ChunkedPromptRunner(llm, settings)
    chunker = TextChunker()
    args = (settings, llm, runner, chunker)
    return LessonServices(
        words=FastLessonWordsService(*args),
        sentences=LessonSentenceService(*args),
        grammar=LessonGrammarService(*args),
        exercises=LessonExerciseService(*args),
        nlp=LessonNlpService(*args),
        dialogue=AiLessonGeneratorService(*args),
        translation=LessonSentenceTranslationService(*args),
        analysis=LessonAnalysisService(*args),
    )
