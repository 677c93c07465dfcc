from typing import List, Optional, Literal, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


# ======================= Generated items =======================

class WordItem(BaseModel):
    term: str
    meaning: str
    example_sentence: str
    translation: Optional[str] = None


class SentenceItem(BaseModel):
    text: str
    translation: Optional[str] = None
    source: str = "ai"


class GrammarExample(BaseModel):
    sentence: str
    translation: str
    source: Literal["lesson", "extra"] = "extra"


class GrammarPointItem(BaseModel):
    key: str
    title: str
    level: Optional[str] = None
    description: str
    pattern: str
    examples: List[GrammarExample] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)


class ExerciseOptionItem(BaseModel):
    label: str
    text: str
    is_correct: bool = False
    explanation: Optional[str] = None


class ExerciseItem(BaseModel):
    type: Literal["mcq"] = "mcq"
    skill: Literal["vocabulary", "grammar", "comprehension"] = "vocabulary"
    difficulty: Literal["easy", "medium"] = "easy"
    question_prompt: str
    instructions: Optional[str] = None
    solution_explanation: Optional[str] = None
    options: List[ExerciseOptionItem] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)

    @property
    def correct_option(self) -> Optional[ExerciseOptionItem]:
        return next((o for o in self.options if o.is_correct), None)


class DialogueTurn(BaseModel):
    speaker: str
    text: str


class LessonPack(BaseModel):
    title: str
    lesson_text: str
    dialogue: List[DialogueTurn] = Field(default_factory=list)
    key_phrases: List[str] = Field(default_factory=list)
    quick_questions: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)


class LessonAnalysis(BaseModel):
    overview: str
    grammar_points: str
    vocabulary_focus: str
    study_tips: str
    meta: Dict[str, Any] = Field(default_factory=dict)


class SentenceTranslation(BaseModel):
    id: int
    translation: str


class NlpOutput(BaseModel):
    """Merged output of a full-text analysis run"""
    sentences: List[SentenceItem] = Field(default_factory=list)
    words: List[WordItem] = Field(default_factory=list)
    exercises: List[ExerciseItem] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.sentences or self.words or self.exercises)


# ======================= API Schemas =======================

GenerationTask = Literal["words", "sentences", "grammar", "exercises"]
NlpTaskName = Literal["full_lesson", "words_only", "sentences_only", "exercises_only"]


class GenerateRequest(BaseModel):
    custom_prompt: Optional[str] = Field(default=None, max_length=4000)
    replace_existing: bool = Field(default=True)
    count: Optional[int] = Field(default=None, ge=1, le=50)


class ProcessTextRequest(BaseModel):
    task: NlpTaskName = Field(default="full_lesson")
    custom_prompt: Optional[str] = Field(default=None, max_length=4000)
    replace_existing: bool = Field(default=True)


class TranslateSentencesRequest(BaseModel):
    only_missing: bool = Field(default=True)
    custom_prompt: Optional[str] = Field(default=None, max_length=4000)


class AnalysisRequest(BaseModel):
    custom_prompt: Optional[str] = Field(default=None, max_length=4000)


class AiLessonRequest(BaseModel):
    topic: str = Field(..., min_length=1, max_length=300)
    goal: Optional[str] = Field(default=None, max_length=500)
    level: Optional[str] = Field(default=None, max_length=20)
    length: Literal["short", "medium", "long"] = Field(default="medium")
    keywords: List[str] = Field(default_factory=list, max_length=12)
    title_hint: Optional[str] = Field(default=None, max_length=120)
    include_dialogue: bool = Field(default=True)
    include_key_phrases: bool = Field(default=True)
    include_quick_questions: bool = Field(default=True)


class JobAcceptedResponse(BaseModel):
    status: str
    job_id: str


class JobStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    lesson_id: int
    job_type: str
    status: str
    items_created: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
