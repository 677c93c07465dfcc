"""
Database models for lessons, their generated items and generation jobs
"""
import uuid
from typing import Any, Dict

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
    UniqueConstraint, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Lesson(Base):
    """Source lesson with its generation status and AI analysis"""
    __tablename__ = "lessons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=True)
    short_description = Column(String(255), nullable=True)
    original_text = Column(Text, nullable=True)
    target_language = Column(String(10), nullable=True)
    support_language = Column(String(10), nullable=True)
    level = Column(String(20), nullable=True)
    # draft, processing, ready, failed, generating
    status = Column(String(20), nullable=False, default="draft")
    tags = Column(JsonType, nullable=True)

    analysis_overview = Column(Text, nullable=True)
    analysis_grammar = Column(Text, nullable=True)
    analysis_vocabulary = Column(Text, nullable=True)
    analysis_study_tips = Column(Text, nullable=True)
    analysis_meta = Column(JsonType, nullable=True)

    word_prompt_level = Column(String(20), nullable=True)
    word_prompt_domain = Column(String(100), nullable=True)
    word_prompt_min_items = Column(Integer, nullable=True)
    word_prompt_max_items = Column(Integer, nullable=True)
    word_prompt_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    words = relationship("LessonWord", back_populates="lesson", order_by="LessonWord.order_index",
                         cascade="all, delete-orphan")
    sentences = relationship("LessonSentence", back_populates="lesson", order_by="LessonSentence.order_index",
                             cascade="all, delete-orphan")
    grammar_points = relationship("LessonGrammarPoint", back_populates="lesson",
                                  order_by="LessonGrammarPoint.order_index", cascade="all, delete-orphan")
    exercises = relationship("LessonExercise", back_populates="lesson", order_by="LessonExercise.order_index",
                             cascade="all, delete-orphan")

    @property
    def meta(self) -> Dict[str, Any]:
        return dict(self.analysis_meta or {})


class LessonWord(Base):
    __tablename__ = "lesson_words"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lesson_id = Column(Integer, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    term = Column(String(255), nullable=False)
    meaning = Column(Text, nullable=True)
    example_sentence = Column(Text, nullable=True)
    translation = Column(String(255), nullable=True)
    meta = Column("metadata", JsonType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    lesson = relationship("Lesson", back_populates="words")

    __table_args__ = (
        Index("idx_lesson_words_term", "lesson_id", "term"),
    )


class LessonSentence(Base):
    __tablename__ = "lesson_sentences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lesson_id = Column(Integer, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    text = Column(Text, nullable=False)
    translation = Column(Text, nullable=True)
    source = Column(String(20), nullable=False, default="generated")
    meta = Column("metadata", JsonType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    lesson = relationship("Lesson", back_populates="sentences")

    __table_args__ = (
        UniqueConstraint("lesson_id", "order_index", name="uq_lesson_sentence_order"),
    )


class LessonGrammarPoint(Base):
    __tablename__ = "lesson_grammar_points"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lesson_id = Column(Integer, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    key = Column(String(255), nullable=True)
    title = Column(String(255), nullable=False)
    level = Column(String(10), nullable=True)
    description = Column(Text, nullable=True)
    pattern = Column(String(255), nullable=True)
    examples = Column(JsonType, nullable=True)
    meta = Column("metadata", JsonType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    lesson = relationship("Lesson", back_populates="grammar_points")


class LessonExercise(Base):
    __tablename__ = "lesson_exercises"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lesson_id = Column(Integer, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    type = Column(String(50), nullable=False, default="mcq")
    skill = Column(String(50), nullable=True)
    question_prompt = Column(Text, nullable=False)
    instructions = Column(Text, nullable=True)
    solution_explanation = Column(Text, nullable=True)
    meta = Column("metadata", JsonType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    lesson = relationship("Lesson", back_populates="exercises")
    options = relationship("LessonExerciseOption", back_populates="exercise",
                           order_by="LessonExerciseOption.order_index", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_lesson_exercises_type", "lesson_id", "type"),
    )


class LessonExerciseOption(Base):
    __tablename__ = "lesson_exercise_options"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lesson_exercise_id = Column(Integer, ForeignKey("lesson_exercises.id", ondelete="CASCADE"), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    label = Column(String(5), nullable=True)
    text = Column(Text, nullable=False)
    is_correct = Column(Boolean, nullable=False, default=False)
    explanation = Column(Text, nullable=True)

    exercise = relationship("LessonExercise", back_populates="options")


class GenerationJob(Base):
    """Track generation jobs"""
    __tablename__ = "generation_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    lesson_id = Column(Integer, nullable=False, index=True)

    # words, sentences, grammar, exercises, process, ai_lesson, analysis, translation
    job_type = Column(String(50), nullable=False)
    # pending, processing, completed, skipped, failed
    status = Column(String(50), default="pending")

    items_created = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    result_data = Column(JsonType, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_generation_job_status", "status"),
        Index("idx_generation_job_created", "created_at"),
    )
