from sqlalchemy import (
    BigInteger, Integer, String, Text, Boolean,
    ForeignKey, JSON, DateTime, UniqueConstraint, Index,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from typing import Optional, List, Dict, Any
import uuid
from app.core.database import Base, utcnow
from app.models.enums import Difficulty, QuestionType, DailyQuizMode, DailyQuizStatus

# SQLite only autoincrements INTEGER PRIMARY KEY columns
IdType = BigInteger().with_variant(Integer, "sqlite")

def _enum(enum_cls):
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
    )

def _uuid() -> str:
    return str(uuid.uuid4())

# ========== Content Models ==========

class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_last_used_difficulty", "last_used_at", "difficulty"),
        Index("idx_questions_exposure", "exposure_count"),
        Index("idx_questions_approved_disabled", "approved", "disabled"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    question_type: Mapped[QuestionType] = mapped_column(_enum(QuestionType), nullable=False)
    difficulty: Mapped[Difficulty] = mapped_column(_enum(Difficulty), nullable=False)
    themes: Mapped[List[str]] = mapped_column(JSON, default=list)
    subjects: Mapped[List[str]] = mapped_column(JSON, default=list)
    prompt: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    choices: Mapped[Optional[List[Any]]] = mapped_column(JSON)
    correct: Mapped[Any] = mapped_column(JSON)
    media: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    approved: Mapped[bool] = mapped_column(Boolean, default=False)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    exposure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

# ========== Delivery Models ==========

class DailyQuiz(Base):
    __tablename__ = "daily_quizzes"
    __table_args__ = (
        UniqueConstraint("drop_at_utc", name="uq_daily_quizzes_drop_at"),
        Index("idx_daily_quizzes_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    drop_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    mode: Mapped[DailyQuizMode] = mapped_column(_enum(DailyQuizMode), nullable=False)
    status: Mapped[DailyQuizStatus] = mapped_column(
        _enum(DailyQuizStatus), nullable=False, default=DailyQuizStatus.PENDING_TEMPLATE
    )
    theme_plan: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    template_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    template_cdn_url: Mapped[Optional[str]] = mapped_column(String(512))
    template: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    template_size: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    dropped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Relationships
    questions: Mapped[List["DailyQuizQuestion"]] = relationship(
        back_populates="daily_quiz",
        cascade="all, delete-orphan",
        order_by="DailyQuizQuestion.order_index",
    )

class DailyQuizQuestion(Base):
    __tablename__ = "daily_quiz_questions"
    __table_args__ = (
        UniqueConstraint("daily_quiz_id", "question_id", name="uq_daily_quiz_question"),
        UniqueConstraint("daily_quiz_id", "order_index", name="uq_daily_quiz_order"),
        Index("idx_dqq_question", "question_id"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    daily_quiz_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("daily_quizzes.id", ondelete="CASCADE"), nullable=False
    )
    question_id: Mapped[str] = mapped_column(String(36), ForeignKey("questions.id"), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    difficulty: Mapped[Difficulty] = mapped_column(_enum(Difficulty), nullable=False)
    question_type: Mapped[QuestionType] = mapped_column(_enum(QuestionType), nullable=False)

    # Relationships
    daily_quiz: Mapped["DailyQuiz"] = relationship(back_populates="questions")
    question: Mapped["Question"] = relationship()

# ========== Governance Models ==========

class CompositionLog(Base):
    __tablename__ = "composition_logs"
    __table_args__ = (
        Index("idx_composition_logs_created", "created_at"),
        Index("idx_composition_logs_errors", "has_errors"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    daily_quiz_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("daily_quizzes.id", ondelete="SET NULL")
    )
    target_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    mode: Mapped[Optional[str]] = mapped_column(String(32))
    theme_plan: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    selection_process: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    final_selection: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    warnings: Mapped[List[str]] = mapped_column(JSON, default=list)
    performance: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    relaxation_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    has_errors: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_kind: Mapped[Optional[str]] = mapped_column(String(32))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
