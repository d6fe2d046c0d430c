"""Admin operations on composed daily quizzes.

Every mutation locks the quiz row and re-checks the drop state inside the
same transaction right before writing. A quiz counts as dropped once its
status is ``dropped`` or its drop time has passed.
"""
import logging
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.database import as_utc, utcnow
from app.core.errors import ConflictError, NotFoundError, QuizLockedError, ValidationError
from app.models.enums import DailyQuizMode, DailyQuizStatus, DIFFICULTY_ORDER
from app.models.orm import CompositionLog, DailyQuiz, DailyQuizQuestion, Question
from app.services.anti_repeat import AntiRepeatService
from app.services.composer import CompositionResult, parse_drop_time, parse_mode
from app.services.template import TemplateAssembler, order_questions

logger = logging.getLogger(__name__)

MAX_CUSTOM_QUESTIONS = 20

class QuizAdminService:
    def __init__(
        self,
        db: Session,
        assembler: Optional[TemplateAssembler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.assembler = assembler or TemplateAssembler()
        self.clock = clock

    @contextmanager
    def _unit_of_work(self):
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ---------- state ----------

    def is_dropped(self, quiz: DailyQuiz) -> bool:
        return quiz.status == DailyQuizStatus.DROPPED or as_utc(quiz.drop_at_utc) <= self.clock()

    def status_of(self, quiz: DailyQuiz) -> str:
        return DailyQuizStatus.DROPPED.value if self.is_dropped(quiz) else quiz.status.value

    def _get(self, quiz_id: str, lock: bool = False) -> DailyQuiz:
        stmt = select(DailyQuiz).where(DailyQuiz.id == quiz_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        quiz = self.db.scalar(stmt)
        if quiz is None:
            raise NotFoundError("DailyQuiz", quiz_id)
        return quiz

    def _locked(self, quiz_id: str, action: str) -> DailyQuiz:
        quiz = self._get(quiz_id, lock=True)
        if self.is_dropped(quiz):
            logger.warning(f"Refusing to {action} dropped daily quiz {quiz_id}")
            raise QuizLockedError(quiz_id, action)
        return quiz

    def _load_questions(self, question_ids: Sequence[str]) -> List[Question]:
        ids = list(question_ids or [])
        if not ids:
            raise ValidationError("questionIds must not be empty", error_code="INVALID_SLATE")
        if len(ids) > MAX_CUSTOM_QUESTIONS:
            raise ValidationError(f"At most {MAX_CUSTOM_QUESTIONS} questions per quiz", error_code="INVALID_SLATE")
        dupes = sorted(i for i, c in Counter(ids).items() if c > 1)
        if dupes:
            raise ValidationError(
                "Duplicate question ids in slate", error_code="DUPLICATE_QUESTIONS", details={"duplicates": dupes}
            )
        found = {q.id: q for q in self.db.scalars(select(Question).where(Question.id.in_(ids))).all()}
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFoundError("Question", ", ".join(missing))
        unusable = [i for i in ids if not found[i].approved or found[i].disabled]
        if unusable:
            raise ValidationError(
                "Questions must be approved and enabled",
                error_code="QUESTION_NOT_ELIGIBLE",
                details={"questionIds": unusable},
            )
        return [found[i] for i in ids]

    def _slate(self, quiz: DailyQuiz) -> List[Question]:
        return [row.question for row in quiz.questions]

    def _rebuild_slate(self, quiz: DailyQuiz, questions: Sequence[Question]) -> List[Question]:
        ordered = order_questions(questions)
        # Flush deletes first so (quiz, order_index) stays unique
        quiz.questions.clear()
        self.db.flush()
        for i, q in enumerate(ordered):
            quiz.questions.append(DailyQuizQuestion(
                question_id=q.id, order_index=i, difficulty=q.difficulty, question_type=q.question_type,
            ))
        return ordered

    def _republish(self, quiz: DailyQuiz, questions: Sequence[Question]) -> Dict[str, Any]:
        return self.assembler.publish(quiz, questions, version=quiz.template_version + 1, generated_at=self.clock())

    # ---------- reads ----------

    def get_quiz_details(self, quiz_id: str) -> Dict[str, Any]:
        quiz = self._get(quiz_id)
        questions = self._slate(quiz)
        return {
            "id": quiz.id,
            "dropAtUTC": as_utc(quiz.drop_at_utc).isoformat(),
            "mode": quiz.mode.value,
            "status": self.status_of(quiz),
            "themePlan": quiz.theme_plan or {},
            "template": {
                "version": quiz.template_version,
                "cdnUrl": quiz.template_cdn_url,
                "size": quiz.template_size,
                "stats": self.assembler.stats(quiz.template) if quiz.template else None,
            },
            "questions": [
                {
                    "id": q.id,
                    "orderIndex": row.order_index,
                    "questionType": q.question_type.value,
                    "difficulty": q.difficulty.value,
                    "themes": q.themes or [],
                    "subjects": q.subjects or [],
                    "prompt": q.prompt,
                    "choices": q.choices,
                    "correct": q.correct,
                    "media": q.media,
                    "exposureCount": q.exposure_count,
                }
                for row, q in zip(quiz.questions, questions)
            ],
            "summary": {
                "totalQuestions": len(questions),
                "difficultyDistribution": {
                    d.value: sum(1 for q in questions if q.difficulty == d) for d in DIFFICULTY_ORDER
                },
                "themeDistribution": dict(sorted(Counter(t for q in questions for t in (q.themes or [])).items())),
                "questionTypeDistribution": dict(sorted(Counter(q.question_type.value for q in questions).items())),
            },
            "createdAt": as_utc(quiz.created_at).isoformat() if quiz.created_at else None,
            "droppedAt": as_utc(quiz.dropped_at).isoformat() if quiz.dropped_at else None,
        }

    # ---------- mutations ----------

    def create_custom_quiz(
        self,
        drop_at_utc: Union[str, datetime],
        mode: Union[str, DailyQuizMode, None],
        question_ids: Sequence[str],
        replace_existing: bool = False,
    ) -> CompositionResult:
        """Create a quiz from a hand-picked slate, bypassing selection."""
        drop_at = parse_drop_time(drop_at_utc)
        quiz_mode = parse_mode(mode)
        started = time.perf_counter()
        anti = AntiRepeatService(self.db)
        try:
            with self._unit_of_work():
                questions = self._load_questions(question_ids)
                existing = self.db.scalar(
                    select(DailyQuiz).where(DailyQuiz.drop_at_utc == drop_at).with_for_update()
                )
                if existing is not None:
                    if not replace_existing:
                        raise ConflictError(
                            f"Daily quiz already exists for {drop_at.isoformat()}",
                            error_code="QUIZ_EXISTS",
                            details={"dropAtUTC": drop_at.isoformat(), "quizId": existing.id},
                        )
                    if self.is_dropped(existing):
                        raise QuizLockedError(existing.id, "replace")
                    self._delete(existing, anti)
                    self.db.flush()

                themes = sorted({t for q in questions for t in (q.themes or [])})
                quiz = DailyQuiz(
                    id=str(uuid.uuid4()),
                    drop_at_utc=drop_at,
                    mode=quiz_mode,
                    theme_plan={"mode": quiz_mode.value, "themes": themes, "weights": {}, "custom": True},
                    template_version=1,
                )
                self.db.add(quiz)
                ordered = self._rebuild_slate(quiz, questions)
                template = self.assembler.publish(quiz, ordered, version=1, generated_at=self.clock())
                self.db.flush()
                anti.record_usage([q.id for q in ordered], drop_at)
                entry = CompositionLog(
                    daily_quiz_id=quiz.id,
                    target_date=drop_at,
                    mode=quiz_mode.value,
                    theme_plan=quiz.theme_plan,
                    selection_process=[],
                    final_selection={
                        "totalQuestions": len(ordered),
                        "questionIds": [q.id for q in ordered],
                        "difficultyActual": template["metadata"]["difficultyBreakdown"],
                        "themeDistribution": template["metadata"]["themeBreakdown"],
                    },
                    warnings=["Custom slate: selection constraints were not applied"],
                    performance={"durationMs": int((time.perf_counter() - started) * 1000), "dbQueries": anti.queries},
                    relaxation_level=0,
                    has_errors=False,
                    created_at=self.clock(),
                )
                self.db.add(entry)
        except IntegrityError as e:
            raise ConflictError(
                f"Daily quiz already exists for {drop_at.isoformat()}", error_code="QUIZ_EXISTS"
            ) from e
        logger.info(f"Created custom daily quiz {quiz.id} for {drop_at.isoformat()} with {len(ordered)} questions")
        return CompositionResult(
            daily_quiz=quiz,
            questions=ordered,
            template=template,
            composition_log={
                "relaxationLevel": 0,
                "themeDistribution": entry.final_selection["themeDistribution"],
                "difficultyActual": entry.final_selection["difficultyActual"],
                "warnings": list(entry.warnings),
                "performanceMs": entry.performance["durationMs"],
            },
            warnings=list(entry.warnings),
        )

    def update_drop_time(self, quiz_id: str, new_drop_at_utc: Union[str, datetime]) -> Dict[str, Any]:
        new_drop_at = parse_drop_time(new_drop_at_utc)
        if new_drop_at <= self.clock():
            raise ValidationError("New drop time must be in the future", error_code="INVALID_DROP_TIME")
        try:
            with self._unit_of_work():
                quiz = self._locked(quiz_id, "change the drop time of")
                clash = self.db.scalar(
                    select(DailyQuiz.id).where(DailyQuiz.drop_at_utc == new_drop_at, DailyQuiz.id != quiz.id)
                )
                if clash is not None:
                    raise ConflictError(
                        f"Daily quiz {clash} already drops at {new_drop_at.isoformat()}",
                        error_code="QUIZ_EXISTS",
                        details={"dropAtUTC": new_drop_at.isoformat(), "quizId": clash},
                    )
                previous = as_utc(quiz.drop_at_utc)
                quiz.drop_at_utc = new_drop_at
                questions = self._slate(quiz)
                self.db.execute(
                    update(Question)
                    .where(Question.id.in_([q.id for q in questions]), Question.last_used_at == previous)
                    .values(last_used_at=new_drop_at)
                    .execution_options(synchronize_session=False)
                )
                self._republish(quiz, questions)
        except IntegrityError as e:
            raise ConflictError(f"Drop time {new_drop_at.isoformat()} is taken", error_code="QUIZ_EXISTS") from e
        logger.info(f"Moved daily quiz {quiz_id} from {previous.isoformat()} to {new_drop_at.isoformat()}")
        return self._template_summary(quiz)

    def swap_question(self, quiz_id: str, old_question_id: str, new_question_id: str) -> Dict[str, Any]:
        with self._unit_of_work():
            quiz = self._locked(quiz_id, "swap questions in")
            current = self._slate(quiz)
            current_ids = [q.id for q in current]
            if old_question_id not in current_ids:
                raise ValidationError(
                    f"Question {old_question_id} is not in daily quiz {quiz_id}", error_code="QUESTION_NOT_IN_QUIZ"
                )
            if new_question_id in current_ids:
                raise ValidationError(
                    f"Question {new_question_id} is already in daily quiz {quiz_id}", error_code="DUPLICATE_QUESTIONS"
                )
            (replacement,) = self._load_questions([new_question_id])
            questions = [replacement if q.id == old_question_id else q for q in current]
            self._apply_slate(quiz, current, questions)
        logger.info(f"Swapped {old_question_id} -> {new_question_id} in daily quiz {quiz_id}")
        return self._template_summary(quiz)

    def replace_questions(self, quiz_id: str, question_ids: Sequence[str]) -> Dict[str, Any]:
        with self._unit_of_work():
            quiz = self._locked(quiz_id, "replace questions in")
            current = self._slate(quiz)
            questions = self._load_questions(question_ids)
            self._apply_slate(quiz, current, questions)
        logger.info(f"Replaced slate of daily quiz {quiz_id} ({len(question_ids)} questions)")
        return self._template_summary(quiz)

    def _apply_slate(self, quiz: DailyQuiz, current: Sequence[Question], questions: Sequence[Question]) -> None:
        anti = AntiRepeatService(self.db)
        before = {q.id for q in current}
        after = {q.id for q in questions}
        ordered = self._rebuild_slate(quiz, questions)
        anti.release_usage(sorted(before - after))
        anti.record_usage(sorted(after - before), as_utc(quiz.drop_at_utc))
        self._republish(quiz, ordered)

    def regenerate_template(self, quiz_id: str) -> Dict[str, Any]:
        """New template version for the unchanged slate."""
        with self._unit_of_work():
            quiz = self._locked(quiz_id, "regenerate the template of")
            self._republish(quiz, self._slate(quiz))
        return self._template_summary(quiz)

    def delete_quiz(self, quiz_id: str) -> Dict[str, Any]:
        with self._unit_of_work():
            quiz = self._locked(quiz_id, "delete")
            released = self._delete(quiz, AntiRepeatService(self.db))
        logger.info(f"Deleted daily quiz {quiz_id}; released {len(released)} exposure(s)")
        return {"deleted": True, "quizId": quiz_id, "releasedQuestionIds": released}

    def _delete(self, quiz: DailyQuiz, anti: AntiRepeatService) -> List[str]:
        ids = [row.question_id for row in quiz.questions]
        anti.release_usage(ids)
        self.db.execute(
            update(CompositionLog)
            .where(CompositionLog.daily_quiz_id == quiz.id)
            .values(daily_quiz_id=None)
            .execution_options(synchronize_session=False)
        )
        self.db.delete(quiz)
        return ids

    def mark_dropped(self, quiz_id: str) -> Dict[str, Any]:
        with self._unit_of_work():
            quiz = self._get(quiz_id, lock=True)
            if quiz.status != DailyQuizStatus.DROPPED:
                quiz.status = DailyQuizStatus.DROPPED
                quiz.dropped_at = self.clock()
        return {"quizId": quiz.id, "status": quiz.status.value, "droppedAt": as_utc(quiz.dropped_at).isoformat()}

    def release_due_quizzes(self, now: Optional[datetime] = None) -> List[str]:
        """Mark every quiz whose drop time has passed as dropped."""
        now = as_utc(now) if now is not None else self.clock()
        with self._unit_of_work():
            due = self.db.scalars(
                select(DailyQuiz)
                .where(DailyQuiz.status != DailyQuizStatus.DROPPED, DailyQuiz.drop_at_utc <= now)
                .with_for_update()
            ).all()
            for quiz in due:
                quiz.status = DailyQuizStatus.DROPPED
                quiz.dropped_at = now
            ids = [q.id for q in due]
        if ids:
            logger.info(f"Marked {len(ids)} daily quiz(zes) as dropped")
        return ids

    def _template_summary(self, quiz: DailyQuiz) -> Dict[str, Any]:
        return {
            "quizId": quiz.id,
            "dropAtUTC": as_utc(quiz.drop_at_utc).isoformat(),
            "status": self.status_of(quiz),
            "version": quiz.template_version,
            "cdnUrl": quiz.template_cdn_url,
            "size": quiz.template_size,
            "questionIds": [row.question_id for row in quiz.questions],
        }
