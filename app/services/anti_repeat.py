"""Anti-repeat rules: cool-down windows, exposure caps and usage accounting."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence
from sqlalchemy import and_, case, func, or_, select, true, update
from sqlalchemy.orm import Session
from app.core.database import as_utc
from app.models.enums import Difficulty
from app.models.orm import Question
from app.services.composer_config import ComposerConfig

logger = logging.getLogger(__name__)

LEVEL_LABELS = ["strict", "relaxed1", "relaxed2", "relaxed3", "final", "emergency"]
EMERGENCY_LEVEL = len(LEVEL_LABELS) - 1

@dataclass(frozen=True)
class RelaxationStep:
    level: int
    label: str
    window: timedelta
    exposure_cap: Optional[int] = None

    @property
    def window_days(self) -> float:
        return round(self.window.total_seconds() / 86400, 2)

@dataclass
class AntiRepeatInfo:
    question_id: str
    days_since_last_used: Optional[float]
    exposure_count: int
    is_eligible: bool
    reason: str

def relaxation_schedule(config: ComposerConfig) -> List[RelaxationStep]:
    """Cool-down steps from strict to emergency; the already-used-today window applies at every step."""
    floor = timedelta(hours=config.min_cooldown_hours)
    steps = []
    for level, days in enumerate(config.anti_repeat_days.windows()):
        steps.append(RelaxationStep(
            level=level,
            label=LEVEL_LABELS[level],
            window=max(timedelta(days=days), floor),
            exposure_cap=config.max_exposure_bias if level == 0 else None,
        ))
    steps.append(RelaxationStep(level=EMERGENCY_LEVEL, label=LEVEL_LABELS[EMERGENCY_LEVEL], window=floor))
    return steps

def cooldown_clause(drop_at: datetime, window: timedelta):
    if window <= timedelta(0):
        return true()
    # Symmetric so quizzes composed out of order still respect the window
    return or_(
        Question.last_used_at.is_(None),
        Question.last_used_at <= drop_at - window,
        Question.last_used_at >= drop_at + window,
    )

def pool_clause():
    return and_(Question.approved.is_(True), Question.disabled.is_(False))

class AntiRepeatService:
    def __init__(self, db: Session):
        self.db = db
        self.queries = 0

    def eligible_questions(
        self,
        difficulty: Difficulty,
        drop_at: datetime,
        step: RelaxationStep,
        exclude_ids: Iterable[str] = (),
    ) -> List[Question]:
        stmt = select(Question).where(
            pool_clause(),
            Question.difficulty == difficulty,
            cooldown_clause(drop_at, step.window),
        )
        excluded = list(exclude_ids)
        if excluded:
            stmt = stmt.where(Question.id.not_in(excluded))
        if step.exposure_cap is not None:
            stmt = stmt.where(Question.exposure_count <= step.exposure_cap)
        stmt = stmt.order_by(Question.exposure_count.asc(), Question.id.asc())
        self.queries += 1
        return list(self.db.scalars(stmt).all())

    def count_eligible(self, drop_at: datetime, step: RelaxationStep, difficulty: Optional[Difficulty] = None) -> int:
        stmt = select(func.count(Question.id)).where(pool_clause(), cooldown_clause(drop_at, step.window))
        if difficulty is not None:
            stmt = stmt.where(Question.difficulty == difficulty)
        if step.exposure_cap is not None:
            stmt = stmt.where(Question.exposure_count <= step.exposure_cap)
        self.queries += 1
        return int(self.db.scalar(stmt) or 0)

    def anti_repeat_info(self, question: Question, drop_at: datetime, step: RelaxationStep) -> AntiRepeatInfo:
        last_used = as_utc(question.last_used_at)
        exposure = question.exposure_count or 0
        if last_used is None:
            days, eligible, reason = None, True, "never_used"
        else:
            delta = abs(drop_at - last_used)
            days = round(delta.total_seconds() / 86400, 2)
            eligible = delta >= step.window
            reason = "eligible" if eligible else "cooldown"
        if eligible and step.exposure_cap is not None and exposure > step.exposure_cap:
            eligible, reason = False, "overexposed"
        return AntiRepeatInfo(
            question_id=question.id,
            days_since_last_used=days,
            exposure_count=exposure,
            is_eligible=eligible,
            reason=reason,
        )

    def record_usage(self, question_ids: Sequence[str], drop_at: datetime) -> None:
        """Atomic exposure increment; runs inside the caller's transaction."""
        if not question_ids:
            return
        self.db.execute(
            update(Question)
            .where(Question.id.in_(list(question_ids)))
            .values(exposure_count=Question.exposure_count + 1, last_used_at=drop_at)
            .execution_options(synchronize_session=False)
        )
        self.queries += 1

    def release_usage(self, question_ids: Sequence[str]) -> None:
        if not question_ids:
            return
        self.db.execute(
            update(Question)
            .where(Question.id.in_(list(question_ids)))
            .values(exposure_count=case((Question.exposure_count > 0, Question.exposure_count - 1), else_=0))
            .execution_options(synchronize_session=False)
        )
        self.queries += 1

    def availability(self, difficulty: Difficulty, drop_at: datetime, config: ComposerConfig) -> Dict:
        total, avg_exposure, oldest = self.db.execute(
            select(
                func.count(Question.id),
                func.avg(Question.exposure_count),
                func.min(Question.last_used_at),
            ).where(pool_clause(), Question.difficulty == difficulty)
        ).one()
        self.queries += 1
        levels = []
        for step in relaxation_schedule(config):
            levels.append({
                "level": step.level,
                "label": step.label,
                "windowDays": step.window_days,
                "exposureCap": step.exposure_cap,
                "available": self.count_eligible(drop_at, step, difficulty),
            })
        oldest = as_utc(oldest)
        return {
            "difficulty": difficulty.value,
            "total": int(total or 0),
            "levels": levels,
            "averageExposure": round(float(avg_exposure or 0.0), 2),
            "oldestLastUsed": oldest.isoformat() if oldest else None,
        }
