"""
Daily quiz composition: selects a slate for a drop time, persists it together
with its template and exposure accounting in one transaction, and records a
composition log entry for every attempt. Also serves the read-only
reporting used by the admin console (stats, availability, health, logs).
"""
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.cache import drop_time_lock
from app.core.config import settings
from app.core.database import as_utc, utcnow
from app.core.errors import ComposerError, ConflictError, ValidationError
from app.models.enums import DailyQuizMode, Difficulty, DIFFICULTY_ORDER, QuestionTheme, QuestionType
from app.models.orm import CompositionLog, DailyQuiz, DailyQuizQuestion, Question
from app.services import composition_log
from app.services.anti_repeat import AntiRepeatService, cooldown_clause, pool_clause, relaxation_schedule
from app.services.composer_config import ComposerConfig, merge_config
from app.services.difficulty import recommended_distribution, target_distribution
from app.services.selector import MAX_RELAXATION_LEVEL, QuestionSelector
from app.services.template import TemplateAssembler, order_questions, template_size
from app.services.theme_plan import ALL_THEMES, get_strategy

logger = logging.getLogger(__name__)

ConfigInput = Union[None, ComposerConfig, Mapping[str, Any]]

def parse_drop_time(value: Union[str, datetime, None]) -> datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            raise ValidationError(
                f"Invalid drop time: {value!r}. Use ISO-8601, e.g. 2025-01-15T17:00:00Z",
                error_code="INVALID_DROP_TIME",
                details={"dropAtUTC": value},
            ) from None
    else:
        raise ValidationError("dropAtUTC is required", error_code="INVALID_DROP_TIME", details={"dropAtUTC": value})
    return as_utc(parsed)

def parse_mode(value: Union[str, DailyQuizMode, None]) -> DailyQuizMode:
    if value is None:
        return DailyQuizMode.MIX
    if isinstance(value, DailyQuizMode):
        return value
    try:
        return DailyQuizMode(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown mode {value!r}",
            error_code="INVALID_MODE",
            details={"allowed": [m.value for m in DailyQuizMode]},
        ) from None

def next_drop_time(now: datetime, hour: Optional[int] = None) -> datetime:
    """The next HH:00 UTC drop strictly after `now`."""
    hour = settings.DEFAULT_DROP_HOUR_UTC if hour is None else hour
    now = as_utc(now)
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate

@dataclass
class CompositionResult:
    daily_quiz: Optional[DailyQuiz]
    questions: List[Question]
    template: Dict[str, Any]
    composition_log: Dict[str, Any]
    preview: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def template_version(self) -> int:
        return self.template["version"]

    def to_response(self, cdn_url: Optional[str] = None) -> Dict[str, Any]:
        return {
            "quizId": self.daily_quiz.id if self.daily_quiz is not None else None,
            "dropAtUTC": self.template["dropAtUTC"],
            "questionCount": len(self.questions),
            "questionIds": [q["id"] for q in self.template["questions"]],
            "template": {
                "version": self.template["version"],
                "cdnUrl": self.daily_quiz.template_cdn_url if self.daily_quiz is not None else cdn_url,
                "size": template_size(self.template),
            },
            "composition": self.composition_log,
            "preview": self.preview,
        }

class DailyQuizComposer:
    def __init__(
        self,
        db: Session,
        redis_client=None,
        assembler: Optional[TemplateAssembler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.redis = redis_client
        self.assembler = assembler or TemplateAssembler()
        self.clock = clock

    # ---------- composition ----------

    def compose_daily_quiz(
        self,
        drop_at_utc: Union[str, datetime],
        mode: Union[str, DailyQuizMode, None] = DailyQuizMode.MIX,
        config: ConfigInput = None,
    ) -> CompositionResult:
        drop_at = parse_drop_time(drop_at_utc)
        quiz_mode = parse_mode(mode)
        cfg = merge_config(config)
        logger.info(f"Composing daily quiz for {drop_at.isoformat()} (mode={quiz_mode.value})")
        return self._compose(drop_at, quiz_mode, cfg)

    def preview_composition(
        self,
        drop_at_utc: Union[str, datetime],
        mode: Union[str, DailyQuizMode, None] = DailyQuizMode.MIX,
        config: ConfigInput = None,
    ) -> CompositionResult:
        """Run the same selection as compose without writing anything."""
        drop_at = parse_drop_time(drop_at_utc)
        quiz_mode = parse_mode(mode)
        cfg = merge_config(config)
        started = time.perf_counter()
        anti = AntiRepeatService(self.db)
        strategy = get_strategy(quiz_mode)
        plan = strategy.build_plan(drop_at, cfg)
        selection = self._select(drop_at, plan, strategy, cfg, anti)
        preview_id = f"preview-{drop_at.strftime('%Y%m%dT%H%M%SZ')}"
        template = self.assembler.build(
            preview_id, drop_at, quiz_mode.value, plan.to_dict(), 1, selection.questions, generated_at=self.clock()
        )
        extra = []
        if self.get_quiz_for(drop_at) is not None:
            extra.append(f"A daily quiz already exists for {drop_at.isoformat()}; composing would conflict")
        entry = composition_log.success_entry(
            drop_at, quiz_mode.value, plan.to_dict(), selection,
            self._elapsed_ms(started), anti.queries + 1, extra_warnings=extra, created_at=self.clock(),
        )
        return CompositionResult(
            daily_quiz=None,
            questions=order_questions(selection.questions),
            template=template,
            composition_log=composition_log.summary(entry),
            preview=True,
            warnings=list(entry.warnings),
        )

    def _select(self, drop_at, plan, strategy, cfg: ComposerConfig, anti: AntiRepeatService):
        selection = QuestionSelector(self.db, anti).select(drop_at, plan, strategy, cfg)
        issues = self.validate_composition(selection.questions, cfg)
        if issues:
            raise ComposerError(f"Selected slate failed validation: {'; '.join(issues)}", error_code="INVALID_SLATE")
        return selection

    def _compose(self, drop_at: datetime, mode: DailyQuizMode, cfg: ComposerConfig) -> CompositionResult:
        started = time.perf_counter()
        anti = AntiRepeatService(self.db)
        plan = None
        try:
            with drop_time_lock(self.redis, drop_at):
                if self.get_quiz_for(drop_at) is not None:
                    raise ConflictError(
                        f"Daily quiz already exists for {drop_at.isoformat()}",
                        error_code="QUIZ_EXISTS",
                        details={"dropAtUTC": drop_at.isoformat()},
                    )
                strategy = get_strategy(mode)
                plan = strategy.build_plan(drop_at, cfg)
                selection = self._select(drop_at, plan, strategy, cfg, anti)
                ordered = order_questions(selection.questions)

                quiz = DailyQuiz(id=str(uuid.uuid4()), drop_at_utc=drop_at, mode=mode, theme_plan=plan.to_dict(), template_version=1)
                for i, q in enumerate(ordered):
                    quiz.questions.append(DailyQuizQuestion(
                        question_id=q.id, order_index=i, difficulty=q.difficulty, question_type=q.question_type,
                    ))
                self.db.add(quiz)
                template = self.assembler.publish(quiz, ordered, version=1, generated_at=self.clock())
                self.db.flush()

                anti.record_usage([q.id for q in ordered], drop_at)
                entry = composition_log.success_entry(
                    drop_at, mode.value, plan.to_dict(), selection,
                    self._elapsed_ms(started), anti.queries + 3, daily_quiz_id=quiz.id,
                    created_at=self.clock(),
                )
                self.db.add(entry)
                self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            conflict = ConflictError(
                f"Daily quiz already exists for {drop_at.isoformat()}",
                error_code="QUIZ_EXISTS",
                details={"dropAtUTC": drop_at.isoformat()},
            )
            self._record_failure(drop_at, mode, plan, conflict, started, anti)
            raise conflict from e
        except ComposerError as e:
            self.db.rollback()
            logger.warning(f"Composition for {drop_at.isoformat()} failed: {e.kind}: {e.message}")
            self._record_failure(drop_at, mode, plan, e, started, anti)
            raise
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Unexpected error composing daily quiz for {drop_at.isoformat()}")
            self._record_failure(drop_at, mode, plan, e, started, anti)
            raise

        logger.info(
            f"Composed daily quiz {quiz.id} for {drop_at.isoformat()}: {len(ordered)} questions, "
            f"relaxation level {selection.relaxation_level}, {len(selection.warnings)} warning(s)"
        )
        return CompositionResult(
            daily_quiz=quiz,
            questions=ordered,
            template=template,
            composition_log=composition_log.summary(entry),
            warnings=list(entry.warnings),
        )

    def _record_failure(self, drop_at, mode, plan, error, started, anti) -> None:
        entry = composition_log.failure_entry(
            drop_at, mode.value, plan.to_dict() if plan else None, error,
            self._elapsed_ms(started), anti.queries, created_at=self.clock(),
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Could not write failed composition log for {drop_at.isoformat()}")

    def get_quiz_for(self, drop_at: datetime) -> Optional[DailyQuiz]:
        return self.db.scalar(select(DailyQuiz).where(DailyQuiz.drop_at_utc == drop_at))

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int(round((time.perf_counter() - started) * 1000))

    def validate_composition(self, questions: Sequence[Question], cfg: ComposerConfig) -> List[str]:
        issues = []
        ids = [q.id for q in questions]
        dupes = sorted(i for i, c in Counter(ids).items() if c > 1)
        if dupes:
            issues.append(f"Duplicate questions in slate: {', '.join(dupes)}")
        if len(ids) != cfg.target_question_count:
            issues.append(f"Slate has {len(ids)} questions, expected {cfg.target_question_count}")
        return issues

    # ---------- reporting ----------

    def get_composition_stats(self) -> Dict[str, Any]:
        now = self.clock()
        drop_at = next_drop_time(now)
        cfg = ComposerConfig()
        strict = relaxation_schedule(cfg)[0]

        rows = self.db.execute(
            select(Question.difficulty, Question.themes).where(pool_clause(), cooldown_clause(drop_at, strict.window))
        ).all()
        by_difficulty = {d.value: 0 for d in DIFFICULTY_ORDER}
        by_theme: Counter = Counter()
        buckets = {d.value: Counter() for d in DIFFICULTY_ORDER}
        for difficulty, themes in rows:
            by_difficulty[difficulty.value] += 1
            for t in set(themes or []):
                by_theme[t] += 1
                buckets[difficulty.value][t] += 1

        recent = self._logs_since(now - timedelta(days=30), limit=100, successful_only=True)
        theme_distribution: Counter = Counter()
        for entry in recent:
            theme_distribution.update((entry.final_selection or {}).get("themeDistribution", {}))
        recent_warnings: List[str] = []
        for entry in recent[:10]:
            recent_warnings.extend(entry.warnings or [])

        return {
            "totalQuizzes": int(self.db.scalar(select(func.count(DailyQuiz.id))) or 0),
            "nextDropAtUTC": drop_at.isoformat(),
            "byDifficulty": by_difficulty,
            "byTheme": {t: by_theme.get(t, 0) for t in ALL_THEMES},
            "byDifficultyTheme": {d: dict(sorted(c.items())) for d, c in buckets.items()},
            "averageRelaxationLevel": round(
                sum(e.relaxation_level for e in recent) / len(recent), 2
            ) if recent else 0.0,
            "themeDistribution": dict(sorted(theme_distribution.items())),
            "recentWarnings": recent_warnings[:20],
            "recentCompositions": len(recent),
        }

    def get_question_availability(self, drop_at_utc: Union[str, datetime, None] = None) -> Dict[str, Any]:
        drop_at = parse_drop_time(drop_at_utc) if drop_at_utc is not None else next_drop_time(self.clock())
        cfg = ComposerConfig()
        anti = AntiRepeatService(self.db)
        difficulties = [anti.availability(d, drop_at, cfg) for d in DIFFICULTY_ORDER]
        strict_available = {Difficulty(a["difficulty"]): a["levels"][0]["available"] for a in difficulties}
        return {
            "dropAtUTC": drop_at.isoformat(),
            "difficulties": difficulties,
            "recommendation": recommended_distribution(strict_available, cfg),
        }

    def get_system_health(self) -> Dict[str, Any]:
        now = self.clock()
        issues: List[str] = []
        recommendations: List[str] = []

        recent = list(self.db.scalars(
            select(CompositionLog)
            .order_by(CompositionLog.created_at.desc(), CompositionLog.id.desc())
            .limit(settings.HEALTH_WINDOW)
        ).all())
        failures = [e for e in recent if e.has_errors]
        successes = [e for e in recent if not e.has_errors]
        failure_rate = round(len(failures) / len(recent), 2) if recent else 0.0
        avg_relaxation = round(
            sum(e.relaxation_level for e in successes) / len(successes), 2
        ) if successes else 0.0

        if failure_rate > settings.HEALTH_MAX_FAILURE_RATE:
            issues.append(f"High composition failure rate: {failure_rate:.0%} of the last {len(recent)} attempts")
            kinds = Counter(e.error_kind for e in failures)
            if kinds.get("pool_exhausted"):
                recommendations.append("Approve more questions; recent compositions ran out of eligible candidates")
        if avg_relaxation > settings.HEALTH_MAX_AVG_RELAXATION:
            issues.append(f"Average relaxation level {avg_relaxation} exceeds {settings.HEALTH_MAX_AVG_RELAXATION}")
            recommendations.append("Add fresh questions so selections stop relaxing anti-repeat windows")

        stale_since = now - timedelta(days=settings.HEALTH_STALE_DAYS)
        if not any(as_utc(e.created_at) >= stale_since for e in successes):
            issues.append("No recent quiz compositions found")
            recommendations.append("Check that the daily composition job is scheduled and running")

        drop_at = next_drop_time(now)
        cfg = ComposerConfig()
        target = target_distribution(cfg)
        strict = relaxation_schedule(cfg)[0]
        anti = AntiRepeatService(self.db)
        pool_stats = {}
        for d in DIFFICULTY_ORDER:
            eligible = anti.count_eligible(drop_at, strict, d)
            required = target[d] * settings.HEALTH_POOL_SAFETY_FACTOR
            pool_stats[d.value] = {"eligible": eligible, "required": required, "target": target[d]}
            if eligible < required:
                issues.append(f"Low {d.value} pool for {drop_at.isoformat()}: {eligible} eligible, {required} needed")
                recommendations.append(f"Add at least {required - eligible} approved {d.value} questions")

        return {
            "healthy": not issues,
            "issues": issues,
            "recommendations": recommendations,
            "lastCheck": now.isoformat(),
            "nextDropAtUTC": drop_at.isoformat(),
            "failureRate": failure_rate,
            "averageRelaxationLevel": avg_relaxation,
            "recentCompositions": len(recent),
            "questionPoolStats": pool_stats,
        }

    def get_configuration_options(self) -> Dict[str, Any]:
        return {
            "modes": [m.value for m in DailyQuizMode],
            "themes": [t.value for t in QuestionTheme],
            "difficulties": [d.value for d in DIFFICULTY_ORDER],
            "questionTypes": [t.value for t in QuestionType],
            "maxRelaxationLevel": MAX_RELAXATION_LEVEL,
            "defaultConfig": ComposerConfig().model_dump(mode="json"),
        }

    def get_recent_composition_logs(self, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        if not isinstance(limit, int) or not 1 <= limit <= 100:
            raise ValidationError("limit must be between 1 and 100", error_code="INVALID_PAGINATION")
        if not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset must be >= 0", error_code="INVALID_PAGINATION")
        total = int(self.db.scalar(select(func.count(CompositionLog.id))) or 0)
        rows = self.db.scalars(
            select(CompositionLog)
            .order_by(CompositionLog.created_at.desc(), CompositionLog.id.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        return {
            "logs": [composition_log.to_dict(e) for e in rows],
            "pagination": {"total": total, "limit": limit, "offset": offset},
        }

    def _logs_since(self, since: datetime, limit: int, successful_only: bool = False) -> List[CompositionLog]:
        stmt = select(CompositionLog).where(CompositionLog.created_at >= since)
        if successful_only:
            stmt = stmt.where(CompositionLog.has_errors.is_(False))
        stmt = stmt.order_by(CompositionLog.created_at.desc(), CompositionLog.id.desc()).limit(limit)
        return list(self.db.scalars(stmt).all())
