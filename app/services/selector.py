"""
Slate selection: scores eligible questions and picks a daily slate under
difficulty, theme, subject and exposure constraints, relaxing them in a fixed
order when the pool is tight.

Relaxation levels:
    0-4  anti-repeat windows strict..final (exposure cap only at 0)
    5    emergency window (already-used-today exclusion only)
    6    diversity caps ignored (subject repeats, question types, theme overlap)
    7    slots moved between difficulties
"""
import hashlib
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy.orm import Session

from app.core.database import as_utc
from app.core.errors import PoolExhaustedError
from app.models.enums import Difficulty, DIFFICULTY_ORDER
from app.models.orm import Question
from app.services.anti_repeat import AntiRepeatService, EMERGENCY_LEVEL, RelaxationStep, relaxation_schedule
from app.services.composer_config import ComposerConfig
from app.services.difficulty import fallback_order, target_distribution, validate_distribution
from app.services.theme_plan import ThemePlan, ThemeStrategy

logger = logging.getLogger(__name__)

CAPS_RELAXED_LEVEL = EMERGENCY_LEVEL + 1
REDISTRIBUTION_LEVEL = EMERGENCY_LEVEL + 2
MAX_RELAXATION_LEVEL = REDISTRIBUTION_LEVEL

SCORE_WEIGHTS = {
    "theme": 0.40,
    "new_theme": 0.15,
    "exposure": 0.25,
    "recency": 0.15,
    "tiebreak": 0.05,
}

@dataclass
class SelectionStep:
    difficulty: Difficulty
    target: int
    attempted: int = 0
    selected: int = 0
    relaxation_level: int = 0
    issues: List[str] = field(default_factory=list)
    redistributed_from: Optional[Difficulty] = None

    def to_dict(self) -> dict:
        out = {
            "difficulty": self.difficulty.value,
            "target": self.target,
            "attempted": self.attempted,
            "selected": self.selected,
            "relaxationLevel": self.relaxation_level,
            "issues": list(self.issues),
        }
        if self.redistributed_from is not None:
            out["redistributedFrom"] = self.redistributed_from.value
        return out

@dataclass
class SlateState:
    questions: List[Question] = field(default_factory=list)
    ids: Set[str] = field(default_factory=set)
    themes: Counter = field(default_factory=Counter)
    subjects: Counter = field(default_factory=Counter)
    types: Counter = field(default_factory=Counter)

    def add(self, q: Question) -> None:
        self.questions.append(q)
        self.ids.add(q.id)
        self.themes.update(set(q.themes or []))
        self.subjects.update(set(q.subjects or []))
        self.types[q.question_type] += 1

    def count(self, difficulty: Difficulty) -> int:
        return sum(1 for q in self.questions if q.difficulty == difficulty)

    def reject_reason(self, q: Question, config: ComposerConfig) -> Optional[str]:
        if q.id in self.ids:
            return "duplicate"
        if any(self.subjects[s] >= config.max_subject_repeats for s in set(q.subjects or [])):
            return "subject"
        if self.types[q.question_type] >= config.max_per_question_type:
            return "question_type"
        overlap = sum(1 for t in set(q.themes or []) if self.themes[t] > 0)
        if overlap > config.theme_diversity.max_theme_overlap:
            return "theme_overlap"
        return None

@dataclass
class SelectionResult:
    questions: List[Question]
    relaxation_level: int
    steps: List[SelectionStep]
    warnings: List[str]
    target: Dict[Difficulty, int]
    moved: int = 0
    attempted: int = 0

    @property
    def actual(self) -> Dict[Difficulty, int]:
        counts = Counter(q.difficulty for q in self.questions)
        return {d: counts.get(d, 0) for d in DIFFICULTY_ORDER}

    def theme_distribution(self) -> Dict[str, int]:
        return dict(sorted(Counter(t for q in self.questions for t in (q.themes or [])).items()))

    def subject_distribution(self) -> Dict[str, int]:
        return dict(sorted(Counter(s for q in self.questions for s in (q.subjects or [])).items()))

    def average_exposure(self) -> float:
        if not self.questions:
            return 0.0
        return round(sum(q.exposure_count or 0 for q in self.questions) / len(self.questions), 2)

    def oldest_last_used(self) -> Optional[datetime]:
        used = [as_utc(q.last_used_at) for q in self.questions if q.last_used_at is not None]
        return min(used) if used else None

    def newest_last_used(self) -> Optional[datetime]:
        used = [as_utc(q.last_used_at) for q in self.questions if q.last_used_at is not None]
        return max(used) if used else None

def tiebreak(seed: str, question_id: str) -> float:
    digest = hashlib.md5(f"{seed}:{question_id}".encode()).hexdigest()
    return int(digest[:8], 16) / 0xFFFFFFFF

class QuestionSelector:
    """Deterministic slate selector: identical pool and inputs give an identical slate."""

    def __init__(self, db: Session, anti_repeat: Optional[AntiRepeatService] = None):
        self.db = db
        self.anti_repeat = anti_repeat or AntiRepeatService(db)

    def select(
        self,
        drop_at: datetime,
        plan: ThemePlan,
        strategy: ThemeStrategy,
        config: ComposerConfig,
    ) -> SelectionResult:
        seed = f"{drop_at.isoformat()}|{plan.mode.value}"
        schedule = relaxation_schedule(config)
        target = target_distribution(config)
        state = SlateState()
        steps: List[SelectionStep] = []
        warnings: List[str] = list(plan.warnings)

        for difficulty in DIFFICULTY_ORDER:
            if target[difficulty] == 0:
                continue
            step = SelectionStep(difficulty=difficulty, target=target[difficulty])
            self._fill(step, target[difficulty], state, drop_at, plan, strategy, config, schedule, seed)
            steps.append(step)

        moved = self._redistribute(target, state, steps, drop_at, plan, strategy, config, schedule, seed)

        n = config.target_question_count
        result = SelectionResult(
            questions=list(state.questions),
            relaxation_level=max([s.relaxation_level for s in steps] + [REDISTRIBUTION_LEVEL if moved else 0]),
            steps=steps,
            warnings=warnings,
            target=target,
            moved=moved,
            attempted=sum(s.attempted for s in steps),
        )
        for step in steps:
            warnings.extend(f"{step.difficulty.value}: {issue}" for issue in step.issues)
        if moved:
            warnings.extend(f"Difficulty deviation: {issue}" for issue in validate_distribution(result.actual, target))

        if len(result.questions) < n:
            logger.warning(f"Pool exhausted for {drop_at.isoformat()}: {len(result.questions)}/{n} selected")
            raise PoolExhaustedError(
                f"Only {len(result.questions)} of {n} questions could be selected at maximum relaxation",
                error_code="INSUFFICIENT_POOL",
                details={
                    "needed": n,
                    "selected": len(result.questions),
                    "target": {d.value: c for d, c in target.items()},
                    "actual": {d.value: c for d, c in result.actual.items()},
                    "selectionProcess": [s.to_dict() for s in steps],
                    "warnings": warnings,
                },
            )
        return result

    def score(
        self,
        q: Question,
        state: SlateState,
        plan: ThemePlan,
        drop_at: datetime,
        config: ComposerConfig,
        seed: str,
    ) -> float:
        themes = set(q.themes or [])
        theme_fit = plan.weight_for(themes) / plan.max_weight
        fresh = themes - set(t for t, c in state.themes.items() if c > 0)
        used_count = sum(1 for c in state.themes.values() if c > 0)
        if not fresh:
            new_theme = 0.0
        elif used_count < config.theme_diversity.min_unique_themes:
            new_theme = 1.0
        else:
            new_theme = 0.5
        exposure = 1.0 / (1.0 + (q.exposure_count or 0))
        last_used = as_utc(q.last_used_at)
        strict_days = config.anti_repeat_days.strict
        if last_used is None or strict_days <= 0:
            recency = 1.0
        else:
            days = abs(drop_at - last_used).total_seconds() / 86400
            recency = min(1.0, days / strict_days)
        total = (
            SCORE_WEIGHTS["theme"] * theme_fit
            + SCORE_WEIGHTS["new_theme"] * new_theme
            + SCORE_WEIGHTS["exposure"] * exposure
            + SCORE_WEIGHTS["recency"] * recency
            + SCORE_WEIGHTS["tiebreak"] * tiebreak(seed, q.id)
        )
        return round(total, 9)

    def _pick(
        self,
        pool: List[Question],
        state: SlateState,
        plan: ThemePlan,
        drop_at: datetime,
        config: ComposerConfig,
        seed: str,
        enforce_caps: bool,
        rejections: Dict[str, str],
    ) -> Optional[Question]:
        best, best_key = None, None
        for q in pool:
            if q.id in state.ids:
                continue
            reason = state.reject_reason(q, config) if enforce_caps else None
            if reason:
                rejections[q.id] = reason
                continue
            key = (-self.score(q, state, plan, drop_at, config, seed), q.id)
            if best_key is None or key < best_key:
                best, best_key = q, key
        return best

    def _fill(
        self,
        step: SelectionStep,
        need: int,
        state: SlateState,
        drop_at: datetime,
        plan: ThemePlan,
        strategy: ThemeStrategy,
        config: ComposerConfig,
        schedule: List[RelaxationStep],
        seed: str,
    ) -> int:
        """Pick up to `need` questions of step.difficulty, walking the relaxation schedule."""
        picked = 0
        off_plan = 0
        last: Optional[RelaxationStep] = None
        candidates: List[Question] = []
        rejections: Dict[str, str] = {}
        for relax in schedule:
            if picked >= need:
                break
            last = relax
            candidates = self.anti_repeat.eligible_questions(step.difficulty, drop_at, relax, exclude_ids=state.ids)
            step.attempted += len(candidates)
            if not candidates:
                step.issues.append(f"no candidates at level {relax.level} ({relax.label}, {relax.window_days}d window)")
                continue
            preferred = strategy.preferred(candidates, plan)
            for pool in ([preferred, candidates] if len(preferred) < len(candidates) else [candidates]):
                while picked < need:
                    q = self._pick(pool, state, plan, drop_at, config, seed, True, rejections)
                    if q is None:
                        break
                    state.add(q)
                    picked += 1
                    step.relaxation_level = max(step.relaxation_level, relax.level)
                    if plan.weight_for(q.themes or []) == 0:
                        off_plan += 1
            if picked < need and relax.level < EMERGENCY_LEVEL:
                step.issues.append(f"relaxing anti-repeat window after level {relax.level} ({relax.label})")

        if picked < need and last is not None and candidates:
            # Last resort before moving slots: ignore diversity caps at the emergency window
            while picked < need:
                q = self._pick(candidates, state, plan, drop_at, config, seed, False, rejections)
                if q is None:
                    break
                state.add(q)
                picked += 1
                step.relaxation_level = CAPS_RELAXED_LEVEL
            if step.relaxation_level == CAPS_RELAXED_LEVEL:
                step.issues.append("diversity caps ignored (subject repeats, question types, theme overlap)")

        # Each skipped question counts once, under the last cap that stopped it
        skipped = Counter(rejections.values())
        if skipped:
            detail = ", ".join(f"{k}={v}" for k, v in sorted(skipped.items()))
            step.issues.append(f"candidates skipped by diversity caps: {detail}")
        if off_plan:
            step.issues.append(f"{off_plan} question(s) picked outside the day's themes")
        if 0 < step.relaxation_level <= EMERGENCY_LEVEL:
            step.issues.append(f"selected at relaxation level {step.relaxation_level} ({schedule[step.relaxation_level].label})")
        if picked < need:
            step.issues.append(f"short by {need - picked} after maximum relaxation")
        step.selected += picked
        return picked

    def _redistribute(
        self,
        target: Dict[Difficulty, int],
        state: SlateState,
        steps: List[SelectionStep],
        drop_at: datetime,
        plan: ThemePlan,
        strategy: ThemeStrategy,
        config: ComposerConfig,
        schedule: List[RelaxationStep],
        seed: str,
    ) -> int:
        moved = 0
        for difficulty in DIFFICULTY_ORDER:
            short = target[difficulty] - state.count(difficulty)
            for other in fallback_order(difficulty):
                allowance = min(short, config.tolerance - moved)
                if allowance <= 0:
                    break
                step = SelectionStep(difficulty=other, target=allowance, redistributed_from=difficulty)
                got = self._fill(step, allowance, state, drop_at, plan, strategy, config, schedule, seed)
                if got:
                    step.relaxation_level = REDISTRIBUTION_LEVEL
                step.issues.append(f"moved {got} of {allowance} slot(s) from {difficulty.value}")
                steps.append(step)
                moved += got
                short -= got
            if short > 0 and moved >= config.tolerance:
                logger.info(f"Difficulty tolerance {config.tolerance} reached for {drop_at.isoformat()}")
        return moved
