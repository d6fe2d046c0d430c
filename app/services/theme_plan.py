"""Theme plans: which themes a day's slate should lean toward, per mode."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from app.models.enums import DailyQuizMode, QuestionTheme
from app.models.orm import Question
from app.services.composer_config import ComposerConfig

logger = logging.getLogger(__name__)

ALL_THEMES: List[str] = [t.value for t in QuestionTheme]

# Index 0 is Sunday
MIX_ROTATION: List[List[QuestionTheme]] = [
    [QuestionTheme.LYRICS, QuestionTheme.ALBUMS, QuestionTheme.TIMELINE],
    [QuestionTheme.AUDIO, QuestionTheme.SONGS, QuestionTheme.CAREER],
    [QuestionTheme.AESTHETIC, QuestionTheme.OUTFITS, QuestionTheme.TOURS],
    [QuestionTheme.CHARTS, QuestionTheme.POPULARITY, QuestionTheme.EVENTS],
    [QuestionTheme.TRIVIA, QuestionTheme.INSPIRATION, QuestionTheme.MOOD],
    [QuestionTheme.MASHUPS, QuestionTheme.TRACKLIST, QuestionTheme.SPEED],
    [QuestionTheme.VISUALS, QuestionTheme.AUDIO, QuestionTheme.ALBUMS],
]
MIX_WEIGHT = 2.0
SPOTLIGHT_WEIGHT = 6.0

# (month, day) -> (event name, theme weights)
CALENDAR_EVENTS: Dict[tuple, tuple] = {
    (12, 13): ("Taylor Swift's Birthday", {
        QuestionTheme.CAREER: 3.0,
        QuestionTheme.TIMELINE: 2.0,
        QuestionTheme.TRIVIA: 1.0,
    }),
}

@dataclass
class ThemePlan:
    mode: DailyQuizMode
    themes: List[str]
    weights: Dict[str, float]
    spotlight: Optional[str] = None
    event: Optional[str] = None
    subject_restrictions: Optional[List[str]] = None
    warnings: List[str] = field(default_factory=list)

    def weight_for(self, themes: Sequence[str]) -> float:
        return sum(self.weights.get(t, 0.0) for t in themes)

    @property
    def max_weight(self) -> float:
        return sum(self.weights.values()) or 1.0

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "themes": list(self.themes),
            "weights": dict(self.weights),
            "spotlight": self.spotlight,
            "event": self.event,
            "subjectRestrictions": self.subject_restrictions,
        }

def sunday_index(drop_at: datetime) -> int:
    return (drop_at.weekday() + 1) % 7

def day_of_year(drop_at: datetime) -> int:
    return drop_at.timetuple().tm_yday

class ThemeStrategy:
    """Base selection strategy; one subclass per DailyQuizMode."""

    mode: DailyQuizMode

    def build_plan(self, drop_at: datetime, config: ComposerConfig) -> ThemePlan:
        raise NotImplementedError

    def preferred(self, candidates: List[Question], plan: ThemePlan) -> List[Question]:
        """Narrow candidates to those matching the plan, or keep all if none match."""
        wanted = set(plan.themes)
        themed = [q for q in candidates if wanted.intersection(q.themes or [])]
        return themed or candidates

    def _override(self, config: ComposerConfig) -> Optional[ThemePlan]:
        if not config.themes:
            return None
        themes = [t.value for t in config.themes]
        return ThemePlan(mode=self.mode, themes=themes, weights={t: MIX_WEIGHT for t in themes})

class MixStrategy(ThemeStrategy):
    mode = DailyQuizMode.MIX

    def build_plan(self, drop_at: datetime, config: ComposerConfig) -> ThemePlan:
        return self._override(config) or self.rotation_plan(drop_at)

    def rotation_plan(self, drop_at: datetime) -> ThemePlan:
        themes = [t.value for t in MIX_ROTATION[sunday_index(drop_at)]]
        return ThemePlan(mode=self.mode, themes=themes, weights={t: MIX_WEIGHT for t in themes})

class SpotlightStrategy(ThemeStrategy):
    mode = DailyQuizMode.SPOTLIGHT

    def build_plan(self, drop_at: datetime, config: ComposerConfig) -> ThemePlan:
        if config.spotlight_theme is not None:
            spotlight = config.spotlight_theme.value
        elif config.themes:
            spotlight = config.themes[0].value
        else:
            spotlight = ALL_THEMES[day_of_year(drop_at) % len(ALL_THEMES)]
        return ThemePlan(mode=self.mode, themes=[spotlight], weights={spotlight: SPOTLIGHT_WEIGHT}, spotlight=spotlight)

    def preferred(self, candidates: List[Question], plan: ThemePlan) -> List[Question]:
        spot = [q for q in candidates if plan.spotlight in (q.themes or [])]
        return spot or super().preferred(candidates, plan)

class EventStrategy(ThemeStrategy):
    mode = DailyQuizMode.EVENT

    def build_plan(self, drop_at: datetime, config: ComposerConfig) -> ThemePlan:
        event = CALENDAR_EVENTS.get((drop_at.month, drop_at.day))
        if event is None:
            plan = self._override(config) or MixStrategy().rotation_plan(drop_at)
            plan.mode = self.mode
            plan.warnings.append(f"No calendar event on {drop_at.date().isoformat()}; using mix rotation themes")
            logger.info(f"No event for {drop_at.date().isoformat()}, falling back to mix rotation")
            return plan
        name, weights = event
        return ThemePlan(
            mode=self.mode,
            themes=[t.value for t in weights],
            weights={t.value: w for t, w in weights.items()},
            event=name,
        )

STRATEGIES: Dict[DailyQuizMode, ThemeStrategy] = {
    DailyQuizMode.MIX: MixStrategy(),
    DailyQuizMode.SPOTLIGHT: SpotlightStrategy(),
    DailyQuizMode.EVENT: EventStrategy(),
}

def get_strategy(mode: DailyQuizMode) -> ThemeStrategy:
    return STRATEGIES[mode]
