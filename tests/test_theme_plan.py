from datetime import datetime, timezone

from app.models.enums import DailyQuizMode
from app.services.composer_config import merge_config
from app.services.theme_plan import ALL_THEMES, SPOTLIGHT_WEIGHT, get_strategy, sunday_index


def at(y, m, d):
    return datetime(y, m, d, 17, tzinfo=timezone.utc)


class TestMixRotation:
    def test_sunday_is_index_zero(self):
        assert sunday_index(at(2025, 1, 12)) == 0
        assert sunday_index(at(2025, 1, 18)) == 6

    def test_weekday_themes(self):
        plan = get_strategy(DailyQuizMode.MIX).build_plan(at(2025, 1, 15), merge_config())
        assert plan.themes == ["Charts", "Popularity", "Events"]
        assert plan.weights == {"Charts": 2.0, "Popularity": 2.0, "Events": 2.0}

    def test_config_themes_override_rotation(self):
        plan = get_strategy(DailyQuizMode.MIX).build_plan(at(2025, 1, 15), merge_config({"themes": ["Tours"]}))
        assert plan.themes == ["Tours"]


class TestSpotlight:
    def test_day_of_year_theme(self):
        plan = get_strategy(DailyQuizMode.SPOTLIGHT).build_plan(at(2025, 1, 15), merge_config())
        assert plan.spotlight == ALL_THEMES[15 % len(ALL_THEMES)]
        assert plan.weights == {plan.spotlight: SPOTLIGHT_WEIGHT}

    def test_explicit_spotlight(self):
        plan = get_strategy(DailyQuizMode.SPOTLIGHT).build_plan(
            at(2025, 1, 15), merge_config({"spotlightTheme": "Outfits"})
        )
        assert plan.spotlight == "Outfits"


class TestEvent:
    def test_birthday_weights(self):
        plan = get_strategy(DailyQuizMode.EVENT).build_plan(at(2025, 12, 13), merge_config())
        assert plan.event == "Taylor Swift's Birthday"
        assert plan.weights == {"Career": 3.0, "Timeline": 2.0, "Trivia": 1.0}
        assert plan.warnings == []

    def test_no_event_falls_back_with_warning(self):
        plan = get_strategy(DailyQuizMode.EVENT).build_plan(at(2025, 1, 15), merge_config())
        assert plan.mode == DailyQuizMode.EVENT
        assert plan.themes == ["Charts", "Popularity", "Events"]
        assert len(plan.warnings) == 1
