import pytest

from app.core.errors import ValidationError
from app.models.enums import Difficulty
from app.services.composer_config import ComposerConfig, merge_config, to_snake
from app.services.difficulty import (
    fallback_order, recommended_distribution, redistribute, target_distribution, validate_distribution,
)

E, M, H = Difficulty.EASY, Difficulty.MEDIUM, Difficulty.HARD


class TestTargetDistribution:
    def test_default_is_two_two_one(self):
        assert target_distribution(ComposerConfig()) == {E: 2, M: 2, H: 1}

    def test_counts_always_sum_to_slate_size(self):
        for n in range(1, 21):
            cfg = ComposerConfig(target_question_count=n, difficulty_distribution={E: 1, M: 1, H: 1})
            assert sum(target_distribution(cfg).values()) == n

    def test_forty_percent_hard(self):
        cfg = merge_config({"difficultyDistribution": {"easy": 3, "hard": 2}})
        assert target_distribution(cfg) == {E: 3, M: 0, H: 2}

    def test_zero_weights_rejected(self):
        with pytest.raises(ValidationError) as exc:
            merge_config({"difficultyDistribution": {"easy": 0, "medium": 0, "hard": 0}})
        assert exc.value.error_code == "INVALID_CONFIG"


class TestRedistribution:
    def test_fallback_prefers_nearest_then_easier(self):
        assert fallback_order(M) == [E, H]
        assert fallback_order(H) == [M, E]
        assert fallback_order(E) == [M, H]

    def test_shortfall_moves_to_neighbour(self):
        plan = redistribute({E: 2, M: 2, H: 1}, {E: 5, M: 5, H: 0})
        assert plan.counts == {E: 2, M: 3, H: 0}
        assert plan.moved == 1
        assert plan.unfilled == 0
        assert any("hard" in w for w in plan.warnings)

    def test_unfillable_is_reported(self):
        plan = redistribute({E: 2, M: 2, H: 1}, {E: 1, M: 1, H: 0})
        assert plan.unfilled == 3

    def test_validate_distribution_lists_deviations(self):
        issues = validate_distribution({E: 3, M: 2, H: 0}, {E: 2, M: 2, H: 1})
        assert issues == ["easy: selected 3, target 2", "hard: selected 0, target 1"]

    def test_recommended_distribution(self):
        report = recommended_distribution({E: 10, M: 1, H: 0}, ComposerConfig())
        assert report["target"] == {"easy": 2, "medium": 2, "hard": 1}
        assert sum(report["recommended"].values()) == 5
        assert report["efficiency"] == 0.6
        assert any("hard" in r for r in report["recommendations"])


class TestComposerConfig:
    def test_camel_case_keys_are_accepted(self):
        cfg = merge_config({"targetQuestionCount": 7, "antiRepeatDays": {"strict": 40}})
        assert cfg.target_question_count == 7
        assert cfg.anti_repeat_days.strict == 40
        assert cfg.anti_repeat_days.relaxed1 == 21

    def test_snake_conversion_keeps_digits(self):
        assert to_snake("relaxed1") == "relaxed1"
        assert to_snake("maxExposureBias") == "max_exposure_bias"

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            merge_config({"bogus": 1})

    def test_tolerance_defaults_to_slate_size(self):
        assert ComposerConfig().tolerance == 5
        assert ComposerConfig(difficulty_tolerance=1).tolerance == 1
