from datetime import timedelta

import pytest

from app.core.errors import PoolExhaustedError
from app.models.enums import DailyQuizMode, Difficulty, QuestionType
from app.services.anti_repeat import AntiRepeatService, EMERGENCY_LEVEL, relaxation_schedule
from app.services.composer_config import merge_config
from app.services.selector import CAPS_RELAXED_LEVEL, REDISTRIBUTION_LEVEL, QuestionSelector, tiebreak
from app.services.theme_plan import get_strategy

from conftest import DROP_AT


def run_select(db, config=None, mode=DailyQuizMode.MIX):
    cfg = merge_config(config)
    strategy = get_strategy(mode)
    plan = strategy.build_plan(DROP_AT, cfg)
    return QuestionSelector(db).select(DROP_AT, plan, strategy, cfg)


class TestRelaxationSchedule:
    def test_levels_and_windows(self):
        steps = relaxation_schedule(merge_config())
        assert [s.label for s in steps] == ["strict", "relaxed1", "relaxed2", "relaxed3", "final", "emergency"]
        assert [s.window_days for s in steps] == [30, 21, 14, 10, 7, 1]
        assert steps[0].exposure_cap == 10
        assert all(s.exposure_cap is None for s in steps[1:])

    def test_cooldown_is_symmetric(self, db, make_question):
        before = make_question(last_used_at=DROP_AT - timedelta(days=3))
        after = make_question(last_used_at=DROP_AT + timedelta(days=3))
        fresh = make_question()
        strict = relaxation_schedule(merge_config())[0]
        ids = [q.id for q in AntiRepeatService(db).eligible_questions(Difficulty.EASY, DROP_AT, strict)]
        assert ids == [fresh.id]
        assert before.id not in ids and after.id not in ids


class TestSelection:
    def test_default_slate(self, db, make_pool):
        make_pool()
        result = run_select(db)
        assert len(result.questions) == 5
        assert len({q.id for q in result.questions}) == 5
        assert result.actual == {Difficulty.EASY: 2, Difficulty.MEDIUM: 2, Difficulty.HARD: 1}
        assert result.relaxation_level == 0

    def test_prefers_planned_themes(self, db, make_pool):
        make_pool()
        result = run_select(db)
        planned = {"Charts", "Popularity", "Events"}
        assert sum(1 for q in result.questions if planned & set(q.themes)) >= 4

    def test_deterministic(self, db, make_pool):
        make_pool()
        first = [q.id for q in run_select(db).questions]
        second = [q.id for q in run_select(db).questions]
        assert first == second

    def test_tiebreak_is_stable(self):
        assert tiebreak("seed", "q1") == tiebreak("seed", "q1")
        assert 0.0 <= tiebreak("seed", "q2") <= 1.0

    def test_disabled_and_unapproved_excluded(self, db, make_pool, make_question):
        make_pool(easy=2)
        hidden = [
            make_question(Difficulty.EASY, approved=False),
            make_question(Difficulty.EASY, disabled=True),
        ]
        ids = {q.id for q in run_select(db).questions}
        assert not ids & {q.id for q in hidden}

    def test_exposure_cap_applies_at_strict_level_only(self, db, make_pool, make_question):
        make_pool(easy=1)
        heavy = make_question(Difficulty.EASY, exposure_count=50)
        result = run_select(db)
        assert heavy.id in {q.id for q in result.questions}
        assert result.relaxation_level == 1

    def test_recently_used_questions_relax_window(self, db, make_pool, make_question):
        make_pool(easy=0)
        for days in (12, 15):
            make_question(Difficulty.EASY, last_used_at=DROP_AT - timedelta(days=days))
        result = run_select(db)
        easy_step = next(s for s in result.steps if s.difficulty == Difficulty.EASY)
        assert easy_step.selected == 2
        # 12 days old only passes the 10 day window
        assert easy_step.relaxation_level == 3
        assert any("relaxing anti-repeat window" in i for i in easy_step.issues)

    def test_emergency_level_uses_min_cooldown(self, db, make_pool, make_question):
        make_pool(hard=0)
        make_question(Difficulty.HARD, last_used_at=DROP_AT - timedelta(days=2))
        result = run_select(db)
        assert result.actual[Difficulty.HARD] == 1
        assert result.relaxation_level == EMERGENCY_LEVEL

    def test_question_used_today_never_selected(self, db, make_pool, make_question):
        make_pool(hard=0)
        make_question(Difficulty.HARD, last_used_at=DROP_AT - timedelta(hours=2))
        with pytest.raises(PoolExhaustedError):
            run_select(db, {"difficultyTolerance": 0})

    def test_subject_cap_relaxed_as_last_resort(self, db, make_pool, make_question):
        # Both easy questions must be picked, so subject-0 is always taken
        make_pool(easy=2, medium=2, hard=0)
        make_question(Difficulty.HARD, subjects=["subject-0"])
        result = run_select(db, {"difficultyTolerance": 0})
        assert result.actual[Difficulty.HARD] == 1
        assert result.relaxation_level == CAPS_RELAXED_LEVEL
        assert any("diversity caps ignored" in w for w in result.warnings)

    def test_question_type_cap(self, db, make_question):
        for i in range(4):
            make_question(Difficulty.EASY, question_type=QuestionType.FILL_BLANK, commit=False)
        for i in range(2):
            make_question(Difficulty.EASY, question_type=QuestionType.SPEED_TAP, commit=False)
        db.commit()
        result = run_select(db, {"targetQuestionCount": 4, "difficultyDistribution": {"easy": 1}})
        types = [q.question_type for q in result.questions]
        assert types.count(QuestionType.FILL_BLANK) == 2
        assert types.count(QuestionType.SPEED_TAP) == 2

    def test_cap_skips_count_each_question_once(self, db, make_question):
        # Two fill-blanks stay capped through all six anti-repeat levels
        for i in range(4):
            make_question(Difficulty.EASY, question_type=QuestionType.FILL_BLANK, commit=False)
        make_question(Difficulty.EASY, question_type=QuestionType.SPEED_TAP, commit=False)
        db.commit()
        result = run_select(db, {"targetQuestionCount": 4, "difficultyDistribution": {"easy": 1}})
        assert result.relaxation_level == CAPS_RELAXED_LEVEL
        assert "easy: candidates skipped by diversity caps: question_type=2" in result.warnings


class TestFortyPercentHard:
    def test_target_met_when_pool_allows(self, db, make_pool):
        make_pool(easy=20, medium=0, hard=5)
        result = run_select(db, {"difficultyDistribution": {"easy": 3, "hard": 2}})
        assert result.actual[Difficulty.HARD] == 2
        assert result.actual[Difficulty.EASY] == 3

    def test_shortfall_is_warned_never_silent(self, db, make_pool):
        make_pool(easy=20, medium=0, hard=0)
        result = run_select(db, {"difficultyDistribution": {"easy": 3, "hard": 2}})
        assert len(result.questions) == 5
        assert result.actual[Difficulty.HARD] == 0
        assert result.relaxation_level == REDISTRIBUTION_LEVEL
        assert any("hard" in w for w in result.warnings)
        assert any(w.startswith("Difficulty deviation") for w in result.warnings)


class TestExhaustion:
    def test_small_pool_raises(self, db, make_pool):
        make_pool(easy=1, medium=1, hard=0)
        with pytest.raises(PoolExhaustedError) as exc:
            run_select(db)
        assert exc.value.details["needed"] == 5
        assert exc.value.details["selected"] == 2
        assert exc.value.details["selectionProcess"]

    def test_tolerance_limits_moved_slots(self, db, make_pool):
        make_pool(easy=10, medium=0, hard=0)
        with pytest.raises(PoolExhaustedError):
            run_select(db, {"difficultyTolerance": 2})


class TestAntiRepeatInfo:
    def test_reasons(self, db, make_question):
        strict = relaxation_schedule(merge_config())[0]
        anti = AntiRepeatService(db)
        never = anti.anti_repeat_info(make_question(), DROP_AT, strict)
        recent = anti.anti_repeat_info(make_question(last_used_at=DROP_AT - timedelta(days=5)), DROP_AT, strict)
        heavy = anti.anti_repeat_info(make_question(exposure_count=11), DROP_AT, strict)
        assert (never.is_eligible, never.reason, never.days_since_last_used) == (True, "never_used", None)
        assert (recent.is_eligible, recent.reason, recent.days_since_last_used) == (False, "cooldown", 5.0)
        assert (heavy.is_eligible, heavy.reason) == (False, "overexposed")
