from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from app.core.errors import PoolExhaustedError
from app.jobs.composition_job import compose_daily_job, release_due_quizzes_job, schedule_daily_runs
from app.models.orm import CompositionLog
from app.services.composer import DailyQuizComposer

from conftest import NOW

DROP = "2030-01-15T17:00:00Z"


@pytest.fixture
def job():
    fake = MagicMock(meta={})
    with patch("app.jobs.composition_job.get_current_job", return_value=fake):
        yield fake


class TestComposeJob:
    def test_compose_then_skip(self, db, make_pool, job):
        make_pool()
        first = compose_daily_job(DROP)
        assert first["questionCount"] == 5
        assert job.meta["state"] == "done"
        assert job.meta["quiz_id"] == first["quizId"]

        second = compose_daily_job(DROP)
        assert second["skipped"] is True
        assert second["quizId"] == first["quizId"]
        assert job.meta["state"] == "skipped"

    def test_repeated_runs_leave_log_and_health_clean(self, db, make_pool, job, clock):
        make_pool(easy=12, medium=12, hard=6)
        compose_daily_job(DROP)
        for _ in range(3):
            assert compose_daily_job(DROP)["reason"] == "QUIZ_EXISTS"

        entries = db.scalars(select(CompositionLog)).all()
        assert len(entries) == 1
        assert entries[0].has_errors is False

        health = DailyQuizComposer(db, clock=clock).get_system_health()
        assert health["failureRate"] == 0.0
        assert health["healthy"] is True

    def test_failure_marks_meta_and_reraises(self, db, make_pool, job):
        make_pool(easy=1, medium=0, hard=0)
        with pytest.raises(PoolExhaustedError):
            compose_daily_job(DROP)
        assert job.meta["state"] == "failed"
        assert job.save_meta.called

    def test_defaults_to_next_drop(self, db, make_pool, job):
        make_pool()
        result = compose_daily_job()
        assert result["dropAtUTC"].endswith("T17:00:00+00:00")

    def test_runs_outside_worker(self, db, make_pool):
        make_pool()
        with patch("app.jobs.composition_job.get_current_job", return_value=None):
            assert compose_daily_job(DROP)["questionCount"] == 5


class TestReleaseJob:
    def test_nothing_due(self, db, job):
        assert release_due_quizzes_job() == {"released": []}
        assert job.meta == {"state": "done", "released": 0}


class TestSchedule:
    def test_seeds_next_runs(self):
        queue = MagicMock()
        booked = schedule_daily_runs(queue, now=NOW)
        assert booked == {
            "compose_daily_job": "2025-01-10T16:00:00+00:00",
            "release_due_quizzes_job": "2025-01-10T17:00:00+00:00",
        }
        calls = queue.enqueue_at.call_args_list
        assert [c.args[0] for c in calls] == [
            datetime(2025, 1, 10, 16, tzinfo=timezone.utc),
            datetime(2025, 1, 10, 17, tzinfo=timezone.utc),
        ]
        assert [c.args[1] for c in calls] == [compose_daily_job, release_due_quizzes_job]
        assert calls[0].kwargs["job_id"] == "compose_daily_job:20250110T1600Z"
        assert all(c.kwargs["meta"] == {"recurring": True} for c in calls)

    def test_past_slot_rolls_to_tomorrow(self):
        queue = MagicMock()
        booked = schedule_daily_runs(queue, now=datetime(2025, 1, 10, 16, 30, tzinfo=timezone.utc))
        assert booked["compose_daily_job"] == "2025-01-11T16:00:00+00:00"
        assert booked["release_due_quizzes_job"] == "2025-01-10T17:00:00+00:00"

    def test_recurring_run_books_the_next_one(self, db):
        recurring = MagicMock(meta={"recurring": True}, origin="daily-quiz")
        with patch("app.jobs.composition_job.get_current_job", return_value=recurring), \
                patch("app.jobs.composition_job.Queue") as queue_cls:
            release_due_quizzes_job()
        queue_cls.assert_called_once_with("daily-quiz", connection=recurring.connection)
        (run_at, func), kwargs = queue_cls.return_value.enqueue_at.call_args
        assert func is release_due_quizzes_job
        assert run_at.hour == 17
        assert kwargs["meta"] == {"recurring": True}

    def test_one_off_run_books_nothing(self, db, job):
        with patch("app.jobs.composition_job.Queue") as queue_cls:
            release_due_quizzes_job()
        queue_cls.assert_not_called()
