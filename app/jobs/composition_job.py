"""rq jobs: the scheduled daily composition and the drop sweep.

Both jobs recur through rq's scheduler. `schedule_daily_runs` seeds the next
run of each when the worker starts, and every run enqueued that way books the
following day's run before doing its own work.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Optional
from rq import Queue, get_current_job
from app.core.cache import get_redis
from app.core.config import settings
from app.core.database import SessionLocal, as_utc, utcnow
from app.core.errors import ConflictError
from app.services.composer import DailyQuizComposer, next_drop_time, parse_drop_time
from app.services.quiz_admin import QuizAdminService

logger = logging.getLogger(__name__)

def _update_meta(job, **values) -> None:
    if job is None:
        return
    job.meta.update(values)
    job.save_meta()

def _enqueue_next(queue: Queue, func: Callable, hour: int, now: datetime) -> datetime:
    run_at = next_drop_time(now, hour)
    queue.enqueue_at(
        run_at,
        func,
        job_id=f"{func.__name__}:{run_at.strftime('%Y%m%dT%H%MZ')}",
        job_timeout=settings.RQ_JOB_TIMEOUT,
        meta={"recurring": True},
    )
    logger.info(f"Scheduled {func.__name__} for {run_at.isoformat()}")
    return run_at

def _schedule_following_run(job, func: Callable, hour: int) -> None:
    if job is None or not job.meta.get("recurring"):
        return
    _enqueue_next(Queue(job.origin, connection=job.connection), func, hour, utcnow())

def schedule_daily_runs(queue: Queue, now: Optional[datetime] = None) -> Dict[str, str]:
    """Book the next composition run and the next drop sweep.

    Job ids are derived from the run time, so seeding twice for the same
    slot replaces the booked job instead of adding a second one.
    """
    now = as_utc(now) if now is not None else utcnow()
    compose_at = _enqueue_next(queue, compose_daily_job, settings.COMPOSE_RUN_HOUR_UTC, now)
    release_at = _enqueue_next(queue, release_due_quizzes_job, settings.DEFAULT_DROP_HOUR_UTC, now)
    return {"compose_daily_job": compose_at.isoformat(), "release_due_quizzes_job": release_at.isoformat()}

def compose_daily_job(drop_at_iso: Optional[str] = None, mode: str = "mix"):
    """Compose the quiz for `drop_at_iso`, or for the next scheduled drop.

    An existing quiz for the drop time is not an error here: the job reports
    ``skipped`` without attempting a composition, so a retried or duplicated
    schedule leaves the composition log untouched.
    """
    job = get_current_job()
    drop_at = parse_drop_time(drop_at_iso) if drop_at_iso else next_drop_time(utcnow())
    _update_meta(job, state="running", drop_at_utc=drop_at.isoformat(), mode=mode)
    _schedule_following_run(job, compose_daily_job, settings.COMPOSE_RUN_HOUR_UTC)
    db = SessionLocal()
    try:
        composer = DailyQuizComposer(db, redis_client=get_redis())
        existing = composer.get_quiz_for(drop_at)
        if existing is not None:
            logger.info(f"Quiz {existing.id} already exists for {drop_at.isoformat()}, skipping composition")
            _update_meta(job, state="skipped", quiz_id=existing.id)
            return {"skipped": True, "reason": "QUIZ_EXISTS", "quizId": existing.id, "dropAtUTC": drop_at.isoformat()}
        result = composer.compose_daily_quiz(drop_at, mode)
        response = result.to_response()
        _update_meta(job, state="done", quiz_id=response["quizId"])
        return response
    except ConflictError as e:
        # Lost a race with another composer for the same drop time
        logger.info(f"Skipping composition for {drop_at.isoformat()}: {e.message}")
        _update_meta(job, state="skipped", error=e.message)
        return {"skipped": True, "reason": e.error_code, "dropAtUTC": drop_at.isoformat()}
    except Exception as e:
        logger.exception(f"Daily composition for {drop_at.isoformat()} failed")
        _update_meta(job, state="failed", error=str(e))
        raise
    finally:
        db.close()

def release_due_quizzes_job():
    job = get_current_job()
    _update_meta(job, state="running")
    _schedule_following_run(job, release_due_quizzes_job, settings.DEFAULT_DROP_HOUR_UTC)
    db = SessionLocal()
    try:
        released = QuizAdminService(db).release_due_quizzes()
        _update_meta(job, state="done", released=len(released))
        return {"released": released}
    finally:
        db.close()
