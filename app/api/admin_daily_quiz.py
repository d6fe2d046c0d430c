from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from rq.exceptions import NoSuchJobError
from rq.job import Job
from sqlalchemy.orm import Session
from app.core.cache import get_redis
from app.core.database import get_db, utcnow
from app.core.errors import NotFoundError
from app.jobs.queue import queue, redis
from app.jobs.composition_job import compose_daily_job
from app.core.config import settings
from app.services.composer import DailyQuizComposer
from app.services.quiz_admin import QuizAdminService

router = APIRouter()

class ComposeRequest(BaseModel):
    dropAtUTC: str
    mode: str = "mix"
    config: Optional[Dict[str, Any]] = None

class CustomQuizRequest(BaseModel):
    dropAtUTC: str
    questionIds: List[str]
    mode: str = "mix"
    replaceExisting: bool = False

class DropTimeRequest(BaseModel):
    newDropAtUTC: str

class SwapRequest(BaseModel):
    oldQuestionId: str
    newQuestionId: str

class ReplaceRequest(BaseModel):
    questionIds: List[str] = Field(min_length=1)

class ComposeJobRequest(BaseModel):
    dropAtUTC: Optional[str] = None
    mode: str = "mix"

class JobStatus(BaseModel):
    job_id: str
    state: str
    result: Optional[dict] = None
    error: Optional[str] = None

def _ok(data: Any, message: str) -> Dict[str, Any]:
    return {"success": True, "data": data, "message": message}

def get_composer(db: Session = Depends(get_db), client=Depends(get_redis)) -> DailyQuizComposer:
    return DailyQuizComposer(db, redis_client=client)

def get_admin(db: Session = Depends(get_db)) -> QuizAdminService:
    return QuizAdminService(db)

@router.post("/compose")
def compose(payload: ComposeRequest, composer: DailyQuizComposer = Depends(get_composer)):
    result = composer.compose_daily_quiz(payload.dropAtUTC, payload.mode, payload.config)
    return _ok(result.to_response(), f"Daily quiz composed with {len(result.questions)} questions")

@router.post("/preview")
def preview(payload: ComposeRequest, composer: DailyQuizComposer = Depends(get_composer)):
    result = composer.preview_composition(payload.dropAtUTC, payload.mode, payload.config)
    data = result.to_response()
    data["template"]["body"] = result.template
    return _ok(data, "Preview generated; nothing was saved")

@router.get("/stats")
def stats(composer: DailyQuizComposer = Depends(get_composer)):
    return _ok(composer.get_composition_stats(), "Composition statistics")

@router.get("/availability")
def availability(dropAtUTC: Optional[str] = None, composer: DailyQuizComposer = Depends(get_composer)):
    return _ok(composer.get_question_availability(dropAtUTC), "Question availability")

@router.get("/health")
def health(composer: DailyQuizComposer = Depends(get_composer)):
    report = composer.get_system_health()
    return _ok(report, "System healthy" if report["healthy"] else "System needs attention")

@router.get("/options")
def options(composer: DailyQuizComposer = Depends(get_composer)):
    return _ok(composer.get_configuration_options(), "Configuration options")

@router.get("/logs")
def logs(limit: int = Query(10, ge=1, le=100), offset: int = Query(0, ge=0),
         composer: DailyQuizComposer = Depends(get_composer)):
    return _ok(composer.get_recent_composition_logs(limit=limit, offset=offset), "Recent composition logs")

@router.get("/quizzes/{quiz_id}")
def quiz_details(quiz_id: str, admin: QuizAdminService = Depends(get_admin)):
    return _ok(admin.get_quiz_details(quiz_id), "Daily quiz details")

@router.post("/quizzes/custom")
def create_custom(payload: CustomQuizRequest, admin: QuizAdminService = Depends(get_admin)):
    result = admin.create_custom_quiz(payload.dropAtUTC, payload.mode, payload.questionIds, payload.replaceExisting)
    return _ok(result.to_response(), f"Custom daily quiz created with {len(result.questions)} questions")

@router.patch("/quizzes/{quiz_id}/drop-time")
def update_drop_time(quiz_id: str, payload: DropTimeRequest, admin: QuizAdminService = Depends(get_admin)):
    return _ok(admin.update_drop_time(quiz_id, payload.newDropAtUTC), "Drop time updated")

@router.post("/quizzes/{quiz_id}/swap")
def swap(quiz_id: str, payload: SwapRequest, admin: QuizAdminService = Depends(get_admin)):
    return _ok(admin.swap_question(quiz_id, payload.oldQuestionId, payload.newQuestionId), "Question swapped")

@router.put("/quizzes/{quiz_id}/questions")
def replace(quiz_id: str, payload: ReplaceRequest, admin: QuizAdminService = Depends(get_admin)):
    return _ok(admin.replace_questions(quiz_id, payload.questionIds), "Questions replaced")

@router.post("/quizzes/{quiz_id}/regenerate-template")
def regenerate(quiz_id: str, admin: QuizAdminService = Depends(get_admin)):
    data = admin.regenerate_template(quiz_id)
    return _ok(data, f"Template regenerated (v{data['version']})")

@router.post("/quizzes/{quiz_id}/drop")
def drop(quiz_id: str, admin: QuizAdminService = Depends(get_admin)):
    return _ok(admin.mark_dropped(quiz_id), "Daily quiz marked as dropped")

@router.delete("/quizzes/{quiz_id}")
def delete(quiz_id: str, admin: QuizAdminService = Depends(get_admin)):
    return _ok(admin.delete_quiz(quiz_id), "Daily quiz deleted")

@router.post("/jobs/compose")
def enqueue_compose(payload: ComposeJobRequest):
    job = queue.enqueue(compose_daily_job, payload.dropAtUTC, payload.mode, job_timeout=settings.RQ_JOB_TIMEOUT)
    return _ok({"job_id": job.id, "enqueuedAt": utcnow().isoformat()}, "Composition job enqueued")

@router.get("/jobs/status", response_model=JobStatus)
def job_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=redis)
    except NoSuchJobError as e:
        raise NotFoundError("Job", job_id) from e
    meta = job.meta or {}
    state = meta.get("state") or job.get_status()
    return JobStatus(
        job_id=job.id,
        state=str(state),
        result=job.return_value() if state in ("done", "skipped") else None,
        error=meta.get("error"),
    )
