from datetime import datetime
from typing import Any, Dict, List, Optional
from app.core.database import as_utc, utcnow
from app.core.errors import ComposerError
from app.models.enums import DIFFICULTY_ORDER
from app.models.orm import CompositionLog
from app.services.selector import SelectionResult

def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None

def final_selection(selection: SelectionResult) -> Dict[str, Any]:
    return {
        "totalQuestions": len(selection.questions),
        "questionIds": [q.id for q in selection.questions],
        "difficultyActual": {d.value: c for d, c in selection.actual.items()},
        "difficultyTarget": {d.value: selection.target.get(d, 0) for d in DIFFICULTY_ORDER},
        "themeDistribution": selection.theme_distribution(),
        "subjectDistribution": selection.subject_distribution(),
        "averageExposure": selection.average_exposure(),
        "oldestLastUsed": _iso(selection.oldest_last_used()),
        "newestLastUsed": _iso(selection.newest_last_used()),
    }

def success_entry(
    target_date: datetime,
    mode: str,
    theme_plan: Dict[str, Any],
    selection: SelectionResult,
    duration_ms: int,
    db_queries: int,
    daily_quiz_id: Optional[str] = None,
    extra_warnings: Optional[List[str]] = None,
    created_at: Optional[datetime] = None,
) -> CompositionLog:
    return CompositionLog(
        daily_quiz_id=daily_quiz_id,
        target_date=target_date,
        mode=mode,
        theme_plan=theme_plan,
        selection_process=[s.to_dict() for s in selection.steps],
        final_selection=final_selection(selection),
        warnings=list(selection.warnings) + list(extra_warnings or []),
        performance={"durationMs": duration_ms, "dbQueries": db_queries},
        relaxation_level=selection.relaxation_level,
        has_errors=False,
        created_at=created_at or utcnow(),
    )

def failure_entry(
    target_date: Optional[datetime],
    mode: Optional[str],
    theme_plan: Optional[Dict[str, Any]],
    error: Exception,
    duration_ms: int,
    db_queries: int,
    created_at: Optional[datetime] = None,
) -> CompositionLog:
    if isinstance(error, ComposerError):
        kind, message = error.kind, error.message
        steps: List[Dict[str, Any]] = error.details.get("selectionProcess", [])
        warnings = list(error.details.get("warnings", []))
    else:
        kind, message, steps, warnings = "internal", f"{type(error).__name__}: {error}", [], []
    return CompositionLog(
        target_date=target_date,
        mode=mode,
        theme_plan=theme_plan or {},
        selection_process=steps,
        final_selection={},
        warnings=warnings,
        performance={"durationMs": duration_ms, "dbQueries": db_queries},
        relaxation_level=max([s.get("relaxationLevel", 0) for s in steps] or [0]),
        has_errors=True,
        error_kind=kind,
        error_message=message,
        created_at=created_at or utcnow(),
    )

def summary(entry: CompositionLog) -> Dict[str, Any]:
    """The composition block the admin UI renders after a compose."""
    final = entry.final_selection or {}
    return {
        "relaxationLevel": entry.relaxation_level,
        "themeDistribution": final.get("themeDistribution", {}),
        "difficultyActual": final.get("difficultyActual", {}),
        "difficultyTarget": final.get("difficultyTarget", {}),
        "averageExposure": final.get("averageExposure"),
        "oldestLastUsed": final.get("oldestLastUsed"),
        "newestLastUsed": final.get("newestLastUsed"),
        "warnings": list(entry.warnings or []),
        "performanceMs": (entry.performance or {}).get("durationMs"),
    }

def to_dict(entry: CompositionLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "dailyQuizId": entry.daily_quiz_id,
        "timestamp": _iso(entry.created_at),
        "targetDate": _iso(entry.target_date),
        "mode": entry.mode,
        "themePlan": entry.theme_plan or {},
        "selectionProcess": entry.selection_process or [],
        "finalSelection": entry.final_selection or {},
        "relaxationLevel": entry.relaxation_level,
        "warnings": list(entry.warnings or []),
        "performance": entry.performance or {},
        "hasErrors": entry.has_errors,
        "errorKind": entry.error_kind,
        "errorMessage": entry.error_message,
    }
