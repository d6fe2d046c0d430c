"""Template assembly: the public, answer-free document a daily quiz is served from."""
import hashlib
import hmac
import json
import logging
import random
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from app.core.config import settings
from app.core.database import as_utc, utcnow
from app.core.errors import TemplateValidationError
from app.models.enums import DailyQuizStatus, DIFFICULTY_ORDER
from app.models.orm import DailyQuiz, Question

logger = logging.getLogger(__name__)

STRIPPED_PROMPT_KEYS = {"internalNotes", "adminComments", "scoringHints"}
STRIPPED_CHOICE_KEYS = {"isCorrect", "correctness", "weight", "explanation"}
STRIPPED_MEDIA_KEYS = {"internalPath", "processingStatus", "adminNotes"}
# Never allowed anywhere in a published template
LEAK_KEYS = {"isCorrect", "correctness", "explanation", "correct", "correctAnswer", "answerKey"}

REQUIRED_QUESTION_FIELDS = ("id", "questionType", "difficulty", "prompt", "orderIndex", "shuffleProof")
CLIENT_SHUFFLE_FIELDS = ["questions", "choices"]

def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)

def serialize(template: Dict[str, Any]) -> bytes:
    return canonical_json(template).encode("utf-8")

def template_size(template: Dict[str, Any]) -> int:
    """Byte length of the canonical serialization."""
    return len(serialize(template))

def _scrub(value: Any, keys: set) -> Any:
    if isinstance(value, dict):
        return {k: _scrub(v, keys) for k, v in value.items() if k not in keys}
    if isinstance(value, list):
        return [_scrub(v, keys) for v in value]
    return value

def choice_key(choice: Any, index: int) -> str:
    if isinstance(choice, dict):
        for key in ("id", "key", "value", "text"):
            if choice.get(key) is not None:
                return str(choice[key])
        return str(index)
    return str(choice)

def order_questions(questions: Sequence[Question]) -> List[Question]:
    rank = {d: i for i, d in enumerate(DIFFICULTY_ORDER)}
    return sorted(questions, key=lambda q: (rank[q.difficulty], q.id))

def find_leaks(value: Any, path: str = "") -> List[str]:
    found = []
    if isinstance(value, dict):
        for k, v in value.items():
            here = f"{path}.{k}" if path else k
            if k in LEAK_KEYS:
                found.append(here)
            found.extend(find_leaks(v, here))
    elif isinstance(value, list):
        for i, v in enumerate(value):
            found.extend(find_leaks(v, f"{path}[{i}]"))
    return found

class TemplateAssembler:
    def __init__(self, secret: Optional[str] = None, cdn_base_url: Optional[str] = None):
        self.secret = (secret or settings.TEMPLATE_SIGNING_SECRET.get_secret_value()).encode("utf-8")
        self.cdn_base_url = (cdn_base_url or settings.CDN_BASE_URL).rstrip("/")

    def cdn_url(self, drop_at: datetime, version: int) -> str:
        return f"{self.cdn_base_url}/quiz/{as_utc(drop_at).strftime('%Y-%m-%d')}/v{version}.json"

    def shuffle_proof(self, quiz_id: str, question: Question, choice_ids: List[str]) -> Dict[str, Any]:
        """Commitments a client shuffle and a later answer check can be verified against.

        choiceDigest covers the sorted choice ids only; answerCommitment is keyed
        with the server secret so it reveals nothing about the answer.
        """
        ids = sorted(choice_ids)
        digest = hashlib.sha256(canonical_json(ids).encode("utf-8")).hexdigest()
        message = f"{quiz_id}:{question.id}:{canonical_json(question.correct)}".encode("utf-8")
        commitment = hmac.new(self.secret, message, hashlib.sha256).hexdigest()
        return {"algo": "sha256", "choiceIds": ids, "choiceDigest": digest, "answerCommitment": commitment}

    def verify_answer_commitment(self, quiz_id: str, question: Question, commitment: str) -> bool:
        message = f"{quiz_id}:{question.id}:{canonical_json(question.correct)}".encode("utf-8")
        expected = hmac.new(self.secret, message, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, commitment)

    def public_question(self, quiz_id: str, question: Question, order_index: int) -> Dict[str, Any]:
        choices = None
        choice_ids: List[str] = []
        if question.choices:
            choices = [_scrub(c, STRIPPED_CHOICE_KEYS | LEAK_KEYS) for c in question.choices]
            choice_ids = [choice_key(c, i) for i, c in enumerate(choices)]
            # Stored order can encode the answer for ordering questions
            paired = list(zip(choice_ids, choices))
            random.Random(f"{quiz_id}:{question.id}").shuffle(paired)
            choice_ids = [p[0] for p in paired]
            choices = [p[1] for p in paired]
        media = _scrub(question.media, STRIPPED_MEDIA_KEYS | LEAK_KEYS) if question.media else None
        return {
            "id": question.id,
            "questionType": question.question_type.value,
            "difficulty": question.difficulty.value,
            "themes": list(question.themes or []),
            "subjects": list(question.subjects or []),
            "prompt": _scrub(question.prompt or {}, STRIPPED_PROMPT_KEYS | LEAK_KEYS),
            "choices": choices,
            "media": media,
            "orderIndex": order_index,
            "shuffleProof": self.shuffle_proof(quiz_id, question, choice_ids),
        }

    def build(
        self,
        quiz_id: str,
        drop_at: datetime,
        mode: str,
        theme_plan: Dict[str, Any],
        version: int,
        questions: Sequence[Question],
        generated_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        ordered = order_questions(questions)
        public = [self.public_question(quiz_id, q, i) for i, q in enumerate(ordered)]
        difficulty = Counter(q.difficulty.value for q in ordered)
        themes = Counter(t for q in ordered for t in (q.themes or []))
        seed = int(hashlib.sha256(f"{quiz_id}:{as_utc(drop_at).isoformat()}".encode("utf-8")).hexdigest()[:8], 16)
        return {
            "id": quiz_id,
            "dropAtUTC": as_utc(drop_at).isoformat(),
            "mode": mode,
            "themePlan": theme_plan,
            "version": version,
            "questions": public,
            "clientShuffle": {"algo": "xorshift", "fields": list(CLIENT_SHUFFLE_FIELDS), "seed": seed},
            "metadata": {
                "generatedAt": (generated_at or utcnow()).isoformat(),
                "totalQuestions": len(public),
                "difficultyBreakdown": {d.value: difficulty.get(d.value, 0) for d in DIFFICULTY_ORDER},
                "themeBreakdown": dict(sorted(themes.items())),
            },
        }

    def validate(self, template: Dict[str, Any]) -> List[str]:
        issues = []
        if not template.get("id"):
            issues.append("Template missing id")
        if not template.get("dropAtUTC"):
            issues.append("Template missing drop time")
        questions = template.get("questions") or []
        if not questions:
            issues.append("Template has no questions")
        if not isinstance(template.get("version"), int) or template["version"] < 1:
            issues.append("Template version must be >= 1")
        for i, q in enumerate(questions):
            for f in REQUIRED_QUESTION_FIELDS:
                if q.get(f) is None:
                    issues.append(f"Question {i} missing {f}")
            if q.get("orderIndex") != i:
                issues.append(f"Question {i} has orderIndex {q.get('orderIndex')}")
        for path in find_leaks(template):
            issues.append(f"Answer data leaked at {path}")
        meta = template.get("metadata") or {}
        if meta.get("totalQuestions") != len(questions):
            issues.append("Metadata totalQuestions does not match question count")
        return issues

    def ensure_valid(self, template: Dict[str, Any]) -> None:
        issues = self.validate(template)
        if issues:
            logger.error(f"Template {template.get('id')} failed validation: {issues}")
            raise TemplateValidationError(issues)

    def stats(self, template: Dict[str, Any]) -> Dict[str, Any]:
        questions = template.get("questions") or []
        with_choices = [q for q in questions if q.get("choices")]
        return {
            "size": template_size(template),
            "questionTypes": dict(Counter(q.get("questionType") for q in questions)),
            "mediaCount": sum(1 for q in questions if q.get("media")),
            "averageChoicesPerQuestion": round(
                sum(len(q["choices"]) for q in with_choices) / len(with_choices), 2
            ) if with_choices else 0.0,
        }

    def format_for_cdn(self, template: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "dailyQuizId": template["id"],
            "version": template["version"],
            "clientShuffle": template["clientShuffle"],
            "metadata": template["metadata"],
            "questions": [
                {
                    "qid": q["id"],
                    "type": q["questionType"],
                    "payload": {
                        "prompt": q["prompt"],
                        "choices": q["choices"],
                        "media": q["media"],
                        "themes": q["themes"],
                        "difficulty": q["difficulty"],
                    },
                    "shuffleProof": q["shuffleProof"],
                }
                for q in template["questions"]
            ],
        }

    def publish(
        self,
        quiz: DailyQuiz,
        questions: Sequence[Question],
        version: int,
        generated_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Build, validate and attach the quiz's single active template."""
        template = self.build(
            quiz.id, quiz.drop_at_utc, quiz.mode.value, quiz.theme_plan or {}, version, questions, generated_at
        )
        self.ensure_valid(template)
        quiz.template = template
        quiz.template_version = version
        quiz.template_cdn_url = self.cdn_url(quiz.drop_at_utc, version)
        quiz.template_size = template_size(template)
        quiz.status = DailyQuizStatus.READY
        logger.info(f"Published template v{version} for daily quiz {quiz.id} ({quiz.template_size} bytes)")
        return template
