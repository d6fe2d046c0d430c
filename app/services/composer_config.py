import re
from typing import Any, Dict, List, Mapping, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator
from app.core.errors import ValidationError
from app.models.enums import Difficulty, QuestionTheme

class AntiRepeatDays(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strict: int = Field(30, ge=0)
    relaxed1: int = Field(21, ge=0)
    relaxed2: int = Field(14, ge=0)
    relaxed3: int = Field(10, ge=0)
    final: int = Field(7, ge=0)

    def windows(self) -> List[int]:
        return [self.strict, self.relaxed1, self.relaxed2, self.relaxed3, self.final]

class ThemeDiversity(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_unique_themes: int = Field(3, ge=0)
    max_theme_overlap: int = Field(2, ge=0)

class ComposerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_question_count: int = Field(5, ge=1, le=20)
    difficulty_distribution: Dict[Difficulty, float] = Field(
        default_factory=lambda: {Difficulty.EASY: 2.0, Difficulty.MEDIUM: 2.0, Difficulty.HARD: 1.0}
    )
    # None means any number of slots may move between difficulties
    difficulty_tolerance: Optional[int] = Field(None, ge=0)
    anti_repeat_days: AntiRepeatDays = Field(default_factory=AntiRepeatDays)
    max_exposure_bias: int = Field(10, ge=0)
    theme_diversity: ThemeDiversity = Field(default_factory=ThemeDiversity)
    max_subject_repeats: int = Field(1, ge=1)
    max_per_question_type: int = Field(2, ge=1)
    min_cooldown_hours: int = Field(24, ge=0)
    themes: Optional[List[QuestionTheme]] = None
    spotlight_theme: Optional[QuestionTheme] = None

    @field_validator("difficulty_distribution")
    @classmethod
    def check_weights(cls, v: Dict[Difficulty, float]) -> Dict[Difficulty, float]:
        if any(w < 0 for w in v.values()):
            raise ValueError("difficulty weights must be non-negative")
        if sum(v.values()) <= 0:
            raise ValueError("at least one difficulty weight must be positive")
        return v

    @property
    def tolerance(self) -> int:
        if self.difficulty_tolerance is None:
            return self.target_question_count
        return self.difficulty_tolerance

NESTED_KEYS = ("anti_repeat_days", "theme_diversity")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")

def to_snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", key).lower()

def _snake_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {to_snake(k) if isinstance(k, str) else k: v for k, v in data.items()}

def merge_config(partial: Union[None, ComposerConfig, Mapping[str, Any]] = None) -> ComposerConfig:
    """Overlay a partial config (snake_case or camelCase keys) onto the defaults.

    Nested sections are merged key by key; every other key replaces the default.
    """
    if partial is None:
        return ComposerConfig()
    if isinstance(partial, ComposerConfig):
        return partial
    if not isinstance(partial, Mapping):
        raise ValidationError("config must be an object", error_code="INVALID_CONFIG")
    merged: Dict[str, Any] = ComposerConfig().model_dump(mode="json")
    for key, value in _snake_keys(partial).items():
        if key in NESTED_KEYS and isinstance(value, Mapping):
            merged[key] = {**merged[key], **_snake_keys(value)}
        else:
            merged[key] = value
    try:
        return ComposerConfig.model_validate(merged)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid composer configuration",
            error_code="INVALID_CONFIG",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
