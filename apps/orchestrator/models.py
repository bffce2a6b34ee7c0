"""Entities shared by the splitter, fan-out analyzer, aggregator and commit gateway.

Every entity is an immutable pydantic model. Collections are tuples of these
models and are only ever changed through ``collection.merge_by_key``, which
re-validates the touched item, so the invariants below hold after every merge:

- ``AnalysisResult.difficulty`` is clamped into 1..10;
- ``Answer.score`` is clamped into ``0..max_score``;
- a tag may not be both missing and mastered in one category of an Answer.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from eduscan.core.validation import ValidationFailure

DIFFICULTY_MIN = 1
DIFFICULTY_MAX = 10
_TAG_SEPARATORS = re.compile(r"[,，、]")

ModelT = TypeVar("ModelT", bound=BaseModel)


class ItemValidationError(ValidationFailure):
    """Raised when a collection item would violate one of its invariants."""


class AnalysisState(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


def normalize_tags(value: Any) -> Tuple[str, ...]:
    """Return tags stripped, de-duplicated (case-sensitive) and in first-seen order.

    A plain string is split on the comma separators teachers type in edit forms.
    """
    if value is None:
        return ()
    if isinstance(value, str):
        value = _TAG_SEPARATORS.split(value)
    seen: Dict[str, None] = {}
    for item in value:
        tag = str(item).strip()
        if tag:
            seen.setdefault(tag, None)
    return tuple(seen)


def _finite(value: Any, field: str) -> float:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{field} must be a finite number, got {value!r}")
    return number


def clamp_difficulty(value: Any) -> int:
    return max(DIFFICULTY_MIN, min(DIFFICULTY_MAX, int(round(_finite(value, "difficulty")))))


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class _Wire(BaseModel):
    """Collaborator payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(frozen=True, extra="ignore", alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Tagged item state


class Pending(_Frozen):
    kind: Literal["pending"] = "pending"


class Failed(_Frozen):
    kind: Literal["failed"] = "failed"
    reason: str = "analysis failed"


class AnalysisResult(_Wire):
    """Tags produced by analyzing one exam question."""

    chapter: str = ""
    difficulty: int = DIFFICULTY_MIN
    knowledge_points: Tuple[str, ...] = ()
    methods: Tuple[str, ...] = ()
    competencies: Tuple[str, ...] = ()

    @field_validator("difficulty", mode="before")
    @classmethod
    def _clamp_difficulty(cls, value: Any) -> int:
        return clamp_difficulty(value)

    @field_validator("knowledge_points", "methods", "competencies", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> Tuple[str, ...]:
        return normalize_tags(value)

    @field_validator("chapter", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return str(value or "").strip()


class Analyzed(_Frozen):
    kind: Literal["complete"] = "complete"
    result: AnalysisResult


class Graded(_Frozen):
    kind: Literal["complete"] = "complete"
    manual: bool = False


QuestionState = Annotated[Union[Pending, Analyzed, Failed], Field(discriminator="kind")]
AnswerState = Annotated[Union[Pending, Graded, Failed], Field(discriminator="kind")]

_KIND_TO_STATE = {
    "pending": AnalysisState.PENDING,
    "complete": AnalysisState.COMPLETE,
    "failed": AnalysisState.FAILED,
}


# ---------------------------------------------------------------------------
# Collection items


class Question(_Frozen):
    """One exam question; identity is ``id``, display order is ``ordinal``."""

    id: str
    ordinal: int = Field(..., ge=1)
    source_content: str = ""
    image_ref: str = ""
    state: QuestionState = Field(default_factory=Pending)
    verified: bool = False

    @property
    def analysis_state(self) -> AnalysisState:
        return _KIND_TO_STATE[self.state.kind]

    @property
    def analysis(self) -> AnalysisResult | None:
        return self.state.result if isinstance(self.state, Analyzed) else None

    @property
    def failure_reason(self) -> str | None:
        return self.state.reason if isinstance(self.state, Failed) else None


class Answer(_Frozen):
    """One subject's answer to one question; identity is ``question_id``."""

    question_id: str
    answer_content: str = ""
    image_ref: str = ""
    state: AnswerState = Field(default_factory=Pending)
    is_correct: bool = False
    score: float = Field(default=0.0, allow_inf_nan=False)
    max_score: float = Field(default=0.0, allow_inf_nan=False)
    feedback: str = ""
    missing_points: Tuple[str, ...] = ()
    mastered_points: Tuple[str, ...] = ()
    missing_methods: Tuple[str, ...] = ()
    mastered_methods: Tuple[str, ...] = ()
    review_chapter_override: Optional[str] = None
    verified: bool = False

    @field_validator("missing_points", "mastered_points", "missing_methods", "mastered_methods", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> Tuple[str, ...]:
        return normalize_tags(value)

    @field_validator("review_chapter_override", mode="before")
    @classmethod
    def _blank_override(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @model_validator(mode="before")
    @classmethod
    def _clamp_score(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = dict(data)
        max_score = max(0.0, _finite(payload.get("max_score", 0.0) or 0.0, "max_score"))
        score = _finite(payload.get("score", 0.0) or 0.0, "score")
        payload["max_score"] = max_score
        payload["score"] = min(max(score, 0.0), max_score)
        return payload

    @model_validator(mode="after")
    def _exclusive_tags(self) -> "Answer":
        clashes = [tag for tag in self.missing_points if tag in self.mastered_points]
        clashes += [tag for tag in self.missing_methods if tag in self.mastered_methods]
        if clashes:
            raise ValueError(f"tags cannot be both missing and mastered: {', '.join(clashes)}")
        return self

    @property
    def analysis_state(self) -> AnalysisState:
        return _KIND_TO_STATE[self.state.kind]

    @property
    def failure_reason(self) -> str | None:
        return self.state.reason if isinstance(self.state, Failed) else None


@dataclass(frozen=True, slots=True)
class SubjectKey:
    """Batch identity: position disambiguates duplicate names."""

    position: int
    name: str

    def label(self) -> str:
        return f"{self.position + 1}. {self.name}"


class StudentResult(_Frozen):
    """A batch subject, visible only once its whole pipeline has settled."""

    position: int = Field(..., ge=0)
    subject_name: str
    answers: Tuple[Answer, ...] = ()
    split_error: Optional[str] = None

    @property
    def key(self) -> SubjectKey:
        return SubjectKey(self.position, self.subject_name)

    @property
    def failed(self) -> bool:
        return self.split_error is not None


# ---------------------------------------------------------------------------
# Collaborator payloads


class SourceArtifact(_Frozen):
    """An uploaded file; the engine never looks inside it."""

    name: str
    path: Optional[Path] = None
    content: Optional[bytes] = None
    media_type: str = "application/octet-stream"
    subject_name: Optional[str] = None

    @classmethod
    def from_path(cls, path: Path, *, subject_name: str | None = None) -> "SourceArtifact":
        path = Path(path).expanduser().resolve()
        return cls(name=path.name, path=path, subject_name=subject_name)

    @property
    def stem(self) -> str:
        return Path(self.name).stem or self.name

    def read_bytes(self) -> bytes:
        if self.content is not None:
            return self.content
        if self.path is None:
            return b""
        return self.path.read_bytes()


class PartialQuestion(_Wire):
    source_content: str = Field(default="", alias="contentMd")
    image_ref: str = Field(default="", alias="imageUrl")


class PartialAnswer(_Wire):
    answer_content: str = Field(default="", alias="studentAnswerMd")
    image_ref: str = Field(default="", alias="imageUrl")


class AnswerOutcome(_Wire):
    """Grading result for one answer, as returned by the analyze collaborator."""

    is_correct: bool = False
    score: float = 0.0
    max_score: float = 0.0
    feedback: str = ""
    missing_points: Tuple[str, ...] = ()
    mastered_points: Tuple[str, ...] = ()
    missing_methods: Tuple[str, ...] = ()
    mastered_methods: Tuple[str, ...] = ()

    @field_validator("missing_points", "mastered_points", "missing_methods", "mastered_methods", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> Tuple[str, ...]:
        return normalize_tags(value)

    def as_updates(self) -> Dict[str, Any]:
        """Fields to merge into an Answer; never includes ``verified``."""
        return {**self.model_dump(), "state": Graded()}


def build_item(model_cls: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    """Validate ``data`` into ``model_cls`` raising ItemValidationError on failure."""
    try:
        return model_cls.model_validate(data)
    except ValidationError as exc:
        errors = [_format_error(error) for error in exc.errors()]
        raise ItemValidationError(f"Invalid {model_cls.__name__}: {'; '.join(errors)}", errors=errors) from exc


def _format_error(error: Dict[str, Any]) -> str:
    field = ".".join(str(loc) for loc in error.get("loc", ()))
    return f"{field}: {error['msg']}" if field else str(error["msg"])


__all__ = [
    "AnalysisResult",
    "AnalysisState",
    "Analyzed",
    "Answer",
    "AnswerOutcome",
    "Failed",
    "Graded",
    "ItemValidationError",
    "PartialAnswer",
    "PartialQuestion",
    "Pending",
    "Question",
    "SourceArtifact",
    "StudentResult",
    "SubjectKey",
    "build_item",
    "clamp_difficulty",
    "normalize_tags",
]
