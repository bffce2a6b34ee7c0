"""Contract between the orchestration engine and the analysis/commit services."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from apps.orchestrator.models import (
        AnalysisResult,
        AnswerOutcome,
        PartialAnswer,
        PartialQuestion,
        Question,
        SourceArtifact,
        StudentResult,
    )


class CollaboratorError(RuntimeError):
    """Base class for failures reported by an external collaborator."""


class SplitError(CollaboratorError):
    """The artifact could not be decomposed into sub-items."""


class AnalysisError(CollaboratorError):
    """A single item could not be analyzed."""


@runtime_checkable
class AnalysisBackend(Protocol):
    """Async collaborators consumed by the splitter, fan-out and batch runs."""

    async def split_exam(self, artifact: SourceArtifact) -> List[PartialQuestion]:
        ...

    async def analyze_question(self, question_id: str, content: str) -> AnalysisResult:
        ...

    async def split_student_answers(
        self,
        artifact: SourceArtifact,
        questions: Sequence[Question],
    ) -> List[PartialAnswer]:
        ...

    async def analyze_student_answer(self, question: Question, answer_content: str) -> AnswerOutcome:
        ...

    async def batch_split_and_analyze(
        self,
        artifacts: Sequence[SourceArtifact],
        questions: Sequence[Question],
    ) -> List[StudentResult]:
        ...


@runtime_checkable
class KnowledgeStore(Protocol):
    """The single commit primitive used by per-subject and batch commits."""

    async def commit(self, payload: Dict[str, Any]) -> bool:
        ...


__all__ = [
    "AnalysisBackend",
    "AnalysisError",
    "CollaboratorError",
    "KnowledgeStore",
    "SplitError",
]
