"""Turn an uploaded artifact into an ordered collection of pending items."""

from __future__ import annotations

import logging
import uuid
from typing import Callable, List, Sequence, Tuple

from apps.collaborators.protocol import AnalysisBackend

from .models import (
    Answer,
    ItemValidationError,
    PartialAnswer,
    PartialQuestion,
    Pending,
    Question,
    SourceArtifact,
    build_item,
)

LOGGER = logging.getLogger(__name__)


class SplitFailure(RuntimeError):
    """Whole-artifact failure: the pipeline for this artifact stops here."""

    def __init__(self, artifact: SourceArtifact, reason: str) -> None:
        super().__init__(f"Could not split {artifact.name}: {reason}")
        self.artifact = artifact
        self.reason = reason


class SplitPreconditionError(AssertionError):
    """Answer sheets were split without a finalized question set."""


def mint_question_id() -> str:
    return f"q-{uuid.uuid4().hex}"


class Splitter:
    """Calls the split collaborators and mints stable identities."""

    def __init__(self, backend: AnalysisBackend, *, id_factory: Callable[[], str] = mint_question_id) -> None:
        self.backend = backend
        self._id_factory = id_factory

    async def split_exam(self, artifact: SourceArtifact) -> Tuple[Question, ...]:
        """Return pending questions with fresh ids and 1-based ordinals."""
        try:
            partials: List[PartialQuestion] = list(await self.backend.split_exam(artifact))
        except Exception as exc:
            raise SplitFailure(artifact, str(exc)) from exc
        try:
            questions = tuple(
                build_item(
                    Question,
                    {
                        "id": self._id_factory(),
                        "ordinal": index,
                        "source_content": partial.source_content,
                        "image_ref": partial.image_ref,
                        "state": Pending(),
                    },
                )
                for index, partial in enumerate(partials, start=1)
            )
        except ItemValidationError as exc:
            raise SplitFailure(artifact, str(exc)) from exc
        LOGGER.info("Split %s into %d questions", artifact.name, len(questions))
        return questions

    async def split_student_answers(
        self,
        artifact: SourceArtifact,
        questions: Sequence[Question],
    ) -> Tuple[Answer, ...]:
        """Return one pending answer per question, keyed by the question id.

        Entries from the collaborator are matched to questions by position; the
        collaborator never chooses identities.
        """
        if not questions:
            raise SplitPreconditionError("student answers can only be split against a non-empty question set")
        try:
            partials: List[PartialAnswer] = list(await self.backend.split_student_answers(artifact, questions))
        except Exception as exc:
            raise SplitFailure(artifact, str(exc)) from exc
        if len(partials) != len(questions):
            raise SplitFailure(
                artifact,
                f"expected {len(questions)} answers, collaborator returned {len(partials)}",
            )
        answers = tuple(
            build_item(
                Answer,
                {
                    "question_id": question.id,
                    "answer_content": partial.answer_content,
                    "image_ref": partial.image_ref,
                    "state": Pending(),
                },
            )
            for question, partial in zip(questions, partials)
        )
        LOGGER.info("Split %s into %d answers", artifact.name, len(answers))
        return answers


__all__ = ["SplitFailure", "SplitPreconditionError", "Splitter", "mint_question_id"]
