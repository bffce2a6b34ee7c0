"""Batch flow: split + fan-out per subject, subjects run concurrently."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Sequence

from apps.collaborators.protocol import AnalysisBackend
from eduscan.core.provenance import ProvenanceEvent

from .collection import CollectionStore, answer_key
from .fanout import FanOutAnalyzer, answer_analyzer
from .models import Question, SourceArtifact, StudentResult, build_item
from .splitter import SplitFailure, SplitPreconditionError, Splitter

LOGGER = logging.getLogger(__name__)


def subject_name(artifact: SourceArtifact) -> str:
    """Display name of a batch subject: explicit name or the file stem."""
    return (artifact.subject_name or "").strip() or artifact.stem


class BatchCoordinator:
    """Runs the single-subject answer pipeline for many artifacts at once.

    Each subject gets a private answer store; its ``StudentResult`` is built
    only after every answer task of that subject has settled, so a partially
    analyzed subject is never visible. Results keep the input order no matter
    which subject finishes first.
    """

    def __init__(
        self,
        backend: AnalysisBackend,
        analyzer: FanOutAnalyzer,
        *,
        splitter: Splitter | None = None,
        max_concurrent_subjects: int = 8,
        provenance: Any | None = None,
    ) -> None:
        self.backend = backend
        self.analyzer = analyzer
        self.splitter = splitter or Splitter(backend)
        self.max_concurrent_subjects = max_concurrent_subjects
        self.provenance = provenance

    async def run(self, artifacts: Sequence[SourceArtifact], questions: Sequence[Question]) -> List[StudentResult]:
        if not questions:
            raise SplitPreconditionError("batch answers can only be split against a non-empty question set")
        questions = tuple(questions)
        semaphore = asyncio.Semaphore(self.max_concurrent_subjects)
        LOGGER.info("Starting batch of %d subjects", len(artifacts))
        results = await asyncio.gather(
            *(
                self._run_subject(position, artifact, questions, semaphore)
                for position, artifact in enumerate(artifacts)
            )
        )
        failed = sum(1 for result in results if result.failed)
        LOGGER.info("Batch settled: %d subjects, %d split failures", len(results), failed)
        return list(results)

    async def run_delegated(
        self,
        artifacts: Sequence[SourceArtifact],
        questions: Sequence[Question],
    ) -> List[StudentResult]:
        """Hand the whole batch to ``batch_split_and_analyze``.

        Positions are re-assigned from the order the collaborator returns.
        """
        if not questions:
            raise SplitPreconditionError("batch answers can only be split against a non-empty question set")
        returned = await self.backend.batch_split_and_analyze(list(artifacts), tuple(questions))
        results = [
            build_item(StudentResult, {**dict(result), "position": position})
            for position, result in enumerate(returned)
        ]
        LOGGER.info("Delegated batch returned %d subjects", len(results))
        return results

    async def _run_subject(
        self,
        position: int,
        artifact: SourceArtifact,
        questions: Sequence[Question],
        semaphore: asyncio.Semaphore,
    ) -> StudentResult:
        name = subject_name(artifact)
        async with semaphore:
            try:
                answers = await self.splitter.split_student_answers(artifact, questions)
            except SplitFailure as exc:
                LOGGER.warning("Subject %d (%s) could not be split: %s", position + 1, name, exc.reason)
                if self.provenance is not None:
                    self.provenance.log(
                        ProvenanceEvent(
                            stage="split",
                            message="subject split failed",
                            payload={"position": position, "subject": name, "reason": exc.reason},
                        )
                    )
                return StudentResult(position=position, subject_name=name, split_error=exc.reason)

            store: CollectionStore = CollectionStore(answer_key, name=f"subject[{position + 1}]")
            store.install(answers)
            settled = await self.analyzer.run(store, answer_analyzer(self.backend, questions))
        return StudentResult(position=position, subject_name=name, answers=settled)


__all__ = ["BatchCoordinator", "subject_name"]
