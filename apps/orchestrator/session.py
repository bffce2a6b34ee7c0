"""One analysis workspace: an exam, a single student or a batch, and commits.

The session owns one ``CollectionStore`` per target and swaps it wholesale
whenever a new artifact is uploaded. Analysis of questions and single-student
answers is visible item by item while it runs; batch results appear only once
every subject has settled.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from apps.collaborators.protocol import AnalysisBackend, KnowledgeStore
from eduscan.core.config import EngineConfig
from eduscan.core.provenance import MemoryProvenance, ProvenanceEvent

from .aggregator import (
    AggregateSummary,
    BatchSummary,
    ExamOverview,
    build_commit_payload,
    summarize_batch,
    summarize_exam,
    summarize_subject,
)
from .batch import BatchCoordinator
from .collection import CollectionStore, answer_key, merge_by_key, question_key
from .commit_gateway import CommitGateway, CommitStatus
from .fanout import FanOutAnalyzer, FanOutRun, answer_analyzer, question_analyzer
from .models import (
    AnalysisResult,
    AnalysisState,
    Analyzed,
    Answer,
    Graded,
    Question,
    SourceArtifact,
    StudentResult,
    SubjectKey,
    build_item,
)
from .splitter import SplitFailure, SplitPreconditionError, Splitter

LOGGER = logging.getLogger(__name__)

SINGLE_STUDENT_KEY = "single"


class SessionPhase(str, Enum):
    EMPTY = "empty"
    SPLITTING = "splitting"
    ANALYZING = "analyzing"
    READY = "ready"
    SPLIT_FAILED = "split_failed"


class SessionMode(str, Enum):
    NONE = "none"
    SINGLE = "single"
    BATCH = "batch"


class AnalysisSession:
    def __init__(
        self,
        backend: AnalysisBackend,
        knowledge_store: KnowledgeStore,
        *,
        config: EngineConfig | None = None,
        provenance: Any | None = None,
        splitter: Splitter | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.backend = backend
        self.provenance = provenance if provenance is not None else MemoryProvenance()
        self.splitter = splitter or Splitter(backend)
        self.analyzer = FanOutAnalyzer(
            timeout=self.config.analysis.timeout_seconds,
            max_concurrency=self.config.analysis.max_concurrency,
            provenance=self.provenance,
        )
        self.coordinator = BatchCoordinator(
            backend,
            self.analyzer,
            splitter=self.splitter,
            max_concurrent_subjects=self.config.batch.max_concurrent_subjects,
            provenance=self.provenance,
        )
        self.commits = CommitGateway(
            knowledge_store,
            timeout=self.config.commit.timeout_seconds,
            retry_failed_only=self.config.commit.retry_failed_only,
            provenance=self.provenance,
        )
        self.questions: CollectionStore[Question] = CollectionStore(question_key, name="questions")
        self.answers: CollectionStore[Answer] = CollectionStore(answer_key, name="answers")
        self.batch_results: Tuple[StudentResult, ...] = ()
        self.mode = SessionMode.NONE
        self.exam_artifact: Optional[SourceArtifact] = None
        self.student_artifact: Optional[SourceArtifact] = None
        self.exam_error: Optional[str] = None
        self.student_error: Optional[str] = None
        self._exam_phase = SessionPhase.EMPTY
        self._student_phase = SessionPhase.EMPTY
        self._batch_phase = SessionPhase.EMPTY
        self._question_run: Optional[FanOutRun] = None
        self._answer_run: Optional[FanOutRun] = None
        self._batch_task: Optional[asyncio.Task] = None
        # bumped by every upload and every reset; an older upload that resumes afterwards discards its work
        self._exam_token = 0
        self._student_token = 0

    # ------------------------------------------------------------------
    # Phases

    @staticmethod
    def _derive(phase: SessionPhase, store: CollectionStore) -> SessionPhase:
        if phase is SessionPhase.ANALYZING and store.is_complete():
            return SessionPhase.READY
        return phase

    @property
    def exam_phase(self) -> SessionPhase:
        return self._derive(self._exam_phase, self.questions)

    @property
    def student_phase(self) -> SessionPhase:
        return self._derive(self._student_phase, self.answers)

    @property
    def batch_phase(self) -> SessionPhase:
        return self._batch_phase

    @property
    def exam_ready(self) -> bool:
        """Questions exist and the split finished; answers may be uploaded."""
        return len(self.questions) > 0 and self.exam_phase in (SessionPhase.ANALYZING, SessionPhase.READY)

    @property
    def question_run(self) -> Optional[FanOutRun]:
        return self._question_run

    @property
    def answer_run(self) -> Optional[FanOutRun]:
        return self._answer_run

    # ------------------------------------------------------------------
    # Exam

    async def upload_exam(self, artifact: SourceArtifact) -> Optional[FanOutRun]:
        """Discard everything derived from the previous exam and analyze ``artifact``.

        Returns the running fan-out, or None when the split failed or a newer
        upload superseded this one while it was splitting.
        """
        self._exam_token += 1
        token = self._exam_token
        self._reset_students()
        self._cancel(self._question_run)
        self._question_run = None
        self.questions.clear()
        self.exam_artifact = artifact
        self.exam_error = None
        self._exam_phase = SessionPhase.SPLITTING

        try:
            questions = await self.splitter.split_exam(artifact)
        except SplitFailure as exc:
            if token == self._exam_token:
                self._split_failed("exam", exc)
                self.exam_error = exc.reason
                self._exam_phase = SessionPhase.SPLIT_FAILED
            return None
        if token != self._exam_token:
            LOGGER.info("Discarding split of %s: a newer exam was uploaded", artifact.name)
            return None

        self.questions.install(questions)
        self._exam_phase = SessionPhase.ANALYZING
        self._question_run = self.analyzer.start(self.questions, question_analyzer(self.backend))
        return self._question_run

    def update_question(self, question_id: str, updates: Mapping[str, Any]) -> bool:
        """Raw manual merge into one question; unknown ids are ignored."""
        return self.questions.merge(question_id, updates)

    def verify_question(self, question_id: str) -> bool:
        return self.questions.merge(question_id, {"verified": True})

    def edit_question_analysis(self, question_id: str, **fields: Any) -> bool:
        """Overwrite analysis fields by hand and mark the question verified.

        Difficulty is clamped and comma separated tag strings are split. Editing
        a pending or failed question resolves it, so a late analyzer result
        for it is dropped.
        """
        question = self.questions.get(question_id)
        if question is None:
            return False
        base = question.analysis or AnalysisResult()
        result = build_item(AnalysisResult, {**base.model_dump(), **fields})
        return self.questions.merge(question_id, {"state": Analyzed(result=result), "verified": True})

    # ------------------------------------------------------------------
    # Students

    async def upload_student(self, artifact: SourceArtifact) -> Optional[FanOutRun]:
        """Single-subject flow: answers become visible one by one as they settle."""
        questions = self._require_exam()
        self._reset_students()
        token = self._student_token
        self.mode = SessionMode.SINGLE
        self.student_artifact = artifact
        self._student_phase = SessionPhase.SPLITTING

        try:
            answers = await self.splitter.split_student_answers(artifact, questions)
        except SplitFailure as exc:
            if token == self._student_token:
                self._split_failed("student", exc)
                self.student_error = exc.reason
                self._student_phase = SessionPhase.SPLIT_FAILED
            return None
        if token != self._student_token:
            LOGGER.info("Discarding split of %s: superseded by a newer upload", artifact.name)
            return None

        self.answers.install(answers)
        self._student_phase = SessionPhase.ANALYZING
        self._answer_run = self.analyzer.start(self.answers, answer_analyzer(self.backend, questions))
        return self._answer_run

    async def upload_batch(
        self,
        artifacts: Sequence[SourceArtifact],
        *,
        delegated: bool = False,
    ) -> Tuple[StudentResult, ...]:
        """Batch flow: returns (and publishes) results once every subject settled."""
        questions = self._require_exam()
        self._reset_students()
        token = self._student_token
        self.mode = SessionMode.BATCH
        self._batch_phase = SessionPhase.ANALYZING

        if delegated:
            flow = self.coordinator.run_delegated(artifacts, questions)
        else:
            flow = self.coordinator.run(artifacts, questions)
        task = asyncio.ensure_future(flow)
        self._batch_task = task
        try:
            results = await task
        except asyncio.CancelledError:
            if token == self._student_token:
                raise
            LOGGER.info("Batch of %d subjects cancelled: superseded by a newer upload", len(artifacts))
            return ()
        finally:
            if self._batch_task is task:
                self._batch_task = None
        if token != self._student_token:
            LOGGER.info("Discarding batch of %d subjects: superseded by a newer upload", len(results))
            return ()
        self.batch_results = tuple(results)
        self._batch_phase = SessionPhase.READY
        return self.batch_results

    def update_answer(self, question_id: str, updates: Mapping[str, Any]) -> bool:
        """Manual override of a single-student answer; marks it verified."""
        current = self.answers.get(question_id)
        if current is None:
            return False
        return self.answers.merge(question_id, _manual_updates(current, updates))

    def update_batch_answer(self, position: int, question_id: str, updates: Mapping[str, Any]) -> bool:
        """Manual override of one answer of one batch subject."""
        result = self._batch_result(position)
        current = next((answer for answer in result.answers if answer.question_id == question_id), None)
        if current is None:
            return False
        merged = merge_by_key(result.answers, question_id, _manual_updates(current, updates), key_of=answer_key)
        replaced = result.model_copy(update={"answers": merged})
        self.batch_results = tuple(replaced if r is result else r for r in self.batch_results)
        return True

    # ------------------------------------------------------------------
    # Summaries

    def student_summary(self) -> AggregateSummary:
        return summarize_subject(self.answers.snapshot(), self.questions.snapshot())

    def batch_summaries(self) -> BatchSummary:
        return summarize_batch(self.batch_results, self.questions.snapshot(), top_n=self.config.scoring.top_n)

    def exam_overview(self) -> ExamOverview:
        return summarize_exam(self.questions.snapshot(), top_n=self.config.scoring.top_n)

    # ------------------------------------------------------------------
    # Commits

    async def commit_student(self, student_name: str, exam_title: str) -> CommitStatus:
        payload = build_commit_payload(student_name, exam_title, self.student_summary())
        return await self.commits.commit(SINGLE_STUDENT_KEY, payload)

    async def commit_subject(self, position: int, exam_title: str) -> CommitStatus:
        result = self._batch_result(position)
        if result.failed:
            raise ValueError(f"subject {result.key.label()} has no answers to commit: {result.split_error}")
        summary = summarize_subject(result.answers, self.questions.snapshot())
        return await self.commits.commit(result.key, build_commit_payload(result.subject_name, exam_title, summary))

    async def commit_batch(self, exam_title: str) -> CommitStatus:
        questions = self.questions.snapshot()
        entries = [
            (
                result.key,
                build_commit_payload(result.subject_name, exam_title, summarize_subject(result.answers, questions)),
            )
            for result in self.batch_results
            if not result.failed
        ]
        return await self.commits.commit_all(entries)

    def commit_status(self, key: SubjectKey | str = SINGLE_STUDENT_KEY) -> CommitStatus:
        return self.commits.status(key)

    # ------------------------------------------------------------------
    # Internals

    def _require_exam(self) -> Tuple[Question, ...]:
        if not self.exam_ready:
            raise SplitPreconditionError("upload and split an exam before uploading answer sheets")
        return self.questions.snapshot()

    def _batch_result(self, position: int) -> StudentResult:
        for result in self.batch_results:
            if result.position == position:
                return result
        raise LookupError(f"no batch subject at position {position}")

    def _reset_students(self) -> None:
        self._student_token += 1
        self._cancel(self._answer_run)
        self._answer_run = None
        if self._batch_task is not None and not self._batch_task.done():
            self._batch_task.cancel()
        self._batch_task = None
        self.answers.clear()
        self.batch_results = ()
        self.student_artifact = None
        self.student_error = None
        self._student_phase = SessionPhase.EMPTY
        self._batch_phase = SessionPhase.EMPTY
        self.mode = SessionMode.NONE
        self.commits.reset()

    @staticmethod
    def _cancel(run: Optional[FanOutRun]) -> None:
        if run is not None:
            run.cancel()

    def _split_failed(self, target: str, exc: SplitFailure) -> None:
        LOGGER.warning("Split of %s failed: %s", exc.artifact.name, exc.reason)
        self.provenance.log(
            ProvenanceEvent(
                stage="split",
                message=f"{target} split failed",
                payload={"artifact": exc.artifact.name, "reason": exc.reason},
            )
        )


def _manual_updates(current: Answer, updates: Mapping[str, Any]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {**dict(updates), "verified": True}
    if current.analysis_state is not AnalysisState.COMPLETE:
        payload["state"] = Graded(manual=True)
    return payload


__all__ = ["AnalysisSession", "SINGLE_STUDENT_KEY", "SessionMode", "SessionPhase"]
