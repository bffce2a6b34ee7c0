import asyncio

import pytest

from apps.collaborators.mock_backend import PREDEFINED_QUESTIONS, MockAnalysisBackend
from apps.orchestrator.commit_gateway import CommitStatus
from apps.orchestrator.models import AnalysisState, Graded, ItemValidationError, SourceArtifact, SubjectKey
from apps.orchestrator.session import AnalysisSession, SessionMode, SessionPhase
from apps.orchestrator.splitter import SplitPreconditionError
from tests.mocks.backends import RecordingStore

pytestmark = pytest.mark.anyio

EXAM = SourceArtifact(name="exam.pdf")
SHEET = SourceArtifact(name="li-hua.jpg", subject_name="李华")


def _session(backend=None, store=None) -> AnalysisSession:
    return AnalysisSession(backend or MockAnalysisBackend(), store or RecordingStore())


async def _analyzed_exam(session: AnalysisSession) -> None:
    run = await session.upload_exam(EXAM)
    await run.settled()


async def test_exam_and_single_student_end_to_end() -> None:
    store = RecordingStore()
    session = _session(store=store)

    await _analyzed_exam(session)
    assert session.exam_phase is SessionPhase.READY
    assert len(session.questions) == 6
    assert all(q.analysis_state is AnalysisState.COMPLETE for q in session.questions.snapshot())
    assert [q.ordinal for q in session.questions.snapshot()] == [1, 2, 3, 4, 5, 6]

    run = await session.upload_student(SHEET)
    assert session.mode is SessionMode.SINGLE
    await run.settled()
    assert session.student_phase is SessionPhase.READY

    summary = session.student_summary()
    assert (summary.total_score, summary.max_score) == (48, 72)
    expected_chapters = tuple(PREDEFINED_QUESTIONS[n - 1]["chapter"] for n in (2, 5, 6))
    assert summary.recommended_chapters == expected_chapters
    assert "线面角的计算" in summary.missing_knowledge
    assert "正弦定理与余弦定理" in summary.mastered_knowledge

    assert await session.commit_student("李华", "期中考试") is CommitStatus.SUCCEEDED
    assert store.payloads[0]["studentName"] == "李华"
    assert store.payloads[0]["score"] == 48
    assert store.payloads[0]["reviewChapters"] == list(expected_chapters)


async def test_half_of_the_questions_fail() -> None:
    session = _session(MockAnalysisBackend(fail_question_ordinals={2, 4, 6}))
    await _analyzed_exam(session)

    states = [q.analysis_state for q in session.questions.snapshot()]
    assert states.count(AnalysisState.COMPLETE) == 3
    assert states.count(AnalysisState.FAILED) == 3
    assert session.exam_phase is SessionPhase.READY
    overview = session.exam_overview()
    assert (overview.analyzed_count, overview.failed_count) == (3, 3)
    assert [event.stage for event in session.provenance.read()] == ["analyze"] * 3


async def test_exam_split_failure_is_reported() -> None:
    session = _session(MockAnalysisBackend(fail_artifacts={"exam.pdf"}))

    assert await session.upload_exam(EXAM) is None
    assert session.exam_phase is SessionPhase.SPLIT_FAILED
    assert "exam.pdf" in session.exam_error
    assert len(session.questions) == 0
    with pytest.raises(SplitPreconditionError):
        await session.upload_student(SHEET)


async def test_answers_require_an_exam() -> None:
    session = _session()
    with pytest.raises(SplitPreconditionError):
        await session.upload_student(SHEET)
    with pytest.raises(SplitPreconditionError):
        await session.upload_batch([SHEET])


async def test_new_exam_discards_students_and_commit_status() -> None:
    session = _session()
    await _analyzed_exam(session)
    await (await session.upload_student(SHEET)).settled()
    await session.commit_student("李华", "期中考试")
    old_ids = session.questions.keys()

    await _analyzed_exam(session)

    assert session.mode is SessionMode.NONE
    assert len(session.answers) == 0
    assert session.batch_results == ()
    assert session.commit_status() is CommitStatus.IDLE
    assert set(session.questions.keys()).isdisjoint(old_ids)


class GatedSplitBackend(MockAnalysisBackend):
    """Holds every answer split until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def split_student_answers(self, artifact, questions):
        self.entered.set()
        await self.release.wait()
        return await super().split_student_answers(artifact, questions)


async def test_new_exam_invalidates_student_split_in_progress() -> None:
    backend = GatedSplitBackend()
    session = _session(backend)
    await _analyzed_exam(session)
    old_ids = set(session.questions.keys())

    pending = asyncio.ensure_future(session.upload_student(SHEET))
    await backend.entered.wait()
    await _analyzed_exam(session)
    backend.release.set()

    assert await pending is None
    assert len(session.answers) == 0
    assert session.answer_run is None
    assert session.student_phase is SessionPhase.EMPTY
    assert session.mode is SessionMode.NONE
    assert set(session.questions.keys()).isdisjoint(old_ids)


async def test_new_exam_cancels_batch_in_progress() -> None:
    backend = GatedSplitBackend()
    session = _session(backend)
    await _analyzed_exam(session)

    sheets = [SourceArtifact(name="a.jpg"), SourceArtifact(name="b.jpg")]
    pending = asyncio.ensure_future(session.upload_batch(sheets))
    await backend.entered.wait()
    await _analyzed_exam(session)

    assert await pending == ()
    assert session.batch_results == ()
    assert session.batch_phase is SessionPhase.EMPTY
    assert session.mode is SessionMode.NONE


async def test_superseded_exam_upload_is_discarded() -> None:
    session = _session(MockAnalysisBackend(latency=0.01, seed=1))
    first, second = await asyncio.gather(
        session.upload_exam(SourceArtifact(name="old.pdf")),
        session.upload_exam(SourceArtifact(name="new.pdf")),
    )
    assert first is None
    assert second is not None
    await second.settled()
    assert session.exam_artifact.name == "new.pdf"
    assert len(session.questions) == 6


async def test_manual_question_edit_wins_over_late_analysis() -> None:
    session = _session(MockAnalysisBackend(latency=0.02, seed=4))
    run = await session.upload_exam(EXAM)
    first = session.questions.snapshot()[0]

    assert session.edit_question_analysis(first.id, difficulty=15, knowledge_points="极限, 导数", chapter=" 手改 ")
    await run.settled()

    edited = session.questions.get(first.id)
    assert edited.verified is True
    assert edited.analysis.difficulty == 10
    assert edited.analysis.knowledge_points == ("极限", "导数")
    assert edited.analysis.chapter == "手改"
    assert session.questions.snapshot()[1].verified is False


async def test_update_and_verify_question() -> None:
    session = _session()
    await _analyzed_exam(session)
    question = session.questions.snapshot()[2]

    assert session.verify_question(question.id)
    assert session.questions.get(question.id).verified
    assert session.update_question(question.id, {"source_content": "rewritten"})
    assert session.questions.get(question.id).source_content == "rewritten"
    assert not session.update_question("missing", {"source_content": "x"})


async def test_manual_answer_edits() -> None:
    session = _session(MockAnalysisBackend(fail_answer_ordinals={3}))
    await _analyzed_exam(session)
    await (await session.upload_student(SHEET)).settled()
    answers = session.answers.snapshot()
    failed = answers[2]
    assert failed.analysis_state is AnalysisState.FAILED

    with pytest.raises(ItemValidationError):
        session.update_answer(failed.question_id, {"missing_points": ["x"], "mastered_points": ["x"]})
    assert session.answers.get(failed.question_id) is failed

    assert session.update_answer(failed.question_id, {"is_correct": True, "score": 12, "max_score": 12})
    fixed = session.answers.get(failed.question_id)
    assert fixed.state == Graded(manual=True)
    assert fixed.verified is True
    assert session.student_summary().max_score == 72

    graded = answers[0]
    assert session.update_answer(graded.question_id, {"feedback": "ok"})
    assert session.answers.get(graded.question_id).state == graded.state
    assert not session.update_answer("unknown", {"feedback": "x"})


async def test_batch_with_failed_split_and_commits() -> None:
    store = RecordingStore()
    session = _session(MockAnalysisBackend(fail_artifacts={"b.jpg"}), store)
    await _analyzed_exam(session)
    artifacts = [
        SourceArtifact(name="a.jpg", subject_name="Ana"),
        SourceArtifact(name="b.jpg", subject_name="Ben"),
        SourceArtifact(name="c.jpg", subject_name="Ana"),
    ]

    results = await session.upload_batch(artifacts)

    assert session.mode is SessionMode.BATCH
    assert session.batch_phase is SessionPhase.READY
    assert [r.subject_name for r in results] == ["Ana", "Ben", "Ana"]
    assert results[1].failed and not results[0].failed and not results[2].failed
    batch = session.batch_summaries()
    assert [s.position for s in batch.failed_subjects] == [1]
    assert batch.average_score == 48

    with pytest.raises(ValueError):
        await session.commit_subject(1, "期中考试")
    assert await session.commit_batch("期中考试") is CommitStatus.SUCCEEDED
    assert store.names() == ["Ana", "Ana"]
    assert session.commits.batch_status is CommitStatus.SUCCEEDED
    assert await session.commit_subject(0, "期中考试") is CommitStatus.SUCCEEDED
    assert session.commit_status(SubjectKey(0, "Ana")) is CommitStatus.SUCCEEDED
    assert store.names() == ["Ana", "Ana", "Ana"]


async def test_batch_answer_override() -> None:
    session = _session()
    await _analyzed_exam(session)
    await session.upload_batch([SourceArtifact(name="a.jpg"), SourceArtifact(name="b.jpg")])
    question_id = session.questions.keys()[1]

    assert session.update_batch_answer(1, question_id, {"score": 0, "is_correct": False})
    edited = next(a for a in session.batch_results[1].answers if a.question_id == question_id)
    assert edited.verified is True
    assert edited.score == 0
    untouched = next(a for a in session.batch_results[0].answers if a.question_id == question_id)
    assert untouched.verified is False
    with pytest.raises(LookupError):
        session.update_batch_answer(7, question_id, {"score": 1})


async def test_delegated_batch_through_the_session() -> None:
    session = _session(MockAnalysisBackend(seed=11))
    await _analyzed_exam(session)
    results = await session.upload_batch([SourceArtifact(name=f"{n}.jpg") for n in range(2)], delegated=True)
    assert [r.position for r in results] == [0, 1]
    assert all(len(r.answers) == 6 for r in results)
