import pytest

from apps.collaborators.mock_backend import (
    INCORRECT_ORDINALS,
    MAX_SCORE,
    PREDEFINED_QUESTIONS,
    SUBJECT_NAMES,
    MockAnalysisBackend,
)
from apps.collaborators.protocol import AnalysisError, SplitError
from apps.orchestrator.models import AnalysisResult, Analyzed, Question, SourceArtifact

pytestmark = pytest.mark.anyio


def _analyzed(ordinal: int) -> Question:
    template = PREDEFINED_QUESTIONS[ordinal - 1]
    return Question(
        id=f"q{ordinal}",
        ordinal=ordinal,
        source_content=template["content"],
        state=Analyzed(
            result=AnalysisResult(
                chapter=template["chapter"],
                knowledge_points=template["knowledge_points"],
                methods=template["methods"],
            )
        ),
    )


async def test_split_exam_returns_the_six_question_paper() -> None:
    partials = await MockAnalysisBackend().split_exam(SourceArtifact(name="exam.pdf"))
    assert len(partials) == len(PREDEFINED_QUESTIONS) == 6
    assert partials[0].image_ref == "mock://questions/1.jpeg"


async def test_question_analysis_matches_template_by_content() -> None:
    backend = MockAnalysisBackend()
    result = await backend.analyze_question("q5", PREDEFINED_QUESTIONS[4]["content"])
    assert result.difficulty == 9
    assert result.knowledge_points == tuple(PREDEFINED_QUESTIONS[4]["knowledge_points"])

    fallback = await backend.analyze_question("q9", "unrelated content")
    assert fallback.difficulty == 5
    assert backend.calls == ["analyze_question:q5", "analyze_question:q9"]


async def test_injected_failures() -> None:
    backend = MockAnalysisBackend(fail_question_ordinals={1}, fail_answer_ordinals={2}, fail_artifacts={"blurry.jpg"})
    with pytest.raises(AnalysisError):
        await backend.analyze_question("q1", PREDEFINED_QUESTIONS[0]["content"])
    with pytest.raises(AnalysisError):
        await backend.analyze_student_answer(_analyzed(2), "")
    with pytest.raises(SplitError):
        await backend.split_student_answers(SourceArtifact(name="blurry.jpg"), [_analyzed(1)])


async def test_typical_student_gets_two_five_and_six_wrong() -> None:
    backend = MockAnalysisBackend()
    outcomes = [await backend.analyze_student_answer(_analyzed(n), "") for n in range(1, 7)]

    assert [not outcome.is_correct for outcome in outcomes] == [n in INCORRECT_ORDINALS for n in range(1, 7)]
    assert sum(outcome.score for outcome in outcomes) == 48
    assert all(outcome.max_score == MAX_SCORE for outcome in outcomes)
    wrong = outcomes[1]
    assert wrong.mastered_points == (PREDEFINED_QUESTIONS[1]["knowledge_points"][0],)
    assert wrong.missing_points == tuple(PREDEFINED_QUESTIONS[1]["knowledge_points"][1:])
    assert wrong.missing_methods == tuple(PREDEFINED_QUESTIONS[1]["methods"])


async def test_split_student_answers_pads_extra_questions() -> None:
    questions = [Question(id=f"q{n}", ordinal=n) for n in range(1, 8)]
    partials = await MockAnalysisBackend().split_student_answers(SourceArtifact(name="s.jpg"), questions)
    assert len(partials) == 7
    assert partials[6].answer_content == "（学生未作答）"


async def test_batch_names_and_determinism() -> None:
    questions = [_analyzed(n) for n in (1, 2)]
    artifacts = [SourceArtifact(name=f"{n}.jpg") for n in range(12)]

    first = await MockAnalysisBackend(seed=5).batch_split_and_analyze(artifacts, questions)
    second = await MockAnalysisBackend(seed=5).batch_split_and_analyze(artifacts, questions)

    assert [r.subject_name for r in first[:10]] == SUBJECT_NAMES
    assert first[10].subject_name == f"{SUBJECT_NAMES[0]} 11"
    assert first == second
    for result in first:
        for answer in result.answers:
            assert answer.score <= answer.max_score
            assert not set(answer.missing_points) & set(answer.mastered_points)
