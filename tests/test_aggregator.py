import copy

from apps.orchestrator.aggregator import (
    AggregateSummary,
    build_commit_payload,
    rank_tags,
    summarize_batch,
    summarize_exam,
    summarize_subject,
)
from apps.orchestrator.models import (
    AnalysisResult,
    Analyzed,
    Answer,
    Failed,
    Graded,
    Pending,
    Question,
    StudentResult,
)


def _question(ordinal: int, chapter: str, kps, methods=(), comps=(), difficulty: int = 5) -> Question:
    return Question(
        id=f"q{ordinal}",
        ordinal=ordinal,
        state=Analyzed(
            result=AnalysisResult(
                chapter=chapter,
                difficulty=difficulty,
                knowledge_points=list(kps),
                methods=list(methods),
                competencies=list(comps),
            )
        ),
    )


QUESTIONS = (
    _question(1, "Functions", ["domain", "range"], ["graphing"], difficulty=3),
    _question(2, "Vectors", ["dot product", "projection"], ["coordinates"], difficulty=6),
    _question(3, "Sequences", ["recursion", "sums"], ["induction"], difficulty=9),
)


def _graded(question_id: str, **fields) -> Answer:
    return Answer(question_id=question_id, state=Graded(), **fields)


def test_subject_summary_unions_tags_in_first_seen_order() -> None:
    answers = (
        _graded("q1", is_correct=True, score=10, max_score=10, mastered_points=["domain", "range"]),
        _graded(
            "q2",
            is_correct=False,
            score=3,
            max_score=10,
            mastered_points=["dot product"],
            missing_points=["projection"],
            missing_methods=["coordinates"],
        ),
        _graded("q3", is_correct=True, score=8, max_score=10, mastered_points=["range", "sums"]),
    )

    summary = summarize_subject(answers, QUESTIONS)

    assert summary.total_score == 21
    assert summary.max_score == 30
    assert summary.mastered_knowledge == ("domain", "range", "dot product", "sums")
    assert summary.missing_knowledge == ("projection",)
    assert summary.missing_methods == ("coordinates",)
    assert summary.mastered_methods == ()
    assert summary.recommended_chapters == ("Vectors",)
    assert (summary.answered, summary.pending, summary.failed) == (3, 0, 0)


def test_incorrect_answer_without_tags_falls_back_to_question_tags() -> None:
    answers = (_graded("q3", is_correct=False, score=1, max_score=10),)
    summary = summarize_subject(answers, QUESTIONS)
    assert summary.missing_knowledge == ("recursion", "sums")
    assert summary.missing_methods == ("induction",)
    assert summary.recommended_chapters == ("Sequences",)


def test_fallback_is_per_category() -> None:
    answers = (_graded("q2", is_correct=False, missing_points=["projection"]),)
    summary = summarize_subject(answers, QUESTIONS)
    assert summary.missing_knowledge == ("projection",)
    assert summary.missing_methods == ("coordinates",)


def test_correct_answer_without_tags_contributes_no_fallback() -> None:
    summary = summarize_subject((_graded("q1", is_correct=True, score=5, max_score=5),), QUESTIONS)
    assert summary.missing_knowledge == ()
    assert summary.mastered_knowledge == ()
    assert summary.recommended_chapters == ()


def test_review_chapter_override_rules() -> None:
    answers = (
        _graded("q1", is_correct=False, review_chapter_override="Functions II"),
        _graded("q2", is_correct=True, review_chapter_override="Vectors (stretch)"),
        _graded("q3", is_correct=True),
    )
    summary = summarize_subject(answers, QUESTIONS)
    assert summary.recommended_chapters == ("Functions II", "Vectors (stretch)")


def test_pending_and_failed_items_contribute_nothing() -> None:
    answers = (
        Answer(question_id="q1", state=Pending()),
        Answer(question_id="q2", state=Failed(reason="timeout")),
        _graded("q3", is_correct=True, score=7, max_score=10, mastered_points=["sums"]),
    )
    summary = summarize_subject(answers, QUESTIONS)
    assert (summary.total_score, summary.max_score) == (7, 10)
    assert summary.recommended_chapters == ()
    assert summary.missing_knowledge == ()
    assert (summary.answered, summary.pending, summary.failed) == (1, 1, 1)
    assert not summary.is_settled


def test_summaries_are_pure() -> None:
    answers = (_graded("q2", is_correct=False, score=2, max_score=10),)
    answers_before = copy.deepcopy(answers)
    questions_before = copy.deepcopy(QUESTIONS)

    first = summarize_subject(answers, QUESTIONS)
    second = summarize_subject(answers, QUESTIONS)

    assert first == second
    assert answers == answers_before
    assert QUESTIONS == questions_before


def test_empty_subject() -> None:
    assert summarize_subject((), QUESTIONS) == AggregateSummary()


def test_rank_tags_counts_distinct_questions_ties_by_first_appearance() -> None:
    questions = (
        _question(1, "A", ["b", "a"]),
        _question(2, "B", ["a", "c"]),
        _question(3, "C", ["c", "d"]),
        _question(4, "D", ["e"]),
        Question(id="q5", ordinal=5),
    )
    ranked = rank_tags(questions, "knowledge_points", limit=3)
    assert [(entry.tag, entry.count) for entry in ranked] == [("a", 2), ("c", 2), ("b", 1)]
    assert len(rank_tags(questions, "knowledge_points")) == 5


def test_exam_overview() -> None:
    questions = QUESTIONS + (Question(id="q4", ordinal=4, state=Failed(reason="x")), Question(id="q5", ordinal=5))
    overview = summarize_exam(questions, top_n=2)

    assert overview.question_count == 5
    assert overview.analyzed_count == 3
    assert overview.failed_count == 1
    assert overview.pending_count == 1
    assert overview.average_difficulty == 6.0
    assert overview.difficulty_curve == ((1, 3), (2, 6), (3, 9))
    assert [entry.tag for entry in overview.top_knowledge_points] == ["domain", "range"]
    assert summarize_exam(()).average_difficulty is None


def test_batch_summary_skips_failed_subjects_in_averages() -> None:
    results = (
        StudentResult(
            position=0,
            subject_name="Ana",
            answers=(_graded("q1", is_correct=False, score=2, max_score=10),),
        ),
        StudentResult(position=1, subject_name="Ben", split_error="unreadable"),
        StudentResult(
            position=2,
            subject_name="Ana",
            answers=(_graded("q1", is_correct=True, score=10, max_score=10),),
        ),
    )
    batch = summarize_batch(results, QUESTIONS)

    assert [s.subject_name for s in batch.subjects] == ["Ana", "Ben", "Ana"]
    assert [s.position for s in batch.failed_subjects] == [1]
    assert batch.average_score == 6
    assert batch.average_max_score == 10
    assert [(e.tag, e.count) for e in batch.common_missing_knowledge] == [("domain", 1), ("range", 1)]


def test_commit_payload_wire_format() -> None:
    summary = summarize_subject(
        (_graded("q2", is_correct=False, score=4, max_score=12, mastered_points=["dot product"]),),
        QUESTIONS,
    )
    payload = build_commit_payload("李华", "Midterm", summary).to_wire()

    assert payload == {
        "studentName": "李华",
        "examTitle": "Midterm",
        "score": 4.0,
        "totalScore": 12.0,
        "knowledgePoints": {"mastered": ["dot product"], "missing": []},
        "methods": {"mastered": [], "missing": ["coordinates"]},
        "reviewChapters": ["Vectors"],
    }
