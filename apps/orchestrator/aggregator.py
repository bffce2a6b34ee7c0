"""Pure summaries over settled collections.

Nothing here mutates its inputs or caches results; summaries are recomputed
from the current snapshots every time a view or a commit asks for them.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import AnalysisState, Answer, Question, StudentResult

TagCategory = Literal["knowledge_points", "methods", "competencies"]
DEFAULT_TOP_N = 5


class _Summary(BaseModel):
    model_config = ConfigDict(frozen=True)


class AggregateSummary(_Summary):
    """Rollup of one subject's answers."""

    total_score: float = 0.0
    max_score: float = 0.0
    mastered_knowledge: Tuple[str, ...] = ()
    missing_knowledge: Tuple[str, ...] = ()
    mastered_methods: Tuple[str, ...] = ()
    missing_methods: Tuple[str, ...] = ()
    recommended_chapters: Tuple[str, ...] = ()
    answered: int = 0
    pending: int = 0
    failed: int = 0

    @property
    def is_settled(self) -> bool:
        return self.pending == 0


class TagCount(_Summary):
    tag: str
    count: int


class ExamOverview(_Summary):
    """Exam-wide view: difficulty curve and the most frequent tags."""

    question_count: int = 0
    analyzed_count: int = 0
    pending_count: int = 0
    failed_count: int = 0
    average_difficulty: Optional[float] = None
    difficulty_curve: Tuple[Tuple[int, int], ...] = ()
    top_knowledge_points: Tuple[TagCount, ...] = ()
    top_methods: Tuple[TagCount, ...] = ()
    top_competencies: Tuple[TagCount, ...] = ()


class SubjectSummary(_Summary):
    position: int
    subject_name: str
    summary: AggregateSummary = Field(default_factory=AggregateSummary)
    split_error: Optional[str] = None


class BatchSummary(_Summary):
    """Cross-subject view of a settled batch."""

    subjects: Tuple[SubjectSummary, ...] = ()
    average_score: Optional[float] = None
    average_max_score: Optional[float] = None
    common_missing_knowledge: Tuple[TagCount, ...] = ()
    common_missing_methods: Tuple[TagCount, ...] = ()

    @property
    def failed_subjects(self) -> Tuple[SubjectSummary, ...]:
        return tuple(subject for subject in self.subjects if subject.split_error is not None)


class TagBuckets(BaseModel):
    model_config = ConfigDict(frozen=True)

    mastered: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)


class KnowledgeStorePayload(BaseModel):
    """Body of one knowledge store commit; serialized in camelCase."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    student_name: str
    exam_title: str
    score: float
    total_score: float
    knowledge_points: TagBuckets
    methods: TagBuckets
    review_chapters: List[str] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


def _ordered(values: Iterable[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def _index_questions(questions: Iterable[Question]) -> Mapping[str, Question]:
    return {question.id: question for question in questions}


def summarize_subject(answers: Sequence[Answer], questions: Sequence[Question]) -> AggregateSummary:
    """Derive coverage sets, gap sets, chapters and score totals for one subject.

    Only graded answers contribute. An incorrect answer that carries no tags in
    a category falls back to the linked question's tags as missing.
    """
    by_id = _index_questions(questions)
    mastered_kp: List[str] = []
    missing_kp: List[str] = []
    mastered_m: List[str] = []
    missing_m: List[str] = []
    chapters: List[str] = []
    total = maximum = 0.0
    counts = {state: 0 for state in AnalysisState}

    for answer in answers:
        counts[answer.analysis_state] += 1
        if answer.analysis_state is not AnalysisState.COMPLETE:
            continue
        total += answer.score
        maximum += answer.max_score
        question = by_id.get(answer.question_id)
        analysis = question.analysis if question is not None else None

        mastered_kp.extend(answer.mastered_points)
        mastered_m.extend(answer.mastered_methods)
        missing_kp.extend(answer.missing_points)
        missing_m.extend(answer.missing_methods)

        if answer.is_correct:
            if answer.review_chapter_override:
                chapters.append(answer.review_chapter_override)
            continue
        if analysis is not None:
            if not answer.missing_points and not answer.mastered_points:
                missing_kp.extend(analysis.knowledge_points)
            if not answer.missing_methods and not answer.mastered_methods:
                missing_m.extend(analysis.methods)
        chapter = answer.review_chapter_override or (analysis.chapter if analysis is not None else "")
        if chapter:
            chapters.append(chapter)

    return AggregateSummary(
        total_score=total,
        max_score=maximum,
        mastered_knowledge=_ordered(mastered_kp),
        missing_knowledge=_ordered(missing_kp),
        mastered_methods=_ordered(mastered_m),
        missing_methods=_ordered(missing_m),
        recommended_chapters=_ordered(chapters),
        answered=counts[AnalysisState.COMPLETE],
        pending=counts[AnalysisState.PENDING],
        failed=counts[AnalysisState.FAILED],
    )


def _rank(groups: Iterable[Iterable[str]], limit: int) -> Tuple[TagCount, ...]:
    counts: Dict[str, int] = {}
    for group in groups:
        for tag in dict.fromkeys(group):
            counts[tag] = counts.get(tag, 0) + 1
    # sorted() is stable, so equal counts keep first-appearance order
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return tuple(TagCount(tag=tag, count=count) for tag, count in ranked[:limit])


def rank_tags(
    questions: Sequence[Question],
    category: TagCategory,
    limit: int = DEFAULT_TOP_N,
) -> Tuple[TagCount, ...]:
    """Count how many analyzed questions carry each tag; highest first."""
    return _rank(
        (getattr(question.analysis, category) for question in questions if question.analysis is not None),
        limit,
    )


def summarize_exam(questions: Sequence[Question], *, top_n: int = DEFAULT_TOP_N) -> ExamOverview:
    analyzed = [question for question in questions if question.analysis is not None]
    difficulties = [question.analysis.difficulty for question in analyzed]
    return ExamOverview(
        question_count=len(questions),
        analyzed_count=len(analyzed),
        pending_count=sum(1 for q in questions if q.analysis_state is AnalysisState.PENDING),
        failed_count=sum(1 for q in questions if q.analysis_state is AnalysisState.FAILED),
        average_difficulty=round(sum(difficulties) / len(difficulties), 1) if difficulties else None,
        difficulty_curve=tuple((question.ordinal, question.analysis.difficulty) for question in analyzed),
        top_knowledge_points=rank_tags(questions, "knowledge_points", top_n),
        top_methods=rank_tags(questions, "methods", top_n),
        top_competencies=rank_tags(questions, "competencies", top_n),
    )


def summarize_batch(
    results: Sequence[StudentResult],
    questions: Sequence[Question],
    *,
    top_n: int = DEFAULT_TOP_N,
) -> BatchSummary:
    subjects = tuple(
        SubjectSummary(
            position=result.position,
            subject_name=result.subject_name,
            summary=summarize_subject(result.answers, questions),
            split_error=result.split_error,
        )
        for result in results
    )
    scored = [subject.summary for subject in subjects if subject.split_error is None]
    return BatchSummary(
        subjects=subjects,
        average_score=round(sum(s.total_score for s in scored) / len(scored), 2) if scored else None,
        average_max_score=round(sum(s.max_score for s in scored) / len(scored), 2) if scored else None,
        common_missing_knowledge=_rank((s.missing_knowledge for s in scored), top_n),
        common_missing_methods=_rank((s.missing_methods for s in scored), top_n),
    )


def build_commit_payload(student_name: str, exam_title: str, summary: AggregateSummary) -> KnowledgeStorePayload:
    return KnowledgeStorePayload(
        student_name=student_name,
        exam_title=exam_title,
        score=summary.total_score,
        total_score=summary.max_score,
        knowledge_points=TagBuckets(
            mastered=list(summary.mastered_knowledge),
            missing=list(summary.missing_knowledge),
        ),
        methods=TagBuckets(mastered=list(summary.mastered_methods), missing=list(summary.missing_methods)),
        review_chapters=list(summary.recommended_chapters),
    )


__all__ = [
    "AggregateSummary",
    "BatchSummary",
    "ExamOverview",
    "KnowledgeStorePayload",
    "SubjectSummary",
    "TagBuckets",
    "TagCount",
    "build_commit_payload",
    "rank_tags",
    "summarize_batch",
    "summarize_exam",
    "summarize_subject",
]
