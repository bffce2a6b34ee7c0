"""Incremental analysis orchestration: split, fan out, merge, aggregate, commit."""
from .aggregator import (
    AggregateSummary,
    BatchSummary,
    ExamOverview,
    KnowledgeStorePayload,
    build_commit_payload,
    rank_tags,
    summarize_batch,
    summarize_exam,
    summarize_subject,
)
from .batch import BatchCoordinator
from .collection import CollectionStore, merge_by_key
from .commit_gateway import CommitGateway, CommitStatus
from .fanout import FanOutAnalyzer, FanOutRun
from .models import (
    AnalysisResult,
    AnalysisState,
    Answer,
    ItemValidationError,
    Question,
    SourceArtifact,
    StudentResult,
    SubjectKey,
)
from .session import AnalysisSession, SessionMode, SessionPhase
from .splitter import SplitFailure, SplitPreconditionError, Splitter

__all__ = [
    "AnalysisSession",
    "SessionMode",
    "SessionPhase",
    "Splitter",
    "SplitFailure",
    "SplitPreconditionError",
    "FanOutAnalyzer",
    "FanOutRun",
    "BatchCoordinator",
    "CommitGateway",
    "CommitStatus",
    "CollectionStore",
    "merge_by_key",
    "AnalysisResult",
    "AnalysisState",
    "Answer",
    "ItemValidationError",
    "Question",
    "SourceArtifact",
    "StudentResult",
    "SubjectKey",
    "AggregateSummary",
    "BatchSummary",
    "ExamOverview",
    "KnowledgeStorePayload",
    "build_commit_payload",
    "rank_tags",
    "summarize_batch",
    "summarize_exam",
    "summarize_subject",
]
