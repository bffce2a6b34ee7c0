"""
Foundational configuration and logging utilities for the EduScan engine.

Higher-level orchestration (sessions, batch runs, the CLI) depends on these
modules, never the other way round.
"""

from .config import (
    AnalysisSettings,
    BackendSettings,
    BatchSettings,
    CommitSettings,
    EngineConfig,
    KnowledgeStoreSettings,
    ScoringSettings,
    load_engine_config,
)
from .provenance import ProvenanceEvent, ProvenanceLogger
from .validation import ValidationFailure

__all__ = [
    "AnalysisSettings",
    "BackendSettings",
    "BatchSettings",
    "CommitSettings",
    "EngineConfig",
    "KnowledgeStoreSettings",
    "ProvenanceEvent",
    "ProvenanceLogger",
    "ScoringSettings",
    "ValidationFailure",
    "load_engine_config",
]
