"""External collaborators: analysis backends and the knowledge store client."""
from .protocol import AnalysisBackend, AnalysisError, CollaboratorError, KnowledgeStore, SplitError

__all__ = [
    "AnalysisBackend",
    "AnalysisError",
    "CollaboratorError",
    "KnowledgeStore",
    "SplitError",
]
