"""Runtime bootstrap for the analysis engine."""

from .bootstrap import bootstrap_engine, build_backend, build_knowledge_store
from .context import EngineContext, EnginePaths

__all__ = ["EngineContext", "EnginePaths", "bootstrap_engine", "build_backend", "build_knowledge_store"]
