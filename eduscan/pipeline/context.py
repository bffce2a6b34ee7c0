"""Shared context objects for an analysis run."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator

from apps.orchestrator.session import AnalysisSession
from eduscan.core.config import EngineConfig
from eduscan.core.provenance import ProvenanceLogger


class EnginePaths(BaseModel):
    """Canonical directories used during a run."""

    repo_root: Path
    output_dir: Path
    logs_dir: Path

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("repo_root", "output_dir", "logs_dir", mode="before")
    @classmethod
    def _expand(cls, value: Path | str) -> Path:
        return Path(value).expanduser().resolve()

    def ensure_directories(self) -> None:
        for path in (self.output_dir, self.logs_dir):
            path.mkdir(parents=True, exist_ok=True)


class EngineContext(BaseModel):
    """Everything a session needs: config, collaborators, paths and provenance."""

    config: EngineConfig
    paths: EnginePaths
    env: Dict[str, str] = Field(default_factory=dict)
    provenance: ProvenanceLogger
    backend: Any
    knowledge_store: Any

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def create_session(self) -> AnalysisSession:
        return AnalysisSession(
            self.backend,
            self.knowledge_store,
            config=self.config,
            provenance=self.provenance,
        )
