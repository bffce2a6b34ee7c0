"""
Typed configuration helpers for the EduScan analysis engine.

The engine itself only needs timeouts and concurrency caps; the backend and
knowledge store sections describe the collaborators the CLI and the session
bootstrap wire in.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from eduscan.core.validation import strict_validation


class AnalysisSettings(BaseModel):
    """Limits applied to every per-item analyze call."""

    timeout_seconds: float = Field(default=60.0, gt=0.0, description="Upper bound for a single analyze call.")
    max_concurrency: int | None = Field(
        default=None,
        ge=1,
        description="Optional cap on simultaneous analyze calls within one fan-out run.",
    )


class BatchSettings(BaseModel):
    """Knobs for the multi-subject batch flow."""

    max_concurrent_subjects: int = Field(default=8, ge=1)


class ScoringSettings(BaseModel):
    """Aggregation parameters."""

    top_n: int = Field(default=5, ge=1, le=50)


class CommitSettings(BaseModel):
    """Knowledge store commit behaviour."""

    retry_failed_only: bool = Field(
        default=False,
        description="Keep per-subject status during batch commits so a retry only resubmits failed subjects.",
    )
    timeout_seconds: float = Field(default=30.0, gt=0.0)


class KnowledgeStoreSettings(BaseModel):
    """Connection info for the knowledge store API."""

    model_config = ConfigDict()

    api_base: Optional[str] = None
    api_key_env: str = Field(default="EDUSCAN_KNOWLEDGE_STORE_API_KEY")
    export_dir: Path = Field(default=Path("outputs/knowledge_store"))
    timeout: float = Field(default=30.0, gt=0.0)

    @field_validator("export_dir", mode="before")
    @classmethod
    def coerce_path(cls, value: Any) -> Path:
        return Path(value).expanduser().resolve()

    @field_validator("api_base", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def api_key(self) -> str | None:
        return os.getenv(self.api_key_env) or None


class BackendSettings(BaseModel):
    """Which analysis backend to use and how to reach it."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["mock", "http"] = "mock"
    api_base: Optional[str] = None
    api_key_env: str = Field(default="EDUSCAN_BACKEND_API_KEY")
    timeout: float = Field(default=60.0, gt=0.0)
    mock_latency_seconds: float = Field(default=0.0, ge=0.0)
    mock_seed: int | None = None
    mock_fail_ordinals: List[int] = Field(
        default_factory=list,
        description="1-based question ordinals whose analysis the mock backend fails (demo of per-item failure).",
    )

    @model_validator(mode="after")
    def require_api_base_for_http(self) -> "BackendSettings":
        if self.kind == "http" and not self.api_base:
            raise ValueError("backend.api_base is required when backend.kind is 'http'")
        return self

    @property
    def api_key(self) -> str | None:
        return os.getenv(self.api_key_env) or None


class EngineConfig(BaseModel):
    """Top-level configuration for the analysis engine."""

    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    commit: CommitSettings = Field(default_factory=CommitSettings)
    knowledge_store: KnowledgeStoreSettings = Field(default_factory=KnowledgeStoreSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)

    @model_validator(mode="before")
    @classmethod
    def reject_unknown_sections(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        unknown = sorted(key for key in values if key not in cls.model_fields)
        if unknown:
            raise ValueError(f"Unknown config sections: {', '.join(unknown)}")
        return values


def read_yaml_file(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return a dictionary."""
    data = strict_validation.validate_yaml_file(path).data or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected mapping at root of {path}, received {type(data)}")
    return data


def _resolve_config_path(value: Any, base_dir: Path) -> str:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    else:
        path = path.resolve()
    return str(path)


def _absolutize_engine_paths(data: Dict[str, Any], base_dir: Path) -> None:
    store = data.get("knowledge_store")
    if isinstance(store, dict) and store.get("export_dir"):
        store["export_dir"] = _resolve_config_path(store["export_dir"], base_dir)


def load_engine_config(path: Path, *, base_dir: Path | None = None) -> EngineConfig:
    """Load the engine config used by the session bootstrap and the CLI."""
    path = path.expanduser().resolve()
    data = read_yaml_file(path)
    _absolutize_engine_paths(data, base_dir=(base_dir or path.parent).resolve())
    return strict_validation.validate_pydantic_model(data, EngineConfig).data


def merge_engine_config(base: EngineConfig, overrides: Dict[str, Dict[str, Any]]) -> EngineConfig:
    """
    Return a new EngineConfig with per-section overrides applied.

    Used by the CLI to layer flags such as ``--timeout`` on top of the YAML.
    """
    payload = base.model_dump()
    for section, values in overrides.items():
        payload.setdefault(section, {}).update(values)
    try:
        return EngineConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError("Invalid overrides for EngineConfig") from exc
