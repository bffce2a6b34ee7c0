"""Bootstrap helpers for the analysis engine."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

from apps.collaborators.http_backend import AnalysisServiceConfig, HttpAnalysisBackend
from apps.collaborators.knowledge_store import KnowledgeStoreClient, KnowledgeStoreConfig
from apps.collaborators.mock_backend import MockAnalysisBackend
from eduscan import get_version
from eduscan.core.config import EngineConfig, load_engine_config, merge_engine_config
from eduscan.core.provenance import ProvenanceEvent, ProvenanceLogger
from eduscan.core.validation import strict_validation

from .context import EngineContext, EnginePaths

DEFAULT_CONFIG_PATH = Path("config/engine.yaml")
DEFAULT_OUTPUT_DIR = Path("outputs")
LOGGER = logging.getLogger(__name__)


def _capture_env(keys: tuple[str, ...]) -> Dict[str, str]:
    """Return a filtered snapshot of environment variables for provenance."""
    snapshot: Dict[str, str] = {}
    for key in keys:
        value = os.getenv(key)
        if value is not None:
            snapshot[key] = value
    return snapshot


def build_backend(config: EngineConfig) -> Any:
    """Instantiate the analysis backend named by ``config.backend.kind``."""
    settings = config.backend
    if settings.kind == "http":
        return HttpAnalysisBackend(
            AnalysisServiceConfig(base_url=settings.api_base or "", api_key=settings.api_key),
            timeout=settings.timeout,
        )
    return MockAnalysisBackend(
        latency=settings.mock_latency_seconds,
        seed=settings.mock_seed,
        fail_question_ordinals=settings.mock_fail_ordinals,
    )


def build_knowledge_store(config: EngineConfig) -> KnowledgeStoreClient:
    settings = config.knowledge_store
    return KnowledgeStoreClient(
        KnowledgeStoreConfig(
            base_url=settings.api_base,
            api_key=settings.api_key,
            export_dir=settings.export_dir,
        ),
        timeout=settings.timeout,
    )


def bootstrap_engine(
    config_path: Path | None = None,
    *,
    repo_root: Path | None = None,
    output_dir: Path | None = None,
    env_keys: tuple[str, ...] = ("EDUSCAN_BACKEND_API_BASE", "EDUSCAN_KNOWLEDGE_STORE_API_BASE"),
    overrides: Dict[str, Dict[str, Any]] | None = None,
) -> EngineContext:
    """
    Load configuration and environment variables and wire the collaborators.

    Parameters
    ----------
    config_path:
        Path to the engine YAML. Defaults to ``config/engine.yaml`` under
        ``repo_root``; when that default is absent the built-in defaults apply.
    repo_root:
        Root used to find ``.env`` and relative paths. Defaults to ``Path.cwd()``.
    output_dir:
        Directory for logs and local exports. Defaults to ``repo_root / 'outputs'``.
    overrides:
        Per-section values layered on top of the YAML (used by CLI flags).
    """

    repo_root = (repo_root or Path.cwd()).resolve()
    load_dotenv(repo_root / ".env")
    output_dir = (output_dir or (repo_root / DEFAULT_OUTPUT_DIR)).resolve()

    if config_path is not None:
        strict_validation.validate_file_exists(config_path)
        config = load_engine_config(Path(config_path), base_dir=repo_root)
    elif (repo_root / DEFAULT_CONFIG_PATH).exists():
        config = load_engine_config(repo_root / DEFAULT_CONFIG_PATH, base_dir=repo_root)
    else:
        LOGGER.info("No engine config found under %s; using defaults", repo_root)
        config = EngineConfig()

    config = _apply_env_overrides(config, overrides or {})

    paths = EnginePaths(repo_root=repo_root, output_dir=output_dir, logs_dir=output_dir / "logs")
    provenance = ProvenanceLogger(paths.logs_dir / "provenance.jsonl")
    ctx = EngineContext(
        config=config,
        paths=paths,
        env=_capture_env(env_keys),
        provenance=provenance,
        backend=build_backend(config),
        knowledge_store=build_knowledge_store(config),
    )
    ctx.provenance.log(
        ProvenanceEvent(
            stage="bootstrap",
            message="Engine context initialised",
            agent="eduscan.pipeline",
            payload={
                "config_path": str(config_path) if config_path else None,
                "version": get_version(),
                "backend": config.backend.kind,
                "knowledge_store": config.knowledge_store.api_base or str(config.knowledge_store.export_dir),
            },
        )
    )
    return ctx


def _apply_env_overrides(config: EngineConfig, overrides: Dict[str, Dict[str, Any]]) -> EngineConfig:
    """Fill API bases from the environment when the YAML leaves them empty."""
    layered: Dict[str, Dict[str, Any]] = {}
    backend_base = os.getenv("EDUSCAN_BACKEND_API_BASE")
    if backend_base and not config.backend.api_base:
        layered.setdefault("backend", {})["api_base"] = backend_base
    store_base = os.getenv("EDUSCAN_KNOWLEDGE_STORE_API_BASE")
    if store_base and not config.knowledge_store.api_base:
        layered.setdefault("knowledge_store", {})["api_base"] = store_base
    for section, values in overrides.items():
        layered.setdefault(section, {}).update(values)
    if not layered:
        return config
    return merge_engine_config(config, layered)


__all__ = ["bootstrap_engine", "build_backend", "build_knowledge_store"]
