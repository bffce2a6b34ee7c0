from pathlib import Path

from eduscan.core.config import load_engine_config


def test_engine_config_sample_loads() -> None:
    """Ensure the shipped engine YAML matches the EngineConfig schema."""

    repo_root = Path(__file__).resolve().parents[1]
    sample_path = repo_root / "config" / "engine.yaml"

    config = load_engine_config(sample_path, base_dir=repo_root)

    assert config.backend.kind == "mock"
    assert config.knowledge_store.api_base is None
    assert config.knowledge_store.export_dir == (repo_root / "outputs" / "knowledge_store").resolve()
    assert config.analysis.timeout_seconds > 0
