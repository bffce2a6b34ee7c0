import json
import tempfile
import unittest
from pathlib import Path

from eduscan.core.config import (
    EngineConfig,
    load_engine_config,
    merge_engine_config,
)
from eduscan.core.provenance import MemoryProvenance, ProvenanceEvent, ProvenanceLogger
from eduscan.core.validation import ValidationFailure, ValidationFramework


class ConfigParsingTests(unittest.TestCase):
    def _write_yaml(self, data: str) -> Path:
        tmp = tempfile.NamedTemporaryFile("w", delete=False, suffix=".yaml")
        tmp.write(data)
        tmp.flush()
        tmp.close()
        self.addCleanup(lambda: Path(tmp.name).unlink(missing_ok=True))
        return Path(tmp.name)

    def test_load_engine_config(self) -> None:
        path = self._write_yaml(
            """
            analysis:
              timeout_seconds: 5
              max_concurrency: 3
            commit:
              retry_failed_only: true
            knowledge_store:
              export_dir: exports/records
            """
        )
        config = load_engine_config(path, base_dir=Path("/srv/eduscan"))
        self.assertIsInstance(config, EngineConfig)
        self.assertEqual(config.analysis.timeout_seconds, 5)
        self.assertEqual(config.analysis.max_concurrency, 3)
        self.assertTrue(config.commit.retry_failed_only)
        self.assertEqual(config.knowledge_store.export_dir, Path("/srv/eduscan/exports/records").resolve())
        self.assertEqual(config.backend.kind, "mock")
        self.assertEqual(config.scoring.top_n, 5)

    def test_blank_api_base_means_offline(self) -> None:
        path = self._write_yaml(
            """
            knowledge_store:
              api_base: "  "
            """
        )
        self.assertIsNone(load_engine_config(path).knowledge_store.api_base)

    def test_unknown_section_is_rejected(self) -> None:
        path = self._write_yaml(
            """
            reports:
              api_base: http://localhost:5055
            """
        )
        with self.assertRaises(ValueError):
            load_engine_config(path)

    def test_http_backend_requires_api_base(self) -> None:
        path = self._write_yaml(
            """
            backend:
              kind: http
            """
        )
        with self.assertRaises(ValueError):
            load_engine_config(path)

    def test_invalid_limits_are_rejected(self) -> None:
        path = self._write_yaml(
            """
            analysis:
              timeout_seconds: 0
            """
        )
        with self.assertRaises(ValueError):
            load_engine_config(path)

    def test_config_errors_name_the_offending_field(self) -> None:
        path = self._write_yaml(
            """
            scoring:
              top_n: 0
            """
        )
        with self.assertRaises(ValidationFailure) as ctx:
            load_engine_config(path)
        self.assertTrue(ctx.exception.errors[0].startswith("scoring.top_n"))

        broken = self._write_yaml("analysis: [unclosed\n")
        with self.assertRaises(ValidationFailure) as ctx:
            load_engine_config(broken)
        self.assertIn("Invalid YAML", ctx.exception.errors[0])

    def test_empty_config_file_uses_defaults(self) -> None:
        path = self._write_yaml("")
        self.assertEqual(load_engine_config(path), EngineConfig())

    def test_root_must_be_a_mapping(self) -> None:
        path = self._write_yaml("- just\n- a list\n")
        with self.assertRaises(ValueError):
            load_engine_config(path)

    def test_merge_engine_config_layers_sections(self) -> None:
        base = EngineConfig()
        merged = merge_engine_config(base, {"analysis": {"timeout_seconds": 2.5}, "backend": {"mock_seed": 9}})
        self.assertEqual(merged.analysis.timeout_seconds, 2.5)
        self.assertEqual(merged.backend.mock_seed, 9)
        self.assertEqual(base.analysis.timeout_seconds, 60.0)
        with self.assertRaises(ValueError):
            merge_engine_config(base, {"batch": {"max_concurrent_subjects": 0}})


class ProvenanceTests(unittest.TestCase):
    def test_logger_appends_jsonl(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "logs" / "provenance.jsonl"
            logger = ProvenanceLogger(path)
            logger.log(ProvenanceEvent(stage="split", message="exam split", payload={"questions": 6}))
            logger.extend([{"stage": "commit", "message": "commit accepted"}])

            lines = path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 2)
            self.assertEqual(json.loads(lines[0])["payload"], {"questions": 6})
            self.assertEqual([event.stage for event in logger.read()], ["split", "commit"])

    def test_memory_provenance(self) -> None:
        provenance = MemoryProvenance()
        event = provenance.log({"stage": "analyze", "message": "item analysis failed"})
        self.assertIsInstance(event, ProvenanceEvent)
        self.assertEqual(event.agent, "engine")
        self.assertEqual(provenance.read(), [event])


class ValidationFrameworkTests(unittest.TestCase):
    def test_missing_file_is_reported(self) -> None:
        lenient = ValidationFramework(strict=False)
        result = lenient.validate_file_exists("/nonexistent/engine.yaml")
        self.assertFalse(result.valid)
        self.assertIn("does not exist", result.errors[0])

        with self.assertRaises(ValidationFailure):
            ValidationFramework(strict=True).validate_file_exists("/nonexistent/engine.yaml")

    def test_yaml_and_model_validation(self) -> None:
        framework = ValidationFramework(strict=False)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "engine.yaml"
            path.write_text("scoring:\n  top_n: 3\n", encoding="utf-8")
            loaded = framework.validate_yaml_file(path)
            self.assertTrue(loaded.valid)

            model = framework.validate_pydantic_model(loaded.data, EngineConfig)
            self.assertTrue(model.valid)
            self.assertEqual(model.data.scoring.top_n, 3)

            bad = framework.validate_pydantic_model({"scoring": {"top_n": 0}}, EngineConfig)
            self.assertFalse(bad.valid)
            self.assertTrue(bad.errors[0].startswith("scoring.top_n"))


if __name__ == "__main__":
    unittest.main()
