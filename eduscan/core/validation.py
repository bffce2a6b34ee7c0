"""Validation helpers that turn silent input problems into explicit failures."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Type

import yaml
from pydantic import BaseModel, ValidationError


class ValidationFailure(ValueError):
    """Raised when an input violates a documented invariant."""

    def __init__(self, message: str, *, errors: List[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


@dataclass
class ValidationResult:
    """Result of a validation check."""

    valid: bool
    errors: List[str]
    warnings: List[str]
    data: Any = None

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def raise_if_invalid(self) -> None:
        """Raise ValidationFailure if validation failed."""
        if not self.valid:
            raise ValidationFailure(f"Validation failed: {'; '.join(self.errors)}", errors=self.errors)


class ValidationFramework:
    """Central validation helpers for config files and artifacts."""

    def __init__(self, *, strict: bool = True, log_level: str = "INFO"):
        """Initialize validation framework.

        Args:
            strict: If True, raise ValidationFailure on validation failure
            log_level: Logging level for validation messages
        """
        self.strict = strict
        self.logger = logging.getLogger(__name__)
        self.logger.setLevel(getattr(logging, log_level.upper()))

    def _finish(self, result: ValidationResult, label: str) -> ValidationResult:
        if not result.valid:
            self.logger.error("%s validation failed: %s", label, result.errors)
        elif result.has_warnings:
            self.logger.warning("%s validation warnings: %s", label, result.warnings)
        if self.strict and not result.valid:
            result.raise_if_invalid()
        return result

    def validate_file_exists(self, path: Path | str) -> ValidationResult:
        """Validate that a file exists and is readable."""
        errors: List[str] = []
        warnings: List[str] = []
        path_obj = Path(path)

        if not path_obj.exists():
            errors.append(f"File does not exist: {path}")
        elif not path_obj.is_file():
            errors.append(f"Path is not a file: {path}")
        else:
            if not path_obj.stat().st_size:
                warnings.append(f"File is empty: {path}")
            try:
                with path_obj.open("rb"):
                    pass
            except PermissionError:
                errors.append(f"No read permission for file: {path}")

        result = ValidationResult(
            valid=len(errors) == 0,
            errors=errors,
            warnings=warnings,
            data=path_obj if not errors else None,
        )
        return self._finish(result, "File")

    def validate_yaml_file(self, path: Path | str) -> ValidationResult:
        """Validate and load a YAML file."""
        file_result = self.validate_file_exists(path)
        if not file_result.valid:
            return file_result

        errors: List[str] = []
        warnings: List[str] = []
        data = None
        try:
            content = Path(path).read_text(encoding="utf-8")
            data = yaml.safe_load(content)
            if data is None:
                warnings.append(f"YAML file contains only null/empty data: {path}")
                data = {}
        except yaml.YAMLError as exc:
            errors.append(f"Invalid YAML in {path}: {exc}")

        result = ValidationResult(valid=len(errors) == 0, errors=errors, warnings=warnings, data=data)
        return self._finish(result, "YAML")

    def validate_pydantic_model(self, data: Dict[str, Any], model_class: Type[BaseModel]) -> ValidationResult:
        """Validate data against a Pydantic model."""
        errors: List[str] = []
        validated = None
        try:
            validated = model_class.model_validate(data)
        except ValidationError as exc:
            for error in exc.errors():
                field = ".".join(str(loc) for loc in error["loc"])
                errors.append(f"{field}: {error['msg']}" if field else error["msg"])

        result = ValidationResult(valid=len(errors) == 0, errors=errors, warnings=[], data=validated)
        return self._finish(result, model_class.__name__)


validation = ValidationFramework(strict=False)
strict_validation = ValidationFramework(strict=True)


__all__ = [
    "ValidationFailure",
    "ValidationFramework",
    "ValidationResult",
    "strict_validation",
    "validation",
]
