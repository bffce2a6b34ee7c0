"""httpx client for a remote split/analysis service speaking camelCase JSON."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Type

import httpx
from pydantic import ValidationError

from apps.orchestrator.models import (
    AnalysisResult,
    Answer,
    AnswerOutcome,
    ItemValidationError,
    PartialAnswer,
    PartialQuestion,
    Question,
    SourceArtifact,
    StudentResult,
    build_item,
)

from .protocol import AnalysisError, CollaboratorError, SplitError

LOGGER = logging.getLogger(__name__)


@dataclass
class AnalysisServiceConfig:
    base_url: str
    api_key: str | None = None


def _question_payload(question: Question) -> Dict[str, Any]:
    analysis = question.analysis
    return {
        "id": question.id,
        "number": question.ordinal,
        "contentMd": question.source_content,
        "imageUrl": question.image_ref,
        "analysis": analysis.model_dump(mode="json", by_alias=True) if analysis else None,
    }


def _file_part(artifact: SourceArtifact) -> tuple[str, bytes, str]:
    return (artifact.name, artifact.read_bytes(), artifact.media_type)


class HttpAnalysisBackend:
    """``AnalysisBackend`` backed by an HTTP service.

    Transport and HTTP status errors are reported as ``SplitError`` for split
    endpoints and ``AnalysisError`` for analyze endpoints.
    """

    def __init__(
        self,
        config: AnalysisServiceConfig,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._config = config
        if client is None:
            self._client = httpx.AsyncClient(base_url=config.base_url, timeout=timeout)
            self._owns_client = True
        else:
            self._client = client
            self._owns_client = False

    async def split_exam(self, artifact: SourceArtifact) -> List[PartialQuestion]:
        data = await self._post("/api/split_exam", SplitError, files={"file": _file_part(artifact)})
        items = data.get("questions", []) if isinstance(data, dict) else data
        return [self._parse(PartialQuestion, item, SplitError) for item in self._as_list(items, SplitError)]

    async def analyze_question(self, question_id: str, content: str) -> AnalysisResult:
        data = await self._post(
            "/api/analyze_question",
            AnalysisError,
            json={"questionId": question_id, "contentMd": content},
        )
        return self._parse(AnalysisResult, data, AnalysisError)

    async def split_student_answers(
        self,
        artifact: SourceArtifact,
        questions: Sequence[Question],
    ) -> List[PartialAnswer]:
        data = await self._post(
            "/api/split_student_exam",
            SplitError,
            files={"file": _file_part(artifact)},
            data={"questionIds": ",".join(question.id for question in questions)},
        )
        items = data.get("answers", []) if isinstance(data, dict) else data
        return [self._parse(PartialAnswer, item, SplitError) for item in self._as_list(items, SplitError)]

    async def analyze_student_answer(self, question: Question, answer_content: str) -> AnswerOutcome:
        data = await self._post(
            "/api/analyze_student_answer",
            AnalysisError,
            json={"question": _question_payload(question), "studentAnswerMd": answer_content},
        )
        return self._parse(AnswerOutcome, data, AnalysisError)

    async def batch_split_and_analyze(
        self,
        artifacts: Sequence[SourceArtifact],
        questions: Sequence[Question],
    ) -> List[StudentResult]:
        data = await self._post(
            "/api/batch_process",
            SplitError,
            files=[("files", _file_part(artifact)) for artifact in artifacts],
            data={"questionIds": ",".join(question.id for question in questions)},
        )
        results: List[StudentResult] = []
        for position, entry in enumerate(self._as_list(data, SplitError)):
            if not isinstance(entry, dict):
                raise SplitError("batch entry is not an object")
            answers = []
            for item in entry.get("answers", []):
                outcome = self._parse(AnswerOutcome, item, SplitError)
                try:
                    answer = build_item(
                        Answer,
                        {
                            "question_id": str(item.get("questionId", "")),
                            "answer_content": str(item.get("studentAnswerMd", "")),
                            "image_ref": str(item.get("imageUrl", "")),
                            **outcome.as_updates(),
                        },
                    )
                except ItemValidationError as exc:
                    raise SplitError(str(exc)) from exc
                answers.append(answer)
            results.append(
                StudentResult(
                    position=position,
                    subject_name=str(entry.get("studentName") or f"subject {position + 1}"),
                    answers=tuple(answers),
                )
            )
        return results

    async def aclose(self) -> None:
        if getattr(self, "_owns_client", False):
            await self._client.aclose()

    async def _post(self, path: str, error: Type[CollaboratorError], **kwargs: Any) -> Any:
        try:
            response = await self._client.post(path, headers=self._build_headers(), **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("POST %s failed: %s", path, exc)
            raise error(f"{path}: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise error(f"{path}: service returned non-JSON payload") from exc

    @staticmethod
    def _as_list(data: Any, error: Type[CollaboratorError]) -> List[Any]:
        if not isinstance(data, list):
            raise error(f"expected a list, received {type(data).__name__}")
        return data

    @staticmethod
    def _parse(model: Type[Any], data: Any, error: Type[CollaboratorError]) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise error(f"malformed {model.__name__} payload: {exc.error_count()} errors") from exc

    def _build_headers(self) -> Dict[str, str] | None:
        if not self._config.api_key:
            return None
        return {"Authorization": f"Bearer {self._config.api_key}"}

    async def __aenter__(self) -> "HttpAnalysisBackend":  # pragma: no cover - convenience
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - convenience
        await self.aclose()


__all__ = ["AnalysisServiceConfig", "HttpAnalysisBackend"]
