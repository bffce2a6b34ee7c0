"""Knowledge store commit client with a local JSONL export fallback."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import httpx

LOGGER = logging.getLogger(__name__)

RECORDS_PATH = "/api/knowledge/records"
DEFAULT_EXPORT_DIR = Path("outputs/knowledge_store")


@dataclass
class KnowledgeStoreConfig:
    base_url: str | None = None
    api_key: str | None = None
    export_dir: Path = DEFAULT_EXPORT_DIR


class KnowledgeStoreClient:
    """``KnowledgeStore`` implementation.

    With a ``base_url`` payloads are POSTed to the records endpoint; without one
    they are appended to ``<export_dir>/<exam>.jsonl`` so offline runs still
    leave a trail that can be replayed later.
    """

    def __init__(
        self,
        config: KnowledgeStoreConfig,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = client
        self._owns_client = False
        if client is None and config.base_url:
            self._client = httpx.AsyncClient(base_url=config.base_url, timeout=timeout)
            self._owns_client = True

    @property
    def offline(self) -> bool:
        return self._client is None

    async def commit(self, payload: Dict[str, Any]) -> bool:
        if self._client is None:
            _persist_local_export(self._config.export_dir, payload)
            return True
        try:
            response = await self._client.post(RECORDS_PATH, json=payload, headers=self._build_headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            LOGGER.warning("Knowledge store rejected commit (%s)", exc.response.status_code)
            return False
        except httpx.HTTPError as exc:
            LOGGER.warning("Knowledge store unreachable: %s", exc)
            return False
        if response.status_code == 204 or not response.content:
            return True
        try:
            data = response.json()
        except ValueError as exc:  # pragma: no cover
            raise RuntimeError("Knowledge store returned non-JSON payload") from exc
        if isinstance(data, dict):
            return bool(data.get("accepted", True))
        return True

    async def list_records(self) -> List[Dict[str, Any]]:
        """Return records known to the store (remote API or local export)."""
        if self._client is None:
            return _read_local_exports(self._config.export_dir)
        response = await self._client.get(RECORDS_PATH, headers=self._build_headers())
        response.raise_for_status()
        try:
            data = response.json()
        except ValueError as exc:  # pragma: no cover
            raise RuntimeError("Knowledge store returned non-JSON payload") from exc
        return data if isinstance(data, list) else []

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()

    def _build_headers(self) -> Dict[str, str] | None:
        if not self._config.api_key:
            return None
        return {"Authorization": f"Bearer {self._config.api_key}"}


def _persist_local_export(export_dir: Path, payload: Dict[str, Any]) -> Path:
    export_dir = Path(export_dir).expanduser().resolve()
    export_dir.mkdir(parents=True, exist_ok=True)
    export_path = export_dir / f"{_sanitize_slug(str(payload.get('examTitle', '')))}.jsonl"
    record = {"timestamp": datetime.now(timezone.utc).isoformat(), **payload}
    with export_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, ensure_ascii=False) + "\n")
    LOGGER.info(
        "knowledge store commit persisted locally",
        extra={"student": payload.get("studentName"), "export_path": str(export_path)},
    )
    return export_path


def _read_local_exports(export_dir: Path) -> List[Dict[str, Any]]:
    export_dir = Path(export_dir).expanduser().resolve()
    if not export_dir.exists():
        return []
    records: List[Dict[str, Any]] = []
    for path in sorted(export_dir.glob("*.jsonl")):
        with path.open("r", encoding="utf-8") as handle:
            records.extend(json.loads(line) for line in handle if line.strip())
    return records


def _sanitize_slug(value: str) -> str:
    slug = re.sub(r"[^\w\-]+", "-", value.strip(), flags=re.UNICODE).strip("-").lower()
    return slug or "records"


__all__ = ["KnowledgeStoreClient", "KnowledgeStoreConfig"]
