"""Lightweight JSONL provenance logger for analysis runs."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List

from pydantic import BaseModel, Field


class ProvenanceEvent(BaseModel):
    """Structured record for engine activity."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    stage: str = Field(..., description="Engine stage, e.g. 'split', 'analyze' or 'commit'.")
    message: str = Field(..., description="Human-readable description of the event.")
    agent: str = Field(default="engine")
    payload: Dict[str, Any] = Field(default_factory=dict)


class ProvenanceLogger:
    """Append-only JSONL logger for provenance and debugging."""

    def __init__(self, output_path: Path):
        self.output_path = output_path
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, event: ProvenanceEvent | Dict[str, Any]) -> ProvenanceEvent:
        """Write a single event to disk and return the normalized object."""
        if not isinstance(event, ProvenanceEvent):
            event = ProvenanceEvent(**event)
        line = event.model_dump_json()
        with self.output_path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
        return event

    def extend(self, events: Iterable[ProvenanceEvent | Dict[str, Any]]) -> None:
        """Batch-write multiple events."""
        for event in events:
            self.log(event)

    def read(self) -> List[ProvenanceEvent]:
        """Load every event written so far (oldest first)."""
        if not self.output_path.exists():
            return []
        events: List[ProvenanceEvent] = []
        with self.output_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    events.append(ProvenanceEvent.model_validate_json(line))
        return events


class MemoryProvenance:
    """In-memory stand-in used when no run directory has been bootstrapped."""

    def __init__(self) -> None:
        self.events: List[ProvenanceEvent] = []

    def log(self, event: ProvenanceEvent | Dict[str, Any]) -> ProvenanceEvent:
        if not isinstance(event, ProvenanceEvent):
            event = ProvenanceEvent(**event)
        self.events.append(event)
        return event

    def extend(self, events: Iterable[ProvenanceEvent | Dict[str, Any]]) -> None:
        for event in events:
            self.log(event)

    def read(self) -> List[ProvenanceEvent]:
        return list(self.events)


__all__ = ["MemoryProvenance", "ProvenanceEvent", "ProvenanceLogger"]
