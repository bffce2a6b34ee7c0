"""Concurrent per-item analysis with isolated, keyed settlement.

One asyncio task is started per pending item. Each task settles on its own:
its outcome (or failure) is merged into the owning ``CollectionStore`` through
``merge_by_key`` and nothing else. There is no "all done" callback; callers
watch the store (``CollectionStore.subscribe``) or check ``is_complete``.
``FanOutRun.settled`` exists for callers that must block, like the batch
coordinator and the CLI.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Generic, List, Mapping, Sequence, Tuple, TypeVar

from apps.collaborators.protocol import AnalysisBackend
from eduscan.core.provenance import ProvenanceEvent

from .collection import CollectionStore
from .models import AnalysisState, Analyzed, Answer, Failed, ItemValidationError, Question

LOGGER = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
Analyze = Callable[[Any], Awaitable[Mapping[str, Any]]]


def question_analyzer(backend: AnalysisBackend) -> Analyze:
    """Adapt ``analyze_question`` into merge updates for a Question."""

    async def _analyze(question: Question) -> Mapping[str, Any]:
        result = await backend.analyze_question(question.id, question.source_content)
        return {"state": Analyzed(result=result)}

    return _analyze


def answer_analyzer(backend: AnalysisBackend, questions: Sequence[Question]) -> Analyze:
    """Adapt ``analyze_student_answer`` into merge updates for an Answer.

    The question collection is only read here, never changed.
    """
    by_id = {question.id: question for question in questions}

    async def _analyze(answer: Answer) -> Mapping[str, Any]:
        question = by_id.get(answer.question_id)
        if question is None:
            raise LookupError(f"no question with id {answer.question_id}")
        outcome = await backend.analyze_student_answer(question, answer.answer_content)
        return outcome.as_updates()

    return _analyze


def _describe(exc: BaseException, timeout: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"analysis timed out after {timeout:g}s"
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class FanOutRun(Generic[ItemT]):
    """Handle on the tasks started for one generation of a store."""

    def __init__(self, store: CollectionStore, generation: int, tasks: Dict[str, asyncio.Task]) -> None:
        self.store = store
        self.generation = generation
        self._tasks = tasks
        self.failures: Dict[str, str] = {}

    @property
    def stale(self) -> bool:
        return self.store.generation != self.generation

    @property
    def keys(self) -> List[str]:
        return list(self._tasks)

    def is_complete(self) -> bool:
        if self.stale:
            return all(task.done() for task in self._tasks.values())
        return self.store.is_complete()

    def cancel(self) -> None:
        """Stop in-flight tasks; cancelled tasks merge nothing."""
        for task in self._tasks.values():
            if not task.done():
                task.cancel()

    async def settled(self) -> Tuple[Any, ...]:
        """Wait for every task of this run and return the store snapshot."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        return self.store.snapshot()


class FanOutAnalyzer:
    """Starts one analysis task per pending item of a store."""

    def __init__(
        self,
        *,
        timeout: float = 60.0,
        max_concurrency: int | None = None,
        provenance: Any | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_concurrency = max_concurrency
        self.provenance = provenance

    def start(self, store: CollectionStore, analyze: Analyze) -> FanOutRun:
        """Create the tasks for the store's current generation and return immediately."""
        generation = store.generation
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None
        tasks: Dict[str, asyncio.Task] = {}
        run: FanOutRun = FanOutRun(store, generation, tasks)
        loop = asyncio.get_running_loop()
        for item in store.snapshot():
            if item.analysis_state is not AnalysisState.PENDING:
                continue
            key = store.key_of(item)
            tasks[key] = loop.create_task(
                self._settle(run, item, key, analyze, semaphore),
                name=f"{store.name}:{key}",
            )
        LOGGER.debug("%s: started %d analysis tasks (generation %d)", store.name, len(tasks), generation)
        return run

    async def run(self, store: CollectionStore, analyze: Analyze) -> Tuple[Any, ...]:
        return await self.start(store, analyze).settled()

    async def _settle(
        self,
        run: FanOutRun,
        item: Any,
        key: str,
        analyze: Analyze,
        semaphore: asyncio.Semaphore | None,
    ) -> None:
        try:
            if semaphore is None:
                updates = await asyncio.wait_for(analyze(item), timeout=self.timeout)
            else:
                async with semaphore:
                    updates = await asyncio.wait_for(analyze(item), timeout=self.timeout)
        except asyncio.CancelledError:
            LOGGER.debug("%s: analysis of %s cancelled", run.store.name, key)
            raise
        except Exception as exc:
            self._fail(run, key, _describe(exc, self.timeout), exc)
            return

        if not self._still_pending(run, key):
            return
        try:
            run.store.merge(key, updates, generation=run.generation)
        except ItemValidationError as exc:
            self._fail(run, key, f"invalid analysis outcome: {exc}", exc)

    def _still_pending(self, run: FanOutRun, key: str) -> bool:
        if run.stale:
            return False
        current = run.store.get(key)
        return current is not None and current.analysis_state is AnalysisState.PENDING

    def _fail(self, run: FanOutRun, key: str, reason: str, exc: BaseException) -> None:
        if not self._still_pending(run, key):
            return
        run.failures[key] = reason
        LOGGER.warning("%s: analysis of %s failed: %s", run.store.name, key, reason)
        if self.provenance is not None:
            self.provenance.log(
                ProvenanceEvent(
                    stage="analyze",
                    message="item analysis failed",
                    payload={
                        "collection": run.store.name,
                        "key": key,
                        "reason": reason,
                        "error_type": type(exc).__name__,
                    },
                )
            )
        run.store.merge(key, {"state": Failed(reason=reason)}, generation=run.generation)


__all__ = ["FanOutAnalyzer", "FanOutRun", "answer_analyzer", "question_analyzer"]
