"""Streaming bounded-concurrency pool: refills as jobs finish, restores input order, isolates failures."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Protocol, Sequence, TypeVar

from scenecut.core.progress import ProgressChannel, null_channel
from scenecut.models.entities import TaskFailure

_log = logging.getLogger(__name__)


class IndexedTask(Protocol):
    original_index: int


T = TypeVar("T", bound=IndexedTask)
R = TypeVar("R")


class NoResultError(Exception):
    """Handler finished without raising but produced no result."""


@dataclass
class _PoolState(Generic[T, R]):
    """Mutated only from the coordinating coroutine, between awaits."""

    pending: deque[T]
    results: list[R | None]
    active: dict[asyncio.Task[Any], T] = field(default_factory=dict)
    processed: int = 0
    errors: list[TaskFailure] = field(default_factory=list)
    peak: int = 0


@dataclass(frozen=True)
class PoolOutcome(Generic[T, R]):
    """Final pool state: successes in input order plus the failure and skip lists."""

    results: list[R]
    failures: list[TaskFailure]
    skipped: list[T]
    cancelled: bool
    peak_concurrency: int
    processed: int
    total: int

    @property
    def succeeded(self) -> int:
        return len(self.results)

    def summary(self) -> str:
        text = f"{self.succeeded}/{self.total} succeeded"
        if self.cancelled:
            text += f" (cancelled, {len(self.skipped)} not run)"
        return text


class WorkerPool(Generic[T, R]):
    """
    Runs `handler(task)` for every task with at most `max_concurrency` in flight.

    Whenever a job finishes (success or failure) the next queued task starts immediately; there
    is no batch barrier. All bookkeeping happens in run() between awaits, so completions are
    serialized by the event loop.
    """

    def __init__(
        self,
        handler: Callable[[T], Awaitable[R | None]],
        *,
        progress: ProgressChannel | None = None,
        on_complete: Callable[[PoolOutcome[T, R]], None] | None = None,
    ) -> None:
        self._handler = handler
        self._progress = progress or null_channel()
        self._on_complete = on_complete

    @staticmethod
    def _validate(tasks: Sequence[T], max_concurrency: int) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        seen: set[int] = set()
        for task in tasks:
            idx = task.original_index
            if not 0 <= idx < len(tasks):
                raise ValueError(f"original_index {idx} out of range for {len(tasks)} task(s)")
            if idx in seen:
                raise ValueError(f"duplicate original_index {idx}")
            seen.add(idx)

    def _launch(self, state: _PoolState[T, R], limit: int) -> None:
        while state.pending and len(state.active) < limit:
            task = state.pending.popleft()
            job = asyncio.ensure_future(self._handler(task))
            state.active[job] = task
            state.peak = max(state.peak, len(state.active))

    def _record(self, state: _PoolState[T, R], job: asyncio.Task[Any], task: T, total: int) -> R | None:
        state.processed += 1
        result: R | None = None
        if job.cancelled():
            exc: BaseException | None = asyncio.CancelledError(f"{_identifier(task)} was cancelled")
        else:
            exc = job.exception()
        if exc is not None:
            _log.warning("Task %s failed: %s", _identifier(task), exc)
            state.errors.append(TaskFailure(task=task, error=exc))
        else:
            result = job.result()
            if result is None:
                err = NoResultError(f"{_identifier(task)} produced no result")
                _log.warning("Task %s failed: %s", _identifier(task), err)
                state.errors.append(TaskFailure(task=task, error=err))
            else:
                state.results[task.original_index] = result
        self._progress.report(
            state.processed / total if total else 1.0,
            f"{state.processed}/{total} done (active: {len(state.active)})",
        )
        return result

    async def _abort(self, state: _PoolState[T, R]) -> list[T]:
        """Cancel in-flight jobs (their processes are killed) and wait for them to unwind."""
        jobs = list(state.active)
        for job in jobs:
            job.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
        aborted = [state.active[job] for job in jobs]
        state.active.clear()
        return aborted

    async def run(
        self,
        tasks: Sequence[T],
        max_concurrency: int,
        *,
        on_each_result: Callable[[R], None] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> PoolOutcome[T, R]:
        """
        Run all tasks and return the outcome.

        Setting cancel_event stops dispatch, kills in-flight processes, and returns what completed
        so far with cancelled=True; tasks that never finished are listed in `skipped`.
        """
        self._validate(tasks, max_concurrency)
        total = len(tasks)
        limit = min(max_concurrency, total) if total else max_concurrency
        state: _PoolState[T, R] = _PoolState(
            pending=deque(sorted(tasks, key=lambda t: t.original_index)),
            results=[None] * total,
        )
        cancelled = False
        skipped: list[T] = []
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None

        _log.debug("Pool starting: %d task(s), max_concurrency=%d", total, limit)
        try:
            if cancel_event is None or not cancel_event.is_set():
                self._launch(state, limit)
            while state.active:
                waiting: set[asyncio.Future[Any]] = set(state.active)
                if cancel_waiter is not None:
                    waiting.add(cancel_waiter)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                for job in done:
                    if job is cancel_waiter:
                        continue
                    task = state.active.pop(job)
                    result = self._record(state, job, task, total)
                    if result is not None and on_each_result is not None:
                        on_each_result(result)

                if cancel_event is not None and cancel_event.is_set():
                    break
                self._launch(state, limit)

            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                skipped = await self._abort(state)
                skipped.extend(state.pending)
                state.pending.clear()
                _log.info(
                    "Pool cancelled after %d/%d task(s); %d not run", state.processed, total, len(skipped)
                )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if state.active:
                # Outer cancellation: do not leave child processes behind.
                await self._abort(state)

        outcome: PoolOutcome[T, R] = PoolOutcome(
            results=[r for r in state.results if r is not None],
            failures=list(state.errors),
            skipped=sorted(skipped, key=lambda t: t.original_index),
            cancelled=cancelled,
            peak_concurrency=state.peak,
            processed=state.processed,
            total=total,
        )
        _log.info("Pool finished: %s (peak concurrency %d)", outcome.summary(), outcome.peak_concurrency)
        if self._on_complete is not None:
            self._on_complete(outcome)
        return outcome


def _identifier(task: Any) -> str:
    ident = getattr(task, "identifier", None)
    return str(ident) if ident is not None else f"task_{task.original_index}"
