"""
Progress events and cooperative cancellation for a single extraction run.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from errors import CancellationError

logger = logging.getLogger(__name__)

TOTAL_STAGES = 6

ProgressSink = Callable[["ProgressEvent"], Any]


def _clamp_percentage(x: Any) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return 0.0
    if v != v:  # NaN
        return 0.0
    return max(0.0, min(100.0, v))


def _sanitize_description(text: Any, max_len: int = 500) -> str:
    s = re.sub(r"[\x00-\x1f\x7f]+", " ", str(text or ""))
    s = re.sub(r"\s+", " ", s).strip()
    return s[:max_len]


@dataclass(frozen=True)
class ProgressEvent:
    run_id: str
    stage: str
    stage_number: int
    total_stages: int
    percentage: float
    description: str
    live_stats: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage,
            "stage_number": self.stage_number,
            "total_stages": self.total_stages,
            "percentage": self.percentage,
            "description": self.description,
            "live_stats": dict(self.live_stats),
        }


class ProgressEmitter:
    """
    Fire-and-forget delivery of progress events.

    `emit` never awaits the sink: events go into a bounded queue drained by a background
    task. Coroutine sinks are awaited by that task, plain callables run in a worker thread,
    so a slow or failing sink cannot stall the pipeline. When the queue is full the event
    is dropped.
    """

    def __init__(self, run_id: str, sink: Optional[ProgressSink] = None, max_queue: int = 256):
        self.run_id = run_id
        self.sink = sink
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._max_queue = max(1, int(max_queue))
        self.dropped = 0
        self.last_event: Optional[ProgressEvent] = None

    def emit(
        self,
        stage: str,
        stage_number: int,
        percentage: float,
        description: str,
        live_stats: Optional[Mapping[str, Any]] = None,
    ) -> ProgressEvent:
        event = ProgressEvent(
            run_id=self.run_id,
            stage=stage,
            stage_number=max(0, min(TOTAL_STAGES, int(stage_number))),
            total_stages=TOTAL_STAGES,
            percentage=_clamp_percentage(percentage),
            description=_sanitize_description(description),
            live_stats=dict(live_stats or {}),
        )
        self.last_event = event
        if self.sink is None:
            return event

        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._max_queue)
            self._worker = asyncio.get_running_loop().create_task(self._drain(self._queue))
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(f"Progress queue full; dropped event for stage {stage}")
        return event

    async def _drain(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                if inspect.iscoroutinefunction(self.sink):
                    await self.sink(event)
                else:
                    result = await asyncio.to_thread(self.sink, event)
                    if inspect.isawaitable(result):
                        await result
            except Exception as e:
                logger.warning(f"Progress sink failed on stage {event.stage}: {e}")
            finally:
                queue.task_done()

    async def aclose(self, drain_timeout_s: float = 1.0) -> None:
        """Give queued events a short window to be delivered, then stop the worker."""
        if self._worker is None or self._queue is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout_s)
        except asyncio.TimeoutError:
            logger.debug(f"Progress sink did not drain within {drain_timeout_s}s")
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None


class CancellationToken:
    """Checked between stages and between batches. In-flight work finishes; nothing new starts."""

    def __init__(self):
        self._cancelled = False
        self.reason = ""

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError(self.reason or "cancelled")
