"""Per-request stream outcome records and the fire-and-forget recorder."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

OutcomeSink = Callable[["StreamOutcome"], Awaitable[None]]


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    # Finished cleanly but produced no content, reasoning or tool calls.
    EMPTY_SUCCESS = "empty_success"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class StreamOutcome:
    """Mutable summary of one relay call, emitted once when it finishes."""

    client_id: str | None
    model: str
    response_length: int = 0
    reasoning_length: int = 0
    chunk_count: int = 0
    finish_reason: str | None = None
    tool_call_count: int = 0
    usage: dict[str, Any] | None = None
    success: bool = False
    error: str | None = None
    kind: OutcomeKind | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: float | None = None

    @property
    def produced_output(self) -> bool:
        return bool(
            self.response_length or self.reasoning_length or self.tool_call_count
        )

    def mark_success(self) -> None:
        self.success = True
        self.error = None
        self.kind = (
            OutcomeKind.SUCCESS if self.produced_output else OutcomeKind.EMPTY_SUCCESS
        )

    def mark_error(self, message: str) -> None:
        self.success = False
        self.error = message
        self.kind = OutcomeKind.ERROR

    def mark_cancelled(self) -> None:
        self.success = False
        self.error = "client disconnected"
        self.kind = OutcomeKind.CANCELLED

    def close(self) -> None:
        if self.kind is None:
            self.mark_cancelled()
        elapsed = datetime.now(timezone.utc) - self.started_at
        self.duration_ms = round(elapsed.total_seconds() * 1000, 1)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind.value if self.kind is not None else None
        payload["started_at"] = self.started_at.isoformat()
        return payload


class OutcomeLogWriter:
    """Append outcome records as JSON lines to date-stamped files."""

    def __init__(self, base_dir: Path, *, min_level: int | None) -> None:
        self._base_dir = base_dir.resolve()
        self._min_level = min_level

    async def __call__(self, outcome: StreamOutcome) -> None:
        await self.write(outcome)

    async def write(self, outcome: StreamOutcome) -> Path | None:
        # Outcome records are INFO-level events.
        if self._min_level is None or logging.INFO < self._min_level:
            return None

        timestamp = datetime.now(timezone.utc)
        entry = {"logged_at": timestamp.isoformat(), **outcome.to_dict()}
        line = json.dumps(entry, ensure_ascii=False, default=str) + "\n"
        log_path = self._base_dir / f"outcomes_{timestamp.strftime('%Y-%m-%d')}.jsonl"

        await asyncio.to_thread(self._append_entry, log_path, line)
        return log_path

    def _append_entry(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(content)


class OutcomeRecorder:
    """Queue outcome records and deliver them to sinks in the background.

    ``record`` never blocks and never raises; sink failures are logged and
    dropped. When the worker is not running the record is only logged.
    """

    def __init__(
        self,
        sinks: Iterable[OutcomeSink] = (),
        *,
        max_queue_size: int = 1000,
    ) -> None:
        self._sinks = list(sinks)
        self._queue: asyncio.Queue[Optional[StreamOutcome]] = asyncio.Queue(
            maxsize=max_queue_size
        )
        self._worker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def record(self, outcome: StreamOutcome) -> None:
        try:
            self._log(outcome)
            if not self.running or not self._sinks:
                return
            self._queue.put_nowait(outcome)
        except asyncio.QueueFull:
            logger.warning(
                "Outcome queue full; dropping record for client %s", outcome.client_id
            )
        except Exception as exc:  # pragma: no cover - never surface to callers
            logger.warning("Failed to record stream outcome: %s", exc)

    def _log(self, outcome: StreamOutcome) -> None:
        level = logging.INFO if outcome.success else logging.WARNING
        logger.log(
            level,
            "Chat stream outcome kind=%s client=%s model=%s chunks=%d "
            "response_length=%d reasoning_length=%d tool_calls=%d finish=%s error=%s",
            outcome.kind.value if outcome.kind else None,
            outcome.client_id,
            outcome.model,
            outcome.chunk_count,
            outcome.response_length,
            outcome.reasoning_length,
            outcome.tool_call_count,
            outcome.finish_reason,
            outcome.error,
        )

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run())

    async def stop(self, timeout: float = 5.0) -> None:
        worker = self._worker
        if worker is None:
            return
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            worker.cancel()
        try:
            await asyncio.wait_for(worker, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Outcome recorder did not drain within %.1fs", timeout)
            worker.cancel()
            with suppress(asyncio.CancelledError):
                await worker
        except asyncio.CancelledError:
            pass
        finally:
            self._worker = None

    async def _run(self) -> None:
        while True:
            outcome = await self._queue.get()
            try:
                if outcome is None:
                    return
                for sink in self._sinks:
                    try:
                        await sink(outcome)
                    except Exception as exc:
                        logger.warning("Outcome sink %r failed: %s", sink, exc)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued record has been delivered."""

        await self._queue.join()


__all__ = [
    "OutcomeKind",
    "OutcomeLogWriter",
    "OutcomeRecorder",
    "OutcomeSink",
    "StreamOutcome",
]
