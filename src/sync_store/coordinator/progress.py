"""
Progress channel for publish runs.

A run reports its state transitions and batch completions as immutable events
on a ProgressBus that the caller owns and passes in. There is no process-wide
bus: each run talks only to the subscribers its caller registered.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from loguru import logger


@dataclass(frozen=True)
class ProgressEvent:
    """Immutable progress event.

    Attributes:
        run_id: Identifies the publish run
        target: Target structure name
        state: Publisher state at emission (e.g. "uploading", "committed")
        rows_processed: Rows durably written so far
        total_rows: Rows the run has to write
        batch_index: Batches completed
        batch_size: Current batch size
        reason: Optional context (e.g. "batch_shrunk", "resumed")
    """

    run_id: str
    target: str
    state: str
    rows_processed: int = 0
    total_rows: int = 0
    batch_index: int = 0
    batch_size: int = 0
    reason: Optional[str] = None

    @property
    def fraction(self) -> float:
        """Completion as a fraction (0.0 to 1.0)."""
        return self.rows_processed / self.total_rows if self.total_rows > 0 else 0.0


class ProgressSubscriber(Protocol):
    """Async callable accepting ProgressEvent. Exceptions are caught and logged."""

    async def __call__(self, event: ProgressEvent) -> None: ...


class ProgressBus:
    """In-process pub/sub for progress events.

    One subscriber's failure does not affect others or the run. Best-effort
    delivery, in registration order.

    Example:
        bus = ProgressBus()

        async def on_progress(event: ProgressEvent):
            print(f"{event.state}: {event.fraction:.0%}")

        bus.subscribe(on_progress)
        publisher = ResilientPublisher(store, progress=bus)
        await publisher.publish(rows, "Profiles")
    """

    def __init__(self) -> None:
        self._subs: list[ProgressSubscriber] = []

    def subscribe(self, callback: ProgressSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Progress subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: ProgressSubscriber) -> None:
        """No-op if callback not found (safe to call multiple times)."""
        try:
            self._subs.remove(callback)
            logger.debug(f"Progress subscriber removed (total: {len(self._subs)})")
        except ValueError:
            pass

    async def publish(self, event: ProgressEvent) -> None:
        if not self._subs:
            return

        logger.debug(
            f"Progress: run={event.run_id} state={event.state} "
            f"rows={event.rows_processed}/{event.total_rows} ({event.fraction:.1%})"
        )

        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.debug(f"Progress subscriber error (ignored): {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
