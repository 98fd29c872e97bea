from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Sequence, Tuple

from loguru import logger

from .utils import even_stride_indices, row_payload_bytes

HARD_PAYLOAD_LIMIT_BYTES = 2 * 1024 * 1024  # store rejects calls above ~2MB


@dataclass(frozen=True)
class BatchConfig:
    """Payload budget and batch size bounds."""

    target_payload_mb: float = 1.5  # 75% of the store's hard limit
    min_batch_size: int = 100
    max_batch_size: int = 3000
    min_sample: int = 100
    sample_ratio: float = 0.1

    @property
    def target_bytes(self) -> int:
        return int(self.target_payload_mb * 1024 * 1024)


@dataclass
class BatchPlan:
    """
    Batch size for one publish run.

    The size only ever moves down (halving on overload) and never below
    `min_batch_size`. A fresh plan is computed per run.
    """

    batch_size: int
    min_batch_size: int
    max_batch_size: int
    avg_row_bytes: float = 0.0
    sampled_rows: int = 0
    initial_batch_size: int = field(default=0)
    shrinks: int = 0

    def __post_init__(self) -> None:
        if self.min_batch_size <= 0 or self.max_batch_size < self.min_batch_size:
            raise ValueError("batch bounds must satisfy 0 < min <= max")
        self.batch_size = max(self.min_batch_size, min(self.max_batch_size, self.batch_size))
        if not self.initial_batch_size:
            self.initial_batch_size = self.batch_size

    @property
    def fallback_occurred(self) -> bool:
        return self.shrinks > 0

    def shrink(self) -> bool:
        """Halve the batch size (floor min). Returns False when already at the floor."""
        if self.batch_size <= self.min_batch_size:
            return False
        self.batch_size = max(self.min_batch_size, self.batch_size // 2)
        self.shrinks += 1
        return True

    def resume_at(self, batch_size: int) -> None:
        """Adopt a checkpointed size, only if it does not grow the plan."""
        if self.min_batch_size <= batch_size < self.batch_size:
            self.batch_size = batch_size

    @property
    def expected_payload_bytes(self) -> int:
        return int(self.avg_row_bytes * self.batch_size)

    def estimated_batches(self, total_rows: int, start: int = 0) -> int:
        remaining = max(0, total_rows - start)
        return -(-remaining // self.batch_size)


def plan_batch(rows: Sequence, config: BatchConfig | None = None) -> BatchPlan:
    """
    Pick a batch size that keeps each write under the payload budget.

    Rows are sampled at an even stride over the whole set, not the first N,
    so a cluster of unusually large rows anywhere still shows up in the
    average.
    """
    cfg = config or BatchConfig()
    n = len(rows)
    if n == 0:
        return BatchPlan(
            batch_size=cfg.min_batch_size,
            min_batch_size=cfg.min_batch_size,
            max_batch_size=cfg.max_batch_size,
        )

    sample = min(n, max(cfg.min_sample, int(n * cfg.sample_ratio)))
    indices = even_stride_indices(n, sample)
    total = sum(row_payload_bytes(rows[i]) for i in indices)
    avg = total / len(indices)
    calculated = int(cfg.target_bytes // avg) if avg > 0 else cfg.max_batch_size

    plan = BatchPlan(
        batch_size=calculated,
        min_batch_size=cfg.min_batch_size,
        max_batch_size=cfg.max_batch_size,
        avg_row_bytes=avg,
        sampled_rows=len(indices),
    )
    logger.info(
        f"Batch plan: avg {avg:.0f}B/row over {len(indices)} sampled rows, "
        f"computed {calculated} → {plan.batch_size} rows "
        f"({plan.estimated_batches(n)} batches expected)"
    )
    if plan.expected_payload_bytes > HARD_PAYLOAD_LIMIT_BYTES:
        logger.warning(
            f"Batch of {plan.batch_size} rows is about "
            f"{plan.expected_payload_bytes // 1024}KB, above the store's "
            f"{HARD_PAYLOAD_LIMIT_BYTES // 1024}KB request limit; expect overload errors"
        )
    return plan


def iter_batches(rows: Sequence, size: int, start: int = 0) -> Iterator[Tuple[int, List]]:
    """Yield (offset, rows) chunks of at most `size` starting at `start`."""
    if size <= 0:
        raise ValueError("size must be > 0")
    for offset in range(start, len(rows), size):
        yield offset, list(rows[offset : offset + size])
