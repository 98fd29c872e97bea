"""
Resilient publisher.

Writes a record set into one remote target so that a crash, a network failure
or a throttling store never leaves the target half-written:

    idle → cleaning → snapshotting → planning → staging → uploading
         → validating → cutting_over → committed

and on failure during uploading / validating / cutting_over:

    rolling_back → rolled_back | failed

Uploads go to a staging structure (or, in direct mode, straight into the
target after a snapshot). Batches shrink on overload, retry with backoff on
transient errors and are checkpointed so an interrupted run resumes where it
stopped. All remote calls are awaited one at a time.

Usage:
    publisher = ResilientPublisher(store, PublishConfig.from_settings(get_settings()))
    result = await publisher.publish(merge_result, "Profiles")
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from loguru import logger

from sync_store.coordinator.progress import ProgressBus, ProgressEvent
from sync_store.metrics.registry import (
    SYNC_BATCH_LATENCY_MS,
    SYNC_BATCH_SHRINKS_TOTAL,
    SYNC_BATCHES_TOTAL,
    SYNC_RETRIES_TOTAL,
    SYNC_ROWS_UPLOADED_TOTAL,
    SYNC_RUNS_TOTAL,
)

from .batch import BatchConfig, BatchPlan, plan_batch
from .checkpoint import CheckpointStore
from .config import Settings
from .errors import (
    ExhaustedRetries,
    InlineCountMismatch,
    PublishInProgress,
    RetryableError,
    SnapshotError,
    SyncOperationalError,
    TransientOverload,
    ValidationFailure,
    map_store_error,
)
from .models import Checkpoint, MergeResult, PublishResult, Row, Snapshot, StagingArea
from .remote import RemoteStore, anchor
from .snapshot import SnapshotManager
from .staging import StagingCoordinator
from .utils import calculate_retry_delay, even_stride_indices, fingerprint_rows, iso_now, now_ms

Sleep = Callable[[float], Awaitable[None]]

ERROR_HISTORY_LIMIT = 50


class PublishState(str, Enum):
    IDLE = "idle"
    CLEANING = "cleaning"
    SNAPSHOTTING = "snapshotting"
    PLANNING = "planning"
    STAGING = "staging"
    UPLOADING = "uploading"
    VALIDATING = "validating"
    CUTTING_OVER = "cutting_over"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


# A failure in one of these states has touched remote data and gets a rollback.
ROLLBACK_STATES = frozenset(
    {PublishState.UPLOADING, PublishState.VALIDATING, PublishState.CUTTING_OVER}
)


@dataclass(frozen=True)
class PublishConfig:
    """Immutable per-run publish settings."""

    target_payload_mb: float = 1.5
    min_batch_size: int = 100
    max_batch_size: int = 3000
    max_retries: int = 3  # total attempts per batch
    retry_delay_ms: int = 5000
    rate_limit_delay_ms: int = 1500
    use_staging: bool = True
    validate_upload: bool = True
    column_span: str = "A:Z"
    key_index: int = 1
    checkpoint_every: int = 5
    checkpoint_min_batches: int = 20

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.checkpoint_every < 1:
            raise ValueError("checkpoint_every must be >= 1")

    @property
    def batch_config(self) -> BatchConfig:
        return BatchConfig(
            target_payload_mb=self.target_payload_mb,
            min_batch_size=self.min_batch_size,
            max_batch_size=self.max_batch_size,
        )

    @property
    def rate_limit_delay(self) -> float:
        return self.rate_limit_delay_ms / 1000.0

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "PublishConfig":
        values = dict(
            target_payload_mb=settings.TARGET_PAYLOAD_MB,
            min_batch_size=settings.MIN_BATCH_SIZE,
            max_batch_size=settings.MAX_BATCH_SIZE,
            max_retries=settings.MAX_RETRIES,
            retry_delay_ms=settings.RETRY_DELAY_MS,
            rate_limit_delay_ms=settings.RATE_LIMIT_DELAY_MS,
            use_staging=settings.USE_STAGING,
            validate_upload=settings.VALIDATE_UPLOAD,
            column_span=settings.COLUMN_SPAN,
            key_index=settings.KEY_INDEX,
            checkpoint_every=settings.CHECKPOINT_EVERY,
            checkpoint_min_batches=settings.CHECKPOINT_MIN_BATCHES,
        )
        values.update(overrides)
        return cls(**values)


class _CountingStore:
    """Wraps a RemoteStore and counts every contract call made through it."""

    _CONTRACT = frozenset(
        {"get_range", "update_range", "clear_range", "list_structures", "batch_structural_update"}
    )

    def __init__(self, inner: RemoteStore):
        self._inner = inner
        self.calls = 0

    @property
    def container_id(self) -> str:
        return self._inner.container_id

    def __getattr__(self, name: str):
        attr = getattr(self._inner, name)
        if name not in self._CONTRACT:
            return attr

        async def counted(*args, **kwargs):
            self.calls += 1
            return await attr(*args, **kwargs)

        return counted


@dataclass
class RunContext:
    """Everything mutable about one publish run."""

    run_id: str
    target: str
    target_id: str
    rows: List[Row]
    fingerprint: str
    state: PublishState = PublishState.IDLE
    snapshot: Optional[Snapshot] = None
    snapshot_path: Optional[Path] = None
    plan: Optional[BatchPlan] = None
    staging: Optional[StagingArea] = None
    rows_processed: int = 0
    batch_index: int = 0
    resumed_from: int = 0
    estimated_batches: int = 0
    upload_attempts: int = 0
    errors: List[dict] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    @property
    def write_target(self) -> str:
        return self.staging.name if self.staging is not None else self.target


class ResilientPublisher:
    """
    Publishes record sets into a RemoteStore, one run at a time.

    Args:
        store: Remote store client
        config: Publish settings (defaults to PublishConfig())
        checkpoints: Where resume markers are kept
        snapshots: Where pre-publish snapshots are kept
        progress: Optional bus that receives a ProgressEvent per state change and batch
        sleep: Awaitable used for backoff and rate-limit pauses (tests pass a recorder)
    """

    def __init__(
        self,
        store: RemoteStore,
        config: Optional[PublishConfig] = None,
        *,
        checkpoints: Optional[CheckpointStore] = None,
        snapshots: Optional[SnapshotManager] = None,
        progress: Optional[ProgressBus] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.store = store
        self.config = config or PublishConfig()
        self.checkpoints = checkpoints or CheckpointStore()
        self.snapshots = snapshots or SnapshotManager()
        self.progress = progress
        self._sleep = sleep
        self._running = False
        self._ctx: Optional[RunContext] = None

    @property
    def state(self) -> PublishState:
        """State of the current run, or of the last one once it has ended."""
        return self._ctx.state if self._ctx is not None else PublishState.IDLE

    @property
    def is_running(self) -> bool:
        return self._running

    # --------------------------- public API

    async def publish(
        self,
        source: Union[MergeResult, Sequence[Row]],
        target: str,
        *,
        limit: Optional[int] = None,
    ) -> PublishResult:
        """
        Publish `source` into `target`.

        `source` is a MergeResult or a list of rows whose first row is the
        header. `limit` keeps only the first N records (header always kept).

        Raises:
            PublishInProgress: another run is active on this publisher
            ExhaustedRetries: a batch kept failing; a checkpoint was saved
            SyncOperationalError: any other fatal failure, with `snapshot_path`
                and `state` set
        """
        if self._running:
            raise PublishInProgress(f"a publish run is already active for {self._ctx.target_id}")
        self._running = True
        try:
            rows = _publish_rows(source, limit)
            store = _CountingStore(self.store)
            ctx = RunContext(
                run_id=f"{target}-{now_ms()}",
                target=target,
                target_id=f"{self.store.container_id}/{target}",
                rows=rows,
                fingerprint=fingerprint_rows(rows),
            )
            self._ctx = ctx
            staging = StagingCoordinator(store, target)
            try:
                return await self._run(ctx, store, staging)
            except Exception as raw:
                err = map_store_error(raw)
                failed_in = ctx.state
                await self._recover(ctx, store, staging, err)
                err.state = failed_in.value
                if err.snapshot_path is None:
                    err.snapshot_path = ctx.snapshot_path
                SYNC_RUNS_TOTAL.labels(target=target, outcome=ctx.state.value).inc()
                logger.error(
                    f"Publish {ctx.target_id} failed in {failed_in.value}: {err} "
                    f"(snapshot: {ctx.snapshot_path})"
                )
                if err is raw:
                    raise
                raise err from raw
        finally:
            self._running = False

    # --------------------------- run

    async def _run(
        self, ctx: RunContext, store: _CountingStore, staging: StagingCoordinator
    ) -> PublishResult:
        cfg = self.config
        logger.info(f"Publishing {ctx.total_rows} rows to {ctx.target_id} (run {ctx.run_id})")
        checkpoint = self._resumable_checkpoint(ctx)

        await self._enter(ctx, PublishState.CLEANING)
        keep = [checkpoint.staging_target] if checkpoint and checkpoint.staging_target else []
        await staging.cleanup_orphans(keep=keep)

        await self._enter(ctx, PublishState.SNAPSHOTTING)
        ctx.snapshot, ctx.snapshot_path = await self.snapshots.capture(
            store, ctx.target, cfg.column_span
        )
        if checkpoint is not None and checkpoint.snapshot_path:
            self._reuse_run_snapshot(ctx, checkpoint.snapshot_path)

        await self._enter(ctx, PublishState.PLANNING)
        ctx.plan = plan_batch(ctx.rows, cfg.batch_config)
        if checkpoint is not None:
            ctx.plan.resume_at(checkpoint.current_batch_size)
            ctx.rows_processed = checkpoint.rows_processed
            ctx.batch_index = checkpoint.batch_index
            ctx.resumed_from = checkpoint.rows_processed
            ctx.errors = list(checkpoint.errors)
        ctx.estimated_batches = ctx.batch_index + ctx.plan.estimated_batches(
            ctx.total_rows, ctx.rows_processed
        )

        if cfg.use_staging:
            await self._enter(ctx, PublishState.STAGING)
            if checkpoint is not None and checkpoint.staging_target:
                ctx.staging = await staging.adopt(checkpoint.staging_target)
                if ctx.staging is None:
                    logger.warning(
                        f"Staging structure {checkpoint.staging_target} is gone, starting over"
                    )
                    self._restart(ctx)
            if ctx.staging is None:
                ctx.staging = await staging.create()
        else:
            await staging.ensure_target()

        await self._enter(ctx, PublishState.UPLOADING)
        if ctx.staging is None and ctx.rows_processed == 0:
            # rows are replaced whole; stale trailing rows must not survive
            await store.clear_range(ctx.target, cfg.column_span)
        while ctx.rows_processed < ctx.total_rows:
            await self._upload_next(ctx, store)

        await self._enter(ctx, PublishState.VALIDATING)
        if cfg.validate_upload:
            await self._validate(ctx, store)
        else:
            logger.info("Upload validation disabled, skipping")

        if ctx.staging is not None:
            await self._enter(ctx, PublishState.CUTTING_OVER)
            await staging.promote(ctx.staging)

        await self._enter(ctx, PublishState.COMMITTED)
        self.checkpoints.delete(ctx.target_id)
        SYNC_RUNS_TOTAL.labels(target=ctx.target, outcome="committed").inc()
        try:
            self.snapshots.cleanup()
        except OSError as e:
            logger.warning(f"Snapshot retention cleanup failed (ignored): {e}")

        result = PublishResult(
            target_id=ctx.target_id,
            rows_processed=ctx.rows_processed,
            batches=ctx.batch_index,
            initial_batch_size=ctx.plan.initial_batch_size,
            final_batch_size=ctx.plan.batch_size,
            fallback_occurred=ctx.plan.fallback_occurred,
            resumed_from=ctx.resumed_from,
            snapshot_path=ctx.snapshot_path,
            staged=ctx.staging is not None,
            api_calls=store.calls,
            duration_ms=int((time.monotonic() - ctx.started) * 1000),
            errors=ctx.errors,
        )
        logger.success(
            f"Published {result.rows_processed} rows to {result.target_id} in "
            f"{result.batches} batches (size {result.initial_batch_size} → "
            f"{result.final_batch_size}, {result.api_calls} API calls, {result.duration_ms} ms)"
        )
        return result

    # --------------------------- uploading

    async def _upload_next(self, ctx: RunContext, store: _CountingStore) -> None:
        """Write one batch at the current offset, shrinking and retrying as needed."""
        cfg = self.config
        plan = ctx.plan
        offset = ctx.rows_processed
        attempt = 0

        while True:
            batch = ctx.rows[offset : offset + plan.batch_size]
            attempt += 1
            if ctx.upload_attempts:
                await self._sleep(cfg.rate_limit_delay)
            ctx.upload_attempts += 1

            t0 = time.monotonic()
            try:
                result = await store.update_range(ctx.write_target, anchor(offset), batch)
                if result.updated_rows != len(batch):
                    raise InlineCountMismatch(len(batch), result.updated_rows)
            except Exception as raw:
                err = map_store_error(raw)
                SYNC_BATCHES_TOTAL.labels(target=ctx.target, outcome="error").inc()
                self._record_error(ctx, err, offset, len(batch), attempt)
                if not isinstance(err, RetryableError):
                    if err is raw:
                        raise
                    raise err from raw

                if isinstance(err, TransientOverload) and plan.shrink():
                    SYNC_BATCH_SHRINKS_TOTAL.labels(target=ctx.target).inc()
                    logger.warning(
                        f"Store overloaded at row {offset}, batch size halved to {plan.batch_size}"
                    )
                    await self._emit(ctx, reason="batch_shrunk")
                    attempt = 0
                    continue

                SYNC_RETRIES_TOTAL.labels(target=ctx.target, kind=type(err).__name__).inc()
                if attempt >= cfg.max_retries:
                    self._save_checkpoint(ctx)
                    raise ExhaustedRetries(
                        f"batch at row {offset} failed {attempt} times: {err}",
                        rows_processed=ctx.rows_processed,
                        snapshot_path=ctx.snapshot_path,
                    ) from raw
                delay = calculate_retry_delay(attempt, cfg.retry_delay_ms)
                logger.warning(
                    f"Batch at row {offset} failed (attempt {attempt}/{cfg.max_retries}): "
                    f"{err}; retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
                continue

            elapsed_ms = (time.monotonic() - t0) * 1000
            SYNC_BATCH_LATENCY_MS.labels(target=ctx.target).observe(elapsed_ms)
            SYNC_BATCHES_TOTAL.labels(target=ctx.target, outcome="success").inc()
            SYNC_ROWS_UPLOADED_TOTAL.labels(target=ctx.target).inc(len(batch))

            ctx.rows_processed = offset + len(batch)
            ctx.batch_index += 1
            logger.info(
                f"Batch {ctx.batch_index}: rows {offset + 1}-{ctx.rows_processed} of "
                f"{ctx.total_rows} → {ctx.write_target} ({elapsed_ms:.0f} ms)"
            )
            if (
                ctx.estimated_batches > cfg.checkpoint_min_batches
                and ctx.batch_index % cfg.checkpoint_every == 0
            ):
                self._save_checkpoint(ctx)
            await self._emit(ctx, reason="batch_written")
            return

    # --------------------------- validating

    async def _validate(self, ctx: RunContext, store: _CountingStore) -> None:
        written = await store.get_range(ctx.write_target, self.config.column_span)
        if len(written) != ctx.total_rows:
            raise ValidationFailure(
                f"{ctx.write_target} holds {len(written)} rows, expected {ctx.total_rows}"
            )
        n = ctx.total_rows
        if n == 0:
            return
        indices = even_stride_indices(n, min(n, max(10, n // 100)))
        if indices[-1] != n - 1:
            indices.append(n - 1)
        key = self.config.key_index
        for i in indices:
            expected = _field(ctx.rows[i], key)
            actual = _field(written[i], key)
            if expected != actual:
                raise ValidationFailure(
                    f"row {i + 1} of {ctx.write_target}: key {actual!r}, expected {expected!r}"
                )
        logger.info(f"Validated {ctx.write_target}: {n} rows, {len(indices)} sampled keys match")

    # --------------------------- failure path

    async def _recover(
        self,
        ctx: RunContext,
        store: _CountingStore,
        staging: StagingCoordinator,
        err: SyncOperationalError,
    ) -> None:
        failed_in = ctx.state
        if isinstance(err, ExhaustedRetries) or failed_in not in ROLLBACK_STATES:
            await self._enter(ctx, PublishState.FAILED, reason=type(err).__name__)
            return

        await self._enter(ctx, PublishState.ROLLING_BACK, reason=type(err).__name__)
        if ctx.staging is not None:
            if failed_in == PublishState.CUTTING_OVER:
                # upload is complete and validated; a rerun only needs the cut-over
                self._save_checkpoint(ctx)
                logger.warning(
                    f"Cut-over failed; {ctx.target} untouched, staging kept as {ctx.staging.name}"
                )
            else:
                await staging.discard(ctx.staging)
                self.checkpoints.delete(ctx.target_id)
            await self._enter(ctx, PublishState.ROLLED_BACK)
            return

        try:
            await self.snapshots.restore(
                store,
                ctx.target,
                ctx.snapshot,
                column_span=self.config.column_span,
                batch_config=self.config.batch_config,
                rate_limit_delay=self.config.rate_limit_delay,
                sleep=self._sleep,
            )
        except SnapshotError as e:
            logger.error(f"Rollback of {ctx.target} failed, restore manually from {ctx.snapshot_path}: {e}")
            await self._enter(ctx, PublishState.FAILED, reason="rollback_failed")
            return
        # the checkpoint describes writes that were just undone
        self.checkpoints.delete(ctx.target_id)
        await self._enter(ctx, PublishState.ROLLED_BACK)

    # --------------------------- checkpoints

    def _resumable_checkpoint(self, ctx: RunContext) -> Optional[Checkpoint]:
        cp = self.checkpoints.load(ctx.target_id)
        if cp is None:
            return None
        reason = None
        if cp.source_fingerprint != ctx.fingerprint:
            reason = "source data changed"
        elif cp.rows_processed > ctx.total_rows:
            reason = f"{cp.rows_processed} rows processed but only {ctx.total_rows} to publish"
        elif bool(cp.staging_target) != self.config.use_staging:
            reason = "publish mode changed"
        if reason is not None:
            logger.warning(f"Discarding checkpoint for {ctx.target_id}: {reason}")
            self.checkpoints.delete(ctx.target_id)
            return None
        logger.info(
            f"Resuming {ctx.target_id} from row {cp.rows_processed} "
            f"(batch {cp.batch_index}, size {cp.current_batch_size})"
        )
        return cp

    def _reuse_run_snapshot(self, ctx: RunContext, path: str) -> None:
        """On resume, roll back to the snapshot taken before the run's first write."""
        try:
            ctx.snapshot = self.snapshots.load(path)
        except SnapshotError as e:
            logger.warning(f"Original run snapshot unavailable, using the fresh one: {e}")
            return
        ctx.snapshot_path = Path(path)

    def _restart(self, ctx: RunContext) -> None:
        ctx.rows_processed = 0
        ctx.batch_index = 0
        ctx.resumed_from = 0
        ctx.estimated_batches = ctx.plan.estimated_batches(ctx.total_rows)

    def _save_checkpoint(self, ctx: RunContext) -> None:
        self.checkpoints.save(
            Checkpoint(
                target_id=ctx.target_id,
                rows_processed=ctx.rows_processed,
                batch_index=ctx.batch_index,
                current_batch_size=ctx.plan.batch_size,
                errors=ctx.errors[-ERROR_HISTORY_LIMIT:],
                saved_at=iso_now(),
                source_fingerprint=ctx.fingerprint,
                staging_target=ctx.staging.name if ctx.staging is not None else None,
                snapshot_path=str(ctx.snapshot_path) if ctx.snapshot_path else None,
            )
        )

    # --------------------------- helpers

    def _record_error(
        self, ctx: RunContext, err: SyncOperationalError, offset: int, size: int, attempt: int
    ) -> None:
        ctx.errors.append(
            {
                "batch_index": ctx.batch_index,
                "offset": offset,
                "batch_size": size,
                "attempt": attempt,
                "kind": type(err).__name__,
                "message": str(err),
                "at": iso_now(),
            }
        )

    async def _enter(self, ctx: RunContext, state: PublishState, reason: Optional[str] = None) -> None:
        logger.debug(f"{ctx.target_id}: {ctx.state.value} → {state.value}")
        ctx.state = state
        await self._emit(ctx, reason=reason)

    async def _emit(self, ctx: RunContext, reason: Optional[str] = None) -> None:
        if self.progress is None:
            return
        await self.progress.publish(
            ProgressEvent(
                run_id=ctx.run_id,
                target=ctx.target,
                state=ctx.state.value,
                rows_processed=ctx.rows_processed,
                total_rows=ctx.total_rows,
                batch_index=ctx.batch_index,
                batch_size=ctx.plan.batch_size if ctx.plan is not None else 0,
                reason=reason,
            )
        )


def _publish_rows(source: Union[MergeResult, Sequence[Row]], limit: Optional[int]) -> List[Row]:
    if isinstance(source, MergeResult):
        rows = source.rows()
    else:
        rows = [list(r) for r in source]
    if limit is not None:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        rows = rows[: limit + 1]
    return rows


def _field(row: Sequence[str], index: int) -> str:
    return row[index] if len(row) > index else ""
