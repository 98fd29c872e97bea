"""
Demo for the resilient publisher.

Publishes 2,500 synthetic profile rows into an in-memory store that throttles
large writes, showing batch shrinking, progress events and the staged cut-over.
"""

import asyncio
import tempfile
from pathlib import Path

from loguru import logger

from snapshot_sync import CheckpointStore, MemoryStore, PublishConfig, ResilientPublisher, SnapshotManager
from sync_store.coordinator import ProgressBus, ProgressEvent


class ThrottlingStore(MemoryStore):
    """Rejects writes above `max_rows` rows the way a busy backend answers 503."""

    def __init__(self, *args, max_rows: int = 400, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_rows = max_rows

    async def update_range(self, target, cell_range, rows):
        await asyncio.sleep(0.01)
        if len(rows) > self.max_rows:
            raise RuntimeError("HTTP 503: backend error")
        return await super().update_range(target, cell_range, rows)


async def on_progress(event: ProgressEvent):
    if event.reason == "batch_shrunk":
        logger.warning(f"⚠️  Batch shrunk to {event.batch_size}")
    elif event.reason is None:
        logger.info(f"→ {event.state}")


async def main():
    header = ["name", "id"] + [f"f{i}" for i in range(2, 23)] + ["source"]
    rows = [header] + [
        [f"user{i}", str(100_000 + i)] + [f"value-{i}-{c}" for c in range(2, 23)] + ["demo"]
        for i in range(2_500)
    ]

    store = ThrottlingStore("demo-sheet", {"Profiles": [["name", "id"], ["old", "1"]]})
    bus = ProgressBus()
    bus.subscribe(on_progress)

    with tempfile.TemporaryDirectory() as tmp:
        publisher = ResilientPublisher(
            store,
            PublishConfig(max_batch_size=1000, rate_limit_delay_ms=20, retry_delay_ms=50),
            checkpoints=CheckpointStore(Path(tmp) / "checkpoints"),
            snapshots=SnapshotManager(Path(tmp) / "snapshots"),
            progress=bus,
        )
        logger.info("🚀 Publishing 2,500 rows to a throttling store")
        result = await publisher.publish(rows, "Profiles")

    logger.info(
        f"Final: rows={result.rows_processed} batches={result.batches} "
        f"size {result.initial_batch_size} → {result.final_batch_size} "
        f"api_calls={result.api_calls}"
    )
    logger.info(f"Structures now: {store.names()}")
    logger.info("✅ Publish demo complete")


if __name__ == "__main__":
    asyncio.run(main())
