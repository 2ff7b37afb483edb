from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import aiohttp

from errors import SyncError
from http_utils import RequestThrottle
from steam_api import PublishedFileDetails
from telemetry import start_span

_END_OF_INPUT = None


class ItemState(enum.Enum):
    PENDING = "pending"
    METADATA_FAILED = "metadata_failed"
    QUEUED = "queued"
    DOWNLOADED = "downloaded"
    DOWNLOAD_FAILED = "download_failed"


FAILED_STATES = {ItemState.METADATA_FAILED, ItemState.DOWNLOAD_FAILED}


class MetadataService(Protocol):
    async def resolve(self, item_id: int) -> PublishedFileDetails: ...


class ItemSyncer(Protocol):
    async def sync_one(
        self, item_id: int, target_dir: Path, filters: Sequence[str] | None = None
    ) -> bool: ...


@dataclass
class BatchItem:
    item_id: int
    title: Optional[str] = None
    app_id: Optional[int] = None
    state: ItemState = ItemState.PENDING
    reason: Optional[str] = None


@dataclass
class BatchResult:
    items: List[BatchItem] = field(default_factory=list)
    failed_ids: List[int] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed_ids and not self.cancelled


class BatchPipeline:
    """Resolves workshop metadata and syncs items as they become ready.

    One producer resolves ids through a throttle and queues them; one consumer
    syncs queued items in order. A failed item never stops the others.
    """

    def __init__(
        self,
        metadata: MetadataService,
        syncer: ItemSyncer,
        *,
        app_id: int,
        filters: Sequence[str] | None = None,
        throttle: RequestThrottle | None = None,
        interval: float = 2.0,
        log: logging.Logger | None = None,
    ) -> None:
        self.metadata = metadata
        self.syncer = syncer
        self.app_id = app_id
        self.filters = list(filters or [])
        self.throttle = throttle or RequestThrottle(interval)
        self.log = log or logging.getLogger("workshop_sync")
        self._cancelled = False
        self._producer: asyncio.Task[None] | None = None

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.log.warning("Cancellation requested; stopping after the current item.")
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def run(
        self,
        ids: Sequence[int],
        parent_dir: Path,
        target_for: Callable[[int], Path] | None = None,
    ) -> BatchResult:
        parent_dir = Path(parent_dir)
        if target_for is None:
            target_for = lambda item_id: parent_dir / str(item_id)

        items: Dict[int, BatchItem] = {}
        for item_id in ids:
            items.setdefault(item_id, BatchItem(item_id=item_id))
        queue: asyncio.Queue[Optional[BatchItem]] = asyncio.Queue()

        with start_span("batch.run", {"batch.items": len(items), "steam.app_id": self.app_id}):
            self.log.info("Batch: %s workshop item(s) -> %s", len(items), parent_dir)
            self._producer = asyncio.create_task(self._produce(list(items.values()), queue))
            consumer = asyncio.create_task(self._consume(queue, target_for))
            try:
                await asyncio.gather(self._producer, consumer)
            except BaseException:
                for task in (self._producer, consumer):
                    task.cancel()
                await asyncio.gather(self._producer, consumer, return_exceptions=True)
                raise
            finally:
                self._producer = None

        result = BatchResult(items=list(items.values()), cancelled=self._cancelled)
        result.failed_ids = [item.item_id for item in result.items if item.state in FAILED_STATES]
        self._log_summary(result)
        return result

    async def _produce(self, items: List[BatchItem], queue: asyncio.Queue) -> None:
        try:
            for item in items:
                if self._cancelled:
                    break
                await self._resolve(item)
                if item.state is ItemState.QUEUED:
                    queue.put_nowait(item)
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
        finally:
            queue.put_nowait(_END_OF_INPUT)

    async def _resolve(self, item: BatchItem) -> None:
        with start_span("batch.resolve", {"steam.item_id": str(item.item_id)}):
            try:
                async with self.throttle:
                    details = await self.metadata.resolve(item.item_id)
            except (SyncError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                item.state = ItemState.METADATA_FAILED
                item.reason = str(exc) or type(exc).__name__
                self.log.error("Workshop item %s metadata failed: %s", item.item_id, item.reason)
                return

        if not details.ok:
            item.state = ItemState.METADATA_FAILED
            item.reason = f"result={details.result}"
            self.log.error(
                "Workshop item %s not available (result=%s)", item.item_id, details.result
            )
            return

        item.title = details.title or None
        item.app_id = details.consumer_app_id or None
        if item.app_id and item.app_id != self.app_id:
            self.log.warning(
                "Workshop item %s belongs to app %s, not %s.",
                item.item_id,
                item.app_id,
                self.app_id,
            )
        item.state = ItemState.QUEUED
        self.log.info("Queued workshop item %s: %s", item.item_id, item.title or "(untitled)")

    async def _consume(
        self, queue: asyncio.Queue, target_for: Callable[[int], Path]
    ) -> None:
        while True:
            item = await queue.get()
            if item is _END_OF_INPUT:
                return
            if self._cancelled:
                continue
            target = Path(target_for(item.item_id))
            self.log.info("Syncing workshop item %s -> %s", item.item_id, target)
            if await self.syncer.sync_one(item.item_id, target, self.filters):
                item.state = ItemState.DOWNLOADED
            else:
                item.state = ItemState.DOWNLOAD_FAILED
                item.reason = "sync failed"

    def _log_summary(self, result: BatchResult) -> None:
        counts: Dict[ItemState, int] = {}
        for item in result.items:
            counts[item.state] = counts.get(item.state, 0) + 1
        self.log.info(
            "Batch finished: downloaded=%s failed=%s pending=%s cancelled=%s",
            counts.get(ItemState.DOWNLOADED, 0),
            len(result.failed_ids),
            counts.get(ItemState.PENDING, 0) + counts.get(ItemState.QUEUED, 0),
            result.cancelled,
        )
        if result.failed_ids:
            self.log.warning(
                "Failed workshop ids: %s", ", ".join(str(item_id) for item_id in result.failed_ids)
            )
