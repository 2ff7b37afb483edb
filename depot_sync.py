from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, BinaryIO, Iterable, List, Mapping, Optional, Sequence, TypeVar

import planner
import publisher
from config import Timeouts
from content import ContentServer, ContentService, DepotManifest, ManifestEntry
from errors import (
    ChunkTooLarge,
    FilesystemFailure,
    NotFound,
    ProtocolFailure,
    PublishRollbackFailed,
    SyncError,
    SyncTimeout,
)
from glob_filter import Matcher, compile_filters
from telemetry import start_span
from utils import ensure_dir, format_size

# Largest chunk that fits a single addressable buffer.
MAX_CHUNK_BYTES = 2**31 - 1
WORKSHOP_DEPOT_KEYS = ("workshopdepot", "workshop_depot")

T = TypeVar("T")


@dataclass
class SyncStats:
    selected: int = 0
    copied: int = 0
    downloaded: int = 0
    downloaded_bytes: int = 0
    directories: int = 0


def find_workshop_depot_id(key_values: Any) -> Optional[int]:
    for name in WORKSHOP_DEPOT_KEYS:
        value = _find_key(key_values, name)
        if value is None:
            continue
        text = str(value).strip()
        if text.isdigit() and int(text) > 0:
            return int(text)
    return None


def _find_key(node: Any, name: str) -> Any:
    if not isinstance(node, Mapping):
        return None
    for key, value in node.items():
        if str(key).lower() == name and not isinstance(value, Mapping):
            return value
    for value in node.values():
        found = _find_key(value, name)
        if found is not None:
            return found
    return None


def pick_server(servers: Iterable[ContentServer]) -> Optional[ContentServer]:
    for server in servers:
        if server.host and server.host.strip():
            return server
    return None


def _write_at(handle: BinaryIO, offset: int, data: bytes) -> None:
    handle.seek(offset)
    handle.write(data)


class DepotSyncer:
    def __init__(
        self,
        service: ContentService,
        app_id: int,
        *,
        timeouts: Timeouts | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.service = service
        self.app_id = app_id
        self.timeouts = timeouts or Timeouts()
        self.log = log or logging.getLogger("workshop_sync")

    async def sync_one(
        self, item_id: int, target_dir: Path, filters: Sequence[str] | None = None
    ) -> bool:
        matcher = compile_filters(filters)
        with start_span(
            "depot.sync_one",
            {"steam.item_id": str(item_id), "steam.app_id": self.app_id},
        ) as span:
            try:
                stats = await self._sync(item_id, Path(target_dir), matcher)
            except PublishRollbackFailed as exc:
                exc.item_id = item_id
                self.log.critical("Target %s may be inconsistent: %s", target_dir, exc.describe())
                raise
            except SyncError as exc:
                if exc.item_id is None:
                    exc.item_id = item_id
                self.log.error("Sync failed: %s", exc.describe())
                span.set_attribute("sync.error", type(exc).__name__)
                return False
            except OSError as exc:
                failure = FilesystemFailure(str(exc), item_id=item_id, stage="staging")
                self.log.error("Sync failed: %s", failure.describe())
                span.set_attribute("sync.error", type(failure).__name__)
                return False
            except Exception as exc:
                failure = ProtocolFailure(str(exc) or type(exc).__name__, item_id=item_id, stage="sync")
                self.log.error("Sync failed: %s", failure.describe())
                span.set_attribute("sync.error", type(exc).__name__)
                return False

            self.log.info(
                "Workshop item %s synced to %s: selected=%s copied=%s downloaded=%s (%s)",
                item_id,
                target_dir,
                stats.selected,
                stats.copied,
                stats.downloaded,
                format_size(stats.downloaded_bytes),
            )
            return True

    async def _sync(self, item_id: int, target_dir: Path, matcher: Matcher) -> SyncStats:
        manifest_id = await self._resolve_manifest_id(item_id)
        depot_id = await self._resolve_depot_id()
        depot_key = await self._get_depot_key(depot_id)

        server = pick_server(await self.service.list_servers())
        if server is None:
            raise NotFound("No CDN servers available.", stage="servers")
        self.log.debug("Using CDN server %s", server.host)

        cdn_auth_token = await self._get_cdn_auth_token(depot_id, server)
        request_code = await self._get_manifest_request_code(depot_id, manifest_id)

        manifest = await self._call(
            self.service.download_manifest(
                depot_id, manifest_id, request_code, server, depot_key, cdn_auth_token
            ),
            self.timeouts.manifest,
            "manifest",
        )
        if manifest.filenames_encrypted:
            manifest = await self.service.decrypt_filenames(manifest, depot_key)
        self._log_manifest(manifest)

        selected = matcher.select(manifest.entries)
        if not matcher.accepts_all:
            self._log_filtered(selected, matcher)
            directories: List[ManifestEntry] = []
        else:
            directories = [entry for entry in manifest.entries if entry.is_directory]

        # Reuse is judged against the last published state, not the staging dir.
        plan = await asyncio.to_thread(
            planner.plan, directories + selected, target_dir, log=self.log
        )
        stats = SyncStats(
            selected=len(selected),
            copied=len(plan.to_copy),
            downloaded=len(plan.to_download),
            downloaded_bytes=plan.download_bytes,
            directories=len(plan.directories),
        )
        self.log.info("Files selected: %s", stats.selected)
        self.log.info("Files to copy: %s", stats.copied)
        self.log.info(
            "Files to download: %s (%s)", stats.downloaded, format_size(stats.downloaded_bytes)
        )

        staging_dir = await asyncio.to_thread(publisher.stage, target_dir)
        try:
            await asyncio.to_thread(self._populate_from_plan, plan, staging_dir)
            for entry in plan.to_download:
                await self._download_file(
                    depot_id, depot_key, server, cdn_auth_token, staging_dir, entry
                )
            await asyncio.to_thread(publisher.publish, target_dir, staging_dir, self.log)
        except PublishRollbackFailed:
            raise
        except BaseException:
            publisher.discard(staging_dir, self.log)
            raise
        return stats

    async def _call(self, awaitable: Awaitable[T], timeout: float, stage: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as exc:
            raise SyncTimeout(f"Steam {stage} request timed out after {timeout:.0f}s", stage=stage) from exc

    async def _resolve_manifest_id(self, item_id: int) -> int:
        manifest_id = await self._call(
            self.service.get_workshop_manifest_id(self.app_id, item_id, self.timeouts.item_info),
            self.timeouts.item_info,
            "manifest_id",
        )
        if not manifest_id:
            raise NotFound("Workshop manifest id not found.", stage="manifest_id")
        self.log.info("Workshop manifest id: %s", manifest_id)
        return manifest_id

    async def _resolve_depot_id(self) -> int:
        access_token = 0
        # One retry with an access token; a second "missing token" ends as not found.
        for _attempt in range(2):
            info = await self._call(
                self.service.get_app_info(self.app_id, access_token, self.timeouts.product_info),
                self.timeouts.product_info,
                "depot_id",
            )
            if info is None:
                break
            if info.missing_token and access_token == 0:
                access_token = await self._get_access_token()
                if access_token == 0:
                    break
                continue
            depot_id = find_workshop_depot_id(info.key_values)
            if depot_id:
                self.log.info("Workshop depot id: %s", depot_id)
                return depot_id
            break
        raise NotFound(f"Workshop depot id not found for app {self.app_id}.", stage="depot_id")

    async def _get_access_token(self) -> int:
        try:
            return await self._call(
                self.service.get_access_token(self.app_id, self.timeouts.access_token),
                self.timeouts.access_token,
                "access_token",
            )
        except SyncError as exc:
            self.log.warning("PICS access token request failed: %s", exc)
            return 0

    async def _get_depot_key(self, depot_id: int) -> bytes:
        depot_key = await self._call(
            self.service.get_depot_key(depot_id, self.app_id, self.timeouts.depot_key),
            self.timeouts.depot_key,
            "depot_key",
        )
        if not depot_key:
            raise NotFound(f"Depot key not available for depot {depot_id}.", stage="depot_key")
        return depot_key

    async def _get_cdn_auth_token(self, depot_id: int, server: ContentServer) -> str | None:
        try:
            return await self._call(
                self.service.get_cdn_auth_token(self.app_id, depot_id, server.host),
                self.timeouts.cdn_auth_token,
                "cdn_auth_token",
            )
        except SyncError as exc:
            self.log.info("CDN auth token request failed: %s", exc)
            return None

    async def _get_manifest_request_code(self, depot_id: int, manifest_id: int) -> int:
        try:
            return await self._call(
                self.service.get_manifest_request_code(depot_id, self.app_id, manifest_id),
                self.timeouts.manifest_request_code,
                "manifest_request_code",
            )
        except SyncError as exc:
            self.log.info("Manifest request code failed: %s", exc)
            return 0

    def _populate_from_plan(self, plan: planner.SyncPlan, staging_dir: Path) -> None:
        for rel_path in plan.directories:
            ensure_dir(planner.safe_join(staging_dir, rel_path))
        for item in plan.to_copy:
            dest = planner.safe_join(staging_dir, item.relative_path)
            ensure_dir(dest.parent)
            shutil.copy2(item.source_path, dest)

    async def _download_file(
        self,
        depot_id: int,
        depot_key: bytes,
        server: ContentServer,
        cdn_auth_token: str | None,
        staging_dir: Path,
        entry: ManifestEntry,
    ) -> None:
        dest = planner.safe_join(staging_dir, entry.path)
        for chunk in entry.chunks:
            if chunk.uncompressed_size > MAX_CHUNK_BYTES:
                raise ChunkTooLarge(
                    f"Chunk too large: {chunk.uncompressed_size} bytes in {entry.path}",
                    stage="download",
                )
            if chunk.offset + chunk.uncompressed_size > entry.size:
                raise ProtocolFailure(
                    f"Chunk at offset {chunk.offset} overruns {entry.path} ({entry.size} bytes)",
                    stage="download",
                )

        with start_span("depot.download_file", {"depot.file": entry.path, "depot.size": entry.size}):
            ensure_dir(dest.parent)
            handle = await asyncio.to_thread(dest.open, "wb")
            try:
                for chunk in entry.chunks:
                    if not chunk.chunk_id:
                        continue
                    data = await self._call(
                        self.service.download_chunk(
                            depot_id, chunk, server, depot_key, cdn_auth_token
                        ),
                        self.timeouts.chunk,
                        "chunk",
                    )
                    if len(data) != chunk.uncompressed_size:
                        raise ProtocolFailure(
                            f"Chunk {chunk.chunk_id.hex()} returned {len(data)} bytes, "
                            f"expected {chunk.uncompressed_size}",
                            stage="download",
                        )
                    # Chunks may arrive in any order; the offset decides placement.
                    await asyncio.to_thread(_write_at, handle, chunk.offset, data)
                await asyncio.to_thread(handle.truncate, entry.size)
            finally:
                handle.close()
        self.log.debug("Downloaded %s (%s)", entry.path, format_size(entry.size))

    def _log_manifest(self, manifest: DepotManifest) -> None:
        self.log.info("Depot manifest files: %s", len(manifest.entries))
        self.log.info("Depot manifest total size (uncompressed): %s bytes", f"{manifest.total_size:,}")
        for entry in manifest.entries:
            name = entry.path
            if entry.is_directory and not name.endswith("/"):
                name += "/"
            self.log.debug(
                "[manifest] %s %12s %s",
                "DIR " if entry.is_directory else "FILE",
                f"{entry.size:,}",
                name,
            )

    def _log_filtered(self, files: Sequence[ManifestEntry], matcher: Matcher) -> None:
        self.log.info("Filters: %s", ", ".join(matcher.patterns))
        self.log.info("Filtered files: %s", len(files))
        for entry in files:
            self.log.debug("[filtered] %12s %s", f"{entry.size:,}", entry.path)
