"""Pytest configuration and in-memory fakes for the Steam services."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Dict, List, Optional, Sequence

import pytest

from content import (
    AppInfo,
    ChunkRef,
    ContentServer,
    ContentService,
    CredentialAuthResult,
    DepotManifest,
    LogonResult,
    ManifestEntry,
)
from errors import NotFound, ProtocolFailure
from steam_api import PublishedFileDetails

APP_ID = 268500
DEPOT_ID = 268501
MANIFEST_ID = 7700123
DEPOT_KEY = b"k" * 32


def sha1(data: bytes) -> bytes:
    return hashlib.sha1(data).digest()


class FakeContentService(ContentService):
    """Serves one workshop depot from memory and records every call."""

    def __init__(self, chunk_size: int = 4) -> None:
        self.chunk_size = chunk_size
        self.files: Dict[str, bytes] = {}
        self.entries: List[ManifestEntry] = []
        self.chunks: Dict[bytes, bytes] = {}
        self.calls: List[str] = []
        self.downloaded_chunks: List[bytes] = []
        self.reverse_chunks = False

        self.manifest_id = MANIFEST_ID
        self.key_values: Dict = {"depots": {"workshopdepot": str(DEPOT_ID)}}
        self.missing_token_until_access = False
        self.access_token = 4242
        self.depot_key: Optional[bytes] = DEPOT_KEY
        self.servers = [ContentServer("")] + [ContentServer("cdn.example.test")]
        self.hang_on: Optional[str] = None
        self.manifest_errors: Dict[int, Exception] = {}
        self.current_item: Optional[int] = None

        self.anonymous_ok = True
        self.valid_tokens: set[str] = set()
        self.credential_result: Optional[CredentialAuthResult] = None
        self.connected = False
        self.logged_on = False

    def add_file(self, path: str, data: bytes, content_hash: Optional[bytes] = None) -> ManifestEntry:
        chunks: List[ChunkRef] = []
        for offset in range(0, len(data), self.chunk_size):
            piece = data[offset : offset + self.chunk_size]
            chunk_id = sha1(piece + offset.to_bytes(8, "little") + path.encode())
            self.chunks[chunk_id] = piece
            chunks.append(ChunkRef(chunk_id=chunk_id, uncompressed_size=len(piece), offset=offset))
        if self.reverse_chunks:
            chunks.reverse()
        entry = ManifestEntry(
            path=path,
            size=len(data),
            content_hash=sha1(data) if content_hash is None else content_hash,
            chunks=tuple(chunks),
        )
        self.files[path] = data
        self.entries.append(entry)
        return entry

    def add_entry(self, entry: ManifestEntry) -> None:
        self.entries.append(entry)

    async def _maybe_hang(self, name: str) -> None:
        self.calls.append(name)
        if self.hang_on == name:
            await asyncio.sleep(3600)

    async def connect(self, timeout: float) -> None:
        await self._maybe_hang("connect")
        self.connected = True

    async def disconnect(self) -> None:
        self.calls.append("disconnect")
        self.connected = False

    async def run_callbacks(self, timeout: float) -> None:
        await asyncio.sleep(0.001)

    async def logon_anonymous(self, timeout: float) -> LogonResult:
        await self._maybe_hang("logon_anonymous")
        self.logged_on = self.anonymous_ok
        return LogonResult(self.anonymous_ok, None if self.anonymous_ok else "Fail")

    async def logon_with_token(self, username: str, refresh_token: str, timeout: float) -> LogonResult:
        await self._maybe_hang("logon_with_token")
        ok = refresh_token in self.valid_tokens
        self.logged_on = ok
        return LogonResult(ok, None if ok else "AccessDenied")

    async def begin_credential_auth(self, username, password, authenticator, guard_data, timeout):
        await self._maybe_hang("begin_credential_auth")
        if self.credential_result is None:
            raise NotFound("no account", stage="credential_auth")
        self.valid_tokens.add(self.credential_result.refresh_token)
        return self.credential_result

    async def logoff(self) -> None:
        self.calls.append("logoff")
        self.logged_on = False

    async def get_workshop_manifest_id(self, app_id: int, item_id: int, timeout: float) -> int:
        await self._maybe_hang("get_workshop_manifest_id")
        self.current_item = item_id
        return self.manifest_id

    async def get_app_info(self, app_id: int, access_token: int, timeout: float) -> AppInfo | None:
        self.calls.append(f"get_app_info:{access_token}")
        if self.missing_token_until_access and access_token == 0:
            return AppInfo(app_id=app_id, missing_token=True)
        return AppInfo(app_id=app_id, key_values=self.key_values)

    async def get_access_token(self, app_id: int, timeout: float) -> int:
        self.calls.append("get_access_token")
        return self.access_token

    async def get_depot_key(self, depot_id: int, app_id: int, timeout: float) -> bytes | None:
        self.calls.append("get_depot_key")
        return self.depot_key

    async def list_servers(self) -> Sequence[ContentServer]:
        return list(self.servers)

    async def get_cdn_auth_token(self, app_id: int, depot_id: int, host: str) -> str | None:
        return None

    async def get_manifest_request_code(self, depot_id: int, app_id: int, manifest_id: int) -> int:
        return 99

    async def download_manifest(self, depot_id, manifest_id, request_code, server, depot_key, cdn_auth_token):
        await self._maybe_hang("download_manifest")
        if self.current_item in self.manifest_errors:
            raise self.manifest_errors[self.current_item]
        return DepotManifest(depot_id=depot_id, manifest_id=manifest_id, entries=list(self.entries))

    async def decrypt_filenames(self, manifest: DepotManifest, depot_key: bytes) -> DepotManifest:
        return manifest

    async def download_chunk(self, depot_id, chunk, server, depot_key, cdn_auth_token) -> bytes:
        self.downloaded_chunks.append(chunk.chunk_id)
        if chunk.chunk_id not in self.chunks:
            raise ProtocolFailure("chunk not on CDN", stage="download")
        return self.chunks[chunk.chunk_id]


class FakeMetadata:
    """Metadata service answering from a dict of id -> details."""

    def __init__(self, details: Optional[Dict[int, PublishedFileDetails]] = None) -> None:
        self.details = details or {}
        self.errors: Dict[int, Exception] = {}
        self.resolved: List[int] = []

    async def resolve(self, item_id: int) -> PublishedFileDetails:
        self.resolved.append(item_id)
        if item_id in self.errors:
            raise self.errors[item_id]
        return self.details.get(item_id, PublishedFileDetails(published_file_id=item_id, result=9))

    def add(self, item_id: int, title: str = "", app_id: int = APP_ID) -> None:
        self.details[item_id] = PublishedFileDetails(
            published_file_id=item_id,
            result=1,
            title=title or f"Item {item_id}",
            hcontent_file=item_id * 10,
            consumer_app_id=app_id,
        )


@pytest.fixture
def log():
    logger = logging.getLogger("workshop_sync.tests")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def fake_service():
    return FakeContentService()


@pytest.fixture
def fake_metadata():
    return FakeMetadata()
