from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence


@dataclass(frozen=True)
class ChunkRef:
    chunk_id: bytes
    uncompressed_size: int
    offset: int


@dataclass(frozen=True)
class ManifestEntry:
    path: str
    is_directory: bool = False
    size: int = 0
    content_hash: Optional[bytes] = None
    chunks: tuple[ChunkRef, ...] = ()


@dataclass
class DepotManifest:
    depot_id: int
    manifest_id: int
    entries: List[ManifestEntry] = field(default_factory=list)
    filenames_encrypted: bool = False

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.entries if not entry.is_directory)


@dataclass(frozen=True)
class ContentServer:
    host: str
    port: int = 443
    https: bool = True


@dataclass(frozen=True)
class AppInfo:
    app_id: int
    missing_token: bool = False
    key_values: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LogonResult:
    ok: bool
    reason: str | None = None


@dataclass(frozen=True)
class CredentialAuthResult:
    account_name: str
    steam_id: int
    refresh_token: str
    new_guard_data: str | None = None


class Authenticator(Protocol):
    def get_device_code(self, previous_code_was_incorrect: bool) -> str: ...

    def get_email_code(self, email: str, previous_code_was_incorrect: bool) -> str: ...

    def accept_device_confirmation(self) -> bool: ...


class ContentService(abc.ABC):
    """Steam connection, authentication and SteamPipe content calls.

    Every method is a coroutine; implementations translate transport errors
    into the types from ``errors``.
    """

    def close(self) -> None:
        """Release local resources once the session is torn down."""

    @abc.abstractmethod
    async def connect(self, timeout: float) -> None: ...

    @abc.abstractmethod
    async def disconnect(self) -> None: ...

    @abc.abstractmethod
    async def run_callbacks(self, timeout: float) -> None: ...

    @abc.abstractmethod
    async def logon_anonymous(self, timeout: float) -> LogonResult: ...

    @abc.abstractmethod
    async def logon_with_token(
        self, username: str, refresh_token: str, timeout: float
    ) -> LogonResult: ...

    @abc.abstractmethod
    async def begin_credential_auth(
        self,
        username: str,
        password: str,
        authenticator: Authenticator,
        guard_data: str | None,
        timeout: float,
    ) -> CredentialAuthResult: ...

    @abc.abstractmethod
    async def logoff(self) -> None: ...

    @abc.abstractmethod
    async def get_workshop_manifest_id(
        self, app_id: int, item_id: int, timeout: float
    ) -> int: ...

    @abc.abstractmethod
    async def get_app_info(
        self, app_id: int, access_token: int, timeout: float
    ) -> AppInfo | None: ...

    @abc.abstractmethod
    async def get_access_token(self, app_id: int, timeout: float) -> int: ...

    @abc.abstractmethod
    async def get_depot_key(self, depot_id: int, app_id: int, timeout: float) -> bytes | None: ...

    @abc.abstractmethod
    async def list_servers(self) -> Sequence[ContentServer]: ...

    @abc.abstractmethod
    async def get_cdn_auth_token(
        self, app_id: int, depot_id: int, host: str
    ) -> str | None: ...

    @abc.abstractmethod
    async def get_manifest_request_code(
        self, depot_id: int, app_id: int, manifest_id: int
    ) -> int: ...

    @abc.abstractmethod
    async def download_manifest(
        self,
        depot_id: int,
        manifest_id: int,
        request_code: int,
        server: ContentServer,
        depot_key: bytes,
        cdn_auth_token: str | None,
    ) -> DepotManifest: ...

    @abc.abstractmethod
    async def decrypt_filenames(
        self, manifest: DepotManifest, depot_key: bytes
    ) -> DepotManifest: ...

    @abc.abstractmethod
    async def download_chunk(
        self,
        depot_id: int,
        chunk: ChunkRef,
        server: ContentServer,
        depot_key: bytes,
        cdn_auth_token: str | None,
    ) -> bytes: ...
