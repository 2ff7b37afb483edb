from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from steam.client import SteamClient
from steam.client.cdn import CDNClient
from steam.enums import EDepotFileFlag, EResult
from steam.exceptions import SteamError

from content import (
    AppInfo,
    Authenticator,
    ChunkRef,
    ContentServer,
    ContentService,
    CredentialAuthResult,
    DepotManifest,
    LogonResult,
    ManifestEntry,
)
from errors import AuthRejected, NotFound, ProtocolFailure

CONNECT_RETRIES = 3
MAX_GUARD_ATTEMPTS = 5
LOGIN_KEY_WAIT = 10

T = TypeVar("T")


class _GuardDataClient(SteamClient):
    """SteamClient that keeps the machine auth sentry in memory instead of on disk."""

    guard_data: Optional[bytes] = None

    def get_sentry(self, username):
        return self.guard_data

    def store_sentry(self, username, sentry_bytes):
        self.guard_data = sentry_bytes
        return True


def _manifest_entries(manifest: Any) -> List[ManifestEntry]:
    entries: List[ManifestEntry] = []
    for mapping in manifest.payload.mappings:
        filename = mapping.filename
        if isinstance(filename, bytes):
            filename = filename.decode("utf-8", "replace")
        chunks = tuple(
            ChunkRef(
                chunk_id=bytes(chunk.sha),
                uncompressed_size=int(chunk.cb_original),
                offset=int(chunk.offset),
            )
            for chunk in mapping.chunks
        )
        entries.append(
            ManifestEntry(
                path=filename.rstrip("\x00"),
                is_directory=bool(mapping.flags & EDepotFileFlag.Directory),
                size=int(mapping.size),
                content_hash=bytes(mapping.sha_content) or None,
                chunks=chunks,
            )
        )
    return entries


class SteamContentService(ContentService):
    """ContentService backed by the ``steam`` package.

    SteamClient runs on gevent, whose hub is bound to the thread that created
    it, so every client call goes through one dedicated worker thread.
    """

    def __init__(
        self,
        *,
        client_factory: Callable[[], SteamClient] = _GuardDataClient,
        log: logging.Logger | None = None,
    ) -> None:
        self.log = log or logging.getLogger("workshop_sync")
        self._client_factory = client_factory
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="steam-client")
        self._client: SteamClient | None = None
        self._cdn: CDNClient | None = None
        self._manifests: Dict[Tuple[int, int], Any] = {}
        self._depot_apps: Dict[int, int] = {}

    async def _run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        # A timed out call keeps the only worker busy until it returns, so later
        # calls, disconnect included, queue behind it.
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(func, *args, **kwargs)
        )

    def _require_client(self) -> SteamClient:
        if self._client is None or not self._client.connected:
            raise ProtocolFailure("Steam client is not connected.")
        return self._client

    def _require_cdn(self) -> CDNClient:
        if self._cdn is None:
            try:
                self._cdn = CDNClient(self._require_client())
            except SteamError as exc:
                raise ProtocolFailure(f"CDN client setup failed: {exc}", stage="servers") from exc
        return self._cdn

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    async def connect(self, timeout: float) -> None:
        await self._run(self._connect)

    def _connect(self) -> None:
        if self._client is None:
            self._client = self._client_factory()
        if self._client.connected:
            return
        if not self._client.connect(retry=CONNECT_RETRIES):
            raise ProtocolFailure("Unable to connect to a Steam CM server.", stage="connect")

    async def disconnect(self) -> None:
        await self._run(self._disconnect)

    def _disconnect(self) -> None:
        self._cdn = None
        self._manifests.clear()
        if self._client is not None:
            self._client.disconnect()

    async def run_callbacks(self, timeout: float) -> None:
        if self._client is None:
            await asyncio.sleep(timeout)
            return
        await self._run(self._client.sleep, timeout)

    async def logon_anonymous(self, timeout: float) -> LogonResult:
        result = await self._run(lambda: self._require_client().anonymous_login())
        return LogonResult(result == EResult.OK, repr(result))

    async def logon_with_token(
        self, username: str, refresh_token: str, timeout: float
    ) -> LogonResult:
        return await self._run(self._logon_with_token, username, refresh_token)

    def _logon_with_token(self, username: str, refresh_token: str) -> LogonResult:
        client = self._require_client()
        # Credential auth leaves the client logged on already.
        if client.logged_on and (client.username or "").lower() == username.lower():
            return LogonResult(True)
        result = client.login(username, login_key=refresh_token)
        return LogonResult(result == EResult.OK, repr(result))

    async def begin_credential_auth(
        self,
        username: str,
        password: str,
        authenticator: Authenticator,
        guard_data: str | None,
        timeout: float,
    ) -> CredentialAuthResult:
        return await self._run(
            self._credential_auth, username, password, authenticator, guard_data
        )

    def _credential_auth(
        self,
        username: str,
        password: str,
        authenticator: Authenticator,
        guard_data: str | None,
    ) -> CredentialAuthResult:
        client = self._require_client()
        if guard_data and isinstance(client, _GuardDataClient):
            try:
                client.guard_data = bytes.fromhex(guard_data)
            except ValueError:
                self.log.warning("Ignoring malformed cached guard data.")

        auth_code = None
        two_factor_code = None
        result = EResult.Fail
        for _attempt in range(MAX_GUARD_ATTEMPTS):
            result = client.login(
                username, password, auth_code=auth_code, two_factor_code=two_factor_code
            )
            if result == EResult.OK:
                break
            if result in (EResult.AccountLogonDenied, EResult.InvalidLoginAuthCode):
                auth_code = authenticator.get_email_code(
                    "", result == EResult.InvalidLoginAuthCode
                )
            elif result in (EResult.AccountLoginDeniedNeedTwoFactor, EResult.TwoFactorCodeMismatch):
                two_factor_code = authenticator.get_device_code(
                    result == EResult.TwoFactorCodeMismatch
                )
            else:
                break
        if result != EResult.OK:
            raise AuthRejected(f"Steam rejected the credentials: {result!r}", stage="credential_auth")

        if not client.login_key:
            client.wait_event(client.EVENT_NEW_LOGIN_KEY, timeout=LOGIN_KEY_WAIT)
        new_guard = getattr(client, "guard_data", None)
        return CredentialAuthResult(
            account_name=client.username or username,
            steam_id=int(client.steam_id.as_64),
            refresh_token=client.login_key or "",
            new_guard_data=new_guard.hex() if new_guard else None,
        )

    async def logoff(self) -> None:
        await self._run(self._logoff)

    def _logoff(self) -> None:
        if self._client is not None and self._client.logged_on:
            self._client.logout()

    async def get_workshop_manifest_id(self, app_id: int, item_id: int, timeout: float) -> int:
        return await self._run(self._workshop_manifest_id, item_id, timeout)

    def _workshop_manifest_id(self, item_id: int, timeout: float) -> int:
        resp = self._require_client().send_um_and_wait(
            "PublishedFile.GetDetails#1",
            {"publishedfileids": [item_id], "includechildren": False},
            timeout=timeout,
        )
        if resp is None or resp.header.eresult != EResult.OK:
            return 0
        details = resp.body.publishedfiledetails
        if not details or details[0].result != EResult.OK:
            return 0
        return int(details[0].hcontent_file)

    async def get_app_info(
        self, app_id: int, access_token: int, timeout: float
    ) -> AppInfo | None:
        return await self._run(self._app_info, app_id, access_token, timeout)

    def _app_info(self, app_id: int, access_token: int, timeout: float) -> AppInfo | None:
        data = self._require_client().get_product_info(
            apps=[{"appid": app_id, "access_token": access_token}],
            auto_access_tokens=False,
            timeout=timeout,
        )
        if not data:
            return None
        app = (data.get("apps") or {}).get(app_id)
        if app is None:
            return None
        return AppInfo(
            app_id=app_id,
            missing_token=bool(app.get("_missing_token")),
            key_values=dict(app),
        )

    async def get_access_token(self, app_id: int, timeout: float) -> int:
        return await self._run(self._access_token, app_id)

    def _access_token(self, app_id: int) -> int:
        tokens = self._require_client().get_access_tokens(app_ids=[app_id])
        if not tokens:
            return 0
        return int((tokens.get("apps") or {}).get(app_id) or 0)

    async def get_depot_key(self, depot_id: int, app_id: int, timeout: float) -> bytes | None:
        return await self._run(self._depot_key, depot_id, app_id)

    def _depot_key(self, depot_id: int, app_id: int) -> bytes | None:
        self._depot_apps[depot_id] = app_id
        resp = self._require_client().get_depot_key(app_id, depot_id)
        if resp is None or resp.eresult != EResult.OK:
            return None
        return bytes(resp.depot_encryption_key) or None

    async def list_servers(self) -> Sequence[ContentServer]:
        return await self._run(self._list_servers)

    def _list_servers(self) -> List[ContentServer]:
        cdn = self._require_cdn()
        return [
            ContentServer(host=server.host, port=int(server.port), https=bool(server.https))
            for server in cdn.servers
        ]

    async def get_cdn_auth_token(self, app_id: int, depot_id: int, host: str) -> str | None:
        # CDNClient signs its own requests.
        return None

    async def get_manifest_request_code(
        self, depot_id: int, app_id: int, manifest_id: int
    ) -> int:
        return await self._run(self._manifest_request_code, depot_id, app_id, manifest_id)

    def _manifest_request_code(self, depot_id: int, app_id: int, manifest_id: int) -> int:
        self._depot_apps[depot_id] = app_id
        try:
            return int(self._require_cdn().get_manifest_request_code(app_id, depot_id, manifest_id))
        except SteamError as exc:
            raise ProtocolFailure(str(exc), stage="manifest_request_code") from exc

    async def download_manifest(
        self,
        depot_id: int,
        manifest_id: int,
        request_code: int,
        server: ContentServer,
        depot_key: bytes,
        cdn_auth_token: str | None,
    ) -> DepotManifest:
        return await self._run(
            self._download_manifest, depot_id, manifest_id, request_code, depot_key
        )

    def _download_manifest(
        self, depot_id: int, manifest_id: int, request_code: int, depot_key: bytes
    ) -> DepotManifest:
        cdn = self._require_cdn()
        app_id = self._depot_apps.get(depot_id)
        if app_id is None:
            raise ProtocolFailure(f"Unknown app for depot {depot_id}.", stage="manifest")
        cdn.depot_keys[depot_id] = depot_key
        try:
            manifest = cdn.get_manifest(
                app_id, depot_id, manifest_id, decrypt=False, manifest_request_code=request_code
            )
        except SteamError as exc:
            if exc.eresult == EResult.FileNotFound:
                raise NotFound(f"Manifest {manifest_id} not found.", stage="manifest") from exc
            raise ProtocolFailure(f"Manifest download failed: {exc}", stage="manifest") from exc
        self._manifests[(depot_id, manifest_id)] = manifest
        return DepotManifest(
            depot_id=depot_id,
            manifest_id=manifest_id,
            entries=_manifest_entries(manifest),
            filenames_encrypted=bool(manifest.filenames_encrypted),
        )

    async def decrypt_filenames(self, manifest: DepotManifest, depot_key: bytes) -> DepotManifest:
        return await self._run(self._decrypt_filenames, manifest, depot_key)

    def _decrypt_filenames(self, manifest: DepotManifest, depot_key: bytes) -> DepotManifest:
        raw = self._manifests.get((manifest.depot_id, manifest.manifest_id))
        if raw is None:
            raise ProtocolFailure("Manifest is not loaded.", stage="manifest")
        try:
            raw.decrypt_filenames(depot_key)
        except SteamError as exc:
            raise ProtocolFailure(f"Filename decryption failed: {exc}", stage="manifest") from exc
        return DepotManifest(
            depot_id=manifest.depot_id,
            manifest_id=manifest.manifest_id,
            entries=_manifest_entries(raw),
            filenames_encrypted=False,
        )

    async def download_chunk(
        self,
        depot_id: int,
        chunk: ChunkRef,
        server: ContentServer,
        depot_key: bytes,
        cdn_auth_token: str | None,
    ) -> bytes:
        return await self._run(self._download_chunk, depot_id, chunk, depot_key)

    def _download_chunk(self, depot_id: int, chunk: ChunkRef, depot_key: bytes) -> bytes:
        cdn = self._require_cdn()
        app_id = self._depot_apps.get(depot_id)
        if app_id is None:
            raise ProtocolFailure(f"Unknown app for depot {depot_id}.", stage="download")
        cdn.depot_keys[depot_id] = depot_key
        try:
            return cdn.get_chunk(app_id, depot_id, chunk.chunk_id.hex())
        except SteamError as exc:
            raise ProtocolFailure(
                f"Chunk {chunk.chunk_id.hex()} download failed: {exc}", stage="download"
            ) from exc
