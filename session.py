from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from config import Options, Timeouts
from content import ContentService, LogonResult
from errors import AuthRejected, SyncTimeout
from telemetry import start_span
from utils import load_json, save_json, utc_now

CALLBACK_POLL_INTERVAL = 0.1

T = TypeVar("T")


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    LOGGED_ON = "logged_on"
    LOGGED_OFF = "logged_off"


@dataclass
class AuthTokenCache:
    username: str
    steam_id: str
    refresh_token: str
    guard_data: str | None = None
    updated_at_utc: str = ""

    def to_json(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "steamId": self.steam_id,
            "refreshToken": self.refresh_token,
            "guardData": self.guard_data,
            "updatedAtUtc": self.updated_at_utc,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "AuthTokenCache":
        guard_data = data.get("guardData")
        return cls(
            username=str(data.get("username") or ""),
            steam_id=str(data.get("steamId") or ""),
            refresh_token=str(data.get("refreshToken") or ""),
            guard_data=str(guard_data) if guard_data else None,
            updated_at_utc=str(data.get("updatedAtUtc") or ""),
        )

    @property
    def usable(self) -> bool:
        return bool(self.refresh_token.strip()) and self.steam_id.strip().isdigit()


class TokenCacheStore:
    def __init__(self, path: Path, log: logging.Logger | None = None) -> None:
        self.path = path
        self.log = log or logging.getLogger("workshop_sync")

    def load(self) -> Optional[AuthTokenCache]:
        data = load_json(self.path)
        if data is None:
            return None
        return AuthTokenCache.from_json(data)

    def save(self, cache: AuthTokenCache) -> None:
        save_json(self.path, cache.to_json())
        self.log.info("Saved refresh token cache to %s", self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        self.log.info("Cleared refresh token cache %s", self.path)


class ConsoleAuthenticator:
    """Steam Guard codes from options/env first, then an interactive prompt."""

    def __init__(
        self,
        guard_code: str | None = None,
        email_code: str | None = None,
        prompt: Callable[[str], str] = input,
    ) -> None:
        self.guard_code = guard_code
        self.email_code = email_code
        self.prompt = prompt
        self._used_guard_code = False
        self._used_email_code = False

    def get_device_code(self, previous_code_was_incorrect: bool) -> str:
        if not self._used_guard_code and self.guard_code and self.guard_code.strip():
            self._used_guard_code = True
            return self.guard_code.strip()
        return self.prompt("Steam Guard code: ").strip()

    def get_email_code(self, email: str, previous_code_was_incorrect: bool) -> str:
        if not self._used_email_code and self.email_code and self.email_code.strip():
            self._used_email_code = True
            return self.email_code.strip()
        return self.prompt(f"Email Steam Guard code ({email}): ").strip()

    def accept_device_confirmation(self) -> bool:
        self.prompt("Approve the sign-in request in the Steam Mobile app, then press Enter.")
        return True


class SteamSession:
    def __init__(
        self,
        service: ContentService,
        options: Options,
        store: TokenCacheStore,
        *,
        authenticator: ConsoleAuthenticator | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.service = service
        self.options = options
        self.timeouts: Timeouts = options.timeouts
        self.store = store
        self.authenticator = authenticator or ConsoleAuthenticator(
            options.guard_code, options.email_code
        )
        self.log = log or logging.getLogger("workshop_sync")
        self.state = SessionState.DISCONNECTED
        self.logon_method: str | None = None
        self._token_cache = store.load()
        self._callback_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "SteamSession":
        try:
            await self.connect()
            await self.logon()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> None:
        if self._callback_task is None:
            self._callback_task = asyncio.create_task(self._callback_loop())
        self.log.info("Connecting to Steam...")
        await self._bounded(
            self.service.connect(self.timeouts.connect), self.timeouts.connect, "connect"
        )
        self.state = SessionState.CONNECTED
        self.log.info("Connected to Steam.")

    async def logon(self) -> None:
        with start_span("session.logon", {"steam.anonymous": self.options.use_anonymous}):
            if await self._try_cached_token():
                self._logged_on("token")
                return

            if self.options.use_anonymous:
                if await self._logon_anonymous():
                    self._logged_on("anonymous")
                    return
                if self.options.has_credentials:
                    self.log.info("Anonymous logon failed. Falling back to credential logon.")

            if not self.options.has_credentials:
                raise AuthRejected("Missing STEAM_USER / STEAM_PASS or --user / --pass.", stage="logon")

            await self._logon_with_credentials()
            self._logged_on("credentials")

    async def close(self) -> None:
        if self.state is SessionState.LOGGED_ON:
            try:
                await self.service.logoff()
            except Exception as exc:
                self.log.warning("Steam logoff failed: %s", exc)
        try:
            await self.service.disconnect()
        except Exception as exc:
            self.log.warning("Steam disconnect failed: %s", exc)
        await self._stop_callback_loop()
        if self.state is not SessionState.DISCONNECTED:
            self.state = SessionState.LOGGED_OFF

    def _logged_on(self, method: str) -> None:
        self.state = SessionState.LOGGED_ON
        self.logon_method = method

    async def _try_cached_token(self) -> bool:
        cache = self._token_cache
        if cache is None or not cache.usable:
            return False
        requested = (self.options.username or "").strip()
        if requested and requested.lower() != cache.username.lower():
            return False

        # Refresh tokens can be revoked; drop the cache on rejection so the next step re-auths.
        self.log.info("Trying cached refresh token...")
        username = requested or cache.username
        result = await self._logon_with_token(username, cache.refresh_token, self.timeouts.logon)
        if not result.ok:
            self._token_cache = None
            self.store.clear()
        return result.ok

    async def _logon_anonymous(self) -> bool:
        self.log.info("Logging in anonymously...")
        result = await self._bounded(
            self.service.logon_anonymous(self.timeouts.logon), self.timeouts.logon, "logon"
        )
        if result.ok:
            self.log.info("Logged in anonymously.")
            return True
        self.log.warning("Anonymous logon failed: %s", result.reason)
        return False

    async def _logon_with_token(self, username: str, token: str, timeout: float) -> LogonResult:
        self.log.info("Logging in with refresh token...")
        result = await self._bounded(
            self.service.logon_with_token(username, token, timeout), timeout, "logon"
        )
        if result.ok:
            self.log.info("Logged in.")
        else:
            self.log.warning("Access-token logon failed: %s", result.reason)
        return result

    async def _logon_with_credentials(self) -> None:
        username = (self.options.username or "").strip()
        guard_data = self._token_cache.guard_data if self._token_cache else None
        self.log.info("Starting auth session for %s...", username)
        auth = await self._bounded(
            self.service.begin_credential_auth(
                username,
                self.options.password or "",
                self.authenticator,
                guard_data,
                self.timeouts.credential_auth,
            ),
            self.timeouts.credential_auth,
            "credential_auth",
        )
        if not auth.refresh_token:
            raise AuthRejected("Steam did not issue a refresh token.", stage="credential_auth")

        cache = AuthTokenCache(
            username=username,
            steam_id=str(auth.steam_id),
            refresh_token=auth.refresh_token,
            guard_data=auth.new_guard_data or guard_data,
            updated_at_utc=utc_now(),
        )
        self.store.save(cache)
        self._token_cache = cache

        result = await self._logon_with_token(
            auth.account_name or username, auth.refresh_token, self.timeouts.logon_after_auth
        )
        if not result.ok:
            raise AuthRejected(
                "Token logon failed after successful authentication.", stage="logon"
            )

    async def _bounded(self, awaitable: Awaitable[T], timeout: float, stage: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as exc:
            raise SyncTimeout(f"Steam {stage} timed out after {timeout:.0f}s", stage=stage) from exc

    async def _callback_loop(self) -> None:
        while True:
            await self.service.run_callbacks(CALLBACK_POLL_INTERVAL)
            await asyncio.sleep(0)

    async def _stop_callback_loop(self) -> None:
        task = self._callback_task
        self._callback_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            self.log.warning("Steam callback loop stopped with error: %s", exc)
