from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

import aiohttp

from errors import ProtocolFailure, SyncTimeout
from http_utils import RetryPolicy, parse_retry_after

PUBLISHED_FILE_DETAILS_URL = (
    "https://api.steampowered.com/ISteamRemoteStorage/GetPublishedFileDetails/v1/"
)
MAX_DETAILS_BATCH_SIZE = 100
RESULT_OK = 1


@dataclass(frozen=True)
class PublishedFileDetails:
    published_file_id: int
    result: int = 0
    title: str = ""
    hcontent_file: int = 0
    consumer_app_id: int = 0

    @property
    def ok(self) -> bool:
        return self.result == RESULT_OK


def _read_uint(details: Dict[str, Any], key: str) -> int:
    value = details.get(key)
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


def parse_details_response(
    payload: Any, requested_ids: Sequence[int]
) -> List[PublishedFileDetails]:
    try:
        entries = payload["response"]["publishedfiledetails"]
    except (KeyError, TypeError) as exc:
        raise ProtocolFailure(f"Unexpected GetPublishedFileDetails payload: {exc}") from exc
    if not isinstance(entries, list):
        raise ProtocolFailure("publishedfiledetails is not a list")

    results: List[PublishedFileDetails] = []
    for index, details in enumerate(entries):
        if not isinstance(details, dict):
            continue
        published_file_id = _read_uint(details, "publishedfileid")
        if published_file_id == 0 and index < len(requested_ids):
            published_file_id = requested_ids[index]
        results.append(
            PublishedFileDetails(
                published_file_id=published_file_id,
                result=_read_uint(details, "result"),
                title=str(details.get("title") or ""),
                hcontent_file=_read_uint(details, "hcontent_file"),
                consumer_app_id=_read_uint(details, "consumer_app_id"),
            )
        )
    return results


class SteamWebApi:
    def __init__(
        self,
        *,
        timeout: int = 60,
        policy: RetryPolicy | None = None,
        session: aiohttp.ClientSession | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.timeout = int(timeout)
        self.policy = policy or RetryPolicy(retries=2, backoff=1.0)
        self.log = log or logging.getLogger("workshop_sync")
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "SteamWebApi":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout_cfg = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout_cfg)
            self._owns_session = True
        return self._session

    async def resolve(self, item_id: int) -> PublishedFileDetails:
        batch = await self.fetch_details([item_id])
        for details in batch:
            if details.published_file_id == item_id:
                return details
        return PublishedFileDetails(published_file_id=item_id, result=0)

    async def fetch_details(self, item_ids: Sequence[int]) -> List[PublishedFileDetails]:
        results: List[PublishedFileDetails] = []
        for start in range(0, len(item_ids), MAX_DETAILS_BATCH_SIZE):
            batch = list(item_ids[start : start + MAX_DETAILS_BATCH_SIZE])
            results.extend(await self._fetch_batch(batch))
        return results

    async def _fetch_batch(self, item_ids: List[int]) -> List[PublishedFileDetails]:
        if not item_ids:
            return []
        form: Dict[str, str] = {"itemcount": str(len(item_ids))}
        for index, item_id in enumerate(item_ids):
            form[f"publishedfileids[{index}]"] = str(item_id)

        session = self._get_session()
        attempts = self.policy.attempts
        for attempt in range(1, attempts + 1):
            try:
                async with session.post(
                    PUBLISHED_FILE_DETAILS_URL, data=form, timeout=self.timeout
                ) as response:
                    if response.status in self.policy.retry_statuses and attempt < attempts:
                        retry_after = parse_retry_after(response.headers.get("retry-after"))
                        if retry_after:
                            await asyncio.sleep(retry_after)
                        await self._sleep_backoff(attempt, RuntimeError(f"HTTP {response.status}"))
                        continue
                    if response.status != 200:
                        raise ProtocolFailure(
                            f"GetPublishedFileDetails returned HTTP {response.status}"
                        )
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError as exc:
                        raise ProtocolFailure(f"Invalid GetPublishedFileDetails JSON: {exc}") from exc
                    return parse_details_response(payload, item_ids)
            except asyncio.TimeoutError as exc:
                if attempt >= attempts:
                    raise SyncTimeout(
                        f"GetPublishedFileDetails timed out after {self.timeout}s"
                    ) from exc
                await self._sleep_backoff(attempt, exc)
            except aiohttp.ClientError as exc:
                if attempt >= attempts:
                    raise ProtocolFailure(f"GetPublishedFileDetails failed: {exc}") from exc
                await self._sleep_backoff(attempt, exc)
        raise ProtocolFailure("GetPublishedFileDetails retries exhausted")

    async def _sleep_backoff(self, attempt: int, exc: Exception) -> None:
        delay = self.policy.delay_for_attempt(attempt)
        if delay <= 0:
            return
        self.log.warning(
            "Steam Web API retry %s/%s after error: %s (sleep %.1fs)",
            attempt,
            self.policy.retries,
            exc,
            delay,
        )
        await asyncio.sleep(delay)
