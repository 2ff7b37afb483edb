from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Sequence

from batch import BatchPipeline, BatchResult, ItemState, MetadataService
from config import (
    EXIT_BATCH_FAILED,
    EXIT_CANCELLED,
    EXIT_ERROR,
    EXIT_METADATA_FAILED,
    EXIT_OK,
    EXIT_SYNC_FAILED,
    EXIT_USAGE,
    Options,
    format_usage,
    parse_options,
    resolve_auth_cache_path,
)
from content import ContentService
from depot_sync import DepotSyncer
from errors import SyncError
from http_utils import RetryPolicy
from id_list import read_ids
from session import SteamSession, TokenCacheStore
from steam_api import SteamWebApi
from telemetry import init_telemetry, shutdown_telemetry
from utils import ensure_dir

LOGGER_NAME = "workshop_sync"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def configure_logging(level: str = "INFO", log_path: str | None = None) -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()
    log.setLevel(getattr(logging, level.upper(), logging.INFO))
    log.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    log.addHandler(stream)

    if log_path and log_path.strip():
        path = Path(log_path).expanduser()
        ensure_dir(path.parent)
        file_handler = logging.FileHandler(path, mode="w", encoding="utf-8")
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)
    return log


def _exit_code(options: Options, result: BatchResult) -> int:
    if result.cancelled:
        return EXIT_CANCELLED
    if options.is_batch:
        return EXIT_BATCH_FAILED if result.failed_ids else EXIT_OK
    state = result.items[0].state if result.items else ItemState.METADATA_FAILED
    if state is ItemState.METADATA_FAILED:
        return EXIT_METADATA_FAILED
    if state is not ItemState.DOWNLOADED:
        return EXIT_SYNC_FAILED
    return EXIT_OK


@contextlib.contextmanager
def _cancel_on_signals(pipeline: BatchPipeline):
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.cancel)
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def run(
    options: Options,
    log: logging.Logger,
    *,
    service: ContentService | None = None,
    metadata: MetadataService | None = None,
) -> int:
    output_dir = Path(options.output_dir).expanduser()
    if options.is_batch:
        try:
            ids = read_ids(Path(options.id_list_path), log)
        except OSError as exc:
            log.error("Cannot read id list %s: %s", options.id_list_path, exc)
            return EXIT_USAGE
        if not ids:
            log.error("Id list %s has no valid workshop ids.", options.id_list_path)
            return EXIT_USAGE
        target_for = None
    else:
        ids = [options.published_file_id]
        target_for = lambda _item_id: output_dir

    ensure_dir(output_dir)
    owns_service = service is None
    if service is None:
        from steam_content import SteamContentService

        service = SteamContentService(log=log)
    store = TokenCacheStore(resolve_auth_cache_path(options.auth_cache_path), log)

    try:
        async with contextlib.AsyncExitStack() as stack:
            if metadata is None:
                metadata = await stack.enter_async_context(
                    SteamWebApi(
                        timeout=options.http_timeout,
                        policy=RetryPolicy(options.http_retries, options.http_backoff),
                        log=log,
                    )
                )
            await stack.enter_async_context(SteamSession(service, options, store, log=log))
            syncer = DepotSyncer(service, options.app_id, timeouts=options.timeouts, log=log)
            pipeline = BatchPipeline(
                metadata,
                syncer,
                app_id=options.app_id,
                filters=options.filters,
                interval=options.details_interval,
                log=log,
            )
            with _cancel_on_signals(pipeline):
                result = await pipeline.run(ids, output_dir, target_for)
    except SyncError as exc:
        log.error("Run aborted: %s", exc.describe())
        return EXIT_ERROR
    finally:
        if owns_service:
            service.close()

    return _exit_code(options, result)


def main(argv: Sequence[str] | None = None) -> int:
    options = parse_options(sys.argv[1:] if argv is None else argv)
    if not options.is_valid:
        print(format_usage(), file=sys.stderr)
        return EXIT_USAGE

    log = configure_logging(options.log_level, options.log_path)
    init_telemetry()
    try:
        return asyncio.run(run(options, log))
    except KeyboardInterrupt:
        log.warning("Interrupted.")
        return EXIT_CANCELLED
    except Exception:
        log.exception("Unhandled error")
        return EXIT_ERROR
    finally:
        shutdown_telemetry()


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
