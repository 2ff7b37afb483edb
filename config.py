from __future__ import annotations

import argparse
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence

DEFAULT_APP_ID = 268500
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_DETAILS_INTERVAL = 2.0
DEFAULT_HTTP_TIMEOUT = 60
DEFAULT_HTTP_RETRIES = 2
DEFAULT_HTTP_BACKOFF = 1.0
AUTH_CACHE_DIR_NAME = "steam-workshop-downloader"
AUTH_CACHE_FILE_NAME = "auth.json"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_METADATA_FAILED = 3
EXIT_SYNC_FAILED = 4
EXIT_BATCH_FAILED = 5
EXIT_CANCELLED = 130

_ID_RE = re.compile(r"^\d+$")
_MAX_ID = 2**64 - 1


@dataclass(frozen=True)
class Timeouts:
    connect: float = 30.0
    logon: float = 30.0
    logon_after_auth: float = 60.0
    credential_auth: float = 120.0
    item_info: float = 65.0
    product_info: float = 65.0
    access_token: float = 35.0
    depot_key: float = 35.0
    cdn_auth_token: float = 30.0
    manifest_request_code: float = 30.0
    manifest: float = 120.0
    chunk: float = 120.0


@dataclass
class Options:
    published_file_id: int = 0
    id_list_path: str | None = None
    output_dir: str = ""
    app_id: int = DEFAULT_APP_ID
    username: str | None = None
    password: str | None = None
    guard_code: str | None = None
    email_code: str | None = None
    log_path: str | None = None
    auth_cache_path: str | None = None
    filters: list[str] = field(default_factory=list)
    use_anonymous: bool = False
    log_level: str = DEFAULT_LOG_LEVEL
    details_interval: float = DEFAULT_DETAILS_INTERVAL
    http_timeout: int = DEFAULT_HTTP_TIMEOUT
    http_retries: int = DEFAULT_HTTP_RETRIES
    http_backoff: float = DEFAULT_HTTP_BACKOFF
    timeouts: Timeouts = field(default_factory=Timeouts)

    @property
    def is_valid(self) -> bool:
        return bool(self.output_dir.strip()) and (
            self.published_file_id != 0 or bool((self.id_list_path or "").strip())
        )

    @property
    def is_batch(self) -> bool:
        return bool((self.id_list_path or "").strip())

    @property
    def has_credentials(self) -> bool:
        return bool((self.username or "").strip()) and bool((self.password or "").strip())


def parse_int(value: str | None, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float(value: str | None, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def parse_id(value: str | None) -> int | None:
    if value is None:
        return None
    value = value.strip()
    if not _ID_RE.match(value):
        return None
    parsed = int(value)
    if parsed > _MAX_ID:
        return None
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="steam-workshop-downloader",
        description="Sync Steam Workshop items into local directories.",
        epilog=USAGE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("positional", nargs="*")
    parser.add_argument("--appid", "--app-id", dest="app_id")
    parser.add_argument("--user", "--username", dest="username")
    parser.add_argument("--pass", "--password", dest="password")
    parser.add_argument("--filter", dest="filters", action="append", default=[])
    parser.add_argument("--id-list", "--ids", "--batch", dest="id_list_path")
    parser.add_argument("--log", dest="log_path")
    parser.add_argument("--log-level", dest="log_level")
    parser.add_argument("--auth-cache", "--cache", dest="auth_cache_path")
    parser.add_argument("--guard", "--steam-guard", dest="guard_code")
    parser.add_argument("--email", "--email-guard", dest="email_code")
    parser.add_argument("--anonymous", "--anon", dest="use_anonymous", action="store_true")
    return parser


USAGE_EPILOG = """\
Usage forms:
  steam-workshop-downloader <publishedFileId> <outputDir> [--appid <id>] [--anonymous]
  steam-workshop-downloader <user> <pass> <outputDir> <publishedFileId> [--filter <glob>]
  steam-workshop-downloader <idListFile.txt> <outputDir> [--filter <glob>] [--log <path>]
  steam-workshop-downloader <user> <pass> <outputDir> <idListFile.txt> [--auth-cache <path>]

Batch mode writes each workshop item into a subfolder named after its id under outputDir.

Filters are case-insensitive globs. A pattern without "/" matches the file name at
any depth. "**/" matches zero or more directories, so "Maps/**/*.umap" also
matches "Maps/a.umap".

Environment variables:
  STEAM_USER, STEAM_PASS, STEAM_GUARD, STEAM_EMAIL_GUARD
  STEAM_AUTH_CACHE, STEAM_LOG, STEAM_WORKSHOP_DOWNLOADER_LOG, STEAM_LOG_LEVEL
  STEAM_DETAILS_INTERVAL, STEAM_HTTP_TIMEOUT, STEAM_HTTP_RETRIES, STEAM_HTTP_BACKOFF
"""


def format_usage() -> str:
    return _build_parser().format_help()


def _apply_positional(options: Options, positional: Sequence[str]) -> None:
    if len(positional) < 2:
        return
    item_id = parse_id(positional[0])
    if item_id:
        options.published_file_id = item_id
        options.output_dir = positional[1]
        return
    if Path(positional[0]).is_file():
        options.id_list_path = positional[0]
        options.output_dir = positional[1]
        return
    if len(positional) < 4:
        return
    alt_id = parse_id(positional[3])
    if alt_id:
        options.username = positional[0]
        options.password = positional[1]
        options.output_dir = positional[2]
        options.published_file_id = alt_id
    elif Path(positional[3]).is_file():
        options.username = positional[0]
        options.password = positional[1]
        options.output_dir = positional[2]
        options.id_list_path = positional[3]


def parse_options(
    argv: Sequence[str], environ: Mapping[str, str] | None = None
) -> Options:
    env = os.environ if environ is None else environ
    args, unknown = _build_parser().parse_known_args(list(argv))
    if unknown:
        logging.getLogger("workshop_sync").warning("Ignoring unknown arguments: %s", " ".join(unknown))

    options = Options()
    app_id = parse_id(args.app_id)
    if app_id is not None and app_id <= 0xFFFFFFFF:
        options.app_id = app_id
    options.username = args.username
    options.password = args.password
    options.filters = [value for value in args.filters if value and value.strip()]
    options.id_list_path = args.id_list_path
    options.log_path = args.log_path
    options.auth_cache_path = args.auth_cache_path
    options.guard_code = args.guard_code
    options.email_code = args.email_code
    options.use_anonymous = bool(args.use_anonymous)

    _apply_positional(options, args.positional)

    if options.username is None:
        options.username = env.get("STEAM_USER")
    if options.password is None:
        options.password = env.get("STEAM_PASS")
    if options.guard_code is None:
        options.guard_code = env.get("STEAM_GUARD")
    if options.email_code is None:
        options.email_code = env.get("STEAM_EMAIL_GUARD")
    if options.auth_cache_path is None:
        options.auth_cache_path = env.get("STEAM_AUTH_CACHE")
    if options.log_path is None:
        options.log_path = env.get("STEAM_LOG") or env.get("STEAM_WORKSHOP_DOWNLOADER_LOG")

    options.log_level = (args.log_level or env.get("STEAM_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
    options.details_interval = max(
        0.0, parse_float(env.get("STEAM_DETAILS_INTERVAL"), DEFAULT_DETAILS_INTERVAL)
    )
    options.http_timeout = parse_int(env.get("STEAM_HTTP_TIMEOUT"), DEFAULT_HTTP_TIMEOUT)
    options.http_retries = max(0, parse_int(env.get("STEAM_HTTP_RETRIES"), DEFAULT_HTTP_RETRIES))
    options.http_backoff = max(0.0, parse_float(env.get("STEAM_HTTP_BACKOFF"), DEFAULT_HTTP_BACKOFF))

    if not options.has_credentials:
        options.use_anonymous = True

    return options


def resolve_auth_cache_path(
    provided: str | None, environ: Mapping[str, str] | None = None
) -> Path:
    env = os.environ if environ is None else environ
    if provided and provided.strip():
        full = Path(os.path.abspath(os.path.expanduser(provided)))
        if full.is_dir() or provided.endswith(("/", "\\")):
            return full / AUTH_CACHE_FILE_NAME
        return full

    base_dir = env.get("APPDATA") or env.get("XDG_CONFIG_HOME")
    if base_dir:
        return Path(base_dir) / AUTH_CACHE_DIR_NAME / AUTH_CACHE_FILE_NAME

    home = env.get("HOME") or env.get("USERPROFILE")
    if not home:
        return Path(os.path.abspath(AUTH_CACHE_FILE_NAME))
    return Path(home) / f".{AUTH_CACHE_DIR_NAME}" / AUTH_CACHE_FILE_NAME
