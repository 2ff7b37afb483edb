from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Sequence, Tuple

from content import ManifestEntry
from errors import PathTraversal
from glob_filter import normalize_path
from utils import sha1_file

_DRIVE_PREFIX_RE = re.compile(r"^[A-Za-z]:")

Hasher = Callable[[Path], bytes]


@dataclass(frozen=True)
class CopyItem:
    source_path: Path
    relative_path: str


@dataclass
class SyncPlan:
    to_copy: List[CopyItem] = field(default_factory=list)
    to_download: List[ManifestEntry] = field(default_factory=list)
    directories: List[str] = field(default_factory=list)

    @property
    def download_bytes(self) -> int:
        return sum(entry.size for entry in self.to_download)


def safe_join(root: Path, relative_path: str) -> Path:
    raw = (relative_path or "").replace("\\", "/").strip()
    if "\x00" in raw:
        raise PathTraversal(f"Blocked path with NUL byte: {relative_path!r}")
    if raw.startswith("/") or _DRIVE_PREFIX_RE.match(raw):
        raise PathTraversal(f"Blocked absolute path: {relative_path}")
    normalized = normalize_path(raw)
    root_full = os.path.abspath(root)
    full = os.path.normpath(os.path.join(root_full, *normalized.split("/")))
    if full != root_full and not full.startswith(root_full.rstrip(os.sep) + os.sep):
        raise PathTraversal(f"Blocked path outside output dir: {relative_path}")
    return Path(full)


def _resolve_entries(
    entries: Sequence[ManifestEntry], root: Path, log: logging.Logger
) -> Tuple[List[str], List[Tuple[ManifestEntry, str, Path]]]:
    directories: List[str] = []
    files: List[Tuple[ManifestEntry, str, Path]] = []
    seen: set[str] = set()
    for entry in entries:
        rel_path = normalize_path(entry.path)
        local_path = safe_join(root, entry.path)
        if not rel_path:
            continue
        if entry.is_directory:
            if rel_path not in directories:
                directories.append(rel_path)
            continue
        if rel_path in seen:
            log.warning("Duplicate manifest path ignored: %s", rel_path)
            continue
        seen.add(rel_path)
        files.append((entry, rel_path, local_path))
    return directories, files


def _is_reusable(entry: ManifestEntry, local_path: Path, hasher: Hasher) -> bool:
    if not local_path.is_file():
        return False
    try:
        if local_path.stat().st_size != entry.size:
            return False
    except OSError:
        return False
    if not entry.content_hash:
        return False
    try:
        local_hash = hasher(local_path)
    except OSError:
        return False
    return local_hash == entry.content_hash


def plan(
    entries: Sequence[ManifestEntry],
    target_dir: Path,
    hasher: Hasher = sha1_file,
    log: logging.Logger | None = None,
) -> SyncPlan:
    log = log or logging.getLogger("workshop_sync")
    # Every path is validated before anything is read from disk.
    directories, files = _resolve_entries(entries, target_dir, log)
    result = SyncPlan(directories=directories)
    for entry, rel_path, local_path in files:
        if _is_reusable(entry, local_path, hasher):
            result.to_copy.append(CopyItem(local_path, rel_path))
        else:
            result.to_download.append(entry)
    return result
