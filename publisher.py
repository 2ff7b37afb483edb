from __future__ import annotations

import logging
import os
from pathlib import Path

from errors import FilesystemFailure, PublishRollbackFailed
from utils import ensure_dir, remove_tree

STAGING_SUFFIX = ".tmp"
BACKUP_SUFFIX = ".old"


def _with_suffix(target_dir: Path, suffix: str) -> Path:
    full = os.path.abspath(target_dir).rstrip("/\\")
    return Path(f"{full}{suffix}")


def staging_path_for(target_dir: Path) -> Path:
    return _with_suffix(target_dir, STAGING_SUFFIX)


def backup_path_for(target_dir: Path) -> Path:
    return _with_suffix(target_dir, BACKUP_SUFFIX)


def stage(target_dir: Path) -> Path:
    staging_dir = staging_path_for(target_dir)
    try:
        remove_tree(staging_dir)
        ensure_dir(staging_dir)
    except OSError as exc:
        raise FilesystemFailure(f"Failed to prepare staging dir {staging_dir}: {exc}", stage="stage") from exc
    return staging_dir


def discard(staging_dir: Path, log: logging.Logger | None = None) -> None:
    log = log or logging.getLogger("workshop_sync")
    try:
        remove_tree(staging_dir)
    except OSError as exc:
        log.warning("Failed to remove staging dir %s: %s", staging_dir, exc)


def publish(target_dir: Path, staging_dir: Path, log: logging.Logger | None = None) -> None:
    log = log or logging.getLogger("workshop_sync")
    target_full = Path(os.path.abspath(target_dir))
    staging_full = Path(os.path.abspath(staging_dir))
    backup_dir = backup_path_for(target_full)

    try:
        remove_tree(backup_dir)
        had_target = target_full.exists()
        if had_target:
            os.rename(target_full, backup_dir)
    except OSError as exc:
        raise FilesystemFailure(
            f"Failed to move {target_full} aside: {exc}", stage="publish"
        ) from exc

    try:
        os.rename(staging_full, target_full)
    except OSError as exc:
        log.error("Publish of %s failed, rolling back: %s", target_full, exc)
        try:
            if target_full.exists():
                remove_tree(target_full)
            if had_target and backup_dir.exists():
                os.rename(backup_dir, target_full)
        except OSError as rollback_exc:
            raise PublishRollbackFailed(
                f"Rollback of {target_full} failed after publish error ({exc}): {rollback_exc}",
                stage="publish",
            ) from rollback_exc
        raise FilesystemFailure(
            f"Failed to publish {staging_full} to {target_full}: {exc}", stage="publish"
        ) from exc

    try:
        remove_tree(backup_dir)
    except OSError as exc:
        log.warning("Failed to remove backup dir %s: %s", backup_dir, exc)
