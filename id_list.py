from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List

from config import parse_id


def parse_ids(lines: Iterable[str], log: logging.Logger | None = None) -> List[int]:
    log = log or logging.getLogger("workshop_sync")
    ids: List[int] = []
    seen: set[int] = set()
    for line_no, line in enumerate(lines, start=1):
        raw = line.strip()
        if not raw or raw.startswith("#"):
            continue
        item_id = parse_id(raw)
        if item_id is None:
            log.warning("Skipping invalid workshop id on line %s: %s", line_no, raw)
            continue
        if item_id in seen:
            continue
        seen.add(item_id)
        ids.append(item_id)
    return ids


def read_ids(path: Path, log: logging.Logger | None = None) -> List[int]:
    with path.open("r", encoding="utf-8-sig") as handle:
        return parse_ids(handle.read().splitlines(), log)
