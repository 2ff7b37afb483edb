from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from content import ManifestEntry


def normalize_path(path: str | None) -> str:
    if not path:
        return ""
    normalized = path.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.lstrip("/")
    normalized = re.sub(r"/{2,}", "/", normalized)
    return normalized


def normalize_pattern(pattern: str) -> str:
    normalized = normalize_path(pattern)
    if not normalized:
        return ""
    if "/" not in normalized and not normalized.startswith("**/"):
        normalized = f"**/{normalized}"
    return normalized


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    # '*' stays inside one path segment, '**' crosses separators.
    # '**/' may also match nothing so that '**/a.ini' covers a top-level 'a.ini'.
    parts: List[str] = ["^"]
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "*":
            if pattern.startswith("**/", index):
                parts.append("(?:.*/)?")
                index += 3
                continue
            if pattern.startswith("**", index):
                parts.append(".*")
                index += 2
                continue
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        index += 1
    parts.append("$")
    return re.compile("".join(parts), re.IGNORECASE)


@dataclass(frozen=True)
class Matcher:
    patterns: tuple[str, ...]
    regexes: tuple[re.Pattern[str], ...]

    @property
    def accepts_all(self) -> bool:
        return not self.regexes

    def matches(self, relative_path: str) -> bool:
        if not self.regexes:
            return True
        normalized = normalize_path(relative_path)
        return any(regex.match(normalized) for regex in self.regexes)

    def select(self, entries: Iterable[ManifestEntry]) -> List[ManifestEntry]:
        selected: List[ManifestEntry] = []
        for entry in entries:
            if entry.is_directory:
                continue
            if not normalize_path(entry.path):
                continue
            if self.matches(entry.path):
                selected.append(entry)
        return selected


def compile_filters(patterns: Sequence[str] | None) -> Matcher:
    normalized: List[str] = []
    regexes: List[re.Pattern[str]] = []
    for pattern in patterns or []:
        value = normalize_pattern(pattern)
        if not value:
            continue
        normalized.append(value)
        regexes.append(glob_to_regex(value))
    return Matcher(tuple(normalized), tuple(regexes))
