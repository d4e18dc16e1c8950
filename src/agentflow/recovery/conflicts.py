"""Text-level merge conflict resolution.

Resolves git conflict hunks that have an obvious answer:
- import/use lines from both sides are merged and sorted
- hunks that are only comments on both sides are concatenated
- for ``version = "x.y.z"`` lines the higher version wins
- anything else keeps our side
"""

from __future__ import annotations

import re

CONFLICT_START = "<<<<<<<"
CONFLICT_BASE = "|||||||"
CONFLICT_SEPARATOR = "======="
CONFLICT_END = ">>>>>>>"

IMPORT_PATTERN = re.compile(r"^\s*(use |import |from \S+ import |#include |require\()")
COMMENT_PREFIXES = ("//", "#", "/*", "*", "--")
VERSION_PATTERN = re.compile(r'version\s*=\s*"([^"]+)"')


def has_conflict_markers(text: str) -> bool:
    lines = text.splitlines()
    return any(line.startswith(CONFLICT_START) for line in lines) and any(
        line.startswith(CONFLICT_END) for line in lines
    )


def compare_versions(v1: str, v2: str) -> int:
    """Compare dotted numeric versions.

    Returns:
        1 if v1 > v2, -1 if v1 < v2, 0 if equal. Non-numeric parts are ignored.
    """
    parts1 = [int(p) for p in v1.split(".") if p.isdigit()]
    parts2 = [int(p) for p in v2.split(".") if p.isdigit()]
    for i in range(max(len(parts1), len(parts2))):
        a = parts1[i] if i < len(parts1) else 0
        b = parts2[i] if i < len(parts2) else 0
        if a != b:
            return 1 if a > b else -1
    return 0


def _extract_version(lines: list[str]) -> str | None:
    for line in lines:
        match = VERSION_PATTERN.search(line)
        if match:
            return match.group(1)
    return None


def _is_comment_only(lines: list[str]) -> bool:
    return all(not line.strip() or line.strip().startswith(COMMENT_PREFIXES) for line in lines)


def resolve_hunk(ours: list[str], theirs: list[str]) -> list[str]:
    """Pick the resolved lines for one conflict hunk."""
    if any(IMPORT_PATTERN.match(line) for line in ours + theirs):
        return sorted(set(ours) | set(theirs))

    our_version = _extract_version(ours)
    their_version = _extract_version(theirs)
    if our_version is not None and their_version is not None:
        return ours if compare_versions(our_version, their_version) >= 0 else theirs

    if _is_comment_only(ours) and _is_comment_only(theirs):
        return ours + theirs

    return ours


def resolve_conflict_text(text: str) -> tuple[str, int]:
    """Resolve every conflict hunk in a file's contents.

    Args:
        text: File contents containing git conflict markers.

    Returns:
        Tuple of (resolved text, number of hunks resolved).
    """
    output: list[str] = []
    ours: list[str] = []
    theirs: list[str] = []
    section = None  # "ours", "base", "theirs" while inside a hunk
    hunks = 0

    for line in text.splitlines():
        if line.startswith(CONFLICT_START):
            section = "ours"
            ours, theirs = [], []
            continue
        if section is not None and line.startswith(CONFLICT_BASE):
            section = "base"
            continue
        if section is not None and line.startswith(CONFLICT_SEPARATOR):
            section = "theirs"
            continue
        if section is not None and line.startswith(CONFLICT_END):
            output.extend(resolve_hunk(ours, theirs))
            section = None
            hunks += 1
            continue

        if section == "ours":
            ours.append(line)
        elif section == "theirs":
            theirs.append(line)
        elif section is None:
            output.append(line)

    if section is not None:
        raise ValueError("Unterminated conflict hunk")

    resolved = "\n".join(output)
    if text.endswith("\n"):
        resolved += "\n"
    return resolved, hunks
