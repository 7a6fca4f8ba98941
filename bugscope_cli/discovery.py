"""File discovery: score repository files against bug-report signals.

Discovery is a two-phase, bounded search:

1. Walk the tree (depth and count capped) and score every source file by
   its path alone.  This is cheap and needs no file reads.
2. Read the best path-ranked candidates and add a content score built from
   stack-trace files, function names, error messages and keywords.

The final ``relevance_score`` is ``path_score + content_score * 2``.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import config
from .models import ErrorLocation, FileCandidate

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS: Tuple[str, ...] = tuple(config.SUPPORTED_EXTENSIONS)
DEFAULT_IGNORE_DIRS: Tuple[str, ...] = tuple(config.IGNORED_DIRS)

MAX_WALK_DEPTH = 6
MAX_WALK_FILES = 200
CONTENT_SCORED_CANDIDATES = 50
MAX_READ_CHARS = 50_000

# (substrings, bonus) applied to the lower-cased relative path
ROLE_PRIORS: List[Tuple[Tuple[str, ...], int]] = [
    (("error", "exception"), 10),
    (("handler", "controller"), 8),
    (("api/", "route"), 7),
    (("page.tsx", "page.ts"), 6),
    (("component",), 5),
    (("hook", "use"), 4),
    (("store", "state"), 4),
    (("util", "lib", "helper"), 3),
    (("service", "client"), 3),
    (("config", "setting"), 2),
]
TEST_FILE_PENALTY = 10


# ---------------------------------------------------------------------------
# Path scoring
# ---------------------------------------------------------------------------

def is_test_file(path: str) -> bool:
    lower = path.replace(os.sep, "/").lower()
    name = lower.rsplit("/", 1)[-1]
    return (
        ".test." in lower
        or ".spec." in lower
        or "__test__" in lower
        or name.startswith("test_")
        or "/tests/" in f"/{lower}"
    )


def calculate_path_relevance(path: str, keywords: Iterable[str]) -> int:
    """Score a path by keyword hits and role priors."""
    score = 0
    lower = path.replace(os.sep, "/").lower()

    for keyword in keywords:
        if len(keyword) < 2:
            continue
        if keyword.lower() in lower:
            score += 15

    for needles, bonus in ROLE_PRIORS:
        if any(needle in lower for needle in needles):
            score += bonus

    if is_test_file(path):
        score -= TEST_FILE_PENALTY

    return score


# ---------------------------------------------------------------------------
# Content scoring
# ---------------------------------------------------------------------------

def _declaration_idioms(name: str) -> List[str]:
    return [
        f"function {name}",
        f"const {name}",
        f"{name}(",
        f"{name} =",
        f".{name}(",
        f"def {name}",
    ]


def search_file_content(
    path: str,
    keywords: Sequence[str],
    error_locations: Sequence[ErrorLocation] = (),
    error_messages: Sequence[str] = (),
    max_read_chars: int = MAX_READ_CHARS,
) -> Tuple[int, List[str]]:
    """Score file content against report signals.

    Returns ``(content_score, matched_keywords)``; an unreadable file
    scores ``(0, [])``.
    """
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            content = handle.read(max_read_chars).lower()
    except OSError as exc:
        logger.debug("Skipping unreadable file %s: %s", path, exc)
        return 0, []

    score = 0
    matched: List[str] = []
    basename = os.path.basename(path).lower()

    # Stack-trace file hits
    for loc in error_locations:
        if basename != loc.file.lower():
            continue
        score += 50
        matched.append(f"stacktrace:{loc.file}")
        if loc.line and loc.function_name and loc.function_name.lower() in content:
            score += 20
            matched.append(f"function:{loc.function_name}")

    # Function names from the stack trace
    function_names = list(dict.fromkeys(loc.function_name for loc in error_locations if loc.function_name))
    for name in function_names:
        lower_name = name.lower()
        if any(idiom in content for idiom in _declaration_idioms(lower_name)):
            score += 25
            matched.append(f"function:{name}")

    # Error message fragments
    for message in error_messages:
        words = [w for w in message.lower().split() if len(w) > 3]
        hits = sum(1 for w in words if w in content)
        if hits >= 2 or (len(words) == 1 and hits == 1):
            score += 15
            matched.append(f"error:{message[:30]}")

    # Plain keyword occurrences, capped per keyword
    for keyword in keywords:
        lower_kw = keyword.lower()
        if len(lower_kw) < 3:
            continue
        occurrences = content.count(lower_kw)
        if occurrences:
            score += min(occurrences * 5, 20)
            matched.append(keyword)

    return score, list(dict.fromkeys(matched))


# ---------------------------------------------------------------------------
# Walking
# ---------------------------------------------------------------------------

def _walk_source_files(
    root: Path,
    extensions: Sequence[str],
    ignore_dirs: Sequence[str],
    max_depth: int = MAX_WALK_DEPTH,
    max_files: int = MAX_WALK_FILES,
) -> List[Tuple[Path, int]]:
    found: List[Tuple[Path, int]] = []
    ignored = set(ignore_dirs)

    def walk(current: Path, depth: int) -> None:
        if depth > max_depth or len(found) >= max_files:
            return
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            logger.debug("Skipping unreadable directory %s: %s", current, exc)
            return

        for entry in entries:
            if len(found) >= max_files:
                return
            try:
                if entry.is_dir(follow_symlinks=False):
                    if not entry.name.startswith(".") and entry.name not in ignored:
                        walk(Path(entry.path), depth + 1)
                elif entry.is_file() and entry.name.endswith(tuple(extensions)):
                    found.append((Path(entry.path), entry.stat().st_size))
            except OSError as exc:
                logger.debug("Skipping %s: %s", entry.path, exc)

    walk(root, 0)
    return found


def find_relevant_files(
    root: str,
    keywords: Sequence[str],
    error_locations: Optional[Sequence[ErrorLocation]] = None,
    error_messages: Optional[Sequence[str]] = None,
    max_files: int = 25,
    extensions: Sequence[str] = DEFAULT_EXTENSIONS,
    ignore_dirs: Sequence[str] = DEFAULT_IGNORE_DIRS,
    max_workers: Optional[int] = None,
) -> List[FileCandidate]:
    """Return up to *max_files* candidates sorted by descending relevance."""
    base = Path(root).resolve()
    error_locations = list(error_locations or [])
    error_messages = list(error_messages or [])

    candidates: List[FileCandidate] = []
    for file_path, size in _walk_source_files(base, extensions, ignore_dirs):
        relative = file_path.relative_to(base).as_posix()
        path_score = calculate_path_relevance(relative, keywords)
        candidates.append(
            FileCandidate(
                path=str(file_path),
                size=size,
                path_score=path_score,
                relevance_score=path_score,
            )
        )

    candidates.sort(key=lambda c: c.path_score, reverse=True)
    top = candidates[:CONTENT_SCORED_CANDIDATES]

    results: Dict[str, Tuple[int, List[str]]] = {}
    workers = max(1, max_workers or config.MAX_WORKERS)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {
            pool.submit(search_file_content, c.path, keywords, error_locations, error_messages): c.path
            for c in top
        }
        for future in as_completed(futures):
            results[futures[future]] = future.result()

    for candidate in top:
        content_score, matched = results.get(candidate.path, (0, []))
        candidate.content_score = content_score
        candidate.matched_keywords = matched
        candidate.relevance_score = candidate.path_score + content_score * 2

    top.sort(key=lambda c: c.relevance_score, reverse=True)

    for match in [c for c in top[:5] if c.relevance_score > 0]:
        logger.debug(
            "Candidate %s score=%d keywords=%s",
            match.path,
            match.relevance_score,
            ", ".join(match.matched_keywords[:3]),
        )

    return top[:max_files]
