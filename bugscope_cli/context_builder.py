"""Assemble a size-bounded code context for the analysis prompt.

The preferred form is *chunked*: the best-scoring functions and classes of
the top-ranked files.  When that yields too little text the assembler falls
back to *line windows*: the code around each stack-trace line plus raw
prefixes of the remaining files.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

from . import config
from .chunker import get_relevant_chunks
from .models import CodeChunk, ContextBundle, ErrorLocation, FileCandidate

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 60_000
MIN_USEFUL_CHARS = 500
CHUNKED_MAX_FILES = 10
LINE_WINDOW_MAX_FILES = 15
LINE_WINDOW_RADIUS = 20
LINE_WINDOW_MAX_CHARS = 6_000

FENCE_LANGUAGES = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
}


def _fence(path: str) -> str:
    return FENCE_LANGUAGES.get(os.path.splitext(path)[1].lower(), "")


def _read(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return handle.read()
    except OSError as exc:
        logger.debug("Skipping unreadable file %s: %s", path, exc)
        return None


# ---------------------------------------------------------------------------
# File readers
# ---------------------------------------------------------------------------

def read_file_with_context(path: str, max_chars: int = 4000) -> str:
    """Return a fenced prefix of *path* (at most *max_chars* of code)."""
    content = _read(path)
    if content is None:
        return ""
    total_lines = len(content.split("\n"))
    lang = _fence(path)
    if len(content) <= max_chars:
        return f"### {path} ({total_lines} lines)\n```{lang}\n{content}\n```"

    truncated = content[:max_chars]
    shown = len(truncated.split("\n"))
    return f"### {path} (showing {shown}/{total_lines} lines)\n```{lang}\n{truncated}\n... (truncated)\n```"


def read_file_with_line_context(
    path: str,
    target_line: int,
    context_lines: int = LINE_WINDOW_RADIUS,
    max_chars: int = LINE_WINDOW_MAX_CHARS,
) -> str:
    """Return the window around *target_line* with gutters and a ``>>>`` marker."""
    content = _read(path)
    if content is None:
        return ""
    lines = content.split("\n")
    total_lines = len(lines)
    if target_line <= 0 or target_line > total_lines:
        return read_file_with_context(path, max_chars)

    start = max(0, target_line - 1 - context_lines)
    end = min(total_lines, target_line + context_lines)
    window = []
    for offset, line in enumerate(lines[start:end]):
        number = start + offset + 1
        marker = ">>>" if number == target_line else "   "
        window.append(f"{marker} {number:>4}: {line}")
    body = "\n".join(window)[:max_chars]

    header = f"### {path} (lines {start + 1}-{end} of {total_lines}, error at line {target_line})"
    return f"{header}\n```{_fence(path)}\n{body}\n```"


# ---------------------------------------------------------------------------
# Chunked context
# ---------------------------------------------------------------------------

def collect_file_chunks(
    files: Sequence[FileCandidate],
    error_locations: Sequence[ErrorLocation],
    keywords: Sequence[str],
    max_files: int = CHUNKED_MAX_FILES,
    max_workers: Optional[int] = None,
) -> List[Tuple[str, List[CodeChunk]]]:
    """Relevant chunks for each of the top *max_files* files, in rank order."""
    paths = [f.path for f in files[:max_files]]
    workers = max(1, max_workers or config.MAX_WORKERS)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        per_file = list(pool.map(lambda p: get_relevant_chunks(p, error_locations, keywords), paths))
    return list(zip(paths, per_file))


def format_chunked_context(
    file_chunks: Sequence[Tuple[str, List[CodeChunk]]],
    max_total_chars: int = MAX_CONTEXT_CHARS,
) -> str:
    parts: List[str] = []
    total = 0

    for path, chunks in file_chunks:
        if total >= max_total_chars:
            break
        header = f"### {path}\n"
        used = total + (2 if parts else 0) + len(header)
        lang = _fence(path)
        body = ""
        for chunk in chunks:
            block = (
                f"#### {chunk.kind}: {chunk.name} (lines {chunk.start_line}-{chunk.end_line})\n"
                f"```{lang}\n{chunk.content}\n```\n"
            )
            if used + len(body) + len(block) <= max_total_chars:
                body += block
        if body:
            parts.append(header + body)
            total = used + len(body)

    return "\n\n".join(parts)


def build_chunked_context(
    files: Sequence[FileCandidate],
    error_locations: Sequence[ErrorLocation],
    keywords: Sequence[str],
    max_total_chars: int = MAX_CONTEXT_CHARS,
) -> str:
    return format_chunked_context(collect_file_chunks(files, error_locations, keywords), max_total_chars)


# ---------------------------------------------------------------------------
# Line-window fallback
# ---------------------------------------------------------------------------

def build_code_context(
    files: Sequence[FileCandidate],
    error_locations: Sequence[ErrorLocation],
    max_total_chars: int = MAX_CONTEXT_CHARS,
) -> str:
    """Line-window context: stack-trace files first, then the rest by rank."""
    parts: List[str] = []
    total = 0
    processed: set = set()

    for loc in error_locations:
        if total >= max_total_chars:
            break
        match = next(
            (f for f in files if os.path.basename(f.path).lower() == loc.file.lower()),
            None,
        )
        if match is None or match.path in processed:
            continue
        processed.add(match.path)
        if loc.line:
            text = read_file_with_line_context(match.path, loc.line)
        else:
            text = read_file_with_context(match.path, 4000)
        if text:
            parts.append(text)
            total += len(text) + 2

    for candidate in files:
        if total >= max_total_chars or len(processed) >= LINE_WINDOW_MAX_FILES:
            break
        if candidate.path in processed:
            continue
        processed.add(candidate.path)
        allocated = 4000 if candidate.relevance_score > 50 else 3000
        text = read_file_with_context(candidate.path, allocated)
        if text:
            parts.append(text)
            total += len(text) + 2

    return "\n\n".join(parts)[:max_total_chars]


def assemble_context(
    files: Sequence[FileCandidate],
    error_locations: Sequence[ErrorLocation],
    keywords: Sequence[str],
    max_total_chars: int = MAX_CONTEXT_CHARS,
    min_useful_chars: int = MIN_USEFUL_CHARS,
) -> ContextBundle:
    """Chunked context, or the line-window fallback when it is too small."""
    file_chunks = collect_file_chunks(files, error_locations, keywords)
    chunks = [chunk for _, file_chunk_list in file_chunks for chunk in file_chunk_list]
    text = format_chunked_context(file_chunks, max_total_chars)

    if len(text) > min_useful_chars:
        return ContextBundle(text=text, mode="chunked", chunks=chunks)

    logger.debug("Chunked context too small (%d chars); using line windows", len(text))
    return ContextBundle(
        text=build_code_context(files, error_locations, max_total_chars),
        mode="line-window",
        chunks=chunks,
    )
