"""Heuristic structural chunking of source files.

Splits a file into top-level function / class / interface / type units
using declaration regexes plus brace balancing.  It is deliberately not a
grammar: braces inside strings or template literals can confuse it, and
that is accepted.  Extraction never raises; a file that cannot be read or
scanned simply yields no chunks.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Pattern, Sequence, Tuple

from .models import CodeChunk, ErrorLocation

logger = logging.getLogger(__name__)

# (pattern, kind, name group), tried in order against the stripped line
DECLARATION_PATTERNS: List[Tuple[Pattern[str], str, int]] = [
    (re.compile(r"^export\s+(?:default\s+)?(async\s+)?function\s+(\w+)\s*\("), "function", 2),
    (re.compile(r"^(async\s+)?function\s+(\w+)\s*\("), "function", 2),
    (
        re.compile(r"^(?:export\s+)?const\s+(\w+)\s*=\s*(async\s+)?\([^)]*\)\s*(:\s*[^=]+)?\s*=>"),
        "function",
        1,
    ),
    (re.compile(r"^(?:export\s+)?class\s+(\w+)"), "class", 1),
    (re.compile(r"^(?:export\s+)?interface\s+(\w+)"), "interface", 1),
    (re.compile(r"^(?:export\s+)?type\s+(\w+)\s*="), "type", 1),
]

COMMENT_PREFIXES = ("//", "*", "#")
# A declaration line ending like this continues on the next line
CONTINUATION_SUFFIXES = ("(", ",", "=>")


# ===================================================================
# Extractor interface
# ===================================================================

class StructuralExtractor(ABC):
    """Turns raw file text into ordered, disjoint code chunks."""

    @abstractmethod
    def extract(self, content: str) -> List[CodeChunk]:
        """Return the chunks found in *content*; must not raise."""
        ...


class RegexStructuralExtractor(StructuralExtractor):
    """Line-oriented declaration matcher with brace-depth block detection."""

    def extract(self, content: str) -> List[CodeChunk]:
        try:
            return self._extract(content)
        except Exception as exc:  # malformed input must never escape the chunker
            logger.debug("Chunk extraction failed: %s", exc)
            return []

    def _extract(self, content: str) -> List[CodeChunk]:
        lines = content.split("\n")
        consumed: set = set()
        chunks: List[CodeChunk] = []

        for idx, raw in enumerate(lines):
            if idx in consumed:
                continue
            stripped = raw.strip()
            if not stripped or stripped.startswith(COMMENT_PREFIXES):
                continue

            declaration = _match_declaration(stripped)
            if declaration is None:
                continue
            kind, name = declaration
            end = self._block_end(lines, idx)
            chunks.append(
                CodeChunk(
                    kind=kind,
                    name=name,
                    start_line=idx + 1,
                    end_line=end + 1,
                    content="\n".join(lines[idx:end + 1]),
                    signature=re.sub(r"\{.*$", "", stripped).strip(),
                )
            )
            consumed.update(range(idx, end + 1))

        return chunks

    @staticmethod
    def _opens_block(lines: List[str], start: int) -> bool:
        line = lines[start]
        if "{" in line:
            return True
        if line.rstrip().endswith(CONTINUATION_SUFFIXES):
            return True
        for following in lines[start + 1:]:
            if following.strip():
                return following.strip().startswith("{")
        return False

    @classmethod
    def _block_end(cls, lines: List[str], start: int) -> int:
        """Index of the line closing the block opened at *start*.

        The scan ends at the first return to depth zero after at least one
        ``{``; an unterminated block runs to the last line.  Before any ``{``
        is seen, a line ending in ``;`` ends the declaration there and the
        next declaration ends it just above.
        """
        if not cls._opens_block(lines, start):
            return start

        depth = 0
        opened = False
        for idx in range(start, len(lines)):
            line = lines[idx]
            if not opened and idx > start and _match_declaration(line.strip()):
                end = idx - 1
                while end > start and not lines[end].strip():
                    end -= 1
                return end
            for char in line:
                if char == "{":
                    depth += 1
                    opened = True
                elif char == "}":
                    depth -= 1
                    if opened and depth == 0:
                        return idx
            if not opened and line.rstrip().endswith(";"):
                return idx
        return len(lines) - 1


def _match_declaration(stripped: str) -> Optional[Tuple[str, str]]:
    """Return ``(kind, name)`` when *stripped* starts a declaration."""
    for pattern, kind, group in DECLARATION_PATTERNS:
        match = pattern.match(stripped)
        if match:
            return kind, match.group(group) or "anonymous"
    return None


_default_extractor = RegexStructuralExtractor()


def extract_code_chunks(content: str, extractor: Optional[StructuralExtractor] = None) -> List[CodeChunk]:
    return (extractor or _default_extractor).extract(content)


# ===================================================================
# Relevance
# ===================================================================

def score_chunk(chunk: CodeChunk, error_locations: Sequence[ErrorLocation], keywords: Sequence[str]) -> int:
    """Score a chunk against stack-trace locations and keywords."""
    score = 0
    chunk_name = chunk.name.lower()

    for loc in error_locations:
        if loc.line and chunk.start_line <= loc.line <= chunk.end_line:
            score += 100
        if loc.function_name and loc.function_name.lower() in chunk_name:
            score += 50

    haystack = f"{chunk.name} {chunk.signature}".lower()
    for keyword in keywords:
        if len(keyword) > 2 and keyword.lower() in haystack:
            score += 10

    if chunk.signature.startswith("export"):
        score += 5

    return score


def get_relevant_chunks(
    path: str,
    error_locations: Sequence[ErrorLocation],
    keywords: Sequence[str],
    max_chunks: int = 5,
    extractor: Optional[StructuralExtractor] = None,
) -> List[CodeChunk]:
    """Return the highest-scoring chunks of *path*; zero-score chunks are dropped."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            content = handle.read()
    except OSError as exc:
        logger.debug("Skipping unreadable file %s: %s", path, exc)
        return []

    scored = [
        (score_chunk(chunk, error_locations, keywords), chunk)
        for chunk in extract_code_chunks(content, extractor)
    ]
    scored = [item for item in scored if item[0] > 0]
    scored.sort(key=lambda item: item[0], reverse=True)
    return [chunk for _, chunk in scored[:max_chunks]]
