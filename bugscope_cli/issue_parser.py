"""Signal extraction from free-text bug reports.

Pulls stack-trace locations, error messages, and search keywords out of an
issue title and body.  Everything here is pure text processing; the output
feeds level determination and file discovery.
"""

from __future__ import annotations

import logging
import os
import re
from typing import List, Optional, Pattern, Tuple

from .models import ErrorLocation, IssueContext

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Stack-trace frame formats
# ---------------------------------------------------------------------------
# Node / Chrome / React: "at fn (http://host/src/file.tsx:10:5)" or "at src/file.js:10:5"
NODE_FRAME = re.compile(r"at\s+(?:(\w[\w.<>]*)\s+)?\(?(?:https?://[^/]+)?([^:)\s]+):(\d+):(\d+)\)?")
# Firefox: "fn@src/file.js:10:5"
FIREFOX_FRAME = re.compile(r"(\w+)@([^:\s]+):(\d+):(\d+)")
# Python: 'File "app/views.py", line 10, in handler'
PYTHON_FRAME = re.compile(r'File\s+"([^"]+)",\s+line\s+(\d+)(?:,\s+in\s+(\w+))?')
# Generic: "file.ts:10" or "file.ts:10:5"
GENERIC_FRAME = re.compile(r"([\w./-]+\.(?:ts|tsx|js|jsx|py|go|rs|java|kt)):(\d+)(?::(\d+))?")
# Bundlers: "webpack:///./src/file.tsx:10"
WEBPACK_FRAME = re.compile(r"webpack:///\./([^?:\s]+)(?::(\d+))?")

ERROR_MESSAGE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:TypeError|ReferenceError|SyntaxError|RangeError|Error):\s*(.+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"(?:Uncaught|Unhandled)\s+(?:Error|Exception):\s*(.+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"(?:error|Error|ERROR):\s*(.+?)(?:\n|$)"),
    re.compile(r"(?:AssertionError|assertion failed):\s*(.+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"(?:NetworkError|FetchError|AxiosError):\s*(.+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"(?:4\d{2}|5\d{2})\s+(?:error)?:?\s*(.+?)(?:\n|$)", re.IGNORECASE),
]

# tsx/jsx listed before ts/js so the longer extension wins
FILE_PATH_KEYWORD = re.compile(r"(?:[\w-]+/)*[\w-]+\.(?:tsx|ts|jsx|js|py|go|rs|java|kt)\b")
ERROR_TYPE_KEYWORD = re.compile(
    r"(?:Error|Exception|TypeError|ReferenceError|SyntaxError|RuntimeError|NullPointerException)"
)
IDENTIFIER_KEYWORD = re.compile(r"\b[A-Z][a-zA-Z0-9]{2,}\b|\b[a-z]+[A-Z][a-zA-Z0-9]*\b")
MAX_IDENTIFIER_KEYWORDS = 15


def _unique(items: List[str]) -> List[str]:
    return list(dict.fromkeys(item for item in items if item))


def _to_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value else None


def extract_error_locations(text: str) -> List[ErrorLocation]:
    """Extract stack-trace locations, one entry per file basename.

    Frame formats are tried in a fixed order (Node/Chrome, Firefox, Python,
    generic ``file:line``, webpack); the first frame seen for a basename
    wins and later frames for the same file are ignored.
    """
    locations: List[ErrorLocation] = []
    seen: set = set()

    def add(raw_file: str, line: Optional[int], column: Optional[int], function_name: Optional[str]) -> None:
        name = os.path.basename(raw_file.rstrip("/"))
        if not name or name in seen:
            return
        seen.add(name)
        locations.append(
            ErrorLocation(file=name, line=line, column=column, function_name=function_name or None)
        )

    for match in NODE_FRAME.finditer(text):
        add(match.group(2), _to_int(match.group(3)), _to_int(match.group(4)), match.group(1))
    for match in FIREFOX_FRAME.finditer(text):
        add(match.group(2), _to_int(match.group(3)), _to_int(match.group(4)), match.group(1))
    for match in PYTHON_FRAME.finditer(text):
        add(match.group(1), _to_int(match.group(2)), None, match.group(3))
    for match in GENERIC_FRAME.finditer(text):
        add(match.group(1), _to_int(match.group(2)), _to_int(match.group(3)), None)
    for match in WEBPACK_FRAME.finditer(text):
        add(match.group(1), _to_int(match.group(2)), None, None)

    return locations


def extract_error_messages(text: str) -> List[str]:
    """Extract distinct error message texts (longer than three characters)."""
    messages: List[str] = []
    for pattern in ERROR_MESSAGE_PATTERNS:
        for match in pattern.finditer(text):
            message = match.group(1)
            if message and len(message) > 3:
                messages.append(message.strip())
    return _unique(messages)


def extract_keywords(text: str, locations: Optional[List[ErrorLocation]] = None) -> List[str]:
    """Collect search keywords: file paths, error types, identifiers, frame names."""
    keywords: List[str] = []
    keywords.extend(m.group(0) for m in FILE_PATH_KEYWORD.finditer(text))
    keywords.extend(m.group(0) for m in ERROR_TYPE_KEYWORD.finditer(text))
    identifiers = [m.group(0) for m in IDENTIFIER_KEYWORD.finditer(text)]
    keywords.extend(identifiers[:MAX_IDENTIFIER_KEYWORDS])

    if locations is None:
        locations = extract_error_locations(text)
    keywords.extend(loc.file for loc in locations)
    keywords.extend(loc.function_name for loc in locations if loc.function_name)

    return _unique(keywords)


def build_issue_context(
    title: str,
    body: str,
    issue_number: int = 0,
    owner: str = "",
    repo: str = "",
) -> IssueContext:
    """Build an :class:`IssueContext` from raw issue text."""
    full_text = f"{title} {body}"
    locations = extract_error_locations(full_text)
    context = IssueContext(
        title=title,
        body=body,
        issue_number=issue_number,
        owner=owner,
        repo=repo,
        keywords=extract_keywords(full_text, locations),
        error_locations=locations,
        error_messages=extract_error_messages(full_text),
    )
    logger.debug(
        "Parsed issue: %d keywords, %d locations, %d messages",
        len(context.keywords),
        len(context.error_locations),
        len(context.error_messages),
    )
    return context


def split_issue_file(text: str, title: Optional[str] = None) -> Tuple[str, str]:
    """Split an issue file into (title, body).

    The first non-empty line (with any leading ``#`` stripped) is the title
    unless *title* is given, in which case the whole text is the body.
    """
    if title is not None:
        return title, text
    lines = text.splitlines()
    for idx, line in enumerate(lines):
        if line.strip():
            return line.strip().lstrip("#").strip(), "\n".join(lines[idx + 1:]).strip("\n")
    return "", ""
