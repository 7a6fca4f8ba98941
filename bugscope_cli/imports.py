"""Import parsing and dependency-graph expansion of discovered files."""

from __future__ import annotations

import logging
import math
import os
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from . import config
from .models import DependencyGraph, FileCandidate

logger = logging.getLogger(__name__)

RESOLVE_EXTENSIONS = [".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".py"]
IMPORTED_SCORE_DECAY = 0.6

# import x from '..' / import {a} from '..' / import * as x from '..' / import '..'
STATIC_IMPORT = re.compile(
    r"""import\s+(?:(?:\{[^}]*\}|\*\s+as\s+\w+|\w+(?:\s*,\s*\{[^}]*\})?)\s+from\s+)?['"]([^'"]+)['"]"""
)
REQUIRE_CALL = re.compile(r"""require\s*\(\s*['"]([^'"]+)['"]\s*\)""")
DYNAMIC_IMPORT = re.compile(r"""import\s*\(\s*['"]([^'"]+)['"]\s*\)""")
RE_EXPORT = re.compile(r"""export\s+(?:\{[^}]*\}|\*)\s+from\s+['"]([^'"]+)['"]""")
PYTHON_RELATIVE = re.compile(r"^\s*from\s+(\.+)([\w.]*)\s+import\s", re.MULTILINE)


@dataclass
class ImportInfo:
    source: str
    kind: str  # import | require | dynamic
    is_relative: bool


def _python_spec_to_path(dots: str, module: str) -> str:
    prefix = "." if len(dots) == 1 else "/".join([".."] * (len(dots) - 1))
    if not module:
        return prefix
    return f"{prefix}/{module.replace('.', '/')}"


def parse_imports(content: str) -> List[ImportInfo]:
    """Return distinct import specifiers found in *content*, in pattern order."""
    imports: List[ImportInfo] = []
    seen: set = set()

    def add(source: str, kind: str) -> None:
        if source and source not in seen:
            seen.add(source)
            imports.append(ImportInfo(source, kind, source.startswith((".", "/"))))

    for match in STATIC_IMPORT.finditer(content):
        add(match.group(1), "import")
    for match in REQUIRE_CALL.finditer(content):
        add(match.group(1), "require")
    for match in DYNAMIC_IMPORT.finditer(content):
        add(match.group(1), "dynamic")
    for match in RE_EXPORT.finditer(content):
        add(match.group(1), "import")
    for match in PYTHON_RELATIVE.finditer(content):
        add(_python_spec_to_path(match.group(1), match.group(2)), "import")

    return imports


def resolve_import_path(source: str, from_file: str, base_dir: str) -> Optional[str]:
    """Resolve a relative specifier to an existing file, or ``None``.

    Order: ``base + ext``, then ``base/index + ext`` (and
    ``base/__init__.py``), then ``base`` itself when it is a file.
    Package specifiers are never resolved.
    """
    if not source.startswith((".", "/")):
        return None

    if source.startswith("/"):
        base = Path(base_dir) / source.lstrip("/")
    else:
        base = Path(os.path.dirname(from_file)) / source

    base_str = os.path.normpath(str(base))
    for ext in RESOLVE_EXTENSIONS:
        candidate = base_str + ext
        if os.path.isfile(candidate):
            return str(Path(candidate).resolve())

    for ext in RESOLVE_EXTENSIONS:
        candidate = os.path.join(base_str, f"index{ext}")
        if os.path.isfile(candidate):
            return str(Path(candidate).resolve())
    init_file = os.path.join(base_str, "__init__.py")
    if os.path.isfile(init_file):
        return str(Path(init_file).resolve())

    if os.path.isfile(base_str):
        return str(Path(base_str).resolve())

    return None


def _resolved_imports(path: str, base_dir: str) -> List[str]:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            content = handle.read()
    except OSError as exc:
        logger.debug("Skipping unreadable file %s: %s", path, exc)
        return []

    resolved: List[str] = []
    for info in parse_imports(content):
        if not info.is_relative:
            continue
        target = resolve_import_path(info.source, path, base_dir)
        if target and target != path and target not in resolved:
            resolved.append(target)
    return resolved


def build_import_graph(
    files: Sequence[FileCandidate],
    base_dir: str,
    max_files_to_parse: int = 20,
    max_workers: Optional[int] = None,
) -> DependencyGraph:
    """Map each of the first *max_files_to_parse* files to the files it imports."""
    to_parse = [f.path for f in files[:max_files_to_parse]]
    workers = max(1, max_workers or config.MAX_WORKERS)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        resolved = list(pool.map(lambda p: _resolved_imports(p, base_dir), to_parse))

    graph: DependencyGraph = {}
    for path, targets in zip(to_parse, resolved):
        if targets:
            graph[path] = targets
    return graph


def expand_files_with_imports(
    files: Sequence[FileCandidate],
    graph: DependencyGraph,
    max_expansion: int = 10,
) -> List[FileCandidate]:
    """Append up to *max_expansion* imported files not already in *files*.

    Each new file inherits ``floor(0.6 * importer score)`` and an
    ``imported-by:<basename>`` tag; the additions are sorted by score and
    appended after the existing candidates.
    """
    existing = {os.path.realpath(f.path) for f in files}
    by_path = {f.path: f for f in files}
    added: List[FileCandidate] = []

    for source, targets in graph.items():
        importer = by_path.get(source)
        base_score = importer.relevance_score if importer else 0
        for target in targets:
            if len(added) >= max_expansion:
                break
            key = os.path.realpath(target)
            if key in existing:
                continue
            existing.add(key)
            try:
                size = os.stat(target).st_size
            except OSError as exc:
                logger.debug("Skipping import target %s: %s", target, exc)
                continue
            added.append(
                FileCandidate(
                    path=target,
                    size=size,
                    relevance_score=math.floor(base_score * IMPORTED_SCORE_DECAY),
                    matched_keywords=[f"imported-by:{os.path.basename(source)}"],
                )
            )

    added.sort(key=lambda c: c.relevance_score, reverse=True)
    if added:
        logger.debug("Import expansion added %d files", len(added))
    return [*files, *added]
