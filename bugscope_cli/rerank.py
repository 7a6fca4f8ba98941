"""Best-effort LLM enhancements to file discovery.

Two independent helpers live here:

* **Re-ranking** asks a model to re-score the top candidates and blends the
  answer with the prior score (70% model / 30% prior).
* **Intent-first inference** extracts what the reporter was doing, asks the
  model which files of the project tree are likely involved, and merges
  those with the pattern-discovered candidates.

None of these steps retries, and none of them may fail the pipeline: every
error is logged and the caller gets its input back (or an empty result).
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import math
import os
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import ValidationError

from . import config
from .llm import LLMClient, parse_json_response
from .models import FileCandidate
from .schemas import ExtractedIntent, InferredFile, RerankEntry

logger = logging.getLogger(__name__)

RERANK_MIN_FILES = 5
RERANK_MIN_CANDIDATES = 3
SUMMARY_MIN_CHARS = 50
LLM_SCORE_SCALE = 2
LLM_BLEND_WEIGHT = 0.7

TREE_EXTENSIONS = tuple(config.SUPPORTED_EXTENSIONS) + (".vue", ".svelte")
TREE_IGNORE_DIRS = frozenset(config.IGNORED_DIRS) | {".cache"}

DECLARATION_PREFIXES = ("function ", "class ", "const ", "interface ", "type ", "def ", "async def ")


def _tag(reason: str) -> str:
    return f"llm-inferred:{reason[:30]}"


# ===================================================================
# File summaries
# ===================================================================

def extract_file_summary(path: str, max_chars: int = 800) -> str:
    """Summarise a file by its exports, declarations and imports.

    Only the first 50 lines are considered.  Falls back to a raw prefix when
    no structural line is found, and to ``""`` when the file is unreadable.
    """
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            content = handle.read()
    except OSError:
        return ""

    imports: List[str] = []
    exports: List[str] = []
    others: List[str] = []
    for line in content.split("\n")[:50]:
        stripped = line.strip()
        if stripped.startswith(("import ", "from ")) or (stripped.startswith("const ") and "require(" in stripped):
            imports.append(stripped)
        elif stripped.startswith("export "):
            exports.append(stripped)
        elif stripped.startswith(DECLARATION_PREFIXES):
            others.append(stripped)

    summary = "\n".join(exports[:5] + others[:10] + imports[:3])[:max_chars]
    if len(summary) >= max_chars:
        summary = summary[:max_chars - 3] + "..."
    return summary or content[:max_chars]


# ===================================================================
# Re-ranking
# ===================================================================

def _rerank_prompt(title: str, body: str, candidates: Sequence[tuple]) -> str:
    listing = "\n".join(
        f"\n### [{i}] {path}\n```\n{summary}\n```\n"
        for i, (path, summary) in enumerate(candidates, start=1)
    )
    return f"""You are a code search expert. Given a bug report and a list of candidate files, rank them by relevance.

## Bug Report
**Title:** {title}
**Description:** {body[:1500]}

## Candidate Files (ranked by initial search score)
{listing}

## Task
Rerank these files from MOST relevant to LEAST relevant for debugging this bug.
Output a JSON array of objects with: {{"path": "file/path", "score": 0-100, "reason": "brief reason"}}
Order by score descending. Only include files that are potentially relevant (score > 30).

IMPORTANT: Output ONLY the JSON array, no markdown code blocks or explanation."""


def _call_budget(timeout: Optional[float]) -> float:
    return config.STAGE_TIMEOUT_SECONDS if timeout is None else timeout


async def rerank_files(
    llm: Optional[LLMClient],
    files: List[FileCandidate],
    title: str,
    body: str,
    max_candidates: int = 15,
    timeout: Optional[float] = None,
) -> List[FileCandidate]:
    """Blend model relevance scores into *files*.

    On any failure the very same list object is returned, untouched.  On
    success a new, re-sorted list of copies is returned.
    """
    if llm is None or len(files) < RERANK_MIN_FILES:
        return files

    candidates = [(f.path, extract_file_summary(f.path)) for f in files[:max_candidates]]
    candidates = [(path, summary) for path, summary in candidates if len(summary) > SUMMARY_MIN_CHARS]
    if len(candidates) < RERANK_MIN_CANDIDATES:
        return files

    budget = _call_budget(timeout)
    try:
        text = await asyncio.wait_for(
            llm.generate_text(
                _rerank_prompt(title, body, candidates), max_tokens=1000, temperature=0.1, timeout=budget
            ),
            budget,
        )
    except Exception as exc:
        logger.warning("LLM re-ranking failed: %s", exc)
        return files

    parsed = parse_json_response(text)
    if not isinstance(parsed, list) or not parsed:
        logger.warning("Could not parse LLM re-ranking response, keeping original order")
        return files

    score_map = {}
    for item in parsed:
        try:
            entry = RerankEntry.model_validate(item)
        except ValidationError:
            continue
        score_map[entry.path] = entry.score * LLM_SCORE_SCALE
    if not score_map:
        return files

    reranked: List[FileCandidate] = []
    for candidate in files:
        llm_score = score_map.get(candidate.path)
        if llm_score is None:
            reranked.append(candidate)
            continue
        reranked.append(dataclasses.replace(
            candidate,
            relevance_score=math.floor(
                llm_score * LLM_BLEND_WEIGHT + candidate.relevance_score * (1 - LLM_BLEND_WEIGHT)
            ),
            matched_keywords=[*candidate.matched_keywords, "llm-reranked"],
        ))

    reranked.sort(key=lambda c: c.relevance_score, reverse=True)
    logger.debug("Re-ranked %d of %d files", len(score_map), len(files))
    return reranked


# ===================================================================
# Intent-first inference
# ===================================================================

async def extract_intent(
    llm: Optional[LLMClient],
    title: str,
    body: str,
    timeout: Optional[float] = None,
) -> Optional[ExtractedIntent]:
    """Ask the model what the reporter was doing; ``None`` on any failure."""
    if llm is None:
        return None

    prompt = f"""Analyze this bug report and extract the user's intent. The report may be in ANY language - you must understand it regardless of language.

## Bug Report
**Title:** {title}
**Description:**
{body[:3000]}

## Task
Extract the following information. ALWAYS respond in English for code-searchable terms.

Output a JSON object with these fields:
- user_action: What the user was trying to do (e.g., "click capture button", "submit form")
- expected_behavior: What they expected to happen
- actual_behavior: What actually happened
- inferred_features: Feature/component names that might be involved, as code terms (e.g., "CaptureButton", "onClick handler")
- inferred_file_types: Kinds of files to search (e.g., "button component", "page component")
- ui_elements: UI elements mentioned or implied (e.g., "button", "form", "modal")
- error_patterns: Error patterns detected, even if vague (e.g., "no response", "silent failure")
- page_context: The page/route context if mentioned (e.g., "/settings"), else null
- confidence: Your confidence in this extraction (0-100)

Convert the user's terms to likely code equivalents and output ONLY valid JSON, no markdown."""

    budget = _call_budget(timeout)
    try:
        text = await asyncio.wait_for(
            llm.generate_text(prompt, max_tokens=1000, temperature=0.2, timeout=budget),
            budget,
        )
        payload = parse_json_response(text)
        if not isinstance(payload, dict):
            raise ValueError("intent response is not a JSON object")
        return ExtractedIntent.model_validate(payload)
    except Exception as exc:
        logger.warning("Intent extraction failed: %s", exc)
        return None


async def infer_files(
    llm: Optional[LLMClient],
    intent: ExtractedIntent,
    file_tree: str,
    timeout: Optional[float] = None,
) -> List[InferredFile]:
    """Ask the model which files of *file_tree* match *intent*; ``[]`` on failure."""
    if llm is None or not file_tree:
        return []

    prompt = f"""Given this extracted intent and project file structure, identify the most relevant files to investigate.

## User Intent
- Action: {intent.user_action}
- Expected: {intent.expected_behavior}
- Actual: {intent.actual_behavior}
- Inferred Features: {', '.join(intent.inferred_features)}
- Inferred File Types: {', '.join(intent.inferred_file_types)}
- UI Elements: {', '.join(intent.ui_elements)}
- Page Context: {intent.page_context or 'unknown'}

## Project Files
{file_tree}

## Task
Identify files that are most likely related to this bug. Consider:
1. Files matching inferred feature names
2. Files in directories matching the page context
3. Component files for mentioned UI elements
4. Handler/hook files for the functionality
5. Page files for route-related issues

Output a JSON array of objects with:
- path: The file path from the list above
- reason: Why this file is relevant (brief)
- relevance_score: 0-100 score

Return top 15 most relevant files, ordered by relevance_score descending.
Output ONLY valid JSON array, no markdown."""

    budget = _call_budget(timeout)
    try:
        text = await asyncio.wait_for(
            llm.generate_text(prompt, max_tokens=1500, temperature=0.2, timeout=budget),
            budget,
        )
    except Exception as exc:
        logger.warning("File inference failed: %s", exc)
        return []

    payload = parse_json_response(text)
    if not isinstance(payload, list):
        logger.warning("File inference returned no JSON array")
        return []

    inferred: List[InferredFile] = []
    for item in payload:
        try:
            inferred.append(InferredFile.model_validate(item))
        except ValidationError:
            continue
    return inferred[:15]


def project_file_tree(base_dir: str, max_depth: int = 4, max_files: int = 200) -> str:
    """List the project as relative paths, directories first, one per line.

    Directories carry a trailing ``/``.  Hidden and ignored directories are
    skipped; unreadable directories are silently left out.
    """
    entries: List[str] = []

    def walk(directory: str, depth: int, prefix: str) -> None:
        if depth > max_depth or len(entries) >= max_files:
            return
        try:
            with os.scandir(directory) as it:
                items = [
                    item for item in it
                    if not item.name.startswith(".") and item.name not in TREE_IGNORE_DIRS
                ]
        except OSError:
            return
        items.sort(key=lambda item: (not item.is_dir(follow_symlinks=False), item.name))

        for item in items:
            if len(entries) >= max_files:
                return
            relative = f"{prefix}{item.name}"
            if item.is_dir(follow_symlinks=False):
                entries.append(f"{relative}/")
                walk(item.path, depth + 1, f"{relative}/")
            elif item.name.endswith(TREE_EXTENSIONS):
                entries.append(relative)

    walk(base_dir, 0, "")
    return "\n".join(entries)


def merge_inferred_files(
    inferred: Sequence[InferredFile],
    discovered: List[FileCandidate],
    base_dir: str,
    multiplier: float = 2.0,
    complement_min_score: int = 10,
    max_complement: int = 10,
) -> List[FileCandidate]:
    """Merge model-inferred files into the discovered candidates.

    A discovered file that was also inferred keeps the higher of its score
    and ``inferred * multiplier`` and gains an ``llm-inferred:`` tag.  Novel
    inferred files that exist on disk are added with the multiplied score.
    Discovered files the model did not name are kept as a complement only
    when they score at least *complement_min_score*, at most
    *max_complement* of them.  When nothing inferred could be merged the
    discovered list is returned as is.
    """
    root = Path(base_dir).resolve()
    by_real = {os.path.realpath(f.path): f for f in discovered}
    merged: List[FileCandidate] = []
    merged_keys: set = set()

    for item in inferred:
        relative = item.path.strip().lstrip("/")
        if relative.startswith("./"):
            relative = relative[2:]
        target = (root / relative).resolve()
        if root not in target.parents:
            logger.debug("Ignoring inferred path outside the project: %s", item.path)
            continue

        key = os.path.realpath(target)
        if key in merged_keys:
            continue
        weighted = math.floor(item.relevance_score * multiplier)
        tag = _tag(item.reason)

        existing = by_real.get(key)
        if existing is not None:
            existing.relevance_score = max(existing.relevance_score, weighted)
            if tag not in existing.matched_keywords:
                existing.matched_keywords.append(tag)
            merged.append(existing)
            merged_keys.add(key)
            continue

        try:
            size = target.stat().st_size
        except OSError:
            continue
        if not target.is_file():
            continue
        merged.append(FileCandidate(path=str(target), size=size, relevance_score=weighted, matched_keywords=[tag]))
        merged_keys.add(key)

    if not merged:
        return discovered

    complement = [
        f for f in discovered
        if os.path.realpath(f.path) not in merged_keys and f.relevance_score >= complement_min_score
    ]
    complement.sort(key=lambda c: c.relevance_score, reverse=True)

    result = merged + complement[:max_complement]
    result.sort(key=lambda c: c.relevance_score, reverse=True)
    logger.debug("Merged %d inferred files with %d complement files", len(merged), len(complement[:max_complement]))
    return result
