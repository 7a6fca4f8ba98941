"""Caller/callee graph over extracted code chunks.

Nodes are function and class chunks; edges come from call-like tokens in
each chunk body.  The graph is closed-world: a call to a name that is not
itself a chunk is dropped.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence

from .models import CallGraph, CallGraphNode, CodeChunk, ErrorLocation

logger = logging.getLogger(__name__)

CALL_TOKEN = re.compile(r"(?:await\s+)?(\w+)\s*\(")

CONTROL_KEYWORDS = frozenset({
    "if", "else", "for", "while", "do", "switch", "case", "catch", "try",
    "finally", "return", "throw", "function", "typeof", "instanceof", "new",
    "delete", "void", "in", "of", "yield", "await", "async", "super", "import",
    "export", "class", "const", "let", "var", "with", "def", "elif", "lambda",
    "not", "and", "or", "assert",
})

BUILTIN_CALLS = frozenset({
    # JavaScript globals and common prototype methods
    "console", "log", "warn", "error", "info", "debug", "JSON", "parse",
    "stringify", "Object", "keys", "values", "entries", "assign", "Array",
    "isArray", "from", "map", "filter", "reduce", "forEach", "find", "some",
    "every", "includes", "indexOf", "push", "pop", "shift", "unshift", "slice",
    "splice", "concat", "join", "split", "replace", "trim", "toString",
    "String", "Number", "Boolean", "Promise", "resolve", "reject", "then",
    "all", "setTimeout", "setInterval", "clearTimeout", "clearInterval",
    "require", "Math", "max", "min", "floor", "ceil", "round", "abs",
    "parseInt", "parseFloat", "isNaN", "Date", "now", "fetch", "Error",
    "Symbol", "Map", "Set", "RegExp", "match", "exec", "toLowerCase",
    "toUpperCase", "startsWith", "endsWith",
    # Python builtins
    "print", "len", "range", "str", "int", "float", "dict", "list", "tuple",
    "isinstance", "getattr", "setattr", "hasattr", "sorted", "enumerate",
    "zip", "open", "append", "extend", "format",
})


def build_call_graph(chunks: Sequence[CodeChunk]) -> CallGraph:
    """Build a call graph from function and class chunks.

    When two chunks share a name the first one owns the node.
    """
    graph: CallGraph = {}
    owners: Dict[str, CodeChunk] = {}

    for chunk in chunks:
        if chunk.kind not in ("function", "class") or chunk.name in graph:
            continue
        owners[chunk.name] = chunk
        graph[chunk.name] = CallGraphNode(
            name=chunk.name,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            is_exported=chunk.signature.startswith("export"),
            is_async="async" in chunk.signature,
        )

    for name, chunk in owners.items():
        node = graph[name]
        for match in CALL_TOKEN.finditer(chunk.content):
            callee = match.group(1)
            if callee == name or callee in CONTROL_KEYWORDS or callee in BUILTIN_CALLS:
                continue
            if callee not in graph or callee in node.calls:
                continue
            node.calls.append(callee)
            graph[callee].called_by.append(name)

    return graph


def find_call_chain(graph: CallGraph, start: str, max_depth: int = 5) -> List[List[str]]:
    """Find call chains from exported entry points down to *start*.

    Walks ``called_by`` edges breadth-first for at most *max_depth* hops.
    Each chain is returned entry point first, *start* last.  No entry point
    in reach is not an error: the result is simply empty.
    """
    if start not in graph:
        return []

    chains: List[List[str]] = []
    queue: Deque[List[str]] = deque([[start]])
    while queue:
        path = queue.popleft()
        node = graph[path[-1]]
        if len(path) > 1 and node.is_exported:
            chains.append(list(reversed(path)))
        if len(path) - 1 >= max_depth:
            continue
        for caller in node.called_by:
            if caller not in path:
                queue.append(path + [caller])
    return chains


def get_related_functions(graph: CallGraph, start: str, max_related: int = 10) -> List[CallGraphNode]:
    """BFS over both edge directions from *start*, including *start* itself."""
    if start not in graph:
        return []

    related: List[CallGraphNode] = []
    seen = {start}
    queue: Deque[str] = deque([start])
    while queue and len(related) < max_related:
        node = graph[queue.popleft()]
        related.append(node)
        for neighbour in node.calls + node.called_by:
            if neighbour not in seen:
                seen.add(neighbour)
                queue.append(neighbour)
    return related


def describe_call_graph(
    graph: Optional[CallGraph],
    error_locations: Sequence[ErrorLocation],
    max_locations: int = 3,
) -> str:
    """Render call relationships of stack-trace functions as prompt text."""
    if not graph:
        return ""

    lines = ["### Function Call Relationships"]
    for loc in error_locations[:max_locations]:
        if not loc.function_name or loc.function_name not in graph:
            continue
        node = graph[loc.function_name]
        lines.append(f"\n**{node.name}** (from stack trace)")
        if node.called_by:
            lines.append(f"  Called by: {', '.join(node.called_by[:5])}")
        if node.calls:
            lines.append(f"  Calls: {', '.join(node.calls[:5])}")
        lines.append(f"  Lines: {node.start_line}-{node.end_line}")
        lines.append(f"  Async: {node.is_async}, Exported: {node.is_exported}")
        for chain in find_call_chain(graph, node.name)[:3]:
            lines.append(f"  Chain: {' -> '.join(chain)}")

    return "\n".join(lines) if len(lines) > 1 else ""
