"""Tests for the caller/callee graph."""

from bugscope_cli.call_graph import (
    build_call_graph,
    describe_call_graph,
    find_call_chain,
    get_related_functions,
)
from bugscope_cli.chunker import extract_code_chunks
from bugscope_cli.models import CallGraphNode, ErrorLocation


SOURCE = (
    "export function main() {\n"
    "  console.log('start');\n"
    "  return helper();\n"
    "}\n"
    "\n"
    "function helper() {\n"
    "  return missing();\n"
    "}\n"
)


def _linear_graph():
    """a (exported) -> b -> c -> d"""
    names = ["a", "b", "c", "d"]
    graph = {n: CallGraphNode(n, i, i, is_exported=(n == "a")) for i, n in enumerate(names)}
    for caller, callee in zip(names, names[1:]):
        graph[caller].calls.append(callee)
        graph[callee].called_by.append(caller)
    return graph


class TestBuildCallGraph:
    """Tests for graph construction from chunks."""

    def test_edges_in_both_directions(self):
        """Calls and callers are recorded on both ends."""
        graph = build_call_graph(extract_code_chunks(SOURCE))

        assert graph["main"].calls == ["helper"]
        assert graph["helper"].called_by == ["main"]
        assert graph["main"].is_exported
        assert not graph["helper"].is_exported

    def test_closed_world_and_builtins(self):
        """Only known chunks become nodes; builtins are ignored."""
        graph = build_call_graph(extract_code_chunks(SOURCE))

        assert "missing" not in graph
        assert "log" not in graph["main"].calls
        assert graph["helper"].calls == []

    def test_non_callable_chunks_skipped(self):
        """Interfaces and types are not graph nodes."""
        graph = build_call_graph(extract_code_chunks("interface Props {\n  id: string;\n}\n"))

        assert graph == {}

    def test_async_flag(self):
        """Async functions are flagged."""
        graph = build_call_graph(extract_code_chunks("export async function go() {\n}\n"))

        assert graph["go"].is_async


class TestCallChains:
    """Tests for entry-point chain search."""

    def test_chain_from_exported_caller(self):
        """Chains run from an exported caller to the target."""
        graph = build_call_graph(extract_code_chunks(SOURCE))

        assert find_call_chain(graph, "helper") == [["main", "helper"]]

    def test_unknown_start(self):
        """An unknown function has no chains."""
        assert find_call_chain(_linear_graph(), "nope") == []

    def test_depth_limit(self):
        """Chains longer than the depth limit are dropped."""
        graph = _linear_graph()

        assert find_call_chain(graph, "d") == [["a", "b", "c", "d"]]
        assert find_call_chain(graph, "d", max_depth=2) == []

    def test_cycles_terminate(self):
        """Recursive calls do not loop forever."""
        graph = {
            "x": CallGraphNode("x", 1, 1, calls=["y"], called_by=["y"]),
            "y": CallGraphNode("y", 2, 2, calls=["x"], called_by=["x"]),
        }

        assert find_call_chain(graph, "x") == []


class TestRelatedFunctions:
    """Tests for neighbourhood search and prompt rendering."""

    def test_includes_start_and_respects_limit(self):
        """The start function counts toward the limit."""
        graph = _linear_graph()

        related = get_related_functions(graph, "b", max_related=2)

        assert [n.name for n in related][0] == "b"
        assert len(related) == 2

    def test_walks_both_directions(self):
        """Related functions include callers and callees."""
        names = {n.name for n in get_related_functions(_linear_graph(), "c")}

        assert names == {"a", "b", "c", "d"}

    def test_describe_call_graph(self):
        """The prompt text lists calls and callers."""
        graph = build_call_graph(extract_code_chunks(SOURCE))
        loc = ErrorLocation(file="app.ts", line=7, function_name="helper")

        text = describe_call_graph(graph, [loc])

        assert "**helper** (from stack trace)" in text
        assert "Called by: main" in text
        assert "Chain: main -> helper" in text

    def test_describe_without_graph(self):
        """An empty graph describes to nothing."""
        assert describe_call_graph(None, []) == ""
