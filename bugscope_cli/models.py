"""Core data models used by discovery, chunking, and orchestration layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple


class AnalysisLevel(IntEnum):
    FAST = 1
    THOROUGH = 2


class PipelineState(str, Enum):
    LEVEL_DETERMINED = "level_determined"
    FINDING = "finding"
    INVESTIGATING = "investigating"
    EXPLAINING = "explaining"
    REVIEWING = "reviewing"
    DONE = "done"
    FINDER_FAILED = "finder_failed"
    INVESTIGATOR_FAILED = "investigator_failed"
    EXPLAINER_FAILED = "explainer_failed"
    REVIEWER_FAILED = "reviewer_failed"


@dataclass(frozen=True)
class ErrorLocation:
    file: str
    line: Optional[int] = None
    column: Optional[int] = None
    function_name: Optional[str] = None
    context: Optional[str] = None


@dataclass
class FileCandidate:
    path: str
    size: int
    path_score: int = 0
    content_score: int = 0
    relevance_score: int = 0
    matched_keywords: List[str] = field(default_factory=list)


@dataclass
class CodeChunk:
    kind: str
    name: str
    start_line: int
    end_line: int
    content: str
    signature: str


@dataclass
class CallGraphNode:
    name: str
    start_line: int
    end_line: int
    is_exported: bool = False
    is_async: bool = False
    calls: List[str] = field(default_factory=list)
    called_by: List[str] = field(default_factory=list)


# file path -> resolved imported paths
DependencyGraph = Dict[str, List[str]]
# function name -> node
CallGraph = Dict[str, CallGraphNode]


@dataclass
class IssueContext:
    title: str
    body: str
    issue_number: int = 0
    owner: str = ""
    repo: str = ""
    keywords: List[str] = field(default_factory=list)
    error_locations: List[ErrorLocation] = field(default_factory=list)
    error_messages: List[str] = field(default_factory=list)


@dataclass
class LevelCriteria:
    has_stack_trace: bool
    has_error_logs: bool
    description_quality: str  # low | medium | high
    error_complexity: str  # simple | moderate | complex


@dataclass
class ContextBundle:
    text: str
    mode: str  # "chunked" or "line-window"
    chunks: List[CodeChunk] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Stage payloads
# ---------------------------------------------------------------------------

@dataclass
class FinderData:
    relevant_files: List[FileCandidate] = field(default_factory=list)
    import_graph: DependencyGraph = field(default_factory=dict)
    code_chunks: List[CodeChunk] = field(default_factory=list)
    code_context: str = ""
    context_mode: str = "chunked"
    call_graph: Optional[CallGraph] = None
    call_chains: Dict[str, List[List[str]]] = field(default_factory=dict)
    extracted_intent: Optional[Any] = None
    inferred_files: List[Any] = field(default_factory=list)


@dataclass
class InvestigatorData:
    hypotheses: List[Any] = field(default_factory=list)
    primary_hypothesis: str = ""
    additional_context: str = ""


@dataclass
class ExplainerData:
    analysis: Any = None


@dataclass
class ReviewerData:
    review: Any = None
    final_analysis: Any = None


@dataclass
class StageOutput:
    stage_name: str
    success: bool
    duration_ms: int
    data: Any = None
    error: Optional[str] = None


@dataclass
class StageInput:
    """Everything a stage may read: the issue plus every earlier stage output."""

    issue_context: IssueContext
    level: AnalysisLevel
    base_dir: str = "."
    max_files: int = 25
    call_timeout: float = 60.0
    deadline: Optional[float] = None
    outputs: Dict[str, StageOutput] = field(default_factory=dict)

    def successful_data(self, stage_name: str) -> Optional[Any]:
        output = self.outputs.get(stage_name)
        if output is None or not output.success:
            return None
        return output.data


@dataclass(frozen=True)
class PipelineResult:
    level: AnalysisLevel
    analysis: Any
    stage_outputs: Dict[str, StageOutput]
    total_duration_ms: int
    states: Tuple[PipelineState, ...] = ()
    degraded: bool = False
