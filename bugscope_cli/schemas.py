"""Pydantic schemas for structured model output.

Every payload the pipeline asks a model for is validated against one of
these models; anything that fails validation is treated as a malformed
response by the caller.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

Severity = Literal["critical", "high", "medium", "low", "none"]
Category = Literal[
    "runtime_error",
    "logic_error",
    "performance",
    "security",
    "ui_ux",
    "configuration",
    "invalid_report",
    "unknown",
]


# ===================================================================
# Finding helpers
# ===================================================================

class ExtractedIntent(BaseModel):
    user_action: str = Field("", description="What the user was trying to do")
    expected_behavior: str = Field("", description="What the user expected to happen")
    actual_behavior: str = Field("", description="What actually happened")
    inferred_features: List[str] = Field(default_factory=list, description="Likely code component names")
    inferred_file_types: List[str] = Field(default_factory=list, description="Kinds of files worth searching")
    ui_elements: List[str] = Field(default_factory=list, description="UI elements mentioned or implied")
    error_patterns: List[str] = Field(default_factory=list, description="Error patterns, even vague ones")
    page_context: Optional[str] = Field(None, description="Page or route, if mentioned")
    confidence: float = Field(0, ge=0, le=100)


class InferredFile(BaseModel):
    path: str
    reason: str = ""
    relevance_score: float = Field(0, ge=0, le=100)


class RerankEntry(BaseModel):
    path: str
    score: float = Field(..., ge=0, le=100)
    reason: str = ""


# ===================================================================
# Investigation
# ===================================================================

class Hypothesis(BaseModel):
    id: str = Field("", description="Unique identifier for this hypothesis")
    summary: str = Field(..., description="One-line summary of the hypothesis")
    explanation: str = Field("", description="Why this could be the cause")
    likelihood: float = Field(..., ge=0, le=100, description="Likelihood percentage (0-100)")
    supporting_evidence: List[str] = Field(default_factory=list)
    contra_evidence: List[str] = Field(default_factory=list)


class InvestigationResult(BaseModel):
    hypotheses: List[Hypothesis] = Field(..., min_length=1, max_length=5)
    primary_hypothesis: str = Field("", description="ID of the most likely hypothesis")
    additional_context: str = ""


# ===================================================================
# Analysis
# ===================================================================

class RootCause(BaseModel):
    summary: str = Field(..., description="One-line summary of the root cause")
    explanation: str = Field("", description="Detailed explanation with code references")
    affected_files: List[str] = Field(default_factory=list)
    evidence_chain: Optional[List[str]] = Field(None, description="Error point, call path, root cause")


class CodeChange(BaseModel):
    file: str
    line: Optional[int] = None
    description: str
    before: Optional[str] = None
    after: str


class SuggestedFix(BaseModel):
    steps: List[str] = Field(default_factory=list)
    code_changes: List[CodeChange] = Field(default_factory=list)


class SelfValidation(BaseModel):
    counter_evidence: List[str] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)
    confidence_justification: str = ""
    alternative_hypotheses: Optional[List[str]] = None


class AnalysisResult(BaseModel):
    is_valid_report: bool = Field(True, description="Whether this is an actionable bug report")
    invalid_reason: Optional[str] = None
    severity: Severity = "medium"
    category: Category = "unknown"
    root_cause: RootCause
    suggested_fix: SuggestedFix = Field(default_factory=SuggestedFix)
    prevention: List[str] = Field(default_factory=list)
    confidence: float = Field(0, ge=0, le=100)
    additional_context: Optional[str] = None
    self_validation: Optional[SelfValidation] = None


# ===================================================================
# Review
# ===================================================================

class ReviewResult(BaseModel):
    approved: bool
    confidence_adjustment: float = Field(0, ge=-50, le=20)
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    counter_evidence: Optional[List[str]] = None
    verified_claims: Optional[List[str]] = None


def minimal_analysis(
    summary: str,
    explanation: str = "",
    affected_files: Optional[List[str]] = None,
    confidence: float = 0,
    additional_context: str = "",
    steps: Optional[List[str]] = None,
) -> AnalysisResult:
    """Build the conservative result used whenever a full analysis is unavailable."""
    return AnalysisResult(
        is_valid_report=True,
        severity="medium",
        category="unknown",
        root_cause=RootCause(
            summary=summary,
            explanation=explanation,
            affected_files=list(affected_files or []),
        ),
        suggested_fix=SuggestedFix(steps=list(steps or ["Manual review of the bug report is required"])),
        prevention=["Ensure proper error handling"],
        confidence=confidence,
        additional_context=additional_context or None,
    )
