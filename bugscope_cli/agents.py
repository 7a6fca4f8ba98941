"""Pipeline stages: finding, investigating, explaining and reviewing a bug report.

Each stage is an :class:`Agent` with an async ``execute`` that receives a
:class:`StageInput` (the issue plus every earlier stage output) and always
returns a :class:`StageOutput`.  Agents never raise for model or file
trouble; they report ``success=False`` together with fallback data and the
orchestrator decides whether that is fatal.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from . import config
from .call_graph import build_call_graph, describe_call_graph, find_call_chain
from .context_builder import assemble_context
from .discovery import find_relevant_files
from .imports import build_import_graph, expand_files_with_imports
from .llm import LLMClient, with_retry
from .models import (
    AnalysisLevel,
    ErrorLocation,
    ExplainerData,
    FinderData,
    InvestigatorData,
    ReviewerData,
    StageInput,
    StageOutput,
)
from .rerank import extract_intent, infer_files, merge_inferred_files, project_file_tree, rerank_files
from .schemas import (
    AnalysisResult,
    ExtractedIntent,
    Hypothesis,
    InvestigationResult,
    ReviewResult,
    minimal_analysis,
)

logger = logging.getLogger(__name__)

AGREEMENT_SIMILARITY = 0.5
# Share of the time left that one optional Finder model call may use
BEST_EFFORT_SHARE = 0.25


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class Agent(ABC):
    """A single pipeline stage."""

    name: str = ""
    description: str = ""
    required_level: AnalysisLevel = AnalysisLevel.FAST

    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm

    @abstractmethod
    async def execute(self, stage_input: StageInput) -> StageOutput:
        ...

    def _require_llm(self) -> LLMClient:
        if self.llm is None:
            raise RuntimeError(f"{self.name} stage requires a configured LLM")
        return self.llm


# ===================================================================
# Finder
# ===================================================================

class FinderAgent(Agent):
    """Intent-first file discovery, context assembly and (Level 2) call graph."""

    name = "finder"
    description = "Finds relevant files and builds the code context"
    required_level = AnalysisLevel.FAST

    def __init__(self, llm: Optional[LLMClient] = None, max_workers: Optional[int] = None):
        super().__init__(llm)
        self.max_workers = max_workers or config.MAX_WORKERS

    async def execute(self, stage_input: StageInput) -> StageOutput:
        start = time.monotonic()
        try:
            data = await self._find(stage_input)
        except Exception as exc:
            logger.exception("Finder stage failed")
            return StageOutput(self.name, False, _elapsed_ms(start), FinderData(), str(exc))
        return StageOutput(self.name, True, _elapsed_ms(start), data)

    async def _find(self, stage_input: StageInput) -> FinderData:
        ctx = stage_input.issue_context
        base_dir = stage_input.base_dir

        intent: Optional[ExtractedIntent] = None
        inferred = []
        if self.llm is not None:
            intent = await extract_intent(
                self.llm, ctx.title, ctx.body, timeout=self._best_effort_timeout(stage_input)
            )
            if intent is not None:
                logger.info("Intent extracted (confidence %s%%): %s", intent.confidence, intent.user_action)
                tree = await asyncio.to_thread(project_file_tree, base_dir)
                inferred = await infer_files(self.llm, intent, tree, timeout=self._best_effort_timeout(stage_input))
                logger.info("Model inferred %d candidate files", len(inferred))

        keywords = list(ctx.keywords)
        if intent is not None:
            keywords += intent.inferred_features + intent.ui_elements

        files = await asyncio.to_thread(
            find_relevant_files,
            base_dir,
            keywords,
            ctx.error_locations,
            ctx.error_messages,
            stage_input.max_files,
            max_workers=self.max_workers,
        )
        logger.info("Pattern discovery found %d files", len(files))

        if inferred:
            files = merge_inferred_files(inferred, files, base_dir)

        import_graph = await asyncio.to_thread(build_import_graph, files, base_dir, max_workers=self.max_workers)
        if import_graph:
            files = expand_files_with_imports(files, import_graph)

        if self.llm is not None and intent is None:
            files = await rerank_files(
                self.llm, files, ctx.title, ctx.body, timeout=self._best_effort_timeout(stage_input)
            )

        context_keywords = list(ctx.keywords) + (intent.inferred_features if intent else [])
        bundle = await asyncio.to_thread(assemble_context, files, ctx.error_locations, context_keywords)
        logger.info("Assembled %s context (%d chars, %d chunks)", bundle.mode, len(bundle.text), len(bundle.chunks))

        data = FinderData(
            relevant_files=files,
            import_graph=import_graph,
            code_chunks=bundle.chunks,
            code_context=bundle.text,
            context_mode=bundle.mode,
            extracted_intent=intent,
            inferred_files=inferred,
        )

        if stage_input.level == AnalysisLevel.THOROUGH:
            data.call_graph = build_call_graph(bundle.chunks)
            for loc in ctx.error_locations[:3]:
                if loc.function_name:
                    chains = find_call_chain(data.call_graph, loc.function_name)
                    if chains:
                        data.call_chains[loc.function_name] = chains
                        logger.info("Call chain for %s: %s", loc.function_name, " -> ".join(chains[0]))
        return data

    @staticmethod
    def _best_effort_timeout(stage_input: StageInput) -> float:
        """Timeout for an optional model call, leaving the rest of the deadline to discovery."""
        timeout = stage_input.call_timeout
        if stage_input.deadline is not None:
            remaining = max(0.0, stage_input.deadline - time.monotonic())
            timeout = min(timeout, remaining * BEST_EFFORT_SHARE)
        return timeout


# ===================================================================
# Investigator
# ===================================================================

INVESTIGATOR_SYSTEM_PROMPT = """You are a bug investigation expert. Generate multiple hypotheses about what could be causing a reported bug.

For each hypothesis:
1. Be specific: identify the mechanism, not just "there's a bug"
2. Cite evidence: reference code locations (file:line)
3. Consider what could disprove it
4. Assign a likelihood (0-100) that reflects evidence strength:
   80-100 stack trace points directly at the issue, 50-79 pattern match,
   20-49 speculation from common patterns, below 20 pure speculation

Consider data issues, logic errors, integration issues, configuration issues and timing issues.
Order hypotheses by likelihood and always include one alternative that challenges the obvious conclusion."""


class InvestigatorAgent(Agent):
    """Generates ranked root-cause hypotheses (Level 2 only)."""

    name = "investigator"
    description = "Generates multiple hypotheses about bug root causes"
    required_level = AnalysisLevel.THOROUGH

    async def execute(self, stage_input: StageInput) -> StageOutput:
        start = time.monotonic()
        try:
            llm = self._require_llm()
            result = await asyncio.wait_for(
                llm.generate_structured(
                    self._prompt(stage_input), InvestigationResult, max_tokens=2000, timeout=stage_input.call_timeout
                ),
                stage_input.call_timeout,
            )
        except Exception as exc:
            logger.warning("Investigator stage failed: %s", exc)
            return StageOutput(self.name, False, _elapsed_ms(start), self._fallback(exc), str(exc) or type(exc).__name__)

        hypotheses = [
            h.model_copy(update={"id": h.id or f"h{i + 1}"})
            for i, h in enumerate(result.hypotheses)
        ]
        hypotheses.sort(key=lambda h: h.likelihood, reverse=True)
        for h in hypotheses:
            logger.info("Hypothesis [%s%%] %s", h.likelihood, h.summary[:60])

        data = InvestigatorData(
            hypotheses=hypotheses,
            primary_hypothesis=result.primary_hypothesis or hypotheses[0].id,
            additional_context=result.additional_context,
        )
        return StageOutput(self.name, True, _elapsed_ms(start), data)

    @staticmethod
    def _prompt(stage_input: StageInput) -> str:
        ctx = stage_input.issue_context
        finder: Optional[FinderData] = stage_input.successful_data("finder")
        code_context = finder.code_context if finder else ""
        call_info = describe_call_graph(finder.call_graph if finder else None, ctx.error_locations)

        prompt = f"""{INVESTIGATOR_SYSTEM_PROMPT}

Investigate this bug and generate hypotheses about its root cause:

## Bug Report

### Title
{ctx.title}

### Description
{ctx.body}

### Extracted Keywords
{', '.join(ctx.keywords)}

## Code Context
{code_context or 'No relevant code files found.'}
"""
        if call_info:
            prompt += f"\n## Call Graph Analysis\n{call_info}\n"
        prompt += (
            "\n---\n\nGenerate 2-4 distinct hypotheses. For each, give a summary, explain the mechanism, "
            "list supporting and contradicting evidence with file:line references and assign a likelihood."
        )
        return prompt

    @staticmethod
    def _fallback(exc: BaseException) -> InvestigatorData:
        return InvestigatorData(
            hypotheses=[
                Hypothesis(
                    id="fallback",
                    summary="Investigation failed - proceeding with direct analysis",
                    explanation=f"The investigator could not generate hypotheses: {exc}",
                    likelihood=50,
                )
            ],
            primary_hypothesis="fallback",
            additional_context="Fallback hypothesis due to investigation failure.",
        )


# ===================================================================
# Explainer
# ===================================================================

EXPLAINER_SYSTEM_PROMPT = """You are an expert QA engineer analyzing bug reports with a systematic chain-of-thought approach.
Never output secrets, tokens, credentials or personal data.

STEP 0: VALIDATE THE REPORT FIRST.
Mark it invalid (is_valid_report: false) when there is no evidence of an actual error and the description is vague,
when it is too short to act on, when it is a test or placeholder, a feature request, or describes expected behaviour.
For an invalid report set invalid_reason, severity "none", category "invalid_report", confidence 0 and
root_cause.summary "Unable to analyze - insufficient information".

For valid reports: understand the symptoms, hypothesize causes, investigate the code context, conclude with the
most likely root cause, then recommend specific fixes and prevention.

Evidence rules:
1. Every claim about the code cites a location as file:line; lines marked >>> in the context come first.
2. Build an evidence chain: error point, call path, root cause.
3. Calibrate confidence: 90-100 direct stack trace evidence, 70-89 strong circumstantial evidence,
   50-69 reasonable inference, below 50 speculative.
4. Check for counter-evidence before concluding and say why the conclusion still holds.
Do not fabricate issues that are not in the code."""


def build_evidence_chain(error_locations: Sequence[ErrorLocation], affected_files: Sequence[str], summary: str) -> List[str]:
    """Synthesize an evidence chain from stack-trace locations."""
    chain: List[str] = []
    if error_locations:
        loc = error_locations[0]
        line = f":{loc.line}" if loc.line else ""
        func = f" ({loc.function_name})" if loc.function_name else ""
        chain.append(f"Error Point: {loc.file}{line}{func}")
    if len(error_locations) > 1:
        path = [loc.function_name or loc.file for loc in error_locations[1:4]]
        chain.append(f"Call Path: {' -> '.join(path)}")
    if affected_files:
        chain.append(f"Root Cause: {affected_files[0]} - {summary}")
    return chain


def calculate_similarity(text1: str, text2: str) -> float:
    """Jaccard similarity of the words longer than two characters."""

    def words(text: str) -> set:
        normalized = re.sub(r"[^\w\s]", "", text.lower())
        return {w for w in normalized.split() if len(w) > 2}

    first, second = words(text1), words(text2)
    if not first or not second:
        return 0.0
    union = len(first | second)
    return len(first & second) / union if union else 0.0


def check_consistency(results: Sequence[AnalysisResult], threshold: float) -> Tuple[AnalysisResult, bool, float]:
    """Pick the most representative of several analyses.

    Returns ``(result, is_consistent, agreement_rate)``.
    """
    if not results:
        raise ValueError("No results to check consistency")
    if len(results) == 1:
        return results[0], True, 1.0

    valid = [r for r in results if r.is_valid_report]
    invalid = [r for r in results if not r.is_valid_report]
    if len(invalid) > len(valid):
        return invalid[0], len(invalid) == len(results), len(invalid) / len(results)

    summaries = [r.root_cause.summary for r in valid]
    matrix = [
        [1.0 if i == j else calculate_similarity(a, b) for j, b in enumerate(summaries)]
        for i, a in enumerate(summaries)
    ]
    best_idx, best_avg = 0, 0.0
    for i, row in enumerate(matrix):
        avg = sum(row) / len(summaries)
        if avg > best_avg:
            best_idx, best_avg = i, avg

    agreement = sum(1 for sim in matrix[best_idx] if sim >= AGREEMENT_SIMILARITY) / len(results)
    return valid[best_idx], agreement >= threshold, agreement


class ExplainerAgent(Agent):
    """Produces the structured root-cause analysis."""

    name = "explainer"
    description = "Analyzes the bug with chain-of-thought and evidence-based reasoning"
    required_level = AnalysisLevel.FAST

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        consistency_samples: Optional[int] = None,
        consistency_threshold: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        super().__init__(llm)
        self.consistency_samples = max(1, consistency_samples or config.CONSISTENCY_SAMPLES)
        self.consistency_threshold = (
            consistency_threshold if consistency_threshold is not None else config.CONSISTENCY_THRESHOLD
        )
        self.retry_attempts = retry_attempts or config.RETRY_ATTEMPTS
        self.retry_delay = retry_delay if retry_delay is not None else config.RETRY_DELAY_SECONDS

    async def execute(self, stage_input: StageInput) -> StageOutput:
        start = time.monotonic()
        finder: Optional[FinderData] = stage_input.successful_data("finder")
        prompt = self.build_prompt(stage_input)

        try:
            llm = self._require_llm()
            analysis = await self._analyze(llm, prompt, stage_input.call_timeout)
        except Exception as exc:
            logger.warning("Structured analysis failed, trying text mode: %s", exc)
            try:
                analysis = await self._text_fallback(prompt, finder, stage_input.call_timeout)
            except Exception as text_exc:
                logger.error("Explainer stage failed: %s", text_exc)
                fallback = minimal_analysis(
                    "Analysis failed - manual review required",
                    additional_context="This is a fallback response due to analysis failure.",
                )
                return StageOutput(
                    self.name, False, _elapsed_ms(start), ExplainerData(fallback), str(text_exc) or type(text_exc).__name__
                )

        if analysis.is_valid_report and not analysis.root_cause.evidence_chain:
            chain = build_evidence_chain(
                stage_input.issue_context.error_locations,
                analysis.root_cause.affected_files,
                analysis.root_cause.summary,
            )
            if chain:
                analysis.root_cause.evidence_chain = chain

        return StageOutput(self.name, True, _elapsed_ms(start), ExplainerData(analysis))

    async def _analyze(self, llm: LLMClient, prompt: str, timeout: float) -> AnalysisResult:
        async def once() -> AnalysisResult:
            return await asyncio.wait_for(
                llm.generate_structured(prompt, AnalysisResult, max_tokens=4000, timeout=timeout), timeout
            )

        def attempt():
            return with_retry(once, self.retry_attempts, self.retry_delay)

        if self.consistency_samples == 1:
            return await attempt()

        outcomes = await asyncio.gather(
            *(attempt() for _ in range(self.consistency_samples)), return_exceptions=True
        )
        results = [r for r in outcomes if isinstance(r, AnalysisResult)]
        if not results:
            raise RuntimeError("All consistency samples failed")

        result, consistent, agreement = check_consistency(results, self.consistency_threshold)
        logger.info("Agreement rate %.0f%% over %d samples", agreement * 100, len(results))
        if consistent:
            return result
        warning = (
            f"\n\nConsistency Warning: Multiple analysis runs showed {agreement * 100:.0f}% agreement. "
            "This analysis may benefit from manual verification."
        )
        return result.model_copy(update={
            "confidence": min(result.confidence, 50),
            "additional_context": (result.additional_context or "") + warning,
        })

    async def _text_fallback(self, prompt: str, finder: Optional[FinderData], timeout: float) -> AnalysisResult:
        llm = self._require_llm()
        text = await asyncio.wait_for(
            llm.generate_text(
                prompt + "\n\nProvide your analysis in a structured format.", max_tokens=4000, timeout=timeout
            ),
            timeout,
        )
        files = [f.path for f in finder.relevant_files[:3]] if finder else []
        return minimal_analysis(
            "Analysis generated from unstructured response",
            explanation=text,
            affected_files=files,
            confidence=50,
            additional_context="This analysis was generated using fallback text mode. Structured output was not available.",
            steps=["Review the explanation above for fix suggestions"],
        )

    @staticmethod
    def build_prompt(stage_input: StageInput) -> str:
        ctx = stage_input.issue_context
        finder: Optional[FinderData] = stage_input.successful_data("finder")
        investigator: Optional[InvestigatorData] = stage_input.successful_data("investigator")
        code_context = finder.code_context if finder else ""
        intent: Optional[ExtractedIntent] = finder.extracted_intent if finder else None

        intent_section = ""
        if intent is not None:
            intent_section = (
                "## Extracted User Intent\n"
                f"- **User Action:** {intent.user_action}\n"
                f"- **Expected Behavior:** {intent.expected_behavior}\n"
                f"- **Actual Behavior:** {intent.actual_behavior}\n"
                f"- **Inferred Features:** {', '.join(intent.inferred_features)}\n"
                f"- **UI Elements:** {', '.join(intent.ui_elements)}\n"
                f"- **Error Patterns:** {', '.join(intent.error_patterns) or 'None explicit'}\n"
                f"- **Page Context:** {intent.page_context or 'Unknown'}\n"
                f"- **Intent Extraction Confidence:** {intent.confidence}%\n\n"
            )

        prompt = f"""{EXPLAINER_SYSTEM_PROMPT}

Analyze this bug report using the chain-of-thought methodology:

## Bug Report

### Title
{ctx.title}

### Description
{ctx.body}

### Extracted Keywords
{', '.join(ctx.keywords)}

{intent_section}## Code Context
{code_context or 'No relevant code files found in the repository.'}
"""
        if investigator and investigator.hypotheses:
            listed = "\n".join(
                f"{i}. [{h.likelihood:.0f}%] {h.summary}" for i, h in enumerate(investigator.hypotheses, start=1)
            )
            prompt += (
                f"\n---\n\n## Pre-analysis Hypotheses\n{listed}\n\n"
                "Consider these hypotheses in your analysis, but validate them against the code evidence.\n"
            )
        prompt += (
            "\n---\n\nAnalyze this bug step-by-step, then provide your structured analysis. "
            "Include evidence chains with file:line references, calibrate confidence on evidence quality "
            "and check for counter-evidence before concluding."
        )
        return prompt


# ===================================================================
# Reviewer
# ===================================================================

REVIEWER_SYSTEM_PROMPT = """You are a senior code review expert validating bug analysis reports.
Check evidence quality, logic soundness, counter-evidence and whether the suggested fixes would work.
Approve when the root cause is identified with code evidence, the fix is specific and confidence is calibrated.
Reject when claims lack evidence, the logic is flawed or counter-evidence is ignored.
Confidence adjustment: +10 to +20 exceptionally thorough, 0 acceptable, -10 to -20 minor issues,
-30 to -50 major issues."""


def apply_review(analysis: AnalysisResult, review: ReviewResult) -> AnalysisResult:
    """Return a copy of *analysis* with the review's confidence change and notes."""
    confidence = max(0.0, min(100.0, analysis.confidence + review.confidence_adjustment))

    notes = [
        "**Review status:** Analysis approved" if review.approved
        else "**Review status:** Issues found during review"
    ]
    if review.issues:
        notes.append("\n**Issues found:**\n" + "\n".join(f"- {i}" for i in review.issues))
    if review.suggestions:
        notes.append("\n**Reviewer suggestions:**\n" + "\n".join(f"- {s}" for s in review.suggestions))
    if review.verified_claims:
        notes.append("\n**Verified claims:**\n" + "\n".join(f"- {c}" for c in review.verified_claims))
    if review.counter_evidence:
        notes.append("\n**Counter-evidence:**\n" + "\n".join(f"- {c}" for c in review.counter_evidence))

    context = f"{analysis.additional_context or ''}\n\n---\n\n## Reviewer Notes\n\n" + "\n".join(notes)
    return analysis.model_copy(update={"confidence": confidence, "additional_context": context.strip()})


class ReviewerAgent(Agent):
    """Validates the analysis and adjusts its confidence (Level 2 only)."""

    name = "reviewer"
    description = "Validates analysis quality and adjusts confidence"
    required_level = AnalysisLevel.THOROUGH

    async def execute(self, stage_input: StageInput) -> StageOutput:
        start = time.monotonic()
        explainer: Optional[ExplainerData] = stage_input.successful_data("explainer")
        if explainer is None or explainer.analysis is None:
            return StageOutput(self.name, False, _elapsed_ms(start), ReviewerData(), "No analysis to review")

        analysis: AnalysisResult = explainer.analysis
        if not analysis.is_valid_report:
            logger.info("Skipping review for invalid report")
            review = ReviewResult(approved=True, confidence_adjustment=0)
            return StageOutput(self.name, True, _elapsed_ms(start), ReviewerData(review, analysis))

        try:
            llm = self._require_llm()
            review = await asyncio.wait_for(
                llm.generate_structured(
                    self._prompt(stage_input, analysis), ReviewResult, max_tokens=1500, timeout=stage_input.call_timeout
                ),
                stage_input.call_timeout,
            )
        except Exception as exc:
            logger.warning("Reviewer stage failed: %s", exc)
            review = ReviewResult(approved=False, issues=["Review failed - using unreviewed analysis"])
            return StageOutput(
                self.name, False, _elapsed_ms(start), ReviewerData(review, analysis), str(exc) or type(exc).__name__
            )

        logger.info("Review %s (confidence %+.0f)", "approved" if review.approved else "rejected", review.confidence_adjustment)
        return StageOutput(self.name, True, _elapsed_ms(start), ReviewerData(review, apply_review(analysis, review)))

    @staticmethod
    def _prompt(stage_input: StageInput, analysis: AnalysisResult) -> str:
        finder: Optional[FinderData] = stage_input.successful_data("finder")
        investigator: Optional[InvestigatorData] = stage_input.successful_data("investigator")
        root = analysis.root_cause

        chain = ""
        if root.evidence_chain:
            chain = "**Evidence Chain:**\n" + "\n".join(f"{i}. {e}" for i, e in enumerate(root.evidence_chain, 1))
        changes = "\n".join(
            f"- {c.file}: {c.description}" for c in analysis.suggested_fix.code_changes
        ) or "None specified"

        prompt = f"""{REVIEWER_SYSTEM_PROMPT}

Review this bug analysis for accuracy and quality:

### Severity & Category
- Severity: {analysis.severity}
- Category: {analysis.category}
- Confidence: {analysis.confidence}%

### Root Cause
**Summary:** {root.summary}

**Explanation:**
{root.explanation}

**Affected Files:** {', '.join(root.affected_files) or 'None specified'}

{chain}

### Suggested Fix
**Steps:**
{chr(10).join(f'{i}. {s}' for i, s in enumerate(analysis.suggested_fix.steps, 1))}

**Code Changes:**
{changes}

### Prevention
{chr(10).join(f'- {p}' for p in analysis.prevention)}

## Code Context (for verification)
{(finder.code_context if finder else '') or 'No code context available'}
"""
        if investigator and investigator.hypotheses:
            listed = "\n".join(f"{i}. {h.summary}" for i, h in enumerate(investigator.hypotheses, 1))
            prompt += f"\n## Alternative Hypotheses\n{listed}\n\nCheck if these alternatives were properly considered.\n"
        prompt += (
            "\n---\n\nVerify claims against the code context, check for counter-evidence, "
            "validate the fix suggestions and decide whether the confidence level is appropriate."
        )
        return prompt
