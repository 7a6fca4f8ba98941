"""Pipeline orchestrator coordinating the finder, investigator, explainer and reviewer.

Level 1 (fast) runs Finder -> Explainer.  Level 2 (thorough) runs
Finder -> Investigator -> Explainer -> Reviewer.  Finder and Explainer
failures abort the run with :class:`StageFailedError`; Investigator and
Reviewer failures only degrade it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Dict, List, Optional, Union

from . import config
from .agents import Agent, ExplainerAgent, FinderAgent, InvestigatorAgent, ReviewerAgent
from .errors import StageFailedError
from .llm import LLMClient
from .models import (
    AnalysisLevel,
    FinderData,
    IssueContext,
    LevelCriteria,
    PipelineResult,
    PipelineState,
    StageInput,
    StageOutput,
)
from .schemas import AnalysisResult, minimal_analysis

logger = logging.getLogger(__name__)

LEVEL_2_THRESHOLD = 3
STEPS_PATTERN = re.compile(r"\d+\.\s+|step", re.IGNORECASE)

LevelOverride = Union[int, str, None]


# ===================================================================
# Level determination
# ===================================================================

def extract_level_criteria(ctx: IssueContext) -> LevelCriteria:
    body = ctx.body
    has_code_block = "```" in body
    has_steps = bool(STEPS_PATTERN.search(body))

    if len(body) > 500 and (has_code_block or has_steps):
        quality = "high"
    elif len(body) > 200 or has_code_block:
        quality = "medium"
    else:
        quality = "low"

    if len(ctx.error_locations) > 5:
        complexity = "complex"
    elif len(ctx.error_locations) > 2 or len(ctx.error_messages) > 2:
        complexity = "moderate"
    else:
        complexity = "simple"

    return LevelCriteria(
        has_stack_trace=bool(ctx.error_locations),
        has_error_logs=bool(ctx.error_messages),
        description_quality=quality,
        error_complexity=complexity,
    )


def level_score(criteria: LevelCriteria) -> int:
    score = 0
    if not criteria.has_stack_trace:
        score += 1
    if not criteria.has_error_logs:
        score += 1
    if criteria.description_quality == "low":
        score += 2
    if criteria.error_complexity == "complex":
        score += 2
    return score


def determine_level(ctx: IssueContext, force_level: LevelOverride = None) -> AnalysisLevel:
    """Choose the analysis depth; an explicit 1 or 2 always wins."""
    if force_level is not None and str(force_level) in ("1", "2"):
        return AnalysisLevel(int(force_level))
    score = level_score(extract_level_criteria(ctx))
    return AnalysisLevel.THOROUGH if score >= LEVEL_2_THRESHOLD else AnalysisLevel.FAST


# ===================================================================
# Orchestrator
# ===================================================================

class PipelineOrchestrator:
    """Runs the agent stages for one bug report."""

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        enable_reviewer: Optional[bool] = None,
        stage_timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
        consistency_samples: Optional[int] = None,
    ):
        self.enable_reviewer = config.ENABLE_REVIEWER if enable_reviewer is None else enable_reviewer
        self.stage_timeout = stage_timeout or config.STAGE_TIMEOUT_SECONDS
        self.finder = FinderAgent(llm, max_workers=max_workers)
        self.investigator = InvestigatorAgent(llm)
        self.explainer = ExplainerAgent(llm, consistency_samples=consistency_samples)
        self.reviewer = ReviewerAgent(llm)

    async def run(
        self,
        issue_context: IssueContext,
        base_dir: str = ".",
        max_files: Optional[int] = None,
        force_level: LevelOverride = None,
        deadline: Optional[float] = None,
    ) -> PipelineResult:
        """Run the pipeline.

        Args:
            issue_context: Parsed bug report
            base_dir: Repository root to search
            max_files: Discovery cap (defaults to config)
            force_level: 1 or 2 to skip the level heuristic
            deadline: Absolute ``time.monotonic()`` value after which no new
                stage starts; an unfinished explanation is then replaced by
                a minimal analysis built from what was found.
        """
        start = time.monotonic()
        states: List[PipelineState] = []
        degraded = False

        def enter(state: PipelineState) -> None:
            states.append(state)
            logger.debug("Pipeline state -> %s", state.value)

        level = determine_level(issue_context, force_level)
        enter(PipelineState.LEVEL_DETERMINED)
        logger.info("Analysis level %d (%s)", int(level), "thorough" if level == AnalysisLevel.THOROUGH else "fast")

        stage_input = StageInput(
            issue_context=issue_context,
            level=level,
            base_dir=base_dir,
            max_files=max_files or config.MAX_FILES,
        )

        # Finding
        enter(PipelineState.FINDING)
        finder_out = await self._run_stage(self.finder, stage_input, deadline)
        if not finder_out.success:
            enter(PipelineState.FINDER_FAILED)
            raise StageFailedError(self.finder.name, finder_out.error or "")

        # Investigating
        if level == AnalysisLevel.THOROUGH:
            if self._expired(deadline):
                logger.warning("Deadline reached, skipping investigation")
                degraded = True
            else:
                enter(PipelineState.INVESTIGATING)
                investigator_out = await self._run_stage(self.investigator, stage_input, deadline)
                if not investigator_out.success:
                    enter(PipelineState.INVESTIGATOR_FAILED)
                    logger.warning("Investigator failed, continuing without hypotheses")
                    degraded = True

        # Explaining
        analysis: AnalysisResult
        if self._expired(deadline):
            logger.warning("Deadline reached before explanation, returning partial result")
            analysis = self._partial_analysis(finder_out.data)
            degraded = True
        else:
            enter(PipelineState.EXPLAINING)
            explainer_out = await self._run_stage(self.explainer, stage_input, deadline)
            if explainer_out.success:
                analysis = explainer_out.data.analysis
            elif self._expired(deadline):
                logger.warning("Explanation did not finish before the deadline, returning partial result")
                analysis = self._partial_analysis(finder_out.data)
                degraded = True
            else:
                enter(PipelineState.EXPLAINER_FAILED)
                raise StageFailedError(self.explainer.name, explainer_out.error or "")

        # Reviewing
        explained = stage_input.successful_data(self.explainer.name) is not None
        if level == AnalysisLevel.THOROUGH and self.enable_reviewer and explained:
            if self._expired(deadline):
                logger.warning("Deadline reached, skipping review")
                degraded = True
            else:
                enter(PipelineState.REVIEWING)
                reviewer_out = await self._run_stage(self.reviewer, stage_input, deadline)
                if reviewer_out.success:
                    analysis = reviewer_out.data.final_analysis
                else:
                    enter(PipelineState.REVIEWER_FAILED)
                    logger.warning("Reviewer failed, using unreviewed analysis")
                    degraded = True

        enter(PipelineState.DONE)
        return PipelineResult(
            level=level,
            analysis=analysis,
            stage_outputs=dict(stage_input.outputs),
            total_duration_ms=int((time.monotonic() - start) * 1000),
            states=tuple(states),
            degraded=degraded,
        )

    @staticmethod
    def _expired(deadline: Optional[float]) -> bool:
        return deadline is not None and time.monotonic() >= deadline

    async def _run_stage(self, agent: Agent, stage_input: StageInput, deadline: Optional[float]) -> StageOutput:
        """Execute *agent*, bounded by the remaining time when a deadline is set."""
        timeout = self.stage_timeout
        remaining = None
        if deadline is not None:
            remaining = max(0.0, deadline - time.monotonic())
            timeout = min(timeout, remaining)
        stage_input.call_timeout = timeout
        stage_input.deadline = deadline

        started = time.monotonic()
        try:
            if remaining is None:
                output = await agent.execute(stage_input)
            else:
                output = await asyncio.wait_for(agent.execute(stage_input), remaining)
        except asyncio.TimeoutError:
            output = StageOutput(
                agent.name, False, int((time.monotonic() - started) * 1000), None, "deadline exceeded"
            )

        stage_input.outputs[agent.name] = output
        logger.info("%s %s in %dms", agent.name, "completed" if output.success else "failed", output.duration_ms)
        return output

    @staticmethod
    def _partial_analysis(finder_data: Optional[FinderData]) -> AnalysisResult:
        files = [f.path for f in finder_data.relevant_files[:3]] if finder_data else []
        return minimal_analysis(
            "Analysis incomplete - deadline reached before the explanation finished",
            explanation="The most relevant files were identified, but no model analysis completed in time.",
            affected_files=files,
            confidence=0,
            additional_context="Partial result built from the file discovery stage only.",
            steps=["Review the listed files manually"],
        )


async def run_analysis(
    issue_context: IssueContext,
    llm: Optional[LLMClient] = None,
    base_dir: str = ".",
    max_files: Optional[int] = None,
    force_level: LevelOverride = None,
    enable_reviewer: Optional[bool] = None,
    timeout: Optional[float] = None,
) -> PipelineResult:
    """Convenience wrapper: build an orchestrator and run it once.

    *timeout* is relative (seconds from now) and becomes the run deadline.
    """
    orchestrator = PipelineOrchestrator(llm=llm, enable_reviewer=enable_reviewer)
    deadline = time.monotonic() + timeout if timeout else None
    return await orchestrator.run(
        issue_context, base_dir=base_dir, max_files=max_files, force_level=force_level, deadline=deadline
    )


# ===================================================================
# Summary
# ===================================================================

def format_pipeline_summary(result: PipelineResult) -> str:
    """Render a short markdown summary of how the pipeline ran."""
    outputs: Dict[str, StageOutput] = result.stage_outputs
    level = "Thorough (L2)" if result.level == AnalysisLevel.THOROUGH else "Fast (L1)"
    stages = " -> ".join(f"{name}: {out.duration_ms}ms" for name, out in outputs.items())

    lines = [
        "### Pipeline Summary",
        f"- **Level:** {level}",
        f"- **Duration:** {result.total_duration_ms / 1000:.1f}s",
        f"- **Stages:** {stages}",
    ]
    if result.degraded:
        lines.append("- **Mode:** degraded (an optional stage failed or was skipped)")

    reviewer = outputs.get("reviewer")
    if reviewer and reviewer.success and reviewer.data.review:
        review = reviewer.data.review
        if review.issues:
            lines.append("\n**Reviewer Issues:**")
            lines.extend(f"- {issue}" for issue in review.issues)
        if review.suggestions:
            lines.append("\n**Reviewer Suggestions:**")
            lines.extend(f"- {suggestion}" for suggestion in review.suggestions)

    investigator = outputs.get("investigator")
    if investigator and investigator.success and len(investigator.data.hypotheses) > 1:
        lines.append("\n**Alternative Hypotheses:**")
        lines.extend(f"- [{h.likelihood:.0f}%] {h.summary}" for h in investigator.data.hypotheses[1:])

    return "\n".join(lines)
