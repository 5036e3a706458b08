from __future__ import annotations

import math
import re
from datetime import date

from loguru import logger

from atlas.agents.base import BaseAgent, PhaseContext
from atlas.llm_client import CompletionError
from atlas.model_router import TaskKind
from atlas.models.research import EvaluationResult, PlanningResult, SynthesisResult
from atlas.services import logger as log_service

SYNTHESIZER_SYSTEM_PROMPT = """You are an expert research analyst and technical writer. Create comprehensive, well-structured research reports using markdown format.

Follow these guidelines:
- Use clear, professional language
- Include proper citations [1], [2], etc.
- Structure with appropriate headings
- Provide actionable insights
- Be objective and evidence-based
- Include a strong conclusion with key takeaways"""

MIN_CITATION_STRIDE = 10
MAX_KEY_FINDINGS = 5
KEY_FINDING_MARKERS = ("key insights", "main findings", "key findings")

_CITATION_RE = re.compile(r"\[\d+\]")
_LIST_ITEM_RE = re.compile(r"^(?:[-*]\s+|\d+\.\s*)")


def citation_stride(evaluations: list[EvaluationResult]) -> int:
    """Numbering stride per subtopic, wide enough for the largest subtopic."""
    largest = max((len(r.evaluated_content) for r in evaluations), default=0)
    return max(MIN_CITATION_STRIDE, math.ceil(largest / MIN_CITATION_STRIDE) * MIN_CITATION_STRIDE)


def citation_number(subtopic_index: int, content_index: int, stride: int) -> int:
    return subtopic_index * stride + content_index + 1


def count_words(text: str) -> int:
    return len(text.split())


def extract_sections(content: str) -> list[str]:
    sections = []
    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("##") and not stripped.startswith("###"):
            name = stripped.lstrip("#").strip()
            if name:
                sections.append(name)
    return sections


def extract_key_findings(content: str) -> list[str]:
    """Bullets under the first key findings / insights heading."""
    findings: list[str] = []
    in_section = False
    for line in content.splitlines():
        stripped = line.strip()
        lowered = stripped.lower()
        if any(marker in lowered for marker in KEY_FINDING_MARKERS):
            in_section = True
            continue
        if in_section and stripped.startswith("##"):
            in_section = False
            continue
        if in_section and _LIST_ITEM_RE.match(stripped):
            finding = _LIST_ITEM_RE.sub("", stripped).strip()
            if finding:
                findings.append(finding)
    return findings[:MAX_KEY_FINDINGS]


def count_citations(content: str) -> int:
    return len(set(_CITATION_RE.findall(content)))


def sources_section(evaluations: list[EvaluationResult]) -> str:
    stride = citation_stride(evaluations)
    lines = [
        f"[{citation_number(i, j, stride)}] {content.title}. {content.url}"
        for i, result in enumerate(evaluations)
        for j, content in enumerate(result.evaluated_content)
    ]
    if not lines:
        return "[1] Research compiled from multiple sources via Atlas Researcher"
    return "\n\n".join(lines)


def format_research_data(evaluations: list[EvaluationResult]) -> str:
    stride = citation_stride(evaluations)
    blocks: list[str] = []
    for i, result in enumerate(evaluations):
        parts = [f"**{result.subtopic}:**"]
        for j, content in enumerate(result.evaluated_content):
            entry = [f"[{citation_number(i, j, stride)}] {content.title}", f"Summary: {content.summary}"]
            if content.key_points:
                entry.append(f"Key Points: {'; '.join(content.key_points)}")
            if content.citations:
                entry.append(f"Notable Citations: {'; '.join(content.citations)}")
            entry.append(
                f"Relevance: {content.relevance_score:g}/10, "
                f"Credibility: {content.credibility_score:g}/10"
            )
            entry.append(f"Source: {content.url}")
            parts.append("\n".join(entry))
        blocks.append("\n\n".join(parts))
    return "\n\n".join(blocks)


def _synthesis_prompt(query: str, planning: PlanningResult, evaluations: list[EvaluationResult]) -> str:
    return f"""Create a comprehensive research report answering: "{query}"

**Research Scope:**
Complexity: {planning.estimated_complexity}
Subtopics investigated: {", ".join(planning.subtopics)}

**Research Data:**
{format_research_data(evaluations)}

**Report Requirements:**
1. **Executive Summary** (2-3 paragraphs)
2. **Introduction** - Context and importance of the topic
3. **Main Analysis** - One section per major subtopic with:
   - Key findings and evidence
   - Supporting data and statistics
   - Expert opinions where available
   - Current trends and developments
4. **Key Insights** - 3-5 bullet points of main discoveries
5. **Future Outlook** - Predictions and implications
6. **Conclusion** - Synthesis of findings and recommendations
7. **Sources** - Numbered citations list

**Style Guidelines:**
- Use markdown formatting with proper headings (##, ###)
- Include in-text citations using the bracketed numbers given above
- Aim for 1500-2500 words
- Be analytical, not just descriptive
- Support claims with evidence from sources
- Use bullet points and lists for clarity

Create a report that thoroughly answers the original question with evidence-based insights."""


def post_process_report(content: str, evaluations: list[EvaluationResult], *, today: date | None = None) -> str:
    report = content
    if "# " not in report:
        report = f"# Research Report\n\n{report}"

    lowered = report.lower()
    if "sources" not in lowered and "references" not in lowered:
        report += f"\n\n## Sources\n\n{sources_section(evaluations)}"

    stamp = (today or date.today()).isoformat()
    report += f"\n\n---\n\n*Report generated on {stamp} by Atlas Researcher*\n"
    report += f"*Research methodology: Multi-agent analysis with {len(evaluations)} subtopics investigated*"
    return report


def fallback_report(
    query: str,
    planning: PlanningResult,
    evaluations: list[EvaluationResult],
) -> SynthesisResult:
    """Template report assembled from summaries when the model is unavailable."""
    areas = "\n".join(f"{i + 1}. {subtopic}" for i, subtopic in enumerate(planning.subtopics))
    findings = "\n\n".join(
        f"### {result.subtopic}\n\n" + "\n".join(f"- {c.summary}" for c in result.evaluated_content)
        for result in evaluations
        if result.evaluated_content
    )

    report = f"""# Research Report: {query}

## Executive Summary

This report presents findings from a comprehensive research investigation into "{query}". The research was conducted across {len(planning.subtopics)} key areas to provide a thorough analysis.

## Introduction

{query} represents an important topic that requires careful examination across multiple dimensions. This research aimed to provide evidence-based insights through systematic analysis.

## Key Areas Investigated

{areas}

## Main Findings

{findings}

## Conclusion

Based on the research conducted across {len(evaluations)} key areas, this analysis provides foundational insights into {query}. Further research may be beneficial to explore specific aspects in greater detail.

## Sources

{sources_section(evaluations)}

---

*Report generated by Atlas Researcher*"""

    return SynthesisResult(
        full_report=report,
        word_count=count_words(report),
        sections_generated=extract_sections(report),
        key_findings=["Analysis completed across multiple research areas"],
        citations_used=count_citations(report),
        model_used="fallback",
    )


def validate_report(synthesis: SynthesisResult) -> tuple[bool, list[str]]:
    issues = []
    if synthesis.word_count < 500:
        issues.append("Report is too short (less than 500 words)")
    if len(synthesis.sections_generated) < 3:
        issues.append("Report lacks sufficient structure (less than 3 sections)")
    if synthesis.citations_used == 0:
        issues.append("Report contains no citations")
    if "##" not in synthesis.full_report:
        issues.append("Report lacks proper markdown formatting")
    if not synthesis.key_findings:
        issues.append("No key findings identified")
    return not issues, issues


class SynthesizerAgent(BaseAgent):
    name = "synthesizer"
    task = TaskKind.SYNTHESIS
    system_prompt = SYNTHESIZER_SYSTEM_PROMPT

    async def synthesize_report(
        self,
        query: str,
        planning: PlanningResult,
        evaluations: list[EvaluationResult],
        ctx: PhaseContext,
    ) -> SynthesisResult:
        """Write the final report. Falls back to a template on completion failure."""
        try:
            response = await self.complete(
                _synthesis_prompt(query, planning, evaluations),
                ctx,
                max_tokens=4000,
                temperature=0.4,
            )
        except CompletionError as e:
            logger.error(f"Synthesis failed, assembling template report: {e}")
            result = fallback_report(query, planning, evaluations)
        else:
            report = post_process_report(response.text, evaluations)
            result = SynthesisResult(
                full_report=report,
                word_count=count_words(report),
                sections_generated=extract_sections(report),
                key_findings=extract_key_findings(report),
                citations_used=count_citations(report),
                model_used=response.model,
            )

        valid, issues = validate_report(result)
        if not valid:
            logger.info(f"Report quality issues: {'; '.join(issues)}")
        log_service.log_research_step(
            ctx.session_id,
            "synthesis",
            "completed",
            {
                "model": result.model_used,
                "word_count": result.word_count,
                "sections": len(result.sections_generated),
                "citations": result.citations_used,
            },
        )
        return result
