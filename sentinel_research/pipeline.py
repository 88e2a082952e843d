"""
Sentinel research pipeline.

    Strategy -> Evidence Harvester -> Structure -> structural gap top-up
             -> Draft-Review Loop -> Finalize

Run as ``python -m sentinel_research --topic "..."``; the finished report is
written as JSON.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from sentinel_research.config import COVERAGE_CONTEXT_CHARS, CONTEXT_CHARS, QUERY_PLANNING_CHARS, RAW_INTEL_CHARS
from sentinel_research.drafting import DraftSettings, draft_sections
from sentinel_research.gateway import WEB_SEARCH, Gateway, QuotaExceededError
from sentinel_research.models import (
    DEFAULT_REPORT_STRUCTURE, Attachment, ClaimVerification, DeepResearchResult, DraftPayload, Entity,
    EntityList, FinalMetadata, IntelligenceReport, QueriesReply, ReportSection, ReportStructure,
    ResearchLink, ResearchPlan,
)
from sentinel_research.prompts import (
    DEEP_RESEARCH_PROMPT, ENTITY_AGENT_INSTRUCTION, GAP_ANALYSIS_INSTRUCTION, QUERY_PLANNER_INSTRUCTION,
    STRATEGY_AGENT_INSTRUCTION, STRUCTURAL_COVERAGE_INSTRUCTION, STRUCTURE_AGENT_INSTRUCTION,
    SUMMARY_AGENT_INSTRUCTION, VERIFY_CLAIM_PROMPT,
)
from sentinel_research.research.harvester import EvidenceHarvester, HarvestSettings
from sentinel_research.research.task_pool import gather_or_cancel
from sentinel_research.utils import extract_urls, format_source_title, is_valid_source_url

logger = logging.getLogger(__name__)

LogCallback = Optional[Callable[[str], None]]


def _tier(use_fallback: bool) -> str:
    return "fallback" if use_fallback else "quality"


def _emit(log: LogCallback, msg: str) -> None:
    logger.info(msg)
    if log:
        log(msg)


# --- Strategy ---

async def run_strategy_phase(
    gateway,
    raw_text: str,
    attachments: Sequence[Attachment] = (),
    instructions: str = "",
    use_fallback: bool = False,
    log: LogCallback = None,
) -> Tuple[ResearchPlan, List[Entity]]:
    """Research plan plus extracted entities. Failures here are run-fatal and propagate."""
    is_pure_research = not (raw_text or "").strip() and not attachments
    if is_pure_research:
        prompt = f"MISSION OBJECTIVE / RESEARCH TOPIC: {instructions}"
    else:
        prompt = f"RAW INTEL: {raw_text[:RAW_INTEL_CHARS]}"

    _emit(log, "Initiating Phase 1: Strategic Triage...")
    plan_reply, entity_reply = await gather_or_cancel([
        asyncio.ensure_future(gateway.invoke(
            prompt,
            response_model=ResearchPlan,
            attachments=attachments,
            system=STRATEGY_AGENT_INSTRUCTION.format(user_instructions=instructions or "None provided."),
            tier=_tier(use_fallback),
        )),
        asyncio.ensure_future(gateway.invoke(
            prompt,
            response_model=EntityList,
            attachments=attachments,
            system=ENTITY_AGENT_INSTRUCTION,
            tier=_tier(use_fallback),
        )),
    ])
    plan: ResearchPlan = plan_reply.data
    entities: List[Entity] = list(entity_reply.data.entities)

    if not plan.search_queries:
        if is_pure_research and instructions:
            plan.search_queries.append(f"Comprehensive background research on: {instructions}")
        elif len(raw_text or "") > 50 or attachments:
            plan.search_queries.append("Context and background investigation for provided intelligence")

    for url in extract_urls(raw_text or ""):
        if url not in plan.found_urls:
            plan.found_urls.append(url)

    _emit(log, f"Strategy generated: {len(plan.search_queries)} search vectors, "
               f"{len(plan.found_urls)} direct sources, {len(entities)} entities.")
    return plan, entities


async def _query_list(gateway, prompt: str, system: str, use_fallback: bool, label: str) -> List[str]:
    try:
        reply = await gateway.invoke(
            prompt,
            response_model=QueriesReply,
            default=QueriesReply(),
            system=system,
            tier=_tier(use_fallback),
        )
    except QuotaExceededError:
        raise
    except Exception as e:
        logger.warning(f"{label} failed: {e}")
        return []
    return [q.strip() for q in reply.data.queries if q and q.strip()]


async def generate_more_queries(
    gateway,
    raw_text: str,
    current_queries: Sequence[str],
    instructions: str = "",
    use_fallback: bool = False,
) -> List[str]:
    prompt = (
        f"CONTEXT: {(raw_text or '')[:QUERY_PLANNING_CHARS]}\n"
        f"CURRENT STRATEGY: {json.dumps(list(current_queries))}\n"
        f"USER DIRECTION: {instructions}"
    )
    return await _query_list(gateway, prompt, QUERY_PLANNER_INSTRUCTION, use_fallback, "Query expansion")


async def analyze_research_coverage(
    gateway,
    context: str,
    information_gaps: Sequence[str],
    instructions: str = "",
    use_fallback: bool = False,
) -> List[str]:
    """Follow-up queries for the plan's information gaps that the context does not yet cover."""
    prompt = (
        f"Gaps: {json.dumps(list(information_gaps))}\n"
        f"Mission: {instructions}\n"
        f"Context: {(context or '')[:COVERAGE_CONTEXT_CHARS]}\n"
        "Generate queries if needed."
    )
    return await _query_list(gateway, prompt, GAP_ANALYSIS_INSTRUCTION, use_fallback, "Coverage analysis")


# --- Structure ---

async def run_structure_phase(
    gateway,
    context: str,
    attachments: Sequence[Attachment] = (),
    instructions: str = "",
    use_fallback: bool = False,
) -> ReportStructure:
    """Section plans for the report; empty or unparsable replies use the default structure."""
    reply = await gateway.invoke(
        f"CONTEXT:\n{(context or '')[:CONTEXT_CHARS]}",
        response_model=ReportStructure,
        default=DEFAULT_REPORT_STRUCTURE,
        attachments=attachments,
        system=STRUCTURE_AGENT_INSTRUCTION.format(user_instructions=instructions or "None provided."),
        tier=_tier(use_fallback),
    )
    structure: ReportStructure = reply.data
    if not structure.sections:
        logger.warning("Structure reply had no sections, using default structure")
        return DEFAULT_REPORT_STRUCTURE
    return structure


async def identify_structural_gaps(gateway, structure: ReportStructure, context: str,
                                   use_fallback: bool = False) -> List[str]:
    prompt = (
        f"Structure: {structure.model_dump_json()}\n"
        f"Context: {(context or '')[:COVERAGE_CONTEXT_CHARS]}\n"
        "Missing info?"
    )
    return await _query_list(gateway, prompt, STRUCTURAL_COVERAGE_INSTRUCTION, use_fallback, "Structural gap check")


# --- Finalize ---

async def run_finalize_phase(
    gateway,
    sections: Sequence[ReportSection],
    reliability: str,
    instructions: str = "",
    use_fallback: bool = False,
) -> FinalMetadata:
    body = json.dumps([asdict(s) for s in sections], ensure_ascii=False)
    try:
        reply = await gateway.invoke(
            f"BODY: {body}\nRELIABILITY: {reliability}",
            response_model=FinalMetadata,
            system=SUMMARY_AGENT_INSTRUCTION.format(user_instructions=instructions or "None provided."),
            tier=_tier(use_fallback),
        )
    except QuotaExceededError:
        raise
    except Exception as e:
        logger.warning(f"Finalize failed, using draft metadata: {e}")
        return FinalMetadata(report_title="INTELLIGENCE REPORT (DRAFT)")
    return reply.data


# --- Post-report editing ---

async def refine_section(gateway, report: IntelligenceReport, section_title: str, instruction: str):
    """Rewrite one section per ``instruction``; returns the current content if the call fails."""
    section = next((s for s in report.sections if s.title == section_title), None)
    if section is None:
        raise KeyError(f"Section not found: {section_title}")

    prompt = (
        f"Refine section '{section_title}'. Instruction: {instruction}. "
        f"Current: {json.dumps(section.content, ensure_ascii=False)}"
    )
    try:
        reply = await gateway.invoke(
            prompt,
            response_model=DraftPayload,
            default=DraftPayload(content=section.content),
            tier="quality",
        )
    except QuotaExceededError:
        raise
    except Exception as e:
        logger.warning(f"Refinement of '{section_title}' failed: {e}")
        return section.content
    return reply.data.content or section.content


async def verify_claim(gateway, claim: str, use_fallback: bool = False) -> ClaimVerification:
    """Search-grounded verdict on one claim; Inconclusive if the check itself fails."""
    try:
        reply = await gateway.invoke(
            VERIFY_CLAIM_PROMPT.format(claim=claim),
            response_model=ClaimVerification,
            default=ClaimVerification(explanation="Error."),
            tools=[WEB_SEARCH],
            search_query=claim,
            tier=_tier(use_fallback),
        )
    except QuotaExceededError:
        raise
    except Exception as e:
        logger.warning(f"Claim verification failed: {e}")
        return ClaimVerification(explanation="Verification service unavailable.")
    return reply.data.model_copy(update={"sources": _grounding_links(reply.grounding)})


async def conduct_deep_research(gateway, topic: str, context: str = "",
                                use_fallback: bool = False) -> DeepResearchResult:
    """Research brief on ``topic`` with the model's links plus the search grounding."""
    try:
        reply = await gateway.invoke(
            DEEP_RESEARCH_PROMPT.format(topic=topic, context=(context or "")[:COVERAGE_CONTEXT_CHARS]),
            response_model=DeepResearchResult,
            default=DeepResearchResult(title=topic, content="Research failed."),
            tools=[WEB_SEARCH],
            search_query=topic,
            tier=_tier(use_fallback),
        )
    except QuotaExceededError:
        raise
    except Exception as e:
        logger.warning(f"Deep research on '{topic}' failed: {e}")
        return DeepResearchResult(title=topic, content="Research subsystem unavailable.")

    result: DeepResearchResult = reply.data
    links = list(result.links)
    seen = {link.url for link in links}
    for link in _grounding_links(reply.grounding):
        if link.url not in seen:
            seen.add(link.url)
            links.append(link)
    return result.model_copy(update={"title": result.title or topic, "links": links})


def _grounding_links(grounding) -> List[ResearchLink]:
    return [
        ResearchLink(url=g.url, title=g.title or format_source_title(g.url), summary="Search Result")
        for g in grounding
        if is_valid_source_url(g.url)
    ]


# --- Full run ---

async def run_pipeline(
    gateway,
    raw_text: str = "",
    instructions: str = "",
    urls: Sequence[str] = (),
    attachments: Sequence[Attachment] = (),
    use_fallback: bool = False,
    harvest_settings: Optional[HarvestSettings] = None,
    draft_settings: Optional[DraftSettings] = None,
    progress_callback: LogCallback = None,
) -> IntelligenceReport:
    """Run every stage and return the assembled report. QuotaExceededError propagates."""
    def log(msg: str) -> None:
        _emit(progress_callback, msg)

    plan, entities = await run_strategy_phase(
        gateway, raw_text, attachments, instructions, use_fallback=use_fallback, log=progress_callback,
    )

    log("Initiating Phase 2: Active Research...")
    harvester = EvidenceHarvester(
        gateway,
        mission=instructions or raw_text[:500],
        use_fallback=use_fallback,
        settings=harvest_settings,
        progress_callback=progress_callback,
    )
    await harvester.run(list(urls) + plan.found_urls, plan.search_queries)

    if plan.information_gaps:
        log("Analyzing intel coverage against mission objectives...")
        coverage_queries = await analyze_research_coverage(
            gateway, harvester.ledger.render(), plan.information_gaps, instructions, use_fallback,
        )
        if coverage_queries:
            log(f"Identified coverage gaps. Executing {len(coverage_queries)} targeted queries...")
            await harvester.harvest([], coverage_queries)

    log("Initiating Phase 3: Structural Design...")
    structure = await run_structure_phase(
        gateway, harvester.ledger.render(), attachments, instructions, use_fallback,
    )

    missing = await identify_structural_gaps(gateway, structure, harvester.ledger.render(), use_fallback)
    if missing:
        log(f"Detected data voids for planned sections. Executing {len(missing)} tactical queries...")
        await harvester.harvest([], missing)
    research = harvester.result()
    log(f"Intel gathering complete. {len(research.sources)} sources secured, "
        f"{len(research.failed_urls)} failed.")

    log("Initiating Phase 4: Drafting Content...")
    sections = await draft_sections(
        gateway,
        structure.sections,
        research.context,
        instructions=instructions,
        attachments=attachments,
        settings=draft_settings,
        use_fallback=use_fallback,
        progress_callback=progress_callback,
    )

    log("Initiating Phase 5: Final Compilation...")
    metadata = await run_finalize_phase(
        gateway, sections, plan.reliability_assessment, instructions, use_fallback,
    )

    return IntelligenceReport(
        metadata=metadata,
        reliability=plan.reliability_assessment,
        sections=sections,
        entities=entities,
        sources=research.sources,
        failed_sources=research.failed_urls,
    )


def report_to_dict(report: IntelligenceReport) -> dict:
    def dump(value):
        if isinstance(value, BaseModel):
            return value.model_dump()
        return value

    return {
        "metadata": dump(report.metadata),
        "reliability": report.reliability,
        "sections": [asdict(s) for s in report.sections],
        "entities": [dump(e) for e in report.entities],
        "sources": [asdict(s) for s in report.sources],
        "failed_sources": [asdict(f) for f in report.failed_sources],
    }


# --- CLI ---

def setup_logging(level: int = logging.INFO):
    """Configure root logging for command-line runs."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def parse_arguments(argv=None):
    """Parse command-line arguments for a research run."""
    parser = argparse.ArgumentParser(
        description="Research a topic or raw intelligence and draft a cited report.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m sentinel_research --topic "maritime smuggling routes in the Red Sea"
  python -m sentinel_research --input-file intel.txt --url https://example.com/a --output report.json

Environment variables:
  LLM_BASE_URL, LLM_API_KEY, MODEL_NAME, FAST_MODEL_NAME, FALLBACK_MODEL_NAME, SEARXNG_URL
        """,
    )
    parser.add_argument("--topic", type=str, default="",
                        help="Mission objective / research topic")
    parser.add_argument("--input-file", type=str,
                        help="Text file containing raw intelligence to analyse")
    parser.add_argument("--url", action="append", default=[],
                        help="Direct source URL to harvest (repeatable)")
    parser.add_argument("--instructions", type=str, default="",
                        help="Additional drafting instructions")
    parser.add_argument("--output", type=str, default="report.json",
                        help="Where to write the report JSON")
    parser.add_argument("--fallback", action="store_true",
                        help="Route every call to the fallback model tier")
    args = parser.parse_args(argv)
    if not args.topic and not args.input_file:
        parser.error("one of --topic or --input-file is required")
    return args


async def _run_cli(args) -> int:
    raw_text = ""
    if args.input_file:
        raw_text = Path(args.input_file).read_text(encoding="utf-8")
    instructions = "\n".join(part for part in (args.topic, args.instructions) if part)

    gateway = Gateway()
    try:
        report = await run_pipeline(
            gateway,
            raw_text=raw_text,
            instructions=instructions,
            urls=args.url,
            use_fallback=args.fallback,
        )
    except QuotaExceededError as e:
        logger.error(f"Run aborted, service quota exhausted: {e}")
        return 2
    finally:
        await gateway.aclose()

    output = Path(args.output)
    output.write_text(json.dumps(report_to_dict(report), indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info(f"Report written to {output}")
    return 0


def main(argv=None) -> int:
    args = parse_arguments(argv)
    setup_logging()
    return asyncio.run(_run_cli(args))


if __name__ == "__main__":
    sys.exit(main())
