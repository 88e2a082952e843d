"""
Draft-Review Refinement Loop.

Each section plan is drafted against its own ranked evidence pack, then
reviewed by an independently prompted editor. A rejected draft is rewritten
with the editor's feedback until approved or the revision limit is reached.

Failure policy:
- editor call fails: keep the current draft (fail open)
- first draft fails: placeholder content, never an exception
- QuotaExceededError: propagates and cancels the whole section batch
"""

import json
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union

from sentinel_research.config import (
    CONTEXT_CHARS, MAX_DRAFT_CLAIMS, MAX_EDITOR_REVISIONS, MAX_EVIDENCE_BLOCKS,
    SECTION_BATCH_DELAY, SECTION_BATCH_SIZE,
)
from sentinel_research.evidence import format_evidence_pack, length_guide, select_evidence
from sentinel_research.gateway import QuotaExceededError
from sentinel_research.models import Attachment, DraftPayload, ReportSection, ReviewVerdict, SectionPlan
from sentinel_research.prompts import EDITOR_INSTRUCTION, REVISION_TASK, SECTION_WRITER_INSTRUCTION
from sentinel_research.research.citations import CitationBlock, parse_citation_blocks
from sentinel_research.research.task_pool import TaskPool

logger = logging.getLogger(__name__)

DRAFT_ERROR_PLACEHOLDER = "Drafting Error: content generation failed."
INSUFFICIENT_DATA = "Data insufficient."


@dataclass
class DraftSettings:
    section_batch_size: int = SECTION_BATCH_SIZE
    section_batch_delay: float = SECTION_BATCH_DELAY
    max_evidence_blocks: int = MAX_EVIDENCE_BLOCKS
    max_revisions: int = MAX_EDITOR_REVISIONS
    max_claims: int = MAX_DRAFT_CLAIMS


def coerce_content(content: Union[str, List[str], None], section_type: str) -> Union[str, List[str]]:
    """Shape drafted content to the section's declared type."""
    if section_type == "list":
        if isinstance(content, list):
            items = [str(item).strip() for item in content]
        else:
            items = [line.strip().lstrip("-*• ").strip() for line in (content or "").splitlines()]
        return [item for item in items if item]
    if isinstance(content, list):
        return "\n\n".join(str(item).strip() for item in content if str(item).strip())
    return (content or "").strip()


def context_blocks(context: str) -> List[CitationBlock]:
    """Citation blocks in ``context``; unstructured context becomes a single block."""
    blocks = parse_citation_blocks(context)
    if not blocks and (context or "").strip():
        blocks = [CitationBlock(source_id="context", title="Gathered context", content=context[:CONTEXT_CHARS])]
    return blocks


class SectionDrafter:
    """Drafts and reviews one section at a time against a shared evidence set."""

    def __init__(
        self,
        gateway,
        blocks: Sequence[CitationBlock],
        instructions: str = "",
        attachments: Optional[Sequence[Attachment]] = None,
        settings: Optional[DraftSettings] = None,
        use_fallback: bool = False,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.gateway = gateway
        self.blocks = list(blocks)
        self.attachments = list(attachments or [])
        self.settings = settings or DraftSettings()
        self.tier = "fallback" if use_fallback else "quality"
        self.progress_callback = progress_callback
        self.writer_system = SECTION_WRITER_INSTRUCTION.format(
            max_claims=self.settings.max_claims,
            user_instructions=instructions or "None provided.",
        )

    def _log(self, msg: str) -> None:
        logger.info(msg)
        if self.progress_callback:
            self.progress_callback(msg)

    def _section_prompt(self, section: SectionPlan, pack: str, guide: str) -> str:
        shape = "an ordered list of bullet strings" if section.type == "list" else "continuous prose"
        return (
            f"SECTION: {section.title}\n"
            f"GUIDANCE: {section.guidance}\n"
            f"CONTENT TYPE: {section.type} ({shape})\n"
            f"LENGTH GUIDE: {guide}\n\n"
            f"{pack}"
        )

    async def _write(self, prompt: str) -> DraftPayload:
        reply = await self.gateway.invoke(
            prompt,
            response_model=DraftPayload,
            default=DraftPayload(),
            attachments=self.attachments,
            system=self.writer_system,
            tier=self.tier,
        )
        return reply.data

    async def _review(self, section: SectionPlan, content, claims: List[str], pack: str) -> ReviewVerdict:
        if claims:
            claim_text = "\n".join(f"- {c}" for c in claims)
        else:
            claim_text = json.dumps(content) if isinstance(content, list) else content
        prompt = (
            f"SECTION: {section.title}\n"
            f"GUIDANCE: {section.guidance}\n\n"
            f"CLAIMS UNDER REVIEW:\n{claim_text}\n\n"
            f"{pack}\n\n"
            'Return JSON: {"verdict": "Approved" | "Rejected", "feedback": "..."}'
        )
        reply = await self.gateway.invoke(
            prompt,
            response_model=ReviewVerdict,
            default=ReviewVerdict(),
            system=EDITOR_INSTRUCTION,
            tier=self.tier,
        )
        return reply.data

    async def draft(self, section: SectionPlan) -> ReportSection:
        """Draft -> critique -> revise, at most ``max_revisions + 1`` times each."""
        evidence = select_evidence(section, self.blocks, self.settings.max_evidence_blocks)
        guide = length_guide(section.type, len(evidence))
        pack = format_evidence_pack(evidence)
        base_prompt = self._section_prompt(section, pack, guide)
        max_revisions = self.settings.max_revisions

        self._log(f"Drafting Component: {section.title} ({len(evidence)} evidence blocks, {guide})")

        content = None
        feedback = ""
        for attempt in range(max_revisions + 1):
            prompt = base_prompt
            if attempt > 0:
                previous = json.dumps(content) if isinstance(content, list) else content
                prompt = f"{base_prompt}\n\n{REVISION_TASK.format(feedback=feedback, previous=previous)}"

            try:
                payload = await self._write(prompt)
            except QuotaExceededError:
                raise
            except Exception as e:
                logger.warning(f"Drafting error for {section.title} (attempt {attempt + 1}): {e}")
                if content is None:
                    return ReportSection(title=section.title, type=section.type, content=DRAFT_ERROR_PLACEHOLDER)
                # Keep the last complete draft
                break

            content = coerce_content(payload.content, section.type) or (
                [INSUFFICIENT_DATA] if section.type == "list" else INSUFFICIENT_DATA
            )
            claims = [c for c in payload.claims if c.strip()][:self.settings.max_claims]

            try:
                verdict = await self._review(section, content, claims, pack)
            except QuotaExceededError:
                raise
            except Exception as e:
                logger.warning(f"Editor review failed for {section.title}, accepting draft: {e}")
                break

            if verdict.verdict == "Approved":
                self._log(f"    [Editor] APPROVED: {section.title}")
                break
            feedback = verdict.feedback or "Claims are not adequately supported by the evidence."
            self._log(f"    [Editor] REJECTED: {section.title}: {feedback[:200]}")
        else:
            logger.warning(
                f"Section '{section.title}' not approved after {max_revisions} revisions, "
                f"proceeding with last draft"
            )

        return ReportSection(title=section.title, type=section.type, content=content)


async def draft_sections(
    gateway,
    sections: Sequence[SectionPlan],
    context: str,
    instructions: str = "",
    attachments: Optional[Sequence[Attachment]] = None,
    settings: Optional[DraftSettings] = None,
    use_fallback: bool = False,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> List[ReportSection]:
    """Draft every section in small concurrent batches; output order matches ``sections``."""
    settings = settings or DraftSettings()
    drafter = SectionDrafter(
        gateway,
        context_blocks(context),
        instructions=instructions,
        attachments=attachments,
        settings=settings,
        use_fallback=use_fallback,
        progress_callback=progress_callback,
    )
    pool = TaskPool(settings.section_batch_size, settings.section_batch_delay)
    return await pool.map_batches(drafter.draft, list(sections))
