"""
Pydantic reply shapes and dataclasses passed between pipeline stages.

Pydantic models describe what the gateway is asked to return (and are
validated leniently: missing keys fall back to defaults). Dataclasses hold
the run-local state the harvester and drafting loop own.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator


# ---------------------------------------------------------------------------
# Gateway reply shapes
# ---------------------------------------------------------------------------
class ExtractionReply(BaseModel):
    """Title/summary/facts extracted from a single direct source."""
    title: str = ""
    summary: str = ""
    facts: List[str] = []
    content: str = ""


class QueriesReply(BaseModel):
    """A list of follow-up search vectors (empty means no gaps)."""
    queries: List[str] = []


class DraftPayload(BaseModel):
    """One drafted section plus the claims the editor reviews."""
    content: Union[str, List[str]] = ""
    claims: List[str] = []


class ReviewVerdict(BaseModel):
    """Editor verdict on a draft."""
    verdict: Literal["Approved", "Rejected"] = "Approved"
    feedback: str = ""

    @field_validator("verdict", mode="before")
    @classmethod
    def _normalise_verdict(cls, v):
        if isinstance(v, str):
            return v.strip().capitalize()
        return v


class Entity(BaseModel):
    name: str
    type: Literal["Person", "Location", "Organization", "Weapon", "Cyber", "Event"] = "Organization"
    context: str = ""
    threat_level: Optional[Literal["Low", "Medium", "High", "Critical"]] = None


class EntityList(BaseModel):
    entities: List[Entity] = []


class ResearchPlan(BaseModel):
    """Output of the strategy stage."""
    reliability_assessment: str = "Pending Analysis"
    information_gaps: List[str] = []
    search_queries: List[str] = []
    found_urls: List[str] = []


class SectionPlan(BaseModel):
    """Immutable plan for one report section."""
    model_config = ConfigDict(frozen=True)

    title: str
    type: Literal["text", "list"] = "text"
    guidance: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, v):
        if isinstance(v, str) and v.strip().lower() == "list":
            return "list"
        return "text"


class ReportStructure(BaseModel):
    sections: List[SectionPlan] = []


class ResearchLink(BaseModel):
    url: str
    title: str = ""
    summary: str = ""


class ClaimVerification(BaseModel):
    """Search-grounded check of a single claim."""
    status: Literal["Verified", "Disputed", "Inconclusive", "Analysis"] = "Inconclusive"
    explanation: str = ""
    sources: List[ResearchLink] = []

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, v):
        if isinstance(v, str):
            return v.strip().capitalize()
        return v


class DeepResearchResult(BaseModel):
    """Ad-hoc research brief on one topic."""
    title: str = ""
    content: str = ""
    links: List[ResearchLink] = []


class FinalMetadata(BaseModel):
    classification: Literal["OFFICIAL", "OFFICIAL-SENSITIVE", "SECRET", "TOP SECRET"] = "OFFICIAL-SENSITIVE"
    handling_instructions: str = ""
    report_title: str = "INTELLIGENCE REPORT"
    executive_summary: str = "Summary generation failed."
    overall_confidence: Literal[
        "Low Probability", "Moderate Probability", "High Probability", "Near Certainty"
    ] = "Low Probability"


DEFAULT_REPORT_STRUCTURE = ReportStructure(sections=[
    SectionPlan(title="Strategic Context", type="text",
                guidance="Historical background and current geopolitical relevance."),
    SectionPlan(title="Operational Analysis", type="text",
                guidance="Analysis of capabilities, TTPs, and recent maneuvers."),
    SectionPlan(title="Key Actors & Networks", type="list",
                guidance="Details on leadership, affiliates, and hierarchy."),
    SectionPlan(title="Future Assessment", type="text",
                guidance="Predictive analysis: likely courses of action in the next 6-12 months."),
])


# ---------------------------------------------------------------------------
# Harvester state
# ---------------------------------------------------------------------------
class SourceStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SourceStatus.COMPLETED, SourceStatus.FAILED)


@dataclass
class SourceEntry:
    """Source Registry entry, keyed by the exact URL string."""
    url: str
    status: SourceStatus = SourceStatus.QUEUED
    title: str = ""
    summary: str = ""
    last_error: Optional[str] = None


@dataclass
class EvidenceRecord:
    """Derived content for a completed source."""
    url: str
    title: str = ""
    summary: str = ""
    facts: List[str] = field(default_factory=list)

    def merge_facts(self, facts: List[str], cap: int) -> None:
        """Set-union ``facts`` into this record, keeping first-seen order, then re-cap."""
        seen = set(self.facts)
        for fact in facts:
            fact = (fact or "").strip()
            if fact and fact not in seen:
                seen.add(fact)
                self.facts.append(fact)
        del self.facts[cap:]


@dataclass
class SourceReference:
    url: str
    title: str = ""
    summary: str = ""


@dataclass
class FailedSource:
    url: str
    reason: str
    is_high_value: bool = True


@dataclass
class SearchVectorResult:
    """What one executed search vector produced."""
    query: str
    text: str = ""
    facts: List[str] = field(default_factory=list)
    sources: List[SourceReference] = field(default_factory=list)


@dataclass
class HarvestResult:
    """Evidence Harvester output."""
    context: str = ""
    sources: List[SourceReference] = field(default_factory=list)
    failed_urls: List[FailedSource] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Inputs / outputs shared with the outer stages
# ---------------------------------------------------------------------------
@dataclass
class Attachment:
    """User-supplied attachment. Either ``text_content`` or base64 ``data`` is set."""
    name: str
    mime_type: str = "text/plain"
    text_content: Optional[str] = None
    data: Optional[str] = None
    context: Optional[str] = None


@dataclass
class ReportSection:
    title: str
    type: str
    content: Union[str, List[str]]


@dataclass
class IntelligenceReport:
    metadata: FinalMetadata
    reliability: str = ""
    sections: List[ReportSection] = field(default_factory=list)
    entities: List[Entity] = field(default_factory=list)
    sources: List[SourceReference] = field(default_factory=list)
    failed_sources: List[FailedSource] = field(default_factory=list)
