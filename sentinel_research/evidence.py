"""Evidence selection for drafting: rank citation blocks against a section plan."""

import re
from typing import List, Sequence, Set

from sentinel_research.config import MAX_EVIDENCE_BLOCKS
from sentinel_research.models import SectionPlan
from sentinel_research.research.citations import CitationBlock

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9'-]*")
_MIN_TOKEN_LEN = 4

STOPWORDS = frozenset({
    "about", "above", "after", "again", "against", "also", "among", "analysis",
    "been", "before", "being", "between", "both", "details", "does", "during", "each",
    "from", "further", "have", "having", "here", "including", "into", "itself", "more",
    "most", "next", "only", "other", "over", "recent", "same", "section", "should", "some",
    "such", "than", "that", "their", "them", "then", "there", "these", "they", "this", "those",
    "through", "under", "until", "very", "were", "what", "when", "where", "which", "while",
    "with", "within", "would", "your",
})


def keywords(text: str) -> Set[str]:
    return {
        tok for tok in _TOKEN_RE.findall((text or "").lower())
        if len(tok) >= _MIN_TOKEN_LEN and tok not in STOPWORDS
    }


def score_block(terms: Set[str], block: CitationBlock) -> int:
    """Number of distinct section keywords that occur in the block."""
    if not terms:
        return 0
    return len(terms & keywords(f"{block.title} {block.content}"))


def select_evidence(
    section: SectionPlan,
    blocks: Sequence[CitationBlock],
    cap: int = MAX_EVIDENCE_BLOCKS,
) -> List[CitationBlock]:
    """Pick the best-matching blocks for ``section``.

    Ties keep context order. When nothing overlaps, the first ``cap`` blocks
    are used so drafting never starts empty while evidence exists.
    """
    if not blocks:
        return []
    terms = keywords(f"{section.title} {section.guidance}")
    scored = [(score_block(terms, block), index) for index, block in enumerate(blocks)]
    ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: (-item[0], item[1]))
    if not ranked:
        return list(blocks[:cap])
    return [blocks[index] for _, index in ranked[:cap]]


def length_guide(section_type: str, evidence_count: int) -> str:
    if section_type == "list":
        if evidence_count <= 2:
            return "4-6 bullet points"
        if evidence_count <= 5:
            return "6-10 bullet points"
        return "8-14 bullet points"
    if evidence_count <= 2:
        return "2-3 paragraphs"
    if evidence_count <= 5:
        return "3-5 paragraphs"
    return "5-8 paragraphs"


def format_evidence_pack(blocks: Sequence[CitationBlock]) -> str:
    """Source manifest (``[n] title (id)``) followed by the full citation blocks."""
    if not blocks:
        return "EVIDENCE PACK: No evidence gathered."
    manifest = "\n".join(
        f"[{n}] {block.title or 'Untitled'} ({block.source_id})" for n, block in enumerate(blocks, 1)
    )
    body = "\n\n".join(block.render() for block in blocks)
    return f"SOURCE MANIFEST:\n{manifest}\n\nEVIDENCE PACK:\n{body}"
