"""
Citation blocks: the unit of evidence injected into the research context.

Wire format::

    [[SOURCE_ID: <identifier>]]
    TITLE: <title>
    <body>
    [[END_SOURCE]]

A one-time directive block describing that format precedes the first
source block so downstream consumers (drafting, gap review) can parse it.
The directive names the markers without their brackets so it never reads as
a source block itself. An end marker inside a body is neutralised on render.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from sentinel_research.models import EvidenceRecord

DIRECTIVE_OPEN = "[[CITATION_FORMAT]]"
DIRECTIVE_CLOSE = "[[END_CITATION_FORMAT]]"

CITATION_FORMAT_DIRECTIVE = (
    f"{DIRECTIVE_OPEN}\n"
    "Evidence below is wrapped in source blocks. Each block opens with a SOURCE_ID\n"
    "marker line carrying the identifier in double square brackets, then a TITLE\n"
    "line and the body, and closes with an END_SOURCE marker line.\n"
    "Cite a block by its identifier.\n"
    f"{DIRECTIVE_CLOSE}"
)

_BLOCK_RE = re.compile(
    r"\[\[SOURCE_ID: (?P<id>[^\n]+?)\]\]\n"
    r"(?:TITLE: (?P<title>[^\n]*)\n)?"
    r"(?P<body>.*?)\n?\[\[END_SOURCE\]\]",
    re.DOTALL,
)
_DIRECTIVE_RE = re.compile(re.escape(DIRECTIVE_OPEN) + r".*?" + re.escape(DIRECTIVE_CLOSE), re.DOTALL)

END_MARKER = "[[END_SOURCE]]"
_NEUTRAL_END_MARKER = "[END_SOURCE]"


@dataclass(frozen=True)
class CitationBlock:
    source_id: str
    title: str
    content: str

    def render(self) -> str:
        title = " ".join(self.title.split())
        body = self.content.replace(END_MARKER, _NEUTRAL_END_MARKER)
        return f"[[SOURCE_ID: {self.source_id}]]\nTITLE: {title}\n{body}\n{END_MARKER}"


def evidence_block(record: EvidenceRecord, extra: str = "") -> CitationBlock:
    """Build the citation block for a completed source from its evidence record."""
    lines = []
    if record.summary:
        lines.append(f"SUMMARY: {record.summary}")
    if record.facts:
        lines.append("FACTS:")
        lines.extend(f"- {fact}" for fact in record.facts)
    if extra:
        lines.append(extra)
    return CitationBlock(source_id=record.url, title=record.title, content="\n".join(lines))


def parse_citation_blocks(context: str) -> List[CitationBlock]:
    """Recover the citation blocks from a rendered context, in order."""
    if not context:
        return []
    stripped = _DIRECTIVE_RE.sub("", context)
    return [
        CitationBlock(
            source_id=m.group("id").strip(),
            title=(m.group("title") or "").strip(),
            content=m.group("body").strip(),
        )
        for m in _BLOCK_RE.finditer(stripped)
    ]


class CitationLedger:
    """Append-only, de-duplicated citation blocks in first-discovery order.

    ``reserve`` fixes a source's position when it is first discovered;
    ``emit`` fills that position once. Later emits for the same identifier
    are ignored (first write wins).
    """

    def __init__(self):
        self._order: List[str] = []
        self._reserved = set()
        self._blocks: Dict[str, CitationBlock] = {}

    def __len__(self) -> int:
        return len(self._blocks)

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._blocks

    def reserve(self, source_id: str) -> None:
        if source_id not in self._reserved:
            self._reserved.add(source_id)
            self._order.append(source_id)

    def emit(self, block: CitationBlock) -> bool:
        if block.source_id in self._blocks:
            return False
        self.reserve(block.source_id)
        self._blocks[block.source_id] = block
        return True

    def get(self, source_id: str) -> Optional[CitationBlock]:
        return self._blocks.get(source_id)

    def blocks(self) -> List[CitationBlock]:
        return [self._blocks[sid] for sid in self._order if sid in self._blocks]

    def render(self) -> str:
        blocks = self.blocks()
        if not blocks:
            return ""
        return "\n\n".join([CITATION_FORMAT_DIRECTIVE] + [b.render() for b in blocks])
