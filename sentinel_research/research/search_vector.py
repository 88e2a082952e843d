"""Execute one search vector through the gateway's search tooling."""

import logging
import re
from typing import List

from sentinel_research.config import MAX_FACTS_PER_SOURCE
from sentinel_research.gateway import WEB_SEARCH, QuotaExceededError
from sentinel_research.models import SearchVectorResult, SourceReference
from sentinel_research.prompts import SEARCH_VECTOR_PROMPT
from sentinel_research.utils import extract_urls, format_source_title, is_valid_source_url

logger = logging.getLogger(__name__)

_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$")


def extract_bullet_facts(text: str, cap: int = MAX_FACTS_PER_SOURCE) -> List[str]:
    """Pull bulleted/numbered lines out of free text as discrete facts."""
    facts = []
    for line in (text or "").splitlines():
        match = _BULLET_RE.match(line)
        if not match:
            continue
        fact = match.group(1).strip()
        # Bare URL lines are the source list, not facts
        if extract_urls(fact) and len(fact.split()) == 1:
            continue
        facts.append(fact)
        if len(facts) >= cap:
            break
    return facts


async def execute_search_vector(gateway, query: str, tier: str = "fast") -> SearchVectorResult:
    """Run ``query`` with search tooling and collect the summary plus every cited URL.

    Reference URLs come from the reply's grounding metadata first, then from
    URLs written into the reply text. Ordinary failures return an empty
    result; QuotaExceededError propagates.
    """
    logger.info(f"Initializing search vector: \"{query}\"")
    try:
        reply = await gateway.invoke(
            SEARCH_VECTOR_PROMPT.format(query=query),
            tools=[WEB_SEARCH],
            search_query=query,
            tier=tier,
        )
    except QuotaExceededError:
        raise
    except Exception as e:
        logger.warning(f"Vector failed: \"{query}\": {e}")
        return SearchVectorResult(query=query)

    sources: List[SourceReference] = []
    seen = set()

    for chunk in reply.grounding or []:
        url = getattr(chunk, "url", "") or ""
        if url and url not in seen and is_valid_source_url(url):
            seen.add(url)
            sources.append(SourceReference(
                url=url,
                title=getattr(chunk, "title", "") or format_source_title(url),
                summary=f"Source via query: \"{query}\"",
            ))

    text = reply.text or ""
    for url in extract_urls(text):
        if url not in seen and is_valid_source_url(url):
            seen.add(url)
            sources.append(SourceReference(
                url=url,
                title=format_source_title(url),
                summary=f"Extracted from analysis of \"{query}\"",
            ))

    if sources:
        logger.info(f"Data acquired: \"{query}\" ({len(sources)} sources)")
    else:
        logger.info(f"Search complete (no direct links): \"{query}\"")

    return SearchVectorResult(query=query, text=text, facts=extract_bullet_facts(text), sources=sources)
